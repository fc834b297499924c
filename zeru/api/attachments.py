"""Attachment resolution: turns uploaded document ids into turn input content.

- Images: passed by URL (input_image), the provider fetches them itself
- Spreadsheets: converted to CSV text locally, the model reads them inline
- Anything else: uploaded to the provider's Files API, referenced by file_id

A document that cannot be resolved is still referenced by name and id in
the text part, so the model can tag or link it even without its content.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import httpx
import pandas as pd

logger = logging.getLogger(__name__)

SPREADSHEET_MIME_TYPES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/csv",
    }
)


@dataclass
class ResolvedDocument:
    """Presentation hint for one attached document."""

    doc_id: str
    name: str
    mime_type: str
    url: str | None = None  # images
    file_id: str | None = None  # provider-side uploaded file
    text_content: str | None = None  # locally converted spreadsheets

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class AttachmentResolver(Protocol):
    async def attach_to_conversation(self, tenant_id: str, document_ids: list[str], conversation_id: UUID) -> None: ...

    async def resolve(
        self,
        tenant_id: str,
        document_ids: list[str],
        conversation_id: UUID | None,
        api_key: str,
    ) -> list[ResolvedDocument]: ...


def build_user_content(text: str, docs: list[ResolvedDocument]) -> str | list[dict[str, Any]]:
    """User message content for the Responses API.

    Plain text when nothing is attached. Otherwise a part list whose first
    input_text carries converted spreadsheets, one reference line per
    document and then the user's text.
    """
    if not docs:
        return text

    refs = document_references(docs)
    full_text = f"{refs}\n\n{text}" if refs else text

    blocks = "\n\n".join(d.text_content for d in docs if d.text_content)
    if blocks:
        full_text = f"{blocks}\n\n{full_text}"

    parts: list[dict[str, Any]] = [{"type": "input_text", "text": full_text}]
    for d in docs:
        if d.is_image and d.url:
            parts.append({"type": "input_image", "image_url": d.url, "detail": "auto"})
        elif d.file_id:
            parts.append({"type": "input_file", "file_id": d.file_id})
    return parts


def document_references(docs: list[ResolvedDocument]) -> str:
    return "\n".join(f'[Attached document: "{d.name}" (id: {d.doc_id})]' for d in docs if d.doc_id)


def spreadsheet_to_text(data: bytes, name: str, mime_type: str) -> str:
    """Render every non-empty sheet as CSV under a sheet header."""
    if mime_type == "text/csv":
        sheets = {"Sheet1": pd.read_csv(io.BytesIO(data))}
    else:
        sheets = pd.read_excel(io.BytesIO(data), sheet_name=None)

    lines = [f'[Spreadsheet: "{name}"]']
    for sheet_name, frame in sheets.items():
        frame = frame.dropna(how="all")
        if frame.empty:
            continue
        lines.append(f"\n--- Sheet: {sheet_name} ---")
        lines.append(frame.to_csv(index=False).strip())
    return "\n".join(lines)


class HttpAttachmentResolver:
    """Resolves documents through the files service and the provider's Files API."""

    def __init__(
        self,
        files_base_url: str,
        provider_base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self._files = httpx.AsyncClient(base_url=files_base_url, timeout=timeout)
        self._provider = httpx.AsyncClient(base_url=provider_base_url, timeout=timeout)

    async def close(self) -> None:
        await self._files.aclose()
        await self._provider.aclose()

    async def resolve(
        self,
        tenant_id: str,
        document_ids: list[str],
        conversation_id: UUID | None,
        api_key: str,
    ) -> list[ResolvedDocument]:
        if conversation_id is not None:
            await self.attach_to_conversation(tenant_id, document_ids, conversation_id)

        results: list[ResolvedDocument] = []
        for doc_id in document_ids:
            results.append(await self._resolve_one(tenant_id, doc_id, api_key))
        logger.debug("Resolved %d attachment(s) for conversation %s", len(results), conversation_id)
        return results

    async def attach_to_conversation(self, tenant_id: str, document_ids: list[str], conversation_id: UUID) -> None:
        """Link documents to the conversation. Documents already linked elsewhere keep their link."""
        try:
            response = await self._files.patch(
                "/files/conversation",
                headers={"x-tenant-id": tenant_id},
                json={"documentIds": document_ids, "conversationId": str(conversation_id)},
            )
            response.raise_for_status()
        except Exception as e:
            logger.warning(
                "Could not link %d document(s) to conversation %s: %s", len(document_ids), conversation_id, e
            )

    async def _resolve_one(self, tenant_id: str, doc_id: str, api_key: str) -> ResolvedDocument:
        try:
            response = await self._files.get(f"/files/{doc_id}", headers={"x-tenant-id": tenant_id})
            response.raise_for_status()
            meta = response.json()
        except Exception as e:
            logger.warning("Document %s metadata unavailable: %s", doc_id, e)
            return ResolvedDocument(doc_id=doc_id, name=doc_id, mime_type="application/octet-stream")

        doc = ResolvedDocument(
            doc_id=str(meta.get("id") or doc_id),
            name=str(meta.get("name") or doc_id),
            mime_type=str(meta.get("mimeType") or "application/octet-stream"),
        )
        download_url = meta.get("downloadUrl")
        if not download_url:
            return doc

        try:
            if doc.is_image:
                doc.url = download_url
            elif doc.mime_type in SPREADSHEET_MIME_TYPES:
                data = await self._download(download_url)
                doc.text_content = await asyncio.to_thread(spreadsheet_to_text, data, doc.name, doc.mime_type)
            else:
                data = await self._download(download_url)
                doc.file_id = await self._upload(data, doc.name, doc.mime_type, api_key)
        except Exception as e:
            logger.warning("Document %s (%s) could not be prepared: %s", doc.doc_id, doc.mime_type, e)
        return doc

    async def _download(self, url: str) -> bytes:
        response = await self._files.get(url)
        response.raise_for_status()
        return response.content

    async def _upload(self, data: bytes, name: str, mime_type: str, api_key: str) -> str:
        response = await self._provider.post(
            "/files",
            headers={"authorization": f"Bearer {api_key}"},
            data={"purpose": "assistants"},
            files={"file": (name, data, mime_type)},
        )
        response.raise_for_status()
        return response.json()["id"]
