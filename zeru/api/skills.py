"""Active skills: tenant-installed instruction packs for the system preamble.

Skills are installed and edited elsewhere; this module only reads the
active ones and renders them as prompt text.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Skill(BaseModel):
    name: str
    description: str = ""
    content: str


class SkillsProvider(Protocol):
    async def get_active_skills_prompt(self, tenant_id: str) -> str: ...


def render_skills_prompt(skills: list[Skill]) -> str:
    """One block per skill, in installation order. Empty string when there are none."""
    blocks = []
    for skill in skills:
        lines = [f"### Skill: {skill.name}"]
        if skill.description:
            lines.append(skill.description)
        lines += ["", "#### Instructions", skill.content]
        blocks.append("\n".join(lines).strip())
    return "\n\n".join(blocks)


class HttpSkillsProvider:
    """Reads a tenant's active skills from the skills service."""

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_active_skills_prompt(self, tenant_id: str) -> str:
        try:
            response = await self._client.get(
                "/skills", params={"active": "true"}, headers={"x-tenant-id": tenant_id}
            )
            response.raise_for_status()
            skills = [Skill.model_validate(item) for item in response.json()]
        except Exception as e:
            logger.warning("Active skills unavailable for tenant %s: %s", tenant_id, e)
            return ""
        return render_skills_prompt(skills)
