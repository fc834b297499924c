"""Tests for the accounting/document tool closures and the HTTP backend."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from zeru.api.accounting_tools import (
    CHART_OF_ACCOUNTS_TEMPLATE,
    JOURNAL_PAGE_SIZE,
    HttpAccountingBackend,
    create_accounting_tools,
    flatten_accounts,
)
from zeru.api.tools import ToolContext

CTX = ToolContext(tenant_id="tenant-1", user_id="user-1")

ACCOUNT_TREE = [
    {
        "id": "a1",
        "code": "1",
        "name": "Assets",
        "type": "ASSET",
        "children": [
            {"id": "a11", "code": "1.1", "name": "Current Assets", "type": "ASSET", "children": []},
        ],
    },
    {"id": "a3", "code": "3", "name": "Equity", "type": "EQUITY"},
]


def _backend() -> MagicMock:
    backend = MagicMock()
    for name in (
        "list_accounts",
        "find_account_by_code",
        "create_account",
        "create_journal_entry",
        "list_journal_entries",
        "post_journal_entry",
        "list_fiscal_periods",
        "create_fiscal_period",
        "trial_balance",
        "tag_document",
        "link_document_to_entry",
        "document_journal_entries",
    ):
        setattr(backend, name, AsyncMock())
    return backend


class TestFlattenAccounts:
    def test_depth_first_order(self):
        flat = flatten_accounts(ACCOUNT_TREE)
        assert [a["code"] for a in flat] == ["1", "1.1", "3"]
        assert flat[1] == {"id": "a11", "code": "1.1", "name": "Current Assets", "type": "ASSET"}

    def test_template_parents_come_first(self):
        seen = set()
        for code, _name, _type, parent in CHART_OF_ACCOUNTS_TEMPLATE:
            assert parent is None or parent in seen, code
            seen.add(code)


class TestAccountTools:
    @pytest.mark.asyncio
    async def test_list_accounts_flattens(self):
        backend = _backend()
        backend.list_accounts.return_value = ACCOUNT_TREE
        tools = create_accounting_tools(backend)

        result = await tools["list_accounts"]({}, CTX)

        assert result.success is True
        assert len(result.data) == 3
        assert result.summary == "Chart of accounts: 3 accounts"

    @pytest.mark.asyncio
    async def test_create_account_resolves_parent(self):
        backend = _backend()
        backend.find_account_by_code.return_value = {"id": "a11", "code": "1.1"}
        backend.create_account.return_value = {"id": "new", "code": "1.1.05", "name": "Petty cash"}
        tools = create_accounting_tools(backend)

        result = await tools["create_account"](
            {"code": "1.1.05", "name": "Petty cash", "type": "ASSET", "parentCode": "1.1"}, CTX
        )

        backend.create_account.assert_awaited_once_with("tenant-1", "1.1.05", "Petty cash", "ASSET", "a11")
        assert result.summary == "Account created: 1.1.05 - Petty cash"

    @pytest.mark.asyncio
    async def test_backend_error_is_a_failed_result(self):
        backend = _backend()
        backend.list_accounts.side_effect = RuntimeError("Accounting service returned 500: boom")
        tools = create_accounting_tools(backend)

        result = await tools["list_accounts"]({}, CTX)

        assert result.success is False
        assert result.data == {"error": "Accounting service returned 500: boom"}

    @pytest.mark.asyncio
    async def test_template_refuses_non_empty_chart(self):
        backend = _backend()
        backend.list_accounts.return_value = ACCOUNT_TREE
        tools = create_accounting_tools(backend)

        result = await tools["create_chart_of_accounts_template"]({}, CTX)

        assert result.success is False
        backend.create_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_template_wires_parent_ids(self):
        backend = _backend()
        backend.list_accounts.return_value = []
        backend.create_account.side_effect = lambda tenant, code, name, type, parent_id: {"id": f"id-{code}"}
        tools = create_accounting_tools(backend)

        result = await tools["create_chart_of_accounts_template"]({}, CTX)

        assert result.success is True
        assert result.data == {"accountsCreated": len(CHART_OF_ACCOUNTS_TEMPLATE)}
        calls = {c.args[1]: c.args[4] for c in backend.create_account.await_args_list}
        assert calls["1"] is None
        assert calls["1.1"] == "id-1"
        assert calls["1.1.01.001"] == "id-1.1.01"


class TestJournalTools:
    @pytest.mark.asyncio
    async def test_create_entry_maps_codes_to_ids(self):
        backend = _backend()
        backend.find_account_by_code.side_effect = lambda tenant, code: {"id": f"id-{code}", "code": code}
        backend.create_journal_entry.return_value = {"id": "je-1", "number": 7, "description": "Capital"}
        tools = create_accounting_tools(backend)

        result = await tools["create_journal_entry"](
            {
                "date": "2026-01-01",
                "description": "Capital",
                "fiscalPeriodId": "fp-1",
                "lines": [
                    {"accountCode": "1.1.01.002", "debit": 1000000, "credit": 0, "description": None},
                    {"accountCode": "3.1.01", "debit": 0, "credit": 1000000, "description": None},
                ],
            },
            CTX,
        )

        assert result.success is True
        assert result.summary == "Entry #7 created: Capital (debit 1,000,000.00)"
        tenant, date, description, period, lines = backend.create_journal_entry.await_args.args
        assert (tenant, date, description, period) == ("tenant-1", "2026-01-01", "Capital", "fp-1")
        assert [line["accountId"] for line in lines] == ["id-1.1.01.002", "id-3.1.01"]
        assert lines[0]["debit"] == 1000000.0

    @pytest.mark.asyncio
    async def test_unknown_account_code_stops_before_creating(self):
        backend = _backend()
        backend.find_account_by_code.return_value = None
        tools = create_accounting_tools(backend)

        result = await tools["create_journal_entry"](
            {
                "date": "2026-01-01",
                "description": "x",
                "fiscalPeriodId": "fp-1",
                "lines": [{"accountCode": "9.9", "debit": 1, "credit": 0, "description": None}],
            },
            CTX,
        )

        assert result.success is False
        assert result.data == {"error": "Account not found: 9.9"}
        backend.create_journal_entry.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_entries_paginates_and_filters(self):
        backend = _backend()
        backend.list_journal_entries.return_value = {
            "data": [{"id": "je-1"}],
            "meta": {"page": 2, "totalPages": 3},
        }
        tools = create_accounting_tools(backend)

        result = await tools["list_journal_entries"]({"status": "DRAFT", "page": 2}, CTX)

        backend.list_journal_entries.assert_awaited_once_with("tenant-1", 2, JOURNAL_PAGE_SIZE, "DRAFT")
        assert result.summary == "1 entr(y/ies) found (page 2/3)"

    @pytest.mark.asyncio
    async def test_list_entries_ignores_unknown_status(self):
        backend = _backend()
        backend.list_journal_entries.return_value = {"data": [], "meta": {}}
        tools = create_accounting_tools(backend)

        await tools["list_journal_entries"]({"status": "WHATEVER", "page": None}, CTX)

        backend.list_journal_entries.assert_awaited_once_with("tenant-1", 1, JOURNAL_PAGE_SIZE, None)


class TestDocumentTools:
    @pytest.mark.asyncio
    async def test_tag_document(self):
        backend = _backend()
        backend.tag_document.return_value = {"id": "doc-1", "category": "INVOICE", "tags": ["VAT", "supplier"]}
        tools = create_accounting_tools(backend)

        result = await tools["tag_document"](
            {"documentId": "doc-1", "category": "INVOICE", "tags": ["VAT", "supplier"]}, CTX
        )

        assert result.data == {"id": "doc-1", "category": "INVOICE", "tags": ["VAT", "supplier"]}
        assert result.summary == "Document classified as INVOICE with 2 tag(s)"

    @pytest.mark.asyncio
    async def test_document_entries_summary(self):
        backend = _backend()
        backend.document_journal_entries.return_value = [{"id": "je-1"}]
        tools = create_accounting_tools(backend)

        result = await tools["get_document_journal_entries"]({"documentId": "doc-1"}, CTX)

        assert result.summary == "Document already has 1 linked entr(y/ies)"


# ---------------------------------------------------------------------------
# HttpAccountingBackend
# ---------------------------------------------------------------------------


def _http_backend(handler) -> HttpAccountingBackend:
    backend = HttpAccountingBackend("http://accounting.test")
    backend._client = httpx.AsyncClient(base_url="http://accounting.test", transport=httpx.MockTransport(handler))
    return backend


class TestHttpAccountingBackend:
    @pytest.mark.asyncio
    async def test_sends_tenant_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["tenant"] = request.headers["x-tenant-id"]
            seen["path"] = request.url.path
            return httpx.Response(200, json=ACCOUNT_TREE)

        backend = _http_backend(handler)
        account = await backend.find_account_by_code("tenant-1", "1.1")
        await backend.close()

        assert account["id"] == "a11"
        assert seen == {"tenant": "tenant-1", "path": "/accounting/accounts"}

    @pytest.mark.asyncio
    async def test_create_account_body(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "x", "code": "3.1.05", "name": "Other"})

        backend = _http_backend(handler)
        await backend.create_account("tenant-1", "3.1.05", "Other", "EQUITY", None)
        await backend.create_account("tenant-1", "3.1.06", "More", "EQUITY", "p-1")
        await backend.close()

        assert bodies[0] == {"code": "3.1.05", "name": "Other", "type": "EQUITY"}
        assert bodies[1]["parentId"] == "p-1"

    @pytest.mark.asyncio
    async def test_list_entries_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"data": [], "meta": {}})

        backend = _http_backend(handler)
        await backend.list_journal_entries("tenant-1", 1, 10, None)
        await backend.close()

        assert seen["params"] == {"page": "1", "perPage": "10"}

    @pytest.mark.asyncio
    async def test_error_status_raises_with_message(self):
        backend = _http_backend(lambda request: httpx.Response(400, json={"message": "Entry is not balanced"}))
        with pytest.raises(RuntimeError, match="400: Entry is not balanced"):
            await backend.create_journal_entry("tenant-1", "2026-01-01", "x", "fp-1", [])
        await backend.close()

    @pytest.mark.asyncio
    async def test_empty_body_is_none(self):
        backend = _http_backend(lambda request: httpx.Response(204))
        assert await backend.link_document_to_entry("tenant-1", "doc-1", "je-1") is None
        await backend.close()
