"""Accounting and document tools.

The accounting CRUD lives in another service; these closures only adapt
model arguments to an injected AccountingBackend and shape the result
envelope. Each closure catches its own errors.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from zeru.api.tools import ToolContext, ToolDispatcher, ToolHandler, ToolResult

logger = logging.getLogger(__name__)

JOURNAL_PAGE_SIZE = 10


class AccountingBackend(Protocol):
    """Domain services the accounting tools call. Methods may raise."""

    async def list_accounts(self, tenant_id: str) -> list[dict[str, Any]]: ...

    async def find_account_by_code(self, tenant_id: str, code: str) -> dict[str, Any] | None: ...

    async def create_account(
        self, tenant_id: str, code: str, name: str, type: str, parent_id: str | None
    ) -> dict[str, Any]: ...

    async def create_journal_entry(
        self,
        tenant_id: str,
        date: str,
        description: str,
        fiscal_period_id: str,
        lines: list[dict[str, Any]],
    ) -> dict[str, Any]: ...

    async def list_journal_entries(
        self, tenant_id: str, page: int, per_page: int, status: str | None
    ) -> dict[str, Any]: ...

    async def post_journal_entry(self, tenant_id: str, journal_entry_id: str) -> dict[str, Any]: ...

    async def list_fiscal_periods(self, tenant_id: str) -> list[dict[str, Any]]: ...

    async def create_fiscal_period(self, tenant_id: str, name: str, start_date: str, end_date: str) -> dict[str, Any]: ...

    async def trial_balance(self, tenant_id: str, fiscal_period_id: str) -> list[dict[str, Any]]: ...

    async def tag_document(self, tenant_id: str, document_id: str, category: str, tags: list[str]) -> dict[str, Any]: ...

    async def link_document_to_entry(self, tenant_id: str, document_id: str, journal_entry_id: str) -> None: ...

    async def document_journal_entries(self, tenant_id: str, document_id: str) -> list[dict[str, Any]]: ...


class HttpAccountingBackend:
    """AccountingBackend over the accounting service's REST API.

    Tenant identity travels in the x-tenant-id header, as for any other
    internal caller behind the gateway.
    """

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, tenant_id: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, headers={"x-tenant-id": tenant_id}, **kwargs)
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            raise RuntimeError(f"Accounting service returned {response.status_code}: {message}")
        return response.json() if response.content else None

    async def list_accounts(self, tenant_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", "/accounting/accounts", tenant_id)

    async def find_account_by_code(self, tenant_id: str, code: str) -> dict[str, Any] | None:
        for account in flatten_accounts(await self.list_accounts(tenant_id)):
            if account["code"] == code:
                return account
        return None

    async def create_account(
        self, tenant_id: str, code: str, name: str, type: str, parent_id: str | None
    ) -> dict[str, Any]:
        body = {"code": code, "name": name, "type": type}
        if parent_id:
            body["parentId"] = parent_id
        return await self._request("POST", "/accounting/accounts", tenant_id, json=body)

    async def create_journal_entry(
        self,
        tenant_id: str,
        date: str,
        description: str,
        fiscal_period_id: str,
        lines: list[dict[str, Any]],
    ) -> dict[str, Any]:
        body = {"date": date, "description": description, "fiscalPeriodId": fiscal_period_id, "lines": lines}
        return await self._request("POST", "/accounting/journal-entries", tenant_id, json=body)

    async def list_journal_entries(
        self, tenant_id: str, page: int, per_page: int, status: str | None
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "perPage": per_page}
        if status:
            params["status"] = status
        return await self._request("GET", "/accounting/journal-entries", tenant_id, params=params)

    async def post_journal_entry(self, tenant_id: str, journal_entry_id: str) -> dict[str, Any]:
        return await self._request("PATCH", f"/accounting/journal-entries/{journal_entry_id}/post", tenant_id)

    async def list_fiscal_periods(self, tenant_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", "/accounting/fiscal-periods", tenant_id)

    async def create_fiscal_period(self, tenant_id: str, name: str, start_date: str, end_date: str) -> dict[str, Any]:
        body = {"name": name, "startDate": start_date, "endDate": end_date}
        return await self._request("POST", "/accounting/fiscal-periods", tenant_id, json=body)

    async def trial_balance(self, tenant_id: str, fiscal_period_id: str) -> list[dict[str, Any]]:
        params = {"fiscalPeriodId": fiscal_period_id}
        return await self._request("GET", "/accounting/reports/trial-balance", tenant_id, params=params)

    async def tag_document(self, tenant_id: str, document_id: str, category: str, tags: list[str]) -> dict[str, Any]:
        body = {"category": category, "tags": tags}
        return await self._request("PATCH", f"/files/{document_id}/metadata", tenant_id, json=body)

    async def link_document_to_entry(self, tenant_id: str, document_id: str, journal_entry_id: str) -> None:
        body = {"journalEntryId": journal_entry_id}
        await self._request("POST", f"/files/{document_id}/journal-entries", tenant_id, json=body)

    async def document_journal_entries(self, tenant_id: str, document_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/files/{document_id}/journal-entries", tenant_id)


# Standard chart of accounts: (code, name, type, parent code). Parents come first.
CHART_OF_ACCOUNTS_TEMPLATE: list[tuple[str, str, str, str | None]] = [
    ("1", "Assets", "ASSET", None),
    ("1.1", "Current Assets", "ASSET", "1"),
    ("1.2", "Non-current Assets", "ASSET", "1"),
    ("2", "Liabilities", "LIABILITY", None),
    ("2.1", "Current Liabilities", "LIABILITY", "2"),
    ("2.2", "Non-current Liabilities", "LIABILITY", "2"),
    ("3", "Equity", "EQUITY", None),
    ("3.1", "Capital", "EQUITY", "3"),
    ("4", "Revenue", "REVENUE", None),
    ("4.1", "Operating Revenue", "REVENUE", "4"),
    ("4.2", "Other Revenue", "REVENUE", "4"),
    ("5", "Expenses", "EXPENSE", None),
    ("5.1", "Costs", "EXPENSE", "5"),
    ("5.2", "Administrative and Selling Expenses", "EXPENSE", "5"),
    ("1.1.01", "Cash and Banks", "ASSET", "1.1"),
    ("1.1.02", "Accounts Receivable", "ASSET", "1.1"),
    ("1.1.03", "Recoverable Taxes", "ASSET", "1.1"),
    ("1.1.04", "Inventory", "ASSET", "1.1"),
    ("1.1.05", "Other Current Assets", "ASSET", "1.1"),
    ("1.2.01", "Property and Equipment", "ASSET", "1.2"),
    ("1.2.02", "Accumulated Depreciation", "ASSET", "1.2"),
    ("1.2.03", "Intangibles", "ASSET", "1.2"),
    ("2.1.01", "Suppliers and Payables", "LIABILITY", "2.1"),
    ("2.1.02", "Taxes Payable", "LIABILITY", "2.1"),
    ("2.1.03", "Salaries Payable", "LIABILITY", "2.1"),
    ("2.2.01", "Long-term Financial Debt", "LIABILITY", "2.2"),
    ("3.1.01", "Paid-in Capital", "EQUITY", "3.1"),
    ("3.1.02", "Reserves", "EQUITY", "3.1"),
    ("3.1.03", "Retained Earnings", "EQUITY", "3.1"),
    ("3.1.04", "Net Income for the Year", "EQUITY", "3.1"),
    ("1.1.01.001", "Cash", "ASSET", "1.1.01"),
    ("1.1.01.002", "Bank Checking Account", "ASSET", "1.1.01"),
    ("1.1.02.001", "Customers", "ASSET", "1.1.02"),
    ("1.1.02.002", "Notes Receivable", "ASSET", "1.1.02"),
    ("1.1.02.003", "Sundry Debtors", "ASSET", "1.1.02"),
    ("1.1.03.001", "VAT Input Credit", "ASSET", "1.1.03"),
    ("1.1.03.002", "Recoverable Tax Prepayments", "ASSET", "1.1.03"),
    ("1.1.04.001", "Merchandise Inventory", "ASSET", "1.1.04"),
    ("1.1.05.001", "Shareholder Receivables", "ASSET", "1.1.05"),
    ("1.1.05.002", "Prepaid Expenses", "ASSET", "1.1.05"),
    ("1.2.01.001", "Machinery and Equipment", "ASSET", "1.2.01"),
    ("1.2.01.002", "Furniture and Fixtures", "ASSET", "1.2.01"),
    ("1.2.01.003", "Computer Equipment", "ASSET", "1.2.01"),
    ("1.2.01.004", "Vehicles", "ASSET", "1.2.01"),
    ("1.2.02.001", "Accum. Depreciation Machinery", "ASSET", "1.2.02"),
    ("1.2.02.002", "Accum. Depreciation Furniture", "ASSET", "1.2.02"),
    ("1.2.02.003", "Accum. Depreciation Equipment", "ASSET", "1.2.02"),
    ("1.2.03.001", "Software and Licenses", "ASSET", "1.2.03"),
    ("2.1.01.001", "Suppliers", "LIABILITY", "2.1.01"),
    ("2.1.01.002", "Notes Payable", "LIABILITY", "2.1.01"),
    ("2.1.01.003", "Sundry Creditors", "LIABILITY", "2.1.01"),
    ("2.1.02.001", "VAT Output Debit", "LIABILITY", "2.1.02"),
    ("2.1.02.002", "Withholdings Payable", "LIABILITY", "2.1.02"),
    ("2.1.02.003", "Tax Prepayments Payable", "LIABILITY", "2.1.02"),
    ("2.1.02.004", "Income Tax Payable", "LIABILITY", "2.1.02"),
    ("2.1.03.001", "Salaries Payable", "LIABILITY", "2.1.03"),
    ("2.1.03.002", "Social Security Payable", "LIABILITY", "2.1.03"),
    ("2.2.01.001", "Long-term Bank Loans", "LIABILITY", "2.2.01"),
    ("4.1.01.001", "Taxable Sales", "REVENUE", "4.1"),
    ("4.1.01.002", "Exempt Sales", "REVENUE", "4.1"),
    ("4.2.01.001", "Financial Income", "REVENUE", "4.2"),
    ("4.2.01.002", "Other Non-operating Income", "REVENUE", "4.2"),
    ("5.1.01.001", "Cost of Sales", "EXPENSE", "5.1"),
    ("5.2.01.001", "Salaries", "EXPENSE", "5.2"),
    ("5.2.01.002", "Employer Social Security", "EXPENSE", "5.2"),
    ("5.2.02.001", "Rent", "EXPENSE", "5.2"),
    ("5.2.02.002", "Utilities", "EXPENSE", "5.2"),
    ("5.2.03.001", "Professional Fees", "EXPENSE", "5.2"),
    ("5.2.04.001", "Depreciation Expense", "EXPENSE", "5.2"),
    ("5.2.05.001", "General Administrative Expenses", "EXPENSE", "5.2"),
    ("5.2.06.001", "Financial Expenses", "EXPENSE", "5.2"),
]


def flatten_accounts(accounts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Depth-first flattening of an account tree (``children`` lists)."""
    flat: list[dict[str, Any]] = []
    stack = list(reversed(accounts))
    while stack:
        account = stack.pop()
        flat.append({k: account.get(k) for k in ("id", "code", "name", "type")})
        stack.extend(reversed(account.get("children") or []))
    return flat


def create_accounting_tools(backend: AccountingBackend) -> dict[str, ToolHandler]:
    """Create accounting tool closures with the backend captured in closure context."""

    async def list_accounts(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            flat = flatten_accounts(await backend.list_accounts(ctx.tenant_id))
            return ToolResult(success=True, data=flat, summary=f"Chart of accounts: {len(flat)} accounts")
        except Exception as e:
            logger.exception("list_accounts tool failed")
            return ToolResult.failure(str(e))

    async def create_account(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            parent_id = None
            if args.get("parentCode"):
                parent = await backend.find_account_by_code(ctx.tenant_id, str(args["parentCode"]))
                if parent is not None:
                    parent_id = parent["id"]
            account = await backend.create_account(
                ctx.tenant_id, str(args["code"]), str(args["name"]), str(args["type"]), parent_id
            )
            return ToolResult(
                success=True, data=account, summary=f"Account created: {account['code']} - {account['name']}"
            )
        except Exception as e:
            logger.exception("create_account tool failed")
            return ToolResult.failure(str(e))

    async def create_journal_entry(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            lines = []
            for line in args.get("lines") or []:
                account = await backend.find_account_by_code(ctx.tenant_id, str(line["accountCode"]))
                if account is None:
                    return ToolResult.failure(
                        f"Account not found: {line['accountCode']}",
                        f'Error: account "{line["accountCode"]}" is not in the chart of accounts',
                    )
                lines.append(
                    {
                        "accountId": account["id"],
                        "debit": float(line.get("debit") or 0),
                        "credit": float(line.get("credit") or 0),
                        "description": line.get("description"),
                    }
                )

            entry = await backend.create_journal_entry(
                ctx.tenant_id,
                str(args["date"]),
                str(args["description"]),
                str(args["fiscalPeriodId"]),
                lines,
            )
            total_debit = sum(line["debit"] for line in lines)
            return ToolResult(
                success=True,
                data=entry,
                summary=f"Entry #{entry.get('number')} created: {entry.get('description')} (debit {total_debit:,.2f})",
            )
        except Exception as e:
            logger.exception("create_journal_entry tool failed")
            return ToolResult.failure(str(e))

    async def list_fiscal_periods(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            periods = await backend.list_fiscal_periods(ctx.tenant_id)
            return ToolResult(success=True, data=periods, summary=f"{len(periods)} fiscal period(s)")
        except Exception as e:
            logger.exception("list_fiscal_periods tool failed")
            return ToolResult.failure(str(e))

    async def create_fiscal_period(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            period = await backend.create_fiscal_period(
                ctx.tenant_id, str(args["name"]), str(args["startDate"]), str(args["endDate"])
            )
            return ToolResult(
                success=True,
                data=period,
                summary=f"Fiscal period created: {period.get('name')} ({args['startDate']} to {args['endDate']})",
            )
        except Exception as e:
            logger.exception("create_fiscal_period tool failed")
            return ToolResult.failure(str(e))

    async def create_chart_of_accounts_template(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            existing = flatten_accounts(await backend.list_accounts(ctx.tenant_id))
            if existing:
                return ToolResult.failure(
                    "Chart of accounts is not empty",
                    f"The chart of accounts already has {len(existing)} accounts. Template not created.",
                )

            ids: dict[str, str] = {}
            for code, name, account_type, parent_code in CHART_OF_ACCOUNTS_TEMPLATE:
                account = await backend.create_account(
                    ctx.tenant_id, code, name, account_type, ids.get(parent_code) if parent_code else None
                )
                ids[code] = account["id"]
            return ToolResult(
                success=True,
                data={"accountsCreated": len(ids)},
                summary=f"Standard chart of accounts created with {len(ids)} accounts",
            )
        except Exception as e:
            logger.exception("create_chart_of_accounts_template tool failed")
            return ToolResult.failure(str(e))

    async def list_journal_entries(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            status = args.get("status") if args.get("status") in ("DRAFT", "POSTED", "VOIDED") else None
            page = int(args.get("page") or 1)
            result = await backend.list_journal_entries(ctx.tenant_id, page, JOURNAL_PAGE_SIZE, status)
            entries = result.get("data", [])
            meta = result.get("meta", {})
            return ToolResult(
                success=True,
                data={"entries": entries, "meta": meta},
                summary=f"{len(entries)} entr(y/ies) found (page {meta.get('page', page)}/{meta.get('totalPages', 1)})",
            )
        except Exception as e:
            logger.exception("list_journal_entries tool failed")
            return ToolResult.failure(str(e))

    async def post_journal_entry(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            entry = await backend.post_journal_entry(ctx.tenant_id, str(args["journalEntryId"]))
            return ToolResult(success=True, data=entry, summary=f"Entry #{entry.get('number')} posted")
        except Exception as e:
            logger.exception("post_journal_entry tool failed")
            return ToolResult.failure(str(e))

    async def get_trial_balance(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            balance = await backend.trial_balance(ctx.tenant_id, str(args["fiscalPeriodId"]))
            return ToolResult(success=True, data=balance, summary=f"Trial balance: {len(balance)} accounts")
        except Exception as e:
            logger.exception("get_trial_balance tool failed")
            return ToolResult.failure(str(e))

    async def tag_document(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            doc = await backend.tag_document(
                ctx.tenant_id, str(args["documentId"]), str(args["category"]), list(args.get("tags") or [])
            )
            tags = doc.get("tags") or []
            return ToolResult(
                success=True,
                data={"id": doc.get("id"), "category": doc.get("category"), "tags": tags},
                summary=f"Document classified as {doc.get('category')} with {len(tags)} tag(s)",
            )
        except Exception as e:
            logger.exception("tag_document tool failed")
            return ToolResult.failure(str(e))

    async def link_document_to_entry(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            await backend.link_document_to_entry(ctx.tenant_id, str(args["documentId"]), str(args["journalEntryId"]))
            return ToolResult(
                success=True,
                data={"documentId": args["documentId"], "journalEntryId": args["journalEntryId"]},
                summary="Document linked to entry",
            )
        except Exception as e:
            logger.exception("link_document_to_entry tool failed")
            return ToolResult.failure(str(e))

    async def get_document_journal_entries(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            entries = await backend.document_journal_entries(ctx.tenant_id, str(args["documentId"]))
            if entries:
                summary = f"Document already has {len(entries)} linked entr(y/ies)"
            else:
                summary = "Document has no linked entries"
            return ToolResult(success=True, data=entries, summary=summary)
        except Exception as e:
            logger.exception("get_document_journal_entries tool failed")
            return ToolResult.failure(str(e))

    return {
        "list_accounts": list_accounts,
        "create_account": create_account,
        "create_journal_entry": create_journal_entry,
        "list_fiscal_periods": list_fiscal_periods,
        "create_fiscal_period": create_fiscal_period,
        "create_chart_of_accounts_template": create_chart_of_accounts_template,
        "list_journal_entries": list_journal_entries,
        "post_journal_entry": post_journal_entry,
        "get_trial_balance": get_trial_balance,
        "tag_document": tag_document,
        "link_document_to_entry": link_document_to_entry,
        "get_document_journal_entries": get_document_journal_entries,
    }


def register_accounting_tools(dispatcher: ToolDispatcher, backend: AccountingBackend) -> None:
    """Create accounting tools and register them with the dispatcher."""
    for name, handler in create_accounting_tools(backend).items():
        dispatcher.register(name, handler)
