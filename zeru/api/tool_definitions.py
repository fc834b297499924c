"""Tool catalogue sent to the model on every turn.

Responses API function-tool format with strict JSON schemas: every
property is listed in ``required`` and optional values are nullable.
"""

from __future__ import annotations

from typing import Any

QUESTION_TOOL = "ask_user_question"
TITLE_TOOL = "update_conversation_title"

MEMORY_CATEGORIES = ["PREFERENCE", "FACT", "PROCEDURE", "DECISION", "CONTEXT"]
ACCOUNT_TYPES = ["ASSET", "LIABILITY", "EQUITY", "REVENUE", "EXPENSE"]
DOCUMENT_CATEGORIES = [
    "INVOICE",
    "RECEIPT",
    "CREDIT_NOTE",
    "DEBIT_NOTE",
    "CONTRACT",
    "BYLAWS",
    "TAX_RETURN",
    "VOUCHER",
    "PAYROLL",
    "OTHER",
]


def _function(name: str, description: str, properties: dict[str, Any], required: list[str] | None = None) -> dict:
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": list(properties) if required is None else required,
            "additionalProperties": False,
        },
        "strict": True,
    }


# ---------------------------------------------------------------------------
# Accounting
# ---------------------------------------------------------------------------

_LIST_ACCOUNTS = _function(
    "list_accounts",
    "List the tenant's chart of accounts. Use it to learn the available accounts before creating entries.",
    {},
)

_CREATE_ACCOUNT = _function(
    "create_account",
    "Create a new account in the chart of accounts. Check with list_accounts first that it does not exist.",
    {
        "code": {"type": "string", "description": 'Account code (e.g. "1.1.05", "2.1.03")'},
        "name": {"type": "string", "description": 'Descriptive account name (e.g. "Share capital")'},
        "type": {"type": "string", "enum": ACCOUNT_TYPES, "description": "Account type"},
        "parentCode": {
            "type": ["string", "null"],
            "description": "Code of the parent account, null for a root account",
        },
    },
)

_CREATE_JOURNAL_ENTRY = _function(
    "create_journal_entry",
    "Create a journal entry. Lines must balance (total debits = total credits). Use account codes from the chart of accounts.",
    {
        "date": {"type": "string", "description": 'Entry date, ISO 8601 (e.g. "2026-01-01")'},
        "description": {"type": "string", "description": "Entry description"},
        "fiscalPeriodId": {"type": "string", "description": "Fiscal period the entry belongs to"},
        "lines": {
            "type": "array",
            "description": "Entry lines (at least one debit and one credit)",
            "items": {
                "type": "object",
                "properties": {
                    "accountCode": {"type": "string", "description": "Code of the account to post to"},
                    "debit": {"type": "number", "description": "Debit amount (0 for a credit line)"},
                    "credit": {"type": "number", "description": "Credit amount (0 for a debit line)"},
                    "description": {"type": ["string", "null"], "description": "Line description, or null"},
                },
                "required": ["accountCode", "debit", "credit", "description"],
                "additionalProperties": False,
            },
        },
    },
)

_LIST_FISCAL_PERIODS = _function(
    "list_fiscal_periods",
    "List the available fiscal periods. Use it to get the fiscalPeriodId before creating entries.",
    {},
)

_CREATE_FISCAL_PERIOD = _function(
    "create_fiscal_period",
    'Create a fiscal period. Required before creating journal entries. Example: "January 2025" '
    "from 2025-01-01 to 2025-01-31. Prefer monthly periods unless the user asks otherwise.",
    {
        "name": {"type": "string", "description": 'Period name (e.g. "Year 2024", "January 2025")'},
        "startDate": {"type": "string", "description": "Start date, ISO 8601"},
        "endDate": {"type": "string", "description": "End date, ISO 8601"},
    },
)

_CREATE_CHART_TEMPLATE = _function(
    "create_chart_of_accounts_template",
    "Create the standard chart of accounts for the tenant (assets, liabilities, equity, revenue and "
    "expenses). Use it when the chart of accounts is empty.",
    {},
)

_LIST_JOURNAL_ENTRIES = _function(
    "list_journal_entries",
    "List the tenant's journal entries with their lines. Can filter by status (DRAFT, POSTED, VOIDED).",
    {
        "status": {
            "type": ["string", "null"],
            "enum": ["DRAFT", "POSTED", "VOIDED", None],
            "description": "Status filter, null for all",
        },
        "page": {"type": ["number", "null"], "description": "Page number (1-based), null for the first"},
    },
)

_POST_JOURNAL_ENTRY = _function(
    "post_journal_entry",
    "Move a journal entry from DRAFT to POSTED. Only DRAFT entries can be posted; posted entries affect balances.",
    {"journalEntryId": {"type": "string", "description": "Journal entry to post"}},
)

_GET_TRIAL_BALANCE = _function(
    "get_trial_balance",
    "Get the trial balance for a fiscal period.",
    {"fiscalPeriodId": {"type": "string", "description": "Fiscal period ID"}},
)

# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

_TAG_DOCUMENT = _function(
    "tag_document",
    "Tag an attached document with an accounting category and descriptive tags. Call it whenever the "
    "user attaches a file, before proposing entries.",
    {
        "documentId": {"type": "string", "description": "Document to tag"},
        "category": {"type": "string", "enum": DOCUMENT_CATEGORIES, "description": "Main document category"},
        "tags": {
            "type": "array",
            "description": 'Free-form tags (e.g. ["VAT", "supplier"])',
            "items": {"type": "string"},
        },
    },
)

_LINK_DOCUMENT = _function(
    "link_document_to_entry",
    "Link a document to a journal entry. Call it after creating each entry that comes from an attached document.",
    {
        "documentId": {"type": "string", "description": "Attached document ID"},
        "journalEntryId": {"type": "string", "description": "Journal entry ID"},
    },
)

_GET_DOCUMENT_ENTRIES = _function(
    "get_document_journal_entries",
    "Check whether a document already has linked journal entries. Call it BEFORE creating an entry for "
    "an attached document; if entries exist, do not create another one.",
    {"documentId": {"type": "string", "description": "Attached document ID"}},
)

# ---------------------------------------------------------------------------
# Conversation control
# ---------------------------------------------------------------------------

_UPDATE_TITLE = _function(
    TITLE_TOOL,
    "Set a short descriptive title for the current conversation (at most 6 words, in the user's "
    "language). Call it as soon as the topic is clear; call it again if the topic changes.",
    {"title": {"type": "string", "description": "Conversation title (at most 6 words)"}},
)

_ASK_USER_QUESTION = _function(
    QUESTION_TOOL,
    "Ask the user a question when more information is needed to finish a task. Offer suggested "
    "options. Use it ONLY when it is essential to continue.",
    {
        "question": {"type": "string", "description": "Clear, specific question for the user"},
        "options": {
            "type": "array",
            "description": "Suggested answers (2 to 6)",
            "items": {
                "type": "object",
                "properties": {"id": {"type": "string"}, "label": {"type": "string"}},
                "required": ["id", "label"],
                "additionalProperties": False,
            },
        },
        "allowFreeText": {
            "type": "boolean",
            "description": "Whether the user may type a free-form answer besides the options",
        },
    },
)

# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------

_MEMORY_STORE = _function(
    "memory_store",
    "Save an important fact, preference, decision or procedure to persistent memory. Use it when you "
    "learn something about the organization or the user that should be remembered in future "
    "conversations. Do not store transient data or query results.",
    {
        "content": {"type": "string", "description": "The fact to remember, as one complete sentence"},
        "category": {
            "type": "string",
            "enum": MEMORY_CATEGORIES,
            "description": "PREFERENCE, FACT (business data), PROCEDURE (recurring), DECISION or CONTEXT",
        },
        "importance": {"type": "number", "description": "Relevance from 1 to 10 (10 = critical)"},
        "scope": {
            "type": "string",
            "enum": ["tenant", "user"],
            "description": "tenant = shared with the whole organization, user = personal to the current user",
        },
        "documentId": {
            "type": "string",
            "description": 'Source document ID when extracted from an attachment, "" otherwise',
        },
    },
)

_MEMORY_SEARCH = _function(
    "memory_search",
    "Search persistent memory by semantic similarity.",
    {
        "query": {"type": "string", "description": "What you want to remember"},
        "scope": {
            "type": "string",
            "enum": ["tenant", "user", "all"],
            "description": "tenant = organization only, user = current user only, all = both",
        },
    },
)

_MEMORY_DELETE = _function(
    "memory_delete",
    "Delete a memory that is no longer valid, outdated or saved by mistake.",
    {
        "memoryId": {"type": "string", "description": "Memory ID (from memory_search)"},
        "reason": {"type": "string", "description": "Short reason, for the internal log"},
    },
)

TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    tool["name"]: tool
    for tool in (
        _LIST_ACCOUNTS,
        _CREATE_ACCOUNT,
        _CREATE_JOURNAL_ENTRY,
        _LIST_FISCAL_PERIODS,
        _CREATE_FISCAL_PERIOD,
        _CREATE_CHART_TEMPLATE,
        _LIST_JOURNAL_ENTRIES,
        _POST_JOURNAL_ENTRY,
        _GET_TRIAL_BALANCE,
        _TAG_DOCUMENT,
        _LINK_DOCUMENT,
        _GET_DOCUMENT_ENTRIES,
        _UPDATE_TITLE,
        _ASK_USER_QUESTION,
        _MEMORY_STORE,
        _MEMORY_SEARCH,
        _MEMORY_DELETE,
    )
}

# Human-readable labels shown while a tool runs
TOOL_LABELS: dict[str, str] = {
    TITLE_TOOL: "Updating conversation title",
    "list_accounts": "Reading chart of accounts",
    "create_account": "Creating account",
    "create_journal_entry": "Creating journal entry",
    "create_fiscal_period": "Creating fiscal period",
    "create_chart_of_accounts_template": "Creating standard chart of accounts",
    "list_journal_entries": "Reading journal entries",
    "list_fiscal_periods": "Reading fiscal periods",
    "post_journal_entry": "Posting journal entry",
    "get_trial_balance": "Getting trial balance",
    "tag_document": "Classifying document",
    "link_document_to_entry": "Linking document to entry",
    "get_document_journal_entries": "Checking document entries",
    QUESTION_TOOL: "Asking the user",
    "memory_store": "Saving to memory",
    "memory_search": "Searching memory",
    "memory_delete": "Deleting from memory",
}


def tool_label(name: str) -> str:
    return TOOL_LABELS.get(name, name)
