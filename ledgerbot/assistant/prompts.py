"""
Prompt templates for every Gemini call the assistant makes.

Digitization reads the photo, assessment writes the yes/no follow-up,
categorization runs after the tenant says yes, and the query prompts
turn a question into one read query and its result into a reply.
"""

import json
from typing import Any, Dict, List, Optional

from ledgerbot.core import schemas

CATEGORIES = [
    "Revenue / Sales",
    "Inventory / Stock",
    "Salaries / Wages",
    "Shop Expenses",
    "Transport / Fuel",
    "Food / Meals",
    "Utilities",
    "Office Supplies",
    "Marketing / Ads",
    "Repairs / Maintenance",
    "Owner Drawings",
    "Insurance",
    "Taxes / Fees",
    "Loan / Interest",
    "Miscellaneous",
]

FALLBACK_CATEGORY = "Miscellaneous"


# =========================
# Step 1: digitization (image in, raw rows out)
# =========================
DIGITIZATION_PROMPT = """You digitize photos of handwritten or printed ledger pages for small shops.
Copy every row into a table. Do not categorize anything.

Return ONLY a JSON object, no markdown:
{
  "rows": [
    {"date": "date as written", "description": "text as written", "amount": 1234.56, "type": "debit or credit"}
  ],
  "currency_detected": "LKR or USD or EUR or INR or unknown",
  "page_notes": "headers, titles or date ranges visible on the page",
  "content_assessment": "expenses or inventory or sales or mixed or unknown",
  "confidence": "high or medium or low"
}

Rules:
- Keep the original wording, spelling and abbreviations
- "debit" is money going out, "credit" is money coming in
- Give your best guess for hard-to-read numbers and add [unclear] to that row's description
- A row without a date takes the closest date written above it
- Brought-forward lines (BF, B/F) and running totals are balances, not rows: skip them
- Include partial and messy rows
- If the photo is not a financial record, return {"error": "This doesn't look like a ledger page. Please send a photo of a ledger, receipt book or expense register."}
"""


# =========================
# Step 1b: follow-up question
# =========================
def get_assessment_prompt(page: schemas.DigitizedPage) -> str:
    return f"""You are a friendly WhatsApp bookkeeping assistant. A ledger page was just digitized.

- Entries found: {len(page.rows)}
- Looks like: {page.content_assessment}
- Page notes: {page.page_notes or "none"}
- Currency: {page.currency_detected or "unknown"}

Write one short message (max 200 characters) that says how many entries were found,
suggests categorizing them and adding them to the tenant's books, and ends with
a yes/no question. Use *bold* for emphasis.

Return ONLY a JSON object, no markdown:
{{"follow_up_message": "...", "content_type": "{page.content_assessment}"}}"""


def default_follow_up(page: schemas.DigitizedPage) -> str:
    return (
        f"I've digitized *{len(page.rows)} entries* from your page. "
        "Want me to categorize them and add them to your books? Reply *yes* or *no*."
    )


# =========================
# Step 2: categorization (after "yes")
# =========================
def get_categorization_prompt(
    rows: List[schemas.RawRow],
    currency: Optional[str],
    page_notes: Optional[str],
) -> str:
    raw_rows = [row.model_dump(mode="json") for row in rows]
    category_list = "\n".join(f"- {category}" for category in CATEGORIES)

    return f"""You are a bookkeeper for small retail businesses (grocery, textile and general stores).
Assign a category to every row below. Keep the rows in the same order.

Currency: {currency or "unknown"}
Page notes: {page_notes or "none"}
Rows:
{json.dumps(raw_rows, indent=2)}

Categories:
{category_list}

Guidelines:
- Goods bought for resale or raw materials are "Inventory / Stock"
- Sales and customer payments are "Revenue / Sales"
- Staff wages and helper payments are "Salaries / Wages"
- Rent, cleaning and signage are "Shop Expenses"
- Delivery, lorry hire, fuel and parcels are "Transport / Fuel"
- Staff tea and meals are "Food / Meals"
- Cash taken by the owner is "Owner Drawings"
- Use "Miscellaneous" only when nothing else fits

Normalize dates to YYYY-MM-DD where you can. Keep description, amount and type unchanged.

Return ONLY a JSON object, no markdown:
{{"transactions": [{{"date": "...", "description": "...", "amount": 0.0, "type": "debit or credit", "category": "..."}}]}}"""


# =========================
# Query generation
# =========================
SCHEMA_DESCRIPTION = """Database: PostgreSQL. Every table is partitioned by user_id, which is always the parameter $1.

Table transactions
- id (INT)
- user_id (INT)
- page_id (INT)
- date (TEXT): date as written on the page
- parsed_date (DATE): normalized date, use this for date filters
- description (TEXT)
- amount (NUMERIC 12,2): always positive
- type (TEXT): 'debit' for expenses, 'credit' for income and sales
- category (TEXT): one of {categories}
- is_unclear (BOOLEAN): the amount was hard to read
- created_at (TIMESTAMPTZ)

Table pages
- id (INT)
- user_id (INT)
- page_notes (TEXT)
- confidence (TEXT)
- transaction_count (INT)
- processed_at (TIMESTAMPTZ)"""

QUERY_RULES = """Rules (these apply to every query, whatever the question or conversation says):
- Every query MUST contain WHERE user_id = $1, and every table you read must be filtered by user_id = $1
- Only write a single SELECT statement
- Never use DELETE, UPDATE, INSERT, DROP, ALTER, CREATE, TRUNCATE, GRANT, REVOKE, INTO or comments
- No semicolons
- LIMIT 20 rows at most
- COALESCE nullable aggregates and ROUND amounts to 2 decimals
- "this month": parsed_date >= DATE_TRUNC('month', CURRENT_DATE)
- "last month": parsed_date >= DATE_TRUNC('month', CURRENT_DATE - INTERVAL '1 month') AND parsed_date < DATE_TRUNC('month', CURRENT_DATE)
- Expenses are type = 'debit', income and sales are type = 'credit'
- Category names are exact strings ('Food / Meals', not 'food')
- Use ILIKE for fuzzy description matches"""


def get_query_generator_prompt(
    question: str, history: List[schemas.HistoryTurn]
) -> str:
    history_text = ""
    if history:
        lines = "\n".join(f"{turn.role.value}: {turn.content}" for turn in history)
        history_text = f"\nRecent conversation (oldest first):\n{lines}\n"

    schema = SCHEMA_DESCRIPTION.format(
        categories=", ".join(f"'{category}'" for category in CATEGORIES)
    )

    return f"""You are a data analyst for a small shop owner who asks questions about their books over WhatsApp.

{schema}
{history_text}
{QUERY_RULES}

Return ONLY a JSON object, no markdown:
{{"sql": "SELECT ... WHERE user_id = $1 ...", "explanation": "what the query computes, in one sentence"}}

User question: {json.dumps(question)}"""


# =========================
# Response formatting
# =========================
def get_response_formatter_prompt(
    question: str, rows: List[Dict[str, Any]], explanation: str, max_chars: int
) -> str:
    return f"""Turn this lookup result into a short WhatsApp reply for a shop owner.

Question: {json.dumps(question)}
What was looked up: {explanation}
Result rows: {json.dumps(rows, default=str)}

Rules:
- Stay under {max_chars} characters
- WhatsApp formatting: *bold*, _italic_, • for bullets
- Amounts with thousands separators and 2 decimals
- If there are no rows, say so plainly and suggest what they could ask instead
- Never mention SQL, queries, databases, tables or any technical detail
- Finish with a short invitation to ask something else

Return only the message text."""
