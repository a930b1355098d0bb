"""
EXTRACTION MODULE - photo → raw rows → (after "yes") categorized rows

Purpose:
    1. Digitize a ledger photo into raw rows, without interpreting them
    2. Write the yes/no follow-up question for the tenant
    3. Categorize the rows once the tenant confirms
    4. Summarize what was added in a WhatsApp-sized message

Categorization runs only after confirmation, so declined pages never cost
a second model call.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ledgerbot.assistant import prompts
from ledgerbot.assistant.gemini import parse_json_reply
from ledgerbot.core import schemas
from ledgerbot.core.exceptions import DigitizationFailed, GenerationFailed

logger = logging.getLogger(__name__)


class Extractor:
    def __init__(self, llm):
        self.llm = llm

    # =========================
    # STEP 1: DIGITIZE
    # =========================
    async def digitize(
        self, image_bytes: bytes, mime_type: str = "image/jpeg"
    ) -> schemas.DigitizedPage:
        """
        Read every row off a ledger photo.

        Rows the model returns in an unusable shape are dropped with a
        warning; the page only fails when nothing usable is left.

        Raises:
            DigitizationFailed: not a financial document, or no usable rows
            GenerationFailed: the model call itself failed
        """
        reply = await self.llm.generate(
            prompts.DIGITIZATION_PROMPT,
            image_bytes=image_bytes,
            image_mime_type=mime_type,
            temperature=0.1,
            max_output_tokens=4000,
        )
        data = parse_json_reply(reply)

        if data.get("error"):
            raise DigitizationFailed(str(data["error"]))

        rows = []
        for raw in data.get("rows") or []:
            try:
                rows.append(schemas.RawRow.model_validate(raw))
            except ValidationError as error:
                logger.warning(f"Skipping unreadable row {raw!r}: {error.error_count()} error(s)")

        if not rows:
            raise DigitizationFailed(
                "I couldn't find any entries on that page. Please send a clearer photo."
            )

        return schemas.DigitizedPage(
            rows=rows,
            currency_detected=data.get("currency_detected"),
            page_notes=data.get("page_notes"),
            content_assessment=data.get("content_assessment") or "unknown",
            confidence=data.get("confidence"),
        )

    # =========================
    # STEP 1b: FOLLOW-UP QUESTION
    # =========================
    async def follow_up_question(self, page: schemas.DigitizedPage) -> str:
        try:
            reply = await self.llm.generate(
                prompts.get_assessment_prompt(page),
                temperature=0.4,
                max_output_tokens=300,
            )
            message = parse_json_reply(reply).get("follow_up_message")
        except GenerationFailed as error:
            logger.warning(f"Follow-up generation failed, using default: {error}")
            message = None

        if not isinstance(message, str) or not message.strip():
            return prompts.default_follow_up(page)
        return message.strip()

    # =========================
    # STEP 2: CATEGORIZE
    # =========================
    async def categorize(
        self,
        rows: List[schemas.RawRow],
        currency: Optional[str] = None,
        page_notes: Optional[str] = None,
    ) -> List[schemas.CategorizedRow]:
        """
        Assign one category to each raw row.

        The model only contributes categories and normalized dates; amounts,
        types and descriptions always come from the digitized rows, so the
        result has exactly len(rows) entries.

        Raises:
            GenerationFailed: the model call failed or the reply is unusable
        """
        reply = await self.llm.generate(
            prompts.get_categorization_prompt(rows, currency, page_notes),
            temperature=0.1,
            max_output_tokens=4000,
        )
        data = parse_json_reply(reply)

        suggestions = data.get("transactions")
        if not isinstance(suggestions, list):
            raise GenerationFailed("categorization reply has no transactions list")

        if len(suggestions) != len(rows):
            logger.warning(
                f"Categorizer returned {len(suggestions)} rows for {len(rows)} inputs"
            )

        categorized = []
        for index, row in enumerate(rows):
            suggestion = suggestions[index] if index < len(suggestions) else {}
            if not isinstance(suggestion, dict):
                suggestion = {}
            categorized.append(
                schemas.CategorizedRow(
                    date=suggestion.get("date") or row.date,
                    description=row.description,
                    amount=row.amount,
                    type=row.type,
                    category=normalize_category(suggestion.get("category")),
                )
            )
        return categorized


def normalize_category(value: Any) -> str:
    if not isinstance(value, str):
        return prompts.FALLBACK_CATEGORY

    lowered = value.strip().lower()
    for category in prompts.CATEGORIES:
        if category.lower() == lowered:
            return category
    return prompts.FALLBACK_CATEGORY


# =========================
# REPLY
# =========================
def _money(amount: Decimal, currency: str) -> str:
    return f"{currency} {amount:,.2f}".strip()


def format_confirmation_reply(
    rows: List[schemas.CategorizedRow],
    currency: Optional[str],
    dashboard_url: str,
) -> str:
    """
    Summary sent after confirmed rows are stored.

    Example:
        ✅ *12 transactions added*

        💸 Expenses: LKR 45,200.00
        💰 Income: LKR 60,000.00
        📈 Net: LKR 14,800.00
        ...
    """
    currency = currency if currency and currency != "unknown" else ""

    expenses = sum((r.amount for r in rows if r.type == schemas.TransactionType.DEBIT), Decimal(0))
    income = sum((r.amount for r in rows if r.type == schemas.TransactionType.CREDIT), Decimal(0))
    net = income - expenses

    lines = [f"✅ *{len(rows)} transactions added*", ""]
    if expenses > 0:
        lines.append(f"💸 Expenses: {_money(expenses, currency)}")
    if income > 0:
        lines.append(f"💰 Income: {_money(income, currency)}")
    lines.append(f"{'📈' if net >= 0 else '📉'} Net: {_money(net, currency)}")
    lines.append("")

    totals: Dict[str, Decimal] = defaultdict(Decimal)
    for row in rows:
        if row.type == schemas.TransactionType.DEBIT:
            totals[row.category] += row.amount
    top = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:4]
    if top:
        lines.append("*Top expenses:*")
        lines.extend(f"  • {category}: {_money(amount, currency)}" for category, amount in top)
        lines.append("")

    lines.append(f"📋 View full details & charts:\n{dashboard_url}")
    lines.append("")
    lines.append("_Send another photo or ask me a question about your expenses._")
    return "\n".join(lines)
