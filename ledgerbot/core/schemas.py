import re
import datetime as _dt
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =========================
# Enums
# =========================
class ExtractionStatus(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"


class TransactionType(str, Enum):
    DEBIT = "debit"  # money out
    CREDIT = "credit"  # money in


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnType(str, Enum):
    TEXT = "text"
    QUERY_RESULT = "query_result"


# =========================
# DIGITIZATION
# =========================
# First number in the cell; currency prefixes like "Rs." carry a dot of their own
AMOUNT_TOKEN = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


class RawRow(BaseModel):
    """One row as the digitizer read it off the page, before categorization."""

    date: Optional[str] = None
    description: str = ""
    amount: Decimal
    type: TransactionType = TransactionType.DEBIT

    @field_validator("amount", mode="before")
    @classmethod
    def clean_amount(cls, value: Any) -> Any:
        # Handwritten ledgers come back as "1,500.00", "Rs. 1500" or "LKR 1,500.50"
        if isinstance(value, str):
            match = AMOUNT_TOKEN.search(value)
            return match.group(0).replace(",", "") if match else value
        return value

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in ("debit", "credit"):
                return "debit"
        return value

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, value: Any) -> Any:
        return value or ""


class DigitizedPage(BaseModel):
    rows: List[RawRow] = []
    currency_detected: Optional[str] = None
    page_notes: Optional[str] = None
    content_assessment: str = "unknown"
    confidence: Optional[str] = None


class CategorizedRow(RawRow):
    category: str


# =========================
# QUERY GATEWAY
# =========================
class GeneratedQuery(BaseModel):
    """A candidate query and what it computes. Lives for one request only."""

    query: str
    explanation: str = ""


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None


class QueryAnswer(BaseModel):
    answer: str
    data: List[Dict[str, Any]] = []
    query: Optional[str] = None


# =========================
# CONVERSATION
# =========================
class InboundTurn(BaseModel):
    """A message as delivered by the transport webhook."""

    sender: str
    body: str = ""
    media_count: int = 0
    media_url: Optional[str] = None
    media_content_type: Optional[str] = None

    @property
    def identity(self) -> str:
        return self.sender.replace("whatsapp:", "").strip()

    @property
    def has_media(self) -> bool:
        return self.media_count > 0 and bool(self.media_url)


class HistoryTurn(BaseModel):
    role: TurnRole
    content: str

    model_config = ConfigDict(from_attributes=True)


# =========================
# DASHBOARD
# =========================
class TransactionResponse(BaseModel):
    id: int
    page_id: Optional[int] = None
    date: Optional[str] = None
    parsed_date: Optional[_dt.date] = None
    description: Optional[str] = None
    amount: Decimal
    type: str
    category: Optional[str] = None
    is_unclear: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CategorySpending(BaseModel):
    category: str
    amount: float
    count: int


class SummaryResponse(BaseModel):
    transaction_count: int
    total_income: float
    total_expense: float
    net: float
    spending_by_category: List[CategorySpending] = []
    total_pages: int


class QueryRequest(BaseModel):
    question: str = Field(min_length=1)
