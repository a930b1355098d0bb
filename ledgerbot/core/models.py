from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Numeric,
    Boolean,
    Date,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ledgerbot.core.database import Base


# =========================
# Tenant
# =========================
class Tenant(Base):
    """
    One row per external identity (the WhatsApp phone number).
    Everything else in the schema is partitioned by this id.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    phone = Column(String, nullable=False, unique=True, index=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    last_active = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    pages = relationship(
        "Page",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    transactions = relationship(
        "Transaction",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Page (one photographed ledger page)
# =========================
class Page(Base):
    __tablename__ = "pages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    page_notes = Column(Text)
    currency_detected = Column(String)
    confidence = Column(String)  # high / medium / low
    transaction_count = Column(Integer, nullable=False, default=0)

    image_url = Column(String, nullable=True)
    pdf_url = Column(String, nullable=True)

    processed_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("Tenant", back_populates="pages")
    transactions = relationship("Transaction", back_populates="page")


# =========================
# Transaction (categorized, committed rows)
# =========================
class Transaction(Base):
    """
    A categorized ledger row.

    Only written after the tenant confirms a pending extraction, so
    everything in this table has been seen and accepted by its owner.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    page_id = Column(
        Integer,
        ForeignKey("pages.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    date = Column(String)  # as written on the page
    parsed_date = Column(Date, nullable=True, index=True)

    description = Column(Text)
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(String, nullable=False)  # debit / credit
    category = Column(String)

    is_unclear = Column(Boolean, nullable=False, default=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("Tenant", back_populates="transactions")
    page = relationship("Page", back_populates="transactions")


# =========================
# PendingExtraction (digitized, awaiting yes/no)
# =========================
class PendingExtraction(Base):
    __tablename__ = "pending_extractions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    page_id = Column(
        Integer,
        ForeignKey("pages.id", ondelete="SET NULL"),
        nullable=True,
    )

    # raw digitizer output (rows + page context), never edited after insert
    raw_extraction = Column(JSON, nullable=False)

    content_type = Column(String, nullable=True)
    follow_up_question = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    pdf_url = Column(String, nullable=True)

    status = Column(
        String, nullable=False, server_default="awaiting_confirmation", index=True
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    resolved_at = Column(TIMESTAMP(timezone=True), nullable=True)


# =========================
# ConversationTurn (append-only log)
# =========================
class ConversationTurn(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(String, nullable=False)  # user / assistant
    content = Column(Text, nullable=False)
    message_type = Column(String, nullable=False, server_default="text")

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
