"""
STORAGE MODULE - Tenant-partitioned reads and writes

Purpose:
    1. Find or create the tenant behind a phone number
    2. Record digitized pages and the categorized transactions from them
    3. Keep the append-only conversation log used as query context
    4. Run generated read queries through one narrow, tenant-bound entry point

Every function here takes the tenant id explicitly. Nothing in this module
reads data without a user_id filter.
"""

import json
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.core import models, schemas
from ledgerbot.core.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)


# ============================================================================
# TENANTS
# ============================================================================


async def get_tenant(phone: str, db: AsyncSession) -> Optional[models.Tenant]:
    result = await db.execute(select(models.Tenant).where(models.Tenant.phone == phone))
    return result.scalars().first()


async def get_or_create_tenant(phone: str, db: AsyncSession) -> models.Tenant:
    """
    Return the tenant for a phone number, creating it on first contact.

    Every contact bumps last_active. Two webhook deliveries racing on the
    very first message can both try the insert; the loser re-reads.

    Raises:
        StorageUnavailable: the tenant could not be read or written
    """
    try:
        tenant = await get_tenant(phone, db)
        if tenant:
            tenant.last_active = datetime.now(timezone.utc)
            await db.commit()
            return tenant

        tenant = models.Tenant(phone=phone)
        db.add(tenant)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            tenant = await get_tenant(phone, db)
            if tenant is None:
                raise
            return tenant

        await db.refresh(tenant)
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"Tenant lookup failed: {error}")
        raise StorageUnavailable("could not load tenant") from error

    logger.info(f"Created tenant {tenant.id} for new contact")
    return tenant


# ============================================================================
# PAGES AND TRANSACTIONS
# ============================================================================


def parse_ledger_date(date_str: Optional[str]) -> Optional[date]:
    """
    Parse the date formats people actually write in ledgers.

    Examples:
        "2025-01-15" → date(2025, 1, 15)
        "15/01/2025" → date(2025, 1, 15)
        "15 Jan 2025" → date(2025, 1, 15)
        "Monday"     → None
    """
    if not date_str:
        return None

    date_str = str(date_str).strip()

    formats = [
        "%Y-%m-%d",  # ISO, what the categorizer normalizes to
        "%d/%m/%Y",
        "%d.%m.%Y",
        "%d-%m-%Y",
        "%d/%m/%y",
        "%d %b %Y",
        "%d %B %Y",
        "%b %d, %Y",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(date_str, fmt).date()
        except ValueError:
            continue

    return None


async def create_page(
    tenant_id: int,
    page: schemas.DigitizedPage,
    db: AsyncSession,
    image_url: Optional[str] = None,
    pdf_url: Optional[str] = None,
    commit: bool = True,
) -> models.Page:
    """
    Record a digitized page.

    With commit=False the page is only flushed (so it has an id) and the
    caller's next commit or rollback decides whether it is kept.
    """
    new_page = models.Page(
        user_id=tenant_id,
        page_notes=page.page_notes,
        currency_detected=page.currency_detected,
        confidence=page.confidence,
        transaction_count=0,
        image_url=image_url,
        pdf_url=pdf_url,
    )
    try:
        db.add(new_page)
        if commit:
            await db.commit()
            await db.refresh(new_page)
        else:
            await db.flush()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Failed to create page: {error}")
        raise StorageUnavailable("could not create page") from error

    return new_page


async def store_transactions(
    tenant_id: int,
    page_id: Optional[int],
    rows: List[schemas.CategorizedRow],
    db: AsyncSession,
    commit: bool = True,
) -> List[models.Transaction]:
    """
    Persist categorized rows for a tenant and update the page's count.

    Args:
        tenant_id: Owner of the rows
        page_id: Page the rows were digitized from (may be None)
        rows: Categorized rows, one per digitized row
        db: Database session
        commit: False leaves the rows in the caller's open transaction

    Returns:
        The stored Transaction objects

    Raises:
        StorageUnavailable: the rows could not be written (nothing is kept)
    """
    transactions = [
        models.Transaction(
            user_id=tenant_id,
            page_id=page_id,
            date=row.date,
            parsed_date=parse_ledger_date(row.date),
            description=row.description,
            amount=row.amount,
            type=row.type.value,
            category=row.category,
            is_unclear="[unclear]" in (row.description or ""),
        )
        for row in rows
    ]

    try:
        db.add_all(transactions)
        if page_id is not None:
            await db.execute(
                update(models.Page)
                .where(models.Page.id == page_id, models.Page.user_id == tenant_id)
                .values(transaction_count=len(transactions))
            )
        if commit:
            await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Failed to store transactions: {error}")
        raise StorageUnavailable("could not store transactions") from error

    return transactions


async def get_recent_transactions(
    tenant_id: int, db: AsyncSession, limit: int = 100
) -> List[models.Transaction]:
    query = (
        select(models.Transaction)
        .where(models.Transaction.user_id == tenant_id)
        .order_by(desc(models.Transaction.created_at), desc(models.Transaction.id))
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


# ============================================================================
# CONVERSATION LOG
# ============================================================================


async def append_turn(
    tenant_id: int,
    role: schemas.TurnRole,
    content: str,
    db: AsyncSession,
    message_type: schemas.TurnType = schemas.TurnType.TEXT,
    meta: Optional[Dict[str, Any]] = None,
) -> models.ConversationTurn:
    turn = models.ConversationTurn(
        user_id=tenant_id,
        role=role.value,
        content=content,
        message_type=message_type.value,
        meta=meta,
    )
    db.add(turn)
    await db.commit()
    return turn


async def get_recent_turns(
    tenant_id: int, db: AsyncSession, limit: int = 5
) -> List[schemas.HistoryTurn]:
    """Return the last `limit` turns for a tenant, oldest first."""
    query = (
        select(models.ConversationTurn)
        .where(models.ConversationTurn.user_id == tenant_id)
        .order_by(
            desc(models.ConversationTurn.created_at), desc(models.ConversationTurn.id)
        )
        .limit(limit)
    )
    result = await db.execute(query)
    turns = list(result.scalars().all())
    turns.reverse()
    return [schemas.HistoryTurn.model_validate(turn) for turn in turns]


# ============================================================================
# TENANT-BOUND READ QUERIES
# ============================================================================

# Generated queries refer to the tenant as the positional parameter $1
TENANT_PLACEHOLDER = re.compile(r"\$1\b")


def _decode_row(value: Any) -> Dict[str, Any]:
    # asyncpg hands json back as text
    if isinstance(value, str):
        value = json.loads(value)
    return dict(value)


async def run_tenant_query(
    query_text: str, tenant_id: int, db: AsyncSession, max_rows: int = 20
) -> List[Dict[str, Any]]:
    """
    Run an already-validated read query for one tenant.

    The tenant id always travels as a bound parameter, separate from the
    query text. On Postgres this goes through the run_user_query() function
    created by the initial migration, which executes inside a STABLE
    function (no writes possible) and caps the row count. Other dialects
    (SQLite in tests and local runs) wrap the query as a bounded subquery.
    """
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        stmt = text(
            "SELECT row_data FROM run_user_query(:query_text, :tenant_id) AS row_data"
        )
        result = await db.execute(
            stmt, {"query_text": query_text, "tenant_id": tenant_id}
        )
        return [_decode_row(row.row_data) for row in result.fetchmany(max_rows)]

    bound_query = TENANT_PLACEHOLDER.sub(":tenant_id", query_text)
    stmt = text(f"SELECT * FROM ({bound_query}) AS tenant_query LIMIT :max_rows")
    result = await db.execute(stmt, {"tenant_id": tenant_id, "max_rows": max_rows})
    return [dict(row._mapping) for row in result.fetchmany(max_rows)]
