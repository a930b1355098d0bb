"""
PENDING EXTRACTION STORE - the "awaiting confirmation" record per tenant

Purpose:
    Hold a digitized page between the turn that produced it and the turn
    where the tenant answers yes or no. This table is the only state that
    survives between otherwise independent webhook invocations.

Lifecycle:
    create() → awaiting_confirmation → confirmed | declined | expired

    Records older than the TTL are expired lazily, the next time the
    tenant's active record is looked up.

Storage errors are raised as StorageUnavailable and never retried here.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerbot.core import models, schemas, storage
from ledgerbot.core.config import settings
from ledgerbot.core.exceptions import StorageUnavailable
from ledgerbot.core.schemas import ExtractionStatus

logger = logging.getLogger(__name__)

AWAITING = ExtractionStatus.AWAITING_CONFIRMATION.value


async def create_pending_extraction(
    tenant_id: int,
    page_id: Optional[int],
    raw_extraction: Dict[str, Any],
    db: AsyncSession,
    content_type: Optional[str] = None,
    follow_up_question: Optional[str] = None,
    image_url: Optional[str] = None,
    pdf_url: Optional[str] = None,
) -> models.PendingExtraction:
    """Insert a new awaiting_confirmation record and return it with its id."""
    pending = models.PendingExtraction(
        user_id=tenant_id,
        page_id=page_id,
        raw_extraction=raw_extraction,
        content_type=content_type,
        follow_up_question=follow_up_question,
        image_url=image_url,
        pdf_url=pdf_url,
        status=AWAITING,
    )
    try:
        db.add(pending)
        await db.commit()
        await db.refresh(pending)
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Failed to create pending extraction: {error}")
        raise StorageUnavailable("could not create pending extraction") from error

    return pending


async def get_active_extraction(
    tenant_id: int,
    db: AsyncSession,
    ttl_hours: Optional[int] = None,
) -> Optional[models.PendingExtraction]:
    """
    Expire stale records, then return the newest awaiting one (or None).

    Both statements run in the same transaction, so a caller never sees a
    record past its TTL still marked awaiting_confirmation.

    Args:
        tenant_id: Tenant whose record to look up
        db: Database session
        ttl_hours: Override for PENDING_EXTRACTION_TTL_HOURS

    Returns:
        The most recently created awaiting_confirmation record, if any
    """
    ttl = settings.PENDING_EXTRACTION_TTL_HOURS if ttl_hours is None else ttl_hours
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=ttl)

    try:
        expired = await db.execute(
            update(models.PendingExtraction)
            .where(
                models.PendingExtraction.user_id == tenant_id,
                models.PendingExtraction.status == AWAITING,
                models.PendingExtraction.created_at < cutoff,
            )
            .values(status=ExtractionStatus.EXPIRED.value, resolved_at=now)
            .execution_options(synchronize_session=False)
        )

        result = await db.execute(
            select(models.PendingExtraction)
            .where(
                models.PendingExtraction.user_id == tenant_id,
                models.PendingExtraction.status == AWAITING,
            )
            .order_by(
                desc(models.PendingExtraction.created_at),
                desc(models.PendingExtraction.id),
            )
            .limit(1)
        )
        pending = result.scalars().first()
        await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Pending extraction lookup failed: {error}")
        raise StorageUnavailable("could not read pending extraction") from error

    if expired.rowcount:
        logger.info(f"[Tenant {tenant_id}] Expired {expired.rowcount} stale extraction(s)")

    return pending


async def expire_active_extractions(tenant_id: int, db: AsyncSession) -> int:
    """
    Force-expire every awaiting record for a tenant.

    Called before a new photo is digitized so two pending extractions never
    coexist. Returns how many records were expired.
    """
    try:
        result = await db.execute(
            update(models.PendingExtraction)
            .where(
                models.PendingExtraction.user_id == tenant_id,
                models.PendingExtraction.status == AWAITING,
            )
            .values(status=ExtractionStatus.EXPIRED.value, resolved_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Failed to expire extractions: {error}")
        raise StorageUnavailable("could not expire pending extractions") from error

    return result.rowcount


async def resolve_pending_extraction(
    extraction_id: int, status: ExtractionStatus, db: AsyncSession
) -> bool:
    """
    Move a record to a terminal status and stamp resolved_at.

    Resolving a record that already left awaiting_confirmation is a no-op
    and returns False, since an expiry can land between the lookup and
    the tenant's answer.
    """
    if status == ExtractionStatus.AWAITING_CONFIRMATION:
        raise ValueError("resolve needs a terminal status")

    try:
        result = await db.execute(
            update(models.PendingExtraction)
            .where(
                models.PendingExtraction.id == extraction_id,
                models.PendingExtraction.status == AWAITING,
            )
            .values(status=status.value, resolved_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"Failed to resolve extraction {extraction_id}: {error}")
        raise StorageUnavailable("could not resolve pending extraction") from error

    if result.rowcount == 0:
        logger.info(f"Extraction {extraction_id} already resolved, skipping {status.value}")
        return False

    return True


async def confirm_extraction(
    extraction_id: int,
    tenant_id: int,
    page_id: Optional[int],
    rows: List[schemas.CategorizedRow],
    db: AsyncSession,
) -> Optional[List[models.Transaction]]:
    """
    Claim an awaiting record as confirmed and store its rows, atomically.

    The status change and the inserts share one commit: either the record
    ends up confirmed with every row stored, or it is still awaiting and
    nothing was written, so the tenant can simply answer yes again.

    Returns:
        The stored transactions, or None when the record had already left
        awaiting_confirmation (a duplicate or late "yes")

    Raises:
        StorageUnavailable: the claim or the inserts failed (rolled back)
    """
    try:
        claim = await db.execute(
            update(models.PendingExtraction)
            .where(
                models.PendingExtraction.id == extraction_id,
                models.PendingExtraction.status == AWAITING,
            )
            .values(status=ExtractionStatus.CONFIRMED.value, resolved_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 0:
            await db.rollback()
            logger.info(f"Extraction {extraction_id} already resolved, nothing stored")
            return None

        stored = await storage.store_transactions(
            tenant_id, page_id, rows, db, commit=False
        )
        await db.commit()
    except SQLAlchemyError as error:
        await db.rollback()
        logger.error(f"[Tenant {tenant_id}] Failed to confirm extraction {extraction_id}: {error}")
        raise StorageUnavailable("could not store confirmed extraction") from error

    logger.info(f"[Tenant {tenant_id}] Confirmed extraction {extraction_id}, stored {len(stored)} rows")
    return stored
