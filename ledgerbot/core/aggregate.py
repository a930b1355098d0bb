from typing import Dict, Any, List
from datetime import date, datetime, time, timezone

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, desc, case

from ledgerbot.core import models


# -----------------------------------------------------------------------------
# AGGREGATE MODULE
# Purpose: turn committed transactions into the totals the "summary" command
# and the dashboard show.
# -----------------------------------------------------------------------------


def month_start(today: date = None) -> datetime:
    """Midnight UTC on the first day of the current month."""
    today = today or datetime.now(timezone.utc).date()
    return datetime.combine(today.replace(day=1), time.min, tzinfo=timezone.utc)


async def get_spending_by_category(
    tenant_id: int, since: datetime, db: AsyncSession
) -> List[Dict[str, Any]]:
    """
    Total expenses per category since a point in time, biggest first.

    Example:
        [
            {"category": "Inventory / Stock", "amount": 45000.0, "count": 12},
            {"category": "Food / Meals", "amount": 3200.0, "count": 7}
        ]
    """
    stmt = (
        select(
            models.Transaction.category,
            func.coalesce(func.sum(models.Transaction.amount), 0).label("total_amount"),
            func.count(models.Transaction.id).label("transaction_count"),
        )
        .where(
            and_(
                models.Transaction.user_id == tenant_id,
                models.Transaction.type == "debit",
                models.Transaction.created_at >= since,
            )
        )
        .group_by(models.Transaction.category)
        .order_by(desc("total_amount"))
    )

    result = await db.execute(stmt)

    categories = []
    for row in result.all():
        if row.category and row.total_amount:
            categories.append(
                {
                    "category": row.category,
                    "amount": float(row.total_amount),
                    "count": row.transaction_count,
                }
            )
    return categories


async def get_period_totals(
    tenant_id: int, since: datetime, db: AsyncSession
) -> Dict[str, Any]:
    """Income, expense, net and row count for a tenant since a point in time."""
    stmt = select(
        func.count(models.Transaction.id).label("transaction_count"),
        func.coalesce(
            func.sum(
                case(
                    (models.Transaction.type == "credit", models.Transaction.amount),
                    else_=0,
                )
            ),
            0,
        ).label("total_income"),
        func.coalesce(
            func.sum(
                case(
                    (models.Transaction.type == "debit", models.Transaction.amount),
                    else_=0,
                )
            ),
            0,
        ).label("total_expense"),
    ).where(
        and_(
            models.Transaction.user_id == tenant_id,
            models.Transaction.created_at >= since,
        )
    )

    row = (await db.execute(stmt)).first()
    income = float(row.total_income or 0)
    expense = float(row.total_expense or 0)

    return {
        "transaction_count": row.transaction_count or 0,
        "total_income": round(income, 2),
        "total_expense": round(expense, 2),
        "net": round(income - expense, 2),
    }


async def count_pages(tenant_id: int, db: AsyncSession) -> int:
    stmt = select(func.count(models.Page.id)).where(models.Page.user_id == tenant_id)
    return (await db.execute(stmt)).scalar_one()


async def get_monthly_summary(tenant_id: int, db: AsyncSession) -> Dict[str, Any]:
    """Everything the dashboard summary and the "summary" command need."""
    since = month_start()
    totals = await get_period_totals(tenant_id, since, db)
    totals["spending_by_category"] = await get_spending_by_category(
        tenant_id, since, db
    )
    totals["total_pages"] = await count_pages(tenant_id, db)
    return totals
