"""
Review queue management.

Rows whose best match is fuzzy_medium or fuzzy_low wait here for a human.
A resolution closes the item and writes the decision back into the
statement row in the same transaction; callers commit or roll back the
session as a unit.
"""

import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from royalties.models.enums import (
    REVIEW_MATCH_STATUSES,
    MatchMethod,
    MatchStatus,
    ReviewAction,
    ReviewStatus,
)
from royalties.models.tables import ReviewQueueItem, StatementRowRecord
from royalties.observability.metrics import (
    review_items_resolved_total,
    review_items_routed_total,
    review_queue_depth,
)
from royalties.schemas.statements import (
    MatchResult,
    ReviewItem,
    ReviewResolution,
    StatementRow,
)

logger = structlog.get_logger(__name__)

# Lower is reviewed first
_PRIORITY = {MatchStatus.FUZZY_MEDIUM: 3, MatchStatus.FUZZY_LOW: 6}

_CLOSED_STATUS = {
    ReviewAction.APPROVE: ReviewStatus.APPROVED,
    ReviewAction.REMATCH: ReviewStatus.APPROVED,
    ReviewAction.REJECT: ReviewStatus.REJECTED,
    ReviewAction.SKIP: ReviewStatus.SKIPPED,
}

_UPSERT_CHUNK = 200


class ReviewError(Exception):
    """Raised for a resolution that cannot be applied."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        self.message = message
        self.item_id = item_id
        super().__init__(message)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise ReviewError(f"review queue upsert not supported on dialect {dialect}")


async def enqueue_for_review(
    session: AsyncSession,
    statement_id: str,
    items: Iterable[tuple[StatementRow, MatchResult]],
) -> int:
    """
    Insert one review item per (statement, row number) for reviewable results.
    An existing item is refreshed with the new match result and reopened.
    Returns the number of rows routed.
    """
    stmt_uuid = uuid.UUID(statement_id)
    values = []
    for row, result in items:
        if result.status not in REVIEW_MATCH_STATUSES:
            continue
        values.append(
            {
                "id": uuid.uuid4(),
                "statement_id": stmt_uuid,
                "row_number": row.row_number,
                "statement_row": row.model_dump(mode="json"),
                "match_result": result.model_dump(mode="json"),
                "priority": _PRIORITY[result.status],
                "status": ReviewStatus.PENDING.value,
            }
        )

    if not values:
        return 0

    insert = _insert_for(session)
    for start in range(0, len(values), _UPSERT_CHUNK):
        chunk = values[start:start + _UPSERT_CHUNK]
        stmt = insert(ReviewQueueItem).values(chunk)
        stmt = stmt.on_conflict_do_update(
            index_elements=["statement_id", "row_number"],
            set_={
                "statement_row": stmt.excluded.statement_row,
                "match_result": stmt.excluded.match_result,
                "priority": stmt.excluded.priority,
                "status": ReviewStatus.PENDING.value,
                "assigned_to": None,
                "resolution_json": None,
                "resolution_notes": None,
                "resolved_by": None,
                "resolved_at": None,
                "updated_at": func.now(),
            },
        )
        await session.execute(stmt)

    row_numbers = [v["row_number"] for v in values]
    await session.execute(
        update(StatementRowRecord)
        .where(
            StatementRowRecord.statement_id == stmt_uuid,
            StatementRowRecord.row_number.in_(row_numbers),
        )
        .values(review_status=ReviewStatus.PENDING.value, reviewed_by=None, reviewed_at=None)
    )
    await session.flush()

    review_items_routed_total.inc(len(values))
    logger.info("routed_to_review", statement_id=statement_id, count=len(values))
    return len(values)


def to_review_item(record: ReviewQueueItem) -> ReviewItem:
    return ReviewItem(
        id=str(record.id),
        statement_id=str(record.statement_id),
        row_number=record.row_number,
        statement_row=record.statement_row,
        match_result=record.match_result,
        priority=record.priority,
        status=ReviewStatus(record.status),
        assigned_to=record.assigned_to,
        resolution=ReviewResolution(**record.resolution_json) if record.resolution_json else None,
        resolved_by=record.resolved_by,
        resolved_at=record.resolved_at,
        created_at=record.created_at,
    )


async def get_pending_reviews(
    session: AsyncSession,
    statement_id: Optional[str] = None,
    assigned_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ReviewItem], int]:
    """Pending items ordered by priority then age, plus the unpaged total."""
    filters = [ReviewQueueItem.status == ReviewStatus.PENDING.value]
    if statement_id:
        filters.append(ReviewQueueItem.statement_id == uuid.UUID(statement_id))
    if assigned_to:
        filters.append(ReviewQueueItem.assigned_to == assigned_to)

    total = await session.scalar(select(func.count(ReviewQueueItem.id)).where(*filters))
    result = await session.execute(
        select(ReviewQueueItem)
        .where(*filters)
        .order_by(ReviewQueueItem.priority, ReviewQueueItem.created_at, ReviewQueueItem.row_number)
        .offset(offset)
        .limit(limit)
    )
    return [to_review_item(r) for r in result.scalars().all()], int(total or 0)


async def get_review_item(session: AsyncSession, item_id: str) -> Optional[ReviewItem]:
    record = await session.get(ReviewQueueItem, uuid.UUID(item_id))
    return to_review_item(record) if record else None


async def assign_items(session: AsyncSession, item_ids: list[str], assigned_to: str) -> int:
    """Assign pending items to a reviewer. Returns how many were assigned."""
    if not item_ids:
        return 0
    result = await session.execute(
        update(ReviewQueueItem)
        .where(
            ReviewQueueItem.id.in_([uuid.UUID(i) for i in item_ids]),
            ReviewQueueItem.status == ReviewStatus.PENDING.value,
        )
        .values(assigned_to=assigned_to, updated_at=func.now())
    )
    await session.flush()
    logger.info("review_items_assigned", assigned_to=assigned_to, count=result.rowcount)
    return result.rowcount


def _best_candidate_work_id(match_result: dict) -> Optional[str]:
    candidates = match_result.get("candidates") or []
    if candidates:
        return candidates[0].get("work_id")
    return match_result.get("matched_work_id")


async def _transition(
    session: AsyncSession,
    record: ReviewQueueItem,
    resolution: ReviewResolution,
    resolved_by: str,
) -> bool:
    """Close one pending item and update its statement row. False if already closed."""
    work_id = None
    confidence = None
    if resolution.action in (ReviewAction.APPROVE, ReviewAction.REMATCH):
        work_id = resolution.matched_work_id or _best_candidate_work_id(record.match_result)
        if not work_id:
            raise ReviewError(
                f"{resolution.action.value} requires a work id and the item has no candidates",
                item_id=str(record.id),
            )
        confidence = resolution.confidence if resolution.confidence is not None else 1.0

    now = datetime.now(timezone.utc)
    closed = _CLOSED_STATUS[resolution.action]
    payload = resolution.model_dump(mode="json")
    if work_id:
        payload["matched_work_id"] = work_id
        payload["confidence"] = confidence

    # Conditional on still-pending so a concurrent resolution is never overwritten
    result = await session.execute(
        update(ReviewQueueItem)
        .where(
            ReviewQueueItem.id == record.id,
            ReviewQueueItem.status == ReviewStatus.PENDING.value,
        )
        .values(
            status=closed.value,
            resolution_json=payload,
            resolution_notes=resolution.notes,
            resolved_by=resolved_by,
            resolved_at=now,
            updated_at=func.now(),
        )
    )
    if result.rowcount == 0:
        return False

    row_values: dict = {
        "review_status": closed.value,
        "reviewed_by": resolved_by,
        "reviewed_at": now,
    }
    if work_id:
        row_values.update(
            match_status=MatchStatus.MANUAL.value,
            match_method=MatchMethod.MANUAL.value,
            matched_work_id=work_id,
            match_confidence=confidence,
        )
    elif resolution.action == ReviewAction.REJECT:
        row_values.update(match_status=MatchStatus.REJECTED.value, matched_work_id=None)

    await session.execute(
        update(StatementRowRecord)
        .where(
            StatementRowRecord.statement_id == record.statement_id,
            StatementRowRecord.row_number == record.row_number,
        )
        .values(**row_values)
    )

    review_items_resolved_total.labels(action=resolution.action.value).inc()
    logger.info(
        "review_item_resolved",
        item_id=str(record.id),
        statement_id=str(record.statement_id),
        row_number=record.row_number,
        action=resolution.action.value,
        matched_work_id=work_id,
        resolved_by=resolved_by,
    )
    return True


async def resolve_item(
    session: AsyncSession,
    item_id: str,
    resolution: ReviewResolution,
    resolved_by: str,
) -> Optional[ReviewItem]:
    """
    Apply a resolution to a pending item.
    Returns the closed item, or None when the item is missing or already
    resolved (zero affected).
    """
    record = await session.get(ReviewQueueItem, uuid.UUID(item_id))
    if record is None or record.status != ReviewStatus.PENDING.value:
        return None

    if not await _transition(session, record, resolution, resolved_by):
        return None
    await session.flush()
    await session.refresh(record)
    return to_review_item(record)


async def bulk_resolve(
    session: AsyncSession,
    item_ids: list[str],
    resolution: ReviewResolution,
    resolved_by: str,
) -> int:
    """
    Apply one resolution to many items in the caller's transaction.
    Items already resolved by someone else are skipped. Returns how many
    transitioned.
    """
    if not item_ids:
        return 0
    result = await session.execute(
        select(ReviewQueueItem).where(
            ReviewQueueItem.id.in_([uuid.UUID(i) for i in item_ids]),
            ReviewQueueItem.status == ReviewStatus.PENDING.value,
        )
    )
    transitioned = 0
    for record in result.scalars().all():
        if await _transition(session, record, resolution, resolved_by):
            transitioned += 1
    await session.flush()

    logger.info(
        "review_bulk_resolved",
        requested=len(item_ids),
        transitioned=transitioned,
        action=resolution.action.value,
    )
    return transitioned


async def get_review_queue_stats(session: AsyncSession, statement_id: Optional[str] = None) -> dict:
    """Queue statistics, derived by grouping on (statement, status)."""
    query = select(
        ReviewQueueItem.statement_id,
        ReviewQueueItem.status,
        func.count(ReviewQueueItem.id),
    ).group_by(ReviewQueueItem.statement_id, ReviewQueueItem.status)
    if statement_id:
        query = query.where(ReviewQueueItem.statement_id == uuid.UUID(statement_id))

    result = await session.execute(query)
    totals: dict[str, int] = {}
    by_statement: dict[str, dict[str, int]] = {}
    for stmt_id, status, count in result.all():
        totals[status] = totals.get(status, 0) + count
        by_statement.setdefault(str(stmt_id), {})[status] = count

    stats = {s.value: totals.get(s.value, 0) for s in ReviewStatus}
    stats["total"] = sum(totals.values())
    stats["by_statement"] = by_statement

    if statement_id is None:
        for s in ReviewStatus:
            review_queue_depth.labels(status=s.value).set(stats[s.value])
    return stats
