"""
Distribution calculator.

Splits the gross of every confidently matched (work, right type) pair
across the work's writers and publishers:

    net = round_half_up(gross * share / 100, 0.01)

When shares total 100% the residual cents go to the largest-share line and
are reported per work/right type. Anything not split (unmatched rows, works
missing from the catalog, unallocated share remainders) is undistributed,
so total_distributed + total_undistributed == total_gross.
"""

import uuid
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from royalties.config import settings
from royalties.matching.catalog_cache import CatalogSnapshot
from royalties.models.enums import (
    CONFIDENT_MATCH_STATUSES,
    DistributionStatus,
    RightType,
    UsageType,
)
from royalties.models.tables import DistributionRecord, Statement, StatementRowRecord
from royalties.observability.metrics import distribution_rounding_adjustments_total
from royalties.schemas.catalog import CatalogWork
from royalties.schemas.statements import (
    DistributionLine,
    DistributionResult,
    DistributionSummary,
    PartyTotal,
    RoundingAdjustment,
    StatementRow,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

USAGE_RIGHT_TYPES = {
    UsageType.STREAMING.value: RightType.MECHANICAL,
    UsageType.DOWNLOAD.value: RightType.MECHANICAL,
    UsageType.BROADCAST.value: RightType.PERFORMANCE,
    UsageType.LIVE.value: RightType.PERFORMANCE,
    UsageType.BACKGROUND.value: RightType.SYNC,
}


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def infer_right_type(row: StatementRow) -> RightType:
    """Explicit right type, else inferred from usage type, else other."""
    if row.right_type:
        try:
            return RightType(row.right_type.strip().lower())
        except ValueError:
            pass
    if row.usage_type:
        mapped = USAGE_RIGHT_TYPES.get(row.usage_type.strip().lower())
        if mapped is not None:
            return mapped
    return RightType.OTHER


def is_confident(row: StatementRow) -> bool:
    return row.match_status in CONFIDENT_MATCH_STATUSES and bool(row.matched_work_id)


def _party_share(general: Decimal, right_shares: dict[str, Decimal], right_type: RightType) -> Decimal:
    share = right_shares.get(right_type.value)
    return Decimal(str(share if share is not None else general))


class DistributionCalculator:
    def __init__(self, share_tolerance: Optional[float] = None, default_currency: Optional[str] = None):
        tolerance = settings.SHARE_TOLERANCE if share_tolerance is None else share_tolerance
        self.share_tolerance = Decimal(str(tolerance))
        self.default_currency = default_currency or settings.DEFAULT_CURRENCY

    def calculate(
        self,
        rows: list[StatementRow],
        snapshot: CatalogSnapshot,
        currency: Optional[str] = None,
        period: tuple[Optional[date], Optional[date]] = (None, None),
    ) -> DistributionResult:
        currency = currency or self.default_currency
        total_gross = sum((r.amount for r in rows), Decimal("0"))
        confident = [r for r in rows if is_confident(r)]

        groups: dict[tuple[str, RightType], list[StatementRow]] = defaultdict(list)
        for row in sorted(confident, key=lambda r: r.row_number):
            groups[(row.matched_work_id, infer_right_type(row))].append(row)

        lines: list[DistributionLine] = []
        adjustments: list[RoundingAdjustment] = []
        warnings: list[str] = []

        for (work_id, right_type), group_rows in groups.items():
            work = snapshot.get_work(work_id)
            gross = sum((r.amount for r in group_rows), Decimal("0"))
            if work is None:
                warnings.append(
                    f"Work {work_id} not in catalog; {gross} {right_type.value} left undistributed"
                )
                logger.warning("distribution_work_missing", work_id=work_id, gross=str(gross))
                continue

            group_lines, adjustment, warning = self._split_work(
                work, right_type, group_rows, gross, currency, period
            )
            lines.extend(group_lines)
            if adjustment is not None:
                adjustments.append(adjustment)
            if warning:
                warnings.append(warning)

        summary = self._summarize(
            rows, confident, lines, snapshot, total_gross, adjustments, warnings
        )
        return DistributionResult(lines=lines, summary=summary)

    def _split_work(
        self,
        work: CatalogWork,
        right_type: RightType,
        rows: list[StatementRow],
        gross: Decimal,
        currency: str,
        period: tuple[Optional[date], Optional[date]],
    ) -> tuple[list[DistributionLine], Optional[RoundingAdjustment], Optional[str]]:
        starts = [r.period_start for r in rows if r.period_start]
        ends = [r.period_end for r in rows if r.period_end]
        common = dict(
            work_id=work.id,
            gross_amount=gross,
            right_type=right_type.value,
            usage_type=rows[0].usage_type,
            territory=rows[0].territory,
            period_start=min(starts) if starts else period[0],
            period_end=max(ends) if ends else period[1],
            source_row_numbers=[r.row_number for r in rows],
            currency=rows[0].currency or currency,
        )

        lines: list[DistributionLine] = []
        for writer in work.writers:
            share = _party_share(writer.share, writer.right_shares, right_type)
            if share <= 0:
                continue
            lines.append(
                DistributionLine(
                    writer_id=writer.id,
                    share_percentage=share,
                    net_amount=round_money(gross * share / HUNDRED),
                    **common,
                )
            )
        for publisher in work.publishers:
            share = _party_share(publisher.share, publisher.right_shares, right_type)
            if share <= 0:
                continue
            lines.append(
                DistributionLine(
                    publisher_id=publisher.id,
                    share_percentage=share,
                    net_amount=round_money(gross * share / HUNDRED),
                    **common,
                )
            )

        total_share = sum((d.share_percentage for d in lines), Decimal("0"))
        if abs(total_share - HUNDRED) > self.share_tolerance:
            unallocated = gross - sum((d.net_amount for d in lines), Decimal("0"))
            logger.warning(
                "distribution_share_mismatch",
                work_id=work.id,
                right_type=right_type.value,
                total_share=str(total_share),
                unallocated=str(unallocated),
            )
            return (
                lines,
                None,
                f"Work {work.work_code} ({work.id}) {right_type.value} shares total "
                f"{total_share}%; {unallocated} left undistributed",
            )

        residual = round_money(gross - sum((d.net_amount for d in lines), Decimal("0")))
        if residual == 0 or not lines:
            return lines, None, None

        # Largest share absorbs the residual; first line wins ties
        target = max(range(len(lines)), key=lambda i: (lines[i].share_percentage, -i))
        line = lines[target]
        lines[target] = line.model_copy(
            update={"net_amount": line.net_amount + residual, "adjustment": residual}
        )
        party_id = line.writer_id or line.publisher_id
        distribution_rounding_adjustments_total.labels(right_type=right_type.value).inc()
        logger.info(
            "distribution_rounding_adjustment",
            work_id=work.id,
            right_type=right_type.value,
            party_id=party_id,
            amount=str(residual),
        )
        return (
            lines,
            RoundingAdjustment(
                work_id=work.id, right_type=right_type.value, party_id=party_id, amount=residual
            ),
            None,
        )

    def _summarize(
        self,
        rows: list[StatementRow],
        confident: list[StatementRow],
        lines: list[DistributionLine],
        snapshot: CatalogSnapshot,
        total_gross: Decimal,
        adjustments: list[RoundingAdjustment],
        warnings: list[str],
    ) -> DistributionSummary:
        total_distributed = sum((d.net_amount for d in lines), Decimal("0"))

        by_right_type: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        writer_amounts: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        publisher_amounts: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        names: dict[str, str] = {}

        for line in lines:
            by_right_type[line.right_type] += line.net_amount
            work = snapshot.get_work(line.work_id)
            if line.writer_id:
                writer_amounts[line.writer_id] += line.net_amount
                writer = next((w for w in work.writers if w.id == line.writer_id), None)
                names[line.writer_id] = writer.full_name if writer else "Unknown"
            else:
                publisher_amounts[line.publisher_id] += line.net_amount
                publisher = next((p for p in work.publishers if p.id == line.publisher_id), None)
                names[line.publisher_id] = publisher.name if publisher else "Unknown"

        def party_totals(amounts: dict[str, Decimal]) -> list[PartyTotal]:
            totals = [
                PartyTotal(
                    party_id=party_id,
                    name=names.get(party_id, "Unknown"),
                    amount=amount,
                    percentage=(
                        float(amount / total_distributed * HUNDRED) if total_distributed else 0.0
                    ),
                )
                for party_id, amount in amounts.items()
            ]
            return sorted(totals, key=lambda p: p.amount, reverse=True)

        return DistributionSummary(
            total_gross=total_gross,
            total_distributed=total_distributed,
            total_undistributed=total_gross - total_distributed,
            match_rate=len(confident) / len(rows) if rows else 0.0,
            by_right_type=dict(by_right_type),
            by_writer=party_totals(writer_amounts),
            by_publisher=party_totals(publisher_amounts),
            rounding_adjustments=adjustments,
            warnings=warnings,
        )


async def calculate_statement_distributions(
    session: AsyncSession,
    statement_id: str,
    snapshot: CatalogSnapshot,
    calculator: Optional[DistributionCalculator] = None,
) -> DistributionResult:
    """
    Recompute a statement's distributions, replacing any prior calculated
    lines. Runs in the caller's transaction.
    """
    calculator = calculator or DistributionCalculator()
    stmt_uuid = uuid.UUID(statement_id)

    statement = await session.get(Statement, stmt_uuid)
    if statement is None:
        raise LookupError(f"Statement {statement_id} not found")

    records = (
        await session.execute(
            select(StatementRowRecord)
            .where(StatementRowRecord.statement_id == stmt_uuid)
            .order_by(StatementRowRecord.row_number)
        )
    ).scalars().all()
    rows = [StatementRow.model_validate(r, from_attributes=True) for r in records]

    result = calculator.calculate(
        rows,
        snapshot,
        currency=statement.currency,
        period=(statement.period_start, statement.period_end),
    )

    await session.execute(
        delete(DistributionRecord).where(
            DistributionRecord.statement_id == stmt_uuid,
            DistributionRecord.status == DistributionStatus.CALCULATED.value,
        )
    )
    session.add_all(
        DistributionRecord(
            statement_id=stmt_uuid,
            status=DistributionStatus.CALCULATED.value,
            **line.model_dump(),
        )
        for line in result.lines
    )
    await session.flush()

    summary = result.summary
    logger.info(
        "distribution_calculated",
        statement_id=statement_id,
        lines=len(result.lines),
        total_gross=str(summary.total_gross),
        total_distributed=str(summary.total_distributed),
        total_undistributed=str(summary.total_undistributed),
        match_rate=summary.match_rate,
        warnings=len(summary.warnings),
    )
    return result
