"""
Tests for distribution calculation.
"""

import asyncio
import time
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from royalties.distribution.calculator import (
    DistributionCalculator,
    calculate_statement_distributions,
    infer_right_type,
    round_money,
)
from royalties.matching.catalog_cache import build_snapshot
from royalties.models.enums import MatchStatus, RightType
from royalties.models.tables import DistributionRecord, Statement, StatementRowRecord
from royalties.schemas.statements import StatementRow

from conftest import TENANT, make_work


def matched(n, work_id, amount, status=MatchStatus.EXACT, **fields):
    return StatementRow(
        row_number=n,
        amount=Decimal(amount),
        match_status=status,
        matched_work_id=work_id,
        **fields,
    )


def unmatched(n, amount, status=MatchStatus.NO_MATCH):
    return StatementRow(row_number=n, amount=Decimal(amount), match_status=status)


def snapshot_of(*works):
    return build_snapshot(TENANT, list(works), loaded_at=time.monotonic())


THREE_WAY = make_work(
    "w-three", "Three Way", "TW1",
    writers=[("a", "Ann", "Alpha", "33.33"), ("b", "Bob", "Beta", "33.33"), ("c", "Cy", "Gamma", "33.34")],
)


class TestRounding:
    """Test half-up rounding and residual assignment."""

    def test_round_half_up(self):
        assert round_money(Decimal("0.005")) == Decimal("0.01")
        assert round_money(Decimal("1.234")) == Decimal("1.23")
        assert round_money(Decimal("-0.005")) == Decimal("-0.01")

    def test_residual_goes_to_largest_share(self):
        calc = DistributionCalculator(share_tolerance=0.01)
        result = calc.calculate([matched(1, "w-three", "100.01")], snapshot_of(THREE_WAY))

        nets = {d.writer_id: d.net_amount for d in result.lines}
        # 33.33% of 100.01 = 33.333... -> 33.33; 33.34% -> 33.34; sum 100.00
        assert nets == {"a": Decimal("33.33"), "b": Decimal("33.33"), "c": Decimal("33.35")}
        assert sum(nets.values()) == Decimal("100.01")

        [adjustment] = result.summary.rounding_adjustments
        assert adjustment.party_id == "c"
        assert adjustment.amount == Decimal("0.01")
        assert next(d for d in result.lines if d.writer_id == "c").adjustment == Decimal("0.01")

    def test_tie_goes_to_first_line(self):
        work = make_work("w-tie", "Tie", "T1", writers=[
            ("a", "A", "One", "50"), ("b", "B", "Two", "50"),
        ])
        result = DistributionCalculator().calculate([matched(1, "w-tie", "0.01")], snapshot_of(work))
        nets = {d.writer_id: d.net_amount for d in result.lines}
        # 0.005 rounds half-up to 0.01 for both, residual -0.01 lands on the first
        assert nets == {"a": Decimal("0.00"), "b": Decimal("0.01")}
        assert result.summary.rounding_adjustments[0].amount == Decimal("-0.01")

    def test_exact_split_has_no_adjustment(self):
        result = DistributionCalculator().calculate(
            [matched(1, "w-three", "300.00")], snapshot_of(THREE_WAY)
        )
        assert result.summary.rounding_adjustments == []
        assert sum(d.net_amount for d in result.lines) == Decimal("300.00")


class TestConservation:
    """Test that gross always equals distributed plus undistributed."""

    def test_sixty_of_hundred_rows_matched(self):
        work = make_work("w1", "One", "C1", writers=[("a", "A", "One", "60")],
                         publishers=[("p", "Pub", "40")])
        rows = [
            matched(n, "w1", "100.00") if n <= 60 else unmatched(n, "100.00")
            for n in range(1, 101)
        ]
        summary = DistributionCalculator().calculate(rows, snapshot_of(work)).summary

        assert summary.total_gross == Decimal("10000.00")
        assert summary.total_distributed == Decimal("6000.00")
        assert summary.total_undistributed == Decimal("4000.00")
        assert summary.total_distributed + summary.total_undistributed == summary.total_gross
        assert summary.match_rate == 0.6
        assert summary.by_writer[0].amount == Decimal("3600.00")
        assert summary.by_publisher[0].amount == Decimal("2400.00")
        assert summary.by_writer[0].percentage == pytest.approx(60.0)

    def test_review_rows_are_not_distributed(self):
        rows = [
            matched(1, "w-three", "10.00"),
            matched(2, "w-three", "10.00", status=MatchStatus.FUZZY_HIGH),
            matched(3, "w-three", "10.00", status=MatchStatus.MANUAL),
            matched(4, "w-three", "10.00", status=MatchStatus.FUZZY_MEDIUM),
            unmatched(5, "10.00", status=MatchStatus.REJECTED),
        ]
        summary = DistributionCalculator().calculate(rows, snapshot_of(THREE_WAY)).summary
        assert summary.total_distributed == Decimal("30.00")
        assert summary.total_undistributed == Decimal("20.00")
        assert summary.match_rate == pytest.approx(0.6)

    def test_share_mismatch_leaves_remainder_undistributed(self):
        work = make_work("w-short", "Short", "S1", writers=[("a", "A", "One", "50"), ("b", "B", "Two", "30")])
        result = DistributionCalculator().calculate([matched(1, "w-short", "100.00")], snapshot_of(work))
        summary = result.summary

        assert summary.total_distributed == Decimal("80.00")
        assert summary.total_undistributed == Decimal("20.00")
        assert summary.rounding_adjustments == []
        assert any("80" in w and "20.00" in w for w in summary.warnings)

    def test_missing_work_is_undistributed(self):
        result = DistributionCalculator().calculate([matched(1, "w-gone", "12.50")], snapshot_of(THREE_WAY))
        assert result.lines == []
        assert result.summary.total_undistributed == Decimal("12.50")
        assert "w-gone" in result.summary.warnings[0]

    def test_negative_adjustment_rows_net_within_group(self):
        rows = [matched(1, "w-three", "100.00"), matched(2, "w-three", "-40.00")]
        summary = DistributionCalculator().calculate(rows, snapshot_of(THREE_WAY)).summary
        assert summary.total_distributed == Decimal("60.00")
        assert summary.total_undistributed == Decimal("0.00")


class TestRightTypes:
    """Test right type resolution and per-right shares."""

    def test_explicit_right_type_wins(self):
        row = StatementRow(row_number=1, right_type="Sync", usage_type="streaming")
        assert infer_right_type(row) == RightType.SYNC

    @pytest.mark.parametrize("usage,expected", [
        ("streaming", RightType.MECHANICAL),
        ("download", RightType.MECHANICAL),
        ("broadcast", RightType.PERFORMANCE),
        ("live", RightType.PERFORMANCE),
        ("background", RightType.SYNC),
        ("other", RightType.OTHER),
        (None, RightType.OTHER),
    ])
    def test_inferred_from_usage(self, usage, expected):
        assert infer_right_type(StatementRow(row_number=1, usage_type=usage)) == expected

    def test_right_specific_share_overrides_general(self):
        from royalties.schemas.catalog import CachedPublisher, CachedWriter, CatalogWork

        work = CatalogWork(
            id="w-split", work_code="SP1", title="Split",
            writers=(CachedWriter(id="a", last_name="One", share=Decimal("50"),
                                  right_shares={"mechanical": Decimal("100")}),),
            publishers=(CachedPublisher(id="p", name="Pub", share=Decimal("50"),
                                        right_shares={"mechanical": Decimal("0")}),),
        )
        rows = [
            matched(1, "w-split", "10.00", right_type="mechanical"),
            matched(2, "w-split", "10.00", right_type="performance"),
        ]
        result = DistributionCalculator().calculate(rows, snapshot_of(work))

        mech = [d for d in result.lines if d.right_type == "mechanical"]
        perf = [d for d in result.lines if d.right_type == "performance"]
        assert [(d.writer_id, d.net_amount) for d in mech] == [("a", Decimal("10.00"))]
        assert {(d.writer_id or d.publisher_id): d.net_amount for d in perf} == {
            "a": Decimal("5.00"), "p": Decimal("5.00"),
        }
        assert result.summary.by_right_type == {
            "mechanical": Decimal("10.00"), "performance": Decimal("10.00"),
        }

    def test_rows_grouped_per_work_and_right_type(self):
        rows = [
            matched(1, "w-three", "10.00", usage_type="streaming"),
            matched(2, "w-three", "20.00", usage_type="download"),
        ]
        result = DistributionCalculator().calculate(rows, snapshot_of(THREE_WAY))
        assert len(result.lines) == 3
        assert all(d.gross_amount == Decimal("30.00") for d in result.lines)
        assert all(d.source_row_numbers == [1, 2] for d in result.lines)
        assert all(d.right_type == "mechanical" for d in result.lines)


class TestPersistence:
    """Test storing calculated distributions."""

    def test_recalculation_replaces_prior_lines(self, open_db):
        async def scenario():
            async with open_db() as sessions:
                stmt_id = uuid.uuid4()
                async with sessions() as session:
                    session.add(Statement(id=stmt_id, tenant_id=TENANT, filename="s.csv",
                                          format="csv", currency="EUR"))
                    session.add_all([
                        StatementRowRecord(statement_id=stmt_id, row_number=1, amount=Decimal("100.01"),
                                           match_status="exact", matched_work_id="w-three"),
                        StatementRowRecord(statement_id=stmt_id, row_number=2, amount=Decimal("50.00"),
                                           match_status="no_match"),
                    ])
                    await session.commit()

                snap = snapshot_of(THREE_WAY)
                for _ in range(2):
                    async with sessions() as session:
                        result = await calculate_statement_distributions(session, str(stmt_id), snap)
                        await session.commit()

                async with sessions() as session:
                    records = (await session.execute(select(DistributionRecord))).scalars().all()
                return result, records

        result, records = asyncio.run(scenario())
        assert len(records) == 3
        assert sum(r.net_amount for r in records) == Decimal("100.01")
        assert all(r.currency == "EUR" for r in records)
        assert all(r.status == "calculated" for r in records)
        assert result.summary.total_undistributed == Decimal("50.00")

    def test_unknown_statement(self, open_db):
        async def scenario():
            async with open_db() as sessions:
                async with sessions() as session:
                    await calculate_statement_distributions(
                        session, str(uuid.uuid4()), snapshot_of(THREE_WAY)
                    )

        with pytest.raises(LookupError):
            asyncio.run(scenario())
