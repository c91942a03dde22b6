"""Tests for the pipeline board assembler and its pure helpers.

Covers:
- period_starts: Monday week start, month/quarter/year, local-zone calendars
- group_by_stage / stage_totals
- BoardAssembler.build: open listing order, stage totals, won/lost stats,
  picker lists, empty store, one snapshot per build
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import event

from src.crm.deals.board import PERIODS, group_by_stage, period_starts, stage_totals
from src.crm.deals.schemas import (
    CompanyCreate,
    ContactCreate,
    ProjectCreate,
    ProjectRead,
    ProjectStageMove,
    TagCreate,
)
from src.crm.deals.stages import Stage

UTC = timezone.utc


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def _project(id: int, stage: str, value: str = "1") -> ProjectRead:
    return ProjectRead(id=id, company_id=1, name=f"P{id}", value=Decimal(value), stage=stage)


# ── period_starts ───────────────────────────────────────────────────────────


class TestPeriodStarts:
    def test_utc_windows(self) -> None:
        # Thursday
        starts = period_starts(_utc(2026, 8, 13, 15, 30), UTC)

        assert list(starts) == list(PERIODS)
        assert starts["week"] == _utc(2026, 8, 10)
        assert starts["month"] == _utc(2026, 8, 1)
        assert starts["quarter"] == _utc(2026, 7, 1)
        assert starts["year"] == _utc(2026, 1, 1)

    def test_monday_is_its_own_week_start(self) -> None:
        starts = period_starts(_utc(2026, 8, 10, 0, 0), UTC)
        assert starts["week"] == _utc(2026, 8, 10)

    def test_sunday_belongs_to_previous_monday(self) -> None:
        starts = period_starts(_utc(2026, 8, 16, 23, 59), UTC)
        assert starts["week"] == _utc(2026, 8, 10)

    @pytest.mark.parametrize(
        ("month", "quarter_month"),
        [(1, 1), (3, 1), (4, 4), (6, 4), (7, 7), (9, 7), (10, 10), (12, 10)],
    )
    def test_quarter_boundaries(self, month: int, quarter_month: int) -> None:
        starts = period_starts(_utc(2026, month, 15, 12), UTC)
        assert starts["quarter"] == _utc(2026, quarter_month, 1)

    def test_windows_follow_local_calendar(self) -> None:
        eastern = timezone(timedelta(hours=-5))
        # Monday 03:00 UTC is still Sunday evening at UTC-5
        starts = period_starts(_utc(2026, 8, 10, 3, 0), eastern)

        assert starts["week"] == datetime(2026, 8, 3, tzinfo=eastern)
        assert starts["week"] == _utc(2026, 8, 3, 5, 0)
        assert starts["month"] == datetime(2026, 8, 1, tzinfo=eastern)

    def test_new_year_in_utc_is_still_last_year_locally(self) -> None:
        eastern = timezone(timedelta(hours=-5))
        starts = period_starts(_utc(2026, 1, 1, 2, 0), eastern)

        assert starts["year"] == datetime(2025, 1, 1, tzinfo=eastern)
        assert starts["quarter"] == datetime(2025, 10, 1, tzinfo=eastern)
        assert starts["month"] == datetime(2025, 12, 1, tzinfo=eastern)


# ── group_by_stage / stage_totals ───────────────────────────────────────────


def test_group_by_stage_preserves_order():
    projects = [_project(1, "lead"), _project(2, "proposal"), _project(3, "lead")]

    grouped = group_by_stage(projects)

    assert list(grouped) == ["lead", "proposal"]
    assert [p.id for p in grouped["lead"]] == [1, 3]
    assert [p.id for p in grouped["proposal"]] == [2]


def test_group_by_stage_empty():
    assert group_by_stage([]) == {}


def test_stage_totals_fills_missing_stages():
    totals = stage_totals({"lead": Decimal("1500"), "proposal": 250.5})

    assert list(totals) == ["lead", "qualified", "proposal", "negotiation"]
    assert totals["lead"] == Decimal("1500.00")
    assert totals["qualified"] == Decimal("0.00")
    assert totals["proposal"] == Decimal("250.50")
    assert str(totals["negotiation"]) == "0.00"


# ── BoardAssembler ──────────────────────────────────────────────────────────


async def _company(repo, name: str = "Acme Corp"):
    return await repo.create_company(CompanyCreate(name=name))


async def _create(repo, company_id: int, value: str, stage: str, at: datetime, position: int = 0):
    return await repo.create_project(
        ProjectCreate(
            company_id=company_id,
            name=f"{stage} {value}",
            value=Decimal(value),
            stage=stage,
            position=position,
        ),
        now=at,
    )


@pytest.mark.asyncio
async def test_empty_board_is_all_zero(assembler, now):
    view = await assembler.build(now)

    assert view.projects == {}
    assert view.stage_values == {
        "lead": Decimal("0.00"),
        "qualified": Decimal("0.00"),
        "proposal": Decimal("0.00"),
        "negotiation": Decimal("0.00"),
    }
    assert set(view.stats) == {"week", "month", "quarter", "year"}
    for stats in view.stats.values():
        assert stats.won == Decimal("0.00")
        assert stats.lost == Decimal("0.00")
    assert view.companies == []
    assert view.contacts == []
    assert view.tags == []
    assert view.stages == {
        "lead": "Lead",
        "qualified": "Qualified",
        "proposal": "Proposal",
        "negotiation": "Negotiation",
        "won": "Won",
        "lost": "Lost",
    }


@pytest.mark.asyncio
async def test_open_projects_grouped_and_ordered(repo, assembler, now):
    company = await _company(repo)
    big_lead = await _create(repo, company.id, "1000", "lead", now, position=1)
    small_lead = await _create(repo, company.id, "500", "lead", now, position=0)
    proposal = await _create(repo, company.id, "250.50", "proposal", now, position=0)
    await _create(repo, company.id, "9999", "won", now)
    await _create(repo, company.id, "8888", "lost", now)

    view = await assembler.build(now)

    assert set(view.projects) == {"lead", "proposal"}
    assert [p.id for p in view.projects["lead"]] == [small_lead.id, big_lead.id]
    assert [p.id for p in view.projects["proposal"]] == [proposal.id]
    assert view.projects["lead"][0].company.name == "Acme Corp"

    assert view.stage_values == {
        "lead": Decimal("1500.00"),
        "qualified": Decimal("0.00"),
        "proposal": Decimal("250.50"),
        "negotiation": Decimal("0.00"),
    }


@pytest.mark.asyncio
async def test_stage_totals_match_open_listing(repo, assembler, now):
    company = await _company(repo)
    for i, (value, stage) in enumerate(
        [("10.10", "lead"), ("20.20", "qualified"), ("30.30", "qualified"), ("40.40", "negotiation")]
    ):
        await _create(repo, company.id, value, stage, now, position=i)

    view = await assembler.build(now)

    listed = sum(
        (p.value for projects in view.projects.values() for p in projects), Decimal("0")
    )
    assert sum(view.stage_values.values()) == listed == Decimal("101.00")
    for stage, projects in view.projects.items():
        assert view.stage_values[stage] == sum((p.value for p in projects), Decimal("0"))


@pytest.mark.asyncio
async def test_period_stats(repo, assembler, now):
    company = await _company(repo)
    await _create(repo, company.id, "2000", "won", now)
    await _create(repo, company.id, "3000", "won", _utc(2026, 8, 3, 12))
    await _create(repo, company.id, "4000", "won", _utc(2026, 7, 5, 12))
    await _create(repo, company.id, "5000", "won", _utc(2026, 2, 1, 12))
    await _create(repo, company.id, "6000", "won", _utc(2025, 12, 31, 12))
    await _create(repo, company.id, "700", "lost", _utc(2026, 8, 11, 9))

    view = await assembler.build(now)

    assert view.stats["week"].won == Decimal("2000.00")
    assert view.stats["week"].lost == Decimal("700.00")
    assert view.stats["month"].won == Decimal("5000.00")
    assert view.stats["quarter"].won == Decimal("9000.00")
    assert view.stats["year"].won == Decimal("14000.00")
    for period in ("month", "quarter", "year"):
        assert view.stats[period].lost == Decimal("700.00")
    # Terminal projects never show up on the board columns
    assert view.projects == {}


@pytest.mark.asyncio
async def test_week_window_includes_its_start(repo, assembler, now):
    company = await _company(repo)
    week_start = _utc(2026, 8, 10)
    await _create(repo, company.id, "100", "won", week_start)
    await _create(repo, company.id, "1", "won", week_start - timedelta(seconds=1))

    view = await assembler.build(now)

    assert view.stats["week"].won == Decimal("100.00")
    assert view.stats["month"].won == Decimal("101.00")


@pytest.mark.asyncio
async def test_reopened_deal_leaves_won_stats(repo, assembler, now):
    company = await _company(repo)
    project = await _create(repo, company.id, "1234", "lead", now)
    await repo.move_project(project.id, ProjectStageMove(stage=Stage.WON, position=0), now=now)

    view = await assembler.build(now)
    assert view.stats["week"].won == Decimal("1234.00")

    await repo.move_project(project.id, ProjectStageMove(stage=Stage.LEAD, position=0), now=now)

    view = await assembler.build(now)
    assert view.stats["week"].won == Decimal("0.00")
    assert view.stage_values["lead"] == Decimal("1234.00")
    # The original win timestamp survives the reopen
    assert view.projects["lead"][0].won_at == now


@pytest.mark.asyncio
async def test_pickers_sorted_by_name(repo, assembler, now):
    zeta = await _company(repo, "Zeta")
    await _company(repo, "Alpha")
    await repo.create_contact(ContactCreate(company_id=zeta.id, name="Yvonne"))
    await repo.create_contact(ContactCreate(company_id=zeta.id, name="Adam"))
    await repo.create_tag(TagCreate(name="Urgent", color="#EF4444"))
    await repo.create_tag(TagCreate(name="Big", color="#3B82F6"))

    view = await assembler.build(now)

    assert [c.name for c in view.companies] == ["Alpha", "Zeta"]
    assert [c.name for c in view.contacts] == ["Adam", "Yvonne"]
    assert view.contacts[0].company.name == "Zeta"
    assert [t.name for t in view.tags] == ["Big", "Urgent"]


@pytest.mark.asyncio
async def test_build_reads_one_snapshot(repo, assembler, engine, tmp_path, now):
    """A commit landing mid-build shows up in neither the listing nor the totals."""
    company = await _company(repo)
    await _create(repo, company.id, "100", "lead", now)
    stamp = now.strftime("%Y-%m-%d %H:%M:%S.%f")
    fired: list[str] = []

    def commit_after_listing(conn, cursor, statement, parameters, context, executemany):
        if fired or "ORDER BY projects.position" not in statement:
            return
        fired.append(statement)
        writer = sqlite3.connect(tmp_path / "crm.db")
        try:
            writer.execute(
                "INSERT INTO projects (company_id, name, value, stage, position, created_at, updated_at) "
                "VALUES (?, 'Late deal', 777, 'lead', 0, ?, ?)",
                (company.id, stamp, stamp),
            )
            writer.commit()
        finally:
            writer.close()

    event.listen(engine.sync_engine, "after_cursor_execute", commit_after_listing)
    try:
        view = await assembler.build(now)
    finally:
        event.remove(engine.sync_engine, "after_cursor_execute", commit_after_listing)

    assert fired
    listed = sum((p.value for p in view.projects["lead"]), Decimal("0"))
    assert listed == Decimal("100.00")
    assert view.stage_values["lead"] == listed

    # The next build sees the committed row in both places
    view = await assembler.build(now)
    assert [p.name for p in view.projects["lead"]] == ["lead 100", "Late deal"]
    assert view.stage_values["lead"] == Decimal("877.00")
