"""Pipeline board assembler -- the read model behind the kanban page.

Builds a BoardView from the current store contents:
1. Open projects (stage not won/lost) with company, contacts and tags,
   ordered by position and grouped by stage.
2. Total value per open stage, in pipeline order, zero for empty stages.
3. Won/lost value for the current week, month, quarter and year.
4. Companies, contacts and tags for the board's pickers, plus the stage
   column labels.

Everything is re-derived on each call inside a single transaction, so the
listing and the aggregates come from the same snapshot. PostgreSQL reads run
at REPEATABLE READ; SQLite connections get an explicit BEGIN and WAL from
src.crm.core.database. Nothing is written.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Mapping
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.crm.deals.models import CompanyModel, ContactModel, ProjectModel, TagModel
from src.crm.deals.repository import (
    model_to_company,
    model_to_contact,
    model_to_project,
    model_to_tag,
    project_query,
)
from src.crm.deals.schemas import BoardView, PeriodStats, ProjectRead
from src.crm.deals.stages import OPEN_STAGES, STAGE_LABELS, TERMINAL_STAGES, Stage

logger = structlog.get_logger(__name__)

_CENTS = Decimal("0.01")

PERIODS: tuple[str, ...] = ("week", "month", "quarter", "year")


def _money(value: Any) -> Decimal:
    return Decimal(value or 0).quantize(_CENTS)


async def _open_snapshot(session: AsyncSession) -> None:
    """Procure the read connection so every query shares one snapshot."""
    options: dict[str, Any] = {}
    if session.bind.dialect.name == "postgresql":
        options["isolation_level"] = "REPEATABLE READ"
    await session.connection(execution_options=options)


# ── Pure Helpers ────────────────────────────────────────────────────────────


def period_starts(now: datetime, tz: tzinfo) -> dict[str, datetime]:
    """Start of the current week (Monday), month, quarter and year.

    Calendar boundaries are taken in ``tz``; the returned datetimes are
    aware and comparable with UTC timestamps.

    Args:
        now: Current time (aware).
        tz: Timezone whose calendar defines the windows.

    Returns:
        Mapping of period name to window start, in PERIODS order.
    """
    local = now.astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    quarter_month = 3 * ((local.month - 1) // 3) + 1
    return {
        "week": midnight - timedelta(days=local.weekday()),
        "month": midnight.replace(day=1),
        "quarter": midnight.replace(month=quarter_month, day=1),
        "year": midnight.replace(month=1, day=1),
    }


def group_by_stage(projects: Iterable[ProjectRead]) -> dict[str, list[ProjectRead]]:
    """Group projects by stage key, keeping input order within and across groups."""
    grouped: dict[str, list[ProjectRead]] = {}
    for project in projects:
        grouped.setdefault(Stage(project.stage).value, []).append(project)
    return grouped


def stage_totals(sums: Mapping[str, Any]) -> dict[str, Decimal]:
    """Totals for every open stage in pipeline order; missing stages are 0."""
    return {stage.value: _money(sums.get(stage.value)) for stage in OPEN_STAGES}


# ── Assembler ───────────────────────────────────────────────────────────────


class BoardAssembler:
    """Computes the pipeline board view from one consistent read.

    Args:
        session_factory: Async generator function yielding AsyncSession instances.
        timezone: Zone name used for the week/month/quarter/year boundaries.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        timezone: str = "UTC",
    ) -> None:
        self._session_factory = session_factory
        self._tz = ZoneInfo(timezone)

    async def build(self, now: datetime) -> BoardView:
        """Assemble the board view as of ``now``."""
        sessions = self._session_factory()
        try:
            session = await sessions.__anext__()
            async with session.begin():
                await _open_snapshot(session)
                view = await self._build(session, now)
        finally:
            await sessions.aclose()

        logger.debug(
            "board_built",
            open_projects=sum(len(p) for p in view.projects.values()),
            stages=list(view.projects),
        )
        return view

    async def _build(self, session: AsyncSession, now: datetime) -> BoardView:
        projects = await self._open_projects(session)
        sums = await self._stage_sums(session)
        stats = {
            period: await self._period_stats(session, start)
            for period, start in period_starts(now, self._tz).items()
        }

        companies = await session.execute(
            select(CompanyModel).order_by(CompanyModel.name, CompanyModel.id)
        )
        contacts = await session.execute(
            select(ContactModel)
            .options(selectinload(ContactModel.company))
            .order_by(ContactModel.name, ContactModel.id)
        )
        tags = await session.execute(select(TagModel).order_by(TagModel.name))

        return BoardView(
            projects=group_by_stage(projects),
            stage_values=stage_totals(sums),
            stats=stats,
            companies=[model_to_company(m) for m in companies.scalars().all()],
            contacts=[model_to_contact(m, with_company=True) for m in contacts.scalars().all()],
            tags=[model_to_tag(m) for m in tags.scalars().all()],
            stages={stage.value: label for stage, label in STAGE_LABELS.items()},
        )

    async def _open_projects(self, session: AsyncSession) -> list[ProjectRead]:
        result = await session.execute(
            project_query()
            .where(ProjectModel.stage.notin_([s.value for s in TERMINAL_STAGES]))
            .order_by(ProjectModel.position, ProjectModel.id)
        )
        return [model_to_project(m) for m in result.scalars().all()]

    async def _stage_sums(self, session: AsyncSession) -> dict[str, Any]:
        result = await session.execute(
            select(ProjectModel.stage, func.sum(ProjectModel.value))
            .where(ProjectModel.stage.in_([s.value for s in OPEN_STAGES]))
            .group_by(ProjectModel.stage)
        )
        return {stage: total for stage, total in result.all()}

    async def _period_stats(self, session: AsyncSession, start: datetime) -> PeriodStats:
        won = await session.execute(
            select(func.sum(ProjectModel.value)).where(
                ProjectModel.stage == Stage.WON.value,
                ProjectModel.won_at >= start,
            )
        )
        lost = await session.execute(
            select(func.sum(ProjectModel.value)).where(
                ProjectModel.stage == Stage.LOST.value,
                ProjectModel.lost_at >= start,
            )
        )
        return PeriodStats(won=_money(won.scalar()), lost=_money(lost.scalar()))
