"""Deal pipeline stages and the stage-change transition function.

The pipeline is an ordered set of six stages. ``won`` and ``lost`` are
terminal: reaching either one stamps the matching timestamp (``won_at`` /
``lost_at``) the first time only. A stamped timestamp is never cleared or
overwritten by later stage changes, so moving a deal back to ``lead`` and
then to ``won`` again keeps the original win date.

The transition function works on any object exposing ``stage``, ``won_at``
and ``lost_at`` attributes (the ORM model in production, plain objects in
tests). The current time is always passed in by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

import structlog

from src.crm.core.monitoring import stage_transitions_total

logger = structlog.get_logger(__name__)


class Stage(str, Enum):
    """Sales pipeline stage for a project (deal)."""

    LEAD = "lead"
    QUALIFIED = "qualified"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    WON = "won"
    LOST = "lost"


# Display order of the pipeline columns.
STAGE_LABELS: dict[Stage, str] = {
    Stage.LEAD: "Lead",
    Stage.QUALIFIED: "Qualified",
    Stage.PROPOSAL: "Proposal",
    Stage.NEGOTIATION: "Negotiation",
    Stage.WON: "Won",
    Stage.LOST: "Lost",
}

TERMINAL_STAGES: frozenset[Stage] = frozenset({Stage.WON, Stage.LOST})

OPEN_STAGES: tuple[Stage, ...] = tuple(s for s in STAGE_LABELS if s not in TERMINAL_STAGES)

# Terminal stage -> timestamp attribute stamped on first entry.
_STAGE_TIMESTAMPS: dict[Stage, str] = {
    Stage.WON: "won_at",
    Stage.LOST: "lost_at",
}


class InvalidStageError(ValueError):
    """Raised when a value is not one of the pipeline stage keys."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            f"Invalid stage: {value!r}. "
            f"Expected one of: {', '.join(s.value for s in Stage)}"
        )


class StagedRecord(Protocol):
    stage: str
    won_at: datetime | None
    lost_at: datetime | None


@dataclass(frozen=True)
class StageChange:
    """Outcome of a stage change that actually moved the record."""

    from_stage: Stage
    to_stage: Stage
    stamped: str | None = None


def parse_stage(value: Stage | str) -> Stage:
    """Coerce a stage key to Stage.

    Raises:
        InvalidStageError: If the value is not a known stage key.
    """
    if isinstance(value, Stage):
        return value
    try:
        return Stage(value)
    except ValueError:
        raise InvalidStageError(value) from None


def _stamp(record: StagedRecord, stage: Stage, now: datetime) -> str | None:
    field = _STAGE_TIMESTAMPS.get(stage)
    if field is None or getattr(record, field) is not None:
        return None
    setattr(record, field, now)
    return field


def apply_stage_change(
    record: StagedRecord, new_stage: Stage | str, now: datetime
) -> StageChange | None:
    """Move a record to ``new_stage``, stamping won_at/lost_at on first entry.

    No-op (returns None) when the stage is unchanged. Timestamps that are
    already set are left as they are; nothing is ever cleared.

    Args:
        record: Object with stage, won_at and lost_at attributes.
        new_stage: Target stage.
        now: Timestamp to stamp with.

    Returns:
        StageChange describing the move, or None if nothing changed.
    """
    target = parse_stage(new_stage)
    current = parse_stage(record.stage)
    if target == current:
        return None

    record.stage = target.value
    stamped = _stamp(record, target, now)

    stage_transitions_total.labels(
        from_stage=current.value,
        to_stage=target.value,
    ).inc()
    logger.info(
        "stage_changed",
        from_stage=current.value,
        to_stage=target.value,
        stamped=stamped,
    )
    return StageChange(from_stage=current, to_stage=target, stamped=stamped)


def stamp_initial_stage(record: StagedRecord, now: datetime) -> str | None:
    """Stamp the terminal timestamp for a record created directly as won/lost."""
    return _stamp(record, parse_stage(record.stage), now)
