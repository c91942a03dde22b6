"""Pydantic schemas for the CRM -- request payloads, read models, and the board view.

Defines:
- Create/update payloads: CompanyCreate, ContactCreate, TagCreate,
  ProjectCreate, ProjectUpdate, ProjectStageMove
- Read models: CompanyRead, ContactRead, TagRead, ProjectRead
- Board view: PeriodStats, BoardView

Request payloads carry the field-level rules (lengths, email format,
non-negative money with two decimals, stage keys, hex colours). Checks that
need the store (foreign keys, tag name uniqueness) are done by the
repository.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field, field_validator

from src.crm.deals.stages import Stage

TAG_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def _blank_to_none(v):
    """Form posts send empty strings for untouched optional fields."""
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


# ── Companies ───────────────────────────────────────────────────────────────


class CompanyCreate(BaseModel):
    """Schema for creating a company."""

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=255)
    notes: str | None = None

    @field_validator("email", "phone", "notes", mode="before")
    @classmethod
    def _blank_optional(cls, v):
        return _blank_to_none(v)


class CompanyRead(BaseModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    """Schema for creating a contact under an existing company."""

    company_id: int
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    notes: str | None = None

    @field_validator("email", "phone", "title", "notes", mode="before")
    @classmethod
    def _blank_optional(cls, v):
        return _blank_to_none(v)


class ContactRead(BaseModel):
    id: int
    company_id: int
    name: str
    email: str | None = None
    phone: str | None = None
    title: str | None = None
    notes: str | None = None
    company: CompanyRead | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Tags ────────────────────────────────────────────────────────────────────


class TagCreate(BaseModel):
    """Schema for creating a tag. Colour must be #RRGGBB."""

    name: str = Field(min_length=1, max_length=255)
    color: str = Field(pattern=TAG_COLOR_PATTERN)


class TagRead(BaseModel):
    id: int
    name: str
    color: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Projects ────────────────────────────────────────────────────────────────


class ProjectCreate(BaseModel):
    """Schema for creating a project, optionally attaching contacts and tags."""

    company_id: int
    name: str = Field(min_length=1, max_length=255)
    value: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    stage: Stage = Stage.LEAD
    notes: str | None = None
    position: int = 0
    contact_ids: list[int] | None = None
    tag_ids: list[int] | None = None


class ProjectUpdate(BaseModel):
    """Partial project update.

    Omitted fields are left alone. ``notes`` may be cleared with null; the
    other scalar fields may not be null. A list for ``contact_ids`` or
    ``tag_ids`` replaces the whole link set; omitted or null leaves it.
    """

    name: str | None = Field(default=None, min_length=1, max_length=255)
    value: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    stage: Stage | None = None
    notes: str | None = None
    position: int | None = None
    contact_ids: list[int] | None = None
    tag_ids: list[int] | None = None

    @field_validator("name", "value", "stage", "position")
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v

    def field_changes(self) -> dict:
        """Scalar fields explicitly sent by the client (link lists excluded)."""
        return self.model_dump(exclude_unset=True, exclude={"contact_ids", "tag_ids"})


class ProjectStageMove(BaseModel):
    """Drag-and-drop move of a project to a stage column and position."""

    stage: Stage
    position: int


class ProjectRead(BaseModel):
    id: int
    company_id: int
    name: str
    value: Decimal
    stage: Stage
    notes: str | None = None
    position: int = 0
    won_at: datetime | None = None
    lost_at: datetime | None = None
    company: CompanyRead | None = None
    contacts: list[ContactRead] = Field(default_factory=list)
    tags: list[TagRead] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Board View ──────────────────────────────────────────────────────────────


class PeriodStats(BaseModel):
    """Won and lost deal value for one look-back window."""

    won: Decimal = Decimal("0.00")
    lost: Decimal = Decimal("0.00")


class BoardView(BaseModel):
    """Everything the pipeline board page needs, computed from one snapshot.

    ``projects`` maps open stage keys (only those with projects) to their
    projects ordered by position. ``stage_values`` covers every open stage.
    ``stats`` is keyed by window: week, month, quarter, year.
    """

    projects: dict[str, list[ProjectRead]] = Field(default_factory=dict)
    stage_values: dict[str, Decimal] = Field(default_factory=dict)
    stats: dict[str, PeriodStats] = Field(default_factory=dict)
    companies: list[CompanyRead] = Field(default_factory=list)
    contacts: list[ContactRead] = Field(default_factory=list)
    tags: list[TagRead] = Field(default_factory=list)
    stages: dict[str, str] = Field(default_factory=dict)
