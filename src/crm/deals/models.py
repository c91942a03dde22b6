"""CRM persistence models -- companies, contacts, tags, projects and join entities.

Six SQLAlchemy models:
- CompanyModel: Customer organisation; owns contacts and projects
- ContactModel: Person at a company
- TagModel: Coloured label attachable to projects (unique name)
- ProjectModel: A deal moving through the pipeline stages
- ProjectContactModel: Join entity linking a project to a contact
- ProjectTagModel: Join entity linking a project to a tag

Cascades are enforced by the database (ON DELETE CASCADE) with
passive_deletes on the ORM side, so deleting a company or project never
needs to load its children first.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.crm.core.database import Base, UTCDateTime

DEFAULT_TAG_COLOR = "#3B82F6"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow
    )


class CompanyModel(TimestampMixin, Base):
    """Customer organisation. Parent of contacts and projects."""

    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    contacts: Mapped[list[ContactModel]] = relationship(
        back_populates="company",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    projects: Mapped[list[ProjectModel]] = relationship(
        back_populates="company",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ContactModel(TimestampMixin, Base):
    """Person working at a company."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    company: Mapped[CompanyModel] = relationship(back_populates="contacts")
    project_links: Mapped[list[ProjectContactModel]] = relationship(
        back_populates="contact",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TagModel(TimestampMixin, Base):
    """Project label. Names are unique across the CRM."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        default=DEFAULT_TAG_COLOR,
        server_default=text(f"'{DEFAULT_TAG_COLOR}'"),
    )

    project_links: Mapped[list[ProjectTagModel]] = relationship(
        back_populates="tag",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ProjectModel(TimestampMixin, Base):
    """Deal moving through the sales pipeline.

    ``stage`` holds a Stage key; ``position`` orders projects within a stage
    column. ``won_at`` / ``lost_at`` are written only by the stage-change
    function in src.crm.deals.stages.
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(
        ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00"), server_default=text("0")
    )
    stage: Mapped[str] = mapped_column(
        String(50), nullable=False, default="lead", server_default=text("'lead'"), index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    won_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    lost_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    company: Mapped[CompanyModel] = relationship(back_populates="projects")

    contact_links: Mapped[list[ProjectContactModel]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tag_links: Mapped[list[ProjectTagModel]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # Read-only views over the join entities; writes go through the links.
    contacts: Mapped[list[ContactModel]] = relationship(
        secondary="project_contact",
        viewonly=True,
        order_by="ContactModel.name",
    )
    tags: Mapped[list[TagModel]] = relationship(
        secondary="project_tag",
        viewonly=True,
        order_by="TagModel.name",
    )


class ProjectContactModel(Base):
    """One project <-> contact association."""

    __tablename__ = "project_contact"
    __table_args__ = (
        UniqueConstraint("project_id", "contact_id", name="uq_project_contact"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)

    project: Mapped[ProjectModel] = relationship(back_populates="contact_links")
    contact: Mapped[ContactModel] = relationship(back_populates="project_links")


class ProjectTagModel(Base):
    """One project <-> tag association."""

    __tablename__ = "project_tag"
    __table_args__ = (
        UniqueConstraint("project_id", "tag_id", name="uq_project_tag"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow)

    project: Mapped[ProjectModel] = relationship(back_populates="tag_links")
    tag: Mapped[TagModel] = relationship(back_populates="project_links")
