"""CRM repository -- async CRUD for companies, contacts, tags and projects.

Provides CrmRepository with the session_factory callable pattern: every
public method opens its own AsyncSession, validates references, applies the
mutation and commits. Store-dependent validation (foreign keys, tag name
uniqueness) happens before any write, so a rejected request leaves the
store untouched.

Project stage writes go through src.crm.deals.stages.apply_stage_change so
that won_at / lost_at are stamped exactly once. Contact and tag links are
managed as explicit join rows:
- attach: add links that are missing, keep the rest
- sync: make the link set exactly the given ids
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy import Select, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.crm.deals.errors import FieldValidationError, RecordNotFoundError
from src.crm.deals.models import (
    CompanyModel,
    ContactModel,
    ProjectContactModel,
    ProjectModel,
    ProjectTagModel,
    TagModel,
)
from src.crm.deals.schemas import (
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    ProjectCreate,
    ProjectRead,
    ProjectStageMove,
    ProjectUpdate,
    TagCreate,
    TagRead,
)
from src.crm.deals.stages import apply_stage_change, stamp_initial_stage

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def model_to_company(model: CompanyModel) -> CompanyRead:
    """Convert CompanyModel to CompanyRead schema."""
    return CompanyRead(
        id=model.id,
        name=model.name,
        email=model.email,
        phone=model.phone,
        notes=model.notes,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def model_to_contact(model: ContactModel, with_company: bool = False) -> ContactRead:
    """Convert ContactModel to ContactRead; company must be eager-loaded if requested."""
    return ContactRead(
        id=model.id,
        company_id=model.company_id,
        name=model.name,
        email=model.email,
        phone=model.phone,
        title=model.title,
        notes=model.notes,
        company=model_to_company(model.company) if with_company else None,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def model_to_tag(model: TagModel) -> TagRead:
    """Convert TagModel to TagRead schema."""
    return TagRead(
        id=model.id,
        name=model.name,
        color=model.color,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def model_to_project(model: ProjectModel) -> ProjectRead:
    """Convert ProjectModel (with company, contacts, tags loaded) to ProjectRead."""
    return ProjectRead(
        id=model.id,
        company_id=model.company_id,
        name=model.name,
        value=model.value,
        stage=model.stage,
        notes=model.notes,
        position=model.position,
        won_at=model.won_at,
        lost_at=model.lost_at,
        company=model_to_company(model.company),
        contacts=[model_to_contact(c) for c in model.contacts],
        tags=[model_to_tag(t) for t in model.tags],
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def project_query() -> Select:
    """SELECT for projects with company, contacts and tags eager-loaded."""
    return select(ProjectModel).options(
        selectinload(ProjectModel.company),
        selectinload(ProjectModel.contacts),
        selectinload(ProjectModel.tags),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Reference Checks & Link Management ──────────────────────────────────────


async def _require_ids(
    session: AsyncSession, model: type, ids: Iterable[int], field: str
) -> list[int]:
    """Return ids de-duplicated in order; raise if any does not exist."""
    wanted = list(dict.fromkeys(ids))
    if not wanted:
        return wanted
    result = await session.execute(select(model.id).where(model.id.in_(wanted)))
    found = set(result.scalars().all())
    missing = [i for i in wanted if i not in found]
    if missing:
        raise FieldValidationError(
            field,
            f"The selected {field} is invalid: {', '.join(str(i) for i in missing)}",
            "missing_reference",
        )
    return wanted


async def _require_company(session: AsyncSession, company_id: int) -> None:
    await _require_ids(session, CompanyModel, [company_id], "company_id")


async def _link(
    session: AsyncSession,
    link_model: type[ProjectContactModel] | type[ProjectTagModel],
    fk_name: str,
    project_id: int,
    ids: list[int],
    *,
    replace: bool,
) -> None:
    """Attach missing links; with replace=True also drop links not in ids."""
    fk = getattr(link_model, fk_name)
    result = await session.execute(
        select(fk).where(link_model.project_id == project_id)
    )
    existing = set(result.scalars().all())

    for target_id in ids:
        if target_id not in existing:
            session.add(link_model(project_id=project_id, **{fk_name: target_id}))

    if replace:
        stale = existing - set(ids)
        if stale:
            await session.execute(
                delete(link_model).where(
                    link_model.project_id == project_id,
                    fk.in_(sorted(stale)),
                )
            )


# ── Repository ──────────────────────────────────────────────────────────────


class CrmRepository:
    """Async CRUD operations for all CRM entities.

    Args:
        session_factory: Async generator function yielding AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        sessions = self._session_factory()
        try:
            yield await sessions.__anext__()
        finally:
            await sessions.aclose()

    async def _load_project(self, session: AsyncSession, project_id: int) -> ProjectModel:
        stmt = (
            project_query()
            .where(ProjectModel.id == project_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one()

    # ── Companies ───────────────────────────────────────────────────────────

    async def create_company(self, data: CompanyCreate) -> CompanyRead:
        """Create a new company."""
        async with self._session() as session:
            model = CompanyModel(
                name=data.name,
                email=data.email,
                phone=data.phone,
                notes=data.notes,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("company_created", company_id=model.id)
            return model_to_company(model)

    async def get_company(self, company_id: int) -> CompanyRead | None:
        async with self._session() as session:
            model = await session.get(CompanyModel, company_id)
            if model is None:
                return None
            return model_to_company(model)

    async def list_companies(self) -> list[CompanyRead]:
        """List all companies ordered by name."""
        async with self._session() as session:
            result = await session.execute(
                select(CompanyModel).order_by(CompanyModel.name, CompanyModel.id)
            )
            return [model_to_company(m) for m in result.scalars().all()]

    async def delete_company(self, company_id: int) -> None:
        """Delete a company together with its contacts, projects and their links.

        Raises:
            RecordNotFoundError: If the company does not exist.
        """
        async with self._session() as session:
            model = await session.get(CompanyModel, company_id)
            if model is None:
                raise RecordNotFoundError("Company", company_id)
            await session.delete(model)
            await session.commit()
            logger.info("company_deleted", company_id=company_id)

    # ── Contacts ────────────────────────────────────────────────────────────

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        """Create a contact under an existing company.

        Raises:
            FieldValidationError: If company_id does not exist.
        """
        async with self._session() as session:
            await _require_company(session, data.company_id)
            model = ContactModel(
                company_id=data.company_id,
                name=data.name,
                email=data.email,
                phone=data.phone,
                title=data.title,
                notes=data.notes,
            )
            session.add(model)
            await session.commit()

            result = await session.execute(
                select(ContactModel)
                .options(selectinload(ContactModel.company))
                .where(ContactModel.id == model.id)
                .execution_options(populate_existing=True)
            )
            model = result.scalar_one()
            logger.info("contact_created", contact_id=model.id, company_id=model.company_id)
            return model_to_contact(model, with_company=True)

    async def list_contacts(self) -> list[ContactRead]:
        """List all contacts with their company, ordered by name."""
        async with self._session() as session:
            result = await session.execute(
                select(ContactModel)
                .options(selectinload(ContactModel.company))
                .order_by(ContactModel.name, ContactModel.id)
            )
            return [model_to_contact(m, with_company=True) for m in result.scalars().all()]

    # ── Tags ────────────────────────────────────────────────────────────────

    async def create_tag(self, data: TagCreate) -> TagRead:
        """Create a tag.

        Raises:
            FieldValidationError: If a tag with the same name already exists.
        """
        taken = FieldValidationError("name", "The name has already been taken.", "unique")
        async with self._session() as session:
            existing = await session.execute(
                select(TagModel.id).where(TagModel.name == data.name)
            )
            if existing.scalar_one_or_none() is not None:
                raise taken

            model = TagModel(name=data.name, color=data.color)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent insert of the same name
                await session.rollback()
                raise taken
            await session.refresh(model)
            logger.info("tag_created", tag_id=model.id, name=model.name)
            return model_to_tag(model)

    async def list_tags(self) -> list[TagRead]:
        async with self._session() as session:
            result = await session.execute(select(TagModel).order_by(TagModel.name))
            return [model_to_tag(m) for m in result.scalars().all()]

    # ── Projects ────────────────────────────────────────────────────────────

    async def create_project(
        self, data: ProjectCreate, now: datetime | None = None
    ) -> ProjectRead:
        """Create a project and attach the given contacts and tags.

        A project created directly as won/lost gets its timestamp stamped.

        Raises:
            FieldValidationError: If company_id, contact_ids or tag_ids reference
                missing records.
        """
        now = now or _utcnow()
        async with self._session() as session:
            await _require_company(session, data.company_id)
            contact_ids = await _require_ids(
                session, ContactModel, data.contact_ids or [], "contact_ids"
            )
            tag_ids = await _require_ids(session, TagModel, data.tag_ids or [], "tag_ids")

            model = ProjectModel(
                company_id=data.company_id,
                name=data.name,
                value=data.value,
                stage=data.stage.value,
                notes=data.notes,
                position=data.position,
            )
            stamp_initial_stage(model, now)
            session.add(model)
            await session.flush()

            await _link(session, ProjectContactModel, "contact_id", model.id, contact_ids, replace=False)
            await _link(session, ProjectTagModel, "tag_id", model.id, tag_ids, replace=False)
            await session.commit()

            model = await self._load_project(session, model.id)
            logger.info(
                "project_created",
                project_id=model.id,
                company_id=model.company_id,
                stage=model.stage,
            )
            return model_to_project(model)

    async def get_project(self, project_id: int) -> ProjectRead | None:
        async with self._session() as session:
            result = await session.execute(
                project_query().where(ProjectModel.id == project_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return model_to_project(model)

    async def update_project(
        self, project_id: int, data: ProjectUpdate, now: datetime | None = None
    ) -> ProjectRead:
        """Apply a partial update; sync contact/tag links when lists are given.

        Raises:
            RecordNotFoundError: If the project does not exist.
            FieldValidationError: If contact_ids or tag_ids reference missing records.
        """
        now = now or _utcnow()
        async with self._session() as session:
            model = await session.get(ProjectModel, project_id)
            if model is None:
                raise RecordNotFoundError("Project", project_id)

            contact_ids = None
            if data.contact_ids is not None:
                contact_ids = await _require_ids(
                    session, ContactModel, data.contact_ids, "contact_ids"
                )
            tag_ids = None
            if data.tag_ids is not None:
                tag_ids = await _require_ids(session, TagModel, data.tag_ids, "tag_ids")

            changes = data.field_changes()
            new_stage = changes.pop("stage", None)
            for key, value in changes.items():
                setattr(model, key, value)
            if new_stage is not None:
                apply_stage_change(model, new_stage, now)

            if contact_ids is not None:
                await _link(session, ProjectContactModel, "contact_id", project_id, contact_ids, replace=True)
            if tag_ids is not None:
                await _link(session, ProjectTagModel, "tag_id", project_id, tag_ids, replace=True)

            await session.commit()
            model = await self._load_project(session, project_id)
            logger.info("project_updated", project_id=project_id, fields=sorted(changes))
            return model_to_project(model)

    async def move_project(
        self, project_id: int, data: ProjectStageMove, now: datetime | None = None
    ) -> ProjectRead:
        """Move a project to a stage column at a position (drag-and-drop).

        Raises:
            RecordNotFoundError: If the project does not exist.
        """
        now = now or _utcnow()
        async with self._session() as session:
            model = await session.get(ProjectModel, project_id)
            if model is None:
                raise RecordNotFoundError("Project", project_id)

            model.position = data.position
            apply_stage_change(model, data.stage, now)
            await session.commit()

            model = await self._load_project(session, project_id)
            return model_to_project(model)

    async def delete_project(self, project_id: int) -> None:
        """Delete a project and its contact/tag links.

        Raises:
            RecordNotFoundError: If the project does not exist.
        """
        async with self._session() as session:
            model = await session.get(ProjectModel, project_id)
            if model is None:
                raise RecordNotFoundError("Project", project_id)
            await session.delete(model)
            await session.commit()
            logger.info("project_deleted", project_id=project_id)
