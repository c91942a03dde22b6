"""REST API endpoints for the CRM pipeline board.

Provides the board view and create/update/delete endpoints for companies,
contacts, tags and projects. All endpoints require an authenticated caller.
Store-dependent validation failures (unknown ids, duplicate tag names) are
returned as 422 with the same per-field shape as request validation errors;
unknown path ids are 404.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.crm.api.deps import AuthenticatedUser, get_clock, get_current_user
from src.crm.deals.board import BoardAssembler
from src.crm.deals.errors import FieldValidationError, RecordNotFoundError
from src.crm.deals.repository import CrmRepository
from src.crm.deals.schemas import (
    BoardView,
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

router = APIRouter(prefix="/crm", tags=["crm"])


class SuccessResponse(BaseModel):
    success: bool = True


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_crm_repository(request: Request) -> CrmRepository:
    """Retrieve CrmRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "crm_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM repository not initialized",
        )
    return repo


def _get_board_assembler(request: Request) -> BoardAssembler:
    """Retrieve BoardAssembler from app.state, 503 if not available."""
    assembler = getattr(request.app.state, "board_assembler", None)
    if assembler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Board assembler not initialized",
        )
    return assembler


def _unprocessable(exc: FieldValidationError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail=exc.to_detail(),
    )


def _not_found(exc: RecordNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Board ────────────────────────────────────────────────────────────────────


@router.get("", response_model=BoardView)
async def get_board(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    now: datetime = Depends(get_clock),
) -> BoardView:
    """Pipeline board: open projects by stage, stage totals and period stats."""
    assembler = _get_board_assembler(request)
    return await assembler.build(now)


# ── Company Endpoints ────────────────────────────────────────────────────────


@router.post("/companies", response_model=CompanyRead, status_code=201)
async def create_company(
    body: CompanyCreate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> CompanyRead:
    """Create a company."""
    repo = _get_crm_repository(request)
    return await repo.create_company(body)


@router.delete("/companies/{company_id}", response_model=SuccessResponse)
async def delete_company(
    company_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a company with all of its contacts and projects."""
    repo = _get_crm_repository(request)
    try:
        await repo.delete_company(company_id)
    except RecordNotFoundError as exc:
        raise _not_found(exc)
    return SuccessResponse()


# ── Contact Endpoints ────────────────────────────────────────────────────────


@router.post("/contacts", response_model=ContactRead, status_code=201)
async def create_contact(
    body: ContactCreate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ContactRead:
    """Create a contact under an existing company."""
    repo = _get_crm_repository(request)
    try:
        return await repo.create_contact(body)
    except FieldValidationError as exc:
        raise _unprocessable(exc)


# ── Project Endpoints ────────────────────────────────────────────────────────


@router.post("/projects", response_model=ProjectRead, status_code=201)
async def create_project(
    body: ProjectCreate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    now: datetime = Depends(get_clock),
) -> ProjectRead:
    """Create a project and attach contacts/tags."""
    repo = _get_crm_repository(request)
    try:
        return await repo.create_project(body, now=now)
    except FieldValidationError as exc:
        raise _unprocessable(exc)


@router.patch("/projects/{project_id}", response_model=ProjectRead)
async def update_project(
    project_id: int,
    body: ProjectUpdate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    now: datetime = Depends(get_clock),
) -> ProjectRead:
    """Partially update a project; contact_ids/tag_ids replace the link sets."""
    repo = _get_crm_repository(request)
    try:
        return await repo.update_project(project_id, body, now=now)
    except RecordNotFoundError as exc:
        raise _not_found(exc)
    except FieldValidationError as exc:
        raise _unprocessable(exc)


@router.patch("/projects/{project_id}/stage", response_model=ProjectRead)
async def move_project(
    project_id: int,
    body: ProjectStageMove,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    now: datetime = Depends(get_clock),
) -> ProjectRead:
    """Move a project to a stage column and position."""
    repo = _get_crm_repository(request)
    try:
        return await repo.move_project(project_id, body, now=now)
    except RecordNotFoundError as exc:
        raise _not_found(exc)


@router.delete("/projects/{project_id}", response_model=SuccessResponse)
async def delete_project(
    project_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> SuccessResponse:
    """Delete a project."""
    repo = _get_crm_repository(request)
    try:
        await repo.delete_project(project_id)
    except RecordNotFoundError as exc:
        raise _not_found(exc)
    return SuccessResponse()


# ── Tag Endpoints ────────────────────────────────────────────────────────────


@router.post("/tags", response_model=TagRead, status_code=201)
async def create_tag(
    body: TagCreate,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> TagRead:
    """Create a tag with a unique name and a #RRGGBB colour."""
    repo = _get_crm_repository(request)
    try:
        return await repo.create_tag(body)
    except FieldValidationError as exc:
        raise _unprocessable(exc)
