"""
api.py

REST API layer for the CFS Receive-Plan Scheduling & Execution Engine.

Framework : FastAPI
Clock     : every endpoint resolves the current time through the get_clock
            dependency and hands it to the use case, so tests (and replays)
            can pin "now".

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /containers                         — inventory stand-in
  │   └── /unplanned                      — containers ranked by urgency
  └── /receive-plans                      — plan scheduling
      ├── /validate                       — dry-run validation verdict
      ├── /pending                        — plans awaiting reconciliation
      ├── /{plan_id}                      — read / edit / delete
      ├── /{plan_id}/status               — lifecycle transitions
      └── /{plan_id}/containers/{cid}     — receive / reject / defer / reconcile

Error handling
--------------
  NotFoundError            → 404
  PlanValidationError      → 422  (+ "errors" / "warnings" lists)
  RuleRejectedError        → 409  (+ "reason" code)
  ConcurrencyConflictError → 409
  ApplicationError         → 422
  ValueError               → 422
  Unhandled                → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>", ... }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    ConcurrencyConflictError,
    NotFoundError,
    PlanValidationError,
    RuleRejectedError,
    # Use-case commands
    ApplyContainerActionCommand,
    CreatePlanCommand,
    ReconcileContainerCommand,
    RegisterContainerCommand,
    TransitionPlanStatusCommand,
    UpdatePlanCommand,
    ValidatePlanCommand,
    # Use-case classes
    ApplyContainerActionUseCase,
    CreatePlanUseCase,
    DeletePlanUseCase,
    GetPlanUseCase,
    ListPendingPlansUseCase,
    ListPlansUseCase,
    ListUnplannedContainersUseCase,
    ReconcileContainerUseCase,
    RegisterContainerUseCase,
    TransitionPlanStatusUseCase,
    UpdatePlanUseCase,
    ValidatePlanUseCase,
    AbstractUnitOfWork,
    Clock,
)
from infrastructure import InMemoryUnitOfWork
from model import (
    CargoReleaseStatus,
    ContainerAction,
    CustomsStatus,
    PlanStatus,
    ReceiveType,
)
from settings import get_settings


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title=get_settings().app_name,
    version="1.0.0",
    description=(
        "REST API for scheduling container receive plans at a Container Freight "
        "Station: overlap-free scheduling windows, deadline warnings, the plan "
        "lifecycle with a single active plan, and per-container execution."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PlanValidationError)
async def plan_validation_handler(request, exc: PlanValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": str(exc),
            "errors": [_issue(e) for e in exc.verdict.errors],
            "warnings": [_issue(w) for w in exc.verdict.warnings],
        },
    )


@app.exception_handler(RuleRejectedError)
async def rule_rejected_handler(request, exc: RuleRejectedError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "reason": exc.reason.value},
    )


@app.exception_handler(ConcurrencyConflictError)
async def concurrency_conflict_handler(request, exc: ConcurrencyConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_clock() -> Clock:
    return lambda: datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken to be UTC."""
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


def _issue(issue) -> Dict:
    return {
        "code": issue.code.value,
        "category": issue.category.value,
        "message": issue.message,
        "plan_code": issue.plan_code,
    }


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Container schemas
# ---------------------------------------------------------------------------

class RegisterContainerRequest(BaseModel):
    container_no: str = Field(..., min_length=1, max_length=20)
    extract_to: Optional[datetime] = None
    yard_free_to: Optional[datetime] = None
    is_priority: bool = False
    cargo_release_status: CargoReleaseStatus = CargoReleaseStatus.NOT_REQUESTED
    customs_status: CustomsStatus = CustomsStatus.NOT_REGISTERED
    at_yard: bool = False

    @field_validator("extract_to", "yard_free_to")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


# ---------------------------------------------------------------------------
# Plan schemas
# ---------------------------------------------------------------------------

class ValidatePlanRequest(BaseModel):
    planned_start: datetime
    planned_end: datetime
    container_ids: List[uuid.UUID] = Field(default_factory=list)
    exclude_plan_id: Optional[uuid.UUID] = Field(
        default=None, description="Plan being edited; excluded from the overlap check."
    )

    @field_validator("planned_start", "planned_end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CreatePlanRequest(BaseModel):
    planned_start: datetime
    planned_end: datetime
    container_ids: List[uuid.UUID] = Field(default_factory=list)
    equipment_booked: bool = False
    port_notified: bool = False

    @field_validator("planned_start", "planned_end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class UpdatePlanRequest(BaseModel):
    planned_start: Optional[datetime] = None
    planned_end: Optional[datetime] = None
    container_ids: Optional[List[uuid.UUID]] = None
    equipment_booked: Optional[bool] = None
    port_notified: Optional[bool] = None

    @field_validator("planned_start", "planned_end")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class TransitionPlanRequest(BaseModel):
    status: str = Field(..., description="One of: SCHEDULED, IN_PROGRESS, PENDING, DONE")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {s.value for s in PlanStatus}
        if v not in valid:
            raise ValueError(f"status must be one of: {sorted(valid)}")
        return v


# ---------------------------------------------------------------------------
# Execution schemas
# ---------------------------------------------------------------------------

class ContainerActionRequest(BaseModel):
    timestamp: Optional[datetime] = Field(default=None, description="Defaults to now.")
    notes: Optional[str] = Field(default=None, max_length=2000)
    truck_no: Optional[str] = Field(default=None, max_length=20)
    received_type: Optional[str] = Field(
        default=None,
        description="One of: NORMAL, PROBLEM, ADJUSTED_DOCUMENT (receive only). "
                    "NORMAL on a first receive; an amend keeps the recorded type.",
    )
    # Left out on an amend, the recorded evidence is kept
    documents: Optional[List[str]] = None
    photos: Optional[List[str]] = None
    acted_by: Optional[str] = None

    @field_validator("received_type")
    @classmethod
    def validate_received_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        valid = {t.value for t in ReceiveType}
        if v not in valid:
            raise ValueError(f"received_type must be one of: {sorted(valid)}")
        return v

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class ReconcileRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)
    acted_by: Optional[str] = None


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

container_router = APIRouter(prefix="/containers", tags=["Containers"])


@container_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a container record",
)
def register_container(
    body: RegisterContainerRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    cmd = RegisterContainerCommand(**body.model_dump())
    result = RegisterContainerUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


@container_router.get(
    "/unplanned",
    summary="List containers not held by an open plan, most urgent first",
)
def list_unplanned_containers(
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    result = ListUnplannedContainersUseCase(clock=clock).execute(uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Receive plans
# ---------------------------------------------------------------------------

plan_router = APIRouter(prefix="/receive-plans", tags=["Receive Plans"])


@plan_router.post(
    "/validate",
    summary="Validate a proposed plan window without saving it",
)
def validate_plan(
    body: ValidatePlanRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    """
    Returns every blocking error and advisory warning.  A failed verdict is
    still a 200 response; nothing is persisted.
    """
    cmd = ValidatePlanCommand(
        planned_start=body.planned_start,
        planned_end=body.planned_end,
        container_ids=body.container_ids,
        exclude_plan_id=body.exclude_plan_id,
    )
    result = ValidatePlanUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


@plan_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a receive plan",
)
def create_plan(
    body: CreatePlanRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    """
    Saves a SCHEDULED plan with an auto-generated code.  Deadline warnings
    are returned next to the plan; blocking findings return 422.
    """
    cmd = CreatePlanCommand(**body.model_dump())
    result = CreatePlanUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


@plan_router.get(
    "",
    summary="List receive plans",
)
def list_plans(
    plan_status: Optional[PlanStatus] = Query(default=None, alias="status"),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = ListPlansUseCase().execute(uow, status=plan_status)
    return _ok(result)


@plan_router.get(
    "/pending",
    summary="List PENDING plans, most recently parked first",
)
def list_pending_plans(
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = ListPendingPlansUseCase().execute(uow)
    return _ok(result)


@plan_router.get(
    "/{plan_id}",
    summary="Get a plan with its containers in display order",
)
def get_plan(
    plan_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = GetPlanUseCase().execute(plan_id, uow)
    return _ok(result)


@plan_router.patch(
    "/{plan_id}",
    summary="Edit a SCHEDULED plan",
)
def update_plan(
    body: UpdatePlanRequest,
    plan_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    cmd = UpdatePlanCommand(plan_id=plan_id, **body.model_dump())
    result = UpdatePlanUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


@plan_router.delete(
    "/{plan_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a SCHEDULED plan",
)
def delete_plan(
    plan_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeletePlanUseCase().execute(plan_id, uow)


@plan_router.post(
    "/{plan_id}/status",
    summary="Move a plan to another lifecycle status",
)
def transition_plan_status(
    body: TransitionPlanRequest,
    plan_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    """
    Allowed moves: SCHEDULED → IN_PROGRESS → PENDING → DONE.  Refusals return
    409 with a reason code such as ANOTHER_PLAN_ACTIVE or CONTAINERS_WAITING.
    """
    cmd = TransitionPlanStatusCommand(plan_id=plan_id, target_status=PlanStatus(body.status))
    result = TransitionPlanStatusUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Plan execution
# ---------------------------------------------------------------------------

execution_router = APIRouter(
    prefix="/receive-plans/{plan_id}/containers",
    tags=["Execution"],
)


@execution_router.post(
    "/{container_id}/reconcile",
    summary="Reconcile a rejected or deferred container of a PENDING plan",
)
def reconcile_container(
    body: ReconcileRequest,
    plan_id: uuid.UUID = Path(...),
    container_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    cmd = ReconcileContainerCommand(
        plan_id=plan_id,
        container_id=container_id,
        notes=body.notes,
        acted_by=body.acted_by,
    )
    result = ReconcileContainerUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


@execution_router.post(
    "/{container_id}/{action}",
    summary="Receive, reject or defer a container of the IN_PROGRESS plan",
)
def apply_container_action(
    body: ContainerActionRequest,
    plan_id: uuid.UUID = Path(...),
    container_id: uuid.UUID = Path(..., description="Plan-container id or container record id"),
    action: ContainerAction = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    clock: Clock = Depends(get_clock),
):
    cmd = ApplyContainerActionCommand(
        plan_id=plan_id,
        container_id=container_id,
        action=action,
        timestamp=body.timestamp,
        notes=body.notes,
        truck_no=body.truck_no,
        received_type=ReceiveType(body.received_type) if body.received_type else None,
        documents=body.documents,
        photos=body.photos,
        acted_by=body.acted_by,
    )
    result = ApplyContainerActionUseCase(clock=clock).execute(cmd, uow)
    return _ok(result)


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(container_router)
api_v1.include_router(plan_router)
api_v1.include_router(execution_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server — exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Containers",
        "description": (
            "Container records as supplied by the inventory system, and the "
            "ranked list of containers that no open plan has claimed yet."
        ),
    },
    {
        "name": "Receive Plans",
        "description": (
            "Schedule receive windows.  Windows may not overlap any open plan "
            "(boundary touches count as overlap); an IN_PROGRESS plan occupies "
            "its actual start plus the planned duration.  At most one plan is "
            "IN_PROGRESS at any time."
        ),
    },
    {
        "name": "Execution",
        "description": (
            "Per-container outcomes while a plan is IN_PROGRESS, and "
            "reconciliation of rejected or deferred containers while it is PENDING."
        ),
    },
]

app.openapi_tags = tags_metadata
