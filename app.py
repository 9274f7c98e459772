# app.py
# =============================================================================
# FitTrack API: workouts, weight log, plans & profiles
# (FastAPI + SQLAlchemy 2.x async document store, Pydantic v2)
# Every record is scoped to the caller (X-User-Id) and optionally to one of
# their profiles (X-Profile-Id).
# =============================================================================

from __future__ import annotations

import logging
import os
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi import Path as FPath
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import config
from derive import DaySummary, current_weight, group_by_day, instantiate_plan, sort_newest_first
from errors import (
    AuthenticationError,
    ConfigurationError,
    DocumentNotFound,
    PartialDeletionError,
    PlanGenerationError,
    StoreOperationError,
)
from plan_client import PlanDay, PlanGenerationClient
from records import (
    ProfileIn,
    ProfileOut,
    WeightEntryIn,
    WeightEntryOut,
    WorkoutDraft,
    WorkoutIn,
    WorkoutOut,
    WorkoutPlanIn,
    WorkoutPlanOut,
    validate_date_str,
)
from store import (
    PROFILES,
    WEIGHT_LOG,
    WORKOUT_PLANS,
    WORKOUTS,
    DocumentStore,
    delete_day,
    init_db,
    make_engine,
    scope_path,
)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(levelname)s %(message)s",
)
log = logging.getLogger("fittrack-api")

# -----------------------------------------------------------------------------
# DB connection (see config.database_url for the priority order).
# A ConfigurationError here is fatal: the service never starts.
# -----------------------------------------------------------------------------
DB_URL = config.database_url()
APP_ID = config.app_id()
engine = make_engine(DB_URL)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
store = DocumentStore(async_session)
log.info(f"Using {config.db_type(DB_URL)} (async), app id {APP_ID}")


# -----------------------------------------------------------------------------
# Response schemas
# -----------------------------------------------------------------------------
class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class CurrentWeightOut(BaseModel):
    current_weight: Optional[float] = None


class DashboardOut(BaseModel):
    current_weight: Optional[float] = None
    total_workouts: int
    days: List[DaySummary] = Field(default_factory=list)


class DayDeleteOut(BaseModel):
    date: str
    deleted: int
    ids: List[str]


class GeneratePlanIn(BaseModel):
    goal: str = Field(..., min_length=1)


class GeneratedPlanOut(BaseModel):
    goal: str
    weekly_plan: List[PlanDay]


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await init_db(engine)
    yield
    await engine.dispose()


app = FastAPI(
    title="FitTrack API",
    description="Workout, body-weight and training-plan log with AI weekly plans.",
    version="1.0.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Exception handlers
# -----------------------------------------------------------------------------
@app.exception_handler(AuthenticationError)
async def _auth_error_handler(request: Request, exc: AuthenticationError):
    log.warning(f"Unauthenticated {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(DocumentNotFound)
async def _not_found_handler(request: Request, exc: DocumentNotFound):
    return JSONResponse(status_code=404, content={"detail": "Not found"})


@app.exception_handler(PartialDeletionError)
async def _partial_delete_handler(request: Request, exc: PartialDeletionError):
    log.error(f"Partial deletion on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "deleted": exc.deleted, "failed": exc.failed},
    )


@app.exception_handler(StoreOperationError)
async def _store_error_handler(request: Request, exc: StoreOperationError):
    log.error(f"Store error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(PlanGenerationError)
async def _plan_error_handler(request: Request, exc: PlanGenerationError):
    return JSONResponse(
        status_code=502,
        content={"detail": "Sorry, I couldn't generate a plan right now. Please try again later."},
    )


@app.exception_handler(ConfigurationError)
async def _config_error_handler(request: Request, exc: ConfigurationError):
    log.error(f"Configuration error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"Server misconfigured: {exc}"})


# Global exception handler: log full traceback so Cloud Run logs show the cause
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = config.int_setting("RATE_LIMIT_REQUESTS", 60)
RATE_LIMIT_WINDOW = config.int_setting("RATE_LIMIT_WINDOW", 60)  # seconds
_last_sweep = 0.0


def _sweep_rate_limits(now: float) -> None:
    """Drop clients with no request inside the window (at most once per window)."""
    global _last_sweep
    if now - _last_sweep < RATE_LIMIT_WINDOW:
        return
    _last_sweep = now
    window_start = now - RATE_LIMIT_WINDOW
    for ip in list(_rate_limit_store):
        if not any(t > window_start for t in _rate_limit_store[ip]):
            del _rate_limit_store[ip]


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW

    _sweep_rate_limits(now)
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]

    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )

    _rate_limit_store[client_ip].append(now)
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
class Scope:
    """Collection paths for one user, or one profile of that user."""

    def __init__(self, user_id: str, profile_id: Optional[str] = None):
        self.user_id = user_id
        self.profile_id = profile_id
        self.root = scope_path(APP_ID, user_id, profile_id)
        self.profiles = f"{scope_path(APP_ID, user_id)}/{PROFILES}"

    def path(self, name: str) -> str:
        return f"{self.root}/{name}"


def get_store() -> DocumentStore:
    return store


def get_plan_client() -> PlanGenerationClient:
    return PlanGenerationClient.from_env()


async def get_scope(
    x_user_id: Optional[str] = Header(None),
    x_profile_id: Optional[str] = Header(None),
    docs: DocumentStore = Depends(get_store),
) -> Scope:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("X-User-Id header is required")
    if "/" in user_id or (x_profile_id and "/" in x_profile_id):
        raise AuthenticationError("Malformed identity header")
    scope = Scope(user_id)
    if x_profile_id:
        # 404 if the profile isn't one of this user's
        await docs.get(scope.profiles, x_profile_id)
        scope = Scope(user_id, x_profile_id)
    return scope


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=config.db_type(DB_URL),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="FitTrack API v1 is running")


# -----------------------------------------------------------------------------
# Dashboard & history
# -----------------------------------------------------------------------------
@app.get("/dashboard", response_model=DashboardOut)
async def dashboard(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> DashboardOut:
    workouts = await docs.list(scope.path(WORKOUTS))
    weight_log = await docs.list(scope.path(WEIGHT_LOG))
    return DashboardOut(
        current_weight=current_weight(weight_log, workouts),
        total_workouts=len(workouts),
        days=group_by_day(workouts),
    )


@app.get("/history", response_model=List[DaySummary])
async def history(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> List[DaySummary]:
    return group_by_day(await docs.list(scope.path(WORKOUTS)))


@app.delete("/history/{day}", response_model=DayDeleteOut)
async def delete_history_day(
    day: str = FPath(..., description="YYYY-MM-DD"),
    atomic: bool = Query(True, description="All-or-nothing delete of the day"),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> DayDeleteOut:
    ids = await delete_day(docs, scope.path(WORKOUTS), day, atomic=atomic)
    return DayDeleteOut(date=day, deleted=len(ids), ids=ids)


@app.get("/weight/current", response_model=CurrentWeightOut)
async def weight_current(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> CurrentWeightOut:
    workouts = await docs.list(scope.path(WORKOUTS))
    weight_log = await docs.list(scope.path(WEIGHT_LOG))
    return CurrentWeightOut(current_weight=current_weight(weight_log, workouts))


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
@app.get("/workouts", response_model=List[WorkoutOut])
async def list_workouts(
    start: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="YYYY-MM-DD"),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> List[WorkoutOut]:
    rows = sort_newest_first(await docs.list(scope.path(WORKOUTS)))
    if start:
        rows = [w for w in rows if w.get("date", "") >= start]
    if end:
        rows = [w for w in rows if w.get("date", "") <= end]
    return [WorkoutOut.model_validate(w) for w in rows]


@app.post("/workouts", response_model=WorkoutOut)
async def add_workout(
    w: WorkoutIn,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutOut:
    fields = w.to_document()
    doc_id = await docs.create(scope.path(WORKOUTS), fields)
    return WorkoutOut(id=doc_id, **fields)


@app.get("/workouts/{workout_id}", response_model=WorkoutOut)
async def get_workout(
    workout_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutOut:
    return WorkoutOut.model_validate(await docs.get(scope.path(WORKOUTS), workout_id))


@app.put("/workouts/{workout_id}", response_model=WorkoutOut)
async def edit_workout(
    workout_id: str,
    body: WorkoutIn = Body(...),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutOut:
    fields = body.to_document()
    await docs.replace(scope.path(WORKOUTS), workout_id, fields)
    return WorkoutOut(id=workout_id, **fields)


@app.delete("/workouts/{workout_id}", response_model=GenericResponse)
async def delete_workout(
    workout_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> GenericResponse:
    await docs.delete(scope.path(WORKOUTS), workout_id)
    return GenericResponse(message="Workout deleted")


# -----------------------------------------------------------------------------
# Weight log (entries are immutable: no PUT)
# -----------------------------------------------------------------------------
@app.get("/weight_log", response_model=List[WeightEntryOut])
async def list_weight_log(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> List[WeightEntryOut]:
    rows = sort_newest_first(await docs.list(scope.path(WEIGHT_LOG)))
    return [WeightEntryOut.model_validate(e) for e in rows]


@app.post("/weight_log", response_model=WeightEntryOut)
async def log_weight(
    entry: WeightEntryIn,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WeightEntryOut:
    fields = entry.to_document()
    doc_id = await docs.create(scope.path(WEIGHT_LOG), fields)
    return WeightEntryOut(id=doc_id, **fields)


@app.delete("/weight_log/{entry_id}", response_model=GenericResponse)
async def delete_weight_entry(
    entry_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> GenericResponse:
    await docs.delete(scope.path(WEIGHT_LOG), entry_id)
    return GenericResponse(message="Weight entry deleted")


# -----------------------------------------------------------------------------
# Workout plans
# -----------------------------------------------------------------------------
@app.get("/plans", response_model=List[WorkoutPlanOut])
async def list_plans(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> List[WorkoutPlanOut]:
    rows = await docs.list(scope.path(WORKOUT_PLANS))
    plans = [WorkoutPlanOut.model_validate(p) for p in rows]
    return sorted(plans, key=lambda p: p.name.lower())


@app.post("/plans", response_model=WorkoutPlanOut)
async def add_plan(
    plan: WorkoutPlanIn,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutPlanOut:
    fields = plan.to_document()
    doc_id = await docs.create(scope.path(WORKOUT_PLANS), fields)
    return WorkoutPlanOut(id=doc_id, **fields)


@app.get("/plans/{plan_id}", response_model=WorkoutPlanOut)
async def get_plan(
    plan_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutPlanOut:
    return WorkoutPlanOut.model_validate(await docs.get(scope.path(WORKOUT_PLANS), plan_id))


@app.put("/plans/{plan_id}", response_model=WorkoutPlanOut)
async def edit_plan(
    plan_id: str,
    body: WorkoutPlanIn = Body(...),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutPlanOut:
    fields = body.to_document()
    await docs.replace(scope.path(WORKOUT_PLANS), plan_id, fields)
    return WorkoutPlanOut(id=plan_id, **fields)


@app.delete("/plans/{plan_id}", response_model=GenericResponse)
async def delete_plan(
    plan_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> GenericResponse:
    await docs.delete(scope.path(WORKOUT_PLANS), plan_id)
    return GenericResponse(message="Plan deleted")


@app.post("/plans/{plan_id}/instantiate", response_model=WorkoutDraft)
async def instantiate(
    plan_id: str,
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> WorkoutDraft:
    """Prefill a workout from a plan. Nothing is saved until POST /workouts."""
    today = None
    if date:
        try:
            today = datetime.strptime(validate_date_str(date), "%Y-%m-%d").date()
        except ValueError as e:
            raise HTTPException(422, str(e))
    plan = WorkoutPlanOut.model_validate(await docs.get(scope.path(WORKOUT_PLANS), plan_id))
    return instantiate_plan(plan, today=today)


# -----------------------------------------------------------------------------
# Profiles (always at user level, never inside another profile)
# -----------------------------------------------------------------------------
@app.get("/profiles", response_model=List[ProfileOut])
async def list_profiles(
    scope: Scope = Depends(get_scope), docs: DocumentStore = Depends(get_store)
) -> List[ProfileOut]:
    return [ProfileOut.model_validate(p) for p in await docs.list(scope.profiles)]


@app.post("/profiles", response_model=ProfileOut)
async def add_profile(
    profile: ProfileIn,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> ProfileOut:
    fields = profile.to_document()
    doc_id = await docs.create(scope.profiles, fields)
    return ProfileOut(id=doc_id, **fields)


@app.put("/profiles/{profile_id}", response_model=ProfileOut)
async def rename_profile(
    profile_id: str,
    body: ProfileIn = Body(...),
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> ProfileOut:
    fields = body.to_document()
    await docs.update(scope.profiles, profile_id, fields)
    return ProfileOut(id=profile_id, **fields)


@app.delete("/profiles/{profile_id}", response_model=GenericResponse)
async def delete_profile(
    profile_id: str,
    scope: Scope = Depends(get_scope),
    docs: DocumentStore = Depends(get_store),
) -> GenericResponse:
    removed = await docs.delete_prefix(
        scope_path(APP_ID, scope.user_id, profile_id), owner=(scope.profiles, profile_id)
    )
    log.info(f"Deleted profile {profile_id} and {removed} scoped document(s)")
    return GenericResponse(message="Profile deleted")


# -----------------------------------------------------------------------------
# AI weekly plan
# -----------------------------------------------------------------------------
@app.post("/generate_plan", response_model=GeneratedPlanOut)
async def generate_plan(
    body: GeneratePlanIn,
    scope: Scope = Depends(get_scope),
    client: PlanGenerationClient = Depends(get_plan_client),
) -> GeneratedPlanOut:
    goal = body.goal.strip()
    log.info(f"Generating plan for user {scope.user_id}")
    plan = await client.generate_plan(goal)
    return GeneratedPlanOut(goal=goal, weekly_plan=plan)
