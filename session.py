# session.py
# =============================================================================
# Per-session application state. Instead of a mutable "current view" string
# plus loose optionals, the view is a tagged union and each user action is a
# function from the old AppState to a new one.
# =============================================================================

from __future__ import annotations

import logging
from datetime import date as Date
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from derive import DaySummary, current_weight, group_by_day, instantiate_plan
from plan_client import PlanDay
from records import WorkoutDraft, WorkoutOut, WorkoutPlanOut
from store import WEIGHT_LOG, WORKOUTS, DocumentStore, Snapshot, Subscription

log = logging.getLogger("fittrack.session")

PLAN_ERROR_MESSAGE = "Sorry, I couldn't generate a plan right now. Please try again later."


# -----------------------------------------------------------------------------
# Views
# -----------------------------------------------------------------------------
class _View(BaseModel):
    model_config = ConfigDict(frozen=True)


class SignInView(_View):
    kind: Literal["sign_in"] = "sign_in"


class ConfigErrorView(_View):
    kind: Literal["config_error"] = "config_error"
    message: str


class DashboardView(_View):
    kind: Literal["dashboard"] = "dashboard"


class AddWorkoutView(_View):
    kind: Literal["add_workout"] = "add_workout"
    draft: Optional[WorkoutDraft] = None


class EditWorkoutView(_View):
    kind: Literal["edit_workout"] = "edit_workout"
    workout: WorkoutOut


class LogWeightView(_View):
    kind: Literal["log_weight"] = "log_weight"


class GeneratePlanView(_View):
    kind: Literal["generate_plan"] = "generate_plan"
    goal: str = ""
    plan: Optional[List[PlanDay]] = None
    error: Optional[str] = None


class PlansView(_View):
    kind: Literal["plans"] = "plans"


class EditPlanView(_View):
    kind: Literal["edit_plan"] = "edit_plan"
    plan: Optional[WorkoutPlanOut] = None  # None: new plan


class ProfilesView(_View):
    kind: Literal["profiles"] = "profiles"


View = Annotated[
    Union[
        SignInView, ConfigErrorView, DashboardView, AddWorkoutView, EditWorkoutView,
        LogWeightView, GeneratePlanView, PlansView, EditPlanView, ProfilesView,
    ],
    Field(discriminator="kind"),
]

# Views reachable through plain navigation (no payload required)
_NAVIGABLE = {
    "dashboard": DashboardView,
    "add_workout": AddWorkoutView,
    "log_weight": LogWeightView,
    "generate_plan": GeneratePlanView,
    "plans": PlansView,
    "edit_plan": EditPlanView,
    "profiles": ProfilesView,
}


class AppState(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    profile_id: Optional[str] = None
    view: View = Field(default_factory=SignInView)


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------
def initial_state() -> AppState:
    return AppState()


def _locked(state: AppState) -> bool:
    """Configuration errors block everything; no transition leaves them."""
    return isinstance(state.view, ConfigErrorView)


def _needs_user(state: AppState) -> bool:
    return state.user_id is None or _locked(state)


def config_failed(state: AppState, message: str) -> AppState:
    log.error(f"Configuration error: {message}")
    return AppState(view=ConfigErrorView(message=message))


def signed_in(state: AppState, user_id: str) -> AppState:
    if _locked(state):
        return state
    return AppState(user_id=user_id, view=DashboardView())


def signed_out(state: AppState) -> AppState:
    if _locked(state):
        return state
    return AppState()


def select_profile(state: AppState, profile_id: Optional[str]) -> AppState:
    if _needs_user(state):
        return state
    return state.model_copy(update={"profile_id": profile_id, "view": DashboardView()})


def navigate(state: AppState, kind: str) -> AppState:
    if _needs_user(state):
        return state
    try:
        view_cls = _NAVIGABLE[kind]
    except KeyError:
        raise ValueError(f"cannot navigate to {kind!r}")
    return state.model_copy(update={"view": view_cls()})


def start_edit_workout(state: AppState, workout: WorkoutOut) -> AppState:
    if _needs_user(state):
        return state
    return state.model_copy(update={"view": EditWorkoutView(workout=workout)})


def start_edit_plan(state: AppState, plan: WorkoutPlanOut) -> AppState:
    if _needs_user(state):
        return state
    return state.model_copy(update={"view": EditPlanView(plan=plan)})


def start_from_plan(state: AppState, plan: WorkoutPlanOut, today: Optional[Date] = None) -> AppState:
    if _needs_user(state):
        return state
    draft = instantiate_plan(plan, today=today)
    return state.model_copy(update={"view": AddWorkoutView(draft=draft)})


def plan_generated(state: AppState, goal: str, plan: List[PlanDay]) -> AppState:
    if _needs_user(state):
        return state
    return state.model_copy(update={"view": GeneratePlanView(goal=goal, plan=plan)})


def plan_generation_failed(state: AppState, goal: str) -> AppState:
    if _needs_user(state):
        return state
    return state.model_copy(update={"view": GeneratePlanView(goal=goal, error=PLAN_ERROR_MESSAGE)})


def dismiss_error(state: AppState) -> AppState:
    view = state.view
    if isinstance(view, GeneratePlanView) and (view.error or view.plan):
        return state.model_copy(update={"view": GeneratePlanView(goal=view.goal)})
    return state


def saved(state: AppState) -> AppState:
    """A workout, weight entry or plan was stored: back to the landing view."""
    if _needs_user(state):
        return state
    landing = PlansView() if isinstance(state.view, EditPlanView) else DashboardView()
    return state.model_copy(update={"view": landing})


# -----------------------------------------------------------------------------
# Live dashboard
# -----------------------------------------------------------------------------
class DashboardFeed:
    """Keeps dashboard figures in step with live workout and weight snapshots.

    Each delivery recomputes everything from the latest snapshots.
    """

    def __init__(self, store: DocumentStore, workouts_path: str, weight_log_path: str):
        self._store = store
        self._workouts_path = workouts_path
        self._weight_log_path = weight_log_path
        self._workouts: Snapshot = []
        self._weight_log: Snapshot = []
        self._subs: List[Subscription] = []
        self.current_weight: Optional[float] = None
        self.days: List[DaySummary] = []
        self.total_workouts = 0
        self.refreshes = 0

    @classmethod
    def for_scope(cls, store: DocumentStore, scope: str) -> "DashboardFeed":
        return cls(store, f"{scope}/{WORKOUTS}", f"{scope}/{WEIGHT_LOG}")

    async def start(self) -> "DashboardFeed":
        self._subs.append(await self._store.subscribe(self._workouts_path, self._on_workouts))
        self._subs.append(await self._store.subscribe(self._weight_log_path, self._on_weight_log))
        return self

    def close(self) -> None:
        for sub in self._subs:
            sub.unsubscribe()
        self._subs = []

    def _on_workouts(self, snapshot: Snapshot) -> None:
        self._workouts = snapshot
        self._recompute()

    def _on_weight_log(self, snapshot: Snapshot) -> None:
        self._weight_log = snapshot
        self._recompute()

    def _recompute(self) -> None:
        self.current_weight = current_weight(self._weight_log, self._workouts)
        self.days = group_by_day(self._workouts)
        self.total_workouts = len(self._workouts)
        self.refreshes += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "current_weight": self.current_weight,
            "total_workouts": self.total_workouts,
            "days": [d.model_dump() for d in self.days],
        }
