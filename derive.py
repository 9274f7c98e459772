# derive.py
# =============================================================================
# Derived views over live record sets: current body weight, history grouped by
# day, and plan -> workout drafts. Everything here is pure and recomputed from
# the latest snapshot; inputs are store documents ({"id": ..., **fields}).
# =============================================================================

from __future__ import annotations

import copy
import math
from collections import defaultdict
from datetime import date as Date
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, computed_field

from records import WorkoutDraft, WorkoutPlanIn, parse_day


def weight_value(v: Any) -> Optional[float]:
    """Return v as a body-weight reading, or None when it is not one.

    A reading is a finite number > 0, or a string holding one. Booleans,
    zero, empty strings and NaN all mean "no reading".
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return None
        try:
            v = float(v)
        except ValueError:
            return None
    if not isinstance(v, (int, float)):
        return None
    if math.isnan(v) or math.isinf(v) or v <= 0:
        return None
    return float(v)


def _day_key(date_str: Any) -> datetime:
    # Unparseable dates sort as the oldest entries
    return parse_day(date_str) or datetime.min


# -----------------------------------------------------------------------------
# Recency Resolver
# -----------------------------------------------------------------------------
def current_weight(
    weight_log: Iterable[Mapping[str, Any]],
    workouts: Iterable[Mapping[str, Any]],
) -> Optional[float]:
    """Most recent body weight across the weight log and workout records.

    Weight-log readings are listed before workout readings and the sort is
    stable, so on a date tie the weight log wins.
    """
    readings: List[Tuple[str, float]] = []
    for entry in weight_log:
        w = weight_value(entry.get("weight"))
        if w is not None and entry.get("date"):
            readings.append((entry["date"], w))
    for workout in workouts:
        w = weight_value(workout.get("current_weight"))
        if w is not None and workout.get("date"):
            readings.append((workout["date"], w))
    if not readings:
        return None
    readings.sort(key=lambda r: _day_key(r[0]), reverse=True)
    return readings[0][1]


# -----------------------------------------------------------------------------
# Day Aggregator
# -----------------------------------------------------------------------------
class DaySummary(BaseModel):
    date: str
    activities: List[Dict[str, Any]] = Field(default_factory=list)

    @computed_field
    @property
    def cardio(self) -> List[Dict[str, Any]]:
        return [c for a in self.activities for c in (a.get("cardio") or [])]

    @computed_field
    @property
    def weights(self) -> List[Dict[str, Any]]:
        return [w for a in self.activities for w in (a.get("weights") or [])]

    @computed_field
    @property
    def body_weight(self) -> Optional[float]:
        for a in self.activities:
            w = weight_value(a.get("current_weight"))
            if w is not None:
                return w
        return None


def group_by_day(workouts: Iterable[Mapping[str, Any]]) -> List[DaySummary]:
    """Group workouts by exact date string, newest day first.

    Records keep their input order inside a day.
    """
    by_date: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for w in workouts:
        by_date[str(w.get("date") or "")].append(dict(w))
    days = [DaySummary(date=d, activities=acts) for d, acts in by_date.items()]
    days.sort(key=lambda d: _day_key(d.date), reverse=True)
    return days


def day_workout_ids(workouts: Iterable[Mapping[str, Any]], day: str) -> List[str]:
    return [w["id"] for w in workouts if w.get("date") == day and w.get("id")]


def sort_newest_first(docs: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return sorted((dict(d) for d in docs), key=lambda d: _day_key(d.get("date")), reverse=True)


# -----------------------------------------------------------------------------
# Plan Instantiator
# -----------------------------------------------------------------------------
def instantiate_plan(plan: WorkoutPlanIn, today: Optional[Date] = None) -> WorkoutDraft:
    """Prefill a workout draft from a plan. Nothing is written to the store."""
    day = today or Date.today()
    return WorkoutDraft(
        date=day.isoformat(),
        cardio=copy.deepcopy(plan.cardio),
        weights=copy.deepcopy(plan.weights),
    )
