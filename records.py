# records.py
# =============================================================================
# Record Model: Pydantic v2 shapes for everything FitTrack persists.
# Documents are stored with snake_case keys; `*In` models validate writes and
# `*Out` models add the store-assigned id.
# =============================================================================

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def validate_date_str(v: str) -> str:
    if not isinstance(v, str) or not _DATE_RE.match(v):
        raise ValueError("date must be YYYY-MM-DD format")
    try:
        datetime.strptime(v, "%Y-%m-%d")
    except ValueError:
        raise ValueError("date is not a valid calendar date")
    return v


def parse_day(v: Any) -> Optional[datetime]:
    """Parse a YYYY-MM-DD string to a naive midnight datetime, or None.

    Calendar dates carry no time or zone, so everything is compared at the
    same midnight and no timezone shift can move a record to another day.
    """
    if not isinstance(v, str) or not _DATE_RE.match(v):
        return None
    try:
        return datetime.strptime(v, "%Y-%m-%d")
    except ValueError:
        return None


def blank_to_none(v: Any) -> Any:
    """Map empty-string, whitespace, None and NaN (float or "NaN") to None."""
    if v is None:
        return None
    if isinstance(v, str) and v.strip().lower() in ("", "nan"):
        return None
    if isinstance(v, float) and math.isnan(v):
        return None
    return v


def _label(v: str, what: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{what} cannot be empty")
    return v


# -----------------------------------------------------------------------------
# Embedded value types
# -----------------------------------------------------------------------------
class CardioEntry(BaseModel):
    type: str
    duration_minutes: float = Field(ge=0, allow_inf_nan=False)
    distance: float = Field(ge=0, allow_inf_nan=False)  # km or miles, display only

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return _label(v, "cardio type")


class SetEntry(BaseModel):
    reps: float = Field(ge=0, allow_inf_nan=False)
    weight: float = Field(ge=0, allow_inf_nan=False)


class WeightExercise(BaseModel):
    name: str
    sets: List[SetEntry] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return _label(v, "exercise name")


# -----------------------------------------------------------------------------
# Workouts
# -----------------------------------------------------------------------------
class WorkoutIn(BaseModel):
    """One logged session. Several may share a date (AM/PM sessions)."""
    date: str
    current_weight: Optional[float] = Field(default=None, allow_inf_nan=False)
    cardio: List[CardioEntry] = Field(default_factory=list)
    weights: List[WeightExercise] = Field(default_factory=list)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return validate_date_str(v)

    @field_validator("current_weight", mode="before")
    @classmethod
    def blank_weight(cls, v: Any) -> Any:
        return blank_to_none(v)

    @field_validator("current_weight")
    @classmethod
    def positive_weight(cls, v: Optional[float]) -> Optional[float]:
        if v is None:
            return None
        if v < 0:
            raise ValueError("current_weight must be positive")
        # 0 is not a reading; keep it out of the recency calculation
        return v or None

    def to_document(self) -> Dict[str, Any]:
        """Persistence payload; an absent body weight leaves no key behind."""
        return self.model_dump(exclude={"id"}, exclude_none=True)


class WorkoutOut(WorkoutIn):
    id: str


class WorkoutDraft(BaseModel):
    """Unsaved workout prefilled from a plan. Never has a body weight."""
    date: str
    cardio: List[CardioEntry] = Field(default_factory=list)
    weights: List[WeightExercise] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Weight log
# -----------------------------------------------------------------------------
class WeightEntryIn(BaseModel):
    date: str
    weight: float = Field(gt=0, allow_inf_nan=False)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return validate_date_str(v)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})


class WeightEntryOut(WeightEntryIn):
    id: str


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------
class WorkoutPlanIn(BaseModel):
    """Reusable template. No date and no body weight."""
    name: str
    cardio: List[CardioEntry] = Field(default_factory=list)
    weights: List[WeightExercise] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return _label(v, "plan name")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})


class WorkoutPlanOut(WorkoutPlanIn):
    id: str


# -----------------------------------------------------------------------------
# Profiles
# -----------------------------------------------------------------------------
class ProfileIn(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return _label(v, "profile name")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id"})


class ProfileOut(ProfileIn):
    id: str
