# plan_client.py
# =============================================================================
# AI weekly plan generation via the Gemini generateContent REST endpoint.
# The model is asked for JSON matching RESPONSE_SCHEMA; anything else is a
# PlanGenerationError. There is no partial result.
# =============================================================================

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

import config
from errors import PlanGenerationError

log = logging.getLogger("fittrack.plan_client")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.0-flash"
PLAN_DAYS = 5

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "weeklyPlan": {
            "type": "ARRAY",
            "description": "A 5-day workout plan.",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "day": {"type": "STRING"},
                    "focus": {"type": "STRING"},
                    "exercises": {
                        "type": "ARRAY",
                        "items": {
                            "type": "OBJECT",
                            "properties": {
                                "name": {"type": "STRING"},
                                "sets": {"type": "STRING"},
                                "reps": {"type": "STRING"},
                            },
                            "required": ["name", "sets", "reps"],
                        },
                    },
                },
                "required": ["day", "focus", "exercises"],
            },
        }
    },
    "required": ["weeklyPlan"],
}


class PlanExercise(BaseModel):
    name: str
    sets: str  # free text: "3", "3-4"
    reps: str  # free text: "8-12", "AMRAP"


class PlanDay(BaseModel):
    day: str
    focus: str
    exercises: List[PlanExercise]


class WeeklyPlan(BaseModel):
    weekly_plan: List[PlanDay] = Field(alias="weeklyPlan", min_length=PLAN_DAYS, max_length=PLAN_DAYS)


def build_prompt(goal: str) -> str:
    return (
        "You are an expert personal trainer. Create a well-balanced "
        f"{PLAN_DAYS}-day weekly workout plan for someone whose goal is "
        f'"{goal}". For each day give a focus (for example "Chest & Triceps") '
        "and 4-5 exercises, each with its number of sets and reps. "
        "Answer only with JSON matching the requested schema."
    )


class PlanGenerationClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls) -> "PlanGenerationClient":
        return cls(
            api_key=os.getenv("GEMINI_API_KEY"),
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            timeout=float(config.int_setting("GEMINI_TIMEOUT", 30)),
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def generate_plan(self, goal: str) -> List[PlanDay]:
        goal = (goal or "").strip()
        if not goal:
            raise PlanGenerationError("goal cannot be empty")
        if not self.api_key:
            raise PlanGenerationError("GEMINI_API_KEY is not set")

        payload = {
            "contents": [{"role": "user", "parts": [{"text": build_prompt(goal)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url=self.url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            log.error(f"Plan generation request failed: {e}")
            raise PlanGenerationError(f"Plan generation request failed: {e}") from e

        if not resp.is_success:
            log.error(f"Plan generation failed with status {resp.status_code}")
            raise PlanGenerationError(f"API call failed with status: {resp.status_code}")

        try:
            text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
            plan = WeeklyPlan.model_validate_json(text)
        except (KeyError, IndexError, TypeError, ValueError, ValidationError) as e:
            log.error(f"Plan generation returned a non-conforming payload: {e}")
            raise PlanGenerationError("Invalid response structure from API.") from e
        return plan.weekly_plan
