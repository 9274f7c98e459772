"""
Test suite for the FitTrack API.
Uses a throwaway SQLite file via aiosqlite, recreated for every test.
"""
import json
import os
import tempfile
import time
from datetime import date

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import SQLAlchemyError

# Override env BEFORE importing app so it uses a scratch SQLite database
os.environ.pop("CLOUD_SQL_CONNECTION_NAME", None)
os.environ["FITTRACK_DB_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), "fittrack_test_app.db"
)
os.environ["FITTRACK_APP_ID"] = "test-app"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"  # effectively disable for tests

from app import (  # noqa: E402
    APP_ID,
    RATE_LIMIT_WINDOW,
    _rate_limit_store,
    _sweep_rate_limits,
    app,
    engine,
    get_plan_client,
    get_store,
    store,
)
from errors import StoreOperationError  # noqa: E402
from plan_client import PlanGenerationClient  # noqa: E402
from store import Base, DocumentStore, collection_path  # noqa: E402

transport = ASGITransport(app=app)

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create a fresh database for each test."""
    _rate_limit_store.clear()
    app.dependency_overrides.clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    app.dependency_overrides.clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=transport, base_url="http://test", headers=ALICE) as ac:
        yield ac


# ─── Sample data ─────────────────────────────────────────────────────────────

VALID_WORKOUT = {
    "date": "2024-02-01",
    "current_weight": 181.5,
    "cardio": [{"type": "Run", "duration_minutes": 30, "distance": 5.2}],
    "weights": [
        {"name": "Squat", "sets": [{"reps": 5, "weight": 225}, {"reps": 5, "weight": 235}]}
    ],
}

VALID_PLAN = {
    "name": "Push A",
    "cardio": [],
    "weights": [{"name": "Bench", "sets": [{"reps": "8", "weight": "135"}]}],
}


def _plan_days(n=5):
    return [
        {
            "day": f"Day {i}",
            "focus": "Full Body",
            "exercises": [{"name": "Squat", "sets": "3", "reps": "8-12"}],
        }
        for i in range(1, n + 1)
    ]


def _gemini_transport(status=200, days=5):
    def handler(request: httpx.Request) -> httpx.Response:
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "boom"}})
        body = {
            "candidates": [
                {"content": {"parts": [{"text": json.dumps({"weeklyPlan": _plan_days(days)})}]}}
            ]
        }
        return httpx.Response(200, json=body)

    return httpx.MockTransport(handler)


def _workouts_path(user="alice", profile=None):
    return collection_path(APP_ID, user, "workouts", profile)


# ─── Health & Root ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_root(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert "v1" in r.json()["message"]


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["db_type"] == "SQLite"


# ─── Identity ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_user_header_is_401():
    async with AsyncClient(transport=transport, base_url="http://test") as anon:
        r = await anon.get("/workouts")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_users_do_not_see_each_other(client):
    r = await client.post("/workouts", json=VALID_WORKOUT)
    wid = r.json()["id"]

    r2 = await client.get("/workouts", headers=BOB)
    assert r2.json() == []
    r3 = await client.get(f"/workouts/{wid}", headers=BOB)
    assert r3.status_code == 404


# ─── Input Validation ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_invalid_date_format(client):
    r = await client.post("/workouts", json={**VALID_WORKOUT, "date": "01-02-2024"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_invalid_date_calendar(client):
    r = await client.post("/workouts", json={**VALID_WORKOUT, "date": "2024-02-30"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_negative_body_weight_rejected(client):
    r = await client.post("/workouts", json={**VALID_WORKOUT, "current_weight": -3})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_exercise_without_sets_rejected(client):
    w = {**VALID_WORKOUT, "weights": [{"name": "Squat", "sets": []}]}
    r = await client.post("/workouts", json=w)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_empty_workout_is_legal(client):
    r = await client.post("/workouts", json={"date": "2024-02-01"})
    assert r.status_code == 200
    assert r.json()["cardio"] == []
    assert r.json()["weights"] == []


# ─── Workouts CRUD ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_add_and_get_workout(client):
    r = await client.post("/workouts", json=VALID_WORKOUT)
    assert r.status_code == 200
    data = r.json()
    assert data["id"]
    assert data["current_weight"] == 181.5

    r2 = await client.get(f"/workouts/{data['id']}")
    assert r2.status_code == 200
    assert r2.json()["weights"][0]["name"] == "Squat"


@pytest.mark.asyncio
async def test_blank_body_weight_not_stored(client):
    r = await client.post("/workouts", json={**VALID_WORKOUT, "current_weight": ""})
    assert r.status_code == 200
    doc = await store.get(_workouts_path(), r.json()["id"])
    assert "current_weight" not in doc


@pytest.mark.asyncio
async def test_list_workouts_newest_first(client):
    for d in ["2024-01-05", "2024-03-01", "2024-02-10"]:
        await client.post("/workouts", json={**VALID_WORKOUT, "date": d})
    r = await client.get("/workouts")
    assert [w["date"] for w in r.json()] == ["2024-03-01", "2024-02-10", "2024-01-05"]

    r2 = await client.get("/workouts", params={"start": "2024-02-01", "end": "2024-02-28"})
    assert [w["date"] for w in r2.json()] == ["2024-02-10"]


@pytest.mark.asyncio
async def test_edit_workout_replaces_fields(client):
    r = await client.post("/workouts", json=VALID_WORKOUT)
    wid = r.json()["id"]

    updated = {"date": "2024-02-02", "current_weight": "", "cardio": [], "weights": []}
    r2 = await client.put(f"/workouts/{wid}", json=updated)
    assert r2.status_code == 200
    assert r2.json()["date"] == "2024-02-02"

    doc = await store.get(_workouts_path(), wid)
    assert "current_weight" not in doc
    assert doc["cardio"] == []


@pytest.mark.asyncio
async def test_edit_nonexistent(client):
    r = await client.put("/workouts/nope", json=VALID_WORKOUT)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_delete_workout(client):
    r = await client.post("/workouts", json=VALID_WORKOUT)
    wid = r.json()["id"]

    r2 = await client.delete(f"/workouts/{wid}")
    assert r2.status_code == 200

    r3 = await client.get("/workouts")
    assert len(r3.json()) == 0


@pytest.mark.asyncio
async def test_delete_nonexistent(client):
    r = await client.delete("/workouts/99999")
    assert r.status_code == 404


# ─── Weight log & current weight ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_log_weight(client):
    r = await client.post("/weight_log", json={"date": "2024-01-10", "weight": 180})
    assert r.status_code == 200
    r2 = await client.get("/weight_log")
    assert len(r2.json()) == 1
    assert r2.json()[0]["weight"] == 180


@pytest.mark.asyncio
async def test_zero_weight_rejected(client):
    r = await client.post("/weight_log", json={"date": "2024-01-10", "weight": 0})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_weight_entries_have_no_update(client):
    r = await client.post("/weight_log", json={"date": "2024-01-10", "weight": 180})
    eid = r.json()["id"]
    r2 = await client.put(f"/weight_log/{eid}", json={"date": "2024-01-10", "weight": 170})
    assert r2.status_code == 405


@pytest.mark.asyncio
async def test_delete_weight_entry(client):
    r = await client.post("/weight_log", json={"date": "2024-01-10", "weight": 180})
    r2 = await client.delete(f"/weight_log/{r.json()['id']}")
    assert r2.status_code == 200
    r3 = await client.get("/weight/current")
    assert r3.json()["current_weight"] is None


@pytest.mark.asyncio
async def test_current_weight_scenario_a(client):
    await client.post("/weight_log", json={"date": "2024-01-10", "weight": 180})
    await client.post("/workouts", json={"date": "2024-01-12", "current_weight": 178})
    r = await client.get("/weight/current")
    assert r.json()["current_weight"] == 178


@pytest.mark.asyncio
async def test_current_weight_absent(client):
    r = await client.get("/weight/current")
    assert r.status_code == 200
    assert r.json()["current_weight"] is None


# ─── History & Dashboard ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_history_scenario_b(client):
    await client.post("/workouts", json={
        "date": "2024-02-01",
        "cardio": [{"type": "Run", "duration_minutes": 20, "distance": 3}],
    })
    await client.post("/workouts", json={
        "date": "2024-02-01",
        "weights": [{"name": "Squat", "sets": [{"reps": 5, "weight": 200}]}],
    })
    r = await client.get("/history")
    days = r.json()
    assert len(days) == 1
    assert days[0]["date"] == "2024-02-01"
    assert len(days[0]["activities"]) == 2
    assert len(days[0]["cardio"]) == 1
    assert len(days[0]["weights"]) == 1


@pytest.mark.asyncio
async def test_dashboard(client):
    await client.post("/workouts", json=VALID_WORKOUT)
    await client.post("/workouts", json={**VALID_WORKOUT, "date": "2024-02-03", "current_weight": None})
    await client.post("/weight_log", json={"date": "2024-02-02", "weight": 180})
    r = await client.get("/dashboard")
    assert r.status_code == 200
    data = r.json()
    assert data["total_workouts"] == 2
    assert data["current_weight"] == 180
    assert [d["date"] for d in data["days"]] == ["2024-02-03", "2024-02-01"]
    assert data["days"][1]["body_weight"] == 181.5
    assert data["days"][0]["body_weight"] is None


@pytest.mark.asyncio
async def test_delete_day(client):
    await client.post("/workouts", json=VALID_WORKOUT)
    await client.post("/workouts", json=VALID_WORKOUT)
    await client.post("/workouts", json={**VALID_WORKOUT, "date": "2024-02-05"})

    r = await client.delete("/history/2024-02-01")
    assert r.status_code == 200
    assert r.json()["deleted"] == 2

    r2 = await client.get("/history")
    assert [d["date"] for d in r2.json()] == ["2024-02-05"]


@pytest.mark.asyncio
async def test_delete_unknown_day(client):
    r = await client.delete("/history/2024-02-01")
    assert r.status_code == 404


class _FlakyStore(DocumentStore):
    """Fails deletes of chosen ids to simulate a store outage mid-way."""

    def __init__(self, inner: DocumentStore, fail_ids):
        super().__init__(inner._session_factory)
        self.fail_ids = set(fail_ids)

    async def delete(self, collection, doc_id):
        if doc_id in self.fail_ids:
            raise StoreOperationError("simulated outage")
        await super().delete(collection, doc_id)


@pytest.mark.asyncio
async def test_non_atomic_delete_day_reports_partial_failure(client):
    r1 = await client.post("/workouts", json=VALID_WORKOUT)
    r2 = await client.post("/workouts", json=VALID_WORKOUT)
    first, second = r1.json()["id"], r2.json()["id"]

    app.dependency_overrides[get_store] = lambda: _FlakyStore(store, [second])
    r = await client.delete("/history/2024-02-01", params={"atomic": False})
    assert r.status_code == 500
    assert r.json()["deleted"] == [first]
    assert r.json()["failed"] == [second]

    remaining = await store.list(_workouts_path())
    assert [w["id"] for w in remaining] == [second]


# ─── Plans ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_plan_crud(client):
    r = await client.post("/plans", json=VALID_PLAN)
    assert r.status_code == 200
    pid = r.json()["id"]
    assert r.json()["weights"][0]["sets"][0]["reps"] == 8

    r2 = await client.put(f"/plans/{pid}", json={**VALID_PLAN, "name": "Push B"})
    assert r2.json()["name"] == "Push B"

    r3 = await client.get("/plans")
    assert [p["name"] for p in r3.json()] == ["Push B"]

    r4 = await client.delete(f"/plans/{pid}")
    assert r4.status_code == 200
    r5 = await client.get(f"/plans/{pid}")
    assert r5.status_code == 404


@pytest.mark.asyncio
async def test_plan_requires_name(client):
    r = await client.post("/plans", json={**VALID_PLAN, "name": "   "})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_instantiate_plan_scenario_c(client):
    r = await client.post("/plans", json=VALID_PLAN)
    pid = r.json()["id"]

    r2 = await client.post(f"/plans/{pid}/instantiate")
    assert r2.status_code == 200
    draft = r2.json()
    assert draft["date"] == date.today().isoformat()
    assert "name" not in draft
    assert "id" not in draft
    assert "current_weight" not in draft
    assert draft["weights"] == r.json()["weights"]

    # nothing was written
    r3 = await client.get("/workouts")
    assert r3.json() == []


@pytest.mark.asyncio
async def test_instantiate_plan_with_date_then_save(client):
    r = await client.post("/plans", json=VALID_PLAN)
    pid = r.json()["id"]

    r2 = await client.post(f"/plans/{pid}/instantiate", params={"date": "2024-05-01"})
    draft = r2.json()
    assert draft["date"] == "2024-05-01"

    r3 = await client.post("/workouts", json=draft)
    assert r3.status_code == 200
    assert "plan_id" not in r3.json()

    # the plan is untouched
    r4 = await client.get(f"/plans/{pid}")
    assert r4.json() == r.json()


@pytest.mark.asyncio
async def test_instantiate_plan_bad_date(client):
    r = await client.post("/plans", json=VALID_PLAN)
    r2 = await client.post(f"/plans/{r.json()['id']}/instantiate", params={"date": "2024-13-01"})
    assert r2.status_code == 422


# ─── Profiles ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_profiles_scope_records(client):
    r = await client.post("/profiles", json={"name": "Partner"})
    assert r.status_code == 200
    pid = r.json()["id"]
    as_profile = {**ALICE, "X-Profile-Id": pid}

    await client.post("/workouts", json=VALID_WORKOUT, headers=as_profile)

    assert len((await client.get("/workouts", headers=as_profile)).json()) == 1
    assert (await client.get("/workouts")).json() == []

    r2 = await client.get("/profiles", headers=as_profile)
    assert [p["name"] for p in r2.json()] == ["Partner"]


@pytest.mark.asyncio
async def test_unknown_profile_header(client):
    r = await client.get("/workouts", headers={**ALICE, "X-Profile-Id": "ghost"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_other_users_profile_rejected(client):
    r = await client.post("/profiles", json={"name": "Mine"})
    pid = r.json()["id"]
    r2 = await client.get("/workouts", headers={**BOB, "X-Profile-Id": pid})
    assert r2.status_code == 404


@pytest.mark.asyncio
async def test_rename_profile(client):
    r = await client.post("/profiles", json={"name": "Kid"})
    r2 = await client.put(f"/profiles/{r.json()['id']}", json={"name": "Teen"})
    assert r2.json()["name"] == "Teen"


@pytest.mark.asyncio
async def test_delete_profile_removes_its_records(client):
    r = await client.post("/profiles", json={"name": "Partner"})
    pid = r.json()["id"]
    as_profile = {**ALICE, "X-Profile-Id": pid}
    await client.post("/workouts", json=VALID_WORKOUT, headers=as_profile)
    await client.post("/plans", json=VALID_PLAN, headers=as_profile)
    await client.post("/workouts", json=VALID_WORKOUT)

    r2 = await client.delete(f"/profiles/{pid}")
    assert r2.status_code == 200

    assert await store.list(_workouts_path(profile=pid)) == []
    assert len(await store.list(_workouts_path())) == 1
    assert (await client.get("/profiles")).json() == []


class _OwnerLookupFails(DocumentStore):
    """Database error while removing a profile document."""

    async def _find(self, s, collection, doc_id):
        if collection.endswith("/profiles"):
            raise SQLAlchemyError("simulated outage")
        return await super()._find(s, collection, doc_id)


@pytest.mark.asyncio
async def test_failed_profile_delete_keeps_profile_and_records(client):
    r = await client.post("/profiles", json={"name": "Partner"})
    pid = r.json()["id"]
    await client.post("/workouts", json=VALID_WORKOUT, headers={**ALICE, "X-Profile-Id": pid})

    app.dependency_overrides[get_store] = lambda: _OwnerLookupFails(store._session_factory)
    r2 = await client.delete(f"/profiles/{pid}")
    assert r2.status_code == 503

    app.dependency_overrides.clear()
    assert [p["id"] for p in (await client.get("/profiles")).json()] == [pid]
    assert len(await store.list(_workouts_path(profile=pid))) == 1


# ─── AI plan generation ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_plan(client):
    app.dependency_overrides[get_plan_client] = lambda: PlanGenerationClient(
        api_key="test-key", transport=_gemini_transport()
    )
    r = await client.post("/generate_plan", json={"goal": "build muscle"})
    assert r.status_code == 200
    data = r.json()
    assert data["goal"] == "build muscle"
    assert len(data["weekly_plan"]) == 5
    assert data["weekly_plan"][0]["exercises"][0]["reps"] == "8-12"


@pytest.mark.asyncio
async def test_generate_plan_upstream_failure(client):
    app.dependency_overrides[get_plan_client] = lambda: PlanGenerationClient(
        api_key="test-key", transport=_gemini_transport(status=500)
    )
    r = await client.post("/generate_plan", json={"goal": "build muscle"})
    assert r.status_code == 502
    assert "try again" in r.json()["detail"]


@pytest.mark.asyncio
async def test_generate_plan_wrong_day_count(client):
    app.dependency_overrides[get_plan_client] = lambda: PlanGenerationClient(
        api_key="test-key", transport=_gemini_transport(days=3)
    )
    r = await client.post("/generate_plan", json={"goal": "run a 10k"})
    assert r.status_code == 502


@pytest.mark.asyncio
async def test_generate_plan_empty_goal(client):
    r = await client.post("/generate_plan", json={"goal": ""})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_generate_plan_bad_timeout_setting(client, monkeypatch):
    monkeypatch.setenv("GEMINI_TIMEOUT", "soon")
    r = await client.post("/generate_plan", json={"goal": "build muscle"})
    assert r.status_code == 500
    assert "GEMINI_TIMEOUT" in r.json()["detail"]


# ─── Rate limiting ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rate_limit_sweep_drops_idle_clients():
    now = time.time() + 10 * RATE_LIMIT_WINDOW
    _rate_limit_store["10.0.0.1"] = [now - 2 * RATE_LIMIT_WINDOW]
    _rate_limit_store["10.0.0.2"] = [now - 1]
    _sweep_rate_limits(now)
    assert "10.0.0.1" not in _rate_limit_store
    assert "10.0.0.2" in _rate_limit_store
