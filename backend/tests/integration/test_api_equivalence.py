"""
Integration tests for equivalence endpoints over the in-memory store.
"""

import asyncio

import pytest

from app.api.deps import get_ledger
from app.errors import SolverError
from app.models.equivalence import AdjustmentStatus, EquivalenceAdjustment, SnackSource
from app.models.nutrition import MacroTotals

from tests.conftest import LOG_DATE, USER_ID, ScriptedSolver


@pytest.fixture
def api(app, client, ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    return client


def _create_body(slot="slot-l", kind="snack", source_id="snack-1"):
    return {
        "user_id": USER_ID,
        "source": {"kind": kind, "id": source_id},
        "target_meal_slot_id": slot,
        "log_date": LOG_DATE.isoformat(),
    }


class TestCreateAndUndo:

    @pytest.mark.integration
    def test_create(self, api, store):
        response = api.post("/api/equivalence", json=_create_body())

        assert response.status_code == 201
        data = response.json()
        assert data["adjustment"]["status"] == "applied"
        assert data["adjustment"]["source"] == {"kind": "snack", "id": "snack-1"}
        assert data["ingredient_adjustments"]
        assert len(store.adjustments) == 1

    @pytest.mark.integration
    def test_duplicate_is_409(self, api):
        api.post("/api/equivalence", json=_create_body())
        response = api.post("/api/equivalence", json=_create_body(kind="free_meal", source_id="free-1"))

        assert response.status_code == 409
        assert response.json() == {
            "detail": "This meal already has an equivalence adjustment for that day. Undo it first.",
            "code": "conflict",
            "retryable": False,
        }

    @pytest.mark.integration
    def test_unknown_source_kind_is_422(self, api):
        response = api.post("/api/equivalence", json=_create_body(kind="banana"))
        assert response.status_code == 422

    @pytest.mark.integration
    def test_nothing_to_compensate_is_422(self, api):
        response = api.post("/api/equivalence", json=_create_body(source_id="empty"))
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    @pytest.mark.integration
    def test_solver_timeout_is_retryable(self, app, client, make_ledger, store):
        ledger = make_ledger(solver=ScriptedSolver(error=SolverError("Solver timed out", reason="timeout")))
        app.dependency_overrides[get_ledger] = lambda: ledger

        response = client.post("/api/equivalence", json=_create_body())

        assert response.status_code == 502
        body = response.json()
        assert body["retryable"] is True
        assert body["reason"] == "timeout"
        assert store.adjustments == {}

    @pytest.mark.integration
    def test_undo_twice(self, api, store):
        adjustment_id = api.post("/api/equivalence", json=_create_body()).json()["adjustment"]["id"]

        first = api.delete(f"/api/equivalence/{adjustment_id}", params={"user_id": USER_ID})
        second = api.delete(f"/api/equivalence/{adjustment_id}", params={"user_id": USER_ID})

        assert first.status_code == 200
        assert first.json()["removed"] is True
        assert second.status_code == 200
        assert second.json()["removed"] is False
        assert store.adjustments == {}
        assert store.ingredient_rows == {}

    @pytest.mark.integration
    def test_undo_someone_elses(self, api):
        adjustment_id = api.post("/api/equivalence", json=_create_body()).json()["adjustment"]["id"]
        response = api.delete(f"/api/equivalence/{adjustment_id}", params={"user_id": "intruder"})
        assert response.status_code == 404

    @pytest.mark.integration
    def test_undo_by_source(self, api, store):
        api.post("/api/equivalence", json=_create_body())

        response = api.delete("/api/equivalence/by-source", params={
            "user_id": USER_ID, "source_kind": "snack", "source_id": "snack-1",
        })

        assert response.status_code == 200
        assert [u["removed"] for u in response.json()["undone"]] == [True]
        assert store.adjustments == {}


class TestReads:

    @pytest.mark.integration
    def test_active(self, api):
        params = {"user_id": USER_ID, "meal_slot_id": "slot-l", "log_date": LOG_DATE.isoformat()}
        assert api.get("/api/equivalence/active", params=params).json() == {"adjustment": None}

        created = api.post("/api/equivalence", json=_create_body()).json()["adjustment"]
        active = api.get("/api/equivalence/active", params=params).json()["adjustment"]
        assert active["id"] == created["id"]

    @pytest.mark.integration
    def test_day(self, api):
        api.post("/api/equivalence", json=_create_body())
        response = api.get("/api/equivalence/day", params={"user_id": USER_ID, "log_date": LOG_DATE.isoformat()})

        data = response.json()
        assert len(data["adjustments"]) == 1
        assert data["ingredient_adjustments"]

    @pytest.mark.integration
    def test_candidates(self, api):
        response = api.get("/api/equivalence/candidates", params={
            "user_id": USER_ID, "source_date": LOG_DATE.isoformat(), "source_meal_slot_id": "slot-d",
        })

        labels = [(c["meal_slot"]["id"], c["day_label"]) for c in response.json()]
        assert labels == [
            ("slot-d", "today"),
            ("slot-b", "tomorrow"),
            ("slot-l", "tomorrow"),
            ("slot-d", "tomorrow"),
        ]

    @pytest.mark.integration
    def test_adjusted_recipes(self, api):
        body = {"user_id": USER_ID, "meal_slot_id": "slot-l", "log_date": LOG_DATE.isoformat()}
        before = api.post("/api/equivalence/recipes/adjusted", json=body).json()

        adjustment_id = api.post("/api/equivalence", json=_create_body()).json()["adjustment"]["id"]
        after = api.post("/api/equivalence/recipes/adjusted", json=body).json()

        assert [r["adjusted_by"] for r in before] == [None, None]
        assert [r["adjusted_by"] for r in after] == [adjustment_id, adjustment_id]
        assert sum(r["macros"]["proteins"] for r in after) == pytest.approx(20, abs=1)

    @pytest.mark.integration
    def test_adjusted_recipes_unknown_slot(self, api):
        body = {"user_id": USER_ID, "meal_slot_id": "nope", "log_date": LOG_DATE.isoformat()}
        response = api.post("/api/equivalence/recipes/adjusted", json=body)
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestSlotStatus:
    """Recipe editors check the slot before writing to it."""

    @pytest.fixture
    def pending(self, store):
        return asyncio.run(store.insert_adjustment(EquivalenceAdjustment(
            user_id=USER_ID,
            log_date=LOG_DATE,
            target_meal_slot_id="slot-l",
            source=SnackSource(id="snack-1"),
            adjustment_macros=MacroTotals(proteins=20),
            status=AdjustmentStatus.PENDING,
        )))

    def _params(self, user_id=USER_ID):
        return {"user_id": user_id, "meal_slot_id": "slot-l", "log_date": LOG_DATE.isoformat()}

    @pytest.mark.integration
    def test_free_slot(self, api):
        response = api.get("/api/equivalence/slot-status", params=self._params())
        assert response.status_code == 200
        assert response.json() == {"writable": True}

    @pytest.mark.integration
    def test_applied_adjustment_does_not_lock(self, api):
        api.post("/api/equivalence", json=_create_body())
        response = api.get("/api/equivalence/slot-status", params=self._params())
        assert response.status_code == 200

    @pytest.mark.integration
    def test_pending_adjustment_is_423(self, api, pending):
        response = api.get("/api/equivalence/slot-status", params=self._params())

        assert response.status_code == 423
        body = response.json()
        assert body["code"] == "busy"
        assert body["retryable"] is True

    @pytest.mark.integration
    def test_stale_pending_releases_slot(self, api, pending, clock):
        clock.advance(minutes=6)
        response = api.get("/api/equivalence/slot-status", params=self._params())
        assert response.status_code == 200

    @pytest.mark.integration
    def test_other_users_pending_not_reported(self, api, pending):
        response = api.get("/api/equivalence/slot-status", params=self._params(user_id="intruder"))
        assert response.status_code == 200
