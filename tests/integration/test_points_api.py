"""HTTP surface of the points engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from dojo.config import get_settings
from dojo.db.models import BadgeRule, SkillSprintAssignment


async def _post_points(client: AsyncClient, student_id: int, points: int, category: str = "manual"):
    return await client.post(
        "/api/v1/ledger",
        json={"entries": [{"student_id": student_id, "points": points, "category": category}]},
    )


class TestLedgerEndpoints:
    @pytest.mark.asyncio
    async def test_append_returns_refreshed_totals(self, client, make_student):
        ana = await make_student("Ana")
        ben = await make_student("Ben")
        response = await client.post(
            "/api/v1/ledger",
            json={
                "entries": [
                    {"student_id": ana.id, "points": 60, "category": "manual", "note": "Sparring"},
                    {"student_id": ben.id, "points": 10, "category": "rule_keeper"},
                    {"student_id": ana.id, "points": -5, "category": "rule_breaker"},
                ]
            },
        )
        assert response.status_code == 201
        data = response.json()
        assert data["appended"] == 3
        totals = {t["student_id"]: t for t in data["totals"]}
        assert totals[ana.id] == {"student_id": ana.id, "balance": 55, "lifetime": 55, "level": 2}
        assert totals[ben.id]["balance"] == 10

    @pytest.mark.asyncio
    async def test_zero_points_rejected(self, client, make_student):
        ana = await make_student("Ana")
        response = await _post_points(client, ana.id, 0)
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_oversized_amount_rejected(self, client, make_student):
        ana = await make_student("Ana")
        response = await _post_points(client, ana.id, 2**63)
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

        summary = (await client.get(f"/api/v1/students/{ana.id}/points")).json()
        assert summary["balance"] == 0

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, client, make_student):
        ana = await make_student("Ana")
        response = await _post_points(client, ana.id, 5, category="bribery")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_student_rejected(self, client):
        response = await _post_points(client, 4040, 5)
        assert response.status_code == 422
        assert response.json()["details"] == {"student_ids": [4040]}

    @pytest.mark.asyncio
    async def test_points_summary_and_history(self, client, make_student):
        ana = await make_student("Ana")
        await _post_points(client, ana.id, 70)
        await _post_points(client, ana.id, 5, category="avatar_daily")

        summary = (await client.get(f"/api/v1/students/{ana.id}/points")).json()
        assert summary["balance"] == 75
        assert summary["lifetime"] == 70
        assert summary["level"] == 2
        assert summary["next_level_min"] == 110

        history = (await client.get(f"/api/v1/students/{ana.id}/ledger", params={"per_page": 1})).json()
        assert history["total"] == 2
        assert [e["category"] for e in history["entries"]] == ["avatar_daily"]

    @pytest.mark.asyncio
    async def test_redeem(self, client, make_student):
        ana = await make_student("Ana")
        await _post_points(client, ana.id, 40)

        ok = await client.post(f"/api/v1/students/{ana.id}/redeem", json={"cost": 15})
        assert ok.status_code == 200
        assert ok.json()["balance"] == 25

        short = await client.post(f"/api/v1/students/{ana.id}/redeem", json={"cost": 100})
        assert short.status_code == 422
        assert short.json()["details"] == {"balance": 25, "cost": 100}

    @pytest.mark.asyncio
    async def test_recompute_endpoint(self, client, make_student):
        ana = await make_student("Ana")
        await _post_points(client, ana.id, 30)
        response = await client.post(f"/api/v1/students/{ana.id}/recompute")
        assert response.json()["balance"] == 30


class TestClaimEndpoints:
    @pytest.mark.asyncio
    async def test_repeat_claim_is_not_an_error(self, client, make_student):
        ana = await make_student("Ana")
        body = {"student_id": ana.id, "category": "avatar_daily", "points": 5}

        first = await client.post("/api/v1/claims", json=body)
        second = await client.post("/api/v1/claims", json=body)

        assert first.status_code == 200
        assert first.json()["granted"] is True
        assert second.status_code == 200
        assert second.json()["granted"] is False
        assert second.json()["reason"] == "already_claimed"

        status = (await client.get(f"/api/v1/students/{ana.id}/claims")).json()
        assert status["claimed"]["avatar_daily"]["points"] == 5

    @pytest.mark.asyncio
    async def test_unknown_category(self, client, make_student):
        ana = await make_student("Ana")
        response = await client.post("/api/v1/claims", json={"student_id": ana.id, "category": "birthday"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_oversized_claim_rejected(self, client, make_student):
        ana = await make_student("Ana")
        body = {"student_id": ana.id, "category": "avatar_daily", "points": 2**63}
        response = await client.post("/api/v1/claims", json=body)
        assert response.status_code == 422

        status = (await client.get(f"/api/v1/students/{ana.id}/claims")).json()
        assert status["claimed"] == {}


class TestLeaderboardEndpoints:
    @pytest.mark.asyncio
    async def test_board(self, client, make_student):
        ana = await make_student("Ana")
        ben = await make_student("Ben")
        await _post_points(client, ana.id, 20)
        await _post_points(client, ben.id, 30)

        board = (await client.get("/api/v1/leaderboards/total")).json()
        assert board["metric"] == "total"
        assert [(r["rank"], r["name"]) for r in board["rows"]] == [(1, "Ben"), (2, "Ana")]

    @pytest.mark.asyncio
    async def test_all_boards(self, client):
        data = (await client.get("/api/v1/leaderboards")).json()
        assert [b["metric"] for b in data["boards"]][:2] == ["total", "weekly"]

    @pytest.mark.asyncio
    async def test_unknown_board_is_404(self, client):
        response = await client.get("/api/v1/leaderboards/karma")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestBadgeEndpoints:
    @pytest.mark.asyncio
    async def test_sweep(self, client, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        db_session.add(BadgeRule(id="team", name="Competition Team", criteria={"kind": "competition_team"}))
        await db_session.commit()

        response = await client.post("/api/v1/badges/sweep", json={})
        assert response.status_code == 200
        data = response.json()
        assert data["total_awarded"] == 1
        assert data["results"][0]["awarded_student_ids"] == [ana.id]

    @pytest.mark.asyncio
    async def test_sweep_secret(self, client, monkeypatch):
        monkeypatch.setenv("DOJO_SWEEP_SECRET", "s3cret")
        get_settings.cache_clear()

        denied = await client.post("/api/v1/badges/sweep", json={})
        allowed = await client.post("/api/v1/badges/sweep", json={}, headers={"X-Sweep-Secret": "s3cret"})
        assert denied.status_code == 403
        assert denied.json()["code"] == "FORBIDDEN"
        assert allowed.status_code == 200

    @pytest.mark.asyncio
    async def test_coach_award_and_student_badges(self, client, db_session, make_student):
        ana = await make_student("Ana")
        db_session.add(BadgeRule(
            id="spirit", name="Dojo Spirit", category="coach", criteria={"kind": "competition_team"}, points_award=15
        ))
        await db_session.commit()
        body = {"student_id": ana.id, "badge_id": "spirit", "note": "Led warm-ups"}

        first = await client.post("/api/v1/badges/award", json=body)
        second = await client.post("/api/v1/badges/award", json=body)
        assert first.status_code == 200
        assert first.json()["granted"] is True
        assert first.json()["balance"] == 15
        assert second.json()["granted"] is False
        assert second.json()["reason"] == "already_held"

        badges = (await client.get(f"/api/v1/students/{ana.id}/badges")).json()["badges"]
        assert len(badges) == 1
        assert {k: badges[0][k] for k in ("badge_id", "name", "category", "source", "note", "points_awarded")} == {
            "badge_id": "spirit",
            "name": "Dojo Spirit",
            "category": "coach",
            "source": "coach",
            "note": "Led warm-ups",
            "points_awarded": 15,
        }

        summary = (await client.get(f"/api/v1/students/{ana.id}/points")).json()
        assert summary["balance"] == 15

    @pytest.mark.asyncio
    async def test_coach_award_unknown_badge(self, client, make_student):
        ana = await make_student("Ana")
        response = await client.post("/api/v1/badges/award", json={"student_id": ana.id, "badge_id": "ghost"})
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

        missing = await client.get("/api/v1/students/4040/badges")
        assert missing.status_code == 404


class TestLevelEndpoints:
    @pytest.mark.asyncio
    async def test_default_curve(self, client):
        data = (await client.get("/api/v1/levels")).json()
        assert data["persisted"] is False
        assert (data["base_jump"], data["difficulty_pct"]) == (50, 8)
        assert data["levels"][:3] == [
            {"level": 1, "min_lifetime_points": 0},
            {"level": 2, "min_lifetime_points": 50},
            {"level": 3, "min_lifetime_points": 110},
        ]

    @pytest.mark.asyncio
    async def test_update_curve_and_recompute(self, client, make_student):
        ana = await make_student("Ana")
        await _post_points(client, ana.id, 120)

        updated = await client.put("/api/v1/levels", json={"base_jump": 100, "difficulty_pct": 0})
        assert updated.status_code == 200
        assert updated.json()["persisted"] is True
        assert updated.json()["levels"][1] == {"level": 2, "min_lifetime_points": 100}

        changed = (await client.post("/api/v1/levels/recompute")).json()["changed"]
        assert changed == [{"student_id": ana.id, "name": "Ana", "old_level": 3, "new_level": 2}]

    @pytest.mark.asyncio
    async def test_rejects_out_of_range_difficulty(self, client):
        response = await client.put("/api/v1/levels", json={"base_jump": 50, "difficulty_pct": 150})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_rejects_curve_that_outgrows_the_store(self, client):
        response = await client.put("/api/v1/levels", json={"base_jump": 50, "difficulty_pct": 100})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

        data = (await client.get("/api/v1/levels")).json()
        assert data["persisted"] is False
        assert (data["base_jump"], data["difficulty_pct"]) == (50, 8)


class TestSprintAndActivityEndpoints:
    @pytest.mark.asyncio
    async def test_complete_sprint_twice(self, client, db_session, make_student):
        ana = await make_student("Ana")
        now = datetime.now(timezone.utc)
        sprint = SkillSprintAssignment(
            student_id=ana.id,
            title="Aerial",
            assigned_at=now - timedelta(days=1),
            due_at=now + timedelta(days=9),
            reward_points=100,
        )
        db_session.add(sprint)
        await db_session.commit()

        shown = (await client.get(f"/api/v1/skill-sprints/{sprint.id}")).json()
        assert 85 <= shown["prize_now"] <= 90
        assert shown["prize_drop_per_day"] == pytest.approx(10.0)

        done = await client.post(f"/api/v1/skill-sprints/{sprint.id}/complete")
        again = await client.post(f"/api/v1/skill-sprints/{sprint.id}/complete")
        assert done.status_code == 200
        assert done.json()["balance"] == done.json()["awarded_points"]
        assert again.status_code == 409
        assert again.json()["code"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_activity_counter(self, client, make_student):
        ana = await make_student("Ana")
        first = await client.post(f"/api/v1/students/{ana.id}/activity", json={"metric": "checkins"})
        second = await client.post(f"/api/v1/students/{ana.id}/activity", json={"metric": "checkins", "delta": 4})
        assert first.json()["value"] == 1
        assert second.json()["value"] == 5

        bad = await client.post(f"/api/v1/students/{ana.id}/activity", json={"metric": "naps"})
        assert bad.status_code == 422
