"""Badge sweeps and coach awards: at-most-once awards, per-rule isolation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from dojo.db.models import BadgeRule, LedgerEntry, Notification, StudentBadgeAward
from dojo.errors import AwardFollowUpError, NotFoundError, StoreUnavailableError, ValidationError
from dojo.gamification import badge_service
from dojo.gamification.aggregates import increment_activity
from dojo.gamification.badge_service import award_badge, list_student_badges, sweep
from dojo.gamification.ledger_service import EntryDraft, append_and_recompute


async def _add_rule(db, rule_id: str, criteria: dict, **fields) -> BadgeRule:
    fields.setdefault("name", rule_id.replace("_", " ").title())
    rule = BadgeRule(id=rule_id, criteria=criteria, **fields)
    db.add(rule)
    await db.commit()
    return rule


async def _award_count(db, badge_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(StudentBadgeAward).where(StudentBadgeAward.badge_id == badge_id)
    )
    return result.scalar_one()


async def _badge_entries(db, student_id: int) -> list[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry).where(LedgerEntry.student_id == student_id, LedgerEntry.category == "badge_award")
    )
    return list(result.scalars().all())


class TestSweep:
    @pytest.mark.asyncio
    async def test_awards_once_and_pays(self, db_session, make_student):
        ana = await make_student("Ana")
        ben = await make_student("Ben")
        await append_and_recompute(
            db_session, None, [EntryDraft(ana.id, 120, "manual"), EntryDraft(ben.id, 50, "manual")]
        )
        await _add_rule(db_session, "first_hundred", {"kind": "lifetime_points", "min_points": 100}, points_award=25)

        first = await sweep(db_session, None)
        second = await sweep(db_session, None)

        assert first.results[0].awarded_student_ids == [ana.id]
        assert first.total_awarded == 1
        assert second.total_awarded == 0
        assert second.results[0].already_held == 1
        assert await _award_count(db_session, "first_hundred") == 1
        assert len(await _badge_entries(db_session, ana.id)) == 1

        await db_session.refresh(ana)
        assert ana.points_balance == 145
        assert ana.lifetime_points == 145

    @pytest.mark.asyncio
    async def test_notifies_each_new_holder(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, name="Competition Team")

        await sweep(db_session, None)

        result = await db_session.execute(select(Notification).where(Notification.student_id == ana.id))
        messages = [n.message for n in result.scalars()]
        assert messages == ["Ana earned Competition Team."]

    @pytest.mark.asyncio
    async def test_zero_point_rule_writes_no_ledger(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"})

        report = await sweep(db_session, None)
        assert report.total_awarded == 1
        assert await _badge_entries(db_session, ana.id) == []

    @pytest.mark.asyncio
    async def test_counter_rule(self, db_session, make_student):
        ana = await make_student("Ana")
        await make_student("Ben")
        await _add_rule(db_session, "regular", {"kind": "checkins", "min": 3})
        await increment_activity(db_session, ana.id, "checkins", 3)
        report = await sweep(db_session, None)
        assert report.results[0].awarded_student_ids == [ana.id]


class TestRuleSelection:
    @pytest.mark.asyncio
    async def test_broken_rule_does_not_stop_the_sweep(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "broken", {"kind": "mystery"}, sort_order=0)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, sort_order=1)

        report = await sweep(db_session, None)

        statuses = {r.rule_id: r.status for r in report.results}
        assert statuses == {"broken": "failed", "team": "ok"}
        assert report.failed_rules == ["broken"]
        assert report.results[1].awarded_student_ids == [ana.id]

    @pytest.mark.asyncio
    async def test_disabled_rules_skipped_unless_named(self, db_session, make_student):
        await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, enabled=False)

        assert (await sweep(db_session, None)).results == []
        named = await sweep(db_session, None, rule_id="team")
        assert named.total_awarded == 1

    @pytest.mark.asyncio
    async def test_unknown_rule(self, db_session):
        with pytest.raises(NotFoundError):
            await sweep(db_session, None, rule_id="nope")

    @pytest.mark.asyncio
    async def test_single_student_scope(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        ben = await make_student("Ben", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"})

        report = await sweep(db_session, None, student_id=ben.id)
        assert report.results[0].awarded_student_ids == [ben.id]
        assert report.results[0].eligible == 1

        later = await sweep(db_session, None)
        assert later.results[0].awarded_student_ids == [ana.id]


class TestAwardedButUnpaid:
    @pytest.mark.asyncio
    async def test_ledger_failure_marks_rule_inconsistent(self, db_session, make_student, monkeypatch):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, points_award=10)

        async def _failing_append(db, entries, now=None):
            raise StoreUnavailableError("Ledger write failed; nothing was applied")

        monkeypatch.setattr(badge_service, "append_entries", _failing_append)
        report = await sweep(db_session, None)

        assert report.results[0].status == "inconsistent"
        assert report.failed_rules == ["team"]
        assert await _award_count(db_session, "team") == 1
        assert await _badge_entries(db_session, ana.id) == []

        # The award stands; a later sweep never pays it a second time.
        again = await sweep(db_session, None)
        assert again.results[0].awarded == 0
        assert await _badge_entries(db_session, ana.id) == []


class TestAwardRace:
    @pytest.mark.asyncio
    async def test_collision_rereads_holders_and_pays_once(self, db_session, make_student, monkeypatch):
        ana = await make_student("Ana", is_competition_team=True)
        ben = await make_student("Ben", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, points_award=10)
        # A concurrent sweep already holds Ana's award; our first holder read predates it.
        db_session.add(StudentBadgeAward(
            student_id=ana.id, badge_id="team", awarded_at=datetime.now(timezone.utc), points_awarded=10
        ))
        await db_session.commit()

        reads: list[str] = []
        fresh_read = badge_service.get_holders

        async def _stale_first_read(db, badge_id):
            reads.append(badge_id)
            if len(reads) == 1:
                return set()
            return await fresh_read(db, badge_id)

        monkeypatch.setattr(badge_service, "get_holders", _stale_first_read)
        report = await sweep(db_session, None)

        result = report.results[0]
        assert result.status == "ok"
        assert result.awarded_student_ids == [ben.id]
        assert result.already_held == 1
        assert len(reads) == 2
        assert await _award_count(db_session, "team") == 2
        assert len(await _badge_entries(db_session, ben.id)) == 1
        assert await _badge_entries(db_session, ana.id) == []


class TestFollowUpFailure:
    @pytest.mark.asyncio
    async def test_recompute_failure_still_reports_awarded_students(self, db_session, make_student, monkeypatch):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, points_award=10)

        async def _failing_recompute(db, student_id, redis=None):
            raise StoreUnavailableError("cached totals are stale", details={"student_id": student_id})

        monkeypatch.setattr(badge_service, "recompute_with_retry", _failing_recompute)
        report = await sweep(db_session, None)

        result = report.results[0]
        assert result.status == "failed"
        assert result.awarded_student_ids == [ana.id]
        assert report.total_awarded == 1
        assert await _award_count(db_session, "team") == 1
        assert len(await _badge_entries(db_session, ana.id)) == 1


class TestCoachAward:
    @pytest.mark.asyncio
    async def test_award_pays_and_keeps_note(self, db_session, make_student):
        ana = await make_student("Ana")
        await _add_rule(db_session, "spirit", {"kind": "competition_team"}, name="Dojo Spirit", points_award=20)

        result = await award_badge(db_session, None, ana.id, "spirit", note="  Helped the white belts  ")

        assert result.granted is True
        assert result.points_awarded == 20
        assert result.balance == 20
        award = (await list_student_badges(db_session, ana.id))[0]
        assert (award.source, award.note, award.points_awarded) == ("coach", "Helped the white belts", 20)
        entries = await _badge_entries(db_session, ana.id)
        assert [(e.points, e.source_id) for e in entries] == [(20, "spirit")]

        notes = await db_session.execute(select(Notification.message).where(Notification.student_id == ana.id))
        assert list(notes.scalars()) == ["Ana earned Dojo Spirit."]

    @pytest.mark.asyncio
    async def test_repeat_award_is_not_paid_twice(self, db_session, make_student):
        ana = await make_student("Ana")
        await _add_rule(db_session, "spirit", {"kind": "competition_team"}, points_award=20)

        await award_badge(db_session, None, ana.id, "spirit")
        again = await award_badge(db_session, None, ana.id, "spirit", note="again")

        assert again.granted is False
        assert again.reason == "already_held"
        assert again.balance is None
        assert await _award_count(db_session, "spirit") == 1
        assert len(await _badge_entries(db_session, ana.id)) == 1

    @pytest.mark.asyncio
    async def test_sweep_skips_coach_awarded_holder(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"}, points_award=10)
        await award_badge(db_session, None, ana.id, "team")

        report = await sweep(db_session, None)

        assert report.results[0].awarded == 0
        assert report.results[0].already_held == 1
        assert len(await _badge_entries(db_session, ana.id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_badge_and_student(self, db_session, make_student):
        ana = await make_student("Ana")
        await _add_rule(db_session, "spirit", {"kind": "competition_team"})

        with pytest.raises(NotFoundError):
            await award_badge(db_session, None, ana.id, "nope")
        with pytest.raises(ValidationError):
            await award_badge(db_session, None, 4040, "spirit")
        assert await _award_count(db_session, "spirit") == 0

    @pytest.mark.asyncio
    async def test_follow_up_failure_raises_after_payment(self, db_session, make_student, monkeypatch):
        ana = await make_student("Ana")
        await _add_rule(db_session, "spirit", {"kind": "competition_team"}, points_award=20)

        async def _failing_recompute(db, student_id, redis=None):
            raise StoreUnavailableError("cached totals are stale", details={"student_id": student_id})

        monkeypatch.setattr(badge_service, "recompute_with_retry", _failing_recompute)
        with pytest.raises(AwardFollowUpError) as exc:
            await award_badge(db_session, None, ana.id, "spirit")

        assert exc.value.details["student_ids"] == [ana.id]
        assert await _award_count(db_session, "spirit") == 1
        assert len(await _badge_entries(db_session, ana.id)) == 1

    @pytest.mark.asyncio
    async def test_student_badges_newest_first(self, db_session, make_student):
        ana = await make_student("Ana", is_competition_team=True)
        await _add_rule(db_session, "team", {"kind": "competition_team"})
        await _add_rule(db_session, "spirit", {"kind": "competition_team"}, enabled=False)
        earlier = datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc)

        await sweep(db_session, None, now=earlier)
        await award_badge(db_session, None, ana.id, "spirit", now=earlier + timedelta(days=2))

        badges = await list_student_badges(db_session, ana.id)
        assert [(b.badge_id, b.source) for b in badges] == [("spirit", "coach"), ("team", "auto")]
        assert [b.badge_id for b in await list_student_badges(db_session, ana.id, limit=1)] == ["spirit"]

        with pytest.raises(NotFoundError):
            await list_student_badges(db_session, 4040)
