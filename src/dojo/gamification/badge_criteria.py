"""Badge criteria as a closed tagged union.

Each rule's ``criteria`` column holds a JSON object discriminated on
``kind``; pydantic validates its parameters when the rule is loaded, so
evaluation never falls back to guessing from badge ids.
"""

from __future__ import annotations

from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from dojo.errors import ValidationError
from dojo.gamification.aggregates import ActivityMetric, StudentAggregate


class _Criteria(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def is_met(self, agg: StudentAggregate) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError


class LifetimePoints(_Criteria):
    kind: Literal["lifetime_points"]
    min_points: int = Field(ge=0)

    def is_met(self, agg: StudentAggregate) -> bool:
        return agg.lifetime_points >= self.min_points


class CompetitionTeam(_Criteria):
    kind: Literal["competition_team"]

    def is_met(self, agg: StudentAggregate) -> bool:
        return agg.is_competition_team


class Level(_Criteria):
    kind: Literal["level"]
    min: int = Field(ge=1)

    def is_met(self, agg: StudentAggregate) -> bool:
        return agg.level >= self.min


class SkillTreesCompleted(_Criteria):
    kind: Literal["skill_trees_completed"]
    min: int = Field(ge=1)
    scope: Literal["all", "tumble", "taolu"] = "all"

    def completed(self, agg: StudentAggregate) -> int:
        tumble = agg.count(ActivityMetric.TUMBLE_TREES_COMPLETED)
        taolu = agg.count(ActivityMetric.TAOLU_TREES_COMPLETED)
        if self.scope == "tumble":
            return tumble
        if self.scope == "taolu":
            return taolu
        return tumble + taolu

    def is_met(self, agg: StudentAggregate) -> bool:
        return self.completed(agg) >= self.min


class _CountAtLeast(_Criteria):
    """Single activity counter compared against ``min``."""

    min: int = Field(ge=1)
    metric: ClassVar[ActivityMetric] = ActivityMetric.CHECKINS

    def is_met(self, agg: StudentAggregate) -> bool:
        return agg.count(self.metric) >= self.min


class Checkins(_CountAtLeast):
    kind: Literal["checkins"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.CHECKINS


class CampCheckins(_CountAtLeast):
    kind: Literal["camp_checkins"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.CAMP_CHECKINS


class ChallengesCompleted(_CountAtLeast):
    kind: Literal["challenges_completed"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.CHALLENGES_COMPLETED


class BattleWins(_CountAtLeast):
    kind: Literal["battle_wins"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.BATTLE_WINS


class SpotlightStars(_CountAtLeast):
    kind: Literal["spotlight_stars"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.SPOTLIGHT_STARS


class GoldMedals(_CountAtLeast):
    kind: Literal["gold_medals"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.GOLD_MEDALS


class TaoluTrackers(_CountAtLeast):
    kind: Literal["taolu_trackers"]
    metric: ClassVar[ActivityMetric] = ActivityMetric.TAOLU_TRACKERS_COMPLETED


class TaoluMaster(_Criteria):
    """Composite: both the tracker count and the taolu tree count must clear."""

    kind: Literal["taolu_master"]
    trackers_min: int = Field(ge=1)
    trees_min: int = Field(ge=1)

    def is_met(self, agg: StudentAggregate) -> bool:
        return (
            agg.count(ActivityMetric.TAOLU_TRACKERS_COMPLETED) >= self.trackers_min
            and agg.count(ActivityMetric.TAOLU_TREES_COMPLETED) >= self.trees_min
        )


BadgeCriteria = Annotated[
    Union[
        LifetimePoints,
        CompetitionTeam,
        Level,
        SkillTreesCompleted,
        Checkins,
        CampCheckins,
        ChallengesCompleted,
        BattleWins,
        SpotlightStars,
        GoldMedals,
        TaoluTrackers,
        TaoluMaster,
    ],
    Field(discriminator="kind"),
]

_criteria_adapter: TypeAdapter[BadgeCriteria] = TypeAdapter(BadgeCriteria)


def parse_criteria(raw: dict) -> BadgeCriteria:
    """Validate a rule's criteria JSON. Raises ValidationError on unknown kinds or bad params."""
    try:
        return _criteria_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid badge criteria",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def eligible_students(
    criteria: BadgeCriteria,
    aggregates: dict[int, StudentAggregate],
) -> list[int]:
    """Ids of students whose aggregates satisfy ``criteria``, ascending."""
    return sorted(sid for sid, agg in aggregates.items() if criteria.is_met(agg))
