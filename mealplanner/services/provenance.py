from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..config import Settings, get_settings
from ..errors import AIBudgetExceededError, DbCoverageTooLowError
from ..interfaces import PersistedMealPool
from ..schemas import DietRuleSet, Meal, MealPlanRequest, MealPlanResponse
from .constraints import ConstraintEvaluator

logger = logging.getLogger(__name__)

SOURCE_AI = "ai"
SOURCE_DB = "db"
SOURCE_HISTORY = "history"
RECIPE_STORE_SOURCE = "custom_meals"

DB_COVERAGE_MESSAGE = "Te weinig maaltijden uit je receptendatabase in dit weekmenu."
AI_BUDGET_MESSAGE = "Te veel maaltijden in dit weekmenu zijn door AI bedacht."

Position = Tuple[int, int]


@dataclass
class SlotProvenance:
    date: str
    slot: str
    mealId: str
    source: str = SOURCE_AI
    sourceMealId: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"date": self.date, "slot": self.slot, "mealId": self.mealId, "source": self.source}
        if self.sourceMealId:
            data["sourceMealId"] = self.sourceMealId
        return data


@dataclass
class ProvenanceSummary:
    slots: List[SlotProvenance] = field(default_factory=list)
    targetReuseRatio: float = 0.0

    @property
    def total(self) -> int:
        return len(self.slots)

    def count(self, source: str) -> int:
        return sum(1 for slot in self.slots if slot.source == source)

    def to_metadata(self) -> Dict[str, Any]:
        db_slots = self.count(SOURCE_DB)
        history_slots = self.count(SOURCE_HISTORY)
        return {
            "reusedRecipeCount": db_slots + history_slots,
            "generatedRecipeCount": self.count(SOURCE_AI),
            "dbSlots": db_slots,
            "historySlots": history_slots,
            "totalSlots": self.total,
            "targetReuseRatio": self.targetReuseRatio,
            "slots": [slot.to_dict() for slot in self.slots],
        }


def sample_positions(positions: List[Position], count: int, rng: random.Random) -> List[Position]:
    """Uniform Fisher-Yates sample of ``count`` positions, returned in (day, meal) order."""
    pool = list(positions)
    for index in range(len(pool) - 1, 0, -1):
        swap = rng.randint(0, index)
        pool[index], pool[swap] = pool[swap], pool[index]
    return sorted(pool[: max(0, min(count, len(pool)))])


def _meal_key(meal: Meal) -> str:
    return meal.name.strip().lower()


class ProvenanceComposer:
    """Backfills part of an accepted plan with previously used meals and records each slot's origin."""

    def __init__(
        self,
        evaluator: ConstraintEvaluator,
        meal_pool: Optional[PersistedMealPool] = None,
        settings: Settings | None = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.evaluator = evaluator
        self.meal_pool = meal_pool
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()

    async def compose(
        self,
        plan: MealPlanResponse,
        rules: DietRuleSet,
        request: MealPlanRequest,
    ) -> MealPlanResponse:
        summary = ProvenanceSummary(
            slots=[
                SlotProvenance(date=day.date, slot=meal.slot, mealId=meal.id)
                for day in plan.days
                for meal in day.meals
            ],
            targetReuseRatio=self.settings.target_reuse_ratio,
        )
        ratio = self.settings.target_reuse_ratio
        if self.meal_pool is not None and ratio > 0 and summary.total:
            plan = await self._backfill(plan, rules, request, summary)

        plan.metadata["provenance"] = summary.to_metadata()
        logger.info(
            "Provenance total=%s ai=%s db=%s history=%s",
            summary.total,
            summary.count(SOURCE_AI),
            summary.count(SOURCE_DB),
            summary.count(SOURCE_HISTORY),
        )
        return plan

    async def _backfill(
        self,
        plan: MealPlanResponse,
        rules: DietRuleSet,
        request: MealPlanRequest,
        summary: ProvenanceSummary,
    ) -> MealPlanResponse:
        by_slot = await self.meal_pool.meals_by_slot(request.slots)
        positions = [(d, m) for d, day in enumerate(plan.days) for m in range(len(day.meals))]
        target = round(self.settings.target_reuse_ratio * len(positions))
        index_of = {position: i for i, position in enumerate(positions)}
        used_per_day: Dict[int, set[str]] = {}

        for day_index, meal_index in sample_positions(positions, target, self.rng):
            current = plan.days[day_index].meals[meal_index]
            previous = self._previous_same_slot(plan, day_index, current.slot)
            used = used_per_day.setdefault(day_index, {_meal_key(meal) for meal in plan.days[day_index].meals})
            pool_meal = next(
                (
                    meal
                    for meal in by_slot.get(current.slot, [])
                    if _meal_key(meal) not in used
                    and (previous is None or _meal_key(meal) != _meal_key(previous))
                ),
                None,
            )
            if pool_meal is None:
                continue
            candidate = plan.model_copy(deep=True)
            day = candidate.days[day_index]
            day.meals[meal_index] = pool_meal.model_copy(
                update={"id": str(uuid.uuid4()), "date": day.date, "slot": current.slot}, deep=True
            )
            # Only the first eligible pool meal is tried; a violation keeps the generated meal.
            if await self.evaluator.validate_plan(candidate, rules, request):
                continue
            plan = candidate
            used.discard(_meal_key(current))
            used.add(_meal_key(pool_meal))
            source = SOURCE_DB if self.meal_pool.source_of(pool_meal) == RECIPE_STORE_SOURCE else SOURCE_HISTORY
            summary.slots[index_of[(day_index, meal_index)]] = SlotProvenance(
                date=day.date,
                slot=current.slot,
                mealId=day.meals[meal_index].id,
                source=source,
                sourceMealId=pool_meal.id,
            )
        return plan

    @staticmethod
    def _previous_same_slot(plan: MealPlanResponse, day_index: int, slot: str) -> Optional[Meal]:
        if day_index == 0:
            return None
        for meal in plan.days[day_index - 1].meals:
            if meal.slot == slot:
                return meal
        return None

    def check_budgets(self, plan: MealPlanResponse) -> None:
        """Enforce DB coverage then the AI-authored slot cap, or annotate under the fallback flag."""
        provenance = plan.metadata.get("provenance") or {}
        total = provenance.get("totalSlots", 0)
        db_slots = provenance.get("dbSlots", 0)
        generated = provenance.get("generatedRecipeCount", 0)
        fallback: List[Dict[str, Any]] = []

        required = self.settings.min_db_recipe_ratio
        if required > 0 and total > 0 and db_slots / total < required:
            details = {
                "dbSlots": db_slots,
                "totalSlots": total,
                "requiredRatio": required,
                "actualRatio": round(db_slots / total, 3),
            }
            if not self.settings.allow_coverage_fallback:
                raise DbCoverageTooLowError(DB_COVERAGE_MESSAGE, details)
            fallback.append({"code": DbCoverageTooLowError.code, **details})

        max_allowed = self.settings.max_ai_generated_slots
        if max_allowed is not None and generated > max_allowed:
            details = {"generated": generated, "maxAllowed": max_allowed}
            if not self.settings.allow_coverage_fallback:
                raise AIBudgetExceededError(AI_BUDGET_MESSAGE, details)
            fallback.append({"code": AIBudgetExceededError.code, **details})

        if fallback:
            logger.warning("Provenance budget shortfall accepted under fallback: %s", fallback)
            plan.metadata["coverageFallback"] = fallback
