from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import Settings, get_settings
from ..interfaces import NutritionLookup
from ..schemas import DietRuleSet, MealPlanDay, MealPlanRequest, QuantityChange, ValidationIssue
from .constraints import ConstraintEvaluator, DayTargets, day_targets, only_macro_issues
from .nutrition import calc_day_macros

logger = logging.getLogger(__name__)

DEFAULT_CALORIE_MIN = 0.0
DEFAULT_CALORIE_MAX = 10000.0


@dataclass
class AdjustmentResult:
    day: MealPlanDay
    issues: List[ValidationIssue]
    changes: List[QuantityChange] = field(default_factory=list)
    adjusted: bool = False


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def calorie_goal(targets: DayTargets) -> Optional[float]:
    """Midpoint of a two-sided calorie range, else the single bound that is set."""
    if targets.calories_min is not None and targets.calories_max is not None:
        return (targets.calories_min + targets.calories_max) / 2
    if targets.calories_min is not None:
        return targets.calories_min
    return targets.calories_max


class QuantityAdjuster:
    """Scales a day's grams toward hard calorie/protein targets with one uniform factor."""

    def __init__(
        self,
        lookup: NutritionLookup,
        evaluator: ConstraintEvaluator,
        settings: Settings | None = None,
    ) -> None:
        self.lookup = lookup
        self.evaluator = evaluator
        self.settings = settings or get_settings()

    async def scale_factor(self, day: MealPlanDay, targets: DayTargets) -> float:
        min_scale = self.settings.adjuster_min_scale
        max_scale = self.settings.adjuster_max_scale
        totals = await calc_day_macros(self.lookup, day.meals)
        scale = 1.0
        cal_min = targets.calories_min if targets.calories_min is not None else DEFAULT_CALORIE_MIN
        cal_max = targets.calories_max if targets.calories_max is not None else DEFAULT_CALORIE_MAX
        goal = calorie_goal(targets)
        if goal is not None and totals.calories > 0:
            if not cal_min <= totals.calories <= cal_max:
                scale = _clamp(goal / totals.calories, min_scale, max_scale)
        if targets.protein_min is not None and 0 < totals.proteinG < targets.protein_min:
            protein_scale = targets.protein_min / totals.proteinG
            projected = totals.calories * protein_scale
            if scale < protein_scale <= max_scale and (not targets.has_calorie_range() or projected <= cal_max):
                scale = protein_scale
        return scale

    def apply_scale(self, day: MealPlanDay, scale: float) -> tuple[MealPlanDay, List[QuantityChange]]:
        rounding = self.settings.adjuster_rounding_g
        changes: List[QuantityChange] = []
        adjusted = day.model_copy(deep=True)
        for meal in adjusted.meals:
            for ref in meal.ingredientRefs:
                old_g = ref.quantityG
                new_g = max(1, round(old_g * scale / rounding) * rounding)
                if new_g != old_g and ref.nevoCode:
                    changes.append(QuantityChange(nevoCode=ref.nevoCode, oldG=old_g, newG=new_g))
                ref.quantityG = new_g
        return adjusted, changes

    async def adjust_day(
        self,
        day: MealPlanDay,
        rules: DietRuleSet,
        request: MealPlanRequest,
        day_index: int = 0,
        issues: Optional[List[ValidationIssue]] = None,
    ) -> AdjustmentResult:
        """Validate a day and, when every issue is a calorie/macro miss, try one deterministic rescale.

        A partially improved day is still returned as the new baseline; only a
        day that is already clean, or has non-macro issues, comes back untouched.
        """
        if issues is None:
            issues = await self.evaluator.validate_day(day, rules, request, day_index)
        if not only_macro_issues(issues):
            return AdjustmentResult(day=day, issues=issues)

        scale = await self.scale_factor(day, day_targets(rules))
        if scale == 1.0:
            return AdjustmentResult(day=day, issues=issues)
        adjusted_day, changes = self.apply_scale(day, scale)
        if not changes:
            return AdjustmentResult(day=day, issues=issues)
        remaining = await self.evaluator.validate_day(adjusted_day, rules, request, day_index)
        if len(remaining) > len(issues):
            logger.info("Discarding adjustment for day %s: %s issues became %s", day.date, len(issues), len(remaining))
            return AdjustmentResult(day=day, issues=issues)
        logger.info(
            "Adjusted day %s scale=%.3f changes=%s remaining_issues=%s",
            day.date,
            scale,
            len(changes),
            len(remaining),
        )
        return AdjustmentResult(day=adjusted_day, issues=remaining, changes=changes, adjusted=True)
