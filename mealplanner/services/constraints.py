from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..interfaces import NutritionLookup
from ..schemas import (
    MACRO_ISSUE_CODES,
    DietRuleSet,
    IngredientRef,
    Meal,
    MealPlanDay,
    MealPlanRequest,
    MealPlanResponse,
    NutrientRecord,
    ValidationIssue,
)
from .nutrition import resolve_records, sum_macros

logger = logging.getLogger(__name__)

SHAKE_KEYWORDS = ("shake", "smoothie")
PROTEIN_SHAKE_PREFERENCES = {"eiwitshake", "proteinshake", "proteineshake"}
PROTEIN_SOURCE_TERMS = ("eiwitpoeder", "whey", "protein", "proteine", "eiwit", "kwark", "skyr")


@dataclass
class DayTargets:
    """Hard, daily-scope numeric targets; None means unconstrained."""

    calories_min: Optional[float] = None
    calories_max: Optional[float] = None
    protein_min: Optional[float] = None
    carbs_max: Optional[float] = None
    fat_min: Optional[float] = None
    fat_max: Optional[float] = None

    def has_calorie_range(self) -> bool:
        return self.calories_min is not None or self.calories_max is not None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.calories_min,
                self.calories_max,
                self.protein_min,
                self.carbs_max,
                self.fat_min,
                self.fat_max,
            )
        )


def day_targets(rules: DietRuleSet) -> DayTargets:
    targets = DayTargets(calories_min=rules.calorieTarget.min, calories_max=rules.calorieTarget.max)
    for macro in rules.macroConstraints:
        if macro.constraintType != "hard" or macro.scope != "daily":
            continue
        if macro.minProtein is not None:
            targets.protein_min = macro.minProtein
        if macro.maxCarbs is not None:
            targets.carbs_max = macro.maxCarbs
        if macro.minFat is not None:
            targets.fat_min = macro.minFat
        if macro.maxFat is not None:
            targets.fat_max = macro.maxFat
    return targets


def matches_term(text: str, term: str) -> bool:
    return bool(term) and term.lower() in (text or "").lower()


def _squash(text: str) -> str:
    return "".join(ch for ch in (text or "").lower() if ch.isalnum())


def is_shake_like(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in SHAKE_KEYWORDS)


def meal_matches_preference(meal: Meal, preference: str) -> bool:
    names = [meal.name] + [ref.displayName or "" for ref in meal.ingredientRefs]
    if _squash(preference) in PROTEIN_SHAKE_PREFERENCES:
        if not is_shake_like(meal.name):
            return False
        return any(
            matches_term(name, term) or any(matches_term(tag, term) for tag in ref.tags)
            for ref, name in zip(meal.ingredientRefs, names[1:])
            for term in PROTEIN_SOURCE_TERMS
        )
    squashed_pref = _squash(preference)
    if any(squashed_pref and squashed_pref in _squash(name) for name in names):
        return True
    tokens = [token for token in preference.lower().split() if len(token) > 2]
    haystack = " ".join(names).lower()
    return bool(tokens) and all(token in haystack for token in tokens)


def meal_matches_preferences(meal: Meal, preferences: Sequence[str]) -> bool:
    return any(meal_matches_preference(meal, preference) for preference in preferences)


def _matches_any(name: str, tags: Sequence[str], terms: Iterable[str]) -> List[str]:
    return [term for term in terms if matches_term(name, term) or any(matches_term(tag, term) for tag in tags)]


def _is_forbidden(name: str, tags: Sequence[str], rules: DietRuleSet) -> bool:
    for constraint in rules.ingredientConstraints:
        if constraint.constraintType != "hard" or constraint.type != "forbidden":
            continue
        if any(matches_term(name, item) for item in constraint.items):
            return True
        if any(matches_term(tag, category) for category in constraint.categories for tag in tags):
            return True
    return False


class ConstraintEvaluator:
    """Hard-constraint checks shared by whole-plan, single-day and single-meal validation."""

    def __init__(self, lookup: NutritionLookup) -> None:
        self.lookup = lookup

    async def validate_plan(
        self,
        plan: MealPlanResponse,
        rules: DietRuleSet,
        request: MealPlanRequest,
    ) -> List[ValidationIssue]:
        records = await self._records_for(meal for day in plan.days for meal in day.meals)
        issues: List[ValidationIssue] = []
        for day_index, day in enumerate(plan.days):
            issues.extend(self._check_day(day, day_index, rules, request, records))
        return issues

    async def validate_day(
        self,
        day: MealPlanDay,
        rules: DietRuleSet,
        request: MealPlanRequest,
        day_index: int = 0,
    ) -> List[ValidationIssue]:
        records = await self._records_for(day.meals)
        return self._check_day(day, day_index, rules, request, records)

    async def validate_meal(
        self,
        meal: Meal,
        rules: DietRuleSet,
        request: MealPlanRequest,
    ) -> List[ValidationIssue]:
        records = await self._records_for([meal])
        return self._check_meal(meal, "meal", rules, request, records)

    async def _records_for(self, meals: Iterable[Meal]) -> Dict[str, Optional[NutrientRecord]]:
        return await resolve_records(self.lookup, (ref.nevoCode for meal in meals for ref in meal.ingredientRefs))

    def _check_day(
        self,
        day: MealPlanDay,
        day_index: int,
        rules: DietRuleSet,
        request: MealPlanRequest,
        records: Dict[str, Optional[NutrientRecord]],
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for meal_index, meal in enumerate(day.meals):
            issues.extend(self._check_meal(meal, f"days[{day_index}].meals[{meal_index}]", rules, request, records))
        issues.extend(self._check_required_categories(day, day_index, rules, records))
        issues.extend(self._check_day_macros(day, day_index, rules, records))
        return issues

    def _check_meal(
        self,
        meal: Meal,
        meal_path: str,
        rules: DietRuleSet,
        request: MealPlanRequest,
        records: Dict[str, Optional[NutrientRecord]],
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        preferences = request.profile.mealPreferences.for_slot(meal.slot)
        if preferences and not meal_matches_preferences(meal, preferences):
            issues.append(
                ValidationIssue(
                    path=meal_path,
                    code="MEAL_PREFERENCE_MISS",
                    message=(
                        f'Meal "{meal.name}" does not match required preferences for {meal.slot}: '
                        f"{', '.join(preferences)}"
                    ),
                )
            )
        for ref_index, ref in enumerate(meal.ingredientRefs):
            path = f"{meal_path}.ingredientRefs[{ref_index}]"
            issues.extend(self._check_ref(ref, path, rules, request, records))
        return issues

    def _check_ref(
        self,
        ref: IngredientRef,
        path: str,
        rules: DietRuleSet,
        request: MealPlanRequest,
        records: Dict[str, Optional[NutrientRecord]],
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        record = records.get(ref.nevoCode)
        if record is None:
            issues.append(
                ValidationIssue(
                    path=path,
                    code="INVALID_NEVO_CODE",
                    message=f"Invalid NEVO code: {ref.nevoCode or '<empty>'} (not found in database)",
                )
            )
        name = ref.displayName or (record.name if record else "")
        if not name and not ref.tags:
            return issues
        label = f'"{name}" (nevoCode: {ref.nevoCode})'
        allergens = _matches_any(name, ref.tags, request.profile.allergies)
        if allergens:
            issues.append(
                ValidationIssue(
                    path=path,
                    code="ALLERGEN_PRESENT",
                    message=f"Ingredient {label} contains or matches an allergen: {', '.join(allergens)}",
                )
            )
        if _matches_any(name, ref.tags, request.profile.dislikes):
            issues.append(
                ValidationIssue(
                    path=path,
                    code="DISLIKED_INGREDIENT",
                    message=f"Ingredient {label} is in the user's dislikes list",
                )
            )
        if _is_forbidden(name, ref.tags, rules):
            issues.append(
                ValidationIssue(
                    path=path,
                    code="FORBIDDEN_INGREDIENT",
                    message=f"Ingredient {label} is forbidden by diet rules",
                )
            )
        return issues

    def _check_required_categories(
        self,
        day: MealPlanDay,
        day_index: int,
        rules: DietRuleSet,
        records: Dict[str, Optional[NutrientRecord]],
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for required in rules.requiredCategories:
            if required.constraintType != "hard" or not required.minPerDay:
                continue
            found = False
            for meal in day.meals:
                for ref in meal.ingredientRefs:
                    record = records.get(ref.nevoCode)
                    name = ref.displayName or (record.name if record else "")
                    if any(matches_term(name, item) for item in required.items):
                        found = True
                    elif any(matches_term(tag, required.category) for tag in ref.tags):
                        found = True
                    if found:
                        break
                if found:
                    break
            if not found:
                issues.append(
                    ValidationIssue(
                        path=f"days[{day_index}]",
                        code="MISSING_REQUIRED_CATEGORY",
                        message=(
                            f'Required category "{required.category}" (min {required.minPerDay}/day) '
                            "not found in any meal"
                        ),
                    )
                )
        return issues

    def _check_day_macros(
        self,
        day: MealPlanDay,
        day_index: int,
        rules: DietRuleSet,
        records: Dict[str, Optional[NutrientRecord]],
    ) -> List[ValidationIssue]:
        targets = day_targets(rules)
        if targets.is_empty():
            return []
        totals = sum_macros([ref for meal in day.meals for ref in meal.ingredientRefs], records)
        path = f"days[{day_index}]"
        issues: List[ValidationIssue] = []

        def miss(code: str, message: str) -> None:
            issues.append(ValidationIssue(path=path, code=code, message=message))

        if targets.calories_min is not None and totals.calories < targets.calories_min:
            miss(
                "CALORIE_TARGET_MISS",
                f"Day calories ({totals.calories:.0f}) below minimum target ({targets.calories_min:g})",
            )
        if targets.calories_max is not None and totals.calories > targets.calories_max:
            miss(
                "CALORIE_TARGET_MISS",
                f"Day calories ({totals.calories:.0f}) above maximum target ({targets.calories_max:g})",
            )
        if targets.carbs_max is not None and totals.carbsG > targets.carbs_max:
            miss("MACRO_TARGET_MISS", f"Day carbs ({totals.carbsG:.1f}g) exceed maximum ({targets.carbs_max:g}g)")
        if targets.protein_min is not None and totals.proteinG < targets.protein_min:
            miss(
                "MACRO_TARGET_MISS",
                f"Day protein ({totals.proteinG:.1f}g) below minimum ({targets.protein_min:g}g)",
            )
        if targets.fat_min is not None and totals.fatG < targets.fat_min:
            miss("MACRO_TARGET_MISS", f"Day fat ({totals.fatG:.1f}g) below minimum ({targets.fat_min:g}g)")
        if targets.fat_max is not None and totals.fatG > targets.fat_max:
            miss("MACRO_TARGET_MISS", f"Day fat ({totals.fatG:.1f}g) above maximum ({targets.fat_max:g}g)")
        return issues


def only_macro_issues(issues: Sequence[ValidationIssue]) -> bool:
    return bool(issues) and all(issue.code in MACRO_ISSUE_CODES for issue in issues)
