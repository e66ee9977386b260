from __future__ import annotations

from typing import List

from ..schemas import Meal, MealPlanResponse, SanityIssue, SanityResult

PLACEHOLDER_NAMES = frozenset(
    {"tbd", "n/a", "na", "meal", "recept", "recipe", "unknown", "ontbijt", "lunch", "diner", "avondeten"}
)

MIN_INGREDIENTS = 1
MAX_INGREDIENTS = 10
MIN_QTY_G = 1
MAX_QTY_G = 400


def is_placeholder_name(name: str) -> bool:
    normalized = name.strip().lower()
    return not normalized or normalized in PLACEHOLDER_NAMES or len(normalized) <= 2


def _meal_issues(meal: Meal, path: str) -> List[SanityIssue]:
    issues: List[SanityIssue] = []
    name = (meal.name or "").strip()
    if not name:
        issues.append(SanityIssue(code="EMPTY_NAME", message="Meal name is empty", path=path))
    elif is_placeholder_name(name):
        issues.append(
            SanityIssue(code="PLACEHOLDER_NAME", message=f'Meal name looks like a placeholder: "{name[:30]}"', path=path)
        )

    refs = meal.ingredientRefs
    if not MIN_INGREDIENTS <= len(refs) <= MAX_INGREDIENTS:
        issues.append(
            SanityIssue(
                code="INGREDIENT_COUNT_OUT_OF_RANGE",
                message=f"Ingredient count {len(refs)} must be between {MIN_INGREDIENTS} and {MAX_INGREDIENTS}",
                path=path,
            )
        )

    seen: set[str] = set()
    for index, ref in enumerate(refs):
        ref_path = f"{path}.ingredientRefs[{index}]"
        if not ref.nevoCode:
            issues.append(
                SanityIssue(code="MISSING_NEVO_CODE", message=f"Ingredient ref at index {index} has no code", path=ref_path)
            )
            continue
        if ref.nevoCode in seen:
            issues.append(
                SanityIssue(
                    code="DUPLICATE_INGREDIENT", message=f"Duplicate ingredient in meal: {ref.nevoCode}", path=ref_path
                )
            )
        seen.add(ref.nevoCode)
        if not MIN_QTY_G <= ref.quantityG <= MAX_QTY_G:
            issues.append(
                SanityIssue(
                    code="INGREDIENT_QTY_OUT_OF_RANGE",
                    message=f"quantityG {ref.quantityG:g} must be between {MIN_QTY_G} and {MAX_QTY_G}",
                    path=ref_path,
                )
            )
    return issues


class DefaultSanityValidator:
    """Post-generation plausibility checks on names, ingredient counts and gram amounts."""

    def validate(self, plan: MealPlanResponse) -> SanityResult:
        issues: List[SanityIssue] = []
        for day_index, day in enumerate(plan.days):
            if not day.meals:
                issues.append(SanityIssue(code="EMPTY_DAY", message="Day has no meals", path=f"days[{day_index}]"))
            for meal_index, meal in enumerate(day.meals):
                issues.extend(_meal_issues(meal, f"days[{day_index}].meals[{meal_index}]"))
        return SanityResult(ok=not issues, issues=issues)
