from __future__ import annotations

from typing import Any, Callable, Dict, List

from ..schemas import (
    DietProfile,
    DietRuleSet,
    IngredientConstraint,
    MacroConstraint,
    MealStructureConstraint,
    PerMealConstraint,
    PrepTimeConstraints,
    RequiredCategoryConstraint,
    VegetableCupsRequirement,
    WeeklyVariety,
)


def derive_diet_rule_set(profile: DietProfile) -> DietRuleSet:
    """Map an onboarding profile to the rule set every generated plan is held to.

    Diet-level rules that are medically non-negotiable (Wahls exclusions, keto
    carb ceiling, vegan animal products) are always hard; everything else follows
    the profile's strictness. Unknown diet keys fall back to ``balanced``.
    """
    level = "hard" if profile.strictness == "strict" else "soft"
    builder = _BUILDERS.get(profile.dietKey, _balanced)
    fields = builder(profile, level)
    fields["ingredientConstraints"] = fields.get("ingredientConstraints", []) + _personal_constraints(profile)
    return DietRuleSet(
        calorieTarget=profile.calorieTarget,
        prepTimeConstraints=PrepTimeConstraints(
            globalMax=profile.prepPreferences.maxPrepMinutes,
            perMeal=dict(profile.prepPreferences.perMeal),
        ),
        **fields,
    )


def _personal_constraints(profile: DietProfile) -> List[IngredientConstraint]:
    constraints: List[IngredientConstraint] = []
    if profile.allergies:
        constraints.append(IngredientConstraint(type="forbidden", items=list(profile.allergies), constraintType="hard"))
    if profile.dislikes:
        constraints.append(IngredientConstraint(type="forbidden", items=list(profile.dislikes), constraintType="soft"))
    return constraints


def _protein_min(profile: DietProfile, default: float) -> float:
    protein = profile.macroTargets.protein
    return protein.min if protein and protein.min is not None else default


def _fat_min(profile: DietProfile, default: float) -> float:
    fat = profile.macroTargets.fat
    return fat.min if fat and fat.min is not None else default


def _per_meal_protein(level: str, breakfast: float, lunch: float, dinner: float) -> List[PerMealConstraint]:
    return [
        PerMealConstraint(mealSlot="breakfast", minProtein=breakfast, constraintType=level),
        PerMealConstraint(mealSlot="lunch", minProtein=lunch, constraintType=level),
        PerMealConstraint(mealSlot="dinner", minProtein=dinner, constraintType=level),
    ]


def _three_meals(level: str, required: bool = True) -> List[MealStructureConstraint]:
    return [
        MealStructureConstraint(
            type="meal_count",
            minMealsPerDay=3,
            requiredSlots=["breakfast", "lunch", "dinner"] if required else [],
            constraintType=level,
        )
    ]


def _wahls_paleo_plus(profile: DietProfile, level: str) -> Dict[str, Any]:
    high = profile.varietyLevel == "high"
    return {
        "dietKey": "wahls_paleo_plus",
        "ingredientConstraints": [
            IngredientConstraint(
                type="forbidden",
                categories=["grains", "dairy", "legumes", "processed_sugar"],
                constraintType="hard",
            )
        ],
        "requiredCategories": [
            RequiredCategoryConstraint(
                category="organ_meats", minPerWeek=2, items=["liver", "heart", "kidney"], constraintType="hard"
            ),
            RequiredCategoryConstraint(
                category="seaweed_kelp",
                minPerDay=1,
                items=["seaweed", "kelp", "nori", "wakame"],
                constraintType="hard",
            ),
        ],
        "perMealConstraints": _per_meal_protein(level, 20, 25, 30),
        "weeklyVariety": WeeklyVariety(
            maxRepeats=1 if high else 2, minUniqueMeals=15 if high else 10, excludeSimilar=True, constraintType=level
        ),
        "macroConstraints": [
            MacroConstraint(
                scope="daily",
                minProtein=_protein_min(profile, 100),
                minFat=_fat_min(profile, 60),
                constraintType=level,
            )
        ],
        "mealStructure": [
            MealStructureConstraint(
                type="vegetable_cups",
                vegetableCupsRequirement=VegetableCupsRequirement(totalCups=9, leafyCups=3, sulfurCups=3, coloredCups=3),
                constraintType="hard",
            ),
            *_three_meals(level),
        ],
    }


def _keto(profile: DietProfile, level: str) -> Dict[str, Any]:
    high = profile.varietyLevel == "high"
    return {
        "dietKey": "keto",
        "ingredientConstraints": [
            IngredientConstraint(
                type="forbidden", categories=["grains", "sugar", "starchy_vegetables"], constraintType="hard"
            )
        ],
        "perMealConstraints": [
            PerMealConstraint(mealSlot="breakfast", minFat=15, constraintType=level),
            PerMealConstraint(mealSlot="lunch", minFat=20, constraintType=level),
            PerMealConstraint(mealSlot="dinner", minFat=25, constraintType=level),
        ],
        "weeklyVariety": WeeklyVariety(
            maxRepeats=2 if high else 3, minUniqueMeals=12 if high else 8, excludeSimilar=False, constraintType=level
        ),
        # carbs are a hard ceiling regardless of strictness
        "macroConstraints": [
            MacroConstraint(
                scope="daily",
                maxCarbs=20,
                minFat=_fat_min(profile, 100),
                minProtein=_protein_min(profile, 70),
                constraintType="hard",
            )
        ],
        "mealStructure": [
            MealStructureConstraint(type="meal_count", minMealsPerDay=2, maxMealsPerDay=4, constraintType=level)
        ],
    }


def _mediterranean(profile: DietProfile, level: str) -> Dict[str, Any]:
    high = profile.varietyLevel == "high"
    return {
        "dietKey": "mediterranean",
        "ingredientConstraints": [
            IngredientConstraint(
                type="allowed",
                categories=["vegetables", "fruits", "whole_grains", "legumes", "fish", "poultry", "olive_oil", "nuts"],
                constraintType=level,
            ),
            IngredientConstraint(
                type="forbidden", categories=["processed_foods", "refined_sugar"], constraintType="soft"
            ),
        ],
        "requiredCategories": [
            RequiredCategoryConstraint(category="vegetables", minPerDay=5, constraintType=level),
            RequiredCategoryConstraint(
                category="healthy_fats", minPerDay=2, items=["olive_oil", "nuts", "avocado"], constraintType=level
            ),
        ],
        "perMealConstraints": [PerMealConstraint(mealSlot="dinner", minProtein=20, constraintType=level)],
        "weeklyVariety": WeeklyVariety(
            maxRepeats=2 if high else 3, minUniqueMeals=14 if high else 10, excludeSimilar=True, constraintType=level
        ),
        "macroConstraints": [
            MacroConstraint(
                scope="daily",
                minProtein=_protein_min(profile, 80),
                minFat=_fat_min(profile, 50),
                constraintType=level,
            )
        ],
        "mealStructure": _three_meals(level),
    }


def _vegan(profile: DietProfile, level: str) -> Dict[str, Any]:
    high = profile.varietyLevel == "high"
    return {
        "dietKey": "vegan",
        "ingredientConstraints": [
            IngredientConstraint(
                type="forbidden",
                categories=["meat", "fish", "poultry", "dairy", "eggs", "honey"],
                constraintType="hard",
            )
        ],
        "requiredCategories": [
            RequiredCategoryConstraint(
                category="plant_protein",
                minPerDay=3,
                items=["legumes", "tofu", "tempeh", "seitan", "nuts", "seeds"],
                constraintType=level,
            )
        ],
        "perMealConstraints": _per_meal_protein(level, 15, 20, 25),
        "weeklyVariety": WeeklyVariety(
            maxRepeats=2 if high else 3, minUniqueMeals=14 if high else 10, excludeSimilar=True, constraintType=level
        ),
        "macroConstraints": [
            MacroConstraint(scope="daily", minProtein=_protein_min(profile, 60), constraintType=level)
        ],
        "mealStructure": _three_meals(level),
    }


def _balanced(profile: DietProfile, level: str) -> Dict[str, Any]:
    high = profile.varietyLevel == "high"
    return {
        "dietKey": "balanced",
        "perMealConstraints": _per_meal_protein(level, 15, 20, 25),
        "weeklyVariety": WeeklyVariety(
            maxRepeats=2 if high else 4, minUniqueMeals=12 if high else 7, excludeSimilar=False, constraintType=level
        ),
        "macroConstraints": [
            MacroConstraint(scope="daily", minProtein=_protein_min(profile, 50), constraintType=level)
        ],
        "mealStructure": _three_meals(level, required=False),
    }


_BUILDERS: Dict[str, Callable[[DietProfile, str], Dict[str, Any]]] = {
    "wahls_paleo_plus": _wahls_paleo_plus,
    "keto": _keto,
    "mediterranean": _mediterranean,
    "vegan": _vegan,
    "balanced": _balanced,
}
