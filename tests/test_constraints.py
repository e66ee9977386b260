from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase

from mealplanner.schemas import DietProfile, MealPlanDay, MealPlanResponse
from mealplanner.services.constraints import (
    ConstraintEvaluator,
    day_targets,
    meal_matches_preference,
    only_macro_issues,
)
from mealplanner.services.diet_rules import derive_diet_rule_set

from tests.fakes import FakeNutritionLookup, START, day_payload, make_meal, make_request, ref


def _codes(issues):
    return [issue.code for issue in issues]


class DietRulesTest(unittest.TestCase):
    def test_unknown_diet_falls_back_to_balanced(self):
        rules = derive_diet_rule_set(DietProfile(dietKey="carnivore"))
        self.assertEqual(rules.dietKey, "balanced")

    def test_strictness_controls_macro_hardness(self):
        flexible = derive_diet_rule_set(DietProfile(dietKey="vegan"))
        strict = derive_diet_rule_set(DietProfile(dietKey="vegan", strictness="strict"))
        self.assertEqual(flexible.macroConstraints[0].constraintType, "soft")
        self.assertEqual(strict.macroConstraints[0].constraintType, "hard")
        self.assertEqual(day_targets(strict).protein_min, 60)

    def test_keto_carb_ceiling_is_always_hard(self):
        rules = derive_diet_rule_set(DietProfile(dietKey="keto"))
        self.assertEqual(day_targets(rules).carbs_max, 20)

    def test_allergies_hard_and_dislikes_soft(self):
        rules = derive_diet_rule_set(DietProfile(allergies=["pinda"], dislikes=["spruitjes"]))
        personal = {c.constraintType: c.items for c in rules.ingredientConstraints}
        self.assertEqual(personal["hard"], ["pinda"])
        self.assertEqual(personal["soft"], ["spruitjes"])


class PreferenceMatchTest(unittest.TestCase):
    def test_eiwitshake_needs_shake_name_and_protein_source(self):
        fruit_only = make_meal(
            START, "breakfast", name="Fruit smoothie", ingredientRefs=[ref("3001", 100), ref("3002", 100)]
        )
        protein_shake = make_meal(
            START, "breakfast", name="Eiwitshake met banaan", ingredientRefs=[ref("7002", 30), ref("3001", 100)]
        )
        protein_bowl = make_meal(START, "breakfast", name="Kwark bowl", ingredientRefs=[ref("7002", 30)])

        self.assertFalse(meal_matches_preference(fruit_only, "eiwitshake"))
        self.assertTrue(meal_matches_preference(protein_shake, "eiwitshake"))
        self.assertFalse(meal_matches_preference(protein_bowl, "eiwitshake"))

    def test_general_preference_matches_name_or_ingredients(self):
        meal = make_meal(START, "breakfast")
        self.assertTrue(meal_matches_preference(meal, "havermout"))
        self.assertTrue(meal_matches_preference(meal, "banaan"))
        self.assertFalse(meal_matches_preference(meal, "omelet"))


class ConstraintEvaluatorTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.lookup = FakeNutritionLookup()
        self.evaluator = ConstraintEvaluator(self.lookup)

    async def test_clean_plan_has_no_issues(self):
        request = make_request()
        rules = derive_diet_rule_set(request.profile)
        plan = MealPlanResponse(requestId="r", days=[MealPlanDay.model_validate(day_payload(START))])
        self.assertEqual(await self.evaluator.validate_plan(plan, rules, request), [])

    async def test_unresolved_code_is_always_reported(self):
        request = make_request()
        rules = derive_diet_rule_set(request.profile)
        meal = make_meal(START, "lunch", ingredientRefs=[{"nevoCode": "9999", "quantityG": 100}])
        issues = await self.evaluator.validate_meal(meal, rules, request)
        self.assertEqual(_codes(issues), ["INVALID_NEVO_CODE"])

    async def test_allergen_and_dislike_substring_matches(self):
        request = make_request(allergies=["pinda"], dislikes=["broccoli"])
        rules = derive_diet_rule_set(request.profile)
        meal = make_meal(START, "lunch", ingredientRefs=[ref("5001", 30), ref("2001", 100)])

        issues = await self.evaluator.validate_meal(meal, rules, request)

        self.assertIn("ALLERGEN_PRESENT", _codes(issues))
        self.assertIn("FORBIDDEN_INGREDIENT", _codes(issues))
        self.assertIn("DISLIKED_INGREDIENT", _codes(issues))
        self.assertTrue(all(issue.path.startswith("meal.ingredientRefs[") for issue in issues))

    async def test_slot_preference_is_hard(self):
        request = make_request(mealPreferences={"breakfast": ["eiwitshake"]})
        rules = derive_diet_rule_set(request.profile)
        meal = make_meal(START, "breakfast", name="Fruit smoothie", ingredientRefs=[ref("3001", 100)])
        issues = await self.evaluator.validate_meal(meal, rules, request)
        self.assertEqual(_codes(issues), ["MEAL_PREFERENCE_MISS"])

    async def test_required_category_checked_per_day(self):
        request = make_request(dietKey="wahls_paleo_plus")
        rules = derive_diet_rule_set(request.profile)
        day = MealPlanDay.model_validate(day_payload(START))
        issues = await self.evaluator.validate_day(day, rules, request, day_index=2)
        missing = [issue for issue in issues if issue.code == "MISSING_REQUIRED_CATEGORY"]
        self.assertEqual(len(missing), 1)
        self.assertEqual(missing[0].path, "days[2]")

    async def test_only_hard_daily_targets_are_enforced(self):
        soft = make_request(macroTargets={"protein": {"min": 500}})
        hard = make_request(strictness="strict", macroTargets={"protein": {"min": 500}})
        day = MealPlanDay.model_validate(day_payload(START))

        soft_issues = await self.evaluator.validate_day(day, derive_diet_rule_set(soft.profile), soft)
        hard_issues = await self.evaluator.validate_day(day, derive_diet_rule_set(hard.profile), hard)

        self.assertEqual(soft_issues, [])
        self.assertEqual(_codes(hard_issues), ["MACRO_TARGET_MISS"])
        self.assertTrue(only_macro_issues(hard_issues))
        self.assertFalse(only_macro_issues([]))

    async def test_calorie_range_miss(self):
        request = make_request(calorieTarget={"min": 2500, "max": 2800})
        day = MealPlanDay.model_validate(day_payload(START))
        issues = await self.evaluator.validate_day(day, derive_diet_rule_set(request.profile), request)
        self.assertEqual(_codes(issues), ["CALORIE_TARGET_MISS"])


if __name__ == "__main__":
    unittest.main()
