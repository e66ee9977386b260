from __future__ import annotations

import random
import unittest
from unittest import IsolatedAsyncioTestCase

from mealplanner.errors import AIBudgetExceededError, DbCoverageTooLowError
from mealplanner.schemas import Meal, MealPlanResponse
from mealplanner.services.constraints import ConstraintEvaluator
from mealplanner.services.diet_rules import derive_diet_rule_set
from mealplanner.services.provenance import ProvenanceComposer, sample_positions

from tests.fakes import FakeNutritionLookup, StaticMealPool, make_request, make_settings, plan_payload, ref

LENTIL_SOUP = Meal.model_validate(
    {
        "id": "db-1",
        "name": "Linzensoep met tofu",
        "slot": "lunch",
        "date": "2025-11-01",
        "ingredientRefs": [ref("1004", 100), ref("2004", 150)],
    }
)
OMELET = Meal.model_validate(
    {
        "id": "hist-1",
        "name": "Omelet met spinazie",
        "slot": "breakfast",
        "date": "2025-10-20",
        "ingredientRefs": [ref("1003", 120), ref("2002", 50)],
    }
)


def make_plan(days: int) -> MealPlanResponse:
    return MealPlanResponse.model_validate({"requestId": "req", **plan_payload(days=days)})


class SamplePositionsTest(unittest.TestCase):
    def test_sample_is_sorted_subset_of_requested_size(self):
        positions = [(d, m) for d in range(3) for m in range(3)]
        sample = sample_positions(positions, 4, random.Random(3))
        self.assertEqual(len(sample), 4)
        self.assertEqual(sample, sorted(sample))
        self.assertTrue(set(sample) <= set(positions))
        self.assertEqual(sample_positions(positions, 20, random.Random(3)), positions)
        self.assertEqual(sample_positions(positions, 0, random.Random(3)), [])


class ProvenanceComposerTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.evaluator = ConstraintEvaluator(FakeNutritionLookup())

    def _composer(self, meals=(), store_ids=(), **settings):
        values = {"target_reuse_ratio": 1.0}
        values.update(settings)
        return ProvenanceComposer(
            self.evaluator,
            StaticMealPool(list(meals), store_ids),
            settings=make_settings(**values),
            rng=random.Random(11),
        )

    async def _compose(self, composer, days=2, **profile):
        request = make_request(days=days, **profile)
        return await composer.compose(make_plan(days), derive_diet_rule_set(request.profile), request)

    async def test_reuses_pool_meals_without_back_to_back_repeats(self):
        plan = await self._compose(self._composer([LENTIL_SOUP, OMELET], store_ids=["db-1"]))

        provenance = plan.metadata["provenance"]
        self.assertEqual(provenance["reusedRecipeCount"] + provenance["generatedRecipeCount"], provenance["totalSlots"])
        self.assertEqual(provenance["totalSlots"], 6)
        self.assertEqual((provenance["dbSlots"], provenance["historySlots"]), (1, 1))

        day_one = {meal.slot: meal for meal in plan.days[0].meals}
        day_two = {meal.slot: meal for meal in plan.days[1].meals}
        self.assertEqual(day_one["lunch"].name, "Linzensoep met tofu")
        self.assertEqual(day_one["lunch"].date, plan.days[0].date)
        self.assertNotEqual(day_one["lunch"].id, "db-1")
        self.assertEqual(day_two["lunch"].name, "Kip met broccoli")
        self.assertEqual(day_one["breakfast"].name, "Omelet met spinazie")

        sources = {(slot["date"], slot["slot"]): slot for slot in provenance["slots"]}
        self.assertEqual(sources[(plan.days[0].date, "lunch")]["source"], "db")
        self.assertEqual(sources[(plan.days[0].date, "lunch")]["sourceMealId"], "db-1")
        self.assertEqual(sources[(plan.days[0].date, "breakfast")]["source"], "history")
        self.assertEqual(sources[(plan.days[1].date, "dinner")]["source"], "ai")

    async def test_pool_meal_breaking_hard_constraints_is_skipped(self):
        plan = await self._compose(self._composer([LENTIL_SOUP], store_ids=["db-1"]), allergies=["tofu"])
        self.assertEqual(plan.metadata["provenance"]["reusedRecipeCount"], 0)
        self.assertEqual(plan.days[0].meals[1].name, "Kip met broccoli")

    async def test_only_first_eligible_pool_meal_is_tried(self):
        egg_lunch = Meal.model_validate(
            {
                "id": "hist-2",
                "name": "Ei met paprika",
                "slot": "lunch",
                "date": "2025-10-21",
                "ingredientRefs": [ref("1003", 120), ref("2004", 150)],
            }
        )
        composer = self._composer([LENTIL_SOUP, egg_lunch], store_ids=["db-1"])

        plan = await self._compose(composer, days=1, allergies=["tofu"])

        self.assertEqual(plan.days[0].meals[1].name, "Kip met broccoli")
        self.assertEqual(plan.metadata["provenance"]["reusedRecipeCount"], 0)

    async def test_zero_ratio_keeps_every_slot_ai(self):
        plan = await self._compose(self._composer([LENTIL_SOUP], target_reuse_ratio=0.0))
        self.assertEqual(plan.metadata["provenance"]["generatedRecipeCount"], 6)

    async def test_db_coverage_checked_before_ai_budget(self):
        composer = self._composer([LENTIL_SOUP], store_ids=["db-1"], min_db_recipe_ratio=0.5, max_ai_generated_slots=2)
        plan = await self._compose(composer)

        with self.assertRaises(DbCoverageTooLowError) as ctx:
            composer.check_budgets(plan)
        self.assertEqual(ctx.exception.details["dbSlots"], 1)
        self.assertEqual(ctx.exception.details["totalSlots"], 6)
        self.assertEqual(ctx.exception.details["requiredRatio"], 0.5)

    async def test_ai_budget(self):
        composer = self._composer([LENTIL_SOUP], store_ids=["db-1"], max_ai_generated_slots=4)
        plan = await self._compose(composer)

        with self.assertRaises(AIBudgetExceededError) as ctx:
            composer.check_budgets(plan)
        self.assertEqual(ctx.exception.details, {"generated": 5, "maxAllowed": 4})

    async def test_fallback_annotates_instead_of_failing(self):
        composer = self._composer(
            [LENTIL_SOUP], store_ids=["db-1"], min_db_recipe_ratio=0.5, max_ai_generated_slots=2, allow_coverage_fallback=True
        )
        plan = await self._compose(composer)

        composer.check_budgets(plan)

        codes = [entry["code"] for entry in plan.metadata["coverageFallback"]]
        self.assertEqual(codes, ["DB_COVERAGE_TOO_LOW", "AI_BUDGET_EXCEEDED"])


if __name__ == "__main__":
    unittest.main()
