from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase

from pydantic import ValidationError

from mealplanner.errors import InvalidRequestError, MealLockedError
from mealplanner.schemas import MealPlanResponse, PlanEdit
from mealplanner.services.orchestrator import MealPlanner
from mealplanner.services.plan_edit import HANDLERS, PlanEditAction, apply_plan_edit

from tests.fakes import (
    START,
    FakeEditability,
    FakeNutritionLookup,
    ScriptedGenerator,
    day_payload,
    make_request,
    make_settings,
    meal_payload,
    plan_payload,
    ref,
)


def edit(action: str, **fields) -> PlanEdit:
    return PlanEdit.model_validate({"action": action, "planId": "plan-1", "userIntentSummary": "test", **fields})


class PlanEditTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.request = make_request(days=2)
        self.plan = MealPlanResponse.model_validate({"requestId": "plan-1", **plan_payload(days=2)})

    def planner(self, outputs=()):
        self.generator = ScriptedGenerator(outputs)
        return MealPlanner(lookup=FakeNutritionLookup(), generator=self.generator, settings=make_settings())

    def test_every_action_has_a_handler(self):
        self.assertEqual(set(HANDLERS), set(PlanEditAction))

    def test_required_fields_per_action(self):
        with self.assertRaises(ValidationError):
            edit("REPLACE_MEAL", date=START)
        with self.assertRaises(ValidationError):
            edit("REGENERATE_DAY")
        with self.assertRaises(ValidationError):
            edit("UPDATE_PANTRY")

    async def test_locked_day_is_refused(self):
        planner = self.planner()
        editability = FakeEditability({START: "shopping list already sent"})

        with self.assertRaises(MealLockedError) as ctx:
            await apply_plan_edit(
                self.plan, self.request, edit("REMOVE_MEAL", date=START, mealSlot="lunch"),
                planner=planner, editability=editability,
            )

        self.assertEqual(ctx.exception.code, "LOCKED")
        self.assertEqual(ctx.exception.details["reason"], "shopping list already sent")
        self.assertEqual(len(self.plan.days[0].meals), 3)

    async def test_remove_meal_leaves_input_untouched(self):
        result = await apply_plan_edit(
            self.plan, self.request, edit("REMOVE_MEAL", date=START, mealSlot="lunch"), planner=self.planner()
        )

        self.assertEqual(result.changedType, "MEAL")
        self.assertEqual([m.slot for m in result.plan.days[0].meals], ["breakfast", "dinner"])
        self.assertEqual(len(self.plan.days[0].meals), 3)
        self.assertIn("Kip met broccoli", result.summary)

    async def test_remove_missing_meal(self):
        with self.assertRaises(InvalidRequestError):
            await apply_plan_edit(
                self.plan, self.request, edit("REMOVE_MEAL", date=START, mealSlot="snack"), planner=self.planner()
            )

    async def test_replace_meal(self):
        replacement = meal_payload(START, "lunch", name="Tofu met paprika", ingredientRefs=[ref("1004", 150), ref("2004", 150)])
        planner = self.planner([{"date": START, "meal": replacement}])

        result = await apply_plan_edit(
            self.plan, self.request, edit("REPLACE_MEAL", date=START, mealSlot="lunch"), planner=planner
        )

        self.assertEqual(result.plan.days[0].meals[1].name, "Tofu met paprika")
        self.assertEqual(self.plan.days[0].meals[1].name, "Kip met broccoli")
        self.assertIn("Kipfilet (nevoCode: 1001, quantityG: 120g)", self.generator.prompts[0])

    async def test_regenerate_day(self):
        date = self.plan.days[1].date
        planner = self.planner([day_payload(date, lunch={"name": "Eieren met spinazie", "ingredientRefs": [ref("1003", 120), ref("2002", 100)]})])

        result = await apply_plan_edit(self.plan, self.request, edit("REGENERATE_DAY", date=date), planner=planner)

        self.assertEqual(result.changedType, "DAY")
        self.assertEqual(result.plan.days[1].meals[1].name, "Eieren met spinazie")
        self.assertEqual(result.plan.days[0], self.plan.days[0])

    async def test_add_snack_extends_requested_slots(self):
        planner = self.planner([{"date": START, "meal": meal_payload(START, "snack")}])

        result = await apply_plan_edit(
            self.plan, self.request, edit("ADD_SNACK", date=START, mealSlot="snack"), planner=planner
        )

        self.assertEqual([m.slot for m in result.plan.days[0].meals], ["breakfast", "lunch", "dinner", "snack"])
        self.assertEqual(self.request.slots, ["breakfast", "lunch", "dinner"])

    async def test_update_pantry_does_not_regenerate(self):
        result = await apply_plan_edit(
            self.plan,
            self.request,
            edit("UPDATE_PANTRY", pantryUpdates=[{"nevoCode": "1001", "availableG": 500}]),
            planner=self.planner(),
        )

        self.assertEqual(result.changedType, "PANTRY")
        self.assertEqual(result.pantryUpdates[0].availableG, 500)
        self.assertEqual(result.plan, self.plan)
        self.assertEqual(self.generator.calls, [])


if __name__ == "__main__":
    unittest.main()
