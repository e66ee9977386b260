from __future__ import annotations

import json
import logging
import unittest
from unittest import mock

import structlog
from fastapi import status
from pydantic import ValidationError

from mealplanner.errors import (
    AIBudgetExceededError,
    ConfigInvalidError,
    EvaluatorError,
    GenerationFailedError,
    GuardrailsViolationError,
    InsufficientIngredientsError,
    MealLockedError,
    present_error,
)
from mealplanner.observability import bind_request_context, build_pre_chain
from mealplanner.schemas import ValidationIssue
from mealplanner.services.candidate_pool import CandidatePoolCache
from mealplanner.services.generator_client import OpenAIStructuredGenerator
from mealplanner.startup import create_planner, validate_settings

from tests.fakes import FakeNutritionLookup, ScriptedGenerator, make_settings


class SettingsTest(unittest.TestCase):
    def test_defaults(self):
        settings = make_settings()
        self.assertEqual(settings.openai_meal_plan_model, "gpt-5-mini")
        self.assertEqual(settings.candidate_pool_ttl_seconds, 600)
        self.assertEqual((settings.adjuster_min_scale, settings.adjuster_max_scale), (0.7, 1.3))
        self.assertTrue(settings.enforce_guardrails)
        self.assertFalse(settings.use_template_generator)

    def test_allowed_models_from_csv(self):
        settings = make_settings(openai_allowed_models="gpt-4o, gpt-5-mini,,")
        self.assertEqual(settings.openai_allowed_models, ["gpt-4o", "gpt-5-mini"])

    def test_scale_bounds_must_be_ordered(self):
        with self.assertRaises(ValidationError):
            make_settings(adjuster_min_scale=1.2, adjuster_max_scale=0.9)


class MealPlanErrorTest(unittest.TestCase):
    def test_http_exception_carries_code_and_details(self):
        error = AIBudgetExceededError("Te veel AI-maaltijden", {"generated": 5, "maxAllowed": 4})

        http_exc = error.to_http_exception()

        self.assertEqual(http_exc.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(http_exc.detail["code"], "AI_BUDGET_EXCEEDED")
        self.assertEqual(http_exc.detail["details"], {"generated": 5, "maxAllowed": 4})

    def test_guardrails_error_details(self):
        error = GuardrailsViolationError("geblokkeerd", reason_codes=["FORBIDDEN_INGREDIENT"], content_hash="abc", version="2")
        self.assertEqual(error.to_dict()["details"], {"reasonCodes": ["FORBIDDEN_INGREDIENT"], "contentHash": "abc", "version": "2"})

    def test_evaluator_error_is_a_guardrails_block(self):
        error = EvaluatorError()
        self.assertIsInstance(error, GuardrailsViolationError)
        self.assertEqual(error.code, "EVALUATOR_ERROR")
        self.assertEqual(error.reason_codes, ["EVALUATOR_ERROR"])

    def test_insufficient_ingredients_lists_pools(self):
        error = InsufficientIngredientsError("leeg", ["protein", "veg"])
        self.assertEqual(error.details, {"emptyPools": ["protein", "veg"]})


class PresentErrorTest(unittest.TestCase):
    def test_unknown_exception(self):
        presented = present_error(RuntimeError("boom"))
        self.assertEqual(presented["code"], "UNKNOWN")
        self.assertEqual(presented["diagnostics"], {})
        self.assertNotIn("boom", presented["userMessageNl"])

    def test_guardrails_message_is_appended(self):
        error = GuardrailsViolationError("Dag-quotum niet gehaald op dag 2.", reason_codes=["DIET_LOGIC_VIOLATION"])
        presented = present_error(error)
        self.assertTrue(presented["userMessageNl"].endswith("Dag-quotum niet gehaald op dag 2."))
        self.assertEqual(presented["diagnostics"]["reasonCodes"], ["DIET_LOGIC_VIOLATION"])

    def test_diagnostics_are_allow_listed(self):
        error = MealLockedError("vast", {"planId": "p1", "reason": "sent", "prompt": "secret prompt"})

        presented = present_error(error)

        self.assertEqual(presented["diagnostics"], {"planId": "p1", "reason": "sent"})
        self.assertEqual(presented["userMessageNl"], "Dit onderdeel van je weekmenu is al vastgezet.")
        self.assertLessEqual(len(presented["userActionHints"]), 3)

    def test_issue_models_are_serialized(self):
        issue = ValidationIssue(path="days[0]", code="ALLERGEN_PRESENT", message="pinda")
        error = GenerationFailedError("mislukt", {"attempts": 2}, issues=[issue])

        presented = present_error(error)

        self.assertEqual(presented["diagnostics"]["attempts"], 2)
        self.assertEqual(presented["diagnostics"]["issues"][0]["code"], "ALLERGEN_PRESENT")



class StartupTest(unittest.TestCase):
    def test_prod_requires_openai_key_in_ai_mode(self):
        with self.assertRaises(ConfigInvalidError) as ctx:
            validate_settings(make_settings(environment="prod", redis_url="redis://cache:6379/0"))
        self.assertIn("OPENAI_API_KEY", ctx.exception.message)

    def test_template_mode_does_not_need_openai(self):
        validate_settings(
            make_settings(environment="prod", redis_url="redis://cache:6379/0", use_template_generator=True)
        )

    def test_dev_only_warns(self):
        with self.assertLogs("mealplanner.startup", level="WARNING"):
            validate_settings(make_settings())

    def test_create_planner_wires_collaborators(self):
        generator = ScriptedGenerator([])
        with mock.patch("mealplanner.startup.configure_logging") as configure, mock.patch(
            "mealplanner.startup.init_sentry"
        ) as sentry:
            planner = create_planner(FakeNutritionLookup(), settings=make_settings(), generator=generator)

        configure.assert_called_once()
        sentry.assert_called_once()
        self.assertIs(planner.generator, generator)
        self.assertIsInstance(planner.pool_builder.cache, CandidatePoolCache)

    def test_create_planner_builds_openai_generator_from_key(self):
        with mock.patch("mealplanner.startup.configure_logging"), mock.patch("mealplanner.startup.init_sentry"):
            planner = create_planner(FakeNutritionLookup(), settings=make_settings(openai_api_key="sk-test"))
        self.assertIsInstance(planner.generator, OpenAIStructuredGenerator)


class LogContextTest(unittest.TestCase):
    def setUp(self):
        self.addCleanup(structlog.contextvars.clear_contextvars)
        self.formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(), foreign_pre_chain=build_pre_chain("planner-test")
        )

    def _format(self, message, *args):
        record = logging.LogRecord("mealplanner.services.orchestrator", logging.INFO, __file__, 1, message, args, None)
        return json.loads(self.formatter.format(record))

    def test_stdlib_records_carry_bound_request_context(self):
        bind_request_context(request_id="req-42", diet_key="balanced")

        line = self._format("Meal plan ready meals=%s", 6)

        self.assertEqual(line["event"], "Meal plan ready meals=6")
        self.assertEqual((line["request_id"], line["diet_key"]), ("req-42", "balanced"))
        self.assertEqual(line["service"], "planner-test")
        self.assertEqual(line["logger"], "mealplanner.services.orchestrator")
        self.assertEqual(line["level"], "info")

    def test_binding_replaces_previous_call_context(self):
        bind_request_context(request_id="req-1", diet_key="balanced", slot="lunch")
        bind_request_context(request_id="req-2", diet_key="keto")

        line = self._format("next call")

        self.assertEqual(line["request_id"], "req-2")
        self.assertNotIn("slot", line)


if __name__ == "__main__":
    unittest.main()
