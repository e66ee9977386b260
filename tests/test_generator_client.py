from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, mock

import httpx
import openai

from mealplanner.errors import ConfigInvalidError, GenerationFailedError
from mealplanner.schemas import PlanEditConstraints
from mealplanner.services.diet_rules import derive_diet_rule_set
from mealplanner.services.generator_client import (
    OpenAIStructuredGenerator,
    extract_response_text,
    parse_model_json,
)
from mealplanner.services.prompts import (
    build_meal_prompt,
    build_plan_prompt,
    build_repair_prompt,
    has_shake_smoothie_preference,
)

from tests.fakes import START, make_meal, make_request, make_settings


def _response(text: str, status: str = "completed") -> SimpleNamespace:
    return SimpleNamespace(
        status=status,
        incomplete_details=SimpleNamespace(reason="max_output_tokens"),
        output=[SimpleNamespace(content=[SimpleNamespace(text=text)])],
    )


class ParseModelJsonTest(unittest.TestCase):
    def test_strips_code_fence(self):
        self.assertEqual(parse_model_json('```json\n{"days": []}\n```'), {"days": []})
        self.assertEqual(parse_model_json('  {"a": 1} '), {"a": 1})

    def test_malformed_json_raises_value_error(self):
        with self.assertRaises(ValueError):
            parse_model_json("{'days': }")

    def test_extract_text_from_dict_and_objects(self):
        payload = {"output": [{"content": [{"text": '{"a"'}, {"text": ": 1}"}]}]}
        self.assertEqual(extract_response_text(payload), '{"a": 1}')
        self.assertEqual(extract_response_text(_response(" ok ")), "ok")
        self.assertEqual(extract_response_text({}), "")


class OpenAIStructuredGeneratorTest(IsolatedAsyncioTestCase):
    async def test_uses_responses_api_with_json_schema_format(self):
        client = mock.Mock()
        client.responses.create.return_value = _response('{"days": []}')
        generator = OpenAIStructuredGenerator(make_settings(), client=client)

        text = await generator.generate_structured(
            prompt="Maak een plan", output_schema={"type": "object"}, temperature=0.3, max_output_tokens=2048
        )

        self.assertEqual(text, '{"days": []}')
        kwargs = client.responses.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-5-mini")
        self.assertEqual(kwargs["temperature"], 0.3)
        self.assertEqual(kwargs["max_output_tokens"], 2048)
        self.assertEqual(kwargs["text"]["format"]["type"], "json_schema")
        self.assertEqual(kwargs["input"][1], {"role": "user", "content": "Maak een plan"})

    async def test_incomplete_response_is_generation_failure(self):
        client = mock.Mock()
        client.responses.create.return_value = _response("", status="incomplete")
        generator = OpenAIStructuredGenerator(make_settings(), client=client)

        with self.assertRaises(GenerationFailedError) as ctx:
            await generator.generate_structured(prompt="p", output_schema={}, temperature=0.2, max_output_tokens=1024)
        self.assertEqual(ctx.exception.details, {"reason": "max_output_tokens"})

    async def test_client_timeout_is_generation_failure(self):
        client = mock.Mock()
        client.responses.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/responses")
        )
        generator = OpenAIStructuredGenerator(make_settings(openai_request_timeout_seconds=30), client=client)

        with self.assertRaises(GenerationFailedError) as ctx:
            await generator.generate_structured(prompt="p", output_schema={}, temperature=0.2, max_output_tokens=1024)
        self.assertEqual(ctx.exception.details, {"timeout": 30})
        self.assertIsInstance(ctx.exception.__cause__, openai.APITimeoutError)

    async def test_rate_limit_is_generation_failure(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/responses")
        client = mock.Mock()
        client.responses.create.side_effect = openai.RateLimitError(
            "rate limited", response=httpx.Response(429, request=request), body=None
        )
        generator = OpenAIStructuredGenerator(make_settings(), client=client)

        with self.assertRaises(GenerationFailedError) as ctx:
            await generator.generate_structured(prompt="p", output_schema={}, temperature=0.2, max_output_tokens=1024)
        self.assertEqual(ctx.exception.details, {"error": "RateLimitError"})
        self.assertNotIn("rate limited", ctx.exception.message)

    async def test_http_fallback_connection_error_is_generation_failure(self):
        generator = OpenAIStructuredGenerator(make_settings(), client=SimpleNamespace())

        with mock.patch(
            "mealplanner.services.generator_client.httpx.post", side_effect=httpx.ConnectError("connection refused")
        ):
            with self.assertRaises(GenerationFailedError) as ctx:
                await generator.generate_structured(prompt="p", output_schema={}, temperature=0.2, max_output_tokens=1024)
        self.assertEqual(ctx.exception.details, {"error": "ConnectError"})

    async def test_missing_api_key_is_generation_failure(self):
        generator = OpenAIStructuredGenerator(make_settings())
        with self.assertRaises(GenerationFailedError):
            await generator.generate_structured(prompt="p", output_schema={}, temperature=0.2, max_output_tokens=1024)

    def test_model_must_be_allow_listed(self):
        with self.assertRaises(ConfigInvalidError):
            OpenAIStructuredGenerator(make_settings(openai_meal_plan_model="gpt-3.5-turbo"))


class PromptBuilderTest(unittest.TestCase):
    def setUp(self):
        self.request = make_request(days=2, allergies=["pinda"])
        self.rules = derive_diet_rule_set(self.request.profile)

    def test_plan_prompt_lists_period_and_hard_rules(self):
        prompt = build_plan_prompt(request=self.request, rules=self.rules, pool=None)
        self.assertIn("2026-01-05 to 2026-01-06", prompt)
        self.assertIn("pinda", prompt)
        self.assertNotIn("DAG-QUOTUM", prompt)

    def test_second_pass_hints(self):
        prompt = build_plan_prompt(
            request=self.request,
            rules=self.rules,
            pool=None,
            force_deficit_categories=["vezelrijk"],
            guardrails_block_terms=["suiker"],
        )
        self.assertIn("DAG-QUOTUM", prompt)
        self.assertIn("vezelrijk", prompt)
        self.assertIn("GEEN ingrediënten die overeenkomen met: suiker", prompt)

    def test_repair_prompt_adds_eiwitshake_fix(self):
        prompt = build_repair_prompt(
            original_prompt="origineel",
            bad_output="{}",
            issues='MEAL_PREFERENCE_MISS: Meal "Fruit smoothie" does not match required preferences: eiwitshake',
            response_schema={"type": "object"},
        )
        self.assertIn("CRITICAL FIX for MEAL_PREFERENCE_MISS", prompt)
        self.assertIn("eiwitpoeder", prompt)
        self.assertNotIn("CRITICAL FIX for SHAKES/SMOOTHIES", prompt)

    def test_meal_prompt_uses_minimal_change_and_target_calories(self):
        existing = make_meal(START, "dinner")
        prompt = build_meal_prompt(
            date=START,
            slot="dinner",
            request=self.request,
            rules=self.rules,
            pool=None,
            existing_meal=existing,
            constraints=PlanEditConstraints(targetCalories=650, avoidIngredients=["zalm"]),
        )
        self.assertIn("Target calories for this meal: 650 kcal", prompt)
        self.assertIn("MINIMAL-CHANGE OBJECTIVE", prompt)
        self.assertIn("1002", prompt)

    def test_shake_preference_detection(self):
        self.assertTrue(has_shake_smoothie_preference(make_request(mealPreferences={"breakfast": ["Eiwitshake"]})))
        self.assertFalse(has_shake_smoothie_preference(make_request(mealPreferences={"breakfast": ["omelet"]})))


if __name__ == "__main__":
    unittest.main()
