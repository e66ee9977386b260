from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict

import httpx
from openai import APITimeoutError, OpenAI, OpenAIError

from ..config import Settings, get_settings
from ..errors import ConfigInvalidError, GenerationFailedError

logger = logging.getLogger(__name__)

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?(.*?)```", re.IGNORECASE | re.DOTALL)

SYSTEM_PROMPT = (
    "You are a meal planning engine. Respond with exactly one JSON object that conforms to the "
    "provided schema. Never add commentary."
)


def parse_model_json(text: str) -> Any:
    """Strip an optional code fence and decode; raises ``ValueError`` on malformed JSON."""
    stripped = (text or "").strip()
    match = CODE_FENCE_PATTERN.search(stripped)
    if match:
        stripped = match.group(1).strip()
    return json.loads(stripped)


class OpenAIStructuredGenerator:
    """Structured-output text generation over the OpenAI Responses API.

    The blocking client call runs in a worker thread; transport and model
    failures surface as ``GenerationFailedError`` without prompt contents.
    """

    def __init__(self, settings: Settings | None = None, client: Any = None) -> None:
        self.settings = settings or get_settings()
        model = self.settings.openai_meal_plan_model
        if model not in self.settings.openai_allowed_models:
            raise ConfigInvalidError(f"Model {model} is not in the allowed model list")
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise GenerationFailedError("OpenAI not configured")
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.openai_request_timeout_seconds,
            )
        return self._client

    async def generate_structured(
        self,
        *,
        prompt: str,
        output_schema: Dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        return await asyncio.to_thread(
            self._call_responses,
            prompt=prompt,
            output_schema=output_schema,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

    def _payload(
        self,
        *,
        prompt: str,
        output_schema: Dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> Dict[str, Any]:
        return {
            "model": self.settings.openai_meal_plan_model,
            "input": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "meal_plan_output",
                    "schema": output_schema,
                    "strict": False,
                }
            },
        }

    def _call_responses(self, **kwargs: Any) -> str:
        payload = self._payload(**kwargs)
        client = self._get_client()
        responses_client = getattr(client, "responses", None)
        if responses_client and hasattr(responses_client, "create"):
            timeout = self.settings.openai_request_timeout_seconds
            try:
                response = responses_client.create(**payload)
            except APITimeoutError as exc:
                logger.error("OpenAI Responses API timed out after %ss", timeout)
                raise GenerationFailedError(
                    "Timed out while waiting for the meal plan model", {"timeout": timeout}
                ) from exc
            except OpenAIError as exc:
                logger.error("OpenAI Responses API call failed: %s", type(exc).__name__)
                raise GenerationFailedError(
                    "Meal plan model call failed", {"error": type(exc).__name__}
                ) from exc
            if getattr(response, "status", "completed") != "completed":
                reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
                logger.error("OpenAI Responses API returned incomplete status: %s", reason)
                raise GenerationFailedError(
                    "Meal plan model did not complete successfully", {"reason": str(reason)}
                )
            text = extract_response_text(response)
            if not text:
                raise GenerationFailedError("Meal plan model returned empty output")
            return text

        logger.warning("OpenAI client missing Responses API; falling back to HTTP call")
        return self._call_http(payload)

    def _call_http(self, payload: Dict[str, Any]) -> str:
        timeout = self.settings.openai_request_timeout_seconds
        try:
            resp = httpx.post(
                "https://api.openai.com/v1/responses",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.settings.openai_api_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            logger.error("HTTP timeout calling OpenAI Responses API after %ss", timeout)
            raise GenerationFailedError(
                "Timed out while waiting for the meal plan model", {"timeout": timeout}
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("HTTP error calling OpenAI Responses API: %s", exc)
            raise GenerationFailedError("Unable to reach OpenAI", {"error": type(exc).__name__}) from exc

        if resp.status_code >= 400:
            logger.error("OpenAI Responses REST API returned %s", resp.status_code)
            raise GenerationFailedError("Meal plan model call failed", {"status": resp.status_code})
        text = extract_response_text(resp.json())
        if not text:
            raise GenerationFailedError("Meal plan model returned empty output")
        return text


def extract_response_text(response: Any) -> str:
    chunks: list[str] = []
    output = getattr(response, "output", None)
    if output is None and isinstance(response, dict):
        output = response.get("output")
    for block in output or []:
        block_content = getattr(block, "content", None)
        if block_content is None and isinstance(block, dict):
            block_content = block.get("content")
        for content in block_content or []:
            part_text = getattr(content, "text", None)
            if part_text is None and isinstance(content, dict):
                part_text = content.get("text")
            if part_text:
                chunks.append(part_text)
    return "".join(chunks).strip()
