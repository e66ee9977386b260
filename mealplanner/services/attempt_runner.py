from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import Settings, get_settings
from ..errors import GenerationFailedError
from ..interfaces import GenerativeTextService
from ..schemas import MealPlanDay, MealPlanRequest, MealPlanResponse, MealResponse, QuantityChange, ValidationIssue
from .constraints import only_macro_issues
from .generator_client import parse_model_json
from .prompts import build_repair_prompt

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_STEPS = 16

Validator = Callable[[T], Awaitable[List[ValidationIssue]]]
Adjuster = Callable[[T, List[ValidationIssue]], Awaitable[Tuple[T, List[ValidationIssue], List[QuantityChange]]]]


class AttemptState(str, Enum):
    BUILD_PROMPT = "BUILD_PROMPT"
    CALL_GENERATOR = "CALL_GENERATOR"
    PARSE = "PARSE"
    SCHEMA_VALIDATE = "SCHEMA_VALIDATE"
    HARD_CONSTRAINT_VALIDATE = "HARD_CONSTRAINT_VALIDATE"
    ADJUST = "ADJUST"
    REPAIR = "REPAIR"
    ACCEPT = "ACCEPT"
    FAIL = "FAIL"


@dataclass
class Attempt(Generic[T]):
    """One generation request: prompt, output contract and the checks it must pass."""

    label: str
    prompt: str
    output_schema: Dict[str, Any]
    build: Callable[[Any], T]
    validate: Validator
    temperature: float
    adjust: Optional[Adjuster] = None
    allow_repair: bool = True
    has_shake_smoothie_preference: bool = False


@dataclass
class AttemptOutcome(Generic[T]):
    value: T
    calls: int
    repaired: bool
    retry_reason: Optional[str] = None
    adjustments: List[QuantityChange] = field(default_factory=list)
    states: List[AttemptState] = field(default_factory=list)


@dataclass
class _Context:
    prompt: str
    temperature: float
    repairs_left: int
    raw: str = ""
    payload: Any = None
    value: Any = None
    issues: List[ValidationIssue] = field(default_factory=list)
    issue_lines: List[str] = field(default_factory=list)
    bad_output: str = ""
    calls: int = 0
    repaired: bool = False
    retry_reason: Optional[str] = None
    adjustments: List[QuantityChange] = field(default_factory=list)
    states: List[AttemptState] = field(default_factory=list)


def issue_lines(issues: Sequence[ValidationIssue]) -> List[str]:
    return [f"{issue.code}: {issue.message} (path: {issue.path})" for issue in issues]


class AttemptRunner:
    """Drives one generation through parse, schema and hard-constraint checks.

    At most one repair request is made per ``run``; the step ceiling bounds the
    loop even if a transition is ever miswired.
    """

    def __init__(self, generator: GenerativeTextService, settings: Settings | None = None) -> None:
        self.generator = generator
        self.settings = settings or get_settings()
        self._handlers = {
            AttemptState.BUILD_PROMPT: self._build_prompt,
            AttemptState.CALL_GENERATOR: self._call_generator,
            AttemptState.PARSE: self._parse,
            AttemptState.SCHEMA_VALIDATE: self._schema_validate,
            AttemptState.HARD_CONSTRAINT_VALIDATE: self._hard_constraint_validate,
            AttemptState.ADJUST: self._adjust,
            AttemptState.REPAIR: self._repair,
        }

    async def run(self, attempt: Attempt[T]) -> AttemptOutcome[T]:
        ctx = _Context(
            prompt=attempt.prompt,
            temperature=attempt.temperature,
            repairs_left=1 if attempt.allow_repair else 0,
        )
        state = AttemptState.BUILD_PROMPT
        for _ in range(MAX_STEPS):
            ctx.states.append(state)
            if state is AttemptState.ACCEPT:
                logger.info("%s generation accepted calls=%s repaired=%s", attempt.label, ctx.calls, ctx.repaired)
                return AttemptOutcome(
                    value=ctx.value,
                    calls=ctx.calls,
                    repaired=ctx.repaired,
                    retry_reason=ctx.retry_reason,
                    adjustments=ctx.adjustments,
                    states=ctx.states,
                )
            if state is AttemptState.FAIL:
                logger.warning(
                    "%s generation failed calls=%s repaired=%s issues=%s",
                    attempt.label,
                    ctx.calls,
                    ctx.repaired,
                    len(ctx.issue_lines),
                )
                raise GenerationFailedError(
                    f"Generation of {attempt.label} failed after repair attempt"
                    if ctx.repaired
                    else f"Generation of {attempt.label} failed",
                    {"attempts": ctx.calls, "retryReason": ctx.retry_reason},
                    issues=ctx.issues or ctx.issue_lines,
                )
            state = await self._handlers[state](attempt, ctx)
        raise GenerationFailedError(
            f"Generation of {attempt.label} exceeded its step limit", {"attempts": ctx.calls}
        )

    async def _build_prompt(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        return AttemptState.CALL_GENERATOR

    async def _call_generator(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        ctx.calls += 1
        logger.info(
            "%s generation call=%s temperature=%.2f repair=%s", attempt.label, ctx.calls, ctx.temperature, ctx.repaired
        )
        logger.debug("%s prompt: %s", attempt.label, ctx.prompt)
        ctx.raw = await self.generator.generate_structured(
            prompt=ctx.prompt,
            output_schema=attempt.output_schema,
            temperature=ctx.temperature,
            max_output_tokens=self.settings.meal_plan_max_output_tokens,
        )
        logger.debug("%s raw output: %s", attempt.label, ctx.raw)
        return AttemptState.PARSE

    async def _parse(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        try:
            ctx.payload = parse_model_json(ctx.raw)
        except ValueError as exc:
            return self._route_failure(ctx, "AI_PARSE", [f"JSON parse error: {exc}"], ctx.raw)
        return AttemptState.SCHEMA_VALIDATE

    async def _schema_validate(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        try:
            ctx.value = attempt.build(ctx.payload)
        except (ValidationError, ValueError, TypeError) as exc:
            return self._route_failure(ctx, "AI_SCHEMA", [f"Schema validation error: {exc}"], ctx.raw)
        return AttemptState.HARD_CONSTRAINT_VALIDATE

    async def _hard_constraint_validate(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        issues = await attempt.validate(ctx.value)
        if not issues:
            return AttemptState.ACCEPT
        ctx.issues = list(issues)
        if attempt.adjust is not None and only_macro_issues(issues):
            return AttemptState.ADJUST
        return self._route_failure(ctx, "CONSTRAINTS", issue_lines(issues), ctx.raw, issues)

    async def _adjust(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        value, remaining, changes = await attempt.adjust(ctx.value, ctx.issues)
        ctx.value = value
        ctx.adjustments.extend(changes)
        if not remaining:
            return AttemptState.ACCEPT
        bad_output = json.dumps(value.model_dump(exclude_none=True), ensure_ascii=False) if changes else ctx.raw
        return self._route_failure(ctx, "CONSTRAINTS", issue_lines(remaining), bad_output, remaining)

    async def _repair(self, attempt: Attempt[T], ctx: _Context) -> AttemptState:
        ctx.repairs_left -= 1
        ctx.repaired = True
        ctx.prompt = build_repair_prompt(
            original_prompt=attempt.prompt,
            bad_output=ctx.bad_output,
            issues="\n".join(ctx.issue_lines),
            response_schema=attempt.output_schema,
            has_shake_smoothie_preference=attempt.has_shake_smoothie_preference,
        )
        ctx.temperature = self.settings.meal_plan_repair_temperature
        logger.info("%s repair requested reason=%s issues=%s", attempt.label, ctx.retry_reason, len(ctx.issue_lines))
        return AttemptState.CALL_GENERATOR

    @staticmethod
    def _route_failure(
        ctx: _Context,
        reason: str,
        lines: List[str],
        bad_output: str,
        issues: Optional[Sequence[ValidationIssue]] = None,
    ) -> AttemptState:
        ctx.issue_lines = lines
        ctx.issues = list(issues or [])
        ctx.bad_output = bad_output
        if ctx.retry_reason is None:
            ctx.retry_reason = reason
        return AttemptState.REPAIR if ctx.repairs_left > 0 else AttemptState.FAIL


def plan_from_payload(payload: Any, request: MealPlanRequest, request_id: str | None = None) -> MealPlanResponse:
    """Normalize generator output into a plan covering exactly the requested dates."""
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object with a days array")
    data = dict(payload)
    data["requestId"] = data.get("requestId") or request_id or str(uuid.uuid4())
    data["metadata"] = {}
    plan = MealPlanResponse.model_validate(data)
    expected = request.dateRange.dates()
    actual = [day.date for day in plan.days]
    if sorted(actual) != expected:
        raise ValueError(f"plan days {actual} do not match requested range {expected[0]}..{expected[-1]}")
    plan.days.sort(key=lambda day: day.date)
    _check_slots(plan.days, request.slots)
    return plan


def day_from_payload(payload: Any, date: str, slots: Sequence[str]) -> MealPlanDay:
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object with date and meals")
    day = MealPlanDay.model_validate({"date": payload.get("date"), "meals": payload.get("meals")})
    if day.date != date:
        raise ValueError(f"day date {day.date} does not match requested date {date}")
    _check_slots([day], slots)
    return day


def meal_from_payload(payload: Any, date: str, slot: str) -> MealResponse:
    response = MealResponse.model_validate(payload)
    if response.date != date or response.meal.date != date:
        raise ValueError(f"meal date does not match requested date {date}")
    if response.meal.slot != slot:
        raise ValueError(f"meal slot {response.meal.slot} does not match requested slot {slot}")
    return response


def _check_slots(days: Sequence[MealPlanDay], slots: Sequence[str]) -> None:
    allowed = set(slots)
    for day in days:
        for meal in day.meals:
            if meal.slot not in allowed:
                raise ValueError(f"meal {meal.id} on {day.date} uses unrequested slot {meal.slot}")
