from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config import Settings, get_settings
from ..errors import EVALUATOR_ERROR, EvaluatorError, GuardrailsViolationError
from ..interfaces import DietLogicLoader, GuardrailsRulesetLoader
from ..schemas import DietLogicResult, ForceDeficitItem, GuardDecision, GuardrailsRuleset, MealPlanResponse
from .guardrails import plan_ingredients_per_day, plan_to_guard_targets

logger = logging.getLogger(__name__)

DIET_LOGIC_VIOLATION = "DIET_LOGIC_VIOLATION"
BLOCKED_MESSAGE = "Het gegenereerde meal plan voldoet niet aan de dieetregels"
EVALUATOR_ERROR_MESSAGE = "Fout bij evalueren dieetregels"


@dataclass
class GuardrailsOutcome:
    ok: bool
    outcome: str
    reason_codes: List[str]
    message: str = ""
    content_hash: str = ""
    version: str = ""
    force_deficits: List[ForceDeficitItem] = field(default_factory=list)
    blocked_by_rules: bool = False
    blocked_by_diet_logic: bool = False
    failed_day_index: Optional[int] = None
    failed_date: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def evaluator_error(self) -> bool:
        return EVALUATOR_ERROR in self.reason_codes and not self.ok

    def deficit_retry_allowed(self) -> bool:
        """Only a quota-only block with named deficits earns a targeted regeneration."""
        return (
            not self.ok
            and not self.evaluator_error
            and not self.blocked_by_rules
            and self.blocked_by_diet_logic
            and bool(self.force_deficits)
        )

    def to_error(self) -> GuardrailsViolationError:
        if self.evaluator_error:
            return EvaluatorError(self.message or EVALUATOR_ERROR_MESSAGE, content_hash=self.content_hash or None)
        extra: Dict[str, Any] = {"outcome": "blocked"}
        if self.failed_day_index is not None:
            extra["dayIndex"] = self.failed_day_index
            extra["date"] = self.failed_date
        return GuardrailsViolationError(
            self.message or BLOCKED_MESSAGE,
            reason_codes=self.reason_codes,
            content_hash=self.content_hash or None,
            version=self.version or None,
            force_deficits=self.force_deficits,
            extra=extra,
        )

    def metadata(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "reasonCodes": list(self.reason_codes),
            "contentHash": self.content_hash,
            "version": self.version,
            "warnings": list(self.warnings),
        }


class GuardrailsEnforcer:
    """Runs the hard allow/block ruleset and the per-day quota rules over one plan.

    ``evaluate`` never raises: loader or evaluator failures come back as a
    blocked outcome carrying the EVALUATOR_ERROR reason.
    """

    def __init__(
        self,
        ruleset_loader: GuardrailsRulesetLoader,
        diet_logic_loader: Optional[DietLogicLoader] = None,
        settings: Settings | None = None,
    ) -> None:
        self.ruleset_loader = ruleset_loader
        self.diet_logic_loader = diet_logic_loader
        self.settings = settings or get_settings()

    async def load_ruleset(self, diet_key: str, locale: Optional[str] = None) -> GuardrailsRuleset:
        try:
            return await self.ruleset_loader.load(
                diet_key, self.settings.guardrails_mode, locale or self.settings.guardrails_locale
            )
        except Exception as exc:
            logger.error("Guardrails ruleset load failed diet=%s: %s", diet_key, exc)
            raise EvaluatorError(EVALUATOR_ERROR_MESSAGE) from exc

    async def evaluate(
        self,
        plan: MealPlanResponse,
        diet_key: str,
        locale: Optional[str] = None,
        *,
        include_diet_logic: bool = True,
    ) -> GuardrailsOutcome:
        locale = locale or self.settings.guardrails_locale
        try:
            return await self._evaluate(plan, diet_key, locale, include_diet_logic)
        except Exception as exc:
            logger.error("Guardrails evaluation error diet=%s: %s", diet_key, exc)
            return GuardrailsOutcome(
                ok=False,
                outcome="blocked",
                reason_codes=[EVALUATOR_ERROR],
                message=EVALUATOR_ERROR_MESSAGE,
            )

    async def enforce(self, plan: MealPlanResponse, diet_key: str, locale: Optional[str] = None) -> GuardrailsOutcome:
        result = await self.evaluate(plan, diet_key, locale)
        if not result.ok:
            raise result.to_error()
        return result

    async def shadow_evaluate(
        self, plan: MealPlanResponse, diet_key: str, locale: Optional[str] = None
    ) -> GuardrailsOutcome:
        """Observe-only evaluation; logs the outcome and never blocks."""
        result = await self.evaluate(plan, diet_key, locale)
        logger.info(
            "Shadow guardrails diet=%s outcome=%s reasons=%s hash=%s",
            diet_key,
            result.outcome,
            ",".join(result.reason_codes[:5]),
            result.content_hash,
        )
        return result

    async def _evaluate(
        self, plan: MealPlanResponse, diet_key: str, locale: str, include_diet_logic: bool = True
    ) -> GuardrailsOutcome:
        ruleset = await self.ruleset_loader.load(diet_key, self.settings.guardrails_mode, locale)
        context = {
            "dietKey": diet_key,
            "mode": self.settings.guardrails_mode,
            "locale": locale,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        decision: GuardDecision = self.ruleset_loader.evaluate(ruleset, context, plan_to_guard_targets(plan, locale))

        day_failure: Optional[tuple[int, DietLogicResult]] = None
        deficits: List[ForceDeficitItem] = []
        warnings: List[str] = []
        if include_diet_logic and self.diet_logic_loader is not None:
            constraints = await self.diet_logic_loader.load(diet_key)
            if constraints:
                day_failure, deficits, warnings = self._evaluate_days(plan, constraints)

        blocked_by_rules = not decision.ok
        blocked_by_diet_logic = day_failure is not None
        result = GuardrailsOutcome(
            ok=True,
            outcome=decision.outcome,
            reason_codes=list(decision.reasonCodes),
            content_hash=ruleset.contentHash,
            version=str(ruleset.version),
            warnings=warnings,
        )
        if not (blocked_by_rules or blocked_by_diet_logic):
            return result

        result.ok = False
        result.outcome = "blocked"
        result.blocked_by_rules = blocked_by_rules
        result.blocked_by_diet_logic = blocked_by_diet_logic
        if not blocked_by_rules:
            result.reason_codes = [*decision.reasonCodes, DIET_LOGIC_VIOLATION]
        if day_failure is not None:
            day_index, failed = day_failure
            date = plan.days[day_index].date
            result.failed_day_index = day_index
            result.failed_date = date
            result.force_deficits = deficits
            result.message = f"{failed.summary} ({date}, dag {day_index + 1})"
        else:
            result.message = BLOCKED_MESSAGE
        logger.info(
            "Guardrails blocked plan diet=%s outcome=%s reasons=%s hash=%s day=%s",
            diet_key,
            decision.outcome,
            ",".join(result.reason_codes[:5]),
            ruleset.contentHash,
            result.failed_date,
        )
        return result

    def _evaluate_days(self, plan: MealPlanResponse, constraints):
        first_failure: Optional[tuple[int, DietLogicResult]] = None
        deficits: List[ForceDeficitItem] = []
        warnings: List[str] = []
        for day_index, ingredients in enumerate(plan_ingredients_per_day(plan)):
            day_result = self.diet_logic_loader.evaluate(constraints, ingredients)
            if day_result.ok:
                warnings.extend(day_result.warnings)
                continue
            logger.info(
                "Diet logic failed day=%s deficits=%s",
                plan.days[day_index].date,
                [item.categoryCode for item in day_result.forceDeficits],
            )
            if first_failure is None:
                first_failure = (day_index, day_result)
            known = {item.categoryCode for item in deficits}
            deficits.extend(item for item in day_result.forceDeficits if item.categoryCode not in known)
            if self.settings.guardrails_first_failing_day_wins:
                return first_failure, deficits, list(day_result.warnings)
        if first_failure is not None:
            return first_failure, deficits, list(first_failure[1].warnings)
        return None, [], warnings
