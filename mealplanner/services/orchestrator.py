"""Plan, day and meal generation pipelines.

``MealPlanner.generate_plan`` runs, in order: rule derivation, candidate pool
build and sanitising, generation (free-form or template), guardrails, sanity,
canonical-id enrichment, provenance backfill, culinary coherence, provenance
budgets and metadata. Every retry is bounded: one repair inside the attempt
runner, one quota-deficit regeneration and one sanity regeneration.
"""
from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..config import Settings, get_settings
from ..errors import (
    ConfigInvalidError,
    GenerationFailedError,
    InvalidRequestError,
    SanityFailedError,
)
from ..interfaces import (
    CanonicalIdLookup,
    DietLogicLoader,
    GenerativeTextService,
    GuardrailsRulesetLoader,
    NutritionLookup,
    PersistedMealPool,
    SanityValidator,
)
from ..observability import bind_request_context
from ..schemas import (
    CandidatePool,
    CulinaryRule,
    DietRuleSet,
    MacroEstimate,
    Meal,
    MealPlanDay,
    MealPlanRequest,
    MealPlanResponse,
    MealResponse,
    PlanEditConstraints,
    QuantityChange,
    SanityResult,
    TemplateGeneratorConfig,
    ValidationIssue,
)
from .adjuster import QuantityAdjuster
from .attempt_runner import (
    Attempt,
    AttemptOutcome,
    AttemptRunner,
    day_from_payload,
    meal_from_payload,
    plan_from_payload,
)
from .candidate_pool import CandidatePoolBuilder, PoolCache, build_exclude_terms, dedupe_terms
from .constraints import ConstraintEvaluator
from .culinary import check_culinary_coherence
from .diet_rules import derive_diet_rule_set
from .guardrails import hard_block_terms
from .guardrails_enforcer import GuardrailsEnforcer, GuardrailsOutcome
from .nutrition import calc_meal_macros, verify_codes
from .prompts import (
    DAY_SCHEMA,
    MEAL_RESPONSE_SCHEMA,
    PLAN_SCHEMA,
    build_day_prompt,
    build_meal_prompt,
    build_plan_prompt,
    has_shake_smoothie_preference,
)
from .provenance import ProvenanceComposer
from .sanitizer import sanitize_candidate_pool
from .sanity import DefaultSanityValidator
from .template_generator import (
    SEED_GUARDRAILS_RETRY,
    SEED_SANITY_RETRY,
    TemplateGenerator,
    filter_pools,
    merge_pools,
)

logger = logging.getLogger(__name__)

MODE_AI = "ai"
MODE_TEMPLATE = "template"

RETRY_GUARDRAILS = "GUARDRAILS_VIOLATION"
RETRY_SANITY = "SANITY"

CANONICAL_BATCH_SIZE = 100

SANITY_FAILED_MESSAGE = "Het gegenereerde meal plan is niet plausibel genoeg om te tonen."


@dataclass
class DayGenerationResult:
    day: MealPlanDay
    adjustments: List[QuantityChange] = field(default_factory=list)
    attempts: int = 0
    retry_reason: Optional[str] = None


@dataclass
class _Generated:
    plan: MealPlanResponse
    mode: str
    attempts: int
    retry_reason: Optional[str]
    sanity: SanityResult
    guardrails: Optional[GuardrailsOutcome] = None
    template_info: Optional[Dict[str, Any]] = None


def coerce_request(raw: MealPlanRequest | Mapping[str, Any]) -> MealPlanRequest:
    if isinstance(raw, MealPlanRequest):
        return raw
    try:
        return MealPlanRequest.model_validate(raw)
    except ValidationError as exc:
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        raise InvalidRequestError("Ongeldige aanvraag voor een meal plan", {"errors": errors}) from exc


class MealPlanner:
    """Entry point for plan, day and meal generation.

    Collaborators are injected; only the nutrition lookup is mandatory. Without
    a generator the planner can still run the template path.
    """

    def __init__(
        self,
        *,
        lookup: NutritionLookup,
        generator: Optional[GenerativeTextService] = None,
        guardrails_loader: Optional[GuardrailsRulesetLoader] = None,
        diet_logic_loader: Optional[DietLogicLoader] = None,
        sanity_validator: Optional[SanityValidator] = None,
        meal_pool: Optional[PersistedMealPool] = None,
        canonical_lookup: Optional[CanonicalIdLookup] = None,
        culinary_rules: Sequence[CulinaryRule] = (),
        template_config: Optional[TemplateGeneratorConfig] = None,
        pool_cache: Optional[PoolCache] = None,
        settings: Settings | None = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.lookup = lookup
        self.generator = generator
        self.sanity_validator = sanity_validator or DefaultSanityValidator()
        self.canonical_lookup = canonical_lookup
        self.culinary_rules = list(culinary_rules)
        self.template_config = template_config
        self.pool_builder = CandidatePoolBuilder(lookup, cache=pool_cache, settings=self.settings)
        self.evaluator = ConstraintEvaluator(lookup)
        self.adjuster = QuantityAdjuster(lookup, self.evaluator, self.settings)
        self.runner = AttemptRunner(generator, self.settings) if generator is not None else None
        self.enforcer = (
            GuardrailsEnforcer(guardrails_loader, diet_logic_loader, self.settings)
            if guardrails_loader is not None
            else None
        )
        self.provenance = ProvenanceComposer(self.evaluator, meal_pool, self.settings, rng)
        self.template_generator = TemplateGenerator(lookup)

    # ------------------------------------------------------------------
    # Full plan
    # ------------------------------------------------------------------
    async def generate_plan(self, raw: MealPlanRequest | Mapping[str, Any]) -> MealPlanResponse:
        request = coerce_request(raw)
        request_id = str(uuid.uuid4())
        diet_key = request.profile.dietKey
        bind_request_context(request_id=request_id, diet_key=diet_key)
        use_template = self.settings.use_template_generator
        self._check_configured(use_template)

        rules = derive_diet_rule_set(request.profile)
        exclude_terms = build_exclude_terms(request)
        logger.info(
            "Generating meal plan days=%s slots=%s mode=%s",
            len(request.dateRange.dates()),
            ",".join(request.slots),
            MODE_TEMPLATE if use_template else MODE_AI,
        )

        if use_template:
            generated, pool_metrics = await self._generate_template_plan(request, rules, exclude_terms)
        else:
            pool, pool_metrics = await self._sanitized_pool(diet_key, exclude_terms)
            generated = await self._generate_ai_plan(request, rules, pool, request_id)

        plan = generated.plan
        await self._enrich_canonical_ids(plan.days)
        plan = await self.provenance.compose(plan, rules, request)
        if generated.mode == MODE_AI:
            check_culinary_coherence(plan, self.culinary_rules)
        self.provenance.check_budgets(plan)

        self._attach_metadata(plan, request, generated, pool_metrics)
        logger.info(
            "Meal plan ready meals=%s attempts=%s retry_reason=%s",
            plan.total_meals(),
            generated.attempts,
            generated.retry_reason,
        )
        return plan

    def _check_configured(self, use_template: bool) -> None:
        if use_template and self.template_config is None:
            raise ConfigInvalidError("Template generator enabled without a template configuration")
        if not use_template and self.runner is None:
            raise ConfigInvalidError("No generative text service configured")

    async def _sanitized_pool(
        self, diet_key: str, exclude_terms: Sequence[str], extra_terms: Sequence[str] = ()
    ) -> Tuple[CandidatePool, Dict[str, Any]]:
        raw_pool = await self.pool_builder.get_pool(diet_key, exclude_terms)
        return sanitize_candidate_pool(raw_pool, exclude_terms, extra_terms)

    def _plan_attempt(
        self,
        prompt: str,
        request: MealPlanRequest,
        rules: DietRuleSet,
        request_id: str,
        *,
        temperature: float,
        allow_repair: bool = True,
        label: str = "plan",
    ) -> Attempt[MealPlanResponse]:
        async def adjust(plan: MealPlanResponse, issues: List[ValidationIssue]):
            return await self._adjust_plan(plan, rules, request)

        return Attempt(
            label=label,
            prompt=prompt,
            output_schema=PLAN_SCHEMA,
            build=lambda payload: plan_from_payload(payload, request, request_id),
            validate=lambda plan: self.evaluator.validate_plan(plan, rules, request),
            temperature=temperature,
            adjust=adjust,
            allow_repair=allow_repair,
            has_shake_smoothie_preference=has_shake_smoothie_preference(request),
        )

    async def _adjust_plan(
        self, plan: MealPlanResponse, rules: DietRuleSet, request: MealPlanRequest
    ) -> Tuple[MealPlanResponse, List[ValidationIssue], List[QuantityChange]]:
        adjusted = plan.model_copy(deep=True)
        remaining: List[ValidationIssue] = []
        changes: List[QuantityChange] = []
        for day_index, day in enumerate(plan.days):
            result = await self.adjuster.adjust_day(day, rules, request, day_index)
            adjusted.days[day_index] = result.day
            remaining.extend(result.issues)
            changes.extend(result.changes)
        return adjusted, remaining, changes

    def _prompt_for(
        self,
        request: MealPlanRequest,
        rules: DietRuleSet,
        pool: CandidatePool,
        **hints: Sequence[str],
    ) -> str:
        return build_plan_prompt(
            request=request,
            rules=rules,
            pool=pool,
            language=self.settings.meal_plan_language,
            pool_limit=self.settings.prompt_pool_category_limit,
            **hints,
        )

    async def _generate_ai_plan(
        self,
        request: MealPlanRequest,
        rules: DietRuleSet,
        pool: CandidatePool,
        request_id: str,
    ) -> _Generated:
        settings = self.settings
        diet_key = request.profile.dietKey
        prompt = self._prompt_for(request, rules, pool)
        outcome = await self.runner.run(
            self._plan_attempt(prompt, request, rules, request_id, temperature=settings.meal_plan_temperature)
        )
        plan = outcome.value
        attempts = outcome.calls
        retry_reason = outcome.retry_reason

        guard = await self._check_guardrails(plan, diet_key)
        if guard is not None and not guard.ok:
            original_error = guard.to_error()
            if not guard.deficit_retry_allowed():
                raise original_error
            retry_reason = RETRY_GUARDRAILS
            categories = [item.categoryNameNl or item.categoryCode for item in guard.force_deficits]
            logger.info("Regenerating plan for day-quota deficits: %s", ", ".join(categories))
            retry_prompt = self._prompt_for(request, rules, pool, force_deficit_categories=categories)
            try:
                retried = await self.runner.run(
                    self._plan_attempt(
                        retry_prompt,
                        request,
                        rules,
                        request_id,
                        temperature=settings.meal_plan_retry_temperature,
                        allow_repair=False,
                        label="plan (quota retry)",
                    )
                )
            except GenerationFailedError as exc:
                attempts += int(exc.details.get("attempts") or 1)
                logger.warning("Quota retry generation failed: %s", exc)
                raise original_error from exc
            attempts += retried.calls
            guard = await self._check_guardrails(retried.value, diet_key)
            if not guard.ok:
                logger.info("Quota retry still blocked: %s", guard.message)
                raise original_error
            plan = retried.value

        sanity = self.sanity_validator.validate(plan)
        if not sanity.ok:
            retry_reason = RETRY_SANITY
            logger.info("Sanity check failed issues=%s; regenerating once", len(sanity.issues))
            block_terms = await self._block_terms(diet_key) if guard is not None else []
            retry_prompt = self._prompt_for(request, rules, pool, guardrails_block_terms=block_terms)
            try:
                retried = await self.runner.run(
                    self._plan_attempt(
                        retry_prompt,
                        request,
                        rules,
                        request_id,
                        temperature=settings.meal_plan_retry_temperature,
                        allow_repair=False,
                        label="plan (sanity retry)",
                    )
                )
            except GenerationFailedError as exc:
                attempts += int(exc.details.get("attempts") or 1)
                logger.warning("Sanity retry generation failed: %s", exc)
            else:
                attempts += retried.calls
                plan, sanity, guard = await self._accept_sanity_retry(
                    plan, sanity, guard, retried.value, diet_key
                )
            if not sanity.ok:
                raise self._sanity_error(sanity, attempts, retry_reason)

        return _Generated(
            plan=plan,
            mode=MODE_AI,
            attempts=attempts,
            retry_reason=retry_reason,
            sanity=sanity,
            guardrails=guard,
        )

    async def _accept_sanity_retry(
        self,
        plan: MealPlanResponse,
        sanity: SanityResult,
        guard: Optional[GuardrailsOutcome],
        candidate: MealPlanResponse,
        diet_key: str,
    ) -> Tuple[MealPlanResponse, SanityResult, Optional[GuardrailsOutcome]]:
        """Swap in the regenerated plan only if it passes guardrails and sanity."""
        candidate_guard = await self._check_guardrails(candidate, diet_key)
        if candidate_guard is not None and not candidate_guard.ok:
            logger.info("Sanity retry rejected by guardrails: %s", candidate_guard.message)
            return plan, sanity, guard
        candidate_sanity = self.sanity_validator.validate(candidate)
        if not candidate_sanity.ok:
            logger.info("Sanity retry still implausible issues=%s", len(candidate_sanity.issues))
            return plan, sanity, guard
        return candidate, candidate_sanity, candidate_guard

    async def _check_guardrails(
        self, plan: MealPlanResponse, diet_key: str, include_diet_logic: bool = True
    ) -> Optional[GuardrailsOutcome]:
        """Enforced evaluation result, or None when guardrails are not enforced."""
        if self.enforcer is None:
            return None
        if self.settings.enforce_guardrails:
            return await self.enforcer.evaluate(plan, diet_key, include_diet_logic=include_diet_logic)
        if self.settings.shadow_guardrails:
            await self.enforcer.shadow_evaluate(plan, diet_key)
        return None

    async def _block_terms(self, diet_key: str) -> List[str]:
        if self.enforcer is None or not self.settings.enforce_guardrails:
            return []
        return hard_block_terms(await self.enforcer.load_ruleset(diet_key))

    @staticmethod
    def _sanity_error(sanity: SanityResult, attempts: int, retry_reason: Optional[str]) -> SanityFailedError:
        return SanityFailedError(
            SANITY_FAILED_MESSAGE,
            {
                "issues": [issue.model_dump(exclude_none=True) for issue in sanity.issues],
                "attempts": attempts,
                "retryReason": retry_reason,
            },
        )

    async def _generate_template_plan(
        self,
        request: MealPlanRequest,
        rules: DietRuleSet,
        exclude_terms: Sequence[str],
    ) -> Tuple[_Generated, Dict[str, Any]]:
        config = self.template_config
        diet_key = request.profile.dietKey
        block_terms = await self._block_terms(diet_key)
        pool, pool_metrics = await self._sanitized_pool(diet_key, exclude_terms, block_terms)
        pools = filter_pools(merge_pools(config.poolItems, pool), dedupe_terms([*exclude_terms, *block_terms]))

        async def run(seed: int):
            result = await self.template_generator.generate(request, config, pools, retry_seed=seed)
            await self._require_resolvable_codes(result.plan)
            return result

        result = await run(0)
        attempts = 1
        retry_reason: Optional[str] = None

        guard = await self._check_guardrails(result.plan, diet_key)
        if guard is not None and not guard.ok:
            if guard.evaluator_error:
                raise guard.to_error()
            retry_reason = RETRY_GUARDRAILS
            logger.info("Template plan blocked by guardrails; retrying with seed %s", SEED_GUARDRAILS_RETRY)
            original_error = guard.to_error()
            result = await run(SEED_GUARDRAILS_RETRY)
            attempts += 1
            guard = await self._check_guardrails(result.plan, diet_key)
            if not guard.ok:
                raise original_error

        sanity = self.sanity_validator.validate(result.plan)
        if not sanity.ok:
            retry_reason = RETRY_SANITY
            logger.info("Template plan failed sanity; retrying with seed %s", SEED_SANITY_RETRY)
            retried = await run(SEED_SANITY_RETRY)
            attempts += 1
            plan, sanity, guard = await self._accept_sanity_retry(
                result.plan, sanity, guard, retried.plan, diet_key
            )
            if plan is retried.plan:
                result = retried
            if not sanity.ok:
                raise self._sanity_error(sanity, attempts, retry_reason)

        generated = _Generated(
            plan=result.plan,
            mode=MODE_TEMPLATE,
            attempts=attempts,
            retry_reason=retry_reason,
            sanity=sanity,
            guardrails=guard,
            template_info=result.template_info,
        )
        return generated, pool_metrics

    async def _require_resolvable_codes(self, plan: MealPlanResponse) -> None:
        codes = [ref.nevoCode for day in plan.days for meal in day.meals for ref in meal.ingredientRefs]
        missing = await verify_codes(self.lookup, codes)
        if missing:
            raise GenerationFailedError(
                "Template plan uses ingredient codes that do not resolve",
                {"missingCodes": sorted(missing)},
            )

    def _attach_metadata(
        self,
        plan: MealPlanResponse,
        request: MealPlanRequest,
        generated: _Generated,
        pool_metrics: Dict[str, Any],
    ) -> None:
        metadata = plan.metadata
        metadata.setdefault("generatedAt", datetime.now(timezone.utc).isoformat())
        metadata["dietKey"] = request.profile.dietKey
        metadata["totalDays"] = len(plan.days)
        metadata["totalMeals"] = plan.total_meals()
        if generated.guardrails is not None:
            metadata["guardrails"] = {
                "contentHash": generated.guardrails.content_hash,
                "version": generated.guardrails.version,
            }
        metadata["generator"] = {
            "mode": generated.mode,
            "attempts": generated.attempts,
            "retryReason": generated.retry_reason,
            "poolMetrics": pool_metrics,
            "sanity": generated.sanity.model_dump(exclude_none=True),
        }
        if generated.template_info is not None:
            metadata["generator"]["templateInfo"] = generated.template_info
        if request.therapeuticTargets is not None:
            metadata["therapeutic"] = request.therapeuticTargets.model_dump(exclude_none=True)

    async def _enrich_canonical_ids(self, days: Sequence[MealPlanDay]) -> None:
        if self.canonical_lookup is None:
            return
        refs = [
            ref
            for day in days
            for meal in day.meals
            for ref in meal.ingredientRefs
            if ref.nevoCode and not ref.canonicalIngredientId
        ]
        codes = sorted({ref.nevoCode for ref in refs})
        if not codes:
            return
        batches = [codes[i : i + CANONICAL_BATCH_SIZE] for i in range(0, len(codes), CANONICAL_BATCH_SIZE)]
        try:
            results = await asyncio.gather(*(self.canonical_lookup.canonical_ids(batch) for batch in batches))
        except Exception as exc:
            logger.warning("Canonical id enrichment failed: %s", exc)
            return
        mapping: Dict[str, str] = {}
        for result in results:
            mapping.update(result or {})
        for ref in refs:
            canonical = mapping.get(ref.nevoCode)
            if canonical:
                ref.canonicalIngredientId = canonical

    # ------------------------------------------------------------------
    # Single day / single meal
    # ------------------------------------------------------------------
    def _require_runner(self) -> AttemptRunner:
        if self.runner is None:
            raise ConfigInvalidError("No generative text service configured")
        return self.runner

    @staticmethod
    def _day_index(request: MealPlanRequest, date: str) -> int:
        dates = request.dateRange.dates()
        if date not in dates:
            raise InvalidRequestError(
                "Datum valt buiten de periode van het meal plan",
                {"date": date, "start": request.dateRange.start, "end": request.dateRange.end},
            )
        return dates.index(date)

    async def generate_day(
        self,
        raw: MealPlanRequest | Mapping[str, Any],
        date: str,
        existing_day: Optional[MealPlanDay] = None,
    ) -> DayGenerationResult:
        """Regenerate one day, preferring the quantity adjuster over repair for macro-only misses."""
        request = coerce_request(raw)
        runner = self._require_runner()
        day_index = self._day_index(request, date)
        diet_key = request.profile.dietKey
        bind_request_context(request_id=str(uuid.uuid4()), diet_key=diet_key, date=date)

        rules = derive_diet_rule_set(request.profile)
        pool, _ = await self._sanitized_pool(diet_key, build_exclude_terms(request))
        prompt = build_day_prompt(
            date=date,
            request=request,
            rules=rules,
            pool=pool,
            existing_day=existing_day,
            language=self.settings.meal_plan_language,
            pool_limit=self.settings.prompt_pool_category_limit,
        )

        async def adjust(day: MealPlanDay, issues: List[ValidationIssue]):
            result = await self.adjuster.adjust_day(day, rules, request, day_index, issues)
            return result.day, result.issues, result.changes

        outcome: AttemptOutcome[MealPlanDay] = await runner.run(
            Attempt(
                label=f"day {date}",
                prompt=prompt,
                output_schema=DAY_SCHEMA,
                build=lambda payload: day_from_payload(payload, date, request.slots),
                validate=lambda day: self.evaluator.validate_day(day, rules, request, day_index),
                temperature=self.settings.meal_plan_temperature,
                adjust=adjust,
                has_shake_smoothie_preference=has_shake_smoothie_preference(request),
            )
        )
        day = outcome.value
        await self._enforce_partial(day, diet_key)
        await self._enrich_canonical_ids([day])
        return DayGenerationResult(
            day=day,
            adjustments=outcome.adjustments,
            attempts=outcome.calls,
            retry_reason=outcome.retry_reason,
        )

    async def generate_meal(
        self,
        raw: MealPlanRequest | Mapping[str, Any],
        date: str,
        slot: str,
        existing_meal: Optional[Meal] = None,
        constraints: Optional[PlanEditConstraints] = None,
    ) -> MealResponse:
        request = coerce_request(raw)
        runner = self._require_runner()
        self._day_index(request, date)
        if slot not in request.slots:
            raise InvalidRequestError("Maaltijdmoment hoort niet bij dit meal plan", {"slot": slot})
        diet_key = request.profile.dietKey
        bind_request_context(request_id=str(uuid.uuid4()), diet_key=diet_key, date=date, slot=slot)

        avoid = list(constraints.avoidIngredients) if constraints else []
        if avoid:
            profile = request.profile.model_copy(update={"dislikes": [*request.profile.dislikes, *avoid]})
            request = request.model_copy(update={"profile": profile})
        rules = derive_diet_rule_set(request.profile)
        pool, _ = await self._sanitized_pool(diet_key, build_exclude_terms(request))
        prompt = build_meal_prompt(
            date=date,
            slot=slot,
            request=request,
            rules=rules,
            pool=pool,
            existing_meal=existing_meal,
            constraints=constraints,
            language=self.settings.meal_plan_language,
            pool_limit=self.settings.prompt_pool_category_limit,
        )
        outcome: AttemptOutcome[MealResponse] = await runner.run(
            Attempt(
                label=f"meal {date} {slot}",
                prompt=prompt,
                output_schema=MEAL_RESPONSE_SCHEMA,
                build=lambda payload: meal_from_payload(payload, date, slot),
                validate=lambda response: self.evaluator.validate_meal(response.meal, rules, request),
                temperature=self.settings.meal_plan_temperature,
                has_shake_smoothie_preference=has_shake_smoothie_preference(request),
            )
        )
        response = outcome.value
        if constraints is not None and constraints.targetCalories:
            response = MealResponse(date=date, meal=await self._scale_meal(response.meal, constraints.targetCalories))
        meal_day = MealPlanDay(date=date, meals=[response.meal])
        await self._enforce_partial(meal_day, diet_key, include_diet_logic=False)
        await self._enrich_canonical_ids([meal_day])
        return response

    async def _scale_meal(self, meal: Meal, target_calories: float) -> Meal:
        totals = await calc_meal_macros(self.lookup, meal.ingredientRefs)
        if totals.calories <= 0:
            return meal
        scale = target_calories / totals.calories
        scale = max(self.settings.adjuster_min_scale, min(self.settings.adjuster_max_scale, scale))
        scaled_day, changes = self.adjuster.apply_scale(MealPlanDay(date=meal.date, meals=[meal]), scale)
        scaled = scaled_day.meals[0]
        if changes:
            new_totals = await calc_meal_macros(self.lookup, scaled.ingredientRefs)
            scaled.estimatedMacros = MacroEstimate(
                calories=round(new_totals.calories, 1),
                protein=round(new_totals.proteinG, 1),
                carbs=round(new_totals.carbsG, 1),
                fat=round(new_totals.fatG, 1),
            )
            logger.info("Scaled meal %s toward %.0f kcal scale=%.3f", meal.id, target_calories, scale)
        return scaled

    async def _enforce_partial(self, day: MealPlanDay, diet_key: str, include_diet_logic: bool = True) -> None:
        """Day and meal regenerations are held to the same guardrails, without a quota retry.

        Day quotas are skipped for a single meal since they only make sense per full day.
        """
        plan = MealPlanResponse(requestId=str(uuid.uuid4()), days=[day])
        guard = await self._check_guardrails(plan, diet_key, include_diet_logic)
        if guard is not None and not guard.ok:
            raise guard.to_error()
        check_culinary_coherence(plan, self.culinary_rules)
