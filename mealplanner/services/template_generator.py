from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..errors import InsufficientIngredientsError
from ..interfaces import NutritionLookup
from ..schemas import (
    CandidatePool,
    FlavorPoolItem,
    GeneratorLimits,
    IngredientRef,
    MacroEstimate,
    Meal,
    MealPlanDay,
    MealPlanRequest,
    MealPlanResponse,
    NamePattern,
    PoolIngredient,
    RecipeTemplate,
    TemplateGeneratorConfig,
    TemplatePools,
    TemplateSlotSpec,
)
from .nutrition import calc_meal_macros
from .sanitizer import normalize_name

logger = logging.getLogger(__name__)

NUM_CANDIDATES = 5
TOP_PROTEIN_COUNTS = 5

SEED_GUARDRAILS_RETRY = 1
SEED_SANITY_RETRY = 2

DEFAULT_SLOT_GRAMS = {
    "protein": TemplateSlotSpec(slot="protein", defaultG=120, minG=50, maxG=200),
    "veg1": TemplateSlotSpec(slot="veg1", defaultG=80, minG=30, maxG=150),
    "veg2": TemplateSlotSpec(slot="veg2", defaultG=60, minG=30, maxG=120),
    "fat": TemplateSlotSpec(slot="fat", defaultG=10, minG=5, maxG=25),
}

EMPTY_POOLS_MESSAGE = "Geen toegestane ingrediënten voor eiwit of groente. Verruim dieetregels of voeg recepten toe."
NO_TEMPLATES_MESSAGE = "Geen actieve templates beschikbaar. Configureer templates in de generatorconfiguratie."
NO_MEAL_MESSAGE = "Geen maaltijd kon gegenereerd worden. Verruim dieetregels of voeg recepten toe."

_FAT_LIKE = re.compile(r"avocado|olijf|olie|noten|kokos|tahini|boter")


def is_fat_like(name: str) -> bool:
    return _FAT_LIKE.search((name or "").lower()) is not None


def meal_signature(refs: Sequence[IngredientRef]) -> str:
    """Protein + veg1 + veg2 codes in slot order."""
    return "|".join(ref.nevoCode for ref in refs[:3] if ref.nevoCode)


def _clamp_grams(spec: TemplateSlotSpec | FlavorPoolItem) -> float:
    return max(spec.minG, min(spec.maxG, spec.defaultG))


def _to_pool(candidates) -> List[PoolIngredient]:
    return [PoolIngredient(nevoCode=c.nevoCode, name=c.name) for c in candidates]


def _merge(primary: Sequence[PoolIngredient], secondary: Sequence[PoolIngredient]) -> List[PoolIngredient]:
    seen: set[str] = set()
    merged: List[PoolIngredient] = []
    for item in [*primary, *secondary]:
        if item.nevoCode in seen:
            continue
        seen.add(item.nevoCode)
        merged.append(item)
    return merged


def map_candidate_pool(pool: CandidatePool) -> TemplatePools:
    return TemplatePools(
        protein=_to_pool(pool.proteins),
        veg=_to_pool(pool.vegetables) + _to_pool(pool.fruits),
        fat=_to_pool(pool.fats),
    )


def merge_pools(pool_items: TemplatePools, candidates: CandidatePool) -> TemplatePools:
    """Configured pool items first, then sanitized candidates; deduplicated by code."""
    mapped = map_candidate_pool(candidates)
    return TemplatePools(
        protein=_merge(pool_items.protein, mapped.protein),
        veg=_merge(pool_items.veg, mapped.veg),
        fat=_merge(pool_items.fat, mapped.fat),
        flavor=list(pool_items.flavor),
    )


def filter_pools(pools: TemplatePools, exclude_terms: Sequence[str]) -> TemplatePools:
    """Drop items whose name contains an exclusion term; protein and veg must stay non-empty."""
    terms = [term for term in (normalize_name(t) for t in exclude_terms) if term]

    def keep(item: PoolIngredient) -> bool:
        name = normalize_name(item.name)
        return not any(term in name for term in terms)

    filtered = TemplatePools(
        protein=[item for item in pools.protein if keep(item)],
        veg=[item for item in pools.veg if keep(item)],
        fat=[item for item in pools.fat if keep(item)],
        flavor=[item for item in pools.flavor if keep(item)],
    )
    empty = [name for name in ("protein", "veg") if not getattr(filtered, name)]
    if empty:
        raise InsufficientIngredientsError(EMPTY_POOLS_MESSAGE, empty_pools=empty)
    return filtered


def build_name_from_pattern(pattern: str, refs: Sequence[IngredientRef], template_name: str) -> str:
    protein = (refs[0].displayName or "").strip() if refs else ""
    veg1 = (refs[1].displayName or "").strip() if len(refs) > 1 else ""
    veg2 = (refs[2].displayName or "").strip() if len(refs) > 2 else ""
    flavor = (refs[4].displayName or "").strip() if len(refs) > 4 else ""
    out = (
        pattern.replace("{templateName}", template_name)
        .replace("{protein}", protein or "eiwit")
        .replace("{veg1}", veg1 or "groente")
        .replace("{veg2}", veg2 or "groente")
        .replace("{flavor}", flavor)
    )
    out = re.sub(r"\s+", " ", out).strip()
    if not flavor:
        out = re.sub(r"\s*\(\s*\)\s*", " ", out)
        out = re.sub(r"\s*–\s*$", "", out)
        out = re.sub(r"^\s*–\s*", "", out).strip()
    out = re.sub(r"\s*–\s*–\s*", "–", out)
    return re.sub(r"\s+", " ", out).strip()


def pick_least_used(
    pool: Sequence[PoolIngredient],
    usage: Dict[str, int],
    avoid: set[str],
    seed: int,
) -> PoolIngredient:
    if not pool:
        raise InsufficientIngredientsError("Pool is empty")
    available = [item for item in pool if item.nevoCode not in avoid] or list(pool)
    min_usage = min(usage.get(item.nevoCode, 0) for item in available)
    subset = [item for item in available if usage.get(item.nevoCode, 0) == min_usage]
    return subset[abs(seed) % len(subset)]


@dataclass
class QualityMetrics:
    repeatsAvoided: int = 0
    repeatsForced: int = 0
    proteinRepeatsForced: int = 0
    templateRepeatsForced: int = 0
    vegMonotonyAvoided: int = 0
    proteinCountsTop: List[Dict[str, Any]] = field(default_factory=list)
    templateCounts: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Usage:
    protein: Dict[str, int] = field(default_factory=dict)
    veg: Dict[str, int] = field(default_factory=dict)
    fat: Dict[str, int] = field(default_factory=dict)
    template: Dict[str, int] = field(default_factory=dict)


@dataclass
class MealDraft:
    name: str
    refs: List[IngredientRef]
    repeat_avoided: bool = False
    repeat_forced: bool = False


@dataclass
class TemplatePlanResult:
    plan: MealPlanResponse
    template_info: Dict[str, Any]


def build_meal_draft(
    template: RecipeTemplate,
    slot: str,
    date: str,
    pools: TemplatePools,
    limits: GeneratorLimits,
    seed: int,
    used_signatures: set[str],
    usage: _Usage,
    name_patterns: Sequence[NamePattern] = (),
) -> MealDraft:
    if not pools.protein or not pools.veg:
        raise InsufficientIngredientsError(EMPTY_POOLS_MESSAGE)
    specs = {spec.slot: spec for spec in template.slots}

    def ref_for(item: PoolIngredient, slot_name: str) -> IngredientRef:
        spec = specs.get(slot_name, DEFAULT_SLOT_GRAMS[slot_name])
        return IngredientRef(nevoCode=item.nevoCode, quantityG=_clamp_grams(spec), displayName=item.name)

    refs: List[IngredientRef] = []
    repeat_avoided = repeat_forced = False
    for attempt in range(limits.signatureRetryLimit):
        attempt_seed = seed + attempt * 1000
        avoid: set[str] = set()
        protein = pick_least_used(pools.protein, usage.protein, avoid, attempt_seed)
        avoid.add(protein.nevoCode)
        veg1 = pick_least_used(pools.veg, usage.veg, avoid, attempt_seed + 1)
        avoid.add(veg1.nevoCode)
        veg2 = pick_least_used(pools.veg, usage.veg, avoid, attempt_seed + 2)
        candidate = [ref_for(protein, "protein"), ref_for(veg1, "veg1"), ref_for(veg2, "veg2")]
        signature = meal_signature(candidate)
        if signature not in used_signatures:
            refs = candidate
            used_signatures.add(signature)
            repeat_avoided = attempt > 0
            break
        if attempt == limits.signatureRetryLimit - 1:
            refs = candidate
            used_signatures.add(signature)
            repeat_forced = True

    used = {ref.nevoCode for ref in refs}
    if pools.fat and len(refs) < limits.maxIngredients:
        fat_pool = pools.fat
        if any(is_fat_like(ref.displayName or "") for ref in refs):
            fat_pool = [item for item in pools.fat if not is_fat_like(item.name)] or pools.fat
        fat = pick_least_used(fat_pool, usage.fat, used, seed + 3)
        used.add(fat.nevoCode)
        refs.append(ref_for(fat, "fat"))

    if pools.flavor and len(refs) < limits.maxIngredients:
        count = min(
            limits.maxFlavorItems,
            limits.maxIngredients - len(refs),
            (abs(seed) + len(date)) % (limits.maxFlavorItems + 1),
        )
        for index in range(count):
            flavor = pools.flavor[abs(seed + index * 11) % len(pools.flavor)]
            if flavor.nevoCode in used:
                continue
            used.add(flavor.nevoCode)
            refs.append(IngredientRef(nevoCode=flavor.nevoCode, quantityG=_clamp_grams(flavor), displayName=flavor.name))

    name = f"{template.nameNl} ({date})"
    patterns = [p for p in name_patterns if p.templateKey == template.id and p.slot == slot]
    if patterns:
        from_pattern = build_name_from_pattern(patterns[abs(seed) % len(patterns)].pattern, refs, template.nameNl)
        if len(from_pattern) >= 3:
            name = from_pattern
    return MealDraft(name=name, refs=refs, repeat_avoided=repeat_avoided, repeat_forced=repeat_forced)


def _score(draft: MealDraft, template_id: str, usage: _Usage, limits: GeneratorLimits) -> int:
    protein_count = usage.protein.get(draft.refs[0].nevoCode, 0)
    template_count = usage.template.get(template_id, 0)
    score = 0
    if protein_count == 0:
        score += 2
    if template_count < limits.templateRepeatCap7d:
        score += 1
    if protein_count >= limits.proteinRepeatCap7d:
        score -= 3
    if template_count >= limits.templateRepeatCap7d:
        score -= 2
    return score


class TemplateGenerator:
    """Deterministic plan generation from day/slot templates and pre-approved pools.

    The same request, config, pools and retry seed always yield the same
    ingredient picks; a different seed rotates to other picks.
    """

    def __init__(self, lookup: NutritionLookup) -> None:
        self.lookup = lookup

    async def generate(
        self,
        request: MealPlanRequest,
        config: TemplateGeneratorConfig,
        pools: TemplatePools,
        retry_seed: int = 0,
    ) -> TemplatePlanResult:
        if not config.templates:
            raise InsufficientIngredientsError(NO_TEMPLATES_MESSAGE)
        limits = config.limits
        usage = _Usage()
        quality = QualityMetrics()
        used_signatures: set[str] = set()
        used_template_ids: List[str] = []
        meal_qualities: List[Dict[str, Any]] = []
        days: List[MealPlanDay] = []
        template_index = 0

        for date in request.dateRange.dates():
            meals: List[Meal] = []
            for slot in request.slots:
                template = config.templates[template_index % len(config.templates)]
                template_index += 1
                if template.id not in used_template_ids:
                    used_template_ids.append(template.id)

                drafts: List[MealDraft] = []
                for candidate in range(NUM_CANDIDATES):
                    candidate_seed = retry_seed + (template_index - 1) * 100 + candidate
                    try:
                        drafts.append(
                            build_meal_draft(
                                template,
                                slot,
                                date,
                                pools,
                                limits,
                                candidate_seed,
                                set(used_signatures),
                                usage,
                                config.namePatterns,
                            )
                        )
                    except InsufficientIngredientsError:
                        continue
                if not drafts:
                    raise InsufficientIngredientsError(NO_MEAL_MESSAGE)

                scores = [_score(draft, template.id, usage, limits) for draft in drafts]
                best = scores.index(max(scores))
                chosen = drafts[best]
                used_signatures.add(meal_signature(chosen.refs))
                meal_qualities.append(
                    {
                        "date": date,
                        "slot": slot,
                        "score": scores[best],
                        "reasons": self._record_usage(chosen, template.id, pools, usage, quality, limits)[:3],
                    }
                )
                meals.append(await self._build_meal(chosen, slot, date))
            days.append(MealPlanDay(date=date, meals=meals))

        quality.proteinCountsTop = [
            {"nevoCode": code, "count": count}
            for code, count in sorted(usage.protein.items(), key=lambda item: -item[1])[:TOP_PROTEIN_COUNTS]
        ]
        quality.templateCounts = [{"id": key, "count": count} for key, count in usage.template.items()]

        plan = MealPlanResponse(
            requestId=str(uuid.uuid4()),
            days=days,
            metadata={
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "dietKey": request.profile.dietKey,
                "totalDays": len(days),
                "totalMeals": sum(len(day.meals) for day in days),
            },
        )
        logger.info(
            "Template plan generated days=%s meals=%s seed=%s forced_repeats=%s",
            len(days),
            plan.total_meals(),
            retry_seed,
            quality.repeatsForced,
        )
        return TemplatePlanResult(
            plan=plan,
            template_info={
                "rotation": [template.id for template in config.templates],
                "usedTemplateIds": used_template_ids,
                "quality": quality.__dict__.copy(),
                "mealQualities": meal_qualities,
            },
        )

    @staticmethod
    def _record_usage(
        chosen: MealDraft,
        template_id: str,
        pools: TemplatePools,
        usage: _Usage,
        quality: QualityMetrics,
        limits: GeneratorLimits,
    ) -> List[str]:
        refs = chosen.refs
        veg_codes = [ref.nevoCode for ref in refs[1:3]]
        veg_usages = [usage.veg.get(item.nevoCode, 0) for item in pools.veg]
        min_veg = min(veg_usages) if veg_usages else 0
        max_veg = max(veg_usages) if veg_usages else 0
        low_usage_picks = [
            code for code in veg_codes if min_veg < max_veg and usage.veg.get(code, 0) == min_veg
        ]
        quality.vegMonotonyAvoided += len(low_usage_picks)

        protein = refs[0].nevoCode
        previous_protein = usage.protein.get(protein, 0)
        previous_template = usage.template.get(template_id, 0)
        reasons: List[str] = []
        if previous_protein == 0:
            reasons.append("Protein nieuw deze week")
        if previous_template < limits.templateRepeatCap7d:
            reasons.append("Template onder cap")
        if low_usage_picks:
            reasons.append("Veg met lage week-usage gekozen")
        if not chosen.repeat_forced:
            reasons.append("Vermijdt herhaalde signature")
        quality.repeatsAvoided += int(chosen.repeat_avoided)
        quality.repeatsForced += int(chosen.repeat_forced)

        usage.protein[protein] = previous_protein + 1
        usage.template[template_id] = previous_template + 1
        for code in veg_codes:
            usage.veg[code] = usage.veg.get(code, 0) + 1
        fat_codes = {item.nevoCode for item in pools.fat}
        for ref in refs[3:]:
            if ref.nevoCode in fat_codes:
                usage.fat[ref.nevoCode] = usage.fat.get(ref.nevoCode, 0) + 1
                break
        if previous_protein >= limits.proteinRepeatCap7d:
            quality.proteinRepeatsForced += 1
        if previous_template >= limits.templateRepeatCap7d:
            quality.templateRepeatsForced += 1
        return reasons

    async def _build_meal(self, draft: MealDraft, slot: str, date: str) -> Meal:
        estimated: Optional[MacroEstimate] = None
        try:
            totals = await calc_meal_macros(self.lookup, draft.refs)
            estimated = MacroEstimate(
                calories=round(totals.calories, 1),
                protein=round(totals.proteinG, 1),
                carbs=round(totals.carbsG, 1),
                fat=round(totals.fatG, 1),
            )
        except Exception as exc:
            logger.warning("Macro estimate failed for template meal on %s: %s", date, exc)
        return Meal(
            id=str(uuid.uuid4()),
            name=draft.name,
            slot=slot,
            date=date,
            ingredientRefs=draft.refs,
            estimatedMacros=estimated,
        )
