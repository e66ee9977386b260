from __future__ import annotations

import json
from datetime import datetime
from textwrap import dedent
from typing import Any, Dict, List, Optional, Sequence

from ..schemas import (
    CandidatePool,
    DietRuleSet,
    Meal,
    MealPlanDay,
    MealPlanRequest,
    PlanEditConstraints,
)

SLOT_LABELS = {"breakfast": "Breakfast", "lunch": "Lunch", "dinner": "Dinner", "snack": "Snack"}

LANGUAGE_INSTRUCTIONS = {
    "nl": (
        "CRITICAL LANGUAGE REQUIREMENT: All meal names, descriptions, and any text you generate MUST be in "
        "Dutch (Nederlands). Use Dutch names for meals, ingredients, and any descriptive text."
    ),
    "en": (
        "CRITICAL LANGUAGE REQUIREMENT: All meal names, descriptions, and any text you generate MUST be in "
        "English. Use English names for meals, ingredients, and any descriptive text."
    ),
}

INGREDIENT_REF_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "nevoCode": {"type": "string"},
        "quantityG": {"type": "number", "minimum": 1},
        "displayName": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["nevoCode", "quantityG"],
}

MEAL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "slot": {"type": "string", "enum": ["breakfast", "lunch", "dinner", "snack"]},
        "date": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"},
        "ingredientRefs": {"type": "array", "items": INGREDIENT_REF_SCHEMA, "minItems": 1},
        "estimatedMacros": {
            "type": "object",
            "properties": {
                "calories": {"type": "number", "minimum": 0},
                "protein": {"type": "number", "minimum": 0},
                "carbs": {"type": "number", "minimum": 0},
                "fat": {"type": "number", "minimum": 0},
            },
        },
        "prepTime": {"type": "number", "minimum": 0},
        "servings": {"type": "number", "minimum": 1},
    },
    "required": ["id", "name", "slot", "date", "ingredientRefs"],
}

DAY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "date": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"},
        "meals": {"type": "array", "items": MEAL_SCHEMA},
    },
    "required": ["date", "meals"],
}

PLAN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "requestId": {"type": "string"},
        "days": {"type": "array", "items": DAY_SCHEMA, "minItems": 1},
    },
    "required": ["days"],
}

MEAL_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "date": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"},
        "meal": MEAL_SCHEMA,
    },
    "required": ["date", "meal"],
}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value)} is not JSON serializable")


def format_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, default=_json_default)


def format_date_range(start: str, end: str) -> str:
    days = (datetime.fromisoformat(end) - datetime.fromisoformat(start)).days + 1
    return f"{start} to {end} ({days} days)"


def format_slots(slots: Sequence[str]) -> str:
    return ", ".join(SLOT_LABELS.get(slot, slot) for slot in slots)


def build_constraint_summary(rules: DietRuleSet) -> str:
    hard: List[str] = []
    soft: List[str] = []

    def add(desc: str, level: str) -> None:
        (hard if level == "hard" else soft).append(f"  - {desc} [{level.upper()}]")

    for constraint in rules.ingredientConstraints:
        items = ", ".join(constraint.items) or "N/A"
        categories = f" (categories: {', '.join(constraint.categories)})" if constraint.categories else ""
        prefix = "FORBIDDEN" if constraint.type == "forbidden" else "ALLOWED ONLY"
        add(f"{prefix}: {items}{categories}", constraint.constraintType)

    for required in rules.requiredCategories:
        desc = f"REQUIRED: {required.category}"
        if required.minPerDay:
            desc += f" (min {required.minPerDay}/day)"
        if required.minPerWeek:
            desc += f" (min {required.minPerWeek}/week)"
        if required.items:
            desc += f" - items: {', '.join(required.items)}"
        add(desc, required.constraintType)

    for macro in rules.macroConstraints:
        parts = []
        if macro.maxCarbs is not None:
            parts.append(f"max carbs: {macro.maxCarbs:g}g")
        if macro.maxSaturatedFat is not None:
            parts.append(f"max saturated fat: {macro.maxSaturatedFat:g}g")
        if macro.minProtein is not None:
            parts.append(f"min protein: {macro.minProtein:g}g")
        if macro.minFat is not None:
            parts.append(f"min fat: {macro.minFat:g}g")
        if macro.maxFat is not None:
            parts.append(f"max fat: {macro.maxFat:g}g")
        if parts:
            scope = "Daily" if macro.scope == "daily" else "Per-meal"
            add(f"{scope} macro limits: {', '.join(parts)}", macro.constraintType)

    for structure in rules.mealStructure:
        cups = structure.vegetableCupsRequirement
        if structure.type == "vegetable_cups" and cups:
            add(
                f"Vegetable cups requirement: {cups.totalCups} total "
                f"({cups.leafyCups} leafy, {cups.sulfurCups} sulfur, {cups.coloredCups} colored)",
                structure.constraintType,
            )

    if rules.weeklyVariety.maxRepeats is not None:
        soft.append(f"  - Max repeats per week: {rules.weeklyVariety.maxRepeats} [SOFT]")
    if rules.weeklyVariety.minUniqueMeals is not None:
        soft.append(f"  - Min unique meals per week: {rules.weeklyVariety.minUniqueMeals} [SOFT]")

    lines: List[str] = []
    if hard:
        lines.append("HARD CONSTRAINTS (must be followed 100%):")
        lines.extend(hard)
    if soft:
        if lines:
            lines.append("")
        lines.append("SOFT CONSTRAINTS (optimize where possible):")
        lines.extend(soft)
    return "\n".join(lines)


def format_candidate_pool(pool: CandidatePool, limit: int = 20) -> str:
    lines: List[str] = []
    for category, items in pool.categories().items():
        if not items:
            continue
        lines.append(f"{category.upper()} ({len(items)} candidates):")
        for item in items[:limit]:
            tags = f" [tags: {', '.join(item.tags)}]" if item.tags else ""
            lines.append(f"  - {item.name} (nevoCode: {item.nevoCode}){tags}")
        if len(items) > limit:
            lines.append(f"  ... and {len(items) - limit} more")
    return "\n".join(lines)


def _calorie_info(rules: DietRuleSet) -> str:
    target = rules.calorieTarget
    if target.target:
        return f"Target calories: {target.target:g} kcal/day"
    if target.min or target.max:
        bounds = [f"{value:g}" for value in (target.min, target.max) if value]
        return f"Calorie range: {'-'.join(bounds)} kcal/day"
    return ""


def _preference_lines(request: MealPlanRequest, slots: Sequence[str]) -> List[str]:
    prefs = request.profile.mealPreferences
    return [
        f"{SLOT_LABELS.get(slot, slot)}: {', '.join(prefs.for_slot(slot))}"
        for slot in slots
        if prefs.for_slot(slot)
    ]


def _context_block(
    request: MealPlanRequest,
    rules: DietRuleSet,
    pool: Optional[CandidatePool],
    pool_limit: int,
    extra_exclusions: Sequence[str] = (),
) -> str:
    lines: List[str] = []
    exclusions = [*request.excludeIngredients, *extra_exclusions]
    if exclusions:
        lines.append(f"Additional exclusions: {', '.join(exclusions)}")
    if request.preferIngredients:
        lines.append(f"Preferred ingredients: {', '.join(request.preferIngredients)}")
    preferences = _preference_lines(request, request.slots)
    if preferences:
        lines.append("")
        lines.append("MEAL PREFERENCES (REQUIRED - HARD CONSTRAINT):")
        lines.append("You MUST generate meals that match these preferences:")
        lines.extend(preferences)
        lines.append(
            'For each meal slot the meal MUST match at least one preference. If breakfast preference is '
            '"eiwitshake", the breakfast MUST be a protein shake containing a protein source '
            "(eiwitpoeder, whey), not eggs or a fruit-only smoothie."
        )
    if pool is not None:
        lines.append("")
        lines.append("AVAILABLE INGREDIENTS (CANDIDATE POOL):")
        lines.append("You MUST choose ingredients ONLY from this list. Use the exact nevoCode values provided.")
        lines.append(format_candidate_pool(pool, pool_limit))
    return "\n".join(lines)


def _output_rules(date_rule: str, has_pool: bool) -> str:
    rules = [
        "Output MUST be exactly ONE valid JSON object conforming to the provided schema",
        "Do NOT include markdown formatting, code blocks, or explanations",
        "All HARD constraints must be followed 100% - violations are not acceptable",
        "SOFT constraints should be optimized where possible, but never at the expense of hard constraints",
        "Each ingredient needs nevoCode (string), quantityG (grams, minimum 1), optional displayName and tags",
        f"Each meal needs a unique id, a descriptive name, its slot, {date_rule}, and ingredientRefs",
        "Ensure each day's meals together meet calorie/macro targets if specified",
        "Ensure all meals respect prep time constraints",
    ]
    if has_pool:
        rules.append("DO NOT invent nevoCodes - use ONLY codes from the candidate pool above")
    return "\n".join(f"{index}. {rule}" for index, rule in enumerate(rules, start=1))


def _existing_ingredients(refs: Sequence[Any]) -> str:
    seen: Dict[str, Any] = {}
    for ref in refs:
        seen.setdefault(ref.nevoCode, ref)
    return "\n".join(
        f"  - {ref.displayName or code} (nevoCode: {code}, quantityG: {ref.quantityG:g}g)"
        for code, ref in seen.items()
    )


MINIMAL_CHANGE_RULES = dedent(
    """
    CRITICAL MINIMAL-CHANGE RULES:
    1. PRESERVE existing ingredients (nevoCodes) wherever possible
    2. Only adjust quantityG values to meet macro/calorie targets if needed
    3. Only replace ingredients that violate hard constraints, are needed for required categories, or when targets cannot be met by quantities alone
    4. When replacing, prefer ingredients from the existing list over new ones
    5. Maintain similar meal structure (same slots, similar meal types)
    """
).strip()


def build_plan_prompt(
    *,
    request: MealPlanRequest,
    rules: DietRuleSet,
    pool: Optional[CandidatePool],
    language: str = "nl",
    pool_limit: int = 20,
    force_deficit_categories: Sequence[str] = (),
    guardrails_block_terms: Sequence[str] = (),
) -> str:
    """Prompt for a full plan; the two optional hints are only set on a second pass."""
    prep_time = request.maxPrepTime or rules.prepTimeConstraints.globalMax
    hints: List[str] = []
    if force_deficit_categories:
        hints.append(
            "CRITICAL - DAG-QUOTUM (vorige poging afgekeurd): Zorg dat ELKE dag voldoende ingrediënten bevat "
            f"uit deze groepen: {', '.join(force_deficit_categories)}. Het dag-quotum voor deze groepen moet op "
            "elke afzonderlijke dag gehaald worden."
        )
    if guardrails_block_terms:
        hints.append(
            "CRITICAL - GUARDRAILS (vorige poging afgekeurd): Gebruik GEEN ingrediënten die overeenkomen met: "
            f"{', '.join(guardrails_block_terms)}."
        )
    calorie_info = _calorie_info(rules) or "No specific calorie target"
    sections = [
        "You are a meal planning assistant that generates personalized meal plans based on strict dietary requirements.",
        LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["nl"]),
        "TASK: Generate a meal plan for the following period and constraints.",
        "PERIOD:\n"
        f"- Date range: {format_date_range(request.dateRange.start, request.dateRange.end)}\n"
        f"- Meal slots per day: {format_slots(request.slots)}",
        "CALORIE & MACRO TARGETS:\n"
        f"- {calorie_info}" + (f"\n- Max prep time per meal: {prep_time} minutes" if prep_time else ""),
        "DIET RULES & CONSTRAINTS:\n" + build_constraint_summary(rules),
        *hints,
        _context_block(request, rules, pool, pool_limit),
        "CRITICAL REQUIREMENTS:\n" + _output_rules("the correct date (YYYY-MM-DD)", pool is not None),
        "Generate the meal plan now. Output ONLY the JSON object, nothing else.",
    ]
    return "\n\n".join(section for section in sections if section)


def build_day_prompt(
    *,
    date: str,
    request: MealPlanRequest,
    rules: DietRuleSet,
    pool: Optional[CandidatePool],
    existing_day: Optional[MealPlanDay] = None,
    language: str = "nl",
    pool_limit: int = 20,
) -> str:
    prep_time = request.maxPrepTime or rules.prepTimeConstraints.globalMax
    calorie_info = _calorie_info(rules) or "No specific calorie target"
    minimal_change = ""
    if existing_day is not None:
        refs = [ref for meal in existing_day.meals for ref in meal.ingredientRefs]
        minimal_change = (
            "MINIMAL-CHANGE OBJECTIVE:\n"
            f"You are regenerating meals for {date}. The existing plan for this day uses:\n"
            f"{_existing_ingredients(refs)}\n\n{MINIMAL_CHANGE_RULES}"
        )
    sections = [
        "You are a meal planning assistant that generates meals for a single day based on strict dietary requirements.",
        LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["nl"]),
        f"TASK: Generate meals for {date} only.",
        f"DATE & MEAL SLOTS:\n- Date: {date}\n- Meal slots: {format_slots(request.slots)}",
        "CALORIE & MACRO TARGETS:\n"
        f"- {calorie_info}" + (f"\n- Max prep time per meal: {prep_time} minutes" if prep_time else ""),
        "DIET RULES & CONSTRAINTS:\n" + build_constraint_summary(rules),
        _context_block(request, rules, pool, pool_limit),
        minimal_change,
        "CRITICAL REQUIREMENTS:\n" + _output_rules(f'the date "{date}" (exactly this date)', pool is not None),
        f"Generate the meals for {date} now. Output ONLY the JSON object, nothing else.",
    ]
    return "\n\n".join(section for section in sections if section)


def build_meal_prompt(
    *,
    date: str,
    slot: str,
    request: MealPlanRequest,
    rules: DietRuleSet,
    pool: Optional[CandidatePool],
    existing_meal: Optional[Meal] = None,
    constraints: Optional[PlanEditConstraints] = None,
    language: str = "nl",
    pool_limit: int = 20,
) -> str:
    slots_count = len(request.slots)
    target = rules.calorieTarget
    if constraints and constraints.targetCalories:
        calorie_info = f"Target calories for this meal: {constraints.targetCalories:g} kcal"
    elif target.target:
        calorie_info = (
            f"Estimated target calories for this meal: ~{round(target.target / slots_count)} kcal "
            f"(based on daily target {target.target:g} kcal / {slots_count} meals)"
        )
    elif target.min or target.max:
        low = round(target.min / slots_count) if target.min else "?"
        high = round(target.max / slots_count) if target.max else "?"
        calorie_info = f"Estimated calorie range for this meal: {low}-{high} kcal"
    else:
        calorie_info = "No specific calorie target"

    prep_time = (
        (constraints.maxPrepMinutes if constraints else None)
        or request.maxPrepTime
        or rules.prepTimeConstraints.perMeal.get(slot)
        or rules.prepTimeConstraints.globalMax
    )
    overrides: List[str] = []
    avoid = list(constraints.avoidIngredients) if constraints else []
    if constraints and constraints.highProtein:
        overrides.append("High protein preference: prioritize protein-rich ingredients")
    if constraints and constraints.vegetarian:
        overrides.append("Vegetarian: no meat, fish, or animal products")

    minimal_change = ""
    if existing_meal is not None:
        minimal_change = (
            "MINIMAL-CHANGE OBJECTIVE:\n"
            f"You are replacing the {slot} meal for {date}. The existing meal uses:\n"
            f"{_existing_ingredients(existing_meal.ingredientRefs)}\n\n{MINIMAL_CHANGE_RULES}"
        )
    preferences = request.profile.mealPreferences.for_slot(slot)
    preference_info = ""
    if preferences:
        preference_info = (
            f"REQUIRED MEAL PREFERENCE for {slot}: {', '.join(preferences)}. The generated meal MUST match this "
            "preference and its name and ingredients MUST clearly reflect it."
        )
    sections = [
        "You are a meal planning assistant that generates a single meal based on strict dietary requirements.",
        LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["nl"]),
        f"TASK: Generate one {slot} meal for {date}.",
        f"CALORIE TARGET:\n- {calorie_info}" + (f"\n- Max prep time: {prep_time} minutes" if prep_time else ""),
        "DIET RULES & CONSTRAINTS:\n" + build_constraint_summary(rules),
        "\n".join(f"- {line}" for line in overrides),
        preference_info,
        _context_block(request.model_copy(update={"slots": [slot]}), rules, pool, pool_limit, avoid),
        minimal_change,
        "CRITICAL REQUIREMENTS:\n"
        + _output_rules(f'the date "{date}" and slot "{slot}"', pool is not None),
        'Respond with {"date": "...", "meal": {...}}. Output ONLY the JSON object, nothing else.',
    ]
    return "\n\n".join(section for section in sections if section)


def build_repair_prompt(
    *,
    original_prompt: str,
    bad_output: str,
    issues: str,
    response_schema: Dict[str, Any],
    has_shake_smoothie_preference: bool = False,
) -> str:
    issues_lower = issues.lower()
    hints: List[str] = []
    if "meal_preference_miss" in issues_lower and ("eiwitshake" in issues_lower or "eiwit shake" in issues_lower):
        hints.append(
            'CRITICAL FIX for MEAL_PREFERENCE_MISS: The user requires "eiwitshake" at breakfast (or the slot '
            "mentioned). You MUST replace any fruit-only smoothie with a protein shake: the meal name and "
            "ingredients MUST include a protein source (eiwitpoeder, whey, protein). A smoothie that only has "
            "fruit/drink does NOT satisfy eiwitshake."
        )
    if "forbidden_in_shake_smoothie" in issues_lower or has_shake_smoothie_preference:
        hints.append(
            "CRITICAL FIX for SHAKES/SMOOTHIES: Shakes and smoothies must NOT contain meat, chicken, or fish "
            "(vlees, kip, vis). Remove any such ingredients from the affected meals and replace with dairy, "
            "fruit, vegetables, or protein powder only."
        )
    hint_block = "\n\n".join(hints)
    return "\n\n".join(
        section
        for section in [
            "You previously generated a meal plan, but the output had issues that need to be fixed.",
            f"ORIGINAL REQUEST:\n{original_prompt}",
            f"ISSUES FOUND:\n{issues}",
            hint_block,
            f"INVALID OUTPUT (to be repaired):\n{bad_output}",
            f"REQUIRED JSON SCHEMA:\n{format_json(response_schema)}",
            dedent(
                """
                TASK: Repair the output above to create a valid meal plan that:
                1. Is valid JSON conforming exactly to the provided schema
                2. Does NOT add any extra fields beyond what the schema requires
                3. Respects ALL hard constraints from the original request (especially allergies, forbidden ingredients, and required categories)
                4. Maintains the same date range and meal slots as requested
                5. Outputs ONLY the JSON object - no markdown, no explanations, no code blocks

                Generate the repaired meal plan now. Output ONLY the JSON object, nothing else.
                """
            ).strip(),
        ]
        if section
    )


def has_shake_smoothie_preference(request: MealPlanRequest) -> bool:
    prefs = request.profile.mealPreferences
    return any(
        "shake" in pref.lower() or "smoothie" in pref.lower()
        for slot in ("breakfast", "lunch", "dinner", "snack")
        for pref in prefs.for_slot(slot)
    )
