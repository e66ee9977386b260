from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Sequence

from ..errors import CulinaryViolationError, ConfigInvalidError
from ..schemas import CulinaryRule, Meal, MealPlanResponse

logger = logging.getLogger(__name__)

SMOOTHIE_SLOT = "smoothie"
SMOOTHIE_KEYWORDS = ("smoothie", "shake")

VIOLATION_MESSAGE = (
    "Er zit een culinaire mismatch in het menu (bijv. onlogische combinatie in een smoothie). "
    "Probeer opnieuw of pas je regels aan."
)


def meal_text(meal: Meal) -> str:
    parts = [meal.name or ""]
    for ref in meal.ingredientRefs:
        if ref.displayName:
            parts.append(ref.displayName)
        if ref.nevoCode:
            parts.append(ref.nevoCode)
    return " ".join(parts)


def applicable_slot_types(meal: Meal, text: str) -> List[str]:
    slots = [meal.slot]
    lowered = text.lower()
    if any(keyword in lowered for keyword in SMOOTHIE_KEYWORDS):
        slots.append(SMOOTHIE_SLOT)
    return slots


@lru_cache(maxsize=256)
def _compile_word(term: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)


@lru_cache(maxsize=256)
def _compile_rule_pattern(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def compile_rule_regex(rule: CulinaryRule) -> re.Pattern:
    try:
        return _compile_rule_pattern(rule.matchValue)
    except re.error as exc:
        raise ConfigInvalidError(
            "Ongeldige culinaire regel (regex). Pas de regel in de configuratie aan.",
            {"rule_code": rule.ruleCode},
        ) from exc


def term_matches(text: str, term: str) -> bool:
    """Single words match on word boundaries ("ei" is not "eiwit"); phrases match as substrings."""
    value = (term or "").lower().strip()
    if not value:
        return False
    if " " in value:
        return value in text.lower()
    return _compile_word(value).search(text) is not None


def rule_matches(rule: CulinaryRule, text: str) -> bool:
    if rule.matchMode == "regex":
        return compile_rule_regex(rule).search(text) is not None
    return term_matches(text, rule.matchValue)


def find_culinary_violations(plan: MealPlanResponse, rules: Sequence[CulinaryRule]) -> List[Dict[str, Any]]:
    violations: List[Dict[str, Any]] = []
    if not rules:
        return violations
    for day_index, day in enumerate(plan.days):
        for meal in day.meals:
            text = meal_text(meal)
            slots = applicable_slot_types(meal, text)
            for rule in rules:
                if rule.slotType not in slots or not rule_matches(rule, text):
                    continue
                if rule.action == "warn":
                    logger.warning(
                        "Culinary warn %s (%s) slot=%s date=%s", rule.ruleCode, rule.reasonCode, meal.slot, day.date
                    )
                    continue
                violations.append(
                    {
                        "rule_code": rule.ruleCode,
                        "reason_code": rule.reasonCode,
                        "slot": meal.slot,
                        "slot_type": rule.slotType,
                        "match_value": rule.matchValue,
                        "day_index": day_index,
                        "date": day.date,
                    }
                )
    return violations


def check_culinary_coherence(plan: MealPlanResponse, rules: Sequence[CulinaryRule]) -> None:
    violations = find_culinary_violations(plan, rules)
    if violations:
        logger.info("Culinary coherence blocked plan violations=%s", len(violations))
        raise CulinaryViolationError(VIOLATION_MESSAGE, violations)
