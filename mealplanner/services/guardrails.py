from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..schemas import (
    GuardDecision,
    GuardrailsRuleset,
    GuardRule,
    GuardTargets,
    MealPlanResponse,
    TextAtom,
)

logger = logging.getLogger(__name__)

SPECIFICITY_RANK = {"user": 3, "diet": 2, "global": 1}

KNOWN_REASON_CODES = frozenset(
    {
        "FORBIDDEN_INGREDIENT",
        "ALLERGEN_PRESENT",
        "DISLIKED_INGREDIENT",
        "MISSING_REQUIRED_CATEGORY",
        "INVALID_CATEGORY",
        "INVALID_NEVO_CODE",
        "INVALID_CANONICAL_ID",
        "CALORIE_TARGET_MISS",
        "MACRO_TARGET_MISS",
        "MEAL_PREFERENCE_MISS",
        "MEAL_STRUCTURE_VIOLATION",
        "SOFT_CONSTRAINT_VIOLATION",
        "EVALUATOR_ERROR",
        "EVALUATOR_WARNING",
        "RULESET_LOAD_ERROR",
        "UNKNOWN_ERROR",
    }
)


def match_exact(text: str, term: str) -> bool:
    return text.lower().strip() == term.lower().strip()


def match_word_boundary(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term.lower())}\b", text.lower()) is not None


def match_substring(text: str, term: str) -> bool:
    return term.lower() in text.lower()


def match_canonical_id(atom: TextAtom, canonical_id: str) -> bool:
    if atom.canonicalId:
        return atom.canonicalId == canonical_id
    return atom.text == canonical_id


def match_text_atom(atom: TextAtom, term: str, mode: str) -> bool:
    if mode == "exact":
        return match_exact(atom.text, term)
    if mode == "word_boundary":
        return match_word_boundary(atom.text, term)
    if mode == "substring":
        return match_substring(atom.text, term)
    if mode == "canonical_id":
        return match_canonical_id(atom, term)
    return False


def sort_rules(rules: Iterable[GuardRule]) -> List[GuardRule]:
    """Priority DESC, then specificity (user > diet > global), then id."""
    return sorted(rules, key=lambda rule: (-rule.priority, -SPECIFICITY_RANK[rule.metadata.specificity], rule.id))


def compute_content_hash(rules: Sequence[GuardRule]) -> str:
    canonical = [rule.model_dump(mode="json") for rule in sort_rules(rules)]
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _match_mode(rule: GuardRule, target_type: str) -> str:
    if rule.match.preferredMatchMode:
        return rule.match.preferredMatchMode
    if target_type == "metadata" and rule.match.canonicalId:
        return "canonical_id"
    if target_type in ("ingredient", "step"):
        return "word_boundary"
    return "exact"


def _config_error(rule: GuardRule) -> bool:
    return rule.match.preferredMatchMode == "substring" and rule.target == "step"


def _rule_matches(rule: GuardRule, targets: GuardTargets) -> List[Dict[str, Any]]:
    slots: List[tuple[str, List[TextAtom]]] = []
    if rule.action == "block" and rule.target == "ingredient":
        slots = [("ingredient", targets.ingredient), ("step", targets.step)]
    else:
        slots = [(rule.target, getattr(targets, rule.target))]

    matches: List[Dict[str, Any]] = []
    seen_paths: set[str] = set()

    def record(atom: TextAtom, matched: str, mode: str) -> None:
        if atom.path in seen_paths:
            return
        seen_paths.add(atom.path)
        matches.append(
            {"ruleId": rule.id, "ruleCode": rule.metadata.ruleCode, "targetPath": atom.path, "matchedText": matched, "matchMode": mode}
        )

    for target_type, atoms in slots:
        if not atoms:
            continue
        mode = _match_mode(rule, target_type)
        for term in [rule.match.term, *rule.match.synonyms]:
            for atom in atoms:
                if term and match_text_atom(atom, term, mode):
                    record(atom, term, mode)
        if rule.match.canonicalId and target_type == "metadata":
            for atom in atoms:
                if match_canonical_id(atom, rule.match.canonicalId):
                    record(atom, rule.match.canonicalId, "canonical_id")
    return matches


def _reason_code(rule: GuardRule) -> str:
    if rule.metadata.ruleCode in KNOWN_REASON_CODES:
        return rule.metadata.ruleCode
    if rule.strictness == "soft":
        return "SOFT_CONSTRAINT_VIOLATION"
    return "FORBIDDEN_INGREDIENT"


@dataclass
class _DecisionState:
    hard_block: bool = False
    soft_block: bool = False
    reason_codes: List[str] = field(default_factory=list)
    applied_rule_ids: List[str] = field(default_factory=list)
    matches: List[Dict[str, Any]] = field(default_factory=list)


def evaluate_guardrails(
    ruleset: GuardrailsRuleset,
    context: Optional[Mapping[str, Any]],
    targets: GuardTargets,
) -> GuardDecision:
    """Match every rule against the targets; hard blocks block, soft blocks only warn.

    A rule whose configuration is invalid (substring matching on step text)
    fails closed when hard and degrades to a warning when soft.
    """
    state = _DecisionState()
    for rule in sort_rules(ruleset.rules):
        if _config_error(rule):
            code = "EVALUATOR_ERROR" if rule.strictness == "hard" else "EVALUATOR_WARNING"
            if rule.strictness == "hard":
                state.hard_block = True
            else:
                state.soft_block = True
            state.applied_rule_ids.append(rule.id)
            state.reason_codes.append(code)
            continue
        matches = _rule_matches(rule, targets)
        state.matches.extend(matches)
        if not matches or rule.action == "allow":
            continue
        if rule.strictness == "hard":
            state.hard_block = True
        else:
            state.soft_block = True
        state.applied_rule_ids.append(rule.id)
        state.reason_codes.append(_reason_code(rule))

    reason_codes = list(dict.fromkeys(state.reason_codes))
    if state.hard_block:
        decision = GuardDecision(ok=False, outcome="blocked", reasonCodes=reason_codes)
    elif state.soft_block:
        decision = GuardDecision(ok=True, outcome="warned", reasonCodes=reason_codes)
    else:
        decision = GuardDecision(ok=True, outcome="allowed", reasonCodes=reason_codes)
    logger.debug(
        "Guardrails evaluated diet=%s mode=%s outcome=%s applied=%s",
        ruleset.dietId,
        (context or {}).get("mode"),
        decision.outcome,
        state.applied_rule_ids,
    )
    return decision


def hard_block_terms(ruleset: GuardrailsRuleset) -> List[str]:
    """Terms and synonyms of hard ingredient block rules, deduplicated in rule order."""
    terms: List[str] = []
    for rule in sort_rules(ruleset.rules):
        if rule.action != "block" or rule.strictness != "hard" or rule.target != "ingredient":
            continue
        for term in [rule.match.term, *rule.match.synonyms]:
            cleaned = term.strip().lower()
            if cleaned and cleaned not in terms:
                terms.append(cleaned)
    return terms


def plan_to_guard_targets(plan: MealPlanResponse, locale: Optional[str] = None) -> GuardTargets:
    targets = GuardTargets()
    for day_index, day in enumerate(plan.days):
        for meal_index, meal in enumerate(day.meals):
            meal_path = f"days[{day_index}].meals[{meal_index}]"
            name = (meal.name or "").strip()
            if name:
                targets.metadata.append(TextAtom(text=name.lower(), path=f"{meal_path}.name", locale=locale))
            for ref_index, ref in enumerate(meal.ingredientRefs):
                text = (ref.displayName or "").strip() or f"NEVO-{ref.nevoCode}"
                targets.ingredient.append(
                    TextAtom(
                        text=text.lower(),
                        path=f"{meal_path}.ingredients[{ref_index}]",
                        canonicalId=ref.nevoCode,
                        locale=locale,
                    )
                )
                for tag_index, tag in enumerate(ref.tags):
                    if tag.strip():
                        targets.metadata.append(
                            TextAtom(
                                text=tag.strip().lower(),
                                path=f"{meal_path}.ingredients[{ref_index}].tags[{tag_index}]",
                                locale=locale,
                            )
                        )
    return targets


def plan_ingredients_per_day(plan: MealPlanResponse) -> List[List[str]]:
    days: List[List[str]] = []
    for day in plan.days:
        names: List[str] = []
        for meal in day.meals:
            for ref in meal.ingredientRefs:
                text = (ref.displayName or "").strip() or (f"NEVO-{ref.nevoCode}" if ref.nevoCode else "")
                if text:
                    names.append(text)
        days.append(names)
    return days


class StaticGuardrailsLoader:
    """Serves rulesets from an in-memory mapping keyed by diet id."""

    def __init__(self, rules_by_diet: Mapping[str, Sequence[GuardRule]], version: str = "1") -> None:
        self._rules_by_diet = {diet: list(rules) for diet, rules in rules_by_diet.items()}
        self.version = version

    async def load(self, diet_id: str, mode: str, locale: str) -> GuardrailsRuleset:
        rules = self._rules_by_diet.get(diet_id, [])
        return GuardrailsRuleset(
            dietId=diet_id,
            version=self.version,
            contentHash=compute_content_hash(rules),
            rules=rules,
            provenance={"source": "static", "mode": mode, "locale": locale},
        )

    def evaluate(self, ruleset: GuardrailsRuleset, context: Dict[str, Any], targets: GuardTargets) -> GuardDecision:
        return evaluate_guardrails(ruleset, context, targets)
