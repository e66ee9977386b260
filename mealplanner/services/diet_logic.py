"""Per-day category quotas: DROP, FORCE, LIMIT and PASS phases.

Each ingredient belongs to at most one constraint, the first one (lowest
priority value) whose terms match it; counts only include ingredients a
constraint wins.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional, Sequence

from ..schemas import DietLogicConstraint, DietLogicResult, ForceDeficitItem

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
MIN_REVERSE_TOKEN_LENGTH = 4

PASS_SUMMARY = "Dieetregels: alle fases geslaagd."


def _name_forms(name: str) -> List[str]:
    raw = (name or "").strip().lower()
    if not raw:
        return []
    forms = [raw]
    spaced = raw.replace("_", " ")
    if spaced not in forms:
        forms.append(spaced)
    return forms


def ingredient_matches_terms(name: str, terms: Sequence[str]) -> bool:
    for form in _name_forms(name):
        tokens = _WHITESPACE.split(form)
        for term in terms:
            if not term:
                continue
            for variant in {term.lower(), term.lower().replace("_", " ")}:
                if variant in form:
                    return True
                if any(
                    token == variant or (len(token) >= MIN_REVERSE_TOKEN_LENGTH and token in variant)
                    for token in tokens
                ):
                    return True
    return False


def winning_constraint(name: str, by_priority: Sequence[DietLogicConstraint]) -> Optional[DietLogicConstraint]:
    for constraint in by_priority:
        if ingredient_matches_terms(name, constraint.terms):
            return constraint
    return None


def evaluate_diet_logic(
    constraints: Sequence[DietLogicConstraint],
    ingredients: Sequence[str],
) -> DietLogicResult:
    by_priority = sorted(constraints, key=lambda c: c.priority)
    winners: Dict[int, Optional[DietLogicConstraint]] = {
        index: winning_constraint(name, by_priority) for index, name in enumerate(ingredients)
    }
    warnings: List[str] = []

    def count(constraint: DietLogicConstraint) -> int:
        return sum(1 for winner in winners.values() if winner is not None and winner.id == constraint.id)

    drop_violations: List[str] = []
    for index, name in enumerate(ingredients):
        winner = winners[index]
        if winner is None or winner.dietLogic != "drop":
            continue
        message = f'{name} hoort bij "{winner.categoryNameNl}" (DROP - niet toegestaan)'
        (drop_violations if winner.strictness == "hard" else warnings).append(message)
    if drop_violations:
        return DietLogicResult(
            ok=False,
            summary=f"Fase 1 DROP: {len(drop_violations)} overtreding(en).",
            warnings=warnings,
        )

    deficits: List[ForceDeficitItem] = []
    for constraint in by_priority:
        if constraint.dietLogic != "force":
            continue
        required = constraint.minPerDay or constraint.minPerWeek or 0
        if required > 0 and count(constraint) < required:
            deficits.append(
                ForceDeficitItem(
                    categoryCode=constraint.categoryCode,
                    categoryNameNl=constraint.categoryNameNl or constraint.categoryCode,
                    minPerDay=constraint.minPerDay,
                    minPerWeek=constraint.minPerWeek,
                )
            )
    if deficits:
        return DietLogicResult(
            ok=False,
            summary=f"Fase 2 FORCE: quotum niet gehaald voor {len(deficits)} categorie(ën).",
            warnings=warnings,
            forceDeficits=deficits,
        )

    limit_violations: List[str] = []
    for constraint in by_priority:
        if constraint.dietLogic != "limit":
            continue
        limit = constraint.maxPerDay if constraint.maxPerDay is not None else constraint.maxPerWeek
        used = count(constraint)
        if limit is not None and used > limit:
            message = f'"{constraint.categoryNameNl}": {used} gebruikt, max {limit}'
            (limit_violations if constraint.strictness == "hard" else warnings).append(message)
    if limit_violations:
        return DietLogicResult(
            ok=False,
            summary=f"Fase 3 LIMIT: overschrijding voor {len(limit_violations)} categorie(ën).",
            warnings=warnings,
        )

    return DietLogicResult(ok=True, summary=PASS_SUMMARY, warnings=warnings)


class StaticDietLogicLoader:
    def __init__(self, constraints_by_diet: Mapping[str, Sequence[DietLogicConstraint]]) -> None:
        self._constraints_by_diet = {diet: list(items) for diet, items in constraints_by_diet.items()}

    async def load(self, diet_id: str) -> List[DietLogicConstraint]:
        return list(self._constraints_by_diet.get(diet_id, []))

    def evaluate(self, constraints: Sequence[DietLogicConstraint], ingredients: Sequence[str]) -> DietLogicResult:
        return evaluate_diet_logic(constraints, ingredients)
