"""Collaborators the planner consumes but does not own.

Each protocol is satisfied by production adapters living outside this package
(nutrition database, rule loaders, recipe store) and by in-memory fakes in tests.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence

from .schemas import (
    DietLogicConstraint,
    DietLogicResult,
    FoodCandidate,
    GuardDecision,
    GuardrailsRuleset,
    GuardTargets,
    Meal,
    MealPlanResponse,
    NutrientRecord,
    SanityResult,
)


class NutritionLookup(Protocol):
    async def resolve(self, code: str) -> Optional[NutrientRecord]:
        ...

    async def search(self, term: str, limit: int) -> List[FoodCandidate]:
        ...


class GenerativeTextService(Protocol):
    async def generate_structured(
        self,
        *,
        prompt: str,
        output_schema: Dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        ...


class GuardrailsRulesetLoader(Protocol):
    async def load(self, diet_id: str, mode: str, locale: str) -> GuardrailsRuleset:
        ...

    def evaluate(self, ruleset: GuardrailsRuleset, context: Dict[str, Any], targets: GuardTargets) -> GuardDecision:
        ...


class DietLogicLoader(Protocol):
    async def load(self, diet_id: str) -> List[DietLogicConstraint]:
        ...

    def evaluate(self, constraints: Sequence[DietLogicConstraint], ingredients: Sequence[str]) -> DietLogicResult:
        ...


class PersistedMealPool(Protocol):
    async def meals_by_slot(self, slots: Sequence[str]) -> Dict[str, List[Meal]]:
        ...

    def source_of(self, meal: Meal) -> str:
        """Return 'custom_meals' for recipe-store meals, anything else for meal history."""
        ...


class SanityValidator(Protocol):
    def validate(self, plan: MealPlanResponse) -> SanityResult:
        ...


class CanonicalIdLookup(Protocol):
    async def canonical_ids(self, codes: Sequence[str]) -> Dict[str, str]:
        ...


class EditabilityChecker(Protocol):
    async def check(self, plan_id: str, date: str, meal_slot: Optional[str] = None) -> Optional[str]:
        """Return a lock reason when the target is already committed, else None."""
        ...
