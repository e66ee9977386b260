from __future__ import annotations

import json
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from mealplanner.config import Settings
from mealplanner.schemas import FoodCandidate, Meal, MealPlanRequest, NutrientRecord

START = "2026-01-05"


def _record(code: str, name: str, kcal: float, protein: float, carbs: float, fat: float) -> NutrientRecord:
    return NutrientRecord(nevoCode=code, name=name, energyKcal=kcal, proteinG=protein, carbsG=carbs, fatG=fat)


NUTRIENTS: Dict[str, NutrientRecord] = {
    record.nevoCode: record
    for record in [
        _record("1001", "Kipfilet", 165, 31, 0, 3.6),
        _record("1002", "Zalm", 208, 20, 0, 13),
        _record("1003", "Eieren", 143, 12.6, 0.7, 9.5),
        _record("1004", "Tofu", 144, 15, 3, 8.7),
        _record("2001", "Broccoli", 34, 2.8, 7, 0.4),
        _record("2002", "Spinazie", 23, 2.9, 3.6, 0.4),
        _record("2003", "Wortel", 41, 0.9, 10, 0.2),
        _record("2004", "Paprika", 31, 1, 6, 0.3),
        _record("3001", "Banaan", 89, 1.1, 23, 0.3),
        _record("3002", "Aardbei", 32, 0.7, 7.7, 0.3),
        _record("4001", "Olijfolie", 884, 0, 0, 100),
        _record("4002", "Avocado", 160, 2, 8.5, 14.7),
        _record("5001", "Pindakaas", 588, 25, 20, 50),
        _record("6001", "Havermout", 379, 13, 67, 6.5),
        _record("7001", "Melk halfvol", 46, 3.5, 4.8, 1.5),
        _record("7002", "Eiwitpoeder", 380, 80, 8, 5),
        _record("8001", "Kerrie", 325, 14, 58, 14),
    ]
}


class FakeNutritionLookup:
    """In-memory nutrition table; search matches names by substring unless overridden per term."""

    def __init__(
        self,
        records: Optional[Mapping[str, NutrientRecord]] = None,
        search_results: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        self.records = dict(records if records is not None else NUTRIENTS)
        self.search_results = {term: list(codes) for term, codes in (search_results or {}).items()}
        self.resolve_calls: List[str] = []
        self.search_calls: List[str] = []

    async def resolve(self, code: str) -> Optional[NutrientRecord]:
        self.resolve_calls.append(code)
        return self.records.get(code)

    async def search(self, term: str, limit: int) -> List[FoodCandidate]:
        self.search_calls.append(term)
        if term in self.search_results:
            codes = self.search_results[term]
        else:
            codes = [code for code, record in self.records.items() if term.lower() in record.name.lower()]
        return [FoodCandidate(nevoCode=code, name=self.records[code].name) for code in codes[:limit]]


class ScriptedGenerator:
    """Returns canned outputs in order and records every request."""

    def __init__(self, outputs: Iterable[Any]) -> None:
        self.outputs = [item if isinstance(item, str) else json.dumps(item) for item in outputs]
        self.calls: List[Dict[str, Any]] = []

    async def generate_structured(
        self,
        *,
        prompt: str,
        output_schema: Dict[str, Any],
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "schema": output_schema,
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            }
        )
        if len(self.calls) > len(self.outputs):
            raise AssertionError(f"unexpected generator call #{len(self.calls)}")
        return self.outputs[len(self.calls) - 1]

    @property
    def prompts(self) -> List[str]:
        return [call["prompt"] for call in self.calls]


class StaticMealPool:
    def __init__(self, meals: Sequence[Meal], store_ids: Sequence[str] = ()) -> None:
        self.meals = list(meals)
        self.store_ids = set(store_ids)

    async def meals_by_slot(self, slots: Sequence[str]) -> Dict[str, List[Meal]]:
        grouped: Dict[str, List[Meal]] = {slot: [] for slot in slots}
        for meal in self.meals:
            if meal.slot in grouped:
                grouped[meal.slot].append(meal)
        return grouped

    def source_of(self, meal: Meal) -> str:
        return "custom_meals" if meal.id in self.store_ids else "meal_history"


class FakeCanonicalLookup:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: List[List[str]] = []

    async def canonical_ids(self, codes: Sequence[str]) -> Dict[str, str]:
        self.batches.append(list(codes))
        if self.fail:
            raise RuntimeError("canonical service down")
        return {code: f"ing_{code}" for code in codes}


class FakeEditability:
    def __init__(self, locked: Optional[Dict[str, str]] = None) -> None:
        self.locked = dict(locked or {})

    async def check(self, plan_id: str, date: str, meal_slot: Optional[str] = None) -> Optional[str]:
        return self.locked.get(date)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {"openai_api_key": None, "redis_url": None, "sentry_dsn": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def dates(count: int, start: str = START) -> List[str]:
    first = date.fromisoformat(start)
    return [(first + timedelta(days=offset)).isoformat() for offset in range(count)]


def make_request(days: int = 1, slots: Sequence[str] = ("breakfast", "lunch", "dinner"), **profile: Any) -> MealPlanRequest:
    all_dates = dates(days)
    return MealPlanRequest.model_validate(
        {
            "dateRange": {"start": all_dates[0], "end": all_dates[-1]},
            "slots": list(slots),
            "profile": {"dietKey": "balanced", **profile},
        }
    )


def ref(code: str, grams: float) -> Dict[str, Any]:
    return {"nevoCode": code, "quantityG": grams, "displayName": NUTRIENTS[code].name}


DEFAULT_MEALS: Dict[str, Dict[str, Any]] = {
    "breakfast": {"name": "Havermout met banaan", "ingredientRefs": [ref("6001", 60), ref("3001", 100), ref("7001", 200)]},
    "lunch": {"name": "Kip met broccoli", "ingredientRefs": [ref("1001", 120), ref("2001", 150), ref("4001", 10)]},
    "dinner": {"name": "Zalm met spinazie", "ingredientRefs": [ref("1002", 150), ref("2002", 100), ref("2003", 80)]},
    "snack": {"name": "Aardbeien met kwark", "ingredientRefs": [ref("3002", 150)]},
}


def meal_payload(date: str, slot: str, **overrides: Any) -> Dict[str, Any]:
    base = DEFAULT_MEALS[slot]
    payload = {
        "id": f"{date}-{slot}",
        "name": base["name"],
        "slot": slot,
        "date": date,
        "ingredientRefs": [dict(item) for item in base["ingredientRefs"]],
    }
    payload.update(overrides)
    return payload


def day_payload(date: str, slots: Sequence[str] = ("breakfast", "lunch", "dinner"), **by_slot: Dict[str, Any]) -> Dict[str, Any]:
    return {"date": date, "meals": [meal_payload(date, slot, **by_slot.get(slot, {})) for slot in slots]}


def plan_payload(
    days: int = 1,
    slots: Sequence[str] = ("breakfast", "lunch", "dinner"),
    overrides: Optional[Mapping[int, Mapping[str, Dict[str, Any]]]] = None,
) -> Dict[str, Any]:
    overrides = overrides or {}
    return {
        "days": [
            day_payload(date, slots, **dict(overrides.get(index, {})))
            for index, date in enumerate(dates(days))
        ]
    }


def make_meal(date: str, slot: str, **overrides: Any) -> Meal:
    return Meal.model_validate(meal_payload(date, slot, **overrides))
