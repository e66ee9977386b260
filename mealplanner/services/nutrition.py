from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from ..interfaces import NutritionLookup
from ..schemas import IngredientRef, Meal, MacroTotals, NutrientRecord

logger = logging.getLogger(__name__)


async def resolve_records(
    lookup: NutritionLookup,
    codes: Iterable[str],
) -> Dict[str, Optional[NutrientRecord]]:
    """Resolve each distinct code once; lookups run concurrently."""
    unique = [code for code in dict.fromkeys(codes) if code]
    results = await asyncio.gather(*(lookup.resolve(code) for code in unique))
    return dict(zip(unique, results))


async def verify_codes(lookup: NutritionLookup, codes: Iterable[str]) -> set[str]:
    """Return the subset of codes that do not resolve."""
    records = await resolve_records(lookup, codes)
    missing = {code for code, record in records.items() if record is None}
    if missing:
        logger.info("Unresolved nutrition codes: %s", sorted(missing))
    return missing


def sum_macros(refs: Sequence[IngredientRef], records: Dict[str, Optional[NutrientRecord]]) -> MacroTotals:
    totals = MacroTotals()
    for ref in refs:
        record = records.get(ref.nevoCode)
        if record is None:
            continue
        factor = ref.quantityG / 100.0
        totals.calories += record.energyKcal * factor
        totals.proteinG += record.proteinG * factor
        totals.carbsG += record.carbsG * factor
        totals.fatG += record.fatG * factor
        totals.saturatedFatG += record.saturatedFatG * factor
    return totals


async def calc_meal_macros(lookup: NutritionLookup, refs: Sequence[IngredientRef]) -> MacroTotals:
    records = await resolve_records(lookup, (ref.nevoCode for ref in refs))
    return sum_macros(refs, records)


async def calc_day_macros(lookup: NutritionLookup, meals: Sequence[Meal]) -> MacroTotals:
    refs: List[IngredientRef] = [ref for meal in meals for ref in meal.ingredientRefs if ref.nevoCode]
    return await calc_meal_macros(lookup, refs)
