from __future__ import annotations

import unittest
from collections import Counter
from unittest import IsolatedAsyncioTestCase

from mealplanner.errors import InsufficientIngredientsError
from mealplanner.schemas import (
    CandidatePool,
    FlavorPoolItem,
    FoodCandidate,
    IngredientRef,
    NamePattern,
    PoolIngredient,
    RecipeTemplate,
    TemplateGeneratorConfig,
    TemplatePools,
    TemplateSlotSpec,
)
from mealplanner.services.template_generator import (
    TemplateGenerator,
    build_name_from_pattern,
    filter_pools,
    is_fat_like,
    merge_pools,
    pick_least_used,
)

from tests.fakes import NUTRIENTS, FakeNutritionLookup, make_request


def item(code: str) -> PoolIngredient:
    return PoolIngredient(nevoCode=code, name=NUTRIENTS[code].name)


POOLS = TemplatePools(
    protein=[item("1001"), item("1002"), item("1004")],
    veg=[item("2001"), item("2002"), item("2003"), item("2004")],
    fat=[item("4001"), item("4002")],
    flavor=[FlavorPoolItem(nevoCode="8001", name="Kerrie", defaultG=3)],
)

CONFIG = TemplateGeneratorConfig(
    templates=[
        RecipeTemplate(
            id="bowl",
            nameNl="Bowl",
            slots=[TemplateSlotSpec(slot="protein", defaultG=300, minG=80, maxG=150)],
        ),
        RecipeTemplate(id="wok", nameNl="Wokgerecht"),
    ],
    namePatterns=[NamePattern(templateKey="bowl", slot="lunch", pattern="{protein} bowl met {veg1} ({flavor})")],
)


def _codes(plan):
    return [[[ref.nevoCode for ref in meal.ingredientRefs] for meal in day.meals] for day in plan.days]


class PoolHelpersTest(unittest.TestCase):
    def test_merge_puts_configured_items_first_and_dedupes(self):
        candidates = CandidatePool(
            proteins=[FoodCandidate(nevoCode="1003", name="Eieren"), FoodCandidate(nevoCode="1001", name="Kipfilet")],
            fruits=[FoodCandidate(nevoCode="3001", name="Banaan")],
        )
        merged = merge_pools(TemplatePools(protein=[item("1001")]), candidates)
        self.assertEqual([p.nevoCode for p in merged.protein], ["1001", "1003"])
        self.assertEqual([v.nevoCode for v in merged.veg], ["3001"])

    def test_filter_raises_when_protein_pool_is_emptied(self):
        with self.assertRaises(InsufficientIngredientsError) as ctx:
            filter_pools(POOLS, ["kip", "Zalm", "tofu"])
        self.assertEqual(ctx.exception.empty_pools, ["protein"])
        self.assertEqual(ctx.exception.code, "INSUFFICIENT_INGREDIENTS")

    def test_filter_keeps_empty_fat_pool(self):
        filtered = filter_pools(POOLS, ["olie", "avocado"])
        self.assertEqual(filtered.fat, [])
        self.assertEqual(len(filtered.protein), 3)

    def test_pick_least_used_is_seeded(self):
        usage = {"1001": 2}
        picks = {pick_least_used(POOLS.protein, usage, set(), seed).nevoCode for seed in range(6)}
        self.assertEqual(picks, {"1002", "1004"})
        self.assertEqual(pick_least_used(POOLS.protein, {}, {"1001", "1002"}, 0).nevoCode, "1004")

    def test_name_pattern_drops_empty_flavor(self):
        refs = [IngredientRef(nevoCode="1001", quantityG=100, displayName="Kipfilet"),
                IngredientRef(nevoCode="2001", quantityG=80, displayName="Broccoli")]
        self.assertEqual(build_name_from_pattern("{protein} met {veg1} ({flavor})", refs, "Bowl"), "Kipfilet met Broccoli")
        self.assertTrue(is_fat_like("Olijfolie extra vierge"))
        self.assertFalse(is_fat_like("Kipfilet"))


class TemplateGeneratorTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.generator = TemplateGenerator(FakeNutritionLookup())

    async def test_same_seed_gives_same_plan(self):
        request = make_request(days=3)
        first = await self.generator.generate(request, CONFIG, POOLS, retry_seed=0)
        second = await self.generator.generate(request, CONFIG, POOLS, retry_seed=0)
        self.assertEqual(_codes(first.plan), _codes(second.plan))
        self.assertEqual(
            [m.name for d in first.plan.days for m in d.meals], [m.name for d in second.plan.days for m in d.meals]
        )

    async def test_retry_seed_changes_first_protein(self):
        request = make_request(days=2)
        base = await self.generator.generate(request, CONFIG, POOLS, retry_seed=0)
        retry = await self.generator.generate(request, CONFIG, POOLS, retry_seed=1)
        self.assertEqual(base.plan.days[0].meals[0].ingredientRefs[0].nevoCode, "1001")
        self.assertEqual(retry.plan.days[0].meals[0].ingredientRefs[0].nevoCode, "1002")

    async def test_meals_use_pool_codes_and_template_grams(self):
        request = make_request(days=2, slots=("lunch",))
        result = await self.generator.generate(request, CONFIG, POOLS)

        allowed = {p.nevoCode for pool in (POOLS.protein, POOLS.veg, POOLS.fat, POOLS.flavor) for p in pool}
        for day in result.plan.days:
            for meal in day.meals:
                codes = [ref.nevoCode for ref in meal.ingredientRefs]
                self.assertTrue(set(codes) <= allowed)
                self.assertEqual(len(codes), len(set(codes)))
                self.assertLessEqual(len(codes), CONFIG.limits.maxIngredients)
                self.assertIsNotNone(meal.estimatedMacros)

        bowl, wok = result.plan.days[0].meals[0], result.plan.days[1].meals[0]
        self.assertEqual(bowl.ingredientRefs[0].quantityG, 150)
        self.assertTrue(bowl.name.startswith("Kipfilet bowl met "))
        self.assertEqual(wok.name, "Wokgerecht (2026-01-06)")
        self.assertEqual(wok.ingredientRefs[0].quantityG, 120)

    async def test_protein_rotation_is_balanced(self):
        request = make_request(days=6, slots=("dinner",))
        result = await self.generator.generate(request, CONFIG, POOLS)

        counts = Counter(day.meals[0].ingredientRefs[0].nevoCode for day in result.plan.days)
        self.assertEqual(sorted(counts.values()), [2, 2, 2])

    async def test_metadata_and_template_info(self):
        request = make_request(days=2)
        result = await self.generator.generate(request, CONFIG, POOLS)

        self.assertEqual(result.plan.metadata["totalMeals"], 6)
        self.assertEqual(result.plan.metadata["dietKey"], "balanced")
        self.assertEqual(result.template_info["rotation"], ["bowl", "wok"])
        self.assertEqual(result.template_info["usedTemplateIds"], ["bowl", "wok"])
        self.assertEqual(len(result.template_info["mealQualities"]), 6)
        self.assertIn("repeatsForced", result.template_info["quality"])

    async def test_no_templates(self):
        with self.assertRaises(InsufficientIngredientsError):
            await self.generator.generate(make_request(), TemplateGeneratorConfig(), POOLS)


if __name__ == "__main__":
    unittest.main()
