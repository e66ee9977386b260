from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Protocol, Sequence

import redis

from ..config import Settings, get_settings
from ..interfaces import NutritionLookup
from ..schemas import CandidatePool, FoodCandidate, MealPlanRequest

logger = logging.getLogger(__name__)

# Allergen keyword -> ingredient names that carry it.
ALLERGEN_SYNONYMS: Dict[str, List[str]] = {
    "pinda": ["pinda", "pindakaas", "arachide"],
    "pinda's": ["pinda", "pindakaas", "arachide"],
    "gluten": ["gluten", "tarwe", "rogge", "gerst", "spelt", "couscous"],
    "lactose": ["lactose", "melk", "kaas", "yoghurt", "kwark", "room", "boter"],
    "zuivel": ["zuivel", "melk", "kaas", "yoghurt", "kwark", "room", "boter"],
    "noten": ["noten", "amandel", "hazelnoot", "walnoot", "cashew", "pecan", "pistache", "macadamia"],
    "ei": ["ei", "eieren", "eigeel", "eiwit"],
    "soja": ["soja", "tofu", "tempeh", "edamame"],
    "vis": ["vis", "zalm", "tonijn", "kabeljauw", "makreel", "haring"],
    "schaaldieren": ["garnaal", "garnalen", "kreeft", "krab"],
    "sesam": ["sesam", "tahin"],
}

MULTI_TERM_CATEGORIES = ("dairyLiquids",)


def expand_allergen_terms(allergies: Iterable[str]) -> List[str]:
    terms: List[str] = []
    for allergy in allergies:
        key = allergy.strip().lower()
        if not key:
            continue
        terms.extend(ALLERGEN_SYNONYMS.get(key, [key]))
    return dedupe_terms(terms)


def dedupe_terms(terms: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for term in terms:
        cleaned = term.strip().lower()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def build_exclude_terms(request: MealPlanRequest) -> List[str]:
    """Expanded allergens + dislikes + caller exclusions, lowercased and deduped."""
    return dedupe_terms(
        [
            *expand_allergen_terms(request.profile.allergies),
            *request.profile.dislikes,
            *request.excludeIngredients,
        ]
    )


def search_terms_for_diet(diet_key: str) -> Dict[str, List[str]]:
    if diet_key == "vegan":
        proteins = ["tofu", "tempeh", "seitan", "linzen", "kikkererwten", "bonen", "noten"]
    else:
        proteins = ["kip", "kipfilet", "eieren", "zalm", "tonijn", "rundvlees", "varkensvlees", "tofu"]
    if diet_key in ("keto", "wahls_paleo_plus"):
        carbs: List[str] = []
    else:
        carbs = ["rijst", "aardappel", "pasta", "haver", "quinoa", "brood"]
    if diet_key == "wahls_paleo_plus":
        dairy_liquids = ["amandelmelk", "kokosmelk", "eiwitpoeder"]
    else:
        dairy_liquids = ["melk", "yoghurt", "kwark", "amandelmelk", "sojamelk", "eiwitpoeder"]
    return {
        "proteins": proteins,
        "vegetables": ["broccoli", "spinazie", "wortel", "paprika", "tomaat", "komkommer", "ui", "knoflook"],
        "fruits": ["appel", "banaan", "blauwe bessen", "bessen", "sinaasappel", "druiven", "aardbei", "peer"],
        "fats": ["olijfolie", "avocado", "noten", "zaden", "kokosolie"],
        "carbs": carbs,
        "dairyLiquids": dairy_liquids,
    }


def pool_cache_key(diet_key: str, exclude_terms: Sequence[str]) -> str:
    return f"{diet_key}:{','.join(sorted(dedupe_terms(exclude_terms)))}"


def filter_excluded(candidates: Iterable[FoodCandidate], exclude_terms: Sequence[str]) -> List[FoodCandidate]:
    lowered = [term.lower() for term in exclude_terms if term]
    return [
        candidate
        for candidate in candidates
        if not any(term in candidate.name.lower() for term in lowered)
    ]


class PoolCache(Protocol):
    def get(self, key: str) -> CandidatePool | None:
        ...

    def set(self, key: str, pool: CandidatePool) -> None:
        ...


class CandidatePoolCache:
    """Process-local TTL cache. Expired entries are evicted lazily on read."""

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, tuple[float, CandidatePool]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CandidatePool | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, pool = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return pool.model_copy(deep=True)

    def set(self, key: str, pool: CandidatePool) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), pool.model_copy(deep=True))

    def __len__(self) -> int:
        return len(self._entries)


class RedisCandidatePoolCache:
    """Shared cache for multi-worker deployments; redis enforces the TTL."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 600, prefix: str = "mealplanner:pool:") -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def get(self, key: str) -> CandidatePool | None:
        raw = self.client.get(self.prefix + key)
        if not raw:
            return None
        return CandidatePool.model_validate_json(raw)

    def set(self, key: str, pool: CandidatePool) -> None:
        self.client.setex(self.prefix + key, self.ttl_seconds, pool.model_dump_json())


def build_pool_cache(settings: Settings | None = None) -> PoolCache:
    settings = settings or get_settings()
    if settings.redis_url:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        return RedisCandidatePoolCache(client, ttl_seconds=settings.candidate_pool_ttl_seconds)
    return CandidatePoolCache(ttl_seconds=settings.candidate_pool_ttl_seconds)


class CandidatePoolBuilder:
    def __init__(
        self,
        lookup: NutritionLookup,
        cache: PoolCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.lookup = lookup
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else CandidatePoolCache(self.settings.candidate_pool_ttl_seconds)

    async def get_pool(self, diet_key: str, exclude_terms: Sequence[str]) -> CandidatePool:
        key = pool_cache_key(diet_key, exclude_terms)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Candidate pool cache hit key=%s", key)
            return cached
        logger.info("Candidate pool cache miss key=%s", key)
        pool = await self.build(diet_key, exclude_terms)
        self.cache.set(key, pool)
        return pool

    async def build(self, diet_key: str, exclude_terms: Sequence[str]) -> CandidatePool:
        terms_by_category = search_terms_for_diet(diet_key)
        categories = [name for name, terms in terms_by_category.items() if terms]
        results = await asyncio.gather(
            *(self._search_category(name, terms_by_category[name], exclude_terms) for name in categories)
        )
        pool = CandidatePool(**dict(zip(categories, results)))
        logger.info(
            "Built candidate pool diet=%s sizes=%s",
            diet_key,
            {name: len(items) for name, items in pool.categories().items()},
        )
        return pool

    async def _search_category(
        self,
        category: str,
        terms: Sequence[str],
        exclude_terms: Sequence[str],
    ) -> List[FoodCandidate]:
        if category not in MULTI_TERM_CATEGORIES:
            found = await self.lookup.search(terms[0], self.settings.candidate_pool_search_limit)
            return filter_excluded(found, exclude_terms)
        batches = await asyncio.gather(
            *(self.lookup.search(term, self.settings.candidate_pool_term_limit) for term in terms)
        )
        merged: List[FoodCandidate] = []
        seen: set[str] = set()
        for batch in batches:
            for candidate in filter_excluded(batch, exclude_terms):
                if candidate.nevoCode in seen:
                    continue
                seen.add(candidate.nevoCode)
                merged.append(candidate)
        return merged
