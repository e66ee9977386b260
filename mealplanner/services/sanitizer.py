from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Sequence

from ..schemas import CandidatePool, FoodCandidate

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

METRIC_CATEGORIES = ("proteins", "vegetables", "fruits", "fats")


def normalize_name(name: str) -> str:
    lowered = (name or "").lower().strip()
    return _WHITESPACE.sub(" ", _PUNCTUATION.sub("", lowered)).strip()


def _matches_any(name: str, terms: Sequence[str]) -> bool:
    normalized = normalize_name(name)
    return any(term and normalize_name(term) in normalized for term in terms)


def sanitize_candidate_pool(
    pool: CandidatePool,
    exclude_terms: Sequence[str],
    extra_exclude_terms: Sequence[str] | None = None,
) -> tuple[CandidatePool, Dict[str, Any]]:
    """Dedupe and filter every category; returns the clean pool and counters.

    Duplicates are detected by code, or by normalized name when the code is blank.
    Guardrails-derived terms are counted separately so the template path can
    report how much the ruleset narrowed the pool.
    """
    extra = list(extra_exclude_terms or [])
    metrics: Dict[str, Any] = {
        "removedDuplicates": 0,
        "removedByExcludeTerms": 0,
    }
    if extra:
        metrics["removedByGuardrailsTerms"] = 0

    cleaned: Dict[str, List[FoodCandidate]] = {}
    for category, candidates in pool.categories().items():
        seen: set[str] = set()
        kept: List[FoodCandidate] = []
        for candidate in candidates:
            key = candidate.nevoCode or f"name:{normalize_name(candidate.name)}"
            if key in seen:
                metrics["removedDuplicates"] += 1
                continue
            seen.add(key)
            if _matches_any(candidate.name, exclude_terms):
                metrics["removedByExcludeTerms"] += 1
                continue
            if extra and _matches_any(candidate.name, extra):
                metrics["removedByGuardrailsTerms"] += 1
                continue
            kept.append(candidate)
        cleaned[category] = kept
        if category in METRIC_CATEGORIES:
            metrics[f"{category}Before"] = len(candidates)
            metrics[f"{category}After"] = len(kept)

    if metrics["removedDuplicates"] or metrics["removedByExcludeTerms"]:
        logger.info(
            "Sanitized candidate pool duplicates=%s excluded=%s guardrails=%s",
            metrics["removedDuplicates"],
            metrics["removedByExcludeTerms"],
            metrics.get("removedByGuardrailsTerms", 0),
        )
    return CandidatePool(**cleaned), metrics
