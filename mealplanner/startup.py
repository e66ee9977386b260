from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Tuple

from .config import Settings, get_settings
from .errors import ConfigInvalidError
from .interfaces import GenerativeTextService, NutritionLookup
from .observability import configure_logging, init_sentry
from .services.candidate_pool import build_pool_cache
from .services.generator_client import OpenAIStructuredGenerator
from .services.orchestrator import MealPlanner

logger = logging.getLogger(__name__)


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def validate_settings(settings: Settings) -> None:
    """Fail fast when mandatory config values are missing outside dev."""
    environment = (settings.environment or "dev").lower()

    required: list[Tuple[str, str]] = [("redis_url", "REDIS_URL")]
    if not settings.use_template_generator:
        required.append(("openai_api_key", "OPENAI_API_KEY"))

    missing = _collect_missing(settings, required)
    if environment == "dev":
        if missing:
            logger.warning("Running in dev without recommended config; missing=%s", ",".join(missing))
        return
    if missing:
        raise ConfigInvalidError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )


def create_planner(
    lookup: NutritionLookup,
    *,
    settings: Settings | None = None,
    generator: Optional[GenerativeTextService] = None,
    **collaborators: Any,
) -> MealPlanner:
    """Wire a planner from settings: logging, Sentry, the pool cache and the OpenAI generator."""
    s = settings or get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level, service=s.app_name)
    init_sentry(s)
    validate_settings(s)

    if generator is None and s.openai_api_key and not s.use_template_generator:
        generator = OpenAIStructuredGenerator(s)
    collaborators.setdefault("pool_cache", build_pool_cache(s))
    return MealPlanner(lookup=lookup, generator=generator, settings=s, **collaborators)
