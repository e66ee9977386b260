from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="mealplanner")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")
    meal_plan_language: str = Field(default="nl", pattern=r"^(nl|en)$")

    # Data
    redis_url: str | None = Field(default=None)

    # OpenAI
    openai_api_key: str | None = Field(default=None)
    openai_meal_plan_model: str = Field(default="gpt-5-mini")
    openai_allowed_models: List[str] = Field(
        default_factory=lambda: ["gpt-4o-mini", "gpt-4o", "o4-mini", "gpt-5", "gpt-5-mini"]
    )
    openai_request_timeout_seconds: int = Field(default=90, ge=30, le=300)
    meal_plan_max_output_tokens: int = Field(default=8192, ge=1024, le=65536)
    meal_plan_temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    meal_plan_retry_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    meal_plan_repair_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    # Candidate pool
    candidate_pool_ttl_seconds: int = Field(default=600, ge=0)
    candidate_pool_search_limit: int = Field(default=20, ge=1)
    candidate_pool_term_limit: int = Field(default=15, ge=1)
    prompt_pool_category_limit: int = Field(default=20, ge=1)

    # Deterministic adjuster
    adjuster_min_scale: float = Field(default=0.7, gt=0.0)
    adjuster_max_scale: float = Field(default=1.3, gt=0.0)
    adjuster_rounding_g: int = Field(default=5, ge=1)

    # Guardrails / diet logic
    enforce_guardrails: bool = Field(default=True)
    shadow_guardrails: bool = Field(default=False)
    guardrails_first_failing_day_wins: bool = Field(default=True)
    guardrails_mode: str = Field(default="meal_planner")
    guardrails_locale: str = Field(default="nl")

    # Template generator
    use_template_generator: bool = Field(default=False)

    # Provenance
    target_reuse_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    min_db_recipe_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    max_ai_generated_slots: int | None = Field(default=None, ge=0)
    allow_coverage_fallback: bool = Field(default=False)

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("openai_allowed_models", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("adjuster_max_scale")
    @classmethod
    def _max_scale_not_below_min(cls, v, info):
        min_scale = info.data.get("adjuster_min_scale")
        if min_scale is not None and v < min_scale:
            raise ValueError("adjuster_max_scale must be >= adjuster_min_scale")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
