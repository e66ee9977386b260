from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from fastapi import HTTPException, status

INVALID_REQUEST = "INVALID_REQUEST"
GENERATION_FAILED = "GENERATION_FAILED"
GUARDRAILS_VIOLATION = "GUARDRAILS_VIOLATION"
CULINARY_VIOLATION = "CULINARY_VIOLATION"
SANITY_FAILED = "SANITY_FAILED"
INSUFFICIENT_INGREDIENTS = "INSUFFICIENT_INGREDIENTS"
AI_BUDGET_EXCEEDED = "AI_BUDGET_EXCEEDED"
DB_COVERAGE_TOO_LOW = "DB_COVERAGE_TOO_LOW"
LOCKED = "LOCKED"
EVALUATOR_ERROR = "EVALUATOR_ERROR"
CONFIG_INVALID = "MEAL_PLAN_CONFIG_INVALID"


class MealPlanError(Exception):
    """Base class for every failure the planner surfaces to callers.

    Attributes:
        message: human-readable message, safe to show (no prompt text, no stack traces)
        details: machine-readable context (issue lists, reason codes, counts)
        code: closed error code
        http_status: suggested HTTP status for the routing layer
    """

    code = GENERATION_FAILED
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.http_status, detail=self.to_dict())

    def __str__(self) -> str:
        return self.message


class InvalidRequestError(MealPlanError):
    code = INVALID_REQUEST
    http_status = status.HTTP_400_BAD_REQUEST


class GenerationFailedError(MealPlanError):
    code = GENERATION_FAILED
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        details: Optional[Mapping[str, Any]] = None,
        issues: Optional[List[Any]] = None,
    ):
        merged = dict(details or {})
        if issues:
            merged["issues"] = [_issue_payload(issue) for issue in issues]
        super().__init__(message, merged)
        self.issues = list(issues or [])


class GuardrailsViolationError(MealPlanError):
    code = GUARDRAILS_VIOLATION
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(
        self,
        message: str,
        *,
        reason_codes: List[str],
        content_hash: str | None = None,
        version: str | None = None,
        force_deficits: Optional[List[Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ):
        details: Dict[str, Any] = {"reasonCodes": list(reason_codes), **dict(extra or {})}
        if content_hash:
            details["contentHash"] = content_hash
        if version:
            details["version"] = version
        if force_deficits:
            details["forceDeficits"] = [_issue_payload(item) for item in force_deficits]
        super().__init__(message, details)
        self.reason_codes = list(reason_codes)
        self.content_hash = content_hash
        self.version = version
        self.force_deficits = list(force_deficits or [])


class CulinaryViolationError(MealPlanError):
    code = CULINARY_VIOLATION
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, violations: List[Dict[str, Any]]):
        super().__init__(message, {"violations": violations})
        self.violations = violations


class SanityFailedError(MealPlanError):
    code = SANITY_FAILED
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class InsufficientIngredientsError(MealPlanError):
    code = INSUFFICIENT_INGREDIENTS
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, empty_pools: Optional[List[str]] = None):
        details = {"emptyPools": list(empty_pools)} if empty_pools else None
        super().__init__(message, details)
        self.empty_pools = list(empty_pools or [])


class AIBudgetExceededError(MealPlanError):
    code = AI_BUDGET_EXCEEDED
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class DbCoverageTooLowError(MealPlanError):
    code = DB_COVERAGE_TOO_LOW
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class MealLockedError(MealPlanError):
    code = LOCKED
    http_status = status.HTTP_409_CONFLICT


class EvaluatorError(GuardrailsViolationError):
    """Ruleset or evaluator infrastructure failure; always treated as a block."""

    code = EVALUATOR_ERROR
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Fout bij evalueren dieetregels", *, content_hash: str | None = None):
        super().__init__(message, reason_codes=[EVALUATOR_ERROR], content_hash=content_hash)


class ConfigInvalidError(MealPlanError):
    code = CONFIG_INVALID
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


def _issue_payload(issue: Any) -> Any:
    dump = getattr(issue, "model_dump", None)
    if callable(dump):
        return dump(by_alias=True, exclude_none=True)
    return issue


UNKNOWN = "UNKNOWN"
MAX_ACTION_HINTS = 3

# code -> (user message, action hints)
_USER_MESSAGES: Dict[str, tuple[str, List[str]]] = {
    INVALID_REQUEST: (
        "De aanvraag voor je weekmenu is niet volledig of ongeldig.",
        ["Controleer de gekozen periode en maaltijdmomenten.", "Probeer het opnieuw."],
    ),
    GENERATION_FAILED: (
        "Het lukte niet om een geldig weekmenu te maken.",
        ["Probeer het opnieuw.", "Verruim eventueel je voorkeuren of uitsluitingen."],
    ),
    GUARDRAILS_VIOLATION: (
        "Het gegenereerde weekmenu voldoet niet aan je dieetregels.",
        ["Probeer het opnieuw.", "Controleer of je dieetregels elkaar niet tegenspreken."],
    ),
    EVALUATOR_ERROR: (
        "Je dieetregels konden tijdelijk niet gecontroleerd worden.",
        ["Probeer het over een paar minuten opnieuw."],
    ),
    CULINARY_VIOLATION: (
        "Er zit een onlogische combinatie in het weekmenu.",
        ["Probeer het opnieuw.", "Pas je culinaire regels aan als dit vaker gebeurt."],
    ),
    SANITY_FAILED: (
        "Het weekmenu leek niet realistisch genoeg om te tonen.",
        ["Probeer het opnieuw."],
    ),
    INSUFFICIENT_INGREDIENTS: (
        "Er zijn te weinig toegestane ingrediënten om een weekmenu te maken.",
        ["Verruim je dieetregels of uitsluitingen.", "Voeg recepten of ingrediënten toe."],
    ),
    AI_BUDGET_EXCEEDED: (
        "Te veel maaltijden zouden door AI bedacht moeten worden.",
        ["Voeg meer eigen recepten toe.", "Verhoog het toegestane aantal AI-maaltijden."],
    ),
    DB_COVERAGE_TOO_LOW: (
        "Er konden te weinig maaltijden uit je receptendatabase gebruikt worden.",
        ["Voeg meer recepten toe die passen bij je dieet.", "Verlaag het minimum aandeel eigen recepten."],
    ),
    LOCKED: (
        "Dit onderdeel van je weekmenu is al vastgezet.",
        ["Kies een andere dag of maaltijd om aan te passen."],
    ),
    CONFIG_INVALID: (
        "De configuratie van de menugenerator is ongeldig.",
        ["Neem contact op met de beheerder."],
    ),
    UNKNOWN: (
        "Er ging iets mis bij het maken van je weekmenu.",
        ["Probeer het opnieuw."],
    ),
}

DIAGNOSTIC_KEYS = frozenset(
    {
        "attempts",
        "retryReason",
        "reasonCodes",
        "contentHash",
        "version",
        "forceDeficits",
        "outcome",
        "dayIndex",
        "date",
        "violations",
        "issues",
        "emptyPools",
        "missingCodes",
        "dbSlots",
        "totalSlots",
        "requiredRatio",
        "actualRatio",
        "generated",
        "maxAllowed",
        "planId",
        "mealSlot",
        "reason",
        "rule_code",
        "errors",
    }
)


def present_error(exc: BaseException) -> Dict[str, Any]:
    """User-facing view of any failure: Dutch message, up to three hints, allow-listed diagnostics."""
    if not isinstance(exc, MealPlanError):
        message, hints = _USER_MESSAGES[UNKNOWN]
        return {"code": UNKNOWN, "userMessageNl": message, "userActionHints": hints[:MAX_ACTION_HINTS], "diagnostics": {}}
    message, hints = _USER_MESSAGES.get(exc.code, _USER_MESSAGES[UNKNOWN])
    if exc.code == GUARDRAILS_VIOLATION and exc.message:
        message = f"{message} {exc.message}"
    diagnostics = {key: value for key, value in exc.details.items() if key in DIAGNOSTIC_KEYS}
    return {
        "code": exc.code,
        "userMessageNl": message,
        "userActionHints": list(hints[:MAX_ACTION_HINTS]),
        "diagnostics": diagnostics,
    }
