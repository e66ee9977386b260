from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

MealSlot = Literal["breakfast", "lunch", "dinner", "snack"]
DietKey = Literal["wahls_paleo_plus", "keto", "mediterranean", "vegan", "balanced"]
ConstraintType = Literal["hard", "soft"]
Provenance = Literal["ai", "db", "history"]

ValidationIssueCode = Literal[
    "FORBIDDEN_INGREDIENT",
    "ALLERGEN_PRESENT",
    "DISLIKED_INGREDIENT",
    "MISSING_REQUIRED_CATEGORY",
    "INVALID_NEVO_CODE",
    "CALORIE_TARGET_MISS",
    "MACRO_TARGET_MISS",
    "MEAL_PREFERENCE_MISS",
]
MACRO_ISSUE_CODES = frozenset({"CALORIE_TARGET_MISS", "MACRO_TARGET_MISS"})

CANDIDATE_CATEGORIES = ("proteins", "vegetables", "fruits", "fats", "carbs", "dairyLiquids")


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


class MacroRange(BaseModel):
    min: Optional[float] = Field(default=None, ge=0)
    max: Optional[float] = Field(default=None, ge=0)
    target: Optional[float] = Field(default=None, ge=0)


class CalorieTarget(MacroRange):
    pass


class MacroTargets(BaseModel):
    protein: Optional[MacroRange] = None
    carbs: Optional[MacroRange] = None
    fat: Optional[MacroRange] = None


class PrepPreferences(BaseModel):
    maxPrepMinutes: Optional[int] = Field(default=None, ge=0)
    perMeal: Dict[MealSlot, int] = Field(default_factory=dict)


class MealPreferences(BaseModel):
    breakfast: List[str] = Field(default_factory=list)
    lunch: List[str] = Field(default_factory=list)
    dinner: List[str] = Field(default_factory=list)
    snack: List[str] = Field(default_factory=list)

    @field_validator("breakfast", "lunch", "dinner", "snack", mode="before")
    @classmethod
    def _normalize(cls, v):
        v = _none_to_list(v)
        if isinstance(v, str):
            v = [v]
        return [str(item).strip() for item in v if str(item).strip()]

    def for_slot(self, slot: str) -> List[str]:
        return list(getattr(self, slot, []) or [])

    def has_any(self) -> bool:
        return any((self.breakfast, self.lunch, self.dinner, self.snack))


class DietProfile(BaseModel):
    dietKey: str = Field(default="balanced", min_length=1)
    allergies: List[str] = Field(default_factory=list)
    dislikes: List[str] = Field(default_factory=list)
    calorieTarget: CalorieTarget = Field(default_factory=CalorieTarget)
    macroTargets: MacroTargets = Field(default_factory=MacroTargets)
    prepPreferences: PrepPreferences = Field(default_factory=PrepPreferences)
    mealPreferences: MealPreferences = Field(default_factory=MealPreferences)
    servingsDefault: Optional[int] = Field(default=None, ge=1)
    varietyLevel: Literal["low", "std", "high"] = "std"
    strictness: Literal["strict", "flexible"] = "flexible"

    model_config = ConfigDict(frozen=True)

    @field_validator("allergies", "dislikes", mode="before")
    @classmethod
    def _clean_terms(cls, v):
        return [str(item).strip() for item in _none_to_list(v) if str(item).strip()]

    @field_validator("calorieTarget", "macroTargets", "prepPreferences", "mealPreferences", mode="before")
    @classmethod
    def _default_nested(cls, v):
        return {} if v is None else v


class DateRange(BaseModel):
    start: str = Field(pattern=DATE_PATTERN)
    end: str = Field(pattern=DATE_PATTERN)

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if date.fromisoformat(self.end) < date.fromisoformat(self.start):
            raise ValueError("dateRange.end must not be before dateRange.start")
        return self

    def dates(self) -> List[str]:
        start = date.fromisoformat(self.start)
        end = date.fromisoformat(self.end)
        return [date.fromordinal(ordinal).isoformat() for ordinal in range(start.toordinal(), end.toordinal() + 1)]


class TherapeuticTargets(BaseModel):
    protocolKey: str
    version: Optional[str] = None
    targets: Dict[str, Any] = Field(default_factory=dict)


class MealPlanRequest(BaseModel):
    dateRange: DateRange
    slots: List[MealSlot] = Field(min_length=1)
    profile: DietProfile
    excludeIngredients: List[str] = Field(default_factory=list)
    preferIngredients: List[str] = Field(default_factory=list)
    maxPrepTime: Optional[int] = Field(default=None, ge=0)
    therapeuticTargets: Optional[TherapeuticTargets] = None

    @field_validator("excludeIngredients", "preferIngredients", mode="before")
    @classmethod
    def _clean_terms(cls, v):
        return [str(item).strip() for item in _none_to_list(v) if str(item).strip()]

    @field_validator("slots")
    @classmethod
    def _unique_slots(cls, v):
        seen: List[str] = []
        for slot in v:
            if slot not in seen:
                seen.append(slot)
        return seen


class IngredientRef(BaseModel):
    nevoCode: str
    quantityG: float = Field(ge=1)
    displayName: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    canonicalIngredientId: Optional[str] = None

    @field_validator("nevoCode", mode="before")
    @classmethod
    def _code_as_string(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return _none_to_list(v)


class MacroEstimate(BaseModel):
    calories: Optional[float] = Field(default=None, ge=0)
    protein: Optional[float] = Field(default=None, ge=0)
    carbs: Optional[float] = Field(default=None, ge=0)
    fat: Optional[float] = Field(default=None, ge=0)
    saturatedFat: Optional[float] = Field(default=None, ge=0)


class Meal(BaseModel):
    id: str = Field(min_length=1)
    name: str
    slot: MealSlot
    date: str = Field(pattern=DATE_PATTERN)
    ingredientRefs: List[IngredientRef] = Field(min_length=1)
    estimatedMacros: Optional[MacroEstimate] = None
    prepTime: Optional[int] = Field(default=None, ge=0)
    servings: Optional[int] = Field(default=None, ge=1)


class MealPlanDay(BaseModel):
    date: str = Field(pattern=DATE_PATTERN)
    meals: List[Meal] = Field(default_factory=list)
    estimatedTotalMacros: Optional[MacroEstimate] = None

    @model_validator(mode="after")
    def _meals_share_day_date(self) -> "MealPlanDay":
        for meal in self.meals:
            if meal.date != self.date:
                raise ValueError(f"meal {meal.id} has date {meal.date} but belongs to day {self.date}")
        return self


class MealPlanResponse(BaseModel):
    requestId: str
    days: List[MealPlanDay]
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, v):
        return {} if v is None else v

    def total_meals(self) -> int:
        return sum(len(day.meals) for day in self.days)


class MealResponse(BaseModel):
    date: str = Field(pattern=DATE_PATTERN)
    meal: Meal


class ValidationIssue(BaseModel):
    path: str
    code: ValidationIssueCode
    message: str


class GuardDecision(BaseModel):
    ok: bool
    outcome: Literal["allowed", "warned", "blocked"]
    reasonCodes: List[str] = Field(default_factory=list)


class ForceDeficitItem(BaseModel):
    categoryCode: str
    categoryNameNl: str
    minPerDay: Optional[int] = None
    minPerWeek: Optional[int] = None


class SanityIssue(BaseModel):
    code: str
    message: str
    path: Optional[str] = None


class SanityResult(BaseModel):
    ok: bool
    issues: List[SanityIssue] = Field(default_factory=list)


class MacroTotals(BaseModel):
    calories: float = 0.0
    proteinG: float = 0.0
    carbsG: float = 0.0
    fatG: float = 0.0
    saturatedFatG: float = 0.0


class QuantityChange(BaseModel):
    nevoCode: str
    oldG: float
    newG: float


class NutrientRecord(BaseModel):
    """Per-100g nutrient values for one nutrition-database entry."""

    nevoCode: str
    name: str
    energyKcal: float = 0.0
    proteinG: float = 0.0
    carbsG: float = 0.0
    fatG: float = 0.0
    saturatedFatG: float = 0.0

    @field_validator("nevoCode", mode="before")
    @classmethod
    def _code_as_string(cls, v):
        return str(v)


class FoodCandidate(BaseModel):
    nevoCode: str
    name: str
    tags: List[str] = Field(default_factory=list)

    @field_validator("nevoCode", mode="before")
    @classmethod
    def _code_as_string(cls, v):
        return str(v)


class CandidatePool(BaseModel):
    proteins: List[FoodCandidate] = Field(default_factory=list)
    vegetables: List[FoodCandidate] = Field(default_factory=list)
    fruits: List[FoodCandidate] = Field(default_factory=list)
    fats: List[FoodCandidate] = Field(default_factory=list)
    carbs: List[FoodCandidate] = Field(default_factory=list)
    dairyLiquids: List[FoodCandidate] = Field(default_factory=list)

    def categories(self) -> Dict[str, List[FoodCandidate]]:
        return {name: getattr(self, name) for name in CANDIDATE_CATEGORIES}

    def all_codes(self) -> set[str]:
        return {candidate.nevoCode for items in self.categories().values() for candidate in items}


class IngredientConstraint(BaseModel):
    type: Literal["allowed", "forbidden"]
    items: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    constraintType: ConstraintType


class RequiredCategoryConstraint(BaseModel):
    category: str
    minPerDay: Optional[int] = None
    minPerWeek: Optional[int] = None
    items: List[str] = Field(default_factory=list)
    constraintType: ConstraintType


class PerMealConstraint(BaseModel):
    mealSlot: MealSlot
    minProtein: Optional[float] = None
    minCarbs: Optional[float] = None
    minFat: Optional[float] = None
    maxCalories: Optional[float] = None
    constraintType: ConstraintType


class WeeklyVariety(BaseModel):
    maxRepeats: Optional[int] = None
    minUniqueMeals: Optional[int] = None
    excludeSimilar: bool = False
    constraintType: ConstraintType = "soft"


class MacroConstraint(BaseModel):
    scope: Literal["daily", "per_meal"]
    maxCarbs: Optional[float] = None
    maxSaturatedFat: Optional[float] = None
    minProtein: Optional[float] = None
    minFat: Optional[float] = None
    maxFat: Optional[float] = None
    constraintType: ConstraintType


class VegetableCupsRequirement(BaseModel):
    totalCups: int
    leafyCups: int
    sulfurCups: int
    coloredCups: int


class MealStructureConstraint(BaseModel):
    type: Literal["vegetable_cups", "meal_count"]
    vegetableCupsRequirement: Optional[VegetableCupsRequirement] = None
    minMealsPerDay: Optional[int] = None
    maxMealsPerDay: Optional[int] = None
    requiredSlots: List[MealSlot] = Field(default_factory=list)
    constraintType: ConstraintType


class PrepTimeConstraints(BaseModel):
    globalMax: Optional[int] = None
    perMeal: Dict[str, int] = Field(default_factory=dict)


class DietRuleSet(BaseModel):
    dietKey: str
    ingredientConstraints: List[IngredientConstraint] = Field(default_factory=list)
    requiredCategories: List[RequiredCategoryConstraint] = Field(default_factory=list)
    perMealConstraints: List[PerMealConstraint] = Field(default_factory=list)
    weeklyVariety: WeeklyVariety = Field(default_factory=WeeklyVariety)
    macroConstraints: List[MacroConstraint] = Field(default_factory=list)
    mealStructure: List[MealStructureConstraint] = Field(default_factory=list)
    calorieTarget: CalorieTarget = Field(default_factory=CalorieTarget)
    prepTimeConstraints: PrepTimeConstraints = Field(default_factory=PrepTimeConstraints)


class GuardRuleMatch(BaseModel):
    term: str
    synonyms: List[str] = Field(default_factory=list)
    canonicalId: Optional[str] = None
    preferredMatchMode: Optional[Literal["exact", "word_boundary", "substring", "canonical_id"]] = None


class GuardRuleMetadata(BaseModel):
    ruleCode: str
    label: str = ""
    category: Optional[str] = None
    specificity: Literal["global", "diet", "user"] = "diet"


class GuardRule(BaseModel):
    id: str
    action: Literal["allow", "block"]
    strictness: ConstraintType = "hard"
    priority: int = 0
    target: Literal["ingredient", "step", "metadata"] = "ingredient"
    match: GuardRuleMatch
    metadata: GuardRuleMetadata


class GuardrailsRuleset(BaseModel):
    dietId: str
    version: str
    contentHash: str = ""
    rules: List[GuardRule] = Field(default_factory=list)
    provenance: Dict[str, Any] = Field(default_factory=dict)


class TextAtom(BaseModel):
    text: str
    path: str
    canonicalId: Optional[str] = None
    locale: Optional[str] = None


class GuardTargets(BaseModel):
    ingredient: List[TextAtom] = Field(default_factory=list)
    step: List[TextAtom] = Field(default_factory=list)
    metadata: List[TextAtom] = Field(default_factory=list)


class DietLogicConstraint(BaseModel):
    id: str
    dietLogic: Literal["drop", "force", "limit", "pass"]
    categoryCode: str
    categoryNameNl: str = ""
    terms: List[str] = Field(default_factory=list)
    minPerDay: Optional[int] = None
    minPerWeek: Optional[int] = None
    maxPerDay: Optional[int] = None
    maxPerWeek: Optional[int] = None
    strictness: ConstraintType = "hard"
    priority: int = 100


class DietLogicResult(BaseModel):
    ok: bool
    summary: str = ""
    warnings: List[str] = Field(default_factory=list)
    forceDeficits: List[ForceDeficitItem] = Field(default_factory=list)


class CulinaryRule(BaseModel):
    ruleCode: str
    slotType: str
    matchMode: Literal["term", "regex"]
    matchValue: str
    action: Literal["block", "warn"]
    reasonCode: str


class PantryUpdate(BaseModel):
    nevoCode: str
    availableG: Optional[float] = Field(default=None, ge=0)
    isAvailable: Optional[bool] = None


class PlanEditConstraints(BaseModel):
    maxPrepMinutes: Optional[int] = Field(default=None, ge=0)
    targetCalories: Optional[float] = Field(default=None, ge=0)
    highProtein: Optional[bool] = None
    vegetarian: Optional[bool] = None
    avoidIngredients: List[str] = Field(default_factory=list)


class PlanEdit(BaseModel):
    action: Literal["REPLACE_MEAL", "REGENERATE_DAY", "ADD_SNACK", "REMOVE_MEAL", "UPDATE_PANTRY"]
    planId: str
    date: Optional[str] = Field(default=None, pattern=DATE_PATTERN)
    mealSlot: Optional[MealSlot] = None
    userIntentSummary: str = Field(min_length=1, max_length=200)
    constraints: Optional[PlanEditConstraints] = None
    pantryUpdates: List[PantryUpdate] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_required_fields(self) -> "PlanEdit":
        if self.action in ("REPLACE_MEAL", "REMOVE_MEAL", "ADD_SNACK") and not (self.date and self.mealSlot):
            raise ValueError(f"date and mealSlot are required for {self.action}")
        if self.action == "REGENERATE_DAY" and not self.date:
            raise ValueError("date is required for REGENERATE_DAY")
        if self.action == "UPDATE_PANTRY" and not self.pantryUpdates:
            raise ValueError("pantryUpdates (min 1) is required for UPDATE_PANTRY")
        return self


class PlanEditResult(BaseModel):
    planId: str
    plan: MealPlanResponse
    changedType: Literal["DAY", "MEAL", "PANTRY"]
    date: Optional[str] = None
    mealSlot: Optional[str] = None
    summary: str
    pantryUpdates: List[PantryUpdate] = Field(default_factory=list)


TemplateSlot = Literal["protein", "veg1", "veg2", "fat"]


class TemplateSlotSpec(BaseModel):
    slot: TemplateSlot
    defaultG: float = Field(ge=1)
    minG: float = Field(ge=1)
    maxG: float = Field(ge=1)


class RecipeTemplate(BaseModel):
    id: str
    nameNl: str
    slots: List[TemplateSlotSpec] = Field(default_factory=list)


class GeneratorLimits(BaseModel):
    maxIngredients: int = Field(default=10, ge=3)
    maxFlavorItems: int = Field(default=2, ge=0)
    signatureRetryLimit: int = Field(default=8, ge=1)
    proteinRepeatCap7d: int = Field(default=2, ge=1)
    templateRepeatCap7d: int = Field(default=3, ge=1)


class NamePattern(BaseModel):
    templateKey: str
    slot: MealSlot
    pattern: str


class PoolIngredient(BaseModel):
    nevoCode: str
    name: str


class FlavorPoolItem(PoolIngredient):
    defaultG: float = 2
    minG: float = 1
    maxG: float = 5


class TemplatePools(BaseModel):
    protein: List[PoolIngredient] = Field(default_factory=list)
    veg: List[PoolIngredient] = Field(default_factory=list)
    fat: List[PoolIngredient] = Field(default_factory=list)
    flavor: List[FlavorPoolItem] = Field(default_factory=list)


class TemplateGeneratorConfig(BaseModel):
    templates: List[RecipeTemplate] = Field(default_factory=list)
    limits: GeneratorLimits = Field(default_factory=GeneratorLimits)
    namePatterns: List[NamePattern] = Field(default_factory=list)
    poolItems: TemplatePools = Field(default_factory=TemplatePools)
