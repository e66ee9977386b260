from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple

from ..errors import InvalidRequestError, MealLockedError
from ..interfaces import EditabilityChecker
from ..schemas import Meal, MealPlanDay, MealPlanRequest, MealPlanResponse, PlanEdit, PlanEditResult
from .orchestrator import MealPlanner

logger = logging.getLogger(__name__)

LOCKED_MESSAGE = "Dit onderdeel van je weekmenu is al vastgezet en kan niet meer aangepast worden."


class PlanEditAction(str, Enum):
    REPLACE_MEAL = "REPLACE_MEAL"
    REGENERATE_DAY = "REGENERATE_DAY"
    ADD_SNACK = "ADD_SNACK"
    REMOVE_MEAL = "REMOVE_MEAL"
    UPDATE_PANTRY = "UPDATE_PANTRY"


Handler = Callable[["PlanEditor", MealPlanResponse, MealPlanRequest, PlanEdit], Awaitable[PlanEditResult]]


def _find_day(plan: MealPlanResponse, date: str) -> Tuple[int, MealPlanDay]:
    for index, day in enumerate(plan.days):
        if day.date == date:
            return index, day
    raise InvalidRequestError("Datum komt niet voor in dit meal plan", {"date": date})


def _find_meal(day: MealPlanDay, slot: str) -> Tuple[Optional[int], Optional[Meal]]:
    for index, meal in enumerate(day.meals):
        if meal.slot == slot:
            return index, meal
    return None, None


def _result(edit: PlanEdit, plan: MealPlanResponse, changed_type: str, summary: str) -> PlanEditResult:
    return PlanEditResult(
        planId=edit.planId,
        plan=plan,
        changedType=changed_type,
        date=edit.date,
        mealSlot=edit.mealSlot,
        summary=summary,
        pantryUpdates=list(edit.pantryUpdates),
    )


async def _replace_meal(
    editor: "PlanEditor", plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit
) -> PlanEditResult:
    edited = plan.model_copy(deep=True)
    _, day = _find_day(edited, edit.date)
    index, existing = _find_meal(day, edit.mealSlot)
    if existing is None:
        raise InvalidRequestError("Er staat geen maaltijd op dit moment", {"date": edit.date, "mealSlot": edit.mealSlot})
    response = await editor.planner.generate_meal(request, edit.date, edit.mealSlot, existing, edit.constraints)
    day.meals[index] = response.meal
    return _result(edit, edited, "MEAL", f"{edit.mealSlot} op {edit.date} vervangen door {response.meal.name}")


async def _regenerate_day(
    editor: "PlanEditor", plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit
) -> PlanEditResult:
    edited = plan.model_copy(deep=True)
    index, existing = _find_day(edited, edit.date)
    result = await editor.planner.generate_day(request, edit.date, existing)
    edited.days[index] = result.day
    return _result(edit, edited, "DAY", f"Dag {edit.date} opnieuw gegenereerd ({len(result.day.meals)} maaltijden)")


async def _add_snack(
    editor: "PlanEditor", plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit
) -> PlanEditResult:
    edited = plan.model_copy(deep=True)
    _, day = _find_day(edited, edit.date)
    if edit.mealSlot not in request.slots:
        request = request.model_copy(update={"slots": [*request.slots, edit.mealSlot]})
    response = await editor.planner.generate_meal(request, edit.date, edit.mealSlot, None, edit.constraints)
    day.meals.append(response.meal)
    return _result(edit, edited, "MEAL", f"{response.meal.name} toegevoegd op {edit.date}")


async def _remove_meal(
    editor: "PlanEditor", plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit
) -> PlanEditResult:
    edited = plan.model_copy(deep=True)
    _, day = _find_day(edited, edit.date)
    index, existing = _find_meal(day, edit.mealSlot)
    if existing is None:
        raise InvalidRequestError("Er staat geen maaltijd op dit moment", {"date": edit.date, "mealSlot": edit.mealSlot})
    del day.meals[index]
    return _result(edit, edited, "MEAL", f"{existing.name} verwijderd van {edit.date}")


async def _update_pantry(
    editor: "PlanEditor", plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit
) -> PlanEditResult:
    """Pantry stock lives outside the planner.

    The plan is returned unchanged and ``pantryUpdates`` are handed back for the
    caller's pantry store to persist; no generation call is made.
    """
    return _result(edit, plan, "PANTRY", f"Voorraad bijgewerkt ({len(edit.pantryUpdates)} items)")


HANDLERS: Dict[PlanEditAction, Handler] = {
    PlanEditAction.REPLACE_MEAL: _replace_meal,
    PlanEditAction.REGENERATE_DAY: _regenerate_day,
    PlanEditAction.ADD_SNACK: _add_snack,
    PlanEditAction.REMOVE_MEAL: _remove_meal,
    PlanEditAction.UPDATE_PANTRY: _update_pantry,
}

_unhandled = set(PlanEditAction) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Plan edit actions without a handler: {sorted(a.value for a in _unhandled)}")


class PlanEditor:
    """Applies one structured edit to an existing plan; the input plan is never mutated."""

    def __init__(self, planner: MealPlanner, editability: Optional[EditabilityChecker] = None) -> None:
        self.planner = planner
        self.editability = editability

    async def apply(self, plan: MealPlanResponse, request: MealPlanRequest, edit: PlanEdit) -> PlanEditResult:
        action = PlanEditAction(edit.action)
        if self.editability is not None and edit.date:
            reason = await self.editability.check(edit.planId, edit.date, edit.mealSlot)
            if reason:
                logger.info("Plan edit %s refused plan=%s date=%s: %s", action.value, edit.planId, edit.date, reason)
                raise MealLockedError(
                    LOCKED_MESSAGE,
                    {"planId": edit.planId, "date": edit.date, "mealSlot": edit.mealSlot, "reason": reason},
                )
        logger.info("Applying plan edit %s plan=%s date=%s slot=%s", action.value, edit.planId, edit.date, edit.mealSlot)
        return await HANDLERS[action](self, plan, request, edit)


async def apply_plan_edit(
    plan: MealPlanResponse,
    request: MealPlanRequest,
    edit: PlanEdit,
    *,
    planner: MealPlanner,
    editability: Optional[EditabilityChecker] = None,
) -> PlanEditResult:
    return await PlanEditor(planner, editability).apply(plan, request, edit)
