from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from backend.core.config import settings
from backend.core.errors import DebugToolsDisabledError, NotFoundError, ValidationError
from backend.features.streaks.service import StreakEngine, StreakEngineRegistry
from backend.models.streak import QualificationReason

router = APIRouter()


class EngineEvent(BaseModel):
    at: Optional[datetime] = None
    verse_id: Optional[str] = None
    visible: Optional[bool] = None


class DebugQualifyRequest(BaseModel):
    criterion: QualificationReason


class DebugAdvanceRequest(BaseModel):
    days: int = Field(..., ge=1, le=3650)


def get_streak_registry(request: Request) -> StreakEngineRegistry:
    return request.app.state.streak_registry


def _verse_id(event: EngineEvent) -> str:
    # Missing or blank ids reach the engine as "" and are ignored there.
    return event.verse_id or ""


def _require_visible(event: EngineEvent) -> bool:
    if event.visible is None:
        raise ValidationError("visible is required for content-visibility events")
    return event.visible


_EVENT_HANDLERS: Dict[str, Callable[[StreakEngine, EngineEvent], None]] = {
    "reader-appeared": lambda engine, e: engine.reader_did_appear(at=e.at),
    "reader-disappeared": lambda engine, e: engine.reader_did_disappear(at=e.at),
    "content-visibility": lambda engine, e: engine.set_reader_content_visible(_require_visible(e), at=e.at),
    "verse-visible": lambda engine, e: engine.record_verse_became_visible(_verse_id(e), at=e.at),
    "verse-hidden": lambda engine, e: engine.record_verse_no_longer_visible(_verse_id(e), at=e.at),
    "verse-interaction": lambda engine, e: engine.record_verse_interaction(_verse_id(e), at=e.at),
    "note-created": lambda engine, e: engine.record_note_created(at=e.at),
    "highlight-created": lambda engine, e: engine.record_highlight_created(at=e.at),
    "reader-interaction": lambda engine, e: engine.record_reader_interaction(at=e.at),
    "app-active": lambda engine, e: engine.app_did_become_active(at=e.at),
    "app-resign-active": lambda engine, e: engine.app_will_resign_active(at=e.at),
    "app-background": lambda engine, e: engine.app_did_enter_background(at=e.at),
    "flush": lambda engine, e: engine.flush_active_reading(at=e.at),
}


@router.get("/v1/streaks/{user_id}")
def get_streak(user_id: str, registry: StreakEngineRegistry = Depends(get_streak_registry)):
    """Return the current streak state for a user."""
    return registry.get(user_id).get_state()


@router.get("/v1/streaks/{user_id}/history")
def get_streak_history(user_id: str, registry: StreakEngineRegistry = Depends(get_streak_registry)):
    engine = registry.get(user_id)
    return {"history": [day.isoformat() for day in engine.qualified_date_history]}


@router.post("/v1/streaks/{user_id}/events/{event_name}")
def handle_event(
    user_id: str,
    event_name: str,
    event: Optional[EngineEvent] = None,
    registry: StreakEngineRegistry = Depends(get_streak_registry),
):
    handler = _EVENT_HANDLERS.get(event_name)
    if handler is None:
        raise NotFoundError(f"Unknown streak event: {event_name}")
    engine = registry.get(user_id)
    handler(engine, event or EngineEvent())
    return {"state": engine.get_state()}


@router.post("/v1/streaks/{user_id}/resync")
def resync_day(
    user_id: str,
    event: Optional[EngineEvent] = None,
    registry: StreakEngineRegistry = Depends(get_streak_registry),
):
    engine = registry.get(user_id)
    reset = engine.reset_if_missed_day(at=event.at if event else None)
    return {"reset": reset, "state": engine.get_state()}


@router.post("/v1/streaks/{user_id}/first-qualification-prompt/consume")
def consume_first_qualification_prompt(user_id: str, registry: StreakEngineRegistry = Depends(get_streak_registry)):
    return {"show": registry.get(user_id).consume_first_qualification_prompt()}


def _require_debug_tools() -> None:
    if not settings.DEBUG_TOOLS_ENABLED:
        raise DebugToolsDisabledError("Streak debug tools are disabled")


@router.post("/v1/streaks/{user_id}/debug/qualify", dependencies=[Depends(_require_debug_tools)])
def debug_qualify(
    user_id: str,
    body: DebugQualifyRequest,
    registry: StreakEngineRegistry = Depends(get_streak_registry),
):
    engine = registry.get(user_id)
    qualified = engine.debug_qualify_today(body.criterion)
    return {"qualified": qualified, "state": engine.get_state()}


@router.post("/v1/streaks/{user_id}/debug/advance-day", dependencies=[Depends(_require_debug_tools)])
def debug_advance_day(
    user_id: str,
    body: DebugAdvanceRequest,
    registry: StreakEngineRegistry = Depends(get_streak_registry),
):
    engine = registry.get(user_id)
    engine.debug_simulate_day_advance(body.days)
    return {"state": engine.get_state()}


@router.post("/v1/streaks/{user_id}/debug/reset", dependencies=[Depends(_require_debug_tools)])
def debug_reset(user_id: str, registry: StreakEngineRegistry = Depends(get_streak_registry)):
    engine = registry.get(user_id)
    engine.reset_all()
    return {"state": engine.get_state()}
