from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fitter.core.errors import InvalidTransition
from fitter.db.session import get_db
from fitter.db.store import ActivityStore, suggestion_to_dict
from fitter.services.lifecycle import SuggestionLifecycleManager

router = APIRouter(prefix="/users/{user_id}/suggestions", tags=["suggestions"])


class SuggestionListResponse(BaseModel):
    items: list[dict[str, Any]]


def _require_user(store: ActivityStore, user_id: int) -> None:
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")


@router.get("", response_model=SuggestionListResponse)
def list_active(user_id: int, db: Session = Depends(get_db)) -> SuggestionListResponse:
    store = ActivityStore(db)
    _require_user(store, user_id)
    return SuggestionListResponse(items=[suggestion_to_dict(row) for row in store.list_active_suggestions(user_id)])


@router.get("/history", response_model=SuggestionListResponse)
def history(
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    status_filter: Optional[Literal["active", "completed", "dismissed"]] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> SuggestionListResponse:
    store = ActivityStore(db)
    _require_user(store, user_id)
    rows = store.suggestion_history(user_id, limit=limit, status=status_filter)
    return SuggestionListResponse(items=[suggestion_to_dict(row) for row in rows])


def _apply(user_id: int, suggestion_id: int, action: str, db: Session) -> dict[str, Any]:
    manager = SuggestionLifecycleManager(ActivityStore(db))
    try:
        row = manager.complete(user_id, suggestion_id) if action == "complete" else manager.dismiss(user_id, suggestion_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Suggestion not found")
    return suggestion_to_dict(row)


@router.post("/{suggestion_id}/complete")
def complete(user_id: int, suggestion_id: int, db: Session = Depends(get_db)) -> dict[str, Any]:
    return _apply(user_id, suggestion_id, "complete", db)


@router.post("/{suggestion_id}/dismiss")
def dismiss(user_id: int, suggestion_id: int, db: Session = Depends(get_db)) -> dict[str, Any]:
    return _apply(user_id, suggestion_id, "dismiss", db)
