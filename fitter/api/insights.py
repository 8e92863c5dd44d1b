from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fitter.core.dates import utc_now
from fitter.core.errors import AggregationError
from fitter.db.session import get_db
from fitter.db.store import ActivityStore, summary_to_dict
from fitter.services.aggregator import DailyAggregator

router = APIRouter(prefix="/users/{user_id}/insights", tags=["insights"])


class InsightListResponse(BaseModel):
    items: list[dict[str, Any]]


@router.get("", response_model=InsightListResponse)
def recent_insights(user_id: int, db: Session = Depends(get_db)) -> InsightListResponse:
    store = ActivityStore(db)
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return InsightListResponse(items=[summary_to_dict(row) for row in store.recent_summaries(user_id)])


@router.post("/aggregate")
def aggregate_day(
    user_id: int,
    day: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    store = ActivityStore(db)
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    try:
        row = DailyAggregator(store).aggregate(user_id, day or utc_now().date())
    except AggregationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return summary_to_dict(row)
