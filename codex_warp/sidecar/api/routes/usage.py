"""
Usage API routes - recorded token usage per run and the daily rollup.
"""

import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ....core.usage import daily_rollup
from ..state import SidecarState, get_state

router = APIRouter()
logger = logging.getLogger(__name__)


class UsageRecordResponse(BaseModel):
    ts_ms: int
    session_id: str
    total_tokens: int
    input_tokens: int
    output_tokens: int
    reasoning_output_tokens: int
    cached_input_tokens: int
    context_window: int
    thread_id: str | None = None


class DailyUsageResponse(BaseModel):
    day: str
    runs: int
    total_tokens: int
    input_tokens: int
    output_tokens: int
    reasoning_output_tokens: int
    cached_input_tokens: int


class UsageResponse(BaseModel):
    records: list[UsageRecordResponse]
    daily: list[DailyUsageResponse]


@router.get("/usage")
def get_usage(
    limit: int | None = Query(default=None, ge=0),
    state: SidecarState = Depends(get_state),
) -> UsageResponse:
    """Usage records (oldest first) and per-day totals (newest day first).

    The rollup covers the same records that are returned.
    """
    records = state.usage.list_usage(limit)
    return UsageResponse(
        records=[UsageRecordResponse(**record.to_dict()) for record in records],
        daily=[DailyUsageResponse(**day.to_dict()) for day in daily_rollup(records)],
    )
