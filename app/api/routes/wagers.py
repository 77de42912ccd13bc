"""Read-only wager endpoints."""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.dependencies import get_ledger
from app.models.domain import WagerStatus
from app.services.ledger import WagerLedger

router = APIRouter(prefix="/api/wagers", tags=["wagers"])


class LegResponse(BaseModel):
    """Combination leg in API response."""

    position: int
    event_id: str | None
    home_name: str | None
    away_name: str | None
    market_name: str | None
    market_kind: str | None
    selection_label: str | None
    line: Decimal | None
    odds_at_placement: Decimal | None
    leg_status: str
    final_score: str | None

    class Config:
        from_attributes = True


class WagerListItem(BaseModel):
    """Wager item in list response."""

    id: int
    account_id: int
    kind: str
    stake: Decimal
    total_odds: Decimal
    status: str
    payout: Decimal
    profit: Decimal | None
    estimated_settlement_time: datetime | None
    settled_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class WagerDetail(WagerListItem):
    """Detailed wager response."""

    event_id: str | None
    home_name: str | None
    away_name: str | None
    market_name: str | None
    market_kind: str | None
    selection_label: str | None
    line: Decimal | None
    final_score: str | None
    retry_count: int
    max_retry_count: int
    settlement_reason: str | None
    match_method: str | None
    match_confidence: Decimal | None
    legs: list[LegResponse]


class WagerListResponse(BaseModel):
    """Paginated wager list response."""

    items: list[WagerListItem]
    total: int
    limit: int
    offset: int


@router.get("", response_model=WagerListResponse)
async def list_wagers(
    account_id: int | None = Query(None, description="Filter by account"),
    status: WagerStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ledger: WagerLedger = Depends(get_ledger),
):
    """List wagers, newest first."""
    wagers, total = await ledger.list_for_account(
        account_id=account_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return WagerListResponse(
        items=[WagerListItem.model_validate(w) for w in wagers],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{wager_id}", response_model=WagerDetail)
async def get_wager(wager_id: int, ledger: WagerLedger = Depends(get_ledger)):
    """Get one wager with its legs."""
    wager = await ledger.get(wager_id)
    if wager is None:
        raise HTTPException(status_code=404, detail="Wager not found")
    return WagerDetail.model_validate(wager)
