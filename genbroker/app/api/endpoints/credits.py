"""Balances, account creation, ledger history, usage and pricing."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ...core.errors import InvalidRequestError
from ...schemas.base import (
    AccountRequest,
    AccountResponse,
    BalanceResponse,
    EstimateRequest,
    EstimateResponse,
    HistoryResponse,
    TransactionResponse,
    UsageResponse,
)
from ...services import catalog, pricing
from ...services.credits import TRANSACTION_TYPES, CreditLedger
from ..deps import get_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


def _balance_or_404(ledger: CreditLedger, user_id: str) -> BalanceResponse:
    balance = ledger.get_balance(user_id)
    if balance is None:
        raise HTTPException(status_code=404, detail="Credit account not found")
    return BalanceResponse.model_validate(balance)


@router.post("/credits/accounts", response_model=AccountResponse)
def create_account(request: AccountRequest, ledger: CreditLedger = Depends(get_ledger)):
    """Open a credit account with the signup grant. Calling it again is a no-op."""
    created = ledger.ensure_account(request.user_id, initial_grant=request.initial_grant)
    return AccountResponse(created=created, balance=_balance_or_404(ledger, request.user_id))


@router.get("/credits/{user_id}", response_model=BalanceResponse)
def get_balance(user_id: str, ledger: CreditLedger = Depends(get_ledger)):
    return _balance_or_404(ledger, user_id)


@router.get("/credits/{user_id}/history", response_model=HistoryResponse)
def get_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tx_type: Optional[str] = Query(None, alias="type"),
    ledger: CreditLedger = Depends(get_ledger),
):
    if tx_type is not None and tx_type not in TRANSACTION_TYPES:
        raise InvalidRequestError([f"Unknown transaction type: {tx_type}"])
    items = ledger.get_history(user_id, limit=limit, offset=offset, tx_type=tx_type)
    return HistoryResponse(
        items=[TransactionResponse.model_validate(item) for item in items],
        limit=limit,
        offset=offset,
    )


@router.get("/credits/{user_id}/usage", response_model=UsageResponse)
def get_usage(
    user_id: str,
    days: int = Query(30, ge=1, le=365),
    ledger: CreditLedger = Depends(get_ledger),
):
    return UsageResponse.model_validate(ledger.get_usage_stats(user_id, days))


@router.get("/pricing")
def get_pricing():
    """Default-option credit cost of every model, keyed by type then model."""
    return pricing.pricing_table()


@router.post("/pricing/estimate", response_model=EstimateResponse)
def estimate(request: EstimateRequest, ledger: CreditLedger = Depends(get_ledger)):
    if catalog.get_model(request.type, request.model) is None:
        raise InvalidRequestError([f"Unknown {request.type} model: {request.model}"])

    cost = pricing.estimate(request.type, request.model, request.params)
    response = EstimateResponse(
        type=request.type,
        model=request.model,
        credits=cost.total_cost,
        estimated_seconds=pricing.estimated_seconds(request.type, request.model),
        breakdown=cost.breakdown,
    )
    if request.user_id:
        balance = ledger.get_balance(request.user_id)
        available = balance.available if balance else 0
        response.available = available
        response.affordable = available >= cost.total_cost
        if request.type == catalog.IMAGE:
            response.max_affordable_quantity = pricing.affordable_quantity(
                request.type, request.model, available, request.params
            ).max_quantity
    return response
