"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context, require_admin_scope
from routers.rate_limit import rate_limit, signup_fingerprint
from services.credit_errors import (
    AccountNotFound,
    CreditError,
    InsufficientCredits,
    InvalidAmount,
    InvalidReservationState,
    TrialAlreadyUsed,
)
from services.credits import CreditService, get_credit_service, to_credits
from services.pricing import estimate_cost, get_default_ai_model, list_models

router = APIRouter()
logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    InsufficientCredits: 402,
    TrialAlreadyUsed: 403,
    AccountNotFound: 404,
    InvalidReservationState: 409,
    InvalidAmount: 422,
}


def _http_error(exc: CreditError) -> HTTPException:
    status_code = _ERROR_STATUS.get(type(exc), 400)
    if status_code not in (402, 403):
        logger.warning("Ledger request rejected: %s", exc.message)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


class EstimateRequest(BaseModel):
    service_type: str
    quantities: Dict[str, float] = Field(default_factory=dict)
    model_id: Optional[str] = None


class CreditAdjustmentRequest(BaseModel):
    user_id: str = Field(min_length=1)
    credits: float = Field(ge=-10000, le=10000)
    reason: str = Field(min_length=1, max_length=500)
    reference_id: Optional[str] = None


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditService = Depends(get_credit_service),
):
    await ledger.ensure_account(auth.user_id, auth.email)
    breakdown = await ledger.get_balance_breakdown(auth.user_id)
    expires_at = breakdown["trial_expires_at"]
    return {
        "balance": float(breakdown["total"]),
        "trial": float(breakdown["trial"]),
        "purchased": float(breakdown["purchased"]),
        "trial_expires_at": expires_at.isoformat() if expires_at else None,
        "trial_credits_amount": float(settings.TRIAL_CREDITS_AMOUNT),
    }


@router.get("/history")
async def credit_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditService = Depends(get_credit_service),
):
    entries, total = await ledger.get_history(auth.user_id, limit=limit, offset=offset)
    return {
        "transactions": [entry.to_dict() for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/estimate")
async def estimate(
    request: EstimateRequest,
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditService = Depends(get_credit_service),
):
    try:
        result = estimate_cost(
            request.service_type,
            request.quantities,
            model_id=request.model_id or get_default_ai_model().id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    await ledger.ensure_account(auth.user_id, auth.email)
    balance = await ledger.get_balance(auth.user_id)
    has_enough = balance >= result.total_cost
    payload = result.to_dict()
    payload.update(
        {
            "user_balance": float(balance),
            "has_enough": has_enough,
            "shortfall": 0.0 if has_enough else float(result.total_cost - balance),
            "balance_after": float(balance - result.total_cost) if has_enough else 0.0,
        }
    )
    logger.info(
        "cost_estimate user=%s service=%s cost=%s balance=%s",
        auth.user_id,
        result.service_type.value,
        result.total_cost,
        balance,
    )
    return payload


@router.get("/models")
async def ai_models():
    return {"models": list_models()}


@router.post("/adjustments")
async def adjust_credits(
    request: CreditAdjustmentRequest,
    _rate_limit: None = Depends(rate_limit("billing_adjustment", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(require_admin_scope),
    ledger: CreditService = Depends(get_credit_service),
):
    """Operator credit or debit on any account, recorded as ``admin_adjustment``."""
    await ledger.ensure_account(request.user_id)
    credits = to_credits(request.credits)
    try:
        entry_id = await ledger.add_credits(
            request.user_id,
            credits,
            transaction_type="admin_adjustment",
            reference_id=request.reference_id,
            description=request.reason,
            metadata={"adjusted_by": auth.user_id},
        )
    except CreditError as exc:
        raise _http_error(exc) from exc
    logger.info("admin_adjustment user=%s credits=%s by=%s", request.user_id, credits, auth.user_id)
    return {
        "ok": True,
        "entry_id": entry_id,
        "credits": float(credits),
        "balance_after": float(await ledger.get_balance(request.user_id)),
    }


@router.post("/trial")
async def claim_trial(
    request: Request,
    _rate_limit: None = Depends(rate_limit("billing_trial", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditService = Depends(get_credit_service),
):
    await ledger.ensure_account(auth.user_id, auth.email)
    try:
        entry_id = await ledger.grant_trial(auth.user_id, signup_fingerprint(request))
    except CreditError as exc:
        raise _http_error(exc) from exc
    return {
        "granted": entry_id is not None,
        "entry_id": entry_id,
        "balance": float(await ledger.get_balance(auth.user_id)),
    }
