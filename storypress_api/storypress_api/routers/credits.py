"""Generation-credit endpoints used by the content pipeline."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from storypress_api.dependencies import SessionDep, SettingsDep, require_admin_token
from storypress_api.schemas import ConsumeCreditRequest, LedgerEntryResponse, LedgerResponse
from storypress_api.services.credit_service import ConsumeResult, CreditLedger, CreditSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"], dependencies=[Depends(require_admin_token)])


@router.get("/{user_id}", response_model=CreditSnapshot)
async def get_credits(user_id: str, session: SessionDep, settings: SettingsDep) -> CreditSnapshot:
    """Return the user's balances, granting the starter pack on first touch."""
    return await CreditLedger(session, settings).snapshot(user_id)


@router.get("/{user_id}/ledger", response_model=LedgerResponse)
async def get_ledger(
    user_id: str,
    session: SessionDep,
    settings: SettingsDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> LedgerResponse:
    entries = await CreditLedger(session, settings).history(user_id, limit=limit)
    return LedgerResponse(
        user_id=user_id,
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        total=len(entries),
    )


@router.post("/{user_id}/consume", response_model=ConsumeResult)
async def consume_credit(
    user_id: str,
    body: ConsumeCreditRequest,
    session: SessionDep,
    settings: SettingsDep,
) -> ConsumeResult | JSONResponse:
    """Charge one generation step.  Returns 402 when the balance is short."""
    result = await CreditLedger(session, settings).consume_generation_credit(user_id, body.operation)
    if not result.ok:
        # Returned rather than raised so a first-touch starter grant still commits.
        return JSONResponse(status_code=402, content=result.model_dump())
    return result
