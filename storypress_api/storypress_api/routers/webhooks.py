"""Payment provider webhooks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from storypress_api.dependencies import PaymentGatewayDep
from storypress_api.services.payment_gateway import WebhookVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, gateway: PaymentGatewayDep) -> JSONResponse:
    """Receive a Stripe event.

    Authenticated by the ``stripe-signature`` header rather than the admin
    token.  Returns 400 for an unverifiable request, 200 once the event is
    applied (or recognised as a duplicate) and 500 when processing failed,
    which makes Stripe redeliver.
    """
    body = await request.body()
    try:
        event = gateway.verify(body, request.headers.get("stripe-signature"))
    except WebhookVerificationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        outcome = await gateway.handle_event(event)
    except Exception:
        return JSONResponse(status_code=500, content={"detail": "Webhook processing failed"})

    return JSONResponse(status_code=200, content=outcome.model_dump(exclude_none=True))
