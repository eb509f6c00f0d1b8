"""
HTTP boundary.

Endpoints are plain `def` functions so FastAPI runs each request on its own
worker thread; every shared-state decision is made by the database, never by
this module.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .challenge import CHALLENGE_HEADER, PROOF_HEADERS, RESPONSE_HEADER, Order
from .engine import Engine
from .errors import (
    ChannelError,
    IntegrityError,
    InvalidProofError,
    NotFoundError,
    SettlementFailedError,
    TransactionLogError,
    ValidationError,
)
from .money import price_to_minor


logger = logging.getLogger(__name__)


class OrderRequest(BaseModel):
    itemId: str = Field(min_length=1)
    agentWallet: str = Field(min_length=1)
    category: str = Field(min_length=1)


class CategoryRequest(BaseModel):
    name: str
    amountUsd: Decimal = Field(gt=0)


class FundingIntentRequest(BaseModel):
    senderId: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    phone: str
    totalUsd: Decimal = Field(gt=0)
    categories: list[CategoryRequest]
    memo: Optional[str] = None


class TopUpRequest(BaseModel):
    escrowId: str = Field(min_length=1)
    senderId: str = Field(min_length=1)
    phone: str


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(title="Stipend", version="0.1.0")
    app.state.engine = engine

    @app.exception_handler(RequestValidationError)
    def _invalid_request(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request body", details=[err.get("msg") for err in exc.errors()])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/merchants")
    def merchants():
        return {"merchants": [m.to_dict() for m in engine.protocol.list_merchants()]}

    @app.post("/merchant/{merchant_id}/order")
    def order(merchant_id: str, body: OrderRequest, request: Request):
        proof = next(
            (request.headers[h] for h in PROOF_HEADERS if request.headers.get(h)), None
        )
        spend = Order(
            merchant_id=merchant_id,
            item_id=body.itemId,
            agent=body.agentWallet,
            category=body.category,
        )
        try:
            result = engine.protocol.process(spend, proof)
        except NotFoundError as e:
            return _error(404, str(e))
        except InvalidProofError as e:
            return _error(400, str(e))
        except SettlementFailedError as e:
            logger.error("Order %s/%s failed in settlement: %s", merchant_id, body.itemId, e)
            return _error(500, str(e), txId=e.tx_id)
        except TransactionLogError as e:
            logger.error("Order %s/%s could not be logged: %s", merchant_id, body.itemId, e)
            return _error(500, str(e))

        if result.challenge is not None and result.receipt is None and result.rejection is None:
            return JSONResponse(
                status_code=result.status_code,
                content=result.challenge.body(),
                headers={CHALLENGE_HEADER: result.challenge.header_value()},
            )
        if result.rejection is not None:
            return JSONResponse(status_code=result.status_code, content=result.rejection.body())
        receipt = result.receipt
        return JSONResponse(
            status_code=result.status_code,
            content={"success": True, **receipt.to_dict()},
            headers={RESPONSE_HEADER: receipt.header_value()},
        )

    @app.post("/funding/intents")
    def create_intent(body: FundingIntentRequest):
        try:
            intent = engine.funding.create_intent(
                sender_id=body.senderId,
                recipient=body.recipient,
                phone=body.phone,
                total_minor=price_to_minor(body.totalUsd),
                categories=[
                    {"name": c.name, "amount_usd": c.amountUsd} for c in body.categories
                ],
                memo=body.memo,
            )
        except ValidationError as e:
            return _error(400, str(e))
        except ChannelError as e:
            logger.error("On-ramp initiation failed: %s", e)
            return _error(502, str(e))
        return intent.to_dict()

    @app.get("/funding/status/{code}")
    def intent_status(code: str, senderId: Optional[str] = None):
        try:
            intent = engine.funding.intent_status(code, sender_id=senderId)
        except NotFoundError as e:
            return _error(404, str(e))
        return intent.to_dict()

    @app.post("/funding/topups")
    def create_topup(body: TopUpRequest):
        try:
            topup = engine.funding.create_topup(body.escrowId, body.senderId, body.phone)
        except NotFoundError as e:
            return _error(404, str(e))
        except ValidationError as e:
            return _error(400, str(e))
        except ChannelError as e:
            logger.error("On-ramp initiation failed: %s", e)
            return _error(502, str(e))
        return topup.to_dict()

    @app.post("/webhooks/{provider}")
    def webhook(provider: str, payload: dict = Body(...)):
        handler = engine.webhook_handlers.get(provider)
        if handler is None:
            return _error(404, f"Unknown webhook provider: {provider}")
        code = payload.get("transaction_code")
        if not code or not isinstance(code, str):
            return _error(400, "Missing transaction_code")

        logger.info("Webhook %s received for %s (status=%s)", provider, code, payload.get("status"))
        try:
            gated = engine.gate.guard(provider, code, lambda: handler.handle(payload))
        except (IntegrityError, ValidationError) as e:
            return _error(400, str(e))

        if gated.duplicate:
            return {"ok": True, "message": "Already processed"}
        return {"ok": True, "action": gated.value.action}

    return app
