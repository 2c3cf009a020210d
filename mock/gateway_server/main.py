"""Mock payment gateway speaking the Stripe payment-intent wire shape"""

import uuid
from typing import Dict
from urllib.parse import parse_qsl

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

app = FastAPI(title="Mock Payment Gateway", version="1.0.0")

INTENTS: Dict[str, dict] = {}

# Amounts (in cents) with scripted outcomes, mirroring the gateway's test cards
DECLINE_AMOUNT_CENTS = 402
SERVER_ERROR_AMOUNT_CENTS = 503


def stripe_error(status: int, message: str, code: str, error_type: str = "card_error") -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": {"type": error_type, "code": code, "message": message}})


def authorize(authorization: str | None) -> None:
    if not authorization or not authorization.startswith("Bearer sk_"):
        raise HTTPException(status_code=401, detail="Invalid API Key provided")


async def form_fields(request: Request) -> Dict[str, str]:
    return dict(parse_qsl((await request.body()).decode("utf-8")))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/v1/payment_intents")
async def create_intent(request: Request, authorization: str | None = Header(None)):
    authorize(authorization)
    form = await form_fields(request)
    amount = int(form.get("amount", "0"))

    if amount < 50:
        return stripe_error(400, "Amount must be at least $0.50 usd", "amount_too_small", "invalid_request_error")
    if amount == DECLINE_AMOUNT_CENTS:
        return stripe_error(402, "Your card was declined.", "card_declined")
    if amount == SERVER_ERROR_AMOUNT_CENTS:
        return stripe_error(500, "An error occurred with our connection to Stripe.", "api_error", "api_error")

    intent_id = f"pi_{uuid.uuid4().hex[:24]}"
    intent = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": form.get("currency", "usd"),
        "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:16]}",
        "status": "requires_payment_method",
        "metadata": {k[len("metadata["):-1]: v for k, v in form.items() if k.startswith("metadata[")},
        "transfer_data": {"destination": form["transfer_data[destination]"]} if "transfer_data[destination]" in form else None,
        "application_fee_amount": int(form["application_fee_amount"]) if "application_fee_amount" in form else None,
        "last_payment_error": None,
    }
    INTENTS[intent_id] = intent
    return intent


@app.get("/v1/payment_intents/{intent_id}")
def retrieve_intent(intent_id: str, authorization: str | None = Header(None)):
    authorize(authorization)
    if intent_id not in INTENTS:
        return stripe_error(404, f"No such payment_intent: '{intent_id}'", "resource_missing", "invalid_request_error")
    return INTENTS[intent_id]


@app.post("/v1/payment_intents/{intent_id}/confirm")
async def confirm_intent(intent_id: str, request: Request, authorization: str | None = Header(None)):
    """Client-side confirmation stand-in; pm_card_chargeDeclined fails the intent"""
    authorize(authorization)
    if intent_id not in INTENTS:
        return stripe_error(404, f"No such payment_intent: '{intent_id}'", "resource_missing", "invalid_request_error")

    form = await form_fields(request)
    intent = INTENTS[intent_id]
    if form.get("payment_method") == "pm_card_chargeDeclined":
        intent["status"] = "requires_payment_method"
        intent["last_payment_error"] = {"code": "card_declined", "message": "Your card was declined."}
    else:
        intent["status"] = "succeeded"
        intent["last_payment_error"] = None
    return intent


@app.post("/v1/payment_intents/{intent_id}/cancel")
def cancel_intent(intent_id: str, authorization: str | None = Header(None)):
    authorize(authorization)
    if intent_id not in INTENTS:
        return stripe_error(404, f"No such payment_intent: '{intent_id}'", "resource_missing", "invalid_request_error")
    INTENTS[intent_id]["status"] = "canceled"
    return INTENTS[intent_id]
