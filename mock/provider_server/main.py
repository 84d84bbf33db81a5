"""Mock payment provider: OAuth token, signed submit responses, status lookup.

Behaviour can be switched at runtime through POST /mock/behaviour to
simulate throttling, transient failures and tampered responses.
"""

import os
import uuid
from datetime import timezone, datetime
from typing import Dict, Literal

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from payment_engine.config import settings
from payment_engine.domain.integrity import IntegrityService


class Behaviour(BaseModel):
    mode: Literal["ok", "capacity", "transient", "tamper"] = "ok"
    failures: int = 0  # For "transient": fail this many submits, then succeed


def create_mock_app(secret: str | None = None) -> FastAPI:
    app = FastAPI(title="Mock Payment Provider", version="1.0.0")
    shared_secret = secret or os.getenv("MOCK_PROVIDER_SECRET") or settings.integrity_secret.get_secret_value()
    integrity = IntegrityService(secret=shared_secret.encode())
    state: Dict[str, object] = {"behaviour": Behaviour(), "failed": 0}
    processed: Dict[str, dict] = {}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/oauth/v1/generate")
    def generate_token(grant_type: str):
        if grant_type != "client_credentials":
            raise HTTPException(status_code=400, detail="unsupported grant_type")
        return {"access_token": uuid.uuid4().hex, "expires_in": 3599}

    @app.post("/mock/behaviour")
    def set_behaviour(behaviour: Behaviour):
        state["behaviour"] = behaviour
        state["failed"] = 0
        return behaviour

    @app.post("/payments/v1/submit")
    async def submit(request: Request):
        if not request.headers.get("Authorization", "").startswith("Bearer "):
            raise HTTPException(status_code=401, detail="missing access token")
        body = await request.json()

        behaviour: Behaviour = state["behaviour"]
        if behaviour.mode == "capacity":
            raise HTTPException(status_code=429, detail="too many requests")
        if behaviour.mode == "transient" and state["failed"] < behaviour.failures:
            state["failed"] += 1
            raise HTTPException(status_code=502, detail="upstream unavailable")

        if not integrity.verify_request(
            body["account_key"], float(body["amount"]), body["timestamp"], body["security_hash"]
        ):
            raise HTTPException(status_code=400, detail="request hash mismatch")

        timestamp = datetime.now(timezone.utc)
        amount = float(body["amount"])
        response = {
            "transaction_id": body["transaction_id"],
            "amount": amount,
            "timestamp": timestamp.isoformat(),
            "security_hash": integrity.sign_response(body["transaction_id"], amount, timestamp),
            "reference": f"MOCK{uuid.uuid4().hex[:10].upper()}",
        }
        if behaviour.mode == "tamper":
            # Signed for the real amount, reports another
            response["amount"] = amount * 10

        processed[body["transaction_id"]] = response
        return response

    @app.get("/payments/v1/status/{transaction_id}")
    def status(transaction_id: str):
        if transaction_id not in processed:
            raise HTTPException(status_code=404, detail="unknown transaction")
        return processed[transaction_id]

    return app


app = create_mock_app()
