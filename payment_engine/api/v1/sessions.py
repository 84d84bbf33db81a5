"""POST /v1/sessions - issue a single-use transaction session"""

from fastapi import APIRouter, Depends

from payment_engine.api.v1.schemas import SessionRequest, SessionResponse
from payment_engine.api.dependencies import get_engine
from payment_engine.services.engine import TransactionEngine

router = APIRouter()


@router.post("/sessions", response_model=SessionResponse)
def create_session(body: SessionRequest, engine: TransactionEngine = Depends(get_engine)):
    session = engine.create_session(body.account_key)
    return SessionResponse(
        session_id=session.id,
        account_key=session.account_key,
        expires_at=session.expires_at.isoformat(),
    )
