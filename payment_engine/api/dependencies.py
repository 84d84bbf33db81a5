"""Dependency injection for FastAPI endpoints"""

from fastapi import Request
from payment_engine.services.engine import TransactionEngine


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_engine(request: Request) -> TransactionEngine:
    """Provide the engine built at application startup"""
    return request.app.state.engine
