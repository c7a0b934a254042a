"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ErrorResponse,
    OrderResponse,
    VerificationResponse,
    VerifyPaymentRequest,
)

__all__ = [
    "create_app",
    "ErrorResponse",
    "OrderResponse",
    "VerificationResponse",
    "VerifyPaymentRequest",
]
