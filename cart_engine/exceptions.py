"""
Custom exceptions for the cart engine.
"""
from typing import Optional

class CartException(Exception):
    """Base exception for cart operations"""
    pass

class ValidationError(CartException):
    """Raised when local input validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

class StorageError(CartException):
    """Raised when the durable storage backend fails"""
    pass

class PricingAuthorityError(CartException):
    """Raised when the remote pricing authority cannot produce a usable response"""
    def __init__(self, message: str, status_code: int = 0, code: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)

    @property
    def is_transport_error(self) -> bool:
        """True when no HTTP response was received at all"""
        return self.status_code == 0

class IncompleteGiftSelectionError(CartException):
    """Raised when gift selections are finalized before every quota is filled"""
    def __init__(self, pending: Optional[dict] = None):
        self.pending = pending or {}
        names = ", ".join(sorted(self.pending)) or "unknown"
        super().__init__(f"Gift selection incomplete for promotions: {names}")
