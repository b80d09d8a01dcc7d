"""
Domain errors

Each error carries the message shown to the client and the HTTP status the
API layer answers with. Services raise these before touching storage, so an
error never leaves a half-written order behind.
"""
from typing import Optional


class AlbumOrderError(Exception):
    status_code = 400
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AlbumOrderError):
    """Missing or malformed input the client can correct."""
    status_code = 400


class NotFoundError(AlbumOrderError):
    status_code = 404
    default_message = "The requested item could not be found."

    def __init__(self, entity: str, entity_id, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message)


class InvalidStateError(AlbumOrderError):
    status_code = 409
    default_message = "This order can no longer be modified."


class EmptyCartError(AlbumOrderError):
    status_code = 400
    default_message = "Your cart is empty."


class CartAccessError(AlbumOrderError):
    status_code = 403
    default_message = "You cannot modify this order."


class ConcurrencyError(AlbumOrderError):
    status_code = 409
    default_message = "This album is being updated by another request. Please try again."


class PaymentRequiredError(AlbumOrderError):
    status_code = 402
    default_message = "Payment required."

    def __init__(self, total, message: Optional[str] = None):
        self.total = total
        super().__init__(message)


class PaymentVerificationError(AlbumOrderError):
    status_code = 400
    default_message = "Payment verification failed."


class GatewayError(AlbumOrderError):
    status_code = 502
    default_message = "We could not reach the payment provider. Please try again."

    def __init__(self, message: Optional[str] = None, code: str = "gateway_error"):
        self.code = code
        super().__init__(message)
