from typing import Optional


class ReconciliationError(Exception):
    """Base class for every checkout and settlement failure."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {"message": self.message}


class ProductNotFound(ReconciliationError):
    status_code = 404

    def __init__(self, product_id: Optional[str] = None):
        super().__init__("Plant not found.")
        self.product_id = product_id


class InsufficientStock(ReconciliationError):
    status_code = 400

    def __init__(self, requested: int = 0, available: Optional[int] = None):
        if available is None:
            message = "Not enough plants in stock."
        else:
            message = f"Requested {requested} but only {available} in stock."
        super().__init__(message)
        self.requested = requested
        self.available = available


class PaymentNotCompleted(ReconciliationError):
    """The session exists but has not been paid yet; the caller may poll again."""

    status_code = 402

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Payment for session {session_id} is {status}.")
        self.session_id = session_id
        self.status = status

    def to_dict(self):
        return {"message": self.message, "status": self.status}


class PaymentGatewayError(ReconciliationError):
    status_code = 502


class GatewayUnavailable(PaymentGatewayError):
    status_code = 503

    def __init__(self, message: str = "Payment provider unavailable; try again."):
        super().__init__(message)


class InvalidAmount(PaymentGatewayError):
    status_code = 400

    def __init__(self, amount: float = 0):
        super().__init__("Checkout amount must be greater than zero.")
        self.amount = amount


class SessionNotFound(PaymentGatewayError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Checkout session not found.")
        self.session_id = session_id


class MalformedSession(PaymentGatewayError):
    status_code = 502

    def __init__(self, session_id: str, details: str):
        super().__init__(f"Checkout session {session_id} is malformed: {details}")
        self.session_id = session_id
        self.details = details
