import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import requests

from errors import (
    GatewayUnavailable,
    InvalidAmount,
    MalformedSession,
    PaymentGatewayError,
    SessionNotFound,
)

STATUS_CREATED = "created"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"

REQUIRED_METADATA = ("plantId", "quantity", "customerEmail")


@dataclass
class CheckoutHandle:
    session_id: str
    url: str


@dataclass
class CheckoutSession:
    session_id: str
    status: str
    payment_intent_id: Optional[str]
    amount_total: int
    currency: str
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def quantity(self) -> int:
        return int(self.metadata["quantity"])

    @property
    def amount_paid(self) -> float:
        return round(self.amount_total / 100, 2)


def to_minor_units(price) -> int:
    try:
        numeric = float(price)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    return int(round(numeric * 100))


def normalize_session_status(payload: Dict) -> str:
    """Collapse the provider's two status fields into created/paid/failed/expired."""
    payment_status = str(payload.get("payment_status") or "").lower()
    session_status = str(payload.get("status") or "").lower()
    if payment_status == "paid":
        return STATUS_PAID
    if session_status == "expired":
        return STATUS_EXPIRED
    if session_status == "complete":
        return STATUS_FAILED
    return STATUS_CREATED


def call_with_retries(
    func: Callable,
    *args,
    attempts: int = 3,
    backoff: float = 0.5,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
):
    """Call ``func`` and retry it when the provider is unreachable.

    Only ``GatewayUnavailable`` is retried; every other failure propagates at
    once. The delay doubles after each failed attempt and the last failure is
    re-raised once ``attempts`` calls have been made.
    """
    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except GatewayUnavailable as exc:
            if attempt == attempts - 1:
                raise
            delay = backoff * (2**attempt)
            if logger is not None:
                logger.warning(
                    "Payment provider call failed (%s), retry %s/%s in %.2fs",
                    exc,
                    attempt + 1,
                    attempts - 1,
                    delay,
                )
            if delay > 0:
                sleep(delay)


class StripeCheckoutGateway:
    """Hosted checkout through the Stripe REST API.

    The gateway keeps no local state: both calls are a single round trip with
    a bounded timeout, and the caller decides whether to retry.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com",
        currency: str = "usd",
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.secret_key = secret_key or ""
        self.base_url = base_url.rstrip("/")
        self.currency = (currency or "usd").lower()
        self.timeout = timeout
        self.http = http or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.Timeout as exc:
            self.logger.error("Stripe request to %s timed out: %s", path, exc)
            raise GatewayUnavailable() from exc
        except requests.RequestException as exc:
            self.logger.error("Stripe request to %s failed: %s", path, exc)
            raise GatewayUnavailable() from exc

        if response.status_code >= 500 or response.status_code == 429:
            self.logger.error(
                "Stripe returned %s for %s: %s", response.status_code, path, response.text
            )
            raise GatewayUnavailable()
        return response

    def create_session(
        self,
        product: Dict,
        quantity: int,
        customer: Dict,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutHandle:
        unit_amount = to_minor_units(product.get("price"))
        if unit_amount * quantity <= 0:
            raise InvalidAmount(unit_amount * quantity / 100)

        product_id = str(product.get("_id"))
        customer_email = str(customer.get("email") or "")
        customer_name = str(customer.get("name") or "")

        form = {
            "mode": "payment",
            "line_items[0][price_data][currency]": self.currency,
            "line_items[0][price_data][unit_amount]": unit_amount,
            "line_items[0][price_data][product_data][name]": product.get("name") or "Plant",
            "line_items[0][quantity]": quantity,
            "metadata[plantId]": product_id,
            "metadata[quantity]": str(quantity),
            "metadata[customerEmail]": customer_email,
            "metadata[customerName]": customer_name,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if product.get("description"):
            form["line_items[0][price_data][product_data][description]"] = product[
                "description"
            ]
        if product.get("image"):
            form["line_items[0][price_data][product_data][images][0]"] = product["image"]
        if customer_email:
            form["customer_email"] = customer_email

        response = self._request("POST", "/v1/checkout/sessions", data=form)
        if response.status_code != 200:
            self.logger.error("Stripe checkout creation failed: %s", response.text)
            raise PaymentGatewayError("Failed to create payment session.")

        data = response.json()
        session_id = data.get("id")
        url = data.get("url")
        if not session_id or not url:
            raise MalformedSession(str(session_id), "missing id or url")

        self.logger.info(
            "Created checkout session %s for plant %s x%s", session_id, product_id, quantity
        )
        return CheckoutHandle(session_id=session_id, url=url)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        response = self._request("GET", f"/v1/checkout/sessions/{session_id}")
        if response.status_code == 404:
            raise SessionNotFound(session_id)
        if response.status_code != 200:
            self.logger.error(
                "Stripe session lookup for %s failed: %s", session_id, response.text
            )
            raise PaymentGatewayError("Failed to verify payment.")

        return parse_session(session_id, response.json())


def parse_session(session_id: str, data: Dict) -> CheckoutSession:
    if not isinstance(data, dict):
        raise MalformedSession(session_id, "response is not an object")

    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        raise MalformedSession(session_id, "metadata missing")
    missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
    if missing:
        raise MalformedSession(session_id, f"metadata lacks {', '.join(missing)}")
    try:
        quantity = int(metadata["quantity"])
    except (TypeError, ValueError):
        raise MalformedSession(session_id, "metadata quantity is not a number")
    if quantity < 1:
        raise MalformedSession(session_id, "metadata quantity must be positive")

    status = normalize_session_status(data)
    payment_intent = data.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    if status == STATUS_PAID and not payment_intent:
        raise MalformedSession(session_id, "paid session has no payment intent")

    try:
        amount_total = int(data.get("amount_total") or 0)
    except (TypeError, ValueError):
        raise MalformedSession(session_id, "amount_total is not a number")

    return CheckoutSession(
        session_id=str(data.get("id") or session_id),
        status=status,
        payment_intent_id=payment_intent,
        amount_total=amount_total,
        currency=str(data.get("currency") or ""),
        metadata={str(key): str(value) for key, value in metadata.items()},
    )
