import pytest
import requests

from errors import (
    GatewayUnavailable,
    InvalidAmount,
    MalformedSession,
    PaymentGatewayError,
    SessionNotFound,
)
from payments import (
    STATUS_CREATED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    STATUS_PAID,
    StripeCheckoutGateway,
    call_with_retries,
    normalize_session_status,
)


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(payload)

    def json(self):
        return self._payload


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


PLANT = {
    "_id": "65f0aa000000000000000001",
    "name": "Snake Plant",
    "description": "Hardy and low light tolerant",
    "image": "https://img.plantnet.test/snake.jpg",
    "price": 12.5,
}
CUSTOMER = {"email": "buyer@plantnet.test", "name": "Sam Buyer"}

PAID_SESSION = {
    "id": "cs_test_1",
    "status": "complete",
    "payment_status": "paid",
    "payment_intent": "pi_123",
    "amount_total": 2500,
    "currency": "usd",
    "metadata": {
        "plantId": PLANT["_id"],
        "quantity": "2",
        "customerEmail": CUSTOMER["email"],
        "customerName": CUSTOMER["name"],
    },
}


def make_gateway(*responses):
    http = FakeHttp(*responses)
    gateway = StripeCheckoutGateway(
        "sk_test_123", base_url="https://stripe.test/", timeout=3.0, http=http
    )
    return gateway, http


def test_create_session_sends_minor_units_and_metadata():
    gateway, http = make_gateway(
        FakeResponse(200, {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"})
    )

    handle = gateway.create_session(
        PLANT, 2, CUSTOMER, "https://shop.test/ok", "https://shop.test/cancel"
    )

    assert handle.session_id == "cs_test_1"
    assert handle.url == "https://checkout.stripe.test/cs_test_1"

    method, url, kwargs = http.calls[0]
    form = kwargs["data"]
    assert method == "POST"
    assert url == "https://stripe.test/v1/checkout/sessions"
    assert kwargs["timeout"] == 3.0
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test_123"
    assert form["line_items[0][price_data][unit_amount]"] == 1250
    assert form["line_items[0][quantity]"] == 2
    assert form["line_items[0][price_data][currency]"] == "usd"
    assert form["metadata[plantId]"] == PLANT["_id"]
    assert form["metadata[quantity]"] == "2"
    assert form["metadata[customerName]"] == "Sam Buyer"
    assert form["customer_email"] == "buyer@plantnet.test"


@pytest.mark.parametrize("price", [0, -3, "free", None])
def test_create_session_rejects_non_positive_amount_without_calling_provider(price):
    gateway, http = make_gateway()

    with pytest.raises(InvalidAmount):
        gateway.create_session(dict(PLANT, price=price), 1, CUSTOMER, "ok", "cancel")

    assert http.calls == []


@pytest.mark.parametrize(
    "failure",
    [
        requests.Timeout("read timed out"),
        requests.ConnectionError("connection refused"),
        FakeResponse(503, {"error": "down"}),
    ],
)
def test_unreachable_provider_is_reported_as_unavailable(failure):
    gateway, _ = make_gateway(failure)

    with pytest.raises(GatewayUnavailable):
        gateway.create_session(PLANT, 1, CUSTOMER, "ok", "cancel")


def test_create_session_rejected_by_provider():
    gateway, _ = make_gateway(FakeResponse(400, {"error": {"message": "bad"}}))

    with pytest.raises(PaymentGatewayError) as excinfo:
        gateway.create_session(PLANT, 1, CUSTOMER, "ok", "cancel")

    assert not isinstance(excinfo.value, GatewayUnavailable)


def test_retrieve_paid_session():
    gateway, http = make_gateway(FakeResponse(200, PAID_SESSION))

    session = gateway.retrieve_session("cs_test_1")

    assert http.calls[0][1] == "https://stripe.test/v1/checkout/sessions/cs_test_1"
    assert session.status == STATUS_PAID
    assert session.payment_intent_id == "pi_123"
    assert session.quantity == 2
    assert session.amount_paid == 25.0
    assert session.metadata["customerEmail"] == "buyer@plantnet.test"


def test_retrieve_unknown_session():
    gateway, _ = make_gateway(FakeResponse(404, {"error": {"code": "resource_missing"}}))

    with pytest.raises(SessionNotFound):
        gateway.retrieve_session("cs_missing")


@pytest.mark.parametrize(
    "overrides",
    [
        {"metadata": None},
        {"metadata": {"plantId": PLANT["_id"], "customerEmail": "x@plantnet.test"}},
        {"metadata": dict(PAID_SESSION["metadata"], quantity="two")},
        {"metadata": dict(PAID_SESSION["metadata"], quantity="0")},
        {"payment_intent": None},
    ],
)
def test_retrieve_malformed_session(overrides):
    gateway, _ = make_gateway(FakeResponse(200, dict(PAID_SESSION, **overrides)))

    with pytest.raises(MalformedSession):
        gateway.retrieve_session("cs_test_1")


def test_unpaid_session_may_lack_payment_intent():
    payload = dict(PAID_SESSION, status="open", payment_status="unpaid", payment_intent=None)
    gateway, _ = make_gateway(FakeResponse(200, payload))

    session = gateway.retrieve_session("cs_test_1")

    assert session.status == STATUS_CREATED
    assert session.payment_intent_id is None


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"status": "open", "payment_status": "unpaid"}, STATUS_CREATED),
        ({"status": "complete", "payment_status": "paid"}, STATUS_PAID),
        ({"status": "complete", "payment_status": "unpaid"}, STATUS_FAILED),
        ({"status": "expired", "payment_status": "unpaid"}, STATUS_EXPIRED),
    ],
)
def test_normalize_session_status(payload, expected):
    assert normalize_session_status(payload) == expected


def test_call_with_retries_backs_off_then_succeeds():
    attempts = []
    delays = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise GatewayUnavailable()
        return "ok"

    result = call_with_retries(flaky, attempts=3, backoff=0.5, sleep=delays.append)

    assert result == "ok"
    assert len(attempts) == 3
    assert delays == [0.5, 1.0]


def test_call_with_retries_gives_up():
    delays = []

    def down():
        raise GatewayUnavailable()

    with pytest.raises(GatewayUnavailable):
        call_with_retries(down, attempts=2, backoff=0.1, sleep=delays.append)

    assert delays == [0.1]


def test_call_with_retries_does_not_retry_other_failures():
    calls = []

    def missing(session_id):
        calls.append(session_id)
        raise SessionNotFound(session_id)

    with pytest.raises(SessionNotFound):
        call_with_retries(missing, "cs_missing", attempts=5, backoff=0)

    assert calls == ["cs_missing"]
