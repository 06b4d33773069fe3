import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from pymongo.errors import DuplicateKeyError

from errors import InsufficientStock, PaymentNotCompleted, ProductNotFound
from payments import STATUS_PAID, call_with_retries
from stores import (
    INVENTORY_APPLIED,
    INVENTORY_PENDING,
    INVENTORY_SHORTFALL,
    InventoryStore,
    OrderLedger,
)


@dataclass
class SettlementResult:
    transaction_id: str
    order_id: str
    created: bool = False

    def to_dict(self) -> Dict[str, str]:
        return {"transactionId": self.transaction_id, "orderId": self.order_id}


class ReconciliationService:
    """Turns hosted-checkout sessions into orders and stock movements.

    All state lives in the two stores. Settlement relies on the unique index
    on ``transactionId`` so that concurrent or repeated calls for the same
    captured payment create one order, and on the per-transaction stock
    decrement so that inventory is reduced once.
    """

    def __init__(
        self,
        inventory: InventoryStore,
        ledger: OrderLedger,
        gateway,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        logger: Optional[logging.Logger] = None,
    ):
        self.inventory = inventory
        self.ledger = ledger
        self.gateway = gateway
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.logger = logger or logging.getLogger(__name__)

    def _call_gateway(self, func, *args, **kwargs):
        return call_with_retries(
            func,
            *args,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            logger=self.logger,
            **kwargs,
        )

    def start_checkout(
        self,
        product_id: str,
        quantity: int,
        customer: Dict,
        success_url: str,
        cancel_url: str,
    ) -> str:
        product = self.inventory.get(product_id)
        if not product:
            raise ProductNotFound(product_id)

        available = int(product.get("quantity") or 0)
        if quantity < 1 or quantity > available:
            raise InsufficientStock(quantity, available)

        handle = self._call_gateway(
            self.gateway.create_session,
            product,
            quantity,
            customer,
            success_url,
            cancel_url,
        )
        self.logger.info(
            "Checkout %s started for plant %s x%s by %s",
            handle.session_id,
            product_id,
            quantity,
            customer.get("email"),
        )
        return handle.url

    def settle_payment(self, session_id: str) -> SettlementResult:
        session = self._call_gateway(self.gateway.retrieve_session, session_id)
        if session.status != STATUS_PAID:
            raise PaymentNotCompleted(session_id, session.status)

        product_id = session.metadata["plantId"]
        product = self.inventory.get(product_id)
        if not product:
            self.logger.error(
                "Session %s was paid for plant %s which no longer exists",
                session_id,
                product_id,
            )
            raise ProductNotFound(product_id)

        transaction_id = session.payment_intent_id
        existing = self.ledger.find_by_transaction_id(transaction_id)
        if existing:
            return self._resume(existing, session)

        order = {
            "plantId": product_id,
            "transactionId": transaction_id,
            "customerEmail": session.metadata.get("customerEmail", ""),
            "customerName": session.metadata.get("customerName", ""),
            "status": "pending",
            "seller": product.get("seller"),
            "name": product.get("name"),
            "category": product.get("category"),
            "image": product.get("image"),
            "quantity": session.quantity,
            "price": session.amount_paid,
            "inventory": INVENTORY_PENDING,
            "createdAt": datetime.utcnow(),
        }
        try:
            order_id = self.ledger.insert(order)
        except DuplicateKeyError:
            self.logger.warning(
                "Transaction %s was settled concurrently; returning the recorded order",
                transaction_id,
            )
            return self._resume(self.ledger.find_by_transaction_id(transaction_id), session)

        order["_id"] = order_id
        self._apply_inventory(order)
        self.logger.info(
            "Settled session %s as order %s (transaction %s)",
            session_id,
            order_id,
            transaction_id,
        )
        return SettlementResult(transaction_id, str(order_id), created=True)

    def _resume(self, order: Dict, session) -> SettlementResult:
        if order.get("inventory", INVENTORY_PENDING) == INVENTORY_PENDING:
            # An earlier call recorded the order but did not finish the decrement.
            self._apply_inventory(order)
        return SettlementResult(order["transactionId"], str(order["_id"]))

    def _apply_inventory(self, order: Dict):
        try:
            self.inventory.decrement_quantity(
                order["plantId"], int(order["quantity"]), order["transactionId"]
            )
        except (InsufficientStock, ProductNotFound) as exc:
            self.logger.error(
                "Order %s was paid but stock could not be reserved: %s",
                order["_id"],
                exc.message,
            )
            self.ledger.mark_inventory(order["_id"], INVENTORY_SHORTFALL)
            return
        self.ledger.mark_inventory(order["_id"], INVENTORY_APPLIED)
