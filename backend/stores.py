from datetime import datetime
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from errors import InsufficientStock, ProductNotFound

INVENTORY_PENDING = "pending"
INVENTORY_APPLIED = "applied"
INVENTORY_SHORTFALL = "shortfall"


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class InventoryStore:
    """Plant records and their stock counters."""

    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        self.collection.create_index([("seller.email", ASCENDING)])

    def get(self, product_id) -> Optional[Dict]:
        object_id = to_object_id(product_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id})

    def insert(self, record: Dict) -> ObjectId:
        document = dict(record)
        document.setdefault("createdAt", datetime.utcnow())
        document.setdefault("appliedTransactions", [])
        return self.collection.insert_one(document).inserted_id

    def list(self, query: Optional[Dict] = None) -> List[Dict]:
        return list(self.collection.find(query or {}).sort("_id", DESCENDING))

    def list_by_seller(self, email: str) -> List[Dict]:
        return self.list({"seller.email": email})

    def decrement_quantity(self, product_id, amount: int, transaction_id: str) -> bool:
        """Subtract ``amount`` from the stock of ``product_id`` once per transaction.

        The floor check, the decrement and the transaction bookkeeping happen in
        one ``find_one_and_update`` so concurrent sales of the last unit cannot
        drive the counter negative.

        Returns True when this call applied the decrement and False when the
        transaction had already been applied.

        Raises:
            ProductNotFound: the plant no longer exists.
            InsufficientStock: fewer than ``amount`` units are left.
        """
        object_id = to_object_id(product_id)
        if object_id is None:
            raise ProductNotFound(str(product_id))

        updated = self.collection.find_one_and_update(
            {
                "_id": object_id,
                "quantity": {"$gte": amount},
                "appliedTransactions": {"$ne": transaction_id},
            },
            {
                "$inc": {"quantity": -amount},
                "$push": {"appliedTransactions": transaction_id},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return True

        current = self.collection.find_one({"_id": object_id})
        if not current:
            raise ProductNotFound(str(product_id))
        if transaction_id in (current.get("appliedTransactions") or []):
            return False
        raise InsufficientStock(amount, current.get("quantity", 0))


class OrderLedger:
    """Orders keyed by the provider's payment intent id."""

    def __init__(self, collection):
        self.collection = collection

    def ensure_indexes(self):
        self.collection.create_index(
            [("transactionId", ASCENDING)], unique=True, name="transactionId_unique"
        )
        self.collection.create_index([("customerEmail", ASCENDING)])
        self.collection.create_index([("seller.email", ASCENDING)])

    def get(self, order_id) -> Optional[Dict]:
        object_id = to_object_id(order_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id})

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Dict]:
        return self.collection.find_one({"transactionId": transaction_id})

    def insert(self, record: Dict) -> ObjectId:
        # DuplicateKeyError propagates; the unique index is the settlement guard.
        document = dict(record)
        document.setdefault("createdAt", datetime.utcnow())
        return self.collection.insert_one(document).inserted_id

    def mark_inventory(self, order_id, state: str):
        self.collection.update_one(
            {"_id": to_object_id(order_id)}, {"$set": {"inventory": state}}
        )

    def list_for_customer(self, email: str) -> List[Dict]:
        return list(
            self.collection.find({"customerEmail": email}).sort("createdAt", DESCENDING)
        )

    def list_for_seller(self, email: str) -> List[Dict]:
        return list(
            self.collection.find({"seller.email": email}).sort("createdAt", DESCENDING)
        )
