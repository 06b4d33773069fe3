import atexit
import math
import os
from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from errors import PaymentGatewayError, ReconciliationError
from payments import StripeCheckoutGateway
from reconciliation import ReconciliationService
from stores import InventoryStore, OrderLedger

load_dotenv()

ALLOWED_USER_ROLES = {"customer", "seller", "admin"}
AUDIT_LOG_LIMIT = 200


def create_app(test_config: Optional[Dict] = None, db=None, gateway=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``gateway`` replace the MongoDB database and the Stripe client;
    when omitted they are built from the environment.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/PlantNet")
    app.config["CLIENT_URL"] = os.getenv("CLIENT_URL", "http://localhost:5173").rstrip("/")
    app.config["STRIPE_SECRET_KEY"] = os.getenv("STRIPE_SECRET_KEY", "")
    app.config["STRIPE_API_BASE"] = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "usd")
    app.config["PAYMENT_TIMEOUT_SECONDS"] = float(
        os.getenv("PAYMENT_TIMEOUT_SECONDS", "10")
    )
    app.config["PAYMENT_RETRY_ATTEMPTS"] = int(os.getenv("PAYMENT_RETRY_ATTEMPTS", "3"))
    app.config["PAYMENT_RETRY_BACKOFF_SECONDS"] = float(
        os.getenv("PAYMENT_RETRY_BACKOFF_SECONDS", "0.5")
    )
    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [app.config["CLIENT_URL"]]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"message": "Unauthorized Access!", "details": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"message": "Unauthorized Access!", "details": reason}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Unauthorized Access!", "details": "Token has expired"}), 401

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db
        atexit.register(mongo.cx.close)
        try:
            mongo.cx.admin.command("ping")
            app.logger.info("Pinged your deployment. Connected to MongoDB.")
        except PyMongoError as exc:
            app.logger.warning("MongoDB ping failed: %s", exc)

    plants = InventoryStore(db.plants)
    orders = OrderLedger(db.orders)
    users_collection = db.users
    seller_requests_collection = db.sellerRequest
    audit_logs_collection = db.audit_logs

    try:
        plants.ensure_indexes()
        orders.ensure_indexes()
        users_collection.create_index("email", unique=True)
        seller_requests_collection.create_index("email", unique=True)
        audit_logs_collection.create_index([("created_at", DESCENDING)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    if gateway is None:
        gateway = StripeCheckoutGateway(
            app.config["STRIPE_SECRET_KEY"],
            base_url=app.config["STRIPE_API_BASE"],
            currency=app.config["PAYMENT_CURRENCY"],
            timeout=app.config["PAYMENT_TIMEOUT_SECONDS"],
            logger=app.logger,
        )

    reconciliation = ReconciliationService(
        plants,
        orders,
        gateway,
        retry_attempts=app.config["PAYMENT_RETRY_ATTEMPTS"],
        retry_backoff=app.config["PAYMENT_RETRY_BACKOFF_SECONDS"],
        logger=app.logger,
    )

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_int(value, default=None):
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return default

    def serialize_document(document, hidden=()):
        if not document:
            return None
        serialized = {}
        for key, value in document.items():
            if key in hidden:
                continue
            if isinstance(value, ObjectId):
                value = str(value)
            elif isinstance(value, datetime):
                value = (
                    value.isoformat()
                    if value.tzinfo is not None
                    else f"{value.isoformat()}Z"
                )
            serialized[key] = value
        return serialized

    def serialize_plant(document):
        return serialize_document(document, hidden=("appliedTransactions",))

    def current_user():
        email = normalize_email(get_jwt_identity())
        return users_collection.find_one({"email": email}) if email else None

    def require_role(role: str, label: str):
        user_document = current_user()
        user_role = user_document.get("role") if user_document else None
        if user_role == role:
            return user_document, None
        return (
            None,
            (jsonify({"message": f"{label} only Actions", "role": user_role}), 403),
        )

    def require_seller():
        return require_role("seller", "Seller")

    def require_admin():
        return require_role("admin", "Admin")

    def record_audit_log(actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
        try:
            audit_logs_collection.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": {
                        str(key): str(value)
                        for key, value in (metadata or {}).items()
                        if value is not None
                    },
                    "created_at": datetime.utcnow(),
                }
            )
        except PyMongoError as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    @app.errorhandler(ReconciliationError)
    def handle_reconciliation_error(exc: ReconciliationError):
        if isinstance(exc, PaymentGatewayError):
            app.logger.error("Payment provider error: %s", exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    # --- ROUTES ---

    @app.route("/")
    def index():
        return "Hello from Server.."

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # --- Plants ---

    @app.route("/plants", methods=["POST"])
    @jwt_required()
    def create_plant():
        seller, permission_error = require_seller()
        if permission_error:
            return permission_error

        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name") or "").strip()
        if not name:
            return jsonify({"message": "A plant name is required."}), 400

        price_value = round(safe_float(payload.get("price"), 0.0), 2)
        if price_value <= 0:
            return jsonify({"message": "Price must be greater than zero."}), 400

        quantity = safe_int(payload.get("quantity"))
        if quantity is None or quantity < 0:
            return jsonify({"message": "Quantity must be a whole number of zero or more."}), 400

        seller_email = normalize_email(seller.get("email"))
        plant_document = {
            "name": name,
            "description": str(payload.get("description") or "").strip(),
            "category": str(payload.get("category") or "").strip(),
            "image": str(payload.get("image") or "").strip(),
            "price": price_value,
            "quantity": quantity,
            "seller": {
                "name": seller.get("name", ""),
                "email": seller_email,
                "image": seller.get("image", ""),
            },
        }
        inserted_id = plants.insert(plant_document)
        record_audit_log(
            seller_email,
            "Created plant",
            {"plant_id": str(inserted_id), "plant_name": name},
        )
        return jsonify({"acknowledged": True, "insertedId": str(inserted_id)}), 201

    @app.route("/plants", methods=["GET"])
    def list_plants():
        return jsonify([serialize_plant(document) for document in plants.list()])

    @app.route("/plants/<plant_id>", methods=["GET"])
    def get_plant(plant_id: str):
        plant_document = plants.get(plant_id)
        if not plant_document:
            return jsonify({"message": "Plant not found."}), 404
        return jsonify(serialize_plant(plant_document))

    @app.route("/my-inventory/<email>", methods=["GET"])
    @jwt_required()
    def seller_inventory(email: str):
        _, permission_error = require_seller()
        if permission_error:
            return permission_error
        documents = plants.list_by_seller(normalize_email(email))
        return jsonify([serialize_plant(document) for document in documents])

    # --- Orders ---

    @app.route("/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        email = normalize_email(get_jwt_identity())
        return jsonify([serialize_document(doc) for doc in orders.list_for_customer(email)])

    @app.route("/manage-orders/<email>", methods=["GET"])
    @jwt_required()
    def seller_orders(email: str):
        _, permission_error = require_seller()
        if permission_error:
            return permission_error
        documents = orders.list_for_seller(normalize_email(email))
        return jsonify([serialize_document(doc) for doc in documents])

    # --- Payments ---

    @app.route("/create-checkout-session", methods=["POST"])
    def create_checkout_session():
        payload = request.get_json(silent=True) or {}
        plant_id = str(payload.get("plantId") or "").strip()
        if not plant_id:
            return jsonify({"message": "A plant identifier is required."}), 400

        quantity = safe_int(payload.get("quantity", 1))
        if quantity is None:
            return jsonify({"message": "Quantity must be a whole number."}), 400

        customer_payload = payload.get("customer") or {}
        customer = {
            "email": normalize_email(customer_payload.get("email")),
            "name": str(customer_payload.get("name") or "").strip(),
        }
        if not customer["email"]:
            return jsonify({"message": "A customer email is required."}), 400

        client_url = app.config["CLIENT_URL"]
        url = reconciliation.start_checkout(
            plant_id,
            quantity,
            customer,
            success_url=f"{client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{client_url}/plant/{plant_id}",
        )
        return jsonify({"url": url})

    @app.route("/payment-success", methods=["POST"])
    def payment_success():
        payload = request.get_json(silent=True) or {}
        session_id = str(payload.get("sessionId") or "").strip()
        if not session_id:
            return jsonify({"message": "A checkout session identifier is required."}), 400

        result = reconciliation.settle_payment(session_id)
        if result.created:
            order_document = orders.get(result.order_id) or {}
            record_audit_log(
                order_document.get("customerEmail"),
                "Settled order",
                {
                    "order_id": result.order_id,
                    "transaction_id": result.transaction_id,
                    "plant_id": order_document.get("plantId"),
                },
            )
        return jsonify(result.to_dict())

    # --- Users ---

    @app.route("/user", methods=["POST"])
    def save_user():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        if not email:
            return jsonify({"message": "An email address is required."}), 400

        now = datetime.utcnow().isoformat() + "Z"
        result = users_collection.update_one(
            {"email": email},
            {
                "$set": {"last_logged_in": now},
                "$setOnInsert": {
                    "name": str(payload.get("name") or "").strip(),
                    "image": str(payload.get("image") or "").strip(),
                    "role": "customer",
                    "created_at": now,
                },
            },
            upsert=True,
        )
        created = result.upserted_id is not None
        app.logger.info("%s user %s", "Saved new" if created else "Updated", email)
        return jsonify({"created": created, "email": email})

    @app.route("/user/role", methods=["GET"])
    @jwt_required()
    def get_user_role():
        user_document = current_user()
        return jsonify({"role": user_document.get("role") if user_document else None})

    @app.route("/become-seller", methods=["POST"])
    @jwt_required()
    def become_seller():
        email = normalize_email(get_jwt_identity())
        if seller_requests_collection.find_one({"email": email}):
            return jsonify({"message": "Already Requested, please wait."}), 409

        seller_requests_collection.insert_one(
            {"email": email, "created_at": datetime.utcnow()}
        )
        return jsonify({"message": "Seller request submitted.", "email": email}), 201

    # --- Admin Routes ---

    @app.route("/seller-requests", methods=["GET"])
    @jwt_required()
    def list_seller_requests():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        return jsonify(
            [serialize_document(doc) for doc in seller_requests_collection.find()]
        )

    @app.route("/users", methods=["GET"])
    @jwt_required()
    def list_users():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error
        admin_email = normalize_email(admin_user.get("email"))
        return jsonify(
            [
                serialize_document(doc)
                for doc in users_collection.find({"email": {"$ne": admin_email}})
            ]
        )

    @app.route("/update-role", methods=["PATCH"])
    @jwt_required()
    def update_role():
        admin_user, admin_error = require_admin()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        desired_role = str(payload.get("role") or "").strip().lower()
        if desired_role not in ALLOWED_USER_ROLES:
            return (
                jsonify({"message": "Role must be 'customer', 'seller', or 'admin'."}),
                400,
            )

        result = users_collection.update_one({"email": email}, {"$set": {"role": desired_role}})
        if result.matched_count == 0:
            return jsonify({"message": "User not found."}), 404
        seller_requests_collection.delete_one({"email": email})

        record_audit_log(
            admin_user.get("email"),
            "Updated user role",
            {"target_email": email, "new_role": desired_role},
        )
        return jsonify({"message": f"Role updated to {desired_role}.", "email": email})

    @app.route("/audit-logs", methods=["GET"])
    @jwt_required()
    def list_audit_logs():
        _, admin_error = require_admin()
        if admin_error:
            return admin_error
        limit = safe_int(request.args.get("limit"), AUDIT_LOG_LIMIT) or AUDIT_LOG_LIMIT
        limit = max(1, min(limit, AUDIT_LOG_LIMIT))
        cursor = audit_logs_collection.find().sort("created_at", DESCENDING).limit(limit)
        return jsonify({"logs": [serialize_document(doc) for doc in cursor]})

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
