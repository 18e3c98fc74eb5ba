import hmac
import json
import os
from datetime import timedelta
from functools import wraps
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

import bcrypt
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, redirect, render_template, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    decode_token,
    get_jwt,
    get_jwt_identity,
    set_access_cookies,
    unset_jwt_cookies,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from . import fragrances as catalogue
from . import notifications
from . import orders as order_rules
from .gmail import GmailSender
from .supabase import SupabaseError, SupabaseNotFound, SupabaseRest

load_dotenv()

REVIEW_TOKEN_PURPOSE = "order_review"
REVIEW_LINK_LIFETIME = timedelta(hours=24)
LOGIN_PAGE = "/login.html"
GMAIL_SETTINGS = (
    "ADMIN_EMAIL",
    "GMAIL_USER",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REFRESH_TOKEN",
)


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def create_app(config_overrides: Optional[Dict] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    trusted_proxy_hops = max(0, env_int("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config.update(
        SUPABASE_URL=os.getenv("SUPABASE_URL", "").strip(),
        SUPABASE_ANON_KEY=os.getenv("SUPABASE_ANON_KEY", "").strip(),
        SUPABASE_SERVICE_ROLE_KEY=os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip(),
        ADMIN_USER=os.getenv("ADMIN_USER", "").strip(),
        ADMIN_PASS=os.getenv("ADMIN_PASS", ""),
        ADMIN_PASS_HASH=os.getenv("ADMIN_PASS_HASH", "").strip(),
        ADMIN_SESSION_HOURS=env_int("ADMIN_SESSION_HOURS", 24),
        ADMIN_EMAIL=os.getenv("ADMIN_EMAIL", "").strip(),
        GMAIL_USER=os.getenv("GMAIL_USER", "").strip(),
        GOOGLE_CLIENT_ID=os.getenv("GOOGLE_CLIENT_ID", "").strip(),
        GOOGLE_CLIENT_SECRET=os.getenv("GOOGLE_CLIENT_SECRET", "").strip(),
        GOOGLE_REFRESH_TOKEN=os.getenv("GOOGLE_REFRESH_TOKEN", "").strip(),
        RESEND_API_KEY=os.getenv("RESEND_API_KEY", "").strip(),
        ORDERS_SENDER_EMAIL=os.getenv("ORDERS_SENDER_EMAIL", "orders@qotore.com").strip(),
        SITE_URL=os.getenv("SITE_URL", "").strip(),
        CANCELLATION_WINDOW_MINUTES=env_int("CANCELLATION_WINDOW_MINUTES", 60),
        MAX_IMAGE_SIZE_MB=env_int("MAX_IMAGE_SIZE_MB", 5),
        JWT_SECRET_KEY=os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        JWT_TOKEN_LOCATION=["cookies"],
        JWT_ACCESS_COOKIE_NAME="admin_session",
        JWT_COOKIE_CSRF_PROTECT=False,
        JWT_COOKIE_SAMESITE="Lax",
        JWT_COOKIE_SECURE=env_flag("ADMIN_COOKIE_SECURE", True),
        JWT_SESSION_COOKIE=False,
    )
    if config_overrides:
        app.config.update(config_overrides)

    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=app.config["ADMIN_SESSION_HOURS"]
    )
    max_image_bytes = app.config["MAX_IMAGE_SIZE_MB"] * 1024 * 1024
    # Leave room for the multipart envelope around a maximum-size image.
    app.config["MAX_CONTENT_LENGTH"] = max_image_bytes + 1024 * 1024
    app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    # --- Initialize extensions ---
    allowed_origins = [os.getenv("SITE_URL", "").strip()]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)

    cancellation_window = timedelta(minutes=app.config["CANCELLATION_WINDOW_MINUTES"])

    # --- Helpers ---

    def error_response(message: str, status: int, **extra):
        body = {"success": False, "error": message}
        body.update(extra)
        return jsonify(body), status

    def auth_required_response():
        return error_response("Authentication required", 401, redirectUrl=LOGIN_PAGE)

    def get_database(public: bool = False):
        url = app.config["SUPABASE_URL"]
        key = app.config["SUPABASE_SERVICE_ROLE_KEY"]
        if public and app.config["SUPABASE_ANON_KEY"]:
            key = app.config["SUPABASE_ANON_KEY"]
        if not url or not key:
            app.logger.error("Supabase credentials are not configured")
            return None, error_response("Database not configured", 500)
        return SupabaseRest(url, key), None

    def read_json_body():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return None, error_response("Invalid request data format", 400)
        return payload, None

    def client_ip() -> str:
        return request.headers.get("CF-Connecting-IP") or request.remote_addr or ""

    def pick(source, *keys) -> str:
        if not isinstance(source, dict):
            return ""
        for key in keys:
            value = source.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return ""

    def parse_order_id(value) -> Optional[int]:
        if isinstance(value, bool):
            return None
        try:
            order_id = int(str(value).strip())
        except (TypeError, ValueError):
            return None
        return order_id if order_id > 0 else None

    def fetch_one(db: SupabaseRest, table: str, filters: Dict, columns: str = "*"):
        rows = db.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def is_admin_session() -> bool:
        if not request.cookies.get(app.config["JWT_ACCESS_COOKIE_NAME"]):
            return False
        try:
            verify_jwt_in_request()
        except (JWTExtendedException, PyJWTError):
            return False
        return get_jwt().get("role") == "admin"

    def admin_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not is_admin_session():
                return auth_required_response()
            return view(*args, **kwargs)

        return wrapper

    def check_admin_password(password: str) -> bool:
        password_hash = app.config["ADMIN_PASS_HASH"]
        if password_hash:
            try:
                return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
            except ValueError:
                app.logger.error("ADMIN_PASS_HASH is not a valid bcrypt hash")
                return False
        return hmac.compare_digest(
            password.encode("utf-8"), app.config["ADMIN_PASS"].encode("utf-8")
        )

    def missing_gmail_settings() -> List[str]:
        return [name for name in GMAIL_SETTINGS if not app.config.get(name)]

    def send_admin_email(subject: str, text: str, html: str):
        missing = missing_gmail_settings()
        if missing:
            app.logger.warning("Admin email skipped, missing settings: %s", ", ".join(missing))
            return None
        sender = GmailSender(
            app.config["GOOGLE_CLIENT_ID"],
            app.config["GOOGLE_CLIENT_SECRET"],
            app.config["GOOGLE_REFRESH_TOKEN"],
        )
        return sender.send(
            app.config["GMAIL_USER"], app.config["ADMIN_EMAIL"], subject, text, html
        )

    def build_review_url(order_id) -> str:
        token = create_access_token(
            identity=str(order_id),
            additional_claims={"purpose": REVIEW_TOKEN_PURPOSE},
            expires_delta=REVIEW_LINK_LIFETIME,
        )
        base_url = app.config["SITE_URL"] or request.host_url
        query = urlencode({"order": order_id, "token": token})
        return f"{base_url.rstrip('/')}/api/review-order?{query}"

    def notify_new_order(order: Dict, items: List[Dict]) -> Dict[str, bool]:
        delivered = {"admin": False, "customer": False}

        subject, text_body, html_body = notifications.build_admin_order_email(
            notifications.notification_payload(order, items),
            site_url=app.config["SITE_URL"],
            review_url=build_review_url(order.get("id")),
        )
        result = send_admin_email(subject, text_body, html_body)
        if result is not None:
            delivered["admin"] = result.success
            if not result.success:
                app.logger.error(
                    "Admin notification for %s failed: %s", order.get("order_number"), result.error
                )

        if order.get("customer_email") and app.config["RESEND_API_KEY"]:
            sent, error = notifications.send_order_confirmation_email(
                order, items, app.config["RESEND_API_KEY"], app.config["ORDERS_SENDER_EMAIL"]
            )
            delivered["customer"] = sent
            if not sent:
                app.logger.error(
                    "Order confirmation for %s failed: %s", order.get("order_number"), error
                )
        return delivered

    def notify_cancellation(order: Dict, reason: str, notify_admin: bool = True) -> Dict[str, bool]:
        delivered = {"admin": False, "customer": False}
        if notify_admin:
            subject, text_body, html_body = notifications.build_admin_cancellation_email(
                order, reason
            )
            result = send_admin_email(subject, text_body, html_body)
            if result is not None:
                delivered["admin"] = result.success
                if not result.success:
                    app.logger.error("Cancellation notice failed: %s", result.error)

        if order.get("customer_email") and app.config["RESEND_API_KEY"]:
            sent, error = notifications.send_order_cancellation_email(
                order, reason, app.config["RESEND_API_KEY"], app.config["ORDERS_SENDER_EMAIL"]
            )
            delivered["customer"] = sent
            if not sent:
                app.logger.error("Customer cancellation email failed: %s", error)
        return delivered

    def parse_order_submission(payload: Dict, admin: bool = False):
        """Collect order fields and line items from a checkout or admin form."""
        customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}
        delivery = payload.get("delivery") if isinstance(payload.get("delivery"), dict) else {}

        fields = {
            "customer_first_name": pick(customer, "first_name", "firstName")
            or pick(payload, "customer_first_name"),
            "customer_last_name": pick(customer, "last_name", "lastName")
            or pick(payload, "customer_last_name"),
            "customer_phone": pick(customer, "phone") or pick(payload, "customer_phone"),
            "customer_email": order_rules.normalize_email(
                pick(customer, "email") or pick(payload, "customer_email")
            ),
            "delivery_address": pick(delivery, "address") or pick(payload, "delivery_address"),
            "delivery_city": pick(delivery, "city") or pick(payload, "delivery_city"),
            "delivery_region": pick(delivery, "region", "wilayat")
            or pick(payload, "delivery_region"),
            "notes": pick(delivery, "notes") or pick(payload, "notes"),
        }

        required = ["customer_first_name", "customer_phone", "delivery_city"]
        required.append("delivery_address" if admin else "delivery_region")
        missing = [name for name in required if not fields[name]]
        if missing:
            return None, None, error_response(
                "Missing required fields", 400, missing=missing
            )

        phone = order_rules.normalize_phone(fields["customer_phone"])
        if phone:
            fields["customer_phone"] = phone
        elif not admin:
            return None, None, error_response(
                "Invalid phone number. Use 8 digits or 968 followed by 8 digits", 400
            )

        if fields["customer_email"] and not order_rules.is_valid_email(fields["customer_email"]):
            return None, None, error_response("Invalid email address", 400)

        items, items_error = order_rules.build_order_items(payload.get("items"))
        if items_error:
            return None, None, error_response(items_error, 400)

        total = order_rules.order_total(items)
        provided_total = payload.get("total_amount", payload.get("total"))
        if provided_total is not None and order_rules.to_baisa(provided_total) != total:
            app.logger.warning(
                "Order total mismatch: client sent %s OMR, items sum to %s OMR",
                provided_total,
                order_rules.format_omr(total),
            )
        fields["total_amount"] = total
        return fields, items, None

    def create_order_with_items(db: SupabaseRest, order_row: Dict, items: List[Dict]):
        created = db.insert("orders", order_row)
        if not created:
            raise SupabaseError("Order insert returned no rows")
        order = created[0]

        item_rows = [dict(item, order_id=order["id"]) for item in items]
        try:
            created_items = db.insert("order_items", item_rows)
        except SupabaseError as exc:
            app.logger.error("Failed to save items for order %s, rolling back", order["id"])
            try:
                db.delete("orders", {"id": order["id"]})
            except SupabaseError:
                app.logger.exception("Rollback of order %s failed", order["id"])
            return None, None, error_response(
                "Failed to save order items", 500, details=exc.details or exc.message
            )
        return order, created_items or item_rows, None

    def fragrance_image_url(image_path: Optional[str]) -> Optional[str]:
        filename = catalogue.strip_bucket_prefix(image_path)
        if not catalogue.is_valid_image_filename(filename):
            return None
        return f"/api/image/{filename}"

    def load_catalogue(db: SupabaseRest, include_hidden: bool) -> List[Dict]:
        filters = None if include_hidden else {"hidden": False}
        fragrance_rows = db.select("fragrances", filters=filters, order="created_at.desc")
        variants_by_fragrance: Dict[object, List[Dict]] = {}
        if fragrance_rows:
            variant_rows = db.select(
                "variants",
                filters={"fragrance_id": [row["id"] for row in fragrance_rows]},
                order="fragrance_id,size_ml.asc.nullslast",
            )
            variants_by_fragrance = catalogue.group_variants(variant_rows)
        return [
            catalogue.serialize_fragrance(
                row,
                variants_by_fragrance.get(row.get("id"), []),
                image_url=fragrance_image_url(row.get("image_path")),
                admin=include_hidden,
            )
            for row in fragrance_rows
        ]

    def store_fragrance_image(db: SupabaseRest, image_file, slug: str):
        data = image_file.read()
        upload_error = catalogue.validate_image_upload(
            secure_filename(image_file.filename or ""), image_file.mimetype, data, max_image_bytes
        )
        if upload_error:
            return None, error_response(upload_error, 400)

        filename = catalogue.image_filename(slug)
        if not catalogue.is_valid_image_filename(filename):
            return None, error_response("Invalid slug for image filename", 400)

        db.upload_object(
            catalogue.IMAGE_BUCKET, filename, data, catalogue.IMAGE_CONTENT_TYPE, upsert=True
        )
        app.logger.info("Uploaded fragrance image %s (%s bytes)", filename, len(data))
        return {
            "filename": filename,
            "path": f"{catalogue.IMAGE_BUCKET}/{filename}",
            "publicUrl": db.public_object_url(catalogue.IMAGE_BUCKET, filename),
        }, None

    def resolve_current_user():
        header = request.headers.get("Authorization", "")
        token = header[7:].strip() if header.lower().startswith("bearer ") else ""
        if not token:
            return None, error_response("Authentication required", 401)
        db, db_error = get_database(public=True)
        if db_error:
            return None, db_error
        user = db.get_auth_user(token)
        if not user or not user.get("id"):
            return None, error_response("Invalid or expired session", 401)
        return user, None

    # --- Error handlers ---

    @app.errorhandler(SupabaseError)
    def handle_supabase_error(exc: SupabaseError):
        app.logger.error("Unhandled database error: %s", exc.message)
        return error_response(exc.message, 500, details=exc.details)

    @app.errorhandler(413)
    def handle_request_too_large(_exc):
        return error_response(
            f"Upload exceeds the {app.config['MAX_IMAGE_SIZE_MB']}MB limit", 413
        )

    # --- Admin session ---

    @app.route("/admin/login", methods=["POST"])
    def admin_login():
        payload = request.get_json(silent=True) or {}
        username = str(payload.get("username") or "").strip()
        password = str(payload.get("password") or "")

        if not app.config["ADMIN_USER"] or not (
            app.config["ADMIN_PASS"] or app.config["ADMIN_PASS_HASH"]
        ):
            app.logger.error("Admin credentials are not configured")
            return error_response(
                "Server configuration error - please check environment variables", 500
            )
        if not username or not password:
            return error_response("Username and password are required", 400)

        username_matches = hmac.compare_digest(
            username.encode("utf-8"), app.config["ADMIN_USER"].encode("utf-8")
        )
        if not (username_matches and check_admin_password(password)):
            app.logger.warning("Failed admin login from %s", client_ip())
            return error_response("Invalid username or password", 401)

        token = create_access_token(identity=username, additional_claims={"role": "admin"})
        response = jsonify({"success": True, "message": "Login successful"})
        set_access_cookies(
            response,
            token,
            max_age=int(app.config["JWT_ACCESS_TOKEN_EXPIRES"].total_seconds()),
        )
        app.logger.info("Admin login from %s", client_ip())
        return response

    @app.route("/admin/logout", methods=["GET", "POST"])
    def admin_logout():
        if request.method == "GET":
            response = redirect(LOGIN_PAGE, code=302)
        else:
            response = jsonify({"success": True, "message": "Logged out successfully"})
        unset_jwt_cookies(response)
        return response

    @app.route("/admin/check", methods=["GET"])
    def admin_check():
        if not is_admin_session():
            return jsonify({"authenticated": False, "redirectUrl": LOGIN_PAGE}), 401
        return jsonify({"authenticated": True, "username": get_jwt_identity()})

    # --- Admin orders ---

    @app.route("/admin/orders", methods=["GET"])
    @admin_required
    def admin_list_orders():
        db, db_error = get_database()
        if db_error:
            return db_error

        rows = db.select("orders", columns="*,order_items(*)", order="created_at.desc")
        return jsonify(
            {
                "success": True,
                "data": [order_rules.serialize_admin_order(row) for row in rows],
                "count": len(rows),
                "stats": order_rules.summarize_orders(rows),
            }
        )

    @app.route("/admin/orders/stats", methods=["GET"])
    @admin_required
    def admin_order_stats():
        db, db_error = get_database()
        if db_error:
            return db_error

        now = order_rules.utcnow()
        rows = db.select(
            "orders",
            columns="*,order_items(*)",
            filters={
                "created_at": ("gte", order_rules.isoformat(order_rules.statistics_window_start(now)))
            },
            order="created_at.desc",
        )
        return jsonify(
            {"success": True, "data": order_rules.dashboard_statistics(rows, now)}
        )

    @app.route("/admin/add-order", methods=["POST"])
    @admin_required
    def admin_add_order():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        fields, items, validation_error = parse_order_submission(payload, admin=True)
        if validation_error:
            return validation_error

        db, db_error = get_database()
        if db_error:
            return db_error

        now = order_rules.utcnow()
        order_row = dict(
            fields,
            order_number=order_rules.generate_order_number(now),
            customer_email=fields["customer_email"] or None,
            status="pending",
            reviewed=False,
            created_at=order_rules.isoformat(now),
            updated_at=order_rules.isoformat(now),
        )
        order, created_items, create_error = create_order_with_items(db, order_row, items)
        if create_error:
            return create_error

        app.logger.info("Admin created order %s", order.get("order_number"))
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Order created successfully",
                    "data": order_rules.serialize_admin_order(
                        dict(order, order_items=created_items)
                    ),
                }
            ),
            201,
        )

    @app.route("/admin/update-order-status", methods=["POST"])
    @admin_required
    def admin_update_order_status():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = payload.get("id")
        status = payload.get("status")
        if not order_id or not status:
            return error_response("Missing required fields: id, status", 400)

        status_error = order_rules.validate_admin_status(status)
        if status_error:
            return error_response(
                status_error, 400, validOptions=list(order_rules.ADMIN_STATUS_OPTIONS)
            )

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", {"id": order_id})
        if not order:
            return error_response("Order not found", 404)

        order_number = order_rules.display_order_number(order)
        previous_status = order.get("status") or "pending"
        if previous_status == status:
            return jsonify(
                {
                    "success": True,
                    "message": f"Order {order_number} is already {status}",
                    "data": {"id": order.get("id"), "status": status},
                }
            )

        db.update(
            "orders",
            {"id": order_id},
            {"status": status, "updated_at": order_rules.isoformat(order_rules.utcnow())},
        )
        app.logger.info("Order %s status %s -> %s", order_number, previous_status, status)
        return jsonify(
            {
                "success": True,
                "message": f"Order {order_number} updated to {status}",
                "data": {
                    "id": order.get("id"),
                    "order_number": order_number,
                    "customer_name": order_rules.customer_name(order),
                    "previousStatus": previous_status,
                    "newStatus": status,
                    "totalAmount": order_rules.from_baisa(order.get("total_amount")),
                },
            }
        )

    @app.route("/admin/mark-order-reviewed", methods=["POST"])
    @admin_required
    def admin_mark_order_reviewed():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = payload.get("order_id") or payload.get("id")
        if not order_id:
            return error_response("Order ID is required", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", {"id": order_id})
        if not order:
            return error_response("Order not found", 404)
        if order.get("status") != "pending":
            return error_response("Only pending orders can be marked as reviewed", 400)
        if order.get("reviewed"):
            return error_response("Order is already reviewed", 400)

        db.update(
            "orders",
            {"id": order_id},
            {
                "reviewed": True,
                "status": "reviewed",
                "updated_at": order_rules.isoformat(order_rules.utcnow()),
            },
        )
        return jsonify(
            {
                "success": True,
                "message": f"Order {order_rules.display_order_number(order)} marked as reviewed",
                "data": {"id": order.get("id"), "status": "reviewed", "reviewed": True},
            }
        )

    @app.route("/admin/toggle-order-review", methods=["POST"])
    @admin_required
    def admin_toggle_order_review():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = payload.get("id")
        reviewed = payload.get("reviewed")
        if not order_id:
            return error_response("Order ID is required", 400)
        if not isinstance(reviewed, bool):
            return error_response("reviewed must be a boolean", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", {"id": order_id})
        if not order:
            return error_response("Order not found", 404)

        changes = {
            "reviewed": reviewed,
            "updated_at": order_rules.isoformat(order_rules.utcnow()),
        }
        if reviewed and order.get("status") == "pending":
            changes["status"] = "reviewed"
        elif not reviewed and order.get("status") == "reviewed":
            changes["status"] = "pending"
        db.update("orders", {"id": order_id}, changes)

        return jsonify(
            {
                "success": True,
                "message": "Order marked as reviewed" if reviewed else "Order marked as not reviewed",
                "data": {
                    "id": order.get("id"),
                    "reviewed": reviewed,
                    "status": changes.get("status", order.get("status")),
                },
            }
        )

    @app.route("/admin/cancel-order", methods=["POST"])
    @admin_required
    def admin_cancel_order():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = payload.get("id") or payload.get("order_id")
        reason = str(payload.get("reason") or "").strip() or "Cancelled by admin"
        if not order_id:
            return error_response("Order ID is required", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", {"id": order_id})
        if not order:
            return error_response("Order not found", 404)
        if order.get("status") == "cancelled":
            return error_response("Order is already cancelled", 400)
        if order.get("status") == "completed":
            return error_response("Cannot cancel completed orders", 400)

        now = order_rules.utcnow()
        changes = {
            "status": "cancelled",
            "cancelled_at": order_rules.isoformat(now),
            "updated_at": order_rules.isoformat(now),
            "notes": order_rules.append_cancellation_note(
                order.get("notes"), reason, now, "admin", client_ip()
            ),
        }
        db.update("orders", {"id": order_id}, changes)
        cancelled = dict(order, **changes)
        delivered = notify_cancellation(cancelled, reason, notify_admin=False)

        app.logger.info("Admin cancelled order %s", order_rules.display_order_number(order))
        return jsonify(
            {
                "success": True,
                "message": f"Order {order_rules.display_order_number(order)} cancelled",
                "data": {
                    "id": order.get("id"),
                    "status": "cancelled",
                    "reason": reason,
                    "customer_notified": delivered["customer"],
                },
            }
        )

    @app.route("/admin/delete-order", methods=["POST"])
    @admin_required
    def admin_delete_order():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = parse_order_id(payload.get("id"))
        if order_id is None:
            return error_response("Valid order ID is required", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", {"id": order_id})
        if not order:
            return error_response("Order not found", 404)

        db.delete("order_items", {"order_id": order_id})
        db.delete("orders", {"id": order_id})

        order_number = order_rules.display_order_number(order)
        app.logger.info("Deleted order %s", order_number)
        return jsonify(
            {
                "success": True,
                "message": f"Order {order_number} deleted successfully",
                "data": {
                    "id": order_id,
                    "order_number": order_number,
                    "customer_name": order_rules.customer_name(order),
                    "amount": order_rules.format_omr(order.get("total_amount")),
                },
            }
        )

    # --- Admin catalogue ---

    @app.route("/admin/fragrances", methods=["GET"])
    @admin_required
    def admin_list_fragrances():
        db, db_error = get_database()
        if db_error:
            return db_error

        fragrances = load_catalogue(db, include_hidden=True)
        return jsonify(
            {
                "success": True,
                "data": fragrances,
                "count": len(fragrances),
                "stats": catalogue.catalogue_stats(fragrances),
            }
        )

    @app.route("/admin/add-fragrance", methods=["POST"])
    @admin_required
    def admin_add_fragrance():
        image_file = None
        if request.content_type and request.content_type.startswith("multipart/form-data"):
            try:
                payload = json.loads(request.form.get("data") or "{}")
            except ValueError:
                return error_response("Invalid fragrance data format", 400)
            image_file = request.files.get("image")
            if not isinstance(payload, dict):
                return error_response("Invalid fragrance data format", 400)
        else:
            payload, body_error = read_json_body()
            if body_error:
                return body_error

        name = pick(payload, "name")
        slug = catalogue.slugify(pick(payload, "slug") or name)
        description = pick(payload, "description")
        variants = payload.get("variants")
        if not name or not slug or not description or not isinstance(variants, list):
            return error_response(
                "Missing required fields: name, slug, description, variants", 400
            )

        variant_rows, variant_error = catalogue.build_variant_rows(None, variants)
        if variant_error:
            return error_response(variant_error, 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        if fetch_one(db, "fragrances", {"slug": slug}, columns="id"):
            return error_response(f'A fragrance with slug "{slug}" already exists', 409)

        image_path = pick(payload, "image_path") or None
        if image_file is not None and image_file.filename:
            uploaded, upload_error = store_fragrance_image(db, image_file, slug)
            if upload_error:
                return upload_error
            image_path = uploaded["path"]

        now = order_rules.isoformat(order_rules.utcnow())
        created = db.insert(
            "fragrances",
            {
                "name": name,
                "slug": slug,
                "brand": pick(payload, "brand") or None,
                "description": description,
                "image_path": image_path,
                "hidden": bool(payload.get("hidden")),
                "created_at": now,
                "updated_at": now,
            },
        )
        if not created:
            return error_response("Failed to create fragrance", 500)
        fragrance = created[0]

        for row in variant_rows:
            row["fragrance_id"] = fragrance["id"]
        try:
            created_variants = db.insert("variants", variant_rows)
        except SupabaseError as exc:
            app.logger.error("Fragrance %s created but variants failed", fragrance["id"])
            return error_response(
                "Fragrance created but variants failed to save",
                207,
                details=exc.details or exc.message,
                fragranceId=fragrance["id"],
                partialSuccess=True,
            )

        app.logger.info("Added fragrance %s with %s variants", slug, len(created_variants))
        return (
            jsonify(
                {
                    "success": True,
                    "message": "Fragrance added successfully!",
                    "data": catalogue.serialize_fragrance(
                        fragrance,
                        created_variants,
                        image_url=fragrance_image_url(image_path),
                        admin=True,
                    ),
                }
            ),
            201,
        )

    @app.route("/admin/update-fragrance", methods=["POST", "PUT"])
    @admin_required
    def admin_update_fragrance():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        fragrance_id = payload.get("id")
        name = pick(payload, "name")
        variants = payload.get("variants")
        if not fragrance_id or not name:
            return error_response("Missing required fields: id, name", 400)
        if not isinstance(variants, list) or not variants:
            return error_response("At least one variant is required", 400)

        variant_rows, variant_error = catalogue.build_variant_rows(fragrance_id, variants)
        if variant_error:
            return error_response(variant_error, 400)

        slug = catalogue.slugify(name)
        db, db_error = get_database()
        if db_error:
            return db_error

        existing = fetch_one(db, "fragrances", {"id": fragrance_id})
        if not existing:
            return error_response("Fragrance not found", 404)
        conflict = fetch_one(
            db, "fragrances", {"slug": slug, "id": ("neq", fragrance_id)}, columns="id"
        )
        if conflict:
            return error_response(f'Another fragrance already uses slug "{slug}"', 409)

        changes = {
            "name": name,
            "slug": slug,
            "brand": pick(payload, "brand") or None,
            "description": pick(payload, "description") or existing.get("description"),
            "hidden": bool(payload.get("hidden", existing.get("hidden"))),
            "updated_at": order_rules.isoformat(order_rules.utcnow()),
        }
        if "image_path" in payload:
            changes["image_path"] = pick(payload, "image_path") or None
        updated = db.update("fragrances", {"id": fragrance_id}, changes)
        fragrance = updated[0] if updated else dict(existing, **changes)

        db.delete("variants", {"fragrance_id": fragrance_id})
        try:
            created_variants = db.insert("variants", variant_rows)
        except SupabaseError as exc:
            app.logger.error("Fragrance %s updated but variants failed", fragrance_id)
            return error_response(
                "Fragrance updated but variants failed to save",
                207,
                details=exc.details or exc.message,
                fragranceId=fragrance_id,
                partialSuccess=True,
            )

        return jsonify(
            {
                "success": True,
                "message": "Fragrance updated successfully!",
                "data": catalogue.serialize_fragrance(
                    fragrance,
                    created_variants,
                    image_url=fragrance_image_url(fragrance.get("image_path")),
                    admin=True,
                ),
            }
        )

    @app.route("/admin/toggle-fragrance", methods=["POST"])
    @admin_required
    def admin_toggle_fragrance():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        fragrance_id = payload.get("id")
        hidden = payload.get("hidden")
        if not fragrance_id:
            return error_response("Fragrance ID is required", 400)
        if not isinstance(hidden, bool):
            return error_response("hidden must be a boolean", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        updated = db.update(
            "fragrances",
            {"id": fragrance_id},
            {"hidden": hidden, "updated_at": order_rules.isoformat(order_rules.utcnow())},
        )
        if not updated:
            return error_response("Fragrance not found", 404)

        message = (
            "Fragrance hidden from store successfully!"
            if hidden
            else "Fragrance made visible in store successfully!"
        )
        return jsonify(
            {
                "success": True,
                "message": message,
                "data": {"id": updated[0].get("id"), "name": updated[0].get("name"), "hidden": hidden},
            }
        )

    @app.route("/admin/delete-fragrance", methods=["POST", "DELETE"])
    @admin_required
    def admin_delete_fragrance():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        fragrance_id = payload.get("id")
        if not fragrance_id:
            return error_response("Fragrance ID is required", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        fragrance = fetch_one(db, "fragrances", {"id": fragrance_id})
        if not fragrance:
            return error_response("Fragrance not found", 404)

        db.delete("variants", {"fragrance_id": fragrance_id})
        db.delete("fragrances", {"id": fragrance_id})
        app.logger.info("Deleted fragrance %s", fragrance.get("slug"))
        return jsonify(
            {
                "success": True,
                "message": f"Fragrance \"{fragrance.get('name')}\" deleted successfully",
                "data": {"id": fragrance_id, "name": fragrance.get("name")},
            }
        )

    @app.route("/admin/upload-image", methods=["POST"])
    @admin_required
    def admin_upload_image():
        image_file = request.files.get("image")
        slug = (request.form.get("slug") or "").strip()
        if image_file is None or not image_file.filename:
            return error_response("No image file provided", 400)
        if not slug:
            return error_response("Slug is required", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        uploaded, upload_error = store_fragrance_image(db, image_file, slug)
        if upload_error:
            return upload_error
        return jsonify(
            {"success": True, "message": "Image uploaded successfully", "data": uploaded}
        )

    @app.route("/admin/delete-image", methods=["POST", "DELETE"])
    @admin_required
    def admin_delete_image():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        filename = catalogue.strip_bucket_prefix(payload.get("imagePath"))
        if not filename:
            return error_response("Image path is required", 400)
        if not catalogue.is_valid_image_filename(filename):
            return error_response("Invalid image filename", 400)

        db, db_error = get_database()
        if db_error:
            return db_error

        try:
            db.delete_object(catalogue.IMAGE_BUCKET, filename)
        except SupabaseNotFound:
            return jsonify(
                {"success": True, "message": "Image already deleted", "data": {"filename": filename}}
            )
        return jsonify(
            {"success": True, "message": "Image deleted successfully", "data": {"filename": filename}}
        )

    # --- Public storefront API ---

    @app.route("/api/config", methods=["GET"])
    def public_config():
        if not app.config["SUPABASE_URL"] or not app.config["SUPABASE_ANON_KEY"]:
            return error_response("Missing Supabase configuration", 500)
        return jsonify(
            {
                "SUPABASE_URL": app.config["SUPABASE_URL"],
                "SUPABASE_ANON_KEY": app.config["SUPABASE_ANON_KEY"],
                "GOOGLE_CLIENT_ID": app.config["GOOGLE_CLIENT_ID"] or None,
            }
        )

    @app.route("/api/fragrances", methods=["GET"])
    def public_fragrances():
        db, db_error = get_database(public=True)
        if db_error:
            return db_error

        fragrances = load_catalogue(db, include_hidden=False)
        return jsonify({"success": True, "data": fragrances, "count": len(fragrances)})

    @app.route("/api/image/<filename>", methods=["GET"])
    def serve_fragrance_image(filename: str):
        if not catalogue.is_valid_image_filename(filename):
            return error_response("Invalid image filename", 400)

        db, db_error = get_database(public=True)
        if db_error:
            return db_error

        try:
            data, content_type = db.download_public_object(catalogue.IMAGE_BUCKET, filename)
        except SupabaseNotFound:
            return error_response("Image not found", 404)

        max_age = 300 if request.args.get("v") else 86400
        response = Response(data, mimetype=content_type or catalogue.IMAGE_CONTENT_TYPE)
        response.headers["Cache-Control"] = f"public, max-age={max_age}"
        return response

    @app.route("/api/place-order", methods=["POST"])
    def place_order():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        fields, items, validation_error = parse_order_submission(payload)
        if validation_error:
            return validation_error

        db, db_error = get_database()
        if db_error:
            return db_error

        user_id = pick(payload, "user_id") or None
        if user_id:
            active = fetch_one(
                db,
                "orders",
                {"user_id": user_id, "status": list(order_rules.ACTIVE_STATUSES)},
                columns="id,order_number,status",
            )
            if active:
                return error_response(
                    "You already have an active order. Please wait until it is completed or cancel it first.",
                    400,
                    active_order={
                        "order_number": order_rules.display_order_number(active),
                        "status": active.get("status"),
                    },
                )

        now = order_rules.utcnow()
        order_row = dict(
            fields,
            order_number=order_rules.generate_order_number(now),
            user_id=user_id,
            customer_email=fields["customer_email"] or None,
            customer_ip=client_ip() or None,
            status="pending",
            reviewed=False,
            review_deadline=order_rules.isoformat(now + cancellation_window),
            created_at=order_rules.isoformat(now),
            updated_at=order_rules.isoformat(now),
        )
        order, created_items, create_error = create_order_with_items(db, order_row, items)
        if create_error:
            return create_error

        app.logger.info(
            "Order %s placed: %s items, %s OMR",
            order.get("order_number"),
            len(created_items),
            order_rules.format_omr(order.get("total_amount")),
        )
        email_sent = notify_new_order(order, created_items)

        return (
            jsonify(
                {
                    "success": True,
                    "message": "Order placed successfully",
                    "data": {
                        "order_id": order.get("id"),
                        "order_number": order.get("order_number"),
                        "status": order.get("status") or "pending",
                        "total_amount": order_rules.from_baisa(order.get("total_amount")),
                        "formatted_total": f"{order_rules.format_omr(order.get('total_amount'))} OMR",
                        "customer_name": order_rules.customer_name(order),
                        "items_count": len(created_items),
                        "review_deadline": order.get("review_deadline"),
                        "email_sent": email_sent,
                    },
                }
            ),
            201,
        )

    @app.route("/api/check-active-order", methods=["GET"])
    def check_active_order():
        user_id = (request.args.get("user_id") or "").strip()
        ip_address = (request.args.get("ip") or "").strip()
        phone = (request.args.get("phone") or "").strip()
        if not user_id and not ip_address:
            return error_response("ip or user_id parameter is required", 400)

        filters: Dict[str, object] = {"status": list(order_rules.ACTIVE_STATUSES)}
        if user_id:
            filters["user_id"] = user_id
        else:
            filters["customer_ip"] = ip_address
            if phone:
                filters["customer_phone"] = order_rules.normalize_phone(phone) or phone

        db, db_error = get_database()
        if db_error:
            return db_error

        rows = db.select(
            "orders", columns="*,order_items(*)", filters=filters, order="created_at.desc", limit=1
        )
        if not rows:
            return jsonify({"success": True, "has_active_order": False, "order": None})

        order = rows[0]
        serialized = order_rules.serialize_customer_order(order)
        serialized["review_deadline"] = order.get("review_deadline")
        serialized["can_cancel"] = order_rules.can_cancel(order)
        return jsonify({"success": True, "has_active_order": True, "order": serialized})

    @app.route("/api/cancel-order", methods=["POST"])
    def customer_cancel_order():
        payload, body_error = read_json_body()
        if body_error:
            return body_error

        order_id = parse_order_id(payload.get("order_id"))
        if order_id is None:
            return error_response("Valid order_id is required", 400)
        reason = str(payload.get("reason") or "").strip() or "Cancelled by customer"

        filters: Dict[str, object] = {"id": order_id}
        user_id = pick(payload, "user_id")
        phone = pick(payload, "phone")
        if user_id:
            filters["user_id"] = user_id
        elif phone:
            filters["customer_phone"] = order_rules.normalize_phone(phone) or phone
        else:
            filters["customer_ip"] = client_ip()

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", filters)
        if not order:
            return error_response("Order not found", 404)

        now = order_rules.utcnow()
        refusal = order_rules.cancellation_error(order, now, cancellation_window)
        if refusal:
            elapsed = order_rules.hours_since(order, now)
            return error_response(
                refusal,
                400,
                order_status=order.get("status"),
                hoursElapsed=round(elapsed, 2) if elapsed is not None else None,
            )

        changes = {
            "status": "cancelled",
            "cancelled_at": order_rules.isoformat(now),
            "updated_at": order_rules.isoformat(now),
            "notes": order_rules.append_cancellation_note(
                order.get("notes"), reason, now, "customer", client_ip()
            ),
        }
        updated = db.update(
            "orders", {"id": order_id, "status": "pending", "reviewed": False}, changes
        )
        if not updated:
            return error_response(
                "Order status changed while cancelling. Please refresh and try again.", 409
            )

        cancelled = dict(order, **changes)
        delivered = notify_cancellation(cancelled, reason)
        order_number = order_rules.display_order_number(order)
        app.logger.info("Customer cancelled order %s", order_number)
        return jsonify(
            {
                "success": True,
                "message": "Order cancelled successfully",
                "data": {
                    "order_id": order_id,
                    "order_number": order_number,
                    "status": "cancelled",
                    "cancelled_at": changes["cancelled_at"],
                    "email_sent": delivered,
                },
            }
        )

    def owner_filters(source) -> Tuple[Dict[str, object], Optional[str]]:
        user_id = (source.get("user_id") or "").strip()
        email = order_rules.normalize_email(source.get("email"))
        if user_id:
            return {"user_id": user_id}, None
        if email:
            return {"customer_email": email}, None
        return {}, "Email or user_id is required"

    @app.route("/api/user-orders", methods=["GET"])
    def list_user_orders():
        filters, owner_error = owner_filters(request.args)
        if owner_error:
            return error_response(owner_error, 400)

        status = (request.args.get("status") or "").strip()
        if status and status != "all":
            if status not in order_rules.ORDER_STATUSES:
                return error_response(
                    "Invalid status filter", 400, validOptions=list(order_rules.ORDER_STATUSES)
                )
            filters["status"] = status
        limit = min(order_rules.safe_positive_int(request.args.get("limit"), 0) or 50, 100)

        db, db_error = get_database()
        if db_error:
            return db_error

        rows = db.select(
            "orders",
            columns="*,order_items(*)",
            filters=filters,
            order="created_at.desc",
            limit=limit,
        )
        orders = [order_rules.serialize_customer_order(row) for row in rows]
        return jsonify({"success": True, "data": orders, "count": len(orders)})

    @app.route("/api/user-orders", methods=["DELETE"])
    def delete_user_order():
        order_id = parse_order_id(request.args.get("order_id"))
        if order_id is None:
            return error_response("Valid order_id is required", 400)
        filters, owner_error = owner_filters(request.args)
        if owner_error:
            return error_response(owner_error, 400)
        filters["id"] = order_id

        db, db_error = get_database()
        if db_error:
            return db_error

        order = fetch_one(db, "orders", filters)
        if not order:
            return error_response("Order not found", 404)
        if order.get("status") not in order_rules.DELETABLE_STATUSES:
            return error_response(
                "Only pending or cancelled orders can be deleted", 400, order_status=order.get("status")
            )

        db.delete("order_items", {"order_id": order_id})
        db.delete("orders", {"id": order_id})
        return jsonify(
            {
                "success": True,
                "message": f"Order {order_rules.display_order_number(order)} deleted",
                "data": {"order_id": order_id},
            }
        )

    @app.route("/api/profile", methods=["GET", "PUT", "DELETE"])
    def manage_profile():
        user, auth_error = resolve_current_user()
        if auth_error:
            return auth_error

        db, db_error = get_database()
        if db_error:
            return db_error

        user_id = user["id"]
        now = order_rules.isoformat(order_rules.utcnow())

        if request.method == "GET":
            profile = fetch_one(db, "user_profiles", {"id": user_id})
            return jsonify(
                {
                    "success": True,
                    "data": profile or {"id": user_id, "profile_completed": False},
                    "email": user.get("email"),
                }
            )

        if request.method == "DELETE":
            cleared = {
                "first_name": None,
                "last_name": None,
                "phone": None,
                "wilayat": None,
                "city": None,
                "full_address": None,
                "profile_completed": False,
                "updated_at": now,
            }
            db.update("user_profiles", {"id": user_id}, cleared)
            return jsonify({"success": True, "message": "Profile data cleared"})

        payload, body_error = read_json_body()
        if body_error:
            return body_error

        first_name = pick(payload, "first_name")
        if not first_name:
            return error_response("First name is required", 400)
        phone = order_rules.normalize_phone(payload.get("phone"))
        if not phone:
            return error_response(
                "Invalid phone number. Use 8 digits or 968 followed by 8 digits", 400
            )
        language = pick(payload, "language_preference") or "en"
        if language not in ("en", "ar"):
            return error_response("language_preference must be en or ar", 400)

        profile_row = {
            "id": user_id,
            "first_name": first_name,
            "last_name": pick(payload, "last_name") or None,
            "phone": phone,
            "wilayat": pick(payload, "wilayat") or None,
            "city": pick(payload, "city") or None,
            "full_address": pick(payload, "full_address") or None,
            "language_preference": language,
            "profile_completed": True,
            "updated_at": now,
        }
        saved = db.upsert("user_profiles", profile_row)
        return jsonify(
            {
                "success": True,
                "message": "Profile saved",
                "data": saved[0] if saved else profile_row,
            }
        )

    @app.route("/api/send-admin-notification", methods=["GET"])
    def admin_notification_status():
        missing = missing_gmail_settings()
        return jsonify(
            {
                "configured": not missing,
                "missing": missing,
                "admin_email": notifications.mask_email(app.config["ADMIN_EMAIL"]),
                "gmail_user": notifications.mask_email(app.config["GMAIL_USER"]),
            }
        )

    @app.route("/api/send-admin-notification", methods=["POST"])
    def send_admin_notification():
        if missing_gmail_settings():
            return error_response(
                "Gmail API service not configured",
                500,
                debug={
                    "hasAdminEmail": bool(app.config["ADMIN_EMAIL"]),
                    "hasGmailUser": bool(app.config["GMAIL_USER"]),
                    "hasClientId": bool(app.config["GOOGLE_CLIENT_ID"]),
                    "hasClientSecret": bool(app.config["GOOGLE_CLIENT_SECRET"]),
                    "hasRefreshToken": bool(app.config["GOOGLE_REFRESH_TOKEN"]),
                    "adminEmail": notifications.mask_email(app.config["ADMIN_EMAIL"]),
                    "gmailUser": notifications.mask_email(app.config["GMAIL_USER"]),
                },
            )

        payload, body_error = read_json_body()
        if body_error:
            return body_error

        required = ["order_number", "customer", "delivery", "items", "total_amount_omr"]
        if any(not payload.get(field) for field in required):
            return error_response("Missing required order fields", 400, required=required)
        if not (
            isinstance(payload["customer"], dict)
            and isinstance(payload["delivery"], dict)
            and isinstance(payload["items"], list)
        ):
            return error_response(
                "customer and delivery must be objects and items must be a list", 400
            )

        order_id = payload.get("id") or payload.get("orderId")
        subject, text_body, html_body = notifications.build_admin_order_email(
            payload,
            site_url=app.config["SITE_URL"],
            review_url=build_review_url(order_id) if order_id else None,
        )
        result = send_admin_email(subject, text_body, html_body)

        if not result.success:
            if result.permanent_failure:
                return error_response(
                    "Gmail API refresh token has expired",
                    401,
                    details=result.error,
                    token_expired=True,
                    solution=result.solution,
                )
            return error_response(
                "Failed to send email via Gmail API",
                500,
                details=result.error,
                attempts=result.attempts,
            )

        return jsonify(
            {
                "success": True,
                "message": "Admin notification sent successfully via Gmail API",
                "message_id": result.message_id,
                "order_number": payload.get("order_number"),
                "attempts": result.attempts,
            }
        )

    @app.route("/api/review-order", methods=["GET"])
    def review_order():
        order_param = (request.args.get("order") or "").strip()
        token = (request.args.get("token") or "").strip()

        def review_page(title: str, message: str, status: int, success: bool = False):
            manage_url = None
            if app.config["SITE_URL"]:
                manage_url = f"{app.config['SITE_URL'].rstrip('/')}/admin/orders-management.html"
            return (
                render_template(
                    "review_result.html",
                    title=title,
                    message=message,
                    success=success,
                    manage_url=manage_url,
                ),
                status,
            )

        if not order_param or not token:
            return review_page("Invalid link", "Order and token parameters are required.", 400)

        try:
            claims = decode_token(token)
        except (JWTExtendedException, PyJWTError):
            return review_page("Link expired", "This review link is invalid or has expired.", 410)
        if claims.get("purpose") != REVIEW_TOKEN_PURPOSE or claims.get("sub") != order_param:
            return review_page("Link expired", "This review link is invalid or has expired.", 410)

        db, db_error = get_database()
        if db_error:
            return review_page("Unavailable", "The order database is not configured.", 500)

        order = fetch_one(db, "orders", {"id": order_param})
        if not order:
            return review_page("Order not found", "This order no longer exists.", 404)

        order_number = order_rules.display_order_number(order)
        if order.get("status") != "pending" or order.get("reviewed"):
            return review_page(
                "No change needed",
                f"Order {order_number} is already {order.get('status')}.",
                200,
                success=True,
            )

        db.update(
            "orders",
            {"id": order_param},
            {
                "reviewed": True,
                "status": "reviewed",
                "updated_at": order_rules.isoformat(order_rules.utcnow()),
            },
        )
        app.logger.info("Order %s reviewed from email link", order_number)
        return review_page(
            "Order reviewed", f"Order {order_number} has been marked as reviewed.", 200, success=True
        )

    return app


app = create_app()


@app.route("/health")
def health():
    return {"status": "ok"}, 200


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
