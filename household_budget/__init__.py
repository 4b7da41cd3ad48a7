import json
import os
import uuid
from datetime import timedelta
from functools import wraps

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge

from .auth import SESSION_COOKIE_NAME, SESSION_MAX_AGE, SessionManager, client_ip, hash_pin, verify_pin
from .budgets import (
    DEFAULT_TREND_MONTHS,
    MAX_TREND_MONTHS,
    build_monthly_report,
    build_trend,
    calculate_budget_status,
    current_month,
    month_date_range,
    plan_budget_copy,
    previous_month,
    recent_months,
    should_auto_rollover,
)
from .categorize import extract_merchant_name, match_category, suggest_category_name
from .csv_import import MAX_CSV_BYTES, parse_uploaded_file
from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .duplicates import duplicate_flags
from .insights import insight_date_range, local_today, merchant_insights, recurring_charges
from .rate_limit import RateLimiter, SqlAttemptStore, utc_now
from .validators import (
    DatabaseInitError,
    NotFoundError,
    PersistenceError,
    ValidationError,
    cents_to_amount,
    parse_iso_date,
    to_cents,
    validate_color,
    validate_description,
    validate_keyword,
    validate_month,
    validate_name,
    validate_pin,
    validate_timezone,
    validate_uuid,
)
from .wizard import PREVIEW, ImportWizard, WizardStateError


DEFAULT_CATEGORIES = [
    ("Groceries", "#22c55e"),
    ("Dining", "#f97316"),
    ("Coffee", "#a16207"),
    ("Gas", "#ef4444"),
    ("Transportation", "#3b82f6"),
    ("Utilities", "#14b8a6"),
    ("Entertainment", "#a855f7"),
    ("Shopping", "#ec4899"),
    ("Income", "#16a34a"),
]
TRANSACTION_TYPES = ("expense", "income")
IMPORT_STAGING_MAX_AGE_HOURS = 24
IDEMPOTENCY_KEY_TTL = timedelta(hours=24)
MAX_IDEMPOTENCY_KEY_LENGTH = 100
GENERIC_DB_ERROR = "Database error. Please try again."


def new_id():
    return str(uuid.uuid4())


def utc_timestamp(moment=None):
    return (moment or utc_now()).isoformat(timespec="seconds")


def cleanup_expired_import_staging(db, max_age_hours=IMPORT_STAGING_MAX_AGE_HOURS):
    cutoff = utc_timestamp(utc_now() - timedelta(hours=max_age_hours))
    db.execute("DELETE FROM import_staging WHERE created_at < ?", (cutoff,))


def cleanup_expired_idempotency_keys(db):
    db.execute("DELETE FROM idempotency_keys WHERE expires_at < ?", (utc_timestamp(),))


def serialize_category(row):
    return {"id": row["id"], "name": row["name"], "color": row["color"]}


def serialize_keyword(row):
    return {"id": row["id"], "categoryId": row["category_id"], "keyword": row["keyword"]}


def serialize_transaction(row):
    row = dict(row)
    return {
        "id": row["id"],
        "categoryId": row["category_id"],
        "categoryName": row.get("category_name"),
        "amount": cents_to_amount(row["amount_cents"]),
        "description": row["description"],
        "date": row["date"],
        "type": row["type"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON")
    return payload


def parse_transaction_type(value):
    if value is None:
        return "expense"
    kind = (value or "expense").strip().lower() if isinstance(value, str) else value
    if kind not in TRANSACTION_TYPES:
        raise ValidationError("Type must be 'expense' or 'income'")
    return kind


def parse_idempotency_key(value):
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip() or len(value.strip()) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError("Invalid idempotency key")
    return value.strip()


def parse_row_index(value):
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Invalid row index: {value}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid row index: {value}") from None


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        SESSION_SECRET=os.environ.get("SESSION_SECRET"),
        DATABASE=os.path.join(app.instance_path, "household_budget.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        DB_TIMEOUT_SECONDS=5,
        SESSION_MAX_AGE_SECONDS=int(SESSION_MAX_AGE.total_seconds()),
        SESSION_COOKIE_SECURE=False,
        MAX_CONTENT_LENGTH=MAX_CSV_BYTES + 64 * 1024,
        ENABLE_DEV_DB_RESET=os.environ.get("ENABLE_DEV_DB_RESET") == "1",
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(
            app.config["DATABASE"],
            timeout=app.config["DB_TIMEOUT_SECONDS"],
            database_url=app.config.get("DATABASE_URL") or "",
        )

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            config = database_config()
            try:
                g.db = connect_db(config)
            except DB_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open database {config['database_name']}: {exc}"
                print(f"[DB ERROR] {message}")
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = database_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {config['database_name']}: {exc}"
            print(f"[DB INIT ERROR] {message}")
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    sessions = SessionManager(
        app.config.get("SESSION_SECRET") or app.config["SECRET_KEY"],
        max_age=app.config["SESSION_MAX_AGE_SECONDS"],
    )
    rate_limiter = RateLimiter(SqlAttemptStore(get_db))

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DB_ERRORS + (RuntimeError,) as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(WizardStateError)
    def handle_wizard_state_error(exc):
        return jsonify({"error": str(exc)}), 409

    @app.errorhandler(PersistenceError)
    def handle_persistence_error(exc):
        app.logger.exception("Database operation failed on %s %s", request.method, request.path)
        return jsonify({"error": GENERIC_DB_ERROR}), 500

    @app.errorhandler(DatabaseInitError)
    def handle_database_init_error(exc):
        return render_db_init_error_response()

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc):
        return jsonify({"error": "File too large. Please import transactions in smaller batches"}), 413

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return jsonify({"error": "Database initialization failed", "details": message}), 500

    @app.before_request
    def load_session():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return render_db_init_error_response()

        g.household = None
        g.household_id = None
        claims = sessions.verify(request.cookies.get(SESSION_COOKIE_NAME))
        if claims is not None:
            g.household = get_db().execute(
                "SELECT id, name, timezone, auto_rollover_budget FROM households WHERE id = ?",
                (claims["sub"],),
            ).fetchone()
            if g.household is not None:
                g.household_id = g.household["id"]

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.household is None:
                return jsonify({"error": "Not authenticated"}), 401
            return view(**kwargs)

        return wrapped_view

    def set_session_cookie(response, token):
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=sessions.max_age,
            httponly=True,
            secure=app.config["SESSION_COOKIE_SECURE"],
            samesite="Lax",
            path="/",
        )
        return response

    def household_timezone():
        if g.household is None:
            return "UTC"
        return g.household["timezone"] or "UTC"

    def rate_limited_response(result):
        return jsonify({
            "error": "Too many attempts. Please try again later.",
            "remainingAttempts": 0,
            "lockoutEndsAt": result.lockout_ends_at.isoformat() if result.lockout_ends_at else None,
        }), 429

    # Authentication

    @app.post("/setup")
    def setup():
        payload = json_body()
        pin = validate_pin(payload.get("pin"))
        db = get_db()
        if db.execute("SELECT id FROM households LIMIT 1").fetchone() is not None:
            raise ValidationError("Household already exists")

        household_id = new_id()
        now = utc_timestamp()
        with db:
            db.execute(
                """
                INSERT INTO households (id, name, pin_hash, timezone, auto_rollover_budget, created_at)
                VALUES (?, ?, ?, 'UTC', 0, ?)
                """,
                (household_id, "My Household", hash_pin(pin), now),
            )
            for name, color in DEFAULT_CATEGORIES:
                db.execute(
                    "INSERT INTO categories (id, household_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
                    (new_id(), household_id, name, color, now),
                )

        app.logger.info("Household created household_id=%s", household_id)
        return set_session_cookie(jsonify({"success": True}), sessions.create_session(household_id))

    @app.post("/auth/verify")
    def verify():
        ip_address = client_ip(request.headers, request.remote_addr)
        limit = rate_limiter.check_rate_limit(ip_address)
        if not limit.allowed:
            return rate_limited_response(limit)

        payload = json_body()
        pin = validate_pin(payload.get("pin"))
        household = get_db().execute("SELECT id, pin_hash FROM households LIMIT 1").fetchone()
        if household is None:
            return jsonify({"error": "No household found"}), 404

        if not verify_pin(household["pin_hash"], pin):
            result = rate_limiter.record_failed_attempt(ip_address)
            app.logger.warning("Failed PIN attempt ip=%s remaining=%s", ip_address, result.remaining_attempts)
            return jsonify({"error": "Incorrect PIN", "remainingAttempts": result.remaining_attempts}), 401

        rate_limiter.clear_rate_limit(ip_address)
        return set_session_cookie(jsonify({"success": True}), sessions.create_session(household["id"]))

    @app.post("/auth/change-pin")
    @login_required
    def change_pin():
        ip_address = client_ip(request.headers, request.remote_addr)
        limit = rate_limiter.check_rate_limit(ip_address)
        if not limit.allowed:
            return rate_limited_response(limit)

        payload = json_body()
        current_pin = validate_pin(payload.get("currentPin"), "Current PIN")
        new_pin = validate_pin(payload.get("newPin"), "New PIN")
        db = get_db()
        household = db.execute("SELECT pin_hash FROM households WHERE id = ?", (g.household_id,)).fetchone()
        if not verify_pin(household["pin_hash"], current_pin):
            result = rate_limiter.record_failed_attempt(ip_address)
            return jsonify({"error": "Current PIN is incorrect", "remainingAttempts": result.remaining_attempts}), 401

        with db:
            db.execute("UPDATE households SET pin_hash = ? WHERE id = ?", (hash_pin(new_pin), g.household_id))
        rate_limiter.clear_rate_limit(ip_address)
        app.logger.info("PIN changed household_id=%s", g.household_id)
        return jsonify({"success": True})

    @app.post("/auth/refresh")
    def refresh_session():
        result = sessions.refresh_session(request.cookies.get(SESSION_COOKIE_NAME))
        if not result.success:
            return jsonify({"error": result.error}), 401
        response = jsonify({
            "success": True,
            "expiresIn": result.expires_in,
            "timeRemaining": sessions.get_session_time_remaining(result.token),
        })
        return set_session_cookie(response, result.token)

    @app.get("/auth/refresh")
    def session_status():
        token = request.cookies.get(SESSION_COOKIE_NAME)
        remaining = sessions.get_session_time_remaining(token)
        if remaining is None:
            return jsonify({"error": "No active session"}), 401
        return jsonify({"timeRemaining": remaining, "expiringSoon": sessions.is_session_expiring_soon(token)})

    @app.post("/auth/logout")
    def logout():
        response = jsonify({"success": True})
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    # Categories and keywords

    def get_household_category(category_id, db=None):
        db = db or get_db()
        category_id = validate_uuid(category_id, "Category ID")
        row = db.execute(
            "SELECT id, name, color FROM categories WHERE id = ? AND household_id = ?",
            (category_id, g.household_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("Category not found")
        return row

    def ensure_unique_category_name(db, name, exclude_id=None):
        row = db.execute(
            "SELECT id FROM categories WHERE household_id = ? AND LOWER(name) = LOWER(?)",
            (g.household_id, name),
        ).fetchone()
        if row is not None and row["id"] != exclude_id:
            raise ValidationError("A category with this name already exists")

    def household_category_ids(db):
        rows = db.execute("SELECT id FROM categories WHERE household_id = ?", (g.household_id,)).fetchall()
        return {row["id"] for row in rows}

    @app.get("/categories")
    @login_required
    def list_categories():
        rows = get_db().execute(
            "SELECT id, name, color FROM categories WHERE household_id = ? ORDER BY LOWER(name)",
            (g.household_id,),
        ).fetchall()
        return jsonify([serialize_category(row) for row in rows])

    @app.post("/categories")
    @login_required
    def create_category():
        payload = json_body()
        name = validate_name(payload.get("name"), "Category name")
        color = validate_color(payload.get("color"))
        db = get_db()
        ensure_unique_category_name(db, name)
        category_id = new_id()
        with db:
            db.execute(
                "INSERT INTO categories (id, household_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
                (category_id, g.household_id, name, color, utc_timestamp()),
            )
        return jsonify({"id": category_id, "name": name, "color": color}), 201

    @app.put("/categories/<category_id>")
    @login_required
    def update_category(category_id):
        db = get_db()
        category = get_household_category(category_id, db)
        payload = json_body()
        name = category["name"]
        color = category["color"]
        if "name" in payload:
            name = validate_name(payload.get("name"), "Category name")
            ensure_unique_category_name(db, name, exclude_id=category["id"])
        if "color" in payload:
            color = validate_color(payload.get("color"))

        with db:
            db.execute(
                "UPDATE categories SET name = ?, color = ? WHERE id = ? AND household_id = ?",
                (name, color, category["id"], g.household_id),
            )
        return jsonify({"id": category["id"], "name": name, "color": color})

    @app.delete("/categories/<category_id>")
    @login_required
    def delete_category(category_id):
        db = get_db()
        category = get_household_category(category_id, db)
        with db:
            affected = db.execute(
                "UPDATE transactions SET category_id = NULL, updated_at = ? WHERE category_id = ? AND household_id = ?",
                (utc_timestamp(), category["id"], g.household_id),
            ).rowcount
            db.execute("DELETE FROM category_keywords WHERE category_id = ?", (category["id"],))
            db.execute("DELETE FROM merchant_patterns WHERE category_id = ?", (category["id"],))
            db.execute("DELETE FROM monthly_budgets WHERE category_id = ?", (category["id"],))
            db.execute("DELETE FROM categories WHERE id = ? AND household_id = ?", (category["id"], g.household_id))
        app.logger.info("Category deleted category_id=%s affected_transactions=%s", category["id"], affected)
        return jsonify({"success": True, "affectedTransactions": affected})

    @app.get("/categories/<category_id>/keywords")
    @login_required
    def list_keywords(category_id):
        db = get_db()
        category = get_household_category(category_id, db)
        rows = db.execute(
            "SELECT id, category_id, keyword FROM category_keywords WHERE category_id = ? ORDER BY keyword",
            (category["id"],),
        ).fetchall()
        return jsonify([serialize_keyword(row) for row in rows])

    @app.post("/categories/<category_id>/keywords")
    @login_required
    def create_keyword(category_id):
        db = get_db()
        category = get_household_category(category_id, db)
        keyword = validate_keyword(json_body().get("keyword"))
        existing = db.execute(
            "SELECT id FROM category_keywords WHERE category_id = ? AND keyword = ?",
            (category["id"], keyword),
        ).fetchone()
        if existing is not None:
            raise ValidationError("Keyword already exists for this category")

        keyword_id = new_id()
        with db:
            db.execute(
                """
                INSERT INTO category_keywords (id, household_id, category_id, keyword, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (keyword_id, g.household_id, category["id"], keyword, utc_timestamp()),
            )
        return jsonify({"id": keyword_id, "categoryId": category["id"], "keyword": keyword}), 201

    @app.delete("/keywords/<keyword_id>")
    @login_required
    def delete_keyword(keyword_id):
        keyword_id = validate_uuid(keyword_id, "Keyword ID")
        db = get_db()
        with db:
            deleted = db.execute(
                "DELETE FROM category_keywords WHERE id = ? AND household_id = ?",
                (keyword_id, g.household_id),
            ).rowcount
        if not deleted:
            raise NotFoundError("Keyword not found")
        return jsonify({"success": True})

    # Transactions

    TRANSACTION_SELECT = """
        SELECT t.id, t.category_id, c.name AS category_name, c.color AS category_color, t.amount_cents,
               t.description, t.date, t.type, t.created_at, t.updated_at
        FROM transactions t
        LEFT JOIN categories c ON c.id = t.category_id
    """

    def get_household_transaction(transaction_id, db=None):
        db = db or get_db()
        transaction_id = validate_uuid(transaction_id, "Transaction ID")
        row = db.execute(
            f"{TRANSACTION_SELECT} WHERE t.id = ? AND t.household_id = ?",
            (transaction_id, g.household_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("Transaction not found")
        return row

    def resolve_category_id(db, value):
        if value in (None, ""):
            return None
        return get_household_category(value, db)["id"]

    def fetch_transactions(db, start_date=None, end_date=None, category_id=None):
        where_parts = ["t.household_id = ?"]
        params = [g.household_id]
        if start_date:
            where_parts.append("t.date >= ?")
            params.append(start_date)
        if end_date:
            where_parts.append("t.date <= ?")
            params.append(end_date)
        if category_id:
            where_parts.append("t.category_id = ?")
            params.append(category_id)
        return db.execute(
            f"{TRANSACTION_SELECT} WHERE {' AND '.join(where_parts)} ORDER BY t.date DESC, t.created_at DESC",
            params,
        ).fetchall()

    @app.get("/transactions")
    @login_required
    def list_transactions():
        start_date = request.args.get("start") or None
        end_date = request.args.get("end") or None
        month = request.args.get("month") or None
        category_id = request.args.get("category_id") or None

        if start_date:
            start_date = parse_iso_date(start_date).isoformat()
        if end_date:
            end_date = parse_iso_date(end_date).isoformat()
        if start_date and end_date and start_date > end_date:
            start_date, end_date = end_date, start_date
        if month and not (start_date or end_date):
            start_date, end_date = month_date_range(validate_month(month))
        if category_id:
            category_id = validate_uuid(category_id, "Category ID")

        rows = fetch_transactions(get_db(), start_date, end_date, category_id)
        return jsonify([serialize_transaction(row) for row in rows])

    @app.post("/transactions")
    @login_required
    def create_transaction():
        payload = json_body()
        amount_cents = to_cents(payload.get("amount"))
        description = validate_description(payload.get("description"))
        transaction_date = parse_iso_date(payload.get("date")).isoformat()
        transaction_type = parse_transaction_type(payload.get("type"))
        idempotency_key = parse_idempotency_key(payload.get("idempotencyKey"))
        db = get_db()
        category_id = resolve_category_id(db, payload.get("categoryId"))

        if idempotency_key:
            cleanup_expired_idempotency_keys(db)
            replay = db.execute(
                "SELECT result_json FROM idempotency_keys WHERE key = ? AND household_id = ?",
                (idempotency_key, g.household_id),
            ).fetchone()
            if replay is not None:
                db.commit()
                return jsonify(json.loads(replay["result_json"]))

        transaction_id = new_id()
        now = utc_timestamp()
        with db:
            db.execute(
                """
                INSERT INTO transactions
                    (id, household_id, category_id, amount_cents, description, date, type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (transaction_id, g.household_id, category_id, amount_cents, description, transaction_date, transaction_type, now, now),
            )
            created = serialize_transaction(get_household_transaction(transaction_id, db))
            if idempotency_key:
                db.execute(
                    """
                    INSERT INTO idempotency_keys (key, household_id, result_json, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (idempotency_key, g.household_id, json.dumps(created), now, utc_timestamp(utc_now() + IDEMPOTENCY_KEY_TTL)),
                )
        return jsonify(created), 201

    @app.put("/transactions/<transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        db = get_db()
        existing = get_household_transaction(transaction_id, db)
        payload = json_body()
        values = {
            "amount_cents": existing["amount_cents"],
            "description": existing["description"],
            "date": existing["date"],
            "type": existing["type"],
            "category_id": existing["category_id"],
        }
        if "amount" in payload:
            values["amount_cents"] = to_cents(payload.get("amount"))
        if "description" in payload:
            values["description"] = validate_description(payload.get("description"))
        if "date" in payload:
            values["date"] = parse_iso_date(payload.get("date")).isoformat()
        if "type" in payload:
            values["type"] = parse_transaction_type(payload.get("type"))
        if "categoryId" in payload:
            values["category_id"] = resolve_category_id(db, payload.get("categoryId"))

        with db:
            db.execute(
                """
                UPDATE transactions
                SET amount_cents = ?, description = ?, date = ?, type = ?, category_id = ?, updated_at = ?
                WHERE id = ? AND household_id = ?
                """,
                (
                    values["amount_cents"],
                    values["description"],
                    values["date"],
                    values["type"],
                    values["category_id"],
                    utc_timestamp(),
                    existing["id"],
                    g.household_id,
                ),
            )
        return jsonify(serialize_transaction(get_household_transaction(existing["id"], db)))

    @app.delete("/transactions/<transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        db = get_db()
        existing = get_household_transaction(transaction_id, db)
        with db:
            db.execute("DELETE FROM transactions WHERE id = ? AND household_id = ?", (existing["id"], g.household_id))
        app.logger.info("Transaction deleted transaction_id=%s household_id=%s", existing["id"], g.household_id)
        return jsonify({"success": True})

    # Budgets

    def upsert_budget(db, category_id, month, budgeted_cents):
        db.execute(
            """
            INSERT INTO monthly_budgets (id, household_id, category_id, month, budgeted_cents, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (household_id, category_id, month) DO UPDATE SET budgeted_cents = excluded.budgeted_cents
            """,
            (new_id(), g.household_id, category_id, month, budgeted_cents, utc_timestamp()),
        )

    def fetch_budgets(db, start_month, end_month=None):
        return db.execute(
            """
            SELECT category_id, month, budgeted_cents
            FROM monthly_budgets
            WHERE household_id = ? AND month >= ? AND month <= ?
            """,
            (g.household_id, start_month, end_month or start_month),
        ).fetchall()

    def copy_previous_budgets(db, month):
        plan = plan_budget_copy(fetch_budgets(db, previous_month(month)))
        with db:
            for category_id, budgeted_cents in plan:
                upsert_budget(db, category_id, month, budgeted_cents)
        return len(plan)

    def auto_rollover_if_needed(db, month):
        existing = db.execute(
            "SELECT COUNT(*) AS count FROM monthly_budgets WHERE household_id = ? AND month = ?",
            (g.household_id, month),
        ).fetchone()["count"]
        if not should_auto_rollover(g.household["auto_rollover_budget"], existing):
            return 0
        try:
            return copy_previous_budgets(db, month)
        except NotFoundError:
            # First budgeted month has nothing to roll over.
            return 0

    @app.get("/budgets/<month>")
    @login_required
    def get_budgets(month):
        month = validate_month(month)
        db = get_db()
        rolled_over = auto_rollover_if_needed(db, month)
        categories = db.execute(
            "SELECT id, name, color FROM categories WHERE household_id = ? ORDER BY LOWER(name)",
            (g.household_id,),
        ).fetchall()
        budget_map = {row["category_id"]: int(row["budgeted_cents"]) for row in fetch_budgets(db, month)}
        start_date, end_date = month_date_range(month)
        spent_map = {}
        for row in fetch_transactions(db, start_date, end_date):
            if row["type"] == "income" or not row["category_id"]:
                continue
            spent_map[row["category_id"]] = spent_map.get(row["category_id"], 0) + int(row["amount_cents"])

        budgets = []
        for category in categories:
            budgets.append({
                "categoryId": category["id"],
                "categoryName": category["name"],
                "categoryColor": category["color"],
                **calculate_budget_status(budget_map.get(category["id"], 0), spent_map.get(category["id"], 0)),
            })
        return jsonify({
            "month": month,
            "rolledOver": rolled_over,
            "budgets": budgets,
            "totalBudgeted": cents_to_amount(sum(budget_map.values())),
            "totalSpent": cents_to_amount(sum(spent_map.values())),
        })

    @app.put("/budgets/<month>/<category_id>")
    @login_required
    def set_budget(month, category_id):
        month = validate_month(month)
        db = get_db()
        category = get_household_category(category_id, db)
        budgeted_cents = to_cents(json_body().get("amount"), "Budget amount", allow_zero=True)
        with db:
            upsert_budget(db, category["id"], month, budgeted_cents)
        return jsonify({"categoryId": category["id"], "month": month, "amount": cents_to_amount(budgeted_cents)})

    @app.post("/budgets/<month>/copy-previous")
    @login_required
    def copy_budgets(month):
        month = validate_month(month)
        copied = copy_previous_budgets(get_db(), month)
        return jsonify({"success": True, "copied": copied})

    # Settings

    @app.get("/settings")
    def get_settings():
        if g.household is None:
            return jsonify({"timezone": "UTC", "autoRollover": False})
        return jsonify({
            "timezone": household_timezone(),
            "autoRollover": bool(g.household["auto_rollover_budget"]),
        })

    @app.put("/settings")
    @login_required
    def update_settings():
        payload = json_body()
        timezone_name = household_timezone()
        auto_rollover = bool(g.household["auto_rollover_budget"])
        if "timezone" in payload:
            timezone_name = validate_timezone(payload.get("timezone"))
        if "autoRollover" in payload:
            if not isinstance(payload.get("autoRollover"), bool):
                raise ValidationError("autoRollover must be true or false")
            auto_rollover = payload["autoRollover"]

        db = get_db()
        with db:
            db.execute(
                "UPDATE households SET timezone = ?, auto_rollover_budget = ? WHERE id = ?",
                (timezone_name, 1 if auto_rollover else 0, g.household_id),
            )
        return jsonify({"timezone": timezone_name, "autoRollover": auto_rollover})

    # Reports

    @app.get("/reports/trend")
    @login_required
    def spending_trend():
        raw_months = request.args.get("months", str(DEFAULT_TREND_MONTHS))
        try:
            count = int(raw_months)
        except ValueError:
            raise ValidationError("months must be a whole number") from None
        if not 1 <= count <= MAX_TREND_MONTHS:
            raise ValidationError(f"months must be between 1 and {MAX_TREND_MONTHS}")

        months = recent_months(current_month(household_timezone()), count)
        db = get_db()
        start_date = month_date_range(months[0])[0]
        end_date = month_date_range(months[-1])[1]
        budgets = fetch_budgets(db, months[0], months[-1])
        transactions = fetch_transactions(db, start_date, end_date)
        return jsonify(build_trend(months, budgets, transactions))

    @app.get("/reports/<month>")
    @login_required
    def monthly_report(month):
        month = validate_month(month)
        db = get_db()
        categories = db.execute(
            "SELECT id, name, color FROM categories WHERE household_id = ? ORDER BY LOWER(name)",
            (g.household_id,),
        ).fetchall()
        start_date, end_date = month_date_range(month)
        return jsonify(
            build_monthly_report(month, categories, fetch_budgets(db, month), fetch_transactions(db, start_date, end_date))
        )

    # Insights

    def insight_transactions(db, today):
        start_date, end_date = insight_date_range(today)
        return fetch_transactions(db, start_date, end_date)

    @app.get("/insights/merchants")
    @login_required
    def merchant_insights_view():
        today = local_today(household_timezone())
        return jsonify(merchant_insights(insight_transactions(get_db(), today)))

    @app.get("/insights/recurring")
    @login_required
    def recurring_charges_view():
        today = local_today(household_timezone())
        return jsonify(recurring_charges(insight_transactions(get_db(), today), today))

    # CSV import

    def save_wizard(db, wizard):
        now = utc_timestamp()
        with db:
            db.execute(
                """
                INSERT INTO import_staging (import_id, household_id, state_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (import_id) DO UPDATE SET state_json = excluded.state_json, updated_at = excluded.updated_at
                """,
                (wizard.import_id, g.household_id, json.dumps(wizard.to_dict()), now, now),
            )

    def load_wizard(db, import_id):
        import_id = validate_uuid(import_id, "Import ID")
        row = db.execute(
            "SELECT state_json FROM import_staging WHERE import_id = ? AND household_id = ?",
            (import_id, g.household_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("Import not found or expired")
        return ImportWizard.from_dict(json.loads(row["state_json"]))

    def wizard_view(wizard):
        view = wizard.to_dict()
        view.pop("idempotency_key", None)
        view["candidates"] = [
            dict(candidate, amount=cents_to_amount(candidate["amount_cents"])) for candidate in view["candidates"]
        ]
        view["default_selection"] = wizard.default_selection() if wizard.state == PREVIEW else []
        return view

    def refresh_duplicate_flags(db, wizard):
        dates = [candidate["date"] for candidate in wizard.candidates]
        existing = db.execute(
            """
            SELECT id, date, amount_cents, description
            FROM transactions
            WHERE household_id = ? AND date >= ? AND date <= ?
            """,
            (g.household_id, min(dates), max(dates)),
        ).fetchall()
        wizard.flag_duplicates(duplicate_flags(wizard.candidates, existing))

    def learn_merchant_pattern(db, household_id, description, category_id, now):
        merchant_name = extract_merchant_name(description)
        if not merchant_name:
            return
        db.execute(
            """
            INSERT INTO merchant_patterns (id, household_id, merchant_name, category_id, last_used_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (household_id, merchant_name, category_id) DO UPDATE SET last_used_at = excluded.last_used_at
            """,
            (new_id(), household_id, merchant_name, category_id, now),
        )

    def persist_import(db, household_id, rows, idempotency_key):
        """Insert a committed import batch in one transaction.

        A batch already recorded under ``idempotency_key`` is not inserted again;
        the originally imported count is returned instead.
        """
        with db:
            cleanup_expired_idempotency_keys(db)
            replay = db.execute(
                "SELECT result_json FROM idempotency_keys WHERE key = ? AND household_id = ?",
                (idempotency_key, household_id),
            ).fetchone()
            if replay is not None:
                return json.loads(replay["result_json"])["imported"]

            now = utc_timestamp()
            for row in rows:
                db.execute(
                    """
                    INSERT INTO transactions
                        (id, household_id, category_id, amount_cents, description, date, type, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'expense', ?, ?)
                    """,
                    (new_id(), household_id, row["category_id"], row["amount_cents"], row["description"], row["date"], now, now),
                )
                if row["manual"]:
                    learn_merchant_pattern(db, household_id, row["description"], row["category_id"], now)
            db.execute(
                """
                INSERT INTO idempotency_keys (key, household_id, result_json, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    idempotency_key,
                    household_id,
                    json.dumps({"imported": len(rows)}),
                    now,
                    utc_timestamp(utc_now() + IDEMPOTENCY_KEY_TTL),
                ),
            )
        return len(rows)

    @app.post("/import/upload")
    @login_required
    def import_upload():
        db = get_db()
        category_count = db.execute(
            "SELECT COUNT(*) AS count FROM categories WHERE household_id = ?",
            (g.household_id,),
        ).fetchone()["count"]
        wizard = ImportWizard.start(category_count)

        file = request.files.get("file")
        if file is None or not file.filename:
            raise ValidationError("Please choose a CSV file")
        wizard.load(parse_uploaded_file(file.filename, file.read()))
        if wizard.state == PREVIEW:
            refresh_duplicate_flags(db, wizard)

        with db:
            cleanup_expired_import_staging(db)
        save_wizard(db, wizard)
        app.logger.info(
            "CSV import staged import_id=%s candidates=%s row_errors=%s",
            wizard.import_id,
            len(wizard.candidates),
            len(wizard.row_errors),
        )
        return jsonify(wizard_view(wizard)), 201

    @app.get("/import/<import_id>")
    @login_required
    def import_status(import_id):
        return jsonify(wizard_view(load_wizard(get_db(), import_id)))

    @app.post("/import/<import_id>/rows/<int:index>")
    @login_required
    def import_edit_row(import_id, index):
        db = get_db()
        wizard = load_wizard(db, import_id)
        payload = json_body()
        wizard.edit_row(
            index,
            date=payload.get("date"),
            amount=payload.get("amount"),
            description=payload.get("description"),
        )
        refresh_duplicate_flags(db, wizard)
        save_wizard(db, wizard)
        return jsonify(wizard_view(wizard))

    @app.post("/import/<import_id>/select")
    @login_required
    def import_select(import_id):
        db = get_db()
        wizard = load_wizard(db, import_id)
        keep = None
        if request.get_data():
            keep = json_body().get("keep")
        if keep is None:
            keep = wizard.default_selection()
        if not isinstance(keep, list):
            raise ValidationError("keep must be a list of row indexes")
        keep = [parse_row_index(index) for index in keep]

        keywords = db.execute(
            """
            SELECT k.keyword, k.category_id
            FROM category_keywords k
            JOIN categories c ON c.id = k.category_id
            WHERE k.household_id = ?
            ORDER BY LENGTH(k.keyword) DESC, k.keyword
            """,
            (g.household_id,),
        ).fetchall()
        patterns = db.execute(
            """
            SELECT merchant_name, category_id
            FROM merchant_patterns
            WHERE household_id = ?
            ORDER BY last_used_at DESC
            """,
            (g.household_id,),
        ).fetchall()

        suggestions = {}
        for index in set(keep):
            if 0 <= index < len(wizard.candidates):
                description = wizard.candidates[index]["description"]
                suggestion = match_category(description, keywords, patterns).to_dict()
                suggestion["suggested_name"] = suggest_category_name(description)
                suggestions[index] = suggestion

        wizard.select(keep, suggestions)
        save_wizard(db, wizard)
        return jsonify(wizard_view(wizard))

    @app.post("/import/<import_id>/assign")
    @login_required
    def import_assign(import_id):
        db = get_db()
        wizard = load_wizard(db, import_id)
        assignments = json_body().get("assignments")
        if not isinstance(assignments, dict):
            raise ValidationError("assignments must map row indexes to category IDs")

        parsed = {}
        for index, category_id in assignments.items():
            parsed[parse_row_index(index)] = validate_uuid(category_id, "Category ID") if category_id else None
        wizard.assign(parsed)
        save_wizard(db, wizard)
        return jsonify(wizard_view(wizard))

    @app.post("/import/<import_id>/commit")
    @login_required
    def import_commit(import_id):
        db = get_db()
        wizard = load_wizard(db, import_id)
        household_id = g.household_id

        def persist(rows, idempotency_key):
            return persist_import(db, household_id, rows, idempotency_key)

        try:
            imported = wizard.commit(persist, valid_category_ids=household_category_ids(db))
        except PersistenceError:
            app.logger.exception(
                "CSV import commit failed import_id=%s attempt=%s state=%s",
                wizard.import_id,
                wizard.commit_attempts,
                wizard.state,
            )
            save_wizard(db, wizard)
            return jsonify({"error": wizard.last_error, "import": wizard_view(wizard)}), 500

        with db:
            db.execute("DELETE FROM import_staging WHERE import_id = ?", (wizard.import_id,))
        app.logger.info("CSV import committed import_id=%s imported=%s", wizard.import_id, imported)
        return jsonify(wizard_view(wizard))

    @app.post("/import/<import_id>/cancel")
    @login_required
    def import_cancel(import_id):
        db = get_db()
        wizard = load_wizard(db, import_id)
        wizard.cancel()
        with db:
            db.execute("DELETE FROM import_staging WHERE import_id = ?", (wizard.import_id,))
        return jsonify(wizard_view(wizard))

    @app.post("/dev/reset-db")
    def dev_reset_db():
        dev_enabled = app.debug or app.config.get("ENABLE_DEV_DB_RESET")
        if not dev_enabled:
            return jsonify({"error": "DEV ONLY: database reset is disabled."}), 404

        config = database_config()
        if config["backend"] != "sqlite":
            raise ValidationError("DEV ONLY: database reset is only supported for SQLite")

        db = g.pop("db", None)
        if db is not None:
            db.close()

        db_path = app.config["DATABASE"]
        if os.path.exists(db_path):
            os.remove(db_path)

        init_db()
        response = jsonify({"success": True, "message": "DEV ONLY: database reset complete."})
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    app.persist_import = persist_import
    app.sessions = sessions
    app.rate_limiter = rate_limiter
    return app
