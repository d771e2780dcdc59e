import atexit
import logging
import os

import click
from flask import Flask, jsonify, make_response, request
from flask_wtf.csrf import CSRFError
from werkzeug.security import generate_password_hash

from korelia.config import config_by_name
from korelia.errors import StoreError
from korelia.extensions import csrf, limiter, login_manager

logger = logging.getLogger(__name__)


def create_app(config_name=None, config_overrides=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    # --- Init extensions ---
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Data files, product catalog, notifications, login throttle ---
    from korelia.models.schema import migrate_store
    from korelia.services.auth_service import LoginThrottle
    from korelia.services.email_service import init_notifications
    from korelia.services.json_store import init_store

    store, catalog = init_store(app)
    migrate_store(store)
    catalog.reload()
    notifications = init_notifications(app)
    if notifications.run_async:
        atexit.register(notifications.shutdown)
    app.extensions["login_throttle"] = LoginThrottle(app.config["LOGIN_LOCKOUT_STEPS"])

    # --- Register blueprints ---
    from korelia.blueprints.account import account_bp
    from korelia.blueprints.admin import admin_bp
    from korelia.blueprints.auth import auth_bp
    from korelia.blueprints.reviews import reviews_bp
    from korelia.blueprints.rewards import rewards_bp
    from korelia.blueprints.shop import shop_bp
    from korelia.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(account_bp)
    app.register_blueprint(rewards_bp)
    app.register_blueprint(reviews_bp)
    app.register_blueprint(shop_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF and rate limits; Stripe signs the raw body
    csrf.exempt(webhooks_bp)
    limiter.exempt(webhooks_bp)

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    register_error_handlers(app)
    register_cors(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Legacy XSS filter for older browsers
        response.headers["X-XSS-Protection"] = "1; mode=block"
        # The API never needs camera, microphone or geolocation
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(self)"
        )
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' https://js.stripe.com; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: https:; "
            "connect-src 'self' https://api.stripe.com; "
            "frame-src https://js.stripe.com https://hooks.stripe.com; "
            "base-uri 'self'; "
            "frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=15552000; includeSubDomains"
            )
        return response

    # --- Custom Jinja filters ---
    @app.template_filter("money")
    def money_filter(cents):
        """Format integer cents as '12.34 EUR'."""
        return f"{(cents or 0) / 100:.2f} {app.config['CURRENCY'].upper()}"

    return app


def register_cors(app):
    """Credentialed CORS for the storefront origin only."""

    def _allowed_origin():
        origin = request.headers.get("Origin")
        client_url = (app.config.get("CLIENT_URL") or "").rstrip("/")
        if origin and client_url and origin.rstrip("/") == client_url:
            return origin
        return None

    @app.before_request
    def preflight():
        if request.method == "OPTIONS":
            return make_response("", 204)

    @app.after_request
    def add_cors_headers(response):
        origin = _allowed_origin()
        if origin:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Allow-Methods"] = (
                "GET, POST, PUT, PATCH, DELETE, OPTIONS"
            )
            response.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, Authorization, X-CSRF-Token"
            )
            response.vary.add("Origin")
        return response


def register_error_handlers(app):
    """JSON errors everywhere; the storefront never sees HTML error pages."""

    def _error(message, status):
        return jsonify({"error": message}), status

    @app.errorhandler(CSRFError)
    def csrf_error(e):
        return _error("Invalid CSRF token", 403)

    @app.errorhandler(StoreError)
    def store_error(e):
        logger.error(f"Data store failure: {e}", exc_info=True)
        return _error("Internal server error", 500)

    @app.errorhandler(400)
    def bad_request(e):
        return _error("Bad request", 400)

    @app.errorhandler(401)
    def unauthorized(e):
        return _error("Not authenticated", 401)

    @app.errorhandler(403)
    def forbidden(e):
        return _error("Forbidden", 403)

    @app.errorhandler(404)
    def not_found(e):
        return _error("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("Method not allowed", 405)

    @app.errorhandler(429)
    def too_many_requests(e):
        return _error("Too many requests, please try again later.", 429)

    @app.errorhandler(500)
    def server_error(e):
        return _error("Internal server error", 500)


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("migrate-data")
    def migrate_data():
        """Upgrade users/orders/products records to the current schema version.

        Usage:
            flask migrate-data
        """
        from korelia.models.schema import SCHEMA_VERSION, migrate_store
        from korelia.services.json_store import get_store

        counts = migrate_store(get_store())
        for kind, count in counts.items():
            click.echo(f"  {kind}: {count} record(s) upgraded to v{SCHEMA_VERSION}")

    @app.cli.command("seed-admin")
    @click.option("--email", required=True, help="Admin email")
    @click.option("--password", required=True, help="Admin password")
    def seed_admin(email, password):
        """Create an admin account, or promote an existing one.

        Usage:
            flask seed-admin --email admin@example.com --password s3cret
        """
        from korelia.models.user import build_user, find_user_by_email, is_email
        from korelia.services.json_store import USERS, get_store

        if not is_email(email):
            raise click.BadParameter("invalid email", param_hint="--email")
        if len(password) < 8:
            raise click.BadParameter("at least 8 characters", param_hint="--password")

        with get_store().mutate(USERS) as users:
            existing = find_user_by_email(users, email)
            if existing:
                existing["role"] = "admin"
                click.echo(f"Promoted existing user to admin: {existing['email']}")
                return
            admin = build_user(email, "Admin", generate_password_hash(password), role="admin")
            admin["email_verified"] = True
            users.append(admin)
        click.echo(f"Created admin user: {admin['email']}")

    @app.cli.command("backfill-rewards")
    @click.option("--email", required=True, help="Email of a registered user")
    def backfill_rewards(email):
        """Credit a registered user for past paid orders placed with their email.

        Usage:
            flask backfill-rewards --email jane@example.com
        """
        from korelia.models.user import find_user_by_email
        from korelia.services.json_store import USERS, get_store
        from korelia.services.rewards_service import backfill_rewards_for_email

        store = get_store()
        user = find_user_by_email(store.read(USERS), email)
        if user is None:
            click.echo(f"No registered user for {email}")
            return
        result = backfill_rewards_for_email(store, user["email"], user["id"])
        click.echo(
            f"Credited {result['credited']} point(s) over {result['orders']} order(s) "
            f"to {user['email']}"
        )

    @app.cli.command("reload-products")
    def reload_products():
        """Re-read products.json and report the catalog size."""
        from korelia.services.json_store import get_catalog

        catalog = get_catalog()
        catalog.reload()
        click.echo(f"Catalog: {len(catalog.all())} product(s)")
