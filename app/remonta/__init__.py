import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.remonta.config import load_config
from app.remonta.db import init_db, teardown_db_session
from app.remonta.routes import bp as routes_bp
from app.remonta.auth import bp as auth_bp, load_current_user
from app.remonta.admin import bp as admin_bp
from app.remonta.modules.accounts.api import bp as accounts_bp
from app.remonta.modules.workers.api import bp as workers_bp
from app.remonta.modules.compliance.api import bp as compliance_bp
from app.remonta.modules.compliance.admin import bp as compliance_admin_bp
from app.remonta.modules.jobs.api import bp as jobs_bp
from app.remonta.modules.clients.api import bp as clients_bp
from app.remonta.modules.zoho_sync.api import bp as zoho_sync_bp
from app.remonta.modules.zoho_sync.admin import bp as zoho_admin_bp
from app.remonta.modules.cms.api import bp as cms_bp
from app.remonta.modules.notifications.api import bp as notifications_bp
from app.remonta.modules.task_queue.api import bp as task_queue_bp

# Machine-to-machine endpoints authenticate with shared secrets, never the session cookie.
CSRF_EXEMPT_PATHS = (
    "/api/webhooks/",
    "/api/sync-jobs",
    "/api/sync-contractors",
    "/api/workers/process-registrations",
)
# Registration and sign-in happen before a session exists.
CSRF_EXEMPT_ENDPOINT_PREFIXES = ("auth.", "accounts.")

REQUIRED_TABLES = ("users", "roles", "worker_profiles", "verification_requirements", "jobs", "background_jobs")

ERROR_MESSAGES = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    409: "Conflict",
    410: "Gone",
    413: "File too large. Maximum size is 50MB.",
    429: "Too many requests. Please try again later.",
}


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False

    from app.remonta.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        if (request.endpoint or "").startswith(CSRF_EXEMPT_ENDPOINT_PREFIXES):
            return None
        if request.path.startswith(CSRF_EXEMPT_PATHS):
            return None
        # Anonymous requests carry no session authority worth forging.
        if not session.get("user_id"):
            return None
        if not validate_csrf(request):
            ensure_csrf_token()
            return jsonify({"error": "CSRF token missing or invalid."}), 400
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.remonta.storage import S3Storage, storage_from_config

                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(accounts_bp)
    app.register_blueprint(workers_bp)
    app.register_blueprint(compliance_bp)
    app.register_blueprint(compliance_admin_bp)
    app.register_blueprint(jobs_bp)
    app.register_blueprint(clients_bp)
    app.register_blueprint(zoho_sync_bp)
    app.register_blueprint(zoho_admin_bp)
    app.register_blueprint(cms_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(task_queue_bp)
    app.register_blueprint(admin_bp)

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema drift is logged, not enforced: tests and first boots create tables after the app exists.
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing_tables = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        if missing_tables:
            app.logger.warning(
                "DB schema incomplete; run `alembic upgrade head`. Missing tables: %s", ", ".join(missing_tables)
            )
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    def _json_error(code: int, message: str | None = None):
        return jsonify({"error": message or ERROR_MESSAGES.get(code, "Error")}), code

    for code in ERROR_MESSAGES:
        if code == 403:
            continue

        def _handler(e, _code=code):  # type: ignore[no-redef]
            description = getattr(e, "description", None) if _code in (400, 404, 409, 410) else None
            if _code == 404 or not isinstance(description, str):
                description = None
            return _json_error(_code, description)

        app.register_error_handler(code, _handler)

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return _json_error(403)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        body = {"error": "Internal server error", "requestId": rid}
        if env not in ("prod", "production"):
            original = getattr(e, "original_exception", None) or e
            body["details"] = str(original)
        return jsonify(body), 500

    @app.errorhandler(Exception)
    def _err_unhandled(e):  # type: ignore[no-redef]
        if isinstance(e, HTTPException):
            return e
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        return _err_500(e)

    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
