import logging
import os

import sentry_sdk
from dotenv import load_dotenv
from flask import Flask, request
from sentry_sdk.integrations.flask import FlaskIntegration
from werkzeug.middleware.proxy_fix import ProxyFix

from rental_workflow.config import config_by_env
from rental_workflow.decorators import Actor
from rental_workflow.errors import register_error_handlers
from rental_workflow.extensions import cache, db, limiter, login_manager, migrate
from rental_workflow.routes.api.v1 import api_v1_bp

ACTOR_HEADER = "X-Actor-Ref"
ACTOR_ROLE_HEADER = "X-Actor-Role"


@login_manager.request_loader
def load_actor(req):
    ref = (req.headers.get(ACTOR_HEADER) or "").strip()
    if not ref:
        return None
    role = (req.headers.get(ACTOR_ROLE_HEADER) or "staff").strip().lower()
    return Actor(ref[:64], role=role)


def create_app(config_object=None):
    load_dotenv()
    env = os.getenv("FLASK_ENV", "development")

    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or config_by_env.get(env, config_by_env["development"]))
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)
    _configure_logging(app)

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if db_uri.startswith("sqlite:///") and not db_uri.startswith("sqlite:////") and db_uri != "sqlite:///:memory:":
        relative_path = db_uri.replace("sqlite:///", "", 1)
        absolute_path = os.path.join(project_root, relative_path)
        os.makedirs(os.path.dirname(absolute_path), exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{absolute_path}"

    upload_dir = app.config["UPLOAD_DIR"]
    if not os.path.isabs(upload_dir):
        upload_dir = os.path.join(project_root, upload_dir)
    app.config["UPLOAD_DIR"] = upload_dir
    os.makedirs(app.config["UPLOAD_DIR"], exist_ok=True)

    db.init_app(app)
    migrate.init_app(app, db)
    cache.init_app(app)
    limiter.init_app(app)
    login_manager.init_app(app)
    _init_sentry(app, env)

    register_error_handlers(app)
    app.register_blueprint(api_v1_bp, url_prefix="/api/v1")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.after_request
    def log_write_requests(response):
        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            app.logger.debug("%s %s -> %s", request.method, request.path, response.status_code)
        return response

    if env in {"development", "testing"} or app.config.get("TESTING"):
        with app.app_context():
            db.create_all()

    return app


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("rental_workflow").setLevel(level)


def _init_sentry(app, env):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05")),
            environment=env,
        )
        app.logger.info("Sentry initialized.")
    except Exception as exc:
        app.logger.warning("Sentry initialization failed: %s", exc)
