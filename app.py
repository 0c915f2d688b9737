import os
from datetime import timedelta

import click
from flask import Flask, g, session

from blueprints.payments_helpers import MpesaClient
from config import Config
from exceptions import ConfigurationError
from extensions import db, init_extensions, login_manager
from logger import configure_app_logging
from models import User


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    configure_app_logging(app)

    # ------------------------------------------------------------------------------------------
    # M-Pesa gateway
    # ------------------------------------------------------------------------------------------
    gateway = MpesaClient.from_config(app.config)
    if app.config.get("FLASK_ENV") == "production":
        missing = list(dict.fromkeys(
            gateway.missing_collection_settings() + gateway.missing_disbursement_settings()
        ))
        if not app.config.get("SECRET_KEY"):
            missing.insert(0, "SECRET_KEY")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
    app.extensions["mpesa"] = gateway

    init_extensions(app)
    register_blueprints(app)
    register_commands(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @app.before_request
    def load_logged_in_user():
        g.user = None
        user_id = session.get("user_id")
        if user_id:
            g.user = db.session.get(User, user_id)

    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    return app


def register_blueprints(app):
    from blueprints.auth import bp as auth_bp
    from blueprints.payments import bp as payment_bp
    from blueprints.profile import bp as profile_bp
    from blueprints.tasks import bp as tasks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(payment_bp)
    app.register_blueprint(profile_bp)
    app.register_blueprint(tasks_bp)


def register_commands(app):

    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables that do not exist yet."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-tasks")
    def seed_tasks_command():
        """Insert the default available tasks."""
        from blueprints.task_helpers import seed_available_tasks
        added = seed_available_tasks()
        click.echo(f"Added {added} available tasks.")

    @app.cli.command("reconcile-activations")
    @click.option("--minutes", type=int, default=None,
                  help="Only look at activations pending for longer than this.")
    def reconcile_activations_command(minutes):
        """Settle stale M-Pesa activations by querying their STK push status."""
        from blueprints.activation_helpers import ActivationProcessor
        older_than = timedelta(minutes=minutes) if minutes is not None else None
        summary = ActivationProcessor.reconcile_stale_activations(older_than)
        click.echo(", ".join(f"{key}={value}" for key, value in summary.items()))


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port)
