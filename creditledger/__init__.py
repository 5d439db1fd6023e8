import os
import logging

import click
from flask import Flask

from creditledger.config import config_by_name
from creditledger.extensions import db, migrate, limiter


def create_app(config_name=None, overrides=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])
    if overrides:
        app.config.update(overrides)

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from creditledger import models  # noqa: F401

    # --- Credit engine (one per app) ---
    from creditledger.services.credit_engine import CreditEngine
    app.extensions["credit_engine"] = CreditEngine.from_config(app.config)

    # --- Register blueprints ---
    from creditledger.blueprints.webhooks import webhooks_bp

    app.register_blueprint(webhooks_bp)

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register operator CLI commands with the Flask app."""

    def _engine():
        return app.extensions["credit_engine"]

    @app.cli.command("retry-webhooks")
    @click.option("--limit", default=100, help="Maximum events to retry.")
    def retry_webhooks(limit):
        """Re-dispatch webhook events whose retry time has come.

        Usage:
            flask retry-webhooks
            flask retry-webhooks --limit 20
        """
        results = _engine().retry_webhooks(limit=limit)
        for result in results:
            click.echo(f"  {result.event_id}  {result.event_type}  {result.status}")
        click.echo(f"Retried {len(results)} event(s).")

    @app.cli.command("dead-letters")
    @click.option("--requeue", "requeue_id", default=None,
                  help="Put this dead-lettered event ID back on the retry queue.")
    def dead_letters(requeue_id):
        """List dead-lettered webhook events, or requeue one.

        Usage:
            flask dead-letters
            flask dead-letters --requeue evt_123
        """
        from creditledger.errors import ValidationError
        from creditledger.services.stripe_service import list_dead_letters

        if requeue_id:
            try:
                _engine().requeue_webhook(requeue_id)
            except ValidationError as e:
                click.echo(f"ERROR: {e.message}")
                return
            click.echo(f"Requeued {requeue_id}.")
            return

        records = list_dead_letters()
        if not records:
            click.echo("No dead-lettered events.")
            return
        for record in records:
            click.echo(
                f"  {record.stripe_event_id}  {record.event_type}  "
                f"attempts={record.retry_count}  error={record.last_error}"
            )

    @app.cli.command("stuck-pending")
    def stuck_pending():
        """Report PENDING purchases/refunds with no gateway outcome yet."""
        stuck = _engine().find_stuck_pending()
        for txn in stuck:
            click.echo(
                f"  {txn.id}  {txn.type}  user={txn.user_id}  "
                f"created={txn.created_at.isoformat()}"
            )
        click.echo(f"{len(stuck)} stuck transaction(s).")

    @app.cli.command("expire-credits")
    def expire_credits():
        """Expire purchase lots past their validity period."""
        expired = _engine().expire_credits()
        click.echo(f"Expired {len(expired)} lot(s).")
