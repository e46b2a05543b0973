import json
import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from models import db
from routes import admin_bp, booking_bp, health_bp, payments_bp, webhook_bp
from security.session import issue_admin_token
from services import build_reconciliation, build_store, get_notifier, init_services
from services.errors import BookingError

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(config_object=Config, gateway=None, notifier=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Stripe gateway + confirmation mailer (tests pass fakes)
    init_services(app, gateway=gateway, notifier=notifier)

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc.message)
        return jsonify(exc.to_response()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app


#-------------------------
def _echo(result) -> None:
    click.echo(json.dumps(result, indent=2, default=str))


def register_cli(app):
    @app.cli.command("generate-availability")
    @click.argument("venue_id")
    @click.argument("year", type=int)
    @click.argument("month", type=int)
    @click.option("--court", "courts", multiple=True, help="Court id; defaults to the venue's active courts.")
    def generate_availability(venue_id, year, month, courts):
        """Publish an all-free calendar for a venue and month."""
        doc = build_store().generate_month(
            venue_id, year, month,
            court_ids=list(courts) or None,
            open_hour=app.config["VENUE_OPEN_HOUR"],
            close_hour=app.config["VENUE_CLOSE_HOUR"],
        )
        if doc is None:
            click.echo("Nothing generated (already exists or no courts)")
            return
        db.session.commit()
        click.echo(f"Generated availability {venue_id}/{doc.month}")

    @app.cli.command("cleanup-holds")
    def cleanup_holds():
        """Abandon holds whose heartbeat stopped."""
        _echo(build_reconciliation().cleanup_stale_holds())

    @app.cli.command("reconcile")
    def reconcile():
        """Cleanup holds, reconcile open payments and archive old bookings."""
        _echo(build_reconciliation().run_all())

    @app.cli.command("archive-bookings")
    @click.option("--before", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
    def archive_bookings(before):
        """Move finished bookings into booking_archives."""
        _echo(build_reconciliation().archive_bookings(before.date() if before else None))

    @app.cli.command("retry-emails")
    def retry_emails():
        """Resend confirmations that failed for upcoming bookings."""
        _echo(get_notifier().retry_failed(db.session))

    @app.cli.command("issue-admin-token")
    @click.argument("admin_id")
    def issue_admin_token_cmd(admin_id):
        """Print a signed bearer token for the admin endpoints."""
        click.echo(issue_admin_token(admin_id))

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
