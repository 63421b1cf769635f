# Overview: Flask CLI commands for schema bootstrap and reconciliation sweeps.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="storefront:create_app").
# - Use: python -m flask <group> <command> [options]
#
# Maintenance:
# - python -m flask maintenance init-db
#   Create any missing tables.
# - python -m flask maintenance expire-payments [--older-than-seconds 900]
#   Fail payments stuck in 'initiated' longer than the timeout.
# - python -m flask maintenance release-reservations [--older-than-seconds 600]
#   Release stock held by checkouts that never finished.

from datetime import timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import inventory_service, payment_service


def _window(seconds):
    return timedelta(seconds=seconds) if seconds is not None else None


@click.group('maintenance')
def maintenance_group():
    """Schema bootstrap and reconciliation sweeps."""


@maintenance_group.command('init-db')
@with_appcontext
def init_db_cli():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@maintenance_group.command('expire-payments')
@click.option('--older-than-seconds', type=int, default=None, help='Defaults to PAYMENT_TIMEOUT_SECONDS')
@with_appcontext
def expire_payments_cli(older_than_seconds):
    """Mark stale initiated payments as failed."""
    expired = payment_service.expire_stale_payments(older_than=_window(older_than_seconds))
    current_app.logger.info("expire-payments: %s payment(s) failed", expired)
    click.echo(f"Expired {expired} stale payment(s).")


@maintenance_group.command('release-reservations')
@click.option('--older-than-seconds', type=int, default=None, help='Defaults to RESERVATION_TTL_SECONDS')
@with_appcontext
def release_reservations_cli(older_than_seconds):
    """Release held reservations left behind by abandoned checkouts."""
    released = inventory_service.release_expired_reservations(older_than=_window(older_than_seconds))
    current_app.logger.info("release-reservations: %s reservation(s) released", released)
    click.echo(f"Released {released} expired reservation(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(maintenance_group)
