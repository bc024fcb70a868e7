"""Operator and scheduler commands for the ``flask`` CLI."""
import json
from dataclasses import asdict
from datetime import datetime

import click
from flask.cli import AppGroup, with_appcontext

from reconciler.admin import commands
from reconciler.billing.dunning import run_dunning_pass, run_trial_reminder_pass
from reconciler.billing.lifecycle import run_lifecycle_pass
from reconciler.billing.retry_scheduler import run_retry_pass
from reconciler.billing.sync import run_subscription_sync
from reconciler.extensions import db
from reconciler.webhooks import dispatcher

jobs_cli = AppGroup("jobs", help="Run a periodic job once.")
admin_cli = AppGroup("admin", help="Operator commands.")


def _echo(payload):
    click.echo(json.dumps(payload, indent=2, default=str))


@click.command("init-db")
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database initialized")


@jobs_cli.command("retry-payments")
def retry_payments():
    _echo(asdict(run_retry_pass(datetime.utcnow())))


@jobs_cli.command("retry-events")
def retry_events():
    _echo(asdict(dispatcher.retry_failed(datetime.utcnow())))


@jobs_cli.command("dunning")
def dunning():
    _echo(asdict(run_dunning_pass(datetime.utcnow())))


@jobs_cli.command("trial-reminders")
def trial_reminders():
    _echo(asdict(run_trial_reminder_pass(datetime.utcnow())))


@jobs_cli.command("lifecycle")
def lifecycle():
    _echo(asdict(run_lifecycle_pass(datetime.utcnow())))


@jobs_cli.command("sync")
def sync():
    _echo(asdict(run_subscription_sync(datetime.utcnow())))


@admin_cli.command("replay-event")
@click.argument("event_id")
def replay_event(event_id):
    result = commands.replay_event(event_id)
    _echo({
        "event_id": result.event_id,
        "replayed": result.replayed,
        "reason": result.reason,
        "processing_state": result.outcome.state if result.outcome else None,
        "error": result.outcome.error if result.outcome else None,
    })


@admin_cli.command("cancel-subscription")
@click.argument("subscription_id")
@click.option("--at-period-end", is_flag=True, help="Cancel when the current period ends.")
@click.option("--local-only", is_flag=True, help="Do not call the processor.")
def cancel_subscription(subscription_id, at_period_end, local_only):
    result = commands.cancel_subscription(
        subscription_id, immediate=not at_period_end, notify_processor=not local_only
    )
    _echo({"subscription": result.subscription.to_dict(), "changed": result.changed})


@admin_cli.command("failed-events")
@click.option("--limit", default=50, show_default=True)
def failed_events(limit):
    _echo([event.to_dict() for event in commands.failed_events(limit=limit)])


@admin_cli.command("failed-payments")
@click.option("--limit", default=50, show_default=True)
def failed_payments(limit):
    _echo([record.to_dict() for record in commands.unresolved_failed_payments(limit=limit)])


def register_commands(app):
    app.cli.add_command(init_db)
    app.cli.add_command(jobs_cli)
    app.cli.add_command(admin_cli)
