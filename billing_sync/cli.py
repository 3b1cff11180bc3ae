import json

import click
from flask import current_app
from flask.cli import with_appcontext

from billing_sync.billing.catalog import PlanCatalog
from billing_sync.errors import BillingError


def _engine():
    return current_app.extensions["billing_engine"]


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


@click.group()
def billing():
    """Webhook reconciliation operations."""


@billing.command("resync")
@click.argument("stripe_subscription_id")
@with_appcontext
def billing_resync(stripe_subscription_id):
    """Pull a subscription from Stripe and apply it as an update."""
    try:
        result = _engine().resync_subscription(stripe_subscription_id)
    except BillingError as exc:
        raise click.ClickException(f"Resync failed: {exc}")
    _echo_json(result)


@billing.command("replay")
@click.argument("event_id")
@with_appcontext
def billing_replay(event_id):
    """Re-run a stored event from its payload snapshot."""
    try:
        result = _engine().replay(event_id)
    except BillingError as exc:
        raise click.ClickException(f"Replay failed: {exc}")
    _echo_json(result)


@billing.command("replay-failed")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--max-retries", type=int, default=None, help="Skip events retried this many times")
@with_appcontext
def billing_replay_failed(limit, max_retries):
    summary = _engine().replay_failed(limit=limit, max_retries=max_retries)
    _echo_json(summary)
    if summary["failed"]:
        raise click.ClickException(f"{summary['failed']} event(s) still failing")


@billing.command("stats")
@click.option("--days", type=int, default=7, show_default=True)
@with_appcontext
def billing_stats(days):
    store = _engine().store
    _echo_json({"health": store.health(days=days), "event_types": store.stats(days=days)})


@click.group()
def plans():
    """Plan catalog."""


@plans.command("seed")
@with_appcontext
def plans_seed():
    """Create missing plan rows and configured Stripe price mappings."""
    created = PlanCatalog().seed_from_config()
    click.echo(f"Seeded plans={created['plans']} prices={created['prices']}")


def register_cli(app):
    app.cli.add_command(billing)
    app.cli.add_command(plans)
