import time

import click
from flask import current_app
from flask.cli import with_appcontext

from billing_engine.billing.plans import all_plans
from billing_engine.errors import BillingError
from billing_engine.services import webhooks as webhook_service


@click.group()
def billing():
    """Billing operations: reconciliation sweep, dead letters, plan catalog."""


@billing.command("sweep")
@click.option("--loop", is_flag=True, help="Keep sweeping every --interval seconds")
@click.option("--interval", type=int, default=None, help="Seconds between sweeps (default SWEEP_INTERVAL_SECONDS)")
@click.option("--limit", type=int, default=100, show_default=True, help="Max webhook events retried per pass")
@with_appcontext
def sweep(loop, interval, limit):
    interval = interval or int(current_app.config.get("SWEEP_INTERVAL_SECONDS", 60))
    while True:
        summary = webhook_service.sweep(limit=limit)
        click.echo(
            f"sweep retried={summary['retried']} processed={summary['processed']} "
            f"grace_canceled={summary['graceCanceled']} prorations_queued={summary['prorationsQueued']}"
        )
        if not loop:
            return
        time.sleep(interval)


@billing.command("dead-letters")
@click.option("--limit", type=int, default=50, show_default=True)
@with_appcontext
def dead_letters(limit):
    rows = webhook_service.list_dead_letters(limit=limit)
    if not rows:
        click.echo("No dead-lettered events")
        return
    for ev in rows:
        click.echo(
            f"{ev.id}\t{ev.provider}\t{ev.provider_event_id}\t{ev.event_type}\t"
            f"attempts={ev.attempts}\t{ev.dead_lettered_at.isoformat()}\t{ev.last_error or ''}"
        )


@billing.command("requeue")
@click.argument("event_id", type=int)
@with_appcontext
def requeue(event_id):
    try:
        ev = webhook_service.requeue_event(event_id)
    except BillingError as exc:
        raise click.ClickException(exc.message)
    if ev.processed:
        click.echo(f"Event {ev.id} was already processed")
    else:
        click.echo(f"Requeued event {ev.id} ({ev.provider}:{ev.provider_event_id})")


@billing.command("plans")
@with_appcontext
def plans():
    for plan in all_plans().values():
        providers = ",".join(sorted(plan.prices)) or "-"
        click.echo(
            f"{plan.id}\t{plan.name}\t{plan.base_amount} {plan.currency}/{plan.interval}\t"
            f"+{plan.seat_amount}/seat over {plan.included_seats}\tmax={plan.max_seats}\t"
            f"trial={plan.trial_days}d\tproviders={providers}"
        )


def register_cli(app):
    app.cli.add_command(billing)
