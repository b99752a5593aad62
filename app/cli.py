import json
import click
from flask import current_app
from flask.cli import with_appcontext
from app.billing import ledger
from app.billing.identity import find_account_by_email
from app.billing.lifecycle import SubscriptionLifecycle
from app.extensions import db, get_billing_provider
from app.models import Account, BillingEventLog
from app.utils.helpers import utcnow

@click.group()
def accounts():
    """Account inspection."""

@accounts.command("show")
@click.option("--email", default=None)
@click.option("--id", "account_id", default=None)
@with_appcontext
def accounts_show(email, account_id):
    if account_id:
        account = db.session.get(Account, account_id)
    elif email:
        account = find_account_by_email(email)
    else:
        raise click.UsageError("Pass --email or --id")
    if not account:
        raise click.ClickException("Account not found")
    click.echo(json.dumps(account.to_dict(), indent=2))

@click.group()
def billing():
    """Billing reconciliation ops."""

@billing.command("claim-prepaid")
@click.option("--email", required=True)
@with_appcontext
def billing_claim_prepaid(email):
    account = find_account_by_email(email)
    if not account:
        raise click.ClickException("No account with that email yet")
    rec = ledger.claim_for_account(account)
    if rec is None:
        raise click.ClickException("Nothing to claim (no unclaimed record, or the account has another customer)")
    db.session.commit()
    click.echo(f"Claimed prepaid record for {rec.email} -> account {account.id} status={account.subscription_status}")

@billing.command("replay-event")
@click.argument("event_id")
@click.option("--force", is_flag=True, help="Replay even if the event was already processed")
@with_appcontext
def billing_replay_event(event_id, force):
    log = BillingEventLog.query.filter_by(stripe_event_id=event_id).first()
    if not log or not log.signature_valid:
        raise click.ClickException("No verified delivery logged for that event id")
    if log.processed_at and not force:
        raise click.ClickException("Already processed; pass --force to apply again")

    lifecycle = SubscriptionLifecycle(
        get_billing_provider(),
        default_period_days=current_app.config.get("DEFAULT_PERIOD_DAYS", 30),
    )
    outcome = lifecycle.apply(log.payload)
    log.processed_at = utcnow()
    log.notes = outcome.action
    db.session.commit()
    click.echo(f"Replayed {event_id}: {outcome.action} account={outcome.account_id or '-'}")

def register_cli(app):
    app.cli.add_command(accounts)
    app.cli.add_command(billing)
