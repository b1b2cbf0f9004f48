import json

import click
from flask.cli import with_appcontext
from app.extensions import db
from app.models.user import User
from app.billing import get_billing
from app.billing.exceptions import BillingError
from app.billing.plans import seed_subscription_plans
from app.billing.service import admin_action, get_subscription_status
from app.billing.verifiers import PLATFORMS
from app.models.subscription_plan import BILLING_PERIODS, PERIOD_MONTHLY


def _user_id(ref: str) -> int:
    """Accept a numeric id or an email address."""
    if ref.isdigit():
        user = db.session.get(User, int(ref))
    else:
        user = db.session.query(User).filter_by(email=ref.strip().lower()).one_or_none()
    if not user:
        raise click.ClickException(f"User {ref!r} not found")
    return user.id


def _run_admin(user_ref: str, action: str, reason: str, **kwargs) -> None:
    user_id = _user_id(user_ref)
    try:
        result = admin_action(get_billing(), user_id, action, admin_id=None, reason=reason, **kwargs)
    except BillingError as e:
        raise click.ClickException(f"{e.code}: {e.message}")
    click.echo(json.dumps(result, indent=2))


@click.group()
def billing():
    """Billing recovery and catalog ops."""


@billing.command("seed-plans")
@with_appcontext
def billing_seed_plans():
    created = seed_subscription_plans()
    if created:
        click.echo("Seeded plans: " + ", ".join(p.name for p in created))
    else:
        click.echo("Plan catalog already up to date")


@billing.command("reconcile")
@click.argument("user")
@click.argument("platform", type=click.Choice(PLATFORMS))
@click.argument("reference")
@click.option("--product-id", default=None, help="Store product id (Google Play requires it)")
@click.option("--reason", default="manual reconciliation", show_default=True)
@with_appcontext
def billing_reconcile(user, platform, reference, product_id, reason):
    """Re-run reconciliation for a gateway reference. Safe to repeat."""
    hints = {"product_id": product_id} if product_id else {}
    _run_admin(user, "reconcile_payment", reason, reference=reference, platform=platform, **hints)


@billing.command("activate")
@click.argument("user")
@click.option("--period", type=click.Choice(BILLING_PERIODS), default=PERIOD_MONTHLY, show_default=True)
@click.option("--reason", required=True)
@with_appcontext
def billing_activate(user, period, reason):
    """Grant an active subscription without a payment (support comp)."""
    _run_admin(user, "activate_subscription", reason, period=period)


@billing.command("cancel")
@click.argument("user")
@click.option("--reason", required=True)
@with_appcontext
def billing_cancel(user, reason):
    _run_admin(user, "cancel_subscription", reason)


@billing.command("restart-trial")
@click.argument("user")
@click.option("--reason", required=True)
@with_appcontext
def billing_restart_trial(user, reason):
    _run_admin(user, "restart_trial", reason)


@billing.command("status")
@click.argument("user")
@with_appcontext
def billing_status(user):
    click.echo(json.dumps(get_subscription_status(get_billing(), _user_id(user)), indent=2))


@click.group()
def users():
    """User management."""


@users.command("create")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--username", default=None)
@click.option("--admin", "is_admin", is_flag=True, default=False)
@with_appcontext
def users_create(email, password, username, is_admin):
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    user = User(email=email, username=username, is_active=True, is_admin=is_admin)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    click.echo(f"User created id={user.id} email={user.email} admin={user.is_admin}")


def register_cli(app):
    app.cli.add_command(billing)
    app.cli.add_command(users)
