import click
from flask import current_app
from flask.cli import with_appcontext
from armonyco.extensions import db
from armonyco.models.user import User
from armonyco.models.org import Organization
from armonyco.models.plan import SubscriptionPlan
from armonyco.models.org_membership import OrgMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from armonyco.billing import catalog
from armonyco.billing.errors import BillingError
from armonyco.services import ledger

def _get_or_create_org(name: str, billing_email=None) -> Organization:
    org = db.session.query(Organization).filter(Organization.name == name).one_or_none()
    if org:
        return org
    org = Organization(name=name, billing_email=billing_email, is_active=True)
    db.session.add(org)
    db.session.flush()
    return org

def _principal(org_id, user_id):
    if bool(org_id) == bool(user_id):
        raise click.UsageError("Pass exactly one of --org-id / --user-id")
    return ledger.org_principal(org_id) if org_id else ledger.user_principal(user_id)

# ---- bootstrap ----

@click.group()
def bootstrap():
    """Bootstrap helpers."""

@bootstrap.command("owner")
@click.option("--org-name", required=True)
@click.option("--email", required=True)
@click.option("--password", required=True)
@with_appcontext
def bootstrap_owner(org_name, email, password):
    # fail fast if user exists
    if db.session.query(User).filter_by(email=email).count():
        raise click.ClickException("User already exists")

    org = _get_or_create_org(org_name, billing_email=email)

    user = User(email=email, is_active=True)
    user.set_password(password)
    user.org_id = org.id
    db.session.add(user)
    db.session.flush()

    db.session.add(OrgMembership(org_id=org.id, user_id=user.id, role=ROLE_OWNER))
    db.session.commit()

    click.echo(f"Bootstrap complete: org_id={org.id} owner_user_id={user.id} email={email}")

# ---- members ----

@click.group()
def members():
    """Org membership role ops."""

@members.command("promote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@click.option("--role", type=click.Choice([ROLE_ADMIN, ROLE_OWNER]), required=True)
@with_appcontext
def members_promote(org_id, email, role):
    user = db.session.query(User).filter_by(email=email).one_or_none()
    if not user:
        raise click.ClickException("User not found")
    m = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if not m:
        m = OrgMembership(org_id=org_id, user_id=user.id, role=role)
        db.session.add(m)
    else:
        m.role = role
    db.session.commit()
    click.echo(f"Promoted {email} in org {org_id} to {role}")

@members.command("demote")
@click.option("--org-id", type=int, required=True)
@click.option("--email", required=True)
@with_appcontext
def members_demote(org_id, email):
    user = db.session.query(User).filter_by(email=email).one_or_none()
    if not user:
        raise click.ClickException("User not found")

    m = db.session.query(OrgMembership).filter_by(org_id=org_id, user_id=user.id).one_or_none()
    if not m:
        raise click.ClickException("Membership not found")

    # Safety rail: cannot demote last owner
    owners = db.session.query(OrgMembership).filter_by(org_id=org_id, role=ROLE_OWNER).count()
    if m.role == ROLE_OWNER and owners <= 1:
        raise click.ClickException("Refused: cannot demote the last owner of this org")

    m.role = ROLE_MEMBER
    db.session.commit()
    click.echo(f"Demoted {email} in org {org_id} to member")

# ---- catalog ----

@click.group("catalog")
def catalog_group():
    """Plan / credit pack catalog."""

@catalog_group.command("seed")
@with_appcontext
def catalog_seed():
    """Insert or refresh the default subscription plans."""
    created = updated = 0
    for p in catalog.DEFAULT_PLANS:
        row = db.session.get(SubscriptionPlan, p.id)
        if row is None:
            row = SubscriptionPlan(id=p.id, code=p.code)
            db.session.add(row)
            created += 1
        else:
            updated += 1
        row.name = p.name
        row.rank = p.rank
        row.monthly_credits = p.monthly_credits
        row.price_major_units = p.price_major_units
        row.is_active = True
    db.session.commit()
    click.echo(f"Plans seeded: created={created} updated={updated}")

@catalog_group.command("check")
@with_appcontext
def catalog_check():
    """Report which Stripe Price IDs are configured and well-formed."""
    problems = 0
    plans = [catalog.plan_from_row(r) for r in SubscriptionPlan.query.order_by(SubscriptionPlan.rank).all()]
    entries = [(catalog.KIND_PLAN, p, p.name) for p in plans]
    entries += [(catalog.KIND_PACK, p.id, p.name) for p in catalog.CREDIT_PACKS]
    for kind, ident, label in entries:
        try:
            price_id = catalog.resolve_price(kind, ident, current_app.config)
            click.echo(f"ok    {kind:<4} {label:<20} {price_id}")
        except BillingError as exc:
            problems += 1
            click.echo(f"FAIL  {kind:<4} {label:<20} {exc.message}: {exc.details}")
    if problems:
        raise click.ClickException(f"{problems} catalog entr{'y' if problems == 1 else 'ies'} misconfigured")

# ---- ledger ----

@click.group("ledger")
def ledger_group():
    """Credit ledger ops."""

@ledger_group.command("adjust")
@click.option("--org-id", type=int)
@click.option("--user-id", type=int)
@click.option("--delta", type=int, required=True, help="Signed credit amount")
@click.option("--reason", required=True)
@click.option("--reference-id", default=None, help="Idempotency key for this correction")
@click.option("--actor", default=None)
@with_appcontext
def ledger_adjust(org_id, user_id, delta, reason, reference_id, actor):
    principal = _principal(org_id, user_id)
    try:
        tx = ledger.adjust(principal, delta, reason, actor=actor, reference_id=reference_id)
    except BillingError as exc:
        raise click.ClickException(f"{exc.message} ({exc.details})")
    click.echo(f"Adjusted {principal}: {tx.amount:+d} -> balance {tx.balance_after} (tx {tx.id})")

@ledger_group.command("balance")
@click.option("--org-id", type=int)
@click.option("--user-id", type=int)
@with_appcontext
def ledger_balance(org_id, user_id):
    principal = _principal(org_id, user_id)
    credits = ledger.balance_of(principal)
    click.echo(f"{principal}: credits={credits} tokens={ledger.tokens_from_credits(credits)}")

@ledger_group.command("verify")
@click.option("--org-id", type=int)
@click.option("--user-id", type=int)
@with_appcontext
def ledger_verify(org_id, user_id):
    principal = _principal(org_id, user_id)
    try:
        replayed = ledger.replay_balance(principal)
    except BillingError as exc:
        raise click.ClickException(f"{exc.message} ({exc.details})")
    cached = ledger.balance_of(principal)
    if replayed != cached:
        raise click.ClickException(f"{principal}: drift cached={cached} replayed={replayed}")
    click.echo(f"{principal}: ok balance={cached}")

@ledger_group.command("rebuild")
@click.option("--org-id", type=int)
@click.option("--user-id", type=int)
@with_appcontext
def ledger_rebuild(org_id, user_id):
    principal = _principal(org_id, user_id)
    try:
        balance = ledger.rebuild_balance(principal)
    except BillingError as exc:
        raise click.ClickException(f"{exc.message} ({exc.details})")
    click.echo(f"{principal}: rebuilt balance={balance}")

def register_cli(app):
    app.cli.add_command(bootstrap)
    app.cli.add_command(members)
    app.cli.add_command(catalog_group)
    app.cli.add_command(ledger_group)
