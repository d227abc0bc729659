# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/posapp/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Idempotent bootstrap: creates tables and the default admin/manager/cashier users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list
# - python -m flask users create --username alice --email alice@pos.local --password "Password123!" --role CASHIER
# - python -m flask users deactivate alice
#   Deactivate a user and revoke all of their sessions.
#
# Products:
# - python -m flask products low-stock
#   List active products at or below LOW_STOCK_THRESHOLD.

import click
from flask.cli import with_appcontext

from .errors import PosError
from .extensions import db
from .models import User
from .models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER, ROLES
from .services.auth_service import create_user
from .services import catalog_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Create tables and the default users.

    Users: admin, manager, cashier (@pos.local), password "Password123!"

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing POS system...")
    db.create_all()

    default_password = "Password123!"
    default_users = [
        ("admin", "admin@pos.local", ROLE_ADMIN),
        ("manager", "manager@pos.local", ROLE_MANAGER),
        ("cashier", "cashier@pos.local", ROLE_CASHIER),
    ]

    for username, email, role in default_users:
        existing = db.session.query(User).filter_by(username=username).first()
        if existing:
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            create_user(username=username, email=email, password=default_password, role=role)
        except PosError as e:
            click.echo(f"FAIL Failed to create user '{username}': {e.message}")
            continue
        click.echo(f"PASS Created user: {username} ({email}) with role '{role}'")

    click.echo("\nDefault Credentials (CHANGE IN PRODUCTION!):")
    click.echo("   admin   -> admin@pos.local   / Password123!")
    click.echo("   manager -> manager@pos.local / Password123!")
    click.echo("   cashier -> cashier@pos.local / Password123!")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """DANGER: Drop all tables and recreate schema."""
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(ROLES), default=ROLE_CASHIER, show_default=True, help='Role')
@click.option('--name', default=None, help='Display name')
@with_appcontext
def create_user_cli(username, email, password, role, name):
    try:
        user = create_user(username=username, email=email, password=password, role=role, name=name)
    except PosError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created user {user.username} (ID: {user.id}) with role {user.role}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<30} {'Active':<8} {'Role'}")
    click.echo("="*80)
    for user in users:
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<30} {active_str:<8} {user.role}")
    click.echo("="*80 + "\n")


@users_group.command('deactivate')
@click.argument('username')
@with_appcontext
def deactivate_user(username):
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise click.ClickException(f"User '{username}' not found")

    user.is_active = False
    db.session.commit()
    revoked = session_service.revoke_all_user_sessions(user.id, reason="User deactivated")
    click.echo(f"PASS Deactivated {username}; revoked {revoked} session(s)")


@click.group('products')
def products_group():
    """Catalog inspection."""


@products_group.command('low-stock')
@with_appcontext
def low_stock():
    result = catalog_service.list_low_stock()
    click.echo(f"Threshold: {result['threshold']}")
    if not result["items"]:
        click.echo("No products at or below the threshold.")
        return
    for item in result["items"]:
        click.echo(f"{item['id']:<5} {item['code']:<20} {item['stock_qty']:>6}  {item['name']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
