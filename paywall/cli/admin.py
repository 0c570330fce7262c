import click
from paywall.core.config import settings
from paywall.core.database import create_db_engine, create_session_factory, init_db
from paywall.core.exceptions import PaywallError
from paywall.core.locks import SubscriptionLockManager
from paywall.core.redis_cache import RedisCache
from paywall.services.subscription_manager import SubscriptionManager
import logging

logger = logging.getLogger(__name__)


def _build_manager() -> SubscriptionManager:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    cache = RedisCache(settings.redis_url, password=settings.redis_password, db=settings.redis_db)
    lock_manager = SubscriptionLockManager(cache, timeout_seconds=settings.subscription_lock_timeout_seconds)
    return SubscriptionManager.from_settings(settings, create_session_factory(engine), lock_manager)


def _manager(ctx: click.Context) -> SubscriptionManager:
    ctx.ensure_object(dict)
    if 'manager' not in ctx.obj:
        ctx.obj['manager'] = _build_manager()
    return ctx.obj['manager']


@click.group()
@click.pass_context
def cli(ctx):
    """Paywall subscription admin commands"""
    ctx.ensure_object(dict)


@cli.command()
@click.pass_context
def sweep(ctx):
    """Run the subscription sweep (expiry, grace, cancellation) now"""
    try:
        report = _manager(ctx).process_monthly_checks()
        click.echo(f"✓ Processed {report.processed} subscriptions")
        click.echo(f"  expired: {report.expired}, grace started: {report.grace_started}, "
                   f"cancelled: {report.cancelled}, failed: {report.failed}")
        if report.failed:
            ctx.exit(1)
    except PaywallError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e.message}", err=True)
        ctx.exit(1)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show subscription counts by status and confirmed revenue"""
    data = _manager(ctx).get_subscription_stats()
    click.echo(f"\nSubscriptions: {data['total']}\n")
    for key in ('trial', 'active', 'grace', 'expired', 'cancelled'):
        click.echo(f"  - {key}: {data[key]}")
    click.echo(f"\nConfirmed revenue: {data['revenue']} USDT")


@cli.command()
@click.option('--user', 'user_id', required=True, help='User id (Firebase UID)')
@click.pass_context
def status(ctx, user_id):
    """Show a user's entitlement, applying any due transition first"""
    try:
        entitlement = _manager(ctx).check_subscription_status(user_id)
    except PaywallError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e.message}", err=True)
        ctx.exit(1)
        return

    click.echo(f"User {user_id}: {entitlement.status}")
    if entitlement.status != 'inactive':
        click.echo(f"  active: {entitlement.is_active}, days remaining: {entitlement.days_remaining}")
        if entitlement.in_grace_period:
            click.echo(f"  grace period remaining: {entitlement.grace_period_remaining} days")
        click.echo(f"  next payment due: {entitlement.next_payment_due.isoformat()}")


@cli.command()
@click.option('--user', 'user_id', required=True, help='User id (Firebase UID)')
@click.option('-y', '--yes', 'confirm', is_flag=True, help='Skip confirmation')
@click.pass_context
def cancel(ctx, user_id, confirm):
    """Cancel a user's subscription"""
    if not confirm:
        try:
            if not click.confirm(f"Are you sure you want to cancel the subscription of {user_id}?", default=False):
                click.echo("Aborted")
                return
        except click.exceptions.Abort:
            click.echo("\nAborted")
            return

    try:
        subscription = _manager(ctx).cancel_subscription(user_id)
        click.echo(f"✓ Subscription of {user_id} is {subscription.status.value}")
    except PaywallError as e:
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e.message}", err=True)
        ctx.exit(1)


if __name__ == '__main__':
    cli()
