# Overview: Flask CLI command group for scheduled payment jobs and operator tools.

# backend/rentflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask payments <command> [options]
#
# Scheduled jobs (cron):
# - python -m flask payments run-autopay [--date 2026-03-01]
#   Charge every AutoPay schedule due on the date (default today), plus due retries.
# - python -m flask payments disable-failing-autopay [--threshold 3]
#   Deactivate schedules that failed the given number of times in a row.
# - python -m flask payments sync-accounts
#   Pull every connected account's status from the processor.
# - python -m flask payments repair-transactions [--older-than-minutes 15]
#   Resume payments whose processor call never recorded a result.
#
# Inspection:
# - python -m flask payments fee-quote 200000 --method US_BANK_ACCOUNT --policy TENANT_PAYS
#   Show the fee split for an amount in cents.

import click
from flask import current_app
from flask.cli import with_appcontext

from .services import autopay_service, charge_service, connect_service
from .services.fee_service import (
    DEFAULT_SPLIT_PAYER_SHARE,
    VALID_FEE_POLICIES,
    VALID_METHOD_CLASSES,
    FeeError,
    compute_fees,
)
from .validation import PaymentsError, coerce_date


@click.group('payments')
def payments_group():
    """Payment jobs and operator tools."""


@payments_group.command('run-autopay')
@click.option('--date', 'as_of', default=None, help='Business date YYYY-MM-DD (default: today, UTC)')
@with_appcontext
def run_autopay_cli(as_of):
    """Run due AutoPay schedules."""
    try:
        as_of_date = coerce_date(as_of, "date")
    except PaymentsError as e:
        raise click.BadParameter(e.message, param_hint="--date")

    summary = autopay_service.run_due(as_of_date)
    click.echo(f"START AutoPay run for {summary['as_of']}")
    for outcome in summary["results"]:
        label = "RETRY" if outcome.get("retry") else "RUN"
        click.echo(
            f"  {label:<6} schedule {outcome['schedule_id']:<6} {outcome['result']:<11}"
            f" payment={outcome.get('payment_id') or '-'}"
        )
    click.echo(
        f"DONE processed={summary['processed']} succeeded={summary['succeeded']}"
        f" processing={summary['processing']} failed={summary['failed']}"
        f" no_charges={summary['no_charges']}"
    )
    for error in summary["errors"]:
        click.echo(f"FAIL {error}")


@payments_group.command('disable-failing-autopay')
@click.option('--threshold', type=int, default=None,
              help='Consecutive failures before disabling (default: AUTOPAY_MAX_CONSECUTIVE_FAILURES)')
@with_appcontext
def disable_failing_autopay_cli(threshold):
    try:
        disabled = autopay_service.disable_failing_schedules(threshold)
    except PaymentsError as e:
        raise click.BadParameter(e.message, param_hint="--threshold")
    if not disabled:
        click.echo("PASS No failing AutoPay schedules.")
        return
    click.echo(f"WARN Disabled {len(disabled)} AutoPay schedule(s): {', '.join(str(i) for i in disabled)}")


@payments_group.command('sync-accounts')
@with_appcontext
def sync_accounts_cli():
    """Refresh all connected accounts from the processor."""
    result = connect_service.sync_all_accounts()
    click.echo(f"PASS Synced {len(result['synced'])} account(s)")
    for item in result["failed"]:
        click.echo(f"FAIL {item['processor_account_id']}: {item['error']}")


@payments_group.command('repair-transactions')
@click.option('--older-than-minutes', type=int, default=15, show_default=True)
@with_appcontext
def repair_transactions_cli(older_than_minutes):
    """
    Resume payments stuck before the processor returned an id.

    Rows older than the processor's 24h idempotency window are listed for
    manual review instead.
    """
    if older_than_minutes < 1:
        raise click.BadParameter("must be at least 1", param_hint="--older-than-minutes")
    result = charge_service.repair_stale_transactions(older_than_minutes=older_than_minutes)
    for item in result["resumed"]:
        click.echo(f"  RESUMED payment {item['payment_id']}: {item['status']}")
    for payment_id in result["skipped"]:
        click.echo(f"  REVIEW  payment {payment_id}: past the idempotency window")
    click.echo(f"DONE resumed={len(result['resumed'])} skipped={len(result['skipped'])}")


@payments_group.command('fee-quote')
@click.argument('amount_cents', type=int)
@click.option('--method', 'method_class', type=click.Choice(VALID_METHOD_CLASSES), default='US_BANK_ACCOUNT',
              show_default=True)
@click.option('--policy', type=click.Choice(VALID_FEE_POLICIES), default='LANDLORD_ABSORBS', show_default=True)
@with_appcontext
def fee_quote_cli(amount_cents, method_class, policy):
    """Show the fee split for AMOUNT_CENTS."""
    try:
        fees = compute_fees(
            amount_cents,
            method_class,
            policy,
            split_payer_share=current_app.config.get("FEE_SPLIT_PAYER_SHARE", DEFAULT_SPLIT_PAYER_SHARE),
        )
    except FeeError as e:
        raise click.BadParameter(str(e), param_hint="AMOUNT_CENTS")

    click.echo("\n" + "="*48)
    click.echo(f"{'Amount':<28} {fees.amount_cents:>12}")
    click.echo(f"{'Processing fee':<28} {fees.processing_fee_cents:>12}")
    click.echo(f"{'Paid by tenant':<28} {fees.payer_portion_cents:>12}")
    click.echo(f"{'Absorbed by landlord':<28} {fees.landlord_portion_cents:>12}")
    click.echo(f"{'Tenant is charged':<28} {fees.payer_total_cents:>12}")
    click.echo(f"{'Landlord receives':<28} {fees.net_to_landlord_cents:>12}")
    click.echo("="*48)
    click.echo(f"{method_class} / {policy} (fee schedule {fees.fee_schedule_version}, amounts in cents)\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(payments_group)
