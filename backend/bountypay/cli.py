from __future__ import annotations

import json

import click
from flask.cli import AppGroup

from bountypay.jobs.maintenance_runner import run_maintenance
from bountypay.jobs.wallet_reconciler import run_ledger_audit
from bountypay.payouts import retry_unknown_payouts
from bountypay.utils.idempotency import purge_expired_keys
from bountypay.webhooks import replay_unprocessed

bountypay_cli = AppGroup("bountypay", help="Ledger and reconciliation chores.")


def _echo(result) -> None:
    click.echo(json.dumps(result, default=str))


@bountypay_cli.command("audit-ledger")
@click.option("--limit", default=500, show_default=True)
def audit_ledger(limit):
    _echo(run_ledger_audit(limit=limit))


@bountypay_cli.command("purge-keys")
def purge_keys():
    _echo({"purged": purge_expired_keys()})


@bountypay_cli.command("replay-webhooks")
@click.option("--limit", default=100, show_default=True)
def replay_webhooks(limit):
    _echo(replay_unprocessed(limit=limit))


@bountypay_cli.command("retry-payouts")
@click.option("--limit", default=50, show_default=True)
def retry_payouts(limit):
    _echo(retry_unknown_payouts(limit=limit))


@bountypay_cli.command("tick")
@click.option("--limit", default=100, show_default=True)
def tick(limit):
    _echo(run_maintenance(limit=limit))
