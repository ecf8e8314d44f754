from __future__ import annotations

from flask import current_app

from bountypay.payouts import retry_unknown_payouts
from bountypay.utils.idempotency import purge_expired_keys
from bountypay.webhooks import replay_unprocessed


def run_maintenance(*, limit: int = 100) -> dict:
    """One pass of the periodic chores: expired keys, stuck events, unknown payouts."""
    out = {
        "purged_keys": purge_expired_keys(),
        "webhooks": replay_unprocessed(limit=limit),
        "payouts": retry_unknown_payouts(limit=limit),
    }
    current_app.logger.info("maintenance tick %s", out)
    return out
