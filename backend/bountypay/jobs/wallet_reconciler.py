from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from flask import current_app

from bountypay.models import Bounty, WalletTxn
from bountypay.utils.audit import record_audit
from bountypay.utils.ledger import hold_key


def _bounty_issues(b: Bounty, rows: list[WalletTxn]) -> list[str]:
    by_kind = defaultdict(list)
    for r in rows:
        by_kind[r.kind].append(r)
    holds = [r for r in by_kind["escrow_hold"] if r.idempotency_key == hold_key(b.id)]
    held = -int(holds[0].amount) if holds else 0
    releases, fees, refunds = by_kind["release"], by_kind["platform_fee"], by_kind["refund"]
    state = b.escrow_state or "none"

    issues = []
    if len(releases) + len(refunds) > 1:
        issues.append("multiple_settlements")
    if state == "none":
        if holds:
            issues.append("hold_without_escrow")
        if b.status == "completed" and not b.is_for_honor:
            issues.append("completed_without_escrow")
    elif state == "held":
        if not holds:
            issues.append("missing_hold")
        if releases or refunds:
            issues.append("settled_while_held")
    elif state == "released":
        if len(releases) != 1:
            issues.append("release_count")
        elif sum(int(r.amount) for r in releases + fees) != held:
            issues.append("release_amount_mismatch")
        if b.status != "completed":
            issues.append("released_not_completed")
    elif state == "refunded":
        if len(refunds) != 1:
            issues.append("refund_count")
        elif int(refunds[0].amount) != held:
            issues.append("refund_amount_mismatch")
        if b.status != "cancelled":
            issues.append("refunded_not_cancelled")
    else:
        issues.append("unknown_escrow_state")
    return issues


def run_ledger_audit(*, limit: int = 500) -> dict:
    """Check every bounty's escrow state against its ledger entries.

    Anomalies are written to AuditLog for a human to resolve; nothing is corrected.
    """
    checked = 0
    anomalies = 0
    now = datetime.utcnow()

    bounties = Bounty.query.order_by(Bounty.id.asc()).limit(int(limit)).all()
    for b in bounties:
        checked += 1
        rows = WalletTxn.query.filter_by(bounty_id=int(b.id)).all()
        issues = _bounty_issues(b, rows)
        if not issues:
            continue
        anomalies += 1
        current_app.logger.error("ledger anomaly bounty=%s issues=%s", b.id, issues)
        record_audit(
            "ledger_anomaly",
            target_type="bounty",
            target_id=int(b.id),
            meta={
                "issues": issues,
                "status": b.status,
                "escrow_state": b.escrow_state,
                "entries": [r.id for r in rows],
                "at": now.isoformat(),
            },
        )

    return {"checked": checked, "anomalies": anomalies}
