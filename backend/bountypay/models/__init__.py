from .user import User  # noqa: F401
from .bounty import Bounty  # noqa: F401

from .wallet_txn import WalletTxn  # noqa: F401
from .payout import PayoutRequest  # noqa: F401

from .connect_account import ConnectAccount  # noqa: F401

from .payment_intent import PaymentIntent  # noqa: F401

from .audit_log import AuditLog  # noqa: F401

from .idempotency_key import IdempotencyKey  # noqa: F401

from .webhook_event import WebhookEvent  # noqa: F401
