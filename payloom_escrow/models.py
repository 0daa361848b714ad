"""
Domain enums and value records shared across the escrow core.
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class OrderStatus(str, Enum):
    """Lifecycle status of an order (the buyer-seller trade)."""
    PENDING = "pending"              # Awaiting payment
    PROCESSING = "processing"        # Manual payment under review
    PAID = "paid"                    # Funds locked in escrow
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"          # Escrow released to seller
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


FULFILLED_STATUSES = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


class VerificationStatus(str, Enum):
    """Manual payment verification status."""
    NONE = "none"
    PENDING_APPROVAL = "pending_approval"
    FLAGGED = "flagged"
    APPROVED = "approved"
    REJECTED = "rejected"


class EscrowStatus(str, Enum):
    """Escrow status as mirrored on the order."""
    NONE = "none"
    PENDING_CONFIRMATION = "pending_confirmation"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class WalletStatus(str, Enum):
    """Escrow wallet states. RELEASED and REFUNDED are terminal."""
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


class ReleasedBy(str, Enum):
    """Actor that moved a wallet out of LOCKED."""
    BUYER_CONFIRMATION = "buyer_confirmation"
    ADMIN = "admin"
    AUTO_RELEASE = "auto_release"
    DISPUTE_REFUND = "dispute_refund"


class LedgerAccount(str, Enum):
    """Named accounts that ledger entries move money between."""
    BUYER = "buyer"
    ESCROW_POOL = "escrow_pool"
    PLATFORM_FEES = "platform_fees"
    PAYOUT_PENDING = "payout_pending"
    SELLER = "seller"
    EXTERNAL = "external"


# Accounts with a running balance in platform_accounts
PLATFORM_ACCOUNTS = (
    LedgerAccount.ESCROW_POOL,
    LedgerAccount.PLATFORM_FEES,
    LedgerAccount.PAYOUT_PENDING,
)


class TransactionType(str, Enum):
    """Ledger transaction types."""
    ESCROW_LOCK = "escrow_lock"
    ESCROW_RELEASE = "escrow_release"
    FEE_COLLECTION = "fee_collection"
    ESCROW_REFUND = "escrow_refund"
    REFUND_COMPLETED = "refund_completed"
    WITHDRAWAL = "withdrawal"
    PAYOUT = "payout"


class ValidationType(str, Enum):
    FORMAT_CHECK = "format_check"
    DUPLICATE_CHECK = "duplicate_check"
    AMOUNT_CHECK = "amount_check"


class DisputeDecision(str, Enum):
    """Possible dispute resolutions."""
    REFUND_BUYER = "refund_buyer"
    RELEASE_SELLER = "release_seller"


class MpesaTransactionType(str, Enum):
    STK_PUSH = "stk_push"
    B2C_PAYOUT = "b2c_payout"


def generate_reference(prefix: str) -> str:
    """Build a unique human-readable reference such as ``LOCK-1718000000000-3F9A1C``."""
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{uuid.uuid4().hex[:6].upper()}"


@dataclass(frozen=True)
class LedgerEntry:
    """One immutable money movement between two named accounts."""
    transaction_type: TransactionType
    debit_account: LedgerAccount
    credit_account: LedgerAccount
    amount: Decimal
    order_id: Optional[str] = None
    wallet_id: Optional[Any] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    entry_ref: str = ""

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Ledger amount must be positive, got {self.amount}")
        if self.debit_account == self.credit_account:
            raise ValueError("Debit and credit accounts must differ")
