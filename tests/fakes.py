"""
In-memory stand-ins for the asyncpg database and the notification dispatcher.

FakeEscrowDatabase mirrors EscrowDatabase: ``transaction()`` and ``session()``
yield a store with the same methods as EscrowStore. Transactions are
serialised with a lock (like row locks on the order) and roll back to a
snapshot when the block raises. The uniqueness and conditional-update rules
of the real schema are reproduced so conflict paths behave the same.
"""

import asyncio
import copy
import itertools
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from payloom_escrow.exceptions import (
    DisputeExistsError,
    DuplicateTransactionCodeError,
    PayoutExistsError,
    WalletAlreadyExistsError,
)
from payloom_escrow.models import LedgerAccount, LedgerEntry, PLATFORM_ACCOUNTS


def _now() -> datetime:
    return datetime.now(timezone.utc)


# VARCHAR widths from SCHEMA_STATEMENTS for columns fed by user input
COLUMN_WIDTHS = {
    'orders.transaction_code': 50,
    'orders.payment_method': 30,
    'orders.buyer_phone': 20,
    'orders.buyer_name': 255,
    'transaction_validations.transaction_code': 50,
    'escrow_deposits.payment_reference': 100,
    'disputes.opened_by': 64,
    'disputes.reason': 100,
}


def _check_width(column: str, value: Optional[str]) -> None:
    """Fail like Postgres does when a value is too long for its column."""
    if value is not None and len(value) > COLUMN_WIDTHS[column]:
        raise ValueError(f"value too long for {column} (character varying({COLUMN_WIDTHS[column]}))")


@dataclass
class FakeState:
    orders: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    wallets: List[Dict[str, Any]] = field(default_factory=list)
    ledger: List[Dict[str, Any]] = field(default_factory=list)
    accounts: Dict[str, Decimal] = field(
        default_factory=lambda: {account.value: Decimal("0") for account in PLATFORM_ACCOUNTS}
    )
    seller_wallets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    deposits: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    validations: List[Dict[str, Any]] = field(default_factory=list)
    fraud_alerts: List[Dict[str, Any]] = field(default_factory=list)
    mpesa_transactions: List[Dict[str, Any]] = field(default_factory=list)
    disputes: List[Dict[str, Any]] = field(default_factory=list)
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    sms_logs: List[Dict[str, Any]] = field(default_factory=list)
    admin_logs: List[Dict[str, Any]] = field(default_factory=list)


class FakeEscrowStore:
    """Same surface as EscrowStore, backed by a FakeState."""

    def __init__(self, db: "FakeEscrowDatabase"):
        self.db = db

    @property
    def state(self) -> FakeState:
        return self.db.state

    def _id(self) -> int:
        return next(self.db._ids)

    # ==================== ORDERS ====================

    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        # Yield to the loop so unserialised callers would interleave here
        await asyncio.sleep(0)
        order = self.state.orders.get(order_id)
        return dict(order) if order else None

    def _update_order(self, order_id: str, **values) -> None:
        order = self.state.orders.get(order_id)
        if order is not None:
            order.update(values, updated_at=_now())

    async def mark_order_paid(self, order_id, wallet_id, platform_fee, seller_payout,
                              auto_release_at, payment_reference, paid_at) -> None:
        order = self.state.orders.get(order_id)
        if order is None:
            return
        self._update_order(
            order_id,
            status='paid',
            escrow_status='held',
            escrow_wallet_id=wallet_id,
            platform_fee=platform_fee,
            seller_payout=seller_payout,
            auto_release_at=auto_release_at,
            payment_reference=payment_reference if payment_reference is not None else order['payment_reference'],
            paid_at=paid_at,
            payment_failure_reason=None,
        )

    async def mark_order_completed(self, order_id: str, completed_at: datetime) -> None:
        order = self.state.orders[order_id]
        self._update_order(
            order_id,
            status='completed',
            escrow_status='released',
            completed_at=completed_at,
            shipped_at=order['shipped_at'] or completed_at,
            delivered_at=order['delivered_at'] or completed_at,
        )

    async def mark_order_refunded(self, order_id: str, reason: str, refunded_at: datetime) -> None:
        self._update_order(
            order_id, status='refunded', escrow_status='refunded',
            refund_reason=reason, refunded_at=refunded_at,
        )

    async def mark_order_fulfilled(self, order_id: str, stage: str, at: datetime) -> None:
        order = self.state.orders[order_id]
        if stage == 'shipped':
            self._update_order(order_id, status='shipped', shipped_at=at)
        else:
            self._update_order(
                order_id, status='delivered', shipped_at=order['shipped_at'] or at, delivered_at=at
            )

    async def set_buyer_confirmed(self, order_id: str, at: datetime) -> None:
        self._update_order(order_id, buyer_confirmed_at=at)

    async def record_manual_submission(self, order_id, transaction_code, payment_method,
                                       payer_phone, payer_name, verification_status) -> None:
        _check_width('orders.transaction_code', transaction_code)
        _check_width('orders.payment_method', payment_method)
        _check_width('orders.buyer_phone', payer_phone)
        _check_width('orders.buyer_name', payer_name)
        order = self.state.orders[order_id]
        self._update_order(
            order_id,
            status='processing',
            verification_status=verification_status,
            escrow_status='pending_confirmation',
            transaction_code=transaction_code,
            payment_method=payment_method,
            buyer_phone=payer_phone or order['buyer_phone'],
            buyer_name=payer_name or order['buyer_name'],
            rejection_reason=None,
        )

    async def set_verification_approved(self, order_id: str, admin_id: str, approved_at: datetime) -> None:
        code = self.state.orders[order_id]['transaction_code']
        for other in self.state.orders.values():
            if (other['id'] != order_id and code is not None
                    and other['transaction_code'] == code
                    and other['verification_status'] == 'approved'):
                raise DuplicateTransactionCodeError(
                    f"Transaction code on order {order_id} is already approved on another order"
                )
        self._update_order(
            order_id, verification_status='approved', approved_by=admin_id, approved_at=approved_at
        )

    async def reject_verification(self, order_id: str, reason: str) -> None:
        self._update_order(
            order_id, status='pending', verification_status='rejected',
            escrow_status='none', rejection_reason=reason,
        )

    async def mark_order_disputed(self, order_id: str) -> None:
        self._update_order(order_id, status='disputed')

    async def mark_order_payment_failed(self, order_id: str, reason: str) -> None:
        if self.state.orders[order_id]['status'] == 'pending':
            self._update_order(order_id, payment_failure_reason=reason)

    async def find_orders_by_transaction_code(self, transaction_code: str, exclude_order_id: str):
        return [
            {'id': order['id'], 'status': order['status'],
             'verification_status': order['verification_status']}
            for order in self.state.orders.values()
            if order['transaction_code'] == transaction_code and order['id'] != exclude_order_id
        ]

    # ==================== ESCROW WALLETS ====================

    async def insert_wallet(self, order_id, wallet_ref, gross_amount, platform_fee, net_amount,
                            currency, auto_release_date, locked_at, lock_source,
                            payment_reference) -> Dict[str, Any]:
        if any(w['order_id'] == order_id and w['status'] == 'locked' for w in self.state.wallets):
            raise WalletAlreadyExistsError(f"Order {order_id} already has a locked escrow wallet")
        if net_amount != gross_amount - platform_fee or net_amount <= 0:
            raise ValueError("net_equals_gross_minus_fee check violated")

        wallet = {
            'id': uuid.uuid4(),
            'wallet_ref': wallet_ref,
            'order_id': order_id,
            'gross_amount': gross_amount,
            'platform_fee': platform_fee,
            'net_amount': net_amount,
            'currency': currency,
            'status': 'locked',
            'auto_release_date': auto_release_date,
            'locked_at': locked_at,
            'released_at': None,
            'released_by': None,
            'refund_reason': None,
            'lock_source': lock_source,
            'payment_reference': payment_reference,
        }
        self.state.wallets.append(wallet)
        return dict(wallet)

    async def transition_wallet(self, new_status, released_by, at, wallet_id=None,
                                order_id=None, refund_reason=None) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        for wallet in self.state.wallets:
            matches = wallet['id'] == wallet_id if wallet_id is not None else wallet['order_id'] == order_id
            if matches and wallet['status'] == 'locked':
                wallet.update(
                    status=new_status, released_by=released_by,
                    released_at=at, refund_reason=refund_reason,
                )
                return dict(wallet)
        return None

    async def get_latest_wallet(self, order_id=None, wallet_id=None) -> Optional[Dict[str, Any]]:
        for wallet in reversed(self.state.wallets):
            if wallet_id is not None:
                if wallet['id'] == wallet_id:
                    return dict(wallet)
            elif wallet['order_id'] == order_id:
                return dict(wallet)
        return None

    async def list_due_wallets(self, now: datetime) -> List[Dict[str, Any]]:
        due = [
            dict(wallet, order_status=self.state.orders[wallet['order_id']]['status'])
            for wallet in self.state.wallets
            if wallet['status'] == 'locked' and wallet['auto_release_date'] <= now
        ]
        return sorted(due, key=lambda wallet: wallet['auto_release_date'])

    async def list_wallets(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        wallets = [dict(w) for w in reversed(self.state.wallets) if not status or w['status'] == status]
        return wallets[:limit]

    # ==================== LEDGER & PLATFORM ACCOUNTS ====================

    async def insert_ledger_entry(self, entry: LedgerEntry) -> Dict[str, Any]:
        if any(row['entry_ref'] == entry.entry_ref for row in self.state.ledger):
            raise ValueError(f"duplicate entry_ref {entry.entry_ref}")
        row = {
            'id': self._id(),
            'entry_ref': entry.entry_ref,
            'order_id': entry.order_id,
            'wallet_id': entry.wallet_id,
            'transaction_type': entry.transaction_type.value,
            'debit_account': entry.debit_account.value,
            'credit_account': entry.credit_account.value,
            'amount': entry.amount,
            'description': entry.description,
            'metadata': copy.deepcopy(entry.metadata),
            'created_at': _now(),
        }
        self.state.ledger.append(row)
        return dict(row)

    async def adjust_account(self, account: LedgerAccount, delta: Decimal) -> Decimal:
        self.state.accounts[account.value] += delta
        return self.state.accounts[account.value]

    async def get_ledger_entries(self, order_id: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.state.ledger if row['order_id'] == order_id]

    async def get_platform_accounts(self) -> Dict[str, Decimal]:
        return dict(self.state.accounts)

    async def get_ledger_account_totals(self) -> Dict[str, Decimal]:
        platform = {account.value for account in PLATFORM_ACCOUNTS}
        totals: Dict[str, Decimal] = {}
        for row in self.state.ledger:
            for account, delta in ((row['credit_account'], row['amount']),
                                   (row['debit_account'], -row['amount'])):
                if account in platform:
                    totals[account] = totals.get(account, Decimal("0")) + delta
        return totals

    # ==================== SELLER WALLETS ====================

    def _seller(self, seller_id: str) -> Dict[str, Any]:
        return self.state.seller_wallets.setdefault(seller_id, {
            'seller_id': seller_id,
            'available_balance': Decimal("0"),
            'pending_balance': Decimal("0"),
            'total_earned': Decimal("0"),
        })

    async def credit_seller_pending(self, seller_id: str, amount: Decimal) -> None:
        self._seller(seller_id)['pending_balance'] += amount

    async def settle_seller_release(self, seller_id: str, amount: Decimal) -> None:
        seller = self._seller(seller_id)
        seller['available_balance'] += amount
        seller['pending_balance'] = max(seller['pending_balance'] - amount, Decimal("0"))
        seller['total_earned'] += amount

    async def reverse_seller_pending(self, seller_id: str, amount: Decimal) -> None:
        seller = self.state.seller_wallets.get(seller_id)
        if seller:
            seller['pending_balance'] = max(seller['pending_balance'] - amount, Decimal("0"))

    async def debit_seller_available(self, seller_id: str, amount: Decimal) -> None:
        seller = self.state.seller_wallets.get(seller_id)
        if seller:
            seller['available_balance'] = max(seller['available_balance'] - amount, Decimal("0"))

    async def get_seller_wallet(self, seller_id: str) -> Optional[Dict[str, Any]]:
        seller = self.state.seller_wallets.get(seller_id)
        return dict(seller) if seller else None

    # ==================== MANUAL VERIFICATION ====================

    async def insert_validation(self, order_id, transaction_code, validation_type, passed, details) -> None:
        _check_width('transaction_validations.transaction_code', transaction_code)
        self.state.validations.append({
            'id': self._id(),
            'order_id': order_id,
            'transaction_code': transaction_code,
            'validation_type': validation_type,
            'status': 'passed' if passed else 'failed',
            'details': copy.deepcopy(details),
        })

    async def insert_fraud_alert(self, order_id, alert_type, severity, details) -> Dict[str, Any]:
        alert = {
            'id': self._id(),
            'order_id': order_id,
            'alert_type': alert_type,
            'severity': severity,
            'details': copy.deepcopy(details),
            'resolved': False,
        }
        self.state.fraud_alerts.append(alert)
        return dict(alert)

    async def upsert_escrow_deposit(self, order_id, amount, currency, payment_method,
                                    payment_reference, payer_phone, payer_name) -> None:
        _check_width('escrow_deposits.payment_reference', payment_reference)
        deposit = self.state.deposits.setdefault(order_id, {'id': self._id(), 'order_id': order_id})
        deposit.update(
            amount=amount, currency=currency, payment_method=payment_method,
            payment_reference=payment_reference, payer_phone=payer_phone, payer_name=payer_name,
            status='pending', confirmed_by=None, confirmed_at=None, admin_notes=None,
        )

    async def confirm_escrow_deposit(self, order_id, admin_id, notes, at) -> None:
        deposit = self.state.deposits.get(order_id)
        if deposit:
            deposit.update(status='confirmed', confirmed_by=admin_id, confirmed_at=at, admin_notes=notes)

    async def reject_escrow_deposit(self, order_id, admin_id, notes) -> None:
        deposit = self.state.deposits.get(order_id)
        if deposit:
            deposit.update(status='rejected', confirmed_by=admin_id, admin_notes=notes)

    async def get_escrow_deposit(self, order_id: str) -> Optional[Dict[str, Any]]:
        deposit = self.state.deposits.get(order_id)
        return dict(deposit) if deposit else None

    async def insert_admin_log(self, admin_id, action, target_type, target_id, details) -> None:
        self.state.admin_logs.append({
            'admin_id': admin_id, 'action': action, 'target_type': target_type,
            'target_id': target_id, 'details': copy.deepcopy(details),
        })

    # ==================== M-PESA TRANSACTIONS ====================

    async def insert_mpesa_transaction(self, order_id, transaction_type, phone_number, amount,
                                       merchant_request_id=None, checkout_request_id=None,
                                       raw_response=None) -> Dict[str, Any]:
        for existing in self.state.mpesa_transactions:
            live_payout = (
                transaction_type == 'b2c_payout'
                and existing['transaction_type'] == 'b2c_payout'
                and existing['order_id'] == order_id
                and existing['status'] in ('pending', 'completed')
            )
            same_checkout = (
                checkout_request_id is not None
                and existing['checkout_request_id'] == checkout_request_id
            )
            if live_payout or same_checkout:
                raise PayoutExistsError(
                    f"A payout for order {order_id} is already in progress or completed"
                )

        row = {
            'id': self._id(),
            'order_id': order_id,
            'transaction_type': transaction_type,
            'merchant_request_id': merchant_request_id,
            'checkout_request_id': checkout_request_id,
            'conversation_id': None,
            'mpesa_receipt_number': None,
            'phone_number': phone_number,
            'amount': amount,
            'status': 'pending',
            'result_code': None,
            'result_desc': None,
            'raw_response': copy.deepcopy(raw_response),
            'callback_data': None,
        }
        self.state.mpesa_transactions.append(row)
        return dict(row)

    def _mpesa_row(self, transaction_id: int) -> Optional[Dict[str, Any]]:
        for row in self.state.mpesa_transactions:
            if row['id'] == transaction_id:
                return row
        return None

    async def attach_conversation_id(self, transaction_id, conversation_id, raw_response) -> None:
        row = self._mpesa_row(transaction_id)
        if row:
            row.update(conversation_id=conversation_id, raw_response=copy.deepcopy(raw_response))

    async def fail_mpesa_transaction(self, transaction_id: int, result_desc: str) -> None:
        row = self._mpesa_row(transaction_id)
        if row and row['status'] == 'pending':
            row.update(status='failed', result_desc=result_desc)

    async def complete_mpesa_transaction(self, status, result_code, result_desc, callback_data,
                                         receipt_number=None, checkout_request_id=None,
                                         conversation_id=None) -> Optional[Dict[str, Any]]:
        if checkout_request_id is not None:
            key, value = 'checkout_request_id', checkout_request_id
        else:
            key, value = 'conversation_id', conversation_id

        for row in self.state.mpesa_transactions:
            if row[key] == value and row['status'] == 'pending':
                row.update(
                    status=status, result_code=result_code, result_desc=result_desc,
                    callback_data=copy.deepcopy(callback_data),
                    mpesa_receipt_number=receipt_number or row['mpesa_receipt_number'],
                )
                return dict(row)
        return None

    async def get_mpesa_transaction(self, checkout_request_id=None, conversation_id=None):
        key, value = (
            ('checkout_request_id', checkout_request_id) if checkout_request_id is not None
            else ('conversation_id', conversation_id)
        )
        for row in self.state.mpesa_transactions:
            if row[key] == value:
                return dict(row)
        return None

    # ==================== DISPUTES ====================

    async def insert_dispute(self, order_id, opened_by, reason, description) -> Dict[str, Any]:
        _check_width('disputes.opened_by', opened_by)
        _check_width('disputes.reason', reason)
        for existing in self.state.disputes:
            if existing['order_id'] == order_id:
                raise DisputeExistsError(
                    f"A dispute already exists for order {order_id}", dispute_id=existing['id']
                )
        dispute = {
            'id': self._id(),
            'order_id': order_id,
            'opened_by': opened_by,
            'reason': reason,
            'description': description,
            'status': 'open',
            'resolution': None,
            'resolved_by': None,
            'resolved_at': None,
            'created_at': _now(),
        }
        self.state.disputes.append(dispute)
        return dict(dispute)

    async def get_dispute(self, dispute_id: int) -> Optional[Dict[str, Any]]:
        for dispute in self.state.disputes:
            if dispute['id'] == dispute_id:
                return dict(dispute)
        return None

    async def resolve_dispute(self, dispute_id, resolution, resolved_by, at) -> Optional[Dict[str, Any]]:
        for dispute in self.state.disputes:
            if dispute['id'] == dispute_id and dispute['status'] == 'open':
                dispute.update(status='resolved', resolution=resolution,
                               resolved_by=resolved_by, resolved_at=at)
                return dict(dispute)
        return None

    # ==================== NOTIFICATIONS ====================

    async def insert_notification(self, user_id, event, title, message, order_id=None, data=None) -> None:
        self.state.notifications.append({
            'user_id': user_id, 'order_id': order_id, 'event': event,
            'title': title, 'message': message, 'data': copy.deepcopy(data or {}),
        })

    async def insert_sms_log(self, phone_number, message, status, provider_response=None) -> None:
        self.state.sms_logs.append({
            'phone_number': phone_number, 'message': message,
            'status': status, 'provider_response': copy.deepcopy(provider_response),
        })


class FakeEscrowDatabase:
    """In-memory EscrowDatabase with serialised, rollback-on-error transactions."""

    def __init__(self):
        self.state = FakeState()
        self.healthy = True
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.transactions_opened: List[tuple] = []

    @asynccontextmanager
    async def transaction(self, isolation=None, readonly=False):
        async with self._lock:
            self.transactions_opened.append((isolation, readonly))
            snapshot = copy.deepcopy(self.state)
            try:
                yield FakeEscrowStore(self)
            except BaseException:
                self.state = snapshot
                raise

    @asynccontextmanager
    async def session(self):
        async with self._lock:
            yield FakeEscrowStore(self)

    async def ping(self) -> bool:
        return self.healthy

    def seed_order(
        self,
        order_id: str = "ORD-1001",
        amount: Any = "1000",
        status: str = "pending",
        seller_id: str = "seller-1",
        buyer_id: Optional[str] = "buyer-1",
        seller_phone: Optional[str] = "254711000001",
        buyer_phone: Optional[str] = "254722000002",
        item_name: str = "Kitenge dress",
        transaction_code: Optional[str] = None,
        verification_status: str = "none",
        escrow_status: str = "none",
    ) -> Dict[str, Any]:
        order = {
            'id': order_id,
            'seller_id': seller_id,
            'seller_phone': seller_phone,
            'buyer_id': buyer_id,
            'buyer_phone': buyer_phone,
            'buyer_name': None,
            'item_name': item_name,
            'amount': Decimal(str(amount)),
            'currency': 'KES',
            'status': status,
            'verification_status': verification_status,
            'escrow_status': escrow_status,
            'escrow_wallet_id': None,
            'transaction_code': transaction_code,
            'payment_method': None,
            'payment_reference': None,
            'platform_fee': None,
            'seller_payout': None,
            'rejection_reason': None,
            'payment_failure_reason': None,
            'refund_reason': None,
            'approved_by': None,
            'approved_at': None,
            'paid_at': None,
            'shipped_at': None,
            'delivered_at': None,
            'completed_at': None,
            'refunded_at': None,
            'auto_release_at': None,
            'buyer_confirmed_at': None,
            'created_at': _now(),
            'updated_at': _now(),
        }
        self.state.orders[order_id] = order
        return dict(order)

    def order(self, order_id: str) -> Dict[str, Any]:
        return self.state.orders[order_id]

    def wallets_for(self, order_id: str) -> List[Dict[str, Any]]:
        return [w for w in self.state.wallets if w['order_id'] == order_id]

    def ledger_for(self, order_id: str) -> List[Dict[str, Any]]:
        return [row for row in self.state.ledger if row['order_id'] == order_id]


class RecordingDispatcher:
    """Collects dispatched notifications instead of delivering them."""

    def __init__(self):
        self.sent = []

    def dispatch(self, notification) -> bool:
        self.sent.append(notification)
        return True

    def dispatch_all(self, notifications) -> int:
        notifications = list(notifications)
        self.sent.extend(notifications)
        return len(notifications)

    def events(self, channel=None) -> List[str]:
        return [n.event for n in self.sent if channel is None or n.channel == channel]

    def clear(self) -> None:
        self.sent.clear()
