"""
Escrow Wallet Manager.

Owns the wallet lifecycle for an order:

    none -> locked -> released | refunded

Each operation runs in one database transaction covering the wallet row,
its ledger entries, the platform account balances, the order row and the
seller wallet. The order row is locked first (SELECT ... FOR UPDATE), then
the wallet, so concurrent callers queue on the same row. Release and refund
are conditional updates on ``status = 'locked'``; whoever loses the race gets
a StateTransitionError and must not retry.

Notifications are collected while the transaction runs and handed to the
dispatcher only after it commits.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from payloom_escrow.config import EscrowSettings
from payloom_escrow.exceptions import (
    AlreadyRefundedError,
    AlreadyReleasedError,
    DisputeNotFoundError,
    InvalidStateError,
    OrderNotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    UpstreamError,
    ValidationError,
    WalletAlreadyExistsError,
    WalletNotFoundError,
)
from payloom_escrow.fees import FeeCalculator
from payloom_escrow.ledger import LedgerWriter
from payloom_escrow.models import (
    DisputeDecision,
    EscrowStatus,
    FULFILLED_STATUSES,
    LedgerAccount,
    LedgerEntry,
    MpesaTransactionType,
    OrderStatus,
    ReleasedBy,
    TransactionType,
    WalletStatus,
    generate_reference,
)
from payloom_escrow.mpesa_service import MpesaClient, MpesaError
from payloom_escrow.notifications import Notification, admin_alert, in_app, sms
from payloom_escrow.utils import format_currency, utcnow, validate_kenyan_phone

logger = logging.getLogger(__name__)


# How a lock was triggered, stored on the wallet for audit
LOCK_SOURCE_STK = "mpesa_stk"
LOCK_SOURCE_ADMIN_APPROVAL = "admin_approval"

MIN_DISPUTE_DESCRIPTION = 20
MAX_DISPUTE_REASON = 100
MAX_WALLET_LIST = 200


class EscrowService:
    """
    Escrow business logic: lock, release, refund and the flows built on them.

    Attributes:
        db: EscrowDatabase (or any object with the same transaction/session API)
        fee_calculator: Computes fee and net at lock time
        settings: Immutable escrow settings
        ledger: Ledger writer used for every money movement
        dispatcher: Receives notifications after commit
        mpesa_client: Optional Daraja client used for seller payouts
    """

    def __init__(
        self,
        db,
        fee_calculator: FeeCalculator,
        settings: EscrowSettings,
        ledger: Optional[LedgerWriter] = None,
        dispatcher=None,
        mpesa_client: Optional[MpesaClient] = None,
    ):
        self.db = db
        self.fee_calculator = fee_calculator
        self.settings = settings
        self.ledger = ledger or LedgerWriter()
        self.dispatcher = dispatcher
        self.mpesa_client = mpesa_client

    def _money(self, amount: Any) -> str:
        return format_currency(amount, self.settings.currency)

    def _track_url(self, order_id: str) -> str:
        return f"{self.settings.frontend_url}/track/{order_id}"

    def dispatch(self, notifications: List[Notification]) -> None:
        """Hand committed notifications to the dispatcher."""
        if self.dispatcher is not None and notifications:
            self.dispatcher.dispatch_all(notifications)

    # ==================== HELPERS ====================

    @staticmethod
    def _released_by(value: Any) -> ReleasedBy:
        try:
            return ReleasedBy(value)
        except ValueError:
            raise ValidationError(f"Unknown release actor: {value}")

    async def _lock_order_for(
        self,
        store,
        order_id: Optional[str],
        wallet_id: Any,
        require_order_status: Optional[Iterable[OrderStatus]] = None,
    ) -> Dict[str, Any]:
        """
        Resolve the target order and take its row lock.

        ``require_order_status`` is checked against the locked row, not an
        earlier read.
        """
        if order_id is None and wallet_id is None:
            raise ValidationError("Either order_id or wallet_id is required")

        if order_id is None:
            wallet = await store.get_latest_wallet(wallet_id=wallet_id)
            if not wallet:
                raise WalletNotFoundError(f"Escrow wallet not found: {wallet_id}")
            order_id = wallet['order_id']

        order = await store.get_order(order_id, for_update=True)
        if not order:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        if require_order_status is not None:
            allowed = {status.value for status in require_order_status}
            if order['status'] not in allowed:
                raise InvalidStateError(
                    f"Order {order_id} is {order['status']}, expected one of {sorted(allowed)}"
                )
        return order

    @staticmethod
    def _refuse_open_dispute(order: Dict[str, Any]) -> None:
        if order['status'] == OrderStatus.DISPUTED.value:
            raise InvalidStateError(
                f"Order {order['id']} has an open dispute; resolve the dispute to move its funds"
            )

    async def _raise_transition_conflict(self, store, order_id: Optional[str], wallet_id: Any) -> None:
        """Explain why a conditional wallet update matched nothing."""
        latest = await store.get_latest_wallet(order_id=order_id, wallet_id=wallet_id)
        if not latest:
            raise WalletNotFoundError(f"No escrow wallet for {order_id or wallet_id}")
        if latest['status'] == WalletStatus.RELEASED.value:
            raise AlreadyReleasedError(f"Escrow for order {latest['order_id']} was already released")
        if latest['status'] == WalletStatus.REFUNDED.value:
            raise AlreadyRefundedError(f"Escrow for order {latest['order_id']} was already refunded")
        raise StateTransitionError(f"Escrow wallet {latest['id']} is in state {latest['status']}")

    # ==================== LOCK ====================

    async def lock(
        self,
        order_id: str,
        gross_amount: Optional[Any] = None,
        payment_reference: Optional[str] = None,
        source: str = LOCK_SOURCE_STK,
    ) -> Dict[str, Any]:
        """
        Lock a confirmed payment into escrow.

        Args:
            order_id: Order being paid
            gross_amount: Amount actually paid (defaults to the order amount)
            payment_reference: Provider receipt or manual transaction code
            source: What triggered the lock

        Returns:
            The new wallet row

        Raises:
            OrderNotFoundError: If the order does not exist
            WalletAlreadyExistsError: If the order already holds or held escrow
            ValidationError: If the amount is outside the accepted range
        """
        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            wallet, notifications = await self.lock_in_transaction(
                store, order, gross_amount, payment_reference, source
            )

        self.dispatch(notifications)
        return wallet

    async def lock_in_transaction(
        self,
        store,
        order: Dict[str, Any],
        gross_amount: Optional[Any] = None,
        payment_reference: Optional[str] = None,
        source: str = LOCK_SOURCE_STK,
    ) -> Tuple[Dict[str, Any], List[Notification]]:
        """
        Lock sequence for callers that already hold a transaction and the order row.

        Returns:
            Tuple of (wallet, notifications to send after commit)
        """
        order_id = order['id']
        if order['escrow_status'] in (
            EscrowStatus.HELD.value, EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value
        ):
            raise WalletAlreadyExistsError(
                f"Order {order_id} already has escrow ({order['escrow_status']})"
            )
        if order['status'] == OrderStatus.CANCELLED.value:
            raise InvalidStateError(f"Order {order_id} is cancelled")

        breakdown = self.fee_calculator.split(order['amount'] if gross_amount is None else gross_amount)
        now = utcnow()
        auto_release_date = now + timedelta(days=self.settings.auto_release_days)

        # The partial unique index is the authoritative double-lock guard
        wallet = await store.insert_wallet(
            order_id=order_id,
            wallet_ref=generate_reference("ESC"),
            gross_amount=breakdown.gross,
            platform_fee=breakdown.fee,
            net_amount=breakdown.net,
            currency=self.settings.currency,
            auto_release_date=auto_release_date,
            locked_at=now,
            lock_source=source,
            payment_reference=payment_reference,
        )

        await self.ledger.post(store, LedgerEntry(
            transaction_type=TransactionType.ESCROW_LOCK,
            debit_account=LedgerAccount.BUYER,
            credit_account=LedgerAccount.ESCROW_POOL,
            amount=breakdown.gross,
            order_id=order_id,
            wallet_id=wallet['id'],
            description=f"Escrow lock for order {order_id}",
            metadata={'source': source, 'payment_reference': payment_reference},
        ))

        await store.mark_order_paid(
            order_id=order_id,
            wallet_id=wallet['id'],
            platform_fee=breakdown.fee,
            seller_payout=breakdown.net,
            auto_release_at=auto_release_date,
            payment_reference=payment_reference,
            paid_at=now,
        )
        await store.credit_seller_pending(order['seller_id'], breakdown.net)

        logger.info(
            f"Escrow locked: order={order_id} wallet={wallet['wallet_ref']} "
            f"gross={breakdown.gross} fee={breakdown.fee} net={breakdown.net} source={source}"
        )

        item = order['item_name']
        notifications = (
            in_app(
                order['seller_id'], 'escrow_locked', 'Payment received',
                f'Payment of {self._money(breakdown.gross)} for "{item}" is held in escrow. '
                f'Ship the order to get paid.',
                order_id, wallet_id=str(wallet['id']), net_amount=str(breakdown.net)
            )
            + sms(
                order.get('seller_phone'), 'escrow_locked',
                f'PayLoom: Payment of {self._money(breakdown.gross)} for "{item}" received and held '
                f'in escrow. Please ship the order. Order: {order_id}',
                order_id
            )
            + in_app(
                order.get('buyer_id'), 'escrow_locked', 'Payment secured',
                f'Your payment of {self._money(breakdown.gross)} for "{item}" is held securely in escrow.',
                order_id, wallet_id=str(wallet['id'])
            )
        )
        return wallet, notifications

    # ==================== RELEASE ====================

    async def release(
        self,
        order_id: Optional[str] = None,
        wallet_id: Any = None,
        released_by: Any = ReleasedBy.ADMIN,
        require_order_status: Optional[Iterable[OrderStatus]] = None,
    ) -> Dict[str, Any]:
        """
        Release locked funds to the seller.

        Args:
            require_order_status: Statuses the locked order row must be in

        Raises:
            InvalidStateError: If the order is not in ``require_order_status``
            InvalidStateError: If the order has an open dispute
            AlreadyReleasedError / AlreadyRefundedError: If the wallet already left LOCKED
            WalletNotFoundError: If the order never had a wallet
        """
        actor = self._released_by(released_by)
        async with self.db.transaction() as store:
            order = await self._lock_order_for(store, order_id, wallet_id, require_order_status)
            self._refuse_open_dispute(order)
            wallet, notifications = await self._release_in(store, order, actor, wallet_id)

        self.dispatch(notifications)
        return wallet

    async def _release_in(
        self,
        store,
        order: Dict[str, Any],
        released_by: ReleasedBy,
        wallet_id: Any = None,
    ) -> Tuple[Dict[str, Any], List[Notification]]:
        order_id = order['id']
        now = utcnow()

        wallet = await store.transition_wallet(
            WalletStatus.RELEASED.value, released_by.value, now,
            wallet_id=wallet_id, order_id=None if wallet_id is not None else order_id,
        )
        if not wallet:
            await self._raise_transition_conflict(store, order_id, wallet_id)

        gross = Decimal(wallet['gross_amount'])
        fee = Decimal(wallet['platform_fee'])
        net = Decimal(wallet['net_amount'])

        await self.ledger.post(store, LedgerEntry(
            transaction_type=TransactionType.ESCROW_RELEASE,
            debit_account=LedgerAccount.ESCROW_POOL,
            credit_account=LedgerAccount.PAYOUT_PENDING,
            amount=net,
            order_id=order_id,
            wallet_id=wallet['id'],
            description=f"Escrow release for order {order_id}",
            metadata={'released_by': released_by.value},
        ))
        if fee > 0:
            await self.ledger.post(store, LedgerEntry(
                transaction_type=TransactionType.FEE_COLLECTION,
                debit_account=LedgerAccount.ESCROW_POOL,
                credit_account=LedgerAccount.PLATFORM_FEES,
                amount=fee,
                order_id=order_id,
                wallet_id=wallet['id'],
                description=f"Platform fee for order {order_id}",
                metadata={'gross_amount': str(gross)},
            ))

        await store.mark_order_completed(order_id, now)
        await store.settle_seller_release(order['seller_id'], net)

        logger.info(
            f"Escrow released: order={order_id} wallet={wallet['wallet_ref']} "
            f"net={net} fee={fee} by={released_by.value}"
        )

        item = order['item_name']
        notifications = (
            in_app(
                order['seller_id'], 'escrow_released', 'Funds released',
                f'{self._money(net)} for "{item}" has been released to your wallet '
                f'(platform fee {self._money(fee)}).',
                order_id, net_amount=str(net), released_by=released_by.value
            )
            + sms(
                order.get('seller_phone'), 'escrow_released',
                f'PayLoom: {self._money(net)} for "{item}" has been released to your wallet. '
                f'Order: {order_id}',
                order_id
            )
            + in_app(
                order.get('buyer_id'), 'escrow_released', 'Order completed',
                f'Escrow for "{item}" has been released to the seller. Thank you for using PayLoom!',
                order_id
            )
        )
        return wallet, notifications

    # ==================== REFUND ====================

    async def refund(
        self,
        order_id: Optional[str] = None,
        wallet_id: Any = None,
        reason: str = "",
        refunded_by: Any = ReleasedBy.DISPUTE_REFUND,
    ) -> Dict[str, Any]:
        """
        Return locked funds to the buyer.

        Raises:
            ValidationError: If no reason is given
            InvalidStateError: If the order has an open dispute
            AlreadyReleasedError / AlreadyRefundedError: If the wallet already left LOCKED
        """
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        actor = self._released_by(refunded_by)
        async with self.db.transaction() as store:
            order = await self._lock_order_for(store, order_id, wallet_id)
            self._refuse_open_dispute(order)
            wallet, notifications = await self._refund_in(store, order, reason.strip(), actor, wallet_id)

        self.dispatch(notifications)
        return wallet

    async def _refund_in(
        self,
        store,
        order: Dict[str, Any],
        reason: str,
        refunded_by: ReleasedBy,
        wallet_id: Any = None,
    ) -> Tuple[Dict[str, Any], List[Notification]]:
        order_id = order['id']
        now = utcnow()

        wallet = await store.transition_wallet(
            WalletStatus.REFUNDED.value, refunded_by.value, now,
            wallet_id=wallet_id, order_id=None if wallet_id is not None else order_id,
            refund_reason=reason,
        )
        if not wallet:
            await self._raise_transition_conflict(store, order_id, wallet_id)

        gross = Decimal(wallet['gross_amount'])
        net = Decimal(wallet['net_amount'])

        await self.ledger.post(store, LedgerEntry(
            transaction_type=TransactionType.ESCROW_REFUND,
            debit_account=LedgerAccount.ESCROW_POOL,
            credit_account=LedgerAccount.BUYER,
            amount=gross,
            order_id=order_id,
            wallet_id=wallet['id'],
            description=f"Escrow refund for order {order_id}",
            metadata={'reason': reason, 'refunded_by': refunded_by.value},
        ))

        await store.mark_order_refunded(order_id, reason, now)
        await store.reverse_seller_pending(order['seller_id'], net)

        logger.info(
            f"Escrow refunded: order={order_id} wallet={wallet['wallet_ref']} "
            f"gross={gross} by={refunded_by.value} reason={reason}"
        )

        item = order['item_name']
        notifications = (
            in_app(
                order.get('buyer_id'), 'escrow_refunded', 'Payment refunded',
                f'Your payment of {self._money(gross)} for "{item}" has been refunded. Reason: {reason}',
                order_id, reason=reason
            )
            + sms(
                order.get('buyer_phone'), 'escrow_refunded',
                f'PayLoom: Your payment of {self._money(gross)} for "{item}" has been refunded. '
                f'Reason: {reason}',
                order_id
            )
            + in_app(
                order['seller_id'], 'escrow_refunded', 'Order refunded',
                f'Escrow for "{item}" was refunded to the buyer. Reason: {reason}',
                order_id, reason=reason
            )
            + sms(
                order.get('seller_phone'), 'escrow_refunded',
                f'PayLoom: Order {order_id} ("{item}") was refunded to the buyer. Reason: {reason}',
                order_id
            )
        )
        return wallet, notifications

    # ==================== FULFILMENT & BUYER CONFIRMATION ====================

    async def record_fulfillment(
        self,
        order_id: str,
        stage: str,
        seller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record that the seller shipped or delivered the order.

        Fulfilment is what makes an order eligible for auto-release.
        """
        if stage not in (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value):
            raise ValidationError("Fulfilment stage must be 'shipped' or 'delivered'")

        allowed_from = {
            OrderStatus.SHIPPED.value: (OrderStatus.PAID.value,),
            OrderStatus.DELIVERED.value: (OrderStatus.PAID.value, OrderStatus.SHIPPED.value),
        }[stage]

        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if seller_id is not None and seller_id != order['seller_id']:
                raise PermissionDeniedError("Only the seller can update fulfilment")
            if order['status'] not in allowed_from:
                raise InvalidStateError(f"Cannot mark order {stage} from status {order['status']}")

            await store.mark_order_fulfilled(order_id, stage, utcnow())
            updated = await store.get_order(order_id)

        logger.info(f"Order {order_id} marked {stage}")
        self.dispatch(in_app(
            order.get('buyer_id'), f'order_{stage}', f'Order {stage}',
            f'Your order "{order["item_name"]}" has been {stage}. '
            f'Confirm receipt once you have it: {self._track_url(order_id)}',
            order_id
        ))
        return updated

    async def confirm_receipt(self, order_id: str, buyer_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Buyer confirms the order arrived, releasing escrow to the seller.

        Raises:
            PermissionDeniedError: If buyer_id is not the order's buyer
            InvalidStateError: If the order has not been shipped or delivered
        """
        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if buyer_id is not None and buyer_id != order.get('buyer_id'):
                raise PermissionDeniedError("Only the buyer can confirm receipt")
            if order['status'] not in [status.value for status in FULFILLED_STATUSES]:
                raise InvalidStateError(
                    f"Order {order_id} cannot be confirmed in status {order['status']}"
                )

            await store.set_buyer_confirmed(order_id, utcnow())
            wallet, notifications = await self._release_in(store, order, ReleasedBy.BUYER_CONFIRMATION)

        self.dispatch(notifications)
        return wallet

    # ==================== DISPUTES ====================

    async def open_dispute(
        self,
        order_id: str,
        opened_by: str,
        reason: str,
        description: str,
    ) -> Dict[str, Any]:
        """
        Open a dispute on an order whose funds are held in escrow.

        The order moves to ``disputed``, which takes it out of auto-release.

        Raises:
            DisputeExistsError: If the order already has a dispute (carries its id)
        """
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        if len(reason.strip()) > MAX_DISPUTE_REASON:
            raise ValidationError(f"Dispute reason must be at most {MAX_DISPUTE_REASON} characters")
        if not description or len(description.strip()) < MIN_DISPUTE_DESCRIPTION:
            raise ValidationError(
                f"Dispute description must be at least {MIN_DISPUTE_DESCRIPTION} characters"
            )

        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if opened_by not in (order.get('buyer_id'), order['seller_id']):
                raise PermissionDeniedError("Only the buyer or seller can open a dispute")

            wallet = await store.get_latest_wallet(order_id=order_id)
            if not wallet or wallet['status'] != WalletStatus.LOCKED.value:
                raise InvalidStateError("Only orders with funds held in escrow can be disputed")

            dispute = await store.insert_dispute(order_id, opened_by, reason.strip(), description.strip())
            await store.mark_order_disputed(order_id)

        logger.warning(f"Dispute {dispute['id']} opened on order {order_id} by {opened_by}: {reason}")

        counterparty = order['seller_id'] if opened_by == order.get('buyer_id') else order.get('buyer_id')
        notifications = in_app(
            counterparty, 'dispute_opened', 'Dispute opened',
            f'A dispute was opened on "{order["item_name"]}": {reason}. '
            f'Funds stay in escrow until it is resolved.',
            order_id, dispute_id=dispute['id']
        )
        notifications.append(admin_alert(
            'dispute_opened', 'Dispute opened',
            f'Reason: {reason}\nAmount: {self._money(wallet["gross_amount"])}\n\n{description.strip()}',
            order_id,
        ))
        self.dispatch(notifications)
        return dispute

    async def resolve_dispute(
        self,
        dispute_id: int,
        decision: Any,
        resolved_by: str,
    ) -> Dict[str, Any]:
        """
        Resolve an open dispute by refunding the buyer or releasing to the seller.

        The dispute and the wallet move in the same transaction.
        """
        try:
            decision = DisputeDecision(decision)
        except ValueError:
            raise ValidationError(f"Unknown dispute decision: {decision}")

        async with self.db.transaction() as store:
            dispute = await store.get_dispute(dispute_id)
            if not dispute:
                raise DisputeNotFoundError(f"Dispute not found: {dispute_id}")

            resolved = await store.resolve_dispute(dispute_id, decision.value, resolved_by, utcnow())
            if not resolved:
                raise InvalidStateError(f"Dispute {dispute_id} is already resolved")

            order = await self._lock_order_for(store, dispute['order_id'], None)
            if decision == DisputeDecision.REFUND_BUYER:
                wallet, notifications = await self._refund_in(
                    store, order, f"Dispute resolved in buyer's favour: {dispute['reason']}",
                    ReleasedBy.DISPUTE_REFUND
                )
            else:
                wallet, notifications = await self._release_in(store, order, ReleasedBy.ADMIN)

        logger.info(f"Dispute {dispute_id} resolved: {decision.value} by {resolved_by}")
        self.dispatch(notifications)
        return {'dispute': resolved, 'wallet': wallet}

    # ==================== QUERIES ====================

    async def get_escrow_status(self, order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Escrow snapshot for an order: wallet, ledger entries and per-account totals."""
        async with self.db.session() as store:
            order = await store.get_order(order_id)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if user_id is not None and user_id not in (order.get('buyer_id'), order['seller_id']):
                raise PermissionDeniedError("Only the buyer or seller can view this escrow")

            wallet = await store.get_latest_wallet(order_id=order_id)
            entries = await store.get_ledger_entries(order_id)

        return {
            'order_id': order_id,
            'status': order['status'],
            'escrow_status': order['escrow_status'],
            'verification_status': order['verification_status'],
            'amount': order['amount'],
            'platform_fee': order.get('platform_fee'),
            'seller_payout': order.get('seller_payout'),
            'auto_release_at': order.get('auto_release_at'),
            'wallet': wallet,
            'ledger_entries': entries,
            'ledger_totals': self.ledger.net_by_account(entries),
        }

    async def list_wallets(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if status is not None:
            try:
                status = WalletStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown wallet status: {status}")
        if not 1 <= limit <= MAX_WALLET_LIST:
            raise ValidationError(f"limit must be between 1 and {MAX_WALLET_LIST}")

        async with self.db.session() as store:
            return await store.list_wallets(status, limit)

    async def platform_summary(self) -> Dict[str, Any]:
        """
        Platform account balances with a reconciliation against the ledger.

        Both reads share one snapshot so a concurrent post cannot show up as
        a discrepancy.
        """
        async with self.db.transaction(isolation='repeatable_read', readonly=True) as store:
            accounts = await store.get_platform_accounts()
            discrepancies = await self.ledger.reconcile(store)

        return {
            'accounts': accounts,
            'reconciled': not discrepancies,
            'discrepancies': discrepancies,
        }

    # ==================== PAYOUT ====================

    async def request_payout(self, order_id: str, phone: Optional[str] = None) -> Dict[str, Any]:
        """
        Pay a released wallet's net amount to the seller via M-Pesa B2C.

        A pending payout row is claimed before the provider call, so a second
        request for the same order fails with PayoutExistsError. The B2C call
        is made exactly once; the ledger entry is written when the result
        callback confirms it.

        Raises:
            InvalidStateError: If escrow has not been released
            UpstreamError: If payouts are not configured or M-Pesa rejects the call
        """
        if self.mpesa_client is None:
            raise UpstreamError("M-Pesa payouts are not configured")

        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            wallet = await store.get_latest_wallet(order_id=order_id)
            if not wallet or wallet['status'] != WalletStatus.RELEASED.value:
                raise InvalidStateError(f"Escrow for order {order_id} has not been released")

            is_valid, payout_phone, error = validate_kenyan_phone(phone or order.get('seller_phone') or '')
            if not is_valid:
                raise ValidationError(f"Invalid seller payout phone: {error}")

            amount = Decimal(wallet['net_amount'])
            claim = await store.insert_mpesa_transaction(
                order_id=order_id,
                transaction_type=MpesaTransactionType.B2C_PAYOUT.value,
                phone_number=payout_phone,
                amount=amount,
            )

        try:
            response = await asyncio.to_thread(
                self.mpesa_client.b2c_payout,
                payout_phone,
                amount,
                f"PayLoom payout for order {order_id}",
                order_id,
            )
        except MpesaError as e:
            async with self.db.session() as store:
                await store.fail_mpesa_transaction(claim['id'], str(e))
            logger.error(f"B2C payout failed for order {order_id}: {e}")
            raise UpstreamError(f"Payout failed: {e}") from e

        conversation_id = response.get('ConversationID')
        async with self.db.session() as store:
            await store.attach_conversation_id(claim['id'], conversation_id, response)

        logger.info(f"Payout requested: order={order_id} amount={amount} conversation={conversation_id}")
        return {
            'order_id': order_id,
            'amount': amount,
            'conversation_id': conversation_id,
            'status': 'pending',
        }
