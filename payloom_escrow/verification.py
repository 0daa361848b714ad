"""
Payment Verification Gateway.

Decides when a payment is confirmed and hands confirmed payments to the
Escrow Wallet Manager. There are two paths:

- Automated: M-Pesa calls back after an STK Push. The matching pending
  mpesa_transactions row is claimed with a conditional update, so a repeated
  delivery does nothing. A successful result locks escrow in the same
  transaction as the claim.
- Manual: the buyer submits a transaction code. Format, duplicate and amount
  checks are recorded and the order waits for an admin. The manual path
  never locks escrow on its own.

Webhook handlers always acknowledge. Processing errors are logged with the
provider ids for reconciliation and never become a webhook failure.
"""

import asyncio
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from payloom_escrow.config import EscrowSettings
from payloom_escrow.escrow_service import EscrowService, LOCK_SOURCE_ADMIN_APPROVAL, LOCK_SOURCE_STK
from payloom_escrow.exceptions import (
    InvalidStateError,
    OrderNotFoundError,
    UpstreamError,
    ValidationError,
)
from payloom_escrow.models import (
    LedgerAccount,
    LedgerEntry,
    MpesaTransactionType,
    OrderStatus,
    TransactionType,
    ValidationType,
    VerificationStatus,
)
from payloom_escrow.mpesa_service import MpesaClient, MpesaError
from payloom_escrow.notifications import Notification, admin_alert, in_app, sms
from payloom_escrow.utils import format_currency, mask_sensitive_data, to_money, utcnow, validate_kenyan_phone

logger = logging.getLogger(__name__)


TRANSACTION_CODE_PATTERN = re.compile(r'^[A-Z0-9]{8,12}$')

# Column widths for buyer-supplied fields. Malformed codes up to this length are flagged, longer ones rejected
MAX_TRANSACTION_CODE_LENGTH = 50
MAX_PAYMENT_METHOD_LENGTH = 30
MAX_PAYER_NAME_LENGTH = 255

# Paid amount may differ from the order amount by less than this
AMOUNT_TOLERANCE = Decimal("1")

WEBHOOK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

REVIEWABLE_VERIFICATION = (
    VerificationStatus.PENDING_APPROVAL.value,
    VerificationStatus.FLAGGED.value,
)


# ==================== Pydantic Models ====================

class CallbackMetadataItem(BaseModel):
    """Individual item in callback metadata."""
    Name: str
    Value: Optional[Any] = None


class StkCallbackMetadata(BaseModel):
    """Metadata containing payment details."""
    Item: List[CallbackMetadataItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    """M-Pesa STK Push callback structure."""
    MerchantRequestID: str
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str
    CallbackMetadata: Optional[StkCallbackMetadata] = None


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class MpesaCallbackRequest(BaseModel):
    """Complete M-Pesa callback request structure."""
    Body: CallbackBody


class ResultParameterItem(BaseModel):
    Key: str
    Value: Optional[Any] = None


class B2CResultParameters(BaseModel):
    ResultParameter: List[ResultParameterItem] = Field(default_factory=list)


class B2CResult(BaseModel):
    """M-Pesa B2C result structure."""
    ResultType: Optional[int] = None
    ResultCode: int
    ResultDesc: str
    OriginatorConversationID: Optional[str] = None
    ConversationID: str
    TransactionID: Optional[str] = None
    ResultParameters: Optional[B2CResultParameters] = None


class B2CResultRequest(BaseModel):
    Result: B2CResult


class TransactionDetails(BaseModel):
    """Extracted transaction details from an STK callback."""
    checkout_request_id: str
    merchant_request_id: str
    result_code: int
    result_desc: str
    amount: Optional[Decimal] = None
    mpesa_receipt_number: Optional[str] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def is_successful(self) -> bool:
        return self.result_code == 0


def extract_callback_metadata(metadata: Optional[StkCallbackMetadata]) -> Dict[str, Any]:
    """Flatten callback metadata items into a dictionary."""
    if not metadata or not metadata.Item:
        return {}
    return {item.Name: item.Value for item in metadata.Item}


def parse_transaction_details(callback_data: MpesaCallbackRequest) -> TransactionDetails:
    """Parse an M-Pesa STK callback into TransactionDetails."""
    stk_callback = callback_data.Body.stkCallback
    metadata = extract_callback_metadata(stk_callback.CallbackMetadata)

    transaction_date = None
    if 'TransactionDate' in metadata:
        try:
            transaction_date = datetime.strptime(str(metadata['TransactionDate']), '%Y%m%d%H%M%S')
        except ValueError as e:
            logger.warning(f"Failed to parse transaction date: {e}")

    amount = metadata.get('Amount')
    return TransactionDetails(
        checkout_request_id=stk_callback.CheckoutRequestID,
        merchant_request_id=stk_callback.MerchantRequestID,
        result_code=stk_callback.ResultCode,
        result_desc=stk_callback.ResultDesc,
        amount=Decimal(str(amount)) if amount is not None else None,
        mpesa_receipt_number=metadata.get('MpesaReceiptNumber'),
        phone_number=str(metadata['PhoneNumber']) if metadata.get('PhoneNumber') else None,
        transaction_date=transaction_date,
    )


class PaymentVerificationGateway:
    """Confirms payments from webhooks, manual submissions and admin review."""

    def __init__(
        self,
        db,
        escrow: EscrowService,
        settings: EscrowSettings,
        mpesa_client: Optional[MpesaClient] = None,
    ):
        self.db = db
        self.escrow = escrow
        self.settings = settings
        self.mpesa_client = mpesa_client

    def _money(self, amount: Any) -> str:
        return format_currency(amount, self.settings.currency)

    # ==================== AUTOMATED PATH ====================

    async def initiate_payment(self, order_id: str, phone: str) -> Dict[str, Any]:
        """
        Send an STK Push prompt to the buyer's phone.

        The request is sent once and never retried. A pending mpesa_transactions
        row keyed by CheckoutRequestID is recorded for the callback to claim.

        Raises:
            ValidationError: If the phone number or order amount is invalid
            InvalidStateError: If the order is not awaiting payment
            UpstreamError: If M-Pesa rejects the request
        """
        is_valid, formatted_phone, error = validate_kenyan_phone(phone)
        if not is_valid:
            raise ValidationError(error)
        if self.mpesa_client is None:
            raise UpstreamError("M-Pesa payments are not configured")

        async with self.db.session() as store:
            order = await store.get_order(order_id)
        if not order:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        if order['status'] != OrderStatus.PENDING.value:
            raise InvalidStateError(f"Order {order_id} is not awaiting payment ({order['status']})")

        amount = self.escrow.fee_calculator.split(order['amount']).gross
        if amount != amount.to_integral_value():
            # M-Pesa charges whole shillings only; such orders go through the manual path
            raise ValidationError(
                f"Order {order_id} amount {amount} is not a whole number of shillings "
                f"and cannot be paid by STK Push"
            )

        try:
            response = await asyncio.to_thread(
                self.mpesa_client.initiate_stk_push,
                formatted_phone,
                amount,
                order_id[:12],
                "PayLoom",
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e
        except MpesaError as e:
            logger.error(f"STK Push failed for order {order_id}: {e}")
            raise UpstreamError(f"Payment initiation failed: {e}") from e

        async with self.db.session() as store:
            await store.insert_mpesa_transaction(
                order_id=order_id,
                transaction_type=MpesaTransactionType.STK_PUSH.value,
                phone_number=formatted_phone,
                amount=amount,
                merchant_request_id=response.get('MerchantRequestID'),
                checkout_request_id=response.get('CheckoutRequestID'),
                raw_response=response,
            )

        return {
            'order_id': order_id,
            'checkout_request_id': response.get('CheckoutRequestID'),
            'merchant_request_id': response.get('MerchantRequestID'),
            'customer_message': response.get('CustomerMessage', 'Check your phone to complete payment'),
        }

    async def handle_stk_callback(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process an STK Push callback. Always returns the acknowledgement body.
        """
        try:
            callback = MpesaCallbackRequest.model_validate(payload)
        except PydanticValidationError as e:
            logger.error(f"Invalid STK callback structure: {e}")
            return dict(WEBHOOK_ACK)

        details = parse_transaction_details(callback)
        logger.info(
            f"Processing STK callback {details.checkout_request_id} - "
            f"Result: {details.result_code} ({details.result_desc})"
        )

        try:
            await self._process_stk_result(details, payload)
        except Exception as e:
            # Funds may have moved at the provider; the checkout id is the reconciliation key
            logger.error(
                f"Failed to process STK callback checkout={details.checkout_request_id} "
                f"receipt={details.mpesa_receipt_number}: {e}",
                exc_info=True
            )
        return dict(WEBHOOK_ACK)

    async def _process_stk_result(self, details: TransactionDetails, payload: Dict[str, Any]) -> None:
        notifications: List[Notification] = []

        async with self.db.transaction() as store:
            claimed = await store.complete_mpesa_transaction(
                status='completed' if details.is_successful else 'failed',
                result_code=details.result_code,
                result_desc=details.result_desc,
                callback_data=payload,
                receipt_number=details.mpesa_receipt_number,
                checkout_request_id=details.checkout_request_id,
            )
            if not claimed:
                logger.warning(
                    f"STK callback {details.checkout_request_id} is unknown or already processed"
                )
                return

            order = await store.get_order(claimed['order_id'], for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {claimed['order_id']}")

            if details.is_successful:
                gross = details.amount if details.amount is not None else claimed['amount']
                _, notifications = await self.escrow.lock_in_transaction(
                    store, order, gross, details.mpesa_receipt_number, LOCK_SOURCE_STK
                )
            else:
                await store.mark_order_payment_failed(order['id'], details.result_desc)
                logger.info(f"Payment failed for order {order['id']}: {details.result_desc}")
                notifications = in_app(
                    order.get('buyer_id'), 'payment_failed', 'Payment failed',
                    f'Your M-Pesa payment for "{order["item_name"]}" did not complete: '
                    f'{details.result_desc}. You can try again.',
                    order['id']
                )

        self.escrow.dispatch(notifications)

    async def handle_b2c_result(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a B2C payout result. Always returns the acknowledgement body.
        """
        try:
            result = B2CResultRequest.model_validate(payload).Result
        except PydanticValidationError as e:
            logger.error(f"Invalid B2C result structure: {e}")
            return dict(WEBHOOK_ACK)

        try:
            await self._process_b2c_result(result, payload)
        except Exception as e:
            logger.error(
                f"Failed to process B2C result conversation={result.ConversationID}: {e}",
                exc_info=True
            )
        return dict(WEBHOOK_ACK)

    async def _process_b2c_result(self, result: B2CResult, payload: Dict[str, Any]) -> None:
        successful = result.ResultCode == 0
        notifications: List[Notification] = []

        async with self.db.transaction() as store:
            claimed = await store.complete_mpesa_transaction(
                status='completed' if successful else 'failed',
                result_code=result.ResultCode,
                result_desc=result.ResultDesc,
                callback_data=payload,
                receipt_number=result.TransactionID,
                conversation_id=result.ConversationID,
            )
            if not claimed:
                logger.warning(f"B2C result {result.ConversationID} is unknown or already processed")
                return

            order_id = claimed['order_id']
            amount = Decimal(claimed['amount'])

            if not successful:
                logger.error(f"B2C payout failed for order {order_id}: {result.ResultDesc}")
                notifications.append(admin_alert(
                    'payout_failed', 'Seller payout failed',
                    f'Payout of {self._money(amount)} failed: {result.ResultDesc}',
                    order_id,
                ))
            else:
                order = await store.get_order(order_id, for_update=True)
                await self.escrow.ledger.post(store, LedgerEntry(
                    transaction_type=TransactionType.PAYOUT,
                    debit_account=LedgerAccount.PAYOUT_PENDING,
                    credit_account=LedgerAccount.SELLER,
                    amount=amount,
                    order_id=order_id,
                    description=f"M-Pesa payout for order {order_id}",
                    metadata={'conversation_id': result.ConversationID, 'receipt': result.TransactionID},
                ))
                await store.debit_seller_available(order['seller_id'], amount)

                logger.info(f"Payout completed: order={order_id} amount={amount} receipt={result.TransactionID}")
                notifications = (
                    in_app(
                        order['seller_id'], 'payout_completed', 'Payout sent',
                        f'{self._money(amount)} has been sent to your M-Pesa.',
                        order_id, receipt=result.TransactionID
                    )
                    + sms(
                        claimed['phone_number'], 'payout_completed',
                        f'PayLoom: {self._money(amount)} for order {order_id} has been sent to your '
                        f'M-Pesa. Ref: {result.TransactionID}',
                        order_id
                    )
                )

        self.escrow.dispatch(notifications)

    # ==================== MANUAL PATH ====================

    async def submit_manual_payment(
        self,
        order_id: str,
        transaction_code: str,
        payer_phone: Optional[str] = None,
        payer_name: Optional[str] = None,
        payment_method: Optional[str] = None,
        amount_paid: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """
        Record a buyer-submitted payment code for admin review.

        Every check runs and is recorded even when an earlier one fails.
        A code already used on another order raises a high-severity fraud
        alert. Escrow is never locked here.

        Returns:
            Dict with order_id, verification_status, validations and message
        """
        clean_code = (transaction_code or '').strip().upper()
        if not clean_code:
            raise ValidationError("Transaction code is required")
        if len(clean_code) > MAX_TRANSACTION_CODE_LENGTH:
            raise ValidationError(
                f"Transaction code must be at most {MAX_TRANSACTION_CODE_LENGTH} characters"
            )

        method = (payment_method or 'MPESA').strip().upper()
        if len(method) > MAX_PAYMENT_METHOD_LENGTH:
            raise ValidationError(f"Payment method must be at most {MAX_PAYMENT_METHOD_LENGTH} characters")
        payer_name = (payer_name or '').strip() or None
        if payer_name and len(payer_name) > MAX_PAYER_NAME_LENGTH:
            raise ValidationError(f"Payer name must be at most {MAX_PAYER_NAME_LENGTH} characters")
        if payer_phone:
            is_valid, payer_phone, error = validate_kenyan_phone(payer_phone)
            if not is_valid:
                raise ValidationError(error)
        else:
            payer_phone = None

        paid = None
        if amount_paid is not None:
            try:
                paid = to_money(amount_paid)
            except ValueError as e:
                raise ValidationError(str(e))

        notifications: List[Notification] = []

        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if order['status'] != OrderStatus.PENDING.value:
                raise InvalidStateError(
                    f"Order {order_id} is not awaiting payment ({order['status']})"
                )

            validations = []

            format_ok = bool(TRANSACTION_CODE_PATTERN.match(clean_code))
            validations.append((ValidationType.FORMAT_CHECK, format_ok, {
                'code': clean_code,
                'format': 'valid' if format_ok else 'invalid_format',
            }))

            duplicates = await store.find_orders_by_transaction_code(clean_code, order_id)
            duplicate_ids = [dup['id'] for dup in duplicates]
            validations.append((ValidationType.DUPLICATE_CHECK, not duplicates, (
                {'duplicate_ids': duplicate_ids, 'message': 'Code already used'}
                if duplicates else {'message': 'No duplicates found'}
            )))

            if paid is not None:
                expected = Decimal(order['amount'])
                validations.append((ValidationType.AMOUNT_CHECK, abs(paid - expected) < AMOUNT_TOLERANCE, {
                    'expected': str(expected),
                    'paid': str(paid),
                    'discrepancy': str(paid - expected),
                }))

            for validation_type, passed, details in validations:
                await store.insert_validation(order_id, clean_code, validation_type.value, passed, details)

            if duplicates:
                await store.insert_fraud_alert(
                    order_id, 'duplicate_transaction_code', 'high',
                    {'code': clean_code, 'duplicate_orders': duplicate_ids},
                )

            all_passed = all(passed for _, passed, _ in validations)
            verification_status = (
                VerificationStatus.PENDING_APPROVAL if all_passed else VerificationStatus.FLAGGED
            )

            await store.record_manual_submission(
                order_id=order_id,
                transaction_code=clean_code,
                payment_method=method,
                payer_phone=payer_phone,
                payer_name=payer_name,
                verification_status=verification_status.value,
            )
            await store.upsert_escrow_deposit(
                order_id=order_id,
                amount=paid if paid is not None else Decimal(order['amount']),
                currency=order.get('currency') or self.settings.currency,
                payment_method=method,
                payment_reference=clean_code,
                payer_phone=payer_phone,
                payer_name=payer_name,
            )

        if duplicates:
            logger.warning(
                f"Duplicate transaction code {clean_code} on order {order_id} "
                f"(also used on {duplicate_ids})"
            )
            notifications.append(admin_alert(
                'fraud_alert', 'Duplicate transaction code',
                f'Transaction code {clean_code} submitted for order {order_id} was already used on '
                f'{", ".join(duplicate_ids)}. Payer: {payer_name or "unknown"} '
                f'({mask_sensitive_data(payer_phone)})',
                order_id,
            ))
        logger.info(f"Manual payment submitted for order {order_id}: {verification_status.value}")
        self.escrow.dispatch(notifications)

        return {
            'order_id': order_id,
            'verification_status': verification_status.value,
            'validations': [
                {'type': validation_type.value, 'status': 'passed' if passed else 'failed'}
                for validation_type, passed, _ in validations
            ],
            'message': (
                'Payment submitted for admin approval' if all_passed
                else 'Payment flagged for manual review'
            ),
        }

    # ==================== ADMIN REVIEW ====================

    async def approve_payment(
        self,
        order_id: str,
        admin_id: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Approve a manually submitted payment and lock it into escrow.

        Flagged submissions may be approved once an admin has reviewed them.
        The lock, the approval and the admin log commit together.

        Raises:
            InvalidStateError: If the order is not under review
            DuplicateTransactionCodeError: If the code is already approved elsewhere
            WalletAlreadyExistsError: If escrow already exists for the order
        """
        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if (order['status'] != OrderStatus.PROCESSING.value
                    or order['verification_status'] not in REVIEWABLE_VERIFICATION):
                raise InvalidStateError(
                    f"Order {order_id} has no payment awaiting approval "
                    f"(status={order['status']}, verification={order['verification_status']})"
                )

            now = utcnow()
            wallet, notifications = await self.escrow.lock_in_transaction(
                store, order, None, order.get('transaction_code'), LOCK_SOURCE_ADMIN_APPROVAL
            )
            await store.set_verification_approved(order_id, admin_id, now)
            await store.confirm_escrow_deposit(order_id, admin_id, notes, now)
            await store.insert_admin_log(admin_id, 'approve_payment', 'order', order_id, {
                'transaction_code': order.get('transaction_code'),
                'previous_verification': order['verification_status'],
                'wallet_id': str(wallet['id']),
                'notes': notes,
            })

        logger.info(f"Payment approved for order {order_id} by admin {admin_id}")
        notifications = notifications + sms(
            order.get('buyer_phone'), 'payment_approved',
            f'✅ PayLoom: Your payment of {self._money(order["amount"])} for "{order["item_name"]}" '
            f'has been verified and accepted. Funds are held securely in escrow. '
            f'Track: {self.settings.frontend_url}/track/{order_id}',
            order_id
        )
        self.escrow.dispatch(notifications)

        return {
            'order_id': order_id,
            'verification_status': VerificationStatus.APPROVED.value,
            'wallet': wallet,
        }

    async def reject_payment(self, order_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
        """
        Reject a manually submitted payment. The order returns to pending so
        the buyer can resubmit; no wallet or ledger entry is written.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        reason = reason.strip()

        async with self.db.transaction() as store:
            order = await store.get_order(order_id, for_update=True)
            if not order:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if (order['status'] != OrderStatus.PROCESSING.value
                    or order['verification_status'] not in REVIEWABLE_VERIFICATION):
                raise InvalidStateError(f"Order {order_id} has no payment awaiting review")

            await store.reject_verification(order_id, reason)
            await store.reject_escrow_deposit(order_id, admin_id, reason)
            await store.insert_admin_log(admin_id, 'reject_payment', 'order', order_id, {
                'transaction_code': order.get('transaction_code'),
                'reason': reason,
            })

        logger.info(f"Payment rejected for order {order_id} by admin {admin_id}: {reason}")
        self.escrow.dispatch(in_app(
            order.get('buyer_id'), 'payment_rejected', 'Payment not verified',
            f'We could not verify your payment for "{order["item_name"]}". Reason: {reason}. '
            f'Please check the transaction code and submit again.',
            order_id, reason=reason
        ))

        return {
            'order_id': order_id,
            'verification_status': VerificationStatus.REJECTED.value,
            'reason': reason,
        }
