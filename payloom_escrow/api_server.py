"""
FastAPI server for the PayLoom escrow core.

Exposes the M-Pesa webhooks, the buyer/seller escrow endpoints, the admin
review and escrow endpoints, and the cron trigger for the auto-release sweep.

Every response except the M-Pesa webhooks uses the envelope
``{"success": bool, "data"?: ..., "error"?: str, "code"?: str}``.
"""

import hmac
import logging
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from payloom_escrow import __version__
from payloom_escrow.config import Config
from payloom_escrow.escrow_automation import EscrowAutomation
from payloom_escrow.escrow_service import MAX_DISPUTE_REASON, EscrowService
from payloom_escrow.exceptions import (
    DisputeExistsError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    UpstreamError,
    ValidationError,
)
from payloom_escrow.models import DisputeDecision, ReleasedBy, WalletStatus
from payloom_escrow.utils import utcnow
from payloom_escrow.verification import (
    MAX_PAYER_NAME_LENGTH,
    MAX_PAYMENT_METHOD_LENGTH,
    MAX_TRANSACTION_CODE_LENGTH,
    WEBHOOK_ACK,
    PaymentVerificationGateway,
)

logger = logging.getLogger(__name__)


# ==================== Pydantic Models ====================

def _require_text(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


class InitiatePaymentRequest(BaseModel):
    """Buyer request to start an STK Push."""
    order_id: str = Field(..., max_length=64)
    phone: str = Field(..., max_length=20)


class ManualPaymentRequest(BaseModel):
    """Buyer-submitted payment code for admin review."""
    order_id: str = Field(..., max_length=64)
    transaction_code: str = Field(..., max_length=MAX_TRANSACTION_CODE_LENGTH)
    payer_phone: Optional[str] = Field(None, max_length=20)
    payer_name: Optional[str] = Field(None, max_length=MAX_PAYER_NAME_LENGTH)
    payment_method: Optional[str] = Field(None, max_length=MAX_PAYMENT_METHOD_LENGTH)
    amount_paid: Optional[Decimal] = None

    @field_validator('transaction_code')
    @classmethod
    def validate_code(cls, v):
        return _require_text(v)


class ApprovePaymentRequest(BaseModel):
    notes: Optional[str] = None


class ReasonRequest(BaseModel):
    """Body for actions that need a reason (reject, refund)."""
    reason: str

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        return _require_text(v)


class PayoutRequest(BaseModel):
    phone: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    decision: DisputeDecision


class ConfirmReceiptRequest(BaseModel):
    buyer_id: Optional[str] = None


class FulfillmentRequest(BaseModel):
    stage: Literal['shipped', 'delivered']
    seller_id: Optional[str] = None


class OpenDisputeRequest(BaseModel):
    order_id: str = Field(..., max_length=64)
    opened_by: str = Field(..., max_length=64)
    reason: str = Field(..., max_length=MAX_DISPUTE_REASON)
    description: str

    @field_validator('opened_by', 'reason')
    @classmethod
    def validate_required(cls, v):
        return _require_text(v)


# ==================== Envelope ====================

def success_response(data: Any = None, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({'success': True, 'data': data}),
    )


def error_response(
    message: str,
    code: str,
    status_code: int,
    **extra: Any,
) -> JSONResponse:
    body: Dict[str, Any] = {'success': False, 'error': message, 'code': code}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: 'UNAUTHORIZED',
    status.HTTP_403_FORBIDDEN: 'FORBIDDEN',
    status.HTTP_404_NOT_FOUND: 'NOT_FOUND',
    status.HTTP_405_METHOD_NOT_ALLOWED: 'METHOD_NOT_ALLOWED',
}


def _check_secret(provided: Optional[str], expected: Optional[str], header: str) -> None:
    """
    Constant-time shared secret check.

    Raises:
        HTTPException: 401 when the header is missing, 403 when it is wrong
            or no secret is configured
    """
    if not expected:
        raise StarletteHTTPException(status.HTTP_403_FORBIDDEN, f"{header} authentication is not configured")
    if not provided:
        raise StarletteHTTPException(status.HTTP_401_UNAUTHORIZED, f"Missing {header} header")
    if not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
        raise StarletteHTTPException(status.HTTP_403_FORBIDDEN, f"Invalid {header}")


# ==================== Application ====================

def create_app(
    escrow: EscrowService,
    gateway: PaymentVerificationGateway,
    automation: EscrowAutomation,
    config: Config,
) -> FastAPI:
    """
    Build the FastAPI application around already-constructed services.

    Lifecycle (database pool, dispatcher, scheduler) belongs to the caller.
    """
    app = FastAPI(
        title="PayLoom Escrow API",
        description="Escrow ledger and payment confirmation for PayLoom orders",
        version=__version__,
    )
    app.state.escrow = escrow
    app.state.gateway = gateway
    app.state.automation = automation
    app.state.config = config

    # ---------- auth dependencies ----------

    def require_admin(
        x_admin_key: Optional[str] = Header(None),
        x_admin_id: Optional[str] = Header(None),
    ) -> str:
        """Return the acting admin's id."""
        _check_secret(x_admin_key, config.admin_api_key, 'X-Admin-Key')
        return x_admin_id or 'admin'

    def require_cron(x_cron_secret: Optional[str] = Header(None)) -> None:
        _check_secret(x_cron_secret, config.cron_secret, 'X-Cron-Secret')

    # ---------- exception handlers ----------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return error_response(str(exc), exc.code, status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
            message = f"{field}: {first.get('msg')}" if field else str(first.get('msg'))
        else:
            message = "Invalid request"
        return error_response(message, ValidationError.code, status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return error_response(str(exc), exc.code, status.HTTP_404_NOT_FOUND)

    @app.exception_handler(PermissionDeniedError)
    async def permission_handler(request: Request, exc: PermissionDeniedError):
        return error_response(str(exc), exc.code, status.HTTP_403_FORBIDDEN)

    @app.exception_handler(StateTransitionError)
    async def conflict_handler(request: Request, exc: StateTransitionError):
        logger.info(f"State conflict on {request.url.path}: {exc}")
        extra = {}
        if isinstance(exc, DisputeExistsError) and exc.dispute_id is not None:
            extra['dispute_id'] = exc.dispute_id
        return error_response(str(exc), exc.code, status.HTTP_200_OK, **extra)

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        return error_response(str(exc), exc.code, status.HTTP_502_BAD_GATEWAY)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            str(exc.detail), HTTP_ERROR_CODES.get(exc.status_code, 'HTTP_ERROR'), exc.status_code
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return error_response(
            "Internal server error", 'INTERNAL_ERROR', status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    # ---------- info & health ----------

    @app.get("/", tags=["Info"])
    async def root():
        return success_response({
            'service': 'PayLoom Escrow API',
            'version': __version__,
            'status': 'running',
        })

    @app.get("/health", tags=["Health"])
    async def health_check():
        database_ok = await escrow.db.ping()
        health_status = {
            'status': 'healthy' if database_ok else 'degraded',
            'timestamp': utcnow(),
            'database': 'connected' if database_ok else 'unavailable',
            'scheduler': automation.get_stats(),
        }
        status_code = status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder({'success': database_ok, 'data': health_status}),
        )

    # ---------- M-Pesa webhooks ----------

    async def _json_body(request: Request) -> Any:
        try:
            return await request.json()
        except ValueError as e:
            logger.error(f"Unparseable webhook body on {request.url.path}: {e}")
            return None

    @app.post("/mpesa/callback", tags=["M-Pesa"])
    async def mpesa_callback(request: Request):
        """STK Push result. Always acknowledged so M-Pesa stops retrying."""
        payload = await _json_body(request)
        if payload is None:
            return dict(WEBHOOK_ACK)
        return await gateway.handle_stk_callback(payload)

    @app.post("/mpesa/b2c-result", tags=["M-Pesa"])
    async def mpesa_b2c_result(request: Request):
        payload = await _json_body(request)
        if payload is None:
            return dict(WEBHOOK_ACK)
        return await gateway.handle_b2c_result(payload)

    @app.post("/mpesa/timeout", tags=["M-Pesa"])
    async def mpesa_timeout(request: Request):
        payload = await _json_body(request)
        logger.warning(f"M-Pesa queue timeout received: {payload}")
        return dict(WEBHOOK_ACK)

    # ---------- buyer payment endpoints ----------

    @app.post("/payments/initiate", tags=["Payments"])
    async def initiate_payment(body: InitiatePaymentRequest):
        result = await gateway.initiate_payment(body.order_id, body.phone)
        return success_response(result)

    @app.post("/payments/submit", tags=["Payments"])
    async def submit_payment(body: ManualPaymentRequest):
        result = await gateway.submit_manual_payment(
            order_id=body.order_id,
            transaction_code=body.transaction_code,
            payer_phone=body.payer_phone,
            payer_name=body.payer_name,
            payment_method=body.payment_method,
            amount_paid=body.amount_paid,
        )
        return success_response(result)

    # ---------- admin payment review ----------

    @app.post("/admin/payments/{order_id}/approve", tags=["Admin"])
    @app.post("/admin/payments/{order_id}/confirm", tags=["Admin"])
    async def approve_payment(
        order_id: str,
        body: Optional[ApprovePaymentRequest] = None,
        admin_id: str = Depends(require_admin),
    ):
        result = await gateway.approve_payment(order_id, admin_id, body.notes if body else None)
        return success_response(result)

    @app.post("/admin/payments/{order_id}/reject", tags=["Admin"])
    async def reject_payment(order_id: str, body: ReasonRequest, admin_id: str = Depends(require_admin)):
        result = await gateway.reject_payment(order_id, admin_id, body.reason)
        return success_response(result)

    # ---------- admin escrow operations ----------

    @app.post("/admin/escrow/{order_id}/release", tags=["Admin"])
    async def release_escrow(order_id: str, admin_id: str = Depends(require_admin)):
        logger.info(f"Admin {admin_id} releasing escrow for order {order_id}")
        wallet = await escrow.release(order_id=order_id, released_by=ReleasedBy.ADMIN)
        return success_response(wallet)

    @app.post("/admin/escrow/{order_id}/refund", tags=["Admin"])
    async def refund_escrow(order_id: str, body: ReasonRequest, admin_id: str = Depends(require_admin)):
        logger.info(f"Admin {admin_id} refunding escrow for order {order_id}")
        wallet = await escrow.refund(order_id=order_id, reason=body.reason, refunded_by=ReleasedBy.ADMIN)
        return success_response(wallet)

    @app.post("/admin/escrow/{order_id}/payout", tags=["Admin"])
    async def payout_escrow(
        order_id: str,
        body: Optional[PayoutRequest] = None,
        admin_id: str = Depends(require_admin),
    ):
        logger.info(f"Admin {admin_id} requesting payout for order {order_id}")
        result = await escrow.request_payout(order_id, body.phone if body else None)
        return success_response(result)

    @app.get("/admin/escrow", tags=["Admin"])
    async def list_escrow_wallets(
        wallet_status: Optional[WalletStatus] = Query(None, alias="status"),
        limit: int = 50,
        admin_id: str = Depends(require_admin),
    ):
        wallets = await escrow.list_wallets(wallet_status.value if wallet_status else None, limit)
        return success_response(wallets)

    @app.get("/admin/platform-summary", tags=["Admin"])
    async def platform_summary(admin_id: str = Depends(require_admin)):
        return success_response(await escrow.platform_summary())

    @app.post("/admin/disputes/{dispute_id}/resolve", tags=["Admin"])
    async def resolve_dispute(
        dispute_id: int,
        body: ResolveDisputeRequest,
        admin_id: str = Depends(require_admin),
    ):
        result = await escrow.resolve_dispute(dispute_id, body.decision, admin_id)
        return success_response(result)

    # ---------- buyer / seller escrow endpoints ----------

    @app.get("/escrow/{order_id}", tags=["Escrow"])
    async def escrow_status(order_id: str, user_id: Optional[str] = None):
        return success_response(await escrow.get_escrow_status(order_id, user_id))

    @app.post("/escrow/{order_id}/confirm", tags=["Escrow"])
    async def confirm_receipt(order_id: str, body: Optional[ConfirmReceiptRequest] = None):
        wallet = await escrow.confirm_receipt(order_id, body.buyer_id if body else None)
        return success_response(wallet)

    @app.post("/orders/{order_id}/fulfillment", tags=["Escrow"])
    async def record_fulfillment(order_id: str, body: FulfillmentRequest):
        order = await escrow.record_fulfillment(order_id, body.stage, body.seller_id)
        return success_response(order)

    @app.post("/disputes", tags=["Escrow"])
    async def open_dispute(body: OpenDisputeRequest):
        dispute = await escrow.open_dispute(body.order_id, body.opened_by, body.reason, body.description)
        return success_response(dispute, status_code=status.HTTP_201_CREATED)

    # ---------- cron ----------

    @app.post("/cron/auto-release", tags=["Cron"], dependencies=[Depends(require_cron)])
    async def cron_auto_release():
        released = await automation.run_auto_release()
        return success_response({'released': released, 'stats': automation.get_stats()['stats']})

    return app
