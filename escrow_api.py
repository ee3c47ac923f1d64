"""
FastAPI server exposing the escrow ledger.

Party endpoints (``/escrow``), the gateway webhook receiver
(``/gateway/webhook``), the admin control surface (``/admin``) and a
health check. The caller is identified by the ``X-User-Id`` header set by
the marketplace's authentication proxy.

Money-moving endpoints require the caller to be the contract's manager;
read endpoints accept either party. Every error is rendered as
``{"error": ..., "details": {...}}``.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from escrow_admin import EscrowAdmin
from escrow_errors import (
    AuthorizationError,
    ConcurrencyConflictError,
    DatabaseError,
    EscrowError,
    GatewayError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from escrow_models import EscrowAccount, PriorityLevel
from escrow_service import EscrowLedger
from payment_gateway import parse_webhook_event
from utils import utc_now

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientFundsError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateError: status.HTTP_409_CONFLICT,
    ConcurrencyConflictError: status.HTTP_409_CONFLICT,
    DatabaseError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ==================== Pydantic Models ====================

class CreateEscrowRequest(BaseModel):
    contract_id: str = Field(..., min_length=1)


class FundEscrowRequest(BaseModel):
    contract_id: str = Field(..., min_length=1)
    payment_method_ref: str = Field(..., min_length=1)


class ReleaseFundsRequest(BaseModel):
    contract_id: str = Field(..., min_length=1)
    amount: Decimal
    milestone_id: Optional[str] = None
    notes: Optional[str] = None


class RefundRequest(BaseModel):
    contract_id: str = Field(..., min_length=1)
    amount: Decimal
    reason: str = Field(..., min_length=1)


class AdminReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class DisputeModeRequest(AdminReasonRequest):
    enabled: bool


class ResolveDisputeRequest(AdminReasonRequest):
    resolution: str


class EmergencyReleaseRequest(AdminReasonRequest):
    amount: Decimal
    recipient: Optional[str] = None


class AdminRefundRequest(AdminReasonRequest):
    amount: Decimal


class PlatformFeeRequest(AdminReasonRequest):
    new_percentage: Decimal


class ControlsRequest(AdminReasonRequest):
    auto_release_enabled: Optional[bool] = None
    auto_release_delay: Optional[int] = Field(None, ge=0)
    requires_manual_approval: Optional[bool] = None
    priority_level: Optional[PriorityLevel] = None


class AdminNoteRequest(BaseModel):
    note: str = Field(..., min_length=1)


class ComplianceRequest(AdminReasonRequest):
    kyc_verified: Optional[bool] = None
    aml_checked: Optional[bool] = None
    sanctions_cleared: Optional[bool] = None
    risk_score: Optional[int] = Field(None, ge=0, le=100)
    notes: Optional[str] = None


# ==================== Helpers ====================

def _respond(content: Any, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    """JSON response with money kept exact (Decimals as strings)."""
    return JSONResponse(
        content=jsonable_encoder(content, custom_encoder={Decimal: str, Exception: str}),
        status_code=status_code,
    )


def _require_caller(user_id: Optional[str]) -> str:
    if not user_id:
        raise AuthorizationError("Missing X-User-Id header")
    return user_id


def _require_manager(account: EscrowAccount, user_id: str) -> None:
    if account.manager_id != user_id:
        logger.warning(f"User {user_id} attempted a manager action on escrow {account.id}")
        raise AuthorizationError(
            "Only the contract manager can perform this action",
            {'escrow_id': account.id},
        )


def _require_party(account: EscrowAccount, user_id: str) -> None:
    if user_id not in (account.manager_id, account.talent_id):
        logger.warning(f"User {user_id} attempted to read escrow {account.id}")
        raise AuthorizationError(
            "Only the parties to the contract can view this escrow",
            {'escrow_id': account.id},
        )


def error_status_code(exc: EscrowError) -> int:
    if isinstance(exc, GatewayError):
        return status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_502_BAD_GATEWAY
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ==================== Application Factory ====================

def create_app(
    ledger: EscrowLedger,
    admin: EscrowAdmin,
    automation=None,
    database=None
) -> FastAPI:
    """
    Build the FastAPI application around already-wired services.

    Args:
        ledger: Escrow ledger
        admin: Admin control layer
        automation: AutoReleaseScheduler started and stopped with the app (optional)
        database: EscrowDatabase reported by /health and closed on shutdown (optional)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Escrow ledger API starting up...")
        if automation is not None:
            await automation.start()
        yield
        logger.info("Escrow ledger API shutting down...")
        if automation is not None:
            await automation.stop()
        if database is not None:
            await database.disconnect()

    app = FastAPI(
        title="Escrow Ledger",
        description="Escrow accounts, releases, refunds and admin controls for marketplace contracts",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ==================== Error Handlers ====================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        code = error_status_code(exc)
        log = logger.error if code >= 500 else logger.info
        log(f"{request.method} {request.url.path} -> {code}: {exc.message}")
        return _respond(exc.to_dict(), status_code=code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _respond(
            {
                'error': ValidationError.error_label,
                'details': {'message': "Invalid request body", 'errors': exc.errors()},
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "details": {"path": str(request.url.path)},
            },
        )

    # ==================== Party Endpoints ====================

    escrow = APIRouter(prefix="/escrow", tags=["Escrow"])

    @escrow.post("/create")
    async def create_escrow(body: CreateEscrowRequest, x_user_id: Optional[str] = Header(None)):
        user_id = _require_caller(x_user_id)
        contract = await ledger.contracts.get_contract(body.contract_id)
        if contract.manager_id != user_id:
            raise AuthorizationError(
                "Only the contract manager can create its escrow",
                {'contract_id': body.contract_id},
            )
        account = await ledger.create(body.contract_id, performed_by=user_id)
        return _respond({'escrow_account': account.to_dict()}, status_code=status.HTTP_201_CREATED)

    @escrow.post("/fund")
    async def fund_escrow(body: FundEscrowRequest, x_user_id: Optional[str] = Header(None)):
        user_id = _require_caller(x_user_id)
        account = await ledger.get_by_contract(body.contract_id)
        _require_manager(account, user_id)
        result = await ledger.fund(account.id, body.payment_method_ref, performed_by=user_id)
        return _respond(result.to_dict())

    @escrow.post("/release")
    async def release_funds(body: ReleaseFundsRequest, x_user_id: Optional[str] = Header(None)):
        user_id = _require_caller(x_user_id)
        account = await ledger.get_by_contract(body.contract_id)
        _require_manager(account, user_id)
        account = await ledger.release(
            account.id,
            body.amount,
            milestone_id=body.milestone_id,
            notes=body.notes,
            performed_by=user_id,
        )
        return _respond({'escrow_account': account.to_dict()})

    @escrow.post("/refund")
    async def refund_funds(body: RefundRequest, x_user_id: Optional[str] = Header(None)):
        user_id = _require_caller(x_user_id)
        account = await ledger.get_by_contract(body.contract_id)
        _require_manager(account, user_id)
        result = await ledger.refund(account.id, body.amount, body.reason, performed_by=user_id)
        return _respond(result.to_dict())

    @escrow.get("/contract/{contract_id}")
    async def get_escrow_by_contract(contract_id: str, x_user_id: Optional[str] = Header(None)):
        user_id = _require_caller(x_user_id)
        account = await ledger.get_by_contract(contract_id)
        _require_party(account, user_id)
        transactions = await ledger.list_transactions(account.id)
        return _respond({
            'escrow_account': account.to_dict(),
            'transactions': [t.to_dict() for t in transactions],
        })

    @escrow.get("")
    async def list_escrows(
        status_filter: Optional[str] = Query(None, alias="status"),
        page: int = Query(1),
        limit: int = Query(10),
        x_user_id: Optional[str] = Header(None)
    ):
        user_id = _require_caller(x_user_id)
        result = await ledger.list_accounts(party_id=user_id, status=status_filter, page=page, limit=limit)
        return _respond(result)

    app.include_router(escrow)

    # ==================== Gateway Webhook ====================

    @app.post("/gateway/webhook", tags=["Gateway"])
    async def gateway_webhook(request: Request):
        """
        Receive asynchronous payment confirmations.

        Unknown event types are acknowledged and ignored so the gateway
        stops redelivering them.
        """
        try:
            payload = await request.json()
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        try:
            event = parse_webhook_event(payload)
        except GatewayError as e:
            raise ValidationError(e.message) from e
        if event is None:
            logger.info(f"Ignoring gateway event type {payload.get('type')}")
            return _respond({'received': True, 'result': 'ignored'})

        logger.info(f"Received gateway event {event.event_id} ({event.event_type})")
        result = await ledger.apply_gateway_event(event)
        return _respond({'received': True, **result})

    # ==================== Admin Endpoints ====================

    admin_router = APIRouter(prefix="/admin", tags=["Admin"])

    async def _account_response(account: EscrowAccount) -> JSONResponse:
        return _respond({'escrow_account': account.to_dict()})

    @admin_router.get("/escrow")
    async def admin_list_escrows(
        status_filter: Optional[str] = Query(None, alias="status"),
        page: int = Query(1),
        limit: int = Query(20),
        x_user_id: Optional[str] = Header(None)
    ):
        result = await admin.list_escrows(_require_caller(x_user_id), status=status_filter, page=page, limit=limit)
        return _respond(result)

    @admin_router.get("/stats")
    async def admin_statistics(x_user_id: Optional[str] = Header(None)):
        stats = await admin.get_statistics(_require_caller(x_user_id))
        if automation is not None:
            stats['automation'] = automation.get_stats()
        return _respond(stats)

    @admin_router.get("/escrow/{escrow_id}")
    async def admin_get_escrow(escrow_id: str, x_user_id: Optional[str] = Header(None)):
        return _respond(await admin.get_escrow(_require_caller(x_user_id), escrow_id))

    @admin_router.post("/escrow/{escrow_id}/freeze")
    async def admin_freeze(escrow_id: str, body: AdminReasonRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.freeze(escrow_id, _require_caller(x_user_id), reason=body.reason)
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/unfreeze")
    async def admin_unfreeze(escrow_id: str, body: AdminReasonRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.unfreeze(escrow_id, _require_caller(x_user_id), reason=body.reason)
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/dispute-mode")
    async def admin_dispute_mode(escrow_id: str, body: DisputeModeRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.set_dispute_mode(
            escrow_id, _require_caller(x_user_id), enabled=body.enabled, reason=body.reason
        )
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/dispute")
    async def admin_open_dispute(escrow_id: str, body: AdminReasonRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.open_dispute(escrow_id, _require_caller(x_user_id), reason=body.reason)
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/dispute/resolve")
    async def admin_resolve_dispute(
        escrow_id: str,
        body: ResolveDisputeRequest,
        x_user_id: Optional[str] = Header(None)
    ):
        account = await admin.resolve_dispute(
            escrow_id, _require_caller(x_user_id), resolution=body.resolution, reason=body.reason
        )
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/emergency-release")
    async def admin_emergency_release(
        escrow_id: str,
        body: EmergencyReleaseRequest,
        x_user_id: Optional[str] = Header(None)
    ):
        account = await admin.emergency_release(
            escrow_id,
            _require_caller(x_user_id),
            amount=body.amount,
            reason=body.reason,
            recipient=body.recipient,
        )
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/refund")
    async def admin_refund(escrow_id: str, body: AdminRefundRequest, x_user_id: Optional[str] = Header(None)):
        result = await admin.refund(
            escrow_id, _require_caller(x_user_id), amount=body.amount, reason=body.reason
        )
        return _respond(result.to_dict())

    @admin_router.post("/escrow/{escrow_id}/platform-fee")
    async def admin_platform_fee(escrow_id: str, body: PlatformFeeRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.adjust_platform_fee(
            escrow_id, _require_caller(x_user_id), new_percentage=body.new_percentage, reason=body.reason
        )
        return await _account_response(account)

    @admin_router.patch("/escrow/{escrow_id}/controls")
    async def admin_controls(escrow_id: str, body: ControlsRequest, x_user_id: Optional[str] = Header(None)):
        changes = body.model_dump(exclude_none=True, exclude={'reason'})
        account = await admin.configure_controls(
            escrow_id, _require_caller(x_user_id), reason=body.reason, **changes
        )
        return await _account_response(account)

    @admin_router.post("/escrow/{escrow_id}/notes")
    async def admin_add_note(escrow_id: str, body: AdminNoteRequest, x_user_id: Optional[str] = Header(None)):
        account = await admin.add_admin_note(escrow_id, _require_caller(x_user_id), note=body.note)
        return await _account_response(account)

    @admin_router.patch("/escrow/{escrow_id}/compliance")
    async def admin_compliance(escrow_id: str, body: ComplianceRequest, x_user_id: Optional[str] = Header(None)):
        flags = body.model_dump(exclude_none=True, exclude={'reason'})
        account = await admin.update_compliance_status(
            escrow_id, _require_caller(x_user_id), reason=body.reason, **flags
        )
        return await _account_response(account)

    @admin_router.get("/escrow/{escrow_id}/audit")
    async def admin_audit_trail(escrow_id: str, x_user_id: Optional[str] = Header(None)):
        entries = await admin.get_audit_trail(_require_caller(x_user_id), escrow_id)
        return _respond({'escrow_id': escrow_id, 'audit_trail': [e.to_dict() for e in entries]})

    @admin_router.get("/commission-settings")
    async def admin_list_commission_settings(x_user_id: Optional[str] = Header(None)):
        settings = await admin.list_commission_settings(_require_caller(x_user_id))
        return _respond({'settings': [s.to_dict() for s in settings]})

    @admin_router.post("/commission-settings")
    async def admin_save_commission_setting(body: Dict[str, Any], x_user_id: Optional[str] = Header(None)):
        setting = await admin.save_commission_setting(_require_caller(x_user_id), body)
        return _respond({'setting': setting.to_dict()}, status_code=status.HTTP_201_CREATED)

    @admin_router.delete("/commission-settings/{setting_id}")
    async def admin_delete_commission_setting(setting_id: str, x_user_id: Optional[str] = Header(None)):
        await admin.delete_commission_setting(_require_caller(x_user_id), setting_id)
        return _respond({'deleted': setting_id})

    @admin_router.post("/commission-settings/defaults")
    async def admin_initialize_commission_defaults(x_user_id: Optional[str] = Header(None)):
        settings: List = await admin.initialize_commission_defaults(_require_caller(x_user_id))
        return _respond({'settings': [s.to_dict() for s in settings]}, status_code=status.HTTP_201_CREATED)

    app.include_router(admin_router)

    # ==================== Health ====================

    @app.get("/health", tags=["Health"])
    async def health_check():
        health_status = {
            "status": "healthy",
            "timestamp": utc_now().isoformat(),
            "service": "escrow-ledger",
        }
        if database is not None:
            if await database.health_check():
                health_status["database"] = "connected"
            else:
                health_status["database"] = "error"
                health_status["status"] = "degraded"
        if automation is not None:
            health_status["scheduler"] = "running" if automation.is_running else "stopped"

        code = status.HTTP_200_OK if health_status["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=health_status, status_code=code)

    return app
