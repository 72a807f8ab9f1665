"""
API routes for the captive portal, the payment provider and the access controller.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hotspot_bridge.core.coordinator import AccessHandoffCoordinator
from hotspot_bridge.core.errors import (
    GatewayUnavailableError,
    InvalidInputError,
    InvalidOrUsedVoucherError,
)
from hotspot_bridge.database.connection import get_db
from hotspot_bridge.monitoring.health import HealthCheck
from hotspot_bridge.monitoring.metrics import metrics

from .dependencies import get_coordinator, require_admin_key
from .schemas import (
    CallbackAck,
    CallbackEnvelope,
    ErrorResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    PingResponse,
    QueueSnapshotResponse,
    SaleResponse,
    StkPushRequest,
    StkPushResponse,
    VoucherIssueRequest,
    VoucherRedeemRequest,
    VoucherRedeemResponse,
    VoucherResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
purchase_router = APIRouter(tags=["purchase"])
webhook_router = APIRouter(tags=["webhooks"])
device_router = APIRouter(tags=["device"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()

GATEWAY_FAILURE_MESSAGE = "M-Pesa session failed"


@purchase_router.post(
    "/stk-push",
    response_model=StkPushResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Initiate a purchase",
    description="Send an M-Pesa STK push prompt to the customer's phone",
)
async def stk_push(
    request: StkPushRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Any:
    logger.info("api_stk_push_request", plan=request.plan, amount=request.amount)

    try:
        checkout_id = await coordinator.initiate_purchase(
            db, request.phone, request.plan, request.amount
        )
    except InvalidInputError as e:
        metrics.record_stk_push("invalid")
        logger.warning("api_stk_push_invalid", error=str(e))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
    except GatewayUnavailableError as e:
        metrics.record_stk_push("gateway_unavailable")
        logger.error("api_stk_push_gateway_unavailable", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": GATEWAY_FAILURE_MESSAGE},
        )
    except Exception as e:
        metrics.record_stk_push("error")
        logger.error("api_stk_push_unexpected_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": GATEWAY_FAILURE_MESSAGE},
        )

    metrics.record_stk_push("accepted")
    return {"success": True, "checkoutID": checkout_id}


@purchase_router.get(
    "/status/{checkout_id}",
    response_model=PaymentStatusResponse,
    response_model_exclude_none=True,
    summary="Poll payment status",
)
async def payment_status(
    checkout_id: str,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Report whether a checkout was paid; never exposes error detail."""
    result = await coordinator.payment_status(db, checkout_id)
    return {"paid": result.paid, "plan": result.plan}


@purchase_router.post(
    "/voucher/redeem",
    response_model=VoucherRedeemResponse,
    responses={400: {"model": VoucherRedeemResponse}},
    summary="Redeem a voucher code",
)
async def redeem_voucher(
    request: VoucherRedeemRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Any:
    try:
        entry = await coordinator.redeem_voucher(db, request.code, request.phone)
    except (InvalidOrUsedVoucherError, InvalidInputError) as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": str(e)},
        )
    except Exception as e:
        logger.error("api_voucher_unexpected_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Voucher could not be redeemed, please retry"},
        )

    return {"success": True, "message": f"Voucher accepted for {entry.plan}"}


@webhook_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="M-Pesa STK callback",
    description="Receives the asynchronous result of an STK push",
)
async def payment_callback(
    payload: CallbackEnvelope,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """
    Apply a payment result.

    Duplicate and unknown checkout IDs are acknowledged like any other so the
    provider stops redelivering them. Store and queue failures surface as 500
    with the transaction still Pending, and the provider retries.
    """
    callback = payload.body.stk_callback
    logger.info(
        "api_callback_received",
        checkout_request_id=callback.checkout_request_id,
        result_code=callback.result_code,
    )

    outcome = await coordinator.handle_callback(
        db,
        callback.checkout_request_id,
        callback.result_code,
        callback.metadata_dict(),
        callback.result_desc,
    )

    logger.info(
        "api_callback_processed",
        checkout_request_id=callback.checkout_request_id,
        outcome=outcome,
    )
    return CallbackAck().model_dump()


@device_router.get(
    "/next-user",
    response_class=PlainTextResponse,
    summary="Pop the next approved customer",
    description="Plain-text `phone,plan` line, or `none,none` when there is no work",
)
async def next_user(
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> PlainTextResponse:
    entry = await coordinator.pull_next()
    return PlainTextResponse(entry.to_record())


@device_router.get(
    "/queue",
    response_model=QueueSnapshotResponse,
    summary="Inspect the pull queue",
)
async def queue_snapshot(
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    entries = await coordinator.queue_snapshot()
    return {"length": len(entries), "queue": [entry.to_dict() for entry in entries]}


@device_router.get("/ping", response_model=PingResponse, summary="Keep-alive probe")
async def ping() -> Dict[str, str]:
    return {"status": "Awake"}


@admin_router.get("/sales", response_model=List[SaleResponse], summary="Successful sales, newest first")
async def sales(
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Any:
    return await coordinator.sales(db, limit=limit)


@admin_router.post(
    "/vouchers",
    response_model=VoucherResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a voucher",
)
async def issue_voucher(
    request: VoucherIssueRequest,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Any:
    try:
        voucher = await coordinator.issue_voucher(
            db, request.plan, amount=request.amount, agent=request.agent, code=request.code
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Voucher code already exists")
    return voucher


@admin_router.get("/vouchers", response_model=List[VoucherResponse], summary="List vouchers")
async def list_vouchers(
    used: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
    coordinator: AccessHandoffCoordinator = Depends(get_coordinator),
) -> Any:
    return await coordinator.list_vouchers(db, used=used)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness probe")
async def readiness() -> Dict[str, Any]:
    result = await health_check.check_all()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
