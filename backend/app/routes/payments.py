"""API routes exposing subscription payments."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Cookie, Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

try:
    from backend.payment_cleanup import get_cleanup_metrics, is_cleanup_scheduler_running, run_cleanup_job
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from payment_cleanup import (  # type: ignore[no-redef]
        get_cleanup_metrics,
        is_cleanup_scheduler_running,
        run_cleanup_job,
    )

from ..payments import (
    BillingCycle,
    PaymentError,
    PaymentStatus,
    SubscriptionTier,
    UnauthorizedError,
    ValidationError,
)
from ..payments.models import PURCHASABLE_TIERS
from ..payments.pricing import get_pricing_table, get_tier_features
from ..payments.validation import validate_email, validate_enum, validate_reference
from ..payments.webhooks import (
    SIGNATURE_HEADER,
    is_allowlisted,
    parse_webhook_payload,
    resolve_client_ip,
    verify_signature,
)
from ..schemas.payments import (
    ApiResponse,
    CleanupMetricsOut,
    CleanupResultOut,
    EntitlementOut,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentHistoryResponse,
    PaymentOut,
    PaymentStatsOut,
    PendingPaymentStatsOut,
    PlanPriceOut,
    SubscriptionOut,
    TierPricingOut,
    UpgradeEligibilityOut,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from ..services.payments import get_payment_config, get_payment_service

logger = logging.getLogger("payments")

API_PREFIX = "/api/payments"


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


def _require_admin(user: Any) -> None:
    if getattr(user, "role", None) != "admin":
        raise UnauthorizedError("Admin access required")


def _respond(
    data: Any = None,
    *,
    message: Optional[str] = None,
    success: bool = True,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    envelope = ApiResponse(success=success, data=data, message=message)
    omitted = {name for name in ("data", "message") if getattr(envelope, name) is None}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope.model_dump(exclude=omitted)))


def _error_response(status_code: int, message: str, data: Optional[dict] = None) -> JSONResponse:
    return _respond(data, message=message, success=False, status_code=status_code)


def _is_payment_path(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


async def _handle_payment_error(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(
            "Payment request failed",
            extra={"path": request.url.path, "error_code": exc.code, "error": exc.message},
        )
        message = "Payment service is temporarily unavailable" if exc.code == "gateway_error" else "Internal server error"
    else:
        logger.info(
            "Payment request rejected",
            extra={"path": request.url.path, "error_code": exc.code, "error": exc.message},
        )
        message = exc.message
    return _error_response(exc.status_code, message, exc.payload)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not _is_payment_path(request):
        return await request_validation_exception_handler(request, exc)
    errors: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
        errors.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        "Invalid request",
        {"error": "validation_error", "errors": errors},
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not _is_payment_path(request):
        return await http_exception_handler(request, exc)
    return _error_response(exc.status_code, str(exc.detail))


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error while processing request", extra={"path": request.url.path})
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Translate payment failures into the uniform response envelope."""

    app.add_exception_handler(PaymentError, _handle_payment_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(Exception, _handle_unexpected_error)


router = APIRouter(prefix=API_PREFIX, tags=["payments"])


@router.post("/initialize")
def initialize_payment(
    payload: InitializePaymentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> JSONResponse:
    tier_result = validate_enum(payload.subscription_tier, [tier.value for tier in PURCHASABLE_TIERS])
    cycle_result = validate_enum(payload.billing_cycle, [cycle.value for cycle in BillingCycle])
    email_result = validate_email(payload.email)

    errors: List[str] = []
    for field_name, result in (
        ("subscriptionTier", tier_result),
        ("billingCycle", cycle_result),
        ("email", email_result),
    ):
        errors.extend(f"{field_name}: {message}" for message in result.errors)
    if errors:
        raise ValidationError("Invalid payment request", errors=errors)

    service = get_payment_service()
    initialized = service.initialize_payment(
        user_id=str(current_user.id),
        subscription_tier=SubscriptionTier(tier_result.sanitized_value),
        billing_cycle=BillingCycle(cycle_result.sanitized_value),
        email=email_result.sanitized_value,
    )
    return _respond(
        InitializePaymentResponse(
            authorization_url=initialized.authorization_url,
            reference=initialized.reference,
        ),
        message="Payment initialized",
    )


@router.post("/verify")
def verify_payment(
    payload: VerifyPaymentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> JSONResponse:
    reference_result = validate_reference(payload.reference)
    if not reference_result.is_valid:
        raise ValidationError(
            "Invalid payment reference",
            errors=[f"reference: {message}" for message in reference_result.errors],
        )

    service = get_payment_service()
    result = service.verify_payment(user_id=str(current_user.id), reference=reference_result.sanitized_value)
    body = VerifyPaymentResponse(
        payment=PaymentOut.from_record(result.payment),
        entitlement=EntitlementOut.from_snapshot(result.entitlement) if result.entitlement else None,
    )

    payment_status = result.payment.status
    if payment_status == PaymentStatus.COMPLETED:
        return _respond(body, message="Payment verified successfully")
    if payment_status == PaymentStatus.PENDING:
        return _respond(
            body,
            message="Payment is still pending",
            success=False,
            status_code=status.HTTP_202_ACCEPTED,
        )
    return _respond(
        body,
        message=f"Payment {payment_status.value}",
        success=False,
        status_code=status.HTTP_400_BAD_REQUEST,
    )


@router.post("/webhook")
async def receive_webhook(request: Request) -> JSONResponse:
    config = get_payment_config()
    client_ip = resolve_client_ip(
        request.headers,
        request.client.host if request.client else None,
        config.trusted_proxies,
    )
    if not is_allowlisted(client_ip, config.webhook_allowlist, allow_loopback=config.webhook_allow_loopback):
        logger.warning("Rejected webhook from unauthorized source", extra={"client_ip": client_ip})
        raise UnauthorizedError("Unauthorized webhook source")

    raw_body = await request.body()
    if config.webhook_verify_signature and config.secret_key:
        if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), config.secret_key):
            logger.warning("Rejected webhook with invalid signature", extra={"client_ip": client_ip})
            raise ValidationError("Invalid webhook signature")

    event = parse_webhook_payload(raw_body)
    if not event.is_reconcilable:
        logger.info("Acknowledged webhook event", extra={"webhook_event": event.event})
        return _respond(message="Event acknowledged")

    service = get_payment_service()
    try:
        payment = await run_in_threadpool(service.handle_webhook, event)
    except PaymentError as exc:
        logger.warning(
            "Webhook reconciliation failed",
            extra={"webhook_event": event.event, "payment_reference": event.reference, "error": exc.message},
        )
        return _respond(message="Webhook received but could not be processed", success=False)

    return _respond(PaymentOut.from_record(payment) if payment else None, message="Webhook processed")


@router.get("/pricing")
def read_pricing() -> JSONResponse:
    pricing = {
        tier.value: TierPricingOut(
            tier=tier,
            monthly=PlanPriceOut.from_price(cycles[BillingCycle.MONTHLY]),
            yearly=PlanPriceOut.from_price(cycles[BillingCycle.YEARLY]),
            features=list(get_tier_features(tier)),
        ).model_dump(by_alias=True, mode="json")
        for tier, cycles in get_pricing_table().items()
    }
    return _respond(pricing)


@router.get("/history")
def read_payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    status_filter: Optional[str] = Query(None, alias="status"),
    subscription_tier: Optional[str] = Query(None, alias="subscriptionTier"),
    billing_cycle: Optional[str] = Query(None, alias="billingCycle"),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    *,
    current_user=Depends(_get_current_user),
) -> JSONResponse:
    filters = {
        "status": validate_enum(status_filter, [item.value for item in PaymentStatus], required=False),
        "subscriptionTier": validate_enum(subscription_tier, [item.value for item in SubscriptionTier], required=False),
        "billingCycle": validate_enum(billing_cycle, [item.value for item in BillingCycle], required=False),
    }
    errors = [f"{name}: {message}" for name, result in filters.items() for message in result.errors]
    if errors:
        raise ValidationError("Invalid history filters", errors=errors)

    status_value = filters["status"].sanitized_value
    tier_value = filters["subscriptionTier"].sanitized_value
    cycle_value = filters["billingCycle"].sanitized_value

    service = get_payment_service()
    history = service.list_payments(
        str(current_user.id),
        page=page,
        limit=limit,
        status=PaymentStatus(status_value) if status_value else None,
        subscription_tier=SubscriptionTier(tier_value) if tier_value else None,
        billing_cycle=BillingCycle(cycle_value) if cycle_value else None,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return _respond(PaymentHistoryResponse.from_page(history))


@router.get("/receipt/{reference}")
def download_receipt(reference: str, *, current_user=Depends(_get_current_user)) -> Response:
    reference_result = validate_reference(reference)
    if not reference_result.is_valid:
        raise ValidationError(
            "Invalid payment reference",
            errors=[f"reference: {message}" for message in reference_result.errors],
        )

    receipt = get_payment_service().generate_receipt(
        user_id=str(current_user.id),
        reference=reference_result.sanitized_value,
        customer_name=getattr(current_user, "username", None),
    )
    return Response(
        content=receipt.content,
        media_type=receipt.content_type,
        headers={"Content-Disposition": f'attachment; filename="{receipt.filename}"'},
    )


@router.get("/stats")
def read_payment_stats(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    _require_admin(current_user)
    stats = get_payment_service().get_payment_stats()
    return _respond(PaymentStatsOut.from_stats(stats))


@router.get("/subscription")
def read_current_subscription(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    summary = get_payment_service().get_current_subscription(str(current_user.id))
    return _respond(SubscriptionOut.from_summary(summary))


@router.post("/subscription/cancel")
def cancel_subscription(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    entitlement = get_payment_service().cancel_subscription(str(current_user.id))
    return _respond(EntitlementOut.from_snapshot(entitlement), message="Subscription cancelled")


@router.get("/subscription/can-upgrade")
def read_upgrade_eligibility(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    eligibility = get_payment_service().can_upgrade(str(current_user.id))
    return _respond(UpgradeEligibilityOut.from_eligibility(eligibility))


@router.get("/pending-stats")
def read_pending_payment_stats(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    _require_admin(current_user)
    stats = get_payment_service().get_pending_payment_stats()
    return _respond(PendingPaymentStatsOut.from_stats(stats))


@router.post("/cleanup")
def trigger_payment_cleanup(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    _require_admin(current_user)
    expired = run_cleanup_job(service=get_payment_service())
    return _respond(CleanupResultOut(expired_count=expired), message=f"Expired {expired} pending payments")


@router.get("/cleanup/metrics")
def read_cleanup_metrics(*, current_user=Depends(_get_current_user)) -> JSONResponse:
    _require_admin(current_user)
    metrics = CleanupMetricsOut.from_metrics(get_cleanup_metrics(), running=is_cleanup_scheduler_running())
    return _respond(metrics)


@router.post("/cleanup/{reference}")
def cancel_pending_payment(reference: str, *, current_user=Depends(_get_current_user)) -> JSONResponse:
    _require_admin(current_user)
    reference_result = validate_reference(reference)
    if not reference_result.is_valid:
        raise ValidationError(
            "Invalid payment reference",
            errors=[f"reference: {message}" for message in reference_result.errors],
        )
    payment = get_payment_service().cancel_pending_payment(reference_result.sanitized_value)
    return _respond(PaymentOut.from_record(payment), message="Payment cancelled")


__all__ = ["API_PREFIX", "register_exception_handlers", "router"]
