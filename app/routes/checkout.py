from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.dependencies.auth import require_admin, require_auth
from app.dependencies.checkout import get_checkout_service
from app.schemas.auth import TokenData
from app.schemas.checkout import (
    CancelResponse,
    ConflictResponse,
    FinalizedOrderSchema,
    FinalizeRequest,
    OrderPreviewSchema,
    PreviewRequest,
)
from app.services.checkout.errors import (
    DependencyTimeoutError,
    RuleConflictError,
    ValidationError,
)
from app.services.checkout.orchestrator import CheckoutService
from app.services.checkout.types import CartLine, RiskSignals

router = APIRouter(prefix="/checkout", tags=["Checkout"])


def _count(request: Request, key: str) -> None:
    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        metrics[key] = metrics.get(key, 0) + 1


def _unavailable(exc: DependencyTimeoutError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail=str(exc),
        headers={"Retry-After": "1"},
    )


def _ensure_own_checkout(principal: TokenData, customer_id: Optional[str]) -> None:
    # only admins may price or finalize on behalf of another customer
    if principal.role != "admin" and customer_id != principal.username:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot check out on behalf of another customer",
        )


# ---------- PREVIEW ----------

@router.post("/preview", response_model=OrderPreviewSchema)
def preview_order(
    data: PreviewRequest,
    request: Request,
    principal: TokenData = Depends(require_auth),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Resolve prices, discounts and totals for a cart without committing anything.
    customer_id defaults to the token subject; only admins may set another one.
    """
    customer_id = data.customer_id or principal.username
    _ensure_own_checkout(principal, customer_id)
    cart = [CartLine(product_id=item.product_id, quantity=item.quantity) for item in data.items]
    try:
        preview = service.resolve_order(cart, customer_id, data.coupon_code)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DependencyTimeoutError as e:
        raise _unavailable(e)

    _count(request, "checkout_previews")
    return OrderPreviewSchema.from_domain(preview)


# ---------- FINALIZE ----------

@router.post("/finalize", response_model=FinalizedOrderSchema)
def finalize_order(
    data: FinalizeRequest,
    request: Request,
    principal: TokenData = Depends(require_auth),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Finalize a previewed order.

    409 means the quote changed (or a limited promotion ran out) since the
    preview; the body carries the repriced order to show the customer.
    """
    _ensure_own_checkout(principal, data.preview.customer_id)
    signals = RiskSignals(
        shipping_address_mismatch=data.shipping_address_mismatch,
        contact_mismatch=data.contact_mismatch,
    )
    try:
        order = service.finalize_order(data.preview.to_domain(), data.attempt_id, signals)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuleConflictError as e:
        _count(request, "checkout_conflicts")
        body = ConflictResponse(
            detail=str(e),
            failed_rule_id=e.failed_rule_id,
            repriced=OrderPreviewSchema.from_domain(e.repriced) if e.repriced is not None else None,
        )
        raise HTTPException(status_code=409, detail=body.model_dump(mode="json"))
    except DependencyTimeoutError as e:
        raise _unavailable(e)

    _count(request, "checkout_finalized")
    return FinalizedOrderSchema.from_domain(order)


# ---------- CANCEL ----------

@router.post(
    "/{attempt_id}/cancel",
    response_model=CancelResponse,
    dependencies=[Depends(require_admin)],
)
def cancel_order(
    attempt_id: str,
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        released = service.cancel_order(attempt_id)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CancelResponse(attempt_id=attempt_id, released_rule_ids=released)
