from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime

from app.core.config import settings
from app.database.connection import get_db
from app.dependencies.auth import require_admin
from app.enums.rule_types import AttemptStatus, ReviewStatus
from app.models.checkout_attempt import CheckoutAttempt
from app.models.discount_rule import DiscountRule
from app.schemas.system import HealthCheckResponse, SystemMetricsResponse

router = APIRouter(tags=["System"])


@router.get("/health", response_model=HealthCheckResponse)
def health_check(request: Request, db: Session = Depends(get_db)):
    """
    Lightweight public health check.
    Returns ok + DB connectivity check (SELECT 1).
    """
    now = datetime.utcnow()
    start_time = getattr(request.app.state, "start_time", now)
    uptime_seconds = (now - start_time).total_seconds()

    db_ok = True
    extra = {}
    try:
        db.execute(text("SELECT 1"))
        extra["alembic_version_table_present"] = inspect(db.get_bind()).has_table("alembic_version")
    except SQLAlchemyError as e:
        db_ok = False
        extra["db_error"] = str(e)

    status = "ok" if db_ok else "degraded"

    return HealthCheckResponse(
        status=status,
        now=now,
        uptime_seconds=uptime_seconds,
        db_ok=db_ok,
        extra=extra or None,
    )


@router.get("/metrics", response_model=SystemMetricsResponse, dependencies=[Depends(require_admin)])
def system_metrics(request: Request, db: Session = Depends(get_db)):
    """
    Admin-only system metrics in JSON form.
    Uses in-process counters stored on app.state.metrics and DB-derived metrics.
    """
    now = datetime.utcnow()
    start_time = getattr(request.app.state, "start_time", now)
    uptime_seconds = (now - start_time).total_seconds()

    metrics = getattr(request.app.state, "metrics", None) or {}
    requests_count = int(metrics.get("requests", 0))
    total_response_ms = float(metrics.get("total_response_ms", 0.0))
    avg_response_ms = (total_response_ms / requests_count) if requests_count > 0 else None

    previews = int(metrics.get("checkout_previews", 0))
    finalized = int(metrics.get("checkout_finalized", 0))
    conflicts = int(metrics.get("checkout_conflicts", 0))
    attempts = finalized + conflicts
    conflict_rate = (conflicts / attempts) * 100.0 if attempts > 0 else None

    finalized_orders = CheckoutAttempt.status == AttemptStatus.finalized.value
    start_today = datetime.combine(now.date(), datetime.min.time())

    total_orders_today = (
        db.query(func.count())
        .select_from(CheckoutAttempt)
        .filter(finalized_orders, CheckoutAttempt.finalized_at >= start_today)
        .scalar()
    ) or 0

    total_orders = (
        db.query(func.count()).select_from(CheckoutAttempt).filter(finalized_orders).scalar()
    ) or 0

    average_order_value = (
        db.query(func.avg(CheckoutAttempt.total)).filter(finalized_orders).scalar()
    )
    if average_order_value is not None:
        average_order_value = float(average_order_value)

    pending_reviews = (
        db.query(func.count())
        .select_from(CheckoutAttempt)
        .filter(finalized_orders, CheckoutAttempt.review_status == ReviewStatus.pending.value)
        .scalar()
    ) or 0

    high_risk_orders = (
        db.query(func.count())
        .select_from(CheckoutAttempt)
        .filter(finalized_orders, CheckoutAttempt.risk_score >= settings.FRAUD_HIGH_RISK_SCORE)
        .scalar()
    ) or 0

    coupons = db.query(DiscountRule).filter(
        DiscountRule.coupon_code.isnot(None), DiscountRule.is_active.is_(True)
    )
    active_coupons = coupons.count()
    exhausted_coupons = coupons.filter(
        DiscountRule.usage_limit.isnot(None),
        DiscountRule.used_count >= DiscountRule.usage_limit,
    ).count()

    return SystemMetricsResponse(
        uptime_seconds=uptime_seconds,
        now=now,
        requests_count=requests_count,
        avg_response_ms=avg_response_ms,
        checkout_previews=previews,
        checkout_finalized=finalized,
        checkout_conflicts=conflicts,
        conflict_rate=conflict_rate,
        total_orders_today=int(total_orders_today),
        total_orders=int(total_orders),
        average_order_value=average_order_value,
        pending_reviews=int(pending_reviews),
        high_risk_orders=int(high_risk_orders),
        active_coupons=int(active_coupons),
        exhausted_coupons=int(exhausted_coupons),
        extra=None,
    )
