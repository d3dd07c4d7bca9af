from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime


class HealthCheckResponse(BaseModel):
    status: str
    now: datetime
    uptime_seconds: float
    db_ok: bool
    extra: Optional[Dict[str, Any]] = None


class SystemMetricsResponse(BaseModel):
    uptime_seconds: float
    now: datetime

    # middleware counters
    requests_count: int
    avg_response_ms: Optional[float] = None

    # checkout counters (in-process)
    checkout_previews: int = 0
    checkout_finalized: int = 0
    checkout_conflicts: int = 0
    conflict_rate: Optional[float] = None

    # DB metrics
    total_orders_today: int
    total_orders: int
    average_order_value: Optional[float] = None
    pending_reviews: int = 0
    high_risk_orders: int = 0
    active_coupons: int = 0
    exhausted_coupons: int = 0

    # optional arbitrary metrics map
    extra: Optional[Dict[str, Any]] = None
