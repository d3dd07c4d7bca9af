from threading import Lock
from typing import Optional

from app.database.connection import get_session_factory
from app.services.checkout.attempts import SqlAttemptStore
from app.services.checkout.collaborators import SqlCatalog, SqlHistoryProvider, SqlSegmentOracle
from app.services.checkout.ledger import SqlRedemptionLedger
from app.services.checkout.orchestrator import CheckoutService
from app.services.checkout.rule_store import SqlRuleStore

_service: Optional[CheckoutService] = None
_service_lock = Lock()


def build_checkout_service(session_factory) -> CheckoutService:
    """Database-backed checkout engine; every collaborator opens its own sessions."""
    return CheckoutService(
        rule_store=SqlRuleStore(session_factory),
        catalog=SqlCatalog(session_factory),
        segments=SqlSegmentOracle(session_factory),
        history=SqlHistoryProvider(session_factory),
        ledger=SqlRedemptionLedger(session_factory),
        attempts=SqlAttemptStore(session_factory),
    )


def get_checkout_service() -> CheckoutService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_checkout_service(get_session_factory())
        return _service
