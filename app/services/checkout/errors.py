from typing import Optional


class CheckoutError(Exception):
    """Base class for checkout engine errors."""


class ValidationError(CheckoutError):
    """Bad input: empty cart, unknown product, unknown or expired coupon. Not retryable."""


class RuleConflictError(CheckoutError):
    """The quote changed between preview and finalize; the caller must re-preview.

    ``repriced`` carries the preview resolved against the current rule state so
    the caller can re-offer the lower discount instead of silently charging more.
    """

    def __init__(self, message: str, failed_rule_id: Optional[int] = None, repriced=None):
        super().__init__(message)
        self.failed_rule_id = failed_rule_id
        self.repriced = repriced


class DependencyTimeoutError(CheckoutError):
    """An external lookup timed out or failed. ``resolve_order`` is safe to retry."""

    def __init__(self, dependency: str, message: Optional[str] = None):
        super().__init__(message or f"{dependency} lookup failed or timed out")
        self.dependency = dependency


class RedemptionFailure(CheckoutError):
    """A compare-and-increment lost its race; the whole redemption was rolled back."""

    def __init__(self, failed_rule_id: int):
        super().__init__(f"Usage limit reached for discount rule {failed_rule_id}")
        self.failed_rule_id = failed_rule_id
