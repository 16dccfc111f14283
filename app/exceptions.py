"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from app.models.domain import EnforcementResult


class BillingError(Exception):
    """Base exception for all metering and billing errors."""

    pass


class ConfigurationError(BillingError):
    """Raised when the deployment lacks required billing data (e.g. no default plan)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Billing configuration error: {message}")


class LimitExceededError(BillingError):
    """Raised when a metered operation is denied by the enforcement gate."""

    def __init__(self, result: EnforcementResult) -> None:
        self.result = result
        super().__init__(result.message or "Usage limit exceeded")


class RecordingFailure(BillingError):
    """Raised internally when a usage event cannot be appended."""

    def __init__(self, user_id: UUID, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Failed to record token usage for {user_id}: {reason}")


class ResolutionFailure(BillingError):
    """Raised when a subscription cannot be read or created for a user."""

    def __init__(self, user_id: UUID, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Unable to resolve subscription for {user_id}: {reason}")


class PlanNotFoundError(BillingError):
    """Raised when a plan doesn't exist or is no longer active."""

    def __init__(self, plan_id: UUID) -> None:
        self.plan_id = plan_id
        super().__init__(f"Subscription plan not found or inactive: {plan_id}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class AuthenticationError(BillingError):
    """Raised when a bearer token is missing or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(BillingError):
    """Raised when user lacks the role required for a scope."""

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: {required_role} privileges required")


class ScopeNotFoundError(BillingError):
    """Raised when an organization or team referenced by a report doesn't exist."""

    def __init__(self, scope: str, scope_id: UUID) -> None:
        self.scope = scope
        self.scope_id = scope_id
        super().__init__(f"{scope.capitalize()} not found: {scope_id}")
