"""
Metered Operations - Wraps an AI call in estimate, gate, perform, record.

Usage:
    operation = MeteredOperation(
        usage_service,
        context,
        endpoint="/api/refine",
        feature="refine",
        operation=OperationType.REFINE,
        text_length=len(prompt),
    )
    result = await operation.run(call_model, actual_tokens=lambda r: r.total_tokens)

Callers that perform the AI call elsewhere use the steps directly:
admit() before the call, then complete() or fail() once it has finished.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.config import settings
from app.exceptions import LimitExceededError
from app.models.api import OperationType
from app.models.domain import BillingContext, EnforcementResult, UsageEventIntent
from app.observability import get_logger, get_tracer, traced_span
from app.services.estimation import estimate_token_usage, resolve_model
from app.services.usage import UsageService

logger = get_logger(__name__)
tracer = get_tracer(__name__)

T = TypeVar("T")


def failed_feature(feature: str) -> str:
    """Feature label recorded for the failure tax."""
    return f"{feature}_failed"


def failure_intent(
    endpoint: str, feature: str, model: str, request_id: str | None = None
) -> UsageEventIntent:
    """The flat charge for an AI call that was attempted and failed."""
    return UsageEventIntent(
        endpoint=endpoint,
        tokens_used=settings.failure_tax_tokens,
        model_used=model,
        feature_used=failed_feature(feature),
        request_id=request_id,
    )


class MeteredOperation:
    """
    One metered request.

    A denied gate raises LimitExceededError before the call is made. A
    failing call is charged the flat failure tax and the exception
    propagates. Cancellation (e.g. a timeout) is not charged.
    """

    def __init__(
        self,
        usage_service: UsageService,
        context: BillingContext,
        *,
        endpoint: str,
        feature: str,
        operation: OperationType,
        text_length: int = 0,
        model: str | None = None,
        request_id: str | None = None,
    ) -> None:
        self.usage_service = usage_service
        self.context = context
        self.endpoint = endpoint
        self.feature = feature
        self.model = resolve_model(model).name
        self.request_id = request_id
        self.estimated_tokens = estimate_token_usage(operation, text_length, self.model)

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        actual_tokens: Callable[[T], int | None] | None = None,
    ) -> T:
        await self.admit()

        try:
            with traced_span(tracer, "metered.call", feature=self.feature, model=self.model):
                result = await call()
        except Exception as e:
            await self.fail(type(e).__name__)
            raise

        await self.complete(actual_tokens(result) if actual_tokens is not None else None)
        return result

    async def admit(self) -> EnforcementResult:
        """
        Run the gate for the estimate.

        Raises:
            LimitExceededError: The estimate would exceed the plan limit
        """
        gate = await self.usage_service.enforce_usage_limit(self.estimated_tokens, self.context)
        if not gate.allowed:
            raise LimitExceededError(gate)
        return gate

    async def complete(self, tokens: int | None = None) -> None:
        """Record the reported token count, or the estimate when none was reported."""
        await self._record(
            UsageEventIntent(
                endpoint=self.endpoint,
                tokens_used=tokens if tokens is not None else self.estimated_tokens,
                model_used=self.model,
                feature_used=self.feature,
                request_id=self.request_id,
            )
        )

    async def fail(self, error_type: str) -> None:
        logger.warning(
            "metered_operation_failed",
            user_id=str(self.context.user_id),
            feature=self.feature,
            error_type=error_type,
        )
        await self._record(
            failure_intent(self.endpoint, self.feature, self.model, self.request_id)
        )

    async def _record(self, intent: UsageEventIntent) -> None:
        await self.usage_service.record_usage(intent, self.context)
