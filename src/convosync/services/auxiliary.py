"""Best-effort side steps that must never fail a sync."""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from convosync.models.progress import StepFailed, StepOutcome, StepSucceeded

BillingReconciler = Callable[[], Awaitable[Any]]


async def run_auxiliary_step(
    name: str,
    step: Callable[[], Awaitable[Any]],
    logger: structlog.stdlib.BoundLogger | None = None,
) -> StepOutcome:
    """Run ``step`` and capture its result or error instead of raising."""
    log = logger or structlog.get_logger(__name__)
    try:
        value = await step()
    except Exception as exc:
        log.warning("auxiliary_step_failed", step=name, error=str(exc))
        return StepFailed(name=name, error=str(exc))
    log.debug("auxiliary_step_succeeded", step=name)
    return StepSucceeded(name=name, value=value)
