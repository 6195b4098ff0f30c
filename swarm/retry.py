"""Bounded retry of failed task attempts.

After a validation failure the controller decides whether another attempt
is allowed and, if so, builds a RetryContext describing what went wrong.
The context is structured data; the agent adapter decides how to render it
into the next prompt.
"""

import asyncio
from dataclasses import dataclass, field

from swarm.models import (
    BUILD_LAYER,
    CONTRACTS_LAYER,
    REVIEW_LAYER,
    SEMANTIC_LAYER,
    STUB_LAYER,
    ValidationResult,
)

FOCUS_HINTS = {
    STUB_LAYER: "Placeholder code was found. Replace every stub with a working implementation.",
    CONTRACTS_LAYER: "Verification contracts failed. Ensure all test commands pass.",
    BUILD_LAYER: "Build or tests failed. Check for compilation errors and test failures.",
    SEMANTIC_LAYER: "Implementation doesn't match intent. Review the task requirements carefully.",
    REVIEW_LAYER: "Code quality issues detected. Address completeness, correctness, and quality concerns.",
}

GENERIC_HINT = "Review the failure details above and correct the implementation."


@dataclass
class RetryContext:
    """Supplementary context handed to the next attempt of a task.

    Attributes:
        attempt: Number of the attempt this context is for (2 for the first retry)
        previous_failures: Short failure summaries of all earlier attempts
        failure_reason: Reason the most recent attempt failed
        validation_summary: Full summary of the most recent validation
        focus_hint: Heuristic hint derived from the failing layer
    """

    attempt: int
    previous_failures: list[str] = field(default_factory=list)
    failure_reason: str = ""
    validation_summary: str = ""
    focus_hint: str = GENERIC_HINT


@dataclass
class RetryDecision:
    should_retry: bool
    should_escalate: bool
    context: RetryContext | None = None


def focus_hint_for(validation: ValidationResult | None) -> str:
    """Pick the hint matching the layer that stopped the pipeline."""
    if validation is None:
        return GENERIC_HINT
    layer = validation.failed_layer
    if layer is None:
        return GENERIC_HINT
    return FOCUS_HINTS.get(layer.name, GENERIC_HINT)


class RetryController:
    """Decides between another attempt and escalation.

    Args:
        max_attempts: Attempts allowed per round (a round restarts after an
            escalation answered with retry)
        delay_seconds: Pause between attempts
        inject_failure_context: Whether retry contexts carry the validation
            summary and hint, or only the attempt number
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 1.0,
        inject_failure_context: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self.inject_failure_context = inject_failure_context

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after `attempt` failed."""
        return attempt < self.max_attempts

    def on_failure(
        self,
        attempt: int,
        failures: list[str],
        validation: ValidationResult | None = None,
    ) -> RetryDecision:
        """Evaluate a failed attempt.

        Args:
            attempt: Attempt number within the current round (1-based)
            failures: Failure summaries so far, most recent last
            validation: Validation result of the failed attempt, if it got
                that far (agent errors have none)

        Returns:
            RetryDecision with a context when another attempt is allowed
        """
        if not self.should_retry(attempt):
            return RetryDecision(should_retry=False, should_escalate=True)

        reason = failures[-1] if failures else ""
        if validation is not None and validation.failure_reason:
            reason = validation.failure_reason

        context = RetryContext(attempt=attempt + 1, previous_failures=list(failures))
        if self.inject_failure_context:
            context.failure_reason = reason
            context.validation_summary = validation.summary if validation else reason
            context.focus_hint = focus_hint_for(validation)
        return RetryDecision(should_retry=True, should_escalate=False, context=context)

    async def wait(self) -> None:
        """Sleep the configured delay between attempts."""
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
