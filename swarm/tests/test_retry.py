"""Tests for the retry controller."""

import pytest

from swarm.agent import build_task_prompt, render_retry_context
from swarm.models import STUB_LAYER, LayerResult, Task, ValidationResult
from swarm.retry import FOCUS_HINTS, GENERIC_HINT, RetryContext, RetryController


def failed_validation(layer: str = STUB_LAYER) -> ValidationResult:
    return ValidationResult(
        passed=False,
        layers=[LayerResult(layer, passed=False, error="stub found")],
        summary=f"Layer 1 ({layer}): FAIL",
        failure_reason=f"Layer 1 ({layer}) failed: stub found",
    )


class TestRetryController:
    """Tests for RetryController.on_failure()."""

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryController(max_attempts=0)

    def test_retry_allowed_below_limit(self):
        controller = RetryController(max_attempts=3)

        decision = controller.on_failure(1, ["stub found"], failed_validation())

        assert decision.should_retry
        assert not decision.should_escalate
        assert decision.context.attempt == 2
        assert decision.context.failure_reason == "Layer 1 (Stub Detection) failed: stub found"
        assert decision.context.focus_hint == FOCUS_HINTS[STUB_LAYER]

    def test_escalates_at_limit(self):
        controller = RetryController(max_attempts=2)

        decision = controller.on_failure(2, ["a", "b"], failed_validation())

        assert not decision.should_retry
        assert decision.should_escalate
        assert decision.context is None

    def test_single_attempt_escalates_immediately(self):
        decision = RetryController(max_attempts=1).on_failure(1, ["boom"])

        assert decision.should_escalate

    def test_agent_error_without_validation(self):
        decision = RetryController().on_failure(1, ["Agent timed out after 60s"])

        context = decision.context
        assert context.failure_reason == "Agent timed out after 60s"
        assert context.validation_summary == "Agent timed out after 60s"
        assert context.focus_hint == GENERIC_HINT

    def test_context_injection_disabled(self):
        controller = RetryController(inject_failure_context=False)

        context = controller.on_failure(1, ["boom"], failed_validation()).context

        assert context.attempt == 2
        assert context.failure_reason == ""
        assert context.previous_failures == ["boom"]

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_sleep(self):
        await RetryController(delay_seconds=0).wait()


class TestRetryPrompt:
    """Retry context rendering in the coding prompt."""

    def test_first_attempt_has_no_retry_section(self):
        prompt = build_task_prompt(Task(id="1", title="Add cache"))

        assert prompt.startswith("# Task: Add cache")
        assert "## Retry" not in prompt

    def test_retry_section_lists_history(self):
        context = RetryContext(
            attempt=3,
            previous_failures=["first failure", "second failure"],
            failure_reason="second failure",
            focus_hint="Fix the tests.",
        )

        text = render_retry_context(context)

        assert text.startswith("## Retry (attempt 3)")
        assert "Previous attempt failed: second failure" in text
        assert "Earlier failures:\n- first failure" in text
        assert "- second failure" not in text
        assert text.endswith("Focus on: Fix the tests.")

    def test_prompt_includes_boundaries_and_criteria(self):
        task = Task(
            id="1",
            title="Add cache",
            description="LRU cache for lookups",
            acceptance_criteria=["evicts oldest"],
            file_boundaries=["cache.py"],
        )

        prompt = build_task_prompt(task, RetryContext(attempt=2, previous_failures=["x"]))

        assert "- evicts oldest" in prompt
        assert "## Files you may modify\n- cache.py" in prompt
        assert "## Retry (attempt 2)" in prompt
        assert "Earlier failures" not in prompt
