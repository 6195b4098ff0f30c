"""Staged validation of a task attempt.

Layers run in order and the pipeline stops at the first failing layer:

1. Stub Detection: placeholder markers in modified files
2. Verification Contracts: the task's commands and file constraints
3. Build + Tests: detected project build and test commands
4. Semantic Validation: reviewer agent judges intent
5. Code Review: reviewer agent scores the change

Layers that are not configured pass as skipped. Every layer runs under
its own timeout.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from swarm.contracts import ContractRunner
from swarm.errors import AgentError
from swarm.models import (
    BUILD_LAYER,
    CONTRACTS_LAYER,
    REVIEW_LAYER,
    SEMANTIC_LAYER,
    STUB_LAYER,
    LayerResult,
    Task,
    ValidationResult,
)
from swarm.patterns import apply_patterns, detect_patterns
from swarm.review import AgentReviewer, ReviewInput
from swarm.shell import ShellRunner

logger = logging.getLogger(__name__)

SUMMARY_DETAIL_CHARS = 200
OUTPUT_TAIL_CHARS = 4000
MAX_STUB_SCAN_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class ProjectType:
    name: str
    manifests: tuple[str, ...]
    build_command: str
    test_command: str


PROJECT_TYPES: tuple[ProjectType, ...] = (
    ProjectType("go", ("go.mod",), "go build ./...", "go test ./..."),
    ProjectType("node", ("package.json",), "npm run build --if-present", "npm test"),
    ProjectType("rust", ("Cargo.toml",), "cargo build", "cargo test"),
    ProjectType(
        "python",
        ("pyproject.toml", "setup.py", "requirements.txt"),
        "python -m compileall -q .",
        "python -m pytest -q",
    ),
)


def detect_project(workdir: str | Path) -> ProjectType | None:
    """Return the first project type whose manifest exists in workdir."""
    root = Path(workdir)
    for project in PROJECT_TYPES:
        if any((root / manifest).exists() for manifest in project.manifests):
            return project
    return None


@dataclass
class ValidationInput:
    """One attempt's candidate change.

    Attributes:
        task: Task being validated
        workspace_path: Worktree holding the change
        diff: Diff against the session branch
        files: Files the change touches
        baseline_commit: Session-start commit, read-only reference
    """

    task: Task
    workspace_path: Path
    diff: str = ""
    files: list[str] = field(default_factory=list)
    baseline_commit: str | None = None


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


def format_summary(
    layers: list[LayerResult], failure_reason: str | None, duration: float
) -> str:
    """Human-readable multi-line summary of a validation run."""
    lines = []
    for index, layer in enumerate(layers, 1):
        status = "PASS" if layer.passed else "FAIL"
        if layer.skipped:
            status += " (skipped)"
        lines.append(
            f"Layer {index} ({layer.name}): {status} [{layer.duration_seconds:.1f}s]"
        )
        if layer.score is not None:
            lines.append(f"  Score: {layer.score:.1f}/10")
        details = layer.error or layer.output
        if details:
            details = " ".join(details.split())
            if len(details) > SUMMARY_DETAIL_CHARS:
                details = details[:SUMMARY_DETAIL_CHARS] + "..."
            lines.append(f"  Details: {details}")
    if failure_reason:
        lines.append(f"Validation failed: {failure_reason}")
    lines.append(f"Total Duration: {duration:.1f}s")
    return "\n".join(lines)


LayerFn = Callable[[ValidationInput, list[str]], Awaitable[LayerResult]]


class ValidationPipeline:
    """Runs the validation layers for task attempts.

    Args:
        shell: Runs build and test commands
        contract_runner: Runs verification contracts
        reviewer: Reviewer agent; None skips the semantic and review layers
        stub_patterns: Markers that fail the stub layer
        build_timeout: Shared deadline for build plus tests
        layer_timeout: Per-layer timeout
        enrich_contracts: Extend contracts with detected standard patterns
    """

    def __init__(
        self,
        shell: ShellRunner,
        contract_runner: ContractRunner | None = None,
        reviewer: AgentReviewer | None = None,
        stub_patterns: list[str] | None = None,
        build_timeout: float = 600.0,
        layer_timeout: float = 900.0,
        enrich_contracts: bool = False,
    ) -> None:
        self.shell = shell
        self.contract_runner = contract_runner or ContractRunner(shell)
        self.reviewer = reviewer
        self.stub_patterns = stub_patterns or []
        self.build_timeout = build_timeout
        self.layer_timeout = layer_timeout
        self.enrich_contracts = enrich_contracts

    @property
    def layers(self) -> list[tuple[str, LayerFn]]:
        return [
            (STUB_LAYER, self._stub_layer),
            (CONTRACTS_LAYER, self._contracts_layer),
            (BUILD_LAYER, self._build_layer),
            (SEMANTIC_LAYER, self._semantic_layer),
            (REVIEW_LAYER, self._review_layer),
        ]

    async def validate(self, validation_input: ValidationInput) -> ValidationResult:
        """Run every layer until one fails.

        Returns:
            ValidationResult containing each layer that ran
        """
        started = time.monotonic()
        results: list[LayerResult] = []
        # Outputs of passed layers, handed to the reviewer layers
        prior_outputs: list[str] = []
        failure_reason = None

        for index, (name, layer_fn) in enumerate(self.layers, 1):
            result = await self._run_layer(name, layer_fn, validation_input, prior_outputs)
            results.append(result)
            if not result.passed:
                detail = result.error or next(iter(result.output.strip().splitlines()), "")
                failure_reason = f"Layer {index} ({name}) failed"
                if detail:
                    failure_reason += f": {detail}"
                break
            if result.output and not result.skipped:
                prior_outputs.append(f"{name}:\n{result.output}")

        duration = time.monotonic() - started
        passed = failure_reason is None
        logger.info(
            "Validation of %s %s in %.1fs",
            validation_input.task.id,
            "passed" if passed else "failed",
            duration,
        )
        return ValidationResult(
            passed=passed,
            layers=results,
            summary=format_summary(results, failure_reason, duration),
            failure_reason=failure_reason,
            duration_seconds=duration,
        )

    async def _run_layer(
        self,
        name: str,
        layer_fn: LayerFn,
        validation_input: ValidationInput,
        prior_outputs: list[str],
    ) -> LayerResult:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                layer_fn(validation_input, prior_outputs), self.layer_timeout
            )
        except asyncio.TimeoutError:
            result = LayerResult(
                name=name,
                passed=False,
                error=f"timed out after {self.layer_timeout:.0f}s",
            )
        result.duration_seconds = time.monotonic() - started
        return result

    async def _stub_layer(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> LayerResult:
        if not self.stub_patterns:
            return LayerResult(STUB_LAYER, passed=True, output="(skipped)", skipped=True)

        findings = []
        for relative in validation_input.files:
            path = validation_input.workspace_path / relative
            if not path.is_file() or path.stat().st_size > MAX_STUB_SCAN_BYTES:
                continue
            content = path.read_text(errors="ignore")
            for pattern in self.stub_patterns:
                if pattern in content:
                    findings.append(f"stub pattern {pattern!r} found in {relative}")

        if findings:
            return LayerResult(
                STUB_LAYER,
                passed=False,
                output="\n".join(findings),
                error=findings[0],
            )
        return LayerResult(
            STUB_LAYER,
            passed=True,
            output=f"No stub patterns in {len(validation_input.files)} files",
        )

    async def _contracts_layer(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> LayerResult:
        task = validation_input.task
        contract = task.contract
        if self.enrich_contracts:
            patterns = detect_patterns(task.description, task.file_boundaries)
            if patterns:
                contract = apply_patterns(contract, patterns)

        constraints = contract.file_constraints if contract else None
        has_constraints = constraints is not None and (
            constraints.must_exist or constraints.must_not_exist
        )
        if contract is None or (not contract.commands and not has_constraints):
            return LayerResult(
                CONTRACTS_LAYER, passed=True, output="(skipped)", skipped=True
            )

        result = await self.contract_runner.run(contract, validation_input.workspace_path)
        summary = result.summary()
        error = None
        if not result.passed:
            failed = [
                r.command.description or r.command.command
                for r in result.commands
                if not r.passed and r.command.required
            ]
            error = "; ".join(failed + result.constraint_failures)
        return LayerResult(CONTRACTS_LAYER, passed=result.passed, output=summary, error=error)

    async def _build_layer(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> LayerResult:
        workdir = validation_input.workspace_path
        project = detect_project(workdir)
        if project is None:
            return LayerResult(
                BUILD_LAYER,
                passed=True,
                output="(skipped) no recognised project manifest",
                skipped=True,
            )

        deadline = time.monotonic() + self.build_timeout
        outputs = []
        for label, command in (
            ("build", project.build_command),
            ("test", project.test_command),
        ):
            remaining = max(deadline - time.monotonic(), 1.0)
            process = await self.shell.run(command, workdir, remaining)
            outputs.append(f"$ {command}\n{_tail(process.output)}")
            if process.timed_out:
                return LayerResult(
                    BUILD_LAYER,
                    passed=False,
                    output="\n".join(outputs),
                    error=f"{project.name} {label} timed out",
                )
            if process.returncode != 0:
                return LayerResult(
                    BUILD_LAYER,
                    passed=False,
                    output="\n".join(outputs),
                    error=f"{project.name} {label} failed (exit {process.returncode})",
                )
        return LayerResult(BUILD_LAYER, passed=True, output="\n".join(outputs))

    def _review_input(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> ReviewInput:
        return ReviewInput(
            task=validation_input.task,
            diff=validation_input.diff,
            files=validation_input.files,
            prior_output=_tail("\n\n".join(prior_outputs)),
        )

    async def _semantic_layer(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> LayerResult:
        if self.reviewer is None:
            return LayerResult(SEMANTIC_LAYER, passed=True, output="(skipped)", skipped=True)
        try:
            verdict = await self.reviewer.semantic(
                self._review_input(validation_input, prior_outputs),
                str(validation_input.workspace_path),
            )
        except AgentError as e:
            return LayerResult(
                SEMANTIC_LAYER,
                passed=False,
                error=f"Error during semantic validation: {e}",
            )
        output = (
            f"Reasoning: {verdict.reasoning}\n"
            f"Concerns: {'; '.join(verdict.concerns) or 'None'}\n"
            f"Suggestions: {'; '.join(verdict.suggestions) or 'None'}"
        )
        error = None
        if not verdict.passed:
            error = "; ".join(verdict.concerns) or verdict.reasoning or "verdict FAIL"
        return LayerResult(SEMANTIC_LAYER, passed=verdict.passed, output=output, error=error)

    async def _review_layer(
        self, validation_input: ValidationInput, prior_outputs: list[str]
    ) -> LayerResult:
        if self.reviewer is None:
            return LayerResult(REVIEW_LAYER, passed=True, output="(skipped)", skipped=True)
        try:
            review = await self.reviewer.review(
                self._review_input(validation_input, prior_outputs),
                str(validation_input.workspace_path),
            )
        except AgentError as e:
            return LayerResult(
                REVIEW_LAYER, passed=False, error=f"Error during code review: {e}"
            )
        issue_lines = [
            f"[{issue.severity}] {issue.file}: {issue.description}"
            for issue in review.issues
        ]
        output = (
            f"Score: {review.score:.1f}/10 (Completeness: {review.completeness}, "
            f"Correctness: {review.correctness}, Quality: {review.quality})\n"
            f"Issues: {len(review.issues)}\n" + "\n".join(issue_lines) + "\n"
            f"Summary: {review.summary}"
        )
        error = None
        if not review.passed:
            blocking = review.blocking_issues
            if blocking:
                error = "; ".join(
                    f"{i.severity} in {i.file}: {i.description}" for i in blocking
                )
            else:
                error = review.summary or "verdict FAIL"
        return LayerResult(
            REVIEW_LAYER,
            passed=review.passed,
            output=output,
            score=review.score,
            error=error,
        )
