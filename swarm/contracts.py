"""Verification contract execution.

Runs a task's contract commands in its workspace and evaluates file
constraints. Used as the second layer of the validation pipeline.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path

from swarm.models import FileConstraints, VerificationCommand, VerificationContract
from swarm.shell import ShellRunner

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0

_EXIT_RE = re.compile(r"^exit\s+(-?\d+)$", re.IGNORECASE)
_CONTAINS_RE = re.compile(r"^output contains\s+(.+)$", re.IGNORECASE | re.DOTALL)


@dataclass
class CommandResult:
    command: VerificationCommand
    passed: bool
    output: str
    exit_code: int
    duration_seconds: float
    reason: str = ""


@dataclass
class ContractResult:
    """Outcome of running a whole contract."""

    passed: bool
    commands: list[CommandResult] = field(default_factory=list)
    constraint_failures: list[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = []
        for result in self.commands:
            status = "PASS" if result.passed else "FAIL"
            label = result.command.description or result.command.command
            optional = "" if result.command.required else " (optional)"
            line = f"[{status}] {label}{optional}"
            if not result.passed and result.reason:
                line += f": {result.reason}"
            lines.append(line)
        lines.extend(f"[FAIL] {failure}" for failure in self.constraint_failures)
        return "\n".join(lines) if lines else "No checks defined"


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def check_expectation(expect: str, exit_code: int, output: str) -> tuple[bool, str]:
    """Compare a command outcome to its expectation string.

    Returns:
        (passed, reason) where reason explains a mismatch
    """
    expect = expect.strip()
    match = _EXIT_RE.match(expect)
    if match:
        wanted = int(match.group(1))
        if exit_code == wanted:
            return True, ""
        return False, f"expected exit {wanted}, got {exit_code}"

    match = _CONTAINS_RE.match(expect)
    if match:
        needle = _unquote(match.group(1))
        if needle in output:
            return True, ""
        return False, f"output does not contain {needle!r}"

    if exit_code == 0:
        return True, ""
    return False, f"exit code {exit_code}"


def _has_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def check_file_constraints(constraints: FileConstraints, workdir: str | Path) -> list[str]:
    """Evaluate must_exist and must_not_exist relative to workdir.

    must_not_change is accepted but not evaluated.

    Returns:
        Human-readable failure messages; empty when all constraints hold
    """
    root = Path(workdir)
    failures = []

    for pattern in constraints.must_exist:
        if _has_glob(pattern):
            if not any(root.glob(pattern)):
                failures.append(f"no file matches required pattern {pattern}")
        elif not (root / pattern).exists():
            failures.append(f"required file missing: {pattern}")

    for pattern in constraints.must_not_exist:
        if _has_glob(pattern):
            matches = sorted(str(p.relative_to(root)) for p in root.glob(pattern))
            if matches:
                failures.append(
                    f"forbidden pattern {pattern} matched: {', '.join(matches)}"
                )
        elif (root / pattern).exists():
            failures.append(f"forbidden file exists: {pattern}")

    if constraints.must_not_change:
        logger.debug(
            "must_not_change constraints are not evaluated: %s",
            ", ".join(constraints.must_not_change),
        )

    return failures


class ContractRunner:
    """Executes verification contracts through a ShellRunner."""

    def __init__(
        self, shell: ShellRunner, default_timeout: float = DEFAULT_COMMAND_TIMEOUT
    ) -> None:
        self.shell = shell
        self.default_timeout = default_timeout

    async def run(self, contract: VerificationContract, workdir: str | Path) -> ContractResult:
        """Run every command, then check file constraints.

        A failing required command or any constraint failure fails the
        contract; failing optional commands are only recorded.
        """
        results = []
        passed = True
        for command in contract.commands:
            result = await self._run_command(command, workdir)
            results.append(result)
            if not result.passed and command.required:
                passed = False

        failures = check_file_constraints(contract.file_constraints, workdir)
        if failures:
            passed = False

        return ContractResult(passed=passed, commands=results, constraint_failures=failures)

    async def _run_command(
        self, command: VerificationCommand, workdir: str | Path
    ) -> CommandResult:
        timeout = command.timeout_seconds or self.default_timeout
        started = time.monotonic()
        process = await self.shell.run(command.command, workdir, timeout)
        duration = time.monotonic() - started

        if process.timed_out:
            return CommandResult(
                command=command,
                passed=False,
                output=process.output,
                exit_code=process.returncode,
                duration_seconds=duration,
                reason=f"timed out after {timeout:.0f}s",
            )

        ok, reason = check_expectation(command.expect, process.returncode, process.output)
        return CommandResult(
            command=command,
            passed=ok,
            output=process.output,
            exit_code=process.returncode,
            duration_seconds=duration,
            reason=reason,
        )
