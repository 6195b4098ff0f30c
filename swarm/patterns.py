"""Pattern-based verification contract enrichment.

A pattern pairs trigger keywords with extra verification commands. Both
functions here are pure: detection reads the task description and file
boundaries, application returns a new contract.
"""

import copy
from dataclasses import dataclass

from swarm.models import FileConstraints, VerificationCommand, VerificationContract

_SOURCES = "--include='*.go' --include='*.ts' --include='*.js' --include='*.py'"


@dataclass(frozen=True)
class VerificationPattern:
    name: str
    triggers: tuple[str, ...]
    commands: tuple[VerificationCommand, ...] = ()
    must_exist: tuple[str, ...] = ()
    must_not_exist: tuple[str, ...] = ()


def _grep(regex: str, description: str, required: bool = False) -> VerificationCommand:
    return VerificationCommand(
        command=f"grep -rqE '{regex}' {_SOURCES} .",
        description=description,
        required=required,
    )


STANDARD_PATTERNS: tuple[VerificationPattern, ...] = (
    VerificationPattern(
        name="authentication",
        triggers=("auth", "login", "password", "session", "jwt", "token"),
        commands=(
            _grep("bcrypt|argon2|scrypt|pbkdf2", "passwords use a slow hash", True),
            _grep("session.*timeout|token.*expir|jwt.*expir", "tokens expire"),
        ),
    ),
    VerificationPattern(
        name="database_migration",
        triggers=("migration", "schema", "database", "sql"),
        commands=(
            VerificationCommand(
                command="test -d migrations || test -d db/migrations || test -d sql/migrations",
                description="migrations directory exists",
                required=False,
            ),
        ),
    ),
    VerificationPattern(
        name="api_endpoint",
        triggers=("api", "endpoint", "route", "handler", "controller"),
        commands=(
            _grep("validate|sanitize|escape", "request input is validated"),
            _grep("error.*handle|try.*catch|except|panic.*recover", "handler errors are handled"),
        ),
    ),
    VerificationPattern(
        name="configuration",
        triggers=("config", "settings", "environment"),
        commands=(
            VerificationCommand(
                command="test -f config.yaml || test -f config.json || test -f .env.example || test -f config.toml",
                description="configuration template exists",
                required=False,
            ),
        ),
    ),
    VerificationPattern(
        name="testing",
        triggers=("test", "unit test", "integration test"),
        commands=(
            VerificationCommand(
                command="test -d test || test -d tests || test -d __tests__",
                description="test directory exists",
                required=False,
            ),
        ),
    ),
    VerificationPattern(
        name="documentation",
        triggers=("readme", "documentation", "docs"),
        commands=(
            VerificationCommand(command="test -f README.md", description="README exists"),
            VerificationCommand(
                command="test $(wc -l < README.md) -gt 10",
                description="README has content",
                required=False,
            ),
        ),
        must_exist=("README.md",),
    ),
    VerificationPattern(
        name="error_handling",
        triggers=("error", "exception", "panic", "crash"),
        commands=(_grep("try|catch|except|panic|recover|error", "errors are handled"),),
    ),
    VerificationPattern(
        name="logging",
        triggers=("log", "logging", "logger", "audit"),
        commands=(_grep("log\\.|logger\\.|logging\\.", "logging is used"),),
    ),
    VerificationPattern(
        name="security_headers",
        triggers=("security", "headers", "cors", "csp"),
        commands=(
            _grep(
                "X-Frame-Options|Content-Security-Policy|X-Content-Type-Options",
                "security headers are set",
            ),
        ),
    ),
    VerificationPattern(
        name="rate_limiting",
        triggers=("rate limit", "throttle", "rate-limit"),
        commands=(_grep("rate.*limit|throttle|limiter", "rate limiting is implemented"),),
    ),
)


def detect_patterns(
    description: str,
    file_boundaries: list[str] | None = None,
    patterns: tuple[VerificationPattern, ...] = STANDARD_PATTERNS,
) -> list[VerificationPattern]:
    """Return the patterns whose triggers occur in the description or paths.

    Matching is a case-insensitive substring test; each pattern appears at
    most once, in library order.
    """
    haystack = " ".join([description, *(file_boundaries or [])]).lower()
    return [
        pattern
        for pattern in patterns
        if any(trigger in haystack for trigger in pattern.triggers)
    ]


def apply_patterns(
    contract: VerificationContract | None,
    patterns: list[VerificationPattern],
) -> VerificationContract:
    """Return a copy of contract extended with the patterns' checks.

    Commands already present (by command string) are not duplicated.
    Added commands are labelled with the pattern they came from.
    """
    result = copy.deepcopy(contract) if contract else VerificationContract()
    seen = {cmd.command for cmd in result.commands}
    constraints: FileConstraints = result.file_constraints

    for pattern in patterns:
        for command in pattern.commands:
            if command.command in seen:
                continue
            seen.add(command.command)
            added = copy.copy(command)
            label = added.description or added.command
            added.description = f"{label} (pattern: {pattern.name})"
            result.commands.append(added)
        for path in pattern.must_exist:
            if path not in constraints.must_exist:
                constraints.must_exist.append(path)
        for path in pattern.must_not_exist:
            if path not in constraints.must_not_exist:
                constraints.must_not_exist.append(path)

    return result
