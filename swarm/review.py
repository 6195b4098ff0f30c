"""Reviewer-agent prompts and response parsing.

Two reviewer passes back the top validation layers: a semantic check that
the change matches the task's intent, and a code review scoring
completeness, correctness and quality. Both ask the agent for a fixed
line-oriented response grammar that is parsed here.
"""

import logging
import re
from dataclasses import dataclass, field

from swarm.agent import AgentRunnerFactory, AgentStartOptions, run_agent
from swarm.models import Task

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 60_000

SEMANTIC_PROMPT = """# Semantic Validation Task

Decide whether the implementation below actually does what the task asks.
Ignore style; judge intent only.

## Task Information

**Title**: {title}

**Description**:
{description}

## Acceptance Criteria

{criteria}

## Modified Files

{files}

## Changes

```
{diff}
```

## Verification Test Results

```
{prior_output}
```

## Response Format

VERDICT: PASS or FAIL
REASONING: why the change does or does not meet the intent
CONCERNS: semicolon-separated concerns, or None
SUGGESTIONS: semicolon-separated suggestions, or None
"""

REVIEW_PROMPT = """# Code Review Task

You are performing a detailed code review to ensure the implementation meets
all acceptance criteria and quality standards.

## Task Context

**Task**: {title}

**Description**:
{description}

**Acceptance Criteria**:
{criteria}

## Implementation Review

**Files Modified**:
{files}

**Code Changes**:
```
{diff}
```

**Test Results**:
```
{prior_output}
```

## Review Guidelines

Evaluate the implementation across these dimensions:

1. **Completeness** (0-10): Are all acceptance criteria fully addressed?
2. **Correctness** (0-10): Is the implementation correct and bug-free?
3. **Quality** (0-10): Is the code clean, maintainable, and well-structured?

Check for missing functionality, logic errors, security vulnerabilities,
unhandled edge cases and poor error handling.

## Response Format

VERDICT: PASS or FAIL
COMPLETENESS: 0-10
CORRECTNESS: 0-10
QUALITY: 0-10
ISSUES:
- [SEVERITY] in [FILE]: [DESCRIPTION] | Suggestion: [SUGGESTION]
(Repeat for each issue, or write None if there are no issues)
SUMMARY: 2-3 sentence overall assessment

Severity levels: CRITICAL, MAJOR, MINOR, SUGGESTION
PASS if all acceptance criteria are met and there are no critical or major
issues. FAIL otherwise.
"""

_KEYS = (
    "VERDICT",
    "REASONING",
    "CONCERNS",
    "SUGGESTIONS",
    "COMPLETENESS",
    "CORRECTNESS",
    "QUALITY",
    "ISSUES",
    "SUMMARY",
)
_KEY_RE = re.compile(r"^\s*\**(" + "|".join(_KEYS) + r")\**\s*:\s*(.*)$", re.IGNORECASE)
_ISSUE_RE = re.compile(
    r"^[-*]\s*\[?(CRITICAL|MAJOR|MINOR|SUGGESTION)\]?\s+in\s+\[?(.+?)\]?\s*:\s*(.*?)"
    r"(?:\s*\|\s*Suggestion:\s*(.*))?$",
    re.IGNORECASE,
)

BLOCKING_SEVERITIES = ("CRITICAL", "MAJOR")


@dataclass
class ReviewInput:
    """Everything a reviewer sees about one attempt."""

    task: Task
    diff: str
    files: list[str]
    prior_output: str = ""


@dataclass
class SemanticVerdict:
    passed: bool
    reasoning: str = ""
    concerns: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass
class ReviewIssue:
    severity: str
    file: str
    description: str
    suggestion: str = ""


@dataclass
class CodeReview:
    """Parsed code review.

    Attributes:
        verdict_pass: Whether the reviewer answered VERDICT: PASS
        issues: Reported issues; CRITICAL or MAJOR ones block the review
    """

    verdict_pass: bool
    completeness: int = 0
    correctness: int = 0
    quality: int = 0
    issues: list[ReviewIssue] = field(default_factory=list)
    summary: str = ""

    @property
    def blocking_issues(self) -> list[ReviewIssue]:
        return [i for i in self.issues if i.severity in BLOCKING_SEVERITIES]

    @property
    def passed(self) -> bool:
        return self.verdict_pass and not self.blocking_issues

    @property
    def score(self) -> float:
        return (self.completeness + self.correctness + self.quality) / 3


def _sections(text: str) -> dict[str, str]:
    """Split a response into KEY -> value, values may span several lines."""
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.splitlines():
        match = _KEY_RE.match(line)
        if match:
            current = match.group(1).upper()
            sections[current] = [match.group(2).strip()]
        elif current is not None:
            sections[current].append(line.rstrip())
    return {key: "\n".join(lines).strip() for key, lines in sections.items()}


def _split_list(value: str) -> list[str]:
    if not value or value.strip().rstrip(".").lower() == "none":
        return []
    return [item.strip() for item in value.split(";") if item.strip()]


def _verdict(value: str) -> bool:
    return value.strip().strip("*[]").upper().startswith("PASS")


def _score(value: str) -> int:
    match = re.search(r"\d+", value or "")
    if not match:
        return 0
    return max(0, min(10, int(match.group())))


def parse_semantic_response(text: str) -> SemanticVerdict:
    """Parse a VERDICT/REASONING/CONCERNS/SUGGESTIONS response.

    A response without a recognisable VERDICT line is a failure.
    """
    sections = _sections(text)
    return SemanticVerdict(
        passed=_verdict(sections.get("VERDICT", "")),
        reasoning=sections.get("REASONING", ""),
        concerns=_split_list(sections.get("CONCERNS", "")),
        suggestions=_split_list(sections.get("SUGGESTIONS", "")),
    )


def parse_review_response(text: str) -> CodeReview:
    """Parse a code review response including its ISSUES list."""
    sections = _sections(text)
    issues = []
    for line in sections.get("ISSUES", "").splitlines():
        match = _ISSUE_RE.match(line.strip())
        if match:
            issues.append(
                ReviewIssue(
                    severity=match.group(1).upper(),
                    file=match.group(2).strip(),
                    description=match.group(3).strip(),
                    suggestion=(match.group(4) or "").strip(),
                )
            )
    return CodeReview(
        verdict_pass=_verdict(sections.get("VERDICT", "")),
        completeness=_score(sections.get("COMPLETENESS", "")),
        correctness=_score(sections.get("CORRECTNESS", "")),
        quality=_score(sections.get("QUALITY", "")),
        issues=issues,
        summary=sections.get("SUMMARY", ""),
    )


def _prompt_fields(review_input: ReviewInput) -> dict[str, str]:
    task = review_input.task
    diff = review_input.diff
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"
    criteria = "\n".join(
        f"{i}. {criterion}" for i, criterion in enumerate(task.acceptance_criteria, 1)
    )
    return {
        "title": task.title,
        "description": task.description or task.title,
        "criteria": criteria or "None specified",
        "files": "\n".join(f"- {f}" for f in review_input.files) or "None",
        "diff": diff,
        "prior_output": review_input.prior_output or "None",
    }


def build_semantic_prompt(review_input: ReviewInput) -> str:
    return SEMANTIC_PROMPT.format(**_prompt_fields(review_input))


def build_review_prompt(review_input: ReviewInput) -> str:
    return REVIEW_PROMPT.format(**_prompt_fields(review_input))


class AgentReviewer:
    """Runs reviewer prompts through fresh agent runners.

    Args:
        factory: Creates one AgentRunner per review
        model: Model identifier for reviewer agents
        timeout: Seconds before a reviewer agent is killed
    """

    def __init__(
        self,
        factory: AgentRunnerFactory,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.factory = factory
        self.model = model
        self.timeout = timeout

    async def _ask(self, prompt: str, workdir: str) -> str:
        result = await run_agent(
            self.factory(),
            AgentStartOptions(prompt=prompt, workdir=workdir, model=self.model),
            timeout=self.timeout,
        )
        return result.output

    async def semantic(self, review_input: ReviewInput, workdir: str) -> SemanticVerdict:
        response = await self._ask(build_semantic_prompt(review_input), workdir)
        verdict = parse_semantic_response(response)
        logger.debug("Semantic verdict for %s: %s", review_input.task.id, verdict.passed)
        return verdict

    async def review(self, review_input: ReviewInput, workdir: str) -> CodeReview:
        response = await self._ask(build_review_prompt(review_input), workdir)
        review = parse_review_response(response)
        logger.debug("Code review for %s: score %.1f", review_input.task.id, review.score)
        return review
