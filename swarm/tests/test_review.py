"""Tests for reviewer prompts and response parsing."""

import pytest

from swarm.agent import AgentEvent, AgentEventType
from swarm.models import Task
from swarm.review import (
    MAX_DIFF_CHARS,
    AgentReviewer,
    ReviewInput,
    build_review_prompt,
    build_semantic_prompt,
    parse_review_response,
    parse_semantic_response,
)


class CannedAgent:
    """Agent runner that answers every prompt with a fixed text."""

    def __init__(self, answer: str, prompts: list[str]) -> None:
        self.answer = answer
        self.prompts = prompts

    async def start(self, options):
        self.prompts.append(options.prompt)

    async def events(self):
        yield AgentEvent(AgentEventType.RESULT, text=self.answer, tokens=5)

    async def wait(self):
        return 0

    async def kill(self):
        return None


def review_input(**overrides) -> ReviewInput:
    task = Task(
        id="1",
        title="Add parser",
        description="Parse the config file",
        acceptance_criteria=["Handles empty files", "Rejects bad keys"],
    )
    fields = {"task": task, "diff": "+def parse(): ...", "files": ["parser.py"]}
    fields.update(overrides)
    return ReviewInput(**fields)


class TestParseSemanticResponse:
    """Tests for parse_semantic_response()."""

    def test_pass_with_lists(self):
        verdict = parse_semantic_response(
            "VERDICT: PASS\n"
            "REASONING: Implements the parser\n"
            "CONCERNS: slow on big files; no docs\n"
            "SUGGESTIONS: None\n"
        )

        assert verdict.passed
        assert verdict.reasoning == "Implements the parser"
        assert verdict.concerns == ["slow on big files", "no docs"]
        assert verdict.suggestions == []

    def test_markdown_bold_keys(self):
        verdict = parse_semantic_response("**VERDICT**: FAIL\n**REASONING**: Missing")

        assert not verdict.passed
        assert verdict.reasoning == "Missing"

    def test_missing_verdict_fails(self):
        assert not parse_semantic_response("Looks fine to me").passed

    def test_multiline_reasoning(self):
        verdict = parse_semantic_response("VERDICT: PASS\nREASONING: first\nsecond line")

        assert verdict.reasoning == "first\nsecond line"


class TestParseReviewResponse:
    """Tests for parse_review_response()."""

    RESPONSE = (
        "VERDICT: PASS\n"
        "COMPLETENESS: 9\n"
        "CORRECTNESS: 8/10\n"
        "QUALITY: 12\n"
        "ISSUES:\n"
        "- [MINOR] in [parser.py]: long function | Suggestion: split it\n"
        "- SUGGESTION in README.md: mention parser\n"
        "SUMMARY: Good work overall.\n"
    )

    def test_scores_are_clamped(self):
        review = parse_review_response(self.RESPONSE)

        assert (review.completeness, review.correctness, review.quality) == (9, 8, 10)
        assert review.score == pytest.approx(9.0)

    def test_issues_parsed(self):
        review = parse_review_response(self.RESPONSE)

        assert len(review.issues) == 2
        first = review.issues[0]
        assert (first.severity, first.file, first.description, first.suggestion) == (
            "MINOR",
            "parser.py",
            "long function",
            "split it",
        )
        assert review.issues[1].suggestion == ""
        assert review.passed

    def test_blocking_issue_overrides_pass_verdict(self):
        review = parse_review_response(
            "VERDICT: PASS\nISSUES:\n- [CRITICAL] in db.py: SQL injection\nSUMMARY: risky"
        )

        assert review.verdict_pass
        assert not review.passed
        assert review.blocking_issues[0].file == "db.py"

    def test_no_issues(self):
        review = parse_review_response("VERDICT: FAIL\nISSUES: None\nSUMMARY: incomplete")

        assert review.issues == []
        assert not review.passed


class TestPrompts:
    """Tests for prompt construction."""

    def test_semantic_prompt_includes_task_and_diff(self):
        prompt = build_semantic_prompt(review_input(prior_output="3 passed"))

        assert "**Title**: Add parser" in prompt
        assert "1. Handles empty files" in prompt
        assert "- parser.py" in prompt
        assert "+def parse(): ..." in prompt
        assert "3 passed" in prompt

    def test_review_prompt_truncates_large_diffs(self):
        prompt = build_review_prompt(review_input(diff="x" * (MAX_DIFF_CHARS + 10)))

        assert "... (diff truncated)" in prompt
        assert "x" * (MAX_DIFF_CHARS + 1) not in prompt

    def test_defaults_for_missing_fields(self):
        task = Task(id="2", title="Tidy")
        prompt = build_review_prompt(ReviewInput(task=task, diff="", files=[]))

        assert "None specified" in prompt


class TestAgentReviewer:
    """Tests for AgentReviewer."""

    @pytest.mark.asyncio
    async def test_semantic_runs_fresh_agent(self, tmp_path):
        prompts = []
        reviewer = AgentReviewer(
            lambda: CannedAgent("VERDICT: PASS\nREASONING: ok", prompts), timeout=5
        )

        verdict = await reviewer.semantic(review_input(), str(tmp_path))

        assert verdict.passed
        assert prompts[0].startswith("# Semantic Validation Task")

    @pytest.mark.asyncio
    async def test_review_parses_answer(self, tmp_path):
        prompts = []
        reviewer = AgentReviewer(
            lambda: CannedAgent("VERDICT: FAIL\nQUALITY: 3\nSUMMARY: messy", prompts)
        )

        review = await reviewer.review(review_input(), str(tmp_path))

        assert not review.passed
        assert review.quality == 3
        assert prompts[0].startswith("# Code Review Task")
