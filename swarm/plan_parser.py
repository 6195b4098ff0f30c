"""Plan parser for markdown task plans.

Parses markdown plan files into Task seeds so a session can run a
hand-written plan without an LLM decomposition step. Handles various
markdown formats with lenient parsing.

Recognised task section:

    ## Task 1.2: Add login endpoint

    **Description:** What to build.
    **Files:** `app/auth.py`, `tests/test_auth.py`
    **Depends on:** 1.1
    **Acceptance Criteria:**
    - [ ] POST /login returns a token
"""

import re
from pathlib import Path

from swarm.models import Task

_TASK_HEADER = r"^#{2,3}\s+Task\s+(\d+(?:\.\d+)?):\s*(.+?)$"


def parse_plan(plan_path: str | Path) -> list[Task]:
    """Parse a plan file and extract tasks.

    When no task declares **Depends on:**, tasks run in plan order (each
    depends on the previous one).

    Args:
        plan_path: Path to the markdown plan file

    Returns:
        List of Task objects extracted from the plan
    """
    return parse_plan_text(Path(plan_path).read_text())


def parse_plan_text(content: str) -> list[Task]:
    tasks = []
    explicit_dependencies = False
    for section in _split_into_task_sections(content):
        task = _parse_task_section(section)
        if task is None:
            continue
        if task.depends_on:
            explicit_dependencies = True
        tasks.append(task)

    if not explicit_dependencies:
        for previous, task in zip(tasks, tasks[1:]):
            task.depends_on = [previous.id]
    return tasks


def extract_plan_title(content: str) -> str | None:
    """Return the text of the first top-level heading, if any."""
    match = re.search(r"^#\s+(.+?)\s*$", content, re.MULTILINE)
    return match.group(1) if match else None


def _split_into_task_sections(content: str) -> list[str]:
    """Split content into individual task sections.

    Tasks are identified by headers like:
    - ## Task 2.1: Title
    - ### Task 3: Title
    """
    # Drop fenced code blocks so example headers inside them are ignored
    content = re.sub(r"```.*?```", "", content, flags=re.DOTALL)
    matches = list(re.finditer(_TASK_HEADER, content, re.MULTILINE))

    sections = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        sections.append(content[match.start() : end])
    return sections


def _parse_task_section(section: str) -> Task | None:
    """Parse a single task section into a Task object."""
    header_match = re.match(_TASK_HEADER, section, re.MULTILINE)
    if not header_match:
        return None

    return Task(
        id=header_match.group(1),
        title=header_match.group(2).strip(),
        description=_extract_description(section),
        depends_on=_extract_dependencies(section),
        acceptance_criteria=_extract_acceptance_criteria(section),
        file_boundaries=_extract_files(section),
    )


def _field_value(section: str, names: str) -> str | None:
    match = re.search(rf"\*\*(?:{names}):\*\*[ \t]*(.*)$", section, re.MULTILINE | re.IGNORECASE)
    return match.group(1).strip() if match else None


def _extract_files(section: str) -> list[str]:
    """Extract paths from an inline or bulleted **File(s):** field."""
    inline = _field_value(section, "Files?")
    if inline is None:
        return []
    if inline:
        return [p.strip(" `") for p in inline.split(",") if p.strip(" `")]

    bullets = re.search(r"\*\*Files?:\*\*\s*\n((?:\s*-\s*.+\n?)+)", section)
    if not bullets:
        return []
    return [
        m.group(1).strip(" `")
        for m in re.finditer(r"^\s*-\s*(.+?)\s*$", bullets.group(1), re.MULTILINE)
    ]


def _extract_dependencies(section: str) -> list[str]:
    value = _field_value(section, "Depends on|Dependencies")
    if not value or value.lower() in ("none", "-", "n/a"):
        return []
    return re.findall(r"\d+(?:\.\d+)?", value)


def _extract_description(section: str) -> str:
    """Extract description text from section."""
    desc_match = re.search(
        r"\*\*Description:\*\*\s*\n?(.*?)(?=\n\s*\*\*|\n\s*-\s*\[|$)",
        section,
        re.DOTALL,
    )
    if desc_match:
        return desc_match.group(1).strip()

    # Fallback: prose after the header, before any field markers
    desc_lines = []
    for line in section.split("\n")[1:]:
        if line.startswith("**"):
            break
        if line.strip() and not line.lstrip().startswith("-"):
            desc_lines.append(line.strip())
        elif desc_lines and not line.strip():
            break
    return " ".join(desc_lines)


def _extract_acceptance_criteria(section: str) -> list[str]:
    """Extract acceptance criteria from checkbox or bullet list."""
    criteria: list[str] = []

    ac_match = re.search(r"\*\*Acceptance Criteria:\*\*", section)
    if not ac_match:
        return criteria

    # Match: - [ ] item, - [x] item, or - item
    pattern = r"^\s*-\s*(?:\[[ xX]\]\s*)?(.+?)$"
    for match in re.finditer(pattern, section[ac_match.end() :], re.MULTILINE):
        criterion = match.group(1).strip()
        if criterion and not criterion.startswith("**"):
            criteria.append(criterion)

    return criteria
