"""
Memory hierarchy and structure rules, modeled as data.

MEMORY_HIERARCHY maps every core memory name to its dependencies, the
sections it must contain and the content signals the quality grader looks
for. Order matters: it is the canonical read/creation order, and missing
dependencies are always reported in this order.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SectionSpec:
    name: str
    description: str
    required: bool = True
    example: Optional[str] = None
    min_length: Optional[int] = None


@dataclass(frozen=True)
class KeywordCheck:
    """At least one of `any_of` must appear (case-insensitive) in the content."""
    any_of: Tuple[str, ...]
    issue: str
    suggestion: str


@dataclass(frozen=True)
class MemorySpec:
    name: str
    description: str
    depends_on: Tuple[str, ...] = ()
    min_length: int = 300
    min_sections: int = 2
    sections: Tuple[SectionSpec, ...] = ()
    keyword_checks: Tuple[KeywordCheck, ...] = ()
    pattern_checks: Tuple[Tuple[str, str, str], ...] = ()  # (regex, issue, suggestion)
    tip: str = ""

    @property
    def required_sections(self) -> List[SectionSpec]:
        return [s for s in self.sections if s.required]


_SPECS: List[MemorySpec] = [
    MemorySpec(
        name="projectbrief",
        description="Foundation document that shapes all other files",
        min_length=500,
        min_sections=4,
        sections=(
            SectionSpec("overview", "What is this project?", example="## Overview\nThis project...", min_length=100),
            SectionSpec("goals", "What are we trying to achieve?", example="## Goals\n- Primary: ...\n- Secondary: ..."),
            SectionSpec("scope", "What's included and what's not?",
                        example="## Scope\n### Included\n- ...\n### Excluded\n- ..."),
            SectionSpec("success criteria", "How do we know when we're done?",
                        example="## Success Criteria\n- [ ] ...\n- [ ] ..."),
        ),
        keyword_checks=(
            KeywordCheck(("requirement", "goal"), "Missing requirements or goals section",
                         "Add specific requirements and goals"),
            KeywordCheck(("scope",), "Missing scope definition", "Define what is in and out of scope"),
        ),
        tip="Include measurable success criteria",
    ),
    MemorySpec(
        name="productContext",
        description="Why this project exists and who needs it",
        depends_on=("projectbrief",),
        min_length=400,
        min_sections=3,
        sections=(
            SectionSpec("why this exists", "The motivation and need for this project", min_length=100),
            SectionSpec("problems it solves", "Specific problems being addressed"),
            SectionSpec("how it should work", "Expected behavior and functionality"),
            SectionSpec("user experience goals", "What users should feel and achieve"),
        ),
        keyword_checks=(
            KeywordCheck(("problem", "solve"), "Missing problem statement",
                         "Clearly state the problem being solved"),
            KeywordCheck(("user", "customer"), "Missing user/customer information",
                         "Identify target users and their needs"),
        ),
        tip="Describe user personas in detail",
    ),
    MemorySpec(
        name="systemPatterns",
        description="System architecture and design patterns",
        depends_on=("projectbrief",),
        min_length=500,
        min_sections=4,
        sections=(
            SectionSpec("architecture overview", "High-level system design",
                        example="## Architecture Overview\nLayered architecture with..."),
            SectionSpec("key technical decisions", "Important choices made and why"),
            SectionSpec("design patterns", "Patterns in use with examples",
                        example="### Pattern: Repository\n**When to use**: Data access\n"
                                "**Implementation**: ...\n**Benefits**: ..."),
            SectionSpec("component relationships", "How components interact"),
            SectionSpec("critical implementation paths", "Key flows through the system", required=False),
        ),
        keyword_checks=(
            KeywordCheck(("architecture", "pattern"), "Missing architecture or pattern descriptions",
                         "Describe the system architecture and design patterns"),
            KeywordCheck(("component", "module"), "Missing component/module relationships",
                         "Explain how components interact"),
        ),
        tip="Add a diagram or data flow description",
    ),
    MemorySpec(
        name="techContext",
        description="Technologies and development setup",
        depends_on=("projectbrief",),
        min_length=400,
        min_sections=3,
        sections=(
            SectionSpec("technologies used", "Complete tech stack",
                        example="## Technologies Used\n- Runtime: Python 3.12\n- Framework: FastAPI\n"
                                "- Database: SQLite"),
            SectionSpec("development setup", "How to get started developing",
                        example="## Development Setup\n1. Clone repo\n2. pip install -e .\n"
                                "3. cp .env.example .env"),
            SectionSpec("technical constraints", "Limitations and requirements"),
            SectionSpec("dependencies", "Key dependencies and why they're used"),
            SectionSpec("tool usage patterns", "How tools are used in the project", required=False),
        ),
        keyword_checks=(
            KeywordCheck(("version", "dependency", "dependencies"), "Missing version information",
                         "Include specific versions of technologies used"),
            KeywordCheck(("constraint", "requirement"), "Missing technical constraints",
                         "Document technical limitations and requirements"),
        ),
        tip="List all key dependencies with versions",
    ),
    MemorySpec(
        name="activeContext",
        description="Current work focus and learnings",
        depends_on=("productContext", "systemPatterns", "techContext"),
        min_length=300,
        min_sections=4,
        sections=(
            SectionSpec("current focus", "What you're actively working on",
                        example="## Current Focus\nImplementing authentication..."),
            SectionSpec("active tasks", "Current task list",
                        example="## Active Tasks\n- [ ] Set up JWT\n- [x] Create user model"),
            SectionSpec("recent changes", "What was changed recently",
                        example="## Recent Changes\n### 2025-01-28\n- Added login endpoint\n- Fixed validation bug"),
            SectionSpec("learnings & insights", "Important patterns, preferences, and project insights",
                        example="## Learnings & Insights\n### Authentication Pattern\n"
                                "**Problem**: JWT expiry handling\n**Solution**: Refresh token rotation"),
            SectionSpec("blockers & questions", "Current blockers and open questions", required=False),
        ),
        keyword_checks=(
            KeywordCheck(("next",), "Missing next steps", "Add what you plan to do next"),
        ),
        pattern_checks=(
            (r"\d{4}-\d{2}-\d{2}|\d{2}:\d{2}", "Missing timestamps for current activity",
             "Add timestamps to show when actions occurred"),
        ),
        tip="Update with current timestamp and recent actions",
    ),
    MemorySpec(
        name="progress",
        description="What works and what's left to build",
        depends_on=("activeContext",),
        min_length=300,
        min_sections=3,
        sections=(
            SectionSpec("what works", "Completed features and functionality",
                        example="## What Works\n- User authentication\n- Basic CRUD operations"),
            SectionSpec("what's left to build", "Remaining features and tasks"),
            SectionSpec("current status", "Overall project state"),
            SectionSpec("known issues", "Bugs and problems to address"),
            SectionSpec("evolution of decisions", "How decisions have changed over time", required=False),
        ),
        keyword_checks=(
            KeywordCheck(("complete", "done", "works"), "Missing completed items", "List what has been completed"),
            KeywordCheck(("left", "next", "remaining"), "Missing upcoming items", "Add upcoming tasks and priorities"),
        ),
        tip="Include completion dates and time estimates",
    ),
    MemorySpec(
        name="codebaseMap",
        description="Directory structure and searchable code embeddings",
        depends_on=("projectbrief",),
        min_length=400,
        min_sections=2,
        sections=(
            SectionSpec("directory structure", "Project file organization",
                        example="## Directory Structure\n```\nproject/\n├── src/\n├── tests/\n└── docs/\n```"),
            SectionSpec("key files", "Important files and their purposes"),
            SectionSpec("module organization", "How code is organized", required=False),
            SectionSpec("data flow", "How data moves through the system", required=False),
        ),
        keyword_checks=(
            KeywordCheck(("structure", "directory"), "Missing structure information",
                         "Describe the directory structure"),
            KeywordCheck(("entry", "main"), "Missing entry points",
                         "Identify main entry points of the application"),
        ),
        tip="Map out the critical file paths",
    ),
]

MEMORY_HIERARCHY: Dict[str, MemorySpec] = {spec.name: spec for spec in _SPECS}
MEMORY_NAMES: List[str] = [spec.name for spec in _SPECS]


def get_spec(memory_name: str) -> Optional[MemorySpec]:
    return MEMORY_HIERARCHY.get(memory_name)


def dependents_of(memory_name: str) -> List[str]:
    """Memories that declare `memory_name` as a direct dependency."""
    return [spec.name for spec in _SPECS if memory_name in spec.depends_on]


def build_template(memory_name: str) -> str:
    """
    Skeleton document listing every section with its description or example.

    Handed back with quality rejections as a starting point; never stored.
    """
    spec = MEMORY_HIERARCHY[memory_name]
    lines = [f"# {memory_name}", "", spec.description, ""]
    for section in spec.sections:
        if section.example:
            lines.append(section.example)
        else:
            lines.append(f"## {section.name.title()}")
            lines.append(section.description)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
