"""
Quality Validator - gates memory writes on the dependency hierarchy and content quality.

Grading is a heuristic: every problem found (too short, too few sections,
a missing required section, leftover placeholders, a missing content
signal...) is one issue, and the issue count maps onto a letter grade.
Nothing here ever edits the content; it only accepts or explains.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .memory_structures import MEMORY_HIERARCHY, build_template, get_spec

logger = logging.getLogger(__name__)

GRADES = ["A+", "A", "B", "C", "D", "F"]

_HEADER_RE = re.compile(r"^#{1,3}\s+", re.MULTILINE)
_PLACEHOLDER_RE = re.compile(r"\[([^\]]+)\]")
_PLACEHOLDER_WORDS = ("TODO", "FILL", "Write", "Describe", "item", "feature", "requirement")
_ABBREVIATION_RE = re.compile(r"\b[A-Z]{2,}:")
_LOW_QUALITY = [
    (re.compile(r"\.\.\."), "Contains ellipsis (...) suggesting incomplete content"),
    (re.compile(r"\b(TBD|TODO|FIXME|XXX)\b"), "Contains TODO markers"),
    (re.compile(r"^\s*[-*]\s*$", re.MULTILINE), "Contains empty bullet points"),
]


def grade_for(issue_count: int) -> str:
    """0 issues -> A+, 1 -> A, ... 5 or more -> F."""
    return GRADES[min(issue_count, len(GRADES) - 1)]


def has_section(content: str, section: str) -> bool:
    """True when a #, ## or ### header starts with the section name (case-insensitive)."""
    pattern = re.compile(rf"^#{{1,3}}\s*{re.escape(section)}", re.MULTILINE | re.IGNORECASE)
    return bool(pattern.search(content))


@dataclass
class ValidationResult:
    memory_name: str
    grade: str
    accepted: bool
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    missing_sections: List[str] = field(default_factory=list)
    metrics: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "memoryName": self.memory_name,
            "grade": self.grade,
            "accepted": self.accepted,
            "issues": self.issues,
            "suggestions": self.suggestions,
            "missingSections": self.missing_sections,
            "metrics": self.metrics,
        }


class QualityValidator:
    """
    Dependency and quality gate in front of MemoryStore writes.

    Args:
        min_grade: Lowest grade still accepted (default "D", so only F is rejected).
    """

    def __init__(self, min_grade: str = "D"):
        if min_grade not in GRADES:
            raise ValueError(f"min_grade must be one of {GRADES}")
        self.min_grade = min_grade

    @staticmethod
    def is_known(memory_name: str) -> bool:
        return memory_name in MEMORY_HIERARCHY

    @staticmethod
    def missing_dependencies(memory_name: str, existing: Iterable[str]) -> List[str]:
        """Declared dependencies of `memory_name` not yet in `existing`, in declared order."""
        spec = get_spec(memory_name)
        if spec is None:
            raise KeyError(memory_name)
        present = set(existing)
        return [dep for dep in spec.depends_on if dep not in present]

    @staticmethod
    def missing_sections(memory_name: str, content: str) -> List[str]:
        spec = get_spec(memory_name)
        if spec is None:
            return []
        return [s.name for s in spec.required_sections if not has_section(content, s.name)]

    def validate(self, memory_name: str, content: str) -> ValidationResult:
        """Grade `content` for `memory_name`."""
        spec = get_spec(memory_name)
        if spec is None:
            raise KeyError(memory_name)

        issues: List[str] = []
        suggestions: List[str] = []
        lowered = content.lower()

        section_count = len(_HEADER_RE.findall(content))
        placeholders = [
            p for p in _PLACEHOLDER_RE.findall(content)
            if any(word in p for word in _PLACEHOLDER_WORDS)
        ]
        metrics = {
            "characterCount": len(content),
            "sectionCount": section_count,
            "placeholderCount": len(placeholders),
        }

        if len(content) < spec.min_length:
            issues.append(f"Too short: {len(content)} chars (minimum: {spec.min_length})")
            suggestions.append(f"Add {spec.min_length - len(content)} more characters of detail")

        if section_count < spec.min_sections:
            issues.append(f"Missing sections: only {section_count} found (need {spec.min_sections})")
            suggestions.append("Add clear section headers using ## or ###")

        missing = []
        for section in spec.required_sections:
            if not has_section(content, section.name):
                missing.append(section.name)
                issues.append(f"Missing required section: {section.name}")
                suggestions.append(f"Add a '{section.name}' section: {section.description}")
            elif section.min_length:
                body = self._section_body(content, section.name)
                if len(body) < section.min_length:
                    suggestions.append(
                        f'Expand "{section.name}" section - needs at least {section.min_length} characters'
                    )

        if placeholders:
            issues.append(f"Contains {len(placeholders)} unfilled placeholders")
            suggestions.append("Replace all placeholder text with actual content")

        for pattern, message in _LOW_QUALITY:
            if pattern.search(content):
                issues.append(message)

        abbreviations = len(_ABBREVIATION_RE.findall(content))
        if abbreviations > 5:
            issues.append(f"Too many abbreviations ({abbreviations} found)")
            suggestions.append("Write in complete sentences instead of abbreviated notes")

        for check in spec.keyword_checks:
            if not any(word in lowered for word in check.any_of):
                issues.append(check.issue)
                suggestions.append(check.suggestion)

        for regex, issue, suggestion in spec.pattern_checks:
            if not re.search(regex, content):
                issues.append(issue)
                suggestions.append(suggestion)

        grade = grade_for(len(issues))
        accepted = GRADES.index(grade) <= GRADES.index(self.min_grade)
        logger.debug(f"Memory validation for {memory_name}: grade={grade}, issues={len(issues)}")

        return ValidationResult(
            memory_name=memory_name,
            grade=grade,
            accepted=accepted,
            issues=issues,
            suggestions=suggestions,
            missing_sections=missing,
            metrics=metrics,
        )

    @staticmethod
    def _section_body(content: str, section: str) -> str:
        match = re.search(rf"^#{{1,3}}\s*{re.escape(section)}.*$", content, re.MULTILINE | re.IGNORECASE)
        if not match:
            return ""
        rest = content[match.end():]
        next_header = re.search(r"^#", rest, re.MULTILINE)
        return rest[:next_header.start()] if next_header else rest

    def improvement_tips(self, memory_name: str, content: str, result: Optional[ValidationResult] = None) -> List[str]:
        """Top three concrete tips for raising the grade."""
        result = result or self.validate(memory_name, content)
        if result.grade == "A+":
            return ["Excellent memory! Consider adding recent updates to keep it fresh."]

        tips = []
        if result.metrics["characterCount"] < 300:
            tips.append("Add more detail - aim for at least 500 characters")
        if result.metrics["sectionCount"] < 3:
            tips.append("Add clear sections with ## headers")
        if result.metrics["placeholderCount"] > 0:
            tips.append("Fill in the placeholder text with actual content")
        if not re.search(r"\d{2,}", content):
            tips.append("Add specific examples, numbers, and dates")

        spec = get_spec(memory_name)
        if spec and spec.tip:
            tips.append(spec.tip)
        return tips[:3]

    def rejection(self, result: ValidationResult, content: str) -> dict:
        """
        Structured QUALITY_REJECTED response.

        Carries per-missing-section guidance with examples, tips and a full
        template so the caller can fix the document and retry.
        """
        spec = MEMORY_HIERARCHY[result.memory_name]
        sections = {s.name: s for s in spec.sections}
        guidance = []
        for name in result.missing_sections:
            section = sections[name]
            guidance.append({
                "section": name,
                "description": section.description,
                "example": section.example or f"## {name.title()}\n{section.description}...",
            })

        return {
            "error": "QUALITY_REJECTED",
            "message": (
                f"{result.memory_name} scored {result.grade}; minimum accepted grade is {self.min_grade}. "
                "Fix the issues below and resubmit the full document."
            ),
            "grade": result.grade,
            "issues": result.issues,
            "suggestions": result.suggestions,
            "missingSections": guidance,
            "tips": self.improvement_tips(result.memory_name, content, result),
            "template": build_template(result.memory_name),
        }
