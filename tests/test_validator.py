"""Tests for the memory hierarchy and the quality gate."""

import pytest

from memory_engineering.memory_structures import (
    MEMORY_HIERARCHY,
    MEMORY_NAMES,
    build_template,
    dependents_of,
)
from memory_engineering.validator import QualityValidator, grade_for, has_section


class TestHierarchy:

    def test_canonical_order(self):
        assert MEMORY_NAMES == [
            "projectbrief", "productContext", "systemPatterns", "techContext",
            "activeContext", "progress", "codebaseMap",
        ]

    def test_dependencies_only_point_backwards(self):
        for position, name in enumerate(MEMORY_NAMES):
            for dep in MEMORY_HIERARCHY[name].depends_on:
                assert MEMORY_NAMES.index(dep) < position

    def test_dependents_of(self):
        assert dependents_of("projectbrief") == ["productContext", "systemPatterns", "techContext", "codebaseMap"]
        assert dependents_of("activeContext") == ["progress"]
        assert dependents_of("progress") == []

    def test_template_lists_every_section(self):
        template = build_template("activeContext")
        assert template.startswith("# activeContext")
        for section in MEMORY_HIERARCHY["activeContext"].sections:
            assert has_section(template, section.name)


class TestMissingDependencies:

    def setup_method(self):
        self.validator = QualityValidator()

    def test_active_context_with_only_projectbrief(self):
        missing = self.validator.missing_dependencies("activeContext", ["projectbrief"])
        assert missing == ["productContext", "systemPatterns", "techContext"]

    def test_root_has_no_dependencies(self):
        assert self.validator.missing_dependencies("projectbrief", []) == []

    def test_satisfied(self):
        assert self.validator.missing_dependencies("progress", ["activeContext"]) == []

    def test_unknown_name(self):
        with pytest.raises(KeyError):
            self.validator.missing_dependencies("roadmap", [])


class TestGrading:

    def test_grade_scale(self):
        assert [grade_for(n) for n in range(7)] == ["A+", "A", "B", "C", "D", "F", "F"]

    def test_section_headers_are_case_insensitive(self):
        assert has_section("## Success Criteria\nShip it", "success criteria")
        assert has_section("### overview", "overview")
        assert not has_section("Overview without a header", "overview")
        assert not has_section("#### Overview", "overview")

    def test_valid_documents_grade_a_plus(self, valid_memories):
        validator = QualityValidator()
        for name, content in valid_memories.items():
            result = validator.validate(name, content)
            assert result.issues == [], (name, result.issues)
            assert result.grade == "A+"
            assert result.accepted

    def test_stub_is_rejected(self):
        result = QualityValidator().validate("projectbrief", "## Overview\nA thing.")
        assert result.grade == "F"
        assert not result.accepted
        assert result.missing_sections == ["goals", "scope", "success criteria"]

    def test_placeholders_and_markers_count(self, valid_memories):
        validator = QualityValidator()
        content = valid_memories["projectbrief"] + "\n- [Describe the feature]\n- TODO decide\n-\n"
        result = validator.validate("projectbrief", content)
        assert result.grade == "C"
        assert result.metrics["placeholderCount"] == 1

    def test_missing_timestamp_and_next_steps(self, valid_memories):
        content = valid_memories["activeContext"].replace("2026-10-01 at 14:30", "today").replace("next", "then")
        result = QualityValidator().validate("activeContext", content)
        assert "Missing timestamps for current activity" in result.issues
        assert "Missing next steps" in result.issues
        assert result.grade == "B"

    def test_stricter_threshold(self, valid_memories):
        content = valid_memories["projectbrief"] + "\nStill TBD.\n"
        assert QualityValidator(min_grade="D").validate("projectbrief", content).accepted
        assert not QualityValidator(min_grade="A+").validate("projectbrief", content).accepted

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            QualityValidator(min_grade="E")


class TestRejection:

    def test_rejection_carries_guidance(self):
        validator = QualityValidator()
        content = "## Overview\nA thing."
        response = validator.rejection(validator.validate("projectbrief", content), content)

        assert response["error"] == "QUALITY_REJECTED"
        assert response["grade"] == "F"
        assert [g["section"] for g in response["missingSections"]] == ["goals", "scope", "success criteria"]
        assert all(g["example"] for g in response["missingSections"])
        assert 0 < len(response["tips"]) <= 3
        assert response["template"].startswith("# projectbrief")
