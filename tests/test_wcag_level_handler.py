"""Tests for WCAG level categorization."""

import pytest

from a11yscan.models import AccessibilityIssue
from a11yscan.wcag_level_handler import WCAGLevelConfig, WCAGLevelHandler


def make_issue(level, severity="serious", tags=None, issue_id="color-contrast"):
    return AccessibilityIssue(
        id=issue_id,
        wcag_reference="1.4.3",
        level=level,
        severity=severity,
        element="p",
        selector="p.note",
        message="Elements must meet minimum color contrast ratio thresholds",
        remediation="Increase contrast",
        tags=tags or [],
    )


class TestWCAGLevelConfig:
    """Tests for WCAGLevelConfig."""

    def test_defaults(self):
        config = WCAGLevelConfig()

        assert config.primary_level == "AA"
        assert config.include_aaa is True
        assert config.include_aria is True
        assert config.treat_warnings_as_errors is False

    def test_level_is_uppercased(self):
        assert WCAGLevelConfig(primary_level="aaa").primary_level == "AAA"

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            WCAGLevelConfig(primary_level="AAAA")

    def test_from_dict(self):
        config = WCAGLevelConfig.from_dict({"wcagLevel": "A", "includeAAA": False})

        assert config.primary_level == "A"
        assert config.include_aaa is False


class TestLevelInclusion:
    """Tests for which levels are reported."""

    @pytest.mark.parametrize("primary,level,expected", [
        ("A", "A", True),
        ("A", "AA", False),
        ("AA", "A", True),
        ("AA", "AA", True),
        ("AAA", "AA", True),
        ("ARIA", "A", False),
        ("ARIA", "AA", False),
    ])
    def test_should_include_level(self, primary, level, expected):
        handler = WCAGLevelHandler(WCAGLevelConfig(primary_level=primary))
        assert handler.should_include_level(level) is expected

    def test_aaa_follows_include_flag(self):
        assert WCAGLevelHandler(WCAGLevelConfig(include_aaa=True)).should_include_level("AAA")
        assert not WCAGLevelHandler(WCAGLevelConfig(include_aaa=False)).should_include_level("AAA")
        assert WCAGLevelHandler(
            WCAGLevelConfig(primary_level="AAA", include_aaa=False)
        ).should_include_level("AAA")

    def test_aria_follows_include_flag(self):
        assert WCAGLevelHandler(WCAGLevelConfig(include_aria=True)).should_include_level("ARIA")
        assert not WCAGLevelHandler(WCAGLevelConfig(include_aria=False)).should_include_level("ARIA")

    def test_unknown_level_excluded(self):
        assert not WCAGLevelHandler().should_include_level("B")


class TestLevelInfo:
    """Tests for level categories."""

    def test_aa_target(self):
        handler = WCAGLevelHandler()

        assert handler.get_level_info("A").category == "error"
        assert handler.get_level_info("AA").category == "error"
        assert handler.get_level_info("AAA").category == "warning"
        assert handler.get_level_info("ARIA").category == "warning"

    def test_a_target_reports_aa_as_warning(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(primary_level="A"))

        info = handler.get_level_info("AA")
        assert info.is_required is False
        assert info.is_warning is True

    def test_a_target_without_extras_reports_aa_as_info(self):
        handler = WCAGLevelHandler(
            WCAGLevelConfig(primary_level="A", include_aaa=False, include_aria=False)
        )

        assert handler.get_level_info("AA").category == "info"

    def test_priorities(self):
        handler = WCAGLevelHandler()
        assert [handler.get_level_info(l).priority for l in ("A", "AA", "AAA", "ARIA")] == [1, 2, 3, 4]


class TestSeverityMapping:
    """Tests for map_to_severity."""

    def test_required_levels_keep_impact(self):
        handler = WCAGLevelHandler()

        assert handler.map_to_severity("A", "critical") == "critical"
        assert handler.map_to_severity("AA", "minor") == "minor"

    def test_unknown_impact_is_moderate(self):
        handler = WCAGLevelHandler()

        assert handler.map_to_severity("AA", None) == "moderate"
        assert handler.map_to_severity("AA", "catastrophic") == "moderate"

    def test_warning_levels_become_warning(self):
        assert WCAGLevelHandler().map_to_severity("AAA", "critical") == "warning"

    def test_treat_warnings_as_errors(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(treat_warnings_as_errors=True))
        assert handler.map_to_severity("AAA", "serious") == "serious"

    def test_severity_override_wins(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(severity_overrides={"1.4.3": "minor"}))
        assert handler.map_to_severity("AA", "critical", "1.4.3") == "minor"


class TestFilterAndSummary:
    """Tests for filtering, categorizing and compliance summaries."""

    def test_filter_drops_excluded_levels(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(primary_level="A", include_aaa=False))
        issues = [make_issue("A"), make_issue("AA"), make_issue("AAA"), make_issue("ARIA")]

        kept = handler.filter_issues(issues)

        assert [i.level for i in kept] == ["A", "ARIA"]

    def test_filter_best_practices(self):
        issue = make_issue("AA", tags=["best-practice"], issue_id="region")

        assert WCAGLevelHandler().filter_issues([issue]) == []
        assert WCAGLevelHandler(
            WCAGLevelConfig(include_best_practices=True)
        ).filter_issues([issue]) == [issue]

    def test_categorize_issues(self):
        handler = WCAGLevelHandler()
        categorized = handler.categorize_issues(
            [make_issue("A"), make_issue("AA"), make_issue("AAA", "warning")]
        )

        assert len(categorized.errors) == 2
        assert len(categorized.warnings) == 1
        assert categorized.info == []

    def test_compliant_with_only_warnings(self):
        summary = WCAGLevelHandler().get_compliance_summary([make_issue("AAA", "warning")])

        assert summary.compliant is True
        assert summary.primary_level_issues == 0
        assert summary.warning_issues == 1
        assert summary.total_issues == 1
        assert summary.level_breakdown == {"A": 0, "AA": 0, "AAA": 1, "ARIA": 0}

    def test_not_compliant_with_primary_issues(self):
        summary = WCAGLevelHandler().get_compliance_summary([make_issue("A"), make_issue("AA")])

        assert summary.compliant is False
        assert summary.primary_level_issues == 2

    def test_empty_issues_compliant(self):
        assert WCAGLevelHandler().get_compliance_summary([]).compliant is True


class TestAxeTags:
    """Tests for generate_axe_tags."""

    def test_aa_default(self):
        assert WCAGLevelHandler().generate_axe_tags() == ["wcag2aa", "wcag2a", "wcag2aaa"]

    def test_a_only(self):
        handler = WCAGLevelHandler(
            WCAGLevelConfig(primary_level="A", include_aaa=False, include_aria=False)
        )
        assert handler.generate_axe_tags() == ["wcag2a"]

    def test_aaa(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(primary_level="AAA"))
        assert handler.generate_axe_tags() == ["wcag2aaa", "wcag2aa", "wcag2a"]

    def test_best_practices(self):
        handler = WCAGLevelHandler(WCAGLevelConfig(include_best_practices=True))
        assert "best-practice" in handler.generate_axe_tags()


class TestOverrides:
    """Tests for per-scan overrides and config updates."""

    def test_with_overrides_returns_new_handler(self):
        handler = WCAGLevelHandler()
        scoped = handler.with_overrides(primary_level="AAA", include_aria=False)

        assert scoped is not handler
        assert scoped.config.primary_level == "AAA"
        assert scoped.config.include_aria is False
        assert handler.config.primary_level == "AA"

    def test_with_no_overrides_returns_self(self):
        handler = WCAGLevelHandler()
        assert handler.with_overrides() is handler

    def test_update_config(self):
        handler = WCAGLevelHandler()
        handler.update_config(primary_level="A")

        assert handler.get_config()["primary_level"] == "A"

    def test_supported_levels(self):
        levels = WCAGLevelHandler.get_supported_levels()

        assert [l["level"] for l in levels] == ["A", "AA", "AAA", "ARIA"]
        levels[0]["level"] = "changed"
        assert WCAGLevelHandler.get_supported_levels()[0]["level"] == "A"
