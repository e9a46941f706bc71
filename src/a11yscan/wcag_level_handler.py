"""WCAG compliance level handling.

Decides which WCAG levels count as errors, warnings or informational findings
for a chosen conformance target, maps rule impacts onto issue severities and
summarizes compliance.
"""

import logging
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Optional

from a11yscan.config import normalize_keys
from a11yscan.constants import BEST_PRACTICE_TAG, WCAG_LEVELS
from a11yscan.models import AccessibilityIssue, ComplianceSummary

logger = logging.getLogger(__name__)

LEVEL_PRIORITIES = {"A": 1, "AA": 2, "AAA": 3, "ARIA": 4}

# Levels that must be met for each conformance target
REQUIRED_LEVELS = {
    "A": frozenset({"A"}),
    "AA": frozenset({"A", "AA"}),
    "AAA": frozenset({"A", "AA", "AAA"}),
    "ARIA": frozenset({"ARIA"}),
}

IMPACT_SEVERITIES = ("critical", "serious", "moderate", "minor")

SUPPORTED_LEVELS = [
    {
        "level": "A",
        "description": "WCAG 2.2 Level A (Minimum)",
        "requirements": "Basic web accessibility features that must be in place",
    },
    {
        "level": "AA",
        "description": "WCAG 2.2 Level AA (Standard)",
        "requirements": "Standard compliance level for most organizations and legal requirements",
    },
    {
        "level": "AAA",
        "description": "WCAG 2.2 Level AAA (Enhanced)",
        "requirements": "Highest level of accessibility, not required for entire sites",
    },
    {
        "level": "ARIA",
        "description": "ARIA Best Practices",
        "requirements": "Accessible Rich Internet Applications best practices and patterns",
    },
]


@dataclass
class WCAGLevelConfig:
    """Configuration for WCAG level handling."""
    primary_level: str = "AA"
    include_aaa: bool = True
    include_aria: bool = True
    treat_warnings_as_errors: bool = False
    include_best_practices: bool = False
    # WCAG criterion (e.g. "1.4.3") -> severity
    severity_overrides: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.primary_level = str(self.primary_level).upper()
        if self.primary_level not in WCAG_LEVELS:
            raise ValueError(f"Unsupported WCAG level: {self.primary_level}")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "WCAGLevelConfig":
        allowed = {f.name for f in fields(cls)}
        data = data or {}
        values = normalize_keys(data, allowed)
        for key in ("wcag_level", "wcagLevel"):
            if key in data and "primary_level" not in values:
                values["primary_level"] = data[key]
        return cls(**values)


@dataclass
class WCAGLevelInfo:
    """How a WCAG level is treated under the current configuration."""
    level: str
    is_required: bool
    is_warning: bool
    category: str  # error/warning/info
    priority: int


@dataclass
class CategorizedIssues:
    errors: list[AccessibilityIssue] = field(default_factory=list)
    warnings: list[AccessibilityIssue] = field(default_factory=list)
    info: list[AccessibilityIssue] = field(default_factory=list)


class WCAGLevelHandler:
    """
    Categorizes accessibility issues against a WCAG conformance target.

    With ``primary_level="AA"`` (the default), A and AA issues are errors
    that break compliance while AAA and ARIA issues are reported as
    warnings.
    """

    def __init__(self, config: WCAGLevelConfig | dict | None = None):
        if isinstance(config, dict):
            config = WCAGLevelConfig.from_dict(config)
        self.config = config or WCAGLevelConfig()

    def should_include_level(self, level: str) -> bool:
        """Whether issues at ``level`` are reported at all."""
        primary = self.config.primary_level
        if level == "A":
            return primary in ("A", "AA", "AAA")
        if level == "AA":
            return primary in ("AA", "AAA")
        if level == "AAA":
            return primary == "AAA" or self.config.include_aaa
        if level == "ARIA":
            return self.config.include_aria
        return False

    def _is_required_level(self, level: str) -> bool:
        return level in REQUIRED_LEVELS.get(self.config.primary_level, frozenset())

    def _is_warning_level(self, level: str) -> bool:
        if self._is_required_level(level):
            return False

        primary = self.config.primary_level
        if level == "AA":
            return primary == "A" and (self.config.include_aaa or self.config.include_aria)
        if level == "AAA":
            return primary in ("A", "AA") and self.config.include_aaa
        if level == "ARIA":
            return self.config.include_aria
        return False

    def get_level_info(self, level: str) -> WCAGLevelInfo:
        is_required = self._is_required_level(level)
        is_warning = self._is_warning_level(level)

        if is_required:
            category = "error"
        elif is_warning:
            category = "warning"
        else:
            category = "info"

        return WCAGLevelInfo(
            level=level,
            is_required=is_required,
            is_warning=is_warning,
            category=category,
            priority=LEVEL_PRIORITIES.get(level, 99),
        )

    def map_to_severity(
        self,
        level: str,
        impact: Optional[str],
        wcag_reference: Optional[str] = None,
    ) -> str:
        """
        Map a WCAG level and rule impact to an issue severity.

        Severity overrides for the criterion win; warning levels become
        ``warning`` unless warnings are treated as errors; otherwise the
        impact maps 1:1 (unknown impacts become ``moderate``).
        """
        if wcag_reference and wcag_reference in self.config.severity_overrides:
            return self.config.severity_overrides[wcag_reference]

        info = self.get_level_info(level)
        if info.is_warning and not self.config.treat_warnings_as_errors:
            return "warning"

        impact = (impact or "").lower()
        return impact if impact in IMPACT_SEVERITIES else "moderate"

    def filter_issues(self, issues: list[AccessibilityIssue]) -> list[AccessibilityIssue]:
        """Drop issues outside the configured levels (and best practices unless enabled)."""
        kept = []
        for issue in issues:
            if BEST_PRACTICE_TAG in issue.tags:
                if self.config.include_best_practices:
                    kept.append(issue)
            elif self.should_include_level(issue.level):
                kept.append(issue)
        return kept

    def categorize_issues(self, issues: list[AccessibilityIssue]) -> CategorizedIssues:
        categorized = CategorizedIssues()
        for issue in issues:
            category = self.get_level_info(issue.level).category
            if category == "error":
                categorized.errors.append(issue)
            elif category == "warning":
                categorized.warnings.append(issue)
            else:
                categorized.info.append(issue)
        return categorized

    def get_compliance_summary(self, issues: list[AccessibilityIssue]) -> ComplianceSummary:
        categorized = self.categorize_issues(issues)
        level_breakdown = {level: 0 for level in WCAG_LEVELS}
        for issue in issues:
            if issue.level in level_breakdown:
                level_breakdown[issue.level] += 1

        return ComplianceSummary(
            compliant=len(categorized.errors) == 0,
            primary_level_issues=len(categorized.errors),
            warning_issues=len(categorized.warnings),
            total_issues=len(issues),
            level_breakdown=level_breakdown,
        )

    def generate_axe_tags(self) -> list[str]:
        """axe-core run tags for the configured levels."""
        primary = self.config.primary_level
        if primary == "AAA":
            tags = ["wcag2aaa", "wcag2aa", "wcag2a"]
        elif primary == "AA":
            tags = ["wcag2aa", "wcag2a"]
        elif primary == "A":
            tags = ["wcag2a"]
        else:
            # ARIA rules ship under the WCAG 2.x tags
            tags = ["wcag2a", "wcag2aa"]

        if self.config.include_aaa and "wcag2aaa" not in tags:
            tags.append("wcag2aaa")

        if self.config.include_aria:
            if "wcag2a" not in tags:
                tags.append("wcag2a")
            if primary in ("AA", "AAA") and "wcag2aa" not in tags:
                tags.append("wcag2aa")

        if self.config.include_best_practices:
            tags.append(BEST_PRACTICE_TAG)

        return tags

    def with_overrides(
        self,
        primary_level: Optional[str] = None,
        include_aaa: Optional[bool] = None,
        include_aria: Optional[bool] = None,
    ) -> "WCAGLevelHandler":
        """A handler for one scan with some settings overridden; ``self`` is unchanged."""
        changes = {}
        if primary_level is not None:
            changes["primary_level"] = primary_level
        if include_aaa is not None:
            changes["include_aaa"] = include_aaa
        if include_aria is not None:
            changes["include_aria"] = include_aria
        if not changes:
            return self
        return WCAGLevelHandler(replace(self.config, **changes))

    def update_config(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    def get_config(self) -> dict:
        return asdict(self.config)

    @staticmethod
    def get_supported_levels() -> list[dict[str, str]]:
        return [dict(level) for level in SUPPORTED_LEVELS]
