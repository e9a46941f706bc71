"""
Accessibility rule execution.

Injects axe-core into a Playwright page, runs it for a set of WCAG tags and
converts the violations into RuleResult records.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

import httpx

from a11yscan.constants import (
    AXE_CORE_CDN_URL,
    BEST_PRACTICE_TAG,
    DEFAULT_RULE_LEVEL,
    DISCOVERY_FETCH_TIMEOUT_SECONDS,
)
from a11yscan.exceptions import RuleExecutionError

logger = logging.getLogger(__name__)

WCAG_CRITERION_TAG = re.compile(r"^wcag(\d)(\d)(\d)$")

AXE_RUN_SCRIPT = """
async (options) => {
    if (typeof window.axe === 'undefined') {
        throw new Error('axe-core not loaded');
    }
    const runOptions = {
        runOnly: { type: 'tag', values: options.tags },
        resultTypes: ['violations'],
    };
    if (options.disabledRules.length) {
        runOptions.rules = {};
        for (const id of options.disabledRules) {
            runOptions.rules[id] = { enabled: false };
        }
    }
    const results = await window.axe.run(document, runOptions);
    return results.violations;
}
"""

AXE_LOADED_SCRIPT = "() => typeof window.axe !== 'undefined'"


@dataclass
class ViolationNode:
    """An element that failed a rule."""
    target: list[str] = field(default_factory=list)
    html: str = ""
    any: list[dict] = field(default_factory=list)
    all: list[dict] = field(default_factory=list)
    none: list[dict] = field(default_factory=list)
    failure_summary: Optional[str] = None


@dataclass
class RuleResult:
    """A rule with at least one violating node."""
    rule_id: str
    wcag_reference: str
    level: str
    impact: str
    nodes: list[ViolationNode] = field(default_factory=list)
    description: str = ""
    help: str = ""
    help_url: Optional[str] = None
    tags: list[str] = field(default_factory=list)


def extract_wcag_reference(tags: Iterable[str]) -> str:
    """``wcag143`` -> ``1.4.3``; empty when no criterion tag is present."""
    for tag in tags:
        match = WCAG_CRITERION_TAG.match(tag)
        if match:
            return ".".join(match.groups())
    return ""


def determine_wcag_level(tags: Iterable[str]) -> str:
    tags = set(tags)
    if "wcag2aaa" in tags:
        return "AAA"
    if "wcag2aa" in tags:
        return "AA"
    if "wcag2a" in tags:
        return "A"
    return DEFAULT_RULE_LEVEL


def transform_violations(violations: list[dict[str, Any]]) -> list[RuleResult]:
    """Convert axe-core violation objects into RuleResults."""
    results = []
    for violation in violations or []:
        tags = list(violation.get("tags") or [])
        nodes = [
            ViolationNode(
                target=[str(t) for t in node.get("target") or []],
                html=node.get("html") or "",
                any=node.get("any") or [],
                all=node.get("all") or [],
                none=node.get("none") or [],
                failure_summary=node.get("failureSummary"),
            )
            for node in violation.get("nodes") or []
        ]
        results.append(RuleResult(
            rule_id=violation.get("id", ""),
            wcag_reference=extract_wcag_reference(tags),
            level=determine_wcag_level(tags),
            impact=violation.get("impact") or "moderate",
            nodes=nodes,
            description=violation.get("description") or "",
            help=violation.get("help") or "",
            help_url=violation.get("helpUrl"),
            tags=tags,
        ))
    return results


class RuleEngine:
    """
    axe-core rule runner.

    The axe-core source is read from ``axe_script_path`` when given,
    otherwise downloaded once from ``axe_source_url`` and cached for the
    lifetime of the engine.
    """

    def __init__(
        self,
        axe_script_path: Optional[str] = None,
        axe_source_url: Optional[str] = None,
        disabled_rules: Optional[Iterable[str]] = None,
    ):
        self.axe_script_path = axe_script_path
        self.axe_source_url = axe_source_url or AXE_CORE_CDN_URL
        self.disabled_rules: set[str] = set(disabled_rules or ())

        self._axe_source: Optional[str] = None
        self._load_lock = asyncio.Lock()

    async def load_axe_source(self) -> str:
        """
        Get the axe-core source, loading it on first use.

        Raises:
            RuleExecutionError: If the source cannot be read or downloaded
        """
        async with self._load_lock:
            if self._axe_source is not None:
                return self._axe_source

            try:
                if self.axe_script_path:
                    self._axe_source = Path(self.axe_script_path).read_text(encoding="utf-8")
                    logger.debug(f"Loaded axe-core from {self.axe_script_path}")
                else:
                    async with httpx.AsyncClient(
                        timeout=DISCOVERY_FETCH_TIMEOUT_SECONDS,
                        follow_redirects=True,
                    ) as client:
                        response = await client.get(self.axe_source_url)
                        response.raise_for_status()
                        self._axe_source = response.text
                    logger.info(f"Downloaded axe-core from {self.axe_source_url}")
            except (OSError, httpx.HTTPError) as e:
                raise RuleExecutionError(f"Could not load axe-core source: {e}") from e

            return self._axe_source

    async def execute_rules(
        self,
        page,
        tags: list[str],
        disabled_rules: Optional[Iterable[str]] = None,
    ) -> list[RuleResult]:
        """
        Run axe-core in the page.

        Args:
            page: Playwright page, already navigated
            tags: axe-core tags to run (see WCAGLevelHandler.generate_axe_tags)
            disabled_rules: Extra rule ids to skip for this run

        Returns:
            One RuleResult per violated rule

        Raises:
            RuleExecutionError: If injection or the axe run fails
        """
        disabled = self.disabled_rules | set(disabled_rules or ())
        source = await self.load_axe_source()

        try:
            if not await page.evaluate(AXE_LOADED_SCRIPT):
                await page.add_script_tag(content=source)

            violations = await page.evaluate(
                AXE_RUN_SCRIPT,
                {"tags": list(tags), "disabledRules": sorted(disabled)},
            )
        except Exception as e:
            raise RuleExecutionError(f"Rule execution failed: {e}") from e

        results = [r for r in transform_violations(violations) if r.rule_id not in disabled]
        logger.debug(f"axe-core reported {len(results)} violated rules")
        return results

    def disable_rule(self, rule_id: str) -> None:
        self.disabled_rules.add(rule_id)

    def enable_rule(self, rule_id: str) -> None:
        self.disabled_rules.discard(rule_id)

    @staticmethod
    def is_best_practice(result: RuleResult) -> bool:
        return BEST_PRACTICE_TAG in result.tags
