"""Immutable rule tables.

Pattern tables for the issue classifier, organization escalation rules, the
branch strategy table and the critical-file patterns used by conflict
detection. Components receive these through their constructors so tests (or a
deployment) can substitute different tables.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from devflow.enums import BranchType, Complexity, IssueType, Priority


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class OrganizationRule:
    """Raise priority for matching issues of one organization.

    A rule matches when the classified type is in ``types`` or the issue text
    matches one of ``keywords``. Rules never lower a priority.
    """

    organization: str
    escalate_to: Priority
    types: frozenset[IssueType] = frozenset()
    keywords: tuple[re.Pattern[str], ...] = ()


@dataclass(frozen=True)
class ClassificationRules:
    """Everything the classifier decides with, in evaluation order."""

    type_patterns: tuple[tuple[IssueType, tuple[re.Pattern[str], ...]], ...]
    product_keyword: str
    product_type_patterns: tuple[tuple[IssueType, tuple[re.Pattern[str], ...]], ...]
    priority_patterns: tuple[tuple[Priority, tuple[re.Pattern[str], ...]], ...]
    complexity_patterns: tuple[tuple[Complexity, tuple[re.Pattern[str], ...]], ...]
    organization_rules: tuple[OrganizationRule, ...] = ()
    complex_body_length: int = 1000
    simple_body_length: int = 200
    base_hours: Mapping[Complexity, int] = field(
        default_factory=lambda: MappingProxyType({Complexity.SIMPLE: 2, Complexity.MODERATE: 8, Complexity.COMPLEX: 24})
    )
    type_modifiers: Mapping[IssueType, float] = field(
        default_factory=lambda: MappingProxyType(
            {
                IssueType.BUG: 0.8,
                IssueType.DOCUMENTATION: 0.6,
                IssueType.ARCHITECTURE: 1.5,
                IssueType.INTEGRATION: 1.3,
            }
        )
    )
    issue_reference: re.Pattern[str] = re.compile(r"#(\d+)")
    blocking_phrase: re.Pattern[str] = re.compile(
        r"\b(?:blocked\s+by|depends\s+on|requires)\b\s*(?:#(\d+))?", re.IGNORECASE
    )


DEFAULT_ORGANIZATION_RULES: tuple[OrganizationRule, ...] = (
    OrganizationRule("DevBusinessHub", Priority.HIGH, types=frozenset({IssueType.BUG})),
    OrganizationRule("DevBusinessHub", Priority.HIGH, keywords=_compile(r"\bproduction\b", r"\bcustomers?\b")),
    OrganizationRule("DevAcademicHub", Priority.HIGH, types=frozenset({IssueType.DOCUMENTATION})),
    OrganizationRule("DevEcosystem", Priority.HIGH, types=frozenset({IssueType.DEVOPS, IssueType.ARCHITECTURE})),
)


def default_classification_rules(product_keyword: str = "devflow") -> ClassificationRules:
    """The stock rule set."""
    return ClassificationRules(
        type_patterns=(
            (IssueType.BUG, _compile(r"\bbugs?\b", r"\berrors?\b", r"\bfix(?:es|ed|ing)?\b", r"\bbroken\b", r"\bcrash")),
            (IssueType.FEATURE, _compile(r"\bfeat(?:ure)?s?\b", r"\badd(?:s|ing)?\b", r"\bimplement", r"\benhance")),
            (IssueType.DOCUMENTATION, _compile(r"\bdocs?\b", r"\breadme\b", r"\bdocumentation\b", r"\bguides?\b")),
            (IssueType.SECURITY, _compile(r"\bsecurity\b", r"\bvulnerab", r"\bexploit", r"\bcve\b")),
            (IssueType.PERFORMANCE, _compile(r"\bperformance\b", r"\bspeed\b", r"\boptimi[sz]", r"\bslow\b")),
            (IssueType.REFACTOR, _compile(r"\brefactor", r"\bclean\s?up\b", r"\bimprove", r"\brestructur")),
            (IssueType.TEST, _compile(r"\btests?\b", r"\btesting\b", r"\bspecs?\b", r"\bcoverage\b")),
            (IssueType.DEVOPS, _compile(r"\bci\b", r"\bcd\b", r"\bdeploy", r"\bdocker", r"\bpipelines?\b")),
        ),
        product_keyword=product_keyword.lower(),
        product_type_patterns=(
            (IssueType.ARCHITECTURE, _compile(r"\barchitecture\b", r"\bdesign\b")),
            (IssueType.INTEGRATION, _compile(r"\bapi\b", r"\bintegration\b")),
            (IssueType.CONFIGURATION, _compile(r"\bconfig", r"\bsettings?\b")),
            (IssueType.UI, _compile(r"\bdashboard\b", r"\bui\b")),
        ),
        priority_patterns=(
            (Priority.CRITICAL, _compile(r"\bcritical\b", r"\burgent\b", r"\bblocker\b", r"\bemergency\b")),
            (Priority.HIGH, _compile(r"\bhigh\b", r"\bimportant\b", r"\basap\b")),
            (Priority.LOW, _compile(r"\blow\b", r"\bminor\b", r"\bnice[\s-]to[\s-]have\b", r"\bsomeday\b")),
        ),
        complexity_patterns=(
            (Complexity.SIMPLE, _compile(r"\bsimple\b", r"\bquick\b", r"\beasy\b", r"\bminor\b")),
            (Complexity.COMPLEX, _compile(r"\bcomplex\b", r"\bdifficult\b", r"\bmajor\b", r"\brefactor", r"\barchitecture\b")),
        ),
        organization_rules=DEFAULT_ORGANIZATION_RULES,
    )


# -----------------------------------------------------------------------------
# Branch strategies
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BranchStrategy:
    prefix: str
    base_ref: str
    protection_rules: tuple[str, ...] = ()
    auto_merge: bool = False


DEFAULT_BRANCH_STRATEGIES: Mapping[BranchType, BranchStrategy] = MappingProxyType(
    {
        BranchType.FEATURE: BranchStrategy(
            prefix="feature/",
            base_ref="main",
            protection_rules=("require-pr-reviews", "dismiss-stale-reviews"),
            auto_merge=False,
        ),
        BranchType.BUGFIX: BranchStrategy(
            prefix="bugfix/",
            base_ref="main",
            protection_rules=("require-pr-reviews",),
            auto_merge=True,
        ),
        BranchType.HOTFIX: BranchStrategy(
            prefix="hotfix/",
            base_ref="production",
            protection_rules=("require-pr-reviews", "require-status-checks"),
            auto_merge=True,
        ),
        BranchType.RELEASE: BranchStrategy(
            prefix="release/",
            base_ref="develop",
            protection_rules=("require-pr-reviews", "require-approvals:2"),
            auto_merge=False,
        ),
    }
)

# Checked in order; first match wins.
BRANCH_TYPE_LABELS: tuple[tuple[BranchType, frozenset[str]], ...] = (
    (BranchType.BUGFIX, frozenset({"bug"})),
    (BranchType.HOTFIX, frozenset({"hotfix", "critical"})),
    (BranchType.RELEASE, frozenset({"release"})),
)


# -----------------------------------------------------------------------------
# Conflict detection
# -----------------------------------------------------------------------------

CRITICAL_FILE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(^|/)package\.json$"),
    re.compile(r"(^|/)pyproject\.toml$"),
    re.compile(r"(^|/)requirements[^/]*\.txt$"),
    re.compile(r"(^|/)\.github/workflows/"),
    re.compile(r"(^|/)config/"),
    re.compile(r"(^|/)\.env"),
    re.compile(r"(^|/)database/"),
    re.compile(r"(^|/)migrations/"),
)

HIGH_CHANGE_THRESHOLD = 50
