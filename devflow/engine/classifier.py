"""
Rule-based issue classifier.

Maps an issue's text, labels and organization to a type, priority,
complexity, effort estimate, dependencies and suggested labels. Classification
is a pure function of the issue and the injected ``ClassificationRules``: the
same input always yields the same ``Classification``, and malformed input
(missing title/body, ``None`` labels, plain mappings) falls back to defaults
instead of raising.

Evaluation order:
    1. type from the pattern table (first matching type wins), refined by the
       product-keyword rules when the text mentions the product
    2. priority from the pattern table (critical > high > low), else medium
    3. complexity by keyword, else by body length
    4. organization rules, which may only raise priority
    5. effort, dependencies, labels, confidence
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

import structlog

from devflow.config.rules import ClassificationRules, default_classification_rules
from devflow.enums import Complexity, IssueType, Priority, max_priority
from devflow.models.domain import Classification, Dependency

log = structlog.get_logger(__name__)

BASE_CONFIDENCE = 0.4
SIGNAL_WEIGHT = 0.2


def _field(issue: Any, name: str) -> Any:
    if isinstance(issue, Mapping):
        return issue.get(name)
    return getattr(issue, name, None)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _label_names(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return []
    names = []
    for label in value:
        if isinstance(label, str):
            names.append(label)
        elif isinstance(label, Mapping) and isinstance(label.get("name"), str):
            names.append(label["name"])
    return names


class IssueClassifier:
    """Classify issues with immutable, injected rule tables."""

    def __init__(self, rules: ClassificationRules | None = None) -> None:
        self.rules = rules or default_classification_rules()
        self.classified = 0

    def classify(self, issue: Any, organization: str | None = None) -> Classification:
        """Classify an issue.

        Args:
            issue: An ``Issue`` or a mapping with title/body/labels keys
            organization: Organization id the issue belongs to, if known

        Returns:
            The classification; never raises for malformed issue data
        """
        title = _text(_field(issue, "title"))
        body = _text(_field(issue, "body"))
        labels = _label_names(_field(issue, "labels"))
        text = " ".join([title, body, *labels]).lower()

        issue_type, type_matched = self._classify_type(text)
        priority, priority_matched = self._classify_priority(text)
        complexity, complexity_matched = self._classify_complexity(text, body)

        escalated = self._apply_organization_rules(organization, issue_type, priority, text)
        if escalated != priority:
            priority, priority_matched = escalated, True

        classification = Classification(
            type=issue_type,
            priority=priority,
            complexity=complexity,
            estimated_hours=self.estimate_hours(complexity, issue_type),
            dependencies=self.extract_dependencies(f"{title} {body}"),
            labels=self._generate_labels(title, issue_type, priority, organization),
            confidence=self._confidence(type_matched, priority_matched, complexity_matched),
            organization=organization,
        )
        self.classified += 1
        log.debug(
            "issue_classified",
            issue=_field(issue, "number"),
            type=issue_type.value,
            priority=priority.value,
            complexity=complexity.value,
            confidence=classification.confidence,
        )
        return classification

    def _classify_type(self, text: str) -> tuple[IssueType, bool]:
        if self.rules.product_keyword in text:
            for issue_type, patterns in self.rules.product_type_patterns:
                if any(p.search(text) for p in patterns):
                    return issue_type, True

        for issue_type, patterns in self.rules.type_patterns:
            if any(p.search(text) for p in patterns):
                return issue_type, True
        return IssueType.FEATURE, False

    def _classify_priority(self, text: str) -> tuple[Priority, bool]:
        for priority, patterns in self.rules.priority_patterns:
            if any(p.search(text) for p in patterns):
                return priority, True
        return Priority.MEDIUM, False

    def _classify_complexity(self, text: str, body: str) -> tuple[Complexity, bool]:
        for complexity, patterns in self.rules.complexity_patterns:
            if any(p.search(text) for p in patterns):
                return complexity, True

        if len(body) > self.rules.complex_body_length:
            return Complexity.COMPLEX, False
        if len(body) < self.rules.simple_body_length:
            return Complexity.SIMPLE, False
        return Complexity.MODERATE, False

    def _apply_organization_rules(
        self,
        organization: str | None,
        issue_type: IssueType,
        priority: Priority,
        text: str,
    ) -> Priority:
        if not organization:
            return priority
        for rule in self.rules.organization_rules:
            if rule.organization != organization:
                continue
            if issue_type in rule.types or any(k.search(text) for k in rule.keywords):
                priority = max_priority(priority, rule.escalate_to)
        return priority

    def estimate_hours(self, complexity: Complexity, issue_type: IssueType) -> int:
        """Base hours for the complexity times the type modifier, rounded half up."""
        hours = self.rules.base_hours[complexity] * self.rules.type_modifiers.get(issue_type, 1.0)
        return math.floor(hours + 0.5)

    def extract_dependencies(self, text: str) -> tuple[Dependency, ...]:
        """``#N`` references plus blocking phrases.

        A blocking phrase followed by ``#N`` marks that reference as blocking;
        a blocking phrase without a number becomes a target-less blocking
        dependency.
        """
        blocking_targets: set[int] = set()
        untargeted_blocking = False
        for match in self.rules.blocking_phrase.finditer(text):
            if match.group(1):
                blocking_targets.add(int(match.group(1)))
            else:
                untargeted_blocking = True

        dependencies: list[Dependency] = []
        seen: set[int] = set()
        for match in self.rules.issue_reference.finditer(text):
            number = int(match.group(1))
            if number in seen:
                continue
            seen.add(number)
            dependencies.append(
                Dependency(
                    kind="issue",
                    reference=f"#{number}",
                    target=number,
                    blocking=number in blocking_targets,
                )
            )

        if untargeted_blocking:
            dependencies.append(Dependency(kind="blocking", blocking=True))
        return tuple(dependencies)

    def _generate_labels(
        self,
        title: str,
        issue_type: IssueType,
        priority: Priority,
        organization: str | None,
    ) -> tuple[str, ...]:
        labels = [f"type:{issue_type.value}"]
        if priority != Priority.MEDIUM:
            labels.append(f"priority:{priority.value}")
        if organization:
            labels.append(f"org:{organization.lower()}")

        keyword = self.rules.product_keyword
        if keyword in title.lower():
            labels.append(f"{keyword}:implementation")
            if issue_type == IssueType.ARCHITECTURE:
                labels.append(f"{keyword}:architecture")
            elif issue_type == IssueType.INTEGRATION:
                labels.append(f"{keyword}:projects-v2")
        return tuple(labels)

    @staticmethod
    def _confidence(type_matched: bool, priority_matched: bool, complexity_matched: bool) -> float:
        signals = sum((type_matched, priority_matched, complexity_matched))
        return round(min(1.0, BASE_CONFIDENCE + SIGNAL_WEIGHT * signals), 2)

    def health(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "classified": self.classified,
            "type_rules": len(self.rules.type_patterns),
            "organization_rules": len(self.rules.organization_rules),
        }
