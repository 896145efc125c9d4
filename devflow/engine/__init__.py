"""Orchestration engine.

Key Components:
    - DevFlowOrchestrator: Root orchestrator (``devflow.engine.orchestrator``)
    - IssueClassifier: Rule-based issue classification
    - ProjectAutomationService: Project board provisioning and issue routing
    - WorkflowOrchestrator: Branches, pull requests, conflict checks and
      cross-repository workflows
    - MilestoneCompletionTracker: Milestone completion and auto-close
    - CompletionRecordStore: Daily JSON analytics records
    - EventBus: Typed event bus connecting the components

Example:
    >>> from devflow.engine.orchestrator import DevFlowOrchestrator
    >>> async with DevFlowOrchestrator(settings) as orchestrator:
    ...     await orchestrator.process_issue(issue)
"""

from devflow.engine.events import Event, EventBus, EventType

__all__ = [
    "Event",
    "EventBus",
    "EventType",
]
