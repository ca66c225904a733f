"""Health checks for an agentroute installation.

Usage:
    from agentroute.doctor import environment_registry, repository_registry

    results = environment_registry().run_all()
    if all(r.passed for r in results):
        results += repository_registry(store, config).run_all()
    for r in results:
        if not r.passed:
            print(f"FAIL: {r.name} - {r.message}")
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from agentroute.agents import AgentStage, load_agent_views
from agentroute.config import Config
from agentroute.errors import StoreError
from agentroute.github import ensure_gh_cli
from agentroute.store import AuthoritativeStore


@dataclass
class DiagnosticResult:
    """Result of a single diagnostic check.

    Attributes:
        name: Name of the check that was run
        passed: Whether the check passed
        message: Human-readable message describing the result
        fix_hint: Optional suggestion for how to fix a failure
    """

    name: str
    passed: bool
    message: str
    fix_hint: Optional[str] = None


class DiagnosticCheck(ABC):
    """Base class for diagnostic checks.

    Subclasses must define name, description, and implement check().
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    def check(self) -> DiagnosticResult:
        """Run the check."""


class DiagnosticRegistry:
    """Registry for collecting and running diagnostic checks."""

    def __init__(self) -> None:
        self.checks: List[DiagnosticCheck] = []

    def register(self, check: DiagnosticCheck) -> None:
        self.checks.append(check)

    def run_all(self) -> List[DiagnosticResult]:
        """Run all registered checks, continuing past failures and crashes."""
        results: List[DiagnosticResult] = []
        for check in self.checks:
            try:
                results.append(check.check())
            except Exception as e:
                # Check crashed - treat as failure
                results.append(
                    DiagnosticResult(
                        name=check.name,
                        passed=False,
                        message=f"Check error: {e}",
                        fix_hint="Re-run with -v for details",
                    )
                )
        return results


class GhAuthCheck(DiagnosticCheck):
    """Check that the gh CLI is installed and authenticated."""

    name = "gh_auth"
    description = "Verify gh is installed and logged in"

    def check(self) -> DiagnosticResult:
        try:
            ensure_gh_cli()
        except StoreError as e:
            return DiagnosticResult(
                name=self.name,
                passed=False,
                message=e.detail,
                fix_hint="Install gh from https://cli.github.com/ and run: gh auth login",
            )
        return DiagnosticResult(name=self.name, passed=True, message="gh is authenticated")


class LabelVocabularyCheck(DiagnosticCheck):
    """Check that every protocol label exists in the repository."""

    name = "labels"
    description = "Verify routing, priority, agent and board labels exist"

    def __init__(self, store: AuthoritativeStore, config: Config) -> None:
        self.store = store
        self.config = config

    def check(self) -> DiagnosticResult:
        present = set(self.store.list_labels())
        missing = [label for label in self.config.protocol_labels() if label not in present]
        if missing:
            return DiagnosticResult(
                name=self.name,
                passed=False,
                message=f"{len(missing)} label(s) missing: {', '.join(missing)}",
                fix_hint="Run: agentroute setup-labels",
            )
        return DiagnosticResult(
            name=self.name,
            passed=True,
            message=f"All {len(self.config.protocol_labels())} labels present",
        )


class AgentStateCheck(DiagnosticCheck):
    """Check that agent labels, assignees and capacity agree."""

    name = "agent_state"
    description = "Verify no ticket is half-assigned and no agent is over capacity"

    def __init__(self, store: AuthoritativeStore, config: Config) -> None:
        self.store = store
        self.config = config

    def problems(self) -> List[str]:
        config = self.config
        found: List[str] = []

        with self.store.request_scope():
            tickets = self.store.get_open_tickets()
        for ticket in tickets:
            labels = [
                label for label in ticket.agent_labels(config.agent_prefix)
                if config.agent_id_from_label(label) is not None
            ]
            if len(labels) > 1:
                found.append(f"#{ticket.number} carries {', '.join(labels)}")
            elif labels and not ticket.assignees:
                found.append(f"#{ticket.number} is labelled {labels[0]} but has no assignee")

        for view in load_agent_views(self.store, config):
            if view.load > view.capacity:
                found.append(f"{view.label} holds {view.load} assignment(s) (capacity {view.capacity})")
            for number, stage in sorted(view.stages.items()):
                if stage == AgentStage.CLEANUP:
                    found.append(f"#{number} is closed but still labelled {view.label}")

        return found

    def check(self) -> DiagnosticResult:
        found = self.problems()
        if found:
            return DiagnosticResult(
                name=self.name,
                passed=False,
                message="; ".join(found),
                fix_hint="Run: agentroute recover (or agentroute reset to release agents)",
            )
        return DiagnosticResult(
            name=self.name,
            passed=True,
            message=f"{self.config.max_agents} agent(s) consistent",
        )


def environment_registry() -> DiagnosticRegistry:
    """Checks that need nothing but the local machine."""
    registry = DiagnosticRegistry()
    registry.register(GhAuthCheck())
    return registry


def repository_registry(store: AuthoritativeStore, config: Config) -> DiagnosticRegistry:
    """Checks that read the repository through the store."""
    registry = DiagnosticRegistry()
    registry.register(LabelVocabularyCheck(store, config))
    registry.register(AgentStateCheck(store, config))
    return registry
