"""Configuration management for agentroute.

Configuration is read once at startup from ``.agentroute.yaml``. There is
deliberately no environment-variable override: every process coordinating
against the same repository must act on the same settings.
"""

from pathlib import Path
from typing import Dict, Iterator, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from agentroute.errors import ConfigError
from agentroute.labels import DEFAULT_PRIORITY_LABELS, Priority, RouteLabel, board_label

CONFIG_FILENAME = ".agentroute.yaml"

MergeStrategy = Literal["merge", "squash", "rebase"]
ConflictPolicy = Literal["authority-wins", "local-wins"]


class RetryConfig(BaseModel):
    """Backoff settings for store operations."""

    max_attempts: int = Field(default=3, ge=1)
    base_wait_s: float = Field(default=0.5, ge=0)
    max_wait_s: float = Field(default=30.0, ge=0)


class BoardColumns(BaseModel):
    """Board column names for each routing state."""

    ready: str = "Ready"
    assigned: str = "In Progress"
    review: str = "Review"
    conflict: str = "Conflict"
    done: str = "Done"


class Config(BaseModel):
    """agentroute configuration."""

    repo: Optional[str] = None
    trunk: str = "main"
    agent_prefix: str = "agent"
    max_agents: int = Field(default=1, ge=1, le=12)
    agent_capacity: int = Field(default=1, ge=1)
    assignee: str = "@me"
    priority_labels: Dict[str, Priority] = Field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_LABELS)
    )
    merge_strategy: MergeStrategy = "squash"
    required_checks: List[str] = Field(default_factory=list)
    min_approvals: int = Field(default=0, ge=0)
    recovery_branch_pattern: Optional[str] = None
    conflict_policy: ConflictPolicy = "authority-wins"
    check_timeout_s: float = Field(default=1800.0, gt=0)
    check_poll_interval_s: float = Field(default=15.0, gt=0)
    check_poll_max_interval_s: float = Field(default=120.0, gt=0)
    delete_branch_after_merge: bool = True
    board_columns: BoardColumns = Field(default_factory=BoardColumns)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    ticket_limit: int = Field(default=200, ge=1)

    @field_validator("repo")
    @classmethod
    def _check_repo(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.count("/") != 1:
            raise ValueError(f"repo must look like 'owner/name', got {v!r}")
        return v

    @field_validator("priority_labels", mode="before")
    @classmethod
    def _tier_names(cls, v: object) -> object:
        # Accept tier names ("high") as well as numeric values
        if isinstance(v, dict):
            converted = {}
            for label, tier in v.items():
                if isinstance(tier, str):
                    try:
                        tier = Priority[tier.upper()]
                    except KeyError:
                        raise ValueError(f"unknown priority tier {tier!r} for label {label!r}") from None
                converted[label] = tier
            return converted
        return v

    @field_validator("agent_prefix")
    @classmethod
    def _check_prefix(cls, v: str) -> str:
        if "/" in v or v.strip() != v:
            raise ValueError(f"agent_prefix may not contain '/' or whitespace: {v!r}")
        return v

    def agent_ids(self) -> Iterator[str]:
        """Yield agent identifiers "1".."max_agents" in order."""
        for n in range(1, self.max_agents + 1):
            yield str(n)

    def agent_label(self, agent_id: str) -> str:
        """Get the agent-identity label for an agent.

        Args:
            agent_id: Agent identifier

        Returns:
            Label string (e.g. "agent1")
        """
        return f"{self.agent_prefix}{agent_id}"

    def agent_id_from_label(self, label: str) -> Optional[str]:
        """Inverse of agent_label; None when the label is not a known agent."""
        if not label.startswith(self.agent_prefix):
            return None
        agent_id = label[len(self.agent_prefix):]
        return agent_id if agent_id in set(self.agent_ids()) else None

    def get_recovery_pattern(self) -> str:
        """Branch glob used by recovery scans."""
        return self.recovery_branch_pattern or f"{self.agent_prefix}*/*"

    def protocol_labels(self) -> List[str]:
        """Every label the coordination protocol relies on."""
        columns = self.board_columns
        return (
            [label.value for label in RouteLabel]
            + list(self.priority_labels)
            + [self.agent_label(agent_id) for agent_id in self.agent_ids()]
            + [board_label(c) for c in (columns.ready, columns.assigned, columns.review, columns.conflict, columns.done)]
        )


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .agentroute.yaml by walking up the directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from .agentroute.yaml.

    Args:
        path: Config file, or directory to start searching from
            (default: current directory)

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If no config file is found or it is invalid
    """
    if path is None:
        path = Path.cwd()

    config_file = path if path.is_file() else find_config_file(path)

    if config_file is None:
        raise ConfigError(
            f"No {CONFIG_FILENAME} found in {path} or any parent directory"
        )

    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} is empty or not a mapping")

    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}:\n{e}") from e
