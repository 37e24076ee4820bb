"""Configuration management for the memory system."""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_TEAM_API_URL = "https://api.wogi-flow.com"


@dataclass(frozen=True)
class TeamConfig:
    """Team settings handed explicitly to the proposal engine and sync reconciler."""

    enabled: bool = False
    team_id: str | None = None
    api_url: str = DEFAULT_TEAM_API_URL
    token: str | None = None
    user_id: str | None = None

    @property
    def active(self) -> bool:
        """True when team features are switched on and fully configured."""
        return bool(self.enabled and self.team_id and self.token)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TeamConfig":
        """Build a TeamConfig from the ``team`` block of config.json."""
        return cls(
            enabled=bool(data.get("enabled", False)),
            team_id=data.get("teamId"),
            api_url=data.get("apiUrl") or DEFAULT_TEAM_API_URL,
            token=data.get("token") or data.get("apiKey"),
            user_id=data.get("userId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "teamId": self.team_id,
            "apiUrl": self.api_url,
            "token": self.token,
            "userId": self.user_id,
        }


class ConfigManager:
    """Manages the per-project configuration file.

    The configuration lives in ``<project>/.workflow/config.json``. Missing or
    corrupt files are treated as an empty configuration.
    """

    def __init__(self, project_root: Path) -> None:
        """Initialize the configuration manager.

        Args:
            project_root: Root directory of the project.
        """
        self.project_root = project_root
        self.workflow_path = project_root / ".workflow"
        self.config_path = self.workflow_path / "config.json"

    def load_config(self) -> dict[str, Any]:
        """Load configuration from config.json.

        Returns:
            Configuration dictionary.
        """
        if self.config_path.exists():
            try:
                with open(self.config_path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, OSError):
                return {}
        return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to config.json.

        Args:
            config: Configuration dictionary to save.
        """
        self.workflow_path.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(config, f, indent=2)

    def team_config(self) -> TeamConfig:
        """Build the team configuration, applying environment overrides.

        Returns:
            Immutable TeamConfig snapshot.
        """
        team = dict(self.load_config().get("team") or {})
        if os.environ.get("FLOW_MEMORY_TEAM_API"):
            team["apiUrl"] = os.environ["FLOW_MEMORY_TEAM_API"]
        if os.environ.get("FLOW_MEMORY_TEAM_TOKEN"):
            team["token"] = os.environ["FLOW_MEMORY_TEAM_TOKEN"]
        return TeamConfig.from_dict(team)

    def set_team_config(self, team: TeamConfig) -> None:
        """Persist team settings into config.json.

        Args:
            team: Team configuration to save.
        """
        config = self.load_config()
        config["team"] = team.to_dict()
        self.save_config(config)


def resolve_project_root(project_root: str | Path | None = None) -> Path:
    """Resolve the project root from an argument, the environment, or the cwd."""
    if project_root is not None:
        return Path(project_root).expanduser()
    env_root = os.environ.get("FLOW_MEMORY_PROJECT_ROOT")
    if env_root:
        return Path(env_root).expanduser()
    return Path.cwd()
