"""
Per-phase worker configuration.

Each phase (and each auxiliary invocation such as conflict-resolve) runs
with a model tier, a tool allow-list, and an attempt budget. Defaults
live here; .specify/autopilot.yaml may override any of them:

    phases:
      implement:
        model: opus
        max_attempts: 4
        tools: [Read, Write, Edit, Bash]
    integration:
      review_poll_timeout: 900

Overrides are validated against phase_config.schema.json. A malformed
file is a configuration error, not a silent fallback, because a typo in
an attempt budget would otherwise go unnoticed for a whole run.
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from .constants import PHASE_OVERRIDES_FILE
from .errors import ConfigError
from .validate import validate, ValidationError

logger = logging.getLogger(__name__)

_EDIT_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]


@dataclass(frozen=True)
class PhaseSettings:
    model: str
    max_attempts: int
    tools: tuple[str, ...]

    @property
    def allowed_tools(self) -> str:
        return ",".join(self.tools)


def _p(model: str, max_attempts: int, tools: list[str]) -> PhaseSettings:
    return PhaseSettings(model=model, max_attempts=max_attempts, tools=tuple(tools))


DEFAULT_PHASES: dict[str, PhaseSettings] = {
    # Lifecycle phases
    "specify": _p("opus", 3, ["Skill"] + _EDIT_TOOLS + ["TodoWrite"]),
    "clarify": _p("opus", 5, ["Skill"] + _EDIT_TOOLS),
    "clarify-verify": _p("opus", 2, _EDIT_TOOLS),
    "plan": _p("opus", 3, ["Skill"] + _EDIT_TOOLS + ["WebSearch", "WebFetch"]),
    "design-read": _p("sonnet", 2, ["Read", "Write", "Glob", "Grep"]),
    "tasks": _p("opus", 3, ["Skill", "Read", "Write", "Edit", "Glob", "Grep"]),
    "analyze": _p("opus", 5, ["Skill"] + _EDIT_TOOLS),
    "analyze-verify": _p("opus", 5, _EDIT_TOOLS),
    "implement": _p("sonnet", 3, ["Skill", "Task"] + _EDIT_TOOLS + ["TodoWrite"]),
    "review": _p("opus", 3, _EDIT_TOOLS),
    # Auxiliary invocations
    "crystallize": _p("opus", 1, _EDIT_TOOLS),
    "finalize-fix": _p("opus", 3, _EDIT_TOOLS),
    "finalize-review": _p("opus", 1, _EDIT_TOOLS),
    "coderabbit-fix": _p("opus", 3, _EDIT_TOOLS),
    "conflict-resolve": _p("opus", 3, _EDIT_TOOLS),
    "rebase-test-fix": _p("opus", 1, _EDIT_TOOLS),
}


@dataclass(frozen=True)
class IntegrationSettings:
    """Bounds for the integration pipeline's loops (seconds where timed)."""
    cli_review_rounds: int = 3
    rebase_attempts: int = 3
    review_poll_interval: int = 30
    review_poll_timeout: int = 600
    review_rounds: int = 3
    merge_attempts: int = 3
    mergeable_backoff: int = 5
    repush_settle: int = 10
    finalize_rounds: int = 3


@dataclass
class AutopilotConfig:
    phases: dict[str, PhaseSettings] = field(default_factory=lambda: dict(DEFAULT_PHASES))
    integration: IntegrationSettings = field(default_factory=IntegrationSettings)

    def phase(self, name: str) -> PhaseSettings:
        if name not in self.phases:
            raise ValueError(f"Unknown phase: {name}")
        return self.phases[name]


def load_autopilot_config(repo_root: Path | None) -> AutopilotConfig:
    """Load .specify/autopilot.yaml over the defaults.

    Returns defaults if repo_root is None or the file doesn't exist.

    Raises:
        ConfigError: if the file is not valid YAML or fails schema validation
    """
    if repo_root is None:
        return AutopilotConfig()

    config_path = repo_root / PHASE_OVERRIDES_FILE
    if not config_path.exists():
        return AutopilotConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from None

    try:
        validate(data, "phase_config")
    except ValidationError as e:
        raise ConfigError(f"Invalid {config_path}: {e}") from None

    phases = dict(DEFAULT_PHASES)
    for name, override in (data.get("phases") or {}).items():
        if name not in phases:
            raise ConfigError(f"Unknown phase '{name}' in {config_path}")
        current = phases[name]
        phases[name] = replace(
            current,
            model=override.get("model", current.model),
            max_attempts=override.get("max_attempts", current.max_attempts),
            tools=tuple(override["tools"]) if "tools" in override else current.tools,
        )
        logger.debug(f"Phase override for {name}: {phases[name]}")

    integration = IntegrationSettings()
    if data.get("integration"):
        integration = replace(integration, **data["integration"])

    return AutopilotConfig(phases=phases, integration=integration)
