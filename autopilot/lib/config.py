"""
Project configuration for the autopilot.

Loads .specify/project.env and resolves the merge target and preflight
tools. A missing project.env is fatal before any epic work begins.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from . import envparse
from .constants import PROJECT_ENV
from .errors import ConfigError

logger = logging.getLogger(__name__)

STAGING_BRANCH = "staging"


@dataclass
class ProjectConfig:
    """Project-level configuration from .specify/project.env"""
    repo_root: Path
    test_cmd: str = ""
    lint_cmd: str = ""
    build_cmd: str = ""
    format_cmd: str = ""
    work_dir: str = "."
    base_branch: str = "master"
    force_advance_on_review_fail: bool = False
    preflight_tools: list[str] = field(default_factory=list)

    @property
    def work_path(self) -> Path:
        return (self.repo_root / self.work_dir).resolve()


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_project_config(repo_root: Path) -> ProjectConfig:
    """Load .specify/project.env and return ProjectConfig.

    Raises:
        ConfigError: if the file is missing or malformed
    """
    env_path = repo_root / PROJECT_ENV
    try:
        env = envparse.load_env(str(env_path))
    except FileNotFoundError:
        raise ConfigError(
            f"{PROJECT_ENV} not found in {repo_root}. "
            f"Create it with at least BASE_BRANCH and PROJECT_TEST_CMD."
        ) from None
    except ValueError as e:
        raise ConfigError(f"Invalid {PROJECT_ENV}: {e}") from None

    return ProjectConfig(
        repo_root=repo_root,
        test_cmd=env.get("PROJECT_TEST_CMD", ""),
        lint_cmd=env.get("PROJECT_LINT_CMD", ""),
        build_cmd=env.get("PROJECT_BUILD_CMD", ""),
        format_cmd=env.get("PROJECT_FORMAT_CMD", ""),
        work_dir=env.get("PROJECT_WORK_DIR", ".") or ".",
        base_branch=env.get("BASE_BRANCH", "master") or "master",
        force_advance_on_review_fail=_as_bool(env.get("FORCE_ADVANCE_ON_REVIEW_FAIL", "false")),
        preflight_tools=env.get("PROJECT_PREFLIGHT_TOOLS", "").split(),
    )


def resolve_merge_target(config: ProjectConfig, vcs) -> str:
    """Merge into staging when the repo has one, otherwise into the base branch."""
    if vcs.branch_exists(STAGING_BRANCH) or vcs.remote_branch_exists(STAGING_BRANCH):
        return STAGING_BRANCH
    return config.base_branch


def check_preflight(config: ProjectConfig, required: list[str] | None = None) -> list[str]:
    """Return the required binaries that are not on PATH."""
    tools = list(required or []) + config.preflight_tools
    missing = []
    for tool in tools:
        if shutil.which(tool) is None:
            missing.append(tool)
    return missing


def preflight_or_raise(config: ProjectConfig, required: list[str] | None = None) -> None:
    """Fail fast when a required tool is missing."""
    missing = check_preflight(config, required)
    if missing:
        raise ConfigError(f"Required tools not found on PATH: {', '.join(missing)}")
    logger.debug("Preflight passed")
