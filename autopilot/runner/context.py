"""
Run context for one autopilot session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from autopilot.lib.config import ProjectConfig
from autopilot.lib.constants import LOGS_DIR, RUN_LOG_FILE, SPECS_DIR
from autopilot.lib.epics import Epic
from autopilot.lib.phase_config import AutopilotConfig
from autopilot.lib.prompts import PromptContext
from autopilot.runner.events import EventLog
from autopilot.runner.status_file import StatusFile


@dataclass
class RunContext:
    """Everything a run shares: config, the durable log, the live snapshot."""
    repo_root: Path
    project: ProjectConfig
    settings: AutopilotConfig
    merge_target: str
    logs_dir: Path
    events: EventLog
    status: StatusFile
    dry_run: bool = False
    silent: bool = False
    start_time: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(cls, repo_root: Path, project: ProjectConfig, settings: AutopilotConfig,
               merge_target: str, dry_run: bool = False, silent: bool = False) -> 'RunContext':
        logs_dir = repo_root / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        return cls(
            repo_root=repo_root,
            project=project,
            settings=settings,
            merge_target=merge_target,
            logs_dir=logs_dir,
            events=EventLog(logs_dir),
            status=StatusFile(logs_dir),
            dry_run=dry_run,
            silent=silent,
        )

    def log(self, message: str, echo: bool = True):
        """Append to the run log and, unless silent, print."""
        timestamp = datetime.now().isoformat(timespec="seconds")
        with open(self.logs_dir / RUN_LOG_FILE, "a") as f:
            f.write(f"[{timestamp}] {message}\n")
        if echo and not self.silent:
            print(message)

    def prompt_context(self, epic: Epic) -> PromptContext:
        return PromptContext(
            epic_id=epic.id,
            epic_title=epic.title,
            epic_file=str(epic.source_file.relative_to(self.repo_root))
            if epic.source_file.is_relative_to(self.repo_root) else str(epic.source_file),
            short_name=epic.short_name,
            spec_dir=f"{SPECS_DIR}/{epic.short_name}" if epic.short_name else SPECS_DIR,
            base_branch=self.project.base_branch,
            merge_target=self.merge_target,
            test_cmd=self.project.test_cmd or "(none configured)",
            lint_cmd=self.project.lint_cmd or "(none configured)",
            work_dir=self.project.work_dir,
        )
