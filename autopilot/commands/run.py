"""
autopilot run - Drive epics through their lifecycle, then finalize.
"""

import logging
import signal
from pathlib import Path

from autopilot.agents.claude import ClaudeWorker
from autopilot.git import GitVersionControl
from autopilot.lib.coderabbit import CodeRabbitCLI
from autopilot.lib.config import load_project_config, preflight_or_raise, resolve_merge_target
from autopilot.lib.constants import EPIC_ID_PATTERN, EXIT_CONFIG, EXIT_HALT, EXIT_INTERRUPTED
from autopilot.lib.errors import PhaseHalt
from autopilot.lib.github import GitHubRemote, check_gh_available
from autopilot.lib.issues import GitHubIssueTracker, NullIssueTracker
from autopilot.lib.phase_config import load_autopilot_config
from autopilot.runner.context import RunContext
from autopilot.workflow.scheduler import EpicScheduler, Services, run_autopilot

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ["git", "claude"]


def build_services(repo_root: Path, dry_run: bool = False, no_github: bool = False) -> Services:
    """Production adapters for every external capability."""
    issues = NullIssueTracker()
    if not (no_github or dry_run):
        gh_ok, gh_msg = check_gh_available()
        if gh_ok:
            issues = GitHubIssueTracker(repo_root)
        else:
            logger.info(f"Issue sync disabled: {gh_msg}")

    return Services(
        worker=ClaudeWorker(repo_root, dry_run=dry_run),
        vcs=GitVersionControl(repo_root),
        remote=GitHubRemote(repo_root),
        reviewer=CodeRabbitCLI(repo_root),
        issues=issues,
    )


def _interrupt(signum, frame):
    raise KeyboardInterrupt


def cmd_run(args, repo_root: Path) -> int:
    """Run the scheduler. Returns the process exit code.

    Raises:
        ConfigError: on missing project.env, bad overrides, or missing tools
    """
    target = args.id
    if target is not None and not EPIC_ID_PATTERN.match(target):
        print(f"ERROR: Epic id must be three digits (e.g. 003), got '{target}'")
        return EXIT_CONFIG

    project = load_project_config(repo_root)
    preflight_or_raise(project, [] if args.dry_run else REQUIRED_TOOLS)
    settings = load_autopilot_config(repo_root)

    services = build_services(repo_root, dry_run=args.dry_run, no_github=args.no_github)
    merge_target = resolve_merge_target(project, services.vcs)
    ctx = RunContext.create(
        repo_root,
        project,
        settings,
        merge_target,
        dry_run=args.dry_run,
        silent=args.silent,
    )
    scheduler = EpicScheduler(ctx, services, target=target, auto_continue=not args.no_auto_continue)

    ctx.log(f"Autopilot starting (merge target: {merge_target}{', dry run' if args.dry_run else ''})")

    original_sigterm = signal.signal(signal.SIGTERM, _interrupt)
    original_sigint = signal.signal(signal.SIGINT, _interrupt)
    try:
        return run_autopilot(scheduler)
    except PhaseHalt as e:
        ctx.log(f"HALTED: {e}")
        print(f"\nFix the problem, then resume with: {e.resume_command}")
        return EXIT_HALT
    except KeyboardInterrupt:
        epic_id = scheduler.current.id if scheduler.current else target
        resume = f"autopilot run {epic_id}" if epic_id else "autopilot run"
        ctx.log("Interrupted", echo=False)
        print(f"\nInterrupted. Resume with: {resume}")
        return EXIT_INTERRUPTED
    finally:
        services.worker.cleanup()
        signal.signal(signal.SIGTERM, original_sigterm)
        signal.signal(signal.SIGINT, original_sigint)
