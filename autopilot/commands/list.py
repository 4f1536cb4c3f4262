"""
autopilot list / detect - Show epics and their detected phase.
"""

from pathlib import Path

from autopilot.git import GitVersionControl
from autopilot.lib.config import load_project_config, resolve_merge_target
from autopilot.lib.constants import EPIC_ID_PATTERN, EXIT_CONFIG
from autopilot.lib.epics import find_epic, list_epics
from autopilot.runner.detector import StateDetector


def _detector(repo_root: Path) -> StateDetector:
    vcs = GitVersionControl(repo_root)
    project = load_project_config(repo_root)
    refs = tuple(dict.fromkeys([resolve_merge_target(project, vcs), project.base_branch]))
    return StateDetector(repo_root, vcs, merge_refs=refs)


def cmd_list(args, repo_root: Path) -> int:
    epics = list_epics(repo_root)
    if not epics:
        print("No epics found under docs/specs/epics/")
        return 0

    detector = _detector(repo_root)
    print(f"{'EPIC':<6} {'PHASE':<15} {'BRANCH':<30} TITLE")
    for epic in epics:
        phase = detector.detect(epic)
        print(f"{epic.id:<6} {phase:<15} {epic.short_name or '-':<30} {epic.title}")
    return 0


def cmd_detect(args, repo_root: Path) -> int:
    if not EPIC_ID_PATTERN.match(args.id):
        print(f"ERROR: Epic id must be three digits (e.g. 003), got '{args.id}'")
        return EXIT_CONFIG

    epic = find_epic(repo_root, args.id)
    if epic is None:
        print(f"ERROR: Epic {args.id} not found")
        return EXIT_CONFIG

    print(_detector(repo_root).detect(epic))
    return 0
