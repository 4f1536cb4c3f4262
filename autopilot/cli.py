#!/usr/bin/env python3
"""Autopilot CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from autopilot.commands import list as cmd_list_module
from autopilot.commands import run as cmd_run_module
from autopilot.commands import status as cmd_status_module
from autopilot.lib.constants import EXIT_CONFIG
from autopilot.lib.errors import ConfigError


def find_repo_root(start: Path | None = None) -> Path:
    """Nearest ancestor holding .specify/ or .git, else the start dir."""
    start = (start or Path.cwd()).resolve()
    for candidate in [start, *start.parents]:
        if (candidate / ".specify").is_dir() or (candidate / ".git").exists():
            return candidate
    return start


def get_repo_root(args) -> Path:
    if args.repo:
        return Path(args.repo).resolve()
    return find_repo_root()


def cmd_run(args):
    return cmd_run_module.cmd_run(args, get_repo_root(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_repo_root(args))


def cmd_list(args):
    return cmd_list_module.cmd_list(args, get_repo_root(args))


def cmd_detect(args):
    return cmd_list_module.cmd_detect(args, get_repo_root(args))


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog='autopilot', description='Epic lifecycle autopilot')
    parser.add_argument('--repo', '-C', help='Repository root (default: nearest with .specify/ or .git)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # autopilot run
    p_run = subparsers.add_parser('run', help='Run epics through their lifecycle, then finalize')
    p_run.add_argument('id', nargs='?', help='Only this epic (three digits, e.g. 003)')
    p_run.add_argument('--no-auto-continue', action='store_true', help='Confirm before each next epic (TTY only)')
    p_run.add_argument('--dry-run', action='store_true', help='Detect and simulate one invocation per epic')
    p_run.add_argument('--silent', action='store_true', help='Only write the run log, no console progress')
    p_run.add_argument('--no-github', action='store_true', help='Disable GitHub issue sync')
    p_run.set_defaults(func=cmd_run)

    # autopilot status
    p_status = subparsers.add_parser('status', help='Show live status and recent events')
    p_status.set_defaults(func=cmd_status)

    # autopilot list
    p_list = subparsers.add_parser('list', help='List epics with their detected phase')
    p_list.set_defaults(func=cmd_list)

    # autopilot detect
    p_detect = subparsers.add_parser('detect', help='Print the detected phase of one epic')
    p_detect.add_argument('id', help='Epic id (three digits)')
    p_detect.set_defaults(func=cmd_detect)

    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        return args.func(args)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return EXIT_CONFIG


if __name__ == '__main__':
    sys.exit(main())
