"""Shared constants for the autopilot."""

import re

ITERATIVE_PHASES = {"clarify", "analyze"}
VERIFY_PHASES = {"clarify-verify", "analyze-verify"}

# Marker tokens embedded in artifact documents
MARKER_CLARIFY_COMPLETE = "<!-- CLARIFY_COMPLETE -->"
MARKER_CLARIFY_VERIFIED = "<!-- CLARIFY_VERIFIED -->"
MARKER_ANALYZED = "<!-- ANALYZED -->"

# Artifact filenames inside specs/<short_name>/
SPEC_FILE = "spec.md"
PLAN_FILE = "plan.md"
TASKS_FILE = "tasks.md"
DESIGN_CONTEXT_FILE = "design-context.md"

# Repository layout
EPICS_DIR = "docs/specs/epics"
SPECS_DIR = "specs"
SPECIFY_DIR = ".specify"
LOGS_DIR = ".specify/logs"
PROJECT_ENV = ".specify/project.env"
PHASE_OVERRIDES_FILE = ".specify/autopilot.yaml"

EVENTS_FILE = "events.jsonl"
STATUS_FILE = "autopilot-status.json"
RUN_LOG_FILE = "autopilot.log"
PROJECT_SUMMARY_FILE = "project-summary.md"

# Checkbox lines in tasks.md
UNCHECKED_RE = re.compile(r'^- \[ \]', re.MULTILINE)
CHECKED_RE = re.compile(r'^- \[[xX]\]', re.MULTILINE)

EPIC_ID_PATTERN = re.compile(r'^\d{3}$')

# Bounded excerpt lengths for durable events
TOOL_TARGET_MAX = 200
LAST_TOOL_TARGET_MAX = 80
ERROR_EXCERPT_MAX = 200

# Convergence
CONVERGENCE_WINDOW = 2

# Worker exit code that signals rate limiting
RATE_LIMIT_EXIT_CODE = 42
RATE_LIMIT_BACKOFF_SECONDS = 30

# Snapshot older than this with a dead pid is idle
STATUS_IDLE_GRACE_SECONDS = 120

# Process exit codes
EXIT_OK = 0
EXIT_HALT = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

# Remote review bot identity
CODERABBIT_BOT = "coderabbitai[bot]"
