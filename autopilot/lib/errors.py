"""
Exceptions that end an autopilot run.

Recoverable conditions (worker crashes, rate limits, non-convergence,
conflicts) are handled inside the phase engine and integration pipeline.
These are raised only once their bounds are exhausted, or before the
loop starts.
"""

from dataclasses import dataclass

# epic_id used for halts outside any single epic (finalize)
PROJECT_SCOPE = "project"


@dataclass
class ConfigError(Exception):
    """Missing or invalid configuration, or a missing required tool."""
    message: str

    def __str__(self):
        return self.message


@dataclass
class PhaseHalt(Exception):
    """Unrecoverable failure for one epic. State on disk is left as last detected."""
    epic_id: str
    phase: str
    message: str

    def __str__(self):
        return f"[{self.epic_id}/{self.phase}] {self.message}"

    @property
    def resume_command(self) -> str:
        if self.epic_id == PROJECT_SCOPE:
            return "autopilot run"
        return f"autopilot run {self.epic_id}"
