"""Git operations for the autopilot.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: commit(), fetch(), rebase(), push_with_lease()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_uncommitted_changes(), branch_exists(), is_ancestor()
- Functions returning parsed values (str, list): Return empty on failure.
  Examples: get_conflicted_files() -> []

The engine itself only talks to GitVersionControl (through the
VersionControl interface); the functions are exported for commands and
tests.
"""

from autopilot.git.runner import GitResult, run_git
from autopilot.git.status import (
    has_uncommitted_changes,
    get_conflicted_files,
)
from autopilot.git.branch import (
    get_current_branch,
    branch_exists,
    remote_branch_exists,
    checkout_branch,
    is_ancestor,
    log_mentions,
)
from autopilot.git.commit import (
    stage_files,
    stage_all,
    commit,
    merge_no_ff,
    merge_abort,
)
from autopilot.git.rebase import (
    rebase,
    rebase_continue,
    rebase_abort,
)
from autopilot.git.remote import (
    has_remote,
    fetch,
    push_with_lease,
    pull,
)
from autopilot.git.vcs import GitVersionControl

__all__ = [
    "GitResult",
    "run_git",
    "GitVersionControl",
    # status
    "has_uncommitted_changes",
    "get_conflicted_files",
    # branch
    "get_current_branch",
    "branch_exists",
    "remote_branch_exists",
    "checkout_branch",
    "is_ancestor",
    "log_mentions",
    # commit
    "stage_files",
    "stage_all",
    "commit",
    "merge_no_ff",
    "merge_abort",
    # rebase
    "rebase",
    "rebase_continue",
    "rebase_abort",
    # remote
    "has_remote",
    "fetch",
    "push_with_lease",
    "pull",
]
