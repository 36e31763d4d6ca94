"""Git command runner with timeout handling.

Every git call in phaseflow goes through run_git so that failures surface as
a GitResult the caller inspects, never as an exception.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
NETWORK_TIMEOUT = 120  # fetch, push, rebase onto freshly fetched refs


@dataclass
class GitResult:
    """Result of a git command."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for conflict detection and error text."""
        return f"{self.stdout}\n{self.stderr}".strip()


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
) -> GitResult:
    """
    Run a git command with timeout handling.

    Args:
        args: Git command arguments (e.g., ["worktree", "list", "--porcelain"])
        cwd: Repository or worktree to run in (passed as git -C)
        timeout: Timeout in seconds

    Returns:
        GitResult with returncode, stdout, stderr, and timed_out flag
    """
    cmd = ["git", "-C", str(cwd)] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"git {' '.join(args)} timed out after {timeout}s in {cwd}")
        return GitResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    except OSError as e:
        return GitResult(returncode=-1, stdout="", stderr=f"Failed to run git: {e}")

    if result.returncode != 0:
        logger.debug(f"git {' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
    return GitResult(
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )
