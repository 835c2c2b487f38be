"""Thin wrapper around the git executable for one working copy."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from devchronicle.errors import EnumerationFailed

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120  # seconds


class GitClient:
    """Runs git commands in a single repository directory.

    Usage:
        client = GitClient(Path("~/src/webapp").expanduser())
        output = client.run("log", "--oneline")
    """

    def __init__(self, repo_dir: Path, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.repo_dir = Path(repo_dir)
        self.timeout = timeout

    def run(self, *args: str) -> str:
        """Run a git command and return stdout.

        Raises EnumerationFailed with the captured stderr on any failure;
        partial stdout is never returned.
        """
        command = ["git", *args]
        logger.debug(f"Running {' '.join(command)} in {self.repo_dir}")
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise EnumerationFailed(
                f"git {args[0]} timed out after {self.timeout}s",
                diagnostic=(e.stderr or "") if isinstance(e.stderr, str) else "",
                command=command,
            ) from e
        except OSError as e:
            raise EnumerationFailed(
                f"Could not run git in {self.repo_dir}", diagnostic=str(e), command=command
            ) from e

        if result.returncode != 0:
            raise EnumerationFailed(
                f"git {args[0]} exited with status {result.returncode}",
                diagnostic=result.stderr,
                command=command,
            )
        return result.stdout

    def is_work_tree(self) -> bool:
        """Check that repo_dir is inside a git working copy."""
        if not self.repo_dir.is_dir():
            return False
        try:
            output = self.run("rev-parse", "--is-inside-work-tree")
        except EnumerationFailed:
            return False
        return output.strip() == "true"
