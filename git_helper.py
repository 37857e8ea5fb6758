#!/usr/bin/env python3
"""
Git helper for the Review/Fix Loop

Wraps the handful of git primitives the loop relies on: working tree
fingerprints, deletion detection, restoring files from HEAD, staging and
committing.
"""

import logging
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from loop_config import ReviewFixError

logger = logging.getLogger(__name__)

# Hashed in place of `git diff HEAD` output when the repository has no commits
EMPTY_REPOSITORY_SENTINEL = b"# empty repository\n"


class GitError(OSError, ReviewFixError):
    """Raised when a git command fails unexpectedly."""

    def __init__(self, args: List[str], returncode: int, output: str):
        self.command = ['git'] + list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: {output.strip()}"
        )


class GitHelper:
    """Helper for git operations."""

    def __init__(self, repo_root: Path):
        self.repo_root = repo_root

    def _run_raw(self, args: List[str], input_bytes: Optional[bytes] = None) -> subprocess.CompletedProcess:
        """Run a git command and return the completed process with raw bytes."""
        cmd = ['git', '-C', str(self.repo_root)] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, input=input_bytes, capture_output=True)
        except FileNotFoundError as e:
            raise GitError(args, -1, f"git executable not found: {e}")

    def _run(self, args: List[str]) -> Tuple[int, str]:
        """Run a git command and return (returncode, output)."""
        result = self._run_raw(args)
        output = result.stdout.decode('utf-8', errors='replace') + result.stderr.decode('utf-8', errors='replace')
        return result.returncode, output.strip()

    def _check(self, args: List[str], input_bytes: Optional[bytes] = None) -> bytes:
        """Run a git command, raising GitError on failure; return stdout bytes."""
        result = self._run_raw(args, input_bytes=input_bytes)
        if result.returncode != 0:
            output = result.stderr.decode('utf-8', errors='replace') or result.stdout.decode('utf-8', errors='replace')
            raise GitError(args, result.returncode, output)
        return result.stdout

    @staticmethod
    def _split_nul(output: bytes) -> List[str]:
        return [p.decode('utf-8', errors='surrogateescape') for p in output.split(b'\0') if p]

    def git_dir(self) -> Path:
        """Absolute path of the repository's .git directory."""
        output = self._check(['rev-parse', '--absolute-git-dir'])
        return Path(output.decode('utf-8').strip())

    def has_head(self) -> bool:
        """True when the repository has at least one commit."""
        result = self._run_raw(['rev-parse', '--verify', '--quiet', 'HEAD^{commit}'])
        return result.returncode == 0

    def head_commit(self) -> Optional[str]:
        """Hash of HEAD, or None in a repository without commits."""
        if not self.has_head():
            return None
        return self._check(['rev-parse', 'HEAD']).decode('utf-8').strip()

    def status_porcelain(self) -> bytes:
        """Porcelain status including every untracked file."""
        return self._check(['status', '--porcelain', '--untracked-files=all'])

    def is_clean(self) -> bool:
        """Check that there are no uncommitted or untracked changes."""
        return not self.status_porcelain().strip()

    def show_status(self) -> str:
        """Get git status."""
        code, output = self._run(['status', '--short'])
        return output

    def snapshot(self) -> str:
        """
        Fingerprint the working tree and index relative to the last commit.

        Hashes the porcelain status (tracked-modified, deleted and untracked
        paths) followed by the binary diff against HEAD. A repository without
        commits contributes a fixed sentinel instead of the diff.

        Returns:
            Git object id of the combined byte stream

        Raises:
            GitError: if any git call fails for a reason other than missing HEAD
        """
        payload = self.status_porcelain()
        if self.has_head():
            payload += self._check(['diff', '--binary', 'HEAD'])
        else:
            payload += EMPTY_REPOSITORY_SENTINEL
        return self._check(['hash-object', '--stdin'], input_bytes=payload).decode('utf-8').strip()

    def deleted_paths(self) -> frozenset:
        """Paths committed in HEAD that are missing from the working tree."""
        if not self.has_head():
            return frozenset()
        output = self._check(['diff', '--name-only', '--no-renames', '--diff-filter=D', '-z', 'HEAD'])
        return frozenset(self._split_nul(output))

    def restore_paths(self, paths: Iterable[str]) -> None:
        """Restore paths (index and working tree) from the last commit."""
        paths = sorted(paths)
        if not paths:
            return
        self._check(['checkout', 'HEAD', '--'] + paths)

    def stage(self, include_untracked: bool = False) -> None:
        """Stage modified and deleted files, plus untracked ones if requested."""
        self._check(['add', '-A'] if include_untracked else ['add', '-u'])

    def has_staged_changes(self) -> bool:
        """Check whether anything is staged for commit."""
        result = self._run_raw(['diff', '--cached', '--quiet'])
        if result.returncode == 0:
            return False
        if result.returncode == 1:
            return True
        raise GitError(['diff', '--cached', '--quiet'], result.returncode,
                       result.stderr.decode('utf-8', errors='replace'))

    def staged_diff(self) -> bytes:
        """Get diff of staged changes."""
        return self._check(['diff', '--cached', '--binary'])

    def staged_files(self) -> List[str]:
        """Names of staged files."""
        return self._split_nul(self._check(['diff', '--cached', '--name-only', '-z']))

    def commit(self, message: str) -> str:
        """Commit staged changes and return the new commit hash."""
        self._check(['commit', '-m', message])
        return self.head_commit()
