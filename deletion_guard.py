#!/usr/bin/env python3
"""
Deletion guard

The agent is allowed to delete tracked files, but a deletion is only kept
when someone vouched for it. For the files that went missing during one
iteration the guard applies, in order:

    1. AUTO_APPROVE_DELETIONS  -> keep, with a notice
    2. running under CI        -> keep, with a loud warning
    3. interactive terminal    -> ask; anything but "yes" restores
    4. otherwise               -> restore from HEAD
"""

import logging
import sys
from enum import Enum
from typing import Callable, List, Mapping, Optional, TextIO

from git_helper import GitHelper
from loop_config import LoopConfig
from ops_logger import OpsLogger

logger = logging.getLogger(__name__)


CI_INDICATORS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "BUILDKITE",
    "CIRCLECI",
    "TRAVIS",
    "JENKINS_URL",
    "TF_BUILD",
    "TEAMCITY_VERSION",
    "BITBUCKET_BUILD_NUMBER",
)


class DeletionDecision(str, Enum):
    NONE = "none"
    AUTO_APPROVED = "auto_approved"
    CI_APPROVED = "ci_approved"
    USER_APPROVED = "user_approved"
    RESTORED = "restored"


def detect_ci(environ: Mapping[str, str]) -> Optional[str]:
    """Return the name of the first CI indicator set in environ, if any."""
    for name in CI_INDICATORS:
        value = environ.get(name, "").strip().lower()
        if value and value not in ("0", "false", "no", "off"):
            return name
    return None


class DeletionGuard:
    """Applies the deletion policy to files removed during an iteration."""

    def __init__(
        self,
        git: GitHelper,
        config: LoopConfig,
        ops_logger: Optional[OpsLogger] = None,
        stdin: Optional[TextIO] = None,
        prompt: Callable[[str], str] = input,
    ):
        self.git = git
        self.auto_approve = config.auto_approve_deletions
        self.environ = config.environ
        self.ops = ops_logger
        self.stdin = stdin if stdin is not None else sys.stdin
        self.prompt = prompt

    def _is_interactive(self) -> bool:
        try:
            return self.stdin.isatty()
        except (AttributeError, ValueError):
            return False

    def _ask(self, paths: List[str]) -> bool:
        print("\n*** The agent deleted tracked files:")
        for path in paths:
            print(f"    - {path}")
        try:
            answer = self.prompt("*** Keep these deletions? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def reconcile(self, before: frozenset, after: frozenset) -> DeletionDecision:
        """
        Accept or veto deletions that happened between two snapshots.

        Args:
            before: Deleted paths at the start of the iteration
            after: Deleted paths after the agent ran

        Returns:
            The decision taken for the newly deleted paths
        """
        newly_deleted = sorted(set(after) - set(before))
        if not newly_deleted:
            return DeletionDecision.NONE

        if self.auto_approve:
            logger.info(f"AUTO_APPROVE_DELETIONS set; keeping {len(newly_deleted)} deleted file(s)")
            decision = DeletionDecision.AUTO_APPROVED
        else:
            ci_name = detect_ci(self.environ)
            if ci_name:
                logger.warning(
                    f"CI environment detected ({ci_name}); keeping {len(newly_deleted)} file(s) "
                    f"deleted by the agent without confirmation: {', '.join(newly_deleted)}"
                )
                decision = DeletionDecision.CI_APPROVED
            elif self._is_interactive():
                decision = DeletionDecision.USER_APPROVED if self._ask(newly_deleted) else DeletionDecision.RESTORED
            else:
                logger.warning(
                    "Agent deleted tracked files but no terminal is available to confirm; "
                    "restoring them (set AUTO_APPROVE_DELETIONS=true to keep deletions)"
                )
                decision = DeletionDecision.RESTORED

        if decision == DeletionDecision.RESTORED:
            self.git.restore_paths(newly_deleted)
            for path in newly_deleted:
                print(f"    Restored: {path}")
            if self.ops:
                self.ops.deletions_restored(newly_deleted)
        elif self.ops:
            self.ops.deletions_accepted(newly_deleted, decision.value)

        return decision
