#!/usr/bin/env python3
"""
Codex Review/Fix Loop

Repeatedly asks Codex to review the repository, resumes the same session to
apply the suggested fixes, and commits whatever changed.

Usage:
    MAX_LOOPS=20 python review_fix.py
    REVIEW_PRESET=branch REVIEW_BASE_BRANCH=main python review_fix.py
    python review_fix.py --config config.yaml

Architecture:
    1. Load configuration (defaults < YAML file < environment)
    2. Resolve the review preset and check the working tree is clean
       (skipped for the uncommitted-changes preset)
    3. For each iteration up to MAX_LOOPS:
       - Fingerprint the working tree
       - codex /review, then codex resume <session> "<apply fixes prompt>"
       - Fingerprint again; identical means the agent is done
       - Veto unapproved file deletions
       - Stage, resolve the commit message, commit
    4. Exit 0 on convergence, on reaching MAX_LOOPS, or after the single
       uncommitted-changes pass; exit 1 on any fatal error
"""

import argparse
import datetime
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from codex_agent import AgentSession, CodexAgent
from commit_message import SummaryGenerator, build_commit_message, resolve_template
from deletion_guard import DeletionGuard
from git_helper import GitHelper
from loop_config import LoopConfig, ReviewFixError, load_config
from ops_logger import OpsLogger, create_logger_from_config
from review_presets import ReviewScope, UncommittedChangesScope, describe_scope, resolve_scope

logger = logging.getLogger(__name__)


class PreconditionError(ReviewFixError):
    """Raised when the repository is not in a state the loop can start from."""
    pass


class LoopOutcome(str, Enum):
    CONVERGED = "converged"
    LIMIT_REACHED = "limit_reached"
    UNCOMMITTED_HALT = "uncommitted_halt"


@dataclass
class LoopState:
    """Mutable state of one run, owned by ReviewFixLoop."""
    max_iterations: int
    running_in_uncommitted_mode: bool
    current_iteration: int = 0
    last_session: Optional[AgentSession] = None
    commits_created: int = 0
    session_id: str = ""
    start_time: Optional[datetime.datetime] = None


class ReviewFixLoop:
    """Drives review -> fix -> detect -> commit until nothing changes."""

    def __init__(
        self,
        config: LoopConfig,
        agent: CodexAgent,
        git: Optional[GitHelper] = None,
        ops_logger: Optional[OpsLogger] = None,
        deletion_guard: Optional[DeletionGuard] = None,
    ):
        self.config = config
        self.agent = agent
        self.git = git or GitHelper(config.repo_root)
        self.ops = ops_logger

        resolution = resolve_scope(config.review_preset, config)
        if resolution.warning:
            logger.warning(resolution.warning.message)
        self.scope: ReviewScope = resolution.scope

        self.deletion_guard = deletion_guard or DeletionGuard(self.git, config, ops_logger=self.ops)
        self.template = resolve_template(config)
        self.summary_generator = SummaryGenerator(self.git, agent, config, ops_logger=self.ops)

        now = datetime.datetime.now()
        self.state = LoopState(
            max_iterations=config.max_loops,
            running_in_uncommitted_mode=isinstance(self.scope, UncommittedChangesScope),
            session_id=self.ops.session_id if self.ops else now.strftime("%Y%m%d_%H%M%S"),
            start_time=now,
        )

    def check_preconditions(self) -> None:
        """Require a clean working tree unless reviewing uncommitted changes."""
        if self.state.running_in_uncommitted_mode:
            print("*** Uncommitted-changes review preset selected; skipping clean working tree check.")
            return
        if not self.git.is_clean():
            raise PreconditionError(
                "Working tree has uncommitted or untracked changes. "
                "Please commit or stash them before running the review/fix loop.\n"
                + self.git.show_status()
            )

    def _commit_iteration(self, iteration: int) -> bool:
        """Stage and commit this iteration's changes; False if nothing was staged."""
        print("*** Changes detected from Codex; committing...")
        self.git.stage(include_untracked=self.config.include_untracked)

        if not self.git.has_staged_changes():
            print("*** No staged changes found after staging; stopping.")
            if not self.config.include_untracked:
                logger.info("Untracked files are not staged unless INCLUDE_UNTRACKED=true")
            if self.ops:
                self.ops.staging_empty()
            return False

        files = self.git.staged_files()
        message = build_commit_message(iteration, self.template, self.summary_generator)
        commit_hash = self.git.commit(message)
        self.state.commits_created += 1
        if self.ops:
            self.ops.commit_success(commit_hash, files, message)
        print(f"*** Committed Codex fixes for iteration {iteration}: {commit_hash[:12]} {message}")
        return True

    def run_iteration(self, iteration: int) -> Optional[LoopOutcome]:
        """
        Run one review/fix iteration.

        Returns:
            A terminal LoopOutcome, or None to continue with the next iteration
        """
        start_signature = self.git.snapshot()
        deleted_before = self.git.deleted_paths()
        if self.ops:
            self.ops.iteration_start(iteration, start_signature)

        # 1) Ask Codex to review
        self.state.last_session = self.agent.review(self.scope)
        if self.ops:
            self.ops.review_complete(str(self.state.last_session))

        # 2) Resume the same session to apply the fixes
        self.agent.apply_fix(self.state.last_session, self.config.apply_fix_prompt)

        # 3) Did anything change?
        end_signature = self.git.snapshot()
        if self.ops:
            self.ops.fix_applied(str(self.state.last_session), end_signature)

        if start_signature == end_signature:
            print(f"\n*** No changes from Codex in iteration {iteration}.")
            print("*** Assuming no more issues to fix.")
            if self.ops:
                self.ops.no_changes()
            return LoopOutcome.CONVERGED

        self.deletion_guard.reconcile(deleted_before, self.git.deleted_paths())

        if self.state.running_in_uncommitted_mode:
            print(f"\n*** Codex produced changes in iteration {iteration}, "
                  "but the uncommitted-changes preset never auto-commits.")
            print("*** Review the updated working tree and commit manually.")
            if self.ops:
                self.ops.uncommitted_halt()
            return LoopOutcome.UNCOMMITTED_HALT

        if not self._commit_iteration(iteration):
            return LoopOutcome.CONVERGED
        return None

    def run(self) -> LoopOutcome:
        """Run the loop until convergence, halt or MAX_LOOPS."""
        self.check_preconditions()

        if self.config.commit_rules_doc:
            print(f"*** Commit conventions sourced from: {self.config.commit_rules_doc}")
        print(f"*** Review scope: {describe_scope(self.scope)}")
        print(f"*** Starting Codex /review autofix loop (max {self.state.max_iterations} iterations)...")

        if self.ops:
            self.ops.session_start({
                "repo_root": str(self.config.repo_root),
                "scope": describe_scope(self.scope),
                "max_loops": self.state.max_iterations,
                "include_untracked": self.config.include_untracked,
            })

        outcome = LoopOutcome.LIMIT_REACHED
        try:
            for iteration in range(1, self.state.max_iterations + 1):
                self.state.current_iteration = iteration
                print(f"\n{'=' * 70}")
                print(f"CODEX REVIEW ITERATION {iteration}/{self.state.max_iterations}")
                print('=' * 70)

                result = self.run_iteration(iteration)
                if result is not None:
                    outcome = result
                    break
            else:
                print(f"\n*** Reached MAX_LOOPS={self.state.max_iterations} "
                      "with Codex still making changes or suggestions.")
                print("*** Review the repo manually to ensure everything looks good.")
                if self.ops:
                    self.ops.limit_reached(self.state.max_iterations)
        except ReviewFixError as e:
            if self.ops:
                self.ops.error(str(e), {"iteration": self.state.current_iteration})
            raise

        if self.ops:
            self.ops.session_end(
                outcome.value,
                iterations=self.state.current_iteration,
                commits=self.state.commits_created,
            )

        print("\n" + "=" * 60)
        print("REVIEW/FIX SESSION COMPLETE")
        print("=" * 60)
        print(f"Session: {self.state.session_id}")
        print(f"Outcome: {outcome.value}")
        print(f"Iterations: {self.state.current_iteration}")
        print(f"Commits created: {self.state.commits_created}")
        print(f"Duration: {datetime.datetime.now() - self.state.start_time}")
        print("=" * 60)
        return outcome


def _report_fatal(error: ReviewFixError) -> None:
    logger.error(str(error))
    output = getattr(error, 'output', '')
    if output:
        logger.error("Captured agent output:\n" + output.rstrip())


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Codex review/fix loop: review, apply fixes, commit, repeat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings come from environment variables (or a YAML file via --config):
    MAX_LOOPS                         Maximum iterations (default 10)
    REVIEW_PRESET                     1/branch, 2/uncommitted, 3/commit, 4/custom
    REVIEW_BASE_BRANCH                Base branch for the branch preset
    REVIEW_COMMIT_SHA                 Commit for the commit preset
    REVIEW_CUSTOM_INSTRUCTIONS[_FILE] Instructions for the custom preset
    AUTOFIX_COMMIT_MESSAGE            Commit template (%d iteration, %s summary)
    COMMIT_RULES_DOC                  Document defining autofix_commit_message:
    INCLUDE_UNTRACKED                 Commit new files too (default false)
    AUTO_APPROVE_DELETIONS            Keep files the agent deletes (default false)
    DISABLE_AI_SUMMARY                Never ask Codex for a %s summary
    AI_SUMMARY_MAX_BYTES              Largest diff sent for summarizing
    APPLY_FIX_PROMPT                  Instruction sent when resuming the session
    CODEX_BIN, CODEX_MODEL            Codex executable and model

Examples:
    MAX_LOOPS=20 python review_fix.py
    REVIEW_PRESET=branch REVIEW_BASE_BRANCH=main python review_fix.py
        """
    )

    parser.add_argument(
        '--config',
        default=None,
        help='Path to an optional YAML configuration file'
    )

    parser.add_argument(
        '--repo',
        default='.',
        help='Repository to operate on (default: current directory)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    )

    repo_root = Path(args.repo).resolve()
    ops_logger = None
    try:
        config = load_config(
            os.environ,
            repo_root=repo_root,
            config_path=Path(args.config) if args.config else None,
        )
        git = GitHelper(repo_root)
        ops_logger = create_logger_from_config(config.ops_log_dir, git.git_dir())
        agent = CodexAgent(config)
        loop = ReviewFixLoop(config, agent, git=git, ops_logger=ops_logger)
        loop.run()
    except ReviewFixError as e:
        _report_fatal(e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
