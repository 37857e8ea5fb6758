#!/usr/bin/env python3
"""
Review preset resolution

Maps the user's REVIEW_PRESET identifier onto one of the scopes offered by
the Codex /review menu:

    1. Review against a base branch (PR style)
    2. Review uncommitted changes
    3. Review a specific commit
    4. Custom review instructions

An empty preset keeps the agent's default behaviour. Unknown identifiers are
tolerated (the agent may grow new presets) and resolve to the default scope
with a warning.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from loop_config import ConfigurationError, LoopConfig

logger = logging.getLogger(__name__)


BRANCH_ALIASES = frozenset({"1", "pr", "pr-style", "branch", "base", "baseline", "review-against-branch"})
UNCOMMITTED_ALIASES = frozenset({"2", "uncommitted", "working", "changes", "working-tree"})
COMMIT_ALIASES = frozenset({"3", "commit", "sha"})
CUSTOM_ALIASES = frozenset({"4", "custom", "instructions"})


@dataclass(frozen=True)
class DefaultScope:
    """Let the agent pick its own review scope."""
    selection = None

    def input_lines(self) -> List[str]:
        return []


@dataclass(frozen=True)
class BranchDiffScope:
    """Review the current branch against a base ref."""
    base_ref: str
    selection = "1"

    def __post_init__(self) -> None:
        if not self.base_ref:
            raise ConfigurationError("Branch review requires a base branch (REVIEW_BASE_BRANCH)")

    def input_lines(self) -> List[str]:
        return [self.selection, self.base_ref]


@dataclass(frozen=True)
class UncommittedChangesScope:
    """Review staged, unstaged and untracked changes."""
    selection = "2"

    def input_lines(self) -> List[str]:
        return [self.selection]


@dataclass(frozen=True)
class SingleCommitScope:
    """Review the changes introduced by one commit."""
    sha: str
    selection = "3"

    def __post_init__(self) -> None:
        if not self.sha:
            raise ConfigurationError("Commit review requires a commit (REVIEW_COMMIT_SHA)")

    def input_lines(self) -> List[str]:
        return [self.selection, self.sha]


@dataclass(frozen=True)
class CustomInstructionsScope:
    """Review driven by free-form instructions."""
    text: str
    selection = "4"

    def __post_init__(self) -> None:
        if not self.text:
            raise ConfigurationError(
                "Custom review preset selected but no REVIEW_CUSTOM_INSTRUCTIONS/FILE provided"
            )

    def input_lines(self) -> List[str]:
        return [self.selection, self.text]


ReviewScope = Union[
    DefaultScope,
    BranchDiffScope,
    UncommittedChangesScope,
    SingleCommitScope,
    CustomInstructionsScope,
]


@dataclass(frozen=True)
class ParseWarning:
    """A tolerated problem found while resolving the preset."""
    raw_identifier: str
    message: str


@dataclass(frozen=True)
class ScopeResolution:
    scope: ReviewScope
    warning: Optional[ParseWarning] = None


def normalize_preset(raw_identifier: Optional[str]) -> str:
    return (raw_identifier or "").strip().lower()


def read_custom_instructions(config: LoopConfig) -> Tuple[str, Optional[str]]:
    """
    Combine inline custom instructions with the optional instructions file.

    Returns:
        Tuple of (instructions, warning); warning is set when the configured
        file does not exist.
    """
    instructions = config.review_custom_instructions
    warning = None

    if config.review_custom_instructions_file:
        path = config.resolve_path(config.review_custom_instructions_file)
        if path.is_file():
            try:
                file_contents = path.read_text(encoding='utf-8')
            except (OSError, UnicodeDecodeError) as e:
                raise ConfigurationError(
                    f"REVIEW_CUSTOM_INSTRUCTIONS_FILE='{config.review_custom_instructions_file}' "
                    f"could not be read as UTF-8 text: {e}"
                ) from e
            # Shell command substitution drops trailing newlines; so do we.
            file_contents = file_contents.rstrip('\n')
            if instructions and file_contents:
                instructions += '\n'
            instructions += file_contents
        else:
            warning = (
                f"REVIEW_CUSTOM_INSTRUCTIONS_FILE='{config.review_custom_instructions_file}' does not exist."
            )

    return instructions, warning


def resolve_scope(raw_identifier: Optional[str], config: LoopConfig) -> ScopeResolution:
    """
    Resolve a preset identifier into a ReviewScope.

    Args:
        raw_identifier: Value of REVIEW_PRESET (case-insensitive)
        config: Run configuration supplying per-scope parameters

    Returns:
        ScopeResolution with the scope and an optional ParseWarning

    Raises:
        ConfigurationError: if the selected scope's parameter is missing
    """
    preset = normalize_preset(raw_identifier)

    if not preset:
        return ScopeResolution(DefaultScope())
    if preset in BRANCH_ALIASES:
        return ScopeResolution(BranchDiffScope(config.review_base_branch.strip()))
    if preset in UNCOMMITTED_ALIASES:
        return ScopeResolution(UncommittedChangesScope())
    if preset in COMMIT_ALIASES:
        return ScopeResolution(SingleCommitScope(config.review_commit_sha.strip()))
    if preset in CUSTOM_ALIASES:
        text, file_warning = read_custom_instructions(config)
        if file_warning:
            logger.warning(file_warning)
        return ScopeResolution(CustomInstructionsScope(text))

    return ScopeResolution(
        DefaultScope(),
        ParseWarning(
            raw_identifier=raw_identifier or "",
            message=f"Unknown REVIEW_PRESET='{raw_identifier}'. Falling back to the default review.",
        ),
    )


def describe_scope(scope: ReviewScope) -> str:
    """Human-readable description for progress output."""
    if isinstance(scope, BranchDiffScope):
        return f"changes against base branch '{scope.base_ref}'"
    if isinstance(scope, UncommittedChangesScope):
        return "uncommitted changes"
    if isinstance(scope, SingleCommitScope):
        return f"commit {scope.sha}"
    if isinstance(scope, CustomInstructionsScope):
        first_line = scope.text.splitlines()[0] if scope.text else ""
        return f"custom instructions ({first_line[:60]})"
    return "default review"
