#!/usr/bin/env python3
"""
Commit message resolution

Templates may contain %d (iteration number) and %s (summary). The template
comes from, in order: AUTOFIX_COMMIT_MESSAGE, the `autofix_commit_message:`
entry of COMMIT_RULES_DOC, or DEFAULT_TEMPLATE.

Placeholders are replaced with plain str.replace, never printf-style
formatting, so summaries produced by the agent cannot inject directives.
"""

import logging
import re
from typing import List, Optional

from git_helper import GitHelper
from loop_config import LoopConfig
from ops_logger import OpsLogger

logger = logging.getLogger(__name__)


DEFAULT_TEMPLATE = "chore(review): codex /review autofix iteration %d"
RULES_KEY_RE = re.compile(r'^\s*autofix_commit_message\s*:\s*(.*)$', re.IGNORECASE)
FALLBACK_MAX_FILES = 3


def read_rules_template(config: LoopConfig) -> Optional[str]:
    """Template from the rules document, or None (with a warning) if unusable."""
    path = config.resolve_path(config.commit_rules_doc)
    if not path.is_file():
        logger.warning(
            f"COMMIT_RULES_DOC='{config.commit_rules_doc}' does not exist. Using default commit message."
        )
        return None

    for line in path.read_text(encoding='utf-8', errors='replace').splitlines():
        match = RULES_KEY_RE.match(line)
        if match:
            template = match.group(1).strip()
            if template:
                return template
            break

    logger.warning(
        f"{config.commit_rules_doc} does not define an 'autofix_commit_message:' entry. Using default."
    )
    return None


def resolve_template(config: LoopConfig) -> str:
    """Pick the commit message template by precedence."""
    if config.commit_message:
        return config.commit_message
    if config.commit_rules_doc:
        template = read_rules_template(config)
        if template:
            return template
    return DEFAULT_TEMPLATE


def template_wants_summary(template: str) -> bool:
    return "%s" in template


def sanitize_summary(text: str) -> str:
    """Collapse a summary onto one line with single spaces."""
    return " ".join(text.split())


def render_message(iteration: int, summary: str, template: str) -> str:
    """
    Substitute placeholders in a commit message template.

    %d is replaced first; %s is then replaced in the result (or the summary
    is appended when the template has no %s). The summary is inserted
    verbatim, so any % sequences it carries survive untouched.
    """
    summary = sanitize_summary(summary)
    message = template.replace("%d", str(iteration))
    if "%s" in message:
        message = message.replace("%s", summary)
    elif summary:
        message = f"{message} {summary}"
    return message


def fallback_summary(files: List[str]) -> str:
    """Deterministic summary listing changed file names."""
    if not files:
        return "apply review fixes"
    shown = ", ".join(files[:FALLBACK_MAX_FILES])
    if len(files) > FALLBACK_MAX_FILES:
        shown += f" and {len(files) - FALLBACK_MAX_FILES} more"
    return f"update {shown}"


def clean_agent_summary(text: str) -> str:
    """Strip markdown fences from an agent answer and flatten it."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].startswith("```") else lines[1:])
    return sanitize_summary(text)


class SummaryGenerator:
    """Produces the %s summary for a commit from the staged diff."""

    def __init__(self, git: GitHelper, agent, config: LoopConfig, ops_logger: Optional[OpsLogger] = None):
        self.git = git
        self.agent = agent
        self.max_bytes = config.ai_summary_max_bytes
        self.disabled = config.disable_ai_summary
        self.ops = ops_logger

    def _fallback(self, reason: str) -> str:
        summary = fallback_summary(self.git.staged_files())
        logger.info(f"Using fallback commit summary ({reason}): {summary}")
        if self.ops:
            self.ops.summary_fallback(reason)
        return summary

    def generate(self) -> str:
        """Summary for the currently staged changes."""
        if self.disabled:
            return self._fallback("AI summary disabled")

        diff = self.git.staged_diff()
        if len(diff) > self.max_bytes:
            return self._fallback(f"staged diff is {len(diff)} bytes, limit {self.max_bytes}")

        print("\n*** Generating commit summary...")
        try:
            answer = self.agent.summarize(diff)
        except Exception as e:
            logger.warning(f"AI summary failed: {e}")
            return self._fallback("agent error")

        summary = clean_agent_summary(answer)
        if not summary:
            return self._fallback("empty agent response")
        return summary


def build_commit_message(iteration: int, template: str, summary_generator: SummaryGenerator) -> str:
    """Resolve the final commit message, calling the agent only when %s is used."""
    summary = ""
    if template_wants_summary(template):
        summary = summary_generator.generate()
    return render_message(iteration, summary, template)
