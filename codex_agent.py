#!/usr/bin/env python3
"""
Codex agent driver

Runs the external Codex CLI for the three calls the loop needs:

    review   codex exec --full-auto /review      (preset answers piped on stdin)
    resume   codex exec --full-auto resume <session> <prompt>
    summary  codex exec <prompt>                 (staged diff piped on stdin)

Review output is streamed live to the terminal and captured to a temporary
file so the session id can be extracted afterwards. Nothing is retried: a
failed call aborts the run and the next invocation starts over.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, TextIO, Tuple

from loop_config import ConfigurationError, LoopConfig, ReviewFixError
from review_presets import DefaultScope, ReviewScope

logger = logging.getLogger(__name__)


SESSION_TOKEN_RE = re.compile(r'^[A-Za-z0-9._-]{3,128}$')
SESSION_ANNOUNCEMENT_RE = re.compile(r'\bsession\s+id:', re.IGNORECASE)
SESSION_MARKER_RE = re.compile(r'\bid:', re.IGNORECASE)

SUMMARY_PROMPT = (
    "Generate a concise, single-line summary of the following staged changes "
    "for use in a git commit message. Output only the summary text."
)


class AgentError(ReviewFixError):
    """Raised when an agent invocation fails."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class SessionCaptureError(AgentError):
    """Raised when no valid session id can be extracted from review output."""
    pass


@dataclass(frozen=True)
class AgentSession:
    """Handle of a review conversation that can be resumed once."""
    session_id: str

    def __post_init__(self) -> None:
        if not is_valid_session_id(self.session_id):
            raise ValueError(f"Invalid session id: {self.session_id!r}")

    def __str__(self) -> str:
        return self.session_id


def is_valid_session_id(token: Optional[str]) -> bool:
    return bool(token) and SESSION_TOKEN_RE.match(token) is not None


def extract_session_id(output: str) -> AgentSession:
    """
    Find the session id announced in review output.

    The last "session id:" line (any case) wins. Without one, the first
    line containing "id:" is used, so `id:` text quoted later in the
    review body never overrides the header. The first whitespace-delimited
    token after the marker is the candidate.

    Raises:
        SessionCaptureError: if no line matches or the token is malformed
    """
    announced = None
    fallback = None
    for line in output.splitlines():
        match = SESSION_ANNOUNCEMENT_RE.search(line)
        if match:
            announced = line[match.end():]
        elif fallback is None:
            match = SESSION_MARKER_RE.search(line)
            if match:
                fallback = line[match.end():]

    remainder = announced if announced is not None else fallback
    candidate = None
    if remainder is not None:
        tokens = remainder.split()
        candidate = tokens[0] if tokens else ""

    if candidate is None:
        raise SessionCaptureError("Failed to capture Codex session id from /review output.", output)
    if not is_valid_session_id(candidate):
        raise SessionCaptureError(
            f"Captured Codex session id {candidate!r} is malformed; refusing to resume.", output
        )
    return AgentSession(candidate)


def resolve_codex_binary(binary: str, search_path: Optional[str] = None) -> Tuple[Optional[str], str]:
    """Locate the Codex executable; returns (path, source description)."""
    candidate = Path(binary).expanduser()
    if os.sep in binary:
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate), "config"
        return None, f"CODEX_BIN is not executable: {candidate}"

    path_hit = shutil.which(binary, path=search_path)
    if path_hit:
        return path_hit, "PATH"
    return None, f"'{binary}' not found in PATH"


def _feed_stdin(pipe: TextIO, text: str) -> None:
    try:
        pipe.write(text)
    except BrokenPipeError:
        logger.debug("Codex closed stdin before reading preset input")
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            pass


class CodexAgent:
    """Drives the Codex CLI on behalf of the review/fix loop."""

    def __init__(self, config: LoopConfig, output_stream: Optional[TextIO] = None):
        self.config = config
        self.output_stream = output_stream or sys.stdout

        self.env = dict(config.environ)
        self.env['CODEX_MODEL'] = config.codex_model

        binary, source = resolve_codex_binary(config.codex_bin, self.env.get('PATH'))
        if binary is None:
            raise ConfigurationError(f"Codex CLI is required but was not found: {source}")
        self.binary = binary
        logger.debug(f"Using Codex binary {binary} (from {source})")

    def _stream(self, args: List[str], stdin_text: Optional[str], capture: TextIO) -> int:
        """Run codex with combined output echoed live and copied to capture."""
        cmd = [self.binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(self.config.repo_root),
                env=self.env,
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding='utf-8',
                errors='replace',
                bufsize=1,
            )
        except OSError as e:
            raise AgentError(f"Failed to start Codex ({self.binary}): {e}")

        # stdin is fed from a thread while stdout drains here, so neither
        # pipe can fill up and block the other.
        writer = None
        if stdin_text is not None:
            writer = threading.Thread(
                target=_feed_stdin, args=(process.stdin, stdin_text), name="codex-stdin", daemon=True
            )
            writer.start()

        for line in iter(process.stdout.readline, ''):
            self.output_stream.write(line)
            capture.write(line)
        self.output_stream.flush()
        process.stdout.close()
        returncode = process.wait()
        if writer is not None:
            writer.join()
        return returncode

    def review(self, scope: ReviewScope) -> AgentSession:
        """
        Run /review for the given scope and return its session handle.

        Preset answers travel over stdin so arbitrary text (custom
        instructions) never needs shell escaping.

        Raises:
            AgentError: if codex exits non-zero
            SessionCaptureError: if the session id cannot be captured
        """
        stdin_text = None
        if not isinstance(scope, DefaultScope):
            stdin_text = ''.join(f"{line}\n" for line in scope.input_lines())

        with tempfile.TemporaryFile(mode='w+', encoding='utf-8', prefix='codex-review-') as capture:
            returncode = self._stream(['exec', '--full-auto', '/review'], stdin_text, capture)
            capture.seek(0)
            output = capture.read()

        if returncode != 0:
            raise AgentError(f"Codex /review exited with code {returncode}", output)
        session = extract_session_id(output)
        logger.info(f"Captured Codex session id: {session}")
        return session

    def apply_fix(self, session: Optional[AgentSession], prompt: str) -> None:
        """Resume the review session and ask codex to apply its fixes."""
        if session is None or not is_valid_session_id(str(session)):
            raise AgentError("No Codex session id available for resume.")

        with tempfile.TemporaryFile(mode='w+', encoding='utf-8', prefix='codex-resume-') as capture:
            returncode = self._stream(
                ['exec', '--full-auto', 'resume', str(session), prompt], None, capture
            )
            if returncode != 0:
                capture.seek(0)
                raise AgentError(
                    f"Codex resume of session {session} exited with code {returncode}", capture.read()
                )

    def summarize(self, diff: bytes, prompt: str = SUMMARY_PROMPT) -> str:
        """Ask codex for a one-line summary of a diff; returns raw stdout."""
        cmd = [self.binary, 'exec', prompt]
        logger.debug(f"Running: {self.binary} exec <summary prompt> ({len(diff)} bytes on stdin)")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.config.repo_root),
                env=self.env,
                input=diff,
                capture_output=True,
            )
        except OSError as e:
            raise AgentError(f"Failed to start Codex ({self.binary}): {e}")

        stdout = result.stdout.decode('utf-8', errors='replace')
        if result.returncode != 0:
            raise AgentError(
                f"Codex summary exited with code {result.returncode}",
                stdout + result.stderr.decode('utf-8', errors='replace'),
            )
        return stdout
