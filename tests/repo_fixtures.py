"""Shared helpers: throwaway git repositories and a scriptable fake codex CLI."""

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

from loop_config import LoopConfig, load_config


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-C", str(repo)] + list(args),
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def init_repo(repo: Path, files: Optional[Dict[str, str]] = None, commit: bool = True) -> Path:
    """Create a git repository, optionally with an initial commit of files."""
    repo.mkdir(parents=True, exist_ok=True)
    git(repo, "init", "-q")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    for name, content in (files or {}).items():
        path = repo / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    if commit:
        git(repo, "add", "-A")
        git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


def commit_count(repo: Path) -> int:
    return int(git(repo, "rev-list", "--count", "HEAD").strip())


def last_commit_subject(repo: Path) -> str:
    return git(repo, "log", "-1", "--pretty=%s").strip()


FAKE_CODEX = '''#!{python}
import json
import sys
from pathlib import Path

STATE_DIR = Path({state_dir!r})
REVIEW_OUTPUT = {review_output!r}
REVIEW_EXIT = {review_exit!r}
FIX = {fix!r}
SUMMARY = {summary!r}
SUMMARY_EXIT = {summary_exit!r}


def record(kind, **fields):
    fields["kind"] = kind
    with open(STATE_DIR / "calls.jsonl", "a") as f:
        f.write(json.dumps(fields) + "\\n")


def count(kind):
    path = STATE_DIR / "calls.jsonl"
    if not path.exists():
        return 0
    return sum(1 for line in path.read_text().splitlines() if json.loads(line)["kind"] == kind)


args = sys.argv[1:]

if args[:3] == ["exec", "--full-auto", "/review"]:
    record("review", stdin=sys.stdin.read())
    print("Running code review...")
    print(REVIEW_OUTPUT)
    sys.exit(REVIEW_EXIT)

if args[:3] == ["exec", "--full-auto", "resume"]:
    record("resume", session=args[3], prompt=args[4])
    print("Resuming session " + args[3])
    action, _, target = FIX.partition(":")
    n = count("resume")
    if action == "append":
        with open(target, "a") as f:
            f.write("// Fixed issue %d\\n" % n)
    elif action == "delete":
        Path(target).unlink()
    elif action == "create":
        Path(target).write_text("new content %d\\n" % n)
    sys.exit(0)

if args[:1] == ["exec"] and len(args) == 2:
    diff = sys.stdin.buffer.read()
    record("summary", prompt=args[1], diff_bytes=len(diff))
    if SUMMARY_EXIT:
        print("summary failed", file=sys.stderr)
        sys.exit(SUMMARY_EXIT)
    print(SUMMARY)
    sys.exit(0)

print("Mock Codex: Unknown command sequence", file=sys.stderr)
sys.exit(1)
'''


class FakeCodex:
    """Writes a fake `codex` executable into bin_dir and reads back its calls."""

    def __init__(
        self,
        root: Path,
        review_output: str = "session id: mock-session-12345",
        review_exit: int = 0,
        fix: str = "none",
        summary: str = "fix(ai): fixed issues found in review",
        summary_exit: int = 0,
    ):
        self.bin_dir = root / "bin"
        self.state_dir = root / "state"
        self.bin_dir.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.bin_dir / "codex"
        self.path.write_text(FAKE_CODEX.format(
            python=sys.executable,
            state_dir=str(self.state_dir),
            review_output=review_output,
            review_exit=review_exit,
            fix=fix,
            summary=summary,
            summary_exit=summary_exit,
        ))
        self.path.chmod(0o755)

    def calls(self, kind: Optional[str] = None) -> List[dict]:
        path = self.state_dir / "calls.jsonl"
        if not path.exists():
            return []
        calls = [json.loads(line) for line in path.read_text().splitlines() if line]
        if kind:
            calls = [c for c in calls if c["kind"] == kind]
        return calls

    def environ(self, **overrides: str) -> Dict[str, str]:
        """Process environment with the fake codex first on PATH and CI or loop settings unset."""
        env = {k: v for k, v in os.environ.items() if k not in _SCRUBBED_VARS}
        env["PATH"] = str(self.bin_dir) + os.pathsep + env.get("PATH", "")
        env.update(overrides)
        return env

    def config(self, repo: Path, **overrides: str) -> LoopConfig:
        return load_config(self.environ(**overrides), repo_root=repo)


_SCRUBBED_VARS = {
    "CI", "GITHUB_ACTIONS", "GITLAB_CI", "BUILDKITE", "CIRCLECI", "TRAVIS",
    "JENKINS_URL", "TF_BUILD", "TEAMCITY_VERSION", "BITBUCKET_BUILD_NUMBER",
    "MAX_LOOPS", "REVIEW_PRESET", "REVIEW_BASE_BRANCH", "REVIEW_COMMIT_SHA",
    "REVIEW_CUSTOM_INSTRUCTIONS", "REVIEW_CUSTOM_INSTRUCTIONS_FILE",
    "AUTOFIX_COMMIT_MESSAGE", "COMMIT_RULES_DOC", "INCLUDE_UNTRACKED",
    "AUTO_APPROVE_DELETIONS", "DISABLE_AI_SUMMARY", "AI_SUMMARY_MAX_BYTES",
    "APPLY_FIX_PROMPT", "CODEX_BIN", "CODEX_MODEL", "REVIEW_FIX_LOG_DIR",
}
