import io
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from codex_agent import (
    AgentError,
    AgentSession,
    CodexAgent,
    SessionCaptureError,
    extract_session_id,
    is_valid_session_id,
)
from loop_config import ConfigurationError, load_config
from review_presets import CustomInstructionsScope, DefaultScope, SingleCommitScope
from repo_fixtures import FakeCodex, init_repo


class ExtractSessionIdTests(unittest.TestCase):
    def test_extracts_token_after_marker(self) -> None:
        session = extract_session_id("Running code review...\nSession id: abc-123\nDone\n")
        self.assertEqual(session, AgentSession("abc-123"))

    def test_marker_is_case_insensitive(self) -> None:
        output = "SESSION ID: 0199a1b2-c3d4.e5_f6\n"
        self.assertEqual(str(extract_session_id(output)), "0199a1b2-c3d4.e5_f6")

    def test_uses_last_announcement(self) -> None:
        output = "session id: first-session\nsession id: second-session\n"
        self.assertEqual(str(extract_session_id(output)), "second-session")

    def test_quoted_id_lines_do_not_override_announcement(self) -> None:
        output = (
            "session id: 0199a1b2-real-session\n"
            "Found 1 issue:\n"
            "- ci.yml line 4:   id: build\n"
            "- user id: 42 is hard-coded\n"
        )
        self.assertEqual(str(extract_session_id(output)), "0199a1b2-real-session")

    def test_bare_id_marker_uses_first_line(self) -> None:
        output = "id: header-token\nbody mentions id: build\n"
        self.assertEqual(str(extract_session_id(output)), "header-token")

    def test_malformed_announcement_is_not_rescued_by_body(self) -> None:
        with self.assertRaises(SessionCaptureError):
            extract_session_id("session id: ??\n- step id: build\n")

    def test_malformed_token_is_rejected(self) -> None:
        with self.assertRaises(SessionCaptureError) as ctx:
            extract_session_id("session id: ??\n")
        self.assertIn("session id: ??", ctx.exception.output)

    def test_missing_marker_is_rejected(self) -> None:
        with self.assertRaises(SessionCaptureError):
            extract_session_id("Found 2 issues:\n1. Missing semicolon\n")

    def test_marker_without_token_is_rejected(self) -> None:
        with self.assertRaises(SessionCaptureError):
            extract_session_id("session id:\n")

    def test_marker_must_be_a_word(self) -> None:
        with self.assertRaises(SessionCaptureError):
            extract_session_id("valid: yes\n")

    def test_token_shape(self) -> None:
        self.assertTrue(is_valid_session_id("abc"))
        self.assertTrue(is_valid_session_id("a" * 128))
        self.assertFalse(is_valid_session_id("ab"))
        self.assertFalse(is_valid_session_id("a" * 129))
        self.assertFalse(is_valid_session_id("abc/def"))
        self.assertFalse(is_valid_session_id(""))
        self.assertFalse(is_valid_session_id(None))


class CodexAgentTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.repo = init_repo(self.root / "repo", {"test-file.js": "console.log('test')\n"})
        self.out = io.StringIO()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _agent(self, fake: FakeCodex, **env) -> CodexAgent:
        return CodexAgent(fake.config(self.repo, **env), output_stream=self.out)

    def test_review_pipes_preset_answers_on_stdin(self) -> None:
        fake = FakeCodex(self.root / "codex")
        session = self._agent(fake).review(SingleCommitScope("abc123"))

        self.assertEqual(str(session), "mock-session-12345")
        self.assertEqual(fake.calls("review")[0]["stdin"], "3\nabc123\n")
        self.assertIn("Running code review...", self.out.getvalue())

    def test_custom_instructions_travel_verbatim(self) -> None:
        fake = FakeCodex(self.root / "codex")
        text = "Check $(rm -rf /) and 'quotes' \"too\""
        self._agent(fake).review(CustomInstructionsScope(text))
        self.assertEqual(fake.calls("review")[0]["stdin"], f"4\n{text}\n")

    def test_large_instructions_with_chatty_agent(self) -> None:
        # Agent fills the stdout pipe before it reads any stdin.
        script = self.root / "chatty-codex"
        received = self.root / "received.txt"
        script.write_text(
            f"#!{sys.executable}\n"
            "import sys\n"
            "for i in range(20000):\n"
            "    print('banner line %d' % i)\n"
            "sys.stdout.flush()\n"
            "data = sys.stdin.read()\n"
            f"open({str(received)!r}, 'w').write(str(len(data)))\n"
            "print('session id: chatty-session')\n"
        )
        script.chmod(0o755)
        config = load_config({"PATH": "", "CODEX_BIN": str(script)}, repo_root=self.repo)
        text = "x" * 300000

        session = CodexAgent(config, output_stream=self.out).review(CustomInstructionsScope(text))

        self.assertEqual(str(session), "chatty-session")
        self.assertEqual(received.read_text(), str(len(f"4\n{text}\n")))
        self.assertIn("banner line 19999", self.out.getvalue())

    def test_default_scope_sends_empty_stdin(self) -> None:
        fake = FakeCodex(self.root / "codex")
        self._agent(fake).review(DefaultScope())
        self.assertEqual(fake.calls("review")[0]["stdin"], "")

    def test_review_without_session_id_fails(self) -> None:
        fake = FakeCodex(self.root / "codex", review_output="Found 2 issues")
        with self.assertRaises(SessionCaptureError) as ctx:
            self._agent(fake).review(DefaultScope())
        self.assertIn("Found 2 issues", ctx.exception.output)

    def test_review_nonzero_exit_fails(self) -> None:
        fake = FakeCodex(self.root / "codex", review_exit=3)
        with self.assertRaises(AgentError):
            self._agent(fake).review(DefaultScope())

    def test_apply_fix_resumes_session_with_prompt(self) -> None:
        fake = FakeCodex(self.root / "codex", fix="append:test-file.js")
        agent = self._agent(fake, APPLY_FIX_PROMPT="Fix everything")
        agent.apply_fix(AgentSession("mock-session-12345"), agent.config.apply_fix_prompt)

        call = fake.calls("resume")[0]
        self.assertEqual(call["session"], "mock-session-12345")
        self.assertEqual(call["prompt"], "Fix everything")
        self.assertIn("// Fixed issue 1", (self.repo / "test-file.js").read_text())

    def test_apply_fix_requires_session(self) -> None:
        fake = FakeCodex(self.root / "codex")
        with self.assertRaises(AgentError):
            self._agent(fake).apply_fix(None, "Apply the fixes suggested above")
        self.assertEqual(fake.calls("resume"), [])

    def test_summarize_sends_diff_on_stdin(self) -> None:
        fake = FakeCodex(self.root / "codex", summary="fix(ai): tidy up")
        answer = self._agent(fake).summarize(b"diff --git a/x b/x\n")
        self.assertEqual(answer.strip(), "fix(ai): tidy up")
        call = fake.calls("summary")[0]
        self.assertIn("Generate a concise", call["prompt"])
        self.assertEqual(call["diff_bytes"], len(b"diff --git a/x b/x\n"))

    def test_summarize_failure_raises(self) -> None:
        fake = FakeCodex(self.root / "codex", summary_exit=2)
        with self.assertRaises(AgentError):
            self._agent(fake).summarize(b"diff")

    def test_missing_binary_is_configuration_error(self) -> None:
        config = load_config({"PATH": str(self.root / "empty-bin")}, repo_root=self.repo)
        with self.assertRaises(ConfigurationError):
            CodexAgent(config)

    def test_explicit_binary_path(self) -> None:
        fake = FakeCodex(self.root / "codex")
        config = load_config({"PATH": "", "CODEX_BIN": str(fake.path)}, repo_root=self.repo)
        agent = CodexAgent(config, output_stream=self.out)
        self.assertEqual(agent.binary, str(fake.path))
        self.assertEqual(agent.env["CODEX_MODEL"], "gpt-5-codex-high")


if __name__ == "__main__":
    unittest.main()
