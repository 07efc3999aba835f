"""Unit tests for statusline.py (Python 3, pytest)."""

import importlib.util
import importlib.machinery
import io
import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from session_health.config import Settings
from session_health.health import GitInfo, HealthStore, SessionHealth

# Load statusline module from project root
_script_path = str(Path(__file__).resolve().parent.parent / "statusline.py")
_loader = importlib.machinery.SourceFileLoader("statusline", _script_path)
spec = importlib.util.spec_from_loader("statusline", _loader, origin=_script_path)
sl = importlib.util.module_from_spec(spec)
spec.loader.exec_module(sl)

OFFLINE = {"git": {"enabled": False}, "billing": {"enabled": False}, "quota": {"enabled": False}}


def payload(tmp, transcript=None):
    return {
        "session_id": "sess-1",
        "transcript_path": str(transcript or ""),
        "cwd": str(tmp),
        "model": {"id": "claude-opus-4-6", "display_name": "Opus"},
        "context_window": {"context_window_size": 200000,
                           "current_usage": {"input_tokens": 39000}},
        "cost": {"total_cost_usd": 0.42, "total_lines_added": 7},
    }


# ═══════════════════════ read_payload ═══════════════════════

class TestReadPayload:
    def test_object(self):
        assert sl.read_payload(io.StringIO('{"session_id": "x"}')) == {"session_id": "x"}

    def test_invalid_json(self):
        assert sl.read_payload(io.StringIO("{nope")) is None

    def test_empty(self):
        assert sl.read_payload(io.StringIO("")) is None

    def test_not_an_object(self):
        assert sl.read_payload(io.StringIO("[1, 2]")) is None

    def test_session_id(self):
        assert sl.session_id_of({"session_id": "abc"}) == "abc"
        assert sl.session_id_of({}) == "unknown"


# ═══════════════════════ IO ═══════════════════════

class TestPipeIO:
    def test_read_until_eof(self):
        r, w = os.pipe()
        sl.write_all(w, b'{"a":1}\n')
        os.close(w)
        try:
            assert sl.read_until_eof(r, 1.0) == '{"a":1}\n'
        finally:
            os.close(r)

    def test_read_times_out(self):
        r, w = os.pipe()
        try:
            started = time.monotonic()
            assert sl.read_until_eof(r, 0.1) == ""
            assert time.monotonic() - started < 1.0
        finally:
            os.close(r)
            os.close(w)

    def test_render_single_line(self):
        out = sl.render(SessionHealth(session_id="s"))
        assert out.endswith("\n")
        assert out.count("\n") == 1
        assert json.loads(out)["session_id"] == "s"


class TestFallbackOutput:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.settings = Settings(base_dir=self.tmp)

    def teardown_method(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_last_saved_aggregate(self):
        h = SessionHealth(session_id="s1")
        h.git = GitInfo(branch="main")
        HealthStore(self.settings.sessions_dir).save(h)
        out = json.loads(sl.fallback_output(self.settings, "s1"))
        assert out["git"]["branch"] == "main"

    def test_nothing_saved(self):
        assert sl.fallback_output(self.settings, "never") == ""


# ═══════════════════════ run ═══════════════════════

class TestRun:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.transcript = self.tmp / "t.jsonl"
        self.transcript.write_text(json.dumps({
            "type": "user", "timestamp": "2026-01-01T00:00:00Z",
            "message": {"role": "user", "content": "hello there"}}) + "\n")
        self.settings = Settings(
            base_dir=self.tmp / "state", deadline=2.0, linger=0.0, detach=False,
            sources=OFFLINE, quota_path=self.tmp / "none.toml",
            settings_path=self.tmp / "settings.json")

    def teardown_method(self):
        logger = logging.getLogger("session_health")
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def check(self, doc):
        assert doc["session_id"] == "sess-1"
        assert doc["model"]["label"] == "Opus 4.6"
        assert doc["context"]["tokens_used"] == 39000
        assert doc["context"]["percent_used"] == 25
        assert doc["session"]["cost_usd"] == 0.42
        assert doc["transcript"]["message_count"] == 1
        assert doc["transcript"]["last_message_preview"] == "hello there"
        assert doc["sources"]["git"]["status"] == "disabled"
        assert doc["weekly_percent"] is None

    def test_inline(self, capsys):
        text = sl.run_inline(self.settings, "sess-1", payload(self.tmp, self.transcript))
        out = capsys.readouterr().out
        assert out == text
        self.check(json.loads(out))
        assert (self.settings.sessions_dir / "sess-1" / "health.json").exists()

    def test_second_run_reuses_checkpoint(self, capsys):
        sl.run_inline(self.settings, "sess-1", payload(self.tmp, self.transcript))
        with open(self.transcript, "a") as f:
            f.write(json.dumps({"type": "assistant", "message": {"role": "assistant",
                                                                 "content": "hi"}}) + "\n")
        capsys.readouterr()
        sl.run_inline(self.settings, "sess-1", payload(self.tmp, self.transcript))
        doc = json.loads(capsys.readouterr().out)
        assert doc["transcript"]["message_count"] == 2
        assert doc["transcript"]["turn_number"] == 1

    @pytest.mark.skipif(not hasattr(os, "fork"), reason="needs fork")
    def test_detached(self, capsys):
        text = sl.run_detached(self.settings, "sess-1", payload(self.tmp, self.transcript))
        out = capsys.readouterr().out
        assert out == text
        self.check(json.loads(out))

    @pytest.mark.skipif(not hasattr(os, "fork"), reason="needs fork")
    def test_detached_missed_handoff_prints_last_aggregate(self, capsys):
        h = SessionHealth(session_id="sess-1")
        h.git = GitInfo(branch="previous")
        HealthStore(self.settings.sessions_dir).save(h)
        with patch.object(sl, "read_until_eof", return_value='{"partial'):
            text = sl.run_detached(self.settings, "sess-1", payload(self.tmp, self.transcript))
        assert json.loads(text)["session_id"] == "sess-1"
        assert capsys.readouterr().out == text


# ═══════════════════════ main ═══════════════════════

class TestMain:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.settings = Settings(base_dir=self.tmp / "state", deadline=2.0, linger=0.0,
                                 detach=False, sources=OFFLINE,
                                 quota_path=self.tmp / "none.toml",
                                 settings_path=self.tmp / "settings.json")

    def teardown_method(self):
        logger = logging.getLogger("session_health")
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def run_main(self, stdin):
        with patch.object(sl, "load_config", return_value=self.settings), \
                patch.object(sl.sys, "stdin", io.StringIO(stdin)), \
                patch.dict(os.environ, {"PATH": os.environ.get("PATH", "")}):
            sl.main()

    def test_invalid_stdin_prints_nothing(self, capsys):
        self.run_main("not json")
        assert capsys.readouterr().out == ""

    def test_prints_one_json_line(self, capsys):
        self.run_main(json.dumps(payload(self.tmp)))
        out = capsys.readouterr().out
        assert out.count("\n") == 1
        doc = json.loads(out)
        assert doc["model"]["family"] == "opus"
        assert doc["transcript"]["exists"] is False
        assert self.settings.log_path.parent.exists()
