"""Tests for settings loading, environment overrides and log setup."""

import logging
import shutil
import tempfile
from pathlib import Path

from session_health.config import Settings, apply_env, load_config
from session_health.logs import ROOT, setup_logging


# ═══════════════════════ load_config ═══════════════════════

class TestLoadConfig:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.cfg = self.tmp / "statusline.toml"

    def teardown_method(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def load(self, text=None, env=None):
        if text is not None:
            self.cfg.write_text(text)
        return load_config(self.cfg, env=env or {})

    def test_defaults_when_missing(self):
        s = self.load()
        assert s.deadline == 1.5
        assert s.linger == 30.0
        assert s.detach is True
        assert s.max_lock_age == 120.0
        assert s.billing_command == ("ccusage", "blocks", "--json", "--active")
        assert s.base_dir == Path("~/.claude/session-health").expanduser()

    def test_layout(self):
        s = Settings(base_dir=self.tmp)
        assert s.cache_dir == self.tmp / "cache"
        assert s.sessions_dir == self.tmp / "sessions"
        assert s.scanners_dir == self.tmp / "scanners"
        assert s.locks_dir == self.tmp / "locks"
        assert s.cooldowns_dir == self.tmp / "cooldowns"
        assert s.log_path == self.tmp / "statusline.log"

    def test_toml_sections(self):
        s = self.load(f"""
[runtime]
base_dir = "{self.tmp / 'state'}"
deadline = 0.8
linger = 5
detach = false

[scanner]
large_file_bytes = 1000
avg_line_bytes = 0

[cache]
mirror_ttl = 2.5

[maintenance]
max_sessions = 3

[billing]
command = ["npx", "ccusage@latest", "blocks", "--json"]

[logging]
level = "info"

[categories.billing]
ttl = 60

[sources.git]
enabled = false
timeout = 0.3
""")
        assert s.base_dir == self.tmp / "state"
        assert s.deadline == 0.8
        assert s.linger == 5.0
        assert s.detach is False
        assert s.large_file_bytes == 1000
        assert s.avg_line_bytes == 1
        assert s.mirror_ttl == 2.5
        assert s.max_sessions == 3
        assert s.billing_command == ("npx", "ccusage@latest", "blocks", "--json")
        assert s.log_level == "INFO"
        assert s.categories == {"billing": {"ttl": 60}}
        assert s.source_enabled("git") is False
        assert s.source_timeout("git", 1.0) == 0.3
        assert s.source_enabled("billing") is True
        assert s.source_timeout("billing", 1.0) == 1.0

    def test_non_numeric_values_keep_defaults(self):
        s = self.load("""
[runtime]
deadline = "fast"
linger = 4

[scanner]
large_file_bytes = [1, 2]
tail_bytes = "12.5"

[cache]
max_lock_age = "soon"
result_max_entries = 50

[maintenance]
max_sessions = "lots"

[sources.git]
timeout = "quick"
""")
        assert s.deadline == 1.5
        assert s.linger == 4.0
        assert s.large_file_bytes == 5_000_000
        assert s.tail_bytes == 65_536
        assert s.max_lock_age == 120.0
        assert s.result_max_entries == 50
        assert s.max_sessions == 200
        assert s.source_timeout("git", 1.0) == 1.0

    def test_section_that_is_not_a_table(self):
        s = self.load('runtime = 5\nscanner = "x"\n[cache]\nmirror_ttl = 1.0\n')
        assert s.deadline == 1.5
        assert s.large_file_bytes == 5_000_000
        assert s.mirror_ttl == 1.0

    def test_bad_billing_command_ignored(self):
        s = self.load('[billing]\ncommand = "ccusage blocks"\n')
        assert s.billing_command == ("ccusage", "blocks", "--json", "--active")

    def test_invalid_toml_falls_back(self):
        s = self.load("[runtime\ndeadline = ")
        assert s.deadline == 1.5

    def test_config_path_from_env(self):
        other = self.tmp / "other.toml"
        other.write_text("[runtime]\ndeadline = 0.9\n")
        s = load_config(env={"STATUSLINE_CONFIG": str(other)})
        assert s.deadline == 0.9


class TestApplyEnv:
    def test_home_and_deadline(self):
        s = apply_env(Settings(), {"STATUSLINE_HOME": "/tmp/sh-test",
                                   "STATUSLINE_DEADLINE": "0.7"})
        assert s.base_dir == Path("/tmp/sh-test")
        assert s.deadline == 0.7

    def test_bad_deadline_ignored(self):
        assert apply_env(Settings(), {"STATUSLINE_DEADLINE": "fast"}).deadline == 1.5
        assert apply_env(Settings(), {"STATUSLINE_DEADLINE": "-1"}).deadline == 1.5

    def test_debug(self):
        assert apply_env(Settings(), {"STATUSLINE_DEBUG": "1"}).log_level == "DEBUG"
        assert apply_env(Settings(), {"STATUSLINE_DEBUG": "0"}).log_level == "WARNING"


# ═══════════════════════ setup_logging ═══════════════════════

class TestSetupLogging:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())

    def teardown_method(self):
        logger = logging.getLogger(ROOT)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_file_handler(self):
        s = Settings(base_dir=self.tmp / "state", log_level="DEBUG")
        logger = setup_logging(s)
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert len(logger.handlers) == 1
        logging.getLogger("session_health.test").debug("hello from test")
        logger.handlers[0].flush()
        assert "hello from test" in s.log_path.read_text()

    def test_idempotent(self):
        s = Settings(base_dir=self.tmp)
        setup_logging(s)
        setup_logging(s)
        assert len(logging.getLogger(ROOT).handlers) == 1

    def test_unwritable_base_dir(self):
        blocker = self.tmp / "file"
        blocker.write_text("")
        logger = setup_logging(Settings(base_dir=blocker))
        assert isinstance(logger.handlers[0], logging.NullHandler)
