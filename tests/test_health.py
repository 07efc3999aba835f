"""Tests for the aggregate record and its per-session store."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from session_health.fsutil import safe_id
from session_health.health import (
    Alerts, GitInfo, HealthStore, QuotaInfo, QuotaOverride, SessionHealth, SourceStatus,
)


class TestSessionHealth:
    def test_dict_round_trip(self):
        h = SessionHealth(session_id="s1", project_path="/p")
        h.git = GitInfo(is_repo=True, branch="main", dirty=2)
        h.alerts = Alerts(secrets_detected=True, secret_count=1, secret_types=["AWS Key"])
        h.sources = {"git": SourceStatus("cached", age=3.5)}
        back = SessionHealth.from_dict(json.loads(json.dumps(h.to_dict())))
        assert back.git == h.git
        assert back.alerts == h.alerts
        assert back.sources["git"].status == "cached"
        assert back.sources["git"].age == 3.5

    def test_override_wins_for_weekly_percent(self):
        h = SessionHealth()
        h.quota = QuotaInfo(weekly_percent=61.0)
        assert h.weekly_percent == 61.0
        assert h.to_dict()["weekly_percent"] == 61.0
        h.quota_override = QuotaOverride(weekly_percent=42.0)
        assert h.weekly_percent == 42.0
        assert h.to_dict()["weekly_percent"] == 42.0

    def test_unknown_keys_and_bad_sections(self):
        h = SessionHealth.from_dict({"git": {"branch": "x", "future_field": 1},
                                     "billing": "garbage", "sources": {"git": {"status": "fresh"}}})
        assert h.git.branch == "x"
        assert h.billing.active is False
        assert h.sources["git"].status == "fresh"


class TestHealthStore:
    def setup_method(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.store = HealthStore(self.tmp)

    def teardown_method(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_save_and_load(self):
        h = SessionHealth(session_id="s1")
        h.git = GitInfo(branch="dev")
        assert self.store.save(h) is True
        assert h.gathered_at > 0
        loaded = self.store.load("s1")
        assert loaded.git.branch == "dev"
        assert self.store.load("s2") is None

    def test_version_mismatch_ignored(self):
        p = self.store.path("s1")
        p.parent.mkdir(parents=True)
        p.write_text(json.dumps({"version": 99, "session_id": "s1"}))
        assert self.store.load("s1") is None

    def test_unsafe_session_id_stays_inside(self):
        h = SessionHealth(session_id="../../escape")
        self.store.save(h)
        assert self.store.path("../../escape").resolve().is_relative_to(self.tmp.resolve())
        assert self.store.load("../../escape") is not None

    def test_lookalike_session_ids_do_not_collide(self):
        for sid in ("a/b", "a_b", "x" * 130, "x" * 129):
            self.store.save(SessionHealth(session_id=sid, project_path=sid))
        for sid in ("a/b", "a_b", "x" * 130, "x" * 129):
            assert self.store.load(sid).project_path == sid
        assert len({self.store.path(s).parent for s in ("a/b", "a_b", "x" * 130, "x" * 129)}) == 4


# ═══════════════════════ path-safe ids ═══════════════════════

class TestSafeId:
    def test_safe_ids_unchanged(self):
        assert safe_id("3f2a9c1e-5b7d-4e8a-9c2f-1a2b3c4d5e6f") == "3f2a9c1e-5b7d-4e8a-9c2f-1a2b3c4d5e6f"
        assert safe_id("billing") == "billing"

    def test_empty_is_unknown(self):
        assert safe_id("") == "unknown"
        assert safe_id(None) == "unknown"

    def test_rewritten_ids_are_distinct(self):
        assert safe_id("a/b") != safe_id("a_b")
        assert safe_id("a/b") != safe_id("a:b")
        assert safe_id("..") != safe_id(".")

    def test_long_ids_keep_their_tail_distinct(self):
        a, b = "s" * 200 + "1", "s" * 200 + "2"
        assert safe_id(a) != safe_id(b)
        assert len(safe_id(a)) <= 128

    @pytest.mark.parametrize("raw", ["../../etc", "a/b", "." * 5, "x" * 300, "ü"])
    def test_single_safe_component(self, raw):
        s = safe_id(raw)
        assert "/" not in s
        assert s not in ("", ".", "..")
        assert safe_id(s) == s
