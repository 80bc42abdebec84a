from __future__ import annotations

import sqlite3

import filter_fakes  # noqa: F401

import services.housekeeping as housekeeping


class _Manager:
    def __init__(self, custom_exc=None, obsolete_exc=None):
        self.calls = []
        self.custom_exc = custom_exc
        self.obsolete_exc = obsolete_exc

    def clean_removed_custom_filters(self):
        self.calls.append("custom")
        if self.custom_exc:
            exc, self.custom_exc = self.custom_exc, None
            raise exc
        return []

    def remove_obsolete_filters(self):
        self.calls.append("obsolete")
        if self.obsolete_exc:
            raise self.obsolete_exc
        return []


def test_run_once_runs_both_steps_in_order():
    m = _Manager()
    housekeeping.run_once(m)
    assert m.calls == ["custom", "obsolete"]


def test_run_once_step_failure_does_not_stop_the_next():
    m = _Manager(obsolete_exc=RuntimeError("offline"))
    housekeeping.run_once(m)
    assert m.calls == ["custom", "obsolete"]

    m = _Manager(custom_exc=ValueError("bad row"))
    housekeeping.run_once(m)
    assert m.calls == ["custom", "obsolete"]


def test_locked_database_is_retried(monkeypatch):
    monkeypatch.setattr(housekeeping.time, "sleep", lambda s: None)
    m = _Manager(custom_exc=sqlite3.OperationalError("database is locked"))
    housekeeping.run_once(m)
    assert m.calls == ["custom", "custom", "obsolete"]
