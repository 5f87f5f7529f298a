from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import List

import pytest

from zen.constants import DEFAULT_ESTIMATE_MS
from zen.schemas import TestResult
from zen.services.journal import RuntimeJournal


def _journal(tmp_path: Path, **kwargs) -> RuntimeJournal:
    kwargs.setdefault("flush_delay", 60.0)
    return RuntimeJournal(tmp_path / "journal.json", **kwargs)


def _record(journal: RuntimeJournal, name: str, time_ms: int, error: str | None = None) -> None:
    journal.record(TestResult(full_name=name, time_ms=time_ms, error=error))


@pytest.mark.unit
def test_unknown_test_uses_default_estimate(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    assert journal.estimate("never seen") == DEFAULT_ESTIMATE_MS


@pytest.mark.unit
def test_estimate_tracks_most_recent_outcome(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    _record(journal, "checkout", 300, error="boom")
    assert journal.estimate("checkout") == 300

    _record(journal, "checkout", 150)
    assert journal.estimate("checkout") == 150

    _record(journal, "checkout", 400, error="boom again")
    assert journal.estimate("checkout") == 400
    journal.flush()


@pytest.mark.unit
def test_group_scenario_keeps_long_test_alone(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    _record(journal, "a", 600)
    _record(journal, "b", 100)
    _record(journal, "c", 100)

    groups = journal.group_tests(["a", "b", "c"], concurrency_limit=2)

    by_tests = {tuple(group.tests): group.estimated_time_ms for group in groups}
    assert by_tests == {("a",): 600, ("b", "c"): 200}
    journal.flush()


@pytest.mark.unit
def test_grouping_is_a_partition_within_the_limit(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    tests: List[str] = []
    for index in range(40):
        name = f"suite test {index}"
        tests.append(name)
        _record(journal, name, 50 + (index * 37) % 400)
    tests.append("suite test 3")  # duplicate input

    groups = journal.group_tests(tests, concurrency_limit=7)

    assert len(groups) <= 7
    assert all(group.tests for group in groups)
    flattened = [name for group in groups for name in group.tests]
    assert sorted(flattened) == sorted(set(tests))
    assert len(flattened) == len(set(flattened))
    for group in groups:
        assert group.estimated_time_ms == sum(journal.estimate(name) for name in group.tests)
    journal.flush()


@pytest.mark.unit
def test_grouping_opens_new_groups_until_limit(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    groups = journal.group_tests([f"t{index}" for index in range(10)], concurrency_limit=1)
    assert len(groups) == 1
    assert groups[0].estimated_time_ms == 10 * DEFAULT_ESTIMATE_MS


@pytest.mark.unit
def test_equal_totals_fill_earliest_group_first(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    for name in ("x", "y", "z"):
        _record(journal, name, 600)

    groups = journal.group_tests(["x", "y", "z"], concurrency_limit=2)

    assert [group.tests for group in groups] == [["y"], ["x", "z"]]
    assert [group.estimated_time_ms for group in groups] == [600, 1200]
    journal.flush()


@pytest.mark.unit
def test_grouping_rejects_non_positive_limit(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    with pytest.raises(ValueError):
        journal.group_tests(["a"], concurrency_limit=0)


@pytest.mark.unit
def test_records_survive_restart(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    _record(journal, "login", 321)
    journal.close()

    stored = json.loads((tmp_path / "journal.json").read_text(encoding="utf-8"))
    assert stored["login"]["last_pass_time_ms"] == 321

    reloaded = _journal(tmp_path)
    assert reloaded.estimate("login") == 321


@pytest.mark.unit
def test_unreadable_journal_starts_empty(tmp_path: Path) -> None:
    (tmp_path / "journal.json").write_text("{not json", encoding="utf-8")
    journal = _journal(tmp_path)
    assert journal.get("anything") is None
    assert journal.estimate("anything") == DEFAULT_ESTIMATE_MS


@pytest.mark.unit
def test_burst_of_records_coalesces_into_one_flush(tmp_path: Path) -> None:
    journal = _journal(tmp_path, flush_delay=0.05)
    flushes: List[int] = []
    original_flush = journal.flush

    def counting_flush() -> None:
        flushes.append(1)
        original_flush()

    journal.flush = counting_flush  # type: ignore[method-assign]
    for index in range(5):
        _record(journal, f"t{index}", 100 + index)

    deadline = time.time() + 5
    while not (tmp_path / "journal.json").exists() and time.time() < deadline:
        time.sleep(0.02)
    time.sleep(0.1)

    assert len(flushes) == 1
    stored = json.loads((tmp_path / "journal.json").read_text(encoding="utf-8"))
    assert set(stored) == {f"t{index}" for index in range(5)}


@pytest.mark.unit
def test_flush_failure_is_logged_not_raised(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    journal = RuntimeJournal(blocker / "journal.json", flush_delay=60.0)
    _record(journal, "a", 10)

    with caplog.at_level(logging.WARNING, logger="zen.journal"):
        journal.close()

    assert any("Final journal flush" in record.getMessage() for record in caplog.records)
