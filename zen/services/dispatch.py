from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from zen.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_ROUNDS, REMOTE_MISSING_MESSAGE
from zen.schemas import ListTestsResponse, TestResult, WorkGroup, WorkTestsResponse
from zen.services.invoke import RemoteInvocationError, RemoteInvoker
from zen.services.journal import RuntimeJournal

LOGGER = logging.getLogger("zen.dispatch")


class ResultLedger:
    """Every attempt of every test, in the order the attempts came back."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[TestResult]] = {}

    def append(self, result: TestResult) -> None:
        self._entries.setdefault(result.full_name, []).append(result)

    def extend(self, results: Iterable[TestResult]) -> None:
        for result in results:
            self.append(result)

    def merge(self, other: "ResultLedger") -> None:
        for name in other.names():
            self.extend(other.history(name))

    def names(self) -> List[str]:
        return list(self._entries)

    def history(self, name: str) -> List[TestResult]:
        return list(self._entries.get(name, []))

    def last(self, name: str) -> Optional[TestResult]:
        entries = self._entries.get(name)
        return entries[-1] if entries else None

    def is_failing(self, name: str) -> bool:
        last = self.last(name)
        return last is not None and last.failed

    def attempts(self, name: str) -> int:
        return len(self._entries.get(name, []))

    def total_time(self, name: str) -> int:
        return sum(entry.time_ms for entry in self._entries.get(name, []))

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class TestOutcome:
    __test__ = False

    full_name: str
    success: bool
    attempts: int
    flakes: int
    time_ms: int
    error: Optional[str] = None
    log_stream: Optional[str] = None

    @property
    def flaky(self) -> bool:
        return self.success and self.flakes > 0

    @classmethod
    def from_history(cls, name: str, history: List[TestResult]) -> "TestOutcome":
        first_pass = next((index for index, entry in enumerate(history) if not entry.failed), None)
        last = history[-1] if history else None
        failing_entry = next((entry for entry in reversed(history) if entry.failed), None)
        if first_pass is not None:
            return cls(
                full_name=name,
                success=True,
                attempts=len(history),
                flakes=first_pass,
                time_ms=sum(entry.time_ms for entry in history),
                log_stream=last.log_stream if last else None,
            )
        return cls(
            full_name=name,
            success=False,
            attempts=len(history),
            flakes=0,
            time_ms=sum(entry.time_ms for entry in history),
            error=failing_entry.error if failing_entry else REMOTE_MISSING_MESSAGE,
            log_stream=last.log_stream if last else None,
        )


class DispatchController:
    """Fans test groups out to remote workers and re-runs what keeps failing.

    Each round groups the working set by historical runtime, invokes one worker
    per group concurrently and waits for all of them. Tests whose latest
    attempt failed go into the next round until they reach ``max_attempts`` or
    ``max_rounds`` runs out.
    """

    def __init__(
        self,
        journal: RuntimeJournal,
        invoker: RemoteInvoker,
        *,
        concurrency_limit: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        session_id: str,
        work_tests_function: str = "workTests",
        list_tests_function: str = "listTests",
    ) -> None:
        self._journal = journal
        self._invoker = invoker
        self._concurrency_limit = concurrency_limit
        self._max_attempts = max_attempts
        self._max_rounds = max_rounds
        self._session_id = session_id
        self._work_tests_function = work_tests_function
        self._list_tests_function = list_tests_function
        self.ledger = ResultLedger()
        self.rounds_run = 0

    def list_tests(self) -> List[str]:
        raw = self._invoker.invoke(self._list_tests_function, {"session_id": self._session_id})
        try:
            response = ListTestsResponse.model_validate(raw)
        except ValidationError as exc:
            raise RemoteInvocationError(self._list_tests_function, f"invalid response: {exc}") from exc
        if response.error:
            raise RemoteInvocationError(self._list_tests_function, response.error)
        return response.test_names

    def run(self, tests: Iterable[str]) -> Dict[str, TestOutcome]:
        working_set = list(dict.fromkeys(tests))
        LOGGER.info("Running %s tests", len(working_set))
        try:
            while working_set and self.rounds_run < self._max_rounds:
                self.rounds_run += 1
                round_ledger = self._run_round(working_set, self.rounds_run)
                self.ledger.merge(round_ledger)
                working_set = [
                    name
                    for name in self.ledger.names()
                    if self.ledger.is_failing(name) and self.ledger.attempts(name) < self._max_attempts
                ]
                if working_set:
                    LOGGER.info("Trying to rerun %s tests", len(working_set))
            if working_set:
                LOGGER.warning("Stopped after %s rounds with %s tests still failing", self.rounds_run, len(working_set))
        finally:
            self._journal.close()
        return self.outcomes()

    def outcomes(self) -> Dict[str, TestOutcome]:
        return {name: TestOutcome.from_history(name, self.ledger.history(name)) for name in self.ledger.names()}

    def _run_round(self, tests: List[str], round_number: int) -> ResultLedger:
        groups = self._journal.group_tests(tests, self._concurrency_limit)
        LOGGER.info("Round %s: %s tests in %s groups", round_number, len(tests), len(groups))
        completions: "queue.Queue[Tuple[int, List[TestResult]]]" = queue.Queue()
        run_id = uuid.uuid4().hex
        threads = []
        for index, group in enumerate(groups):
            thread = threading.Thread(
                target=self._work_group,
                args=(index, group, run_id, completions),
                name=f"zen-group-{round_number}-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        collected: Dict[int, List[TestResult]] = {}
        while len(collected) < len(groups):
            index, results = completions.get()
            collected[index] = results
        for thread in threads:
            thread.join()

        ledger = ResultLedger()
        for index in range(len(groups)):
            ledger.extend(collected[index])
        return ledger

    def _work_group(
        self,
        index: int,
        group: WorkGroup,
        run_id: str,
        completions: "queue.Queue[Tuple[int, List[TestResult]]]",
    ) -> None:
        try:
            results = self._invoke_group(group, run_id)
        except Exception as exc:
            LOGGER.error("Group %s (%s tests) failed to run: %s", index, len(group.tests), exc)
            results = [
                TestResult(full_name=name, error=f"Failed to run on remote: {exc}", attempts=0)
                for name in group.tests
            ]
        completions.put((index, results))

    def _invoke_group(self, group: WorkGroup, run_id: str) -> List[TestResult]:
        payload = {
            "test_names": group.tests,
            "deflake_limit": self._max_attempts,
            "session_id": self._session_id,
            "run_id": run_id,
        }
        raw = self._invoker.invoke(self._work_tests_function, payload)
        response = WorkTestsResponse.model_validate(raw)

        results: List[TestResult] = []
        for name in group.tests:
            attempts = response.results.get(name) or []
            if not attempts:
                results.append(
                    TestResult(
                        full_name=name,
                        error=REMOTE_MISSING_MESSAGE,
                        attempts=0,
                        log_stream=response.log_stream_name,
                    )
                )
                continue
            for attempt in attempts:
                if attempt.log_stream is None and response.log_stream_name:
                    attempt = attempt.model_copy(update={"log_stream": response.log_stream_name})
                self._journal.record(attempt)
                results.append(attempt)
        return results
