from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional

from zen.services.dispatch import TestOutcome

LOGGER = logging.getLogger("zen.dispatch")

STATUS_SYMBOLS = {
    "failed": "🔴",
    "flaked": "⚠️",
}


def failing(outcomes: Dict[str, TestOutcome]) -> List[TestOutcome]:
    return [outcome for outcome in outcomes.values() if not outcome.success]


def exit_code(outcomes: Dict[str, TestOutcome]) -> int:
    return 1 if failing(outcomes) else 0


def build_junit(outcomes: Dict[str, TestOutcome], suite_name: str = "zen tests") -> ET.ElementTree:
    failures = failing(outcomes)
    root = ET.Element("testsuites")
    suite = ET.SubElement(
        root,
        "testsuite",
        name=suite_name,
        tests=str(len(failures)),
        failures=str(len(failures)),
        time=f"{sum(outcome.time_ms for outcome in failures) / 1000:.3f}",
    )
    for outcome in failures:
        case = ET.SubElement(suite, "testcase", name=outcome.full_name, time=f"{outcome.time_ms / 1000:.3f}")
        failure = ET.SubElement(case, "failure", message=outcome.error or "")
        if outcome.log_stream:
            failure.text = f"Attempts: {outcome.attempts}\nLog stream: {outcome.log_stream}"
    ET.indent(root)
    return ET.ElementTree(root)


def write_junit(outcomes: Dict[str, TestOutcome], path: Path) -> Path:
    """Write failing tests as JUnit XML; passing and flaky tests are left out."""
    path.parent.mkdir(parents=True, exist_ok=True)
    build_junit(outcomes).write(path, encoding="UTF-8", xml_declaration=True)
    LOGGER.info("Writing results to %s", path)
    return path


def log_summary(
    outcomes: Dict[str, TestOutcome],
    elapsed_seconds: float,
    log: Optional[logging.Logger] = None,
) -> int:
    """Log failing and flaky tests followed by the failure count; returns that count."""
    log = log or LOGGER
    fail_count = 0
    for outcome in outcomes.values():
        if not outcome.success:
            fail_count += 1
            log.info(
                "%s %s %s (tried %s times)",
                STATUS_SYMBOLS["failed"],
                outcome.full_name,
                outcome.error,
                outcome.attempts or 1,
            )
        elif outcome.flaky:
            log.info("%s %s (flaked %sx)", STATUS_SYMBOLS["flaked"], outcome.full_name, outcome.flakes)
    log.info("Took %.1fs", elapsed_seconds)
    log.info("%s %s failed test%s", "😢" if fail_count else "🎉", fail_count, "" if fail_count == 1 else "s")
    return fail_count
