"""Line scanning of runner output.

Two independent concerns live here: the progress estimate shown to observers
while a run is live, and the result summary extracted once the run is over.
Result extraction is pluggable through `OutputParser`.
"""

from __future__ import annotations

import re
from typing import Protocol

from bddrun.core.models import ExecutionType, ResultSummary

SCENARIO_MARKER = "Scenario:"
BUILD_SUCCESS_MARKER = "BUILD SUCCESS"
BUILD_FAILURE_MARKER = "BUILD FAILURE"

INITIAL_PROGRESS = 30
SCENARIO_PROGRESS_CAP = 90
BUILD_SUCCESS_PROGRESS = 95
FAILURE_PROGRESS = -1

# A single-feature run has few scenarios, a full run has many.
SCENARIO_STEPS: dict[ExecutionType, int] = {
    ExecutionType.ALL: 2,
    ExecutionType.FEATURE: 10,
    ExecutionType.TAG_BASED: 5,
    ExecutionType.COMPLEX_TAG: 5,
}

NO_DURATION = "N/A"

_SCENARIOS_RE = re.compile(r"^\s*(?P<total>\d+) Scenarios?(?: \((?P<detail>[^)]*)\))?\s*$")
_STEPS_RE = re.compile(r"^\s*(?P<total>\d+) Steps?(?: \((?P<detail>[^)]*)\))?\s*$")
_DETAIL_RE = re.compile(r"(?P<count>\d+) (?P<kind>passed|failed|skipped|pending|undefined|ambiguous)")
_SUREFIRE_RE = re.compile(
    r"Tests run: (?P<run>\d+), Failures: (?P<failures>\d+), Errors: (?P<errors>\d+), Skipped: (?P<skipped>\d+)"
)
_CUCUMBER_TIME_RE = re.compile(r"^\s*(?P<value>\d+m\d+(?:\.\d+)?s)\s*$")
_MAVEN_TIME_RE = re.compile(r"Total time:\s*(?P<value>.+?)\s*$")


class ProgressTracker:
    """Monotonic progress estimate driven by runner output markers."""

    def __init__(self, execution_type: ExecutionType) -> None:
        self.step = SCENARIO_STEPS[execution_type]
        self.progress = INITIAL_PROGRESS
        self.build_failed = False

    def observe(self, line: str) -> tuple[str, int] | None:
        """Return `(message, progress)` when the line is worth publishing."""
        if SCENARIO_MARKER in line:
            if not self.build_failed:
                self.progress = min(self.progress + self.step, SCENARIO_PROGRESS_CAP)
            return f"Running: {line.strip()}", self.progress
        if BUILD_SUCCESS_MARKER in line:
            self.progress = BUILD_SUCCESS_PROGRESS
            return "Build succeeded", self.progress
        if BUILD_FAILURE_MARKER in line:
            self.build_failed = True
            self.progress = FAILURE_PROGRESS
            return "Build failed", self.progress
        return None


class OutputParser(Protocol):
    def feed(self, line: str) -> None: ...

    def summary(self) -> ResultSummary: ...

    def duration(self) -> str: ...


class NullOutputParser:
    """Extracts nothing: every count stays 0 and the duration is unknown."""

    def feed(self, line: str) -> None:
        return None

    def summary(self) -> ResultSummary:
        return ResultSummary()

    def duration(self) -> str:
        return NO_DURATION


def _detail_counts(detail: str | None) -> dict[str, int]:
    counts: dict[str, int] = {}
    if not detail:
        return counts
    for m in _DETAIL_RE.finditer(detail):
        counts[m.group("kind")] = counts.get(m.group("kind"), 0) + int(m.group("count"))
    return counts


class CucumberOutputParser:
    """Reads Cucumber's end-of-run summary, falling back to Surefire totals.

    Cucumber prints::

        3 Scenarios (1 failed, 2 passed)
        12 Steps (1 failed, 2 skipped, 9 passed)
        0m1.234s

    and Maven/Surefire prints ``Tests run: 3, Failures: 1, Errors: 0, Skipped: 0``
    where every scenario is one test. The last occurrence of each line wins.
    """

    def __init__(self) -> None:
        self._scenarios: dict[str, int] | None = None
        self._steps: dict[str, int] | None = None
        self._surefire: dict[str, int] | None = None
        self._cucumber_time: str | None = None
        self._maven_time: str | None = None

    def feed(self, line: str) -> None:
        if m := _SCENARIOS_RE.match(line):
            self._scenarios = {"total": int(m.group("total")), **_detail_counts(m.group("detail"))}
        elif m := _STEPS_RE.match(line):
            self._steps = {"total": int(m.group("total")), **_detail_counts(m.group("detail"))}
        elif m := _CUCUMBER_TIME_RE.match(line):
            self._cucumber_time = m.group("value")
        elif m := _SUREFIRE_RE.search(line):
            self._surefire = {k: int(v) for k, v in m.groupdict().items()}
        elif m := _MAVEN_TIME_RE.search(line):
            self._maven_time = m.group("value")

    def summary(self) -> ResultSummary:
        summary = ResultSummary()
        if self._scenarios is not None:
            summary.total_scenarios = self._scenarios["total"]
            summary.passed_scenarios = self._scenarios.get("passed", 0)
            summary.failed_scenarios = self._scenarios.get("failed", 0) + self._scenarios.get("ambiguous", 0)
            summary.skipped_scenarios = (
                self._scenarios.get("skipped", 0)
                + self._scenarios.get("pending", 0)
                + self._scenarios.get("undefined", 0)
            )
        elif self._surefire is not None:
            failed = self._surefire["failures"] + self._surefire["errors"]
            summary.total_scenarios = self._surefire["run"]
            summary.failed_scenarios = failed
            summary.skipped_scenarios = self._surefire["skipped"]
            summary.passed_scenarios = max(self._surefire["run"] - failed - self._surefire["skipped"], 0)
        if self._steps is not None:
            summary.total_steps = self._steps["total"]
            summary.passed_steps = self._steps.get("passed", 0)
            summary.failed_steps = self._steps.get("failed", 0) + self._steps.get("ambiguous", 0)
            summary.skipped_steps = self._steps.get("skipped", 0) + self._steps.get("undefined", 0)
            summary.pending_steps = self._steps.get("pending", 0)
        return summary

    def duration(self) -> str:
        return self._cucumber_time or self._maven_time or NO_DURATION


PARSERS = {
    "cucumber": CucumberOutputParser,
    "null": NullOutputParser,
}


def parser_factory(name: str):
    try:
        return PARSERS[name]
    except KeyError:
        raise ValueError(f"Unknown output parser: {name!r} (expected one of {sorted(PARSERS)})") from None
