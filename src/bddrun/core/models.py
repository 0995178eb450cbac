from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any

from bddrun.core import clock


class ExecutionType(str, Enum):
    ALL = "ALL"
    FEATURE = "FEATURE"
    TAG_BASED = "TAG_BASED"
    COMPLEX_TAG = "COMPLEX_TAG"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_error(self) -> bool:
        return self in ERROR_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.PASSED,
        ExecutionStatus.FAILED,
        ExecutionStatus.SKIPPED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }
)
ERROR_STATUSES = frozenset({ExecutionStatus.FAILED, ExecutionStatus.CANCELLED, ExecutionStatus.TIMEOUT})

# PENDING may short-circuit to SKIPPED (pre-check) or FAILED (orchestration error).
_ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.SKIPPED, ExecutionStatus.FAILED}),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
}


class TagLogic(str, Enum):
    AND = "AND"
    OR = "OR"

    @classmethod
    def parse(cls, value: str | TagLogic | None) -> TagLogic:
        if value is None:
            return cls.AND
        if isinstance(value, TagLogic):
            return value
        normalized = value.strip().upper()
        if normalized not in cls.__members__:
            raise ValueError(f"Invalid tag logic: {value!r} (expected AND or OR)")
        return cls[normalized]


class InvalidTransitionError(RuntimeError):
    def __init__(self, execution_id: str, current: ExecutionStatus, target: ExecutionStatus) -> None:
        super().__init__(f"Execution {execution_id}: cannot move from {current.value} to {target.value}")
        self.execution_id = execution_id
        self.current = current
        self.target = target


@dataclass
class ResultSummary:
    total_scenarios: int = 0
    passed_scenarios: int = 0
    failed_scenarios: int = 0
    skipped_scenarios: int = 0
    total_steps: int = 0
    passed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    pending_steps: int = 0


@dataclass
class ExecutionRecord:
    """One run attempt.

    The record is owned by the task orchestrating its run. `status` only moves
    forward through `advance`; once terminal the record is frozen and handed to
    the history store exactly once.
    """

    execution_id: str
    execution_type: ExecutionType
    status: ExecutionStatus = ExecutionStatus.PENDING
    timestamp: str = field(default_factory=clock.now_iso)
    duration: str | None = None
    report_path: str | None = None
    feature_files: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    tag_logic: TagLogic | None = None
    exclude_tags: list[str] = field(default_factory=list)
    total_scenarios: int = 0
    passed_scenarios: int = 0
    failed_scenarios: int = 0
    skipped_scenarios: int = 0
    total_steps: int = 0
    passed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    pending_steps: int = 0
    exit_code: int | None = None
    triggered_by: str | None = None
    notes: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_sealed"):
            raise InvalidTransitionError(self.execution_id, self.status, self.status)
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, status: ExecutionStatus, note: str | None = None) -> None:
        """Move to `status`. Reaching a terminal status seals the record."""
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(self.execution_id, self.status, status)
        if note:
            self.add_note(note)
        self.status = status
        if status.is_terminal:
            object.__setattr__(self, "_sealed", True)

    def add_note(self, note: str) -> None:
        self.notes = note if not self.notes else f"{self.notes}; {note}"

    def apply_summary(self, summary: ResultSummary) -> None:
        for f in fields(summary):
            setattr(self, f.name, getattr(summary, f.name))

    @property
    def pass_percentage(self) -> float:
        if not self.total_scenarios:
            return 0.0
        return self.passed_scenarios * 100.0 / self.total_scenarios

    def summary(self) -> str:
        parts = [f"Type: {self.execution_type.value}"]
        if self.tags:
            tag_part = f"Tags: {', '.join(self.tags)}"
            if self.tag_logic is not None:
                tag_part += f" ({self.tag_logic.value})"
            parts.append(tag_part)
        if self.exclude_tags:
            parts.append(f"Excluding: {', '.join(self.exclude_tags)}")
        parts.append(
            f"Scenarios: {self.total_scenarios} "
            f"(passed {self.passed_scenarios}, failed {self.failed_scenarios}, skipped {self.skipped_scenarios})"
        )
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["execution_type"] = self.execution_type.value
        data["status"] = self.status.value
        data["tag_logic"] = self.tag_logic.value if self.tag_logic is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["execution_type"] = ExecutionType(values["execution_type"])
        status = ExecutionStatus(values.pop("status", ExecutionStatus.PENDING.value))
        if values.get("tag_logic") is not None:
            values["tag_logic"] = TagLogic(values["tag_logic"])
        for key in ("feature_files", "tags", "exclude_tags"):
            values[key] = list(values.get(key) or [])
        for f in fields(ResultSummary):
            values[f.name] = int(values.get(f.name) or 0)
        record = cls(**values)
        # Bypass `advance`: a stored record is restored as-is, terminal or not.
        object.__setattr__(record, "status", status)
        if status.is_terminal:
            object.__setattr__(record, "_sealed", True)
        return record


@dataclass(frozen=True)
class ProgressEvent:
    execution_id: str
    message: str
    progress: int
    timestamp: str

    def __post_init__(self) -> None:
        if not -1 <= self.progress <= 100:
            raise ValueError(f"progress must be within [-1, 100], got {self.progress}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
