"""Execution orchestration: from a run request to a durable terminal record.

Each accepted run is one supervising `asyncio.Task` that owns its
`ExecutionRecord`. While the runner process is alive the supervisor reads its
output, and two helper tasks scoped to the run publish heartbeats and enforce the
timeout. The helpers are cancelled and joined before the record is finalized, so
nothing is published for a run after its final event.

Progress messages for one run, in order::

    Preparing test execution...          0
    Found N features to execute         10   (tag runs)
    Executing ...                       20
    Running: Scenario: ...           30-90   (one per scenario)
    Execution in progress...         <est>   (heartbeat)
    Build succeeded / Build failed   95/-1
    Processing results...               95
    Report not generated: <path>        99   (when missing)
    Execution completed!               100   (PASSED, SKIPPED)
    Execution failed: ... / cancelled   -1   (FAILED, TIMEOUT, CANCELLED)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable

from bddrun.core import ids
from bddrun.core.broadcaster import ProgressBroadcaster
from bddrun.core.catalog import FeatureCatalog, TagValidator
from bddrun.core.error_types import ValidationError
from bddrun.core.history import HistoryStore
from bddrun.core.invocation import RunnerSettings, build_arguments, resolve_command
from bddrun.core.logging import bind_execution_context, get_logger, unbind_execution_context
from bddrun.core.models import ExecutionRecord, ExecutionStatus, ExecutionType, TagLogic
from bddrun.core.parser import OutputParser, ProgressTracker, parser_factory as default_parser_factory
from bddrun.core.process import ProcessRunner, RunFailure, RunningProcess, TerminationReason
from bddrun.core.registry import CANCELLED_MESSAGE, ExecutionRegistry
from bddrun.core.tags import build_expression, normalize_tags

logger = get_logger(__name__)

PREPARING_MESSAGE = "Preparing test execution..."
HEARTBEAT_MESSAGE = "Execution in progress..."
TIMEOUT_MESSAGE = "Execution timed out"
PROCESSING_MESSAGE = "Processing results..."
COMPLETED_MESSAGE = "Execution completed!"

NO_FEATURES_NOTE = "No feature files found to execute"
NO_SCENARIOS_NOTE = "No scenarios executed"
EXCLUDE_NOT_APPLIED_NOTE = "Exclude tags recorded but not applied to the runner filter"


@dataclass
class RunRequest:
    execution_type: ExecutionType
    feature_files: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    tag_logic: TagLogic | str | None = None
    exclude_tags: list[str] = field(default_factory=list)
    execution_id: str | None = None
    triggered_by: str | None = None


@dataclass
class _Plan:
    record: ExecutionRecord
    skip_note: str | None = None
    feature: str | None = None
    expression: str | None = None
    announce: list[tuple[str, int]] = field(default_factory=list)


def final_event(record: ExecutionRecord) -> tuple[str, int]:
    """Message and progress of the last event published for a finished run."""
    status = record.status
    if status in (ExecutionStatus.PASSED, ExecutionStatus.SKIPPED):
        return COMPLETED_MESSAGE, 100
    if status is ExecutionStatus.CANCELLED:
        return CANCELLED_MESSAGE, -1
    if status is ExecutionStatus.TIMEOUT:
        return TIMEOUT_MESSAGE, -1
    detail = f"exit code {record.exit_code}" if record.exit_code is not None else (record.notes or "unknown error")
    return f"Execution failed: {detail}", -1


class ExecutionOrchestrator:
    def __init__(
        self,
        *,
        settings: RunnerSettings,
        catalog: FeatureCatalog,
        tag_validator: TagValidator,
        history: HistoryStore,
        broadcaster: ProgressBroadcaster | None = None,
        registry: ExecutionRegistry | None = None,
        runner: ProcessRunner | None = None,
        parser_factory: Callable[[], OutputParser] | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.tag_validator = tag_validator
        self.history = history
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.registry = registry or ExecutionRegistry(self.broadcaster)
        self.runner = runner or ProcessRunner()
        self._parser_factory = parser_factory or default_parser_factory(settings.parser)
        # Ids claimed by a run that has not been durably stored yet.
        self._claimed: set[str] = set()
        self._records: dict[str, ExecutionRecord] = {}
        self._tasks: dict[str, asyncio.Task[ExecutionRecord]] = {}

    def new_execution_id(self) -> str:
        return ids.execution_id()

    async def start(self, request: RunRequest) -> str:
        """Accept a run and return its id once the runner is up (or the run is skipped).

        Raises `ValidationError` for a bad request and `LaunchError` when the runner
        cannot be started. Neither leaves a record, a registry entry or a progress
        event behind.
        """
        execution_id = await self._claim(request.execution_id)
        try:
            plan = self._plan(request, execution_id)
            if plan.skip_note is not None:
                self._announce(plan)
                plan.record.advance(ExecutionStatus.SKIPPED, plan.skip_note)
                self._records[execution_id] = plan.record
                logger.info("execution_skipped", execution_id=execution_id, note=plan.skip_note)
                await self._finalize(plan.record)
                return execution_id

            command = resolve_command(self.settings)
            args = build_arguments(
                self.settings,
                execution_type=plan.record.execution_type,
                execution_id=execution_id,
                feature=plan.feature,
                tag_expression=plan.expression,
            )
            handle = await self.runner.start(command, args, cwd=self.settings.working_dir)
        except BaseException:
            self._claimed.discard(execution_id)
            raise

        record = plan.record
        record.advance(ExecutionStatus.RUNNING)
        self._records[execution_id] = record
        self.registry.register(execution_id, handle)
        # Nothing is published for an id until it is sure to get a record.
        self._announce(plan)
        self.broadcaster.publish(execution_id, _executing_message(record), 20)
        logger.info(
            "execution_started",
            execution_id=execution_id,
            execution_type=record.execution_type.value,
            pid=handle.pid,
        )

        task = asyncio.create_task(self._supervise(record, handle), name=f"bddrun-{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution_id, None))
        return execution_id

    async def run(self, request: RunRequest) -> ExecutionRecord:
        execution_id = await self.start(request)
        record = await self.wait(execution_id)
        assert record is not None
        return record

    async def wait(self, execution_id: str) -> ExecutionRecord | None:
        """Block until the run is terminal. None for an unknown id."""
        task = self._tasks.get(execution_id)
        if task is None:
            return self.status(execution_id)
        return await asyncio.shield(task)

    def cancel(self, execution_id: str) -> bool:
        return self.registry.cancel(execution_id)

    def status(self, execution_id: str) -> ExecutionRecord | None:
        record = self._records.get(execution_id)
        if record is not None:
            return record
        return self.history.get(execution_id)

    def active_ids(self) -> list[str]:
        return [execution_id for execution_id, record in self._records.items() if not record.is_terminal]

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for each to be finalized."""
        for execution_id in self.registry.ids():
            self.cancel(execution_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _claim(self, requested: str | None) -> str:
        execution_id = requested or self.new_execution_id()
        if not ids.is_execution_id(execution_id):
            raise ValidationError(f"Invalid execution id: {execution_id!r}", details={"execution_id": execution_id})
        if execution_id in self._claimed or execution_id in self.registry:
            raise ValidationError(f"Execution id already in use: {execution_id}", details={"execution_id": execution_id})
        self._claimed.add(execution_id)
        try:
            exists = await asyncio.to_thread(self.history.exists, execution_id)
        except BaseException:
            self._claimed.discard(execution_id)
            raise
        if exists:
            self._claimed.discard(execution_id)
            raise ValidationError(f"Execution id already exists: {execution_id}", details={"execution_id": execution_id})
        return execution_id

    def _announce(self, plan: _Plan) -> None:
        execution_id = plan.record.execution_id
        self.broadcaster.publish(execution_id, PREPARING_MESSAGE, 0)
        for message, progress in plan.announce:
            self.broadcaster.publish(execution_id, message, progress)

    def _plan(self, request: RunRequest, execution_id: str) -> _Plan:
        execution_type = ExecutionType(request.execution_type)
        record = ExecutionRecord(
            execution_id=execution_id,
            execution_type=execution_type,
            triggered_by=request.triggered_by,
        )

        if execution_type is ExecutionType.ALL:
            if not self.catalog.list_features():
                return _Plan(record=record, skip_note=NO_FEATURES_NOTE)
            return _Plan(record=record)

        if execution_type is ExecutionType.FEATURE:
            if len(request.feature_files) != 1:
                raise ValidationError(
                    "Exactly one feature file is required",
                    details={"feature_files": request.feature_files},
                )
            feature = request.feature_files[0]
            if not self.catalog.has_feature(feature):
                raise ValidationError(f"Feature not found: {feature}", details={"feature": feature})
            record.feature_files = [feature]
            return _Plan(record=record, feature=feature)

        try:
            logic = TagLogic.parse(request.tag_logic)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"tag_logic": request.tag_logic}) from exc
        if execution_type is ExecutionType.COMPLEX_TAG:
            # Complex selections run as a plain AND of their include tags.
            logic = TagLogic.AND
            record.exclude_tags = normalize_tags(request.exclude_tags)
            if record.exclude_tags:
                logger.warning(
                    "exclude_tags_not_applied",
                    execution_id=execution_id,
                    exclude_tags=record.exclude_tags,
                )
                record.add_note(EXCLUDE_NOT_APPLIED_NOTE)

        requested = list(request.tags)
        tags = self.tag_validator.validate(requested)
        if not tags:
            raise ValidationError(f"No valid tags found: {requested}", details={"tags": requested})
        record.tags = tags
        record.tag_logic = logic

        matches = self.catalog.match(tags, logic)
        if not matches:
            return _Plan(record=record, skip_note=f"No matching features found for tags: {tags}")
        record.feature_files = matches
        return _Plan(
            record=record,
            expression=build_expression(tags, logic),
            announce=[(f"Found {len(matches)} features to execute", 10)],
        )

    async def _supervise(self, record: ExecutionRecord, handle: RunningProcess) -> ExecutionRecord:
        execution_id = record.execution_id
        bind_execution_context(execution_id)
        tracker = ProgressTracker(record.execution_type)
        parser = self._parser_factory()
        heartbeat = asyncio.create_task(self._heartbeat(execution_id, handle, tracker))
        watchdog = asyncio.create_task(self._watchdog(execution_id, handle))
        try:
            try:
                async for line in handle.lines():
                    logger.debug("runner_output", line=line)
                    parser.feed(line)
                    update = tracker.observe(line)
                    if update is not None:
                        self.broadcaster.publish(execution_id, *update)
                exit_code = await handle.wait()
            finally:
                heartbeat.cancel()
                watchdog.cancel()
                await asyncio.gather(heartbeat, watchdog, return_exceptions=True)
                self.registry.remove(execution_id)
            self._complete(record, handle, exit_code, parser)
        except Exception as exc:
            logger.exception("execution_crashed", execution_id=execution_id)
            handle.kill()
            self.registry.remove(execution_id)
            if not record.is_terminal:
                record.advance(ExecutionStatus.FAILED, f"Unexpected error: {exc}")
        try:
            return await self._finalize(record)
        finally:
            unbind_execution_context()

    def _complete(
        self,
        record: ExecutionRecord,
        handle: RunningProcess,
        exit_code: int,
        parser: OutputParser,
    ) -> None:
        execution_id = record.execution_id
        self.broadcaster.publish(execution_id, PROCESSING_MESSAGE, 95)

        summary = parser.summary()
        record.apply_summary(summary)
        record.duration = parser.duration()
        record.exit_code = exit_code

        report = self.settings.report_path(execution_id)
        if report.is_file():
            record.report_path = str(report)
        else:
            note = f"Report not generated: {report.resolve()}"
            record.add_note(note)
            self.broadcaster.publish(execution_id, note, 99)

        reason = handle.termination_reason
        if reason is TerminationReason.CANCELLED:
            record.advance(ExecutionStatus.CANCELLED, "Cancelled by user")
        elif reason is TerminationReason.TIMEOUT:
            record.advance(ExecutionStatus.TIMEOUT, f"Timed out after {self.settings.timeout_seconds:g}s")
        elif summary.total_scenarios == 0:
            record.advance(ExecutionStatus.SKIPPED, NO_SCENARIOS_NOTE)
        elif exit_code == 0:
            record.advance(ExecutionStatus.PASSED)
        else:
            record.advance(ExecutionStatus.FAILED, str(RunFailure(handle.command, exit_code, "")))

    async def _finalize(self, record: ExecutionRecord) -> ExecutionRecord:
        execution_id = record.execution_id
        persist = asyncio.create_task(asyncio.to_thread(self.history.append, record))
        self.broadcaster.publish(execution_id, *final_event(record))
        try:
            await persist
        except Exception:
            # The record stays queryable from memory; the id stays claimed.
            logger.exception("history_append_failed", execution_id=execution_id)
        else:
            self._records.pop(execution_id, None)
            self._claimed.discard(execution_id)
        logger.info(
            "execution_finished",
            execution_id=execution_id,
            status=record.status.value,
            total_scenarios=record.total_scenarios,
            exit_code=record.exit_code,
            notes=record.notes,
        )
        return record

    async def _heartbeat(self, execution_id: str, handle: RunningProcess, tracker: ProgressTracker) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_seconds)
            if not handle.is_alive():
                return
            self.broadcaster.publish(execution_id, HEARTBEAT_MESSAGE, tracker.progress)

    async def _watchdog(self, execution_id: str, handle: RunningProcess) -> None:
        if await handle.wait(self.settings.timeout_seconds) is not None:
            return
        if handle.terminate(TerminationReason.TIMEOUT):
            logger.warning("execution_timed_out", execution_id=execution_id, timeout_seconds=self.settings.timeout_seconds)
            self.broadcaster.publish(execution_id, TIMEOUT_MESSAGE, -1)
            self.registry.remove(execution_id)


def _executing_message(record: ExecutionRecord) -> str:
    if record.execution_type is ExecutionType.ALL:
        return "Executing all tests..."
    if record.execution_type is ExecutionType.FEATURE:
        return f"Executing feature: {record.feature_files[0]}"
    return f"Executing tests with tags: {', '.join(record.tags)}"
