"""HTTP + WebSocket surface over one shared orchestrator.

Runs are started in the background and answered with 202; clients follow them on
`/ws/progress` and read the final record from `/api/execution/status/{id}`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bddrun.core import invocation, wiring
from bddrun.core.error_types import ValidationError
from bddrun.core.history import DEFAULT_RECENT_LIMIT
from bddrun.core.logging import configure_logging, get_logger, is_configured
from bddrun.core.models import ExecutionType, TagLogic
from bddrun.core.orchestrator import ExecutionOrchestrator, RunRequest
from bddrun.core.process import LaunchError

logger = get_logger(__name__)


class RunOptions(BaseModel):
    execution_id: str | None = None


class TagRunBody(RunOptions):
    tags: list[str] = Field(default_factory=list)
    tag_logic: str = TagLogic.AND.value


class ComplexRunBody(RunOptions):
    include_tags: list[str] = Field(default_factory=list)
    exclude_tags: list[str] = Field(default_factory=list)


class RunAccepted(BaseModel):
    execution_id: str
    status: str


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = wiring.build_orchestrator()
    orchestrator: ExecutionOrchestrator = app.state.orchestrator
    logger.info("api_started", working_dir=str(orchestrator.settings.working_dir))

    yield

    active = orchestrator.registry.ids()
    if active:
        logger.warning("api_shutdown_cancelling", execution_ids=active)
    await orchestrator.shutdown()
    logger.info("api_stopped")


def get_orchestrator(request: Request) -> ExecutionOrchestrator:
    return request.app.state.orchestrator


async def _accept(orchestrator: ExecutionOrchestrator, request: RunRequest) -> RunAccepted:
    execution_id = await orchestrator.start(request)
    record = orchestrator.status(execution_id)
    return RunAccepted(execution_id=execution_id, status=record.status.value if record else "UNKNOWN")


def create_app(orchestrator: ExecutionOrchestrator | None = None) -> FastAPI:
    if not is_configured():
        configure_logging()

    app = FastAPI(title="bddrun", description="BDD test execution orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "error_type": exc.error_type, "details": exc.details},
        )

    @app.exception_handler(LaunchError)
    async def launch_error_handler(request: Request, exc: LaunchError) -> JSONResponse:
        logger.warning("runner_launch_failed", command=exc.command, reason=exc.reason)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "error_type": exc.error_type, "details": {"command": exc.command}},
        )

    @app.post("/api/execution/run/all", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
    async def run_all(
        body: RunOptions | None = None,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> RunAccepted:
        request = RunRequest(
            execution_type=ExecutionType.ALL,
            execution_id=body.execution_id if body else None,
            triggered_by="api",
        )
        return await _accept(orchestrator, request)

    @app.post("/api/execution/run/feature/{name:path}", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
    async def run_feature(
        name: str,
        body: RunOptions | None = None,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> RunAccepted:
        request = RunRequest(
            execution_type=ExecutionType.FEATURE,
            feature_files=[name],
            execution_id=body.execution_id if body else None,
            triggered_by="api",
        )
        return await _accept(orchestrator, request)

    @app.post("/api/execution/run/tags", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
    async def run_tags(
        body: TagRunBody,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> RunAccepted:
        request = RunRequest(
            execution_type=ExecutionType.TAG_BASED,
            tags=body.tags,
            tag_logic=body.tag_logic,
            execution_id=body.execution_id,
            triggered_by="api",
        )
        return await _accept(orchestrator, request)

    @app.post("/api/execution/run/complex", status_code=status.HTTP_202_ACCEPTED, response_model=RunAccepted)
    async def run_complex(
        body: ComplexRunBody,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> RunAccepted:
        request = RunRequest(
            execution_type=ExecutionType.COMPLEX_TAG,
            tags=body.include_tags,
            tag_logic=TagLogic.AND,
            exclude_tags=body.exclude_tags,
            execution_id=body.execution_id,
            triggered_by="api",
        )
        return await _accept(orchestrator, request)

    @app.delete("/api/execution/cancel/{execution_id}")
    async def cancel(
        execution_id: str,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        cancelled = orchestrator.cancel(execution_id)
        return {"execution_id": execution_id, "cancelled": cancelled}

    @app.get("/api/execution/status/{execution_id}")
    async def execution_status(
        execution_id: str,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        record = await asyncio.to_thread(orchestrator.status, execution_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Execution not found: {execution_id}")
        return record.to_dict()

    @app.get("/api/execution/new")
    async def new_execution_id(orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)) -> dict:
        return {"execution_id": orchestrator.new_execution_id()}

    @app.get("/api/execution/runner")
    async def runner(
        probe: bool = False,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        return await asyncio.to_thread(invocation.runner_status, orchestrator.settings, probe=probe)

    @app.get("/api/history")
    async def history(
        limit: int = Query(DEFAULT_RECENT_LIMIT, ge=1),
        tag: str | None = None,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        store = orchestrator.history
        if tag:
            records = await asyncio.to_thread(store.list_by_tag, tag, limit=limit)
        else:
            records = await asyncio.to_thread(store.list_recent, limit)
        return {"executions": [record.to_dict() for record in records], "count": len(records)}

    @app.delete("/api/history/{execution_id}")
    async def delete_history(
        execution_id: str,
        orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
    ) -> dict:
        if not await asyncio.to_thread(orchestrator.history.delete, execution_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Execution not found: {execution_id}")
        return {"execution_id": execution_id, "deleted": True}

    @app.websocket("/ws/progress")
    async def progress(websocket: WebSocket, execution_id: str | None = None) -> None:
        orchestrator: ExecutionOrchestrator = websocket.app.state.orchestrator
        # Subscribe before accepting so a client that starts a run right after the
        # handshake sees its first event.
        with orchestrator.broadcaster.subscribe(execution_id) as subscription:
            await websocket.accept()

            async def forward() -> None:
                async for event in subscription:
                    await websocket.send_json(event.to_dict())

            async def until_disconnect() -> None:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        return

            tasks = [asyncio.create_task(forward()), asyncio.create_task(until_disconnect())]
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if isinstance(exc, WebSocketDisconnect):
                        logger.debug("progress_client_disconnected", execution_id=execution_id)
                    elif exc is not None:
                        raise exc
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("progress_stream_closed", execution_id=execution_id)

    return app
