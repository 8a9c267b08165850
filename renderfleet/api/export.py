"""Export session control endpoints."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status

from renderfleet.api.websocket import EXPORT_TOPIC, ExportProgressNotifier, WebSocketManager
from renderfleet.export.coordinator import ExportCoordinator, ExportSpec
from renderfleet.schemas.export import (
    ExportCancelResponse,
    ExportErrorResponse,
    ExportStartRequest,
    ExportStartResponse,
    ExportStatusResponse,
    MachineProfileResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)

# Keeps session watcher tasks referenced until they finish
_watchers: set[asyncio.Task] = set()


def get_coordinator(request: Request) -> ExportCoordinator:
    return request.app.state.coordinator


def get_notifier(request: Request) -> ExportProgressNotifier:
    return request.app.state.progress_notifier


Coordinator = Annotated[ExportCoordinator, Depends(get_coordinator)]
Notifier = Annotated[ExportProgressNotifier, Depends(get_notifier)]


@router.post(
    "/export",
    response_model=ExportStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"model": ExportErrorResponse}, 422: {"model": ExportErrorResponse}},
)
async def start_export(
    export_request: ExportStartRequest,
    coordinator: Coordinator,
    notifier: Notifier,
) -> ExportStartResponse:
    """
    Start an export session.

    Returns immediately; progress is streamed on the WebSocket. Only one
    session may run at a time, a second request gets 409.
    """
    session = await coordinator.start(ExportSpec(**export_request.model_dump()))
    watcher = asyncio.create_task(notifier.watch_session(session))
    _watchers.add(watcher)
    watcher.add_done_callback(_watchers.discard)
    logger.info(f"Export session {session.id} accepted")
    return ExportStartResponse(session_id=session.id, state=session.state.value)


@router.delete("/export", response_model=ExportCancelResponse)
async def cancel_export(coordinator: Coordinator) -> ExportCancelResponse:
    """Cancel the active export (best effort)."""
    session = coordinator.active_session
    cancelled = await coordinator.cancel()
    return ExportCancelResponse(success=cancelled, session_id=session.id if session else None)


@router.get("/export/status", response_model=ExportStatusResponse)
async def get_export_status(coordinator: Coordinator) -> ExportStatusResponse:
    return ExportStatusResponse(**coordinator.status())


@router.get("/export/profile", response_model=MachineProfileResponse)
async def get_machine_profile(coordinator: Coordinator) -> MachineProfileResponse:
    """Profile the machine the way the next export would see it."""
    profile = await asyncio.to_thread(coordinator.profiler.profile)
    return MachineProfileResponse(**profile.to_dict())


@router.websocket("/export/ws")
async def export_progress_ws(websocket: WebSocket) -> None:
    """Stream progress, completion and error messages for exports."""
    manager: WebSocketManager = websocket.app.state.websocket_manager
    coordinator: ExportCoordinator = websocket.app.state.coordinator
    await manager.connect(websocket, EXPORT_TOPIC)
    try:
        await websocket.send_json({"type": "status", **coordinator.status()})
        while True:
            # Client messages are ignored; this only detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, EXPORT_TOPIC)
