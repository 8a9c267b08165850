"""Worker IPC message types.

Messages are a closed set of dataclasses pickled over ``multiprocessing``
pipes. Both ends dispatch with ``match`` on the concrete type.

Parent -> worker: ``ExportRequest | StatusRequest | CancelRequest | ShutdownRequest``
Worker -> parent: ``WorkerReady | Heartbeat | ProgressMessage | ExportResponse | StatusResponse``
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from multiprocessing.connection import Connection
from typing import Any, Callable, Union
from uuid import uuid4

from renderfleet.export.models import ExportJob, ExportResult, ProgressEvent

logger = logging.getLogger(__name__)


# ============================================================================
# Parent -> worker
# ============================================================================


@dataclass(frozen=True)
class ExportRequest:
    request_id: str
    job: ExportJob


@dataclass(frozen=True)
class StatusRequest:
    request_id: str


@dataclass(frozen=True)
class CancelRequest:
    """Fire-and-forget: abort the in-flight render, if any."""


@dataclass(frozen=True)
class ShutdownRequest:
    """Fire-and-forget: exit the worker loop."""


Request = Union[ExportRequest, StatusRequest]
Command = Union[ExportRequest, StatusRequest, CancelRequest, ShutdownRequest]


# ============================================================================
# Worker -> parent
# ============================================================================


@dataclass(frozen=True)
class WorkerReady:
    pid: int


@dataclass(frozen=True)
class Heartbeat:
    pid: int
    rss_mb: float


@dataclass(frozen=True)
class ProgressMessage:
    event: ProgressEvent


@dataclass(frozen=True)
class ExportResponse:
    request_id: str
    result: ExportResult


@dataclass(frozen=True)
class StatusResponse:
    request_id: str
    is_exporting: bool


Response = Union[ExportResponse, StatusResponse]
WorkerEvent = Union[WorkerReady, Heartbeat, ProgressMessage, ExportResponse, StatusResponse]


def new_request_id() -> str:
    return uuid4().hex


class PipeReader(threading.Thread):
    """Forward messages from a pipe into an event loop.

    ``Connection.recv`` blocks, so it runs on a daemon thread and hands each
    message to ``on_message`` on the loop thread. ``on_closed`` is scheduled
    once when the other end goes away, unless the reader was stopped first.
    """

    def __init__(
        self,
        conn: Connection,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[Any], None],
        on_closed: Callable[[], None],
        name: str,
        poll_interval_s: float = 0.2,
    ):
        super().__init__(name=name, daemon=True)
        self._conn = conn
        self._loop = loop
        self._on_message = on_message
        self._on_closed = on_closed
        self._poll_interval_s = poll_interval_s
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                if not self._conn.poll(self._poll_interval_s):
                    continue
                message = self._conn.recv()
            except (EOFError, OSError):
                break
            if not self._deliver(self._on_message, message):
                return
        if not self._stopped.is_set():
            self._deliver(self._on_closed)

    def _deliver(self, callback: Callable[..., None], *args: Any) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"[IPC] {self.name}: event loop closed, reader exiting")
            return False
        return True

    def stop(self) -> None:
        self._stopped.set()
