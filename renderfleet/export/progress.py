"""Export progress aggregation.

Workers push ``ProgressEvent``s; the coordinator folds them into one global
percentage and publishes it on a latest-wins channel. Subscribers that fall
behind only ever see the newest value, so the channel never queues
unboundedly.

Percent bands: preparing 0-10, rendering 10-90, combining/finalizing 90-100.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any, Callable, Generic, Optional, TypeVar

from renderfleet.config import Settings, get_settings
from renderfleet.export.models import ProgressEvent, ProgressStage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Slot(Generic[T]):
    """Per-subscriber mailbox holding at most the newest value."""

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self.value: Optional[T] = None
        self.pending = False


class LatestValueChannel(Generic[T]):
    """Broadcast channel where each subscriber sees only the newest value."""

    def __init__(self) -> None:
        self._slots: set[_Slot[T]] = set()
        self._latest: Optional[T] = None
        self._closed = False

    @property
    def latest(self) -> Optional[T]:
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, value: T) -> None:
        if self._closed:
            return
        self._latest = value
        for slot in self._slots:
            slot.value = value
            slot.pending = True
            slot.event.set()

    def discard_latest(self) -> None:
        """Forget the retained value so new subscribers start empty."""
        self._latest = None

    def close(self) -> None:
        """Stop the channel; subscribers drain their last value and finish."""
        self._closed = True
        for slot in self._slots:
            slot.event.set()

    def subscriber_count(self) -> int:
        return len(self._slots)

    async def subscribe(self) -> AsyncGenerator[T, None]:
        """Yield the current value (if any), then every newer value until closed."""
        slot: _Slot[T] = _Slot()
        if self._latest is not None:
            slot.value = self._latest
            slot.pending = True
        self._slots.add(slot)
        try:
            while True:
                if slot.pending:
                    slot.pending = False
                    yield slot.value  # type: ignore[misc]
                    continue
                if self._closed:
                    return
                slot.event.clear()
                await slot.event.wait()
        finally:
            self._slots.discard(slot)


class ProgressTracker:
    """Folds per-worker progress into one monotonic export percentage."""

    def __init__(
        self,
        channel: Optional[LatestValueChannel[ProgressEvent]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.channel: LatestValueChannel[ProgressEvent] = channel or LatestValueChannel()
        self._attached: dict[str, asyncio.Task] = {}
        self.reset()

    def reset(self, total_frames: int = 0, chunk_count: int = 0) -> None:
        self.total_frames = total_frames
        self.chunk_count = chunk_count
        self._chunks: dict[int, tuple[int, int]] = {}  # index -> (rendered, total)
        self._last_chunk_by_worker: dict[str, int] = {}
        self._last_progress = 0.0
        self._last_logged = -100.0
        self._started_at = time.monotonic()
        self.last_event: Optional[ProgressEvent] = None

    # ========================================================================
    # Mapping
    # ========================================================================

    def chunk_to_global(self, chunk_index: int, chunk_progress: float, chunk_count: Optional[int] = None) -> float:
        """Map a chunk-relative fraction into the rendering band.

        ``base_for_index + chunk_progress * percent_per_chunk``.
        """
        s = self.settings
        count = max(1, chunk_count or self.chunk_count or 1)
        per_chunk = (s.progress_render_end - s.progress_render_start) / count
        fraction = min(1.0, max(0.0, chunk_progress))
        return s.progress_render_start + chunk_index * per_chunk + fraction * per_chunk

    def frames_to_global(self, rendered_frames: int) -> float:
        s = self.settings
        if self.total_frames <= 0:
            return s.progress_render_start
        fraction = min(1.0, max(0.0, rendered_frames / self.total_frames))
        return s.progress_render_start + fraction * (s.progress_render_end - s.progress_render_start)

    @property
    def rendered_frames(self) -> int:
        return sum(rendered for rendered, _ in self._chunks.values())

    # ========================================================================
    # Publishing
    # ========================================================================

    def send_progress(self, progress: float, stage: ProgressStage, message: str, **extra: Any) -> ProgressEvent:
        """Publish a progress value, clamped to never move backwards."""
        clamped = min(100.0, max(self._last_progress, progress))
        self._last_progress = clamped
        event = ProgressEvent(progress=round(clamped, 2), stage=stage, message=message, **extra)
        self.last_event = event
        self.channel.publish(event)

        if clamped - self._last_logged >= self.settings.progress_log_delta or clamped >= 100.0:
            self._last_logged = clamped
            eta = f", eta {event.eta_s:.0f}s" if event.eta_s is not None else ""
            logger.info(f"[PROGRESS] {clamped:.0f}% {stage}: {message}{eta}")
        return event

    def handle_worker_event(self, worker_name: str, event: ProgressEvent) -> ProgressEvent:
        """Fold one worker event into the global progress."""
        if event.chunk_index is not None and event.chunk_total_frames:
            return self._handle_chunk_event(worker_name, event)

        if event.stage == "rendering" and event.current_frame is not None and self.total_frames > 0:
            rendered = event.current_frame
            return self.send_progress(
                self.frames_to_global(rendered),
                "rendering",
                event.message,
                current_frame=rendered,
                total_frames=self.total_frames,
                **self._throughput(rendered),
            )

        return self.send_progress(event.progress, event.stage, event.message)

    def _handle_chunk_event(self, worker_name: str, event: ProgressEvent) -> ProgressEvent:
        index = event.chunk_index
        total = event.chunk_total_frames or 0
        rendered = min(total, max(0, event.chunk_rendered_frames or 0))

        # Events are coalesced per worker, so a chunk's final frame count can be
        # dropped. A worker moving on means its previous chunk finished.
        previous = self._last_chunk_by_worker.get(worker_name)
        if previous is not None and previous != index and previous in self._chunks:
            _, previous_total = self._chunks[previous]
            self._chunks[previous] = (previous_total, previous_total)
        self._last_chunk_by_worker[worker_name] = index

        known = self._chunks.get(index, (0, total))[0]
        self._chunks[index] = (max(known, rendered), total)

        rendered_sum = self.rendered_frames
        if self.total_frames > 0:
            progress = self.frames_to_global(rendered_sum)
        else:
            progress = self.chunk_to_global(index, rendered / total if total else 0.0, event.chunk_count)

        chunk_count = self.chunk_count or event.chunk_count or 0
        completed = sum(1 for done, size in self._chunks.values() if size and done >= size)
        message = event.message
        if chunk_count > 1:
            message = f"Rendering chunks ({completed}/{chunk_count} complete)"

        return self.send_progress(
            progress,
            "rendering",
            message,
            chunk_index=index,
            chunk_count=chunk_count or None,
            chunk_rendered_frames=rendered,
            chunk_total_frames=total,
            current_frame=rendered_sum,
            total_frames=self.total_frames or None,
            **self._throughput(rendered_sum),
        )

    def _throughput(self, rendered_frames: int) -> dict[str, float]:
        elapsed = time.monotonic() - self._started_at
        if elapsed <= 0 or rendered_frames <= 0:
            return {}
        avg_fps = rendered_frames / elapsed
        stats = {"avg_fps": round(avg_fps, 2)}
        if self.total_frames > 0:
            stats["eta_s"] = round(max(0, self.total_frames - rendered_frames) / avg_fps, 1)
        return stats

    # ========================================================================
    # Worker subscriptions
    # ========================================================================

    def attach(self, worker_name: str, events: AsyncIterator[ProgressEvent]) -> Callable[[], None]:
        """Consume a worker's progress stream; returns a detach function."""
        self.detach(worker_name)

        async def consume() -> None:
            async for event in events:
                self.handle_worker_event(worker_name, event)

        task = asyncio.create_task(consume(), name=f"progress-{worker_name}")
        self._attached[worker_name] = task
        return lambda: self.detach(worker_name)

    def detach(self, worker_name: str) -> None:
        task = self._attached.pop(worker_name, None)
        if task is not None and not task.done():
            task.cancel()

    def detach_all(self) -> None:
        for name in list(self._attached):
            self.detach(name)
