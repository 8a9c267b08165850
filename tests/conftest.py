"""
Pytest fixtures for renderfleet tests.

Multiprocess tests spawn real worker processes with the synthetic renderer,
so they need no render engine. They are marked ``slow``.

CI/CD Note:
Tests that run a real ffmpeg binary are marked with @pytest.mark.requires_ffmpeg
Run `pytest -m "not requires_ffmpeg"` to skip these tests in CI.
"""

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import pytest

from renderfleet.config import Settings
from renderfleet.export.cancellation import CancelToken
from renderfleet.export.combiner import ChunkCombiner
from renderfleet.export.concurrency import MemorySnapshot
from renderfleet.export.ipc import CancelRequest, ExportResponse
from renderfleet.export.models import ExportResult, MachineProfile
from renderfleet.export.renderer import SyntheticRenderer
from renderfleet.export.worker import RenderWorker
from renderfleet.export.command_runner import CommandResult

MB = 1024 * 1024


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring an ffmpeg binary on PATH (skipped when missing)"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as spawning worker processes"
    )


# Skip decorator for tests requiring ffmpeg
requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not available"
)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment, with temp files under tmp_path."""
    return Settings(
        _env_file=None,
        export_temp_dir=str(tmp_path),
        worker_renderer="synthetic",
        synthetic_render_fps=2000,
        worker_heartbeat_interval_s=0.2,
        worker_heartbeat_timeout_s=5,
        worker_cancel_grace_s=1.0,
        worker_spawn_timeout_s=60,
    )


@pytest.fixture
def laptop_profile() -> MachineProfile:
    """16GB / 4 core machine."""
    return MachineProfile(cpu_cores=4, total_memory_gb=16.0, available_memory_gb=8.0)


@pytest.fixture
def workstation_profile() -> MachineProfile:
    """32GB / 12 core machine with ~20GB available."""
    return MachineProfile(cpu_cores=12, total_memory_gb=32.0, available_memory_gb=20.0)


def write_sparse_file(path: Path, size: int) -> Path:
    """Create a file of ``size`` bytes without writing its contents."""
    with open(path, "wb") as f:
        if size > 0:
            f.seek(size - 1)
            f.write(b"\0")
    return path


class FakeTranscoder:
    """Transcoder stand-in that writes an output file of a scripted size.

    ``output_sizes`` gives the output size per call, in order; ``None``
    writes nothing. ``returncodes`` does the same for the exit code.
    """

    def __init__(self, output_sizes: Sequence[Optional[int]], returncodes: Sequence[int] = ()):
        self.output_sizes = list(output_sizes)
        self.returncodes = list(returncodes)
        self.calls: list[list[str]] = []
        self.concat_lists: list[str] = []

    async def run(
        self,
        args: Sequence[str],
        *,
        cancel_token: Optional[CancelToken] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        args = list(args)
        call_index = len(self.calls)
        self.calls.append(args)

        list_path = args[args.index("-i") + 1]
        with open(list_path, encoding="utf-8") as f:
            self.concat_lists.append(f.read())

        returncode = self.returncodes[call_index] if call_index < len(self.returncodes) else 0
        size = self.output_sizes[call_index] if call_index < len(self.output_sizes) else None
        if returncode == 0 and size is not None:
            write_sparse_file(Path(args[-1]), size)
        return CommandResult(command=["ffmpeg", *args], returncode=returncode, stderr="", duration=0.01)

    @property
    def reencoded(self) -> bool:
        return any("-crf" in call for call in self.calls)


def calm_snapshot() -> MemorySnapshot:
    return MemorySnapshot(rss_mb=500, free_mb=8000, total_mb=16000)


class FakeProfiler:
    """Profiler returning a fixed MachineProfile."""

    def __init__(self, profile: MachineProfile):
        self._profile = profile
        self.calls = 0

    def profile(self) -> MachineProfile:
        self.calls += 1
        return self._profile


@dataclass(eq=False)
class FakeHandle:
    name: str
    worker: RenderWorker
    memory_limit_mb: Optional[int] = None

    @property
    def progress(self):
        return self.worker.progress


class FakePool:
    """Worker pool stand-in running RenderWorkers in-process.

    ``failing`` names workers whose export requests fail immediately.
    """

    def __init__(self, settings: Settings, render_fps: float = 20000.0, failing: Sequence[str] = ()):
        self.settings = settings
        self.render_fps = render_fps
        self.failing = set(failing)
        self.transcoder = FakeTranscoder([2 * MB] * 100)
        self._handles: dict[str, FakeHandle] = {}
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.sent: list[tuple[str, Any]] = []

    async def get_or_create(self, name, *, memory_limit_mb=None, max_restarts=None) -> FakeHandle:
        handle = self._handles.get(name)
        if handle is None:
            worker = RenderWorker(
                SyntheticRenderer(fps=self.render_fps),
                settings=self.settings,
                combiner=ChunkCombiner(transcoder=self.transcoder, settings=self.settings),
                memory_limit_mb=memory_limit_mb,
                snapshot=calm_snapshot,
            )
            handle = FakeHandle(name, worker, memory_limit_mb)
            self._handles[name] = handle
            self.created.append(name)
        return handle

    def get(self, name: str) -> Optional[FakeHandle]:
        return self._handles.get(name)

    async def request(self, handle: FakeHandle, request: Any, timeout_ms: int) -> ExportResponse:
        if handle.name in self.failing:
            return ExportResponse(
                request.request_id,
                ExportResult(success=False, error=f"{handle.name} crashed", error_kind="render"),
            )
        result = await handle.worker.render(request.job)
        return ExportResponse(request.request_id, result)

    def send(self, handle: FakeHandle, message: Any) -> bool:
        self.sent.append((handle.name, message))
        if isinstance(message, CancelRequest) and handle.worker._export is not None:
            handle.worker._export.token.cancel()
        return True

    async def destroy(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            await handle.worker.cancel()
            self.destroyed.append(name)

    async def destroy_all(self) -> None:
        for name in list(self._handles):
            await self.destroy(name)


@pytest.fixture
def chunk_files(tmp_path: Path) -> list[Path]:
    """Three 10MB chunk files."""
    return [write_sparse_file(tmp_path / f"chunk-{i}.mp4", 10 * MB) for i in range(3)]


@pytest.fixture(autouse=True)
def _no_env_leak(monkeypatch):
    """Keep user env overrides out of Settings()."""
    for key in list(os.environ):
        if key.startswith(("PRESSURE_", "CHUNK_", "PARALLEL_", "WORKER_", "COMBINE_", "PROFILER_")):
            monkeypatch.delenv(key, raising=False)
