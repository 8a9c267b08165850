"""Tests for the export coordinator.

Workers run in-process through a fake pool; planning uses the real planner
with fixed machine profiles.

Features:
- Sequential export on the primary worker (plan collapsed to one chunk)
- Parallel export with central combine
- One active session at a time
- Cancellation and failure settle the session and clean up
"""

import asyncio
from pathlib import Path

import pytest

from renderfleet.exceptions import (
    ExportCancelledError,
    ExportInProgressError,
    PlanningError,
    RenderError,
)
from renderfleet.export.combiner import ChunkCombiner
from renderfleet.export.coordinator import (
    PRIMARY_WORKER,
    ExportCoordinator,
    ExportSpec,
    SessionState,
    filter_metadata_for_chunk,
    partial_output_path,
    requires_single_threaded_decode,
)
from renderfleet.export.ipc import CancelRequest
from renderfleet.export.models import ChunkPlanEntry

from conftest import FakePool, FakeProfiler, FakeTranscoder, MB


def make_spec(tmp_path: Path, total_frames: int, **overrides) -> ExportSpec:
    values = dict(
        composition={"source": "testsrc2"},
        output_path=str(tmp_path / "export.mp4"),
        total_frames=total_frames,
        fps=30.0,
    )
    values.update(overrides)
    return ExportSpec(**values)


async def wait_for(predicate, timeout: float = 10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def make_coordinator(settings):
    def factory(profile, pool=None, transcoder=None):
        pool = pool or FakePool(settings)
        coordinator = ExportCoordinator(
            pool=pool,
            profiler=FakeProfiler(profile),
            combiner=ChunkCombiner(transcoder=transcoder or FakeTranscoder([2 * MB]), settings=settings),
            settings=settings,
        )
        return coordinator, pool

    return factory


class TestSequentialExport:
    """Exports that stay on the primary worker."""

    @pytest.mark.asyncio
    async def test_short_export_succeeds(self, make_coordinator, laptop_profile, tmp_path):
        coordinator, pool = make_coordinator(laptop_profile)
        spec = make_spec(tmp_path, 300)

        session = await coordinator.export(spec)

        assert session.state is SessionState.SUCCEEDED
        assert session.output_path == spec.output_path
        assert Path(spec.output_path).exists()
        assert pool.created == [PRIMARY_WORKER]
        assert pool.destroyed == []
        assert session.allocation.use_parallel is False
        assert coordinator.progress.latest.progress == 100
        assert coordinator.is_export_in_progress() is False

    @pytest.mark.asyncio
    async def test_sequential_plan_collapses_to_one_chunk(self, make_coordinator, laptop_profile, tmp_path):
        """A long export on a machine without parallel headroom renders as one chunk."""
        coordinator, pool = make_coordinator(laptop_profile)

        session = await coordinator.export(make_spec(tmp_path, 9000))

        assert session.chunk_count == 1
        assert session.allocation.worker_count == 1
        assert pool.get(PRIMARY_WORKER).worker.chunks_started == 1
        assert Path(session.output_path).exists()

    @pytest.mark.asyncio
    async def test_sequential_on_16gb_caps_concurrency(self, make_coordinator, laptop_profile, tmp_path):
        coordinator, _ = make_coordinator(laptop_profile)

        session = await coordinator.export(make_spec(tmp_path, 300))

        assert session.allocation.concurrency <= 2

    @pytest.mark.asyncio
    async def test_primary_worker_reused_across_sessions(self, make_coordinator, laptop_profile, tmp_path):
        coordinator, pool = make_coordinator(laptop_profile)

        await coordinator.export(make_spec(tmp_path, 60))
        await coordinator.export(make_spec(tmp_path, 60, output_path=str(tmp_path / "second.mp4")))

        assert pool.created == [PRIMARY_WORKER]

    @pytest.mark.asyncio
    async def test_worker_failure_fails_session(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, failing=[PRIMARY_WORKER])
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)

        with pytest.raises(RenderError, match="crashed"):
            await coordinator.export(make_spec(tmp_path, 300))

        status = coordinator.status()
        assert status["in_progress"] is False
        assert status["session"]["state"] == "failed"
        assert status["session"]["error"]["kind"] == "render"
        assert pool.destroyed == [PRIMARY_WORKER]

    @pytest.mark.asyncio
    async def test_planning_error(self, make_coordinator, laptop_profile, tmp_path):
        coordinator, pool = make_coordinator(laptop_profile)

        with pytest.raises(PlanningError):
            await coordinator.export(make_spec(tmp_path, 300, fps=0))

        assert pool.created == []
        assert coordinator.is_export_in_progress() is False


class TestOutputOwnership:
    """The session renders into its own partial file and only replaces the
    target on success; a file already at the target survives anything else."""

    USER_BYTES = b"user footage, not ours"

    @pytest.fixture
    def existing_output(self, tmp_path) -> Path:
        path = tmp_path / "important.mp4"
        path.write_bytes(self.USER_BYTES)
        return path

    @pytest.mark.asyncio
    async def test_planning_error_keeps_existing_file(self, make_coordinator, laptop_profile, tmp_path, existing_output):
        coordinator, _ = make_coordinator(laptop_profile)

        with pytest.raises(PlanningError):
            await coordinator.export(make_spec(tmp_path, 300, fps=0, output_path=str(existing_output)))

        assert existing_output.read_bytes() == self.USER_BYTES

    @pytest.mark.asyncio
    async def test_render_failure_keeps_existing_file(
        self, make_coordinator, laptop_profile, settings, tmp_path, existing_output
    ):
        pool = FakePool(settings, failing=[PRIMARY_WORKER])
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)

        with pytest.raises(RenderError):
            await coordinator.export(make_spec(tmp_path, 300, output_path=str(existing_output)))

        assert existing_output.read_bytes() == self.USER_BYTES
        assert list(tmp_path.glob("*.partial*")) == []

    @pytest.mark.asyncio
    async def test_cancel_keeps_existing_file(
        self, make_coordinator, laptop_profile, settings, tmp_path, existing_output
    ):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        session = await coordinator.start(make_spec(tmp_path, 3000, output_path=str(existing_output)))
        await wait_for(lambda: session.state is SessionState.RENDERING)

        await coordinator.cancel()
        await asyncio.wait_for(session.settled.wait(), timeout=5)

        assert session.state is SessionState.CANCELLED
        assert existing_output.read_bytes() == self.USER_BYTES
        assert list(tmp_path.glob("*.partial*")) == []

    @pytest.mark.asyncio
    async def test_success_replaces_existing_file(self, make_coordinator, laptop_profile, tmp_path, existing_output):
        coordinator, _ = make_coordinator(laptop_profile)

        session = await coordinator.export(make_spec(tmp_path, 300, output_path=str(existing_output)))

        assert session.output_path == str(existing_output)
        assert existing_output.read_bytes() != self.USER_BYTES
        assert list(tmp_path.glob("*.partial*")) == []

    def test_partial_path_is_a_sibling_with_the_same_extension(self):
        path = partial_output_path("/exports/demo.mp4", "abc123")

        assert path == "/exports/demo.renderfleet-abc123.partial.mp4"


class TestParallelExport:
    """Exports split across export-par-{i} workers."""

    @pytest.mark.asyncio
    async def test_parallel_export_combines_centrally(self, make_coordinator, workstation_profile, settings, tmp_path):
        transcoder = FakeTranscoder([2 * MB])
        coordinator, pool = make_coordinator(workstation_profile, transcoder=transcoder)
        spec = make_spec(tmp_path, 2400, chunk_size_frames=600)

        session = await coordinator.export(spec)

        assert session.state is SessionState.SUCCEEDED
        assert session.allocation.use_parallel is True
        assert session.allocation.concurrency <= settings.parallel_max_concurrency_per_worker
        assert sorted(pool.created) == [f"export-par-{i}" for i in range(session.allocation.worker_count)]
        assert sorted(pool.destroyed) == sorted(pool.created)
        assert len(transcoder.calls) == 1
        entries = transcoder.concat_lists[0].splitlines()
        assert [e.split("-")[1] for e in entries] == ["0", "1", "2", "3"]
        assert list(tmp_path.glob("chunk-*.mp4")) == []
        assert Path(spec.output_path).exists()

    @pytest.mark.asyncio
    async def test_metadata_filtered_per_chunk(self, make_coordinator, workstation_profile, tmp_path):
        coordinator, pool = make_coordinator(workstation_profile)
        seen = {}
        original_request = pool.request

        async def recording_request(handle, request, timeout_ms):
            seen[handle.name] = request.job
            return await original_request(handle, request, timeout_ms)

        pool.request = recording_request
        captions = [{"time_ms": t} for t in (0, 25_000, 45_000, 70_000)]
        spec = make_spec(tmp_path, 2400, chunk_size_frames=600, metadata={"captions": captions, "title": "x"})

        await coordinator.export(spec)

        job = seen["export-par-1"]
        assert [c.index for c in job.assigned_chunks] == [1]
        assert job.combine_chunks_in_worker is False
        assert job.pre_filtered_metadata == {1: {"captions": [{"time_ms": 25_000}], "title": "x"}}

    @pytest.mark.asyncio
    async def test_first_failure_cancels_siblings(self, make_coordinator, workstation_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=500.0, failing=["export-par-1"])
        transcoder = FakeTranscoder([2 * MB])
        coordinator, _ = make_coordinator(workstation_profile, pool=pool, transcoder=transcoder)
        spec = make_spec(tmp_path, 2400, chunk_size_frames=600)

        with pytest.raises(RenderError, match="export-par-1 crashed"):
            await coordinator.export(spec)

        assert transcoder.calls == []
        assert sorted(pool.destroyed) == sorted(pool.created)
        assert any(isinstance(message, CancelRequest) for _, message in pool.sent)
        assert list(tmp_path.glob("chunk-*.mp4")) == []
        assert not Path(spec.output_path).exists()


class TestSessionControl:
    """Single active session, cancellation and status."""

    @pytest.mark.asyncio
    async def test_second_export_rejected_while_active(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        first = await coordinator.start(make_spec(tmp_path, 3000))

        with pytest.raises(ExportInProgressError) as exc_info:
            await coordinator.start(make_spec(tmp_path, 30, output_path=str(tmp_path / "other.mp4")))

        assert exc_info.value.details == {"session_id": first.id}
        assert coordinator.active_session is first
        await coordinator.cancel()
        await asyncio.wait_for(first.settled.wait(), timeout=10)

    @pytest.mark.asyncio
    async def test_cancel_settles_promptly(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        spec = make_spec(tmp_path, 3000)
        session = await coordinator.start(spec)
        await wait_for(lambda: session.state is SessionState.RENDERING)

        assert await coordinator.cancel() is True
        await asyncio.wait_for(session.settled.wait(), timeout=5)

        assert session.state is SessionState.CANCELLED
        assert isinstance(session.error, ExportCancelledError)
        assert session.error.kind == "cancelled"
        assert PRIMARY_WORKER in pool.destroyed
        assert not Path(spec.output_path).exists()
        assert list(tmp_path.glob("renderfleet-frames-*")) == []
        assert coordinator.is_export_in_progress() is False
        assert await coordinator.cancel() is False

    @pytest.mark.asyncio
    async def test_export_raises_cancelled(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        export = asyncio.create_task(coordinator.export(make_spec(tmp_path, 3000)))
        await wait_for(lambda: coordinator.active_session is not None)

        await coordinator.cancel("user closed the dialog")

        with pytest.raises(ExportCancelledError, match="user closed the dialog"):
            await asyncio.wait_for(export, timeout=5)

    @pytest.mark.asyncio
    async def test_new_session_after_cancel(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        first = await coordinator.start(make_spec(tmp_path, 3000))
        await coordinator.cancel()
        await asyncio.wait_for(first.settled.wait(), timeout=5)
        pool.render_fps = 20000.0

        second = await coordinator.start(make_spec(tmp_path, 60))
        await asyncio.wait_for(second.settled.wait(), timeout=10)

        assert second.id != first.id
        assert second.state is SessionState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_status_reports_last_session(self, make_coordinator, laptop_profile, tmp_path):
        coordinator, _ = make_coordinator(laptop_profile)
        assert coordinator.status() == {"in_progress": False, "session": None}

        session = await coordinator.export(make_spec(tmp_path, 60))
        status = coordinator.status()

        assert status["in_progress"] is False
        assert status["session"]["id"] == session.id
        assert status["session"]["state"] == "succeeded"
        assert status["session"]["progress"]["progress"] == 100
        assert status["session"]["profile"]["cpu_cores"] == 4

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_session(self, make_coordinator, laptop_profile, settings, tmp_path):
        pool = FakePool(settings, render_fps=200.0)
        coordinator, _ = make_coordinator(laptop_profile, pool=pool)
        session = await coordinator.start(make_spec(tmp_path, 3000))
        await wait_for(lambda: session.state is SessionState.RENDERING)

        await asyncio.wait_for(coordinator.shutdown(), timeout=10)

        assert session.state is SessionState.CANCELLED
        assert coordinator.progress.closed is True


class TestHelpers:
    """Tests for coordinator helper functions."""

    def test_filter_metadata_for_chunk(self):
        chunk = ChunkPlanEntry(index=1, start_frame=300, end_frame=600, start_time_ms=10_000, end_time_ms=20_000)
        metadata = {
            "captions": [{"time_ms": 9_999}, {"time_ms": 10_000}, {"time_ms": 19_999}, {"time_ms": 20_000}],
            "title": "demo",
            "tags": ["a", "b"],
        }

        filtered = filter_metadata_for_chunk(metadata, chunk)

        assert filtered["captions"] == [{"time_ms": 10_000}, {"time_ms": 19_999}]
        assert filtered["title"] == "demo"
        assert filtered["tags"] == ["a", "b"]

    @pytest.mark.parametrize(
        "overrides,expected",
        [
            ({}, False),
            ({"source_codec": "HEVC"}, True),
            ({"source_codec": "h264"}, False),
            ({"source_path": "/media/clip.MOV"}, True),
            ({"source_path": "/media/clip.mp4"}, False),
            ({"force_single_threaded": True}, True),
        ],
    )
    def test_requires_single_threaded_decode(self, tmp_path, overrides, expected):
        assert requires_single_threaded_decode(make_spec(tmp_path, 30, **overrides)) is expected
