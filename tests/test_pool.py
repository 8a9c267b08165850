"""Tests for the supervised worker pool.

These spawn real worker processes running the synthetic renderer.

Features:
- Spawn on first use, reuse by name
- Export and status requests with timeouts
- Restart after a crash, bounded by the restart budget
- Idempotent teardown
"""

import asyncio
import os
import signal
from pathlib import Path

import pytest

from renderfleet.exceptions import WorkerExitedError, WorkerTimeoutError
from renderfleet.export.ipc import ExportRequest, StatusRequest, new_request_id
from renderfleet.export.models import EncodeSettings, ExportJob
from renderfleet.export.pool import SupervisedWorkerPool, WorkerState

pytestmark = pytest.mark.slow


def make_job(tmp_path: Path, total_frames: int) -> ExportJob:
    return ExportJob(
        job_id=new_request_id(),
        composition={"source": "testsrc2"},
        output_path=str(tmp_path / f"out-{total_frames}.mp4"),
        settings=EncodeSettings(width=640, height=360, fps=30.0),
        total_frames=total_frames,
        temp_dir=str(tmp_path),
    )


async def wait_for(predicate, timeout: float = 30.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class TestSupervisedWorkerPool:
    """Tests for SupervisedWorkerPool with real processes."""

    @pytest.mark.asyncio
    async def test_spawn_status_and_reuse(self, settings):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")

            assert handle.state is WorkerState.IDLE
            assert handle.is_alive
            assert handle.pid is not None

            response = await pool.status(handle)
            assert response.is_exporting is False

            assert await pool.get_or_create("export") is handle
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_export_request(self, settings, tmp_path):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")
            job = make_job(tmp_path, 90)

            response = await pool.request(handle, ExportRequest(new_request_id(), job), timeout_ms=30000)

            assert response.result.success is True
            assert Path(job.output_path).exists()
            assert handle.state is WorkerState.IDLE
            assert handle.progress.latest is not None
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_timeout_rejects_without_killing(self, settings, tmp_path):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")

            with pytest.raises(WorkerTimeoutError):
                await pool.request(handle, ExportRequest(new_request_id(), make_job(tmp_path, 50000)), timeout_ms=100)

            assert handle.is_alive
            assert handle.pending == {}
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self, settings):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")
            process = handle.process

            await pool.destroy("export")
            await pool.destroy("export")
            await pool.destroy("never-existed")

            assert pool.get("export") is None
            assert handle.state is WorkerState.STOPPED
            assert not process.is_alive()
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_request_after_destroy_fails(self, settings):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")
            await pool.destroy("export")

            with pytest.raises(WorkerExitedError):
                await pool.request(handle, StatusRequest(new_request_id()), timeout_ms=1000)
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_crash_triggers_restart(self, settings):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export", max_restarts=1)
            first_pid = handle.pid

            handle.process.kill()
            await wait_for(lambda: handle.restarts == 1 and handle.state is WorkerState.IDLE)

            assert handle.pid != first_pid
            response = await pool.request(handle, StatusRequest(new_request_id()), timeout_ms=5000)
            assert response.is_exporting is False
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_status_while_exporting(self, settings, tmp_path):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export")
            export = asyncio.create_task(
                pool.request(handle, ExportRequest(new_request_id(), make_job(tmp_path, 50000)), timeout_ms=60000)
            )
            await wait_for(lambda: handle.progress.latest is not None)

            response = await pool.status(handle)

            assert response.is_exporting is True
            export.cancel()
            await asyncio.gather(export, return_exceptions=True)
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    @pytest.mark.skipif(not hasattr(signal, "SIGSTOP"), reason="needs SIGSTOP")
    async def test_missed_heartbeats_trigger_restart(self, settings):
        """A worker that stops heartbeating is killed and respawned."""
        settings = settings.model_copy(update={"worker_heartbeat_timeout_s": 1.0})
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export", max_restarts=1)
            frozen_pid = handle.pid

            # Alive but silent
            os.kill(frozen_pid, signal.SIGSTOP)
            await wait_for(lambda: handle.restarts == 1 and handle.state is WorkerState.IDLE)

            assert handle.pid != frozen_pid
            assert handle.is_alive
            response = await pool.status(handle)
            assert response.is_exporting is False
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_restart_budget_exhausted(self, settings):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export", max_restarts=0)

            handle.process.kill()
            await wait_for(lambda: handle.state is WorkerState.FAILED)

            with pytest.raises(WorkerExitedError):
                await pool.request(handle, StatusRequest(new_request_id()), timeout_ms=1000)

            # A later get_or_create replaces the failed worker
            replacement = await pool.get_or_create("export")
            assert replacement is not handle
            assert replacement.state is WorkerState.IDLE
        finally:
            await pool.destroy_all()

    @pytest.mark.asyncio
    async def test_in_flight_request_fails_when_worker_dies(self, settings, tmp_path):
        pool = SupervisedWorkerPool(settings)
        try:
            handle = await pool.get_or_create("export", max_restarts=0)
            request = asyncio.create_task(
                pool.request(handle, ExportRequest(new_request_id(), make_job(tmp_path, 50000)), timeout_ms=60000)
            )
            await asyncio.sleep(0.3)

            handle.process.kill()

            with pytest.raises(WorkerExitedError):
                await asyncio.wait_for(request, timeout=30)
        finally:
            await pool.destroy_all()
