from renderfleet.export.combiner import ChunkCombiner, escape_concat_path
from renderfleet.export.concurrency import AdaptiveConcurrencyController, detect_memory_pressure
from renderfleet.export.coordinator import ExportCoordinator, ExportSession, ExportSpec
from renderfleet.export.models import (
    ChunkPlanEntry,
    ChunkResult,
    ContentMetrics,
    ExportJob,
    MachineProfile,
    WorkerAllocation,
    build_chunk_plan,
)
from renderfleet.export.planner import ExportPlanner
from renderfleet.export.pool import SupervisedWorkerPool
from renderfleet.export.profiler import MachineProfiler
from renderfleet.export.progress import ProgressTracker
from renderfleet.export.worker import RenderWorker

__all__ = [
    "ExportCoordinator",
    "ExportSession",
    "ExportSpec",
    "ExportPlanner",
    "MachineProfiler",
    "SupervisedWorkerPool",
    "RenderWorker",
    "ChunkCombiner",
    "ProgressTracker",
    "AdaptiveConcurrencyController",
    "detect_memory_pressure",
    "escape_concat_path",
    "build_chunk_plan",
    "ChunkPlanEntry",
    "ChunkResult",
    "ContentMetrics",
    "ExportJob",
    "MachineProfile",
    "WorkerAllocation",
]
