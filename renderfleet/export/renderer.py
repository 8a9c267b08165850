"""Renderer collaborators.

The render engine is external to the export subsystem: given a composition
and an inclusive frame range it produces either a video file or a directory of
frame images, honoring a concurrency bound and a cancel token. Two
implementations ship:

- ``FFmpegRenderer`` renders compositions backed by a source media file or an
  ffmpeg lavfi source.
- ``SyntheticRenderer`` writes placeholder output at a fixed frame rate, for
  dry runs of the scheduling machinery without a render engine.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import RenderError
from renderfleet.export.cancellation import CancelToken
from renderfleet.export.models import EncodeSettings
from renderfleet.export.command_runner import minimal_env, run_command

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.jpg"

# Frames rendered so far within one call
ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class RenderCall:
    """One render invocation."""

    composition: dict[str, Any]
    frame_range: tuple[int, int]  # inclusive
    concurrency: int
    settings: EncodeSettings
    output: str  # output file for media, directory for frames
    input_props: dict[str, Any] = field(default_factory=dict)
    video_cache_size_bytes: int = 512 * 1024 * 1024
    use_gpu: bool = False

    @property
    def frame_count(self) -> int:
        return self.frame_range[1] - self.frame_range[0] + 1


class Renderer(Protocol):
    async def render_media(
        self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback
    ) -> str:
        """Render the frame range to a video file and return its path."""
        ...

    async def render_frames(
        self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback
    ) -> int:
        """Render the frame range as images into ``call.output``; return the frame count."""
        ...

    async def stitch_frames(
        self,
        frames_dir: str,
        first_frame: int,
        output_path: str,
        settings: EncodeSettings,
        cancel_token: CancelToken,
    ) -> str:
        """Encode a directory of rendered frames into a video file."""
        ...


# ============================================================================
# FFmpeg renderer
# ============================================================================


class FFmpegRenderer:
    """Render compositions with ffmpeg.

    The composition names its picture source with either ``input_path`` (a
    media file, seeked to the chunk start) or ``source`` (a lavfi source such
    as ``testsrc2``).
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path

    def _input_args(self, composition: dict[str, Any], settings: EncodeSettings, start_frame: int) -> tuple[list[str], list[str]]:
        """Return (input args, output-side seek args)."""
        start_s = start_frame / settings.fps
        input_path = composition.get("input_path")
        if input_path:
            return ["-ss", f"{start_s:.6f}", "-i", str(input_path)], []
        source = composition.get("source", "testsrc2")
        lavfi = f"{source}=size={settings.width}x{settings.height}:rate={settings.fps}"
        # lavfi inputs cannot seek, so skip ahead on the output side
        seek = ["-ss", f"{start_s:.6f}"] if start_frame > 0 else []
        return ["-f", "lavfi", "-i", lavfi], seek

    def build_media_command(self, call: RenderCall) -> list[str]:
        """Build the ffmpeg command for one chunk without executing it."""
        s = call.settings
        start_frame = call.frame_range[0]
        input_args, seek_args = self._input_args(call.composition, s, start_frame)
        has_audio = bool(call.composition.get("input_path")) and call.composition.get("has_audio", True)

        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",
            *input_args,
            *seek_args,
            "-map", "0:v:0",
        ]
        if has_audio:
            cmd += ["-map", "0:a?"]
        cmd += [
            "-frames:v", str(call.frame_count),
            "-t", f"{call.frame_count / s.fps:.6f}",
            "-vf", f"scale={s.width}:{s.height},fps={s.fps}",
            "-c:v", "libx264",
            "-preset", s.x264_preset,
            "-b:v", s.video_bitrate,
            "-pix_fmt", "yuv420p",
            "-threads", str(max(1, call.concurrency)),
        ]
        if has_audio:
            cmd += ["-c:a", "aac", "-b:a", "160k"]
        else:
            cmd += ["-an"]
        cmd += ["-progress", "pipe:1", "-nostats", call.output]
        return cmd

    def build_frames_command(self, call: RenderCall) -> list[str]:
        s = call.settings
        start_frame = call.frame_range[0]
        input_args, seek_args = self._input_args(call.composition, s, start_frame)
        # mjpeg qscale: 2 (best) .. 31 (worst)
        qscale = max(2, min(31, round(31 - s.jpeg_quality / 100 * 29)))
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",
            *input_args,
            *seek_args,
            "-map", "0:v:0",
            "-frames:v", str(call.frame_count),
            "-vf", f"scale={s.width}:{s.height},fps={s.fps}",
            "-q:v", str(qscale),
            "-threads", str(max(1, call.concurrency)),
            "-start_number", str(start_frame),
            "-progress", "pipe:1",
            "-nostats",
            os.path.join(call.output, FRAME_PATTERN),
        ]

    def build_stitch_command(
        self, frames_dir: str, first_frame: int, output_path: str, settings: EncodeSettings
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-framerate", str(settings.fps),
            "-start_number", str(first_frame),
            "-i", os.path.join(frames_dir, FRAME_PATTERN),
            "-c:v", "libx264",
            "-preset", settings.x264_preset,
            "-b:v", settings.video_bitrate,
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            output_path,
        ]

    async def _run(self, cmd: list[str], cancel_token: CancelToken, on_progress: Optional[ProgressCallback]) -> None:
        def on_line(line: str) -> None:
            if on_progress is not None and line.startswith("frame="):
                try:
                    on_progress(int(line.split("=", 1)[1]))
                except ValueError:
                    pass

        try:
            result = await run_command(
                cmd,
                cancel_token=cancel_token,
                kill_grace_s=self.settings.combine_kill_grace_s,
                on_stdout_line=on_line,
                env=minimal_env(),
            )
        except FileNotFoundError as e:
            raise RenderError(f"ffmpeg not found at '{self.ffmpeg_path}'") from e
        if result.returncode != 0:
            logger.error(f"[RENDER] ffmpeg failed ({result.returncode}): {result.stderr[-2000:]}")
            raise RenderError(f"Render failed (ffmpeg exit {result.returncode}): {result.stderr[-500:].strip()}")

    async def render_media(self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback) -> str:
        await self._run(self.build_media_command(call), cancel_token, on_progress)
        if not os.path.exists(call.output):
            raise RenderError(f"Renderer produced no output for frames {call.frame_range}")
        return call.output

    async def render_frames(self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback) -> int:
        os.makedirs(call.output, exist_ok=True)
        await self._run(self.build_frames_command(call), cancel_token, on_progress)
        last_frame = os.path.join(call.output, FRAME_PATTERN % call.frame_range[1])
        if not os.path.exists(last_frame):
            raise RenderError(f"Renderer stopped before frame {call.frame_range[1]}")
        return call.frame_count

    async def stitch_frames(
        self,
        frames_dir: str,
        first_frame: int,
        output_path: str,
        settings: EncodeSettings,
        cancel_token: CancelToken,
    ) -> str:
        await self._run(self.build_stitch_command(frames_dir, first_frame, output_path, settings), cancel_token, None)
        return output_path


# ============================================================================
# Synthetic renderer
# ============================================================================


class SyntheticRenderer:
    """Placeholder renderer that paces itself at ``fps`` frames per second per slot.

    Output files contain ``bytes_per_frame`` bytes per frame. They are not
    playable video.
    """

    def __init__(self, fps: float = 240.0, bytes_per_frame: int = 1024):
        self.fps = fps
        self.bytes_per_frame = bytes_per_frame

    async def _pace(self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback) -> None:
        step = max(1, call.concurrency)
        rendered = 0
        while rendered < call.frame_count:
            cancel_token.raise_if_cancelled()
            batch = min(step, call.frame_count - rendered)
            await asyncio.sleep(batch / (self.fps * step))
            rendered += batch
            on_progress(rendered)
        cancel_token.raise_if_cancelled()

    async def render_media(self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback) -> str:
        await self._pace(call, cancel_token, on_progress)
        with open(call.output, "wb") as f:
            f.write(b"\0" * (call.frame_count * self.bytes_per_frame))
        return call.output

    async def render_frames(self, call: RenderCall, cancel_token: CancelToken, on_progress: ProgressCallback) -> int:
        os.makedirs(call.output, exist_ok=True)
        await self._pace(call, cancel_token, on_progress)
        for frame in range(call.frame_range[0], call.frame_range[1] + 1):
            with open(os.path.join(call.output, FRAME_PATTERN % frame), "wb") as f:
                f.write(b"\0" * self.bytes_per_frame)
        return call.frame_count

    async def stitch_frames(
        self,
        frames_dir: str,
        first_frame: int,
        output_path: str,
        settings: EncodeSettings,
        cancel_token: CancelToken,
    ) -> str:
        cancel_token.raise_if_cancelled()
        frames = sorted(name for name in os.listdir(frames_dir) if name.startswith("frame_"))
        with open(output_path, "wb") as out:
            for name in frames:
                with open(os.path.join(frames_dir, name), "rb") as f:
                    out.write(f.read())
        return output_path


def create_renderer(settings: Optional[Settings] = None) -> Renderer:
    """Build the renderer selected by ``settings.worker_renderer``."""
    settings = settings or get_settings()
    if settings.worker_renderer == "synthetic":
        return SyntheticRenderer(fps=settings.synthetic_render_fps)
    return FFmpegRenderer(settings)
