"""Combine per-chunk videos into the final output.

Chunks are joined with ffmpeg's concat demuxer and stream copy. A concat that
exits cleanly but leaves a suspiciously small file gets one re-encode
attempt. The combiner owns the chunk files it is handed: they are deleted on
success and on failure, together with the concat list.
"""

import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence
from uuid import uuid4

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import CombineError, ExportCancelledError
from renderfleet.export.cancellation import CancelToken
from renderfleet.export.models import ChunkResult
from renderfleet.export.command_runner import CommandResult, minimal_env, run_command

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")


def escape_concat_path(path: str) -> str:
    """Escape a path for an ffmpeg concat list entry.

    Control characters are dropped, then backslashes, single quotes and
    percent signs are escaped so a file name cannot break out of the
    ``file '...'`` directive.
    """
    escaped = _CONTROL_CHARS.sub("", path)
    escaped = escaped.replace("\\", "\\\\")
    escaped = escaped.replace("'", "'\\''")
    escaped = escaped.replace("%", "%%")
    return escaped


class Transcoder(Protocol):
    async def run(
        self,
        args: Sequence[str],
        *,
        cancel_token: Optional[CancelToken] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Run the transcoder with ``args``; a non-zero return code is a failure."""
        ...


class FFmpegTranscoder:
    """Runs ffmpeg with a minimal environment."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        args: Sequence[str],
        *,
        cancel_token: Optional[CancelToken] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        cmd = [self.settings.ffmpeg_path, "-hide_banner", *args]
        logger.info(f"[COMBINE] {' '.join(cmd)}")
        try:
            return await run_command(
                cmd,
                cancel_token=cancel_token,
                kill_grace_s=self.settings.combine_kill_grace_s,
                env=minimal_env(),
                cwd=cwd,
            )
        except FileNotFoundError as e:
            raise CombineError(f"ffmpeg not found at '{self.settings.ffmpeg_path}'") from e


@dataclass(frozen=True)
class CombineResult:
    output_path: str
    size_bytes: int
    reencoded: bool


def _file_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"[COMBINE] Failed to remove {path}: {e}")


class ChunkCombiner:
    """Concat + stream copy, with a size sanity check and one re-encode fallback."""

    def __init__(self, transcoder: Optional[Transcoder] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.transcoder = transcoder or FFmpegTranscoder(self.settings)

    def min_reasonable_bytes(self, total_input_bytes: int) -> int:
        s = self.settings
        return max(s.combine_min_output_bytes, math.floor(total_input_bytes * s.combine_min_output_ratio))

    def _write_concat_list(self, paths: list[str]) -> tuple[str, bool]:
        """Write the concat list; returns (list path, needs ``-safe 0``).

        Chunks sharing one directory are listed relative to it, which keeps
        ffmpeg's path safety checks on.
        """
        concat_dir = os.path.dirname(os.path.abspath(paths[0]))
        same_dir = all(os.path.dirname(os.path.abspath(p)) == concat_dir for p in paths)
        list_path = os.path.join(concat_dir, f"concat-{uuid4().hex}.txt")

        lines = []
        for path in paths:
            entry = os.path.relpath(os.path.abspath(path), concat_dir) if same_dir else os.path.abspath(path)
            lines.append(f"file '{escape_concat_path(entry)}'")
        with open(list_path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        return list_path, not same_dir

    def _concat_args(self, list_path: str, unsafe: bool) -> list[str]:
        return ["-f", "concat", *(["-safe", "0"] if unsafe else []), "-i", list_path, "-y"]

    async def combine(
        self,
        chunk_results: Sequence[ChunkResult],
        output_path: str,
        *,
        cancel_token: Optional[CancelToken] = None,
    ) -> CombineResult:
        """Combine successful chunks, in index order, into ``output_path``.

        Raises:
            CombineError: No usable chunks, transcoder failure, or undersized
                output after the re-encode fallback
            ExportCancelledError: If cancelled while combining
        """
        ordered = sorted((r for r in chunk_results if r.success and r.path), key=lambda r: r.index)
        owned_paths = [r.path for r in chunk_results if r.path]
        list_path: Optional[str] = None

        try:
            if not ordered:
                raise CombineError("No chunks to combine", code="NO_CHUNKS_TO_COMBINE")
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            paths = [r.path for r in ordered]
            sizes = [_file_size(p) for p in paths]
            missing = [p for p, size in zip(paths, sizes) if size is None]
            if missing:
                raise CombineError(f"Chunk files missing: {', '.join(missing)}")
            total_input_bytes = sum(size for size in sizes if size is not None)
            min_reasonable = self.min_reasonable_bytes(total_input_bytes)

            list_path, unsafe = self._write_concat_list(paths)
            cwd = os.path.dirname(list_path)
            logger.info(
                f"[COMBINE] Concatenating {len(paths)} chunks ({total_input_bytes / 1024 / 1024:.1f}MB) -> {output_path}"
            )

            result = await self.transcoder.run(
                [*self._concat_args(list_path, unsafe), "-c", "copy", "-movflags", "+faststart", output_path],
                cancel_token=cancel_token,
                cwd=cwd,
            )
            if result.returncode != 0:
                raise CombineError(f"FFmpeg concat failed with code {result.returncode}: {result.stderr[-500:].strip()}")

            output_bytes = _file_size(output_path)
            if output_bytes is not None and output_bytes >= min_reasonable:
                logger.info(f"[COMBINE] Combined {len(paths)} chunks into {output_bytes / 1024 / 1024:.1f}MB")
                return CombineResult(output_path, output_bytes, reencoded=False)

            logger.warning(
                f"[COMBINE] Concat output suspiciously small ({output_bytes} bytes < {min_reasonable}), "
                f"retrying with re-encode"
            )
            s = self.settings
            result = await self.transcoder.run(
                [
                    *self._concat_args(list_path, unsafe),
                    "-c:v", s.combine_fallback_video_codec,
                    "-preset", s.combine_fallback_preset,
                    "-crf", str(s.combine_fallback_crf),
                    "-pix_fmt", "yuv420p",
                    "-c:a", s.combine_fallback_audio_codec,
                    "-b:a", s.combine_fallback_audio_bitrate,
                    "-movflags", "+faststart",
                    output_path,
                ],
                cancel_token=cancel_token,
                cwd=cwd,
            )
            if result.returncode != 0:
                raise CombineError(f"FFmpeg re-encode failed with code {result.returncode}: {result.stderr[-500:].strip()}")

            output_bytes = _file_size(output_path)
            if output_bytes is None or output_bytes < min_reasonable:
                raise CombineError(
                    f"Combined output still undersized after re-encode ({output_bytes} bytes < {min_reasonable})"
                )
            logger.info(f"[COMBINE] Re-encode fallback produced {output_bytes / 1024 / 1024:.1f}MB")
            return CombineResult(output_path, output_bytes, reencoded=True)

        except (CombineError, ExportCancelledError):
            _remove(output_path)
            raise
        finally:
            if list_path is not None:
                _remove(list_path)
            for path in owned_paths:
                _remove(path)
