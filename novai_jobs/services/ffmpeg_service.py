from __future__ import annotations

import asyncio
import json
import shlex
import subprocess
from pathlib import Path
from typing import List, Optional

from novai_jobs.config import settings


class FFmpegError(RuntimeError):
    pass


_HOOK_Y = {
    "top": "50",
    "center": "(h-text_h)/2",
    "bottom": "h-text_h-50",
}


def escape_drawtext(text: str) -> str:
    # drawtext treats \ : ' and % specially
    s = text.replace("\\", "\\\\").replace(":", "\\:").replace("%", "\\%")
    return s.replace("'", "’")


def hook_filter(text: str, position: str = "bottom", duration: Optional[float] = None) -> str:
    y = _HOOK_Y.get(position, _HOOK_Y["bottom"])
    f = (
        f"drawtext=text='{escape_drawtext(text)}':fontsize=48:fontcolor=white"
        f":borderw=2:bordercolor=black:x=(w-text_w)/2:y={y}"
    )
    if duration and duration > 0:
        f += f":enable='between(t,0,{duration:g})'"
    return f


def variant_command(
    *,
    ffmpeg_bin: str,
    video_path: str,
    out_path: str,
    audio_path: Optional[str] = None,
    hook_text: Optional[str] = None,
    hook_position: str = "bottom",
    hook_duration: Optional[float] = None,
) -> List[str]:
    cmd = [ffmpeg_bin, "-y", "-i", video_path]
    if audio_path:
        cmd += ["-i", audio_path]
    if hook_text:
        cmd += ["-vf", hook_filter(hook_text, hook_position, hook_duration)]
    if audio_path:
        # video from the clip, audio from the replacement track
        cmd += ["-map", "0:v", "-map", "1:a", "-shortest"]
    cmd += [
        "-c:v", "libx264",
        "-preset", "fast",
        "-crf", "23",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        out_path,
    ]
    return cmd


class FFmpegService:
    """
    Local ffmpeg/ffprobe runner.

    Inputs and outputs are LOCAL FILE PATHS; callers download and upload.
    Blocking calls run in a worker thread so the event loop keeps serving
    other jobs.
    """

    def __init__(self, ffmpeg_bin: Optional[str] = None, ffprobe_bin: Optional[str] = None, timeout: float = 1800):
        self.ffmpeg = ffmpeg_bin or settings.FFMPEG_BIN
        self.ffprobe = ffprobe_bin or settings.FFPROBE_BIN
        self.timeout = timeout

    def _run(self, cmd: List[str]) -> str:
        try:
            p = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise FFmpegError(f"ffmpeg_not_found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise FFmpegError(f"ffmpeg_timeout after {self.timeout}s") from e
        if p.returncode != 0:
            raise FFmpegError(
                "ffmpeg_failed:"
                + "\nCMD: " + " ".join(shlex.quote(c) for c in cmd)
                + "\nSTDERR:\n" + (p.stderr[-2500:] if p.stderr else "")
            )
        return p.stdout

    async def run(self, cmd: List[str]) -> str:
        return await asyncio.to_thread(self._run, cmd)

    async def probe(self, path: str) -> dict:
        out = await self.run([
            self.ffprobe, "-v", "error",
            "-print_format", "json",
            "-show_streams", "-show_format",
            path,
        ])
        return json.loads(out or "{}")

    async def duration_seconds(self, path: str) -> float:
        info = await self.probe(path)
        try:
            return float((info.get("format") or {}).get("duration") or 0.0)
        except (TypeError, ValueError):
            return 0.0

    async def has_audio(self, path: str) -> bool:
        info = await self.probe(path)
        return any(s.get("codec_type") == "audio" for s in info.get("streams") or [])

    async def extract_first_frame(self, video_path: str, out_path: str) -> str:
        await self.run([self.ffmpeg, "-y", "-i", video_path, "-vframes", "1", "-q:v", "2", out_path])
        if not Path(out_path).exists():
            raise FFmpegError("No frame extracted")
        return out_path

    async def extract_frames(self, video_path: str, out_dir: str, fps: float) -> List[str]:
        Path(out_dir).mkdir(parents=True, exist_ok=True)
        await self.run([
            self.ffmpeg, "-y", "-i", video_path,
            "-vf", f"fps={fps:g}", "-vsync", "vfr",
            str(Path(out_dir) / "frame_%05d.png"),
        ])
        return sorted(str(p) for p in Path(out_dir).glob("frame_*.png"))

    async def assemble_frames(
        self,
        frames_dir: str,
        fps: float,
        out_path: str,
        audio_path: Optional[str] = None,
    ) -> str:
        cmd = [self.ffmpeg, "-y", "-framerate", f"{fps:g}", "-i", str(Path(frames_dir) / "frame_%05d.png")]
        if audio_path:
            cmd += ["-i", audio_path, "-c:a", "aac", "-b:a", "128k", "-map", "0:v:0", "-map", "1:a:0", "-shortest"]
        cmd += ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-crf", "23", "-preset", "medium", out_path]
        await self.run(cmd)
        return out_path

    async def merge_audio(self, video_path: str, audio_source_path: str, out_path: str) -> str:
        await self.run([
            self.ffmpeg, "-y",
            "-i", video_path, "-i", audio_source_path,
            "-map", "0:v:0", "-map", "1:a:0",
            "-c:v", "copy", "-c:a", "aac", "-b:a", "128k",
            "-shortest",
            out_path,
        ])
        return out_path

    async def render_variant(
        self,
        video_path: str,
        out_path: str,
        *,
        audio_path: Optional[str] = None,
        hook_text: Optional[str] = None,
        hook_position: str = "bottom",
        hook_duration: Optional[float] = None,
    ) -> str:
        await self.run(variant_command(
            ffmpeg_bin=self.ffmpeg,
            video_path=video_path,
            out_path=out_path,
            audio_path=audio_path,
            hook_text=hook_text,
            hook_position=hook_position,
            hook_duration=hook_duration,
        ))
        if not Path(out_path).exists():
            raise FFmpegError("ffmpeg produced no output file")
        return out_path
