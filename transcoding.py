"""DASH transcoding with ffmpeg: probing, directive building, progress parsing."""

from __future__ import annotations

import json
import logging
import math
import pathlib
import re
import subprocess
from collections.abc import Iterable
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Any


log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.mpd"

_PROBE_TIMEOUT_SEC = 30

# Adaptation set ids are part of the manifest contract with players
_VIDEO_SET_ID = 0
_AUDIO_SET_ID = 1

_TIME_MARKER_RE = re.compile(r"(?:^|\s)(?:out_)?time=\s*(\S+)")
_PERCENT_MARKER_RE = re.compile(r"(?:^|\s)percent=\s*([0-9.]+)%?(?:\s|$)")


class ProbeError(Exception):
    """Raised when ffprobe cannot read an input file."""


class NoMediaStreamsError(Exception):
    """Raised when an input carries neither audio nor video."""


@dataclass(slots=True, frozen=True)
class StreamInfo:
    index: int
    codec_type: str
    codec_name: str = ""
    attached_pic: bool = False


@dataclass(slots=True, frozen=True)
class MediaInfo:
    streams: tuple[StreamInfo, ...]
    duration: float | None = None


@dataclass(slots=True, frozen=True)
class StreamClassification:
    has_video: bool
    has_audio: bool
    duration: float | None = None


@dataclass(slots=True, frozen=True)
class DashPolicy:
    """Fixed encoding policy for DASH output."""

    segment_duration: int = 4
    window_size: int = 5
    extra_window_size: int = 5
    video_codec: str = "libvpx-vp9"
    crf: int = 30
    height: int = 720
    gop_size: int = 240
    tile_columns: int = 4
    threads: int = 8
    audio_codec: str = "libopus"
    audio_bitrate: str = "96k"
    audio_sample_rate: int = 48_000  # Opus only accepts a few native rates
    audio_channels: int = 2
    manifest_format: str = "dash"
    segment_type: str = "webm"


@dataclass(slots=True, frozen=True)
class Directive:
    flag: str
    value: str | None = None


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    timemark: str | None = None
    percent: float | None = None


# =============================================================================
# Prober
# =============================================================================


def _parse_duration(fmt: dict[str, Any]) -> float | None:
    raw = fmt.get("duration")
    if raw is None:
        return None
    with suppress(ValueError, TypeError):
        duration = float(raw)
        if math.isfinite(duration) and duration > 0:
            return duration
    return None


def parse_probe_output(data: dict[str, Any]) -> MediaInfo:
    """Convert ffprobe's JSON document into a MediaInfo."""
    streams = []
    for stream in data.get("streams") or []:
        disposition = stream.get("disposition") or {}
        streams.append(
            StreamInfo(
                index=int(stream.get("index", len(streams))),
                codec_type=stream.get("codec_type", ""),
                codec_name=(stream.get("codec_name") or "").lower(),
                attached_pic=bool(disposition.get("attached_pic")),
            )
        )
    return MediaInfo(streams=tuple(streams), duration=_parse_duration(data.get("format") or {}))


def probe_media(
    path: str,
    ffprobe_path: str = "ffprobe",
    timeout: float = _PROBE_TIMEOUT_SEC,
) -> MediaInfo:
    """Probe a local media file. Raises ProbeError on failure."""
    cmd = [
        ffprobe_path,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        path,
    ]
    log.info("Probing: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ProbeError(f"ffprobe timed out after {timeout:.0f}s") from e
    except FileNotFoundError as e:
        raise ProbeError("ffprobe not found") from e
    if result.returncode != 0:
        detail = (result.stderr or "").strip().splitlines()
        raise ProbeError(detail[-1] if detail else f"ffprobe exited with code {result.returncode}")
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"invalid ffprobe output: {e}") from e
    if not isinstance(data, dict):
        raise ProbeError("invalid ffprobe output")
    return parse_probe_output(data)


# =============================================================================
# Stream classification
# =============================================================================


def classify_streams(media_info: MediaInfo) -> StreamClassification:
    # attached_pic (cover art) streams count as video too
    has_video = any(s.codec_type == "video" for s in media_info.streams)
    has_audio = any(s.codec_type == "audio" for s in media_info.streams)
    if not has_video and not has_audio:
        raise NoMediaStreamsError("Input has no audio or video streams.")
    return StreamClassification(
        has_video=has_video,
        has_audio=has_audio,
        duration=media_info.duration,
    )


# =============================================================================
# Directive building
# =============================================================================


def format_adaptation_sets(classification: StreamClassification) -> str:
    """Serialize the -adaptation_sets value.

    Sets are separated by a single space. ffmpeg reads a comma as a key
    separator inside one set, so a comma-joined list silently collapses the
    sets into one.
    """
    entries = []
    if classification.has_video:
        entries.append(f"id={_VIDEO_SET_ID},streams=v")
    if classification.has_audio:
        entries.append(f"id={_AUDIO_SET_ID},streams=a")
    if not entries:
        raise ValueError("at least one adaptation set is required")
    return " ".join(entries)


def build_scale_filter(height: int) -> str:
    # -2 derives the width from the input aspect ratio, rounded to even
    return f"scale=-2:{height}"


def _video_directives(policy: DashPolicy) -> list[Directive]:
    return [
        Directive("-c:v", policy.video_codec),
        Directive("-vf", build_scale_filter(policy.height)),
        Directive("-crf", str(policy.crf)),
        Directive("-b:v", "0"),  # constant quality mode for VP9
        Directive("-g", str(policy.gop_size)),
        Directive("-tile-columns", str(policy.tile_columns)),
        Directive("-threads", str(policy.threads)),
    ]


def _audio_directives(policy: DashPolicy) -> list[Directive]:
    return [
        Directive("-c:a", policy.audio_codec),
        Directive("-b:a", policy.audio_bitrate),
        Directive("-ar", str(policy.audio_sample_rate)),
        Directive("-ac", str(policy.audio_channels)),
    ]


def build_dash_directives(
    classification: StreamClassification,
    policy: DashPolicy | None = None,
) -> tuple[Directive, ...]:
    policy = policy or DashPolicy()
    directives = [Directive("-map", "0")]
    if classification.has_video:
        directives.extend(_video_directives(policy))
    else:
        directives.append(Directive("-vn"))
    if classification.has_audio:
        directives.extend(_audio_directives(policy))
    else:
        directives.append(Directive("-an"))
    directives.extend(
        [
            Directive("-f", policy.manifest_format),
            Directive("-dash_segment_type", policy.segment_type),
            Directive("-adaptation_sets", format_adaptation_sets(classification)),
            Directive("-seg_duration", str(policy.segment_duration)),
            Directive("-window_size", str(policy.window_size)),
            Directive("-extra_window_size", str(policy.extra_window_size)),
            Directive("-use_timeline", "1"),
            Directive("-use_template", "1"),
        ]
    )
    return tuple(directives)


def directives_to_args(directives: Iterable[Directive]) -> list[str]:
    args: list[str] = []
    for d in directives:
        args.append(d.flag)
        if d.value is not None:
            args.append(d.value)
    return args


def build_dash_ffmpeg_cmd(
    input_path: str,
    output_dir: str | pathlib.Path,
    classification: StreamClassification,
    policy: DashPolicy | None = None,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    manifest_path = pathlib.Path(output_dir) / MANIFEST_NAME
    return [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "info",
        "-i",
        input_path,
        *directives_to_args(build_dash_directives(classification, policy)),
        str(manifest_path),
    ]


# =============================================================================
# Progress interpretation
# =============================================================================


def parse_timemark(timemark: str) -> float | None:
    """Parse HH:MM:SS(.frac) into seconds, or None if malformed."""
    parts = timemark.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = float(parts[2])
    except ValueError:
        return None
    if hours < 0 or minutes < 0 or not math.isfinite(seconds) or seconds < 0:
        return None
    return hours * 3600 + minutes * 60 + seconds


def parse_progress_line(line: str) -> ProgressEvent | None:
    """Pull a time marker and/or a percent token out of one output line.

    ffmpeg's own stats carry only time=; percent= comes from wrappers that
    print a precomputed figure.
    """
    time_match = _TIME_MARKER_RE.search(line)
    percent_match = _PERCENT_MARKER_RE.search(line)
    if not time_match and not percent_match:
        return None
    percent = None
    if percent_match:
        with suppress(ValueError):
            percent = float(percent_match.group(1))
    return ProgressEvent(
        timemark=time_match.group(1) if time_match else None,
        percent=percent,
    )


def _clamp_percent(value: float) -> int:
    return max(0, math.floor(min(100.0, value)))


def interpret_progress(event: ProgressEvent, duration: float | None) -> int | None:
    """Estimate percent complete from one progress event.

    A time marker wins when the total duration is known, otherwise a direct
    percent value is used. Anything else is an uninformative tick (None).
    """
    if event.timemark is not None and duration:
        elapsed = parse_timemark(event.timemark)
        if elapsed is not None:
            return _clamp_percent(100.0 * elapsed / duration)
        if event.percent is None:
            return None
    if event.percent is not None:
        with suppress(ValueError, TypeError, OverflowError):
            value = float(event.percent)
            if math.isfinite(value):
                return _clamp_percent(value)
    return None


def split_output_lines(buffer: str) -> tuple[list[str], str]:
    """Split ffmpeg output on CR or LF; returns (complete lines, remainder).

    ffmpeg rewrites its stats line in place with carriage returns.
    """
    pieces = re.split(r"[\r\n]", buffer)
    remainder = pieces.pop()
    return [p for p in pieces if p.strip()], remainder


def error_tail(lines: Sequence[str], max_chars: int = 1000) -> str:
    """Return the last stderr lines, truncated to max_chars."""
    text = "\n".join(line for line in lines if line.strip())
    return text[-max_chars:].strip()
