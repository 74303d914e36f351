"""Shared fixtures: stand-in ffprobe/ffmpeg executables.

The fake tools decide what to do from the first bytes of the input file:

    AV...    video + audio, 60s        VIDEO... video only
    AUDIO... audio only                NONE...  no audio/video streams
    BAD...   ffprobe fails             FAIL...  ffmpeg fails
    HANG...  ffmpeg never finishes
"""

from __future__ import annotations

import stat
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest


FAKE_FFPROBE = r'''
import json, sys

path = sys.argv[-1]
with open(path, "rb") as f:
    head = f.read(16)
if head.startswith(b"BAD"):
    print("Invalid data found when processing input", file=sys.stderr)
    sys.exit(1)
video = {"index": 0, "codec_type": "video", "codec_name": "h264", "disposition": {"attached_pic": 0}}
audio = {"index": 1, "codec_type": "audio", "codec_name": "aac"}
if head.startswith(b"NONE"):
    streams = [{"index": 0, "codec_type": "data", "codec_name": "bin_data"}]
elif head.startswith(b"VIDEO"):
    streams = [video]
elif head.startswith(b"AUDIO"):
    streams = [dict(audio, index=0)]
else:
    streams = [video, audio]
print(json.dumps({"streams": streams, "format": {"duration": "60.000000"}}))
'''

FAKE_FFMPEG = r'''
import json, os, sys, time

args = sys.argv[1:]
src = args[args.index("-i") + 1]
manifest = args[-1]
out_dir = os.path.dirname(manifest)
with open(os.path.join(out_dir, "args.json"), "w") as f:
    json.dump(args, f)
with open(src, "rb") as f:
    head = f.read(16)
if head.startswith(b"HANG"):
    time.sleep(60)
    sys.exit(0)
sys.stderr.write("Input #0, matroska,webm, from 'input':\n")
for t in ("00:00:15.00", "00:00:45.00", "00:00:30.00", "N/A", "00:00"):
    sys.stderr.write(f"frame=  10 fps=0.0 q=0.0 size=       0kB time={t} bitrate=N/A speed=1x\r")
    sys.stderr.flush()
if head.startswith(b"FAIL"):
    sys.stderr.write("\n[libvpx-vp9 @ 0x1] Error while opening encoder\n")
    sys.stderr.write("Conversion failed!\n")
    sys.exit(1)
with open(manifest, "w") as f:
    f.write('<?xml version="1.0"?><MPD type="dynamic"></MPD>')
with open(os.path.join(out_dir, "init-stream0.webm"), "wb") as f:
    f.write(b"\x1aE\xdf\xa3")
sys.stderr.write("\n")
'''


@dataclass
class FakeTools:
    ffprobe: str
    ffmpeg: str
    uploads: Path
    dash: Path

    def upload(self, content: bytes, name: str = "clip.mp4") -> str:
        path = self.uploads / name
        path.write_bytes(content)
        return str(path)


def _write_script(path: Path, body: str) -> str:
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_tools(tmp_path: Path) -> FakeTools:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    return FakeTools(
        ffprobe=_write_script(bin_dir / "ffprobe", FAKE_FFPROBE),
        ffmpeg=_write_script(bin_dir / "ffmpeg", FAKE_FFMPEG),
        uploads=uploads,
        dash=tmp_path / "dash",
    )
