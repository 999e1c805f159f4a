from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, TextIO

import cv2
import numpy as np

from .buffers import FrameBuffers


@dataclass
class DepthEntry:
    ts: int
    path: str


def parse_timestamp(token: str) -> int:
    """
    "1305031102.175304" -> 1305031102175304.

    The two dot-separated parts are concatenated, not scaled, so the fractional
    part is taken digit-for-digit as written in the manifest.
    """
    parts = token.split(".")
    if len(parts) > 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Malformed timestamp token: {token!r}")
    return int("".join(parts))


class DepthManifest:
    """Streams (timestamp, path) records from a depth association file, one line at a time."""

    def __init__(self, manifest_path: str):
        if not os.path.isfile(manifest_path):
            raise FileNotFoundError(f"Missing depth manifest: {manifest_path}")
        self.path = manifest_path
        self.base = os.path.dirname(manifest_path)
        self.skipped = 0
        self._f: TextIO | None = open(manifest_path, "r", encoding="utf-8")

    def next_entry(self) -> DepthEntry | None:
        if self._f is None:
            return None
        for line in self._f:
            parts = line.split()
            if len(parts) != 2 or parts[0].startswith("#"):
                if parts:
                    self.skipped += 1
                continue
            return DepthEntry(ts=parse_timestamp(parts[0]), path=os.path.join(self.base, parts[1]))
        self.close()
        return None

    def __iter__(self) -> Iterator[DepthEntry]:
        while True:
            e = self.next_entry()
            if e is None:
                return
            yield e

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def __enter__(self) -> "DepthManifest":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def load_depth(path: str, out: np.ndarray, depth_factor: int = 1) -> None:
    """Read a single-channel 16-bit depth image into `out` in place, dividing by depth_factor."""
    raw = cv2.imread(path, cv2.IMREAD_ANYDEPTH)
    if raw is None:
        raise FileNotFoundError(f"Failed to read depth image: {path}")
    if raw.dtype != np.uint16:
        raise ValueError(f"Depth image must be 16-bit, got {raw.dtype}: {path}")
    if raw.shape != out.shape:
        raise ValueError(f"Depth image {path} has shape {raw.shape}, expected {out.shape}")
    if depth_factor == 1:
        np.copyto(out, raw)
    else:
        np.floor_divide(raw, np.uint16(depth_factor), out=out)


class DepthFrameSource:
    """
    Frame source over a depth manifest.

    Frames are written into caller-owned buffers; nothing is allocated per frame.
    """

    def __init__(self, depth_dir: str, *, manifest: str = "depth.txt", depth_factor: int = 1):
        if int(depth_factor) <= 0:
            raise ValueError(f"depth_factor must be positive, got {depth_factor}")
        self.depth_dir = depth_dir
        self.depth_factor = int(depth_factor)
        self.manifest = DepthManifest(os.path.join(depth_dir, manifest))
        self.produced = 0

    def produce_next(self, out: np.ndarray) -> int | None:
        """Load the next frame into `out`; return its timestamp, or None at end of stream."""
        e = self.manifest.next_entry()
        if e is None:
            return None
        load_depth(e.path, out, self.depth_factor)
        self.produced += 1
        return e.ts

    def fill_observation(self, buffers: FrameBuffers) -> bool:
        ts = self.produce_next(buffers.observation)
        if ts is None:
            return False
        buffers.timestamps[buffers.observation_slot] = ts
        return True

    def fill_model(self, buffers: FrameBuffers) -> bool:
        ts = self.produce_next(buffers.model)
        if ts is None:
            return False
        buffers.timestamps[buffers.model_slot] = ts
        return True

    def close(self) -> None:
        self.manifest.close()
