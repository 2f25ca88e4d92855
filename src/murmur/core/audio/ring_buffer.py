"""
Fixed-capacity audio store between the PortAudio callback and the worker.

One producer (the hardware callback) and one consumer (the transcription
worker). The lock only guards index bookkeeping and the copy, so the
callback never waits on inference work.
"""

import threading
from enum import Enum

import numpy as np


class OverflowPolicy(str, Enum):
    KEEP_FIRST = "keep-first"
    KEEP_LATEST = "keep-latest"


class RingBuffer:
    def __init__(
        self,
        capacity: int,
        channels: int = 1,
        policy: OverflowPolicy = OverflowPolicy.KEEP_FIRST,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if channels <= 0:
            raise ValueError("channels must be positive")

        self._capacity = capacity
        self._channels = channels
        self._policy = OverflowPolicy(policy)
        self._data = np.zeros((capacity, channels), dtype=np.float32)
        self._lock = threading.Lock()

        # Absolute frame counters; position in storage is counter % capacity.
        self._write_pos = 0
        self._read_pos = 0
        self._dropped = 0
        self._overflowed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def channels(self) -> int:
        return self._channels

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def available(self) -> int:
        with self._lock:
            return self._write_pos - self._read_pos

    @property
    def total_written(self) -> int:
        """Frames accepted since creation, including ones later evicted."""
        return self._write_pos

    @property
    def dropped_frames(self) -> int:
        return self._dropped

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    @property
    def reached_capacity(self) -> bool:
        return self._overflowed or self._write_pos >= self._capacity

    def write(self, block: np.ndarray) -> int:
        """Store a block of frames, returning how many were accepted."""
        frames = self._as_frames(block)
        count = frames.shape[0]
        if count == 0:
            return 0

        with self._lock:
            free = self._capacity - (self._write_pos - self._read_pos)
            if count > free:
                self._overflowed = True
                if self._policy is OverflowPolicy.KEEP_FIRST:
                    self._dropped += count - free
                    frames = frames[:free]
                    count = free
                else:
                    if count > self._capacity:
                        self._dropped += count - self._capacity
                        frames = frames[-self._capacity :]
                        count = self._capacity
                    evicted = max(0, count - free)
                    self._read_pos += evicted
                    self._dropped += evicted

            if count == 0:
                return 0

            start = self._write_pos % self._capacity
            first = min(count, self._capacity - start)
            self._data[start : start + first] = frames[:first]
            if count > first:
                self._data[: count - first] = frames[first:]
            self._write_pos += count
            return count

    def read(self, max_frames: int = 0) -> np.ndarray:
        """Remove and return up to ``max_frames`` frames (all when 0)."""
        with self._lock:
            available = self._write_pos - self._read_pos
            count = available if max_frames <= 0 else min(max_frames, available)
            out = np.empty((count, self._channels), dtype=np.float32)
            if count:
                start = self._read_pos % self._capacity
                first = min(count, self._capacity - start)
                out[:first] = self._data[start : start + first]
                if count > first:
                    out[first:] = self._data[: count - first]
                self._read_pos += count
            return out

    def clear(self) -> None:
        with self._lock:
            self._read_pos = self._write_pos

    def _as_frames(self, block: np.ndarray) -> np.ndarray:
        frames = np.asarray(block, dtype=np.float32)
        if frames.ndim == 1:
            frames = frames.reshape(-1, 1)
        if frames.shape[1] != self._channels:
            raise ValueError(
                f"Expected {self._channels} channel(s), got {frames.shape[1]}"
            )
        return frames
