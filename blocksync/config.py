"""Tunable parameters of the block transfer pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024
MIN_CHUNK_SIZE = 64 * 1024
MAX_CHUNK_SIZE = 8 * 1024 * 1024
MIN_MAX_WINDOW = 8
MAX_MAX_WINDOW = 4096
MIN_READ_WORKERS = 2
MIN_HASH_SEND_WORKERS = 1
MAX_HASH_SEND_WORKERS = 8
MIN_DATA_SEND_WORKERS = 1
MAX_DATA_SEND_WORKERS = 16
MIN_BATCH_COUNT = 4
MAX_BATCH_COUNT = 256

MIN_WIN_PRESSURE_THRESH = 0.50
MAX_WIN_PRESSURE_THRESH = 0.90


@dataclass
class PipelineConfig:
    """All pipeline settings; a zero value means "use the default"."""

    max_raw_memory_bytes: int = 0
    max_window: int = 0

    read_workers: int = 0
    hash_workers: int = 0
    compress_workers: int = 0
    hash_send_workers: int = 0
    data_send_workers: int = 0

    hash_batch_max_count: int = 0
    hash_batch_max_bytes: int = 0
    data_batch_max_count: int = 0
    data_batch_max_bytes: int = 0

    chunk_size: int = 0
    win_pressure_thresh: float = 0.0

    read_chan_buf: int = 0
    hash_chan_buf: int = 0
    mismatch_chan_buf: int = 0
    compress_chan_buf: int = 0

    def set_defaults(self) -> None:
        """Fill every zero-valued field with its default."""
        if not self.chunk_size:
            self.chunk_size = DEFAULT_CHUNK_SIZE
        if not self.read_workers:
            self.read_workers = 8
        if not self.hash_workers:
            self.hash_workers = max(1, (os.cpu_count() or 1) // 2)
        if not self.compress_workers:
            self.compress_workers = 1
        if not self.hash_send_workers:
            self.hash_send_workers = 2
        if not self.data_send_workers:
            self.data_send_workers = 4
        if not self.max_window:
            self.max_window = 64
        if not self.max_raw_memory_bytes:
            self.max_raw_memory_bytes = 256 * 1024 * 1024
        if not self.win_pressure_thresh:
            self.win_pressure_thresh = 0.75
        if not self.hash_batch_max_count:
            self.hash_batch_max_count = max(MIN_BATCH_COUNT, 16)
        if not self.hash_batch_max_bytes:
            self.hash_batch_max_bytes = self.hash_batch_max_count * 40
        if not self.data_batch_max_count:
            self.data_batch_max_count = 16
        if not self.data_batch_max_bytes:
            self.data_batch_max_bytes = 8 * 1024 * 1024
        if not self.read_chan_buf:
            self.read_chan_buf = self.read_workers
        if not self.hash_chan_buf:
            self.hash_chan_buf = self.hash_workers
        if not self.mismatch_chan_buf:
            self.mismatch_chan_buf = self.hash_workers
        if not self.compress_chan_buf:
            self.compress_chan_buf = self.compress_workers * 2

    def validate(self) -> None:
        """Raise ValueError if any setting is out of its allowed range."""
        if not MIN_CHUNK_SIZE <= self.chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size {self.chunk_size} outside "
                f"[{MIN_CHUNK_SIZE}, {MAX_CHUNK_SIZE}]"
            )
        if self.chunk_size > self.max_raw_memory_bytes:
            raise ValueError(
                f"chunk_size {self.chunk_size} > max_raw_memory_bytes "
                f"{self.max_raw_memory_bytes} (would deadlock)"
            )
        if not MIN_MAX_WINDOW <= self.max_window <= MAX_MAX_WINDOW:
            raise ValueError(
                f"max_window {self.max_window} outside "
                f"[{MIN_MAX_WINDOW}, {MAX_MAX_WINDOW}]"
            )
        if self.read_workers < MIN_READ_WORKERS:
            raise ValueError(f"read_workers {self.read_workers} < {MIN_READ_WORKERS}")
        _check_range("hash_send_workers", self.hash_send_workers,
                     MIN_HASH_SEND_WORKERS, MAX_HASH_SEND_WORKERS)
        _check_range("data_send_workers", self.data_send_workers,
                     MIN_DATA_SEND_WORKERS, MAX_DATA_SEND_WORKERS)
        _check_range("hash_batch_max_count", self.hash_batch_max_count,
                     MIN_BATCH_COUNT, MAX_BATCH_COUNT)
        _check_range("data_batch_max_count", self.data_batch_max_count,
                     MIN_BATCH_COUNT, MAX_BATCH_COUNT)
        if self.hash_workers < 1:
            raise ValueError(f"hash_workers {self.hash_workers} < 1")
        if self.compress_workers < 1:
            raise ValueError(f"compress_workers {self.compress_workers} < 1")
        if not MIN_WIN_PRESSURE_THRESH <= self.win_pressure_thresh <= MAX_WIN_PRESSURE_THRESH:
            raise ValueError(
                f"win_pressure_thresh {self.win_pressure_thresh:.2f} outside "
                f"[{MIN_WIN_PRESSURE_THRESH:.2f}, {MAX_WIN_PRESSURE_THRESH:.2f}]"
            )


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise ValueError(f"{name} {value} outside [{low}, {high}]")