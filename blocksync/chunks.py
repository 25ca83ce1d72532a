"""Chunk records passed between pipeline stages and the resources they hold."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from blocksync.semaphore import MemSemaphore, WindowSemaphore


@dataclass
class Held:
    """Semaphore resources owned by a chunk; every exit path must release them."""

    req_id: int = 0
    mem_raw_n: int = 0
    has_win: bool = False
    has_mem: bool = False

    def release(self, mem_raw: MemSemaphore, win: WindowSemaphore | None) -> None:
        """Free everything held, memory first then the window slot."""
        if self.has_mem:
            mem_raw.release(self.mem_raw_n)
            self.has_mem = False
        if self.has_win and win is not None:
            win.release(self.req_id)
            self.has_win = False

    def release_mem_only(self, mem_raw: MemSemaphore) -> None:
        """Free the raw memory but keep the window slot."""
        if self.has_mem:
            mem_raw.release(self.mem_raw_n)
            self.has_mem = False

    def partial_release_mem_raw(self, mem_raw: MemSemaphore, delta: int) -> None:
        """Return delta bytes of raw memory after the data shrank."""
        mem_raw.partial_release(delta)
        self.mem_raw_n -= delta


@dataclass
class Chunk:
    """A block to transfer, as emitted by the feeder."""

    req_id: int
    file_path: str = ""
    offset: int = 0
    length: int = 0
    total_size: int = 0


@dataclass
class ReadChunk:
    """Raw block data; when is_zero is set, data is None and length is the block size."""

    req_id: int
    file_path: str = ""
    offset: int = 0
    length: int = 0
    data: bytes | None = None
    is_zero: bool = False
    total_size: int = 0
    held: Held = field(default_factory=Held)


@dataclass
class HashedChunk:
    """A read chunk together with its SHA-256 digest."""

    req_id: int
    file_path: str = ""
    offset: int = 0
    length: int = 0
    data: bytes | None = None
    hash: bytes = b""
    is_zero: bool = False
    total_size: int = 0
    held: Held = field(default_factory=Held)


@dataclass
class CompressedChunk:
    """LZ4-compressed (or raw, if incompressible) block data."""

    req_id: int
    file_path: str = ""
    offset: int = 0
    data: bytes | None = None
    hash: bytes = b""
    uncompressed_length: int = 0
    is_raw: bool = False
    is_zero: bool = False
    total_size: int = 0
    held: Held = field(default_factory=Held)


class DataReader(Protocol):
    """Block-level reader; must tolerate concurrent calls."""

    def read_at(self, file_path: str, offset: int, length: int) -> bytes:
        """Read up to length bytes of file_path at offset (path ignored for devices)."""

    def close_file(self, file_path: str) -> None:
        """Release resources held for file_path once it has been committed."""