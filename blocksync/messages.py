"""Messages exchanged with the destination and the stream interface carrying them."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Protocol, TypeVar


class CompressionAlgo(enum.IntEnum):
    """How the data of a changed block is encoded."""

    NONE = 0
    LZ4 = 1


@dataclass(slots=True)
class ChangedBlock:
    """One block of data to write at the destination."""

    request_id: int = 0
    file_path: str = ""
    total_size: int = 0
    offset: int = 0
    length: int = 0
    is_zero: bool = False
    data: bytes = b""
    compression: CompressionAlgo = CompressionAlgo.NONE


@dataclass(slots=True)
class WriteRequest:
    blocks: list[ChangedBlock] = field(default_factory=list)


@dataclass(slots=True)
class WriteResponse:
    acknowledged_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class BlockHash:
    """SHA-256 of one block as seen by the source."""

    request_id: int = 0
    file_path: str = ""
    offset: int = 0
    length: int = 0
    sha256: bytes = b""
    total_size: int = 0


@dataclass(slots=True)
class HashRequest:
    hashes: list[BlockHash] = field(default_factory=list)


@dataclass(slots=True)
class HashResponse:
    mismatched_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class CommitEntry:
    path: str = ""
    total_size: int = 0


@dataclass(slots=True)
class CommitRequest:
    entries: list[CommitEntry] = field(default_factory=list)


@dataclass(slots=True)
class CommitResponse:
    paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DeleteRequest:
    pass


@dataclass(slots=True)
class DeleteResponse:
    pass


_SendT_contra = TypeVar("_SendT_contra", contravariant=True)
_RecvT_co = TypeVar("_RecvT_co", covariant=True)


class Stream(Protocol[_SendT_contra, _RecvT_co]):
    """One side of a bidirectional message stream."""

    async def send(self, message: _SendT_contra) -> None:
        """Send one message to the peer."""

    async def recv(self) -> _RecvT_co:
        """Receive the next message; raise EOFError once the peer has finished."""

    async def close_send(self) -> None:
        """Signal that no more messages will be sent."""