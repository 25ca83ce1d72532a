"""Destination-side servers that apply changed blocks to a block device."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
from collections.abc import Iterable
from typing import BinaryIO

import lz4.block

from blocksync.messages import (
    ChangedBlock,
    CommitRequest,
    CommitResponse,
    CompressionAlgo,
    DeleteRequest,
    DeleteResponse,
    HashRequest,
    HashResponse,
    Stream,
    WriteRequest,
    WriteResponse,
)

_log = logging.getLogger(__name__)

_SHA256_SIZE = 32


def collect_request_ids(blocks: Iterable[ChangedBlock]) -> list[int]:
    """Request ids of blocks in order; id 0 is valid (it is the first block)."""
    return [block.request_id for block in blocks]


def _sync(file: BinaryIO) -> None:
    file.flush()
    os.fsync(file.fileno())


def _decompress(block: ChangedBlock) -> bytes:
    try:
        data = lz4.block.decompress(block.data, uncompressed_size=block.length)
    except Exception as exc:
        raise ValueError(f"lz4 decompress at offset {block.offset}: {exc}") from exc
    if len(data) != block.length:
        raise ValueError(
            f"lz4 decompressed size mismatch at offset {block.offset}: "
            f"got {len(data)}, expected {block.length}"
        )
    return data


class BlockDataServer:
    """Writes changed blocks to a block device; deletes are no-ops."""

    def __init__(self, device_path: str, logger: logging.Logger | None = None) -> None:
        self.device_path = device_path
        self._log = logger or _log

    async def write(self, stream: Stream[WriteResponse, WriteRequest]) -> None:
        """Apply every WriteRequest from stream, acknowledging each batch's ids.

        The device is opened on the first request and synced and closed at the end.
        """
        file: BinaryIO | None = None
        try:
            while True:
                try:
                    request = await stream.recv()
                except EOFError:
                    break
                if file is None:
                    file = await asyncio.to_thread(self._open)
                await asyncio.to_thread(self.write_blocks, file, request)
                ack_ids = collect_request_ids(request.blocks)
                if ack_ids:
                    await stream.send(WriteResponse(acknowledged_ids=ack_ids))
        except BaseException:
            if file is not None:
                with contextlib.suppress(OSError):
                    _sync(file)
                with contextlib.suppress(OSError):
                    file.close()
            raise
        if file is not None:
            await asyncio.to_thread(self._finish, file)

    def _open(self) -> BinaryIO:
        try:
            return open(self.device_path, "r+b")
        except OSError as exc:
            raise OSError(
                exc.errno, f"failed to open block device {self.device_path}: {exc}"
            ) from exc

    def _finish(self, file: BinaryIO) -> None:
        try:
            _sync(file)
        except OSError as exc:
            with contextlib.suppress(OSError):
                file.close()
            raise OSError(
                exc.errno, f"failed to sync block device {self.device_path}: {exc}"
            ) from exc
        try:
            file.close()
        except OSError as exc:
            raise OSError(
                exc.errno, f"failed to close block device {self.device_path}: {exc}"
            ) from exc

    def write_blocks(self, file: BinaryIO, request: WriteRequest) -> None:
        """Write one batch of changed blocks into the open device file."""
        self._log.info("Writing blocks to device (block_count=%d)", len(request.blocks))

        for index, block in enumerate(request.blocks):
            if block.is_zero:
                payload = bytes(block.length)
                kind = "zeros"
            else:
                payload = block.data
                if block.compression == CompressionAlgo.LZ4:
                    try:
                        payload = _decompress(block)
                    except ValueError:
                        self._log.error(
                            "Failed to decompress LZ4 (offset=%d, block_index=%d)",
                            block.offset, index,
                        )
                        raise
                kind = "data"

            try:
                file.seek(block.offset)
                file.write(payload)
            except OSError as exc:
                self._log.error(
                    "Failed to write %s (offset=%d, length=%d, block_index=%d)",
                    kind, block.offset, len(payload), index,
                )
                raise OSError(
                    exc.errno,
                    f"failed to write {kind} at offset {block.offset}: {exc}",
                ) from exc
            self._log.debug(
                "Wrote %s block (offset=%d, length=%d, compressed=%s)",
                kind, block.offset, len(payload),
                block.compression != CompressionAlgo.NONE,
            )

    async def delete(self, stream: Stream[DeleteResponse, DeleteRequest]) -> None:
        """Answer every DeleteRequest with an empty response until the stream ends."""
        while True:
            try:
                await stream.recv()
            except Exception:
                return
            await stream.send(DeleteResponse())


class BlockCommitServer:
    """Makes written blocks durable by syncing the device on each commit."""

    def __init__(self, device_path: str, logger: logging.Logger | None = None) -> None:
        self.device_path = device_path
        self._log = logger or _log

    async def commit(self, stream: Stream[CommitResponse, CommitRequest]) -> None:
        """Sync the device once per commit entry and reply with the committed paths."""
        while True:
            try:
                request = await stream.recv()
            except EOFError:
                return
            paths = await asyncio.to_thread(self._commit_entries, request)
            await stream.send(CommitResponse(paths=paths))

    def _commit_entries(self, request: CommitRequest) -> list[str]:
        try:
            file = open(self.device_path, "r+b")
        except OSError as exc:
            raise OSError(
                exc.errno,
                f"failed to open block device {self.device_path} for commit: {exc}",
            ) from exc

        paths: list[str] = []
        try:
            for entry in request.entries:
                try:
                    _sync(file)
                except OSError as exc:
                    raise OSError(
                        exc.errno,
                        f"failed to sync block device {self.device_path}: {exc}",
                    ) from exc
                self._log.info("Committed block device writes (path=%s)", entry.path)
                paths.append(entry.path)
        except BaseException:
            with contextlib.suppress(OSError):
                file.close()
            raise

        try:
            file.close()
        except OSError as exc:
            raise OSError(
                exc.errno, f"failed to close block device {self.device_path}: {exc}"
            ) from exc
        return paths


class HashServer:
    """Compares the source's block hashes with the local device contents."""

    def __init__(self, device_path: str, logger: logging.Logger | None = None) -> None:
        self.device_path = device_path
        self._log = logger or _log

    async def compare_hashes(self, stream: Stream[HashResponse, HashRequest]) -> None:
        """For each batch, reply with the ids whose local SHA-256 differs."""
        try:
            file = open(self.device_path, "rb")
        except OSError as exc:
            raise OSError(
                exc.errno, f"failed to open device {self.device_path}: {exc}"
            ) from exc

        with file:
            while True:
                try:
                    request = await stream.recv()
                except EOFError:
                    return
                response = await asyncio.to_thread(self._compare, file, request)
                self._log.debug(
                    "Hash comparison complete (total=%d, mismatched=%d)",
                    len(request.hashes), len(response.mismatched_ids),
                )
                await stream.send(response)

    @staticmethod
    def _compare(file: BinaryIO, request: HashRequest) -> HashResponse:
        response = HashResponse()
        for block_hash in request.hashes:
            try:
                file.seek(block_hash.offset)
                data = file.read(block_hash.length)
            except OSError as exc:
                raise OSError(
                    exc.errno, f"pread at offset {block_hash.offset}: {exc}"
                ) from exc
            local = hashlib.sha256(data).digest()
            if len(block_hash.sha256) != _SHA256_SIZE or local != bytes(block_hash.sha256):
                response.mismatched_ids.append(block_hash.request_id)
        return response