"""Read, hash and compress stages of the block transfer pipeline."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Coroutine
from typing import Any

import lz4.block

from blocksync.channel import Channel
from blocksync.chunks import (
    Chunk,
    CompressedChunk,
    DataReader,
    HashedChunk,
    Held,
    ReadChunk,
)
from blocksync.config import PipelineConfig
from blocksync.semaphore import MemSemaphore, WindowSemaphore


def _first_error(group: BaseExceptionGroup) -> BaseException:
    first = group.exceptions[0]
    if isinstance(first, BaseExceptionGroup):
        return _first_error(first)
    return first


async def _run_all(*coros: Coroutine[Any, Any, Any]) -> None:
    """Run coroutines concurrently; the first failure cancels the others and is raised."""
    error: BaseException | None = None
    try:
        async with asyncio.TaskGroup() as group:
            for coro in coros:
                group.create_task(coro)
    except BaseExceptionGroup as errors:
        error = _first_error(errors)
    if error is not None:
        raise error


def is_all_zero(data: bytes | bytearray | memoryview) -> bool:
    """True if every byte of data is zero."""
    return bytes(data).count(0) == len(data)


async def stage_read(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    reader: DataReader,
    in_ch: Channel[Chunk],
    read_ch: Channel[ReadChunk],
) -> None:
    """Read chunks with cfg.read_workers workers, short-circuiting all-zero blocks."""
    await _run_all(
        *(
            _read_worker(cfg, mem_raw, win, reader, in_ch, read_ch)
            for _ in range(cfg.read_workers)
        )
    )


async def _read_worker(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    reader: DataReader,
    in_ch: Channel[Chunk],
    read_ch: Channel[ReadChunk],
) -> None:
    async for chunk in in_ch:
        await mem_raw.acquire(cfg.chunk_size)
        try:
            await win.acquire(chunk.req_id)
        except BaseException:
            mem_raw.release(cfg.chunk_size)
            raise

        try:
            data = await asyncio.to_thread(
                reader.read_at, chunk.file_path, chunk.offset, chunk.length
            )
        except BaseException as exc:
            mem_raw.release(cfg.chunk_size)
            win.release(chunk.req_id)
            if isinstance(exc, Exception):
                exc.add_note(f"read chunk {chunk.req_id}")
            raise

        if is_all_zero(data):
            # Zero blocks carry no data; only the window slot stays held.
            mem_raw.release(cfg.chunk_size)
            held = Held(req_id=chunk.req_id, has_win=True)
            out = ReadChunk(
                req_id=chunk.req_id,
                file_path=chunk.file_path,
                offset=chunk.offset,
                length=chunk.length,
                data=None,
                is_zero=True,
                total_size=chunk.total_size,
                held=held,
            )
        else:
            held = Held(
                req_id=chunk.req_id,
                mem_raw_n=cfg.chunk_size,
                has_win=True,
                has_mem=True,
            )
            out = ReadChunk(
                req_id=chunk.req_id,
                file_path=chunk.file_path,
                offset=chunk.offset,
                length=len(data),
                data=bytes(data),
                total_size=chunk.total_size,
                held=held,
            )

        try:
            await read_ch.send(out)
        except BaseException:
            held.release(mem_raw, win)
            raise


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


async def stage_hash(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore | None,
    in_ch: Channel[ReadChunk],
    out_ch: Channel[HashedChunk],
) -> None:
    """Compute the SHA-256 of each read chunk with cfg.hash_workers workers."""
    await _run_all(
        *(_hash_worker(mem_raw, win, in_ch, out_ch) for _ in range(cfg.hash_workers))
    )


async def _hash_worker(
    mem_raw: MemSemaphore,
    win: WindowSemaphore | None,
    in_ch: Channel[ReadChunk],
    out_ch: Channel[HashedChunk],
) -> None:
    async for rc in in_ch:
        try:
            if rc.is_zero:
                payload = bytes(rc.length)
                length = rc.length
            else:
                payload = rc.data or b""
                length = len(payload)
            digest = await asyncio.to_thread(_sha256, payload)
            await out_ch.send(
                HashedChunk(
                    req_id=rc.req_id,
                    file_path=rc.file_path,
                    offset=rc.offset,
                    length=length,
                    data=rc.data,
                    hash=digest,
                    is_zero=rc.is_zero,
                    total_size=rc.total_size,
                    held=rc.held,
                )
            )
        except BaseException:
            rc.held.release(mem_raw, win)
            raise


def _lz4_compress(data: bytes) -> bytes | None:
    """Compress data as a bare LZ4 block, or None if that does not shrink it."""
    try:
        packed = lz4.block.compress(data, store_size=False)
    except Exception:
        return None
    if not packed or len(packed) >= len(data):
        return None
    return packed


async def stage_compress(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore | None,
    in_ch: Channel[HashedChunk],
    out_ch: Channel[CompressedChunk],
) -> None:
    """LZ4-compress chunks with cfg.compress_workers workers."""
    await _run_all(
        *(
            _compress_worker(mem_raw, win, in_ch, out_ch)
            for _ in range(cfg.compress_workers)
        )
    )


async def _compress_worker(
    mem_raw: MemSemaphore,
    win: WindowSemaphore | None,
    in_ch: Channel[HashedChunk],
    out_ch: Channel[CompressedChunk],
) -> None:
    async for hc in in_ch:
        try:
            if hc.is_zero:
                payload: bytes | None = None
                is_raw = True
                uncompressed_length = hc.length
            else:
                data = hc.data or b""
                uncompressed_length = len(data)
                packed = await asyncio.to_thread(_lz4_compress, data)
                if packed is None:
                    payload, is_raw = data, True
                else:
                    payload, is_raw = packed, False
                saved = len(data) - len(payload)
                if saved > 0:
                    hc.held.partial_release_mem_raw(mem_raw, saved)

            await out_ch.send(
                CompressedChunk(
                    req_id=hc.req_id,
                    file_path=hc.file_path,
                    offset=hc.offset,
                    data=payload,
                    hash=hc.hash,
                    uncompressed_length=uncompressed_length,
                    is_raw=is_raw,
                    is_zero=hc.is_zero,
                    total_size=hc.total_size,
                    held=hc.held,
                )
            )
        except BaseException:
            hc.held.release(mem_raw, win)
            raise