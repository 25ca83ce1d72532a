"""Stages that talk to the destination: hash comparison and data upload."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from blocksync.channel import Channel, ChannelClosed
from blocksync.chunks import CompressedChunk, HashedChunk, Held
from blocksync.config import PipelineConfig
from blocksync.messages import (
    BlockHash,
    ChangedBlock,
    CompressionAlgo,
    HashRequest,
    HashResponse,
    Stream,
    WriteRequest,
    WriteResponse,
)
from blocksync.semaphore import MemSemaphore, WindowSemaphore
from blocksync.stages import _run_all

HashStream = Stream[HashRequest, HashResponse]
WriteStream = Stream[WriteRequest, WriteResponse]
StreamFactory = Callable[[], Any | Awaitable[Any]]


async def _open_stream(factory: StreamFactory, what: str) -> Any:
    try:
        stream = factory()
        if inspect.isawaitable(stream):
            stream = await stream
    except Exception as exc:
        exc.add_note(f"open {what} stream")
        raise
    return stream


async def _close_send(stream: Any) -> None:
    with contextlib.suppress(Exception):
        await stream.close_send()


async def stage_send_hash(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    new_hash_stream: StreamFactory,
    hashed_ch: Channel[HashedChunk],
    mismatch_ch: Channel[HashedChunk],
) -> None:
    """Batch chunk hashes, ask the destination which differ, forward only those."""
    batch_ch: Channel[list[HashedChunk]] = Channel(cfg.hash_send_workers * 2)

    async def batcher() -> None:
        try:
            await _hash_batcher(cfg, win, hashed_ch, batch_ch)
        finally:
            batch_ch.close()

    async def sender() -> None:
        stream = await _open_stream(new_hash_stream, "hash")
        await _hash_sender(mem_raw, win, stream, batch_ch, mismatch_ch)

    await _run_all(batcher(), *(sender() for _ in range(cfg.hash_send_workers)))


async def _hash_batcher(
    cfg: PipelineConfig,
    win: WindowSemaphore,
    hashed_ch: Channel[HashedChunk],
    batch_ch: Channel[list[HashedChunk]],
) -> None:
    batch: list[HashedChunk] = []
    pressure = win.pressure_signal(cfg.win_pressure_thresh)

    async def flush() -> None:
        nonlocal batch
        if not batch:
            return
        ready, batch = batch, []
        await batch_ch.send(ready)

    recv_task: asyncio.Future | None = None
    pressure_task: asyncio.Future | None = None
    try:
        while True:
            if recv_task is None:
                recv_task = asyncio.ensure_future(hashed_ch.receive())
            if pressure_task is None:
                pressure_task = asyncio.ensure_future(pressure.wait())
            done, _ = await asyncio.wait(
                {recv_task, pressure_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if recv_task in done:
                finished, recv_task = recv_task, None
                try:
                    chunk = finished.result()
                except ChannelClosed:
                    await flush()
                    return
                batch.append(chunk)
                if len(batch) >= cfg.hash_batch_max_count:
                    await flush()
            if pressure_task in done:
                pressure_task = None
                await flush()
                pressure = win.pressure_signal(cfg.win_pressure_thresh)
    finally:
        for task in (recv_task, pressure_task):
            if task is None:
                continue
            if task.done():
                if not task.cancelled():
                    task.exception()
            else:
                task.cancel()


async def _hash_sender(
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    stream: HashStream,
    batch_ch: Channel[list[HashedChunk]],
    mismatch_ch: Channel[HashedChunk],
) -> None:
    try:
        async for batch in batch_ch:
            request = HashRequest(
                hashes=[
                    BlockHash(
                        request_id=hc.req_id,
                        file_path=hc.file_path,
                        offset=hc.offset,
                        length=hc.length,
                        sha256=hc.hash,
                        total_size=hc.total_size,
                    )
                    for hc in batch
                ]
            )
            await stream.send(request)
            response = await stream.recv()
            mismatched = set(response.mismatched_ids)

            for index, hc in enumerate(batch):
                if hc.req_id not in mismatched:
                    # Destination already has this block.
                    hc.held.release(mem_raw, win)
                    continue
                try:
                    await mismatch_ch.send(hc)
                except BaseException:
                    for remaining in batch[index:]:
                        remaining.held.release(mem_raw, win)
                    raise
    finally:
        await _close_send(stream)


async def stage_send_data(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    new_stream: StreamFactory,
    in_ch: Channel[CompressedChunk],
) -> None:
    """Send compressed chunks in batches over cfg.data_send_workers streams."""
    await _run_all(
        *(
            _data_send_worker(cfg, mem_raw, win, new_stream, in_ch)
            for _ in range(cfg.data_send_workers)
        )
    )


async def _data_send_worker(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    new_stream: StreamFactory,
    in_ch: Channel[CompressedChunk],
) -> None:
    stream = await _open_stream(new_stream, "sync")
    await _run_all(
        _ack_receiver(win, stream),
        _data_sender(cfg, mem_raw, win, stream, in_ch),
    )


async def _ack_receiver(win: WindowSemaphore, stream: WriteStream) -> None:
    while True:
        try:
            response = await stream.recv()
        except EOFError:
            return
        except Exception as exc:
            exc.add_note("recv sync ack")
            raise
        for req_id in response.acknowledged_ids:
            win.release(req_id)


async def _data_sender(
    cfg: PipelineConfig,
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    stream: WriteStream,
    in_ch: Channel[CompressedChunk],
) -> None:
    blocks: list[ChangedBlock] = []
    pending: list[Held] = []
    accum = 0
    current_path = ""

    async def flush() -> None:
        nonlocal blocks, pending, accum
        if not blocks:
            return
        request = WriteRequest(blocks=blocks)
        sent_helds = pending
        blocks, pending, accum = [], [], 0
        try:
            await stream.send(request)
        except BaseException:
            for held in sent_helds:
                held.release(mem_raw, win)
            raise
        # The window slot stays held until the destination acknowledges.
        for held in sent_helds:
            held.release_mem_only(mem_raw)

    try:
        async for cc in in_ch:
            if cc.file_path != current_path and blocks:
                try:
                    await flush()
                except BaseException:
                    cc.held.release(mem_raw, win)
                    raise
            current_path = cc.file_path

            data = cc.data or b""
            blocks.append(
                ChangedBlock(
                    request_id=cc.req_id,
                    file_path=cc.file_path,
                    total_size=cc.total_size,
                    offset=cc.offset,
                    length=cc.uncompressed_length,
                    is_zero=cc.is_zero,
                    data=data,
                    compression=CompressionAlgo.NONE if cc.is_raw else CompressionAlgo.LZ4,
                )
            )
            pending.append(cc.held)
            accum += len(data)

            if accum >= cfg.data_batch_max_bytes or len(blocks) >= cfg.data_batch_max_count:
                await flush()
        await flush()
    except BaseException:
        for held in pending:
            held.release(mem_raw, win)
        raise
    finally:
        await _close_send(stream)