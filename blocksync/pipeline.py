"""The concurrent transfer pipeline: feed, read, hash, compare, compress, send."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from blocksync.channel import Channel
from blocksync.chunks import Chunk, CompressedChunk, DataReader, HashedChunk, ReadChunk
from blocksync.config import PipelineConfig
from blocksync.semaphore import MemSemaphore, WindowSemaphore
from blocksync.sending import StreamFactory, stage_send_data, stage_send_hash
from blocksync.stages import _run_all, stage_compress, stage_hash, stage_read


@dataclass
class ChangeBlock:
    """One changed region reported by a block iterator."""

    file_path: str = ""
    offset: int = 0
    length: int = 0
    req_id: int = 0
    total_size: int = 0


class BlockIterator(Protocol):
    """Source of changed blocks."""

    def next(self) -> ChangeBlock | None:
        """Return the next changed block, or None when exhausted."""

    def close(self) -> None:
        """Release the iterator's resources."""


async def _closing(ch: Channel, coro: Coroutine[Any, Any, Any]) -> None:
    try:
        await coro
    finally:
        ch.close()


async def _feed(iterator: BlockIterator, chunk_ch: Channel[Chunk]) -> None:
    while (block := await asyncio.to_thread(iterator.next)) is not None:
        await chunk_ch.send(
            Chunk(
                req_id=block.req_id,
                file_path=block.file_path,
                offset=block.offset,
                length=block.length,
                total_size=block.total_size,
            )
        )


async def _forward_read_to_mismatch(
    mem_raw: MemSemaphore,
    win: WindowSemaphore,
    read_ch: Channel[ReadChunk],
    mismatch_ch: Channel[HashedChunk],
) -> None:
    """Treat every block as a mismatch when hash comparison is disabled."""
    async for rc in read_ch:
        length = rc.length if rc.is_zero else len(rc.data or b"")
        try:
            await mismatch_ch.send(
                HashedChunk(
                    req_id=rc.req_id,
                    file_path=rc.file_path,
                    offset=rc.offset,
                    length=length,
                    data=rc.data,
                    is_zero=rc.is_zero,
                    total_size=rc.total_size,
                    held=rc.held,
                )
            )
        except BaseException:
            rc.held.release(mem_raw, win)
            raise


class Pipeline:
    """Runs the staged block transfer with a private copy of its configuration."""

    def __init__(self, cfg: PipelineConfig) -> None:
        self._cfg = dataclasses.replace(cfg)

    @property
    def config(self) -> PipelineConfig:
        return self._cfg

    async def run(
        self,
        iterator: BlockIterator,
        reader: DataReader,
        new_stream: StreamFactory,
        new_hash_stream: StreamFactory | None,
        win: WindowSemaphore,
    ) -> None:
        """Transfer every block from iterator; new_hash_stream None skips dedup."""
        cfg = self._cfg
        cfg.set_defaults()
        cfg.validate()

        mem_raw = MemSemaphore(cfg.max_raw_memory_bytes)

        chunk_ch: Channel[Chunk] = Channel(cfg.read_chan_buf)
        read_ch: Channel[ReadChunk] = Channel(cfg.read_chan_buf)
        mismatch_ch: Channel[HashedChunk] = Channel(cfg.mismatch_chan_buf)
        compressed_ch: Channel[CompressedChunk] = Channel(cfg.compress_chan_buf)

        jobs: list[Coroutine[Any, Any, Any]] = [
            _closing(chunk_ch, _feed(iterator, chunk_ch)),
            _closing(read_ch, stage_read(cfg, mem_raw, win, reader, chunk_ch, read_ch)),
        ]

        if new_hash_stream is None:
            jobs.append(
                _closing(
                    mismatch_ch,
                    _forward_read_to_mismatch(mem_raw, win, read_ch, mismatch_ch),
                )
            )
        else:
            hashed_ch: Channel[HashedChunk] = Channel(cfg.hash_chan_buf)
            jobs.append(
                _closing(hashed_ch, stage_hash(cfg, mem_raw, win, read_ch, hashed_ch))
            )
            jobs.append(
                _closing(
                    mismatch_ch,
                    stage_send_hash(
                        cfg, mem_raw, win, new_hash_stream, hashed_ch, mismatch_ch
                    ),
                )
            )

        jobs.append(
            _closing(
                compressed_ch,
                stage_compress(cfg, mem_raw, win, mismatch_ch, compressed_ch),
            )
        )
        jobs.append(stage_send_data(cfg, mem_raw, win, new_stream, compressed_ch))

        await _run_all(*jobs)