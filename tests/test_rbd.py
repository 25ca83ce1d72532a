import hashlib

import lz4.block
import pytest

from blocksync.messages import (
    BlockHash,
    ChangedBlock,
    CommitEntry,
    CommitRequest,
    CompressionAlgo,
    DeleteRequest,
    DeleteResponse,
    HashRequest,
    WriteRequest,
)
from blocksync.rbd import (
    BlockCommitServer,
    BlockDataServer,
    HashServer,
    collect_request_ids,
)


class ServerStream:
    """Server side of a stream: yields queued requests, records responses."""

    def __init__(self, requests):
        self._requests = list(requests)
        self.sent = []

    async def recv(self):
        if not self._requests:
            raise EOFError
        return self._requests.pop(0)

    async def send(self, message):
        self.sent.append(message)

    async def close_send(self):
        pass


@pytest.fixture
def device(tmp_path):
    path = tmp_path / "device.img"
    path.write_bytes(bytes(1024))
    return path


def test_write_blocks_lz4_compressed(device):
    original = b"hello world data"
    compressed = lz4.block.compress(original, store_size=False)
    assert len(compressed) > 0

    server = BlockDataServer(str(device))
    with open(device, "r+b") as f:
        server.write_blocks(
            f,
            WriteRequest(
                blocks=[
                    ChangedBlock(
                        offset=0,
                        length=len(original),
                        data=compressed,
                        compression=CompressionAlgo.LZ4,
                    )
                ]
            ),
        )
    assert device.read_bytes()[: len(original)] == original


def test_write_blocks_uncompressed(device):
    data = b"raw block data!!"
    server = BlockDataServer(str(device))
    with open(device, "r+b") as f:
        server.write_blocks(
            f, WriteRequest(blocks=[ChangedBlock(offset=0, length=len(data), data=data)])
        )
    assert device.read_bytes()[: len(data)] == data


def test_write_blocks_zero_block_overwrites(tmp_path):
    path = tmp_path / "dev.img"
    path.write_bytes(b"\xff" * 64)
    server = BlockDataServer(str(path))
    with open(path, "r+b") as f:
        server.write_blocks(
            f, WriteRequest(blocks=[ChangedBlock(offset=16, length=16, is_zero=True)])
        )
    content = path.read_bytes()
    assert content[16:32] == bytes(16)
    assert content[:16] == b"\xff" * 16
    assert content[32:] == b"\xff" * 32


def test_write_blocks_lz4_size_mismatch(device):
    original = b"hello world data"
    compressed = lz4.block.compress(original, store_size=False)
    server = BlockDataServer(str(device))
    with open(device, "r+b") as f, pytest.raises(ValueError, match="offset 0"):
        server.write_blocks(
            f,
            WriteRequest(
                blocks=[
                    ChangedBlock(
                        offset=0,
                        length=len(original) + 4,
                        data=compressed,
                        compression=CompressionAlgo.LZ4,
                    )
                ]
            ),
        )


def test_collect_request_ids_keeps_zero_and_order():
    blocks = [ChangedBlock(request_id=i) for i in (0, 3, 1)]
    assert collect_request_ids(blocks) == [0, 3, 1]
    assert collect_request_ids([]) == []


@pytest.mark.asyncio
async def test_write_stream_applies_and_acknowledges(device):
    stream = ServerStream(
        [
            WriteRequest(blocks=[
                ChangedBlock(request_id=0, offset=0, length=4, data=b"abcd"),
                ChangedBlock(request_id=1, offset=8, length=4, data=b"efgh"),
            ]),
            WriteRequest(blocks=[ChangedBlock(request_id=2, offset=100, length=2, data=b"zz")]),
        ]
    )
    server = BlockDataServer(str(device))
    await server.write(stream)

    assert [r.acknowledged_ids for r in stream.sent] == [[0, 1], [2]]
    content = device.read_bytes()
    assert content[0:4] == b"abcd"
    assert content[8:12] == b"efgh"
    assert content[100:102] == b"zz"


@pytest.mark.asyncio
async def test_write_missing_device_raises(tmp_path):
    stream = ServerStream([WriteRequest(blocks=[ChangedBlock(data=b"x", length=1)])])
    server = BlockDataServer(str(tmp_path / "missing"))
    with pytest.raises(OSError, match="failed to open block device"):
        await server.write(stream)


@pytest.mark.asyncio
async def test_delete_replies_once_per_request(device):
    stream = ServerStream([DeleteRequest(), DeleteRequest()])
    await BlockDataServer(str(device)).delete(stream)
    assert stream.sent == [DeleteResponse(), DeleteResponse()]


@pytest.mark.asyncio
async def test_commit_returns_paths(device):
    stream = ServerStream(
        [CommitRequest(entries=[CommitEntry(path="/dev/block", total_size=1024)])]
    )
    await BlockCommitServer(str(device)).commit(stream)
    assert [r.paths for r in stream.sent] == [["/dev/block"]]


@pytest.mark.asyncio
async def test_commit_missing_device_raises(tmp_path):
    stream = ServerStream([CommitRequest(entries=[CommitEntry(path="/dev/block")])])
    with pytest.raises(OSError, match="for commit"):
        await BlockCommitServer(str(tmp_path / "missing")).commit(stream)


@pytest.fixture
def hash_device(tmp_path):
    path = tmp_path / "hash.img"
    path.write_bytes(b"0123456789ABCDEF")
    return path


@pytest.mark.asyncio
async def test_hash_server_all_match(hash_device):
    digest = hashlib.sha256(b"0123456789ABCDEF").digest()
    stream = ServerStream(
        [HashRequest(hashes=[BlockHash(request_id=0, offset=0, length=16, sha256=digest)])]
    )
    await HashServer(str(hash_device)).compare_hashes(stream)
    assert len(stream.sent) == 1
    assert stream.sent[0].mismatched_ids == []


@pytest.mark.asyncio
async def test_hash_server_mismatch(hash_device):
    wrong = hashlib.sha256(b"wrong").digest()
    stream = ServerStream(
        [HashRequest(hashes=[BlockHash(request_id=0, offset=0, length=16, sha256=wrong)])]
    )
    await HashServer(str(hash_device)).compare_hashes(stream)
    assert stream.sent[0].mismatched_ids == [0]


@pytest.mark.asyncio
async def test_hash_server_short_digest_and_eof(hash_device):
    tail = hashlib.sha256(b"ABCDEF").digest()
    stream = ServerStream(
        [
            HashRequest(
                hashes=[
                    BlockHash(request_id=5, offset=10, length=32, sha256=tail),
                    BlockHash(request_id=6, offset=0, length=16, sha256=b"\x00" * 8),
                ]
            )
        ]
    )
    await HashServer(str(hash_device)).compare_hashes(stream)
    assert stream.sent[0].mismatched_ids == [6]


@pytest.mark.asyncio
async def test_hash_server_missing_device(tmp_path):
    with pytest.raises(OSError, match="failed to open device"):
        await HashServer(str(tmp_path / "missing")).compare_hashes(ServerStream([]))