# blocksync

`blocksync` is an asyncio library that copies the changed blocks of a volume
from a source to a destination. The blocks pass through a pipeline of
concurrent stages. Both the raw memory in use and the spread of in-flight
request ids have upper limits.

## The pipeline

`blocksync.pipeline.Pipeline.run()` connects these stages with bounded
`blocksync.channel.Channel`s:

1. **feed**: reads `ChangeBlock` records from a `BlockIterator`. Each record
   has `file_path`, `offset`, `length`, `req_id` and `total_size`. The
   iterator's `next()` returns `None` when it is exhausted.
2. **read** (`blocksync.stages.stage_read`): `read_workers` workers call
   `DataReader.read_at(file_path, offset, length)` in a thread. If a block is
   all zeros (`is_all_zero`), it goes on with no data, and its memory
   reservation is returned at once.
3. **hash** (`stage_hash`): computes the SHA-256 of each block. A zero block
   is hashed as `length` zero bytes.
4. **send hash** (`blocksync.sending.stage_send_hash`): sends hashes to the
   destination in batches. A batch is flushed when it holds
   `hash_batch_max_count` entries, or when the window reaches
   `win_pressure_thresh` of its size. The destination answers with the ids
   that differ. The other blocks are dropped and their resources released.
5. **compress** (`stage_compress`): applies LZ4 block compression. If the
   output is not smaller than the input, the data is sent raw. When the data
   shrinks, the bytes saved go back to the memory semaphore.
6. **send data** (`stage_send_data`): `data_send_workers` streams send
   `WriteRequest`s. A request is flushed whenever the file path changes, and
   also at `data_batch_max_count` blocks or `data_batch_max_bytes` bytes.
   Memory is released after each send. A window slot is released only when
   the destination acknowledges its request id.

Two semaphores in `blocksync.semaphore` provide back-pressure:

- `MemSemaphore(capacity)` is a weighted semaphore that wakes waiters strictly
  in FIFO order. Each read reserves `chunk_size` bytes.
- `WindowSemaphore(max_window)` lets request ids be in flight only while they
  are within `2 * max_window` of the oldest unreleased id.
  - `is_released(req_id)` tells whether the window has moved past an id.
  - `pressure_signal(threshold)` returns an `asyncio.Event`. The event is set
    once the in-flight count reaches `threshold * max_window`.

The first error in any stage cancels the other stages and is raised from
`run()`. The resources that chunks held are released.

## Configuration

Every tunable value lives in `blocksync.config.PipelineConfig`:

- `set_defaults()` fills in each field that is left at zero.
- `validate()` raises `ValueError` when a value is out of range, for example:
  - a chunk size outside 64 KiB–8 MiB, or larger than `max_raw_memory_bytes`;
  - a window outside 8–4096;
  - fewer than 2 read workers;
  - a pressure threshold outside 0.50–0.90.

```python
from blocksync.config import PipelineConfig

cfg = PipelineConfig(chunk_size=64 * 1024)
cfg.set_defaults()
cfg.validate()
```

## Running a transfer

```python
from blocksync.config import PipelineConfig
from blocksync.pipeline import Pipeline
from blocksync.semaphore import WindowSemaphore

cfg = PipelineConfig()
cfg.set_defaults()
win = WindowSemaphore(cfg.max_window)

pipeline = Pipeline(cfg)
await pipeline.run(iterator, reader, new_stream, new_hash_stream, win)
```

- `Pipeline` works on its own copy of the configuration, available as
  `pipeline.config`.
- `new_stream` and `new_hash_stream` are factories that take no arguments.
  They may be plain or async callables, and each call returns a new stream.
- Pass `None` as `new_hash_stream` to skip hash comparison. Every block is
  then sent.
- A stream follows the `blocksync.messages.Stream` protocol:
  - `send(message)`, `recv()` and `close_send()`, all async;
  - `recv()` raises `EOFError` once the peer has finished.
- Streams carry the dataclasses defined in `blocksync.messages`:
  - `WriteRequest` / `WriteResponse`, with `ChangedBlock` and
    `CompressionAlgo`;
  - `HashRequest` / `HashResponse`, with `BlockHash`;
  - `CommitRequest` / `CommitResponse`, with `CommitEntry`;
  - `DeleteRequest` / `DeleteResponse`.

## Destination side

`blocksync.rbd` has handlers that apply the stream messages to a device file.
Each handler is built with the path to that file:

- `BlockDataServer(device_path)`:
  - `write(stream)` opens the device on the first request. It writes each
    block, decompressing LZ4 and writing zeros for zero blocks, then
    acknowledges the request ids of every batch. At the end it syncs and
    closes the device.
  - `write_blocks(file, request)` applies one batch to a file that is already
    open.
  - `delete(stream)` answers each request with an empty response.
- `HashServer(device_path)`: `compare_hashes(stream)` reads each block from
  the device and replies with the ids whose SHA-256 differs.
- `BlockCommitServer(device_path)`: `commit(stream)` syncs the device once for
  each entry and replies with the committed paths.
- `collect_request_ids(blocks)` returns the request ids of a batch, in order.

## Tunnelling

Tunnelling depends on the external `stunnel` and `rsync` programs.

- `blocksync.stunnel.Stunnel(StunnelConfig(...))` manages stunnel with a
  pre-shared key:
  - It writes `stunnel.conf` under `/tmp/stunnel` and reads the key from
    `/keys/psk.txt`. Both paths can be changed with keyword arguments.
  - It starts stunnel and reads the pid file.
  - In the `"source"` role it waits for the local Unix sockets to accept
    connections. `source_grpc_address()` returns that endpoint as a
    `unix://` address.
  - In the `"destination"` role it accepts on `destination_port` and forwards
    to `127.0.0.1:server_port`.
- `blocksync.rsync.RsyncDaemon(port)` writes `/tmp/rsyncd.conf` and runs
  `rsync --daemon`. The daemon is bound to `127.0.0.1` and serves `/data` as
  the module `[data]`.
- `blocksync.tunnel.TunnelManager(config)` manages both:
  - `setup()` checks that the key file exists and starts stunnel. In the
    destination role, with `enable_rsync_tunnel` set, it also starts the rsync
    daemon.
  - For a source, `setup()` returns the local address to dial. For a
    destination it returns `""`.
  - `cleanup()` stops whatever was started. It is safe to call repeatedly.

## What this package does not do

- It has no command-line program.
- It has no network transport: streams are interfaces that you supply.
- It has nothing that lists the changed blocks of a volume or snapshot. You
  must provide the `BlockIterator` and the `DataReader`.