"""Lifecycle of the stunnel tunnel and the optional rsync daemon behind it."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

from blocksync.rsync import RsyncDaemon
from blocksync.stunnel import (
    PSK_FILE_PATH,
    WORKER_TYPE_DESTINATION,
    WORKER_TYPE_SOURCE,
    Stunnel,
    StunnelConfig,
)

StunnelFactory = Callable[[StunnelConfig, logging.Logger], Stunnel]
RsyncFactory = Callable[[str, logging.Logger], RsyncDaemon]


class TunnelManager:
    """Starts stunnel and, on destinations with rsync enabled, the rsync daemon."""

    def __init__(
        self,
        config: StunnelConfig,
        logger: logging.Logger | None = None,
        *,
        psk_file: str = PSK_FILE_PATH,
        make_stunnel: StunnelFactory = Stunnel,
        make_rsync: RsyncFactory = RsyncDaemon,
    ) -> None:
        self.config = config
        self.psk_file = psk_file
        self._make_stunnel = make_stunnel
        self._make_rsync = make_rsync
        self._log = (logger or logging.getLogger(__name__)).getChild("tunnel")
        self._stunnel: Stunnel | None = None
        self._rsync: RsyncDaemon | None = None

    @property
    def stunnel(self) -> Stunnel | None:
        return self._stunnel

    @property
    def rsync_daemon(self) -> RsyncDaemon | None:
        return self._rsync

    def setup(self) -> str:
        """Start the tunnel processes.

        Returns the local endpoint that source workers should dial instead of the
        destination, or an empty string for destination workers.
        """
        if not os.path.exists(self.psk_file):
            raise RuntimeError(f"PSK file not found at {self.psk_file}")

        cfg = self.config
        if cfg.enable_rsync_tunnel:
            self._log.info(
                "Starting dual stunnel setup (gRPC + rsync) (workerType=%s)", cfg.worker_type
            )
        else:
            self._log.info(
                "Starting stunnel setup (gRPC only) (workerType=%s)", cfg.worker_type
            )

        self._stunnel = self._make_stunnel(cfg, self._log)
        try:
            self._stunnel.start()
        except Exception as exc:
            raise RuntimeError(f"failed to start stunnel: {exc}") from exc

        if cfg.worker_type == WORKER_TYPE_DESTINATION and cfg.enable_rsync_tunnel:
            self._rsync = self._make_rsync(cfg.rsync_daemon_port, self._log)
            try:
                self._rsync.start()
            except Exception as exc:
                self._stunnel.stop()
                raise RuntimeError(f"failed to start rsync daemon: {exc}") from exc

        if cfg.worker_type == WORKER_TYPE_SOURCE:
            return self._stunnel.source_grpc_address()
        return ""

    def cleanup(self) -> None:
        """Stop the rsync daemon (if any) and stunnel; safe to call repeatedly."""
        self._log.info("Cleaning up tunnel processes")
        if self._rsync is not None:
            self._rsync.stop()
        if self._stunnel is not None:
            self._stunnel.stop()