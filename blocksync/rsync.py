"""Management of the rsync daemon that serves the data volume."""

from __future__ import annotations

import logging
import os
import subprocess
import time

RSYNCD_CONF = "/tmp/rsyncd.conf"
RSYNC_BIN = "rsync"
DATA_PATH = "/data"
STARTUP_DELAY = 2.0

_CONFIG_TEMPLATE = """# Rsync daemon configuration
uid = root
gid = root
use chroot = no
max connections = 4
pid file = /tmp/rsyncd.pid
log file = /tmp/rsyncd.log
lock file = /tmp/rsyncd.lock

[data]
    path = {data_path}
    comment = Data volume
    read only = false
    list = yes
    # No authentication - stunnel already provides PSK authentication
"""


def _write_private(path: str, text: str) -> None:
    """Write text to path, creating the file readable by its owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(text)


class RsyncDaemon:
    """Runs rsync in daemon mode as a background subprocess bound to localhost."""

    def __init__(
        self,
        port: str,
        logger: logging.Logger | None = None,
        *,
        config_path: str = RSYNCD_CONF,
        binary: str = RSYNC_BIN,
        data_path: str = DATA_PATH,
        startup_delay: float = STARTUP_DELAY,
    ) -> None:
        self.port = port
        self.config_path = config_path
        self.binary = binary
        self.data_path = data_path
        self.startup_delay = startup_delay
        self._log = (logger or logging.getLogger(__name__)).getChild("rsync-daemon")
        self._process: subprocess.Popen | None = None

    @property
    def pid(self) -> int | None:
        """Process id of the daemon, if it has been started."""
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        """True while the daemon subprocess is alive."""
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Write the configuration and start the daemon; raise RuntimeError on failure."""
        try:
            self.generate_config()
        except OSError as exc:
            raise RuntimeError(f"failed to generate rsyncd config: {exc}") from exc

        self._log.info("Starting rsync daemon (port=%s)", self.port)
        try:
            self._process = subprocess.Popen(
                [
                    self.binary,
                    "--daemon",
                    f"--config={self.config_path}",
                    f"--port={self.port}",
                    "--address=127.0.0.1",
                    "--no-detach",
                ]
            )
        except OSError as exc:
            raise RuntimeError(f"failed to start rsync daemon: {exc}") from exc

        time.sleep(self.startup_delay)

        status = self._process.poll()
        if status is not None:
            raise RuntimeError(
                f"rsync daemon exited prematurely (exit status {status})"
            )
        self._log.info("rsync daemon started successfully (pid=%d)", self._process.pid)

    def stop(self) -> None:
        """Send SIGTERM to the daemon and wait for it to exit."""
        if self._process is None:
            return
        self._log.info("Stopping rsync daemon (pid=%d)", self._process.pid)
        try:
            self._process.terminate()
        except OSError:
            self._log.exception("Failed to send SIGTERM to rsync daemon")
        self._process.wait()

    def generate_config(self) -> None:
        """Write the rsyncd configuration file with owner-only permissions."""
        _write_private(self.config_path, _CONFIG_TEMPLATE.format(data_path=self.data_path))