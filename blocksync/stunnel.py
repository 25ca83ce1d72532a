"""Management of the stunnel process that protects transfers with a PSK."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass

PSK_FILE_PATH = "/keys/psk.txt"
STUNNEL_DIR = "/tmp/stunnel"
STUNNEL_LOG = "/tmp/stunnel.log"
STUNNEL_BIN = "stunnel"
DEFAULT_SERVER_PORT = "8001"

PORT_CHECK_TIMEOUT = 30.0
PORT_CHECK_INTERVAL = 1.0
DIAL_TIMEOUT = 1.0
STARTUP_DELAY = 2.0

WORKER_TYPE_SOURCE = "source"
WORKER_TYPE_DESTINATION = "destination"


@dataclass
class StunnelConfig:
    """Parameters of the tunnel for one worker."""

    worker_type: str
    destination_address: str = ""
    destination_port: str = ""
    enable_rsync_tunnel: bool = False
    rsync_port: str = ""
    rsync_daemon_port: str = ""
    server_port: str = DEFAULT_SERVER_PORT


def _write_private(path: str, text: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(text)


class Stunnel:
    """Configures, starts and stops stunnel as TLS-PSK server or client."""

    def __init__(
        self,
        config: StunnelConfig,
        logger: logging.Logger | None = None,
        *,
        directory: str = STUNNEL_DIR,
        psk_file: str = PSK_FILE_PATH,
        log_file: str = STUNNEL_LOG,
        binary: str = STUNNEL_BIN,
        startup_delay: float = STARTUP_DELAY,
        socket_timeout: float = PORT_CHECK_TIMEOUT,
        socket_interval: float = PORT_CHECK_INTERVAL,
        dial_timeout: float = DIAL_TIMEOUT,
    ) -> None:
        self.config = config
        self.directory = directory
        self.psk_file = psk_file
        self.log_file = log_file
        self.binary = binary
        self.startup_delay = startup_delay
        self.socket_timeout = socket_timeout
        self.socket_interval = socket_interval
        self.dial_timeout = dial_timeout
        self.pid = 0
        self._log = (logger or logging.getLogger(__name__)).getChild("stunnel")

    @property
    def config_path(self) -> str:
        return os.path.join(self.directory, "stunnel.conf")

    @property
    def pid_path(self) -> str:
        return os.path.join(self.directory, "stunnel.pid")

    @property
    def grpc_socket_path(self) -> str:
        """Unix socket of the source-side gRPC tunnel endpoint."""
        return os.path.join(self.directory, "grpc.sock")

    @property
    def rsync_socket_path(self) -> str:
        """Unix socket of the source-side rsync tunnel endpoint."""
        return os.path.join(self.directory, "rsync.sock")

    def start(self) -> None:
        """Write the config, launch stunnel, record its pid and wait for readiness."""
        try:
            self.generate_config()
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"failed to generate stunnel config: {exc}") from exc

        self._log.info("Starting stunnel")
        try:
            subprocess.run([self.binary, self.config_path], check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise RuntimeError(f"failed to start stunnel: {exc}") from exc

        time.sleep(self.startup_delay)
        self._wait_for_pid()
        self._log.info("stunnel started successfully (pid=%d)", self.pid)

        if self.config.worker_type == WORKER_TYPE_SOURCE:
            self._wait_for_sockets()

    def stop(self) -> None:
        """Send SIGTERM to stunnel and reap it if possible."""
        if self.pid == 0:
            return
        pid, self.pid = self.pid, 0
        self._log.info("Stopping stunnel (pid=%d)", pid)
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            self._log.exception("Failed to send SIGTERM to stunnel (pid=%d)", pid)
        with contextlib.suppress(OSError):
            os.waitpid(pid, 0)

    def source_grpc_address(self) -> str:
        """Address of the local client endpoint that source workers dial."""
        return "unix://" + self.grpc_socket_path

    def generate_config(self) -> None:
        """Write stunnel.conf for the configured worker type."""
        try:
            os.makedirs(self.directory, mode=0o750, exist_ok=True)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to create stunnel dir: {exc}") from exc

        lines = [
            "; Global options",
            f"pid = {self.pid_path}",
            "debug = 7",
            f"output = {self.log_file}",
            "",
            "; Use PSK (Pre-Shared Key) authentication",
            "ciphers = PSK",
            f"PSKsecrets = {self.psk_file}",
            "",
        ]

        worker_type = self.config.worker_type
        if worker_type == WORKER_TYPE_DESTINATION:
            self._log.info("Configuring stunnel as server (destination)")
            lines += self._destination_sections()
        elif worker_type == WORKER_TYPE_SOURCE:
            self._log.info("Configuring stunnel as client (source)")
            lines += self._source_sections()
        else:
            raise ValueError(f"unsupported worker type: {worker_type}")

        self._log.info("Writing stunnel config (path=%s)", self.config_path)
        _write_private(self.config_path, "\n".join(lines) + "\n")

    def check_socket(self, path: str) -> bool:
        """True if a connection to the Unix socket at path succeeds."""
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
            conn.settimeout(self.dial_timeout)
            try:
                conn.connect(path)
            except OSError:
                return False
        return True

    def _destination_sections(self) -> list[str]:
        cfg = self.config
        connect = f"127.0.0.1:{cfg.server_port}"
        lines = [
            "; gRPC tunnel - for mover communication",
            "[grpc-tls]",
            f"accept = {cfg.destination_port}",
            f"connect = {connect}",
        ]
        self._log.info(
            "gRPC tunnel configured (accept=%s, connect=%s)", cfg.destination_port, connect
        )
        if cfg.enable_rsync_tunnel:
            rsync_connect = f"127.0.0.1:{cfg.rsync_daemon_port}"
            lines += [
                "",
                "; Rsync tunnel - for rsync daemon communication",
                "[rsync-tls]",
                f"accept = {cfg.rsync_port}",
                f"connect = {rsync_connect}",
            ]
            self._log.info(
                "Rsync tunnel configured (accept=%s, connect=%s)",
                cfg.rsync_port, rsync_connect,
            )
        return lines

    def _source_sections(self) -> list[str]:
        cfg = self.config
        connect = f"{cfg.destination_address}:{cfg.destination_port}"
        lines = [
            "; gRPC tunnel - for mover communication",
            "[grpc-tls]",
            "client = yes",
            f"accept = {self.grpc_socket_path}",
            f"connect = {connect}",
        ]
        self._log.info(
            "gRPC tunnel configured (accept=%s, connect=%s)", self.grpc_socket_path, connect
        )
        if cfg.enable_rsync_tunnel:
            rsync_connect = f"{cfg.destination_address}:{cfg.rsync_port}"
            lines += [
                "",
                "; Rsync tunnel - for rsync daemon communication",
                "[rsync-tls]",
                "client = yes",
                f"accept = {self.rsync_socket_path}",
                f"connect = {rsync_connect}",
            ]
            self._log.info(
                "Rsync tunnel configured (accept=%s, connect=%s)",
                self.rsync_socket_path, rsync_connect,
            )
        return lines

    def _wait_for_pid(self) -> None:
        try:
            with open(self.pid_path) as handle:
                text = handle.read()
        except OSError as exc:
            self._log_output()
            raise RuntimeError(
                f"stunnel failed to start - PID file not created: {exc}"
            ) from exc

        try:
            pid = int(text.strip())
        except ValueError as exc:
            raise RuntimeError(f"failed to parse stunnel PID: {exc}") from exc

        try:
            os.kill(pid, 0)
        except OSError as exc:
            self._log_output()
            raise RuntimeError(f"stunnel process not running: {exc}") from exc

        self.pid = pid

    def _wait_for_sockets(self) -> None:
        self._log.info("Waiting for stunnel client sockets to be ready")
        deadline = time.monotonic() + self.socket_timeout
        while time.monotonic() < deadline:
            grpc_ready = self.check_socket(self.grpc_socket_path)
            rsync_ready = (
                self.check_socket(self.rsync_socket_path)
                if self.config.enable_rsync_tunnel
                else True
            )
            if grpc_ready and rsync_ready:
                self._log.info("Stunnel client sockets are ready")
                return
            time.sleep(self.socket_interval)

        self._log_output()
        raise RuntimeError(
            f"stunnel client sockets not ready after {self.socket_timeout}s"
        )

    def _log_output(self) -> None:
        try:
            with open(self.log_file) as handle:
                output = handle.read()
        except OSError:
            self._log.info("No stunnel log available")
            return
        self._log.info("Stunnel log: %s", output)