import os
import socket
import stat
from pathlib import Path

import pytest

from blocksync.stunnel import Stunnel, StunnelConfig

DAEMON_BODY = (
    'dir=$(dirname "$1")\n'
    "sleep 30 >/dev/null 2>&1 &\n"
    'echo $! > "$dir/stunnel.pid"\n'
)


def _script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return str(path)


def _stunnel(tmp_path, config, **kwargs):
    return Stunnel(
        config,
        directory=str(tmp_path / "st"),
        log_file=str(tmp_path / "stunnel.log"),
        **kwargs,
    )


def _source_config(**kwargs):
    return StunnelConfig(
        worker_type="source",
        destination_address="10.0.0.1",
        destination_port="8000",
        **kwargs,
    )


def _listen(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(path)
    listener.listen(4)
    return listener


def test_write_source_config_uses_uds(tmp_path):
    cfg = _source_config(enable_rsync_tunnel=True, rsync_port="8873", rsync_daemon_port="8874")
    s = _stunnel(tmp_path, cfg)
    s.generate_config()
    text = Path(s.config_path).read_text()

    assert "accept = " + s.grpc_socket_path in text
    assert "accept = 127.0.0.1:8001" not in text
    assert "accept = " + s.rsync_socket_path in text
    assert "accept = 127.0.0.1:8874" not in text
    assert "client = yes" in text
    assert "connect = 10.0.0.1:8000" in text
    assert "connect = 10.0.0.1:8873" in text


def test_write_destination_config_stays_tcp(tmp_path):
    cfg = StunnelConfig(
        worker_type="destination",
        destination_address="0.0.0.0",
        destination_port="8000",
        enable_rsync_tunnel=True,
        rsync_port="8873",
        rsync_daemon_port="8874",
    )
    s = _stunnel(tmp_path, cfg)
    s.generate_config()
    text = Path(s.config_path).read_text()

    assert "accept = 8000" in text
    assert s.grpc_socket_path not in text
    assert "accept = 8873" in text
    assert s.rsync_socket_path not in text
    assert "client = yes" not in text
    assert "connect = 127.0.0.1:" in text
    assert "connect = 127.0.0.1:8874" in text


def test_global_options_and_permissions(tmp_path):
    s = _stunnel(tmp_path, _source_config(), psk_file="/keys/psk.txt")
    s.generate_config()
    text = Path(s.config_path).read_text()
    assert "ciphers = PSK" in text
    assert "PSKsecrets = /keys/psk.txt" in text
    assert f"pid = {s.pid_path}" in text
    assert "debug = 7" in text
    assert "[rsync-tls]" not in text
    assert stat.S_IMODE(Path(s.config_path).stat().st_mode) == 0o600


def test_unsupported_worker_type(tmp_path):
    s = _stunnel(tmp_path, StunnelConfig(worker_type="bogus"))
    with pytest.raises(ValueError, match="unsupported worker type: bogus"):
        s.generate_config()


def test_source_grpc_address_returns_unix_scheme():
    s = Stunnel(_source_config())
    addr = s.source_grpc_address()
    assert addr == "unix:///tmp/stunnel/grpc.sock"
    assert addr.startswith("unix://")
    assert "/tmp/stunnel/grpc.sock" in addr


def test_check_socket_existing_socket(tmp_path):
    path = str(tmp_path / "test.sock")
    s = Stunnel(_source_config())
    assert s.check_socket(path) is False

    listener = _listen(path)
    try:
        assert s.check_socket(path) is True
    finally:
        listener.close()

    assert s.check_socket(path) is False


def test_check_socket_nonexistent_socket(tmp_path):
    s = Stunnel(_source_config())
    assert s.check_socket(str(tmp_path / "nonexistent.sock")) is False


def test_start_destination_records_pid(tmp_path):
    cfg = StunnelConfig(worker_type="destination", destination_port="8000")
    s = _stunnel(tmp_path, cfg, binary=_script(tmp_path, "fake", DAEMON_BODY), startup_delay=0)
    s.start()
    try:
        assert s.pid == int(Path(s.pid_path).read_text())
        os.kill(s.pid, 0)
    finally:
        s.stop()
    assert s.pid == 0


def test_start_source_waits_for_socket(tmp_path):
    s = _stunnel(
        tmp_path, _source_config(),
        binary=_script(tmp_path, "fake", DAEMON_BODY),
        startup_delay=0, socket_timeout=2, socket_interval=0.05,
    )
    listener = _listen(s.grpc_socket_path)
    try:
        s.start()
        assert s.pid > 0
    finally:
        s.stop()
        listener.close()
    assert s.pid == 0


def test_start_source_socket_timeout(tmp_path):
    s = _stunnel(
        tmp_path, _source_config(),
        binary=_script(tmp_path, "fake", DAEMON_BODY),
        startup_delay=0, socket_timeout=0.2, socket_interval=0.05,
    )
    try:
        with pytest.raises(RuntimeError, match="not ready"):
            s.start()
    finally:
        s.stop()


def test_start_failing_binary(tmp_path):
    cfg = StunnelConfig(worker_type="destination", destination_port="8000")
    s = _stunnel(tmp_path, cfg, binary=_script(tmp_path, "fake", "exit 1\n"), startup_delay=0)
    with pytest.raises(RuntimeError, match="failed to start stunnel"):
        s.start()


def test_start_without_pid_file(tmp_path):
    cfg = StunnelConfig(worker_type="destination", destination_port="8000")
    s = _stunnel(tmp_path, cfg, binary=_script(tmp_path, "fake", "exit 0\n"), startup_delay=0)
    with pytest.raises(RuntimeError, match="PID file not created"):
        s.start()
    assert s.pid == 0


def test_start_with_garbage_pid(tmp_path):
    body = 'echo abc > "$(dirname "$1")/stunnel.pid"\n'
    cfg = StunnelConfig(worker_type="destination", destination_port="8000")
    s = _stunnel(tmp_path, cfg, binary=_script(tmp_path, "fake", body), startup_delay=0)
    with pytest.raises(RuntimeError, match="failed to parse stunnel PID"):
        s.start()


def test_start_unsupported_type_wraps_error(tmp_path):
    s = _stunnel(tmp_path, StunnelConfig(worker_type="bogus"))
    with pytest.raises(RuntimeError, match="failed to generate stunnel config"):
        s.start()