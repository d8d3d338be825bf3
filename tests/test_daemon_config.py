import json
import logging
import os
import socket
import stat
import tempfile

import pytest

from multusd.daemon_config import (
    DEFAULT_MULTUS_RUN_DIR,
    ControllerNetConf,
    DaemonConfigError,
    PerNodeCertificate,
    filesystem_pre_requirements,
    get_listener,
    is_per_node_cert_enabled,
    load_daemon_net_conf,
)


@pytest.fixture
def restore_logging():
    package_logger = logging.getLogger("multusd")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    yield package_logger
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)


@pytest.fixture
def short_dir():
    with tempfile.TemporaryDirectory(prefix="md") as directory:
        yield directory


def test_pre_requirements_when_directory_does_not_exist(tmp_path):
    rundir = tmp_path / "socket-dir"
    filesystem_pre_requirements(rundir)
    assert rundir.is_dir()
    assert stat.S_IMODE(rundir.stat().st_mode) == 0o700


def test_pre_requirements_when_directory_exists(tmp_path):
    rundir = tmp_path / "socket-dir"
    rundir.mkdir(mode=0o700)
    (rundir / "stale.sock").write_text("old")
    filesystem_pre_requirements(rundir)
    assert rundir.is_dir()
    assert list(rundir.iterdir()) == []


def test_pre_requirements_replaces_plain_file(tmp_path):
    rundir = tmp_path / "socket-dir"
    rundir.write_text("not a directory")
    filesystem_pre_requirements(rundir)
    assert rundir.is_dir()


def test_load_defaults_socket_dir():
    conf = load_daemon_net_conf(b'{"logLevel": ""}')
    assert conf.socket_dir == DEFAULT_MULTUS_RUN_DIR
    assert conf.config_file_contents == b'{"logLevel": ""}'


def test_load_full_configuration(restore_logging):
    raw = json.dumps(
        {
            "chrootDir": "/hostroot",
            "logToStderr": False,
            "logLevel": "debug",
            "socketDir": "/host/run/multus/socket",
            "metricsPort": 9091,
            "perNodeCertificate": {
                "enabled": True,
                "bootstrapKubeconfig": "/var/lib/kubelet/kubeconfig",
                "certDir": "/var/lib/certs",
                "certDuration": "1h",
            },
        }
    ).encode()
    conf = load_daemon_net_conf(raw)
    assert conf.chroot_dir == "/hostroot"
    assert conf.socket_dir == "/host/run/multus/socket"
    assert conf.metrics_port == 9091
    assert conf.per_node_certificate == PerNodeCertificate(
        enabled=True,
        bootstrap_kubeconfig="/var/lib/kubelet/kubeconfig",
        cert_dir="/var/lib/certs",
        cert_duration="1h",
    )
    assert conf.config_file_contents == raw
    assert restore_logging.level == logging.DEBUG


def test_load_adds_log_file_handler(tmp_path, restore_logging):
    log_path = tmp_path / "daemon.log"
    load_daemon_net_conf(json.dumps({"logFile": str(log_path)}))
    assert log_path.exists()
    assert any(
        getattr(h, "baseFilename", None) == str(log_path) for h in restore_logging.handlers
    )


def test_load_case_insensitive_keys():
    conf = load_daemon_net_conf(b'{"ChrootDir": "/x", "SOCKETDIR": "/y"}')
    assert conf.chroot_dir == "/x"
    assert conf.socket_dir == "/y"


def test_load_invalid_json_raises():
    with pytest.raises(DaemonConfigError, match="failed to unmarshall the daemon configuration"):
        load_daemon_net_conf(b"{not json")


def test_load_wrong_field_type_raises():
    with pytest.raises(DaemonConfigError, match="wrong metricsPort format"):
        load_daemon_net_conf(b'{"metricsPort": "9091"}')


def test_controller_from_dict_null_keeps_default():
    conf = ControllerNetConf.from_dict({"socketDir": None})
    assert conf.socket_dir == DEFAULT_MULTUS_RUN_DIR


def test_per_node_cert_disabled_or_missing():
    assert is_per_node_cert_enabled(None) is False
    assert is_per_node_cert_enabled(PerNodeCertificate(enabled=False)) is False


def test_per_node_cert_enabled_complete():
    cert = PerNodeCertificate.from_dict(
        {"enabled": True, "bootstrapKubeconfig": "/k", "certDir": "/c"}
    )
    assert is_per_node_cert_enabled(cert) is True


def test_per_node_cert_enabled_incomplete_raises():
    cert = PerNodeCertificate(enabled=True, bootstrap_kubeconfig="/k")
    with pytest.raises(DaemonConfigError) as excinfo:
        is_per_node_cert_enabled(cert)
    assert str(excinfo.value) == (
        'failed to configure PerNodeCertificate: enabled: true, '
        'BootstrapKubeconfig: "/k", CertDir: ""'
    )


def test_get_listener_accepts_connections(short_dir):
    path = os.path.join(short_dir, "multus.sock")
    listener = get_listener(path)
    try:
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            client.connect(path)
            conn, _ = listener.accept()
            client.sendall(b"ping")
            assert conn.recv(4) == b"ping"
            conn.close()
        finally:
            client.close()
    finally:
        listener.close()


def test_get_listener_missing_directory_raises(short_dir):
    path = os.path.join(short_dir, "absent", "multus.sock")
    with pytest.raises(DaemonConfigError, match="failed to listen on pod info socket"):
        get_listener(path)