"""Daemon configuration and the filesystem setup the daemon needs before serving."""

from __future__ import annotations

import datetime
import json
import logging
import os
import shutil
import socket
import sys
from dataclasses import dataclass, field
from typing import Any

DEFAULT_MULTUS_DAEMON_CONFIG_FILE = "/etc/cni/net.d/multus.d/daemon-config.json"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"
DEFAULT_CERT_DURATION = datetime.timedelta(minutes=10)

USER_RW_PERMISSION = 0o600
THICK_PLUGIN_SOCKET_RUN_DIR_PERMISSIONS = 0o700

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}


class DaemonConfigError(Exception):
    """Raised when the daemon configuration or its environment cannot be set up."""


def _decode_fields(
    data: Any, specs: dict[str, tuple[str, type]], what: str
) -> dict[str, Any]:
    """Map wire keys to attribute values, matching keys case-insensitively as a fallback."""
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object: {data!r}")
    folded = {key.lower(): key for key in specs}
    values: dict[str, Any] = {}
    for key, value in data.items():
        wire_key = key if key in specs else folded.get(str(key).lower())
        if wire_key is None or value is None:
            continue
        attr, kind = specs[wire_key]
        if kind is int:
            valid = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid = isinstance(value, kind)
        if not valid:
            raise ValueError(f"wrong {wire_key} format: {value!r}")
        values[attr] = value
    return values


@dataclass
class PerNodeCertificate:
    """Settings for generating a certificate per node."""

    enabled: bool = False
    bootstrap_kubeconfig: str = ""
    cert_dir: str = ""
    cert_duration: str = ""

    _SPECS = {
        "enabled": ("enabled", bool),
        "bootstrapKubeconfig": ("bootstrap_kubeconfig", str),
        "certDir": ("cert_dir", str),
        "certDuration": ("cert_duration", str),
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerNodeCertificate:
        """Build the settings from their wire form."""
        return cls(**_decode_fields(data, cls._SPECS, "perNodeCertificate"))


@dataclass
class ControllerNetConf:
    """The daemon's own configuration."""

    chroot_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    per_node_certificate: PerNodeCertificate | None = None
    metrics_port: int | None = None
    socket_dir: str = DEFAULT_MULTUS_RUN_DIR
    config_file_contents: bytes = field(default=b"", repr=False)

    _SPECS = {
        "chrootDir": ("chroot_dir", str),
        "logFile": ("log_file", str),
        "logLevel": ("log_level", str),
        "logToStderr": ("log_to_stderr", bool),
        "perNodeCertificate": ("per_node_certificate", dict),
        "metricsPort": ("metrics_port", int),
        "socketDir": ("socket_dir", str),
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ControllerNetConf:
        """Build the configuration from its wire form over the defaults."""
        values = _decode_fields(data, cls._SPECS, "daemon configuration")
        cert = values.get("per_node_certificate")
        if cert is not None:
            values["per_node_certificate"] = PerNodeCertificate.from_dict(cert)
        return cls(**values)


def filesystem_pre_requirements(rundir: str | os.PathLike[str]) -> None:
    """Recreate ``rundir`` empty, readable and writable by its owner only."""
    path = os.fspath(rundir)
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except NotADirectoryError:
        try:
            os.remove(path)
        except OSError as err:
            raise DaemonConfigError(
                f"failed to remove old pod info socket directory {path}: {err}"
            ) from err
    except OSError as err:
        raise DaemonConfigError(
            f"failed to remove old pod info socket directory {path}: {err}"
        ) from err
    try:
        os.makedirs(path, THICK_PLUGIN_SOCKET_RUN_DIR_PERMISSIONS, exist_ok=True)
    except OSError as err:
        raise DaemonConfigError(
            f"failed to create pod info socket directory {path}: {err}"
        ) from err


def is_per_node_cert_enabled(config: PerNodeCertificate | None) -> bool:
    """Tell whether per-node certificates are on; raise when on but incomplete."""
    if config is None or not config.enabled:
        return False
    if config.bootstrap_kubeconfig and config.cert_dir:
        return True
    raise DaemonConfigError(
        "failed to configure PerNodeCertificate: "
        f"enabled: {str(config.enabled).lower()}, "
        f"BootstrapKubeconfig: {json.dumps(config.bootstrap_kubeconfig)}, "
        f"CertDir: {json.dumps(config.cert_dir)}"
    )


def _apply_logging(conf: ControllerNetConf) -> None:
    package_logger = logging.getLogger("multusd")
    stderr_handlers = [
        h for h in package_logger.handlers if getattr(h, "_daemon_stderr", False)
    ]
    if conf.log_to_stderr:
        if not stderr_handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler._daemon_stderr = True  # type: ignore[attr-defined]
            package_logger.addHandler(handler)
    else:
        for handler in stderr_handlers:
            package_logger.removeHandler(handler)

    if conf.log_file != DEFAULT_MULTUS_DAEMON_CONFIG_FILE and conf.log_file:
        target = os.path.abspath(conf.log_file)
        if not any(getattr(h, "baseFilename", None) == target for h in package_logger.handlers):
            package_logger.addHandler(logging.FileHandler(target))

    if conf.log_level:
        level = _LOG_LEVELS.get(conf.log_level.lower())
        if level is not None:
            package_logger.setLevel(level)


def load_daemon_net_conf(config: bytes | str) -> ControllerNetConf:
    """Parse the daemon configuration, apply its logging settings and keep the raw text."""
    raw = config.encode() if isinstance(config, str) else bytes(config)
    try:
        conf = ControllerNetConf.from_dict(json.loads(raw))
    except ValueError as err:
        raise DaemonConfigError(f"failed to unmarshall the daemon configuration: {err}") from err
    _apply_logging(conf)
    conf.config_file_contents = raw
    return conf


def get_listener(socket_file: str | os.PathLike[str]) -> socket.socket:
    """Return a listening unix socket at ``socket_file``, accessible by its owner only."""
    path = os.fspath(socket_file)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen()
    except OSError as err:
        sock.close()
        raise DaemonConfigError(f"failed to listen on pod info socket: {err}") from err
    try:
        os.chmod(path, USER_RW_PERMISSION)
    except OSError as err:
        sock.close()
        raise DaemonConfigError(f"failed to listen on pod info socket: {err}") from err
    return sock