"""CNI entry points of the thin shim that forwards requests to the daemon."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import IO, Any

from multusd.api import (
    DEFAULT_MULTUS_RUN_DIR,
    MULTUS_CNI_API_ENDPOINT,
    CNIRequestError,
    Request,
    do_cni,
    get_api_endpoint,
    socket_path,
    wait_until_api_ready,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}


@dataclass
class ShimNetConf:
    """The few fields of the CNI configuration that the shim itself reads."""

    cni_version: str = ""
    multus_socket_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"wrong {key} format: {value!r}")
    return value


def _apply_logging(conf: ShimNetConf) -> None:
    package_logger = logging.getLogger("multusd")
    stderr_handlers = [h for h in package_logger.handlers if getattr(h, "_shim_stderr", False)]
    if conf.log_to_stderr:
        if not stderr_handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler._shim_stderr = True  # type: ignore[attr-defined]
            package_logger.addHandler(handler)
    else:
        for handler in stderr_handlers:
            package_logger.removeHandler(handler)

    if conf.log_file:
        target = os.path.abspath(conf.log_file)
        if not any(getattr(h, "baseFilename", None) == target for h in package_logger.handlers):
            package_logger.addHandler(logging.FileHandler(target))

    if conf.log_level:
        level = _LOG_LEVELS.get(conf.log_level.lower())
        if level is not None:
            package_logger.setLevel(level)


def shim_config(cni_config: bytes | str) -> ShimNetConf:
    """Parse the shim's settings from the CNI configuration and apply its logging options."""
    try:
        data = json.loads(cni_config)
        if not isinstance(data, dict):
            raise ValueError(f"configuration must be a JSON object: {data!r}")
        conf = ShimNetConf(
            cni_version=_field(data, "cniVersion", str, ""),
            multus_socket_dir=_field(data, "daemonSocketDir", str, ""),
            log_file=_field(data, "logFile", str, ""),
            log_level=_field(data, "logLevel", str, ""),
            log_to_stderr=_field(data, "logToStderr", bool, False),
        )
    except ValueError as err:
        raise ValueError(f"failed to gather the multus configuration: {err}") from err
    if not conf.multus_socket_dir:
        conf.multus_socket_dir = DEFAULT_MULTUS_RUN_DIR
    _apply_logging(conf)
    return conf


def _environment(environ: Mapping[str, str] | Iterable[str] | None) -> dict[str, str]:
    if environ is None:
        environ = os.environ
    env: dict[str, str] = {}
    if isinstance(environ, Mapping):
        for key, value in environ.items():
            name = str(key).strip()
            if name:
                env[name] = str(value)
        return env
    for item in environ:
        idx = item.find("=")
        if idx > 0:
            env[item[:idx].strip()] = item[idx + 1 :]
    return env


def new_cni_request(
    stdin_data: bytes, environ: Mapping[str, str] | Iterable[str] | None = None
) -> Request:
    """Build a request carrying the CNI environment and configuration."""
    return Request(env=_environment(environ), config=stdin_data or b"")


def post_request(
    stdin_data: bytes, environ: Mapping[str, str] | Iterable[str] | None = None
) -> tuple[dict[str, Any] | None, str]:
    """Forward the CNI call to the daemon; return its result and the CNI version."""
    try:
        conf = shim_config(stdin_data)
    except ValueError as err:
        raise CNIRequestError(f"invalid CNI configuration passed to multus-shim: {err}") from err

    wait_until_api_ready(conf.multus_socket_dir)

    request = new_cni_request(stdin_data, environ)
    try:
        body = do_cni(
            get_api_endpoint(MULTUS_CNI_API_ENDPOINT),
            request,
            socket_path(conf.multus_socket_dir),
        )
    except CNIRequestError as err:
        stdin_text = (stdin_data or b"").decode(errors="replace")
        raise CNIRequestError(f"{err}: StdinData: {stdin_text}") from err

    if not body:
        return None, conf.cni_version
    text = body.decode(errors="replace")
    try:
        response = json.loads(body)
        if not isinstance(response, dict):
            raise ValueError(f"response is not a JSON object: {response!r}")
    except ValueError as err:
        raise CNIRequestError(f"failed to unmarshal response '{text}': {err}") from err
    result = response.get("Result")
    if result is not None and not isinstance(result, dict):
        raise CNIRequestError(f"failed to unmarshal response '{text}': wrong Result format")
    return result, conf.cni_version


def _ip_version(prefix: str) -> int:
    return ipaddress.ip_interface(prefix).version


def _convert_result(result: dict[str, Any], version: str) -> dict[str, Any]:
    if not version or version == "1.0.0":
        converted = dict(result)
        if version:
            converted["cniVersion"] = version
        return converted

    ips = result.get("ips") or []
    if version in ("0.3.0", "0.3.1", "0.4.0"):
        converted = dict(result)
        converted["cniVersion"] = version
        if "ips" in result:
            converted["ips"] = [
                {**ip, "version": str(_ip_version(ip["address"]))} for ip in ips
            ]
        return converted

    if version in ("0.1.0", "0.2.0"):
        converted = {"cniVersion": version}
        routes = result.get("routes") or []
        for family, key in ((4, "ip4"), (6, "ip6")):
            ip = next((i for i in ips if _ip_version(i["address"]) == family), None)
            if ip is None:
                continue
            section: dict[str, Any] = {"ip": ip["address"]}
            if ip.get("gateway"):
                section["gateway"] = ip["gateway"]
            family_routes = [r for r in routes if _ip_version(r["dst"]) == family]
            if family_routes:
                section["routes"] = family_routes
            converted[key] = section
        if result.get("dns"):
            converted["dns"] = result["dns"]
        return converted

    raise ValueError(f"unsupported CNI result version {version!r}")


def cmd_add(
    stdin_data: bytes,
    environ: Mapping[str, str] | Iterable[str] | None = None,
    out: IO[str] | None = None,
) -> None:
    """Handle ADD: forward it and print the result in the requested CNI version."""
    try:
        result, cni_version = post_request(stdin_data, environ)
        if result is None:
            raise CNIRequestError("no result in the daemon response")
        converted = _convert_result(result, cni_version)
    except (CNIRequestError, ValueError, KeyError, TypeError) as err:
        logger.error("CmdAdd (shim): %s", err)
        raise CNIRequestError(f"CmdAdd (shim): {err}") from err

    logger.info("CmdAdd (shim): %s", result)
    stream = out if out is not None else sys.stdout
    stream.write(json.dumps(converted, indent=1))
    stream.flush()


def cmd_check(
    stdin_data: bytes, environ: Mapping[str, str] | Iterable[str] | None = None
) -> None:
    """Handle CHECK: forward it and raise when the daemon reports a failure."""
    try:
        post_request(stdin_data, environ)
    except CNIRequestError as err:
        logger.error("CmdCheck (shim): %s", err)
        raise CNIRequestError(f"CmdCheck (shim): {err}") from err


def cmd_del(
    stdin_data: bytes, environ: Mapping[str, str] | Iterable[str] | None = None
) -> None:
    """Handle DEL: forward it; failures are logged, never raised."""
    try:
        post_request(stdin_data, environ)
    except CNIRequestError as err:
        logger.error("CmdDel (shim): %s", err)