"""Client side of the daemon's HTTP API, carried over a unix domain socket."""

from __future__ import annotations

import base64
import http.client
import json
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

API_READY_POLL_DURATION = 0.1
API_READY_POLL_TIMEOUT = 60.0

MULTUS_CNI_API_ENDPOINT = "/cni"
MULTUS_DELEGATE_API_ENDPOINT = "/delegate"
MULTUS_HEALTH_API_ENDPOINT = "/healthz"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"

SERVER_SOCKET_NAME = "multus.sock"


class CNIRequestError(Exception):
    """Raised when a request to the daemon cannot be sent or is refused."""


@dataclass
class DelegateInterfaceAttributes:
    """Extra settings attached to a delegate request."""

    ip_request: list[str] | None = None
    mac_request: str = ""
    cni_args: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form; empty IP and MAC requests are left out."""
        data: dict[str, Any] = {}
        if self.ip_request:
            data["ips"] = list(self.ip_request)
        if self.mac_request:
            data["mac"] = self.mac_request
        data["cni-args"] = self.cni_args
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DelegateInterfaceAttributes:
        """Build attributes from their wire form."""
        if not isinstance(data, dict):
            raise ValueError(f"interface attributes must be an object: {data!r}")
        ips = data.get("ips")
        if ips is not None and not isinstance(ips, list):
            raise ValueError(f"wrong ips format: {ips!r}")
        mac = data.get("mac") or ""
        if not isinstance(mac, str):
            raise ValueError(f"wrong mac format: {mac!r}")
        cni_args = data.get("cni-args")
        if cni_args is not None and not isinstance(cni_args, dict):
            raise ValueError(f"wrong cni-args format: {cni_args!r}")
        return cls(ip_request=ips, mac_request=mac, cni_args=cni_args)


@dataclass
class Request:
    """A request sent by the shim or a hotplug client to the daemon."""

    env: dict[str, str] = field(default_factory=dict)
    config: bytes = b""
    interface_attributes: DelegateInterfaceAttributes | None = None

    def to_json(self) -> bytes:
        """Encode the request; the CNI config travels base64-encoded."""
        data: dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.config:
            data["config"] = base64.b64encode(self.config).decode("ascii")
        if self.interface_attributes is not None:
            data["interfaceAttributes"] = self.interface_attributes.to_dict()
        return json.dumps(data, separators=(",", ":")).encode()

    @classmethod
    def from_json(cls, data: bytes | str) -> Request:
        """Decode a request from its JSON form."""
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError(f"request must be a JSON object: {parsed!r}")
        env = parsed.get("env") or {}
        if not isinstance(env, dict):
            raise ValueError(f"wrong env format: {env!r}")
        config_text = parsed.get("config") or ""
        config = base64.b64decode(config_text, validate=True) if config_text else b""
        attributes = parsed.get("interfaceAttributes")
        return cls(
            env={str(k): str(v) for k, v in env.items()},
            config=config,
            interface_attributes=(
                DelegateInterfaceAttributes.from_dict(attributes)
                if attributes is not None
                else None
            ),
        )


def socket_path(rundir: str | os.PathLike[str]) -> str:
    """Return the path of the daemon's socket inside ``rundir``."""
    return os.path.join(os.fspath(rundir), SERVER_SOCKET_NAME)


def get_api_endpoint(endpoint: str) -> str:
    """Return the URL used to reach ``endpoint`` over the socket."""
    return f"http://dummy{endpoint}"


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_file: str, host: str) -> None:
        super().__init__(host or "localhost")
        self._socket_file = socket_file

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._socket_file)
        except OSError:
            sock.close()
            raise
        self.sock = sock


def _encode_payload(req: Any) -> bytes:
    if isinstance(req, Request):
        return req.to_json()
    try:
        return json.dumps(req, separators=(",", ":")).encode()
    except (TypeError, ValueError) as err:
        raise CNIRequestError(f"failed to marshal CNI request {req!r}: {err}") from err


def do_cni(url: str, req: Any, socket_file: str | os.PathLike[str]) -> bytes:
    """POST ``req`` as JSON to ``url`` through the unix socket and return the body."""
    payload = _encode_payload(req)
    parts = urlsplit(url)
    target = parts.path or "/"
    if parts.query:
        target = f"{target}?{parts.query}"

    conn = _UnixHTTPConnection(os.fspath(socket_file), parts.hostname or "")
    try:
        try:
            conn.request(
                "POST", target, body=payload, headers={"Content-Type": "application/json"}
            )
            response = conn.getresponse()
        except (OSError, http.client.HTTPException) as err:
            raise CNIRequestError(f"failed to send CNI request: {err}") from err
        try:
            body = response.read()
        except (OSError, http.client.HTTPException) as err:
            raise CNIRequestError(f"failed to read CNI result: {err}") from err
    finally:
        conn.close()

    if response.status != http.HTTPStatus.OK:
        raise CNIRequestError(
            f"CNI request failed with status {response.status}: "
            f"'{body.decode(errors='replace')}'"
        )
    return body


def create_delegate_request(
    cni_command: str,
    container_id: str,
    netns: str,
    if_name: str,
    pod_namespace: str,
    pod_name: str,
    pod_uid: str,
    cni_config: bytes,
    interface_attributes: DelegateInterfaceAttributes | None = None,
) -> Request:
    """Build the request for a delegate (hotplug) call."""
    return Request(
        env={
            "CNI_COMMAND": cni_command.upper(),
            "CNI_CONTAINERID": container_id,
            "CNI_NETNS": netns,
            "CNI_IFNAME": if_name,
            "CNI_ARGS": (
                f"K8S_POD_NAMESPACE={pod_namespace};"
                f"K8S_POD_NAME={pod_name};"
                f"K8S_POD_UID={pod_uid}"
            ),
        },
        config=cni_config,
        interface_attributes=interface_attributes,
    )


def wait_until_api_ready(
    socket_dir: str | os.PathLike[str],
    interval: float = API_READY_POLL_DURATION,
    timeout: float = API_READY_POLL_TIMEOUT,
) -> None:
    """Poll the health endpoint until it answers, or raise after ``timeout`` seconds."""
    url = get_api_endpoint(MULTUS_HEALTH_API_ENDPOINT)
    path = socket_path(socket_dir)
    deadline = time.monotonic() + timeout
    while True:
        try:
            do_cni(url, None, path)
            return
        except CNIRequestError:
            pass
        if time.monotonic() >= deadline:
            raise CNIRequestError("timed out waiting for the condition")
        time.sleep(interval)