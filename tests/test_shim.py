import http.server
import io
import json
import shutil
import socketserver
import tempfile
import threading

import pytest

from multusd.api import DEFAULT_MULTUS_RUN_DIR, CNIRequestError, Request, socket_path
from multusd.shim import (
    ShimNetConf,
    cmd_add,
    cmd_check,
    cmd_del,
    new_cni_request,
    post_request,
    shim_config,
)


class _Handler(http.server.BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.requests.append((self.path, body))
        if self.path == "/healthz":
            status, payload = 200, b""
        else:
            status, payload = self.server.reply
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, *args):
        pass


class _Server(socketserver.UnixStreamServer):
    pass


@pytest.fixture
def daemon():
    rundir = tempfile.mkdtemp(prefix="shim")
    server = _Server(socket_path(rundir), _Handler)
    server.requests = []
    server.reply = (200, b"")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield rundir, server
    server.shutdown()
    server.server_close()
    shutil.rmtree(rundir, ignore_errors=True)


def _config(rundir, version="0.4.0"):
    return json.dumps(
        {"cniVersion": version, "name": "node-cni-network", "type": "multus", "daemonSocketDir": rundir}
    ).encode()


RESULT_100 = {
    "cniVersion": "1.0.0",
    "interfaces": [{"name": "net1", "sandbox": "/run/netns/test"}],
    "ips": [{"address": "10.1.1.103/24", "interface": 0}],
    "routes": [{"dst": "0.0.0.0/0", "gw": "10.1.1.1"}],
    "dns": {},
}


def test_shim_config_defaults_socket_dir():
    conf = shim_config(b'{"cniVersion": "0.4.0"}')
    assert conf == ShimNetConf(cni_version="0.4.0", multus_socket_dir=DEFAULT_MULTUS_RUN_DIR)


def test_shim_config_reads_socket_dir():
    conf = shim_config(b'{"cniVersion": "1.0.0", "daemonSocketDir": "/some/dir"}')
    assert conf.multus_socket_dir == "/some/dir"
    assert conf.cni_version == "1.0.0"


def test_shim_config_invalid_json():
    with pytest.raises(ValueError, match="failed to gather the multus configuration"):
        shim_config(b"{not json")


def test_shim_config_wrong_type():
    with pytest.raises(ValueError, match="daemonSocketDir"):
        shim_config(b'{"daemonSocketDir": 5}')


def test_new_cni_request_from_environment_list():
    request = new_cni_request(b"data", ["CNI_COMMAND=ADD", "=skipped", "NOEQUALS", " KEY =v=w"])
    assert request.env == {"CNI_COMMAND": "ADD", "KEY": "v=w"}
    assert request.config == b"data"


def test_new_cni_request_from_mapping():
    env = {"CNI_NETNS": "/var/run/netns/x", "CNI_ARGS": "K8S_POD_NAME=p"}
    request = new_cni_request(b"{}", env)
    assert request.env == env
    assert request.config == b"{}"


def test_post_request_sends_env_and_config(daemon):
    rundir, server = daemon
    server.reply = (200, json.dumps({"Result": RESULT_100}).encode())
    stdin = _config(rundir)
    env = {"CNI_COMMAND": "ADD", "CNI_CONTAINERID": "123456789"}

    result, version = post_request(stdin, env)

    assert result == RESULT_100
    assert version == "0.4.0"
    path, body = server.requests[-1]
    assert path == "/cni"
    sent = Request.from_json(body)
    assert sent.env == env
    assert sent.config == stdin


def test_post_request_empty_body(daemon):
    rundir, server = daemon
    result, version = post_request(_config(rundir, "0.3.1"), {})
    assert result is None
    assert version == "0.3.1"


def test_post_request_error_status(daemon):
    rundir, server = daemon
    server.reply = (400, b"bad things")
    with pytest.raises(CNIRequestError, match="StdinData:"):
        post_request(_config(rundir), {})


def test_post_request_invalid_config():
    with pytest.raises(CNIRequestError, match="invalid CNI configuration passed to multus-shim"):
        post_request(b"[", {})


def test_cmd_add_converts_to_requested_version(daemon):
    rundir, server = daemon
    server.reply = (200, json.dumps({"Result": RESULT_100}).encode())
    out = io.StringIO()
    cmd_add(_config(rundir, "0.4.0"), {"CNI_COMMAND": "ADD"}, out)
    printed = json.loads(out.getvalue())
    assert printed["cniVersion"] == "0.4.0"
    assert printed["ips"][0]["version"] == "4"
    assert printed["routes"] == RESULT_100["routes"]


def test_cmd_add_legacy_layout(daemon):
    rundir, server = daemon
    server.reply = (200, json.dumps({"Result": RESULT_100}).encode())
    out = io.StringIO()
    cmd_add(_config(rundir, "0.2.0"), {"CNI_COMMAND": "ADD"}, out)
    printed = json.loads(out.getvalue())
    assert printed["ip4"]["ip"] == "10.1.1.103/24"
    assert printed["ip4"]["routes"] == RESULT_100["routes"]
    assert "ips" not in printed
    assert "ip6" not in printed


def test_cmd_add_without_result_raises(daemon):
    rundir, server = daemon
    with pytest.raises(CNIRequestError, match="CmdAdd \\(shim\\)"):
        cmd_add(_config(rundir), {"CNI_COMMAND": "ADD"}, io.StringIO())


def test_cmd_check_success_and_failure(daemon):
    rundir, server = daemon
    cmd_check(_config(rundir), {"CNI_COMMAND": "CHECK"})
    assert server.requests[-1][0] == "/cni"
    server.reply = (400, b"failed")
    with pytest.raises(CNIRequestError, match="CmdCheck \\(shim\\)"):
        cmd_check(_config(rundir), {"CNI_COMMAND": "CHECK"})


def test_cmd_del_swallows_errors(daemon):
    rundir, server = daemon
    server.reply = (500, b"failed")
    assert cmd_del(_config(rundir), {"CNI_COMMAND": "DEL"}) is None
    path, body = server.requests[-1]
    assert path == "/cni"
    assert Request.from_json(body).env == {"CNI_COMMAND": "DEL"}