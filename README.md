# multusd

Building blocks for the daemon side of a "thick" multi-network CNI plugin.
In that design a small shim forwards each CNI request over a unix socket to a
long-running daemon. The daemon builds the meta-plugin configuration from the
cluster's primary CNI config and runs delegate plugins, optionally inside a
chroot of the host filesystem.

This package is a library. It installs no commands.

## Modules

| Module | What it does |
| --- | --- |
| `multusd.cnicache` | Adds or removes default-gateway routes in cached CNI results. Handles the 0.1.0/0.2.0 layout and the 0.3.0, 0.3.1, 0.4.0 and 1.0.0 layout. |
| `multusd.api` | `Request` and `DelegateInterfaceAttributes`, the socket path, and `do_cni`, an HTTP client that talks over a unix socket. |
| `multusd.chroot_exec` | `ChrootExec` runs a CNI plugin binary, in a chroot if one is set, and retries while the binary is "text file busy". A failed plugin raises `PluginError`. |
| `multusd.shim` | The shim side: `shim_config`, `cmd_add`, `cmd_check` and `cmd_del` post the CNI call to the daemon's `/cni` endpoint. |
| `multusd.generator` | `MultusConf`: parses the daemon configuration, collects enabled capabilities and generates the shim configuration JSON. Also `check_version_compatibility` and `find_master_plugin`. |
| `multusd.manager` | `Manager` watches the primary CNI config with watchdog and rewrites `00-multus.conf` when that config changes. |
| `multusd.daemon_config` | `ControllerNetConf` and `load_daemon_net_conf`, `filesystem_pre_requirements` for the socket directory, and `get_listener` for the unix listening socket. |

## Editing a cached CNI result

The CNI runtime keeps each plugin result in a cache file at
`<cache_dir>/results/<net>-<container>-<ifname>`. These helpers rewrite the
default routes in that file:

```python
from multusd.cnicache import add_default_gw_cache, delete_default_gw_cache

# Drop the IPv4 default routes ("0.0.0.0/0"); keep the IPv6 ones
delete_default_gw_cache("/var/lib/cni", "mynet", "abc123", "net1", True, False)

# Add a default route through 10.1.1.1
add_default_gw_cache("/var/lib/cni", "mynet", "abc123", "net1", ["10.1.1.1"])
```

`delete_default_gw_cache_bytes` and `add_default_gw_cache_bytes` do the same
work on the raw JSON of a cache file and return the new bytes. Two cases raise
`CacheFormatError`: a result with an unexpected shape, and a `cniVersion`
that is not supported.

## Generating the meta-plugin configuration

```python
from multusd.generator import parse_multus_config
from multusd.manager import new_manager

conf = parse_multus_config("/etc/cni/net.d/multus.d/daemon-config.json")
manager = new_manager(conf)
print(manager.generate_config())
manager.start()      # writes 00-multus.conf and starts watching for changes
...
manager.stop()       # stops watching and removes the generated file
```

`Manager` can also be used as a context manager, which calls `start` and
`stop` for you.

If `multusMasterCNI` is not set, `new_manager` looks for the primary plugin
configuration in `multusAutoconfigDir`. It takes the first `.conf` or
`.conflist` file by name and skips files that start with `00-multus`. It
retries once a second, up to 120 times.

`ConfigError` is raised in these cases:

- no primary configuration is found;
- the primary configuration cannot be read or decoded;
- the primary configuration's `cniVersion` does not work with the top-level
  version. From 0.4.0 on, a delegate must also be at least 0.4.0.

A readiness indicator file may be configured. When it is removed or renamed,
the manager deletes `00-multus.conf` and calls `on_readiness_lost`. By
default that callback ends the process with exit status 2.

## Talking to the daemon

```python
from multusd.api import create_delegate_request, do_cni, get_api_endpoint, socket_path

req = create_delegate_request(
    "add", "abc123", "/var/run/netns/test", "net1",
    "default", "my-pod", "pod-uid", b'{"cniVersion": "0.4.0"}', None,
)
body = do_cni(get_api_endpoint("/delegate"), req, socket_path("/run/multus/"))
```

`do_cni` raises `CNIRequestError` in two cases: the request cannot be sent,
or the daemon answers with a status other than 200. `wait_until_api_ready`
polls `/healthz` until it answers, and raises after the timeout (60 seconds
by default).

## Running plugins in a chroot

```python
from multusd.chroot_exec import ChrootExec

runner = ChrootExec(chroot_dir="/hostroot")
output = runner.exec_plugin("/opt/cni/bin/bridge", b"{...}", ["CNI_COMMAND=ADD"])
```

When the plugin exits with an error, `PluginError` is raised. It carries the
plugin's CNI error object (`msg`, `code`, `details`), read from the JSON on
its stdout, or a message built from its stderr.

## What this package does not include

- **No daemon server.** Nothing here accepts requests on the socket or serves
  the `/cni`, `/delegate` and `/healthz` endpoints. The pieces to build one are
  here: `get_listener`, `filesystem_pre_requirements` and the `Request` type.
  Turning a request into a delegate plugin call is not.
- **No Kubernetes access.** Pods are not looked up, and there are no
  per-node certificates. `is_per_node_cert_enabled` only checks the
  configuration.
- **No live route changes.** Only cached CNI results are edited. Routes
  inside a network namespace are not touched.
- **No commands.** Nothing is installed on `PATH`. Call the functions from
  your own entry points.