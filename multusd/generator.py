"""The multus shim configuration and its generation from the primary CNI config."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from typing import Any

import semver

CONFIG_LIST_CAPABILITY_KEY = "plugins"
MULTUS_PLUGIN_NAME = "multus-shim"
SINGLE_CONFIG_CAPABILITY_KEY = "capabilities"
MULTUS_DEFAULT_NETWORK_NAME = "multus-cni-network"
DEFAULT_CNI_CONFIG_DIR = "/etc/cni/net.d"

# (attribute, JSON key, type, omitted when empty), in wire order.
_FIELDS: tuple[tuple[str, str, type, bool], ...] = (
    ("bin_dir", "binDir", str, True),
    ("capabilities", "capabilities", dict, True),
    ("cni_version", "cniVersion", str, False),
    ("log_file", "logFile", str, True),
    ("log_level", "logLevel", str, True),
    ("log_to_stderr", "logToStderr", bool, True),
    ("log_options", "logOptions", dict, True),
    ("name", "name", str, False),
    ("cluster_network", "clusterNetwork", str, True),
    ("namespace_isolation", "namespaceIsolation", bool, True),
    ("raw_non_isolated_namespaces", "globalNamespaces", str, True),
    ("readiness_indicator_file", "readinessindicatorfile", str, True),
    ("type", "type", str, False),
    ("cni_dir", "cniDir", str, True),
    ("cni_config_dir", "cniConfigDir", str, True),
    ("daemon_socket_dir", "daemonSocketDir", str, True),
    ("multus_config_file", "multusConfigFile", str, True),
    ("multus_master_cni", "multusMasterCNI", str, True),
    ("multus_autoconfig_dir", "multusAutoconfigDir", str, True),
    ("force_cni_version", "forceCNIVersion", bool, True),
    ("override_network_name", "overrideNetworkName", bool, True),
)
_BY_KEY = {spec[1]: spec for spec in _FIELDS}
_BY_FOLDED_KEY = {spec[1].lower(): spec for spec in _FIELDS}


def _to_json(data: Any) -> str:
    text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text


@dataclass
class MultusConf:
    """The multus configuration written for the shim."""

    bin_dir: str = ""
    capabilities: dict[str, bool] = field(default_factory=dict)
    cni_version: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    log_options: dict[str, Any] | None = None
    name: str = ""
    cluster_network: str = ""
    namespace_isolation: bool = False
    raw_non_isolated_namespaces: str = ""
    readiness_indicator_file: str = ""
    type: str = MULTUS_PLUGIN_NAME
    cni_dir: str = ""
    cni_config_dir: str = DEFAULT_CNI_CONFIG_DIR
    daemon_socket_dir: str = ""
    multus_config_file: str = "auto"
    multus_master_cni: str = ""
    multus_autoconfig_dir: str = ""
    force_cni_version: bool = False
    override_network_name: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form, leaving out empty optional fields."""
        data: dict[str, Any] = {}
        for attr, key, kind, omit_empty in _FIELDS:
            value = getattr(self, attr)
            if attr == "log_options":
                if value is not None:
                    data[key] = value
                continue
            if omit_empty and not value:
                continue
            if kind is dict:
                value = dict(sorted(value.items()))
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MultusConf:
        """Build a configuration from its wire form over the defaults.

        Keys match case-insensitively when no exact match exists; unknown keys are ignored.
        """
        if not isinstance(data, dict):
            raise ValueError(f"configuration must be a JSON object: {data!r}")
        conf = cls()
        for key, value in data.items():
            spec = _BY_KEY.get(key) or _BY_FOLDED_KEY.get(key.lower())
            if spec is None or value is None:
                continue
            attr, json_key, kind, _ = spec
            if not isinstance(value, kind):
                raise ValueError(f"wrong {json_key} format: {value!r}")
            if attr == "capabilities":
                if not all(isinstance(v, bool) for v in value.values()):
                    raise ValueError(f"wrong {json_key} format: {value!r}")
                value = {**conf.capabilities, **value}
            setattr(conf, attr, value)
        return conf

    def generate(self) -> str:
        """Clear the fields the shim does not need and return the JSON configuration."""
        self.cni_config_dir = ""
        self.multus_config_file = ""
        self.multus_autoconfig_dir = ""
        self.multus_master_cni = ""
        self.force_cni_version = False
        # The readiness indicator file is watched by the config manager instead.
        self.readiness_indicator_file = ""
        return _to_json(self.to_dict())

    def set_capabilities(self, cni_data: Any) -> None:
        """Enable every capability that the delegate configuration enables."""
        if not isinstance(cni_data, dict):
            raise ValueError("couldn't get cni config from delegate")
        plugins = cni_data.get(CONFIG_LIST_CAPABILITY_KEY, [])
        if not isinstance(plugins, list):
            raise ValueError(f"wrong {CONFIG_LIST_CAPABILITY_KEY} format: {plugins!r}")

        if plugins:
            enabled = [name for plugin in plugins for name in extract_capabilities(plugin)]
        else:
            enabled = extract_capabilities(cni_data)
        for name in enabled:
            self.capabilities[name] = True


def extract_capabilities(plugin_data: Any) -> list[str]:
    """Return the names of the capabilities enabled in one plugin configuration."""
    if not isinstance(plugin_data, dict):
        return []
    capabilities = plugin_data.get(SINGLE_CONFIG_CAPABILITY_KEY)
    if not isinstance(capabilities, dict):
        return []
    enabled = []
    for name, is_enabled in capabilities.items():
        if not isinstance(is_enabled, bool):
            raise ValueError(f"wrong capability value for {name}: {is_enabled!r}")
        if is_enabled:
            enabled.append(name)
    return enabled


def parse_multus_config(config_path: str | os.PathLike[str]) -> MultusConf:
    """Read the daemon configuration file into a MultusConf named for multus."""
    try:
        with open(config_path, "rb") as handle:
            raw = handle.read()
    except OSError as err:
        raise OSError(
            f"ParseMultusConfig failed to read the config file's contents: {err}"
        ) from err
    try:
        conf = MultusConf.from_dict(json.loads(raw))
    except ValueError as err:
        raise ValueError(f"failed to unmarshall the daemon configuration: {err}") from err
    conf.name = MULTUS_DEFAULT_NETWORK_NAME
    return conf


def check_version_compatibility(conf: MultusConf, delegate: Any) -> None:
    """Raise ValueError when a delegate is older than 0.4.0 but multus is not."""
    v040 = semver.Version.parse("0.4.0")
    try:
        multus_version = semver.Version.parse(conf.cni_version)
    except (ValueError, TypeError) as err:
        raise ValueError("couldn't get top level cni version") from err

    if multus_version < v040:
        return
    if not isinstance(delegate, dict) or not isinstance(delegate.get("cniVersion"), str):
        raise ValueError("couldn't get cni version of delegate")
    delegate_version = delegate["cniVersion"]
    if semver.Version.parse(delegate_version) < v040:
        raise ValueError(
            f"delegate cni version is {delegate_version} while top level cni version is "
            f"{conf.cni_version}"
        )


def _extension(name: str) -> str:
    idx = name.rfind(".")
    return name[idx:] if idx >= 0 else ""


def find_master_plugin(
    config_dir: str | os.PathLike[str], remaining_tries: int, delay: float = 1.0
) -> str:
    """Return the first CNI config file name in ``config_dir``, retrying while none exists."""
    while remaining_tries > 0:
        try:
            names = os.listdir(config_dir)
        except OSError as err:
            raise OSError(f"error when listing the CNI plugin configurations: {err}") from err
        configs = sorted(
            name
            for name in names
            if not name.startswith("00-multus") and _extension(name) in (".conf", ".conflist")
        )
        if configs:
            return configs[0]
        remaining_tries -= 1
        if remaining_tries > 0:
            time.sleep(delay)
    raise FileNotFoundError(f"could not find a plugin configuration in {os.fspath(config_dir)}")