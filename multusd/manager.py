"""Watch the primary CNI configuration and keep the multus configuration in step with it."""

from __future__ import annotations

import copy
import enum
import json
import logging
import os
import threading
from collections.abc import Callable
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from multusd.generator import (
    MultusConf,
    check_version_compatibility,
    find_master_plugin,
)

logger = logging.getLogger(__name__)

MULTUS_CONFIG_FILE_NAME = "00-multus.conf"
USER_RW_PERMISSION = 0o600
_PRIMARY_DISCOVERY_TRIES = 120


class ConfigError(Exception):
    """Raised when the multus or primary CNI configuration cannot be handled."""


class EventKind(enum.Enum):
    """The kinds of filesystem change the manager reacts to."""

    CREATE = "create"
    WRITE = "write"
    REMOVE = "remove"
    RENAME = "rename"


def _join(directory: str, name: str) -> str:
    """Join path elements, keeping ``name`` inside ``directory`` even when absolute."""
    if not directory:
        return os.path.normpath(name)
    return os.path.normpath(f"{directory}/{name}")


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def _exit_for_restart() -> None:
    os._exit(2)


def override_cni_version(cni_config_file: str | os.PathLike[str], cni_version: str) -> None:
    """Rewrite the ``cniVersion`` of a CNI configuration file."""
    path = os.fspath(cni_config_file)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as err:
        raise ConfigError(f"failed to read cni config {path}: {err}") from err
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"configuration is not a JSON object: {data!r}")
    except ValueError as err:
        raise ConfigError(f"failed to unmarshall cni config {path}: {err}") from err

    data["cniVersion"] = cni_version
    encoded = json.dumps(data, separators=(",", ":"), sort_keys=True).encode()
    try:
        _write_file(path, encoded, 0o644)
    except OSError as err:
        raise ConfigError(f"couldn't update cluster network config: {err}") from err


def get_primary_cni_plugin_name(autoconfig_dir: str | os.PathLike[str]) -> str:
    """Return the file name of the primary CNI configuration in ``autoconfig_dir``."""
    try:
        return find_master_plugin(autoconfig_dir, _PRIMARY_DISCOVERY_TRIES)
    except OSError as err:
        raise ConfigError(f"failed to find the cluster master CNI plugin: {err}") from err


def primary_cni_data(path: str | os.PathLike[str]) -> Any:
    """Read and decode the primary CNI configuration file."""
    path = os.fspath(path)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as err:
        raise ConfigError(f"failed to read the cluster primary CNI config {path}: {err}") from err
    try:
        return json.loads(raw)
    except ValueError as err:
        raise ConfigError(f"failed to unmarshall primary CNI config: {err}") from err


class _EventForwarder(FileSystemEventHandler):
    def __init__(self, manager: Manager) -> None:
        super().__init__()
        self._manager = manager

    def _dispatch(self, path: Any, kind: EventKind) -> None:
        try:
            self._manager.handle_event(os.fsdecode(path), kind)
        except Exception:  # noqa: BLE001 - a watcher thread must keep running
            logger.exception("failed to handle event %s on %s", kind.value, path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type == "created":
            self._dispatch(event.src_path, EventKind.CREATE)
        elif event.event_type == "modified":
            self._dispatch(event.src_path, EventKind.WRITE)
        elif event.event_type == "deleted":
            self._dispatch(event.src_path, EventKind.REMOVE)
        elif event.event_type == "moved":
            self._dispatch(event.src_path, EventKind.RENAME)
            self._dispatch(event.dest_path, EventKind.CREATE)


class Manager:
    """Regenerates the multus configuration whenever the primary CNI config changes."""

    def __init__(
        self,
        config: MultusConf,
        default_cni_plugin_name: str,
        *,
        on_readiness_lost: Callable[[], None] | None = None,
    ) -> None:
        config = copy.deepcopy(config)
        autoconfig_dir = config.multus_autoconfig_dir

        if config.force_cni_version:
            override_cni_version(_join(autoconfig_dir, default_cni_plugin_name), config.cni_version)

        readiness_dir = ""
        if config.readiness_indicator_file:
            readiness_dir = os.path.dirname(config.readiness_indicator_file) or "."
        self._watch_dirs = self._check_watch_dirs(autoconfig_dir, readiness_dir)

        if default_cni_plugin_name == f"{autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME}":
            raise ConfigError(
                f"cannot specify {autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME} "
                "to prevent recursive config load"
            )

        self.multus_config = config
        self.multus_config_dir = autoconfig_dir
        self.multus_config_file_path = _join(config.cni_config_dir, MULTUS_CONFIG_FILE_NAME)
        self.primary_cni_config_path = _join(autoconfig_dir, default_cni_plugin_name)
        self.readiness_indicator_file_path = config.readiness_indicator_file
        self.cni_config_data: dict[str, Any] = {}
        self.on_readiness_lost = on_readiness_lost or _exit_for_restart

        self._readiness_norm = (
            os.path.normpath(self.readiness_indicator_file_path)
            if self.readiness_indicator_file_path
            else ""
        )
        self._lock = threading.RLock()
        self._observer: Any = None

        try:
            self._load_primary_cni_config_from_file()
        except (ConfigError, ValueError) as err:
            raise ConfigError(
                f"failed to load the primary CNI configuration as a multus delegate "
                f"with error '{err}'"
            ) from err

        if config.override_network_name:
            try:
                self.override_network_name()
            except ConfigError as err:
                raise ConfigError(f"could not override the network name: {err}") from err

    @staticmethod
    def _check_watch_dirs(config_dir: str, readiness_dir: str) -> list[str]:
        if not os.path.isdir(config_dir):
            raise ConfigError(
                f'failed to add watch on "{config_dir}" for cni config: no such directory'
            )
        dirs = [config_dir]
        if readiness_dir and readiness_dir != config_dir:
            if not os.path.isdir(readiness_dir):
                raise ConfigError(
                    f'failed to add watch on "{readiness_dir}" for readinessIndicator: '
                    "no such directory"
                )
            dirs.append(readiness_dir)
        return dirs

    def _load_primary_cni_config_from_file(self) -> None:
        try:
            data = primary_cni_data(self.primary_cni_config_path)
        except ConfigError as err:
            raise ConfigError(
                f"failed to access the primary CNI configuration from "
                f"{self.primary_cni_config_path}: {err}"
            ) from err
        check_version_compatibility(self.multus_config, data)
        if not isinstance(data, dict):
            raise ConfigError(f"primary CNI configuration is not a JSON object: {data!r}")
        self.cni_config_data = data
        self.multus_config.cluster_network = self.primary_cni_config_path
        self.multus_config.set_capabilities(data)

    def override_network_name(self) -> None:
        """Name the multus network after the delegated primary CNI network."""
        if "name" not in self.cni_config_data:
            raise ConfigError("failed to access delegate CNI plugin name")
        name = self.cni_config_data["name"]
        if not isinstance(name, str):
            raise ConfigError(f"wrong delegate CNI plugin name format: {name!r}")
        if not name:
            raise ConfigError(
                "the primary CNI Configuration does not feature the network name: "
                f"{self.cni_config_data}"
            )
        self.multus_config.name = name

    def generate_config(self) -> str:
        """Reload the primary config and return the multus configuration, or "" on failure."""
        with self._lock:
            try:
                self._load_primary_cni_config_from_file()
            except (ConfigError, ValueError):
                logger.error(
                    "failed to read the primary CNI plugin config from %s",
                    self.primary_cni_config_path,
                )
                return ""
            return self.multus_config.generate()

    def persist_multus_config(self, config: str) -> str:
        """Write ``config`` to the multus configuration file and return its path."""
        path = self.multus_config_file_path
        if os.path.exists(path):
            logger.debug("Overwriting Multus CNI configuration @ %s", path)
        else:
            logger.debug("Writing Multus CNI configuration @ %s", path)
        _write_file(path, config.encode(), USER_RW_PERMISSION)
        return path

    def should_regenerate_config(self, path: str | os.PathLike[str], kind: EventKind | str) -> bool:
        """Tell whether a filesystem event calls for regenerating the configuration."""
        kind = EventKind(kind)
        path = os.path.normpath(os.fsdecode(path))
        if self._readiness_norm and path == self._readiness_norm:
            return kind in (EventKind.REMOVE, EventKind.RENAME)
        if path == os.path.normpath(self.primary_cni_config_path):
            return kind in (EventKind.WRITE, EventKind.CREATE)
        logger.debug("skipping un-related event %s on %s", kind.value, path)
        return False

    def handle_event(self, path: str | os.PathLike[str], kind: EventKind | str) -> bool:
        """React to one filesystem event; return whether it was acted upon."""
        kind = EventKind(kind)
        path = os.path.normpath(os.fsdecode(path))
        with self._lock:
            if not self.should_regenerate_config(path, kind):
                return False
            logger.debug("process event: %s on %s", kind.value, path)

            if self._readiness_norm and path == self._readiness_norm:
                logger.info("readiness indicator file is gone. restart multus-daemon")
                try:
                    os.remove(self.multus_config_file_path)
                except FileNotFoundError:
                    pass
                self.on_readiness_lost()
                return True

            updated = self.generate_config()
            logger.debug("Re-generated MultusCNI config: %s", updated)
            try:
                self.persist_multus_config(updated)
            except OSError as err:
                logger.error("failed to persist the multus configuration: %s", err)
            try:
                self._load_primary_cni_config_from_file()
            except (ConfigError, ValueError) as err:
                logger.error("failed to reload the updated config: %s", err)
            return True

    def start(self) -> str:
        """Write the current configuration and start watching for changes."""
        if self._observer is not None:
            raise RuntimeError("manager already started")
        generated = self.generate_config()
        logger.info("Generated MultusCNI config: %s", generated)
        try:
            path = self.persist_multus_config(generated)
        except OSError as err:
            raise ConfigError(f"failed to persist the multus configuration: {err}") from err

        observer = Observer()
        handler = _EventForwarder(self)
        for directory in self._watch_dirs:
            observer.schedule(handler, directory, recursive=False)
        observer.start()
        self._observer = observer
        logger.info("started to watch file %s", self.primary_cni_config_path)
        return path

    def stop(self) -> None:
        """Stop watching and remove the generated multus configuration file."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()
        logger.info("Delete old config @ %s", self.multus_config_file_path)
        try:
            os.remove(self.multus_config_file_path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> Manager:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


def new_manager(config: MultusConf) -> Manager:
    """Create a manager, discovering the primary CNI config when none is named."""
    plugin_name = config.multus_master_cni
    if not plugin_name:
        try:
            plugin_name = get_primary_cni_plugin_name(config.multus_autoconfig_dir)
        except ConfigError as err:
            logger.error("failed to find the primary CNI plugin: %s", err)
            raise
    return Manager(config, plugin_name)