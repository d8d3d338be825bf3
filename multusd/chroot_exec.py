"""Run CNI plugin binaries, optionally inside a chroot of the host filesystem."""

from __future__ import annotations

import errno
import functools
import json
import os
import signal
import subprocess
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import IO, Any

_RUN_ATTEMPTS = 6


class PluginError(Exception):
    """A CNI plugin failure, shaped like the CNI error object."""

    def __init__(self, msg: str = "", code: int = 0, details: str = "") -> None:
        super().__init__(msg)
        self.msg = msg
        self.code = code
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.msg}; {self.details}"
        return self.msg


def _describe_cause(returncode: Any) -> str:
    if isinstance(returncode, int):
        if returncode < 0:
            name = signal.strsignal(-returncode) or str(-returncode)
            return f"signal: {name.lower()}"
        return f"exit status {returncode}"
    return str(returncode)


def plugin_error(returncode: Any, stdout: bytes, stderr: bytes) -> PluginError:
    """Build the error for a failed plugin run from its exit cause and output.

    ``returncode`` is the process exit code, or the exception that kept the
    plugin from running.
    """
    if not stdout:
        if not stderr:
            return PluginError(
                f"netplugin failed with no error message: {_describe_cause(returncode)}"
            )
        return PluginError(f"netplugin failed: {json.dumps(stderr.decode(errors='replace'))}")

    text = stdout.decode(errors="replace")
    try:
        parsed = json.loads(stdout)
        if parsed is None:
            return PluginError()
        if not isinstance(parsed, dict):
            raise ValueError(f"cannot unmarshal {type(parsed).__name__} into error object")
        code = parsed.get("code", 0)
        msg = parsed.get("msg", "")
        details = parsed.get("details", "")
        if not isinstance(code, int) or not isinstance(msg, str) or not isinstance(details, str):
            raise ValueError("error object has fields of the wrong type")
        return PluginError(msg, code, details)
    except ValueError as perr:
        return PluginError(
            f"netplugin failed but error parsing its diagnostic message "
            f"{json.dumps(text)}: {perr}"
        )


def find_in_path(plugin: str, paths: Iterable[str | os.PathLike[str]]) -> str:
    """Return the first regular file named ``plugin`` in one of ``paths``."""
    if not plugin:
        raise ValueError("no plugin name provided")
    if os.sep in plugin or (os.altsep and os.altsep in plugin):
        raise ValueError(f"invalid plugin name: {plugin}")
    dirs = [os.fspath(p) for p in paths]
    if not dirs:
        raise ValueError("no paths provided")
    for directory in dirs:
        candidate = os.path.join(directory, plugin)
        if os.path.isfile(candidate):
            return candidate
    raise FileNotFoundError(f'failed to find plugin "{plugin}" in path [{" ".join(dirs)}]')


def _environment(environ: Iterable[str] | Mapping[str, str] | None) -> dict[str, str] | None:
    if environ is None:
        return None
    if isinstance(environ, Mapping):
        return dict(environ)
    env: dict[str, str] = {}
    for item in environ:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value
    return env


def _is_text_busy(err: BaseException) -> bool:
    if isinstance(err, OSError) and err.errno == errno.ETXTBSY:
        return True
    return "text file busy" in str(err).lower()


@dataclass
class ChrootExec:
    """Executes plugins with the filesystem root changed to ``chroot_dir``.

    An empty ``chroot_dir`` runs plugins without changing root.
    """

    chroot_dir: str = ""
    stderr: IO[Any] | None = None
    retry_delay: float = 1.0

    def exec_plugin(
        self,
        plugin_path: str | os.PathLike[str],
        stdin_data: bytes | None,
        environ: Iterable[str] | Mapping[str, str] | None,
    ) -> bytes:
        """Run the plugin with ``stdin_data`` on its stdin and return its stdout."""
        env = _environment(environ)
        preexec = functools.partial(os.chroot, self.chroot_dir) if self.chroot_dir else None
        for _ in range(_RUN_ATTEMPTS):
            try:
                completed = subprocess.run(
                    [os.fspath(plugin_path)],
                    input=stdin_data or b"",
                    capture_output=True,
                    env=env,
                    preexec_fn=preexec,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError) as err:
                # The plugin may be in the middle of being written; wait and retry.
                if _is_text_busy(err):
                    time.sleep(self.retry_delay)
                    continue
                raise plugin_error(err, b"", b"") from err
            if completed.returncode != 0:
                raise plugin_error(completed.returncode, completed.stdout, completed.stderr)
            self._forward_stderr(completed.stderr)
            return completed.stdout
        return b""

    def find_in_path(self, plugin: str, paths: Iterable[str | os.PathLike[str]]) -> str:
        """Locate a plugin binary in ``paths``."""
        return find_in_path(plugin, paths)

    def _forward_stderr(self, data: bytes) -> None:
        if self.stderr is None or not data:
            return
        target = getattr(self.stderr, "buffer", self.stderr)
        try:
            target.write(data)
        except (OSError, TypeError, ValueError):
            pass