"""Edit default-gateway routes stored in CNI result cache files."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Union

logger = logging.getLogger(__name__)

IPV4_DEFAULT_DST = "0.0.0.0/0"
IPV6_DEFAULT_DST = "::0/0"
IPV6_DEFAULT_DST_LEGACY = "::/0"

_LEGACY_VERSIONS = frozenset({"0.1.0", "0.2.0"})
_CURRENT_VERSIONS = frozenset({"0.3.0", "0.3.1", "0.4.0", "1.0.0"})

Gateway = Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]


class CacheFormatError(ValueError):
    """Raised when a cached CNI result does not have the expected shape."""


def _as_ipv4(gateway: Gateway) -> ipaddress.IPv4Address | None:
    """Return the IPv4 form of a gateway, or None when it is a true IPv6 address."""
    address = ipaddress.ip_address(gateway)
    if isinstance(address, ipaddress.IPv4Address):
        return address
    return address.ipv4_mapped


def _gateway_text(gateway: Gateway) -> tuple[bool, str]:
    """Return whether the gateway is IPv4 and its canonical text."""
    v4 = _as_ipv4(gateway)
    if v4 is not None:
        return True, str(v4)
    return False, str(ipaddress.ip_address(gateway))


def delete_default_gw_routes(routes: list[Any], dst_gw: str) -> list[Any]:
    """Return the routes that carry a destination other than ``dst_gw``.

    Routes without a ``dst`` key are dropped.
    """
    kept = []
    for route in routes:
        if not isinstance(route, dict):
            raise CacheFormatError(f"wrong route format: {route}")
        if "dst" not in route:
            continue
        dst = route["dst"]
        if not isinstance(dst, str):
            raise CacheFormatError(f"wrong dst format: {dst}")
        if dst != dst_gw:
            kept.append(route)
    return kept


def _cni_version(result: dict[str, Any]) -> str | None:
    """Return the result's version, or None when the legacy layout applies."""
    if "cniVersion" not in result:
        return None
    version = result["cniVersion"]
    if not isinstance(version, str):
        raise CacheFormatError(f"wrong cniVersion format: {version}")
    if version in _LEGACY_VERSIONS:
        return None
    if version not in _CURRENT_VERSIONS:
        raise CacheFormatError(f"not supported version: {version}")
    return version


def _legacy_section(result: dict[str, Any], key: str) -> dict[str, Any] | None:
    if key not in result:
        return None
    section = result[key]
    if not isinstance(section, dict):
        raise CacheFormatError(f"wrong {key} format: {section}")
    return section


def _section_routes(section: dict[str, Any], key: str) -> list[Any] | None:
    if "routes" not in section:
        return None
    routes = section["routes"]
    if not isinstance(routes, list):
        raise CacheFormatError(f"wrong {key} routes format: {routes}")
    return routes


def _delete_default_gw_result_legacy(
    result: dict[str, Any], ipv4: bool, ipv6: bool
) -> dict[str, Any]:
    for enabled, key, dst in ((ipv4, "ip4", IPV4_DEFAULT_DST), (ipv6, "ip6", IPV6_DEFAULT_DST)):
        if not enabled:
            continue
        section = _legacy_section(result, key)
        if section is None:
            continue
        routes = _section_routes(section, key)
        if routes is not None:
            section["routes"] = delete_default_gw_routes(routes, dst)
    return result


def delete_default_gw_result(
    result: dict[str, Any], ipv4: bool, ipv6: bool
) -> dict[str, Any]:
    """Remove IPv4 and/or IPv6 default routes from a CNI result, in place."""
    if _cni_version(result) is None:
        return _delete_default_gw_result_legacy(result, ipv4, ipv6)

    if "routes" not in result:
        return result
    routes = result["routes"]
    if not isinstance(routes, list):
        raise CacheFormatError(f"wrong routes format: {routes}")

    if ipv4:
        routes = delete_default_gw_routes(routes, IPV4_DEFAULT_DST)
    if ipv6:
        routes = delete_default_gw_routes(routes, IPV6_DEFAULT_DST)
    result["routes"] = routes
    return result


def _add_default_gw_result_legacy(
    result: dict[str, Any], gateways: Iterable[Gateway]
) -> dict[str, Any]:
    for gateway in gateways:
        is_v4, text = _gateway_text(gateway)
        key, dst = ("ip4", IPV4_DEFAULT_DST) if is_v4 else ("ip6", IPV6_DEFAULT_DST_LEGACY)
        section = _legacy_section(result, key)
        if section is None:
            continue
        routes = _section_routes(section, key) or []
        section["routes"] = [*routes, {"dst": dst, "gw": text}]
    return result


def add_default_gw_result(
    result: dict[str, Any], gateways: Iterable[Gateway]
) -> dict[str, Any]:
    """Append a default route for each gateway to a CNI result, in place."""
    if _cni_version(result) is None:
        return _add_default_gw_result_legacy(result, gateways)

    routes: list[Any] = []
    if "routes" in result:
        routes = result["routes"]
        if not isinstance(routes, list):
            raise CacheFormatError(f"wrong routes format: {routes}")

    for gateway in gateways:
        is_v4, text = _gateway_text(gateway)
        dst = IPV4_DEFAULT_DST if is_v4 else IPV6_DEFAULT_DST
        routes.append({"dst": dst, "gw": text})
    result["routes"] = routes
    return result


def _load_cache(data: bytes | str) -> dict[str, Any]:
    try:
        cached = json.loads(data)
    except json.JSONDecodeError as err:
        raise CacheFormatError(f"invalid cache JSON: {err}") from err
    if not isinstance(cached, dict):
        raise CacheFormatError(f"cache is not a JSON object: {cached}")
    if "result" not in cached:
        raise CacheFormatError("cannot get result from cache")
    if not isinstance(cached["result"], dict):
        raise CacheFormatError(f"wrong result type: {cached['result']}")
    return cached


def _dump_cache(cached: dict[str, Any]) -> bytes:
    return json.dumps(cached, separators=(",", ":"), sort_keys=True).encode()


def delete_default_gw_cache_bytes(data: bytes | str, ipv4: bool, ipv6: bool) -> bytes:
    """Return cache contents with the default routes removed from its result."""
    cached = _load_cache(data)
    cached["result"] = delete_default_gw_result(cached["result"], ipv4, ipv6)
    return _dump_cache(cached)


def add_default_gw_cache_bytes(data: bytes | str, gateways: Iterable[Gateway]) -> bytes:
    """Return cache contents with default routes for ``gateways`` added."""
    cached = _load_cache(data)
    cached["result"] = add_default_gw_result(cached["result"], gateways)
    return _dump_cache(cached)


def cache_file_path(
    cache_dir: str | os.PathLike[str], net_name: str, container_id: str, if_name: str
) -> Path:
    """Return the path of the cached result for one attachment."""
    return Path(cache_dir) / "results" / f"{net_name}-{container_id}-{if_name}"


def _rewrite(path: Path, new_data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(new_data)


def delete_default_gw_cache(
    cache_dir: str | os.PathLike[str],
    net_name: str,
    container_id: str,
    if_name: str,
    ipv4: bool,
    ipv6: bool,
) -> None:
    """Remove default routes from the cached result file of an attachment."""
    path = cache_file_path(cache_dir, net_name, container_id, if_name)
    cache = path.read_bytes()
    logger.debug("delete default GW: updating cache from %s", cache.decode(errors="replace"))
    new_cache = delete_default_gw_cache_bytes(cache, ipv4, ipv6)
    logger.debug("delete default GW: new cache %s", new_cache.decode())
    _rewrite(path, new_cache)


def add_default_gw_cache(
    cache_dir: str | os.PathLike[str],
    net_name: str,
    container_id: str,
    if_name: str,
    gateways: Iterable[Gateway],
) -> None:
    """Add default routes to the cached result file of an attachment."""
    path = cache_file_path(cache_dir, net_name, container_id, if_name)
    cache = path.read_bytes()
    logger.debug("add default GW: updating cache from %s", cache.decode(errors="replace"))
    new_cache = add_default_gw_cache_bytes(cache, list(gateways))
    logger.debug("add default GW: new cache %s", new_cache.decode())
    _rewrite(path, new_cache)