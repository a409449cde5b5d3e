"""Settings read from environment variables."""

from __future__ import annotations

import logging
import os
import re
from typing import Any

__all__ = [
    "ENV_WARM_IP_TARGET",
    "ENV_WARM_ENI_TARGET",
    "ENV_MAX_ENI",
    "ENV_CUSTOM_NETWORK_CFG",
    "ENV_DISABLE_INTROSPECTION",
    "ENV_DISABLE_METRICS",
    "ENV_INTROSPECTION_BIND_ADDRESS",
    "NO_WARM_IP_TARGET",
    "DEFAULT_WARM_ENI_TARGET",
    "DEFAULT_MAX_ENI",
    "DEFAULT_INTROSPECTION_BIND_ADDRESS",
    "parse_bool",
    "get_env_bool",
    "disable_introspection",
    "disable_metrics",
    "use_custom_network_cfg",
    "get_warm_eni_target",
    "get_warm_ip_target",
    "resolve_max_eni",
    "introspection_bind_address",
    "get_config_for_debug",
]

log = logging.getLogger(__name__)

ENV_WARM_IP_TARGET = "WARM_IP_TARGET"
NO_WARM_IP_TARGET = 0

ENV_WARM_ENI_TARGET = "WARM_ENI_TARGET"
DEFAULT_WARM_ENI_TARGET = 1

ENV_MAX_ENI = "MAX_ENI"
DEFAULT_MAX_ENI = -1

ENV_CUSTOM_NETWORK_CFG = "AWS_VPC_K8S_CNI_CUSTOM_NETWORK_CFG"
ENV_DISABLE_INTROSPECTION = "DISABLE_INTROSPECTION"
ENV_DISABLE_METRICS = "DISABLE_METRICS"
ENV_INTROSPECTION_BIND_ADDRESS = "INTROSPECTION_BIND_ADDRESS"
DEFAULT_INTROSPECTION_BIND_ADDRESS = "127.0.0.1:61679"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})
_INTEGER = re.compile(r"[+-]?[0-9]+")


def parse_bool(value: str) -> bool:
    """Parse a boolean the strict way: 1/t/true or 0/f/false in a few spellings."""
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean {value!r}")


def _parse_int(value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid integer {value!r}")
    return int(value)


def get_env_bool(name: str, default: bool) -> bool:
    """Boolean from the environment; unset, empty or malformed gives the default."""
    value = os.environ.get(name, "")
    if value:
        try:
            return parse_bool(value)
        except ValueError as err:
            log.error("Failed to parse %s, using default `%s`: %s", name, default, err)
    return default


def disable_introspection() -> bool:
    return get_env_bool(ENV_DISABLE_INTROSPECTION, False)


def disable_metrics() -> bool:
    return get_env_bool(ENV_DISABLE_METRICS, False)


def use_custom_network_cfg() -> bool:
    """Whether pods use the subnet and security groups from an ENIConfig."""
    return get_env_bool(ENV_CUSTOM_NETWORK_CFG, False)


def get_warm_eni_target() -> int:
    """WARM_ENI_TARGET, or 1 when unset, malformed or negative."""
    value = os.environ.get(ENV_WARM_ENI_TARGET)
    if value is None:
        return DEFAULT_WARM_ENI_TARGET
    try:
        target = _parse_int(value)
    except ValueError:
        return DEFAULT_WARM_ENI_TARGET
    if target < 0:
        return DEFAULT_WARM_ENI_TARGET
    log.debug("Using WARM_ENI_TARGET %d", target)
    return target


def get_warm_ip_target() -> int:
    """WARM_IP_TARGET, or 0 (no target) when unset, malformed or negative."""
    value = os.environ.get(ENV_WARM_IP_TARGET)
    if value is None:
        return NO_WARM_IP_TARGET
    try:
        target = _parse_int(value)
    except ValueError:
        return NO_WARM_IP_TARGET
    if target >= 0:
        log.debug("Using WARM_IP_TARGET %d", target)
        return target
    return NO_WARM_IP_TARGET


def resolve_max_eni(instance_max_eni: int) -> int:
    """The lesser of the instance ENI limit and MAX_ENI; MAX_ENI below 1 is ignored."""
    env_max = DEFAULT_MAX_ENI
    value = os.environ.get(ENV_MAX_ENI)
    if value is not None:
        try:
            parsed = _parse_int(value)
        except ValueError:
            parsed = DEFAULT_MAX_ENI
        if parsed >= 1:
            log.debug("Using MAX_ENI %d", parsed)
            env_max = parsed
    if 1 <= env_max < instance_max_eni:
        return env_max
    return instance_max_eni


def introspection_bind_address() -> str:
    return os.environ.get(ENV_INTROSPECTION_BIND_ADDRESS, DEFAULT_INTROSPECTION_BIND_ADDRESS)


def get_config_for_debug() -> dict[str, Any]:
    """Active values of the ipamd configuration variables."""
    return {
        ENV_WARM_IP_TARGET: get_warm_ip_target(),
        ENV_WARM_ENI_TARGET: get_warm_eni_target(),
        ENV_CUSTOM_NETWORK_CFG: use_custom_network_cfg(),
    }