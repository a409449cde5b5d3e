"""The ENIConfig custom resource (crd.k8s.amazonaws.com/v1alpha1)."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

__all__ = ["GROUP_NAME", "VERSION", "API_VERSION", "KIND", "ENIConfigSpec", "ENIConfig"]

GROUP_NAME = "crd.k8s.amazonaws.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP_NAME}/{VERSION}"
KIND = "ENIConfig"


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{what} must be an object, got {type(value).__name__}")
    return value


def _string(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{what} must be a string, got {type(value).__name__}")
    return value


@dataclass
class ENIConfigSpec:
    """Subnet and security groups to use for pod ENIs."""

    security_groups: list[str] = field(default_factory=list)
    subnet: str = ""


@dataclass
class ENIConfig:
    """An ENIConfig resource."""

    spec: ENIConfigSpec = field(default_factory=ENIConfigSpec)
    metadata: dict[str, Any] = field(default_factory=dict)
    api_version: str = API_VERSION
    kind: str = KIND

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ENIConfig:
        """Build from the decoded JSON/YAML form; wrong field types raise TypeError."""
        data = _mapping(data, "ENIConfig")
        spec_data = _mapping(data.get("spec"), "spec")
        groups = spec_data.get("securityGroups")
        if groups is None:
            groups = []
        if not isinstance(groups, list):
            raise TypeError("spec.securityGroups must be a list")
        security_groups = [_string(group, "spec.securityGroups item") for group in groups]
        spec = ENIConfigSpec(
            security_groups=security_groups,
            subnet=_string(spec_data.get("subnet"), "spec.subnet"),
        )
        return cls(
            spec=spec,
            metadata=dict(_mapping(data.get("metadata"), "metadata")),
            api_version=_string(data.get("apiVersion"), "apiVersion"),
            kind=_string(data.get("kind"), "kind"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.api_version:
            result["apiVersion"] = self.api_version
        if self.kind:
            result["kind"] = self.kind
        result["metadata"] = dict(self.metadata)
        result["spec"] = {
            "securityGroups": list(self.spec.security_groups),
            "subnet": self.spec.subnet,
        }
        result["status"] = {}
        return result