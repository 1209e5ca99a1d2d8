# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/config/settings.py
"""
Controller settings.

Loaded once at startup (YAML files merged in order, then environment
overrides) and handed to the engine and builders as a value.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from ..core.exceptions import ValidationError


@dataclass(frozen=True)
class MigrationSettings:
    virt_v2v_image_cold: str = "quay.io/kubev2v/forklift-virt-v2v:latest"
    virt_v2v_image_warm: str = "quay.io/kubev2v/forklift-virt-v2v-warm:latest"
    # Skip the /dev/kvm device request on conversion and consumer pods.
    virt_v2v_dont_request_kvm: bool = False
    # Keep CDI importer pods after precopy so their logs survive.
    retain_precopy_importer_pods: bool = False


@dataclass(frozen=True)
class OsMapSettings:
    vsphere: str = "forklift-vsphere-osmap"
    ovirt: str = "forklift-ovirt-osmap"
    openstack: str = ""


@dataclass(frozen=True)
class ConversionSettings:
    port: int = 8080
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 30.0
    metrics_port: int = 2112


@dataclass(frozen=True)
class ConflictSettings:
    # Attempts for create-after-deleting a stale object left by an earlier
    # migration of the same plan and VM. 1 disables deletion entirely.
    recreate_attempts: int = 2


@dataclass(frozen=True)
class Settings:
    migration: MigrationSettings = field(default_factory=MigrationSettings)
    os_map: OsMapSettings = field(default_factory=OsMapSettings)
    conversion: ConversionSettings = field(default_factory=ConversionSettings)
    conflict: ConflictSettings = field(default_factory=ConflictSettings)
    # Namespace the controller runs in; OS map config maps live here.
    operator_namespace: str = "openshift-mtv"
    template_namespace: str = "openshift"

    def os_map_name(self, provider_type: str) -> str:
        return str(getattr(self.os_map, provider_type, "") or "")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        return _build(cls, data or {}, path="settings")

    @classmethod
    def load(cls, paths: Sequence[Path] = (), env: Optional[Mapping[str, str]] = None) -> "Settings":
        merged: Dict[str, Any] = {}
        for p in paths:
            merged = _deep_merge(merged, load_yaml(Path(p)))
        settings = cls.from_dict(merged)
        return settings.with_env(os.environ if env is None else env)

    def with_env(self, env: Mapping[str, str]) -> "Settings":
        migration = self.migration
        if env.get("VIRT_V2V_IMAGE"):
            migration = replace(migration, virt_v2v_image_cold=env["VIRT_V2V_IMAGE"])
        if env.get("VIRT_V2V_WARM_IMAGE"):
            migration = replace(migration, virt_v2v_image_warm=env["VIRT_V2V_WARM_IMAGE"])
        if "VIRT_V2V_DONT_REQUEST_KVM" in env:
            migration = replace(migration, virt_v2v_dont_request_kvm=_as_bool(env["VIRT_V2V_DONT_REQUEST_KVM"]))
        if "RETAIN_PRECOPY_IMPORTER_PODS" in env:
            migration = replace(
                migration, retain_precopy_importer_pods=_as_bool(env["RETAIN_PRECOPY_IMPORTER_PODS"])
            )
        operator_namespace = env.get("POD_NAMESPACE") or self.operator_namespace
        return replace(self, migration=migration, operator_namespace=operator_namespace)


def load_yaml(path: Path) -> Dict[str, Any]:
    path = Path(path).expanduser()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ValidationError(code=2, msg=f"settings file not found: {path}", cause=e)
    except yaml.YAMLError as e:
        raise ValidationError(code=2, msg=f"invalid YAML in {path}", cause=e)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(code=2, msg=f"settings file must hold a mapping: {path}")
    return data


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _deep_merge(base: Dict[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = _deep_merge(dict(out[k]), v)
        else:
            out[k] = v
    return out


def _build(cls: Any, data: Mapping[str, Any], *, path: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValidationError(code=2, msg=f"{path} must be a mapping")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValidationError(code=2, msg=f"unknown {path} key(s): {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        default = known[name].default_factory() if callable(known[name].default_factory) else known[name].default
        if is_dataclass(default):
            kwargs[name] = _build(type(default), value or {}, path=f"{path}.{name}")
        elif isinstance(default, bool):
            kwargs[name] = _as_bool(value)
        elif isinstance(default, (int, float)) and not isinstance(value, (int, float)):
            try:
                kwargs[name] = type(default)(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(code=2, msg=f"{path}.{name}: expected a number, got {value!r}", cause=e)
        else:
            kwargs[name] = value
    return cls(**kwargs)
