# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/store/kinds.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Kind:
    api_version: str
    kind: str
    namespaced: bool = True

    def __str__(self) -> str:
        return self.kind


NAMESPACE = Kind("v1", "Namespace", namespaced=False)
SECRET = Kind("v1", "Secret")
CONFIG_MAP = Kind("v1", "ConfigMap")
POD = Kind("v1", "Pod")
PVC = Kind("v1", "PersistentVolumeClaim")
PV = Kind("v1", "PersistentVolume", namespaced=False)
JOB = Kind("batch/v1", "Job")
DATA_VOLUME = Kind("cdi.kubevirt.io/v1beta1", "DataVolume")
VIRTUAL_MACHINE = Kind("kubevirt.io/v1", "VirtualMachine")
VM_PREFERENCE = Kind("instancetype.kubevirt.io/v1beta1", "VirtualMachinePreference")
VM_CLUSTER_PREFERENCE = Kind("instancetype.kubevirt.io/v1beta1", "VirtualMachineClusterPreference", namespaced=False)
TEMPLATE = Kind("template.openshift.io/v1", "Template")
OPENSTACK_POPULATOR = Kind("forklift.konveyor.io/v1beta1", "OpenstackVolumePopulator")

_ALL = (
    NAMESPACE,
    SECRET,
    CONFIG_MAP,
    POD,
    PVC,
    PV,
    JOB,
    DATA_VOLUME,
    VIRTUAL_MACHINE,
    VM_PREFERENCE,
    VM_CLUSTER_PREFERENCE,
    TEMPLATE,
    OPENSTACK_POPULATOR,
)


def kind_of(obj: dict) -> Kind:
    """Resolve the Kind of a manifest from its apiVersion/kind fields."""
    api_version = obj.get("apiVersion", "")
    kind = obj.get("kind", "")
    for k in _ALL:
        if k.kind == kind and k.api_version == api_version:
            return k
    # Unknown kinds are assumed namespaced; cluster-scoped kinds must be registered above.
    return Kind(api_version, kind)
