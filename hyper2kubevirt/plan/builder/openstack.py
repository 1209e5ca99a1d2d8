# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/builder/openstack.py
"""
OpenStack builder.

Volumes are filled by the OpenStack volume populator: one populator object
per source volume, referenced from a claim's dataSourceRef. There is no guest
conversion step.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Mapping, Optional

from ...core.exceptions import ValidationError
from ..labels import ANN_DISK_SOURCE
from ..models import ProviderType, VMRef
from .base import Builder, Manifest, PopulatorVolume, disk_source_of

POPULATOR_API_GROUP = "forklift.konveyor.io"
POPULATOR_KIND = "OpenstackVolumePopulator"

# image os_distro -> cluster preference
_PREFERENCES = {
    "rhel": "rhel.9",
    "centos": "centos.stream9",
    "fedora": "fedora",
    "ubuntu": "ubuntu",
    "opensuse": "opensuse.leap",
    "windows": "windows.11",
}
_TEMPLATE_OS = {
    "rhel": "rhel9.0",
    "centos": "centos-stream9",
    "fedora": "fedora",
    "ubuntu": "ubuntu",
    "windows": "win2k19",
}


def _distro(guest_os: str) -> str:
    s = (guest_os or "").lower()
    for name in _PREFERENCES:
        if s.startswith(name):
            return name
    return ""


class OpenStackBuilder(Builder):
    provider_type = ProviderType.OPENSTACK.value

    def config_map(self, ref: VMRef, provider_secret: Mapping[str, str], config_map: Manifest) -> None:
        data = config_map.setdefault("data", {})
        data["identityUrl"] = self.plan.provider.url
        region = provider_secret.get("regionName")
        if region:
            data["regionName"] = str(region)

    def populator_volumes(
        self, ref: VMRef, annotations: Mapping[str, str], secret_name: str
    ) -> List[PopulatorVolume]:
        vm = self._vm(ref)
        out: List[PopulatorVolume] = []
        for disk in vm.disks:
            source: Manifest = {
                "apiVersion": f"{POPULATOR_API_GROUP}/v1beta1",
                "kind": POPULATOR_KIND,
                "metadata": {
                    "generateName": f"{self.plan.name}-{disk.id[:8]}-",
                    "namespace": self.plan.target_namespace,
                    "labels": dict(annotations),
                    "annotations": {ANN_DISK_SOURCE: disk.id},
                },
                "spec": {
                    "identityUrl": self.plan.provider.url,
                    "secretName": secret_name,
                    "imageId": disk.id,
                },
            }
            claim_annotations = dict(annotations)
            claim_annotations[ANN_DISK_SOURCE] = disk.id
            claim: Manifest = {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {
                    "generateName": f"{self.plan.name}-{disk.id[:8]}-",
                    "namespace": self.plan.target_namespace,
                    "labels": copy.deepcopy(dict(annotations)),
                    "annotations": claim_annotations,
                },
                "spec": {
                    "accessModes": ["ReadWriteOnce"],
                    "volumeMode": "Filesystem",
                    "storageClassName": self._storage_class(disk),
                    "resources": {"requests": {"storage": str(disk.capacity_bytes)}},
                    # name is filled in once the populator object exists
                    "dataSourceRef": {"apiGroup": POPULATOR_API_GROUP, "kind": POPULATOR_KIND, "name": ""},
                },
            }
            out.append(PopulatorVolume(claim=claim, source=source))
        return out

    def virtual_machine(self, ref: VMRef, vm_spec: Manifest, pvcs: List[Manifest]) -> None:
        self._apply_hardware(self._vm(ref), vm_spec, pvcs, self.resolve_persistent_volume_claim_identifier)

    def resolve_data_volume_identifier(self, dv: Manifest) -> str:
        return disk_source_of(dv)

    def resolve_persistent_volume_claim_identifier(self, pvc: Manifest) -> str:
        return disk_source_of(pvc)

    def preference_name(self, ref: VMRef, os_map: Optional[Manifest]) -> str:
        vm = self._vm(ref)
        data = (os_map or {}).get("data") or {}
        name = str(data.get(vm.guest_os) or "") or _PREFERENCES.get(_distro(vm.guest_os), "")
        if not name:
            raise ValidationError(
                code=2,
                msg=f"no preference mapped for guest OS '{vm.guest_os}'",
                context={"vm": vm.id, "guest_os": vm.guest_os},
            )
        return name

    def template_labels(self, ref: VMRef) -> Dict[str, str]:
        vm = self._vm(ref)
        os_name = _TEMPLATE_OS.get(_distro(vm.guest_os))
        if not os_name:
            raise ValidationError(
                code=2,
                msg=f"no template OS for guest OS '{vm.guest_os}'",
                context={"vm": vm.id, "guest_os": vm.guest_os},
            )
        return {
            f"os.template.kubevirt.io/{os_name}": "true",
            "workload.template.kubevirt.io/server": "true",
            "flavor.template.kubevirt.io/medium": "true",
        }
