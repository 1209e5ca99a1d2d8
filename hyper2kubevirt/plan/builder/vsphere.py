# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/builder/vsphere.py
"""
vSphere builder.

Disks are imported by CDI DataVolumes (VDDK source). With the el9 virt-v2v
image on a cold migration the conversion pod copies the disks itself, so the
DataVolumes are blank targets.
"""

from __future__ import annotations

import copy
import re
from typing import Dict, List, Mapping, Optional
from urllib.parse import quote, urlparse

from ...core.exceptions import ValidationError
from ..labels import ANN_DISK_SOURCE
from ..models import Disk, ProviderType, VMRef
from .base import Builder, Manifest, disk_source_of

# "[ds] vm/vm-000001.vmdk" -> "[ds] vm/vm.vmdk"
_SNAPSHOT_SUFFIX_RE = re.compile(r"-\d{6}\.vmdk$")

# guestId prefix -> template OS label value
_TEMPLATE_OS = (
    ("rhel9", "rhel9.0"),
    ("rhel8", "rhel8.1"),
    ("rhel7", "rhel7.9"),
    ("centos9", "centos-stream9"),
    ("centos8", "centos-stream8"),
    ("centos7", "centos7.0"),
    ("centos", "centos7.0"),
    ("fedora", "fedora"),
    ("windows2019srv", "win2k19"),
    ("windows2022srvNext", "win2k22"),
    ("windows9Server", "win2k19"),
    ("windows11", "win11"),
    ("windows9", "win10"),
    ("ubuntu", "ubuntu"),
)
_DEFAULT_TEMPLATE_OS = "rhel8.1"


def base_volume(file_name: str) -> str:
    """Strip the snapshot delta suffix so a disk keeps its identity across snapshots."""
    return _SNAPSHOT_SUFFIX_RE.sub(".vmdk", file_name or "")


class VSphereBuilder(Builder):
    provider_type = ProviderType.VSPHERE.value

    def _thumbprint(self, provider_secret: Mapping[str, str]) -> str:
        return str(provider_secret.get("thumbprint") or self.plan.provider.settings.get("thumbprint") or "")

    def secret(self, ref: VMRef, provider_secret: Mapping[str, str]) -> Dict[str, str]:
        data = {
            "accessKeyId": str(provider_secret.get("user") or ""),
            "secretKey": str(provider_secret.get("password") or ""),
        }
        thumbprint = self._thumbprint(provider_secret)
        if thumbprint:
            data["thumbprint"] = thumbprint
        if provider_secret.get("cacert"):
            data["cacert"] = str(provider_secret["cacert"])
        return data

    def config_map(self, ref: VMRef, provider_secret: Mapping[str, str], config_map: Manifest) -> None:
        vm = self._vm(ref)
        data = config_map.setdefault("data", {})
        data["vmName"] = vm.name
        data["vmUUID"] = vm.uuid
        data["providerURL"] = self.plan.provider.url

    def data_volumes(
        self, ref: VMRef, secret: Manifest, config_map: Manifest, dv_template: Manifest
    ) -> List[Manifest]:
        vm = self._vm(ref)
        blank = self.plan.el9_virt_v2v and not self.plan.warm
        thumbprint = self._thumbprint(self.plan.provider.secret)
        out: List[Manifest] = []
        for disk in vm.disks:
            dv = copy.deepcopy(dv_template)
            dv["apiVersion"] = "cdi.kubevirt.io/v1beta1"
            dv["kind"] = "DataVolume"
            annotations = dv["metadata"].setdefault("annotations", {})
            annotations[ANN_DISK_SOURCE] = base_volume(disk.file)
            if blank:
                source: Manifest = {"blank": {}}
            else:
                source = {
                    "vddk": {
                        "backingFile": base_volume(disk.file),
                        "url": self.plan.provider.url,
                        "uuid": vm.uuid,
                        "thumbprint": thumbprint,
                        "secretRef": secret["metadata"]["name"],
                    }
                }
                if self.plan.provider.vddk_image:
                    source["vddk"]["initImageURL"] = self.plan.provider.vddk_image
            dv["spec"] = {
                "source": source,
                "storage": {
                    "storageClassName": self._storage_class(disk),
                    "resources": {"requests": {"storage": str(disk.capacity_bytes)}},
                },
            }
            out.append(dv)
        return out

    def virtual_machine(self, ref: VMRef, vm_spec: Manifest, pvcs: List[Manifest]) -> None:
        self._apply_hardware(self._vm(ref), vm_spec, pvcs, self.resolve_persistent_volume_claim_identifier)

    def _disk_identifier(self, disk: Disk) -> str:
        return base_volume(disk.file)

    def resolve_data_volume_identifier(self, dv: Manifest) -> str:
        return base_volume(disk_source_of(dv))

    def resolve_persistent_volume_claim_identifier(self, pvc: Manifest) -> str:
        return base_volume(disk_source_of(pvc))

    def _libvirt_url(self, user: str, host_path: str) -> str:
        host = urlparse(self.plan.provider.url).hostname or ""
        if not host:
            raise ValidationError(
                code=2, msg="provider URL has no host", context={"provider": self.plan.provider.name}
            )
        path = "/" + host_path.strip("/") if host_path else ""
        return f"vpx://{quote(user, safe='')}@{host}{path}?no_verify=1"

    def pod_environment(self, ref: VMRef, provider_secret: Mapping[str, str]) -> List[Dict[str, str]]:
        vm = self._vm(ref)
        user = str(provider_secret.get("user") or "")
        env = [
            {"name": "V2V_vmName", "value": vm.name},
            {"name": "V2V_libvirtURL", "value": self._libvirt_url(user, vm.path)},
            {"name": "V2V_source", "value": "vSphere"},
            {"name": "V2V_fingerprint", "value": self._thumbprint(provider_secret)},
        ]
        if vm.encryption_secret:
            env.append({"name": "V2V_LUKS", "value": "/etc/luks"})
        return env

    def preference_name(self, ref: VMRef, os_map: Optional[Manifest]) -> str:
        vm = self._vm(ref)
        data = (os_map or {}).get("data") or {}
        name = str(data.get(vm.guest_os) or "")
        if not name:
            raise ValidationError(
                code=2,
                msg=f"no preference mapped for guest OS '{vm.guest_os}'",
                context={"vm": vm.id, "guest_os": vm.guest_os},
            )
        return name

    def template_labels(self, ref: VMRef) -> Dict[str, str]:
        vm = self._vm(ref)
        os_name = _DEFAULT_TEMPLATE_OS
        for prefix, value in _TEMPLATE_OS:
            if vm.guest_os.startswith(prefix):
                os_name = value
                break
        workload = "server"
        if os_name in ("win10", "win11"):
            workload = "desktop"
        return {
            f"os.template.kubevirt.io/{os_name}": "true",
            f"workload.template.kubevirt.io/{workload}": "true",
            "flavor.template.kubevirt.io/medium": "true",
        }
