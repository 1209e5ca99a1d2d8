# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/builder/base.py
"""
Provider adapter contract.

A Builder translates one source provider's VM snapshot into target-cluster
fragments. It never talks to the cluster: inputs are the inventory snapshot,
the plan and whatever the engine already created; outputs are manifest dicts.

Every capability defaults to raising ValidationError so a provider that does
not support a path (OpenStack has no guest conversion, vSphere has no volume
populator) fails loudly when the engine takes that path anyway.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from ...config.settings import Settings
from ...core.exceptions import ValidationError
from ..labels import ANN_DISK_SOURCE, VOLUME, OwnershipKey
from ..models import Disk, Firmware, Inventory, MigrationPlan, NetworkMapping, SourceVM, VMRef
from ..naming import to_dns1123_label

Manifest = Dict[str, Any]


@dataclass
class PopulatorVolume:
    """A populator claim and the populator object that fills it."""
    claim: Manifest
    source: Manifest


class Builder:
    provider_type: str = ""

    def __init__(
        self,
        plan: MigrationPlan,
        inventory: Inventory,
        settings: Settings,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.plan = plan
        self.inventory = inventory
        self.settings = settings
        self.logger = logger or logging.getLogger(f"hyper2kubevirt.builder.{self.provider_type or 'base'}")

    def _missing(self, capability: str) -> ValidationError:
        return ValidationError(
            code=2,
            msg=f"missing builder capability: {capability}",
            context={"provider": self.provider_type, "capability": capability},
        )

    def _vm(self, ref: VMRef) -> SourceVM:
        return self.inventory.vm(ref)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def secret(self, ref: VMRef, provider_secret: Mapping[str, str]) -> Dict[str, str]:
        """String data for the per-VM transfer credential secret."""
        raise self._missing("secret")

    def config_map(self, ref: VMRef, provider_secret: Mapping[str, str], config_map: Manifest) -> None:
        """Fill provider metadata into the per-VM config map (mutates in place)."""
        raise self._missing("config_map")

    def data_volumes(
        self, ref: VMRef, secret: Manifest, config_map: Manifest, dv_template: Manifest
    ) -> List[Manifest]:
        raise self._missing("data_volumes")

    def populator_volumes(
        self, ref: VMRef, annotations: Mapping[str, str], secret_name: str
    ) -> List[PopulatorVolume]:
        raise self._missing("populator_volumes")

    def virtual_machine(self, ref: VMRef, vm_spec: Manifest, pvcs: List[Manifest]) -> None:
        """Apply hardware and volume overrides onto `vm_spec` (mutates in place)."""
        raise self._missing("virtual_machine")

    def resolve_data_volume_identifier(self, dv: Manifest) -> str:
        raise self._missing("resolve_data_volume_identifier")

    def resolve_persistent_volume_claim_identifier(self, pvc: Manifest) -> str:
        raise self._missing("resolve_persistent_volume_claim_identifier")

    def pod_environment(self, ref: VMRef, provider_secret: Mapping[str, str]) -> List[Dict[str, str]]:
        raise self._missing("pod_environment")

    def preference_name(self, ref: VMRef, os_map: Optional[Manifest]) -> str:
        raise self._missing("preference_name")

    def template_labels(self, ref: VMRef) -> Dict[str, str]:
        raise self._missing("template_labels")

    def lun_persistent_volumes(self, ref: VMRef, key: OwnershipKey) -> List[Manifest]:
        """iSCSI pass-through PVs, one per source LUN."""
        vm = self._vm(ref)
        out: List[Manifest] = []
        for lun in vm.luns:
            labels = key.vm_labels()
            labels[VOLUME] = lun.id
            out.append(
                {
                    "apiVersion": "v1",
                    "kind": "PersistentVolume",
                    "metadata": {"name": _lun_pv_name(self.plan.name, lun.id), "labels": labels},
                    "spec": {
                        "capacity": {"storage": str(lun.capacity_bytes)},
                        "accessModes": ["ReadWriteMany"],
                        "persistentVolumeReclaimPolicy": "Retain",
                        "storageClassName": "",
                        "volumeMode": "Block",
                        "iscsi": {
                            "targetPortal": lun.portal,
                            "iqn": lun.iqn,
                            "lun": lun.lun,
                            "readOnly": False,
                        },
                    },
                }
            )
        return out

    def lun_persistent_volume_claims(self, ref: VMRef, key: OwnershipKey) -> List[Manifest]:
        vm = self._vm(ref)
        out: List[Manifest] = []
        for lun in vm.luns:
            labels = key.vm_labels()
            labels[VOLUME] = lun.id
            out.append(
                {
                    "apiVersion": "v1",
                    "kind": "PersistentVolumeClaim",
                    "metadata": {
                        "generateName": key.generated_name(self.plan.name),
                        "namespace": self.plan.target_namespace,
                        "labels": labels,
                    },
                    "spec": {
                        "accessModes": ["ReadWriteMany"],
                        "resources": {"requests": {"storage": str(lun.capacity_bytes)}},
                        "storageClassName": "",
                        "volumeMode": "Block",
                        "volumeName": _lun_pv_name(self.plan.name, lun.id),
                    },
                }
            )
        return out

    # ------------------------------------------------------------------
    # Shared translation helpers
    # ------------------------------------------------------------------

    def _storage_class(self, disk: Disk) -> str:
        sc = self.plan.storage_map.get(disk.datastore)
        if not sc:
            raise ValidationError(
                code=2,
                msg=f"storage map has no entry for '{disk.datastore}'",
                context={"disk": disk.id, "datastore": disk.datastore},
            )
        return sc

    def _network(self, network_id: str) -> NetworkMapping:
        mapping = self.plan.network_map.get(network_id)
        if mapping is None:
            raise ValidationError(
                code=2,
                msg=f"network map has no entry for '{network_id}'",
                context={"network": network_id},
            )
        return mapping

    def _apply_hardware(
        self,
        vm: SourceVM,
        vm_spec: Manifest,
        pvcs: List[Manifest],
        identify,
    ) -> None:
        """
        CPU, memory, firmware, disks and NICs.

        `identify(pvc)` returns the source disk id a claim was built for;
        disks keep source order, LUN claims follow in LUN order.
        """
        template = vm_spec.setdefault("template", {})
        spec = template.setdefault("spec", {})
        domain = spec.setdefault("domain", {})
        devices = domain.setdefault("devices", {})

        domain["cpu"] = {"sockets": vm.cpu_sockets, "cores": vm.cpu_cores}
        domain.setdefault("memory", {})["guest"] = f"{vm.memory_mb}Mi"
        domain.setdefault("machine", {"type": "q35"})
        if vm.firmware == Firmware.EFI:
            domain["firmware"] = {"bootloader": {"efi": {"secureBoot": bool(vm.secure_boot)}}}
            if vm.secure_boot:
                domain.setdefault("features", {})["smm"] = {"enabled": True}
        else:
            domain["firmware"] = {"bootloader": {"bios": {}}}
        if vm.uuid:
            domain["firmware"]["serial"] = vm.uuid

        by_disk: Dict[str, Manifest] = {}
        by_lun: Dict[str, Manifest] = {}
        for pvc in pvcs:
            labels = (pvc.get("metadata") or {}).get("labels") or {}
            if VOLUME in labels:
                by_lun[labels[VOLUME]] = pvc
                continue
            ident = identify(pvc)
            if ident:
                by_disk[ident] = pvc

        volumes: List[Manifest] = []
        disks: List[Manifest] = []
        for i, disk in enumerate(vm.disks):
            pvc = by_disk.get(self._disk_identifier(disk))
            if pvc is None:
                continue
            name = f"vol-{i}"
            volumes.append({"name": name, "persistentVolumeClaim": {"claimName": pvc["metadata"]["name"]}})
            d: Manifest = {"name": name, "disk": {"bus": disk.bus or "virtio"}}
            if i == 0:
                d["bootOrder"] = 1
            if disk.shared:
                d["shareable"] = True
            disks.append(d)
        for j, lun in enumerate(vm.luns):
            pvc = by_lun.get(lun.id)
            if pvc is None:
                continue
            name = f"lun-{j}"
            volumes.append({"name": name, "persistentVolumeClaim": {"claimName": pvc["metadata"]["name"]}})
            disks.append({"name": name, "lun": {}})

        networks: List[Manifest] = []
        interfaces: List[Manifest] = []
        for i, nic in enumerate(vm.nics):
            mapping = self._network(nic.network)
            if mapping.type == "ignored":
                continue
            name = f"net-{i}"
            iface: Manifest = {"name": name, "macAddress": nic.mac, "model": "virtio"}
            if mapping.type == "pod":
                networks.append({"name": name, "pod": {}})
                iface["masquerade"] = {}
            else:
                path = f"{mapping.namespace}/{mapping.name}" if mapping.namespace else mapping.name
                networks.append({"name": name, "multus": {"networkName": path}})
                iface["bridge"] = {}
            interfaces.append(iface)

        spec["volumes"] = volumes
        spec["networks"] = networks
        devices["disks"] = disks
        devices["interfaces"] = interfaces

    def _disk_identifier(self, disk: Disk) -> str:
        return disk.id


def disk_source_of(obj: Mapping[str, Any]) -> str:
    return str(((obj.get("metadata") or {}).get("annotations") or {}).get(ANN_DISK_SOURCE) or "")


def _lun_pv_name(plan_name: str, lun_id: str) -> str:
    return to_dns1123_label(f"{plan_name}-lun-{lun_id}")
