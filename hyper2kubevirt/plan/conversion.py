# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/conversion.py
"""
Guest conversion (virt-v2v) pod lifecycle for the cold path.

  NotCreated -> Created -> RunningNoAddress -> RunningWithAddress
             -> ConfigFetched -> ShutdownRequested -> Completed

The state is derived from the pod and the migration step on every call; the
coordinator keeps none of its own.
"""

from __future__ import annotations

import base64
import logging
import re
import xml.etree.ElementTree as ET
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core.exceptions import NotFoundError, TransientNetworkError, ValidationError
from ..core.logger import Log
from ..store import kinds
from ..store.base import name_of, path_of
from .control_client import ConversionControlClient
from .kubevirt import QEMU_GROUP, QEMU_USER, KubeVirt
from .labels import ANN_DEFAULT_NETWORK
from .models import Firmware, ProviderType, Step, VMStatus
from .ovf import firmware_from_config

Manifest = Dict[str, Any]

VDDK_VOLUME = "vddk-vol-mount"
LIBVIRT_VOLUME = "libvirt-domain-xml"
INPUT_XML_KEY = "input.xml"

_QUANTITY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGTPE]i?|[kmun]|)\s*$")
_QUANTITY_FACTORS = {
    "": 1,
    "k": 10**3,
    "K": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}


def quantity_bytes(q: Any) -> int:
    """Kubernetes resource quantity ("1Gi", "512M", "1073741824") to bytes."""
    if isinstance(q, (int, float)):
        return int(q)
    m = _QUANTITY_RE.match(str(q or ""))
    if not m or m.group(2) not in _QUANTITY_FACTORS:
        raise ValidationError(code=2, msg=f"invalid quantity '{q}'")
    return int(float(m.group(1)) * _QUANTITY_FACTORS[m.group(2)])


class ConversionState(str, Enum):
    NOT_CREATED = "NotCreated"
    CREATED = "Created"
    RUNNING_NO_ADDRESS = "RunningNoAddress"
    RUNNING_WITH_ADDRESS = "RunningWithAddress"
    CONFIG_FETCHED = "ConfigFetched"
    SHUTDOWN_REQUESTED = "ShutdownRequested"
    COMPLETED = "Completed"
    FAILED = "Failed"


def _pod_phase(pod: Manifest) -> str:
    return str((pod.get("status") or {}).get("phase") or "")


def _pod_ip(pod: Manifest) -> str:
    return str((pod.get("status") or {}).get("podIP") or "")


def _is_block(pvc: Manifest) -> bool:
    return ((pvc.get("spec") or {}).get("volumeMode") or "") == "Block"


class GuestConversion:
    def __init__(
        self,
        kubevirt: KubeVirt,
        client: Optional[ConversionControlClient] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.kubevirt = kubevirt
        self.logger = logger or kubevirt.logger
        self.client = client or ConversionControlClient(kubevirt.settings.conversion, logger=self.logger)

    @property
    def plan(self):
        return self.kubevirt.plan

    @property
    def settings(self):
        return self.kubevirt.settings

    # ------------------------------------------------------------------
    # Domain XML
    # ------------------------------------------------------------------

    @staticmethod
    def _claims_for(vm_cr: Manifest, pvcs: List[Manifest]) -> List[Tuple[Manifest, Manifest]]:
        by_name = {name_of(p): p for p in pvcs}
        out = []
        volumes = (((vm_cr.get("spec") or {}).get("template") or {}).get("spec") or {}).get("volumes") or []
        for vol in volumes:
            claim = (vol.get("persistentVolumeClaim") or {}).get("claimName")
            if not claim:
                continue
            pvc = by_name.get(claim)
            if pvc is None:
                raise ValidationError(
                    code=2,
                    msg=f"VM volume '{vol.get('name')}' references unknown claim '{claim}'",
                    context={"vm": name_of(vm_cr), "claim": claim},
                )
            out.append((vol, pvc))
        return out

    def libvirt_domain(self, vm_cr: Manifest, pvcs: List[Manifest]) -> str:
        """
        Minimal libvirt domain telling virt-v2v where each disk is mounted in
        the conversion pod.
        """
        domain_spec = (((vm_cr.get("spec") or {}).get("template") or {}).get("spec") or {}).get("domain") or {}
        memory = (domain_spec.get("memory") or {}).get("guest") or (
            ((domain_spec.get("resources") or {}).get("requests") or {}).get("memory")
        )
        cpu = domain_spec.get("cpu") or {}

        root = ET.Element("domain", type="kvm")
        ET.SubElement(root, "name").text = name_of(vm_cr)
        ET.SubElement(root, "memory", unit="B").text = str(quantity_bytes(memory) if memory else 0)
        cpu_el = ET.SubElement(root, "cpu")
        ET.SubElement(
            cpu_el,
            "topology",
            sockets=str(int(cpu.get("sockets") or 1)),
            cores=str(int(cpu.get("cores") or 1)),
        )
        os_el = ET.SubElement(root, "os")
        ET.SubElement(os_el, "type").text = "hvm"
        ET.SubElement(os_el, "boot", dev="hd")
        devices = ET.SubElement(root, "devices")
        for i, (_, pvc) in enumerate(self._claims_for(vm_cr, pvcs)):
            disk = ET.SubElement(devices, "disk", type="block" if _is_block(pvc) else "file", device="disk")
            ET.SubElement(disk, "driver", name="qemu", type="raw")
            if _is_block(pvc):
                ET.SubElement(disk, "source", dev=f"/dev/block{i}")
            else:
                ET.SubElement(disk, "source", file=f"/mnt/disks/disk{i}/disk.img")
            ET.SubElement(disk, "target", dev="hd" + chr(ord("a") + i), bus="virtio")
        return ET.tostring(root, encoding="unicode")

    def ensure_libvirt_config_map(self, vm: VMStatus, vm_cr: Manifest, pvcs: List[Manifest]) -> Manifest:
        cm = self.kubevirt.ensure_config_map(vm.ref)
        xml = self.libvirt_domain(vm_cr, pvcs)
        encoded = base64.b64encode(xml.encode("utf-8")).decode("ascii")
        return self.kubevirt.update_config_map_binary(cm, INPUT_XML_KEY, encoded)

    # ------------------------------------------------------------------
    # Pod
    # ------------------------------------------------------------------

    def pod_volume_mounts(
        self, vm: VMStatus, vm_cr: Manifest, config_map: Manifest, pvcs: List[Manifest]
    ) -> Tuple[List[Manifest], List[Manifest], List[Manifest]]:
        volumes: List[Manifest] = []
        mounts: List[Manifest] = []
        devices: List[Manifest] = []
        for i, (_, pvc) in enumerate(self._claims_for(vm_cr, pvcs)):
            name = name_of(pvc)
            volumes.append({"name": name, "persistentVolumeClaim": {"claimName": name, "readOnly": False}})
            if _is_block(pvc):
                devices.append({"name": name, "devicePath": f"/dev/block{i}"})
            else:
                mounts.append({"name": name, "mountPath": f"/mnt/disks/disk{i}"})

        # virt-v2v reads /mnt/v2v/input.xml
        volumes.append({"name": LIBVIRT_VOLUME, "configMap": {"name": name_of(config_map)}})
        mounts.append({"name": LIBVIRT_VOLUME, "mountPath": "/mnt/v2v"})
        # scratch space the VDDK init container unpacks the library into
        volumes.append({"name": VDDK_VOLUME, "emptyDir": {}})
        if self.plan.provider.type == ProviderType.VSPHERE:
            mounts.append({"name": VDDK_VOLUME, "mountPath": "/opt"})

        if vm.luks_secret:
            volumes.append({"name": "luks", "secret": {"secretName": vm.luks_secret}})
            mounts.append({"name": "luks", "mountPath": "/etc/luks", "readOnly": True})
        return volumes, mounts, devices

    def guest_conversion_pod(
        self, vm: VMStatus, vm_cr: Manifest, config_map: Manifest, pvcs: List[Manifest], v2v_secret: Manifest
    ) -> Manifest:
        volumes, mounts, devices = self.pod_volume_mounts(vm, vm_cr, config_map, pvcs)
        key = self.kubevirt.key(vm.id)

        if self.plan.el9_virt_v2v:
            image = self.settings.migration.virt_v2v_image_cold
            # password and CA certificate for virt-v2v
            volumes.append({"name": "secret-volume", "secret": {"secretName": name_of(v2v_secret)}})
            mounts.append({"name": "secret-volume", "readOnly": True, "mountPath": "/etc/secret"})
        else:
            image = self.settings.migration.virt_v2v_image_warm

        no_escalation = {"allowPrivilegeEscalation": False, "capabilities": {"drop": ["ALL"]}}
        init_containers: List[Manifest] = []
        if self.plan.provider.vddk_image:
            init_containers.append(
                {
                    "name": "vddk-side-car",
                    "image": self.plan.provider.vddk_image,
                    "imagePullPolicy": "IfNotPresent",
                    "volumeMounts": [{"name": VDDK_VOLUME, "mountPath": "/opt"}],
                    "securityContext": dict(no_escalation),
                }
            )

        annotations: Dict[str, str] = {}
        if self.plan.transfer_network is not None:
            annotations[ANN_DEFAULT_NETWORK] = self.plan.transfer_network.path

        container: Manifest = {
            "name": "virt-v2v",
            "image": image,
            "env": self.kubevirt.builder.pod_environment(vm.ref, self.plan.provider.secret),
            "envFrom": [{"prefix": "V2V_", "secretRef": {"name": name_of(v2v_secret)}}],
            "volumeMounts": mounts,
            "ports": [{"name": "metrics", "containerPort": self.settings.conversion.metrics_port, "protocol": "TCP"}],
            "securityContext": dict(no_escalation),
        }
        if devices:
            container["volumeDevices"] = devices

        pod: Manifest = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "generateName": self.kubevirt.generated_name(vm.id),
                "namespace": self.kubevirt.namespace,
                "labels": key.conversion_labels(),
                "annotations": annotations,
            },
            "spec": {
                "securityContext": {
                    "fsGroup": QEMU_GROUP,
                    "runAsUser": QEMU_USER,
                    "runAsNonRoot": True,
                    "seccompProfile": {"type": "RuntimeDefault"},
                },
                "restartPolicy": "Never",
                "containers": [container],
                "volumes": volumes,
            },
        }
        if init_containers:
            pod["spec"]["initContainers"] = init_containers
        self.kubevirt.set_kvm_on_pod_spec(pod["spec"])
        return pod

    def ensure_guest_conversion_pod(self, vm: VMStatus, vm_cr: Manifest, pvcs: List[Manifest]) -> Manifest:
        """At most one conversion pod per VM; an existing one is returned untouched."""
        v2v_secret = self.kubevirt.ensure_secret(vm.ref, self.kubevirt.secret_data_for_cdi(vm.ref))
        with self.kubevirt._wrapped("ensure guest conversion pod", vm.id, kinds.POD):
            config_map = self.ensure_libvirt_config_map(vm, vm_cr, pvcs)
            existing = self.kubevirt.get_pods_with_labels(self.kubevirt.key(vm.id).conversion_labels(True))
            if existing:
                return existing[0]
            pod = self.kubevirt.store.create(self.guest_conversion_pod(vm, vm_cr, config_map, pvcs, v2v_secret))
            self.logger.info("Created virt-v2v pod %s vm=%s", path_of(pod), vm)
            return pod

    def get_guest_conversion_pod(self, vm: VMStatus) -> Optional[Manifest]:
        pods = self.kubevirt.get_pods_with_labels(self.kubevirt.key(vm.id).conversion_labels())
        return pods[0] if pods else None

    # ------------------------------------------------------------------
    # State / polling
    # ------------------------------------------------------------------

    @staticmethod
    def state(pod: Optional[Manifest], step: Optional[Step] = None) -> ConversionState:
        if pod is None:
            return ConversionState.NOT_CREATED
        phase = _pod_phase(pod)
        if phase == "Succeeded":
            return ConversionState.COMPLETED
        if phase == "Failed":
            return ConversionState.FAILED
        if phase != "Running":
            return ConversionState.CREATED
        if step is not None and step.is_completed:
            return ConversionState.SHUTDOWN_REQUESTED
        if not _pod_ip(pod):
            return ConversionState.RUNNING_NO_ADDRESS
        return ConversionState.RUNNING_WITH_ADDRESS

    def _patch_firmware(self, vm: VMStatus, firmware: Firmware) -> None:
        obj = self.kubevirt.get_vm(vm)
        if obj is None:
            raise NotFoundError(code=44, msg="target VM not found", context={"vm": vm.id})
        domain = (((obj.get("spec") or {}).get("template") or {}).get("spec") or {}).get("domain") or {}
        bootloader = (domain.get("firmware") or {}).get("bootloader") or {}
        if firmware == Firmware.EFI:
            secure_boot = bool((bootloader.get("efi") or {}).get("secureBoot", False))
            wanted: Manifest = {"efi": {"secureBoot": secure_boot}, "bios": None}
        else:
            wanted = {"bios": {}, "efi": None}
        patch = {"spec": {"template": {"spec": {"domain": {"firmware": {"bootloader": wanted}}}}}}
        self.kubevirt.store.patch(kinds.VIRTUAL_MACHINE, name_of(obj), self.kubevirt.namespace, patch)

    def update_vm_by_converted_config(self, vm: VMStatus, pod: Manifest, step: Step) -> bool:
        """
        Fetch the converted domain, patch the VM firmware, complete `step` and
        shut the server down. Returns True when the step was completed by this
        call. A failed shutdown is recorded on the step and raised; the step
        stays complete since the configuration is already applied.

        Until virt-v2v finishes copying, its server refuses connections; that
        is not an error and leaves everything unchanged.
        """
        if step.is_completed:
            return False
        ip = _pod_ip(pod)
        if not ip:
            return False
        with self.kubevirt._wrapped("update VM from converted config", vm.id, kinds.VIRTUAL_MACHINE):
            try:
                xml = self.client.fetch_ovf(ip)
            except TransientNetworkError:
                self.logger.debug("Conversion server of pod %s not ready yet vm=%s", path_of(pod), vm)
                return False

            firmware = firmware_from_config(xml)
            vm.firmware = firmware
            self._patch_firmware(vm, firmware)
            step.mark_completed()
            step.progress.completed = step.progress.total
            Log.ok(self.logger, f"Guest conversion finished vm={vm}", firmware=firmware.value)
            try:
                self.client.shutdown(ip)
            except Exception as e:
                step.add_error(f"shutdown of conversion server failed: {e}")
                raise
            return True

    def converge(self, vm: VMStatus, step: Step) -> ConversionState:
        """
        One reconcile pass of the conversion task: make sure the pod exists
        and, once it has an address, collect the converted configuration.
        """
        vm_cr = self.kubevirt.get_vm(vm)
        if vm_cr is None:
            raise NotFoundError(code=44, msg="target VM must exist before the conversion pod", context={"vm": vm.id})
        pod = self.get_guest_conversion_pod(vm)
        if pod is None:
            if step.is_completed:
                return ConversionState.COMPLETED
            self.ensure_guest_conversion_pod(vm, vm_cr, self.kubevirt.get_pvcs(vm.ref))
            return ConversionState.CREATED
        state = self.state(pod, step)
        if state == ConversionState.FAILED:
            Log.fail(self.logger, f"virt-v2v pod {path_of(pod)} failed vm={vm}")
        elif state == ConversionState.RUNNING_WITH_ADDRESS:
            if self.update_vm_by_converted_config(vm, pod, step):
                return ConversionState.SHUTDOWN_REQUESTED
        return state
