# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/models.py

from __future__ import annotations

import datetime as _dt
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderType(str, Enum):
    VSPHERE = "vsphere"
    OVIRT = "ovirt"
    OPENSTACK = "openstack"
    OVA = "ova"
    OPENSHIFT = "openshift"


class PowerState(str, Enum):
    ON = "On"
    OFF = "Off"
    UNKNOWN = ""


class Firmware(str, Enum):
    BIOS = "bios"
    EFI = "efi"


# Pipeline step whose progress the conversion coordinator reports.
STEP_IMAGE_CONVERSION = "ImageConversion"


@dataclass(frozen=True)
class NetworkRef:
    namespace: str
    name: str

    @property
    def path(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class NetworkMapping:
    type: str = "pod"  # pod|multus|ignored
    namespace: str = ""
    name: str = ""


@dataclass(frozen=True)
class Provider:
    name: str
    type: ProviderType
    url: str = ""
    settings: Dict[str, str] = field(default_factory=dict)
    # Decoded provider credentials (user, password, cacert, thumbprint, ...).
    secret: Dict[str, str] = field(default_factory=dict)

    @property
    def vddk_image(self) -> str:
        return self.settings.get("vddkInitImage", "")


@dataclass(frozen=True)
class Migration:
    uid: str
    name: str


@dataclass(frozen=True)
class MigrationPlan:
    """
    Plan spec as seen by the engine. Immutable while a migration runs.
    """
    name: str
    namespace: str
    uid: str
    target_namespace: str
    provider: Provider
    transfer_network: Optional[NetworkRef] = None
    warm: bool = False
    # Source datastore / volume type id -> storage class.
    storage_map: Dict[str, str] = field(default_factory=dict)
    # Source network id -> destination network.
    network_map: Dict[str, NetworkMapping] = field(default_factory=dict)
    # False when the destination is a remote cluster rather than the host cluster.
    destination_is_host: bool = True
    # Cold vSphere conversions use the el9 virt-v2v image and read credentials from a mounted secret.
    el9_virt_v2v: bool = True

    @property
    def source_is_openshift(self) -> bool:
        return self.provider.type == ProviderType.OPENSHIFT


@dataclass(frozen=True)
class Disk:
    id: str
    # vSphere: "[datastore] folder/disk.vmdk"; OpenStack: volume id.
    file: str
    capacity_bytes: int
    datastore: str = ""
    bus: str = "virtio"
    shared: bool = False


@dataclass(frozen=True)
class Lun:
    id: str
    portal: str
    iqn: str
    lun: int
    capacity_bytes: int


@dataclass(frozen=True)
class Nic:
    mac: str
    network: str


@dataclass(frozen=True)
class SourceVM:
    """Read-only inventory snapshot of a source VM."""
    id: str
    name: str
    uuid: str = ""
    power_state: PowerState = PowerState.UNKNOWN
    firmware: Firmware = Firmware.BIOS
    secure_boot: bool = False
    # vSphere guestId ("rhel8_64Guest") or OpenStack image os_distro ("rhel").
    guest_os: str = ""
    cpu_sockets: int = 1
    cpu_cores: int = 1
    memory_mb: int = 1024
    disks: List[Disk] = field(default_factory=list)
    luns: List[Lun] = field(default_factory=list)
    nics: List[Nic] = field(default_factory=list)
    # Secret holding LUKS passphrases for encrypted guest disks.
    encryption_secret: Optional[str] = None
    # Source host/path hints used to build the libvirt URL for virt-v2v.
    host: str = ""
    path: str = ""


@dataclass(frozen=True)
class VMRef:
    id: str
    name: str = ""

    def __str__(self) -> str:
        return f"id:{self.id} name:'{self.name}'"


class Inventory(ABC):
    """Source inventory collaborator (read-only)."""

    @abstractmethod
    def vm(self, ref: VMRef) -> SourceVM:
        """Resolve a VM reference. Raises NotFoundError if it no longer exists."""


@dataclass
class Progress:
    total: int = 0
    completed: int = 0


@dataclass
class Step:
    name: str
    description: str = ""
    progress: Progress = field(default_factory=Progress)
    started: Optional[_dt.datetime] = None
    completed: Optional[_dt.datetime] = None
    error: Optional[str] = None

    def mark_started(self) -> None:
        if self.started is None:
            self.started = _dt.datetime.now(_dt.timezone.utc)

    def mark_completed(self) -> None:
        self.mark_started()
        if self.completed is None:
            self.completed = _dt.datetime.now(_dt.timezone.utc)

    @property
    def is_completed(self) -> bool:
        return self.completed is not None

    def add_error(self, msg: str) -> None:
        self.error = msg


@dataclass
class VMStatus:
    """Mutable per-VM status in the plan."""
    ref: VMRef
    name: str
    restore_power_state: PowerState = PowerState.UNKNOWN
    firmware: Optional[Firmware] = None
    luks_secret: Optional[str] = None
    original_name: str = ""
    steps: List[Step] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.ref.id

    def find_step(self, name: str) -> Optional[Step]:
        for s in self.steps:
            if s.name == name:
                return s
        return None

    def __str__(self) -> str:
        return f"id:{self.ref.id} name:'{self.name}'"


# ---------------------------------------------------------------------------
# Derived views over target objects
# ---------------------------------------------------------------------------

def _conditions(obj: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    out: Dict[str, Dict[str, Any]] = {}
    for c in (obj.get("status") or {}).get("conditions") or []:
        if c.get("type"):
            out[str(c["type"])] = {
                "type": str(c["type"]),
                "status": str(c.get("status", "")),
                "reason": c.get("reason", ""),
                "message": c.get("message", ""),
                "lastTransitionTime": c.get("lastTransitionTime"),
            }
    return out


@dataclass
class ExtendedDataVolume:
    """A DataVolume and the claim it created."""
    data_volume: Dict[str, Any]
    pvc: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        return str((self.data_volume.get("metadata") or {}).get("name") or "")

    @property
    def phase(self) -> str:
        return str((self.data_volume.get("status") or {}).get("phase") or "")

    def conditions(self) -> Dict[str, Dict[str, Any]]:
        return _conditions(self.data_volume)

    def percent_complete(self) -> float:
        """`status.progress` ("45.5%") as a 0..1 fraction; 0 when unknown."""
        s = str((self.data_volume.get("status") or {}).get("progress") or "")
        if not s.endswith("%"):
            return 0.0
        try:
            return float(s[:-1]) / 100
        except ValueError:
            return 0.0


@dataclass
class VirtualMachine:
    """A target VM with the DataVolumes it owns."""
    vm: Dict[str, Any]
    data_volumes: List[ExtendedDataVolume] = field(default_factory=list)

    def _volumes(self) -> List[Dict[str, Any]]:
        template = (self.vm.get("spec") or {}).get("template") or {}
        return list((template.get("spec") or {}).get("volumes") or [])

    def owner(self, dv: Dict[str, Any]) -> bool:
        dv_name = (dv.get("metadata") or {}).get("name")
        for vol in self._volumes():
            claim = (vol.get("persistentVolumeClaim") or {}).get("claimName")
            if claim and claim == dv_name:
                return True
        return False

    def conditions(self) -> Dict[str, Dict[str, Any]]:
        return _conditions(self.vm)
