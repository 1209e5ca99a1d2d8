# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/labels.py
"""
Ownership labels and annotations.

Generated object names are random, so every object this package creates is
found again only through the (migration, plan, vmID) label triple. Queries that
must survive a retried migration of the same plan drop the migration label.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

# Labels
MIGRATION = "migration"
PLAN = "plan"
VM = "vmID"
APP = "forklift.app"
# Role values for APP
ROLE_CONSUMER = "consumer"
ROLE_CONVERSION = "virt-v2v"
# LUN pass-through PV/PVC identity
VOLUME = "volume"
# Set by the Job controller on job pods.
JOB_NAME = "job-name"
# Set by CDI on importer pods.
CDI_APP = "app"
CDI_IMPORTER = "containerized-data-importer"

# Annotations
ANN_DEFAULT_NETWORK = "v1.multus-cni.io/default-network"
ANN_KUBEVIRT_VALIDATIONS = "vm.kubevirt.io/validations"
ANN_IMPORTER_POD_NAME = "cdi.kubevirt.io/storage.import.importPodName"
ANN_ORIGINAL_NAME = "original-name"
ANN_ORIGINAL_ID = "original-ID"
ANN_DELETE_AFTER_COMPLETION = "cdi.kubevirt.io/storage.deleteAfterCompletion"
ANN_BIND_IMMEDIATE = "cdi.kubevirt.io/storage.bind.immediate.requested"
ANN_RETAIN_AFTER_COMPLETION = "cdi.kubevirt.io/storage.pod.retainAfterCompletion"
# Carries the builder-resolved source disk on each DataVolume.
ANN_DISK_SOURCE = "forklift.konveyor.io/disk-source"

POPULATOR_POD_PREFIX = "populate-"
PRIME_PVC_PREFIX = "prime-"


@dataclass(frozen=True)
class OwnershipKey:
    """The (migration, plan, vmID) triple for one VM of one migration attempt."""
    migration: str
    plan: str
    vm: str

    def plan_labels(self) -> Dict[str, str]:
        return {MIGRATION: self.migration, PLAN: self.plan}

    def vm_labels(self) -> Dict[str, str]:
        labels = self.plan_labels()
        labels[VM] = self.vm
        return labels

    def all_but_migration(self) -> Dict[str, str]:
        labels = self.vm_labels()
        del labels[MIGRATION]
        return labels

    def _role(self, role: str, filter_migration: bool) -> Dict[str, str]:
        labels = self.all_but_migration() if filter_migration else self.vm_labels()
        labels[APP] = role
        return labels

    def consumer_labels(self, filter_migration: bool = False) -> Dict[str, str]:
        return self._role(ROLE_CONSUMER, filter_migration)

    def conversion_labels(self, filter_migration: bool = False) -> Dict[str, str]:
        return self._role(ROLE_CONVERSION, filter_migration)

    def claim_labels(self) -> Dict[str, str]:
        # Claims are looked up by migration and VM only.
        return {MIGRATION: self.migration, VM: self.vm}

    def generated_name(self, plan_name: str) -> str:
        return f"{plan_name}-{self.vm}-"

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> Optional["OwnershipKey"]:
        if PLAN not in labels or VM not in labels:
            return None
        return cls(migration=labels.get(MIGRATION, ""), plan=labels[PLAN], vm=labels[VM])


def owner_reference(obj: Mapping[str, Any], *, block_owner_deletion: bool = True) -> Dict[str, Any]:
    """Non-controller owner reference to `obj`."""
    m = obj.get("metadata") or {}
    return {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": m.get("name", ""),
        "uid": m.get("uid", ""),
        "blockOwnerDeletion": block_owner_deletion,
        "controller": False,
    }


class OwnershipIndex:
    """
    Secondary index of listed objects by ownership triple.

    Holds no references beyond the objects it was fed; rebuild it from a fresh
    list on every reconcile.
    """

    def __init__(self, objects: Iterable[Mapping[str, Any]] = ()):
        self._by_key: Dict[Tuple[str, str, str], List[Mapping[str, Any]]] = defaultdict(list)
        for obj in objects:
            self.add(obj)

    def add(self, obj: Mapping[str, Any]) -> None:
        key = OwnershipKey.from_labels((obj.get("metadata") or {}).get("labels") or {})
        if key is not None:
            self._by_key[(key.migration, key.plan, key.vm)].append(obj)

    def owned_by(self, key: OwnershipKey, *, ignore_migration: bool = False) -> List[Mapping[str, Any]]:
        if not ignore_migration:
            return list(self._by_key.get((key.migration, key.plan, key.vm), []))
        out: List[Mapping[str, Any]] = []
        for (_, plan, vm), objs in self._by_key.items():
            if plan == key.plan and vm == key.vm:
                out.extend(objs)
        return out

    def vm_ids(self, plan: str) -> List[str]:
        return sorted({vm for (_, p, vm) in self._by_key if p == plan})

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_key.values())
