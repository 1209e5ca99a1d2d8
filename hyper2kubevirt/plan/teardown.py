# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/teardown.py
"""
Delete everything created for one VM, newest dependants first.

Every object is found by its ownership labels with the migration label
dropped, so leftovers of an earlier attempt of the same plan go too. Deletes
are independent: a failure is recorded and the walk continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.exceptions import InternalError, NotFoundError, StoreError
from ..core.logger import Log
from ..store import kinds
from ..store.base import BACKGROUND, FOREGROUND, name_of, uid_of
from ..store.kinds import Kind
from .kubevirt import KubeVirt
from .labels import JOB_NAME, POPULATOR_POD_PREFIX, PRIME_PVC_PREFIX
from .models import ProviderType, VMStatus

Manifest = Dict[str, Any]


@dataclass
class TeardownReport:
    vm_id: str
    deleted: List[str] = field(default_factory=list)
    errors: List[Tuple[str, StoreError]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_if_failed(self) -> None:
        if self.ok:
            return
        first = self.errors[0][1]
        raise InternalError(
            code=70,
            msg=f"teardown of VM {self.vm_id} left {len(self.errors)} object(s): "
            + ", ".join(obj for obj, _ in self.errors),
            cause=first,
            context={"vm": self.vm_id, "failed": [obj for obj, _ in self.errors]},
        )


class Teardown:
    def __init__(self, kubevirt: KubeVirt, *, logger: Optional[logging.Logger] = None):
        self.kubevirt = kubevirt
        self.store = kubevirt.store
        self.logger = logger or kubevirt.logger

    @property
    def namespace(self) -> str:
        return self.kubevirt.namespace

    def _list(self, kind: Kind, labels: Mapping[str, str], report: TeardownReport) -> List[Manifest]:
        try:
            return self.kubevirt._list(kind, labels)
        except StoreError as e:
            report.errors.append((f"{kind.kind}/*", e))
            self.logger.warning("Listing %s for teardown failed vm=%s: %s", kind.kind, report.vm_id, e)
            return []

    def _delete(
        self, report: TeardownReport, kind: Kind, name: str, *, propagation_policy: Optional[str] = None
    ) -> bool:
        """True when the object is gone afterwards."""
        ns = self.namespace if kind.namespaced else None
        path = f"{kind.kind}/{ns}/{name}" if ns else f"{kind.kind}/{name}"
        try:
            self.store.delete(kind, name, ns, propagation_policy=propagation_policy)
        except NotFoundError:
            return True
        except StoreError as e:
            report.errors.append((path, e))
            self.logger.warning("Failed to delete %s vm=%s: %s", path, report.vm_id, e)
            return False
        report.deleted.append(path)
        self.logger.info("Deleted %s vm=%s", path, report.vm_id)
        return True

    # ------------------------------------------------------------------

    def delete_vm_resources(self, vm: VMStatus) -> TeardownReport:
        report = TeardownReport(vm_id=vm.id)
        Log.step(self.logger, f"Tearing down resources of VM {vm}", plan=self.kubevirt.plan.name)
        key = self.kubevirt.key(vm.id)
        selector = key.all_but_migration()

        self.delete_hook_jobs(report, selector)
        for pod in self._list(kinds.POD, key.conversion_labels(True), report):
            self._delete(report, kinds.POD, name_of(pod))
        for pod in self._list(kinds.POD, key.consumer_labels(True), report):
            self._delete(report, kinds.POD, name_of(pod))
        # The VM cascade takes the claims that name the importer pods.
        dvs = self._list(kinds.DATA_VOLUME, selector, report)
        importers = self.importer_pods(report, dvs)
        for obj in self._list(kinds.VIRTUAL_MACHINE, selector, report):
            self._delete(report, kinds.VIRTUAL_MACHINE, name_of(obj), propagation_policy=FOREGROUND)
        for dv in dvs:
            self._delete(report, kinds.DATA_VOLUME, name_of(dv))
        for pod in importers:
            self._delete(report, kinds.POD, name_of(pod))
        self.delete_populated_claims(report, selector)
        if self.kubevirt.plan.provider.type == ProviderType.OPENSTACK:
            for obj in self._list(kinds.OPENSTACK_POPULATOR, selector, report):
                self._delete(report, kinds.OPENSTACK_POPULATOR, name_of(obj))
        for pv in self._list(kinds.PV, selector, report):
            self._delete(report, kinds.PV, name_of(pv))
        for obj in self._list(kinds.SECRET, selector, report):
            self._delete(report, kinds.SECRET, name_of(obj))
        for obj in self._list(kinds.CONFIG_MAP, selector, report):
            self._delete(report, kinds.CONFIG_MAP, name_of(obj))

        if report.ok:
            Log.ok(self.logger, f"Teardown finished vm={vm} deleted={len(report.deleted)}")
        else:
            Log.warn(self.logger, f"Teardown incomplete vm={vm} failed={len(report.errors)}")
        return report

    def delete_hook_jobs(self, report: TeardownReport, selector: Mapping[str, str]) -> None:
        for job in self._list(kinds.JOB, selector, report):
            name = name_of(job)
            self._delete(report, kinds.JOB, name, propagation_policy=BACKGROUND)
            for pod in self._list(kinds.POD, {JOB_NAME: name}, report):
                self._delete(report, kinds.POD, name_of(pod))

    def importer_pods(self, report: TeardownReport, dvs: List[Manifest]) -> List[Manifest]:
        """CDI importer pods left for the given DataVolumes."""
        out: List[Manifest] = []
        for dv in dvs:
            name = name_of(dv)
            try:
                pvc = self.kubevirt._get_or_none(kinds.PVC, name)
                if pvc is not None:
                    out.extend(self.kubevirt.importer_pods(pvc))
            except StoreError as e:
                report.errors.append((f"Pod/{self.namespace}/importer-{name}*", e))
        return out

    def delete_populated_claims(self, report: TeardownReport, selector: Mapping[str, str]) -> None:
        """
        Populator claims carry a finalizer the populator only drops once done,
        so a delete alone can hang forever. The finalizer is stripped only after
        the delete was accepted; the prime claim goes first.
        """
        pvcs = self._list(kinds.PVC, selector, report)
        uids = [uid_of(p) for p in pvcs]
        for pvc in pvcs:
            name = name_of(pvc)
            self._delete(report, kinds.PVC, PRIME_PVC_PREFIX + uid_of(pvc))
            if not self._delete(report, kinds.PVC, name):
                continue
            if not (pvc.get("metadata") or {}).get("finalizers"):
                continue
            try:
                self.store.patch(kinds.PVC, name, self.namespace, {"metadata": {"finalizers": None}})
            except NotFoundError:
                continue
            except StoreError as e:
                report.errors.append((f"PersistentVolumeClaim/{self.namespace}/{name}", e))
                self.logger.warning("Failed to strip finalizers of %s/%s: %s", self.namespace, name, e)
        try:
            pods = self.kubevirt.populator_pods(uids)
        except StoreError as e:
            report.errors.append((f"Pod/{self.namespace}/{POPULATOR_POD_PREFIX}*", e))
            return
        for pod in pods:
            self._delete(report, kinds.POD, name_of(pod))
