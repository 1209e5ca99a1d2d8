# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/kubevirt.py
"""
Per-VM convergence against the target cluster.

Every ensure_* call lists by ownership labels first and only creates what is
missing, so a crashed or repeated reconcile never duplicates objects. Nothing
here waits: a dependency that is not ready yet is reported back and the next
reconcile picks up from the same place.

Order per VM:
  namespace -> secret -> config map -> volumes -> VM -> conversion pod
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from ..config.settings import Settings
from ..core.exceptions import AlreadyExistsError, NotFoundError, wrap_internal
from ..core.logger import Log
from ..core.retry import retry_operation
from ..store import kinds
from ..store.base import (
    FOREGROUND,
    ResourceStore,
    annotations_of,
    labels_of,
    meta,
    name_of,
    path_of,
    uid_of,
)
from ..store.kinds import Kind, kind_of
from .builder import Builder
from .labels import (
    ANN_BIND_IMMEDIATE,
    ANN_DEFAULT_NETWORK,
    ANN_DELETE_AFTER_COMPLETION,
    ANN_IMPORTER_POD_NAME,
    ANN_RETAIN_AFTER_COMPLETION,
    CDI_APP,
    CDI_IMPORTER,
    MIGRATION,
    PLAN,
    POPULATOR_POD_PREFIX,
    VM,
    VOLUME,
    OwnershipIndex,
    OwnershipKey,
    owner_reference,
)
from .models import (
    ExtendedDataVolume,
    Inventory,
    Migration,
    MigrationPlan,
    ProviderType,
    VirtualMachine,
    VMRef,
    VMStatus,
)
from .synthesis import VirtualMachineSynthesizer

Manifest = Dict[str, Any]

QEMU_USER = 107
QEMU_GROUP = 107
KVM_DEVICE = "devices.kubevirt.io/kvm"
SCHEDULABLE_LABEL = "kubevirt.io/schedulable"


@dataclass
class _Target:
    """Object a wrapped block is working on, filled in once its name is known."""
    kind: Optional[str] = None
    name: Optional[str] = None

    def at(self, kind: Kind, name: str) -> None:
        self.kind, self.name = kind.kind, name


class _StaleObject(AlreadyExistsError):
    """Name is held by an object left behind by an earlier migration of the same plan and VM."""

    def __init__(self, existing: Optional[Manifest], **kw: Any):
        super().__init__(**kw)
        self.existing = existing


class KubeVirt:
    """
    Convergence engine for one plan and one active migration.

    Holds no per-VM state; any number of VMs may be reconciled through one
    instance, each scoped by its own ownership labels.
    """

    def __init__(
        self,
        store: ResourceStore,
        plan: MigrationPlan,
        migration: Migration,
        builder: Builder,
        settings: Settings,
        *,
        inventory: Optional[Inventory] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.plan = plan
        self.migration = migration
        self.builder = builder
        self.settings = settings
        self.inventory = inventory or builder.inventory
        self.logger = logger or logging.getLogger("hyper2kubevirt.kubevirt")
        self.synthesizer = VirtualMachineSynthesizer(store, builder, plan, settings, logger=self.logger)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self.plan.target_namespace

    def key(self, vm_id: str) -> OwnershipKey:
        return OwnershipKey(migration=self.migration.uid, plan=self.plan.uid, vm=vm_id)

    def generated_name(self, vm_id: str) -> str:
        return self.key(vm_id).generated_name(self.plan.name)

    def _list(self, kind: Kind, labels: Optional[Mapping[str, str]] = None) -> List[Manifest]:
        return self.store.list(kind, namespace=self.namespace if kind.namespaced else None, labels=labels)

    def _get_or_none(self, kind: Kind, name: str) -> Optional[Manifest]:
        try:
            return self.store.get(kind, name, self.namespace if kind.namespaced else None)
        except NotFoundError:
            return None

    @contextmanager
    def _wrapped(self, what: str, vm_id: str, kind: Optional[Kind] = None) -> Iterator[_Target]:
        target = _Target(kind.kind if kind else None)
        try:
            yield target
        except Exception as e:
            err = wrap_internal(
                f"{what} failed", e, kind=target.kind, namespace=self.namespace, name=target.name, vm=vm_id
            )
            if err is e:
                raise
            raise err from e

    def set_kvm_on_pod_spec(self, pod_spec: Manifest) -> None:
        """Request /dev/kvm so the virt-v2v appliance does not run emulated."""
        if self.settings.migration.virt_v2v_dont_request_kvm:
            return
        if self.plan.provider.type not in (ProviderType.VSPHERE, ProviderType.OVA):
            return
        pod_spec.setdefault("nodeSelector", {})[SCHEDULABLE_LABEL] = "true"
        resources = pod_spec["containers"][0].setdefault("resources", {})
        resources.setdefault("limits", {})[KVM_DEVICE] = "1"
        resources.setdefault("requests", {})[KVM_DEVICE] = "1"

    # ------------------------------------------------------------------
    # Namespace
    # ------------------------------------------------------------------

    def ensure_namespace(self) -> None:
        try:
            self.store.create({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": self.namespace}})
        except AlreadyExistsError:
            return
        self.logger.info("Created namespace %s", self.namespace)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_vms(self) -> List[VirtualMachine]:
        """Target VMs of this plan (any migration), each with the DataVolumes it owns."""
        selector = {PLAN: self.plan.uid}
        vms = [VirtualMachine(vm=o) for o in self._list(kinds.VIRTUAL_MACHINE, selector)]
        index = OwnershipIndex(self._list(kinds.DATA_VOLUME, selector))
        for vm in vms:
            key = OwnershipKey.from_labels(labels_of(vm.vm))
            if key is None:
                continue
            for dv in index.owned_by(key, ignore_migration=True):
                if vm.owner(dv):
                    pvc = self._get_or_none(kinds.PVC, name_of(dv))
                    vm.data_volumes.append(ExtendedDataVolume(data_volume=dv, pvc=pvc))
        return vms

    def virtual_machine_map(self) -> Dict[str, VirtualMachine]:
        return {labels_of(vm.vm).get(VM, ""): vm for vm in self.list_vms()}

    def get_pvcs(self, ref: VMRef) -> List[Manifest]:
        """Claims of this VM in the active migration."""
        return self._list(kinds.PVC, self.key(ref.id).claim_labels())

    def get_data_volumes(self, vm: VMStatus) -> List[ExtendedDataVolume]:
        return [ExtendedDataVolume(data_volume=dv) for dv in self._list(kinds.DATA_VOLUME, self.key(vm.id).vm_labels())]

    def get_pods_with_labels(self, labels: Mapping[str, str]) -> List[Manifest]:
        return self._list(kinds.POD, labels)

    def get_importer_pod(self, pvc: Manifest) -> Optional[Manifest]:
        """The CDI importer pod named in the claim's annotation, if it still exists."""
        name = annotations_of(pvc).get(ANN_IMPORTER_POD_NAME)
        if not name:
            return None
        return self._get_or_none(kinds.POD, name)

    def importer_pods(self, pvc: Manifest) -> List[Manifest]:
        """Every importer pod CDI ran for the claim (retries included)."""
        if ANN_IMPORTER_POD_NAME not in annotations_of(pvc):
            return []
        prefix = f"importer-{name_of(pvc)}"
        return [p for p in self._list(kinds.POD, {CDI_APP: CDI_IMPORTER}) if prefix in name_of(p)]

    def populator_pods(self, pvc_uids: Optional[Iterable[str]] = None) -> List[Manifest]:
        """Populator pods of the active migration, optionally only those serving the given claim uids."""
        uids = set(pvc_uids) if pvc_uids is not None else None
        out = []
        for pod in self._list(kinds.POD, {MIGRATION: self.migration.uid}):
            name = name_of(pod)
            if not name.startswith(POPULATOR_POD_PREFIX):
                continue
            if uids is not None and name[len(POPULATOR_POD_PREFIX):] not in uids:
                continue
            out.append(pod)
        return out

    # ------------------------------------------------------------------
    # Secret / config map
    # ------------------------------------------------------------------

    def secret_data_for_cdi(self, ref: VMRef) -> Dict[str, str]:
        return self.builder.secret(ref, self.plan.provider.secret)

    def provider_secret_copy(self) -> Dict[str, str]:
        return dict(self.plan.provider.secret)

    def ensure_secret(self, ref: VMRef, data: Mapping[str, str]) -> Manifest:
        """
        Per-VM credential secret. The content is re-applied on every call so
        rotated provider credentials reach the importer and conversion pods.
        """
        with self._wrapped("ensure secret", ref.id, kinds.SECRET) as target:
            self.inventory.vm(ref)
            key = self.key(ref.id)
            found = self._list(kinds.SECRET, key.vm_labels())
            if found:
                secret = found[0]
                target.at(kinds.SECRET, name_of(secret))
                secret["data"] = {}
                secret["stringData"] = dict(data)
                secret = self.store.update(secret)
                self.logger.debug("Secret updated: %s vm=%s", path_of(secret), ref)
                return secret
            secret = self.store.create(
                {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "type": "Opaque",
                    "metadata": {
                        "generateName": self.generated_name(ref.id),
                        "namespace": self.namespace,
                        "labels": key.vm_labels(),
                    },
                    "stringData": dict(data),
                }
            )
            self.logger.debug("Secret created: %s vm=%s", path_of(secret), ref)
            return secret

    def config_map(self, ref: VMRef) -> Manifest:
        obj: Manifest = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "generateName": self.generated_name(ref.id),
                "namespace": self.namespace,
                "labels": self.key(ref.id).vm_labels(),
            },
            "binaryData": {},
        }
        self.builder.config_map(ref, self.plan.provider.secret, obj)
        return obj

    def ensure_config_map(self, ref: VMRef) -> Manifest:
        """Per-VM config map. Provider metadata is refreshed in place; other keys are left alone."""
        with self._wrapped("ensure config map", ref.id, kinds.CONFIG_MAP) as target:
            self.inventory.vm(ref)
            desired = self.config_map(ref)
            found = self._list(kinds.CONFIG_MAP, self.key(ref.id).vm_labels())
            if not found:
                cm = self.store.create(desired)
                self.logger.debug("ConfigMap created: %s vm=%s", path_of(cm), ref)
                return cm
            cm = found[0]
            target.at(kinds.CONFIG_MAP, name_of(cm))
            changed = False
            for field in ("data", "binaryData"):
                for k, v in (desired.get(field) or {}).items():
                    current = cm.get(field) or {}
                    if current.get(k) != v:
                        current[k] = v
                        cm[field] = current
                        changed = True
            if changed:
                cm = self.store.update(cm)
                self.logger.debug("ConfigMap updated: %s vm=%s", path_of(cm), ref)
            return cm

    def update_config_map_binary(self, cm: Manifest, key: str, value_b64: str) -> Manifest:
        binary = cm.get("binaryData") or {}
        if binary.get(key) == value_b64:
            return cm
        binary[key] = value_b64
        cm["binaryData"] = binary
        cm = self.store.update(cm)
        self.logger.debug("ConfigMap updated: %s key=%s", path_of(cm), key)
        return cm

    # ------------------------------------------------------------------
    # Import volumes (CDI DataVolumes)
    # ------------------------------------------------------------------

    def data_volumes(self, vm: VMStatus) -> List[Manifest]:
        """Desired DataVolumes for `vm`. Ensures the secret and config map they reference."""
        secret = self.ensure_secret(vm.ref, self.secret_data_for_cdi(vm.ref))
        config_map = self.ensure_config_map(vm.ref)
        with self._wrapped("build DataVolumes", vm.id, kinds.DATA_VOLUME):
            self.inventory.vm(vm.ref)
            key = self.key(vm.id)
            annotations = key.vm_labels()
            if self.settings.migration.retain_precopy_importer_pods:
                annotations[ANN_RETAIN_AFTER_COMPLETION] = "true"
            if self.plan.transfer_network is not None:
                annotations[ANN_DEFAULT_NETWORK] = self.plan.transfer_network.path
            if self.plan.warm or not self.plan.destination_is_host or self.plan.source_is_openshift:
                # WaitForFirstConsumer storage: on a cold local migration the
                # conversion pod is the first consumer, otherwise nothing is.
                annotations[ANN_BIND_IMMEDIATE] = "true"
            # DataVolume status is the disk transfer progress; keep it.
            annotations[ANN_DELETE_AFTER_COMPLETION] = "false"
            template = {
                "apiVersion": kinds.DATA_VOLUME.api_version,
                "kind": kinds.DATA_VOLUME.kind,
                "metadata": {
                    "generateName": self.generated_name(vm.id),
                    "namespace": self.namespace,
                    "annotations": annotations,
                    "labels": key.vm_labels(),
                },
            }
            dvs = self.builder.data_volumes(vm.ref, secret, config_map, template)
        self.create_lun_disks(vm.ref)
        return dvs

    def ensure_data_volumes(self, vm: VMStatus, dvs: List[Manifest]) -> List[Manifest]:
        """Create the DataVolumes whose source disk has none yet. Returns the ones created."""
        created: List[Manifest] = []
        with self._wrapped("ensure DataVolumes", vm.id, kinds.DATA_VOLUME):
            existing = self._list(kinds.DATA_VOLUME, self.key(vm.id).vm_labels())
            seen = {self.builder.resolve_data_volume_identifier(dv) for dv in existing}
            for dv in dvs:
                ident = self.builder.resolve_data_volume_identifier(dv)
                if ident in seen:
                    continue
                obj = self.store.create(copy.deepcopy(dv))
                seen.add(ident)
                created.append(obj)
                self.logger.info("Created DataVolume %s vm=%s source=%s", path_of(obj), vm, ident)
        return created

    # ------------------------------------------------------------------
    # Populator volumes
    # ------------------------------------------------------------------

    def populator_volumes(self, vm: VMStatus) -> List[Manifest]:
        """
        Ensure the populator objects and their claims for `vm`; returns the
        live claims (LUN claims excluded).
        """
        secret = self.ensure_secret(vm.ref, self.provider_secret_copy())
        self.create_lun_disks(vm.ref)
        with self._wrapped("ensure populator volumes", vm.id, kinds.PVC):
            key = self.key(vm.id)
            volumes = self.builder.populator_volumes(vm.ref, key.vm_labels(), name_of(secret))
            ident = self.builder.resolve_persistent_volume_claim_identifier

            claims = {ident(c): c for c in self.get_pvcs(vm.ref) if VOLUME not in labels_of(c)}
            sources: Dict[Kind, Dict[str, Manifest]] = {}
            for v in volumes:
                disk = ident(v.claim)
                if disk in claims:
                    continue
                src_kind = kind_of(v.source)
                if src_kind not in sources:
                    sources[src_kind] = {ident(s): s for s in self._list(src_kind, key.vm_labels())}
                source = sources[src_kind].get(disk)
                if source is None:
                    source = self.store.create(copy.deepcopy(v.source))
                    sources[src_kind][disk] = source
                    self.logger.info("Created %s %s vm=%s source=%s", src_kind.kind, path_of(source), vm, disk)
                claim = copy.deepcopy(v.claim)
                claim["spec"]["dataSourceRef"]["name"] = name_of(source)
                claims[disk] = self.store.create(claim)
                self.logger.info("Created PersistentVolumeClaim %s vm=%s source=%s", path_of(claims[disk]), vm, disk)
            return [c for c in self.get_pvcs(vm.ref) if VOLUME not in labels_of(c)]

    def ensure_populator_volumes(self, vm: VMStatus, pvcs: List[Manifest]) -> Optional[Manifest]:
        """
        WaitForFirstConsumer storage never binds a claim nobody mounts: start
        one consumer pod over every Pending claim. Created at most once per
        VM per migration.
        """
        pending = [name_of(p) for p in pvcs if (p.get("status") or {}).get("phase") == "Pending"]
        if not pending:
            return None
        with self._wrapped("ensure PVC consumer pod", vm.id, kinds.POD):
            key = self.key(vm.id)
            existing = self.get_pods_with_labels(key.consumer_labels())
            if existing:
                return existing[0]
            pod: Manifest = {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": {
                    "generateName": self.generated_name(vm.id) + "pvcinit-",
                    "namespace": self.namespace,
                    "labels": key.consumer_labels(),
                },
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [
                        {
                            "name": "main",
                            # Same image as the conversion pod so the node already has it pulled.
                            "image": self.settings.migration.virt_v2v_image_cold,
                            "command": ["/bin/sh"],
                            "securityContext": {
                                "allowPrivilegeEscalation": False,
                                "runAsNonRoot": True,
                                "runAsUser": QEMU_USER,
                                "capabilities": {"drop": ["ALL"]},
                            },
                        }
                    ],
                    "volumes": [{"name": n, "persistentVolumeClaim": {"claimName": n}} for n in pending],
                    "securityContext": {"seccompProfile": {"type": "RuntimeDefault"}},
                },
            }
            self.set_kvm_on_pod_spec(pod["spec"])
            pod = self.store.create(pod)
            self.logger.info("Created pod %s to init the PVC node vm=%s", path_of(pod), vm)
            return pod

    @staticmethod
    def populator_volumes_bound(pvcs: List[Manifest]) -> bool:
        return all((p.get("status") or {}).get("phase") == "Bound" for p in pvcs)

    def set_populator_pod_ownership(self, vm: VMStatus) -> None:
        """Owner-reference each populator pod (`populate-<pvc uid>`) to its claim."""
        with self._wrapped("set populator pod ownership", vm.id, kinds.POD) as target:
            pvcs = {uid_of(p): p for p in self.get_pvcs(vm.ref)}
            for pod in self.populator_pods(pvcs.keys()):
                pvc = pvcs[name_of(pod)[len(POPULATOR_POD_PREFIX):]]
                refs = meta(pod).get("ownerReferences") or []
                if any(r.get("uid") == uid_of(pvc) for r in refs):
                    continue
                refs = refs + [owner_reference(pvc)]
                target.at(kinds.POD, name_of(pod))
                self.store.patch(kinds.POD, name_of(pod), self.namespace, {"metadata": {"ownerReferences": refs}})

    # ------------------------------------------------------------------
    # LUN pass-through
    # ------------------------------------------------------------------

    def create_lun_disks(self, ref: VMRef) -> None:
        key = self.key(ref.id)
        with self._wrapped("ensure LUN disks", ref.id, kinds.PVC):
            self.ensure_persistent_volume_claims(ref, self.builder.lun_persistent_volume_claims(ref, key))
            self.ensure_persistent_volumes(ref, self.builder.lun_persistent_volumes(ref, key))

    def ensure_persistent_volumes(self, ref: VMRef, pvs: List[Manifest]) -> None:
        if not pvs:
            return
        existing = {labels_of(p).get(VOLUME) for p in self._list(kinds.PV, self.key(ref.id).vm_labels())}
        for pv in pvs:
            volume = labels_of(pv).get(VOLUME)
            if volume in existing:
                continue
            obj = self.store.create(copy.deepcopy(pv))
            existing.add(volume)
            self.logger.info("Created PersistentVolume %s vm=%s", path_of(obj), ref)

    def ensure_persistent_volume_claims(self, ref: VMRef, pvcs: List[Manifest]) -> None:
        if not pvcs:
            return
        existing = {labels_of(p).get(VOLUME) for p in self.get_pvcs(ref)}
        for pvc in pvcs:
            volume = labels_of(pvc).get(VOLUME)
            if volume in existing:
                continue
            obj = self.store.create(copy.deepcopy(pvc))
            existing.add(volume)
            self.logger.info("Created PersistentVolumeClaim %s vm=%s", path_of(obj), ref)

    # ------------------------------------------------------------------
    # VirtualMachine
    # ------------------------------------------------------------------

    def get_vm(self, vm: VMStatus) -> Optional[Manifest]:
        found = self._list(kinds.VIRTUAL_MACHINE, self.key(vm.id).vm_labels())
        return found[0] if found else None

    def ensure_vm(self, vm: VMStatus) -> Manifest:
        """
        Create the target VM or adopt the existing one, then owner-reference
        every claim of the VM to it so deleting the VM cascades.
        """
        with self._wrapped("ensure VM", vm.id, kinds.VIRTUAL_MACHINE) as target:
            obj = self.get_vm(vm)
            pvcs = self.get_pvcs(vm.ref)
            if obj is None:
                desired = self.synthesizer.build(vm, self.key(vm.id), pvcs)
                target.at(kinds.VIRTUAL_MACHINE, name_of(desired))
                obj = self._create_vm(vm, desired)
            else:
                Log.trace(self.logger, "Adopted VM %s vm=%s", path_of(obj), vm)

            owner = owner_reference(obj)
            for pvc in pvcs:
                refs = meta(pvc).get("ownerReferences") or []
                if any(r.get("uid") == owner["uid"] for r in refs):
                    continue
                target.at(kinds.PVC, name_of(pvc))
                self.store.patch(kinds.PVC, name_of(pvc), self.namespace, {"metadata": {"ownerReferences": [owner]}})
            return obj

    def _create_vm(self, vm: VMStatus, desired: Manifest) -> Manifest:
        """
        Create by name. If the name is taken:
          - same plan/VM/migration: another reconcile won the race, adopt it
          - same plan/VM, older migration: stale leftover, delete and retry
          - anything else: AlreadyExistsError, never touch foreign objects
        """
        key = self.key(vm.id)
        name = name_of(desired)

        def create() -> Manifest:
            try:
                obj = self.store.create(copy.deepcopy(desired))
            except AlreadyExistsError as e:
                existing = self._get_or_none(kinds.VIRTUAL_MACHINE, name)
                if existing is None:
                    raise _StaleObject(None, code=45, msg=e.msg, cause=e, context=dict(e.context or {}))
                owner = OwnershipKey.from_labels(labels_of(existing))
                if owner == key:
                    self.logger.info("Adopted VM %s created concurrently vm=%s", path_of(existing), vm)
                    return existing
                if owner is not None and owner.plan == key.plan and owner.vm == key.vm:
                    raise _StaleObject(
                        existing,
                        code=45,
                        msg=f"VM name '{name}' held by migration {owner.migration}",
                        cause=e,
                        context={"object": path_of(existing), "migration": owner.migration},
                    )
                raise AlreadyExistsError(
                    code=45,
                    msg=f"VM name '{name}' is already used by another object",
                    cause=e,
                    context={"object": path_of(existing), "labels": labels_of(existing)},
                )
            self.logger.info("Created Kubevirt VM %s source=%s", path_of(obj), vm)
            return obj

        def delete_stale(e: Exception, attempt: int) -> None:
            existing = getattr(e, "existing", None)
            if existing is None or meta(existing).get("deletionTimestamp"):
                return
            try:
                self.store.delete(kinds.VIRTUAL_MACHINE, name, self.namespace, propagation_policy=FOREGROUND)
            except NotFoundError:
                return
            self.logger.warning("Deleted stale VM %s left by migration %s", path_of(existing), labels_of(existing).get(MIGRATION))

        return retry_operation(
            create,
            max_attempts=self.settings.conflict.recreate_attempts,
            exceptions=_StaleObject,
            before_retry=delete_stale,
            operation_name=f"create VM {self.namespace}/{name}",
            logger=self.logger,
        )
