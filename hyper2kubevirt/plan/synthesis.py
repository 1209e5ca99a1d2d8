# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/synthesis.py
"""
Desired VirtualMachine for a source VM.

Strategies, first success wins:
  1. preference: OS map -> VirtualMachine(Cluster)Preference
  2. template:   newest matching OpenShift Template, processed and decoded
  3. empty:      bare VirtualMachine

A failing strategy is logged and the next one tried; the empty definition
always succeeds, so synthesis never fails because of a missing match.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import Settings
from ..core.exceptions import ForbiddenError, NotFoundError, StoreError, ValidationError
from ..core.logger import Log
from ..store import kinds
from ..store.base import ResourceStore, labels_of, name_of
from .builder import Builder
from .labels import ANN_KUBEVIRT_VALIDATIONS, ANN_ORIGINAL_ID, ANN_ORIGINAL_NAME, VM, OwnershipKey
from .models import MigrationPlan, PowerState, VMStatus
from .naming import dns1123_label_errors, unique_vm_name
from .template import decode_virtual_machine, process_template

Manifest = Dict[str, Any]

# Failures that move synthesis on to the next strategy.
_FALLBACK_ERRORS = (ValidationError, StoreError)


def _hard_failure(e: Exception) -> None:
    # Permission problems are surfaced, not hidden behind a fallback.
    if isinstance(e, ForbiddenError):
        raise e


class VirtualMachineSynthesizer:
    def __init__(
        self,
        store: ResourceStore,
        builder: Builder,
        plan: MigrationPlan,
        settings: Settings,
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.builder = builder
        self.plan = plan
        self.settings = settings
        self.logger = logger or logging.getLogger("hyper2kubevirt.synthesis")

    # ------------------------------------------------------------------

    def ensure_valid_name(self, vm: VMStatus) -> Optional[str]:
        """
        Rewrite `vm.name` into a DNS-1123 label if needed.
        Returns the original name when a rewrite happened, else None.
        """
        errs = dns1123_label_errors(vm.name)
        if not errs:
            return None
        original = vm.name
        taken = {
            name_of(obj)
            for obj in self.store.list(kinds.VIRTUAL_MACHINE, namespace=self.plan.target_namespace)
            if labels_of(obj).get(VM) != vm.id
        }
        vm.name = unique_vm_name(original, vm.id, taken)
        vm.original_name = original
        self.logger.info(
            "VM name is incompatible with DNS1123 RFC, renaming: '%s' -> '%s' (%s)", original, vm.name, "; ".join(errs)
        )
        return original

    def build(self, vm: VMStatus, key: OwnershipKey, pvcs: List[Manifest]) -> Manifest:
        # A rename from an earlier pass whose VM create failed still counts.
        original_name = self.ensure_valid_name(vm) or vm.original_name
        log = Log.bind(self.logger, vm=str(vm))

        try:
            obj = self.from_preference(vm, key)
        except _FALLBACK_ERRORS as e:
            _hard_failure(e)
            log.info("Building VirtualMachine without a VirtualMachinePreference: %s", e)
            try:
                obj = self.from_template(vm, key)
            except _FALLBACK_ERRORS as e2:
                _hard_failure(e2)
                log.info("Building VirtualMachine without template: %s", e2)
                obj = self.empty_vm(vm, key)

        spec = obj.setdefault("spec", {})
        template = spec.setdefault("template", {})
        template_meta = template.setdefault("metadata", {})
        template_meta.setdefault("labels", {})["app"] = vm.name

        if original_name:
            annotations = obj["metadata"].setdefault("annotations", {})
            annotations[ANN_ORIGINAL_NAME] = original_name
            annotations[ANN_ORIGINAL_ID] = vm.id

        spec.pop("runStrategy", None)
        spec["running"] = vm.restore_power_state == PowerState.ON

        self.builder.virtual_machine(vm.ref, spec, pvcs)
        return obj

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def empty_vm(self, vm: VMStatus, key: OwnershipKey) -> Manifest:
        return {
            "apiVersion": kinds.VIRTUAL_MACHINE.api_version,
            "kind": kinds.VIRTUAL_MACHINE.kind,
            "metadata": {
                "name": vm.name,
                "namespace": self.plan.target_namespace,
                "labels": key.vm_labels(),
            },
            "spec": {"template": {}},
        }

    def os_map(self) -> Optional[Manifest]:
        provider_type = getattr(self.plan.provider.type, "value", self.plan.provider.type)
        name = self.settings.os_map_name(provider_type)
        if not name:
            return None
        return self.store.get(kinds.CONFIG_MAP, name, self.settings.operator_namespace)

    def from_preference(self, vm: VMStatus, key: OwnershipKey) -> Manifest:
        preference = self.builder.preference_name(vm.ref, self.os_map())
        if not preference:
            raise ValidationError(code=2, msg="couldn't find a corresponding preference", context={"vm": vm.id})
        name, kind = self.find_preference(vm, preference)
        obj = self.empty_vm(vm, key)
        obj["spec"]["preference"] = {"name": name, "kind": kind}
        return obj

    def find_preference(self, vm: VMStatus, preference: str) -> Tuple[str, str]:
        try:
            self.store.get(kinds.VM_PREFERENCE, preference, self.plan.target_namespace)
            return preference, kinds.VM_PREFERENCE.kind
        except NotFoundError:
            self.logger.info(
                "could not find a local instance type preference for destination VM %s, trying cluster wide", vm
            )
        except ForbiddenError:
            raise
        except StoreError as e:
            self.logger.error(
                "could not fetch a local instance type preference for destination VM %s, trying cluster wide: %s",
                vm,
                e,
            )
        self.store.get(kinds.VM_CLUSTER_PREFERENCE, preference)
        return preference, kinds.VM_CLUSTER_PREFERENCE.kind

    def find_template(self, vm: VMStatus) -> Manifest:
        selector = self.builder.template_labels(vm.ref)
        templates = self.store.list(kinds.TEMPLATE, namespace=self.settings.template_namespace, labels=selector)
        if not templates:
            raise ValidationError(code=2, msg="No matching templates found", context={"vm": vm.id})
        templates.sort(key=lambda t: str((t.get("metadata") or {}).get("creationTimestamp") or ""), reverse=True)
        return templates[0]

    def from_template(self, vm: VMStatus, key: OwnershipKey) -> Manifest:
        tmpl = self.find_template(vm)
        processed = process_template(tmpl, vm.name)
        obj = decode_virtual_machine(processed)

        meta = obj.setdefault("metadata", {})
        labels = meta.get("labels") or {}
        labels.update(key.vm_labels())
        meta["labels"] = labels
        meta["name"] = vm.name
        meta["namespace"] = self.plan.target_namespace
        for k in ("uid", "resourceVersion", "creationTimestamp", "ownerReferences", "generateName"):
            meta.pop(k, None)
        annotations = meta.get("annotations") or {}
        annotations.pop(ANN_KUBEVIRT_VALIDATIONS, None)
        if annotations:
            meta["annotations"] = annotations
        else:
            meta.pop("annotations", None)

        spec = obj.setdefault("spec", {})
        template = spec.get("template") or {}
        template_spec = template.setdefault("spec", {})
        template_spec["volumes"] = []
        template_spec["networks"] = []
        spec["template"] = template
        spec["dataVolumeTemplates"] = []
        obj.pop("status", None)

        self.logger.debug("VM %s built from template %s", vm, name_of(tmpl))
        return obj
