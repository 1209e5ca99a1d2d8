# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/__init__.py
"""
hyper2kubevirt - per-VM migration resource convergence for KubeVirt

Drives the objects a VM migration needs on the target cluster (credential
secret, config map, import or populator volumes, the VirtualMachine and the
virt-v2v conversion pod) towards their desired state, one reconcile pass at a
time, and tears them down again.

Usage as a library:

    from hyper2kubevirt import KubeVirt, KubeResourceStore, Settings, builder_for

    settings = Settings.load(["/etc/hyper2kubevirt/settings.yaml"])
    builder = builder_for(plan, inventory, settings)
    engine = KubeVirt(KubeResourceStore.connect(), plan, migration, builder, settings)
    engine.ensure_vm(vm)
"""

__version__ = "0.1.0"

from .config import Settings
from .core import Hyper2KubevirtError, Log
from .plan import (
    ConversionState,
    GuestConversion,
    KubeVirt,
    Teardown,
    TeardownReport,
    builder_for,
)
from .store import KubeResourceStore, ResourceStore

__all__ = [
    "__version__",
    "Settings",
    "Hyper2KubevirtError",
    "Log",
    "ConversionState",
    "GuestConversion",
    "KubeVirt",
    "Teardown",
    "TeardownReport",
    "builder_for",
    "KubeResourceStore",
    "ResourceStore",
]
