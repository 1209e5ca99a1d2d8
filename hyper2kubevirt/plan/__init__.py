# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/__init__.py
from .builder import Builder, builder_for
from .conversion import ConversionState, GuestConversion
from .kubevirt import KubeVirt
from .labels import OwnershipIndex, OwnershipKey
from .models import Migration, MigrationPlan, Provider, ProviderType, VMRef, VMStatus
from .teardown import Teardown, TeardownReport

__all__ = [
    "Builder",
    "builder_for",
    "ConversionState",
    "GuestConversion",
    "KubeVirt",
    "OwnershipIndex",
    "OwnershipKey",
    "Migration",
    "MigrationPlan",
    "Provider",
    "ProviderType",
    "VMRef",
    "VMStatus",
    "Teardown",
    "TeardownReport",
]
