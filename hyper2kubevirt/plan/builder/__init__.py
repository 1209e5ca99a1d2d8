# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/builder/__init__.py
from __future__ import annotations

import logging
from typing import Dict, Optional, Type

from ...config.settings import Settings
from ...core.exceptions import ValidationError
from ..models import Inventory, MigrationPlan
from .base import Builder, PopulatorVolume
from .openstack import OpenStackBuilder
from .vsphere import VSphereBuilder

BUILDERS: Dict[str, Type[Builder]] = {
    VSphereBuilder.provider_type: VSphereBuilder,
    OpenStackBuilder.provider_type: OpenStackBuilder,
}


def builder_for(
    plan: MigrationPlan,
    inventory: Inventory,
    settings: Settings,
    *,
    logger: Optional[logging.Logger] = None,
) -> Builder:
    """Pick the builder for the plan's source provider. Called once per plan."""
    provider_type = getattr(plan.provider.type, "value", plan.provider.type)
    cls = BUILDERS.get(provider_type)
    if cls is None:
        raise ValidationError(
            code=2,
            msg=f"no builder for provider type '{provider_type}'",
            context={"provider": plan.provider.name, "supported": sorted(BUILDERS)},
        )
    return cls(plan, inventory, settings, logger=logger)


__all__ = ["BUILDERS", "Builder", "PopulatorVolume", "OpenStackBuilder", "VSphereBuilder", "builder_for"]
