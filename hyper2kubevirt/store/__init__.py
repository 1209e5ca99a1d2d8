# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/store/__init__.py
from . import kinds
from .base import BACKGROUND, FOREGROUND, ResourceStore
from .kube import KubeResourceStore

__all__ = ["kinds", "BACKGROUND", "FOREGROUND", "ResourceStore", "KubeResourceStore"]
