# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/config/__init__.py
from .settings import Settings

__all__ = ["Settings"]
