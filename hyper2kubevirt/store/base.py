# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/store/base.py
"""
Resource store contract.

Objects are plain manifest dicts (apiVersion/kind/metadata/spec/status), the
same shape the Kubernetes API serves. Stores raise the project error taxonomy:
NotFoundError, AlreadyExistsError, ConflictError, ForbiddenError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from .kinds import Kind

FOREGROUND = "Foreground"
BACKGROUND = "Background"


class ResourceStore(ABC):
    @abstractmethod
    def list(
        self,
        kind: Kind,
        *,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of `kind`, optionally scoped to a namespace and an equality label selector."""

    @abstractmethod
    def get(self, kind: Kind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one object. Raises NotFoundError."""

    @abstractmethod
    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create `obj` and return the stored object.
        `metadata.generateName` is honoured when `metadata.name` is empty.
        Raises AlreadyExistsError.
        """

    @abstractmethod
    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace `obj`. Raises NotFoundError or ConflictError."""

    @abstractmethod
    def patch(self, kind: Kind, name: str, namespace: Optional[str], patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a JSON merge patch (RFC 7386)."""

    @abstractmethod
    def delete(
        self,
        kind: Kind,
        name: str,
        namespace: Optional[str] = None,
        *,
        propagation_policy: Optional[str] = None,
    ) -> None:
        """Delete one object. Raises NotFoundError."""


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------

def meta(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("name") or "")


def namespace_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("namespace") or "")


def labels_of(obj: Mapping[str, Any]) -> Dict[str, str]:
    return dict(meta(obj).get("labels") or {})


def annotations_of(obj: Mapping[str, Any]) -> Dict[str, str]:
    return dict(meta(obj).get("annotations") or {})


def uid_of(obj: Mapping[str, Any]) -> str:
    return str(meta(obj).get("uid") or "")


def path_of(obj: Mapping[str, Any]) -> str:
    """namespace/name, or just name for cluster-scoped objects."""
    ns = namespace_of(obj)
    return f"{ns}/{name_of(obj)}" if ns else name_of(obj)


def label_selector(labels: Optional[Mapping[str, str]]) -> str:
    if not labels:
        return ""
    return ",".join(f"{k}={labels[k]}" for k in sorted(labels))


def selector_matches(selector: Optional[Mapping[str, str]], labels: Mapping[str, str]) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


def merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch; `None` removes a key."""
    if not isinstance(patch, Mapping):
        return patch
    out = dict(target) if isinstance(target, Mapping) else {}
    for k, v in patch.items():
        if v is None:
            out.pop(k, None)
        else:
            out[k] = merge_patch(out.get(k), v)
    return out
