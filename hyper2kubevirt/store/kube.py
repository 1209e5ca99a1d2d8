# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/store/kube.py
"""
ResourceStore backed by the Kubernetes dynamic client.

Every API failure is translated into the project taxonomy so the engine never
has to look at HTTP status codes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from kubernetes import config as kube_config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from ..core.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StoreError,
)
from ..core.logger import Log
from .base import ResourceStore, label_selector
from .kinds import Kind, kind_of

MERGE_PATCH = "application/merge-patch+json"


def _api_reason(e: ApiException) -> str:
    body = getattr(e, "body", None)
    if not body:
        return str(getattr(e, "reason", "") or "")
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8", "replace")
        return str(json.loads(body).get("reason") or "")
    except (ValueError, AttributeError):
        return str(getattr(e, "reason", "") or "")


def translate_api_error(
    e: ApiException,
    *,
    op: str,
    kind: Kind,
    name: Optional[str] = None,
    namespace: Optional[str] = None,
) -> StoreError:
    ctx: Dict[str, Any] = {"op": op, "kind": kind.kind}
    if name:
        ctx["object"] = f"{namespace}/{name}" if namespace else name
    elif namespace:
        ctx["namespace"] = namespace

    status = getattr(e, "status", None)
    reason = _api_reason(e)
    msg = f"{op} {kind.kind} failed: {reason or status}"

    if status == 404:
        return NotFoundError(code=44, msg=msg, cause=e, context=ctx)
    if status == 409:
        if op == "create" or reason == "AlreadyExists":
            return AlreadyExistsError(code=45, msg=msg, cause=e, context=ctx)
        return ConflictError(code=46, msg=msg, cause=e, context=ctx)
    if status in (401, 403):
        return ForbiddenError(code=43, msg=msg, cause=e, context=ctx)
    return StoreError(code=40, msg=msg, cause=e, context=ctx)


class KubeResourceStore(ResourceStore):
    """
    Thin adapter over `kubernetes.dynamic.DynamicClient`.

    Objects go in and come out as plain dicts.
    """

    def __init__(self, client: DynamicClient, logger: Optional[logging.Logger] = None):
        self.client = client
        self.logger = logger or logging.getLogger("hyper2kubevirt.store")

    @classmethod
    def connect(cls, *, context: Optional[str] = None, logger: Optional[logging.Logger] = None) -> "KubeResourceStore":
        """In-cluster service account first, then the local kubeconfig."""
        try:
            kube_config.load_incluster_config()
        except ConfigException:
            kube_config.load_kube_config(context=context)
        return cls(DynamicClient(ApiClient()), logger=logger)

    def _api(self, kind: Kind, op: str) -> Any:
        try:
            return self.client.resources.get(api_version=kind.api_version, kind=kind.kind)
        except ResourceNotFoundError as e:
            raise NotFoundError(
                code=44,
                msg=f"{op} {kind.kind} failed: resource type not served by the cluster",
                cause=e,
                context={"op": op, "kind": kind.kind, "api_version": kind.api_version},
            )

    @staticmethod
    def _ns(kind: Kind, namespace: Optional[str]) -> Optional[str]:
        return namespace if kind.namespaced else None

    def list(
        self,
        kind: Kind,
        *,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        api = self._api(kind, "list")
        selector = label_selector(labels)
        Log.trace(self.logger, "list %s ns=%s selector=%s", kind.kind, namespace, selector)
        try:
            result = api.get(namespace=self._ns(kind, namespace), label_selector=selector or None)
        except ApiException as e:
            raise translate_api_error(e, op="list", kind=kind, namespace=namespace)
        return list(result.to_dict().get("items") or [])

    def get(self, kind: Kind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        api = self._api(kind, "get")
        try:
            return api.get(name=name, namespace=self._ns(kind, namespace)).to_dict()
        except ApiException as e:
            raise translate_api_error(e, op="get", kind=kind, name=name, namespace=namespace)

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind = kind_of(obj)
        api = self._api(kind, "create")
        namespace = self._ns(kind, (obj.get("metadata") or {}).get("namespace"))
        try:
            return api.create(body=obj, namespace=namespace).to_dict()
        except ApiException as e:
            meta = obj.get("metadata") or {}
            raise translate_api_error(
                e, op="create", kind=kind, name=meta.get("name") or meta.get("generateName"), namespace=namespace
            )

    def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        kind = kind_of(obj)
        api = self._api(kind, "update")
        meta = obj.get("metadata") or {}
        namespace = self._ns(kind, meta.get("namespace"))
        try:
            return api.replace(body=obj, namespace=namespace).to_dict()
        except ApiException as e:
            raise translate_api_error(e, op="update", kind=kind, name=meta.get("name"), namespace=namespace)

    def patch(self, kind: Kind, name: str, namespace: Optional[str], patch: Dict[str, Any]) -> Dict[str, Any]:
        api = self._api(kind, "patch")
        try:
            return api.patch(
                body=patch, name=name, namespace=self._ns(kind, namespace), content_type=MERGE_PATCH
            ).to_dict()
        except ApiException as e:
            raise translate_api_error(e, op="patch", kind=kind, name=name, namespace=namespace)

    def delete(
        self,
        kind: Kind,
        name: str,
        namespace: Optional[str] = None,
        *,
        propagation_policy: Optional[str] = None,
    ) -> None:
        api = self._api(kind, "delete")
        body = {"propagationPolicy": propagation_policy} if propagation_policy else None
        try:
            api.delete(name=name, namespace=self._ns(kind, namespace), body=body)
        except ApiException as e:
            raise translate_api_error(e, op="delete", kind=kind, name=name, namespace=namespace)
