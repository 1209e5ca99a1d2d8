# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/naming.py

from __future__ import annotations

import hashlib
import re
from typing import Container, List

NAME_MAX_LENGTH = 63

_DNS1123_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_INVALID_RE = re.compile(r"[^a-z0-9-]+")
_DASHES_RE = re.compile(r"-{2,}")


def dns1123_label_errors(name: str) -> List[str]:
    errs: List[str] = []
    if len(name) > NAME_MAX_LENGTH:
        errs.append(f"must be no more than {NAME_MAX_LENGTH} characters")
    if not _DNS1123_LABEL_RE.match(name or ""):
        errs.append(
            "a lowercase RFC 1123 label must consist of lower case alphanumeric characters or '-', "
            "and must start and end with an alphanumeric character"
        )
    return errs


def is_dns1123_label(name: str) -> bool:
    return not dns1123_label_errors(name)


def to_dns1123_label(name: str) -> str:
    """
    Rewrite `name` into a DNS-1123 label.

      - lowercase
      - runs of invalid characters (and '.') => '-'
      - collapse repeated '-'
      - cap at 63, trim '-' edges
    """
    s = (name or "").strip().lower()
    s = _INVALID_RE.sub("-", s)
    s = _DASHES_RE.sub("-", s).strip("-")
    s = s[:NAME_MAX_LENGTH].strip("-")
    return s or "vm"


def vm_id_suffix(vm_id: str, length: int = 4) -> str:
    return hashlib.sha256(vm_id.encode("utf-8")).hexdigest()[:length]


def unique_vm_name(name: str, vm_id: str, taken: Container[str]) -> str:
    """
    DNS-1123 form of `name`; if another source VM already holds it in the
    target namespace, append a suffix derived from `vm_id`.
    """
    new = to_dns1123_label(name)
    if new not in taken:
        return new
    suffix = "-" + vm_id_suffix(vm_id)
    return new[: NAME_MAX_LENGTH - len(suffix)].rstrip("-") + suffix
