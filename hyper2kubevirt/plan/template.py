# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/template.py
"""
OpenShift Template processing: parameter generation, `${X}` substitution and
extraction of the embedded VirtualMachine.
"""

from __future__ import annotations

import copy
import json
import random
import re
import string
from typing import Any, Dict, List, Optional

from ..core.exceptions import ValidationError

NAME_PARAMETER = "NAME"

_CLASSES = {
    "w": string.ascii_letters + string.digits + "_",
    "d": string.digits,
    "a": string.ascii_letters,
    "A": "~!@#$%^&*()-_+={}[]\\|<,>.?/\"';:`",
}
_COUNT_RE = re.compile(r"\{(\d+)\}")
_PARAM_RE = re.compile(r"\$\{\{?([A-Za-z0-9_]+)\}?\}")
_WHOLE_NON_STRING_RE = re.compile(r"^\$\{\{([A-Za-z0-9_]+)\}\}$")


class ExpressionValueGenerator:
    """
    Generates values for `generate: expression` parameters.

    Supports `[a-z0-9]` style ranges, the `\\w \\d \\a \\A` classes and `{n}`
    repetition; everything else is copied literally.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def generate(self, expression: str) -> str:
        out: List[str] = []
        i = 0
        n = len(expression)
        while i < n:
            ch = expression[i]
            if ch == "[":
                end = expression.find("]", i + 1)
                if end < 0:
                    raise ValidationError(code=2, msg=f"unterminated range in expression '{expression}'")
                alphabet = _expand_range(expression[i + 1 : end], expression)
                i = end + 1
            elif ch == "\\" and i + 1 < n and expression[i + 1] in _CLASSES:
                alphabet = _CLASSES[expression[i + 1]]
                i += 2
            else:
                out.append(ch)
                i += 1
                continue

            count = 1
            m = _COUNT_RE.match(expression, i)
            if m:
                count = int(m.group(1))
                i = m.end()
            out.extend(self.rng.choice(alphabet) for _ in range(count))
        return "".join(out)


def _expand_range(body: str, expression: str) -> str:
    chars: List[str] = []
    i = 0
    while i < len(body):
        if body[i] == "\\" and i + 1 < len(body) and body[i + 1] in _CLASSES:
            chars.extend(_CLASSES[body[i + 1]])
            i += 2
        elif i + 2 < len(body) and body[i + 1] == "-":
            lo, hi = body[i], body[i + 2]
            if ord(lo) > ord(hi):
                raise ValidationError(code=2, msg=f"invalid range '{lo}-{hi}' in expression '{expression}'")
            chars.extend(chr(c) for c in range(ord(lo), ord(hi) + 1))
            i += 3
        else:
            chars.append(body[i])
            i += 1
    if not chars:
        raise ValidationError(code=2, msg=f"empty range in expression '{expression}'")
    return "".join(dict.fromkeys(chars))


def process_template(
    template: Dict[str, Any],
    vm_name: str,
    *,
    generator: Optional[ExpressionValueGenerator] = None,
) -> Dict[str, Any]:
    """
    Return a processed copy of `template`.

    NAME is bound to `vm_name`; `generate: expression` parameters are
    generated from their `from` expression; any other parameter keeps its
    value or, when empty, receives a random lowercase string.
    """
    gen = generator or ExpressionValueGenerator()
    out = copy.deepcopy(template)
    values: Dict[str, str] = {}
    errors: List[str] = []
    for param in out.get("parameters") or []:
        name = str(param.get("name") or "")
        if not name:
            errors.append("parameter without a name")
            continue
        if name == NAME_PARAMETER:
            value = vm_name
        elif param.get("generate") == "expression":
            try:
                value = gen.generate(str(param.get("from") or ""))
            except ValidationError as e:
                errors.append(f"{name}: {e}")
                continue
        else:
            value = str(param.get("value") or "") or gen.generate("[a-z0-9]{8}")
        param["value"] = value
        values[name] = value

    if errors:
        raise ValidationError(
            code=2,
            msg=f"Failed to process template: {', '.join(errors)}",
            context={"template": (template.get("metadata") or {}).get("name", "")},
        )
    out["objects"] = [_substitute(obj, values) for obj in out.get("objects") or []]
    return out


def _substitute(node: Any, values: Dict[str, str]) -> Any:
    if isinstance(node, dict):
        return {k: _substitute(v, values) for k, v in node.items()}
    if isinstance(node, list):
        return [_substitute(v, values) for v in node]
    if isinstance(node, str):
        m = _WHOLE_NON_STRING_RE.match(node)
        if m and m.group(1) in values:
            raw = values[m.group(1)]
            try:
                return json.loads(raw)
            except ValueError:
                return raw
        return _PARAM_RE.sub(lambda mm: values.get(mm.group(1), mm.group(0)), node)
    return node


def decode_virtual_machine(template: Dict[str, Any]) -> Dict[str, Any]:
    """The VirtualMachine embedded as the template's first object."""
    objects = template.get("objects") or []
    if not objects:
        raise ValidationError(code=2, msg="Could not find VirtualMachine in Template objects.")
    obj = objects[0]
    if isinstance(obj, (str, bytes)):
        try:
            obj = json.loads(obj)
        except ValueError as e:
            raise ValidationError(code=2, msg=f"Could not decode Template object: {e}", cause=e)
    if not isinstance(obj, dict) or obj.get("kind") != "VirtualMachine":
        raise ValidationError(
            code=2,
            msg="Template's first object is not a VirtualMachine",
            context={"kind": obj.get("kind") if isinstance(obj, dict) else type(obj).__name__},
        )
    return copy.deepcopy(obj)
