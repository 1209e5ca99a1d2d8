# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/ovf.py
"""
Parse the domain description the conversion pod serves at /ovf.

After conversion virt-v2v writes a libvirt domain for the converted guest; the
only thing read back from it is the firmware, taken from the loader path.
"""

from __future__ import annotations

from typing import Optional
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring as safe_fromstring

from ..core.exceptions import ValidationError
from .models import Firmware


def _local(tag: str) -> str:
    return tag.split("}", 1)[1] if tag.startswith("{") else tag


def _child(el: Element, name: str) -> Optional[Element]:
    for c in list(el):
        if _local(c.tag) == name:
            return c
    return None


def parse_domain(xml_text: str) -> Element:
    try:
        root = safe_fromstring(xml_text)
    except (ParseError, DefusedXmlException) as e:
        raise ValidationError(code=2, msg=f"Failed to parse domain XML: {e}", cause=e)
    if _local(root.tag) != "domain":
        raise ValidationError(
            code=2, msg=f"Unexpected root element '{_local(root.tag)}' in domain XML", context={"root": root.tag}
        )
    return root


def firmware_from_config(xml_text: str) -> Firmware:
    """`efi` when <os><loader> points at an OVMF build, otherwise `bios`."""
    root = parse_domain(xml_text)
    os_el = _child(root, "os")
    if os_el is None:
        return Firmware.BIOS
    loader = _child(os_el, "loader")
    if loader is not None and "OVMF" in (loader.text or ""):
        return Firmware.EFI
    return Firmware.BIOS
