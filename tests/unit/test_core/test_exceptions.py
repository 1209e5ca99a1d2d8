# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the error taxonomy and secret redaction."""
from __future__ import annotations

import pytest

from hyper2kubevirt.core.exceptions import (
    REDACTED,
    AlreadyExistsError,
    ForbiddenError,
    Hyper2KubevirtError,
    InternalError,
    NotFoundError,
    StoreError,
    ValidationError,
    format_exception_for_cli,
    wrap_internal,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    def test_base_exception_creation(self):
        err = Hyper2KubevirtError(code=1, msg="Test error")

        assert err.code == 1
        assert err.msg == "Test error"
        assert err.cause is None
        assert err.context == {}

    def test_store_errors_share_a_base(self):
        for cls in (NotFoundError, AlreadyExistsError, ForbiddenError):
            err = cls(msg="x")
            assert isinstance(err, StoreError)
            assert isinstance(err, Hyper2KubevirtError)

    def test_code_is_clamped(self):
        assert Hyper2KubevirtError(code=999).code == 255
        assert Hyper2KubevirtError(code=-3).code == 1
        assert Hyper2KubevirtError(code="nope").code == 1

    def test_message_is_single_line(self):
        err = Hyper2KubevirtError(msg="line one\nline two")
        assert str(err) == "line one line two"


@pytest.mark.unit
class TestWrapInternal:
    def test_foreign_exception_becomes_internal(self):
        cause = KeyError("spec")
        err = wrap_internal("ensure VM failed", cause, kind="VirtualMachine", namespace="ns", name="vm", vm="vm-1")

        assert isinstance(err, InternalError)
        assert err.cause is cause
        assert err.context == {"kind": "VirtualMachine", "object": "ns/vm", "vm": "vm-1"}
        assert "ensure VM failed" in err.msg

    def test_project_error_keeps_type_and_gains_context(self):
        original = ForbiddenError(msg="denied", context={"op": "create"})
        err = wrap_internal("ensure secret failed", original, kind="Secret", vm="vm-1")

        assert err is original
        assert isinstance(err, ForbiddenError)
        assert err.context["op"] == "create"
        assert err.context["vm"] == "vm-1"


@pytest.mark.security
class TestSecretRedaction:
    def test_password_redacted_in_context(self):
        err = Hyper2KubevirtError(code=1, msg="Auth failed").with_context(
            user="admin", password="super_secret_123", host="vcenter.local"
        )

        d = err.to_dict()

        assert d["context"]["password"] == REDACTED
        assert d["context"]["user"] == "admin"
        assert d["context"]["host"] == "vcenter.local"

    def test_thumbprint_and_token_redacted(self):
        err = Hyper2KubevirtError(msg="x", context={"thumbprint": "AA:BB", "bearer_token": "t"})
        d = err.to_dict()
        assert d["context"]["thumbprint"] == REDACTED
        assert d["context"]["bearer_token"] == REDACTED

    def test_secret_name_is_not_redacted(self):
        err = Hyper2KubevirtError(msg="x", context={"secret_name": "plan1-vm-1-abcde"})
        assert err.to_dict()["context"]["secret_name"] == "plan1-vm-1-abcde"

    def test_cli_format_redacts_context(self):
        err = ValidationError(msg="bad", context={"password": "hunter2"})
        text = format_exception_for_cli(err, verbose=1)
        assert "hunter2" not in text
        assert REDACTED in text

    def test_cli_format_levels(self):
        err = ValidationError(msg="bad input", cause=ValueError("inner"), context={"vm": "vm-1"})
        assert format_exception_for_cli(err) == "bad input"
        assert "vm='vm-1'" in format_exception_for_cli(err, verbose=1)
        assert "inner" in format_exception_for_cli(err, verbose=2)
        assert format_exception_for_cli(RuntimeError("plain"), verbose=2) == "RuntimeError: plain"
