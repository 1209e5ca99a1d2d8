# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import http.client
from unittest.mock import MagicMock, Mock

import pytest
import requests

from hyper2kubevirt.config.settings import ConversionSettings
from hyper2kubevirt.core.exceptions import InternalError, TransientNetworkError
from hyper2kubevirt.plan.control_client import ConversionControlClient, is_connection_refused, is_eof


def _response(status=200, text=""):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.text = text
    return resp


def _client(**settings):
    session = Mock()
    return ConversionControlClient(ConversionSettings(**settings), session=session, logger=Mock()), session


@pytest.mark.unit
class TestClassification:
    def test_connection_refused_nested(self):
        e = requests.exceptions.ConnectionError(ConnectionRefusedError(111, "Connection refused"))
        assert is_connection_refused(e)

    def test_refused_through_cause_chain(self):
        try:
            try:
                raise ConnectionRefusedError(111, "refused")
            except ConnectionRefusedError as inner:
                raise requests.exceptions.ConnectionError("wrapped") from inner
        except requests.exceptions.ConnectionError as e:
            assert is_connection_refused(e)

    def test_timeout_is_not_refused(self):
        assert not is_connection_refused(requests.exceptions.ConnectTimeout("timed out"))

    def test_eof_variants(self):
        assert is_eof(requests.exceptions.ChunkedEncodingError("chunk"))
        assert is_eof(requests.exceptions.ConnectionError(http.client.RemoteDisconnected("closed")))
        assert is_eof(requests.exceptions.ConnectionError(ConnectionResetError(104, "reset")))
        assert is_eof(requests.exceptions.ConnectionError("('Connection aborted.', ...)"))
        assert not is_eof(requests.exceptions.ConnectTimeout("timed out"))


@pytest.mark.unit
class TestConversionControlClient:
    def test_fetch_ovf(self):
        client, session = _client(port=8080, connect_timeout_s=2, read_timeout_s=9)
        session.get.return_value = _response(text="<domain/>")

        assert client.fetch_ovf("10.128.0.7") == "<domain/>"
        session.get.assert_called_once_with("http://10.128.0.7:8080/ovf", timeout=(2, 9))

    def test_ipv6_address_bracketed(self):
        client, session = _client()
        session.get.return_value = _response(text="<domain/>")
        client.fetch_ovf("fd00::7")
        assert session.get.call_args[0][0] == "http://[fd00::7]:8080/ovf"

    def test_fetch_refused_is_transient(self):
        client, session = _client()
        session.get.side_effect = requests.exceptions.ConnectionError(ConnectionRefusedError(111, "Connection refused"))

        with pytest.raises(TransientNetworkError):
            client.fetch_ovf("10.0.0.1")

    def test_fetch_other_transport_error_surfaces(self):
        client, session = _client()
        session.get.side_effect = requests.exceptions.ConnectTimeout("timed out")

        with pytest.raises(InternalError) as ei:
            client.fetch_ovf("10.0.0.1")
        assert not isinstance(ei.value, TransientNetworkError)

    def test_fetch_http_error(self):
        client, session = _client()
        session.get.return_value = _response(status=500)
        with pytest.raises(InternalError) as ei:
            client.fetch_ovf("10.0.0.1")
        assert ei.value.context["status"] == 500

    def test_shutdown_eof_is_success(self):
        client, session = _client()
        session.post.side_effect = requests.exceptions.ConnectionError(http.client.RemoteDisconnected("closed"))
        client.shutdown("10.0.0.1")
        session.post.assert_called_once()
        assert session.post.call_args[0][0] == "http://10.0.0.1:8080/shutdown"

    def test_shutdown_ok(self):
        client, session = _client()
        session.post.return_value = _response(status=200)
        client.shutdown("10.0.0.1")

    def test_shutdown_transport_error_surfaces(self):
        client, session = _client()
        session.post.side_effect = requests.exceptions.ConnectTimeout("timed out")
        with pytest.raises(InternalError):
            client.shutdown("10.0.0.1")
