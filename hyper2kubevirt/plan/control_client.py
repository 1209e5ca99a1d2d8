# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# hyper2kubevirt/plan/control_client.py
"""
HTTP client for the conversion pod's control surface.

virt-v2v only starts its server after the disks are copied, so until then
every connection is refused. That is the one network failure treated as
"not ready"; everything else is surfaced.
"""

from __future__ import annotations

import errno
import http.client
import logging
from typing import Iterator, List, Optional, Tuple

import requests
import requests.adapters

from ..config.settings import ConversionSettings
from ..core.exceptions import InternalError, TransientNetworkError
from ..core.logger import Log


def _causes(e: BaseException) -> Iterator[BaseException]:
    """Walk the exception chain; urllib3 nests the socket error in `reason` and `args`."""
    seen = set()
    stack: List[BaseException] = [e]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur
        for nxt in (cur.__cause__, cur.__context__, getattr(cur, "reason", None), *getattr(cur, "args", ())):
            if isinstance(nxt, BaseException):
                stack.append(nxt)


def is_connection_refused(e: BaseException) -> bool:
    for c in _causes(e):
        if isinstance(c, ConnectionRefusedError):
            return True
        if isinstance(c, OSError) and c.errno == errno.ECONNREFUSED:
            return True
    return "connection refused" in str(e).lower()


def is_eof(e: BaseException) -> bool:
    """The peer closed the connection without (or mid) response."""
    if isinstance(e, requests.exceptions.ChunkedEncodingError):
        return True
    for c in _causes(e):
        if isinstance(c, (http.client.RemoteDisconnected, http.client.IncompleteRead, ConnectionResetError)):
            return True
    text = str(e)
    return "EOF" in text or "RemoteDisconnected" in text or "Connection aborted" in text


class ConversionControlClient:
    """
    GET /ovf and POST /shutdown against `http://<pod ip>:<port>`.

    Uses a requests Session for connection pooling; one client may serve all
    VMs of a plan since calls share no per-VM state.
    """

    def __init__(
        self,
        settings: Optional[ConversionSettings] = None,
        *,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or ConversionSettings()
        self.logger = logger or logging.getLogger("hyper2kubevirt.conversion.client")
        if session is None:
            session = requests.Session()
            # No transport retries; the next reconcile is the retry.
            adapter = requests.adapters.HTTPAdapter(max_retries=0)
            session.mount("http://", adapter)
        self.session = session

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.settings.connect_timeout_s, self.settings.read_timeout_s)

    def _url(self, ip: str, path: str) -> str:
        host = f"[{ip}]" if ":" in ip else ip
        return f"http://{host}:{self.settings.port}{path}"

    def fetch_ovf(self, ip: str) -> str:
        """
        Raises:
            TransientNetworkError: the server is not listening yet
            InternalError: any other transport failure or a non-2xx status
        """
        url = self._url(ip, "/ovf")
        Log.trace(self.logger, "GET %s", url)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            if is_connection_refused(e):
                raise TransientNetworkError(
                    code=75, msg="conversion server is not ready", cause=e, context={"url": url}
                )
            raise InternalError(code=70, msg=f"GET {url} failed: {e}", cause=e, context={"url": url})
        with resp:
            if not resp.ok:
                raise InternalError(
                    code=70,
                    msg=f"GET {url} returned HTTP {resp.status_code}",
                    context={"url": url, "status": resp.status_code},
                )
            return resp.text

    def shutdown(self, ip: str) -> None:
        """
        Ask the conversion server to exit. The server may drop the connection
        while answering; that counts as success.
        """
        url = self._url(ip, "/shutdown")
        Log.trace(self.logger, "POST %s", url)
        try:
            resp = self.session.post(url, json=None, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            if is_eof(e):
                self.logger.debug("Conversion server closed the connection on shutdown: %s", e)
                return
            raise InternalError(code=70, msg=f"POST {url} failed: {e}", cause=e, context={"url": url})
        with resp:
            if not resp.ok:
                raise InternalError(
                    code=70,
                    msg=f"POST {url} returned HTTP {resp.status_code}",
                    context={"url": url, "status": resp.status_code},
                )
