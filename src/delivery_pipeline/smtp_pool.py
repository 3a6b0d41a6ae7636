# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio SMTP connection pool used by the SMTP provider handler.

Each worker task keeps its own connection per integration endpoint. A
pooled connection is reused while it is younger than ``ttl`` and answers
NOOP; otherwise it is closed and replaced. A connection that failed during
a send is discarded instead of being returned to the pool.

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        endpoint = SMTPEndpoint("smtp.example.com", 465, "user", "secret", use_tls=True)
        async with pool.connection(endpoint) as smtp:
            await smtp.send_message(message)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import NamedTuple

import aiosmtplib

CONNECT_TIMEOUT = 15.0
NOOP_TIMEOUT = 5.0


class SMTPEndpoint(NamedTuple):
    host: str
    port: int
    user: str | None = None
    password: str | None = None
    use_tls: bool = False


class SMTPPool:
    """Per-task SMTP connection pool with TTL and liveness checks.

    Attributes:
        ttl: Maximum age in seconds of a pooled connection.
        pool: Mapping of ``(task id, endpoint)`` to ``(client, last_used)``.
    """

    def __init__(self, ttl: int = 300):
        self.ttl = ttl
        self.pool: dict[tuple[int, SMTPEndpoint], tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, endpoint: SMTPEndpoint) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        Port 465 with TLS uses implicit TLS; any other port with TLS
        upgrades through STARTTLS; without TLS the session stays plain.
        """
        implicit_tls = endpoint.use_tls and endpoint.port == 465
        smtp = aiosmtplib.SMTP(
            hostname=endpoint.host,
            port=endpoint.port,
            use_tls=implicit_tls,
            start_tls=endpoint.use_tls and not implicit_tls,
            timeout=10.0,
        )

        async def _do_connect() -> None:
            await smtp.connect()
            if endpoint.user and endpoint.password:
                await smtp.login(endpoint.user, endpoint.password)

        await asyncio.wait_for(_do_connect(), timeout=CONNECT_TIMEOUT)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=NOOP_TIMEOUT)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return code == 250

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        with suppress(aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            await smtp.quit()

    async def get_connection(self, endpoint: SMTPEndpoint) -> aiosmtplib.SMTP:
        """Return a live connection for the current task, reconnecting if needed."""
        key = (id(asyncio.current_task()), endpoint)
        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(endpoint)
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def discard(self, endpoint: SMTPEndpoint) -> None:
        """Drop and close the current task's connection to ``endpoint``."""
        key = (id(asyncio.current_task()), endpoint)
        async with self.lock:
            entry = self.pool.pop(key, None)
        if entry:
            await self._quit(entry[0])

    @asynccontextmanager
    async def connection(self, endpoint: SMTPEndpoint) -> AsyncIterator[aiosmtplib.SMTP]:
        smtp = await self.get_connection(endpoint)
        try:
            yield smtp
        except BaseException:
            await self.discard(endpoint)
            raise

    async def cleanup(self) -> None:
        """Close connections that expired or stopped answering NOOP."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        stale = []
        for key, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                stale.append(key)

        for key in stale:
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._quit(smtp)


__all__ = ["SMTPEndpoint", "SMTPPool"]
