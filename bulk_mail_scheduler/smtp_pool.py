"""Per-worker SMTP connection pool built on aiosmtplib."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

from .logger import get_logger

ConnectionParams = Tuple[str, int, Optional[str], Optional[str], bool]


class SMTPPool:
    """Keep one live SMTP connection per dispatcher worker task.

    Each worker sends sequentially, so binding connections to the calling
    task means a connection is never shared by two in-flight sends.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        """Create a pool whose idle connections expire after ``ttl`` seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float, ConnectionParams]] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("BulkMailScheduler.smtp")

    async def _connect(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        host, port, user, password, use_tls = params
        # Implicit TLS excludes STARTTLS; plain connections upgrade when the server offers it.
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=use_tls,
            start_tls=None if not use_tls else False,
            timeout=10.0,
        )

        async def _do_connect() -> None:
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        self.logger.debug("Opened SMTP connection to %s:%s", host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return code == 250

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError):
            smtp.close()

    async def get_connection(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        use_tls: bool,
    ) -> aiosmtplib.SMTP:
        """Return the calling task's connection, reconnecting when stale."""
        task_id = id(asyncio.current_task())
        params: ConnectionParams = (host, port, user, password, use_tls)

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, old_params = entry
            if old_params == params and (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._connect(params)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params)
        return smtp

    async def discard(self) -> None:
        """Drop the calling task's connection after a failed send."""
        async with self.lock:
            entry = self.pool.pop(id(asyncio.current_task()), None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close connections idle for longer than the ttl."""
        now = time.time()
        async with self.lock:
            expired = [task_id for task_id, (_, last_used, _) in self.pool.items() if now - last_used > self.ttl]
            connections = [self.pool.pop(task_id)[0] for task_id in expired]
        for smtp in connections:
            await self._quit(smtp)

    async def close_all(self) -> None:
        """Close every pooled connection (shutdown)."""
        async with self.lock:
            connections = [smtp for smtp, _, _ in self.pool.values()]
            self.pool.clear()
        for smtp in connections:
            await self._quit(smtp)
