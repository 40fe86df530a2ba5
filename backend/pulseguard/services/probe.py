"""Probe executor - performs HTTP(S), TCP, DNS, and database checks.

Every probe runs under a hard deadline and always reports elapsed time.
Probes never raise: network, DNS, TLS and configuration problems all come
back as a ProbeResult.
"""
import asyncio
import logging
import os
import re
import socket
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit

import httpx
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ..config import settings, normalize_async_url
from ..exceptions import ConfigurationError
from ..models import Service
from ..utils.db_utils import utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "PulseGuard/1.0"

# Ports used when a database URL names no port and we fall back to TCP
DEFAULT_DB_PORTS = {
    "mysql": 3306,
    "mariadb": 3306,
    "mssql": 1433,
    "oracle": 1521,
    "mongodb": 27017,
    "redis": 6379,
    "postgresql": 5432,
}

# Dialects we can run SELECT 1 against with an installed async driver
ASYNC_DB_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_REGEX_LITERAL = re.compile(r"^/(.+)/([gimsuy]*)$", re.DOTALL)

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    # JS-only flags with no Python equivalent for a single search
    "g": 0,
    "u": 0,
    "y": 0,
}


class ProbeOutcome(str, Enum):
    """Classification of a single probe."""
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    TIMEOUT = "timeout"


@dataclass
class ProbeResult:
    """Result of a probe."""
    outcome: ProbeOutcome
    response_time_ms: Optional[int] = None
    detail: Optional[str] = None
    status_code: Optional[int] = None
    ssl_expiry_date: Optional[datetime] = None
    ssl_days_remaining: Optional[int] = None
    config_error: Optional[str] = None


@dataclass
class ContentMatcher:
    """A literal substring or /pattern/flags assertion against a body."""
    raw: str
    regex: Optional["re.Pattern"] = None

    def matches(self, body: str) -> bool:
        if self.regex is not None:
            return self.regex.search(body) is not None
        return self.raw in body

    def describe(self) -> str:
        shown = self.raw[:50] + ("..." if len(self.raw) > 50 else "")
        return f"'{shown}'"


def parse_content_match(value: str) -> ContentMatcher:
    """Parse a content match into a matcher.

    "/pattern/flags" is a regex (flags from gimsuy); anything else is a
    literal substring.

    Raises:
        ConfigurationError: If the regex does not compile
    """
    literal = _REGEX_LITERAL.match(value)
    if not literal:
        return ContentMatcher(raw=value)

    pattern, flag_chars = literal.groups()
    flags = 0
    for char in flag_chars:
        flags |= _REGEX_FLAGS[char]
    try:
        return ContentMatcher(raw=value, regex=re.compile(pattern, flags))
    except re.error as e:
        raise ConfigurationError(f"Invalid content match pattern {value!r}: {e}") from e


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ProbeExecutor:
    """Runs one protocol-appropriate health check against a service."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.probe_timeout_seconds
        self._transport = transport
        self._reported_config_errors = set()
        self._probes = {
            "HTTP": self._probe_http,
            "HTTPS": self._probe_http,
            "TCP": self._probe_tcp,
            "DNS": self._probe_dns,
            "DB": self._probe_db,
        }

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout * 1000)

    async def probe(self, service: Service) -> ProbeResult:
        """Probe a service based on its type."""
        probe_type = (service.type or "HTTP").upper()
        probe_func = self._probes.get(probe_type)
        if probe_func is None:
            return self._config_failure(service, f"Unknown service type: {service.type}", 0)

        start = time.monotonic()
        try:
            return await probe_func(service)
        except Exception as e:
            logger.error(f"Unexpected probe error for service {service.id}: {type(e).__name__}: {e}")
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"Probe error: {e}",
            )

    def _timeout_result(self, detail: str) -> ProbeResult:
        return ProbeResult(
            outcome=ProbeOutcome.TIMEOUT,
            response_time_ms=self.timeout_ms,
            detail=detail,
        )

    def _config_failure(self, service: Service, message: str, elapsed_ms: int) -> ProbeResult:
        """Offline result for a configuration error, logged once per distinct error."""
        key = (service.id, message)
        if key not in self._reported_config_errors:
            self._reported_config_errors.add(key)
            logger.warning(f"Configuration error for service {service.id} ({service.name}): {message}")
        return ProbeResult(
            outcome=ProbeOutcome.OFFLINE,
            response_time_ms=elapsed_ms,
            detail=message,
            config_error=message,
        )

    # ------------------------------------------------------------------ HTTP

    async def _probe_http(self, service: Service) -> ProbeResult:
        """Perform HTTP/HTTPS check.

        Checks in order:
        1. Transport failures - offline, or timeout past the deadline
        2. Content match pattern is valid - offline if not
        3. HTTP status code - 5xx offline, 4xx degraded
        4. Content match (if configured) - offline if not found
        """
        secure = (service.type or "").upper() == "HTTPS"
        target = service.url
        if not target.startswith("http"):
            target = f"{'https' if secure else 'http'}://{target}"

        matcher = None
        config_error = None
        if service.content_match:
            try:
                matcher = parse_content_match(service.content_match)
            except ConfigurationError as e:
                config_error = str(e)

        headers = {"User-Agent": USER_AGENT}
        headers.update(service.header_dict())

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(self._fetch(target, headers), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._timeout_result(f"Timeout - no response in {self.timeout:g}s")
        except httpx.ConnectError as e:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"Connection error: {e}",
            )
        except httpx.HTTPError as e:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"Error: {e}",
            )

        response_time = _elapsed_ms(start)
        result = self._classify_response(response, response_time, matcher)

        if config_error:
            result = self._config_failure(service, config_error, response_time)
            result.status_code = response.status_code

        if target.startswith("https://"):
            # Certificate lookup shares the probe deadline
            time_left = self.timeout - (time.monotonic() - start)
            await self._attach_ssl_expiry(result, target, time_left)

        return result

    async def _fetch(self, url: str, headers: dict) -> httpx.Response:
        # Disable SSL verification to handle self-signed certificates;
        # expiry is read separately
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            verify=False,
            transport=self._transport,
        ) as client:
            return await client.get(url, headers=headers)

    def _classify_response(
        self,
        response: httpx.Response,
        response_time: int,
        matcher: Optional[ContentMatcher],
    ) -> ProbeResult:
        status_code = response.status_code
        reason = response.reason_phrase or ""

        if status_code >= 500:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=response_time,
                detail=f"HTTP {status_code} - Server Error",
                status_code=status_code,
            )
        if status_code >= 400:
            return ProbeResult(
                outcome=ProbeOutcome.DEGRADED,
                response_time_ms=response_time,
                detail=f"HTTP {status_code} - {reason}".rstrip(" -"),
                status_code=status_code,
            )

        # A content mismatch means the page is not serving what it should
        if matcher is not None and not matcher.matches(response.text):
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=response_time,
                detail=f"Expected content not found: {matcher.describe()}",
                status_code=status_code,
            )

        return ProbeResult(
            outcome=ProbeOutcome.ONLINE,
            response_time_ms=response_time,
            detail=f"HTTP {status_code} - OK",
            status_code=status_code,
        )

    async def _attach_ssl_expiry(self, result: ProbeResult, url: str, time_left: Optional[float] = None):
        """Add certificate expiry to an HTTPS result within the time left.

        Leaves it unset on failure or once the probe deadline has passed.
        """
        budget = self.timeout if time_left is None else time_left
        if budget <= 0:
            logger.debug(f"No time left for SSL expiry lookup of {url}")
            return

        parts = urlsplit(url)
        host = parts.hostname
        if not host:
            return
        port = parts.port or 443

        loop = asyncio.get_running_loop()
        try:
            expiry = await asyncio.wait_for(
                loop.run_in_executor(None, self._get_ssl_expiry, host, port, budget),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.debug(f"SSL expiry lookup timed out for {host}:{port}")
            return

        if expiry is None:
            return
        result.ssl_expiry_date = expiry
        result.ssl_days_remaining = (expiry - utcnow()).days

    def _get_ssl_expiry(self, host: str, port: int, timeout: Optional[float] = None) -> Optional[datetime]:
        """Get SSL certificate expiry as naive UTC (blocking operation)."""
        try:
            # Create context that doesn't verify certificate chain
            # We just want to read the expiry date, not validate trust
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

            with socket.create_connection((host, port), timeout=timeout or self.timeout) as sock:
                with context.wrap_socket(sock, server_hostname=host) as ssock:
                    # getpeercert() returns an empty dict when not validating
                    cert_der = ssock.getpeercert(binary_form=True)
                    if not cert_der:
                        return None

                    from cryptography import x509
                    cert = x509.load_der_x509_certificate(cert_der)
                    return cert.not_valid_after_utc.astimezone(timezone.utc).replace(tzinfo=None)
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read certificate for {host}:{port}: {e}")
            return None

    # ------------------------------------------------------------------- TCP

    def _tcp_target(self, service: Service) -> Tuple[str, int]:
        if service.host:
            return service.host, service.port or 80

        raw = service.url or ""
        parts = urlsplit(raw if "://" in raw else f"//{raw}")
        if not parts.hostname:
            raise ConfigurationError(f"Cannot determine TCP host from {raw!r}")
        try:
            port = parts.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid TCP port in {raw!r}") from e
        return parts.hostname, service.port or port or 80

    async def _probe_tcp(self, service: Service) -> ProbeResult:
        try:
            host, port = self._tcp_target(service)
        except ConfigurationError as e:
            return self._config_failure(service, str(e), 0)
        return await self._connect(host, port)

    async def _connect(self, host: str, port: int) -> ProbeResult:
        """Open and immediately close a TCP connection."""
        start = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._timeout_result(f"TCP port {port} connection timeout")
        except OSError as e:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"TCP error: {e}",
            )

        response_time = _elapsed_ms(start)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(
            outcome=ProbeOutcome.ONLINE,
            response_time_ms=response_time,
            detail=f"TCP port {port} is open",
        )

    # ------------------------------------------------------------------- DNS

    async def _probe_dns(self, service: Service) -> ProbeResult:
        raw = service.host or service.url or ""
        hostname = urlsplit(raw).hostname if "://" in raw else raw.split("/")[0]
        if not hostname:
            return self._config_failure(service, f"Cannot determine hostname from {raw!r}", 0)

        loop = asyncio.get_running_loop()
        start = time.monotonic()
        try:
            infos = await asyncio.wait_for(loop.getaddrinfo(hostname, None), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._timeout_result(f"DNS lookup for {hostname} timed out")
        except OSError as e:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"DNS error: {e}",
            )

        response_time = _elapsed_ms(start)
        addresses = list(dict.fromkeys(info[4][0] for info in infos))
        if not addresses:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=response_time,
                detail="DNS resolution failed - No addresses found",
            )

        more = "..." if len(addresses) > 3 else ""
        return ProbeResult(
            outcome=ProbeOutcome.ONLINE,
            response_time_ms=response_time,
            detail=f"DNS resolved - {', '.join(addresses[:3])}{more}",
        )

    # -------------------------------------------------------------------- DB

    async def _probe_db(self, service: Service) -> ProbeResult:
        """Run SELECT 1 where we have an async driver, otherwise TCP-connect."""
        raw = service.db_connection_string or service.url
        if not raw:
            return self._config_failure(service, "No database connection string configured", 0)

        try:
            url = make_url(normalize_async_url(raw))
        except ArgumentError as e:
            return self._config_failure(service, f"Invalid database connection string: {e}", 0)

        backend = url.get_backend_name()
        driver = ASYNC_DB_DRIVERS.get(backend)
        if driver is None:
            if not url.host:
                return self._config_failure(service, f"Database URL for {backend} has no host", 0)
            return await self._connect(url.host, url.port or DEFAULT_DB_PORTS.get(backend, 5432))

        if backend == "sqlite":
            path = url.database
            if path and path != ":memory:" and not os.path.exists(path):
                return ProbeResult(
                    outcome=ProbeOutcome.OFFLINE,
                    response_time_ms=0,
                    detail=f"Database file not found: {path}",
                )

        start = time.monotonic()
        engine = create_async_engine(url.set(drivername=driver), poolclass=NullPool)
        try:
            await asyncio.wait_for(self._select_one(engine), timeout=self.timeout)
        except asyncio.TimeoutError:
            return self._timeout_result("Database connection timeout")
        except Exception as e:
            return ProbeResult(
                outcome=ProbeOutcome.OFFLINE,
                response_time_ms=_elapsed_ms(start),
                detail=f"Database error: {type(e).__name__}: {e}",
            )
        finally:
            await engine.dispose()

        return ProbeResult(
            outcome=ProbeOutcome.ONLINE,
            response_time_ms=_elapsed_ms(start),
            detail=f"{backend} connection OK",
        )

    async def _select_one(self, engine):
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))


# Global instance
probe_executor = ProbeExecutor()
