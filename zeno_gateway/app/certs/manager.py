"""
Certificate lifecycle manager.

Loads the cached certificate for the configured domain, obtains one through
the issuer when none is usable, renews it ahead of expiry and hands TLS
contexts to the HTTPS listener. A failed issuance keeps serving the last
valid certificate and is retried with exponential backoff. Once the served
certificate has expired, handshakes fail instead of presenting it.
"""

from __future__ import annotations

import asyncio
import ssl
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from zeno_shared.errors import CertificateError
from zeno_shared.logging import get_logger
from zeno_shared.metrics import GatewayMetrics
from zeno_shared.retry import RetryConfig, backoff_interval

from .acme_client import CertificateIssuer
from .models import CertificateEntry, CertificateState, utcnow
from .store import CertificateStore


class CertificateManager:
    """Owns the certificate for one domain."""

    def __init__(
        self,
        domain: str,
        store: CertificateStore,
        issuer: CertificateIssuer,
        *,
        metrics: Optional[GatewayMetrics] = None,
        renew_before: timedelta = timedelta(days=30),
        check_interval: float = 86400.0,
        retry: Optional[RetryConfig] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.domain = domain
        self.store = store
        self.issuer = issuer
        self.metrics = metrics
        self.renew_before = renew_before
        self.check_interval = check_interval
        self.retry = retry or RetryConfig(base_delay=60.0, max_delay=6 * 3600.0)
        self._now = now
        self._lock = threading.Lock()
        self._entry: Optional[CertificateEntry] = None
        self._context: Optional[ssl.SSLContext] = None
        self._listener_context: Optional[ssl.SSLContext] = None
        self.state = CertificateState.UNINITIALIZED
        self.failures = 0
        self.next_attempt_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.logger = get_logger("gateway.certificates")

    # -- serving ---------------------------------------------------------

    def current_certificate(self) -> Optional[CertificateEntry]:
        """The certificate being served, or None when there is none that is still valid."""
        with self._lock:
            entry = self._entry
            if entry is None:
                return None
            if entry.is_expired(self._now()):
                if self.state not in (CertificateState.PENDING, CertificateState.RENEWING, CertificateState.FAILED):
                    self.state = CertificateState.FAILED
                    self.logger.error("Certificate expired", domain=self.domain)
                    self._event("expired")
                return None
            return entry

    def current_context(self) -> Optional[ssl.SSLContext]:
        if self.current_certificate() is None:
            return None
        with self._lock:
            return self._context

    def select_certificate(self, ssl_object: ssl.SSLObject, server_name: Optional[str], context: ssl.SSLContext):
        """SNI callback; switches the handshake to the current certificate or aborts it."""
        current = self.current_context()
        if current is None:
            self.logger.warning("Rejecting TLS handshake without a valid certificate", server_name=server_name)
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        ssl_object.context = current
        return None

    def server_context(self) -> ssl.SSLContext:
        """Context for the HTTPS listener; routes every handshake through ``select_certificate``."""
        context = self._new_context()
        context.sni_callback = self.select_certificate
        entry = self.current_certificate()
        if entry is not None:
            # Serves clients that send no SNI.
            context.load_cert_chain(str(self.store.path_for(self.domain)))
        with self._lock:
            self._listener_context = context
        return context

    @staticmethod
    def _new_context() -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.set_alpn_protocols(["http/1.1"])
        return context

    def _install(self, entry: CertificateEntry) -> None:
        path = self.store.path_for(entry.domain)
        context = self._new_context()
        try:
            context.load_cert_chain(str(path))
        except (ssl.SSLError, OSError) as exc:
            raise CertificateError(entry.domain, f"Certificate could not be loaded: {exc}")

        with self._lock:
            self._entry = entry
            self._context = context
            listener = self._listener_context
        if listener is not None:
            listener.load_cert_chain(str(path))
        if self.metrics is not None:
            self.metrics.set_certificate_expiry(self.domain, entry.not_after.timestamp())

    # -- lifecycle -------------------------------------------------------

    def load_cached(self) -> bool:
        """Install the cached certificate if it has not expired."""
        entry = self.store.load(self.domain)
        if entry is None:
            return False
        if entry.is_expired(self._now()):
            self.logger.warning("Cached certificate has expired", domain=self.domain)
            return False
        try:
            self._install(entry)
        except CertificateError as exc:
            self.logger.error("Cached certificate rejected", domain=self.domain, error=exc.message)
            return False
        with self._lock:
            self.state = CertificateState.VALID
        self._event("loaded")
        self.logger.info("Loaded cached certificate", domain=self.domain, not_after=entry.not_after.isoformat())
        return True

    async def obtain(self) -> bool:
        """Issue a certificate now. Returns False, and schedules a retry, on failure."""
        with self._lock:
            renewing = self._entry is not None and not self._entry.is_expired(self._now())
            self.state = CertificateState.RENEWING if renewing else CertificateState.PENDING

        try:
            issued = await asyncio.to_thread(self.issuer.issue, self.domain)
            entry = CertificateEntry.from_pem(self.domain, issued.cert_chain, issued.private_key)
            await asyncio.to_thread(self.store.save, entry)
            self._install(entry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure(exc)
            return False

        with self._lock:
            self.state = CertificateState.VALID
            self.failures = 0
            self.next_attempt_at = None
            self.last_error = None
        self._event("renewed" if renewing else "issued")
        self.logger.info(
            "Certificate installed",
            domain=self.domain,
            renewed=renewing,
            not_after=entry.not_after.isoformat(),
        )
        return True

    def _record_failure(self, exc: Exception) -> None:
        message = exc.message if isinstance(exc, CertificateError) else (str(exc) or type(exc).__name__)
        now = self._now()
        with self._lock:
            self.failures += 1
            delay = backoff_interval(self.failures, self.retry)
            self.next_attempt_at = now + delay
            self.last_error = message
            still_valid = self._entry is not None and not self._entry.is_expired(now)
            # Keep serving the previous certificate while it is valid.
            self.state = CertificateState.VALID if still_valid else CertificateState.FAILED
        self._event("failed")
        self.logger.error(
            "Certificate issuance failed",
            domain=self.domain,
            error=message,
            failures=self.failures,
            retry_in_seconds=round(delay.total_seconds(), 1),
            serving_previous=still_valid,
        )

    async def check(self) -> bool:
        """Renew when due. Returns True when an issuance attempt was made."""
        now = self._now()
        with self._lock:
            if self.state in (CertificateState.PENDING, CertificateState.RENEWING):
                return False
            if self.next_attempt_at is not None and now < self.next_attempt_at:
                return False
            entry = self._entry
        if entry is not None and not entry.needs_renewal(now, self.renew_before):
            return False
        if entry is not None:
            self.logger.info("Certificate due for renewal", domain=self.domain, not_after=entry.not_after.isoformat())
        await self.obtain()
        return True

    async def bootstrap(self, attempts: int = 1, mandatory: bool = False) -> bool:
        """Get a usable certificate before the HTTPS listener starts."""
        if self.load_cached():
            return True
        for attempt in range(1, attempts + 1):
            if await self.obtain():
                return True
            if attempt < attempts:
                await asyncio.sleep(self._seconds_until_retry())
        if mandatory:
            raise CertificateError(self.domain, "No certificate could be obtained", details={"last_error": self.last_error})
        self.logger.error(
            "Starting HTTPS without a certificate; handshakes fail until one is issued",
            domain=self.domain,
        )
        return False

    async def start(self) -> bool:
        """Load the cached certificate, or make one issuance attempt."""
        return await self.bootstrap(attempts=1, mandatory=False)

    async def run(self) -> None:
        """Periodic renewal loop; runs until cancelled."""
        while True:
            await asyncio.sleep(self._next_sleep())
            await self.check()

    def _seconds_until_retry(self) -> float:
        if self.next_attempt_at is None:
            return 0.0
        return max(0.0, (self.next_attempt_at - self._now()).total_seconds())

    def _next_sleep(self) -> float:
        if self.next_attempt_at is None and self._entry is not None:
            return self.check_interval
        return max(1.0, min(self.check_interval, self._seconds_until_retry()))

    def _event(self, event: str) -> None:
        if self.metrics is not None:
            self.metrics.record_certificate_event(self.domain, event)

    def status(self) -> Dict[str, Any]:
        """Summary for the health endpoint."""
        entry = self.current_certificate()
        return {
            "domain": self.domain,
            "state": self.state.value,
            "not_after": entry.not_after.isoformat() if entry else None,
            "failures": self.failures,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
        }
