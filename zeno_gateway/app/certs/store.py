"""
Durable certificate cache.

One PEM bundle per domain (``<cache_dir>/<domain>.pem``, private key then
chain) plus the ACME account key (``<cache_dir>/account.key``). Files are
written to a temporary sibling and moved into place with ``os.replace``, so
a reader sees either the old bundle or the new one.
"""

import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from zeno_shared.errors import CertificateError
from zeno_shared.logging import get_logger

from .models import CertificateEntry

_DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]{0,251}[A-Za-z0-9])?$")


class CertificateStore:
    """Filesystem store keyed by domain."""

    ACCOUNT_KEY_NAME = "account.key"

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self._lock = threading.Lock()
        self.logger = get_logger("gateway.cert_store")

    def path_for(self, domain: str) -> Path:
        """Bundle path for ``domain``."""
        if not _DOMAIN_PATTERN.match(domain) or ".." in domain:
            raise CertificateError(domain, "Invalid domain name")
        return self.cache_dir / f"{domain.lower()}.pem"

    def load(self, domain: str) -> Optional[CertificateEntry]:
        """Return the cached entry, or None when missing or unreadable."""
        path = self.path_for(domain)
        with self._lock:
            try:
                bundle = path.read_bytes()
            except FileNotFoundError:
                return None
        try:
            return CertificateEntry.from_bundle(domain, bundle)
        except ValueError as exc:
            self.logger.error("Cached certificate is unreadable", domain=domain, error=str(exc))
            return None

    def save(self, entry: CertificateEntry) -> Path:
        """Atomically replace the bundle for ``entry.domain``."""
        path = self.path_for(entry.domain)
        with self._lock:
            self._atomic_write(path, entry.to_bundle())
        self.logger.info("Certificate cached", domain=entry.domain, not_after=entry.not_after.isoformat())
        return path

    def load_account_key(self) -> Optional[bytes]:
        """ACME account key PEM, if one was saved."""
        with self._lock:
            try:
                return (self.cache_dir / self.ACCOUNT_KEY_NAME).read_bytes()
            except FileNotFoundError:
                return None

    def save_account_key(self, key_pem: bytes) -> None:
        with self._lock:
            self._atomic_write(self.cache_dir / self.ACCOUNT_KEY_NAME, key_pem)

    def _atomic_write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
