"""Two-tier cache for long-term validation artifacts.

Chains and CRL bundles are keyed by the signing certificate's identity.
The shared tier lives on disk inside the repository and is written once per
key; the session tier is an in-memory store owned by one validation run.

Directory layout::

    <cache_dir>/
    ├── chains/             # Certificate chains, signer first (PEM)
    │   └── sha256-<hash>.pem
    └── crls/               # CRL bundles for the same chains (PEM)
        └── sha256-<hash>.pem

Nothing is ever evicted or rewritten.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from cryptography import x509

from .certs import dump_certificates, dump_crls, parse_certificates, parse_crls
from .errors import CacheCorruptionError
from .models import SignerCertID

logger = logging.getLogger("commitstamp.cache")


class LTVCache:
    """Shared (on-disk) plus session (in-memory) artifact store.

    Lookups consult the shared tier, then the session tier. Stores go to the
    shared tier; the session tier only receives artifacts when no shared
    directory is configured or the shared directory is read-only.

    Args:
        shared_dir: Root of the shared tier, or None for session-only use.
    """

    def __init__(self, shared_dir: Optional[Path] = None) -> None:
        self.shared_dir = shared_dir
        self._chains_dir: Optional[Path] = None
        self._crls_dir: Optional[Path] = None
        if shared_dir is not None:
            # Created on first store.
            self._chains_dir = shared_dir / "chains"
            self._crls_dir = shared_dir / "crls"

        self._session_chains: dict[str, bytes] = {}
        self._session_crls: dict[str, bytes] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def __enter__(self) -> "LTVCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Discard the session tier."""
        self._session_chains.clear()
        self._session_crls.clear()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, signer_id: SignerCertID) -> Iterator[None]:
        """Serialize resolution and fetching for one signer identity."""
        with self._locks_guard:
            key_lock = self._locks.setdefault(signer_id.key, threading.Lock())
        with key_lock:
            yield

    # ------------------------------------------------------------------
    # Raw artifacts
    # ------------------------------------------------------------------

    def _read(self, directory: Optional[Path], session: dict[str, bytes], key: str) -> Optional[bytes]:
        if directory is not None:
            path = directory / f"{key}.pem"
            if path.exists():
                return path.read_bytes()
        return session.get(key)

    def _write(self, directory: Optional[Path], session: dict[str, bytes], key: str, data: bytes) -> bool:
        """Publish ``data`` under ``key`` unless an entry already exists.

        The bytes are written to a temporary file in the same directory and
        hard-linked into place, so readers in other processes see either no
        entry or the complete one.
        """
        if directory is None:
            session.setdefault(key, data)
            return True
        path = directory / f"{key}.pem"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=directory, prefix=f".{key}.", suffix=".tmp", delete=False
            ) as f:
                f.write(data)
            tmp = Path(f.name)
        except PermissionError as exc:
            logger.warning("Shared cache not writable (%s), keeping %s for this run only", exc, key)
            session.setdefault(key, data)
            return True
        try:
            os.link(tmp, path)
        except FileExistsError:
            logger.debug("Cache entry %s already exists, keeping it", path)
            return False
        finally:
            tmp.unlink()
        logger.info("Cached %s", path)
        return True

    def chain_bytes(self, signer_id: SignerCertID) -> Optional[bytes]:
        """Return the cached chain as stored (PEM), or None."""
        return self._read(self._chains_dir, self._session_chains, signer_id.key)

    def crl_bytes(self, signer_id: SignerCertID) -> Optional[bytes]:
        """Return the cached CRL bundle as stored (PEM), or None."""
        return self._read(self._crls_dir, self._session_crls, signer_id.key)

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def chain(self, signer_id: SignerCertID) -> Optional[list[x509.Certificate]]:
        """Return the cached chain for ``signer_id``, signer first.

        Raises:
            CacheCorruptionError: If the stored entry is empty or unreadable.
        """
        data = self.chain_bytes(signer_id)
        if data is None:
            return None
        try:
            chain = parse_certificates(data)
        except ValueError as exc:
            raise CacheCorruptionError(
                f"cached chain {signer_id.key} cannot be decoded: {exc}"
            ) from exc
        if not chain:
            raise CacheCorruptionError(f"cached chain {signer_id.key} is empty")
        return chain

    def store_chain(self, signer_id: SignerCertID, chain: list[x509.Certificate]) -> bool:
        """Persist ``chain`` once. Returns False if an entry already existed."""
        return self._write(
            self._chains_dir, self._session_chains, signer_id.key, dump_certificates(chain)
        )

    # ------------------------------------------------------------------
    # CRL bundles
    # ------------------------------------------------------------------

    def crls(self, signer_id: SignerCertID) -> Optional[list[x509.CertificateRevocationList]]:
        """Return the cached CRL bundle for ``signer_id``.

        An empty list is a valid bundle (chain of a lone root).

        Raises:
            CacheCorruptionError: If the stored bundle is unreadable.
        """
        data = self.crl_bytes(signer_id)
        if data is None:
            return None
        try:
            return parse_crls(data)
        except ValueError as exc:
            raise CacheCorruptionError(
                f"cached CRL bundle {signer_id.key} cannot be decoded: {exc}"
            ) from exc

    def store_crls(
        self, signer_id: SignerCertID, crls: list[x509.CertificateRevocationList]
    ) -> bool:
        """Persist a CRL bundle once. Returns False if an entry already existed."""
        return self._write(self._crls_dir, self._session_crls, signer_id.key, dump_crls(crls))

    def entries(self) -> list[tuple[str, bool]]:
        """List (signer key, has CRL bundle) for every cached chain.

        Covers both tiers; the shared directory is not created.
        """
        keys = set(self._session_chains)
        if self._chains_dir is not None and self._chains_dir.is_dir():
            keys.update(f.stem for f in self._chains_dir.glob("*.pem"))
        return [(key, self._has_crls(key)) for key in sorted(keys)]

    def _has_crls(self, key: str) -> bool:
        if key in self._session_crls:
            return True
        return self._crls_dir is not None and (self._crls_dir / f"{key}.pem").exists()
