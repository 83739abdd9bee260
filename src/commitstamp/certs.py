"""X.509 certificate and CRL helpers.

Thin layer over ``cryptography.x509`` that the chain resolver, the
revocation fetcher and the validator share:

- format auto-detection (PEM first, then DER) for certificates and CRLs
  downloaded from arbitrary endpoints,
- issuer/self-signature checks,
- AIA and CRL distribution point lookup,
- the locally trusted anchor set.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Iterator, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import AuthorityInformationAccessOID

from .errors import TrustError, UnsupportedFormatError

logger = logging.getLogger("commitstamp.certs")

_PEM_MARKER = b"-----BEGIN"
_PEM_CRL_RE = re.compile(
    rb"-----BEGIN X509 CRL-----.+?-----END X509 CRL-----", re.DOTALL
)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def load_certificate(data: bytes) -> x509.Certificate:
    """Decode a single certificate, trying PEM first and then DER.

    Raises:
        UnsupportedFormatError: If neither encoding parses.
    """
    if _PEM_MARKER in data:
        try:
            return x509.load_pem_x509_certificate(data)
        except ValueError as exc:
            logger.debug("PEM certificate decode failed: %s", exc)
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise UnsupportedFormatError(
            f"data is neither a PEM nor a DER certificate ({len(data)} bytes)"
        ) from exc


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """Decode every certificate in a download of unknown shape.

    AIA endpoints serve a single PEM or DER certificate, or a certs-only
    PKCS#7 bundle (``.p7c``). Order of attempts: PEM, DER, PKCS#7.

    Raises:
        UnsupportedFormatError: If nothing in ``data`` parses.
    """
    if _PEM_MARKER in data:
        try:
            return x509.load_pem_x509_certificates(data)
        except ValueError as exc:
            logger.debug("PEM certificate list decode failed: %s", exc)
    try:
        return [x509.load_der_x509_certificate(data)]
    except ValueError:
        pass
    for loader in (pkcs7.load_der_pkcs7_certificates, pkcs7.load_pem_pkcs7_certificates):
        try:
            certs = loader(data)
        except (ValueError, UnsupportedAlgorithm):
            continue
        if certs:
            return certs
    raise UnsupportedFormatError(
        f"data is not a PEM, DER or PKCS#7 certificate ({len(data)} bytes)"
    )


def load_crl(data: bytes) -> x509.CertificateRevocationList:
    """Decode a CRL, trying PEM first and then DER.

    Raises:
        UnsupportedFormatError: If neither encoding parses.
    """
    if _PEM_MARKER in data:
        try:
            return x509.load_pem_x509_crl(data)
        except ValueError as exc:
            logger.debug("PEM CRL decode failed: %s", exc)
    try:
        return x509.load_der_x509_crl(data)
    except ValueError as exc:
        raise UnsupportedFormatError(
            f"data is neither a PEM nor a DER CRL ({len(data)} bytes)"
        ) from exc


def cert_der(cert: x509.Certificate) -> bytes:
    """Return the DER encoding of ``cert``."""
    return cert.public_bytes(serialization.Encoding.DER)


def dump_certificates(certs: Iterable[x509.Certificate]) -> bytes:
    """Serialize certificates as a PEM concatenation."""
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


def parse_certificates(pem: bytes) -> list[x509.Certificate]:
    """Inverse of :func:`dump_certificates`."""
    if not pem.strip():
        return []
    return x509.load_pem_x509_certificates(pem)


def dump_crls(crls: Iterable[x509.CertificateRevocationList]) -> bytes:
    """Serialize CRLs as a PEM concatenation."""
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in crls)


def parse_crls(pem: bytes) -> list[x509.CertificateRevocationList]:
    """Inverse of :func:`dump_crls`."""
    return [x509.load_pem_x509_crl(block) for block in _PEM_CRL_RE.findall(pem)]


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def describe(cert: x509.Certificate) -> str:
    """Short human-readable name for log messages."""
    return cert.subject.rfc4514_string() or f"serial {cert.serial_number:x}"


def is_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    """Return True if ``issuer`` directly issued ``cert``.

    Checks the issuer/subject name match and the signature.
    """
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False
    return True


def is_self_signed(cert: x509.Certificate) -> bool:
    """Return True if ``cert`` names itself as issuer and self-verifies."""
    return is_issued_by(cert, cert)


def same_certificate(a: x509.Certificate, b: x509.Certificate) -> bool:
    return cert_der(a) == cert_der(b)


def ca_issuer_url(cert: x509.Certificate) -> Optional[str]:
    """Return the first AIA "CA Issuers" URI, if any."""
    try:
        aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess).value
    except x509.ExtensionNotFound:
        return None
    for desc in aia:
        if desc.access_method != AuthorityInformationAccessOID.CA_ISSUERS:
            continue
        if isinstance(desc.access_location, x509.UniformResourceIdentifier):
            return desc.access_location.value
    return None


def crl_distribution_url(cert: x509.Certificate) -> Optional[str]:
    """Return the first HTTP(S) CRL distribution point URI, if any."""
    try:
        cdp = cert.extensions.get_extension_for_class(x509.CRLDistributionPoints).value
    except x509.ExtensionNotFound:
        return None
    for point in cdp:
        for name in point.full_name or ():
            if isinstance(name, x509.UniformResourceIdentifier) and name.value.lower().startswith(
                ("http://", "https://")
            ):
                return name.value
    return None


# ---------------------------------------------------------------------------
# Trust anchors
# ---------------------------------------------------------------------------


class TrustAnchorSet:
    """Read-only set of locally trusted certificates.

    Args:
        certs: The anchor certificates, in enumeration order.
    """

    def __init__(self, certs: Iterable[x509.Certificate] = ()) -> None:
        self._certs = list(certs)
        self._ders = {cert_der(c) for c in self._certs}

    @classmethod
    def from_directory(cls, path: Path) -> "TrustAnchorSet":
        """Load every single-certificate file under ``path``.

        Files that do not parse (READMEs, hash symlinks to missing
        targets, CRLs) are skipped with a warning.
        """
        certs = []
        if not path.is_dir():
            logger.warning("Trust anchor directory %s does not exist", path)
            return cls()
        for f in sorted(path.iterdir()):
            if not f.is_file():
                continue
            try:
                certs.append(load_certificate(f.read_bytes()))
            except (UnsupportedFormatError, OSError) as exc:
                logger.warning("Skipping trust anchor file %s: %s", f.name, exc)
        logger.debug("Loaded %d trust anchors from %s", len(certs), path)
        return cls(certs)

    def __iter__(self) -> Iterator[x509.Certificate]:
        return iter(self._certs)

    def __len__(self) -> int:
        return len(self._certs)

    def contains(self, cert: x509.Certificate) -> bool:
        """Return True if ``cert`` is itself a trust anchor."""
        return cert_der(cert) in self._ders

    def find_issuer(self, cert: x509.Certificate) -> Optional[x509.Certificate]:
        """Return the first anchor that directly issued ``cert``."""
        for anchor in self._certs:
            if is_issued_by(cert, anchor):
                return anchor
        return None


def verify_chain_trust(chain: list[x509.Certificate], anchors: TrustAnchorSet) -> None:
    """Check that ``chain`` leads to a trust anchor.

    Walks the chain from the signer treating every member as an untrusted
    intermediate: each link must verify, and the walk must reach a member
    that is an anchor or is directly issued by one. The check is
    structural; validity periods are checked later at the signing time.

    Raises:
        TrustError: If a link is broken or no anchor is reached.
    """
    if not chain:
        raise TrustError("empty certificate chain")
    for position, cert in enumerate(chain):
        if anchors.contains(cert) or anchors.find_issuer(cert) is not None:
            return
        if position + 1 < len(chain) and not is_issued_by(cert, chain[position + 1]):
            raise TrustError(
                f"{describe(cert)} is not issued by {describe(chain[position + 1])}"
            )
    raise TrustError(f"chain ending at {describe(chain[-1])} is not anchored in the trust store")
