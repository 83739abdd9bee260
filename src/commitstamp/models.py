"""Pydantic models for commit timestamps and their long-term validation.

These models describe the values that flow through the LTV engine: the
repository configuration that fixes the digest algorithm, the identity of a
token's signing certificate, the tokens carried by a commit, and the
verdict produced for each of them.
"""

import hashlib
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class HashAlgorithm(str, Enum):
    """Object hash algorithms a repository can use.

    SHA-1 is git's classic object format; SHA-256 repositories use the
    newer ``extensions.objectFormat = sha256`` layout.
    """

    SHA1 = "sha1"
    SHA256 = "sha256"


class TimestampStatus(str, Enum):
    """Outcome of validating one timestamp token."""

    VALID = "valid"
    INVALID = "invalid"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_TRUST_ANCHOR_DIR = Path("/etc/ssl/certs")


class RepositoryConfig(BaseModel):
    """Per-repository settings passed explicitly to every component.

    Attributes:
        hash_algorithm: Algorithm used for commit digests.
        trust_anchor_dir: Directory holding locally trusted root certificates.
        cache_dir: Root of the shared LTV cache tier. ``None`` keeps all
            artifacts in the per-run session tier.
        timeout_seconds: HTTP timeout for TSA, AIA and CRL requests.
        max_signer_attempts: Upper bound on TSA round trips while looking
            for the token's signing certificate.
    """

    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA1
    trust_anchor_dir: Path = DEFAULT_TRUST_ANCHOR_DIR
    cache_dir: Optional[Path] = None
    timeout_seconds: int = 30
    max_signer_attempts: int = Field(default=10, ge=1)

    model_config = ConfigDict(frozen=True)

    @property
    def digest_length(self) -> int:
        """Length in hex characters of a digest under ``hash_algorithm``."""
        return hashlib.new(self.hash_algorithm.value).digest_size * 2

    @property
    def null_digest(self) -> str:
        """All-zero digest, used as the parent of a root commit."""
        return "0" * self.digest_length


# ---------------------------------------------------------------------------
# Token identity
# ---------------------------------------------------------------------------


class SignerCertID(BaseModel):
    """Hash-based identity of a token's signing certificate.

    Normalizes the ESSCertID (SHA-1 only) and ESSCertIDv2 (algorithm
    carried in the attribute) variants to one comparable pair.
    """

    algorithm: str
    cert_hash: str

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        """Filesystem-safe cache key, e.g. ``sha256-ab12...``."""
        return f"{self.algorithm}-{self.cert_hash}"

    def matches(self, der: bytes) -> bool:
        """Return True if ``der`` hashes to this identity."""
        return hashlib.new(self.algorithm, der).hexdigest() == self.cert_hash

    def __str__(self) -> str:
        return self.key


class TimestampToken(BaseModel):
    """A DER-encoded RFC 3161 token plus where it came from.

    Attributes:
        token_der: DER bytes of the TimeStampToken (CMS ContentInfo).
        tsa_url: Endpoint of the TSA that issued the token.
    """

    token_der: bytes
    tsa_url: str


class CommitTimestamps(BaseModel):
    """All timestamp tokens extracted from one commit message.

    ``version`` is -1 when the commit carries no token, otherwise the
    declared protocol version (0 when undeclared).
    """

    version: int = -1
    tokens: list[TimestampToken] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class Verdict(BaseModel):
    """Validation result for a single timestamp token.

    Attributes:
        status: VALID or INVALID.
        reason: Human-readable failure reason (None when valid).
        tsa_url: TSA that issued the token.
        signing_time: Time asserted by the token, when it could be read.
        signer_id: Cache key of the signing certificate, when readable.
    """

    status: TimestampStatus
    reason: Optional[str] = None
    tsa_url: Optional[str] = None
    signing_time: Optional[datetime] = None
    signer_id: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        """Return True if the token was validated successfully."""
        return self.status == TimestampStatus.VALID
