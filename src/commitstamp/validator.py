"""Long-term validation of commit timestamp tokens.

The validator ties the engine together for one token:

1. resolve (or reuse) the signer's certificate chain,
2. ensure a CRL bundle covers every non-root chain member,
3. validate the chain *at the token's signing time*, not the current time,
4. check the token signature and that its message imprint is the commit
   digest.

Per-token failures become an invalid :class:`Verdict` and never stop the
validation of sibling tokens. A :class:`PreconditionError` is a bug and
propagates.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import ExtendedKeyUsageOID

from .cache import LTVCache
from .certs import TrustAnchorSet, describe, is_issued_by, is_self_signed, verify_chain_trust
from .chain import ChainResolver
from .digest import check_digest
from .errors import (
    CacheCorruptionError,
    ChainResolutionError,
    MalformedTokenError,
    RevocationFetchError,
    TrustError,
    UnsupportedFormatError,
    ValidationError,
)
from .models import CommitTimestamps, RepositoryConfig, TimestampStatus, Verdict
from .revocation import RevocationFetcher
from .tokeninfo import (
    read_message_imprint_digest,
    read_signer_id,
    read_signing_time,
    verify_token_signature,
)
from .tsa import TSAClient, TSAQuery, URLFetch, make_fetcher

logger = logging.getLogger("commitstamp.validator")

REASON_CERTIFICATE = "certificate not valid at signing time"
REASON_SIGNATURE = "token signature or digest mismatch"

# Failures that invalidate one token without affecting the others.
_TOKEN_ERRORS = (
    CacheCorruptionError,
    MalformedTokenError,
    ChainResolutionError,
    UnsupportedFormatError,
    TrustError,
    RevocationFetchError,
)


# ---------------------------------------------------------------------------
# Time-pinned certificate validation
# ---------------------------------------------------------------------------


def _covering_crl(
    cert: x509.Certificate,
    issuer: x509.Certificate,
    crls: list[x509.CertificateRevocationList],
) -> Optional[x509.CertificateRevocationList]:
    for crl in crls:
        if crl.issuer != issuer.subject:
            continue
        try:
            if crl.is_signature_valid(issuer.public_key()):
                return crl
        except (TypeError, UnsupportedAlgorithm):
            continue
    return None


def validate_at(
    chain: list[x509.Certificate],
    anchors: TrustAnchorSet,
    crls: list[x509.CertificateRevocationList],
    moment: datetime,
) -> None:
    """Validate ``chain`` as it stood at ``moment``.

    Every member must be inside its validity period at ``moment``, every
    link must verify, the chain must be anchored, the signer must carry the
    time-stamping extended key usage, and every non-self-signed member must
    be covered by a CRL from its issuer that does not list it as revoked at
    or before ``moment``. Revocations dated after ``moment`` do not affect
    a token issued earlier.

    Raises:
        ValidationError: Describing the first failed check.
    """
    if not chain:
        raise ValidationError("empty certificate chain")

    for cert in chain:
        if not cert.not_valid_before_utc <= moment <= cert.not_valid_after_utc:
            raise ValidationError(
                f"{describe(cert)} valid {cert.not_valid_before_utc:%Y-%m-%d} to "
                f"{cert.not_valid_after_utc:%Y-%m-%d}, not at {moment:%Y-%m-%d %H:%M:%S}"
            )

    for child, parent in zip(chain, chain[1:]):
        if not is_issued_by(child, parent):
            raise ValidationError(f"{describe(child)} is not issued by {describe(parent)}")

    try:
        verify_chain_trust(chain, anchors)
    except TrustError as exc:
        raise ValidationError(str(exc)) from exc

    try:
        eku = chain[0].extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        eku = []
    if ExtendedKeyUsageOID.TIME_STAMPING not in eku:
        raise ValidationError(f"{describe(chain[0])} is not a time-stamping certificate")

    for position, cert in enumerate(chain):
        if is_self_signed(cert):
            continue
        if position + 1 < len(chain):
            issuer = chain[position + 1]
        else:
            issuer = anchors.find_issuer(cert)
        if issuer is None:
            raise ValidationError(f"issuer of {describe(cert)} is unknown")
        crl = _covering_crl(cert, issuer, crls)
        if crl is None:
            raise ValidationError(f"no valid CRL from {describe(issuer)} covers {describe(cert)}")
        revoked = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
        if revoked is not None and revoked.revocation_date_utc <= moment:
            raise ValidationError(
                f"{describe(cert)} was revoked on {revoked.revocation_date_utc:%Y-%m-%d %H:%M:%S}"
            )


# ---------------------------------------------------------------------------
# Token validator
# ---------------------------------------------------------------------------


class TokenValidator:
    """Produces a verdict for each timestamp token of a commit.

    Args:
        config: Repository configuration.
        cache: LTV cache shared with ``resolver``.
        resolver: Chain resolver.
        fetcher: CRL fetcher.
        anchors: Locally trusted certificates.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        cache: LTVCache,
        resolver: ChainResolver,
        fetcher: RevocationFetcher,
        anchors: TrustAnchorSet,
    ) -> None:
        self.config = config
        self.cache = cache
        self.resolver = resolver
        self.fetcher = fetcher
        self.anchors = anchors

    @classmethod
    def from_config(
        cls,
        config: RepositoryConfig,
        cache: Optional[LTVCache] = None,
        anchors: Optional[TrustAnchorSet] = None,
        tsa_query: Optional[TSAQuery] = None,
        fetch: Optional[URLFetch] = None,
    ) -> "TokenValidator":
        """Wire up a validator with network-backed defaults.

        Any collaborator can be overridden, which is how tests run the
        engine without network access.
        """
        cache = cache if cache is not None else LTVCache(config.cache_dir)
        anchors = anchors if anchors is not None else TrustAnchorSet.from_directory(
            config.trust_anchor_dir
        )
        fetch = fetch or make_fetcher(config)
        tsa_query = tsa_query or TSAClient(config)
        resolver = ChainResolver(config, cache, anchors, tsa_query, fetch)
        return cls(config, cache, resolver, RevocationFetcher(fetch), anchors)

    def _invalid(self, reason: str, tsa_url: str, **fields) -> Verdict:
        logger.warning("Timestamp from %s invalid: %s", tsa_url, reason)
        return Verdict(status=TimestampStatus.INVALID, reason=reason, tsa_url=tsa_url, **fields)

    def validate(self, token: bytes, digest: str, tsa_url: str) -> Verdict:
        """Validate one token against the digest it should cover.

        Raises:
            PreconditionError: If ``digest`` is not a repository digest.
        """
        digest = check_digest(digest, self.config)

        try:
            signer_id = read_signer_id(token)
        except MalformedTokenError as exc:
            return self._invalid(str(exc), tsa_url)

        try:
            with self.cache.lock(signer_id):
                chain = self.cache.chain(signer_id)
                if chain is None:
                    chain = self.resolver.resolve(token, digest, tsa_url)
                if not chain:
                    raise ChainResolutionError("empty certificate chain")
                crls = self.cache.crls(signer_id)
                if crls is None:
                    crls = self.fetcher.fetch_revocations(chain)
                    self.cache.store_crls(signer_id, crls)
            signing_time = read_signing_time(token)
        except _TOKEN_ERRORS as exc:
            return self._invalid(str(exc), tsa_url, signer_id=signer_id.key)

        fields = {"signer_id": signer_id.key, "signing_time": signing_time}

        try:
            validate_at(chain, self.anchors, crls, signing_time)
        except ValidationError as exc:
            return self._invalid(f"{REASON_CERTIFICATE}: {exc}", tsa_url, **fields)

        try:
            verify_token_signature(token, chain[0])
            imprint = read_message_imprint_digest(token, self.config)
            if imprint != digest:
                raise ValidationError(f"token covers {imprint}, commit digest is {digest}")
        except (ValidationError, MalformedTokenError) as exc:
            return self._invalid(f"{REASON_SIGNATURE}: {exc}", tsa_url, **fields)

        logger.info("Timestamp from %s valid, signed %s", tsa_url, signing_time.isoformat())
        return Verdict(status=TimestampStatus.VALID, tsa_url=tsa_url, **fields)

    def validate_commit(self, timestamps: CommitTimestamps, digest: str) -> list[Verdict]:
        """Validate every token of a commit independently.

        Returns:
            One verdict per token, in trailer order (empty if none).
        """
        return [self.validate(t.token_der, digest, t.tsa_url) for t in timestamps.tokens]
