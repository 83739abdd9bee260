"""Certificate chain resolution for timestamp tokens.

Tokens embedded in commits usually carry no certificates, only a hash of
the TSA's signing certificate. To make them verifiable long after the TSA
certificate expired, the full chain up to a trusted root is assembled once
and cached next to the repository.

Sources are consulted in priority order:

1. the shared LTV cache,
2. certificates bundled in the token, then fresh certificate-inclusive
   queries to the issuing TSA (bounded; a TSA may rotate among several
   signing certificates, so each answer can carry a different bundle),
3. the local trust anchor store,
4. AIA "CA Issuers" downloads.

Usage::

    resolver = ChainResolver(config, cache, anchors, TSAClient(config), fetch)
    chain = resolver.resolve(token_der, digest, "https://freetsa.org/tsr")
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography import x509

from .cache import LTVCache
from .certs import (
    TrustAnchorSet,
    ca_issuer_url,
    cert_der,
    describe,
    is_issued_by,
    is_self_signed,
    load_certificates,
    same_certificate,
    verify_chain_trust,
)
from .digest import check_digest
from .errors import ChainResolutionError, MalformedTokenError, TransportError
from .models import RepositoryConfig, SignerCertID
from .tokeninfo import read_signer_hash_algorithm, read_signer_id, token_certificates
from .tsa import TSAQuery, URLFetch

logger = logging.getLogger("commitstamp.chain")

# Real-world TSA chains are 2-4 certificates long.
MAX_CHAIN_LENGTH = 16


class ChainResolver:
    """Assembles the chain from a token's signer to a self-signed root.

    Args:
        config: Repository configuration.
        cache: LTV cache consulted first and written on success.
        anchors: Locally trusted certificates.
        tsa_query: Callable ``(digest, tsa_url) -> token DER`` issuing a
            certificate-inclusive timestamp request.
        fetch: Callable ``(url) -> bytes`` for AIA downloads.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        cache: LTVCache,
        anchors: TrustAnchorSet,
        tsa_query: TSAQuery,
        fetch: URLFetch,
    ) -> None:
        self.config = config
        self.cache = cache
        self.anchors = anchors
        self.tsa_query = tsa_query
        self.fetch = fetch

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, token: bytes, digest: str, tsa_url: str) -> list[x509.Certificate]:
        """Return the chain for ``token``'s signer, signer first.

        Args:
            token: DER-encoded timestamp token.
            digest: Digest the token covers; reused for discovery queries.
            tsa_url: TSA that issued the token.

        Raises:
            PreconditionError: If ``digest`` is not a repository digest.
            MalformedTokenError: If the token has no signing-certificate attribute.
            ChainResolutionError: If every source is exhausted.
            UnsupportedFormatError: If an AIA download is not a certificate.
            TrustError: If the chain is not anchored locally.
        """
        digest = check_digest(digest, self.config)
        signer_id = read_signer_id(token)
        hash_alg = read_signer_hash_algorithm(token)

        cached = self.cache.chain(signer_id)
        if cached is not None:
            logger.debug("Chain for %s served from cache", signer_id)
            return cached

        arena: list[x509.Certificate] = []
        signer = self._discover_signer(token, digest, tsa_url, signer_id, hash_alg, arena)
        chain = self._complete_chain(signer, arena)

        if not is_self_signed(chain[-1]):
            raise ChainResolutionError(
                f"chain ends at {describe(chain[-1])}, which does not verify itself"
            )
        verify_chain_trust(chain, self.anchors)

        self.cache.store_chain(signer_id, chain)
        logger.info("Resolved %d-certificate chain for %s", len(chain), signer_id)
        return chain

    # ------------------------------------------------------------------
    # Signer discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _match_signer(
        certs: list[x509.Certificate], signer_id: SignerCertID
    ) -> Optional[x509.Certificate]:
        for cert in certs:
            if signer_id.matches(cert_der(cert)):
                return cert
        return None

    def _discover_signer(
        self,
        token: bytes,
        digest: str,
        tsa_url: str,
        signer_id: SignerCertID,
        hash_alg: str,
        arena: list[x509.Certificate],
    ) -> x509.Certificate:
        """Find the certificate whose ``hash_alg`` hash equals ``signer_id``.

        Candidates found along the way are collected in ``arena`` for the
        chain completion step.
        """
        bundled = token_certificates(token)
        arena.extend(bundled)
        signer = self._match_signer(bundled, signer_id)
        if signer is not None:
            logger.debug("Signer %s bundled in the token", signer_id)
            return signer

        attempts = self.config.max_signer_attempts
        for attempt in range(1, attempts + 1):
            try:
                response_certs = token_certificates(self.tsa_query(digest, tsa_url))
            except (TransportError, MalformedTokenError) as exc:
                logger.warning(
                    "Signer discovery attempt %d/%d against %s failed: %s",
                    attempt,
                    attempts,
                    tsa_url,
                    exc,
                )
                continue
            arena.extend(response_certs)
            signer = self._match_signer(response_certs, signer_id)
            if signer is not None:
                logger.info(
                    "Found %s signer %s after %d request(s)", hash_alg, describe(signer), attempt
                )
                return signer
            logger.debug("Attempt %d/%d: signer %s not in TSA bundle", attempt, attempts, signer_id)

        raise ChainResolutionError(
            f"signer not found: no certificate matching {signer_id} "
            f"in {attempts} responses from {tsa_url}"
        )

    # ------------------------------------------------------------------
    # Chain completion
    # ------------------------------------------------------------------

    def _complete_chain(
        self, signer: x509.Certificate, arena: list[x509.Certificate]
    ) -> list[x509.Certificate]:
        chain = [signer]
        while not is_self_signed(chain[-1]):
            if len(chain) >= MAX_CHAIN_LENGTH:
                raise ChainResolutionError(
                    f"chain construction stalled after {len(chain)} certificates"
                )
            top = chain[-1]

            issuer = self._issuer_in(arena, top, chain)
            if issuer is not None:
                logger.debug("Issuer of %s found among retrieved certificates", describe(top))
                chain.append(issuer)
                continue

            anchor = self.anchors.find_issuer(top)
            if anchor is not None:
                logger.debug("Issuer of %s found in trust anchors", describe(top))
                self._append(chain, anchor)
                break

            self._append(chain, self._download_issuer(top))
        return chain

    @staticmethod
    def _issuer_in(
        candidates: list[x509.Certificate],
        cert: x509.Certificate,
        chain: list[x509.Certificate],
    ) -> Optional[x509.Certificate]:
        for candidate in candidates:
            if any(same_certificate(candidate, c) for c in chain):
                continue
            if is_issued_by(cert, candidate):
                return candidate
        return None

    @staticmethod
    def _append(chain: list[x509.Certificate], issuer: x509.Certificate) -> None:
        if any(same_certificate(issuer, c) for c in chain):
            raise ChainResolutionError(
                f"chain construction stalled: {describe(issuer)} already in chain"
            )
        chain.append(issuer)

    def _download_issuer(self, cert: x509.Certificate) -> x509.Certificate:
        url = ca_issuer_url(cert)
        if url is None:
            raise ChainResolutionError(f"no issuer URL in {describe(cert)}")
        try:
            data = self.fetch(url)
        except TransportError as exc:
            raise ChainResolutionError(f"cannot download issuer of {describe(cert)}: {exc}") from exc

        for candidate in load_certificates(data):
            if is_issued_by(cert, candidate):
                logger.info("Issuer of %s downloaded from %s", describe(cert), url)
                return candidate
        raise ChainResolutionError(
            f"chain construction stalled: {url} does not serve the issuer of {describe(cert)}"
        )
