"""CRL acquisition for resolved certificate chains.

Every certificate in a chain except self-signed roots must be covered by a
CRL from its issuer; there is no silent skip. The downloaded CRLs are
normalized to one representation and bundled per chain so the LTV cache
can store them next to the chain they cover.
"""

from __future__ import annotations

import logging

from cryptography import x509

from .certs import crl_distribution_url, describe, is_self_signed, load_crl
from .errors import RevocationFetchError, TransportError, UnsupportedFormatError
from .tsa import URLFetch

logger = logging.getLogger("commitstamp.revocation")


class RevocationFetcher:
    """Downloads the revocation bundle for a chain.

    Args:
        fetch: Callable ``(url) -> bytes`` used for CRL downloads.
    """

    def __init__(self, fetch: URLFetch) -> None:
        self.fetch = fetch

    def fetch_revocations(
        self, chain: list[x509.Certificate]
    ) -> list[x509.CertificateRevocationList]:
        """Return one CRL per non-self-signed chain member, in chain order.

        A chain consisting of a lone self-signed certificate yields an empty
        bundle.

        Raises:
            RevocationFetchError: If a certificate has no distribution point,
                or the download fails or does not parse as a CRL.
        """
        bundle = []
        for cert in chain:
            if is_self_signed(cert):
                continue
            url = crl_distribution_url(cert)
            if url is None:
                raise RevocationFetchError(
                    f"{describe(cert)} has no CRL distribution point"
                )
            try:
                data = self.fetch(url)
            except TransportError as exc:
                raise RevocationFetchError(f"cannot download CRL for {describe(cert)}: {exc}") from exc
            try:
                crl = load_crl(data)
            except UnsupportedFormatError as exc:
                raise RevocationFetchError(f"{url} did not return a CRL: {exc}") from exc
            logger.info("Fetched CRL for %s from %s", describe(cert), url)
            bundle.append(crl)
        return bundle
