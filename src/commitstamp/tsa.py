"""HTTP transport and RFC 3161 client.

Everything the LTV engine sends over the network goes through this module:
timestamp queries to the TSA, AIA "CA Issuers" downloads and CRL
downloads. Remote content type is never trusted; callers auto-detect the
payload encoding themselves.

:class:`TSAClient` is the TSA query capability injected into the chain
resolver. Tests replace it with any callable of the same shape::

    def query(digest: str, tsa_url: str) -> bytes: ...
"""

from __future__ import annotations

import logging
import secrets
import urllib.request
from typing import Callable, Optional

from asn1crypto import algos, cms, core, tsp

from .errors import TransportError
from .models import HashAlgorithm, RepositoryConfig
from .tokeninfo import read_message_imprint_digest, read_nonce

logger = logging.getLogger("commitstamp.tsa")

DEFAULT_TSA_URL = "https://freetsa.org/tsr"

USER_AGENT = "commitstamp/0.1"

TSAQuery = Callable[[str, str], bytes]
URLFetch = Callable[[str], bytes]


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def http_get(url: str, timeout: int = 30) -> bytes:
    """Download ``url`` and return the raw body.

    Raises:
        TransportError: On any HTTP or connection failure.
    """
    logger.info("Downloading %s", url)
    try:
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except Exception as exc:
        logger.error("HTTP GET failed for %s: %s", url, exc)
        raise TransportError(f"download of {url} failed: {exc}") from exc


def http_post(url: str, body: bytes, content_type: str, accept: str, timeout: int = 30) -> bytes:
    """POST ``body`` to ``url`` and return the raw response body.

    Raises:
        TransportError: On any HTTP or connection failure.
    """
    try:
        req = urllib.request.Request(
            url,
            data=body,
            headers={
                "Content-Type": content_type,
                "Accept": accept,
                "User-Agent": USER_AGENT,
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except Exception as exc:
        logger.error("HTTP POST failed for %s: %s", url, exc)
        raise TransportError(f"request to {url} failed: {exc}") from exc


def make_fetcher(config: RepositoryConfig) -> URLFetch:
    """Return a one-argument downloader bound to the configured timeout."""

    def fetch(url: str) -> bytes:
        return http_get(url, timeout=config.timeout_seconds)

    return fetch


# ---------------------------------------------------------------------------
# RFC 3161 request / response
# ---------------------------------------------------------------------------


def build_timestamp_request(
    digest: str,
    algorithm: HashAlgorithm,
    nonce: Optional[int] = None,
    cert_req: bool = True,
) -> bytes:
    """Build a DER-encoded TimeStampReq for a precomputed hex digest.

    Args:
        digest: Hex digest to timestamp.
        algorithm: Algorithm that produced ``digest``.
        nonce: Optional nonce echoed back by the TSA.
        cert_req: Ask the TSA to include its certificates in the token.

    Returns:
        DER bytes ready for POSTing as ``application/timestamp-query``.
    """
    fields = {
        "version": "v1",
        "message_imprint": tsp.MessageImprint(
            {
                "hash_algorithm": algos.DigestAlgorithm({"algorithm": algorithm.value}),
                "hashed_message": bytes.fromhex(digest),
            }
        ),
        "cert_req": cert_req,
    }
    if nonce is not None:
        fields["nonce"] = nonce
    return tsp.TimeStampReq(fields).dump()


class TimeStampResponse(tsp.TimeStampResp):
    """TimeStampResp whose token is optional, as RFC 3161 requires.

    A TSA omits the token when it rejects a request; the stock asn1crypto
    structure would refuse to decode such a response.
    """

    _fields = [
        ("status", tsp.PKIStatusInfo),
        ("time_stamp_token", cms.ContentInfo, {"optional": True}),
    ]


def read_response_token(response_der: bytes) -> bytes:
    """Extract the TimeStampToken from a TimeStampResp.

    Raises:
        TransportError: If the response is undecodable or not granted.
    """
    try:
        resp = TimeStampResponse.load(response_der)
        status = resp["status"]["status"].native
        if status not in ("granted", "granted_with_mods"):
            text = " ".join(resp["status"]["status_string"].native or [])
            raise TransportError(f"TSA refused the request: {status} {text}".rstrip())
        token = resp["time_stamp_token"]
        if isinstance(token, core.Void):
            raise TransportError("TSA granted the request but returned no token")
        return token.dump()
    except (ValueError, TypeError, KeyError) as exc:
        raise TransportError(f"cannot decode TSA response: {exc}") from exc


class TSAClient:
    """Certificate-inclusive RFC 3161 client.

    Calling the client sends one timestamp query for ``digest`` and returns
    the granted token's DER bytes, after checking that the token echoes the
    request's message imprint and nonce.

    Args:
        config: Repository configuration (hash algorithm and timeout).
    """

    def __init__(self, config: RepositoryConfig) -> None:
        self.config = config

    def __call__(self, digest: str, tsa_url: str) -> bytes:
        nonce = int.from_bytes(secrets.token_bytes(8), "big")
        request = build_timestamp_request(digest, self.config.hash_algorithm, nonce=nonce)
        logger.info("Submitting timestamp request to %s", tsa_url)
        response = http_post(
            tsa_url,
            request,
            content_type="application/timestamp-query",
            accept="application/timestamp-reply",
            timeout=self.config.timeout_seconds,
        )
        token = read_response_token(response)

        imprint = read_message_imprint_digest(token, self.config)
        if imprint != digest:
            raise TransportError(f"TSA at {tsa_url} stamped {imprint}, requested {digest}")
        echoed = read_nonce(token)
        if echoed != nonce:
            raise TransportError(f"TSA at {tsa_url} answered nonce {echoed}, sent {nonce}")
        return token
