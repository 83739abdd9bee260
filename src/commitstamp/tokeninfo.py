"""Semantic field extraction from RFC 3161 timestamp tokens.

A TimeStampToken is a CMS ContentInfo wrapping SignedData whose
encapsulated content is a TSTInfo. The LTV engine needs only a handful of
fields from it:

- the signing-certificate attribute (ESSCertID in RFC 3161, ESSCertIDv2 in
  RFC 5816) that identifies the TSA certificate by hash,
- the message imprint the token attests to,
- the generation time and the nonce echoed from the request,
- the certificates the TSA may have bundled,
- the CMS signature itself.

Decoding is done by ``asn1crypto``; signature checks by ``cryptography``.
Every function here takes the token's DER bytes and has no side effects.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

from asn1crypto import cms, core, tsp
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa

from .errors import MalformedTokenError, ValidationError
from .models import RepositoryConfig, SignerCertID

logger = logging.getLogger("commitstamp.tokeninfo")

# OID constants (as dotted strings)
_OID_SIGNING_CERTIFICATE = "1.2.840.113549.1.9.16.2.12"
_OID_SIGNING_CERTIFICATE_V2 = "1.2.840.113549.1.9.16.2.47"
_OID_MESSAGE_DIGEST = "1.2.840.113549.1.9.4"

# ESSCertIDv2 default when hashAlgorithm is omitted (RFC 5035)
_ESS_V2_DEFAULT_ALGORITHM = "sha256"

_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode(token: bytes) -> tuple[cms.SignedData, cms.SignerInfo, bytes, tsp.TSTInfo]:
    """Decode the token down to SignedData, its SignerInfo and TSTInfo.

    Returns:
        (signed_data, signer_info, econtent_der, tst_info)

    Raises:
        MalformedTokenError: If the token is not a single-signer
            SignedData over a TSTInfo.
    """
    try:
        content_info = cms.ContentInfo.load(token)
        if content_info["content_type"].native != "signed_data":
            raise MalformedTokenError(
                f"token content type is {content_info['content_type'].native}, "
                "expected signed_data"
            )
        signed_data = content_info["content"]
        encap = signed_data["encap_content_info"]
        if encap["content_type"].native != "tst_info":
            raise MalformedTokenError("token does not encapsulate a TSTInfo")
        econtent = encap["content"].parsed.dump()
        tst_info = tsp.TSTInfo.load(econtent)
        signer_infos = signed_data["signer_infos"]
        if len(signer_infos) != 1:
            raise MalformedTokenError(
                f"token has {len(signer_infos)} signer infos, expected exactly one"
            )
        return signed_data, signer_infos[0], econtent, tst_info
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise MalformedTokenError(f"cannot decode timestamp token: {exc}") from exc


def _signed_attribute(signer_info: cms.SignerInfo, oid: str):
    """Return the first value of the signed attribute ``oid``, or None."""
    attrs = signer_info["signed_attrs"]
    if isinstance(attrs, core.Void):
        return None
    for attr in attrs:
        if attr["type"].dotted == oid:
            values = attr["values"]
            return values[0] if len(values) else None
    return None


def _signing_certificate(token: bytes) -> tuple[str, str]:
    """Locate the ESSCertID(v2) attribute and normalize it.

    ESSCertIDv2 is preferred when a token carries both variants.

    Returns:
        (hash algorithm name, lowercase hex cert hash)
    """
    _, signer_info, _, _ = _decode(token)
    try:
        value = _signed_attribute(signer_info, _OID_SIGNING_CERTIFICATE_V2)
        if value is not None:
            certs = tsp.SigningCertificateV2.load(value.dump())["certs"]
            if not len(certs):
                raise MalformedTokenError("SigningCertificateV2 attribute lists no certificate")
            cert_id = certs[0]
            algorithm = cert_id["hash_algorithm"]["algorithm"].native or _ESS_V2_DEFAULT_ALGORITHM
            if algorithm not in hashlib.algorithms_available:
                raise MalformedTokenError(f"unsupported ESSCertIDv2 hash algorithm {algorithm}")
            return algorithm, cert_id["cert_hash"].native.hex()

        value = _signed_attribute(signer_info, _OID_SIGNING_CERTIFICATE)
        if value is not None:
            certs = tsp.SigningCertificate.load(value.dump())["certs"]
            if not len(certs):
                raise MalformedTokenError("SigningCertificate attribute lists no certificate")
            return "sha1", certs[0]["cert_hash"].native.hex()
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedTokenError(f"cannot decode signing-certificate attribute: {exc}") from exc

    raise MalformedTokenError("token has no signing-certificate attribute")


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------


def read_signer_id(token: bytes) -> SignerCertID:
    """Return the identity of the certificate that signed ``token``.

    Raises:
        MalformedTokenError: If neither signing-certificate variant is present.
    """
    algorithm, cert_hash = _signing_certificate(token)
    return SignerCertID(algorithm=algorithm, cert_hash=cert_hash)


def read_signer_hash_algorithm(token: bytes) -> str:
    """Return the hash algorithm used to identify the signing certificate.

    ``sha1`` for an ESSCertID attribute; the ESSCertIDv2 algorithm, or its
    ``sha256`` default, otherwise.
    """
    algorithm, _ = _signing_certificate(token)
    return algorithm


def read_message_imprint_digest(token: bytes, config: RepositoryConfig) -> str:
    """Return the hex digest the token attests to.

    Raises:
        MalformedTokenError: If the imprint is not a repository-length digest.
    """
    _, _, _, tst_info = _decode(token)
    try:
        imprint = tst_info["message_imprint"]["hashed_message"].native.hex()
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise MalformedTokenError(f"cannot read message imprint: {exc}") from exc
    if len(imprint) != config.digest_length:
        raise MalformedTokenError(
            f"message imprint has {len(imprint)} hex characters, "
            f"repository digests have {config.digest_length}"
        )
    return imprint


def read_signing_time(token: bytes) -> datetime:
    """Return the token's genTime as an aware UTC datetime.

    Raises:
        MalformedTokenError: If genTime is absent or unparsable.
    """
    _, _, _, tst_info = _decode(token)
    try:
        gen_time = tst_info["gen_time"].native
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedTokenError(f"cannot read token generation time: {exc}") from exc
    if not isinstance(gen_time, datetime):
        raise MalformedTokenError("token has no generation time")
    if gen_time.tzinfo is None:
        gen_time = gen_time.replace(tzinfo=timezone.utc)
    return gen_time.astimezone(timezone.utc)


def read_nonce(token: bytes) -> Optional[int]:
    """Return the nonce the TSA echoed from the request, or None."""
    _, _, _, tst_info = _decode(token)
    return tst_info["nonce"].native


def token_certificates(token: bytes) -> list[x509.Certificate]:
    """Return the certificates bundled in the token's SignedData.

    Attribute certificates and other non-X.509 choices are ignored.
    """
    signed_data, _, _, _ = _decode(token)
    bundled = signed_data["certificates"]
    if isinstance(bundled, core.Void):
        return []
    certs = []
    for choice in bundled:
        if choice.name != "certificate":
            continue
        try:
            certs.append(x509.load_der_x509_certificate(choice.chosen.dump()))
        except ValueError as exc:
            logger.debug("Skipping undecodable bundled certificate: %s", exc)
    return certs


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


def verify_token_signature(token: bytes, signer_cert: x509.Certificate) -> None:
    """Verify the CMS signature of ``token`` with ``signer_cert``'s key.

    Checks that the message-digest signed attribute matches the encapsulated
    TSTInfo and that the signature over the signed attributes verifies.

    Raises:
        ValidationError: If either check fails.
        MalformedTokenError: If the token cannot be decoded.
    """
    _, signer_info, econtent, _ = _decode(token)

    digest_algorithm = signer_info["digest_algorithm"]["algorithm"].native
    hash_cls = _HASHES.get(digest_algorithm)
    if hash_cls is None:
        raise ValidationError(f"unsupported token digest algorithm {digest_algorithm}")

    attrs = signer_info["signed_attrs"]
    if isinstance(attrs, core.Void):
        raise ValidationError("token carries no signed attributes")
    message_digest = _signed_attribute(signer_info, _OID_MESSAGE_DIGEST)
    if message_digest is None:
        raise ValidationError("token has no message-digest attribute")
    if message_digest.native != hashlib.new(digest_algorithm, econtent).digest():
        raise ValidationError("message-digest attribute does not match TSTInfo")

    # The signature covers the attributes re-encoded as a plain SET OF.
    signed_bytes = attrs.untag().dump()
    signature = signer_info["signature"].native
    signature_algorithm = signer_info["signature_algorithm"]
    public_key = signer_cert.public_key()

    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            if signature_algorithm.signature_algo == "rsassa_pss":
                params = signature_algorithm["parameters"]
                pss_hash = _HASHES[params["hash_algorithm"]["algorithm"].native]()
                pad = padding.PSS(
                    mgf=padding.MGF1(pss_hash),
                    salt_length=params["salt_length"].native,
                )
                public_key.verify(signature, signed_bytes, pad, pss_hash)
            else:
                public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_cls())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_bytes, ec.ECDSA(hash_cls()))
        elif isinstance(public_key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
            public_key.verify(signature, signed_bytes)
        else:
            raise ValidationError(
                f"unsupported signer key type {type(public_key).__name__}"
            )
    except InvalidSignature as exc:
        raise ValidationError("token signature does not verify") from exc
    except KeyError as exc:
        raise ValidationError(f"unsupported signature parameters: {exc}") from exc
