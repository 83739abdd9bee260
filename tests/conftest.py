"""Shared fixtures for commitstamp tests.

Builds a small throwaway PKI (root → intermediate → TSA) and RFC 3161
tokens signed by it, plus fake TSA and HTTP callables so nothing touches
the network.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from asn1crypto import cms, tsp
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtendedKeyUsageOID, NameOID

from commitstamp.certs import TrustAnchorSet
from commitstamp.digest import derive_digest
from commitstamp.errors import TransportError
from commitstamp.models import HashAlgorithm, RepositoryConfig

ROOT_CER_URL = "http://pki.test/root.cer"
ROOT_CRL_URL = "http://pki.test/root.crl"
INTER_CER_URL = "http://pki.test/inter.cer"
INTER_CRL_URL = "http://pki.test/inter.crl"
TSA_URL = "http://tsa.test/tsr"

# TSA certificate window: long expired by now, valid when tokens were signed.
TSA_NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
TSA_NOT_AFTER = datetime(2025, 1, 1, tzinfo=timezone.utc)
SIGNING_TIME = datetime(2023, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
CRL_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

TREE = "a1" * 20
PARENT = "b2" * 20


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------


def new_key():
    return ec.generate_private_key(ec.SECP256R1())


def make_cert(
    subject: str,
    key,
    issuer_cert=None,
    issuer_key=None,
    *,
    ca: bool = False,
    tsa: bool = False,
    not_before: datetime = datetime(2015, 1, 1, tzinfo=timezone.utc),
    not_after: datetime = datetime(2045, 1, 1, tzinfo=timezone.utc),
    aia_url: str = None,
    crl_url: str = None,
    issuer_name: str = None,
) -> x509.Certificate:
    """Issue a certificate; self-signed when no issuer is given."""
    subject_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
    if issuer_cert is not None:
        issuer = issuer_cert.subject
    elif issuer_name is not None:
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)])
    else:
        issuer = subject_name
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject_name)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if tsa:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]), critical=True
        )
    if aia_url:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess(
                [
                    x509.AccessDescription(
                        AuthorityInformationAccessOID.CA_ISSUERS,
                        x509.UniformResourceIdentifier(aia_url),
                    )
                ]
            ),
            critical=False,
        )
    if crl_url:
        builder = builder.add_extension(
            x509.CRLDistributionPoints(
                [
                    x509.DistributionPoint(
                        full_name=[x509.UniformResourceIdentifier(crl_url)],
                        relative_name=None,
                        reasons=None,
                        crl_issuer=None,
                    )
                ]
            ),
            critical=False,
        )
    return builder.sign(issuer_key or key, hashes.SHA256())


def make_crl(issuer_cert, issuer_key, revoked=()) -> x509.CertificateRevocationList:
    """Issue a CRL listing ``revoked`` as (serial, revocation date) pairs."""
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(issuer_cert.subject)
        .last_update(CRL_TIME)
        .next_update(CRL_TIME + timedelta(days=3650))
    )
    for serial, when in revoked:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder().serial_number(serial).revocation_date(when).build()
        )
    return builder.sign(issuer_key, hashes.SHA256())


def der(obj) -> bytes:
    return obj.public_bytes(serialization.Encoding.DER)


def pem(obj) -> bytes:
    return obj.public_bytes(serialization.Encoding.PEM)


# ---------------------------------------------------------------------------
# Token builder
# ---------------------------------------------------------------------------


def make_token(
    digest_hex: str,
    signer_cert: x509.Certificate,
    signer_key,
    gen_time: datetime = SIGNING_TIME,
    *,
    imprint_algorithm: str = "sha1",
    ess: str = "v2",
    include_certs=(),
    serial: int = 42,
    nonce: int = None,
) -> bytes:
    """Build a DER TimeStampToken signed by ``signer_key``.

    ``ess`` selects the signing-certificate attribute: "v2", "v2-default"
    (ESSCertIDv2 without hashAlgorithm), "v1" or "none".
    """
    tst_fields = {
        "version": "v1",
        "policy": "1.3.6.1.4.1.99999.1",
        "message_imprint": tsp.MessageImprint(
            {
                "hash_algorithm": {"algorithm": imprint_algorithm},
                "hashed_message": bytes.fromhex(digest_hex),
            }
        ),
        "serial_number": serial,
        "gen_time": gen_time,
    }
    if nonce is not None:
        tst_fields["nonce"] = nonce
    tst_info = tsp.TSTInfo(tst_fields)
    econtent = tst_info.dump()
    cert_der = der(signer_cert)

    attrs = [
        cms.CMSAttribute({"type": "content_type", "values": ["tst_info"]}),
        cms.CMSAttribute(
            {"type": "message_digest", "values": [hashlib.sha256(econtent).digest()]}
        ),
    ]
    if ess in ("v2", "v2-default"):
        cert_id = {"cert_hash": hashlib.sha256(cert_der).digest()}
        if ess == "v2":
            cert_id["hash_algorithm"] = {"algorithm": "sha256"}
        attrs.append(
            cms.CMSAttribute(
                {
                    "type": "signing_certificate_v2",
                    "values": [tsp.SigningCertificateV2({"certs": [tsp.ESSCertIDv2(cert_id)]})],
                }
            )
        )
    elif ess == "v1":
        attrs.append(
            cms.CMSAttribute(
                {
                    "type": "signing_certificate",
                    "values": [
                        tsp.SigningCertificate(
                            {"certs": [tsp.ESSCertID({"cert_hash": hashlib.sha1(cert_der).digest()})]}
                        )
                    ],
                }
            )
        )
    signed_attrs = cms.CMSAttributes(attrs)
    signature = signer_key.sign(signed_attrs.dump(), ec.ECDSA(hashes.SHA256()))

    asn1_cert = asn1_x509.Certificate.load(cert_der)
    signer_info = cms.SignerInfo(
        {
            "version": "v1",
            "sid": cms.SignerIdentifier(
                {
                    "issuer_and_serial_number": cms.IssuerAndSerialNumber(
                        {"issuer": asn1_cert.issuer, "serial_number": asn1_cert.serial_number}
                    )
                }
            ),
            "digest_algorithm": {"algorithm": "sha256"},
            "signed_attrs": signed_attrs,
            "signature_algorithm": {"algorithm": "sha256_ecdsa"},
            "signature": signature,
        }
    )
    signed_data = {
        "version": "v3",
        "digest_algorithms": [{"algorithm": "sha256"}],
        "encap_content_info": {"content_type": "tst_info", "content": tst_info},
        "signer_infos": [signer_info],
    }
    if include_certs:
        signed_data["certificates"] = [
            asn1_x509.Certificate.load(der(c)) for c in include_certs
        ]
    return cms.ContentInfo(
        {"content_type": "signed_data", "content": cms.SignedData(signed_data)}
    ).dump()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeFetch:
    """URL → bytes map standing in for HTTP downloads."""

    def __init__(self, responses: dict):
        self.responses = dict(responses)
        self.calls = []

    def __call__(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self.responses:
            raise TransportError(f"download of {url} failed: 404")
        return self.responses[url]


class FakeTSA:
    """Answers each query with the next token from ``tokens`` (last one repeats)."""

    def __init__(self, tokens):
        self.tokens = list(tokens)
        self.calls = []

    def __call__(self, digest: str, tsa_url: str) -> bytes:
        self.calls.append((digest, tsa_url))
        index = min(len(self.calls), len(self.tokens)) - 1
        token = self.tokens[index]
        if isinstance(token, Exception):
            raise token
        return token


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pki():
    """Root → intermediate → TSA hierarchy with CRLs and AIA pointers."""
    root_key = new_key()
    root = make_cert("Test Root CA", root_key, ca=True)

    inter_key = new_key()
    inter = make_cert(
        "Test Intermediate CA",
        inter_key,
        root,
        root_key,
        ca=True,
        not_after=datetime(2040, 1, 1, tzinfo=timezone.utc),
        aia_url=ROOT_CER_URL,
        crl_url=ROOT_CRL_URL,
    )

    tsa_key = new_key()
    tsa = make_cert(
        "Test TSA 1",
        tsa_key,
        inter,
        inter_key,
        tsa=True,
        not_before=TSA_NOT_BEFORE,
        not_after=TSA_NOT_AFTER,
        aia_url=INTER_CER_URL,
        crl_url=INTER_CRL_URL,
    )

    tsa2_key = new_key()
    tsa2 = make_cert(
        "Test TSA 2",
        tsa2_key,
        inter,
        inter_key,
        tsa=True,
        not_before=TSA_NOT_BEFORE,
        not_after=TSA_NOT_AFTER,
        aia_url=INTER_CER_URL,
        crl_url=INTER_CRL_URL,
    )

    root_crl = make_crl(root, root_key)
    inter_crl = make_crl(inter, inter_key)

    return SimpleNamespace(
        root=root,
        root_key=root_key,
        inter=inter,
        inter_key=inter_key,
        tsa=tsa,
        tsa_key=tsa_key,
        tsa2=tsa2,
        tsa2_key=tsa2_key,
        root_crl=root_crl,
        inter_crl=inter_crl,
    )


@pytest.fixture
def config(tmp_path) -> RepositoryConfig:
    return RepositoryConfig(
        hash_algorithm=HashAlgorithm.SHA1,
        trust_anchor_dir=tmp_path / "anchors",
        cache_dir=tmp_path / "ltv",
    )


@pytest.fixture
def digest(config) -> str:
    return derive_digest(TREE, PARENT, config)


@pytest.fixture
def anchors(pki) -> TrustAnchorSet:
    return TrustAnchorSet([pki.root])


@pytest.fixture
def fetch(pki) -> FakeFetch:
    """AIA serves DER certificates; CRLs come as DER (root) and PEM (intermediate)."""
    return FakeFetch(
        {
            ROOT_CER_URL: der(pki.root),
            INTER_CER_URL: der(pki.inter),
            ROOT_CRL_URL: der(pki.root_crl),
            INTER_CRL_URL: pem(pki.inter_crl),
        }
    )


@pytest.fixture
def tsa_query(pki, digest) -> FakeTSA:
    """TSA that bundles its signing certificate and intermediate."""
    return FakeTSA([make_token(digest, pki.tsa, pki.tsa_key, include_certs=[pki.tsa, pki.inter])])


@pytest.fixture
def token(pki, digest) -> bytes:
    """A certificate-less token, as carried in commit trailers."""
    return make_token(digest, pki.tsa, pki.tsa_key)
