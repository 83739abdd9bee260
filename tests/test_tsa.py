"""Tests for the RFC 3161 client and HTTP transport (no network)."""

from unittest.mock import MagicMock, patch

import pytest
from asn1crypto import cms, tsp

from commitstamp.errors import TransportError
from commitstamp.models import HashAlgorithm
from commitstamp.tsa import (
    TimeStampResponse,
    TSAClient,
    build_timestamp_request,
    http_get,
    make_fetcher,
    read_response_token,
)

from .conftest import TSA_URL, make_token


def _response(token: bytes = None, status: str = "granted", text=None) -> bytes:
    status_info = {"status": status}
    if text:
        status_info["status_string"] = text
    fields = {"status": tsp.PKIStatusInfo(status_info)}
    if token is not None:
        fields["time_stamp_token"] = cms.ContentInfo.load(token)
    return TimeStampResponse(fields).dump()


class TestBuildTimestampRequest:
    """TimeStampReq encoding."""

    def test_fields(self, digest):
        req = tsp.TimeStampReq.load(build_timestamp_request(digest, HashAlgorithm.SHA1, nonce=7))
        assert req["message_imprint"]["hash_algorithm"]["algorithm"].native == "sha1"
        assert req["message_imprint"]["hashed_message"].native.hex() == digest
        assert req["cert_req"].native is True
        assert req["nonce"].native == 7

    def test_without_nonce(self):
        req = tsp.TimeStampReq.load(build_timestamp_request("ab" * 32, HashAlgorithm.SHA256))
        assert req["message_imprint"]["hash_algorithm"]["algorithm"].native == "sha256"
        assert req["nonce"].native is None


class TestReadResponseToken:
    """TimeStampResp decoding."""

    def test_granted(self, token):
        assert read_response_token(_response(token)) == token

    def test_rejected(self):
        with pytest.raises(TransportError, match="rejection bad algorithm"):
            read_response_token(_response(status="rejection", text=["bad algorithm"]))

    def test_granted_without_token(self):
        with pytest.raises(TransportError, match="no token"):
            read_response_token(_response())

    def test_garbage(self):
        with pytest.raises(TransportError):
            read_response_token(b"\x04\x02hi")


class TestTSAClient:
    """Query round trip with a mocked HTTP layer."""

    NONCE = 0x0102030405060708

    @pytest.fixture
    def fixed_nonce(self):
        with patch("commitstamp.tsa.secrets.token_bytes", return_value=self.NONCE.to_bytes(8, "big")):
            yield

    def test_posts_query_and_returns_token(self, pki, digest, config, fixed_nonce):
        token = make_token(digest, pki.tsa, pki.tsa_key, nonce=self.NONCE)
        with patch("commitstamp.tsa.http_post", return_value=_response(token)) as post:
            assert TSAClient(config)(digest, TSA_URL) == token
        args, kwargs = post.call_args
        assert args[0] == TSA_URL
        assert kwargs["content_type"] == "application/timestamp-query"
        assert kwargs["timeout"] == config.timeout_seconds
        req = tsp.TimeStampReq.load(args[1])
        assert req["message_imprint"]["hashed_message"].native.hex() == digest
        assert req["cert_req"].native is True
        assert req["nonce"].native == self.NONCE

    def test_fresh_nonce_per_query(self, pki, digest, config):
        first, second = (1).to_bytes(8, "big"), (2).to_bytes(8, "big")
        responses = [
            _response(make_token(digest, pki.tsa, pki.tsa_key, nonce=1)),
            _response(make_token(digest, pki.tsa, pki.tsa_key, nonce=2)),
        ]
        client = TSAClient(config)
        with patch("commitstamp.tsa.secrets.token_bytes", side_effect=[first, second]), patch(
            "commitstamp.tsa.http_post", side_effect=responses
        ) as post:
            client(digest, TSA_URL)
            client(digest, TSA_URL)
        nonces = [tsp.TimeStampReq.load(c.args[1])["nonce"].native for c in post.call_args_list]
        assert nonces == [1, 2]

    def test_token_for_other_digest_is_rejected(self, pki, digest, config, fixed_nonce):
        """A token over a different imprint never reaches a trailer."""
        token = make_token("cd" * 20, pki.tsa, pki.tsa_key, nonce=self.NONCE)
        with patch("commitstamp.tsa.http_post", return_value=_response(token)):
            with pytest.raises(TransportError, match="stamped cdcd"):
                TSAClient(config)(digest, TSA_URL)

    def test_wrong_nonce_is_rejected(self, pki, digest, config, fixed_nonce):
        token = make_token(digest, pki.tsa, pki.tsa_key, nonce=self.NONCE + 1)
        with patch("commitstamp.tsa.http_post", return_value=_response(token)):
            with pytest.raises(TransportError, match="nonce"):
                TSAClient(config)(digest, TSA_URL)

    def test_missing_nonce_is_rejected(self, token, digest, config, fixed_nonce):
        with patch("commitstamp.tsa.http_post", return_value=_response(token)):
            with pytest.raises(TransportError, match="nonce None"):
                TSAClient(config)(digest, TSA_URL)


class TestHTTP:
    """urllib wrappers."""

    def test_get_wraps_errors(self):
        with patch("commitstamp.tsa.urllib.request.urlopen", side_effect=OSError("refused")):
            with pytest.raises(TransportError, match="refused"):
                http_get("http://pki.test/x.cer")

    def test_fetcher_uses_configured_timeout(self, config):
        resp = MagicMock()
        resp.read.return_value = b"body"
        resp.__enter__.return_value = resp
        with patch("commitstamp.tsa.urllib.request.urlopen", return_value=resp) as urlopen:
            assert make_fetcher(config)("http://pki.test/x.cer") == b"body"
        assert urlopen.call_args.kwargs["timeout"] == config.timeout_seconds
