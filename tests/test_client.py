import pytest
import requests

from conftest import PAYER_EVM, TX_EVM
from vending.client import VerifyClient, _filename_from
from vending.errors import FailureReason, VendingError
from vending.models import ChainKind, TransactionReference


class _Resp:
    def __init__(self, status=200, payload=None, headers=None, body=b""):
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}
        self.text = "" if payload is None else str(payload)
        self._body = body
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), 4):
            yield self._body[i : i + 4]


class FakeHttp:
    """requests 모듈 대용. 응답(또는 예외)을 순서대로 돌려준다."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []
        self.gets = []
        self.handed = []

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        return self._next()

    def get(self, url, stream=False, timeout=None):
        self.gets.append(url)
        resp = self._next()
        self.handed.append(resp)
        return resp


OK = {
    "ok": True,
    "downloadToken": "tok",
    "expiresAt": "2023-11-15T00:00:00Z",
    "assetId": "sunset",
    "alreadyVerified": False,
    "explorerUrl": f"https://polygonscan.com/tx/{TX_EVM}",
}


def _client(http, sleeps):
    return VerifyClient("http://api.test/", timeout=5, max_retries=3, backoff_seconds=1.0, http=http, sleep=sleeps.append)


def _ref():
    return TransactionReference(ChainKind.EVM, TX_EVM)


def test_verify_success_sends_payload():
    http = FakeHttp(_Resp(200, OK))
    resp = _client(http, []).verify(_ref(), "sunset", PAYER_EVM, chain_id=137)
    assert resp.token == "tok" and resp.expires_at == "2023-11-15T00:00:00Z"
    assert resp.explorer_url.endswith(TX_EVM)
    url, payload, timeout = http.posts[0]
    assert url == "http://api.test/api/verify"
    assert payload == {
        "txHash": TX_EVM,
        "assetId": "sunset",
        "walletAddress": PAYER_EVM,
        "chainKind": "evm",
        "chainId": 137,
    }
    assert timeout == 5


def test_retries_server_errors_with_backoff():
    sleeps = []
    http = FakeHttp(_Resp(503, {"ok": False, "error": "BackendUnavailable"}), requests.exceptions.ConnectionError("x"), _Resp(200, OK))
    resp = _client(http, sleeps).verify(_ref(), "sunset", PAYER_EVM)
    assert resp.token == "tok"
    assert len(http.posts) == 3
    assert sleeps == [1.0, 2.0]


def test_honours_retry_after():
    sleeps = []
    http = FakeHttp(_Resp(503, {"ok": False, "error": "TransactionPending"}, headers={"Retry-After": "5"}), _Resp(200, OK))
    _client(http, sleeps).verify(_ref(), "sunset", PAYER_EVM)
    assert sum(sleeps) == 5.0


def test_gives_up_after_max_retries():
    sleeps = []
    http = FakeHttp(*[requests.exceptions.Timeout("slow")] * 3)
    with pytest.raises(VendingError) as exc:
        _client(http, sleeps).verify(_ref(), "sunset", PAYER_EVM)
    assert exc.value.reason is FailureReason.BACKEND_UNAVAILABLE
    assert exc.value.retryable
    assert len(http.posts) == 3
    assert sleeps == [1.0, 2.0]


def test_rejection_is_not_retried():
    sleeps = []
    http = FakeHttp(_Resp(422, {"ok": False, "error": "AmountMismatch"}))
    with pytest.raises(VendingError) as exc:
        _client(http, sleeps).verify(_ref(), "sunset", PAYER_EVM)
    assert exc.value.reason is FailureReason.VERIFICATION_REJECTED
    assert exc.value.detail["serverReason"] == "AmountMismatch"
    assert exc.value.detail["status"] == 422
    assert not exc.value.retryable
    assert len(http.posts) == 1 and sleeps == []


def test_missing_token_is_not_retried():
    http = FakeHttp(_Resp(200, {"ok": True}))
    with pytest.raises(VendingError) as exc:
        _client(http, []).verify(_ref(), "sunset", PAYER_EVM)
    assert exc.value.reason is FailureReason.BACKEND_UNAVAILABLE
    assert len(http.posts) == 1


def test_download_writes_file(tmp_path):
    http = FakeHttp(_Resp(200, headers={"Content-Disposition": 'attachment; filename="sunset.png"'}, body=b"0123456789"))
    path = _client(http, []).download("tok", tmp_path, "sunset")
    assert path == tmp_path / "sunset.png"
    assert path.read_bytes() == b"0123456789"
    assert http.gets[0] == "http://api.test/api/download?token=tok&assetId=sunset"
    assert http.handed[0].closed


def test_download_forbidden_maps_server_reason(tmp_path):
    http = FakeHttp(_Resp(403, {"ok": False, "error": "TokenExpired"}), _Resp(404))
    client = _client(http, [])
    with pytest.raises(VendingError) as exc:
        client.download("tok", tmp_path)
    assert exc.value.reason is FailureReason.TOKEN_EXPIRED
    with pytest.raises(VendingError) as exc:
        client.download("tok", tmp_path)
    assert exc.value.reason is FailureReason.TOKEN_UNKNOWN
    assert all(r.closed for r in http.handed)


def test_filename_from_disposition():
    assert _filename_from('attachment; filename="a b.zip"') == "a b.zip"
    assert _filename_from("inline") == ""
