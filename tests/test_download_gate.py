import pytest

from vending.catalog import Catalog
from vending.download_gate import DownloadGate
from vending.errors import FailureReason, Forbidden, VendingError
from vending.models import Asset


@pytest.fixture
def gate(store, catalog, content_dir):
    return DownloadGate(store, catalog, content_dir)


def test_valid_token_grants_file(gate, store, content_dir):
    ent = store.issue("sunset", "s", tx_key="evm:0x1")
    grant = gate.authorize(ent.token, "sunset")
    assert grant.asset_id == "sunset"
    assert grant.path == (content_dir / "sunset.png").resolve()
    assert grant.filename == "sunset.png"
    # 기본 정책: 유효기간 내 반복 다운로드 허용
    assert gate.authorize(ent.token).asset_id == "sunset"


def test_expired_token_is_forbidden(gate, store, clock):
    ent = store.issue("sunset", "s", ttl=60, tx_key="evm:0x1")
    clock.advance(60)
    with pytest.raises(Forbidden) as exc:
        gate.authorize(ent.token, "sunset")
    assert exc.value.reason is FailureReason.TOKEN_EXPIRED


def test_unknown_and_revoked_tokens_are_forbidden(gate, store):
    with pytest.raises(Forbidden) as exc:
        gate.authorize("made-up")
    assert exc.value.reason is FailureReason.TOKEN_UNKNOWN
    ent = store.issue("sunset", "s", tx_key="evm:0x1")
    store.revoke(ent.token)
    with pytest.raises(Forbidden) as exc:
        gate.authorize(ent.token)
    assert exc.value.reason is FailureReason.TOKEN_UNKNOWN


def test_token_for_other_asset_is_forbidden(gate, store):
    ent = store.issue("sunset", "s", tx_key="evm:0x1")
    with pytest.raises(Forbidden) as exc:
        gate.authorize(ent.token, "forest")
    assert exc.value.reason is FailureReason.ASSET_MISMATCH


def test_path_traversal_is_blocked(store, content_dir, tmp_path):
    (tmp_path / "secret.txt").write_text("nope")
    catalog = Catalog([Asset(asset_id="evil", title="Evil", content_ref="../secret.txt")])
    gate = DownloadGate(store, catalog, content_dir)
    ent = store.issue("evil", "s", tx_key="evm:0x1")
    with pytest.raises(VendingError) as exc:
        gate.authorize(ent.token)
    assert exc.value.reason is FailureReason.ASSET_FILE_MISSING


def test_missing_file(store, content_dir):
    catalog = Catalog([Asset(asset_id="ghost", title="Ghost", content_ref="ghost.png")])
    gate = DownloadGate(store, catalog, content_dir)
    ent = store.issue("ghost", "s", tx_key="evm:0x1")
    with pytest.raises(VendingError) as exc:
        gate.authorize(ent.token)
    assert exc.value.reason is FailureReason.ASSET_FILE_MISSING
    assert not isinstance(exc.value, Forbidden)


def test_max_uses_limits_downloads(store, catalog, content_dir):
    gate = DownloadGate(store, catalog, content_dir, max_uses=1)
    ent = store.issue("sunset", "s", tx_key="evm:0x1")
    assert gate.authorize(ent.token).entitlement.use_count == 1
    with pytest.raises(Forbidden) as exc:
        gate.authorize(ent.token)
    assert exc.value.reason is FailureReason.DOWNLOAD_LIMIT_REACHED
