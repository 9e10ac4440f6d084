import json
from decimal import Decimal

import pytest

from vending.catalog import Catalog
from vending.chains import EvmAdapter, SolanaAdapter, TronAdapter, Wallet
from vending.client import VerifyResponse
from vending.config import ChainSettings
from vending.entitlement_store import FileEntitlementStore
from vending.errors import ChainError, FailureReason, VendingError, WalletRpcError
from vending.models import Asset, ChainKind

MERCHANT_EVM = "0x" + "ab" * 20
PAYER_EVM = "0x" + "cd" * 20
OTHER_EVM = "0x" + "ef" * 20
MERCHANT_SOL = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
PAYER_SOL = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
MERCHANT_TRON = "TLa2f6VPqDgRE67v1736s7bJ8Ray5wYjU7"
PAYER_TRON = "TN3W4H6rK2ce4vX9YnFQHwKENnHjoxb3m9"

TX_EVM = "0x" + "12" * 32
PRICE = Decimal("2.5")
PRICE_WEI = 2_500_000_000_000_000_000
T0 = 1_700_000_000.0


class FakeClock:
    """time.time 대용. advance()로만 움직인다."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTimer:
    """sleep 하면 monotonic 시계가 그만큼 흐른다."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeEvmRpc:
    def __init__(self, head=100):
        self.head = head
        self.txs = {}
        self.receipts = {}
        self.down = False
        self.calls = []

    def add_transfer(self, tx_hash, frm, to, value, status=1, block=90, mined=True):
        self.txs[tx_hash] = {
            "hash": tx_hash,
            "from": frm,
            "to": to,
            "value": hex(value),
            "blockNumber": hex(block) if mined else None,
        }
        if mined:
            self.receipts[tx_hash] = {"status": hex(status), "blockNumber": hex(block)}

    def mine(self, tx_hash, status=1, block=None):
        block = block if block is not None else self.head
        self.txs[tx_hash]["blockNumber"] = hex(block)
        self.receipts[tx_hash] = {"status": hex(status), "blockNumber": hex(block)}

    def call(self, method, params):
        self.calls.append(method)
        if self.down:
            raise ChainError("node down", reason=FailureReason.BACKEND_UNAVAILABLE, stage="ChainRpc")
        if method == "eth_getTransactionByHash":
            return self.txs.get(params[0])
        if method == "eth_getTransactionReceipt":
            return self.receipts.get(params[0])
        if method == "eth_blockNumber":
            return hex(self.head)
        raise AssertionError(f"unexpected method {method}")


class FakeWallet(Wallet):
    def __init__(self, accounts=(PAYER_EVM,), chain_id=137, known_chains=(137,), tx_hash=TX_EVM):
        self.accounts = list(accounts)
        self._chain = chain_id
        self.known = set(known_chains)
        self.tx_hash = tx_hash
        self.connect_error = None
        self.switch_error = None
        self.add_error = None
        self.send_error = None
        self.on_send = None
        self.sent = []
        self.switch_calls = []
        self.added = []

    def request_accounts(self):
        if self.connect_error:
            raise self.connect_error
        return list(self.accounts)

    def chain_id(self):
        return self._chain

    def switch_chain(self, chain_id_hex):
        self.switch_calls.append(chain_id_hex)
        if self.switch_error:
            raise self.switch_error
        cid = int(chain_id_hex, 16)
        if cid not in self.known:
            raise WalletRpcError("Unrecognized chain ID", WalletRpcError.UNRECOGNIZED_CHAIN)
        self._chain = cid

    def add_chain(self, params):
        self.added.append(params)
        if self.add_error:
            raise self.add_error
        cid = int(params["chainId"], 16)
        self.known.add(cid)
        self._chain = cid

    def sign_and_send(self, artifact):
        self.sent.append(artifact)
        if self.send_error:
            raise self.send_error
        if self.on_send:
            self.on_send(artifact, self.tx_hash)
        return self.tx_hash


class FakeVerifyClient:
    """VerificationService를 HTTP 없이 직접 호출하는 클라이언트."""

    def __init__(self, service=None, error=None):
        self.service = service
        self.error = error
        self.calls = []

    def verify(self, tx_ref, asset_id, wallet_address, chain_id=None):
        self.calls.append((tx_ref, asset_id, wallet_address, chain_id))
        if self.error:
            raise self.error
        result = self.service.verify(tx_ref, asset_id, wallet_address, tx_ref.chain_kind, chain_id)
        if not result.valid:
            raise VendingError(
                result.message,
                reason=FailureReason.VERIFICATION_REJECTED,
                stage="ServerVerifying",
                detail={"serverReason": result.reason.value},
            )
        ent = result.entitlement
        return VerifyResponse(
            token=ent.token,
            expires_at=ent.expires_at_iso,
            asset_id=ent.asset_id,
            already_verified=result.already_verified,
        )

    def download_url(self, token, asset_id=None):
        return f"http://server.test/api/download?token={token}"


def evm_settings(merchant=MERCHANT_EVM):
    return ChainSettings(
        kind=ChainKind.EVM,
        rpc_url="http://rpc.test",
        merchant_address=merchant,
        chain_id=137,
        chain_name="Polygon Mainnet",
        currency_symbol="POL",
        explorer_url="https://polygonscan.com",
    )


def solana_settings(merchant=MERCHANT_SOL):
    return ChainSettings(
        kind=ChainKind.SOLANA,
        rpc_url="http://sol.test",
        merchant_address=merchant,
        chain_name="Solana",
        currency_symbol="SOL",
        explorer_url="https://solscan.io",
    )


def tron_settings(merchant=MERCHANT_TRON):
    return ChainSettings(
        kind=ChainKind.TRON,
        rpc_url="http://tron.test",
        merchant_address=merchant,
        chain_name="Tron",
        currency_symbol="TRX",
        explorer_url="https://tronscan.org/#",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def catalog():
    return Catalog(
        [
            Asset(
                asset_id="sunset",
                title="Sunset",
                content_ref="sunset.png",
                prices={ChainKind.EVM: PRICE, ChainKind.SOLANA: Decimal("0.1"), ChainKind.TRON: Decimal("30")},
            ),
            Asset(
                asset_id="forest",
                title="Forest",
                content_ref="forest.png",
                prices={ChainKind.EVM: Decimal("1")},
            ),
        ]
    )


@pytest.fixture
def content_dir(tmp_path):
    d = tmp_path / "content"
    d.mkdir()
    (d / "sunset.png").write_bytes(b"\x89PNG sunset")
    (d / "forest.png").write_bytes(b"\x89PNG forest")
    return d


@pytest.fixture
def store(tmp_path, clock):
    return FileEntitlementStore(tmp_path / "entitlements.json", default_ttl=3600, clock=clock)


@pytest.fixture
def evm_rpc():
    return FakeEvmRpc()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def evm_adapter(evm_rpc, wallet, timer):
    return EvmAdapter(evm_settings(), rpc=evm_rpc, wallet=wallet, sleep=timer.sleep, clock=timer.clock)


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "assets.json"
    path.write_text(
        json.dumps(
            {
                "assets": [
                    {"id": "sunset", "title": "Sunset", "prices": {"evm": "2.5"}, "contentRef": "sunset.png"},
                    {"id": "legacy", "title": "Legacy", "pricePol": 1.25, "file": "legacy.zip"},
                ]
            }
        ),
        encoding="utf-8",
    )
    return path


def make_solana_adapter(rpc, **kwargs):
    return SolanaAdapter(solana_settings(), rpc=rpc, **kwargs)


def make_tron_adapter(rpc, **kwargs):
    return TronAdapter(tron_settings(), rpc=rpc, **kwargs)
