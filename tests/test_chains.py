import pytest
import requests

from conftest import (
    MERCHANT_EVM,
    MERCHANT_SOL,
    MERCHANT_TRON,
    PAYER_EVM,
    PAYER_SOL,
    PAYER_TRON,
    PRICE_WEI,
    TX_EVM,
    FakeWallet,
    evm_settings,
    make_solana_adapter,
    make_tron_adapter,
)
from vending.chains import EvmAdapter, JsonRpcClient, SolanaAdapter, TronAdapter, get_adapter
from vending.chains.base import CONFIRMED, FAILED, PENDING
from vending.errors import ChainError, FailureReason, WalletRpcError
from vending.models import ChainKind, TransactionReference


def _ref(tx_hash=TX_EVM, kind=ChainKind.EVM):
    return TransactionReference(kind, tx_hash)


# -----------------------------
# EVM
# -----------------------------


def test_evm_fetch_transaction_reads_ground_truth(evm_adapter, evm_rpc):
    evm_rpc.add_transfer(TX_EVM, PAYER_EVM.upper().replace("0X", "0x"), MERCHANT_EVM, PRICE_WEI, block=90)
    observed = evm_adapter.fetch_transaction(_ref(TX_EVM.upper().replace("0X", "0x")))
    assert observed.payer == PAYER_EVM
    assert observed.recipient == MERCHANT_EVM
    assert observed.amount == PRICE_WEI
    assert observed.success is True
    assert observed.block == 90


def test_evm_fetch_unknown_or_unmined_is_pending(evm_adapter, evm_rpc):
    with pytest.raises(ChainError) as exc:
        evm_adapter.fetch_transaction(_ref())
    assert exc.value.reason is FailureReason.TRANSACTION_PENDING

    evm_rpc.add_transfer(TX_EVM, PAYER_EVM, MERCHANT_EVM, PRICE_WEI, mined=False)
    with pytest.raises(ChainError) as exc:
        evm_adapter.fetch_transaction(_ref())
    assert exc.value.reason is FailureReason.TRANSACTION_PENDING


def test_evm_confirmation_depth(evm_adapter, evm_rpc):
    evm_rpc.add_transfer(TX_EVM, PAYER_EVM, MERCHANT_EVM, PRICE_WEI, block=99)
    assert evm_adapter.confirmation_status(TX_EVM, 3) == PENDING
    evm_rpc.head = 101
    assert evm_adapter.confirmation_status(TX_EVM, 3) == CONFIRMED
    evm_rpc.mine(TX_EVM, status=0)
    assert evm_adapter.confirmation_status(TX_EVM, 1) == FAILED


def test_evm_await_confirmation_times_out_with_backoff(evm_adapter, evm_rpc, timer):
    evm_rpc.add_transfer(TX_EVM, PAYER_EVM, MERCHANT_EVM, PRICE_WEI, mined=False)
    with pytest.raises(ChainError) as exc:
        evm_adapter.await_confirmation(_ref(), min_confirmations=1, timeout=10, poll_interval=2)
    assert exc.value.reason is FailureReason.CONFIRMATION_TIMEOUT
    assert sum(timer.sleeps) == pytest.approx(10)
    assert timer.sleeps[1] > timer.sleeps[0]


def test_evm_await_confirmation_failed_status(evm_adapter, evm_rpc):
    evm_rpc.add_transfer(TX_EVM, PAYER_EVM, MERCHANT_EVM, PRICE_WEI, status=0)
    with pytest.raises(ChainError) as exc:
        evm_adapter.await_confirmation(_ref(), timeout=10)
    assert exc.value.reason is FailureReason.CONFIRMATION_FAILED


def test_evm_await_confirmation_survives_node_hiccup(evm_adapter, evm_rpc, timer):
    evm_rpc.add_transfer(TX_EVM, PAYER_EVM, MERCHANT_EVM, PRICE_WEI, block=90)
    evm_rpc.down = True

    def recover(seconds):
        timer.now += seconds
        evm_rpc.down = False

    evm_adapter._sleep = recover
    observed = evm_adapter.await_confirmation(_ref(), timeout=30, poll_interval=1)
    assert observed.success


def test_ensure_network_noop_when_on_chain(evm_adapter, wallet):
    evm_adapter.ensure_network()
    assert wallet.switch_calls == []


def test_ensure_network_switches_known_chain(evm_adapter, wallet):
    wallet._chain = 1
    wallet.known.add(1)
    evm_adapter.ensure_network()
    assert wallet.switch_calls == ["0x89"]
    assert wallet.added == []


def test_ensure_network_adds_unrecognized_chain(evm_adapter, wallet):
    wallet._chain = 1
    wallet.known = {1}
    evm_adapter.ensure_network()
    params = wallet.added[0]
    assert params["chainId"] == "0x89"
    assert params["nativeCurrency"] == {"name": "POL", "symbol": "POL", "decimals": 18}
    assert params["rpcUrls"] == ["http://rpc.test"]
    assert params["blockExplorerUrls"] == ["https://polygonscan.com/"]
    assert wallet.chain_id() == 137


@pytest.mark.parametrize("which", ["switch", "add"])
def test_ensure_network_failure_is_wrong_network(evm_adapter, wallet, which):
    wallet._chain = 1
    wallet.known = {1}
    err = WalletRpcError("User rejected the request.", WalletRpcError.USER_REJECTED)
    if which == "switch":
        wallet.switch_error = err
    else:
        wallet.add_error = err
    with pytest.raises(ChainError) as exc:
        evm_adapter.ensure_network()
    assert exc.value.reason is FailureReason.WRONG_NETWORK


def test_build_transfer_validation(evm_adapter):
    with pytest.raises(ChainError) as exc:
        evm_adapter.build_transfer(MERCHANT_EVM, 0)
    assert exc.value.reason is FailureReason.INVALID_AMOUNT

    for merchant in ("", "0x" + "0" * 40):
        with pytest.raises(ChainError) as exc:
            evm_adapter.build_transfer(merchant, PRICE_WEI)
        assert exc.value.reason is FailureReason.UNCONFIGURED_MERCHANT

    artifact = evm_adapter.build_transfer(MERCHANT_EVM, PRICE_WEI, PAYER_EVM)
    assert artifact.extra == {"chainId": "0x89", "value": hex(PRICE_WEI)}


@pytest.mark.parametrize(
    "error,reason",
    [
        (WalletRpcError("User denied transaction signature.", 4001), FailureReason.USER_REJECTED),
        (WalletRpcError("insufficient funds for gas * price + value", -32000), FailureReason.INSUFFICIENT_FUNDS),
        (WalletRpcError("nonce too low", -32000), FailureReason.BROADCAST_FAILED),
    ],
)
def test_submit_classifies_wallet_errors(evm_adapter, wallet, error, reason):
    wallet.send_error = error
    with pytest.raises(ChainError) as exc:
        evm_adapter.submit(evm_adapter.build_transfer(MERCHANT_EVM, PRICE_WEI))
    assert exc.value.reason is reason
    assert len(wallet.sent) == 1


def test_submit_returns_normalized_reference(evm_adapter, wallet):
    wallet.tx_hash = TX_EVM.upper().replace("0X", "0x")
    ref = evm_adapter.submit(evm_adapter.build_transfer(MERCHANT_EVM, PRICE_WEI))
    assert ref.tx_hash == TX_EVM
    assert ref.key == f"evm:{TX_EVM}"
    assert evm_adapter.explorer_tx_url(TX_EVM) == f"https://polygonscan.com/tx/{TX_EVM}"


def test_connect_errors():
    no_wallet = EvmAdapter(evm_settings(), rpc=object())
    with pytest.raises(ChainError) as exc:
        no_wallet.connect()
    assert exc.value.reason is FailureReason.WALLET_UNAVAILABLE

    wallet = FakeWallet()
    wallet.connect_error = WalletRpcError("User rejected the request.", 4001)
    with pytest.raises(ChainError) as exc:
        EvmAdapter(evm_settings(), rpc=object(), wallet=wallet).connect()
    assert exc.value.reason is FailureReason.CONNECTION_REJECTED

    with pytest.raises(ChainError) as exc:
        EvmAdapter(evm_settings(), rpc=object(), wallet=FakeWallet(accounts=())).connect()
    assert exc.value.reason is FailureReason.CONNECTION_REJECTED


# -----------------------------
# Solana
# -----------------------------

SIG = "5" * 88


class FakeSolanaRpc:
    def __init__(self):
        self.txs = {}
        self.statuses = {}

    def call(self, method, params):
        if method == "getTransaction":
            assert params[1]["encoding"] == "jsonParsed"
            return self.txs.get(params[0])
        if method == "getSignatureStatuses":
            return {"context": {"slot": 1}, "value": [self.statuses.get(params[0][0])]}
        raise AssertionError(method)


def _sol_tx(lamports, destination=MERCHANT_SOL, err=None, extra=()):
    instructions = [
        {"program": "compute-budget", "parsed": None},
        {
            "program": "system",
            "parsed": {
                "type": "transfer",
                "info": {"source": PAYER_SOL, "destination": destination, "lamports": lamports},
            },
        },
    ]
    instructions.extend(extra)
    return {"slot": 321, "meta": {"err": err}, "transaction": {"message": {"instructions": instructions}}}


def test_solana_fetch_parses_system_transfer():
    rpc = FakeSolanaRpc()
    rpc.txs[SIG] = _sol_tx(100_000_000)
    observed = make_solana_adapter(rpc).fetch_transaction(_ref(SIG, ChainKind.SOLANA))
    assert (observed.payer, observed.recipient, observed.amount) == (PAYER_SOL, MERCHANT_SOL, 100_000_000)
    assert observed.success and observed.block == 321


def test_solana_fetch_prefers_merchant_transfer_and_flags_error():
    rpc = FakeSolanaRpc()
    tip = {
        "program": "system",
        "parsed": {"type": "transfer", "info": {"source": PAYER_SOL, "destination": "Tip1111111111111111111111111111111111111111", "lamports": 5}},
    }
    rpc.txs[SIG] = _sol_tx(100_000_000, err={"InstructionError": [1, "Custom"]}, extra=[tip])
    observed = make_solana_adapter(rpc).fetch_transaction(_ref(SIG, ChainKind.SOLANA))
    assert observed.recipient == MERCHANT_SOL
    assert observed.amount == 100_000_000
    assert observed.success is False


def test_solana_fetch_missing_is_pending():
    with pytest.raises(ChainError) as exc:
        make_solana_adapter(FakeSolanaRpc()).fetch_transaction(_ref(SIG, ChainKind.SOLANA))
    assert exc.value.reason is FailureReason.TRANSACTION_PENDING


def test_solana_confirmation_status_levels():
    rpc = FakeSolanaRpc()
    adapter = make_solana_adapter(rpc)
    assert adapter.confirmation_status(SIG, 1) == PENDING
    rpc.statuses[SIG] = {"err": None, "confirmationStatus": "processed"}
    assert adapter.confirmation_status(SIG, 1) == PENDING
    rpc.statuses[SIG] = {"err": None, "confirmationStatus": "confirmed"}
    assert adapter.confirmation_status(SIG, 1) == CONFIRMED
    assert adapter.confirmation_status(SIG, 2) == PENDING
    rpc.statuses[SIG] = {"err": {"InstructionError": []}, "confirmationStatus": "finalized"}
    assert adapter.confirmation_status(SIG, 1) == FAILED


def test_solana_zero_sentinel_is_unconfigured():
    adapter = make_solana_adapter(FakeSolanaRpc())
    with pytest.raises(ChainError) as exc:
        adapter.build_transfer(SolanaAdapter.zero_address, 1)
    assert exc.value.reason is FailureReason.UNCONFIGURED_MERCHANT
    assert adapter.is_valid_address(PAYER_SOL)
    assert not adapter.is_valid_address("0OIl")


# -----------------------------
# Tron
# -----------------------------

TRON_TX = "ab" * 32


class FakeTronRpc:
    def __init__(self, head=1000):
        self.txs = {}
        self.infos = {}
        self.head = head

    def post(self, path, payload):
        if path == "wallet/gettransactionbyid":
            assert payload["visible"] is True
            return self.txs.get(payload["value"], {})
        if path == "wallet/gettransactioninfobyid":
            return self.infos.get(payload["value"], {})
        if path == "wallet/getnowblock":
            return {"block_header": {"raw_data": {"number": self.head}}}
        raise AssertionError(path)


def _tron_tx(amount, contract_ret="SUCCESS", to=MERCHANT_TRON):
    return {
        "txID": TRON_TX,
        "ret": [{"contractRet": contract_ret}],
        "raw_data": {
            "contract": [
                {
                    "type": "TransferContract",
                    "parameter": {"value": {"owner_address": PAYER_TRON, "to_address": to, "amount": amount}},
                }
            ]
        },
    }


def test_tron_fetch_transfer_contract():
    rpc = FakeTronRpc()
    rpc.txs[TRON_TX] = _tron_tx(30_000_000)
    rpc.infos[TRON_TX] = {"id": TRON_TX, "blockNumber": 999}
    adapter = make_tron_adapter(rpc)
    observed = adapter.fetch_transaction(_ref("0x" + TRON_TX.upper(), ChainKind.TRON))
    assert (observed.payer, observed.recipient, observed.amount) == (PAYER_TRON, MERCHANT_TRON, 30_000_000)
    assert observed.success and observed.block == 999
    assert adapter.explorer_tx_url(TRON_TX) == f"https://tronscan.org/#/transaction/{TRON_TX}"


def test_tron_failed_contract_and_pending():
    rpc = FakeTronRpc()
    adapter = make_tron_adapter(rpc)
    rpc.txs[TRON_TX] = _tron_tx(30_000_000, contract_ret="REVERT")
    with pytest.raises(ChainError) as exc:
        adapter.fetch_transaction(_ref(TRON_TX, ChainKind.TRON))
    assert exc.value.reason is FailureReason.TRANSACTION_PENDING

    rpc.infos[TRON_TX] = {"blockNumber": 999, "receipt": {"result": "REVERT"}}
    assert adapter.fetch_transaction(_ref(TRON_TX, ChainKind.TRON)).success is False
    assert adapter.confirmation_status(TRON_TX, 1) == FAILED


def test_tron_confirmation_depth():
    rpc = FakeTronRpc(head=1000)
    rpc.infos[TRON_TX] = {"blockNumber": 999}
    adapter = make_tron_adapter(rpc)
    assert adapter.confirmation_status(TRON_TX, 1) == CONFIRMED
    assert adapter.confirmation_status(TRON_TX, 3) == PENDING
    rpc.head = 1001
    assert adapter.confirmation_status(TRON_TX, 3) == CONFIRMED


def test_tron_zero_sentinel():
    assert make_tron_adapter(FakeTronRpc()).is_zero_address(TronAdapter.zero_address)


# -----------------------------
# RPC 전송 / 레지스트리
# -----------------------------


class _Resp:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


def test_json_rpc_client_maps_failures_to_backend_unavailable(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", boom)
    with pytest.raises(ChainError) as exc:
        JsonRpcClient("http://rpc.test", timeout=1).call("eth_blockNumber", [])
    assert exc.value.reason is FailureReason.BACKEND_UNAVAILABLE

    seen = {}

    def rpc_error(url, json=None, timeout=None, headers=None):
        seen["timeout"] = timeout
        return _Resp({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "header not found"}})

    monkeypatch.setattr(requests, "post", rpc_error)
    with pytest.raises(ChainError) as exc:
        JsonRpcClient("http://rpc.test", timeout=3).call("eth_blockNumber", [])
    assert exc.value.reason is FailureReason.BACKEND_UNAVAILABLE
    assert seen["timeout"] == 3


def test_json_rpc_client_returns_result(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **k: _Resp({"jsonrpc": "2.0", "id": 1, "result": "0x10"}))
    assert JsonRpcClient("http://rpc.test").call("eth_blockNumber", []) == "0x10"


def test_get_adapter_registry():
    adapter = get_adapter("polygon", settings=evm_settings())
    assert isinstance(adapter, EvmAdapter)
    assert adapter.settings.merchant_address == MERCHANT_EVM
    assert isinstance(get_adapter(ChainKind.SOLANA), SolanaAdapter)
    assert isinstance(get_adapter("tronlike"), TronAdapter)
