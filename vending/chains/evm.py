# -*- coding: utf-8 -*-
"""
vending/chains/evm.py

목적:
- EVM 계열(Polygon 기본) 네이티브 코인 송금 어댑터.
- RPC: eth_getTransactionByHash / eth_getTransactionReceipt / eth_blockNumber.
- 지갑: wallet_switchEthereumChain, 미등록 체인(4902)이면 wallet_addEthereumChain.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from ..errors import ChainError, FailureReason, WalletRpcError
from ..models import ChainKind, ObservedTransfer, TransactionReference
from .base import CONFIRMED, FAILED, PENDING, ChainAdapter, TransferArtifact

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def hex_to_int(value: Optional[str]) -> int:
    """0x 접두사 16진 값을 정수로 변환."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    s = str(value).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    if not s:
        return 0
    return int(s, 16)


class EvmAdapter(ChainAdapter):
    kind = ChainKind.EVM
    zero_address = "0x" + "0" * 40

    def normalize_address(self, address: Optional[str]) -> str:
        """EVM 주소 비교를 위해 소문자로 통일."""
        if not address:
            return ""
        return str(address).strip().lower()

    def is_valid_address(self, address: Optional[str]) -> bool:
        return bool(_ADDRESS_RE.match(str(address or "").strip()))

    def normalize_tx_hash(self, tx_hash: Optional[str]) -> str:
        s = str(tx_hash or "").strip().lower()
        if s and not s.startswith("0x"):
            s = "0x" + s
        return s

    @property
    def chain_id_hex(self) -> str:
        return hex(int(self.settings.chain_id))

    def add_chain_params(self) -> Dict[str, Any]:
        """wallet_addEthereumChain 표준 파라미터."""
        explorer = self.settings.explorer_url
        return {
            "chainId": self.chain_id_hex,
            "chainName": self.settings.chain_name,
            "nativeCurrency": {
                "name": self.settings.currency_symbol,
                "symbol": self.settings.currency_symbol,
                "decimals": 18,
            },
            "rpcUrls": [self.settings.rpc_url],
            "blockExplorerUrls": [explorer + "/"] if explorer else [],
        }

    # -----------------------------
    # 네트워크 확인
    # -----------------------------

    def _wrong_network(self, message: str) -> ChainError:
        return ChainError(message, reason=FailureReason.WRONG_NETWORK, stage="NetworkCheck")

    def _current_chain_id(self) -> int:
        try:
            return int(self._require_wallet().chain_id())
        except WalletRpcError as e:
            raise self._wrong_network(f"지갑 체인 ID 조회 실패: {e.message}") from e

    def ensure_network(self) -> None:
        """지갑의 활성 체인이 설정된 체인이 아니면 전환(필요 시 추가)을 요청."""
        wallet = self._require_wallet()
        expected = int(self.settings.chain_id)
        if self._current_chain_id() == expected:
            return

        logger.info("네트워크 전환 요청 chain_id=%s", self.chain_id_hex)
        try:
            wallet.switch_chain(self.chain_id_hex)
        except WalletRpcError as e:
            unknown = e.code == WalletRpcError.UNRECOGNIZED_CHAIN or "unrecognized chain" in (
                e.message or ""
            ).lower()
            if not unknown:
                raise self._wrong_network(f"네트워크 전환 실패: {e.message}") from e
            try:
                wallet.add_chain(self.add_chain_params())
            except WalletRpcError as add_err:
                raise self._wrong_network(f"네트워크 추가 실패: {add_err.message}") from add_err

        if self._current_chain_id() != expected:
            raise self._wrong_network(f"지갑이 여전히 다른 네트워크에 있습니다 (필요: {expected})")

    def build_transfer(self, merchant: str, amount: int, payer: str = "") -> TransferArtifact:
        artifact = super().build_transfer(merchant, amount, payer)
        artifact.extra = {"chainId": self.chain_id_hex, "value": hex(artifact.amount)}
        return artifact

    # -----------------------------
    # 확인/조회
    # -----------------------------

    def confirmation_status(self, tx_hash: str, min_confirmations: int) -> str:
        receipt = self.rpc.call("eth_getTransactionReceipt", [self.normalize_tx_hash(tx_hash)])
        if not receipt:
            return PENDING
        # status: 0x1 = 성공, 0x0 = 실패
        if hex_to_int(receipt.get("status", "0x0")) != 1:
            return FAILED
        block = hex_to_int(receipt.get("blockNumber"))
        head = hex_to_int(self.rpc.call("eth_blockNumber", []))
        if head - block + 1 >= max(1, int(min_confirmations)):
            return CONFIRMED
        return PENDING

    def fetch_transaction(self, tx_ref: TransactionReference) -> ObservedTransfer:
        tx_hash = self.normalize_tx_hash(tx_ref.tx_hash)
        tx = self.rpc.call("eth_getTransactionByHash", [tx_hash])
        if not tx:
            raise self.pending(tx_hash)
        receipt = self.rpc.call("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            # mempool에만 있는 상태
            raise self.pending(tx_hash)
        return ObservedTransfer(
            tx_hash=tx_hash,
            payer=self.normalize_address(tx.get("from")),
            recipient=self.normalize_address(tx.get("to")),
            amount=hex_to_int(tx.get("value")),
            success=hex_to_int(receipt.get("status", "0x0")) == 1,
            block=hex_to_int(receipt.get("blockNumber")) or None,
        )
