# -*- coding: utf-8 -*-
"""
vending/chains/base.py

목적:
- 체인 계열(EVM / Solana / Tron)마다 하나씩 구현하는 ChainAdapter 공통 인터페이스.
- PurchaseSession, VerificationService는 이 인터페이스에만 의존한다.

구성:
- Wallet: 주입되는 지갑 협력자(계정 요청, 서명/전송, EVM 네트워크 전환).
- JsonRpcClient: requests 기반 JSON-RPC/HTTP 호출(명시적 timeout).
- ChainAdapter: build_transfer / submit / await_confirmation / fetch_transaction.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from ..config import ChainSettings
from ..errors import ChainError, FailureReason, WalletRpcError
from ..models import (
    ChainKind,
    ObservedTransfer,
    TransactionReference,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# 확인 대기 상태
PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"


# -----------------------------
# 지갑 협력자
# -----------------------------


class Wallet(ABC):
    """지갑 확장(또는 테스트용 가짜 지갑). 실패는 WalletRpcError(code, message)로 올린다."""

    @abstractmethod
    def request_accounts(self) -> List[str]:
        """계정 접근 요청. 첫 번째 주소가 결제자."""

    @abstractmethod
    def sign_and_send(self, artifact: "TransferArtifact") -> str:
        """서명 후 브로드캐스트하고 트랜잭션 해시(서명)를 반환."""

    # 아래는 EVM 지갑만 구현
    def chain_id(self) -> int:
        raise WalletRpcError("chain id is not supported by this wallet")

    def switch_chain(self, chain_id_hex: str) -> None:
        raise WalletRpcError("wallet_switchEthereumChain is not supported by this wallet")

    def add_chain(self, params: Dict[str, Any]) -> None:
        raise WalletRpcError("wallet_addEthereumChain is not supported by this wallet")


@dataclass
class TransferArtifact:
    """서명 전 송금 요청."""

    chain_kind: ChainKind
    to: str
    amount: int
    payer: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


# -----------------------------
# RPC 전송
# -----------------------------


class JsonRpcClient:
    """체인 노드 호출. 네트워크 오류는 BackendUnavailable ChainError로 통일."""

    def __init__(self, url: str, timeout: float = 10.0, headers: Optional[Dict[str, str]] = None):
        self.url = (url or "").rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(headers or {})

    def call(self, method: str, params: list) -> Any:
        """JSON-RPC 호출 후 result를 반환(없으면 None)."""
        data = self._post(
            self.url,
            {"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
        )
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message", "rpc_error") if isinstance(err, dict) else str(err)
            raise ChainError(
                f"RPC {method} 오류: {message}",
                reason=FailureReason.BACKEND_UNAVAILABLE,
                stage="ChainRpc",
            )
        return data.get("result") if isinstance(data, dict) else None

    def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """REST 스타일 POST(Tron HTTP API)."""
        data = self._post(f"{self.url}/{path.lstrip('/')}", payload)
        return data if isinstance(data, dict) else {}

    def _post(self, url: str, payload: Dict[str, Any]) -> Any:
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout, headers=self.headers)
            resp.raise_for_status()
            return resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error("RPC 요청 실패 url=%s: %s", url, e)
            raise ChainError(
                f"RPC 요청 실패: {e}",
                reason=FailureReason.BACKEND_UNAVAILABLE,
                stage="ChainRpc",
                original_exception=e,
            ) from e


# -----------------------------
# 어댑터 인터페이스
# -----------------------------


def classify_wallet_error(exc: WalletRpcError) -> FailureReason:
    """지갑 오류 코드/메시지를 실패 사유로 변환."""
    msg = (exc.message or "").lower()
    if exc.code == WalletRpcError.USER_REJECTED or "user rejected" in msg or "user denied" in msg:
        return FailureReason.USER_REJECTED
    if "insufficient funds" in msg or "insufficient balance" in msg or "insufficient lamports" in msg:
        return FailureReason.INSUFFICIENT_FUNDS
    return FailureReason.BROADCAST_FAILED


class ChainAdapter(ABC):
    """체인 계열별 송금/확인/조회 기능 집합."""

    kind: ChainKind
    zero_address: str = ""

    def __init__(
        self,
        settings: ChainSettings,
        rpc: Optional[JsonRpcClient] = None,
        wallet: Optional[Wallet] = None,
        rpc_timeout: float = 10.0,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.settings = settings
        self.rpc = rpc or JsonRpcClient(settings.rpc_url, timeout=rpc_timeout, headers=self._rpc_headers())
        self.wallet = wallet
        self._sleep = sleep
        self._clock = clock

    def _rpc_headers(self) -> Dict[str, str]:
        return {}

    # ---- 주소/해시 규칙 ----

    @abstractmethod
    def normalize_address(self, address: Optional[str]) -> str:
        """비교용 주소 정규화."""

    @abstractmethod
    def is_valid_address(self, address: Optional[str]) -> bool:
        """주소 형식 확인."""

    def normalize_tx_hash(self, tx_hash: Optional[str]) -> str:
        return str(tx_hash or "").strip()

    def tx_key(self, tx_hash: str) -> str:
        return TransactionReference(self.kind, self.normalize_tx_hash(tx_hash)).key

    def explorer_tx_url(self, tx_hash: str) -> str:
        base = self.settings.explorer_url
        if not base:
            return ""
        return f"{base}/tx/{self.normalize_tx_hash(tx_hash)}"

    def to_minor_units(self, amount: Decimal) -> int:
        return to_minor_units(amount, self.kind)

    def is_zero_address(self, address: Optional[str]) -> bool:
        norm = self.normalize_address(address)
        return not norm or norm == self.normalize_address(self.zero_address)

    # ---- 지갑 단계 ----

    def _require_wallet(self) -> Wallet:
        if self.wallet is None:
            raise ChainError(
                "지갑이 연결되어 있지 않습니다.",
                reason=FailureReason.WALLET_UNAVAILABLE,
                stage="WalletConnecting",
            )
        return self.wallet

    def connect(self) -> str:
        """계정 접근을 요청하고 결제자 주소를 반환."""
        wallet = self._require_wallet()
        try:
            accounts = wallet.request_accounts()
        except WalletRpcError as e:
            reason = (
                FailureReason.CONNECTION_REJECTED
                if e.code == WalletRpcError.USER_REJECTED
                else FailureReason.WALLET_UNAVAILABLE
            )
            raise ChainError(
                f"지갑 연결 실패: {e.message}", reason=reason, stage="WalletConnecting"
            ) from e
        if not accounts:
            raise ChainError(
                "지갑이 계정을 제공하지 않았습니다.",
                reason=FailureReason.CONNECTION_REJECTED,
                stage="WalletConnecting",
            )
        return str(accounts[0])

    def ensure_network(self) -> None:
        """EVM만 네트워크 전환이 필요하다. 기본은 아무것도 하지 않음."""
        return None

    def build_transfer(self, merchant: str, amount: int, payer: str = "") -> TransferArtifact:
        if int(amount) <= 0:
            raise ChainError(
                f"송금액이 0 이하입니다: {amount}",
                reason=FailureReason.INVALID_AMOUNT,
                stage="AwaitingSignature",
            )
        if self.is_zero_address(merchant):
            raise ChainError(
                "판매자 주소가 설정되지 않았습니다.",
                reason=FailureReason.UNCONFIGURED_MERCHANT,
                stage="AwaitingSignature",
            )
        return TransferArtifact(chain_kind=self.kind, to=str(merchant).strip(), amount=int(amount), payer=payer)

    def submit(self, artifact: TransferArtifact) -> TransactionReference:
        """서명/전송. 서명 단계는 절대 자동 재시도하지 않는다."""
        wallet = self._require_wallet()
        try:
            tx_hash = wallet.sign_and_send(artifact)
        except WalletRpcError as e:
            raise ChainError(
                f"송금 실패: {e.message}", reason=classify_wallet_error(e), stage="AwaitingSignature"
            ) from e
        if not tx_hash:
            raise ChainError(
                "지갑이 트랜잭션 해시를 반환하지 않았습니다.",
                reason=FailureReason.BROADCAST_FAILED,
                stage="AwaitingSignature",
            )
        ref = TransactionReference(self.kind, self.normalize_tx_hash(tx_hash))
        logger.info("트랜잭션 전송 chain=%s tx=%s", self.kind.value, ref.tx_hash)
        return ref

    # ---- 확인/조회 ----

    @abstractmethod
    def confirmation_status(self, tx_hash: str, min_confirmations: int) -> str:
        """PENDING / CONFIRMED / FAILED 중 하나."""

    @abstractmethod
    def fetch_transaction(self, tx_ref: TransactionReference) -> ObservedTransfer:
        """체인에서 송금 내역을 다시 읽는다. 없으면 TransactionPending."""

    def await_confirmation(
        self,
        tx_ref: TransactionReference,
        min_confirmations: int = 1,
        timeout: float = 180.0,
        poll_interval: float = 2.0,
        max_interval: float = 15.0,
    ) -> ObservedTransfer:
        """확인될 때까지 백오프하며 폴링. 기한 초과 시 ConfirmationTimeout."""
        deadline = self._clock() + timeout
        interval = poll_interval
        while True:
            try:
                status = self.confirmation_status(tx_ref.tx_hash, min_confirmations)
            except ChainError as e:
                # 노드 일시 장애는 기한 내에서 계속 폴링
                logger.warning("확인 조회 실패(재시도) tx=%s: %s", tx_ref.tx_hash, e.message)
                status = PENDING
            if status == FAILED:
                raise ChainError(
                    f"트랜잭션이 체인에서 실패했습니다: {tx_ref.tx_hash}",
                    reason=FailureReason.CONFIRMATION_FAILED,
                    stage="Confirming",
                )
            if status == CONFIRMED:
                return self.fetch_transaction(tx_ref)
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ChainError(
                    f"확인 대기 시간 초과({timeout}s): {tx_ref.tx_hash}",
                    reason=FailureReason.CONFIRMATION_TIMEOUT,
                    stage="Confirming",
                )
            self._sleep(min(interval, remaining))
            interval = min(interval * 1.5, max_interval)

    @staticmethod
    def pending(tx_hash: str) -> ChainError:
        return ChainError(
            f"트랜잭션을 아직 찾을 수 없습니다: {tx_hash}",
            reason=FailureReason.TRANSACTION_PENDING,
            stage="FetchTransaction",
        )
