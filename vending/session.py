# -*- coding: utf-8 -*-
"""
vending/session.py

목적:
- 구매자 1명 x 상품 1개의 구매 시도를 표현하는 상태 머신(PurchaseSession).
- 지갑 연결 → 네트워크 확인 → 서명 대기 → 전송 → 확인 → 서버 검증 → 권한 보유(Entitled).
- 실패는 구조화된 사유(FailureReason) + 안내 문구 + 재시도 가능 여부로 남긴다.

규칙:
- (지갑, 상품)당 서명 대기 이후 단계의 세션은 하나뿐(InFlightGuard). 중복 구매는 기존 세션을 돌려준다.
- Entitled는 서버가 valid라고 답한 뒤에만.
- abandon()하면 관찰만 멈춘다. 이미 보낸 트랜잭션/서버 호출은 취소하지 않으며 캐시에 쓰지 않는다.
- 서명 단계는 자동 재시도하지 않는다.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .chains import ChainAdapter
from .client import VerifyClient
from .errors import FailureReason, VendingError, remediation_for, RETRYABLE
from .models import Asset, ChainKind, TransactionReference, TransferIntent
from .session_cache import SessionCache

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "Idle"
    WALLET_CONNECTING = "WalletConnecting"
    NETWORK_CHECK = "NetworkCheck"
    AWAITING_SIGNATURE = "AwaitingSignature"
    SUBMITTED = "Submitted"
    CONFIRMING = "Confirming"
    SERVER_VERIFYING = "ServerVerifying"
    ENTITLED = "Entitled"
    FAILED = "Failed"


S = SessionState

# 허용 전이. 진행 중 상태에서 IDLE로 가는 것은 abandon.
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    S.IDLE: frozenset({S.WALLET_CONNECTING, S.CONFIRMING}),
    S.WALLET_CONNECTING: frozenset({S.NETWORK_CHECK, S.FAILED, S.IDLE}),
    S.NETWORK_CHECK: frozenset({S.AWAITING_SIGNATURE, S.FAILED, S.IDLE}),
    S.AWAITING_SIGNATURE: frozenset({S.SUBMITTED, S.FAILED, S.IDLE}),
    S.SUBMITTED: frozenset({S.CONFIRMING, S.FAILED, S.IDLE}),
    S.CONFIRMING: frozenset({S.SERVER_VERIFYING, S.FAILED, S.IDLE}),
    S.SERVER_VERIFYING: frozenset({S.ENTITLED, S.FAILED, S.IDLE}),
    S.ENTITLED: frozenset({S.IDLE}),
    S.FAILED: frozenset({S.IDLE}),
}

# 서명 대기 이후 = 진행 중(가드 대상)
IN_FLIGHT = frozenset({S.AWAITING_SIGNATURE, S.SUBMITTED, S.CONFIRMING, S.SERVER_VERIFYING})


class IllegalTransition(RuntimeError):
    """허용되지 않은 상태 전이."""


class SessionAbandoned(Exception):
    """abandon() 이후 관찰 중단 신호(내부용)."""


class InFlightGuard:
    """(지갑, 상품)별 진행 중 세션 레지스트리. 스레드 안전."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[Tuple[str, str], "PurchaseSession"] = {}

    def acquire(self, key: Tuple[str, str], session: "PurchaseSession") -> Optional["PurchaseSession"]:
        """key가 비어 있으면 session을 등록하고 None. 이미 있으면 그 세션을 반환."""
        with self._lock:
            current = self._sessions.get(key)
            if current is not None and current is not session:
                return current
            self._sessions[key] = session
            return None

    def release(self, key: Tuple[str, str], session: "PurchaseSession") -> None:
        with self._lock:
            if self._sessions.get(key) is session:
                del self._sessions[key]

    def get(self, key: Tuple[str, str]) -> Optional["PurchaseSession"]:
        with self._lock:
            return self._sessions.get(key)


Observer = Callable[["PurchaseSession", SessionState, SessionState], None]


class PurchaseSession:
    """한 번의 구매 시도. run()은 블로킹이며 각 네트워크 단계에 timeout이 있다."""

    def __init__(
        self,
        asset: Asset,
        adapter: ChainAdapter,
        verify_client: VerifyClient,
        cache: SessionCache,
        guard: InFlightGuard,
        min_confirmations: int = 1,
        confirmation_timeout: float = 180.0,
        poll_interval: float = 2.0,
    ):
        self.session_id = uuid.uuid4().hex
        self.asset = asset
        self.adapter = adapter
        self.verify_client = verify_client
        self.cache = cache
        self.guard = guard
        self.min_confirmations = min_confirmations
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval

        self.state = S.IDLE
        self.payer: Optional[str] = None
        self.intent: Optional[TransferIntent] = None
        self.tx_ref: Optional[TransactionReference] = None
        self.explorer_url: str = ""
        self.download_token: Optional[str] = None
        self.expires_at: Optional[str] = None

        self.failure_reason: Optional[FailureReason] = None
        self.failure_message: str = ""
        self.server_reason: Optional[str] = None

        self._observers: List[Observer] = []
        self._lock = threading.RLock()
        self._abandoned = threading.Event()
        self._guard_key: Optional[Tuple[str, str]] = None

    # -----------------------------
    # 관찰/상태
    # -----------------------------

    @property
    def chain_kind(self) -> ChainKind:
        return self.adapter.kind

    @property
    def retryable(self) -> bool:
        return self.failure_reason in RETRYABLE

    @property
    def remediation(self) -> str:
        return remediation_for(self.failure_reason) if self.failure_reason else ""

    @property
    def in_flight(self) -> bool:
        return self.state in IN_FLIGHT

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def _notify(self, old: SessionState, new: SessionState) -> None:
        for observer in list(self._observers):
            try:
                observer(self, old, new)
            except Exception:
                logger.exception("세션 옵저버 오류 session=%s", self.session_id)

    def _transition(self, new: SessionState) -> None:
        with self._lock:
            if self._abandoned.is_set():
                raise SessionAbandoned()
            old = self.state
            if new not in TRANSITIONS[old]:
                raise IllegalTransition(f"{old.value} -> {new.value}")
            if old is S.IDLE and new is S.CONFIRMING and self.tx_ref is None:
                raise IllegalTransition("resume requires a submitted transaction")
            self.state = new
        logger.debug("세션 상태 %s -> %s session=%s", old.value, new.value, self.session_id)
        self._notify(old, new)

    def _fail(self, error: VendingError) -> None:
        with self._lock:
            if self._abandoned.is_set() or self.state in (S.IDLE, S.ENTITLED, S.FAILED):
                return
            old = self.state
            self.failure_reason = error.reason
            self.failure_message = error.message
            self.server_reason = (error.detail or {}).get("serverReason")
            self.state = S.FAILED
        logger.warning(
            "구매 실패 session=%s asset=%s stage=%s reason=%s",
            self.session_id,
            self.asset.asset_id,
            old.value,
            error.reason.value,
        )
        self._notify(old, S.FAILED)

    def _unexpected(self, e: Exception) -> VendingError:
        """지갑/어댑터의 예상 밖 예외를 현재 단계에 맞는 실패 사유로 감싼다."""
        logger.exception("세션 처리 중 예상치 못한 오류 session=%s state=%s", self.session_id, self.state.value)
        if self.state in (S.WALLET_CONNECTING, S.NETWORK_CHECK):
            reason = FailureReason.WALLET_UNAVAILABLE
        elif self.state is S.AWAITING_SIGNATURE:
            reason = FailureReason.BROADCAST_FAILED
        else:
            reason = FailureReason.BACKEND_UNAVAILABLE
        return VendingError(str(e), reason=reason, stage=self.state.value, original_exception=e)

    # -----------------------------
    # 진행
    # -----------------------------

    def _acquire_guard(self) -> Optional["PurchaseSession"]:
        key = (self.adapter.normalize_address(self.payer), self.asset.asset_id)
        existing = self.guard.acquire(key, self)
        if existing is None:
            self._guard_key = key
        return existing

    def _release_guard(self) -> None:
        if self._guard_key is not None:
            self.guard.release(self._guard_key, self)
            self._guard_key = None

    def _price(self) -> int:
        try:
            amount = self.asset.price_minor(self.chain_kind)
        except ValueError as e:
            raise VendingError(str(e), reason=FailureReason.INVALID_AMOUNT, stage="AwaitingSignature") from e
        if amount is None or amount <= 0:
            raise VendingError(
                f"{self.chain_kind.value} 가격이 없는 상품: {self.asset.asset_id}",
                reason=FailureReason.INVALID_AMOUNT,
                stage="AwaitingSignature",
            )
        return amount

    def run(self) -> "PurchaseSession":
        """구매 전체를 실행. 같은 (지갑, 상품)의 진행 중 세션이 있으면 그 세션을 반환."""
        try:
            self._transition(S.WALLET_CONNECTING)
            self.payer = self.adapter.connect()

            existing = self._acquire_guard()
            if existing is not None:
                logger.info("진행 중인 구매가 있어 무시 asset=%s", self.asset.asset_id)
                self.abandon()
                return existing

            self._transition(S.NETWORK_CHECK)
            self.adapter.ensure_network()

            merchant = self.adapter.settings.merchant_address
            self._transition(S.AWAITING_SIGNATURE)
            self.intent = TransferIntent(
                asset_id=self.asset.asset_id,
                chain_kind=self.chain_kind,
                payer_address=self.payer,
                merchant_address=merchant,
                amount=self._price(),
            )
            artifact = self.adapter.build_transfer(merchant, self.intent.amount, self.payer)
            tx_ref = self.adapter.submit(artifact)
            with self._lock:
                self.tx_ref = tx_ref
                self.explorer_url = self.adapter.explorer_tx_url(tx_ref.tx_hash)
                self.intent = None
            self._transition(S.SUBMITTED)
            self._confirm_and_verify()
        except SessionAbandoned:
            logger.info("세션 중단 session=%s", self.session_id)
        except VendingError as e:
            self._fail(e)
        except IllegalTransition:
            raise
        except Exception as e:
            self._fail(self._unexpected(e))
        finally:
            self._release_guard()
        return self

    def resume(self) -> "PurchaseSession":
        """이미 전송된 트랜잭션(tx_ref)의 확인/검증을 다시 수행. 서명은 다시 하지 않는다."""
        if self.tx_ref is None:
            raise IllegalTransition("no submitted transaction to resume")
        if self.state is not S.IDLE or self._abandoned.is_set():
            self.reset(keep_transaction=True)
        try:
            existing = self._acquire_guard() if self.payer else None
            if existing is not None:
                return existing
            self._confirm_and_verify()
        except SessionAbandoned:
            logger.info("세션 중단 session=%s", self.session_id)
        except VendingError as e:
            self._fail(e)
        except IllegalTransition:
            raise
        except Exception as e:
            self._fail(self._unexpected(e))
        finally:
            self._release_guard()
        return self

    def _confirm_and_verify(self) -> None:
        self._transition(S.CONFIRMING)
        self.adapter.await_confirmation(
            self.tx_ref,
            min_confirmations=self.min_confirmations,
            timeout=self.confirmation_timeout,
            poll_interval=self.poll_interval,
        )

        self._transition(S.SERVER_VERIFYING)
        chain_id = self.adapter.settings.chain_id if self.chain_kind is ChainKind.EVM else None
        resp = self.verify_client.verify(self.tx_ref, self.asset.asset_id, self.payer or "", chain_id)

        with self._lock:
            if self._abandoned.is_set():
                raise SessionAbandoned()
            self.cache.set_download_token(self.asset.asset_id, resp.token, resp.expires_at)
            self.download_token = resp.token
            self.expires_at = resp.expires_at
            if resp.explorer_url:
                self.explorer_url = resp.explorer_url
        self._transition(S.ENTITLED)
        logger.info("구매 완료 asset=%s tx=%s", self.asset.asset_id, self.tx_ref.tx_hash)

    # -----------------------------
    # 중단/초기화
    # -----------------------------

    def abandon(self) -> None:
        """관찰 중단. Entitled 전이면 Idle로 돌아가며 이후 결과는 캐시에 쓰지 않는다."""
        with self._lock:
            if self.state in (S.ENTITLED, S.FAILED, S.IDLE):
                return
            old = self.state
            self._abandoned.set()
            self.state = S.IDLE
            self.intent = None
        self._release_guard()
        self._notify(old, S.IDLE)

    def reset(self, keep_transaction: bool = False) -> None:
        """Entitled/Failed에서 Idle로. 같은 상품을 다시 시도할 수 있다."""
        with self._lock:
            old = self.state
            if old in IN_FLIGHT or old in (S.WALLET_CONNECTING, S.NETWORK_CHECK):
                raise IllegalTransition(f"cannot reset while {old.value}; use abandon()")
            self.state = S.IDLE
            self._abandoned = threading.Event()
            self.failure_reason = None
            self.failure_message = ""
            self.server_reason = None
            if not keep_transaction:
                self.tx_ref = None
                self.explorer_url = ""
        if old is not S.IDLE:
            self._notify(old, S.IDLE)

    def snapshot(self) -> Dict[str, object]:
        """UI 표시용 상태."""
        return {
            "sessionId": self.session_id,
            "assetId": self.asset.asset_id,
            "chainKind": self.chain_kind.value,
            "state": self.state.value,
            "payer": self.payer,
            "txHash": self.tx_ref.tx_hash if self.tx_ref else None,
            "explorerUrl": self.explorer_url or None,
            "reason": self.failure_reason.value if self.failure_reason else None,
            "message": self.remediation,
            "retryable": self.retryable if self.failure_reason else None,
            "updatedAt": time.time(),
        }
