# -*- coding: utf-8 -*-
"""
vending/verification.py

목적:
- 서버 측 결제 검증. 클라이언트가 보낸 것은 트랜잭션 참조뿐이며,
  수신자/금액/상태/결제자는 모두 체인에서 다시 읽어 판단한다.
- 검증 성공 시에만 EntitlementStore에 권한 발급을 요청한다(실패는 절대 권한이 되지 않음).

검증 순서:
1) 상품 조회(없거나 해당 체인 가격이 없으면 AssetUnknown)
2) EVM chainId 확인(WrongNetwork)
3) 멱등성: 같은 tx_key에 묶인 권한을 그대로 반환(만료/폐기면 거절, 재발급 없음)
4) fetch_transaction (미확정 TransactionPending / 노드 장애 BackendUnavailable)
5) 상태 → 수신자(정확 일치) → 금액(최소 단위 정확 일치) → 결제자
6) tx_key 기준 원자적 발급
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from .catalog import Catalog
from .chains import ChainAdapter, get_adapter
from .entitlement_store import EntitlementStore
from .errors import FailureReason, VendingError
from .models import ChainKind, TransactionReference, VerificationResult

logger = logging.getLogger(__name__)


def parse_chain_id(value) -> Optional[int]:
    """137 / "137" / "0x89" 모두 허용. 해석 불가면 ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(str(value).strip(), 0)


class VerificationService:
    """체인 기반 결제 검증 + 권한 발급."""

    def __init__(
        self,
        catalog: Catalog,
        store: EntitlementStore,
        adapters: Optional[Dict[ChainKind, ChainAdapter]] = None,
        adapter_factory: Callable[[ChainKind], ChainAdapter] = get_adapter,
        ttl_seconds: Optional[int] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._adapters: Dict[ChainKind, ChainAdapter] = dict(adapters or {})
        self._adapter_factory = adapter_factory
        self._lock = threading.Lock()

    def adapter(self, kind: ChainKind) -> ChainAdapter:
        with self._lock:
            if kind not in self._adapters:
                self._adapters[kind] = self._adapter_factory(kind)
            return self._adapters[kind]

    def verify(
        self,
        tx_ref: TransactionReference,
        claimed_asset_id: str,
        claimed_payer: str = "",
        claimed_chain_kind: Optional[ChainKind] = None,
        chain_id=None,
    ) -> VerificationResult:
        kind = claimed_chain_kind or tx_ref.chain_kind
        result = self._verify(tx_ref, kind, str(claimed_asset_id or "").strip(), claimed_payer, chain_id)
        logger.info(
            "결제 검증 tx=%s asset=%s chain=%s outcome=%s%s",
            tx_ref.tx_hash,
            claimed_asset_id,
            kind.value,
            "valid" if result.valid else result.reason.value,
            " (already_verified)" if result.already_verified else "",
        )
        return result

    def _bound(self, ent) -> VerificationResult:
        """이미 tx에 묶인 권한. 만료/폐기되었어도 다시 발급하지 않는다."""
        if ent.revoked:
            return VerificationResult.rejected(FailureReason.TOKEN_UNKNOWN, "이 결제의 다운로드 권한은 폐기되었습니다.")
        if not ent.is_live(self.store.now()):
            return VerificationResult.rejected(FailureReason.TOKEN_EXPIRED, "이 결제의 다운로드 권한이 만료되었습니다.")
        return VerificationResult(
            valid=True,
            observed_payer=ent.subject,
            entitlement=ent,
            already_verified=True,
        )

    def _verify(self, tx_ref, kind, asset_id, claimed_payer, chain_id) -> VerificationResult:
        reject = VerificationResult.rejected

        if tx_ref.chain_kind != kind or not str(tx_ref.tx_hash or "").strip():
            return reject(FailureReason.INVALID_REQUEST, "트랜잭션 참조가 올바르지 않습니다.")

        # 1) 상품/가격
        asset = self.catalog.get(asset_id)
        if asset is None:
            return reject(FailureReason.ASSET_UNKNOWN, f"알 수 없는 상품: {asset_id}")
        try:
            expected = asset.price_minor(kind)
        except ValueError as e:
            logger.error("상품 가격이 체인 자릿수를 넘습니다 asset=%s: %s", asset_id, e)
            expected = None
        if expected is None or expected <= 0:
            return reject(FailureReason.ASSET_UNKNOWN, f"{kind.value} 가격이 없는 상품: {asset_id}")

        adapter = self.adapter(kind)

        # 2) 네트워크
        if kind is ChainKind.EVM and chain_id not in (None, ""):
            try:
                claimed_chain = parse_chain_id(chain_id)
            except ValueError:
                return reject(FailureReason.INVALID_REQUEST, f"chainId 형식 오류: {chain_id}")
            if claimed_chain != int(adapter.settings.chain_id):
                return reject(
                    FailureReason.WRONG_NETWORK,
                    f"chainId {claimed_chain} != {adapter.settings.chain_id}",
                )

        tx_hash = adapter.normalize_tx_hash(tx_ref.tx_hash)
        tx_key = adapter.tx_key(tx_hash)

        # 3) 멱등성: tx_key에 묶인 권한은 살아있든 아니든 그것이 유일한 결과
        try:
            existing = self.store.find_by_tx(tx_key)
        except VendingError as e:
            return reject(e.reason, e.message)
        if existing is not None:
            if existing.asset_id != asset.asset_id:
                return reject(FailureReason.TRANSACTION_ALREADY_USED, f"다른 상품에 사용된 트랜잭션: {existing.asset_id}")
            if claimed_payer and adapter.normalize_address(claimed_payer) != existing.subject:
                return reject(FailureReason.PAYER_MISMATCH, f"결제자 불일치: {existing.subject}")
            return self._bound(existing)

        # 4) 체인에서 다시 읽기
        try:
            observed = adapter.fetch_transaction(TransactionReference(kind, tx_hash))
        except VendingError as e:
            return reject(e.reason, e.message)

        # 5) 비교
        if not observed.success:
            return reject(FailureReason.TRANSACTION_FAILED, "트랜잭션 상태가 실패입니다.", observed)
        merchant = adapter.normalize_address(adapter.settings.merchant_address)
        if adapter.is_zero_address(merchant):
            return reject(FailureReason.UNCONFIGURED_MERCHANT, "판매자 주소가 설정되지 않았습니다.", observed)
        if adapter.normalize_address(observed.recipient) != merchant:
            return reject(FailureReason.WRONG_RECIPIENT, f"수신자 불일치: {observed.recipient}", observed)
        if observed.amount != expected:
            return reject(
                FailureReason.AMOUNT_MISMATCH,
                f"금액 불일치: expected={expected} got={observed.amount}",
                observed,
            )
        payer = adapter.normalize_address(observed.payer)
        if claimed_payer and adapter.normalize_address(claimed_payer) != payer:
            return reject(FailureReason.PAYER_MISMATCH, f"결제자 불일치: {observed.payer}", observed)

        # 6) 발급
        started = self.store.now()
        try:
            ent = self.store.issue(asset.asset_id, payer, ttl=self.ttl_seconds, tx_key=tx_key)
        except VendingError as e:
            return reject(e.reason, e.message, observed)

        # 동시 요청이 먼저 발급했다면 발급 시각이 이 호출보다 앞선다
        if ent.issued_at < started:
            result = self._bound(ent)
            if not result.valid:
                return result
        else:
            result = VerificationResult(valid=True, entitlement=ent)
        result.observed_payer = observed.payer
        result.observed_recipient = observed.recipient
        result.observed_amount = observed.amount
        result.observed_status = observed.status
        return result
