# -*- coding: utf-8 -*-
"""
vending/models.py

목적:
- 구매 흐름에서 오가는 데이터 구조(반드시 JSON 직렬화 가능한 타입으로 변환 가능).
- Asset / ChainKind / TransferIntent / TransactionReference / ObservedTransfer /
  VerificationResult / Entitlement.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from .errors import FailureReason
from .utils import utc_iso


class ChainKind(str, Enum):
    """체인 계열. 어댑터, 최소 단위 자릿수, 주소 형식을 결정한다."""

    EVM = "evm"
    SOLANA = "solana"
    TRON = "tron"

    @classmethod
    def parse(cls, value: Any) -> "ChainKind":
        s = str(value or "").strip().lower()
        if s in ("tronlike", "tron-like", "trx"):
            s = "tron"
        if s in ("ethereum", "polygon", "eth"):
            s = "evm"
        if s in ("sol",):
            s = "solana"
        for member in cls:
            if member.value == s:
                return member
        raise ValueError(f"unknown chain kind: {value!r}")

    @property
    def decimals(self) -> int:
        return NATIVE_DECIMALS[self]


# 네이티브 통화의 최소 단위 자릿수 (wei / lamports / sun)
NATIVE_DECIMALS: Dict[ChainKind, int] = {
    ChainKind.EVM: 18,
    ChainKind.SOLANA: 9,
    ChainKind.TRON: 6,
}


def to_minor_units(amount: Decimal, kind: ChainKind) -> int:
    """정확한 십진 금액을 최소 단위 정수로 변환. 자릿수를 넘는 소수는 ValueError."""
    scaled = Decimal(amount).scaleb(kind.decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more precision than {kind.value} supports")
    return int(scaled)


def from_minor_units(amount: int, kind: ChainKind) -> Decimal:
    return Decimal(int(amount)).scaleb(-kind.decimals)


def parse_decimal(value: Any) -> Optional[Decimal]:
    """카탈로그의 가격 문자열/숫자를 Decimal로. 비어 있거나 잘못되면 None."""
    if value is None or value == "":
        return None
    try:
        # float는 문자열을 거쳐야 2.5 -> Decimal('2.5')로 정확히 변환된다
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class Asset:
    """판매 상품. 카탈로그가 소유하며 이 시스템에서는 읽기 전용."""

    asset_id: str
    title: str
    content_ref: str
    prices: Dict[ChainKind, Decimal] = field(default_factory=dict)
    price_usd: Optional[Decimal] = None
    description: str = ""
    preview_url: str = ""

    def price_for(self, kind: ChainKind) -> Optional[Decimal]:
        return self.prices.get(kind)

    def price_minor(self, kind: ChainKind) -> Optional[int]:
        """해당 체인에서의 가격(최소 단위). 가격이 없으면 None."""
        price = self.price_for(kind)
        if price is None:
            return None
        return to_minor_units(price, kind)


@dataclass
class TransferIntent:
    """구매 시작 시 생성되는 송금 의도. txRef를 얻거나 포기하면 소멸."""

    asset_id: str
    chain_kind: ChainKind
    payer_address: str
    merchant_address: str
    amount: int
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransactionReference:
    """브로드캐스트 후 어댑터가 만든 참조. 서버로 넘어가는 유일한 결제 증거."""

    chain_kind: ChainKind
    tx_hash: str
    submitted_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        """중복 검증 방지 키 (체인 + 해시)."""
        return f"{self.chain_kind.value}:{self.tx_hash}"


@dataclass
class ObservedTransfer:
    """체인에서 직접 다시 읽어 온 송금 정보."""

    tx_hash: str
    payer: str
    recipient: str
    amount: int
    success: bool
    block: Optional[int] = None

    @property
    def status(self) -> str:
        return "success" if self.success else "failed"


@dataclass
class Entitlement:
    """서버가 발급한 다운로드 권한."""

    asset_id: str
    subject: str
    token: str
    issued_at: float
    expires_at: float
    tx_key: Optional[str] = None
    revoked: bool = False
    use_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_live(self, now: float) -> bool:
        return not self.revoked and not self.is_expired(now)

    @property
    def expires_at_iso(self) -> str:
        return utc_iso(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entitlement":
        return cls(
            asset_id=str(data["asset_id"]),
            subject=str(data.get("subject") or ""),
            token=str(data["token"]),
            issued_at=float(data.get("issued_at") or 0),
            expires_at=float(data.get("expires_at") or 0),
            tx_key=data.get("tx_key"),
            revoked=bool(data.get("revoked", False)),
            use_count=int(data.get("use_count") or 0),
        )


@dataclass
class TokenStatus:
    """EntitlementStore.validate 결과."""

    valid: bool
    asset_id: Optional[str] = None
    reason: Optional[FailureReason] = None
    entitlement: Optional[Entitlement] = None


@dataclass
class VerificationResult:
    """서버 측 결제 검증 결과."""

    valid: bool
    reason: Optional[FailureReason] = None
    observed_payer: Optional[str] = None
    observed_recipient: Optional[str] = None
    observed_amount: Optional[int] = None
    observed_status: Optional[str] = None
    entitlement: Optional[Entitlement] = None
    already_verified: bool = False
    message: str = ""

    @classmethod
    def rejected(cls, reason: FailureReason, message: str = "", observed: ObservedTransfer = None):
        result = cls(valid=False, reason=reason, message=message)
        if observed is not None:
            result.observed_payer = observed.payer
            result.observed_recipient = observed.recipient
            result.observed_amount = observed.amount
            result.observed_status = observed.status
        return result
