# -*- coding: utf-8 -*-
"""
vending/errors.py

목적:
- 구매/검증/다운로드 전 구간에서 공통으로 쓰는 실패 사유(FailureReason)와 예외 계층.
- UI는 reason 값만 보고 구체적인 안내 문구(REMEDIATION)와 재시도 가능 여부를 결정한다.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    """실패 사유 분류. 값은 HTTP 응답의 error 필드에 그대로 실린다."""

    WALLET_UNAVAILABLE = "WalletUnavailable"
    CONNECTION_REJECTED = "ConnectionRejected"
    WRONG_NETWORK = "WrongNetwork"
    UNCONFIGURED_MERCHANT = "UnconfiguredMerchant"
    INVALID_AMOUNT = "InvalidAmount"
    USER_REJECTED = "UserRejected"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    BROADCAST_FAILED = "BroadcastFailed"
    CONFIRMATION_TIMEOUT = "ConfirmationTimeout"
    CONFIRMATION_FAILED = "ConfirmationFailed"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    VERIFICATION_REJECTED = "VerificationRejected"
    ASSET_UNKNOWN = "AssetUnknown"
    AMOUNT_MISMATCH = "AmountMismatch"
    WRONG_RECIPIENT = "WrongRecipient"
    TRANSACTION_FAILED = "TransactionFailed"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_UNKNOWN = "TokenUnknown"
    # 서버 측 보조 사유
    TRANSACTION_PENDING = "TransactionPending"
    TRANSACTION_ALREADY_USED = "TransactionAlreadyUsed"
    PAYER_MISMATCH = "PayerMismatch"
    INVALID_REQUEST = "InvalidRequest"
    ASSET_MISMATCH = "AssetMismatch"
    DOWNLOAD_LIMIT_REACHED = "DownloadLimitReached"
    ASSET_FILE_MISSING = "AssetFileMissing"

    @classmethod
    def parse(cls, value: Any) -> Optional["FailureReason"]:
        """서버 응답 등 외부 문자열을 FailureReason으로 변환. 모르는 값이면 None."""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == str(value or ""):
                return member
        return None


# 사용자에게 보여줄 구체적인 안내 문구
REMEDIATION: Dict[FailureReason, str] = {
    FailureReason.WALLET_UNAVAILABLE: "A Web3 wallet is required. Please install or unlock one.",
    FailureReason.CONNECTION_REJECTED: "Wallet connection was declined. Connect your wallet to continue.",
    FailureReason.WRONG_NETWORK: "Wrong network. Please switch your wallet to the required network.",
    FailureReason.UNCONFIGURED_MERCHANT: "This shop has no payment address configured yet.",
    FailureReason.INVALID_AMOUNT: "This item has no valid price on the selected network.",
    FailureReason.USER_REJECTED: "You declined the transaction in your wallet.",
    FailureReason.INSUFFICIENT_FUNDS: "Your wallet balance is too low for this purchase and its fees.",
    FailureReason.BROADCAST_FAILED: "The network did not accept the transaction. Please try again.",
    FailureReason.CONFIRMATION_TIMEOUT: (
        "The transaction is taking longer than expected. "
        "It may still confirm; check the explorer and retry verification."
    ),
    FailureReason.CONFIRMATION_FAILED: "The transaction failed on-chain. No payment was taken.",
    FailureReason.BACKEND_UNAVAILABLE: "Backend unavailable. Please try again later.",
    FailureReason.VERIFICATION_REJECTED: "This payment could not be verified for this item.",
    FailureReason.ASSET_UNKNOWN: "This item is no longer available.",
    FailureReason.AMOUNT_MISMATCH: "The amount paid does not match the item price.",
    FailureReason.WRONG_RECIPIENT: "The payment was not sent to this shop's address.",
    FailureReason.TRANSACTION_FAILED: "The transaction did not succeed on-chain.",
    FailureReason.TOKEN_EXPIRED: "Download link expired. Please purchase again.",
    FailureReason.TOKEN_UNKNOWN: "Download link is invalid.",
    FailureReason.TRANSACTION_PENDING: "The transaction is not final yet. Please retry shortly.",
    FailureReason.TRANSACTION_ALREADY_USED: "This transaction was already used for another item.",
    FailureReason.PAYER_MISMATCH: "The transaction was sent from a different wallet.",
    FailureReason.INVALID_REQUEST: "The request was malformed.",
    FailureReason.ASSET_MISMATCH: "This download link belongs to a different item.",
    FailureReason.DOWNLOAD_LIMIT_REACHED: "This download link has been used up.",
    FailureReason.ASSET_FILE_MISSING: "The file is currently unavailable. Please contact support.",
}

# "다시 시도" 안내가 의미 있는 사유(네트워크 불안정 등)
RETRYABLE = frozenset(
    {
        FailureReason.BACKEND_UNAVAILABLE,
        FailureReason.TRANSACTION_PENDING,
        FailureReason.CONFIRMATION_TIMEOUT,
        FailureReason.BROADCAST_FAILED,
        FailureReason.USER_REJECTED,
        FailureReason.CONNECTION_REJECTED,
        FailureReason.WRONG_NETWORK,
        FailureReason.WALLET_UNAVAILABLE,
    }
)


def remediation_for(reason: FailureReason) -> str:
    return REMEDIATION.get(reason, "Something went wrong.")


class VendingError(Exception):
    """구매 파이프라인 오류의 기반 클래스. 생성 시점에 한 번 로그를 남긴다."""

    def __init__(
        self,
        message: str,
        reason: FailureReason = FailureReason.BACKEND_UNAVAILABLE,
        stage: str = "Unknown",
        detail: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.stage = stage
        self.detail = detail or {}
        self.original_exception = original_exception
        logger.warning(
            "[%s] Stage: %s, Reason: %s, Message: %s",
            type(self).__name__,
            self.stage,
            self.reason.value,
            self.message,
        )

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.reason.value,
            "message": remediation_for(self.reason),
            "detail": self.message,
        }


class ChainError(VendingError):
    """체인 어댑터(지갑/RPC) 단계 오류."""


class EntitlementError(VendingError):
    """토큰 만료/미확인 등 권한 저장소 오류."""


class Forbidden(VendingError):
    """다운로드 게이트 거부."""


class WalletRpcError(Exception):
    """지갑이 돌려준 원시 오류(EIP-1193 code 포함). 어댑터가 FailureReason으로 변환한다."""

    USER_REJECTED = 4001
    UNRECOGNIZED_CHAIN = 4902

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
