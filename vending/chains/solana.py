# -*- coding: utf-8 -*-
"""
vending/chains/solana.py

목적:
- Solana 네이티브 SOL 송금 어댑터.
- RPC: getTransaction(jsonParsed), getSignatureStatuses.
- 송금 = system 프로그램의 parsed "transfer" 명령 {source, destination, lamports}.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from ..models import ChainKind, ObservedTransfer, TransactionReference
from .base import CONFIRMED, FAILED, PENDING, ChainAdapter

logger = logging.getLogger(__name__)

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def _system_transfers(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    """트랜잭션에서 system transfer 명령의 info 목록을 뽑는다."""
    message = ((tx.get("transaction") or {}).get("message")) or {}
    out = []
    for ix in message.get("instructions") or []:
        if ix.get("program") != "system":
            continue
        parsed = ix.get("parsed") or {}
        if isinstance(parsed, dict) and parsed.get("type") == "transfer":
            out.append(parsed.get("info") or {})
    return out


class SolanaAdapter(ChainAdapter):
    kind = ChainKind.SOLANA
    # 시스템 프로그램 주소를 "미설정" 값으로 취급
    zero_address = "11111111111111111111111111111111"

    def normalize_address(self, address: Optional[str]) -> str:
        # base58은 대소문자를 구분하므로 그대로 비교
        return str(address or "").strip()

    def is_valid_address(self, address: Optional[str]) -> bool:
        return bool(_BASE58_RE.match(str(address or "").strip()))

    def confirmation_status(self, tx_hash: str, min_confirmations: int) -> str:
        result = self.rpc.call(
            "getSignatureStatuses",
            [[self.normalize_tx_hash(tx_hash)], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return PENDING
        if status.get("err") is not None:
            return FAILED
        wanted = {"finalized"} if int(min_confirmations) > 1 else {"confirmed", "finalized"}
        if status.get("confirmationStatus") in wanted:
            return CONFIRMED
        return PENDING

    def fetch_transaction(self, tx_ref: TransactionReference) -> ObservedTransfer:
        sig = self.normalize_tx_hash(tx_ref.tx_hash)
        tx = self.rpc.call(
            "getTransaction",
            [
                sig,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not tx:
            raise self.pending(sig)

        meta = tx.get("meta") or {}
        transfers = _system_transfers(tx)
        merchant = self.normalize_address(self.settings.merchant_address)
        payer = recipient = ""
        amount = 0
        if transfers:
            # 판매자에게 가는 송금이 있으면 그것을, 없으면 첫 송금을 기준으로 합산
            target = next(
                (t for t in transfers if self.normalize_address(t.get("destination")) == merchant),
                transfers[0],
            )
            recipient = self.normalize_address(target.get("destination"))
            payer = self.normalize_address(target.get("source"))
            amount = sum(
                int(t.get("lamports") or 0)
                for t in transfers
                if self.normalize_address(t.get("destination")) == recipient
                and self.normalize_address(t.get("source")) == payer
            )
        else:
            logger.warning("system transfer 명령이 없는 트랜잭션 sig=%s", sig)

        return ObservedTransfer(
            tx_hash=sig,
            payer=payer,
            recipient=recipient,
            amount=amount,
            success=meta.get("err") is None,
            block=tx.get("slot"),
        )
