# -*- coding: utf-8 -*-
"""
vending/chains/tron.py

목적:
- Tron 네이티브 TRX 송금 어댑터 (HTTP API, visible=true → base58 주소).
- /wallet/gettransactionbyid: TransferContract {owner_address, to_address, amount}, ret[0].contractRet
- /wallet/gettransactioninfobyid: blockNumber, receipt.result
"""

from __future__ import annotations

import re
from typing import Dict, Optional

from ..models import ChainKind, ObservedTransfer, TransactionReference
from .base import CONFIRMED, FAILED, PENDING, ChainAdapter

_ADDRESS_RE = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")


class TronAdapter(ChainAdapter):
    kind = ChainKind.TRON
    # base58 인코딩된 0 주소
    zero_address = "T9yD14Nj9j7xAB4dbGeiX9h8unkKHxuWwb"

    def _rpc_headers(self) -> Dict[str, str]:
        if self.settings.api_key:
            return {"TRON-PRO-API-KEY": self.settings.api_key}
        return {}

    def normalize_address(self, address: Optional[str]) -> str:
        return str(address or "").strip()

    def is_valid_address(self, address: Optional[str]) -> bool:
        return bool(_ADDRESS_RE.match(str(address or "").strip()))

    def normalize_tx_hash(self, tx_hash: Optional[str]) -> str:
        s = str(tx_hash or "").strip().lower()
        if s.startswith("0x"):
            s = s[2:]
        return s

    def explorer_tx_url(self, tx_hash: str) -> str:
        base = self.settings.explorer_url
        if not base:
            return ""
        return f"{base}/transaction/{self.normalize_tx_hash(tx_hash)}"

    def _info(self, tx_hash: str) -> Dict:
        return self.rpc.post("wallet/gettransactioninfobyid", {"value": tx_hash})

    def confirmation_status(self, tx_hash: str, min_confirmations: int) -> str:
        info = self._info(self.normalize_tx_hash(tx_hash))
        if not info or not info.get("blockNumber"):
            return PENDING
        result = (info.get("receipt") or {}).get("result")
        if result and result != "SUCCESS":
            return FAILED
        if int(min_confirmations) > 1:
            now = self.rpc.post("wallet/getnowblock", {})
            head = int(((now.get("block_header") or {}).get("raw_data") or {}).get("number") or 0)
            if head - int(info["blockNumber"]) + 1 < int(min_confirmations):
                return PENDING
        return CONFIRMED

    def fetch_transaction(self, tx_ref: TransactionReference) -> ObservedTransfer:
        tx_hash = self.normalize_tx_hash(tx_ref.tx_hash)
        tx = self.rpc.post("wallet/gettransactionbyid", {"value": tx_hash, "visible": True})
        if not tx or not tx.get("txID"):
            raise self.pending(tx_hash)
        info = self._info(tx_hash)
        if not info or not info.get("blockNumber"):
            # 아직 블록에 포함되지 않음
            raise self.pending(tx_hash)

        contracts = (tx.get("raw_data") or {}).get("contract") or [{}]
        contract = contracts[0]
        value = (contract.get("parameter") or {}).get("value") or {}
        payer = self.normalize_address(value.get("owner_address"))
        recipient = amount = None
        if contract.get("type") == "TransferContract":
            recipient = self.normalize_address(value.get("to_address"))
            amount = int(value.get("amount") or 0)

        ret = (tx.get("ret") or [{}])[0]
        receipt_result = (info.get("receipt") or {}).get("result")
        success = ret.get("contractRet") == "SUCCESS" and receipt_result in (None, "SUCCESS")

        return ObservedTransfer(
            tx_hash=tx_hash,
            payer=payer,
            recipient=recipient or "",
            amount=amount or 0,
            success=success,
            block=int(info["blockNumber"]),
        )
