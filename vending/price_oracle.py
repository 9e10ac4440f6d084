# -*- coding: utf-8 -*-
"""
vending/price_oracle.py

목적:
- CoinGecko simple/price로 네이티브 코인의 USD/EUR 시세를 가져와 표시용으로 제공.
- 결과는 JSON 파일에 타임스탬프와 함께 캐시하고, 24시간이 지나면 stale로 표시.
- 가격 검증(신뢰 경계)에는 절대 사용하지 않는다. 검증은 카탈로그의 네이티브 가격만 본다.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from .config import get_chain_settings
from .models import ChainKind
from .utils import atomic_write_json, read_json, utc_iso

logger = logging.getLogger(__name__)

CURRENCIES = ("usd", "eur")


@dataclass
class PriceQuote:
    """체인 네이티브 코인 1개당 법정화폐 시세."""

    chain_kind: ChainKind
    usd: Optional[Decimal] = None
    eur: Optional[Decimal] = None
    fetched_at: Optional[float] = None
    stale: bool = False

    @property
    def available(self) -> bool:
        return self.usd is not None or self.eur is not None

    def rate(self, currency: str) -> Optional[Decimal]:
        return getattr(self, currency.lower(), None) if currency.lower() in CURRENCIES else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainKind": self.chain_kind.value,
            "usd": str(self.usd) if self.usd is not None else None,
            "eur": str(self.eur) if self.eur is not None else None,
            "fetchedAt": utc_iso(self.fetched_at) if self.fetched_at else None,
            "stale": self.stale,
            "available": self.available,
        }


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class PriceOracle:
    """CoinGecko 시세 + 파일 캐시."""

    def __init__(
        self,
        cache_path: Path,
        api_url: str = "https://api.coingecko.com/api/v3/simple/price",
        max_age_seconds: int = 24 * 60 * 60,
        min_refresh_seconds: int = 60,
        timeout: float = 10.0,
        coin_ids: Optional[Dict[ChainKind, List[str]]] = None,
        clock=time.time,
    ):
        self.cache_path = Path(cache_path)
        self.api_url = api_url
        self.max_age_seconds = max_age_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self.timeout = timeout
        self._coin_ids = coin_ids or {}
        self._clock = clock
        self._lock = threading.Lock()

    def coin_ids(self, kind: ChainKind) -> List[str]:
        return self._coin_ids.get(kind) or get_chain_settings(kind).price_ids

    # -----------------------------
    # 캐시
    # -----------------------------

    def _cached(self, kind: ChainKind) -> Optional[PriceQuote]:
        data = read_json(self.cache_path, {})
        entry = data.get(kind.value) if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            return None
        ts = entry.get("ts")
        quote = PriceQuote(
            chain_kind=kind,
            usd=_dec(entry.get("usd")),
            eur=_dec(entry.get("eur")),
            fetched_at=float(ts) if ts else None,
        )
        if not quote.available:
            return None
        quote.stale = quote.fetched_at is None or self._clock() - quote.fetched_at > self.max_age_seconds
        return quote

    def _store(self, quote: PriceQuote) -> None:
        with self._lock:
            data = read_json(self.cache_path, {})
            if not isinstance(data, dict):
                data = {}
            data[quote.chain_kind.value] = {
                "usd": str(quote.usd) if quote.usd is not None else None,
                "eur": str(quote.eur) if quote.eur is not None else None,
                "ts": quote.fetched_at,
            }
            atomic_write_json(self.cache_path, data)

    # -----------------------------
    # 조회
    # -----------------------------

    def _fetch(self, kind: ChainKind) -> Optional[PriceQuote]:
        ids = self.coin_ids(kind)
        resp = requests.get(
            self.api_url,
            params={"ids": ",".join(ids), "vs_currencies": ",".join(CURRENCIES)},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        data = resp.json() or {}
        # 우선순위대로 첫 번째로 값이 있는 코인 id 사용
        for coin_id in ids:
            entry = data.get(coin_id) or {}
            if entry.get("usd") is not None or entry.get("eur") is not None:
                return PriceQuote(
                    chain_kind=kind,
                    usd=_dec(entry.get("usd")),
                    eur=_dec(entry.get("eur")),
                    fetched_at=self._clock(),
                )
        return None

    def quote(self, kind: ChainKind, refresh: bool = True) -> PriceQuote:
        """현재 시세. 조회 실패 시 캐시를, 캐시도 없으면 빈(stale) 시세를 돌려준다."""
        cached = self._cached(kind)
        if not refresh:
            return cached or PriceQuote(chain_kind=kind, stale=True)
        if cached and not cached.stale and self._clock() - cached.fetched_at < self.min_refresh_seconds:
            return cached

        try:
            fresh = self._fetch(kind)
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning("시세 조회 실패 chain=%s: %s", kind.value, e)
            fresh = None
        if fresh is not None:
            self._store(fresh)
            return fresh

        if cached:
            # 캐시 나이 기준 stale 표시는 그대로 유지
            return cached
        return PriceQuote(chain_kind=kind, stale=True)

    def fiat_value(self, amount: Decimal, kind: ChainKind, currency: str = "usd") -> Optional[Decimal]:
        """네이티브 금액의 법정화폐 환산(표시용)."""
        rate = self.quote(kind, refresh=False).rate(currency)
        if rate is None:
            return None
        return (Decimal(amount) * rate).quantize(Decimal("0.01"))

    def native_for_fiat(self, fiat: Decimal, kind: ChainKind, currency: str = "usd") -> Optional[Decimal]:
        """법정화폐 가격을 네이티브 금액으로 환산(표시용, 체인 자릿수로 반올림)."""
        rate = self.quote(kind, refresh=False).rate(currency)
        if not rate:
            return None
        return (Decimal(fiat) / rate).quantize(Decimal(1).scaleb(-kind.decimals))
