# -*- coding: utf-8 -*-
"""
vending/catalog.py

목적:
- assets.json(로컬 파일 또는 URL)에서 판매 상품 목록을 한 번 읽어 조회 테이블로 제공.
- 클라이언트(Checkout)와 서버(VerificationService)가 같은 카탈로그를 공유한다.

허용 형식:
- [ {...}, ... ]
- {"assets": [...]} 또는 {"items": [...]}
- 가격: prices: {"evm": "2.5", "solana": "0.1", "tron": "30"}, 구버전 pricePol(=EVM 가격)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import requests

from .errors import FailureReason, VendingError
from .models import Asset, ChainKind, parse_decimal

logger = logging.getLogger(__name__)


def _asset_from_dict(raw: Dict[str, Any]) -> Optional[Asset]:
    asset_id = str(raw.get("id") or raw.get("assetId") or "").strip()
    if not asset_id:
        return None

    prices = {}
    for key, value in (raw.get("prices") or {}).items():
        try:
            kind = ChainKind.parse(key)
        except ValueError:
            logger.warning("알 수 없는 체인 가격 무시 asset=%s chain=%s", asset_id, key)
            continue
        price = parse_decimal(value)
        if price is not None:
            prices[kind] = price
    # 구버전 카탈로그: pricePol 하나만 있는 경우
    if ChainKind.EVM not in prices:
        legacy = parse_decimal(raw.get("pricePol"))
        if legacy is not None:
            prices[ChainKind.EVM] = legacy

    return Asset(
        asset_id=asset_id,
        title=str(raw.get("title") or asset_id),
        content_ref=str(raw.get("contentRef") or raw.get("file") or raw.get("download") or ""),
        prices=prices,
        price_usd=parse_decimal(raw.get("priceUsd")),
        description=str(raw.get("description") or ""),
        preview_url=str(raw.get("preview") or raw.get("previewUrl") or ""),
    )


class Catalog:
    """읽기 전용 상품 조회 테이블."""

    def __init__(self, assets: List[Asset]):
        self._assets: Dict[str, Asset] = {}
        for asset in assets:
            self._assets[asset.asset_id] = asset

    @classmethod
    def from_data(cls, data: Any) -> "Catalog":
        if isinstance(data, dict):
            items = data.get("assets") or data.get("items") or []
        elif isinstance(data, list):
            items = data
        else:
            raise ValueError("catalog must be a list or an object with 'assets'/'items'")
        assets = []
        for raw in items:
            if not isinstance(raw, dict):
                continue
            asset = _asset_from_dict(raw)
            if asset is not None:
                assets.append(asset)
        return cls(assets)

    @classmethod
    def load(cls, source: str, timeout: float = 10.0) -> "Catalog":
        """파일 경로 또는 http(s) URL에서 카탈로그를 읽는다."""
        try:
            if str(source).startswith(("http://", "https://")):
                resp = requests.get(source, timeout=timeout, headers={"Cache-Control": "no-store"})
                resp.raise_for_status()
                data = resp.json()
            else:
                data = json.loads(Path(source).read_text(encoding="utf-8"))
        except (requests.exceptions.RequestException, OSError, ValueError) as e:
            raise VendingError(
                f"카탈로그를 불러오지 못했습니다: {source}: {e}",
                reason=FailureReason.BACKEND_UNAVAILABLE,
                stage="Catalog",
                original_exception=e,
            ) from e
        catalog = cls.from_data(data)
        logger.info("카탈로그 로드 완료 source=%s assets=%d", source, len(catalog))
        return catalog

    def get(self, asset_id: str) -> Optional[Asset]:
        return self._assets.get(str(asset_id or "").strip())

    def __contains__(self, asset_id) -> bool:
        return self.get(asset_id) is not None

    def __iter__(self) -> Iterator[Asset]:
        return iter(self._assets.values())

    def __len__(self) -> int:
        return len(self._assets)
