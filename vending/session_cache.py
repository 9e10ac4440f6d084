# -*- coding: utf-8 -*-
"""
vending/session_cache.py

목적:
- 클라이언트가 받은 다운로드 토큰을 assetId별로 보관하는 세션 캐시.
- 결제 증거가 아니며(서버가 매번 다시 검증) 만료된 항목은 로드/조회 시 버린다.
- path가 주어지면 JSON 파일로 유지(브라우저 sessionStorage 역할).
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Union

from .utils import atomic_write_json, parse_iso, read_json, utc_iso

logger = logging.getLogger(__name__)


def _expiry_ts(value) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return parse_iso(value)
    except ValueError:
        return None


class SessionCache:
    def __init__(self, path: Optional[Union[str, Path]] = None, clock=time.time):
        self.path = Path(path) if path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, Dict[str, str]] = {}
        self._load()

    def _alive(self, entry: Dict[str, str]) -> bool:
        # 만료 시각이 없거나 해석할 수 없는 항목은 신뢰하지 않는다
        ts = _expiry_ts(entry.get("expiresAt"))
        return bool(entry.get("token")) and ts is not None and ts > self._clock()

    def _load(self) -> None:
        if self.path is None:
            return
        raw = read_json(self.path, [])
        if not isinstance(raw, list):
            return
        for item in raw:
            if isinstance(item, dict) and item.get("assetId") and self._alive(item):
                self._tokens[str(item["assetId"])] = {
                    "token": str(item["token"]),
                    "expiresAt": str(item["expiresAt"]),
                }

    def _save(self) -> None:
        if self.path is None:
            return
        arr = [{"assetId": k, **v} for k, v in self._tokens.items()]
        atomic_write_json(self.path, arr)

    def set_download_token(self, asset_id: str, token: str, expires_at) -> None:
        ts = _expiry_ts(expires_at)
        expires_iso = utc_iso(ts) if ts is not None else ""
        with self._lock:
            self._tokens[asset_id] = {"token": token, "expiresAt": expires_iso}
            self._save()

    def get_download_token(self, asset_id: str) -> Optional[str]:
        """살아있는 토큰만 반환. 만료된 항목은 이 시점에 제거."""
        with self._lock:
            entry = self._tokens.get(asset_id)
            if entry is None:
                return None
            if not self._alive(entry):
                logger.info("만료된 캐시 토큰 제거 asset=%s", asset_id)
                del self._tokens[asset_id]
                self._save()
                return None
            return entry["token"]

    def has_token(self, asset_id: str) -> bool:
        return self.get_download_token(asset_id) is not None

    def clear(self, asset_id: Optional[str] = None) -> None:
        with self._lock:
            if asset_id is None:
                self._tokens.clear()
            else:
                self._tokens.pop(asset_id, None)
            self._save()
