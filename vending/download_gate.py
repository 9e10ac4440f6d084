# -*- coding: utf-8 -*-
"""
vending/download_gate.py

목적:
- 다운로드 요청마다 토큰을 검증하고 실제 파일 경로를 허가(Grant)한다.
- 기본은 유효기간 내 반복 다운로드 허용. DOWNLOAD_TOKEN_MAX_USES > 0 이면 허가마다 1회 차감.
- 파일은 반드시 CONTENT_DIR 내부에 있어야 한다(경로 탈출 차단).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .catalog import Catalog
from .entitlement_store import EntitlementStore
from .errors import FailureReason, Forbidden, VendingError
from .models import Entitlement

logger = logging.getLogger(__name__)


@dataclass
class Grant:
    """다운로드 허가."""

    asset_id: str
    path: Path
    filename: str
    entitlement: Optional[Entitlement] = None


def _missing(message: str) -> VendingError:
    return VendingError(message, reason=FailureReason.ASSET_FILE_MISSING, stage="DownloadGate")


class DownloadGate:
    def __init__(self, store: EntitlementStore, catalog: Catalog, content_dir: Path, max_uses: int = 0):
        self.store = store
        self.catalog = catalog
        self.content_dir = Path(content_dir)
        self.max_uses = int(max_uses or 0)

    def resolve_path(self, content_ref: str) -> Path:
        root = self.content_dir.resolve()
        path = (root / str(content_ref or "").lstrip("/\\")).resolve()
        try:
            path.relative_to(root)
        except ValueError:
            logger.error("콘텐츠 디렉토리 밖 경로 차단: %s", content_ref)
            raise _missing(f"허용되지 않은 경로: {content_ref}")
        if not content_ref or not path.is_file():
            raise _missing(f"파일이 없습니다: {path}")
        return path

    def authorize(self, token: str, asset_id: Optional[str] = None) -> Grant:
        status = self.store.validate(token)
        if not status.valid:
            raise Forbidden("다운로드 토큰 거부", reason=status.reason, stage="DownloadGate")
        if asset_id and asset_id != status.asset_id:
            raise Forbidden(
                f"다른 상품의 토큰입니다: {status.asset_id}",
                reason=FailureReason.ASSET_MISMATCH,
                stage="DownloadGate",
            )

        asset = self.catalog.get(status.asset_id)
        if asset is None:
            raise _missing(f"카탈로그에 없는 상품: {status.asset_id}")
        path = self.resolve_path(asset.content_ref)

        ent = status.entitlement
        if self.max_uses > 0:
            try:
                ent = self.store.record_use(token, self.max_uses)
            except VendingError as e:
                if e.reason is FailureReason.DOWNLOAD_LIMIT_REACHED:
                    raise Forbidden(e.message, reason=e.reason, stage="DownloadGate") from e
                raise

        logger.info("다운로드 허가 asset=%s file=%s", status.asset_id, path.name)
        return Grant(asset_id=status.asset_id, path=path, filename=path.name, entitlement=ent)
