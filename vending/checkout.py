# -*- coding: utf-8 -*-
"""
vending/checkout.py

목적:
- 클라이언트 측 구매 진입점. 카탈로그/세션 캐시/검증 클라이언트/진행 중 가드를 묶어
  상품별 PurchaseSession을 만들고, 캐시된 토큰으로 다운로드(downloadAsset)를 수행한다.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Union

from .catalog import Catalog
from .chains import ChainAdapter, Wallet, get_adapter
from .client import VerifyClient
from .config import Config
from .errors import EntitlementError, FailureReason, VendingError
from .models import Asset, ChainKind, TransactionReference
from .session import InFlightGuard, PurchaseSession
from .session_cache import SessionCache

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Download link expired or invalid. Please purchase again."


class Checkout:
    def __init__(
        self,
        catalog: Catalog,
        verify_client: VerifyClient,
        cache: Optional[SessionCache] = None,
        config: Optional[Config] = None,
        adapter_factory: Callable[..., ChainAdapter] = get_adapter,
        guard: Optional[InFlightGuard] = None,
    ):
        self.catalog = catalog
        self.verify_client = verify_client
        self.cache = cache or SessionCache()
        self.config = config or Config()
        self.adapter_factory = adapter_factory
        self.guard = guard or InFlightGuard()

    def _asset(self, asset_id: str) -> Asset:
        asset = self.catalog.get(asset_id)
        if asset is None:
            raise VendingError(f"알 수 없는 상품: {asset_id}", reason=FailureReason.ASSET_UNKNOWN, stage="Checkout")
        return asset

    def create_session(self, asset_id: str, wallet: Wallet, chain_kind=ChainKind.EVM) -> PurchaseSession:
        kind = chain_kind if isinstance(chain_kind, ChainKind) else ChainKind.parse(chain_kind)
        adapter = self.adapter_factory(kind, wallet=wallet, rpc_timeout=self.config.RPC_TIMEOUT_SECONDS)
        return PurchaseSession(
            asset=self._asset(asset_id),
            adapter=adapter,
            verify_client=self.verify_client,
            cache=self.cache,
            guard=self.guard,
            min_confirmations=self.config.MIN_CONFIRMATIONS,
            confirmation_timeout=self.config.CONFIRMATION_TIMEOUT_SECONDS,
            poll_interval=self.config.CONFIRMATION_POLL_SECONDS,
        )

    def purchase(self, asset_id: str, wallet: Wallet, chain_kind=ChainKind.EVM) -> PurchaseSession:
        """구매 실행. 같은 (지갑, 상품)이 진행 중이면 기존 세션을 그대로 돌려준다."""
        return self.create_session(asset_id, wallet, chain_kind).run()

    def verify_transaction(
        self,
        asset_id: str,
        tx_hash: str,
        payer: str,
        chain_kind=ChainKind.EVM,
        wallet: Optional[Wallet] = None,
    ) -> PurchaseSession:
        """이미 전송된 트랜잭션을 다시 확인/검증(확인 시간 초과 후 복구용)."""
        session = self.create_session(asset_id, wallet, chain_kind)
        session.payer = payer
        session.tx_ref = TransactionReference(session.chain_kind, session.adapter.normalize_tx_hash(tx_hash))
        session.explorer_url = session.adapter.explorer_tx_url(session.tx_ref.tx_hash)
        return session.resume()

    def has_download(self, asset_id: str) -> bool:
        return self.cache.has_token(asset_id)

    def download_asset(self, asset_id: str, dest_dir: Optional[Union[str, Path]] = None) -> Union[str, Path]:
        """캐시된 살아있는 토큰으로만 다운로드. dest_dir가 없으면 다운로드 URL을 돌려준다."""
        token = self.cache.get_download_token(asset_id)
        if not token:
            raise EntitlementError(EXPIRED_MESSAGE, reason=FailureReason.TOKEN_EXPIRED, stage="Download")
        if dest_dir is None:
            return self.verify_client.download_url(token)
        try:
            return self.verify_client.download(token, Path(dest_dir), asset_id)
        except VendingError as e:
            if e.reason in (FailureReason.TOKEN_EXPIRED, FailureReason.TOKEN_UNKNOWN):
                # 서버가 거부한 토큰은 캐시에서도 버린다
                self.cache.clear(asset_id)
            raise
