# -*- coding: utf-8 -*-
"""
vending/client.py

목적:
- 클라이언트 → 서버 POST /api/verify 호출(명시적 timeout + 제한된 재시도).
- 네트워크/5xx는 BackendUnavailable(재시도 가능), 4xx/valid:false는 VerificationRejected(재시도 무의미)로 구분.
- GET /api/download 다운로드.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from .errors import FailureReason, VendingError
from .models import TransactionReference
from .utils import retry_on_failure

logger = logging.getLogger(__name__)

STAGE = "ServerVerifying"
MAX_RETRY_AFTER_SECONDS = 30.0


@dataclass
class VerifyResponse:
    token: str
    expires_at: str
    asset_id: str
    already_verified: bool = False
    explorer_url: str = ""


def _backend_unavailable(message: str, retry: bool = True, retry_after: Optional[float] = None, exc=None) -> VendingError:
    return VendingError(
        message,
        reason=FailureReason.BACKEND_UNAVAILABLE,
        stage=STAGE,
        detail={"retry": retry, "retryAfter": retry_after},
        original_exception=exc,
    )


class VerifyClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        http=requests,
        sleep=time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self.http = http
        self._sleep = sleep

    def _wait(self, seconds: float) -> None:
        self._sleep(seconds)

    def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.http.post(f"{self.base_url}/api/verify", json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise _backend_unavailable(f"서버 연결 실패: {e}", exc=e) from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 500:
            retry_after = None
            header = resp.headers.get("Retry-After") if resp.headers else None
            if header:
                try:
                    retry_after = min(float(header), MAX_RETRY_AFTER_SECONDS)
                except ValueError:
                    retry_after = None
            raise _backend_unavailable(
                f"서버 오류 {resp.status_code}: {data.get('error') or resp.text}",
                retry_after=retry_after,
            )
        if resp.status_code != 200 or not data.get("ok", True):
            server_reason = FailureReason.parse(data.get("error"))
            raise VendingError(
                f"서버가 결제를 거부했습니다 ({resp.status_code}): {data.get('error') or resp.text}",
                reason=FailureReason.VERIFICATION_REJECTED,
                stage=STAGE,
                detail={"serverReason": server_reason.value if server_reason else data.get("error"), "status": resp.status_code},
            )
        if not data.get("downloadToken"):
            raise _backend_unavailable("Server did not return a download token.", retry=False)
        return data

    def verify(
        self,
        tx_ref: TransactionReference,
        asset_id: str,
        wallet_address: str,
        chain_id: Optional[int] = None,
    ) -> VerifyResponse:
        """검증 요청. 재시도 가능한 실패만 지수 백오프로 max_retries회까지 다시 보낸다."""
        payload: Dict[str, Any] = {
            "txHash": tx_ref.tx_hash,
            "assetId": asset_id,
            "walletAddress": wallet_address,
            "chainKind": tx_ref.chain_kind.value,
        }
        if chain_id is not None:
            payload["chainId"] = chain_id

        def _should_retry(e: VendingError) -> bool:
            if not e.detail.get("retry"):
                return False
            if e.detail.get("retryAfter"):
                # Retry-After가 백오프보다 길면 그만큼 더 기다린다
                extra = e.detail["retryAfter"] - self.backoff_seconds
                if extra > 0:
                    self._wait(extra)
            return True

        send = retry_on_failure(
            max_retries=self.max_retries,
            delay_seconds=self.backoff_seconds,
            catch_exceptions=(VendingError,),
            should_retry=_should_retry,
            sleep=self._wait,
        )(self._post_once)
        data = send(payload)
        logger.info("검증 완료 asset=%s tx=%s", asset_id, tx_ref.tx_hash)
        return VerifyResponse(
            token=str(data["downloadToken"]),
            expires_at=str(data.get("expiresAt") or ""),
            asset_id=str(data.get("assetId") or asset_id),
            already_verified=bool(data.get("alreadyVerified")),
            explorer_url=str(data.get("explorerUrl") or ""),
        )

    def download_url(self, token: str, asset_id: Optional[str] = None) -> str:
        params = {"token": token}
        if asset_id:
            params["assetId"] = asset_id
        return f"{self.base_url}/api/download?{urlencode(params)}"

    def download(self, token: str, dest_dir: Path, asset_id: Optional[str] = None) -> Path:
        """파일을 dest_dir에 저장하고 경로를 반환. 403/404는 EntitlementError 계열 사유로 변환."""
        try:
            resp = self.http.get(self.download_url(token, asset_id), stream=True, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise _backend_unavailable(f"다운로드 실패: {e}", exc=e) from e
        # stream=True 응답은 어느 경로로 끝나든 연결을 반납해야 한다
        with resp:
            if resp.status_code != 200:
                try:
                    reason = FailureReason.parse((resp.json() or {}).get("error"))
                except ValueError:
                    reason = None
                raise VendingError(
                    f"다운로드 거부 ({resp.status_code})",
                    reason=reason or FailureReason.TOKEN_UNKNOWN,
                    stage="Download",
                )
            filename = _filename_from(resp.headers.get("Content-Disposition", "")) or f"{asset_id or 'download'}.bin"
            dest = Path(dest_dir) / Path(filename).name
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
            except requests.exceptions.RequestException as e:
                raise _backend_unavailable(f"다운로드 중단: {e}", exc=e) from e
        return dest


def _filename_from(disposition: str) -> str:
    for part in disposition.split(";"):
        part = part.strip()
        if part.lower().startswith("filename="):
            return part.split("=", 1)[1].strip().strip('"')
    return ""
