# -*- coding: utf-8 -*-
"""
backend/payment_server.py

목적:
- "체인 결제 → 서버 검증 → 토큰 발급 → 다운로드" 플로우의 Flask API 서버.
- 서버는 클라이언트가 보낸 트랜잭션 해시만 믿고, 금액/수신자/상태는 체인에서 다시 읽는다.

제공 API:
- GET     /health
- OPTIONS /api/*  (preflight → 204)
- POST    /api/verify          {txHash, assetId, walletAddress, chainKind?, chainId?}
- GET     /api/download?token=...[&assetId=...]
- GET     /api/price?chainKind=evm
- POST    /api/admin/revoke    (X-Admin-Key, ADMIN_API_KEY 없으면 404)

실행:
- vending-server --port 5000
- vending-server --purge-expired   (만료/폐기 토큰 정리 후 종료)
"""

from __future__ import annotations

import argparse
import hmac
import logging
import sys
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request, send_file

from vending.catalog import Catalog
from vending.config import Config
from vending.download_gate import DownloadGate
from vending.entitlement_store import EntitlementStore, get_entitlement_store
from vending.errors import FailureReason, VendingError, remediation_for
from vending.models import ChainKind, TransactionReference, VerificationResult
from vending.price_oracle import PriceOracle
from vending.utils import configure_logging
from vending.verification import VerificationService

logger = logging.getLogger(__name__)

# 실패 사유 → HTTP 상태
STATUS_BY_REASON: Dict[FailureReason, int] = {
    FailureReason.INVALID_REQUEST: 400,
    FailureReason.WRONG_NETWORK: 400,
    FailureReason.ASSET_UNKNOWN: 404,
    FailureReason.TRANSACTION_ALREADY_USED: 409,
    FailureReason.AMOUNT_MISMATCH: 422,
    FailureReason.WRONG_RECIPIENT: 422,
    FailureReason.TRANSACTION_FAILED: 422,
    FailureReason.PAYER_MISMATCH: 422,
    FailureReason.TOKEN_UNKNOWN: 403,
    FailureReason.TOKEN_EXPIRED: 403,
    FailureReason.ASSET_MISMATCH: 403,
    FailureReason.DOWNLOAD_LIMIT_REACHED: 403,
    FailureReason.ASSET_FILE_MISSING: 404,
    FailureReason.BACKEND_UNAVAILABLE: 503,
    FailureReason.TRANSACTION_PENDING: 503,
    FailureReason.UNCONFIGURED_MERCHANT: 503,
}

RETRY_AFTER_SECONDS = "5"


# -----------------------------
# 유틸: CORS/에러 응답
# -----------------------------


def _cors(resp: Response) -> Response:
    """CORS 헤더를 부착합니다."""
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization,X-Admin-Key"
    return resp


def _error(reason: FailureReason, detail: str = "", status: Optional[int] = None):
    status = status or STATUS_BY_REASON.get(reason, 500)
    body: Dict[str, Any] = {"ok": False, "error": reason.value, "message": remediation_for(reason)}
    if detail:
        body["detail"] = detail
    resp = jsonify(body)
    resp.status_code = status
    if status == 503:
        resp.headers["Retry-After"] = RETRY_AFTER_SECONDS
    return resp


def _bad_request(detail: str):
    return _error(FailureReason.INVALID_REQUEST, detail)


# -----------------------------
# 앱 팩토리
# -----------------------------


def create_app(
    config: Optional[Config] = None,
    catalog: Optional[Catalog] = None,
    store: Optional[EntitlementStore] = None,
    verifier: Optional[VerificationService] = None,
    price_oracle: Optional[PriceOracle] = None,
) -> Flask:
    """Flask 앱 생성. 테스트에서는 가짜 어댑터/저장소를 주입한다."""
    config = config or Config()
    catalog = catalog or Catalog.load(config.CATALOG_PATH)
    store = store or get_entitlement_store(config)
    verifier = verifier or VerificationService(catalog, store, ttl_seconds=config.DOWNLOAD_TOKEN_TTL_SECONDS)
    price_oracle = price_oracle or PriceOracle(
        config.DATA_DIR / "price_cache.json",
        api_url=config.PRICE_API_URL,
        max_age_seconds=config.PRICE_CACHE_MAX_AGE_SECONDS,
    )
    gate = DownloadGate(store, catalog, config.CONTENT_DIR, max_uses=config.DOWNLOAD_TOKEN_MAX_USES)

    app = Flask(__name__)
    app.config["VENDING"] = config
    app.extensions["vending"] = {
        "catalog": catalog,
        "store": store,
        "verifier": verifier,
        "gate": gate,
        "price_oracle": price_oracle,
    }

    @app.before_request
    def _handle_options():
        """OPTIONS preflight를 공통 처리하여 405를 방지합니다."""
        if request.method == "OPTIONS":
            return Response(status=204)

    app.after_request(_cors)

    @app.errorhandler(VendingError)
    def _vending_error(e: VendingError):
        return _error(e.reason, e.message)

    # -----------------------------
    # 라우트
    # -----------------------------

    @app.get("/health")
    def health():
        """헬스 체크"""
        return jsonify(
            {
                "ok": True,
                "service": "vending",
                "store": type(store).__name__,
                "assets": len(catalog),
            }
        )

    @app.post("/api/verify")
    def verify():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _bad_request("JSON body required")

        tx_hash = str(body.get("txHash") or "").strip()
        asset_id = str(body.get("assetId") or "").strip()
        wallet = str(body.get("walletAddress") or "").strip()
        if not tx_hash or not asset_id or not wallet:
            return _bad_request("txHash, assetId and walletAddress are required")
        try:
            kind = ChainKind.parse(body.get("chainKind") or "evm")
        except ValueError:
            return _bad_request(f"unknown chainKind: {body.get('chainKind')}")

        adapter = verifier.adapter(kind)
        if not adapter.is_valid_address(wallet):
            return _bad_request(f"invalid {kind.value} wallet address")

        result: VerificationResult = verifier.verify(
            TransactionReference(kind, tx_hash),
            asset_id,
            claimed_payer=wallet,
            claimed_chain_kind=kind,
            chain_id=body.get("chainId"),
        )
        if not result.valid:
            return _error(result.reason, result.message)

        ent = result.entitlement
        return jsonify(
            {
                "ok": True,
                "downloadToken": ent.token,
                "expiresAt": ent.expires_at_iso,
                "assetId": ent.asset_id,
                "alreadyVerified": result.already_verified,
                "explorerUrl": adapter.explorer_tx_url(adapter.normalize_tx_hash(tx_hash)),
            }
        )

    @app.get("/api/download")
    def download():
        """
        토큰 기반 다운로드.
        쿼리:
          ?token=...&assetId=...(선택)
        """
        token = str(request.args.get("token") or "").strip()
        if not token:
            return _error(FailureReason.TOKEN_UNKNOWN, "missing token")
        grant = gate.authorize(token, request.args.get("assetId") or None)
        return send_file(str(grant.path), as_attachment=True, download_name=grant.filename)

    @app.get("/api/price")
    def price():
        try:
            kind = ChainKind.parse(request.args.get("chainKind") or "evm")
        except ValueError:
            return _bad_request(f"unknown chainKind: {request.args.get('chainKind')}")
        quote = price_oracle.quote(kind)
        return jsonify({"ok": True, **quote.to_dict()})

    @app.post("/api/admin/revoke")
    def admin_revoke():
        if not config.ADMIN_API_KEY:
            return jsonify({"ok": False, "error": "not_found"}), 404
        supplied = request.headers.get("X-Admin-Key") or ""
        if not hmac.compare_digest(supplied, config.ADMIN_API_KEY):
            return jsonify({"ok": False, "error": "unauthorized"}), 403
        body = request.get_json(silent=True) or {}
        token = str(body.get("token") or "").strip()
        if not token:
            return _bad_request("token required")
        if not store.revoke(token):
            return jsonify({"ok": False, "error": FailureReason.TOKEN_UNKNOWN.value}), 404
        return jsonify({"ok": True, "revoked": True})

    return app


# -----------------------------
# 엔트리포인트
# -----------------------------


def main(argv=None) -> int:
    """서버 실행(기본 5000, 환경변수 PAYMENT_PORT 또는 --port로 변경 가능)"""
    config = Config()
    parser = argparse.ArgumentParser(description="Digital goods vending payment server")
    parser.add_argument("--host", default=config.PAYMENT_HOST)
    parser.add_argument("--port", type=int, default=config.PAYMENT_PORT)
    parser.add_argument("--purge-expired", action="store_true", help="만료/폐기된 토큰을 정리하고 종료")
    args = parser.parse_args(argv)

    configure_logging(config.LOG_FILE)
    config.validate()

    if args.purge_expired:
        removed = get_entitlement_store(config).purge_expired()
        logger.info("만료 토큰 정리 완료: %d건", removed)
        return 0

    app = create_app(config)
    logger.info("결제 서버 시작 http://%s:%s", args.host, args.port)
    app.run(host=args.host, port=args.port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
