import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from .models import ChainKind

logger = logging.getLogger(__name__)

# .env 파일에서 환경 변수 로드 (이미 설정된 값은 덮어쓰지 않음)
PROJECT_ROOT = Path(__file__).resolve().parents[1]
for _cand in (PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"):
    if _cand.exists():
        load_dotenv(dotenv_path=str(_cand), override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw, 10) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Config:
    """환경 변수 기반 설정. 인스턴스를 만들 때마다 현재 환경을 다시 읽는다."""

    def __init__(self):
        # 데이터/콘텐츠 경로
        self.DATA_DIR = Path(os.getenv("DATA_DIR") or PROJECT_ROOT / "data")
        self.CATALOG_PATH = os.getenv("CATALOG_PATH") or str(PROJECT_ROOT / "assets.json")
        self.CONTENT_DIR = Path(os.getenv("CONTENT_DIR") or PROJECT_ROOT / "content")
        # 로그 파일 경로
        self.LOG_FILE = os.getenv("LOG_FILE") or str(PROJECT_ROOT / "logs" / "vending.log")

        # 다운로드 토큰 정책
        self.DOWNLOAD_TOKEN_TTL_SECONDS = _env_int("DOWNLOAD_TOKEN_TTL_SECONDS", 3600)
        # 0이면 유효기간 내 무제한 다운로드, 1 이상이면 사용 횟수 제한
        self.DOWNLOAD_TOKEN_MAX_USES = _env_int("DOWNLOAD_TOKEN_MAX_USES", 0)

        # 저장소: file | sql | upstash (비어 있으면 환경에 맞게 자동 선택)
        self.STORE_BACKEND = (os.getenv("STORE_BACKEND") or "").strip().lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL") or ""
        self.UPSTASH_REDIS_REST_URL = (os.getenv("UPSTASH_REDIS_REST_URL") or "").strip()
        self.UPSTASH_REDIS_REST_TOKEN = (os.getenv("UPSTASH_REDIS_REST_TOKEN") or "").strip()
        self.UPSTASH_NAMESPACE = os.getenv("UPSTASH_NAMESPACE") or "vending"

        # 네트워크 호출 타임아웃/재시도
        self.RPC_TIMEOUT_SECONDS = _env_float("RPC_TIMEOUT_SECONDS", 10.0)
        self.MIN_CONFIRMATIONS = _env_int("MIN_CONFIRMATIONS", 1)
        self.CONFIRMATION_TIMEOUT_SECONDS = _env_float("CONFIRMATION_TIMEOUT_SECONDS", 180.0)
        self.CONFIRMATION_POLL_SECONDS = _env_float("CONFIRMATION_POLL_SECONDS", 2.0)
        self.VERIFY_TIMEOUT_SECONDS = _env_float("VERIFY_TIMEOUT_SECONDS", 20.0)
        self.VERIFY_MAX_RETRIES = _env_int("VERIFY_MAX_RETRIES", 3)
        self.RETRY_BACKOFF_SECONDS = _env_float("RETRY_BACKOFF_SECONDS", 1.0)

        # 서버
        self.API_BASE_URL = (os.getenv("API_BASE_URL") or "http://127.0.0.1:5000").rstrip("/")
        self.PAYMENT_HOST = os.getenv("PAYMENT_HOST") or "127.0.0.1"
        self.PAYMENT_PORT = _env_int("PAYMENT_PORT", 5000)
        self.ADMIN_API_KEY = os.getenv("ADMIN_API_KEY") or ""

        # 가격 티커 (참고용)
        self.PRICE_API_URL = os.getenv("PRICE_API_URL") or "https://api.coingecko.com/api/v3/simple/price"
        self.PRICE_CACHE_MAX_AGE_SECONDS = _env_int("PRICE_CACHE_MAX_AGE_SECONDS", 24 * 60 * 60)

        # 클라이언트 세션 캐시
        self.SESSION_CACHE_PATH = os.getenv("SESSION_CACHE_PATH") or str(
            self.DATA_DIR / "session_tokens.json"
        )

    def validate(self) -> List[str]:
        """필수 설정 누락 여부를 확인하고 경고만 남긴다(부분 동작 허용)."""
        missing = []
        for kind in ChainKind:
            if not get_chain_settings(kind).merchant_address:
                missing.append(f"{kind.value.upper()}_MERCHANT_ADDRESS")
        if missing:
            logger.warning("필수 환경 변수가 누락되었습니다: %s. .env 파일을 확인해주세요.", ", ".join(missing))
        return missing


@dataclass(frozen=True)
class ChainSettings:
    """체인별 결제 설정."""

    kind: ChainKind
    rpc_url: str
    merchant_address: str
    chain_id: int = 0
    chain_name: str = ""
    currency_symbol: str = ""
    explorer_url: str = ""
    api_key: str = ""
    price_ids: List[str] = field(default_factory=list)


def get_chain_settings(kind: ChainKind) -> ChainSettings:
    """환경변수 기반 체인별 결제 설정."""
    if kind is ChainKind.EVM:
        chain_id = _env_int("EVM_CHAIN_ID", 137)
        rpc_url = (os.getenv("EVM_RPC_URL") or "").strip()
        if not rpc_url and chain_id == 137:
            rpc_url = "https://polygon-rpc.com"
        if not rpc_url and chain_id == 1:
            rpc_url = "https://eth.llamarpc.com"
        if not rpc_url and chain_id == 8453:
            rpc_url = "https://mainnet.base.org"
        return ChainSettings(
            kind=kind,
            rpc_url=rpc_url,
            merchant_address=(os.getenv("EVM_MERCHANT_ADDRESS") or "").strip(),
            chain_id=chain_id,
            chain_name=os.getenv("EVM_CHAIN_NAME") or "Polygon Mainnet",
            currency_symbol=os.getenv("EVM_CURRENCY_SYMBOL") or "POL",
            explorer_url=(os.getenv("EVM_EXPLORER_URL") or "https://polygonscan.com").rstrip("/"),
            price_ids=_split(os.getenv("EVM_PRICE_IDS") or "polygon-ecosystem-token,matic-network"),
        )
    if kind is ChainKind.SOLANA:
        return ChainSettings(
            kind=kind,
            rpc_url=(os.getenv("SOLANA_RPC_URL") or "https://api.mainnet-beta.solana.com").strip(),
            merchant_address=(os.getenv("SOLANA_MERCHANT_ADDRESS") or "").strip(),
            chain_name="Solana",
            currency_symbol="SOL",
            explorer_url=(os.getenv("SOLANA_EXPLORER_URL") or "https://solscan.io").rstrip("/"),
            price_ids=_split(os.getenv("SOLANA_PRICE_IDS") or "solana"),
        )
    return ChainSettings(
        kind=kind,
        rpc_url=(os.getenv("TRON_API_URL") or "https://api.trongrid.io").strip().rstrip("/"),
        merchant_address=(os.getenv("TRON_MERCHANT_ADDRESS") or "").strip(),
        chain_id=_env_int("TRON_CHAIN_ID", 728126428),
        chain_name="Tron",
        currency_symbol="TRX",
        explorer_url=(os.getenv("TRON_EXPLORER_URL") or "https://tronscan.org/#").rstrip("/"),
        api_key=(os.getenv("TRON_API_KEY") or "").strip(),
        price_ids=_split(os.getenv("TRON_PRICE_IDS") or "tron"),
    )


def _split(raw: str) -> List[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]
