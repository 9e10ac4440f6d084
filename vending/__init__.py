"""디지털 상품 자판기: 체인 결제 → 서버 검증 → 만료형 다운로드 권한."""

from .catalog import Catalog
from .checkout import Checkout
from .config import Config, get_chain_settings
from .download_gate import DownloadGate, Grant
from .entitlement_store import EntitlementStore, get_entitlement_store
from .errors import FailureReason, Forbidden, VendingError
from .models import Asset, ChainKind, Entitlement, TransactionReference, VerificationResult
from .price_oracle import PriceOracle
from .session import InFlightGuard, PurchaseSession, SessionState
from .session_cache import SessionCache
from .verification import VerificationService

__version__ = "0.3.0"

__all__ = [
    "Asset",
    "Catalog",
    "ChainKind",
    "Checkout",
    "Config",
    "DownloadGate",
    "Entitlement",
    "EntitlementStore",
    "FailureReason",
    "Forbidden",
    "Grant",
    "InFlightGuard",
    "PriceOracle",
    "PurchaseSession",
    "SessionCache",
    "SessionState",
    "TransactionReference",
    "VendingError",
    "VerificationResult",
    "VerificationService",
    "get_chain_settings",
    "get_entitlement_store",
]
