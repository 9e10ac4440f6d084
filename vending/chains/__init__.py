"""체인 계열별 어댑터 레지스트리."""

from typing import Dict, Optional, Type

from ..config import ChainSettings, get_chain_settings
from ..models import ChainKind
from .base import ChainAdapter, JsonRpcClient, TransferArtifact, Wallet, classify_wallet_error
from .evm import EvmAdapter
from .solana import SolanaAdapter
from .tron import TronAdapter

ADAPTERS: Dict[ChainKind, Type[ChainAdapter]] = {
    ChainKind.EVM: EvmAdapter,
    ChainKind.SOLANA: SolanaAdapter,
    ChainKind.TRON: TronAdapter,
}


def get_adapter(
    kind,
    settings: Optional[ChainSettings] = None,
    wallet: Optional[Wallet] = None,
    **kwargs,
) -> ChainAdapter:
    """ChainKind(또는 문자열)에 맞는 어댑터를 만든다. settings가 없으면 환경변수에서 읽는다."""
    kind = kind if isinstance(kind, ChainKind) else ChainKind.parse(kind)
    settings = settings or get_chain_settings(kind)
    return ADAPTERS[kind](settings, wallet=wallet, **kwargs)


__all__ = [
    "ADAPTERS",
    "ChainAdapter",
    "EvmAdapter",
    "JsonRpcClient",
    "SolanaAdapter",
    "TransferArtifact",
    "TronAdapter",
    "Wallet",
    "classify_wallet_error",
    "get_adapter",
]
