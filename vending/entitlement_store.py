# -*- coding: utf-8 -*-
"""
vending/entitlement_store.py

목적:
- 다운로드 권한(Entitlement) 발급/조회/검증/폐기를 위한 단일 인터페이스.
- 로컬에서는 data/entitlements.json 파일(원자적 저장 + 잠금).
- DATABASE_URL이 있으면 SQLAlchemy(SQL), UPSTASH_REDIS_REST_URL/TOKEN이 있으면 Upstash Redis REST.

불변 조건(모든 백엔드 공통):
- 토큰은 secrets.token_urlsafe(32). asset/subject/시각에서 유도할 수 없다.
- 트랜잭션 키(tx_key) 하나당 권한은 평생 하나. 중복/동시 발급은 같은 권한으로 수렴하고, 만료/폐기/정리 후에도 재발급하지 않는다.
- 새 권한을 발급하면 같은 (asset, subject)의 다른 살아있는 권한은 폐기된다.
- now >= expires_at 이면 만료. 폐기된 토큰은 TokenUnknown.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy import Boolean, Column, Float, Integer, String, create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import EntitlementError, FailureReason
from .models import Entitlement, TokenStatus
from .utils import atomic_write_json, handle_errors, read_json

logger = logging.getLogger(__name__)

STAGE = "EntitlementStore"


def new_token() -> str:
    """예측 불가능한 불투명 다운로드 토큰."""
    return secrets.token_urlsafe(32)


def _already_used(tx_key: str, asset_id: str) -> EntitlementError:
    return EntitlementError(
        f"트랜잭션이 이미 다른 상품에 사용되었습니다 tx={tx_key} asset={asset_id}",
        reason=FailureReason.TRANSACTION_ALREADY_USED,
        stage=STAGE,
    )


def _spent(tx_key: str) -> EntitlementError:
    # 권한 레코드는 정리됐지만 트랜잭션은 이미 사용됨
    return EntitlementError(
        f"이미 권한이 발급되었다가 정리된 트랜잭션 tx={tx_key}",
        reason=FailureReason.TOKEN_EXPIRED,
        stage=STAGE,
    )


def _limit_reached(token: str) -> EntitlementError:
    return EntitlementError(
        f"다운로드 횟수 초과 token={token[:8]}...",
        reason=FailureReason.DOWNLOAD_LIMIT_REACHED,
        stage=STAGE,
    )


class EntitlementStore(ABC):
    """권한 저장소 공통 로직. 백엔드는 원자적 발급/조회/갱신만 구현한다."""

    def __init__(self, default_ttl: int = 3600, clock=time.time):
        self.default_ttl = int(default_ttl)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _new_entitlement(self, asset_id: str, subject: str, ttl: Optional[int], tx_key: Optional[str]) -> Entitlement:
        issued = self.now()
        return Entitlement(
            asset_id=asset_id,
            subject=subject,
            token=new_token(),
            issued_at=issued,
            expires_at=issued + int(ttl if ttl is not None else self.default_ttl),
            tx_key=tx_key,
        )

    @abstractmethod
    def issue(self, asset_id: str, subject: str, ttl: Optional[int] = None, tx_key: Optional[str] = None) -> Entitlement:
        """권한 발급. tx_key가 이미 묶여 있으면 그 권한을 상태와 무관하게 그대로 돌려준다."""

    @abstractmethod
    def get(self, token: str) -> Optional[Entitlement]:
        """토큰 원본 조회(만료/폐기 여부 무관)."""

    @abstractmethod
    def find_by_tx(self, tx_key: str) -> Optional[Entitlement]:
        """트랜잭션 키에 묶인 권한."""

    @abstractmethod
    def revoke(self, token: str) -> bool:
        """즉시 무효화. 존재하지 않으면 False."""

    @abstractmethod
    def record_use(self, token: str, max_uses: int = 0) -> Entitlement:
        """다운로드 1회 기록. max_uses > 0 이고 이미 소진했으면 DownloadLimitReached."""

    @abstractmethod
    def purge_expired(self) -> int:
        """만료/폐기된 레코드 정리. 삭제한 개수를 반환."""

    def validate(self, token: str) -> TokenStatus:
        """토큰 검증. 읽기 전용."""
        ent = self.get(token) if token else None
        if ent is None:
            return TokenStatus(valid=False, reason=FailureReason.TOKEN_UNKNOWN)
        if ent.revoked:
            return TokenStatus(valid=False, asset_id=ent.asset_id, reason=FailureReason.TOKEN_UNKNOWN)
        if ent.is_expired(self.now()):
            return TokenStatus(
                valid=False, asset_id=ent.asset_id, reason=FailureReason.TOKEN_EXPIRED, entitlement=ent
            )
        return TokenStatus(valid=True, asset_id=ent.asset_id, entitlement=ent)


# -----------------------------
# 파일 저장소
# -----------------------------

_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    # 같은 파일을 쓰는 인스턴스끼리는 잠금을 공유
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        if key not in _PATH_LOCKS:
            _PATH_LOCKS[key] = threading.RLock()
        return _PATH_LOCKS[key]


class FileEntitlementStore(EntitlementStore):
    """data/entitlements.json 기반 저장소(단일 프로세스용)."""

    def __init__(self, path: Path, default_ttl: int = 3600, clock=time.time):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.path = Path(path)
        self._lock = _lock_for(self.path)

    def _load(self) -> Dict[str, Any]:
        data = read_json(self.path, {})
        if not isinstance(data, dict):
            data = {}
        data.setdefault("entitlements", {})
        data.setdefault("tx_index", {})
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        atomic_write_json(self.path, data)

    @handle_errors(stage=STAGE)
    def issue(self, asset_id, subject, ttl=None, tx_key=None) -> Entitlement:
        with self._lock:
            data = self._load()
            ents = data["entitlements"]
            now = self.now()
            if tx_key and tx_key in data["tx_index"]:
                cur = ents.get(data["tx_index"][tx_key])
                if not cur:
                    raise _spent(tx_key)
                existing = Entitlement.from_dict(cur)
                if existing.asset_id != asset_id:
                    raise _already_used(tx_key, asset_id)
                return existing

            ent = self._new_entitlement(asset_id, subject, ttl, tx_key)
            for rec in ents.values():
                if (
                    rec.get("asset_id") == asset_id
                    and rec.get("subject") == subject
                    and not rec.get("revoked")
                    and float(rec.get("expires_at") or 0) > now
                ):
                    rec["revoked"] = True
            ents[ent.token] = ent.to_dict()
            if tx_key:
                data["tx_index"][tx_key] = ent.token
            self._save(data)
            return ent

    @handle_errors(stage=STAGE)
    def get(self, token: str) -> Optional[Entitlement]:
        with self._lock:
            rec = self._load()["entitlements"].get(token)
        return Entitlement.from_dict(rec) if rec else None

    @handle_errors(stage=STAGE)
    def find_by_tx(self, tx_key: str) -> Optional[Entitlement]:
        with self._lock:
            data = self._load()
            rec = data["entitlements"].get(data["tx_index"].get(tx_key) or "")
        return Entitlement.from_dict(rec) if rec else None

    @handle_errors(stage=STAGE)
    def revoke(self, token: str) -> bool:
        with self._lock:
            data = self._load()
            rec = data["entitlements"].get(token)
            if not rec:
                return False
            rec["revoked"] = True
            self._save(data)
        logger.info("토큰 폐기 token=%s...", token[:8])
        return True

    @handle_errors(stage=STAGE)
    def record_use(self, token: str, max_uses: int = 0) -> Entitlement:
        with self._lock:
            data = self._load()
            rec = data["entitlements"].get(token)
            if not rec:
                raise EntitlementError("알 수 없는 토큰", reason=FailureReason.TOKEN_UNKNOWN, stage=STAGE)
            if max_uses > 0 and int(rec.get("use_count") or 0) >= max_uses:
                raise _limit_reached(token)
            rec["use_count"] = int(rec.get("use_count") or 0) + 1
            self._save(data)
        return Entitlement.from_dict(rec)

    @handle_errors(stage=STAGE)
    def purge_expired(self) -> int:
        with self._lock:
            data = self._load()
            now = self.now()
            dead = [
                tok
                for tok, rec in data["entitlements"].items()
                if rec.get("revoked") or float(rec.get("expires_at") or 0) <= now
            ]
            # tx_index는 남겨 같은 트랜잭션으로 재발급되지 않게 한다
            for tok in dead:
                del data["entitlements"][tok]
            if dead:
                self._save(data)
        return len(dead)


# -----------------------------
# SQL 저장소 (SQLAlchemy)
# -----------------------------

Base = declarative_base()


class EntitlementRecord(Base):
    """다운로드 권한 테이블"""

    __tablename__ = "entitlements"
    token = Column(String(64), primary_key=True)  # 불투명 토큰
    asset_id = Column(String, nullable=False, index=True)
    subject = Column(String, nullable=False, index=True)  # 결제 지갑 주소
    tx_key = Column(String, unique=True, nullable=True)  # "{chain}:{tx_hash}"
    issued_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)

    def to_entitlement(self) -> Entitlement:
        return Entitlement(
            asset_id=self.asset_id,
            subject=self.subject,
            token=self.token,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            tx_key=self.tx_key,
            revoked=bool(self.revoked),
            use_count=int(self.use_count or 0),
        )


class SpentTransaction(Base):
    """정리된 권한의 tx_key. 같은 결제로 다시 발급하지 않기 위해 남긴다."""

    __tablename__ = "spent_transactions"
    tx_key = Column(String, primary_key=True)
    purged_at = Column(Float, nullable=False)


class SqlEntitlementStore(EntitlementStore):
    """DATABASE_URL 기반 저장소. tx_key UNIQUE 제약으로 중복 발급을 막는다."""

    def __init__(self, database_url: str, default_ttl: int = 3600, clock=time.time):
        super().__init__(default_ttl=default_ttl, clock=clock)
        kwargs: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        Base.metadata.create_all(self.engine)  # DB 스키마 생성
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        # sqlite는 동시 쓰기에 약하므로 프로세스 내 쓰기는 직렬화
        self._write_lock = threading.Lock()
        logger.info(f"SqlEntitlementStore 초기화 완료. 데이터베이스: {self.engine.url!r}")

    @handle_errors(stage=STAGE)
    def issue(self, asset_id, subject, ttl=None, tx_key=None) -> Entitlement:
        with self._write_lock:
            session = self.Session()
            try:
                now = self.now()
                if tx_key:
                    cur = session.query(EntitlementRecord).filter_by(tx_key=tx_key).first()
                    if cur is not None:
                        if cur.asset_id != asset_id:
                            raise _already_used(tx_key, asset_id)
                        return cur.to_entitlement()
                    if session.get(SpentTransaction, tx_key) is not None:
                        raise _spent(tx_key)

                ent = self._new_entitlement(asset_id, subject, ttl, tx_key)
                session.query(EntitlementRecord).filter(
                    EntitlementRecord.asset_id == asset_id,
                    EntitlementRecord.subject == subject,
                    EntitlementRecord.revoked == False,  # noqa: E712
                    EntitlementRecord.expires_at > now,
                ).update({"revoked": True}, synchronize_session=False)
                session.add(
                    EntitlementRecord(
                        token=ent.token,
                        asset_id=ent.asset_id,
                        subject=ent.subject,
                        tx_key=ent.tx_key,
                        issued_at=ent.issued_at,
                        expires_at=ent.expires_at,
                        revoked=False,
                        use_count=0,
                    )
                )
                session.commit()
                return ent
            except IntegrityError:
                # 다른 프로세스가 같은 tx_key로 먼저 발급함 -> 그 권한을 다시 읽는다
                session.rollback()
                cur = session.query(EntitlementRecord).filter_by(tx_key=tx_key).first()
                if cur is None:
                    raise
                if cur.asset_id != asset_id:
                    raise _already_used(tx_key, asset_id)
                return cur.to_entitlement()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @handle_errors(stage=STAGE)
    def get(self, token: str) -> Optional[Entitlement]:
        session = self.Session()
        try:
            rec = session.get(EntitlementRecord, token)
            return rec.to_entitlement() if rec else None
        finally:
            session.close()

    @handle_errors(stage=STAGE)
    def find_by_tx(self, tx_key: str) -> Optional[Entitlement]:
        session = self.Session()
        try:
            rec = session.query(EntitlementRecord).filter_by(tx_key=tx_key).first()
            return rec.to_entitlement() if rec else None
        finally:
            session.close()

    @handle_errors(stage=STAGE)
    def revoke(self, token: str) -> bool:
        with self._write_lock:
            session = self.Session()
            try:
                rec = session.get(EntitlementRecord, token)
                if rec is None:
                    return False
                rec.revoked = True
                session.commit()
            finally:
                session.close()
        logger.info("토큰 폐기 token=%s...", token[:8])
        return True

    @handle_errors(stage=STAGE)
    def record_use(self, token: str, max_uses: int = 0) -> Entitlement:
        with self._write_lock:
            session = self.Session()
            try:
                rec = session.get(EntitlementRecord, token)
                if rec is None:
                    raise EntitlementError("알 수 없는 토큰", reason=FailureReason.TOKEN_UNKNOWN, stage=STAGE)
                if max_uses > 0 and (rec.use_count or 0) >= max_uses:
                    raise _limit_reached(token)
                rec.use_count = (rec.use_count or 0) + 1
                session.commit()
                return rec.to_entitlement()
            finally:
                session.close()

    @handle_errors(stage=STAGE)
    def purge_expired(self) -> int:
        with self._write_lock:
            session = self.Session()
            try:
                now = self.now()
                dead = session.query(EntitlementRecord).filter(
                    (EntitlementRecord.revoked == True)  # noqa: E712
                    | (EntitlementRecord.expires_at <= now)
                )
                for rec in dead.filter(EntitlementRecord.tx_key.isnot(None)).all():
                    session.merge(SpentTransaction(tx_key=rec.tx_key, purged_at=now))
                removed = dead.delete(synchronize_session=False)
                session.commit()
                return int(removed or 0)
            finally:
                session.close()


# -----------------------------
# Upstash Redis REST 저장소
# -----------------------------


class UpstashEntitlementStore(EntitlementStore):
    """Upstash Redis REST 기반 저장소(서버리스 배포용).

    - {ns}:ent:{token}      권한 JSON, EX = 남은 유효기간 + 보존기간
    - {ns}:tx:{tx_key}      토큰, SET NX 로 최초 1회만 바인딩(만료 없음)
    - {ns}:uses:{token}     다운로드 횟수 카운터(INCR)
    - {ns}:subj:{asset}:{subject}  현재 살아있는 토큰
    """

    def __init__(
        self,
        url: str,
        token: str,
        namespace: str = "vending",
        default_ttl: int = 3600,
        retention_seconds: int = 7 * 24 * 60 * 60,
        timeout: float = 10.0,
        clock=time.time,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.url = url.rstrip("/")
        self.token = token
        self.ns = namespace
        self.retention_seconds = retention_seconds
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    def _cmd(self, *args: Any) -> Any:
        """Redis 명령 1개 실행(REST: POST [cmd, arg...])."""
        r = requests.post(
            self.url,
            headers=self._headers(),
            data=json.dumps([str(a) for a in args]),
            timeout=self.timeout,
        )
        r.raise_for_status()
        data = r.json()
        if isinstance(data, dict) and data.get("error"):
            raise RuntimeError(f"upstash error: {data['error']}")
        return data.get("result") if isinstance(data, dict) else None

    def _ent_key(self, token: str) -> str:
        return f"{self.ns}:ent:{token}"

    def _tx_key(self, tx_key: str) -> str:
        return f"{self.ns}:tx:{tx_key}"

    def _subj_key(self, asset_id: str, subject: str) -> str:
        return f"{self.ns}:subj:{asset_id}:{subject}"

    def _uses_key(self, token: str) -> str:
        return f"{self.ns}:uses:{token}"

    def _ex(self, ent: Entitlement) -> int:
        return max(1, int(ent.expires_at - self.now()) + self.retention_seconds)

    def _put(self, ent: Entitlement) -> None:
        self._cmd("SET", self._ent_key(ent.token), json.dumps(ent.to_dict()), "EX", self._ex(ent))

    def _read(self, token: str) -> Optional[Entitlement]:
        val = self._cmd("GET", self._ent_key(token))
        if not val:
            return None
        return Entitlement.from_dict(json.loads(val) if isinstance(val, str) else val)

    def _bound(self, tx_key: str, asset_id: str, token: str) -> Entitlement:
        ent = self._read(token)
        if ent is None:
            # 권한 레코드는 EX로 사라졌지만 tx 바인딩은 영구
            raise _spent(tx_key)
        if ent.asset_id != asset_id:
            raise _already_used(tx_key, asset_id)
        return ent

    @handle_errors(stage=STAGE)
    def issue(self, asset_id, subject, ttl=None, tx_key=None) -> Entitlement:
        if tx_key:
            bound = self._cmd("GET", self._tx_key(tx_key))
            if bound:
                return self._bound(tx_key, asset_id, bound)

        ent = self._new_entitlement(asset_id, subject, ttl, tx_key)
        self._put(ent)
        if tx_key and self._cmd("SET", self._tx_key(tx_key), ent.token, "NX") is None:
            # 동시 요청이 먼저 바인딩함 -> 내 레코드는 버리고 그쪽 권한을 사용
            self._cmd("DEL", self._ent_key(ent.token))
            winner = self._cmd("GET", self._tx_key(tx_key))
            if not winner:
                raise RuntimeError(f"tx binding vanished: {tx_key}")
            return self._bound(tx_key, asset_id, winner)

        prev = self._cmd("GET", self._subj_key(asset_id, subject))
        if prev and prev != ent.token:
            self.revoke(prev)
        self._cmd("SET", self._subj_key(asset_id, subject), ent.token, "EX", self._ex(ent))
        return ent

    @handle_errors(stage=STAGE)
    def get(self, token: str) -> Optional[Entitlement]:
        ent = self._read(token)
        if ent is not None:
            ent.use_count = int(self._cmd("GET", self._uses_key(token)) or 0)
        return ent

    @handle_errors(stage=STAGE)
    def find_by_tx(self, tx_key: str) -> Optional[Entitlement]:
        token = self._cmd("GET", self._tx_key(tx_key))
        return self.get(token) if token else None

    @handle_errors(stage=STAGE)
    def revoke(self, token: str) -> bool:
        ent = self._read(token)
        if ent is None:
            return False
        ent.revoked = True
        self._put(ent)
        logger.info("토큰 폐기 token=%s...", token[:8])
        return True

    @handle_errors(stage=STAGE)
    def record_use(self, token: str, max_uses: int = 0) -> Entitlement:
        ent = self._read(token)
        if ent is None:
            raise EntitlementError("알 수 없는 토큰", reason=FailureReason.TOKEN_UNKNOWN, stage=STAGE)
        # 사용 횟수는 별도 키에 INCR (동시 다운로드에도 원자적)
        count = int(self._cmd("INCR", self._uses_key(token)))
        if count == 1:
            self._cmd("EXPIRE", self._uses_key(token), self._ex(ent))
        if max_uses > 0 and count > max_uses:
            self._cmd("DECR", self._uses_key(token))
            raise _limit_reached(token)
        ent.use_count = count
        return ent

    def purge_expired(self) -> int:
        # Upstash는 EX 만료로 자동 정리
        return 0


def get_entitlement_store(config, clock=time.time) -> EntitlementStore:
    """설정에 맞는 저장소 선택. STORE_BACKEND가 비어 있으면 Upstash > SQL > 파일 순."""
    backend = config.STORE_BACKEND
    ttl = config.DOWNLOAD_TOKEN_TTL_SECONDS
    if not backend:
        if config.UPSTASH_REDIS_REST_URL and config.UPSTASH_REDIS_REST_TOKEN:
            backend = "upstash"
        elif config.DATABASE_URL:
            backend = "sql"
        else:
            backend = "file"

    if backend == "upstash":
        store = UpstashEntitlementStore(
            config.UPSTASH_REDIS_REST_URL,
            config.UPSTASH_REDIS_REST_TOKEN,
            namespace=config.UPSTASH_NAMESPACE,
            default_ttl=ttl,
            clock=clock,
        )
    elif backend == "sql":
        database_url = config.DATABASE_URL
        if not database_url:
            config.DATA_DIR.mkdir(parents=True, exist_ok=True)
            database_url = "sqlite:///" + str(config.DATA_DIR / "vending.db")
        store = SqlEntitlementStore(database_url, default_ttl=ttl, clock=clock)
    elif backend == "file":
        store = FileEntitlementStore(config.DATA_DIR / "entitlements.json", default_ttl=ttl, clock=clock)
    else:
        raise ValueError(f"unknown STORE_BACKEND: {backend}")
    logger.info("권한 저장소 선택: %s", type(store).__name__)
    return store


__all__: List[str] = [
    "EntitlementStore",
    "FileEntitlementStore",
    "SqlEntitlementStore",
    "UpstashEntitlementStore",
    "get_entitlement_store",
    "new_token",
]
