import json
import logging
import os
import time
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any

from .errors import FailureReason, VendingError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(log_file: str = None, level: int = logging.INFO) -> None:
    """파일 + 콘솔 로깅을 설정합니다. 서버/CLI 진입점에서 한 번 호출합니다."""
    handlers = [logging.StreamHandler()]
    if log_file:
        # 로그 디렉토리 생성 (존재하지 않을 경우)
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def get_logger(name):
    """이름을 기준으로 로거 인스턴스를 반환합니다."""
    return logging.getLogger(name)


logger = get_logger(__name__)


def handle_errors(stage, reason=FailureReason.BACKEND_UNAVAILABLE):
    """
    함수 실행 중 발생하는 예외를 VendingError로 캡슐화하는 데코레이터.
    저장소 I/O 등 하부 계층 오류를 일관된 사유(reason)로 보고합니다.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except VendingError:
                # 이미 VendingError인 경우 다시 캡슐화하지 않음
                raise
            except Exception as e:
                raise VendingError(
                    f"'{func.__name__}' 실행 중 오류 발생: {e}",
                    reason=reason,
                    stage=stage,
                    original_exception=e,
                ) from e

        return wrapper

    return decorator


def retry_on_failure(
    max_retries=3,
    delay_seconds=1.0,
    backoff=2.0,
    catch_exceptions=(VendingError,),
    should_retry=None,
    sleep=time.sleep,
):
    """
    실패 시 지정된 횟수만큼 지수 백오프로 재시도하는 데코레이터.
    남은 시도가 있을 때 should_retry(exc)가 False를 돌려주면 즉시 다시 발생시킵니다.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = delay_seconds
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except catch_exceptions as e:
                    logger.warning(
                        f"Attempt {attempt}/{max_retries} for {func.__name__} failed: {e}"
                    )
                    if attempt == max_retries:
                        logger.error(f"All {max_retries} attempts for {func.__name__} failed.")
                        raise
                    if should_retry is not None and not should_retry(e):
                        raise
                    sleep(delay)
                    delay *= backoff

        return wrapper

    return decorator


def utc_iso(ts: float) -> str:
    """epoch seconds -> ISO-8601 UTC 문자열."""
    return (
        datetime.fromtimestamp(ts, tz=timezone.utc)
        .isoformat(timespec="seconds")
        .replace("+00:00", "Z")
    )


def parse_iso(value: str) -> float:
    """ISO-8601 문자열 -> epoch seconds. 'Z' 접미사를 허용합니다."""
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def read_json(path: Path, default):
    """JSON 파일을 읽고 없거나 깨졌으면 default 반환."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("JSON 파일을 읽지 못했습니다: %s", path)
        return default


def atomic_write_json(path: Path, obj: Any) -> None:
    """임시 파일에 쓴 뒤 교체하여 원자적으로 JSON 파일을 저장."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)
