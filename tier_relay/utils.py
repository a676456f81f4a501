import logging
import os
from functools import wraps

import requests
from sqlalchemy.exc import SQLAlchemyError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_file: str = None, level=logging.INFO) -> None:
    """파일 + 콘솔 로거를 설정합니다. log_file 이 없으면 콘솔만 사용합니다."""
    handlers = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def get_logger(name):
    """이름을 기준으로 로거 인스턴스를 반환합니다."""
    return logging.getLogger(name)


logger = get_logger(__name__)


class OrderError(Exception):
    """주문 처리 오류의 공통 기반 클래스 (kind + 사람이 읽는 메시지).

    transport 계층은 kind/http_status 만 보고 응답 코드를 결정한다.
    """

    kind = "OrderError"
    http_status = 500

    def __init__(self, message, order_id=None, original_exception=None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.original_exception = original_exception

    def to_dict(self):
        return {"ok": False, "error": self.kind, "message": self.message}


class InvalidInput(OrderError):
    kind = "InvalidInput"
    http_status = 400


class NotFound(OrderError):
    kind = "NotFound"
    http_status = 404


class AlreadyCompleted(OrderError):
    kind = "AlreadyCompleted"
    http_status = 400


class Unauthorized(OrderError):
    kind = "Unauthorized"
    http_status = 401


class InvalidSignature(Unauthorized):
    """바우처 서명 불일치 또는 형식 오류."""


class VoucherExpired(Unauthorized):
    """바우처 만료. 새 바우처를 받아야 한다."""


class StorageUnavailable(OrderError):
    """저장소(파일/네트워크/DB) 일시 장애. 재시도 여부는 호출자가 결정한다."""

    kind = "StorageUnavailable"
    http_status = 503

    def __init__(self, message, order_id=None, original_exception=None, stage="Unknown"):
        super().__init__(message, order_id=order_id, original_exception=original_exception)
        self.stage = stage
        logger.error(
            f"[StorageUnavailable] Stage: {self.stage}, Order ID: {self.order_id}, Message: {self.message}, Original: {self.original_exception}"
        )


class IdAllocationFailed(OrderError):
    kind = "IdAllocationFailed"
    http_status = 503


class StorageCorrupted(RuntimeError):
    """저장된 데이터를 해석할 수 없음. 복구 불가능한 치명적 상태."""

    kind = "StorageCorrupted"
    http_status = 500


INFRA_EXCEPTIONS = (OSError, requests.RequestException, SQLAlchemyError)


def handle_errors(stage):
    """
    저장소 메서드에서 발생한 인프라 예외를 StorageUnavailable 로 캡슐화하는 데코레이터.
    OrderError / StorageCorrupted 는 그대로 전파합니다.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            order_id = kwargs.get("order_id")
            if order_id is None and len(args) > 1 and isinstance(args[1], str):
                order_id = args[1]
            try:
                return func(*args, **kwargs)
            except (OrderError, StorageCorrupted):
                raise
            except INFRA_EXCEPTIONS as e:
                raise StorageUnavailable(
                    f"'{func.__name__}' 실행 중 저장소 오류: {e}",
                    order_id=order_id,
                    original_exception=e,
                    stage=stage,
                ) from e

        return wrapper

    return decorator
