# -*- coding: utf-8 -*-
"""
order_store.py

목적:
- 주문(orders)을 저장/조회하는 단일 인터페이스 제공: get / put / list_all / add / update.
- 로컬에서는 data/orders.json 파일에 저장(원자적 저장, 파일 잠금).
- 배포(Vercel)에서는 파일 쓰기가 영속적이지 않으므로,
  UPSTASH_REDIS_REST_URL / UPSTASH_REDIS_REST_TOKEN (또는 KV_REST_API_URL / KV_REST_API_TOKEN)
  이 있으면 Upstash Redis REST 의 'orders' 해시를 사용한다.
- 테스트에서는 MemoryOrderStore 를 사용한다.

동시성:
- update(order_id, mutate) 는 같은 order_id 에 대한 get -> mutate -> put 을 임계구역으로 실행한다.
  두 관리자가 동시에 confirm 해도 두 번째 호출은 반드시 최신(completed) 상태를 보게 된다.
- 저장소 장애는 StorageUnavailable, 레코드 없음은 None(get) 으로 구분한다.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from .utils import NotFound, StorageCorrupted, StorageUnavailable, get_logger, handle_errors

try:
    import fcntl
except ImportError:  # Windows: 프로세스 내부 잠금만 사용
    fcntl = None

logger = get_logger(__name__)

PENDING = "pending"
USER_CONFIRMED = "user_confirmed"
COMPLETED = "completed"

# 상태 전이 순서. 순위는 절대 감소하지 않는다.
STATUSES = (PENDING, USER_CONFIRMED, COMPLETED)
STATUS_RANK = {s: i for i, s in enumerate(STATUSES)}


class MalformedRecord(ValueError):
    """JSON 객체가 아니거나 필수 필드가 없는 저장 레코드."""


def utc_iso(now: Optional[datetime] = None) -> str:
    """UTC ISO 문자열(밀리초, Z 접미사)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Order:
    """주문 데이터. 직렬화 필드명은 id/tier/price/credits/status/createdAt/issuedToken."""

    id: str
    tier: str
    price: float
    credits: int
    status: str  # pending/user_confirmed/completed
    created_at: str
    issued_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "tier": self.tier,
            "price": self.price,
            "credits": self.credits,
            "status": self.status,
            "createdAt": self.created_at,
        }
        if self.issued_token:
            data["issuedToken"] = self.issued_token
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Order":
        if not isinstance(data, dict):
            raise MalformedRecord(f"order record is not an object: {type(data).__name__}")
        missing = [k for k in ("id", "tier", "price", "credits", "status", "createdAt") if k not in data]
        if missing:
            raise MalformedRecord(f"order record missing fields: {', '.join(missing)}")
        if data["status"] not in STATUS_RANK:
            raise MalformedRecord(f"unknown order status: {data['status']!r}")
        try:
            credits = int(data["credits"])
            float(data["price"])
        except (TypeError, ValueError) as e:
            raise MalformedRecord(f"non-numeric price/credits: {e}") from e
        return cls(
            id=str(data["id"]),
            tier=str(data["tier"]),
            price=data["price"],
            credits=credits,
            status=data["status"],
            created_at=str(data["createdAt"]),
            issued_token=data.get("issuedToken") or None,
        )


def _parse_records(raw_items) -> List[Order]:
    """(key, raw) 목록을 Order 로 변환한다. 깨진 레코드는 경고 후 제외."""
    orders = []
    for key, raw in raw_items:
        try:
            orders.append(Order.from_dict(raw))
        except MalformedRecord as e:
            logger.warning(f"잘못된 주문 레코드를 건너뜁니다 - key: {key}, 이유: {e}")
    return orders


class BaseOrderStore:
    """저장소 공통 계약 + 키 단위 잠금."""

    name = "base"

    def __init__(self) -> None:
        self._locks_guard = threading.Lock()
        # order_id -> [lock, 대기/보유 중인 스레드 수]
        self._key_locks: Dict[str, list] = {}

    @contextmanager
    def _critical_section(self, order_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._key_locks.setdefault(order_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            # 마지막 사용자가 나가면 잠금을 버린다(주문 수만큼 쌓이지 않도록)
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[order_id]

    def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    def put(self, order: Order) -> Order:
        raise NotImplementedError

    def add(self, order: Order) -> bool:
        """order.id 가 비어 있을 때만 저장한다. 충돌 시 False (덮어쓰지 않음)."""
        raise NotImplementedError

    def list_all(self) -> List[Order]:
        raise NotImplementedError

    def update(self, order_id: str, mutate: Callable[[Order], Order]) -> Order:
        """
        get -> mutate -> put 을 원자적으로 실행하고 커밋된 레코드를 반환한다.
        mutate 가 같은 레코드를 돌려주면 쓰기를 생략한다(no-op).
        """
        with self._critical_section(order_id):
            cur = self.get(order_id)
            if cur is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            new = mutate(cur)
            if new == cur:
                return cur
            self.put(new)
            return new


class MemoryOrderStore(BaseOrderStore):
    """프로세스 내부 dict 저장소(테스트/단일 프로세스용)."""

    name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._guard = threading.RLock()
        self._data: Dict[str, Any] = {}

    def get(self, order_id: str) -> Optional[Order]:
        with self._guard:
            raw = self._data.get(order_id)
        if raw is None:
            return None
        try:
            return Order.from_dict(raw)
        except MalformedRecord as e:
            raise StorageCorrupted(f"order {order_id} is unreadable: {e}") from e

    def put(self, order: Order) -> Order:
        with self._guard:
            self._data[order.id] = order.to_dict()
        return order

    def add(self, order: Order) -> bool:
        with self._guard:
            if order.id in self._data:
                return False
            self._data[order.id] = order.to_dict()
            return True

    def list_all(self) -> List[Order]:
        with self._guard:
            items = list(self._data.items())
        return _parse_records(items)


class FileOrderStore(BaseOrderStore):
    """로컬 파일 기반 주문 저장소. 파일 내용은 {order_id: order} JSON 객체."""

    name = "file"

    def __init__(self, data_dir: Path, filename: str = "orders.json"):
        super().__init__()
        self.data_dir = Path(data_dir)

        # Try to create directory
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            # If read-only (e.g. Vercel root), fallback to /tmp
            self.data_dir = Path(tempfile.gettempdir()) / "data"
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.warning(f"FileOrderStore falling back to {self.data_dir}")

        self.path = self.data_dir / filename
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._mutex = threading.RLock()
        self._depth = 0

        if not self.path.exists():
            with self._locked():
                if not self.path.exists():
                    self._write_all({})

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """프로세스 잠금 + (가능하면) 파일 잠금. 같은 스레드에서 중첩 호출 가능."""
        with self._mutex:
            if self._depth > 0 or fcntl is None:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with open(self.lock_path, "a+") as fh:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _critical_section(self, order_id: str):
        return self._locked()

    def _read_all(self) -> Dict[str, Any]:
        """orders.json 전체를 읽는다. 해석할 수 없으면 StorageCorrupted."""
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
            if not text.strip():
                return {}
            data = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageCorrupted(f"{self.path} is not valid JSON: {e}") from e
        if isinstance(data, list):
            # 이전 버전(list 형식) 호환
            return {str(o.get("id")): o for o in data if isinstance(o, dict) and "id" in o}
        if not isinstance(data, dict):
            raise StorageCorrupted(f"{self.path} must contain a JSON object")
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        """원자적으로 JSON 파일을 저장(tmp 작성 후 교체)."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    @handle_errors(stage="File Store Read")
    def get(self, order_id: str) -> Optional[Order]:
        raw = self._read_all().get(str(order_id))
        if raw is None:
            return None
        try:
            return Order.from_dict(raw)
        except MalformedRecord as e:
            raise StorageCorrupted(f"order {order_id} is unreadable: {e}") from e

    @handle_errors(stage="File Store Write")
    def put(self, order: Order) -> Order:
        with self._locked():
            data = self._read_all()
            data[order.id] = order.to_dict()
            self._write_all(data)
        return order

    @handle_errors(stage="File Store Write")
    def add(self, order: Order) -> bool:
        with self._locked():
            data = self._read_all()
            if order.id in data:
                return False
            data[order.id] = order.to_dict()
            self._write_all(data)
        return True

    @handle_errors(stage="File Store Read")
    def list_all(self) -> List[Order]:
        return _parse_records(self._read_all().items())

    @handle_errors(stage="File Store Update")
    def update(self, order_id: str, mutate: Callable[[Order], Order]) -> Order:
        return super().update(order_id, mutate)


# HGET 결과가 읽은 값과 같을 때만 HSET (compare-and-set)
CAS_SCRIPT = """
local cur = redis.call('HGET', KEYS[1], ARGV[1])
if cur == ARGV[2] then
  redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
  return 1
end
return 0
"""


class UpstashOrderStore(BaseOrderStore):
    """Upstash Redis REST 기반 주문 저장소. 하나의 해시(key)에 order_id -> JSON."""

    name = "upstash"

    def __init__(
        self,
        url: str,
        token: str,
        key: str = "orders",
        session: Optional[requests.Session] = None,
        timeout: float = 10,
        max_cas_attempts: int = 5,
    ) -> None:
        super().__init__()
        if not url or not token:
            raise ValueError("Missing UPSTASH_REDIS_REST_URL or UPSTASH_REDIS_REST_TOKEN")
        self.url = url.rstrip("/")
        self.token = token
        self.key = key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_cas_attempts = max_cas_attempts

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _command(self, *args: Any) -> Any:
        """REST 로 Redis 명령 하나를 실행하고 result 를 반환한다."""
        r = self.session.post(
            self.url, headers=self._headers(), json=[str(a) for a in args], timeout=self.timeout
        )
        try:
            data = r.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            raise StorageUnavailable(f"Upstash {args[0]} failed: {data['error']}", stage="Upstash")
        r.raise_for_status()
        return data.get("result") if isinstance(data, dict) else None

    @staticmethod
    def _decode(raw: Any) -> Any:
        # @upstash/redis 클라이언트로 쓴 값은 JSON 문자열
        if isinstance(raw, str):
            try:
                return json.loads(raw)
            except json.JSONDecodeError:
                return raw
        return raw

    @staticmethod
    def _encode(order: Order) -> str:
        return json.dumps(order.to_dict(), ensure_ascii=False)

    def _order_from_raw(self, order_id: str, raw: Any) -> Order:
        try:
            return Order.from_dict(self._decode(raw))
        except MalformedRecord as e:
            raise StorageCorrupted(f"order {order_id} is unreadable: {e}") from e

    @handle_errors(stage="Upstash Read")
    def get(self, order_id: str) -> Optional[Order]:
        raw = self._command("HGET", self.key, order_id)
        if raw is None:
            return None
        return self._order_from_raw(order_id, raw)

    @handle_errors(stage="Upstash Write")
    def put(self, order: Order) -> Order:
        self._command("HSET", self.key, order.id, self._encode(order))
        return order

    @handle_errors(stage="Upstash Write")
    def add(self, order: Order) -> bool:
        return int(self._command("HSETNX", self.key, order.id, self._encode(order)) or 0) == 1

    @handle_errors(stage="Upstash Read")
    def list_all(self) -> List[Order]:
        result = self._command("HGETALL", self.key) or []
        if isinstance(result, dict):
            items = list(result.items())
        else:
            # REST 응답은 [k1, v1, k2, v2, ...] 평탄화 목록
            items = list(zip(result[0::2], result[1::2]))
        return _parse_records((k, self._decode(v)) for k, v in items)

    @handle_errors(stage="Upstash Update")
    def update(self, order_id: str, mutate: Callable[[Order], Order]) -> Order:
        with self._critical_section(order_id):
            for attempt in range(1, self.max_cas_attempts + 1):
                raw = self._command("HGET", self.key, order_id)
                if raw is None:
                    raise NotFound(f"Order {order_id} not found", order_id=order_id)
                cur = self._order_from_raw(order_id, raw)
                new = mutate(cur)
                if new == cur:
                    return cur
                swapped = self._command(
                    "EVAL", CAS_SCRIPT, 1, self.key, order_id, raw, self._encode(new)
                )
                if int(swapped or 0) == 1:
                    return new
                logger.info(
                    f"동시 수정 감지, 다시 시도합니다 - Order ID: {order_id}, attempt {attempt}/{self.max_cas_attempts}"
                )
        raise StorageUnavailable(
            f"Order {order_id} kept changing during update",
            order_id=order_id,
            stage="Upstash Update",
        )


def get_order_store(config) -> BaseOrderStore:
    """환경에 맞는 주문 저장소를 선택."""
    kind = (getattr(config, "ORDER_STORE", "") or "").strip().lower()
    up_url = getattr(config, "UPSTASH_URL", "")
    up_token = getattr(config, "UPSTASH_TOKEN", "")
    if not kind:
        kind = "upstash" if (up_url and up_token) else "file"

    if kind == "memory":
        store = MemoryOrderStore()
    elif kind == "file":
        store = FileOrderStore(data_dir=Path(config.DATA_DIR))
    elif kind == "upstash":
        store = UpstashOrderStore(
            url=up_url, token=up_token, key=getattr(config, "UPSTASH_ORDERS_KEY", "orders")
        )
    elif kind == "sql":
        from .sql_store import SqlOrderStore

        store = SqlOrderStore(config.DATABASE_URL)
    else:
        raise ValueError(f"unknown ORDER_STORE: {kind}")

    logger.info(f"주문 저장소 선택: {store.name}")
    return store
