# -*- coding: utf-8 -*-
"""
tier_relay/lifecycle.py

목적:
- 주문 상태 머신과 입력 검증을 담당한다. 저장은 전부 OrderStore 에 위임한다.

상태 전이:
  pending -> user_confirmed -> completed
  pending -> completed          (관리자는 사용자 확인 없이도 완료 처리 가능)
  completed 는 종착 상태이며 어떤 전이도 허용하지 않는다.

제공 연산:
- create_order(tier | voucher) -> {id, price}
- user_confirm_payment(id)     -> {success}      (멱등)
- get_status(id)               -> {status, credits}
- list_actionable(authorized)  -> [order, ...]  (createdAt 내림차순)
- confirm_order(id, authorized)-> {success, message}  (멱등 아님: 두 번째는 AlreadyCompleted)
- generate_voucher(tier)       -> {voucher, ...} (voucher 모드 전용, 저장소 쓰기 없음)

관리자 인증은 transport 계층이 판단한 bool(authorized)만 받는다.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .catalog import Tier, TierCatalog
from .identifiers import NUMERIC, new_order_id
from .order_store import (
    COMPLETED,
    PENDING,
    USER_CONFIRMED,
    BaseOrderStore,
    Order,
    get_order_store,
    utc_iso,
)
from .utils import AlreadyCompleted, IdAllocationFailed, InvalidInput, NotFound, Unauthorized, get_logger
from .vouchers import VoucherSigner

logger = get_logger(__name__)

ACTIONABLE_STATUSES = (PENDING, USER_CONFIRMED)

# (from, to). completed 에서 나가는 전이는 없다.
ALLOWED_TRANSITIONS = frozenset(
    [
        (PENDING, USER_CONFIRMED),
        (USER_CONFIRMED, COMPLETED),
        (PENDING, COMPLETED),
    ]
)
DEFAULT_MAX_ID_ATTEMPTS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_created_at(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _transition(order: Order, target: str) -> Order:
    """허용된 전이만 수행한다. 뒤로 가는 전이는 없다."""
    if (order.status, target) not in ALLOWED_TRANSITIONS:
        raise ValueError(f"illegal transition {order.status} -> {target}")
    return replace(order, status=target)


class DirectTierResolver:
    """요청의 티어 키를 그대로 카탈로그에서 찾는다."""

    mode = "direct"

    def __init__(self, catalog: TierCatalog):
        self.catalog = catalog

    def resolve(self, value: Any) -> Tuple[Tier, Optional[str]]:
        tier = self.catalog.get(value)
        if tier is None:
            raise InvalidInput("Invalid tier selected")
        return tier, None


class VoucherTierResolver:
    """서명 바우처를 검증해 티어를 꺼낸다. 바우처 문자열은 issuedToken 으로 주문에 남는다."""

    mode = "voucher"

    def __init__(self, catalog: TierCatalog, signer: VoucherSigner):
        self.catalog = catalog
        self.signer = signer

    def resolve(self, value: Any) -> Tuple[Tier, Optional[str]]:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInput("voucher is required")
        payload = self.signer.verify(value.strip())
        tier = self.catalog.get(payload["tier"])
        if tier is None:
            raise InvalidInput(f"Voucher tier '{payload['tier']}' is no longer offered")
        return tier, value.strip()

    def issue(self, tier_key: Any) -> Dict[str, Any]:
        tier = self.catalog.get(tier_key)
        if tier is None:
            raise InvalidInput("Invalid tier selected")
        issued = self.signer.issue(tier.key)
        expires_at = datetime.fromtimestamp(issued["exp"], tz=timezone.utc)
        return {
            "voucher": issued["voucher"],
            "tier": tier.key,
            "price": tier.price,
            "credits": tier.credits,
            "expiresAt": utc_iso(expires_at),
        }


class OrderLifecycle:
    """주문 생명주기. 카탈로그/저장소/생성 전략은 생성 시점에 주입된다."""

    def __init__(
        self,
        store: BaseOrderStore,
        catalog: Optional[TierCatalog] = None,
        *,
        resolver=None,
        id_style: str = NUMERIC,
        id_factory: Optional[Callable[[], str]] = None,
        allow_user_confirm: bool = True,
        max_id_attempts: int = DEFAULT_MAX_ID_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.catalog = catalog if catalog is not None else TierCatalog()
        self.resolver = resolver or DirectTierResolver(self.catalog)
        self.id_factory = id_factory or (lambda: new_order_id(id_style))
        self.allow_user_confirm = allow_user_confirm
        self.max_id_attempts = max_id_attempts
        self._clock = clock

    @classmethod
    def from_config(cls, config, store: Optional[BaseOrderStore] = None) -> "OrderLifecycle":
        catalog = TierCatalog.from_json(getattr(config, "TIERS_JSON", ""))
        mode = (getattr(config, "CREATION_MODE", "direct") or "direct").lower()
        if mode == "voucher":
            signer = VoucherSigner(config.VOUCHER_SECRET, ttl_seconds=config.VOUCHER_TTL_SECONDS)
            resolver = VoucherTierResolver(catalog, signer)
        elif mode == "direct":
            resolver = DirectTierResolver(catalog)
        else:
            raise ValueError(f"unknown CREATION_MODE: {mode}")
        return cls(
            store or get_order_store(config),
            catalog,
            resolver=resolver,
            id_style=getattr(config, "ORDER_ID_STYLE", NUMERIC),
            allow_user_confirm=getattr(config, "ENABLE_USER_CONFIRM", True),
        )

    @property
    def creation_mode(self) -> str:
        return self.resolver.mode

    @staticmethod
    def _require_id(order_id: Any) -> str:
        if order_id is None or not str(order_id).strip():
            raise InvalidInput("id is required")
        return str(order_id).strip()

    def _load(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    # -----------------------------
    # 클라이언트(플러그인) 연산
    # -----------------------------

    def create_order(self, value: Any) -> Dict[str, Any]:
        """티어 키(또는 바우처)로 새 pending 주문을 만들고 {id, price} 를 반환한다."""
        tier, token = self.resolver.resolve(value)
        created_at = utc_iso(self._clock())

        for attempt in range(1, self.max_id_attempts + 1):
            order = Order(
                id=self.id_factory(),
                tier=tier.key,
                price=tier.price,
                credits=tier.credits,
                status=PENDING,
                created_at=created_at,
                issued_token=token,
            )
            if self.store.add(order):
                logger.info(f"주문 생성 - ID: {order.id}, 티어: {tier.key}, 가격: {tier.price}")
                return {"id": order.id, "price": order.price}
            logger.warning(
                f"주문 ID 충돌, 다시 생성합니다 - ID: {order.id} ({attempt}/{self.max_id_attempts})"
            )

        raise IdAllocationFailed(
            f"Could not allocate a unique order id after {self.max_id_attempts} attempts"
        )

    def user_confirm_payment(self, order_id: Any) -> Dict[str, Any]:
        """사용자 '결제했어요' 신고. pending 일 때만 user_confirmed 로 전진하고, 그 외에는 no-op."""
        if not self.allow_user_confirm:
            raise InvalidInput("User payment confirmation is disabled")
        order_id = self._require_id(order_id)

        def _self_confirm(order: Order) -> Order:
            if order.status == PENDING:
                return _transition(order, USER_CONFIRMED)
            return order

        order = self.store.update(order_id, _self_confirm)
        logger.info(f"사용자 결제 확인 - ID: {order_id}, 상태: {order.status}")
        return {"success": True}

    def get_status(self, order_id: Any) -> Dict[str, Any]:
        order = self._load(self._require_id(order_id))
        return {"status": order.status, "credits": order.credits}

    # -----------------------------
    # 관리자 연산
    # -----------------------------

    def list_actionable(self, *, authorized: bool) -> List[Dict[str, Any]]:
        """확인 대기 주문을 최신순으로 반환한다."""
        if not authorized:
            raise Unauthorized("Unauthorized: Invalid password")

        actionable = []
        for order in self.store.list_all():
            if order.status not in ACTIONABLE_STATUSES:
                continue
            try:
                created = _parse_created_at(order.created_at)
            except ValueError:
                logger.warning(f"createdAt 을 해석할 수 없어 제외합니다 - ID: {order.id}")
                continue
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            actionable.append((created, order))

        # sorted 는 안정 정렬: 같은 시각의 주문은 스냅샷 순서를 유지
        actionable = sorted(actionable, key=lambda pair: pair[0], reverse=True)
        return [order.to_dict() for _, order in actionable]

    def confirm_order(self, order_id: Any, *, authorized: bool) -> Dict[str, Any]:
        """관리자 완료 처리. 이미 completed 면 AlreadyCompleted (이중 지급 방지)."""
        if not authorized:
            raise Unauthorized("Unauthorized: Invalid password")
        order_id = self._require_id(order_id)

        def _complete(order: Order) -> Order:
            if order.status == COMPLETED:
                raise AlreadyCompleted("Order already completed", order_id=order.id)
            return _transition(order, COMPLETED)

        self.store.update(order_id, _complete)
        logger.info(f"주문 완료 처리 - ID: {order_id}")
        return {"success": True, "message": f"Order {order_id} has been confirmed."}

    # -----------------------------
    # 바우처
    # -----------------------------

    def generate_voucher(self, tier_key: Any) -> Dict[str, Any]:
        """가격 견적 바우처 발급. 저장소에는 아무것도 쓰지 않는다."""
        if not isinstance(self.resolver, VoucherTierResolver):
            raise InvalidInput("Voucher creation is not enabled")
        return self.resolver.issue(tier_key)
