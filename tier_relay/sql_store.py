from pathlib import Path
from typing import Callable, List, Optional

from sqlalchemy import Column, Float, Integer, String, Text, create_engine, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker

from .order_store import BaseOrderStore, MalformedRecord, Order, _parse_records
from .utils import NotFound, StorageCorrupted, StorageUnavailable, get_logger, handle_errors

logger = get_logger(__name__)
Base = declarative_base()


class OrderRow(Base):
    """orders 테이블. 컬럼명은 JSON 필드명과 동일하게 유지한다."""

    __tablename__ = "orders"
    id = Column(String, primary_key=True)  # 주문 ID
    tier = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    credits = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")
    created_at = Column("createdAt", String, nullable=False)
    issued_token = Column("issuedToken", Text)

    def to_dict(self):
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
    def from_order(cls, order: Order) -> "OrderRow":
        return cls(
            id=order.id,
            tier=order.tier,
            price=order.price,
            credits=order.credits,
            status=order.status,
            created_at=order.created_at,
            issued_token=order.issued_token,
        )


class SqlOrderStore(BaseOrderStore):
    """SQLAlchemy 기반 주문 저장소. update 는 status 조건부 UPDATE 로 경합을 감지한다."""

    name = "sql"

    def __init__(self, database_url: str, max_cas_attempts: int = 5):
        super().__init__()
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            db_path = database_url[len("sqlite:///"):]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(database_url, connect_args=connect_args)
        Base.metadata.create_all(self.engine)  # DB 스키마 생성
        self.Session = sessionmaker(bind=self.engine)
        self.max_cas_attempts = max_cas_attempts
        logger.info(f"SqlOrderStore 초기화 완료. 데이터베이스: {self.engine.url!r}")

    @handle_errors(stage="SQL Read")
    def get(self, order_id: str) -> Optional[Order]:
        session = self.Session()
        try:
            row = session.get(OrderRow, order_id)
            if row is None:
                return None
            try:
                return Order.from_dict(row.to_dict())
            except MalformedRecord as e:
                raise StorageCorrupted(f"order {order_id} is unreadable: {e}") from e
        finally:
            session.close()

    @handle_errors(stage="SQL Write")
    def put(self, order: Order) -> Order:
        session = self.Session()
        try:
            session.merge(OrderRow.from_order(order))
            session.commit()
            return order
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="SQL Write")
    def add(self, order: Order) -> bool:
        session = self.Session()
        try:
            session.add(OrderRow.from_order(order))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @handle_errors(stage="SQL Read")
    def list_all(self) -> List[Order]:
        session = self.Session()
        try:
            rows = session.query(OrderRow).all()
            return _parse_records((r.id, r.to_dict()) for r in rows)
        finally:
            session.close()

    @handle_errors(stage="SQL Update")
    def update(self, order_id: str, mutate: Callable[[Order], Order]) -> Order:
        # status 외의 필드는 생성 후 변하지 않으므로 status 만 비교/갱신한다.
        with self._critical_section(order_id):
            for attempt in range(1, self.max_cas_attempts + 1):
                cur = self.get(order_id)
                if cur is None:
                    raise NotFound(f"Order {order_id} not found", order_id=order_id)
                new = mutate(cur)
                if new == cur:
                    return cur
                session = self.Session()
                try:
                    result = session.execute(
                        update(OrderRow)
                        .where(OrderRow.id == order_id, OrderRow.status == cur.status)
                        .values(status=new.status)
                    )
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()
                if result.rowcount == 1:
                    return new
                logger.info(
                    f"동시 수정 감지, 다시 시도합니다 - Order ID: {order_id}, attempt {attempt}/{self.max_cas_attempts}"
                )
        raise StorageUnavailable(
            f"Order {order_id} kept changing during update",
            order_id=order_id,
            stage="SQL Update",
        )
