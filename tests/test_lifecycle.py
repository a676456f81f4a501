import threading
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from tier_relay.catalog import Tier, TierCatalog
from tier_relay.lifecycle import OrderLifecycle
from tier_relay.order_store import COMPLETED, PENDING, USER_CONFIRMED, MemoryOrderStore
from tier_relay.utils import (
    AlreadyCompleted,
    IdAllocationFailed,
    InvalidInput,
    NotFound,
    Unauthorized,
)


class TestCreateOrder:
    @pytest.mark.parametrize("tier_key", ["tier1", "tier2", "tier3"])
    def test_valid_tier_creates_unique_pending_order(self, lifecycle, memory_store, tier_key):
        seen = {o.id for o in memory_store.list_all()}
        result = lifecycle.create_order(tier_key)

        assert result["id"] not in seen
        assert result["price"] == TierCatalog().get(tier_key).price
        order = memory_store.get(result["id"])
        assert order.status == PENDING
        assert order.tier == tier_key

    def test_numeric_ids_are_six_digits(self, lifecycle):
        order_id = lifecycle.create_order("tier1")["id"]
        assert len(order_id) == 6 and order_id.isdigit()

    @pytest.mark.parametrize("bad", ["tier9", "", None, 42, "TIER1"])
    def test_unknown_tier_is_invalid_input_and_writes_nothing(self, lifecycle, memory_store, bad):
        with pytest.raises(InvalidInput):
            lifecycle.create_order(bad)
        assert memory_store.list_all() == []

    def test_price_and_credits_copied_at_creation(self, memory_store):
        catalog = TierCatalog({"tier1": Tier("tier1", 10, 100)})
        lc = OrderLifecycle(memory_store, catalog)
        order_id = lc.create_order("tier1")["id"]

        catalog._tiers["tier1"] = Tier("tier1", 99, 1)
        assert lc.get_status(order_id)["credits"] == 100
        assert memory_store.get(order_id).price == 10

    def test_regenerates_id_on_collision(self, memory_store):
        ids = iter(["111111", "111111", "222222"])
        lc = OrderLifecycle(memory_store, id_factory=lambda: next(ids))
        assert lc.create_order("tier1")["id"] == "111111"
        assert lc.create_order("tier2")["id"] == "222222"
        assert memory_store.get("111111").tier == "tier1"

    def test_gives_up_after_bounded_attempts(self, memory_store):
        lc = OrderLifecycle(memory_store, id_factory=lambda: "111111", max_id_attempts=3)
        lc.create_order("tier1")
        with pytest.raises(IdAllocationFailed):
            lc.create_order("tier1")
        assert len(memory_store.list_all()) == 1


class TestStatusAndConfirm:
    def test_tier2_scenario(self, lifecycle):
        order_id = lifecycle.create_order("tier2")["id"]
        assert lifecycle.get_status(order_id) == {"status": "pending", "credits": 300}

        result = lifecycle.confirm_order(order_id, authorized=True)
        assert result == {"success": True, "message": f"Order {order_id} has been confirmed."}
        assert lifecycle.get_status(order_id) == {"status": "completed", "credits": 300}

    def test_status_of_unknown_id_is_not_found(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.get_status("000000")

    @pytest.mark.parametrize("missing", [None, "", "   "])
    def test_missing_id_is_invalid_input(self, lifecycle, missing):
        with pytest.raises(InvalidInput):
            lifecycle.get_status(missing)
        with pytest.raises(InvalidInput):
            lifecycle.confirm_order(missing, authorized=True)
        with pytest.raises(InvalidInput):
            lifecycle.user_confirm_payment(missing)

    def test_confirm_is_not_idempotent(self, lifecycle, memory_store):
        order_id = lifecycle.create_order("tier1")["id"]
        lifecycle.confirm_order(order_id, authorized=True)
        before = memory_store.get(order_id)

        with pytest.raises(AlreadyCompleted):
            lifecycle.confirm_order(order_id, authorized=True)
        assert memory_store.get(order_id) == before
        assert before.status == COMPLETED

    def test_confirm_unknown_is_not_found(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.confirm_order("000000", authorized=True)

    def test_admin_operations_require_authorization(self, lifecycle, memory_store):
        order_id = lifecycle.create_order("tier1")["id"]
        with pytest.raises(Unauthorized):
            lifecycle.confirm_order(order_id, authorized=False)
        with pytest.raises(Unauthorized):
            lifecycle.list_actionable(authorized=False)
        assert memory_store.get(order_id).status == PENDING


class TestUserConfirm:
    def test_pending_moves_to_user_confirmed(self, lifecycle):
        order_id = lifecycle.create_order("tier1")["id"]
        assert lifecycle.user_confirm_payment(order_id) == {"success": True}
        assert lifecycle.get_status(order_id)["status"] == USER_CONFIRMED

    def test_is_idempotent_and_never_moves_backwards(self, lifecycle):
        order_id = lifecycle.create_order("tier1")["id"]
        lifecycle.user_confirm_payment(order_id)
        assert lifecycle.user_confirm_payment(order_id) == {"success": True}

        lifecycle.confirm_order(order_id, authorized=True)
        assert lifecycle.user_confirm_payment(order_id) == {"success": True}
        assert lifecycle.get_status(order_id)["status"] == COMPLETED

    def test_unknown_id_is_not_found(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.user_confirm_payment("000000")

    def test_operator_may_confirm_self_confirmed_order(self, lifecycle):
        order_id = lifecycle.create_order("tier3")["id"]
        lifecycle.user_confirm_payment(order_id)
        lifecycle.confirm_order(order_id, authorized=True)
        assert lifecycle.get_status(order_id) == {"status": "completed", "credits": 500}

    def test_disabled_intermediate_state(self, memory_store):
        lc = OrderLifecycle(memory_store, allow_user_confirm=False)
        order_id = lc.create_order("tier1")["id"]
        with pytest.raises(InvalidInput):
            lc.user_confirm_payment(order_id)
        assert lc.get_status(order_id)["status"] == PENDING


class TestListActionable:
    def _stepping_clock(self):
        start = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        ticks = count()
        return lambda: start + timedelta(seconds=next(ticks))

    def test_most_recent_first_and_completed_excluded(self, memory_store):
        lc = OrderLifecycle(memory_store, clock=self._stepping_clock())
        first = lc.create_order("tier1")["id"]
        second = lc.create_order("tier2")["id"]
        third = lc.create_order("tier3")["id"]
        lc.user_confirm_payment(second)

        assert [o["id"] for o in lc.list_actionable(authorized=True)] == [third, second, first]

        lc.confirm_order(third, authorized=True)
        listed = lc.list_actionable(authorized=True)
        assert [o["id"] for o in listed] == [second, first]
        assert all(o["status"] != COMPLETED for o in listed)

    def test_records_use_wire_field_names(self, lifecycle):
        lifecycle.create_order("tier2")
        (order,) = lifecycle.list_actionable(authorized=True)
        assert set(order) == {"id", "tier", "price", "credits", "status", "createdAt"}

    def test_malformed_records_are_excluded(self, lifecycle, memory_store):
        memory_store._data["junk"] = ["not", "an", "object"]
        memory_store._data["bad-date"] = {
            "id": "bad-date",
            "tier": "tier1",
            "price": 10,
            "credits": 100,
            "status": "pending",
            "createdAt": "yesterday",
        }
        order_id = lifecycle.create_order("tier1")["id"]
        assert [o["id"] for o in lifecycle.list_actionable(authorized=True)] == [order_id]

    def test_same_timestamp_order_is_stable(self, memory_store):
        fixed = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        lc = OrderLifecycle(memory_store, clock=lambda: fixed)
        for _ in range(5):
            lc.create_order("tier1")
        first = [o["id"] for o in lc.list_actionable(authorized=True)]
        second = [o["id"] for o in lc.list_actionable(authorized=True)]
        assert first == second
        assert len(first) == 5


@pytest.fixture(params=["memory", "file", "sql"])
def racing_lifecycle(request, tmp_path):
    if request.param == "memory":
        return OrderLifecycle(MemoryOrderStore())
    if request.param == "sql":
        from tier_relay.sql_store import SqlOrderStore

        return OrderLifecycle(SqlOrderStore(f"sqlite:///{tmp_path / 'orders.db'}"))
    from tier_relay.order_store import FileOrderStore

    return OrderLifecycle(FileOrderStore(tmp_path / "data"))


def test_concurrent_confirms_exactly_one_succeeds(racing_lifecycle):
    order_id = racing_lifecycle.create_order("tier2")["id"]
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def confirm():
        barrier.wait()
        try:
            racing_lifecycle.confirm_order(order_id, authorized=True)
            outcome = "success"
        except AlreadyCompleted:
            outcome = "already"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=confirm) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("success") == 1
    assert outcomes.count("already") == workers - 1
    assert racing_lifecycle.get_status(order_id) == {"status": "completed", "credits": 300}


def test_concurrent_creates_get_distinct_ids(racing_lifecycle):
    ids = []
    lock = threading.Lock()

    def create():
        order_id = racing_lifecycle.create_order("tier1")["id"]
        with lock:
            ids.append(order_id)

    threads = [threading.Thread(target=create) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(ids)) == 10
    assert len(racing_lifecycle.store.list_all()) == 10
