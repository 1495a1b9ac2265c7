from datetime import date

import pytest

from app.errors import TransactionFailure
from app.events import (
    LowStock,
    ShortageEvent,
    StockAllocated,
    StockTransferred,
    TransferCompensated,
)
from app.models import ConfirmationKind, StockLocation
from app.resolver import PolicyDecider

SHELF = StockLocation.SHELF
MAIN = StockLocation.MAIN_STORE
WEB = StockLocation.WEB


def stock(inventory, shelf=0, main=0, web=0, code="PROD001"):
    for location, quantity in ((SHELF, shelf), (MAIN, main), (WEB, web)):
        if quantity:
            inventory.add(code, location, quantity)


def of_type(events, event_type):
    return [e for e in events if isinstance(e, event_type)]


# ── 直接引き当て ─────────────────────────────────


async def test_shelf_stock_is_used_without_escalation(make_resolver, inventory):
    stock(inventory, shelf=10, main=50, web=50)
    resolver, decider = make_resolver()

    fulfilled = await resolver.resolve_and_allocate("PROD001", 6, SHELF)

    assert fulfilled == 6
    assert inventory.availability_reads == [SHELF]
    assert inventory.transfer_calls == []
    assert decider.requests == []
    assert inventory.deducted_from(SHELF) == 6
    assert inventory.quantity_at("PROD001", SHELF) == 4


async def test_shelf_deduction_follows_expiry_order(make_resolver, inventory):
    late = inventory.add("PROD001", SHELF, 5, expiry=date(2026, 12, 1))
    soon = inventory.add("PROD001", SHELF, 5, expiry=date(2026, 11, 1))
    resolver, _ = make_resolver()

    await resolver.resolve_and_allocate("PROD001", 7)

    assert inventory.deductions == [(soon, 5), (late, 2)]


# ── MAIN_STORE からの補充 ─────────────────────────


async def test_main_store_covers_shortfall_with_one_transfer(make_resolver, inventory, events):
    stock(inventory, shelf=3, main=10, web=0)
    resolver, decider = make_resolver(True)

    result = await resolver.resolve("PROD001", 8)

    assert result.fulfilled == 8
    assert inventory.transfer_calls == [(MAIN, SHELF, 5)]
    assert inventory.deducted_from(SHELF) == 8
    assert inventory.quantity_at("PROD001", SHELF) == 0
    assert inventory.quantity_at("PROD001", MAIN) == 5
    assert inventory.availability_reads == [SHELF, MAIN]

    request = decider.requests[0]
    assert request.kind is ConfirmationKind.TRANSFER
    assert request.quantity == 5
    assert [(leg.from_location, leg.to_location) for leg in request.legs] == [(MAIN, SHELF)]
    assert len(of_type(events, StockTransferred)) == 1
    assert of_type(events, StockAllocated)[0].fulfilled == 8


async def test_declined_transfer_falls_back_to_shelf_amount(make_resolver, inventory):
    stock(inventory, shelf=3, main=10)
    resolver, decider = make_resolver(False, True)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 8)

    assert fulfilled == 3
    assert inventory.transfer_calls == []
    assert inventory.deducted_from(SHELF) == 3
    assert decider.requests[1].kind is ConfirmationKind.PARTIAL
    assert decider.requests[1].quantity == 3


async def test_declining_everything_abandons_the_request(make_resolver, inventory):
    stock(inventory, shelf=3, main=10)
    resolver, _ = make_resolver(False, False)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 8)

    assert fulfilled == 0
    assert inventory.deductions == []
    assert inventory.transfer_calls == []


async def test_empty_shelf_skips_partial_prompt_after_decline(make_resolver, inventory):
    stock(inventory, shelf=0, main=10)
    resolver, decider = make_resolver(False)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 4)

    assert fulfilled == 0
    assert len(decider.requests) == 1


async def test_failed_transfer_falls_back_to_shelf_amount(make_resolver, inventory):
    stock(inventory, shelf=3, main=10)
    inventory.fail_transfers = {(MAIN, SHELF)}
    resolver, _ = make_resolver(True, True)

    result = await resolver.resolve("PROD001", 8)

    assert result.fulfilled == 3
    assert inventory.transfer_calls == [(MAIN, SHELF, 5)]
    assert inventory.quantity_at("PROD001", MAIN) == 10
    failed = [s for s in result.steps if s["action"] == "TransferStock"]
    assert failed[0]["status"] == "FAILED"


# ── WEB からの 2 段階補充 ─────────────────────────


async def test_web_covers_shortfall_with_two_ordered_transfers(make_resolver, inventory):
    stock(inventory, shelf=2, main=1, web=10)
    resolver, decider = make_resolver(True)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 8)

    assert fulfilled == 8
    assert inventory.transfer_calls == [(WEB, MAIN, 5), (MAIN, SHELF, 6)]
    assert inventory.quantity_at("PROD001", WEB) == 5
    assert inventory.quantity_at("PROD001", MAIN) == 0
    assert inventory.quantity_at("PROD001", SHELF) == 0
    assert inventory.deducted_from(SHELF) == 8
    assert decider.requests[0].kind is ConfirmationKind.TWO_STEP_TRANSFER
    assert [leg.quantity for leg in decider.requests[0].legs] == [5, 6]


async def test_declined_two_step_transfer_offers_shelf_amount(make_resolver, inventory):
    stock(inventory, shelf=2, main=1, web=10)
    resolver, _ = make_resolver(False, True)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 8)

    assert fulfilled == 2
    assert inventory.transfer_calls == []


async def test_second_leg_failure_compensates_first_leg(make_resolver, inventory, events):
    stock(inventory, shelf=2, main=1, web=10)
    inventory.fail_transfers = {(MAIN, SHELF)}
    resolver, _ = make_resolver(True, True)

    result = await resolver.resolve("PROD001", 8)

    assert result.fulfilled == 2
    assert inventory.transfer_calls == [(WEB, MAIN, 5), (MAIN, SHELF, 6), (MAIN, WEB, 5)]
    assert inventory.quantity_at("PROD001", WEB) == 10
    assert inventory.quantity_at("PROD001", MAIN) == 1
    assert [e.quantity for e in of_type(events, TransferCompensated)] == [5]
    actions = [s["action"] for s in result.steps]
    assert "TransferStock (COMPENSATING)" in actions


async def test_failed_final_deduction_undoes_transfers_and_raises(make_resolver, inventory):
    stock(inventory, shelf=3, main=10)
    inventory.fail_deductions = RuntimeError("deadlock detected")
    resolver, _ = make_resolver(True)

    with pytest.raises(TransactionFailure, match="deadlock detected"):
        await resolver.resolve_and_allocate("PROD001", 8)

    assert inventory.transfer_calls == [(MAIN, SHELF, 5), (SHELF, MAIN, 5)]
    assert inventory.quantity_at("PROD001", MAIN) == 10
    assert inventory.quantity_at("PROD001", SHELF) == 3


async def test_stock_sold_before_deduction_falls_back_to_fresh_shelf(make_resolver, inventory):
    batch = inventory.add("PROD001", SHELF, 10)
    inventory.concurrent_sales = [(batch, 7)]
    resolver, decider = make_resolver(True)

    result = await resolver.resolve("PROD001", 5)

    assert result.fulfilled == 3
    assert inventory.quantity_at("PROD001", SHELF) == 0
    assert decider.requests[0].kind is ConfirmationKind.PARTIAL
    assert decider.requests[0].quantity == 3
    deducts = [s for s in result.steps if s["action"] == "Deduct"]
    assert [s["status"] for s in deducts] == ["FAILED", "COMPLETED"]


async def test_stock_sold_after_transfer_undoes_transfer_and_offers_shelf(make_resolver, inventory):
    shelf_batch = inventory.add("PROD001", SHELF, 3)
    inventory.add("PROD001", MAIN, 10)
    inventory.concurrent_sales = [(shelf_batch, 2)]
    resolver, decider = make_resolver(True, True)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 8)

    assert fulfilled == 1
    assert inventory.transfer_calls == [(MAIN, SHELF, 5), (SHELF, MAIN, 5)]
    assert inventory.quantity_at("PROD001", MAIN) == 10
    assert inventory.quantity_at("PROD001", SHELF) == 0
    assert decider.requests[1].kind is ConfirmationKind.PARTIAL
    assert decider.requests[1].quantity == 1


async def test_stock_sold_during_partial_allocation_is_raised(make_resolver, inventory):
    batch = inventory.add("PROD001", SHELF, 3)
    inventory.concurrent_sales = [(batch, 2)]
    resolver, _ = make_resolver(False, True)
    inventory.add("PROD001", MAIN, 10)

    with pytest.raises(TransactionFailure):
        await resolver.resolve_and_allocate("PROD001", 8)


# ── 欠品 ─────────────────────────────────────────


async def test_no_stock_anywhere_records_shortage_without_prompt(make_resolver, inventory, events):
    resolver, decider = make_resolver()

    fulfilled = await resolver.resolve_and_allocate("PROD001", 5)

    assert fulfilled == 0
    assert decider.requests == []
    assert inventory.deductions == []
    assert len(inventory.shortages) == 1
    assert "Required: 5" in inventory.shortages[0]

    shortage = of_type(events, ShortageEvent)[0]
    assert shortage.total_available == 0
    assert shortage.requested_quantity == 5
    assert shortage.per_location == {SHELF: 0, MAIN: 0, WEB: 0}
    assert shortage.message == inventory.shortages[0]


async def test_shortage_offers_grand_total(make_resolver, inventory):
    stock(inventory, shelf=1, main=1, web=2)
    resolver, decider = make_resolver(True)

    fulfilled = await resolver.resolve_and_allocate("PROD001", 10)

    assert fulfilled == 4
    assert decider.requests[0].kind is ConfirmationKind.PARTIAL
    assert decider.requests[0].quantity == 4
    assert inventory.transfer_calls == []
    for location in (SHELF, MAIN, WEB):
        assert inventory.quantity_at("PROD001", location) == 0
    assert "SHELF: 1 + MAIN: 1 + WEB: 2 = 4, Required: 10" in inventory.shortages[0]


async def test_shortage_recording_failure_does_not_stop_allocation(make_resolver, inventory, events):
    stock(inventory, shelf=1)
    inventory.fail_shortages = RuntimeError("shortage table locked")
    resolver, _ = make_resolver(True)

    result = await resolver.resolve("PROD001", 5)

    assert result.fulfilled == 1
    record = [s for s in result.steps if s["action"] == "RecordShortage"][0]
    assert record["status"] == "FAILED"
    assert len(of_type(events, ShortageEvent)) == 1


async def test_failing_event_handler_does_not_break_allocation(make_resolver, inventory, bus):
    stock(inventory, shelf=5)

    def failing(event):
        raise RuntimeError("subscriber down")

    bus.subscribe(failing)
    resolver, _ = make_resolver()

    assert await resolver.resolve_and_allocate("PROD001", 5) == 5


# ── その他 ───────────────────────────────────────


async def test_low_stock_event_after_shelf_allocation(make_resolver, inventory, events):
    stock(inventory, shelf=60)
    resolver, _ = make_resolver(low_stock_threshold=50)

    await resolver.resolve_and_allocate("PROD001", 15)

    low = of_type(events, LowStock)
    assert len(low) == 1
    assert low[0].remaining == 45
    assert low[0].threshold == 50


async def test_no_low_stock_event_above_threshold(make_resolver, inventory, events):
    stock(inventory, shelf=100)
    resolver, _ = make_resolver(low_stock_threshold=50)

    await resolver.resolve_and_allocate("PROD001", 10)

    assert of_type(events, LowStock) == []


async def test_async_decider_is_awaited(uow, inventory, make_resolver):
    stock(inventory, shelf=1, main=5)
    resolver, _ = make_resolver()
    seen = []

    async def confirm(request):
        seen.append(request.kind)
        return True

    resolver.confirm = confirm

    assert await resolver.resolve_and_allocate("PROD001", 4) == 4
    assert seen == [ConfirmationKind.TRANSFER]


async def test_policy_decider_answers_by_kind(make_resolver, inventory):
    stock(inventory, shelf=3, main=10)
    resolver, _ = make_resolver()
    resolver.confirm = PolicyDecider(approve_transfers=False, accept_partial=True)

    assert await resolver.resolve_and_allocate("PROD001", 8) == 3


async def test_other_locations_are_served_without_escalation(make_resolver, inventory):
    stock(inventory, shelf=50, main=50, web=10)
    resolver, _ = make_resolver(True)

    assert await resolver.resolve_and_allocate("PROD001", 4, WEB) == 4
    assert await resolver.resolve_and_allocate("PROD001", 9, WEB) == 6
    assert inventory.transfer_calls == []
    assert set(inventory.availability_reads) == {WEB}


async def test_result_carries_allocation_id_and_steps(make_resolver, inventory):
    stock(inventory, shelf=5)
    resolver, _ = make_resolver()

    result = await resolver.resolve("PROD001", 2)

    assert result.allocation_id.startswith("ALLOC-")
    assert [s["action"] for s in result.steps] == ["CheckAvailability", "Deduct"]
    assert result.steps[-1]["status"] == "COMPLETED"


@pytest.mark.parametrize("quantity", [0, -3])
async def test_non_positive_quantity_is_rejected(make_resolver, quantity):
    resolver, _ = make_resolver()

    with pytest.raises(ValueError):
        await resolver.resolve_and_allocate("PROD001", quantity)
