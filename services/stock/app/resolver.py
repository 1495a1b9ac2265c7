"""
Stock Resolver — ロケーション横断の在庫引き当て

売場 (SHELF) で要求数量を満たせないとき、メイン倉庫 → WEB の順に
在庫を探して売場へ移動し、最後に売場から減算する。
各エスカレーションの前に判断コールバック confirm(context) で承認を取る。

  フロー:
  ┌───────────────────────────────────────────────────────────────┐
  │  1. SHELF で足りる → そのまま SHELF から減算                   │
  │  2. 不足分を MAIN_STORE で賄える                               │
  │     └─ 承認 → MAIN_STORE → SHELF に移動 → SHELF から減算       │
  │  3. MAIN_STORE でも足りない → WEB を確認                       │
  │     ├─ 合計でも不足 → 欠品を記録 → 合計数量で部分提供          │
  │     └─ 承認 → WEB → MAIN_STORE → SHELF の 2 段階移動 → 減算    │
  │  4. 拒否・移動失敗 → SHELF の在庫だけで部分提供                │
  │     └─ 承認 → 提供数量だけ減算 / 拒否 → 0                      │
  └───────────────────────────────────────────────────────────────┘

最終減算の時点で在庫が読み取り時より減っていた (InsufficientStock /
StockConflict) 場合は、完了済みレッグを取り消したうえで売場の在庫を
読み直し、その数量で部分提供に切り替える。

各移動レッグと最終減算はそれぞれ別の Unit of Work でコミットされる。
後続のレッグや最終減算が失敗した場合は、完了済みのレッグを逆順の
逆方向移動で取り消す (補償トランザクション)。
"""

import inspect
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable

from . import commands, queries
from .errors import InsufficientStock, TransactionFailure, TransferFailure
from .event_bus import EventBus
from .events import (
    LowStock,
    ShortageEvent,
    StockAllocated,
    StockTransferred,
    TransferCompensated,
)
from .models import (
    AllocationResult,
    ConfirmationKind,
    ConfirmationRequest,
    StockLocation,
    TransferLeg,
)
from .order_ids import OrderIdGenerator
from .policies import BatchDeduction
from .shortages import ShortageRecorder
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

Decider = Callable[[ConfirmationRequest], bool | Awaitable[bool]]
Transfer = Callable[[str, StockLocation, StockLocation, int], Awaitable[None]]

SHELF = StockLocation.SHELF
MAIN_STORE = StockLocation.MAIN_STORE
WEB = StockLocation.WEB


class PolicyDecider:
    """対話なしで使う判断コールバック (HTTP API など)"""

    def __init__(self, approve_transfers: bool = False, accept_partial: bool = False) -> None:
        self.approve_transfers = approve_transfers
        self.accept_partial = accept_partial

    def __call__(self, request: ConfirmationRequest) -> bool:
        if request.kind is ConfirmationKind.PARTIAL:
            return self.accept_partial
        return self.approve_transfers


class _Run:
    """1 回の引き当ての状態とステップログ"""

    def __init__(self, allocation_id: str, product_code: str, requested: int) -> None:
        self.allocation_id = allocation_id
        self.product_code = product_code
        self.requested = requested
        self.fulfilled = 0
        self.steps: list[dict] = []

    def begin(self, action: str, **details: Any) -> dict:
        step = {
            "step": len(self.steps) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        self.steps.append(step)
        return step

    def result(self) -> AllocationResult:
        return AllocationResult(
            allocation_id=self.allocation_id,
            product_code=self.product_code,
            requested=self.requested,
            fulfilled=self.fulfilled,
            steps=self.steps,
        )


class StockResolver:
    def __init__(
        self,
        uow: UnitOfWork,
        store,
        deduction: BatchDeduction,
        confirm: Decider,
        shortages: ShortageRecorder,
        bus: EventBus | None = None,
        transfer: Transfer | None = None,
        order_ids: OrderIdGenerator | None = None,
        low_stock_threshold: int | None = 50,
    ) -> None:
        self.uow = uow
        self.store = store
        self.deduction = deduction
        self.confirm = confirm
        self.shortages = shortages
        self.bus = bus or EventBus()
        self.transfer = transfer or partial(commands.transfer_stock, uow, store)
        self.order_ids = order_ids or OrderIdGenerator()
        self.low_stock_threshold = low_stock_threshold

    async def resolve_and_allocate(
        self,
        product_code: str,
        requested_quantity: int,
        location: StockLocation = SHELF,
    ) -> int:
        result = await self.resolve(product_code, requested_quantity, location)
        return result.fulfilled

    async def resolve(
        self,
        product_code: str,
        requested_quantity: int,
        location: StockLocation = SHELF,
    ) -> AllocationResult:
        if requested_quantity <= 0:
            raise ValueError(f"Quantity must be positive, got: {requested_quantity}")
        location = StockLocation(location)
        run = _Run(self.order_ids.next("ALLOC"), product_code, requested_quantity)
        logger.info(
            "Allocation %s: %d x %s at %s",
            run.allocation_id,
            requested_quantity,
            product_code,
            location.value,
        )

        if location is not SHELF:
            # 売場以外は移動の連鎖がない
            available = await self._available(run, location)
            if available >= requested_quantity:
                return await self._allocate(run, requested_quantity, location)
            return await self._offer_partial(run, available, location=location)

        # ── Step 1: SHELF だけで足りるか ─────────────
        shelf = await self._available(run, SHELF)
        if shelf >= requested_quantity:
            return await self._allocate(run, requested_quantity, SHELF)

        # ── Step 2: MAIN_STORE から補充 ──────────────
        shortfall = requested_quantity - shelf
        main = await self._available(run, MAIN_STORE)
        if main >= shortfall:
            legs = [TransferLeg(from_location=MAIN_STORE, to_location=SHELF, quantity=shortfall)]
            return await self._escalate(run, ConfirmationKind.TRANSFER, legs, fallback=shelf)

        # ── Step 3: WEB から 2 段階で補充 ────────────
        web = await self._available(run, WEB)
        total = shelf + main + web
        if total < requested_quantity:
            await self._report_shortage(run, {SHELF: shelf, MAIN_STORE: main, WEB: web}, total)
            return await self._offer_partial(run, total, spill=total > shelf)

        still_needed_from_web = shortfall - main
        # total >= requested なので WEB だけで残りを賄える
        assert web >= still_needed_from_web, (
            f"WEB={web} cannot cover {still_needed_from_web} although total={total}"
        )
        legs = [
            TransferLeg(from_location=WEB, to_location=MAIN_STORE, quantity=still_needed_from_web),
            TransferLeg(from_location=MAIN_STORE, to_location=SHELF, quantity=shortfall),
        ]
        return await self._escalate(run, ConfirmationKind.TWO_STEP_TRANSFER, legs, fallback=shelf)

    # ── エスカレーション ──────────────────────────────

    async def _escalate(
        self,
        run: _Run,
        kind: ConfirmationKind,
        legs: list[TransferLeg],
        fallback: int,
    ) -> AllocationResult:
        route = " then ".join(
            f"{leg.from_location.value} -> {leg.to_location.value} ({leg.quantity})"
            for leg in legs
        )
        request = ConfirmationRequest(
            kind=kind,
            product_code=run.product_code,
            requested_quantity=run.requested,
            quantity=legs[-1].quantity,
            legs=legs,
            message=f"Transfer {route} for {run.product_code}?",
        )
        if not await self._confirm(run, request):
            logger.warning("Allocation %s: %s declined", run.allocation_id, kind.value)
            return await self._offer_partial(run, fallback)

        completed = await self._transfer_legs(run, legs)
        if completed is None:
            return await self._offer_partial(run, fallback)
        return await self._allocate(run, run.requested, SHELF, compensate=completed)

    async def _transfer_legs(self, run: _Run, legs: list[TransferLeg]) -> list[TransferLeg] | None:
        """レッグを順に実行する。失敗したら完了分を補償して None を返す。"""
        completed: list[TransferLeg] = []
        for leg in legs:
            step = run.begin(
                "TransferStock",
                from_location=leg.from_location.value,
                to_location=leg.to_location.value,
                quantity=leg.quantity,
            )
            try:
                await self.transfer(
                    run.product_code, leg.from_location, leg.to_location, leg.quantity
                )
            except TransferFailure as e:
                step["status"] = "FAILED"
                step["error"] = str(e)
                logger.warning(
                    "Allocation %s: transfer %s -> %s failed: %s",
                    run.allocation_id,
                    leg.from_location.value,
                    leg.to_location.value,
                    e,
                )
                await self._compensate(run, completed)
                return None
            step["status"] = "COMPLETED"
            completed.append(leg)
            await self._publish(
                StockTransferred(
                    allocation_id=run.allocation_id,
                    product_code=run.product_code,
                    from_location=leg.from_location,
                    to_location=leg.to_location,
                    quantity=leg.quantity,
                )
            )
        return completed

    async def _compensate(self, run: _Run, completed: list[TransferLeg]) -> None:
        for leg in reversed(completed):
            undo = leg.reversed()
            step = run.begin(
                "TransferStock (COMPENSATING)",
                from_location=undo.from_location.value,
                to_location=undo.to_location.value,
                quantity=undo.quantity,
            )
            try:
                await self.transfer(
                    run.product_code, undo.from_location, undo.to_location, undo.quantity
                )
            except TransferFailure as e:
                step["status"] = "FAILED"
                step["error"] = str(e)
                logger.error(
                    "Allocation %s: compensation %s -> %s of %d x %s failed: %s",
                    run.allocation_id,
                    undo.from_location.value,
                    undo.to_location.value,
                    undo.quantity,
                    run.product_code,
                    e,
                )
                continue
            step["status"] = "COMPLETED"
            await self._publish(
                TransferCompensated(
                    allocation_id=run.allocation_id,
                    product_code=run.product_code,
                    from_location=undo.from_location,
                    to_location=undo.to_location,
                    quantity=undo.quantity,
                )
            )

    # ── 部分提供と最終減算 ────────────────────────────

    async def _offer_partial(
        self,
        run: _Run,
        offered: int,
        location: StockLocation = SHELF,
        spill: bool = False,
    ) -> AllocationResult:
        if offered <= 0:
            run.begin("OfferPartial", quantity=0, status="SKIPPED")
            return run.result()

        request = ConfirmationRequest(
            kind=ConfirmationKind.PARTIAL,
            product_code=run.product_code,
            requested_quantity=run.requested,
            quantity=offered,
            message=f"Use only available quantity ({offered}) from {location.value}?",
        )
        if not await self._confirm(run, request):
            logger.info("Allocation %s abandoned", run.allocation_id)
            return run.result()
        return await self._allocate(run, offered, location, spill=spill, fall_back=False)

    async def _allocate(
        self,
        run: _Run,
        quantity: int,
        location: StockLocation,
        compensate: list[TransferLeg] | None = None,
        spill: bool = False,
        fall_back: bool = True,
    ) -> AllocationResult:
        step = run.begin("Deduct", location=location.value, quantity=quantity)

        async def work(conn) -> None:
            if not spill:
                await self.deduction.deduct(conn, run.product_code, quantity, location)
                return
            # 欠品時の部分提供: SHELF から取れるだけ取り、残りを遠いロケーションから
            remaining = quantity
            chain = list(StockLocation)
            for loc in chain[:-1]:
                remaining -= await self.deduction.deduct_up_to(
                    conn, run.product_code, remaining, loc
                )
                if remaining == 0:
                    return
            await self.deduction.deduct(conn, run.product_code, remaining, chain[-1])

        try:
            await self.uow.run(work)
        except TransactionFailure as e:
            step["status"] = "FAILED"
            step["error"] = str(e)
            if compensate:
                await self._compensate(run, compensate)
            if fall_back and isinstance(e.cause, InsufficientStock):
                # 在庫を読んでから減算するまでに別の販売で減っていた
                logger.warning(
                    "Allocation %s: stock changed before deduction: %s", run.allocation_id, e
                )
                fresh = await self._available(run, location)
                return await self._offer_partial(run, min(fresh, quantity), location=location)
            logger.error("Allocation %s: deduction failed: %s", run.allocation_id, e)
            raise

        step["status"] = "COMPLETED"
        run.fulfilled = quantity
        logger.info(
            "Allocation %s: fulfilled %d/%d x %s",
            run.allocation_id,
            quantity,
            run.requested,
            run.product_code,
        )
        await self._publish(
            StockAllocated(
                allocation_id=run.allocation_id,
                product_code=run.product_code,
                location=location,
                requested=run.requested,
                fulfilled=quantity,
            )
        )
        if location is SHELF:
            await self._check_low_stock(run)
        return run.result()

    # ── 補助 ──────────────────────────────────────────

    async def _available(self, run: _Run, location: StockLocation) -> int:
        available = await queries.available(self.uow, self.store, run.product_code, location)
        run.begin("CheckAvailability", location=location.value, available=available, status="COMPLETED")
        return available

    async def _confirm(self, run: _Run, request: ConfirmationRequest) -> bool:
        step = run.begin(f"Confirm {request.kind.value}", quantity=request.quantity)
        decision = self.confirm(request)
        if inspect.isawaitable(decision):
            decision = await decision
        step["status"] = "APPROVED" if decision else "DECLINED"
        return bool(decision)

    async def _report_shortage(
        self, run: _Run, per_location: dict[StockLocation, int], total: int
    ) -> None:
        message = (
            f"URGENT: Product {run.product_code} insufficient stock "
            f"(SHELF: {per_location[SHELF]} + MAIN: {per_location[MAIN_STORE]} "
            f"+ WEB: {per_location[WEB]} = {total}, Required: {run.requested})"
        )
        step = run.begin("RecordShortage", total_available=total)
        logger.warning(message)
        try:
            await self.shortages.record(message)
            step["status"] = "COMPLETED"
        except TransactionFailure as e:
            # 欠品の記録は販売とは独立。失敗しても引き当ては続ける
            step["status"] = "FAILED"
            step["error"] = str(e)
            logger.error("Failed to record shortage for %s: %s", run.product_code, e)

        await self._publish(
            ShortageEvent(
                message=message,
                product_code=run.product_code,
                per_location=per_location,
                total_available=total,
                requested_quantity=run.requested,
            )
        )

    async def _check_low_stock(self, run: _Run) -> None:
        if self.low_stock_threshold is None:
            return
        try:
            remaining = await queries.available(self.uow, self.store, run.product_code, SHELF)
        except TransactionFailure:
            logger.exception("Low stock check failed for %s", run.product_code)
            return
        if remaining < self.low_stock_threshold:
            await self._publish(
                LowStock(
                    product_code=run.product_code,
                    location=SHELF,
                    remaining=remaining,
                    threshold=self.low_stock_threshold,
                )
            )

    async def _publish(self, event) -> None:
        try:
            await self.bus.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", event.event_type)
