import os
import tempfile

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

# app.main は import 時に DATABASE_URL を読む
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='stock-api-')}/stock.db",
)

from app import db  # noqa: E402
from app.event_bus import EventBus  # noqa: E402
from app.policies import BatchDeduction  # noqa: E402
from app.resolver import StockResolver  # noqa: E402
from app.shortages import ShortageRecorder  # noqa: E402
from app.unit_of_work import UnitOfWork  # noqa: E402
from fakes import FakeConnector, FakeInventory, ScriptedDecider  # noqa: E402


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def uow(connector):
    return UnitOfWork(connector)


@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def events():
    return []


@pytest.fixture
def bus(events):
    bus = EventBus()
    bus.subscribe(events.append)
    return bus


@pytest.fixture
def make_resolver(uow, inventory, bus):
    def make(*answers, low_stock_threshold=None, **kwargs):
        decider = ScriptedDecider(*answers)
        resolver = StockResolver(
            uow,
            inventory,
            BatchDeduction(inventory),
            decider,
            ShortageRecorder(uow, inventory),
            bus=bus,
            low_stock_threshold=low_stock_threshold,
            **kwargs,
        )
        return resolver, decider

    return make


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stock.db'}")
    await db.init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_uow(engine):
    return UnitOfWork(db.connector(engine))
