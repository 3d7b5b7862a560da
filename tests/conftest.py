"""
Pytest configuration for the pharmacy inventory tests.
Provides a temporary data directory, a fixed clock and seeded usage history.
"""
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest
import pytest_asyncio

from pharmacy_inventory.database.inventory_database import InventoryDatabase
from pharmacy_inventory.database.models import (
    INVENTORY,
    TRANSACTIONS,
    InventoryItem,
    Transaction,
    TransactionAction,
)
from pharmacy_inventory.database.record_store import RecordStore

# Wednesday
FIXED_NOW = datetime(2025, 3, 12, 10, 0, 0)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def store(data_dir) -> RecordStore:
    return RecordStore(str(data_dir))


@pytest.fixture
def database(store, fixed_now) -> InventoryDatabase:
    return InventoryDatabase(store, clock=lambda: fixed_now)


@pytest.fixture
def make_item() -> Callable[..., InventoryItem]:
    """Factory for inventory items with sensible defaults."""
    def _make(**overrides) -> InventoryItem:
        values = dict(
            drug_id="D001",
            drug_name="Propofol",
            location="ICU-Shelf-A",
            qty_on_hand=120,
            expiry_date=date(2026, 1, 31),
            batch_lot="LOT-A1",
            safety_stock=40,
            avg_daily_use=8.0,
        )
        values.update(overrides)
        return InventoryItem(**values)
    return _make


@pytest.fixture
def sample_inventory(make_item) -> List[InventoryItem]:
    return [
        make_item(),
        make_item(location="ER-Cabinet-B", batch_lot="LOT-A2", qty_on_hand=15,
                  expiry_date=date(2025, 3, 20)),
        make_item(drug_id="D002", drug_name="Morphine 10mg", location="ICU-Shelf-A",
                  batch_lot="LOT-M1", qty_on_hand=0, safety_stock=10, avg_daily_use=2.0),
        make_item(drug_id="D003", drug_name="Insulin Glargine", location="Pharmacy-Fridge-1",
                  batch_lot="LOT-I1", qty_on_hand=30, safety_stock=20, avg_daily_use=3.0,
                  expiry_date=date(2025, 3, 1)),
        make_item(drug_id="D004", drug_name="Paracetamol 500mg", location="Pharmacy-Main",
                  batch_lot="LOT-P1", qty_on_hand=500, safety_stock=100, avg_daily_use=20.0),
    ]


@pytest.fixture
def usage_generator(fixed_now) -> Callable[..., List[Transaction]]:
    """
    Seeded synthetic USE history, one transaction per day ending today.

    ``weekday_factors`` scales demand by weekday (Monday first) and ``trend``
    adds units per day over the window.
    """
    def _generate(drug_id: str = "D001", days: int = 30, base: float = 5.0,
                  noise: float = 0.0, trend: float = 0.0,
                  weekday_factors: Optional[Sequence[float]] = None,
                  seed: int = 42, end: Optional[datetime] = None) -> List[Transaction]:
        rng = np.random.RandomState(seed)
        end = end or fixed_now
        transactions = []
        for offset in range(days - 1, -1, -1):
            timestamp = (end - timedelta(days=offset)).replace(hour=9, minute=0, second=0, microsecond=0)
            demand = base + trend * (days - 1 - offset)
            if weekday_factors is not None:
                demand *= weekday_factors[timestamp.weekday()]
            if noise:
                demand += rng.normal(0, noise)
            qty = int(round(demand))
            if qty <= 0:
                continue
            transactions.append(Transaction(
                txn_id=f"TXN-{drug_id}-{offset:03d}",
                timestamp=timestamp,
                user_id="N100",
                drug_id=drug_id,
                action=TransactionAction.USE,
                qty_change=-qty,
            ))
        return transactions
    return _generate


@pytest_asyncio.fixture
async def seeded_database(database, sample_inventory, usage_generator):
    """Database with the sample inventory and 30 days of Propofol and Insulin usage."""
    await database.store.save_all(INVENTORY, sample_inventory)
    await database.store.save_all(
        TRANSACTIONS,
        usage_generator("D001", days=30, base=8) + usage_generator("D003", days=30, base=3)
    )
    return database
