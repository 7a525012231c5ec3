"""
File-backed order storage.

Each order lives in its own directory:

    <orders_dir>/<order_id>/
        └── order.json

Every write goes to a temporary file in the same directory which is then
os.replace()d over order.json, so a reader or a crash never sees a
half-written record. create() and update() on the same id are serialized by a
per-id lock held for the whole read-transform-write.
"""
import os
import re
import shutil
import logging
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pydantic

from .errors import (
    InvalidTransitionError,
    OrderExistsError,
    OrderNotFoundError,
    PersistenceError,
)
from .models import Order

logger = logging.getLogger(__name__)

RECORD_NAME = "order.json"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class OrderStore:
    """Durable, keyed storage of Order records."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        # order_id -> [lock, holders]; entries are dropped once nobody holds or waits
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, order_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(order_id)
            if entry is None:
                entry = self._locks[order_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[order_id]

    def _order_dir(self, order_id: str) -> Path:
        if not _SAFE_ID.match(order_id or ""):
            raise OrderNotFoundError(f"Order {order_id!r} not found")
        return self.root / order_id

    def _read(self, order_id: str) -> Order:
        record = self._order_dir(order_id) / RECORD_NAME
        try:
            data = record.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise OrderNotFoundError(f"Order {order_id} not found")
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Error reading order {order_id}: {e}") from e

        try:
            return Order.model_validate_json(data)
        except pydantic.ValidationError as e:
            raise PersistenceError(f"Corrupt record for order {order_id}: {e}") from e

    def _write(self, order: Order) -> None:
        """Write the record to a temp file and atomically swap it into place."""
        order_dir = self.root / order.id
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=order_dir,
                prefix=".order-",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(order.model_dump_json(indent=2))
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, order_dir / RECORD_NAME)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Error writing order {order.id}: {e}") from e

    def create(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            OrderExistsError: an order with this id already exists
            PersistenceError: the record could not be written
        """
        if not _SAFE_ID.match(order.id):
            raise PersistenceError(f"Invalid order id: {order.id!r}")

        order_dir = self.root / order.id
        with self._locked(order.id):
            try:
                order_dir.mkdir()
            except FileExistsError:
                raise OrderExistsError(f"Order {order.id} already exists")
            except OSError as e:
                raise PersistenceError(f"Error creating order {order.id}: {e}") from e

            try:
                self._write(order)
            except PersistenceError:
                shutil.rmtree(order_dir, ignore_errors=True)
                raise

        logger.info("Created order %s with %d artifact(s)", order.id, len(order.artifacts))
        return order

    def load(self, order_id: str) -> Order:
        """Return the current record for order_id."""
        return self._read(order_id)

    def update(self, order_id: str, transform: Callable[[Order], Order]) -> Order:
        """
        Apply transform to the current record and persist the result.

        The read, the transform and the write happen under the order's lock.
        Errors raised by transform propagate and nothing is written. If the
        transform returns an equal record, no write happens.

        Returns:
            The record as persisted after the update
        """
        self._order_dir(order_id)  # rejects unsafe ids before taking a lock
        with self._locked(order_id):
            current = self._read(order_id)
            updated = transform(current)

            if updated.id != current.id:
                raise InvalidTransitionError(f"Order id cannot change ({order_id})")
            if list(updated.artifacts) != list(current.artifacts):
                raise InvalidTransitionError(f"Artifacts of order {order_id} are immutable")

            if updated == current:
                return current

            self._write(updated)
            return updated

    def list(self, limit: Optional[int] = 50) -> List[Order]:
        """List stored orders, newest first. Unreadable records are skipped."""
        orders = []
        for order_dir in self.root.iterdir():
            if not order_dir.is_dir() or not (order_dir / RECORD_NAME).exists():
                continue
            try:
                orders.append(self._read(order_dir.name))
            except (OrderNotFoundError, PersistenceError) as e:
                logger.warning("Skipping order %s: %s", order_dir.name, e)

        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]
