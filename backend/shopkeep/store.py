"""MongoDB access for the shop and the unit-of-work used by order finalization.

Two modes are supported. With transactions enabled (replica sets, Atlas) a
unit of work runs inside ``ClientSession.with_transaction`` and every write
passes the session along. Standalone servers cannot run multi-document
transactions, so with transactions disabled each write registers a
compensating action and a failed unit replays them newest-first.
"""

import logging
from typing import Callable, List, Optional, Tuple, TypeVar

from pymongo import ASCENDING, DESCENDING

T = TypeVar("T")


class UnitOfWork:
    def __init__(self, session=None):
        self.session = session
        self._compensations: List[Tuple[str, Callable[[], object]]] = []

    @property
    def transactional(self) -> bool:
        return self.session is not None

    def compensate(self, description: str, action: Callable[[], object]):
        # The transaction already undoes everything on abort.
        if self.transactional:
            return
        self._compensations.append((description, action))

    def rollback(self, logger: logging.Logger):
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
            except Exception as exc:
                logger.error("Compensation failed while undoing %s: %s", description, exc)


class Store:
    def __init__(
        self,
        client,
        db,
        use_transactions: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.db = db
        self.use_transactions = use_transactions
        self.logger = logger or logging.getLogger(__name__)

    @property
    def customers(self):
        return self.db.customers

    @property
    def admins(self):
        return self.db.admins

    @property
    def carts(self):
        return self.db.carts

    @property
    def products(self):
        return self.db.products

    @property
    def payments(self):
        return self.db.payments

    @property
    def orders(self):
        return self.db.orders

    def ensure_indexes(self):
        index_specs = [
            (self.customers, [("email", ASCENDING)], {"unique": True}),
            (self.admins, [("email", ASCENDING)], {"unique": True}),
            (self.carts, [("customer", ASCENDING)], {"unique": True}),
            (self.payments, [("intent_id", ASCENDING)], {"unique": True}),
            (self.payments, [("created_at", DESCENDING)], {}),
            # One order per payment, whatever the finalize path.
            (self.orders, [("payment", ASCENDING)], {"unique": True}),
            (self.orders, [("customer", ASCENDING), ("created_at", DESCENDING)], {}),
        ]
        for collection, keys, options in index_specs:
            try:
                collection.create_index(keys, **options)
            except Exception as exc:
                self.logger.warning(
                    "Unable to ensure index %s on %s: %s", keys, collection.name, exc
                )

    def run_in_transaction(self, callback: Callable[[UnitOfWork], T]) -> T:
        if self.use_transactions:
            with self.client.start_session() as session:
                return session.with_transaction(
                    lambda active_session: callback(UnitOfWork(active_session))
                )

        unit = UnitOfWork()
        try:
            return callback(unit)
        except Exception:
            self.logger.warning("Unit of work failed; replaying compensations.")
            unit.rollback(self.logger)
            raise
