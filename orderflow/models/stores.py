"""Document stores over the aiosqlite ``Database``.

Each store maps one table to one pydantic model.  The full model lives in
the ``doc`` column; the remaining columns are copies kept for indexed
lookups and for atomic counter updates.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from orderflow.errors import ConcurrentModificationError
from orderflow.models.database import Database
from orderflow.models.schemas import (
    TERMINAL_STATUSES,
    CatalogItem,
    OrderFilters,
    OrderStatus,
    PackageStats,
    ServiceOrder,
    ServicePackage,
    User,
    UserRole,
    to_cents,
)
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="stores")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class OrderStore:
    """Persistence for ``ServiceOrder`` documents."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._insert_lock = asyncio.Lock()

    async def next_order_number(self) -> str:
        """Return ``SRV-<epoch-ms>-<sequence>`` for the next order."""
        count = await self.count()
        return f"SRV-{int(time.time() * 1000)}-{count + 1:05d}"

    async def insert(self, order: ServiceOrder) -> ServiceOrder:
        async with self._insert_lock:
            if not order.order_number:
                order.order_number = await self.next_order_number()
            order.version = 0
            await self._db.execute(
                "INSERT INTO service_orders "
                "(id, order_number, buyer_id, creator_id, assigned_creator_id, "
                " is_generic_request, status, due_date, created_at, updated_at, "
                " version, doc) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.id,
                    order.order_number,
                    order.buyer_id,
                    order.creator_id,
                    order.assigned_creator_id,
                    int(order.is_generic_request),
                    order.status.value,
                    _iso(order.due_date),
                    _iso(order.created_at),
                    _iso(order.updated_at),
                    order.version,
                    order.model_dump_json(),
                ),
            )
        log.debug("store.order_inserted", order_id=order.id, order_number=order.order_number)
        return order

    async def get(self, order_id: str) -> ServiceOrder | None:
        """Fetch an order by id or order number."""
        row = await self._db.fetch_one(
            "SELECT version, doc FROM service_orders WHERE id = ? OR order_number = ?",
            (order_id, order_id),
        )
        if row is None:
            return None
        return self._from_row(row)

    async def save(self, order: ServiceOrder, expected_version: int) -> ServiceOrder:
        """Write *order* back only if the stored version is still *expected_version*.

        Raises
        ------
        ConcurrentModificationError
            If another writer saved the order after it was read.
        """
        order.version = expected_version + 1
        order.updated_at = datetime.now(timezone.utc)
        cursor = await self._db.execute(
            "UPDATE service_orders SET "
            "assigned_creator_id = ?, status = ?, due_date = ?, updated_at = ?, "
            "version = ?, doc = ? "
            "WHERE id = ? AND version = ?",
            (
                order.assigned_creator_id,
                order.status.value,
                _iso(order.due_date),
                _iso(order.updated_at),
                order.version,
                order.model_dump_json(),
                order.id,
                expected_version,
            ),
        )
        if cursor.rowcount == 0:
            log.warning(
                "store.conflict",
                order_id=order.id,
                expected_version=expected_version,
            )
            raise ConcurrentModificationError(
                f"Order {order.order_number or order.id} was modified concurrently"
            )
        return order

    async def find(
        self,
        *,
        buyer_id: str | None = None,
        fulfiller_id: str | None = None,
        filters: OrderFilters | None = None,
        now: datetime | None = None,
    ) -> list[ServiceOrder]:
        """Return matching orders, newest first."""
        clauses: list[str] = []
        params: list[Any] = []

        if buyer_id is not None:
            clauses.append("buyer_id = ?")
            params.append(buyer_id)
        if fulfiller_id is not None:
            clauses.append("(creator_id = ? OR assigned_creator_id = ?)")
            params.extend([fulfiller_id, fulfiller_id])

        if filters is not None:
            if filters.status is not None:
                clauses.append("status = ?")
                params.append(filters.status.value)
            if filters.is_generic_request is not None:
                clauses.append("is_generic_request = ?")
                params.append(int(filters.is_generic_request))
            if filters.unassigned:
                clauses.append("is_generic_request = 1 AND assigned_creator_id IS NULL")
            if filters.overdue:
                terminal = ", ".join("?" for _ in TERMINAL_STATUSES)
                clauses.append(f"due_date IS NOT NULL AND due_date < ? AND status NOT IN ({terminal})")
                params.append(_iso(now or datetime.now(timezone.utc)))
                params.extend(s.value for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch_all(
            f"SELECT version, doc FROM service_orders {where} "
            "ORDER BY created_at DESC, rowid DESC",
            tuple(params),
        )
        return [self._from_row(row) for row in rows]

    async def count(self) -> int:
        row = await self._db.fetch_one("SELECT COUNT(*) AS n FROM service_orders")
        return int(row["n"]) if row else 0

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM service_orders GROUP BY status"
        )
        return {row["status"]: int(row["n"]) for row in rows}

    @staticmethod
    def _from_row(row: dict[str, Any]) -> ServiceOrder:
        order = ServiceOrder.model_validate(row["doc"])
        order.version = int(row["version"])
        return order


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------

class PackageStore:
    """Persistence for ``ServicePackage`` documents and their counters."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, package: ServicePackage) -> ServicePackage:
        await self._db.execute(
            "INSERT INTO service_packages "
            "(id, creator_id, catalog_item_id, slug, is_active, stats_orders, "
            " stats_completed, stats_revenue_cents, created_at, doc) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                package.id,
                package.creator_id,
                package.catalog_item_id,
                package.slug or package.id,
                int(package.is_active),
                package.stats.orders,
                package.stats.completed,
                to_cents(package.stats.revenue),
                _iso(package.created_at),
                package.model_dump_json(exclude={"stats", "is_active"}),
            ),
        )
        return package

    async def get(self, package_id: str) -> ServicePackage | None:
        row = await self._db.fetch_one(
            "SELECT * FROM service_packages WHERE id = ?", (package_id,)
        )
        return self._from_row(row) if row else None

    async def slug_exists(self, slug: str) -> bool:
        row = await self._db.fetch_one(
            "SELECT 1 AS hit FROM service_packages WHERE slug = ?", (slug,)
        )
        return row is not None

    async def get_by_slug(self, slug: str) -> ServicePackage | None:
        """Active package published under *slug*."""
        row = await self._db.fetch_one(
            "SELECT * FROM service_packages WHERE slug = ? AND is_active = 1", (slug,)
        )
        return self._from_row(row) if row else None

    async def list_by_creator(self, creator_id: str) -> list[ServicePackage]:
        rows = await self._db.fetch_all(
            "SELECT * FROM service_packages WHERE creator_id = ? "
            "ORDER BY created_at DESC",
            (creator_id,),
        )
        return [self._from_row(row) for row in rows]

    async def list_active_for_item(self, catalog_item_id: str) -> list[ServicePackage]:
        rows = await self._db.fetch_all(
            "SELECT * FROM service_packages "
            "WHERE catalog_item_id = ? AND is_active = 1 "
            "ORDER BY stats_completed DESC, created_at DESC",
            (catalog_item_id,),
        )
        return [self._from_row(row) for row in rows]

    async def set_active(self, package_id: str, active: bool) -> None:
        await self._db.execute(
            "UPDATE service_packages SET is_active = ? WHERE id = ?",
            (int(active), package_id),
        )

    async def increment_orders(self, package_id: str) -> None:
        await self._db.execute(
            "UPDATE service_packages SET stats_orders = stats_orders + 1 WHERE id = ?",
            (package_id,),
        )

    async def record_completion(self, package_id: str, revenue: Decimal) -> None:
        # Revenue is summed in SQL, so it is kept as integer cents.
        await self._db.execute(
            "UPDATE service_packages SET "
            "stats_completed = stats_completed + 1, "
            "stats_revenue_cents = stats_revenue_cents + ? "
            "WHERE id = ?",
            (to_cents(revenue), package_id),
        )

    @staticmethod
    def _from_row(row: dict[str, Any]) -> ServicePackage:
        data = dict(row["doc"])
        data["slug"] = row["slug"]
        data["is_active"] = bool(row["is_active"])
        data["stats"] = PackageStats(
            orders=row["stats_orders"],
            completed=row["stats_completed"],
            revenue=Decimal(row["stats_revenue_cents"]) / 100,
        )
        return ServicePackage.model_validate(data)


# ---------------------------------------------------------------------------
# Users and catalog items
# ---------------------------------------------------------------------------

class UserDirectory:
    """Role lookups for marketplace accounts."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, user: User) -> User:
        await self._db.execute(
            "INSERT INTO users (id, role, name, doc) VALUES (?, ?, ?, ?)",
            (user.id, user.role.value, user.name, user.model_dump_json()),
        )
        return user

    async def get(self, user_id: str) -> User | None:
        row = await self._db.fetch_one("SELECT doc FROM users WHERE id = ?", (user_id,))
        return User.model_validate(row["doc"]) if row else None

    async def has_role(self, role: UserRole) -> bool:
        row = await self._db.fetch_one(
            "SELECT 1 AS hit FROM users WHERE role = ? LIMIT 1", (role.value,)
        )
        return row is not None

    async def list_by_roles(self, roles: Iterable[UserRole]) -> list[User]:
        values = [r.value for r in roles]
        placeholders = ", ".join("?" for _ in values)
        rows = await self._db.fetch_all(
            f"SELECT doc FROM users WHERE role IN ({placeholders}) ORDER BY name",
            tuple(values),
        )
        return [User.model_validate(row["doc"]) for row in rows]


class CatalogStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def insert(self, item: CatalogItem) -> CatalogItem:
        await self._db.execute(
            "INSERT INTO catalog_items (id, creator_id, doc) VALUES (?, ?, ?)",
            (item.id, item.creator_id, item.model_dump_json()),
        )
        return item

    async def get(self, item_id: str) -> CatalogItem | None:
        row = await self._db.fetch_one(
            "SELECT doc FROM catalog_items WHERE id = ?", (item_id,)
        )
        return CatalogItem.model_validate(row["doc"]) if row else None
