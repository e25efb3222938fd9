"""
Service layer for the order ledger.

The ``orders`` table is treated as a flat, append-only sheet.  Reads
walk it backwards from the most recently appended row, which lets the
day-filtered listing and the monthly statistics stop as soon as they
reach a row older than the period of interest.

That early exit is only sound while append order implies time order.
``create`` guarantees it: ``created_at`` is assigned here, never taken
from the caller, and is clamped so that it is never earlier than the
previous row's timestamp even if the server clock steps backwards.

Every operation is scoped to the caller's verified e-mail.  A row
owned by someone else is skipped on reads and refused on delete.
"""

from __future__ import annotations

import enum
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from salon_ledger_api.app.core.config import settings
from salon_ledger_api.app.core.db import get_connection
from salon_ledger_api.app.core.timeutil import (
    day_window,
    format_timestamp,
    generate_id,
    month_start,
    normalize_timestamp,
    parse_amount,
)
from salon_ledger_api.app.schemas.order import OrderCreate, OrderRead, OrderStats, ServiceStats
from salon_ledger_api.app.services.staff_service import StaffService, normalize_email

logger = logging.getLogger(__name__)

UNKNOWN_SERVICE = "Unknown"


class DeleteOutcome(str, enum.Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


def _scan_backward(conn: sqlite3.Connection) -> Iterator[sqlite3.Row]:
    """Yield rows newest-append first.

    The cursor is consumed lazily, so a caller that stops iterating
    stops reading the table.
    """
    cursor = conn.execute("SELECT * FROM orders ORDER BY row_id DESC")
    try:
        yield from cursor
    finally:
        cursor.close()


def _owner(row: sqlite3.Row) -> str:
    return normalize_email(row["owner_email"])


def _category_key(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


class OrderService:
    """CRUD and statistics over the order ledger."""

    @classmethod
    async def create_order(cls, data: OrderCreate, owner: str) -> OrderRead:
        """Append a new order owned by ``owner`` and return it.

        ``id``, ``created_at`` and the owner fields are assigned here.
        """
        owner = normalize_email(owner)
        display_name = await StaffService.display_name(owner)
        order_id = generate_id()
        conn = get_connection()
        try:
            # Serialise with other writers so the clamp below sees the
            # true last row.
            conn.execute("BEGIN IMMEDIATE")
            created = datetime.now()
            last = conn.execute(
                "SELECT created_at FROM orders ORDER BY row_id DESC LIMIT 1"
            ).fetchone()
            if last is not None:
                previous = normalize_timestamp(last["created_at"])
                if previous > created:
                    logger.warning(
                        "Clock behind last row (%s > %s); clamping new order time",
                        format_timestamp(previous),
                        format_timestamp(created),
                    )
                    created = previous
            created_at = format_timestamp(created)
            conn.execute(
                """
                INSERT INTO orders (id, created_at, owner_email, owner_name, service, amount, note)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (order_id, created_at, owner, display_name, data.category, data.amount, data.note),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Created order %s for %s (%s)", order_id, owner, data.amount)
        return OrderRead(
            id=order_id,
            created_at=created_at,
            owner_identity=owner,
            owner_display_name=display_name,
            category=data.category,
            amount=data.amount,
            note=data.note,
        )

    @classmethod
    async def list_orders(
        cls,
        owner: str,
        day: Optional[str] = None,
        limit: Optional[int] = None,
        early_exit: bool = True,
        service: Optional[str] = None,
    ) -> List[OrderRead]:
        """Return up to ``limit`` of the caller's orders, newest first.

        ``day`` restricts the result to one local calendar day and
        raises ``ValueError`` if it cannot be parsed.  ``service`` keeps
        only orders of that category (case-insensitive).  ``limit`` is
        capped at ``settings.orders_max_limit``; a missing or
        non-positive limit means the cap.  ``early_exit=False`` walks
        the whole table and exists for verification.
        """
        owner = normalize_email(owner)
        cap = settings.orders_max_limit
        if limit is None or limit <= 0 or limit > cap:
            limit = cap
        window = day_window(day) if day else None
        wanted = _category_key(service) if service else None

        orders: List[OrderRead] = []
        conn = get_connection()
        try:
            for row in _scan_backward(conn):
                if window is not None:
                    start, end = window
                    ts = normalize_timestamp(row["created_at"])
                    if ts >= end:
                        continue
                    if ts < start:
                        if early_exit:
                            break
                        continue
                if _owner(row) != owner:
                    continue
                if wanted is not None and _category_key(row["service"]) != wanted:
                    continue
                orders.append(cls._row_to_order(row))
                if len(orders) >= limit:
                    break
        finally:
            conn.close()
        return orders

    @classmethod
    async def delete_order(cls, order_id: str, owner: str) -> DeleteOutcome:
        """Physically remove the caller's order ``order_id``.

        A second delete of the same id reports ``NOT_FOUND``.
        """
        owner = normalize_email(owner)
        conn = get_connection()
        try:
            target = None
            for row in _scan_backward(conn):
                if row["id"] == order_id:
                    target = row
                    break
            if target is None:
                return DeleteOutcome.NOT_FOUND
            if _owner(target) != owner:
                logger.warning(
                    "%s attempted to delete order %s owned by %s", owner, order_id, _owner(target)
                )
                return DeleteOutcome.FORBIDDEN
            conn.execute("DELETE FROM orders WHERE row_id = ?", (target["row_id"],))
            conn.commit()
            logger.info("Deleted order %s for %s", order_id, owner)
            return DeleteOutcome.DELETED
        finally:
            conn.close()

    @classmethod
    async def stats(
        cls,
        owner: str,
        now: Optional[datetime] = None,
        early_exit: bool = True,
    ) -> OrderStats:
        """Order counts and revenue for ``owner``.

        Buckets are today, the current week (from Monday) and the
        current month, plus the month broken down by category.
        Boundaries are computed once from ``now`` (default: the current
        local time) before the scan starts.  The week may begin in the
        previous month, so the scan stops at whichever start is earlier.
        """
        owner = normalize_email(owner)
        now = now or datetime.now()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today_end = today_start + timedelta(days=1)
        week_start = today_start - timedelta(days=today_start.weekday())
        first_of_month = month_start(now)
        next_month = month_start(first_of_month + timedelta(days=32))
        scan_floor = min(week_start, first_of_month)

        result = OrderStats()
        services: Dict[str, ServiceStats] = {}
        conn = get_connection()
        try:
            for row in _scan_backward(conn):
                ts = normalize_timestamp(row["created_at"])
                if ts < scan_floor:
                    if early_exit:
                        break
                    continue
                if ts >= next_month or _owner(row) != owner:
                    continue
                amount = parse_amount(row["amount"])
                if week_start <= ts < today_end:
                    result.week_count += 1
                    result.week_revenue += amount
                if ts < first_of_month:
                    continue
                result.total_orders += 1
                result.month_revenue += amount
                if today_start <= ts < today_end:
                    result.today_count += 1
                    result.today_revenue += amount
                name = (row["service"] or "").strip() or UNKNOWN_SERVICE
                bucket = services.setdefault(_category_key(name), ServiceStats(name=name))
                bucket.count += 1
                bucket.revenue += amount
        finally:
            conn.close()
        result.services = sorted(services.values(), key=lambda s: (-s.revenue, -s.count, s.name))
        return result

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> OrderRead:
        return OrderRead(
            id=row["id"],
            created_at=format_timestamp(normalize_timestamp(row["created_at"])),
            owner_identity=_owner(row),
            owner_display_name=row["owner_name"] or "",
            category=row["service"] or "",
            amount=parse_amount(row["amount"]),
            note=row["note"] or "",
        )
