"""
Service layer for the identity directory.

The ``staff`` table is the single source of truth for who may use the
API.  It is read on every request with no caching, so an operator who
disables an e-mail (``manage_staff.py disable``) locks that person out
on their very next call without a restart.

E-mails are compared case-insensitively and stored lower-cased.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from salon_ledger_api.app.core.db import get_connection
from salon_ledger_api.app.schemas.staff import StaffEntry

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class StaffService:
    """Read and maintain identity directory entries."""

    @classmethod
    async def is_enabled(cls, email: str) -> bool:
        """Return ``True`` if at least one enabled row exists for ``email``."""
        email = normalize_email(email)
        if not email:
            return False
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM staff WHERE email = ? AND enabled = 1 LIMIT 1",
                (email,),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    @classmethod
    async def display_name(cls, email: str) -> str:
        """Return the display name for ``email`` or an empty string.

        Enabled rows win over disabled ones; among equals the most
        recently added row wins.
        """
        conn = get_connection()
        try:
            row = conn.execute(
                """
                SELECT name FROM staff
                WHERE email = ? AND name != ''
                ORDER BY enabled DESC, id DESC
                LIMIT 1
                """,
                (normalize_email(email),),
            ).fetchone()
            return row["name"] if row else ""
        finally:
            conn.close()

    @classmethod
    async def list_entries(cls, email: Optional[str] = None) -> List[StaffEntry]:
        conn = get_connection()
        try:
            if email:
                rows = conn.execute(
                    "SELECT * FROM staff WHERE email = ? ORDER BY id",
                    (normalize_email(email),),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM staff ORDER BY email, id").fetchall()
            return [cls._row_to_entry(row) for row in rows]
        finally:
            conn.close()

    @classmethod
    async def add(cls, email: str, name: str = "", enabled: bool = True) -> StaffEntry:
        """Append a directory row and return it."""
        email = normalize_email(email)
        if not email:
            raise ValueError("E-mail must not be empty")
        conn = get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO staff (email, name, enabled) VALUES (?, ?, ?)",
                (email, name.strip(), 1 if enabled else 0),
            )
            entry_id = cursor.lastrowid
            conn.commit()
            logger.info("Added staff entry %s for %s", entry_id, email)
            row = cursor.execute("SELECT * FROM staff WHERE id = ?", (entry_id,)).fetchone()
            return cls._row_to_entry(row)
        finally:
            conn.close()

    @classmethod
    async def set_enabled(cls, email: str, enabled: bool) -> int:
        """Enable or disable every row for ``email``.  Returns rows changed."""
        conn = get_connection()
        try:
            cursor = conn.execute(
                "UPDATE staff SET enabled = ? WHERE email = ?",
                (1 if enabled else 0, normalize_email(email)),
            )
            conn.commit()
            logger.info(
                "%s %d staff row(s) for %s",
                "Enabled" if enabled else "Disabled",
                cursor.rowcount,
                email,
            )
            return cursor.rowcount
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row) -> StaffEntry:
        return StaffEntry(
            id=row["id"],
            email=row["email"],
            name=row["name"] or "",
            enabled=bool(row["enabled"]),
            created_at=str(row["created_at"] or ""),
        )
