import asyncio

import manage_staff
from salon_ledger_api.app.services.staff_service import StaffService


def test_add_disable_enable_cycle(ledger_db, capsys):
    db = str(ledger_db)
    assert manage_staff.main(["--db", db, "add", "Lan@Example.com", "--name", "Lan"]) == 0
    assert asyncio.run(StaffService.is_enabled("lan@example.com"))

    assert manage_staff.main(["--db", db, "disable", "lan@example.com"]) == 0
    assert not asyncio.run(StaffService.is_enabled("lan@example.com"))

    assert manage_staff.main(["--db", db, "enable", "lan@example.com"]) == 0
    assert asyncio.run(StaffService.is_enabled("lan@example.com"))

    assert manage_staff.main(["--db", db, "list"]) == 0
    assert "lan@example.com" in capsys.readouterr().out


def test_disable_unknown_email(ledger_db):
    assert manage_staff.main(["--db", str(ledger_db), "disable", "ghost@example.com"]) == 2
