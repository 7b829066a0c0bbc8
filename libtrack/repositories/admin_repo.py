from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories.base import fetch_all, fetch_one, execute, insert_returning

# API permission key -> administrators column
PERMISSION_COLUMNS = {
    "dashboard": "perm_dashboard",
    "manageBooks": "perm_manage_books",
    "bookReservations": "perm_book_reservations",
    "manageRegistrations": "perm_manage_registrations",
    "bookTransactions": "perm_book_transactions",
    "managePenalties": "perm_manage_penalties",
    "activityLogs": "perm_activity_logs",
    "settings": "perm_settings",
    "manageAdministrators": "perm_manage_administrators",
}

ADMIN_COLUMNS = (
    "admin_id, first_name, last_name, email, role, status, created_at, last_login, "
    + ", ".join(PERMISSION_COLUMNS.values())
)


async def list_admins(db: AsyncSession) -> List[Dict[str, Any]]:
    return await fetch_all(db, f"SELECT {ADMIN_COLUMNS} FROM administrators ORDER BY first_name, last_name")


async def get_admin(db: AsyncSession, admin_id: int) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db, f"SELECT {ADMIN_COLUMNS} FROM administrators WHERE admin_id = :admin_id LIMIT 1", {"admin_id": admin_id}
    )


async def get_admin_for_login(db: AsyncSession, email: str) -> Optional[Dict[str, Any]]:
    return await fetch_one(
        db,
        f"SELECT {ADMIN_COLUMNS}, password_hash FROM administrators WHERE email = :email LIMIT 1",
        {"email": email},
    )


async def email_taken(db: AsyncSession, email: str, exclude_admin_id: Optional[int] = None) -> bool:
    sql = "SELECT admin_id FROM administrators WHERE email = :email"
    params: Dict[str, Any] = {"email": email}
    if exclude_admin_id is not None:
        sql += " AND admin_id <> :admin_id"
        params["admin_id"] = exclude_admin_id
    return await fetch_one(db, sql + " LIMIT 1", params) is not None


async def insert_admin(db: AsyncSession, values: Dict[str, Any]) -> int:
    columns = ["first_name", "last_name", "email", "password_hash", "role", "status", *PERMISSION_COLUMNS.values()]
    return await insert_returning(
        db,
        f"""
        INSERT INTO administrators ({', '.join(columns)}, created_at)
        VALUES ({', '.join(':' + c for c in columns)}, NOW())
        RETURNING admin_id
        """,
        {c: values.get(c) for c in columns},
    )


async def update_admin(db: AsyncSession, admin_id: int, values: Dict[str, Any]) -> int:
    allowed = {"first_name", "last_name", "email", "password_hash", "role", "status", *PERMISSION_COLUMNS.values()}
    updates = {k: v for k, v in values.items() if k in allowed}
    if not updates:
        return 0
    assignments = ", ".join(f"{column} = :{column}" for column in updates)
    return await execute(
        db,
        f"UPDATE administrators SET {assignments} WHERE admin_id = :admin_id",
        {**updates, "admin_id": admin_id},
    )


async def touch_last_login(db: AsyncSession, admin_id: int) -> int:
    return await execute(
        db, "UPDATE administrators SET last_login = NOW() WHERE admin_id = :admin_id", {"admin_id": admin_id}
    )


async def delete_admin(db: AsyncSession, admin_id: int) -> int:
    return await execute(db, "DELETE FROM administrators WHERE admin_id = :admin_id", {"admin_id": admin_id})
