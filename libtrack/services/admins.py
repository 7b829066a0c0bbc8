import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.repositories import admin_repo
from libtrack.repositories.admin_repo import PERMISSION_COLUMNS
from libtrack.security import create_access_token, hash_password, verify_password
from libtrack.services.errors import ServiceError

logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLE = "Super Admin"


class AdminError(ServiceError):
    pass


def permissions_of(row: Dict[str, Any]) -> Dict[str, bool]:
    return {key: bool(row.get(column)) for key, column in PERMISSION_COLUMNS.items()}


def present_admin(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "admin_id": row["admin_id"],
        "firstName": row.get("first_name"),
        "lastName": row.get("last_name"),
        "email": row.get("email"),
        "role": row.get("role"),
        "status": row.get("status"),
        "createdAt": row.get("created_at"),
        "lastLogin": row.get("last_login"),
        "permissions": permissions_of(row),
    }


def permission_columns(permissions: Optional[Dict[str, Any]]) -> Dict[str, bool]:
    """Every permission column, False unless granted."""
    permissions = permissions or {}
    return {column: bool(permissions.get(key)) for key, column in PERMISSION_COLUMNS.items()}


async def list_admins(db: AsyncSession) -> List[Dict[str, Any]]:
    return [present_admin(r) for r in await admin_repo.list_admins(db)]


async def get_admin(db: AsyncSession, admin_id: int) -> Dict[str, Any]:
    row = await admin_repo.get_admin(db, admin_id)
    if row is None:
        raise AdminError(404, "Administrator not found")
    return present_admin(row)


async def create_admin(
    db: AsyncSession,
    first_name: Optional[str],
    last_name: Optional[str],
    email: Optional[str],
    password: Optional[str],
    role: str = "Admin",
    status: str = "Active",
    permissions: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not first_name or not last_name or not email or not password:
        raise AdminError(400, "Missing required fields")
    if await admin_repo.email_taken(db, email):
        raise AdminError(409, "Email already registered")

    password_hash = await asyncio.to_thread(hash_password, password)
    admin_id = await admin_repo.insert_admin(db, {
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "password_hash": password_hash,
        "role": role,
        "status": status,
        **permission_columns(permissions),
    })
    await db.commit()
    logger.info(f"[Admins] Created administrator {admin_id} ({email}).")
    return await get_admin(db, admin_id)


async def update_admin(db: AsyncSession, admin_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply camelCase changes. The permission map is always rewritten in full."""
    existing = await admin_repo.get_admin(db, admin_id)
    if existing is None:
        raise AdminError(404, "Administrator not found")

    email = changes.get("email")
    if email and email != existing.get("email") and await admin_repo.email_taken(db, email, exclude_admin_id=admin_id):
        raise AdminError(409, "Email already in use by another account")

    values: Dict[str, Any] = {}
    for key, column in (("firstName", "first_name"), ("lastName", "last_name"), ("email", "email"),
                        ("role", "role"), ("status", "status")):
        if changes.get(key) is not None:
            values[column] = changes[key]
    values.update(permission_columns(changes.get("permissions")))
    if changes.get("password"):
        values["password_hash"] = await asyncio.to_thread(hash_password, changes["password"])

    await admin_repo.update_admin(db, admin_id, values)
    await db.commit()
    return await get_admin(db, admin_id)


async def delete_admin(db: AsyncSession, admin_id: int) -> int:
    existing = await admin_repo.get_admin(db, admin_id)
    if existing is None:
        raise AdminError(404, "Administrator not found")
    if existing.get("role") == SUPER_ADMIN_ROLE:
        raise AdminError(403, "Cannot delete a Super Admin via this endpoint")
    affected = await admin_repo.delete_admin(db, admin_id)
    await db.commit()
    return affected


async def login(db: AsyncSession, email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
    if not email or not password:
        raise AdminError(400, "Email and password are required.")
    admin = await admin_repo.get_admin_for_login(db, email)
    if admin is None:
        raise AdminError(404, "Administrator not found.")
    if admin.get("status") != "Active":
        raise AdminError(403, "Your account is inactive. Please contact a Super Admin.")
    if not await asyncio.to_thread(verify_password, password, admin.get("password_hash")):
        raise AdminError(401, "Invalid credentials.")

    await admin_repo.touch_last_login(db, admin["admin_id"])
    await db.commit()

    name = f"{admin.get('first_name') or ''} {admin.get('last_name') or ''}".strip()
    token = create_access_token({
        "sub": str(admin["admin_id"]),
        "email": admin.get("email"),
        "name": name,
        "role": admin.get("role"),
    })
    logger.info(f"[Admins] Administrator {admin['admin_id']} logged in.")
    return {
        "token": token,
        "user": {
            "id": admin["admin_id"],
            "firstName": admin.get("first_name"),
            "lastName": admin.get("last_name"),
            "email": admin.get("email"),
            "role": admin.get("role"),
            "status": admin.get("status"),
            "permissions": permissions_of(admin),
        },
    }
