import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.admin import AdminCreate, AdminUpdate, LoginRequest
from libtrack.schemas.common import ok
from libtrack.services import admins

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/administrators/login")
async def login(body: LoginRequest, db: AsyncSession = Depends(get_library_db_session)):
    result = await admins.login(db, body.email, body.password)
    return ok(data=result, message="Login successful")


@router.get("/administrators")
async def list_admins(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await admins.list_admins(db))


@router.get("/administrators/{admin_id}")
async def get_admin(admin_id: int, db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await admins.get_admin(db, admin_id))


@router.post("/administrators", status_code=201)
async def create_admin(body: AdminCreate, db: AsyncSession = Depends(get_library_db_session)):
    admin = await admins.create_admin(
        db,
        body.first_name,
        body.last_name,
        body.email,
        body.password,
        role=body.role,
        status=body.status,
        permissions=body.permissions,
    )
    return ok(data=admin, message="Administrator created successfully")


@router.put("/administrators/{admin_id}")
async def update_admin(admin_id: int, body: AdminUpdate, db: AsyncSession = Depends(get_library_db_session)):
    admin = await admins.update_admin(db, admin_id, body.model_dump(by_alias=True))
    return ok(data=admin, message="Administrator updated successfully")


@router.delete("/administrators/{admin_id}")
async def delete_admin(admin_id: int, db: AsyncSession = Depends(get_library_db_session)):
    await admins.delete_admin(db, admin_id)
    return ok(data={"admin_id": admin_id}, message="Administrator deleted successfully")
