from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from libtrack.db.connection import get_library_db_session
from libtrack.schemas.catalog import RuleReorder, RulesCreate, RuleUpdate
from libtrack.schemas.common import ok
from libtrack.services import rules

router = APIRouter()


@router.get("/rules")
async def list_rules(db: AsyncSession = Depends(get_library_db_session)):
    return ok(data=await rules.list_rules(db))


@router.post("/rules", status_code=201)
async def create_rules(body: RulesCreate, db: AsyncSession = Depends(get_library_db_session)):
    result = await rules.create_rules(db, body.heading, [rule.model_dump() for rule in body.rules])
    return ok(data=result, message=f"{result['created']} rule(s) added successfully")


@router.put("/rules/{rule_id}")
async def update_rule(rule_id: int, body: RuleUpdate, db: AsyncSession = Depends(get_library_db_session)):
    result = await rules.update_rule(db, rule_id, body.title, body.content, heading=body.heading)
    return ok(data=result, message="Rule updated successfully")


@router.put("/rules/{rule_id}/reorder")
async def reorder_rule(rule_id: int, body: RuleReorder, db: AsyncSession = Depends(get_library_db_session)):
    await rules.reorder_rule(db, rule_id, body.direction)
    return ok(message="Rule reordered successfully")


@router.delete("/rules/headers/{header_id}")
async def delete_header(header_id: int, db: AsyncSession = Depends(get_library_db_session)):
    await rules.delete_header(db, header_id)
    return ok(message="Header and its rules deleted successfully")


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: int, db: AsyncSession = Depends(get_library_db_session)):
    await rules.delete_rule(db, rule_id)
    return ok(message="Rule deleted successfully")
