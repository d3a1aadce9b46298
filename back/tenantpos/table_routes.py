from fastapi import APIRouter, Depends
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .db import get_session
from .errors import NotFound
from .models import Table, TableRead, TableStatus


router = APIRouter()


@router.get("/tables", response_model=list[TableRead])
async def list_tables(
    session: AsyncSession = Depends(get_session),
    status: TableStatus | None = None,
):
    statement = select(Table)
    if status is not None:
        statement = statement.where(Table.status == status)
    tables = await session.exec(statement.order_by(Table.id))
    return tables.all()


@router.get("/tables/{table_id}", response_model=TableRead)
async def get_table(table_id: int, session: AsyncSession = Depends(get_session)):
    """Current table state, including whether it was released after payment"""
    table = await session.get(Table, table_id)
    if not table:
        raise NotFound("Table", table_id)
    return table
