"""
Conditional-update primitives shared by the services.

Every state change in TicketMatch is an UPDATE guarded by the state the
caller expects; the affected row count says whether this caller won.
"""
from typing import Any, Iterable, Type, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import NotFoundError


async def compare_and_set(
    db: AsyncSession,
    model: Type[Any],
    record_id: str,
    expected_status: Union[str, Iterable[str]],
    *conditions: Any,
    **values: Any
) -> bool:
    """
    Apply values to one row only if its status (and any extra conditions) still hold.

    Args:
        db: Session with an open transaction
        model: ORM model with id and status columns
        record_id: Primary key
        expected_status: Status, or statuses, the row must currently have
        *conditions: Additional SQL conditions, e.g. a deadline check
        **values: Column values to set

    Returns:
        True if exactly one row changed
    """
    statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
    statement = (
        update(model)
        .where(model.id == record_id, model.status.in_(statuses), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(statement)
    return result.rowcount == 1


async def update_where(
    db: AsyncSession,
    model: Type[Any],
    record_id: str,
    *conditions: Any,
    **values: Any
) -> bool:
    """Like compare_and_set but guarded by arbitrary conditions instead of status."""
    statement = (
        update(model)
        .where(model.id == record_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(statement)
    return result.rowcount == 1


async def load(db: AsyncSession, model: Type[Any], record_id: str, resource: str) -> Any:
    """
    Fetch a row fresh from the database.

    Raises:
        NotFoundError: If no row has this id
    """
    record = await db.get(model, record_id, populate_existing=True)
    if record is None:
        raise NotFoundError(resource, record_id)
    return record
