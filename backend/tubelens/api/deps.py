"""
API Dependencies — DB session, the shared service container and the stream cursor.
"""

from typing import AsyncGenerator

from fastapi import Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tubelens.database import async_session
from tubelens.errors import ValidationError
from tubelens.services.container import Services


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Services ─────────────────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    """The container built during application startup."""
    return request.app.state.services


# ── Stream cursor ────────────────────────────────────────────────────────────

def get_start_index(
    start_index: int | None = Query(None, alias="startIndex"),
    last_event_id: str | None = Header(None, alias="Last-Event-ID"),
) -> int:
    """First event index to deliver.

    An explicit ``startIndex`` wins. Otherwise an EventSource reconnect resumes
    just after the ``id`` of the last frame it received.
    """
    if start_index is not None:
        return start_index
    if last_event_id is None or not last_event_id.strip():
        return 0
    try:
        return int(last_event_id) + 1
    except ValueError:
        raise ValidationError(f"Last-Event-ID must be an event index, got {last_event_id!r}")
