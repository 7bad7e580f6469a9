"""
Request-scoped dependencies backed by objects held on ``app.state``.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.config import Settings
from renderqueue.db.connection import Database
from renderqueue.workflow.registry import WorkflowRegistry


def get_database(request: Request) -> Database:
    database = request.app.state.database
    if database is None:
        raise RuntimeError("Database not initialized")
    return database


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: A session committed when the request succeeds.
    """
    async with get_database(request).session() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> WorkflowRegistry:
    return request.app.state.registry
