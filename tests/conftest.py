"""Shared fixtures for Arbor tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from arbor import ArborAsync
from arbor.fs.blobs import LocalBlobStore
from arbor.fs.cache import TTLUrlCache
from arbor.fs.config import DriveConfig
from arbor.fs.identity import InMemoryUserDirectory
from arbor.fs.types import UploadFile

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

    from arbor.models.nodes import NodeBase

BASE_URL = "https://files.example.test/blob"
SECRET = "test-secret"


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session, rolled back after each test."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


@pytest.fixture
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs", base_url=BASE_URL, secret=SECRET)


@pytest.fixture
def users() -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory()
    for user_id in ("alice", "bob", "carol", "tina", "sam", "sue"):
        directory.add(user_id)
    directory.add("hermit", accepts_shares=False)
    return directory


@pytest.fixture
def config() -> DriveConfig:
    return DriveConfig()


@pytest.fixture
async def arbor(
    async_engine: AsyncEngine,
    blobs: LocalBlobStore,
    users: InMemoryUserDirectory,
    config: DriveConfig,
) -> AsyncIterator[ArborAsync]:
    """Facade over the shared engine; services are reachable as attributes."""
    instance = ArborAsync(
        engine=async_engine,
        blobs=blobs,
        users=users,
        cache=TTLUrlCache(),
        config=config,
    )
    yield instance
    await instance.close()


@pytest.fixture
def make_folder(
    arbor: ArborAsync, async_session: AsyncSession
) -> Callable[..., Awaitable[NodeBase]]:
    async def _make(name: str, owner: str = "alice", parent_id: str | None = None) -> NodeBase:
        return await arbor.folders.create(async_session, name, owner, parent_id)

    return _make


@pytest.fixture
def make_file(
    arbor: ArborAsync, async_session: AsyncSession
) -> Callable[..., Awaitable[NodeBase]]:
    async def _make(
        name: str,
        data: bytes = b"hello",
        owner: str = "alice",
        parent_id: str | None = None,
    ) -> NodeBase:
        nodes = await arbor.files.register_upload(
            async_session, [UploadFile(name, data)], owner, parent_id
        )
        return nodes[0]

    return _make
