from __future__ import annotations

import datetime as dt
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sqla_relations import frozendict, sqla_cache_clear
from sqla_relations.node import Node, get_node, init_node

from .entities import ENTITY_NODE
from .models import Base, Category, Comment, Country, Post, Profile, Role, User, user_roles


class QueryCounter:
    """Records every statement sent to the database."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def clear(self) -> None:
        self.statements.clear()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with model and entity descriptors.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    Node.reset()
    init_node(frozendict({**get_node(Base), **ENTITY_NODE}))


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    sqla_cache_clear()


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]


@pytest.fixture
def engine() -> Iterator[sa.Engine]:
    engine = sa.create_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def connection(engine: sa.Engine) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        yield conn


@pytest.fixture
def session(connection: sa.Connection) -> Iterator[orm.Session]:
    with orm.Session(bind=connection) as sess:
        yield sess


@pytest.fixture
def queries(engine: sa.Engine) -> Iterator[QueryCounter]:
    counter = QueryCounter()
    sa.event.listen(engine, "before_cursor_execute", counter)
    yield counter
    sa.event.remove(engine, "before_cursor_execute", counter)


def _seed(conn: sa.Connection) -> None:
    conn.execute(
        sa.insert(Country.__table__),
        [{"id": 1, "name": "Norway"}, {"id": 2, "name": "Chile"}],
    )
    conn.execute(
        sa.insert(User.__table__),
        [
            {"id": 1, "name": "alice", "country_id": 1},
            {"id": 2, "name": "bob", "country_id": 1},
            {"id": 3, "name": "charlie", "country_id": None},
            {"id": 4, "name": "dora", "country_id": 2},
        ],
    )
    conn.execute(
        sa.insert(Profile.__table__),
        [{"id": 1, "bio": "alice bio", "user_id": 1}, {"id": 2, "bio": "dora bio", "user_id": 4}],
    )
    conn.execute(
        sa.insert(Post.__table__),
        [
            {
                "id": id_,
                "title": title,
                "user_id": user_id,
                "score": score,
                "published": published,
                "created_at": at,
            }
            for id_, title, user_id, score, published, at in (
                (10, "a1", 1, 5, True, dt.datetime(2024, 1, 1)),
                (11, "a2", 1, 9, True, dt.datetime(2024, 3, 1)),
                (12, "b1", 2, 3, True, dt.datetime(2024, 2, 1)),
                (13, "d1", 4, 1, False, dt.datetime(2024, 1, 15)),
            )
        ],
    )
    conn.execute(
        sa.insert(Comment.__table__),
        [
            {"id": 100, "body": "first", "post_id": 10},
            {"id": 101, "body": "second", "post_id": 10},
            {"id": 102, "body": "third", "post_id": 12},
        ],
    )
    conn.execute(
        sa.insert(Role.__table__),
        [
            {"id": 5, "name": "admin", "level": 10},
            {"id": 6, "name": "editor", "level": 5},
            {"id": 7, "name": "viewer", "level": 1},
        ],
    )
    conn.execute(
        sa.insert(user_roles),
        [
            {"user_id": 1, "role_id": 5},
            {"user_id": 1, "role_id": 7},
            {"user_id": 2, "role_id": 6},
        ],
    )
    conn.execute(
        sa.insert(Category.__table__),
        [
            {"id": 1, "name": "root", "parent_id": None},
            {"id": 2, "name": "child_1", "parent_id": 1},
            {"id": 3, "name": "child_2", "parent_id": 1},
        ],
    )


@pytest.fixture
def seed_data(connection: sa.Connection) -> None:
    _seed(connection)


@pytest.fixture
async def async_engine(tmp_path: Any) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(_seed)
    yield engine
    await engine.dispose()
