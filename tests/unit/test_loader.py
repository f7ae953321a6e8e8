from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar

import pytest
import sqlalchemy as sa

from sqla_relations import (
    EagerLoader,
    LoadRequest,
    QueryExecutor,
    RelationDescriptor,
    UnsupportedRelationError,
    add_conditions,
)

from ..entities import (
    COUNTRY_POSTS,
    POST_AUTHOR,
    POST_COMMENTS,
    USER_AVATAR,
    USER_BOTTOM_POST,
    USER_LATEST_POST,
    USER_POSTS,
    USER_ROLES,
    CountryEntity,
    PostEntity,
    UserEntity,
)
from ..fakes import RecordingExecutor, sql


def _users(*ids: int) -> list[UserEntity]:
    return [UserEntity(id=i) for i in ids]


class Region(enum.Enum):
    EU = "eu"
    US = "us"


@dataclass
class BranchEntity:
    __tablename__: ClassVar[str] = "branches"

    id: int
    region: Any = None


@dataclass
class ShopEntity:
    __tablename__: ClassVar[str] = "shops"

    id: int
    region: Any = None
    branches: list[BranchEntity] = field(default_factory=list)


SHOP_BRANCHES = RelationDescriptor.has_many(
    ShopEntity, BranchEntity, "branches", foreign_key="region", local_key="region"
)


def test_recording_executor_is_a_query_executor() -> None:
    assert isinstance(RecordingExecutor(), QueryExecutor)


class TestDirectKinds:
    def test_has_many_is_one_query(self) -> None:
        executor = RecordingExecutor(
            [
                {"id": 10, "title": "a1", "user_id": 1},
                {"id": 11, "title": "a2", "user_id": 1},
                {"id": 12, "title": "b1", "user_id": 2},
            ]
        )
        users = _users(1, 2, 3)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_POSTS)])

        assert len(executor.queries) == 1
        assert [[p.id for p in u.posts] for u in users] == [[10, 11], [12], []]

    def test_keys_are_bound_parameters_in_first_seen_order(self) -> None:
        executor = RecordingExecutor()
        EagerLoader(executor).load_relations(_users(2, 1, 2), [LoadRequest.of(USER_POSTS)])

        (statement,) = executor.queries
        compiled = statement.compile()
        assert "posts.user_id IN (__[POSTCOMPILE_" in sql(statement)
        assert list(compiled.params.values()) == [[2, 1]]

    def test_belongs_to_uses_owner_foreign_key(self) -> None:
        executor = RecordingExecutor([{"id": 1, "name": "alice"}])
        posts = [PostEntity(id=10, user_id=1), PostEntity(id=11, user_id=1)]
        EagerLoader(executor).load_relations(posts, [LoadRequest.of(POST_AUTHOR)])

        assert "WHERE users.id IN" in sql(executor.queries[0])
        assert posts[0].author is posts[1].author
        assert posts[0].author is not None
        assert posts[0].author.name == "alice"

    def test_null_owner_keys_skip_the_query(self) -> None:
        executor = RecordingExecutor()
        orphan = PostEntity(id=13, user_id=None, author=UserEntity(id=9))
        EagerLoader(executor).load_relations([orphan], [LoadRequest.of(POST_AUTHOR)])

        assert executor.queries == []
        assert orphan.author is None

    def test_constraint_narrows_related_query(self) -> None:
        executor = RecordingExecutor()
        request = LoadRequest.of(USER_POSTS, constraint=add_conditions(sa.column("score") > 3))
        EagerLoader(executor).load_relations(_users(1), [request])

        assert "score > :score_1" in sql(executor.queries[0])


class TestOfManyKinds:
    def test_latest_ranks_by_order_column_descending(self) -> None:
        executor = RecordingExecutor([{"id": 11, "user_id": 1, "_sqla_rn": 1}])
        users = _users(1, 3)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_LATEST_POST)])

        text = sql(executor.queries[0])
        assert (
            "row_number() OVER (PARTITION BY posts.user_id ORDER BY posts.created_at DESC)"
            in text
        )
        assert "ranked._sqla_rn = " in text
        assert users[0].latest_post == PostEntity(id=11, user_id=1)
        assert users[1].latest_post is None

    def test_min_aggregate_ranks_ascending(self) -> None:
        executor = RecordingExecutor()
        EagerLoader(executor).load_relations(_users(1), [LoadRequest.of(USER_BOTTOM_POST)])

        assert "ORDER BY posts.score ASC" in sql(executor.queries[0])

    def test_constraint_applies_before_ranking(self) -> None:
        executor = RecordingExecutor()
        request = LoadRequest.of(USER_LATEST_POST).where(
            add_conditions(sa.column("published").is_(True))
        )
        EagerLoader(executor).load_relations(_users(1), [request])

        text = sql(executor.queries[0])
        assert text.index("published IS true") < text.index(") AS ranked")


class TestBridgedKinds:
    def test_belongs_to_many_is_two_queries(self) -> None:
        executor = RecordingExecutor(
            [(1, 5), (1, 7), (2, 6)],
            [
                {"id": 5, "name": "admin"},
                {"id": 6, "name": "editor"},
                {"id": 7, "name": "viewer"},
            ],
        )
        users = _users(1, 2, 3)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_ROLES)])

        assert len(executor.queries) == 2
        assert "FROM user_roles WHERE user_roles.user_id IN" in sql(executor.queries[0])
        assert "FROM roles WHERE roles.id IN" in sql(executor.queries[1])
        assert {r.name for r in users[0].roles} == {"admin", "viewer"}
        assert {r.name for r in users[1].roles} == {"editor"}
        assert users[2].roles == set()

    def test_no_links_skips_related_query(self) -> None:
        executor = RecordingExecutor([])
        users = _users(3)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_ROLES)])

        assert len(executor.queries) == 1
        assert users[0].roles == set()

    def test_has_many_through(self) -> None:
        executor = RecordingExecutor(
            [(1, 1), (1, 2), (2, 4)],
            [{"id": 10, "user_id": 1}, {"id": 12, "user_id": 2}, {"id": 13, "user_id": 4}],
        )
        countries = [CountryEntity(id=1), CountryEntity(id=2)]
        EagerLoader(executor).load_relations(countries, [LoadRequest.of(COUNTRY_POSTS)])

        assert "SELECT users.country_id, users.id FROM users" in sql(executor.queries[0])
        assert "WHERE posts.user_id IN" in sql(executor.queries[1])
        assert [p.id for p in countries[0].posts] == [10, 12]
        assert [p.id for p in countries[1].posts] == [13]


class TestTraversal:
    def test_empty_owner_batch_runs_nothing(self) -> None:
        executor = RecordingExecutor()
        EagerLoader(executor).load_relations([], [LoadRequest.of(USER_POSTS, POST_COMMENTS)])

        assert executor.queries == []

    def test_nested_requests_load_from_results(self) -> None:
        executor = RecordingExecutor(
            [{"id": 10, "user_id": 1}, {"id": 12, "user_id": 2}],
            [{"id": 100, "post_id": 10}, {"id": 101, "post_id": 10}],
        )
        users = _users(1, 2)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_POSTS, POST_COMMENTS)])

        assert len(executor.queries) == 2
        assert [c.id for c in users[0].posts[0].comments] == [100, 101]
        assert users[1].posts[0].comments == []

    def test_nested_requests_skipped_without_results(self) -> None:
        executor = RecordingExecutor([])
        users = _users(1)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_POSTS, POST_COMMENTS)])

        assert len(executor.queries) == 1
        assert users[0].posts == []

    def test_sibling_requests_run_in_order(self) -> None:
        executor = RecordingExecutor()
        EagerLoader(executor).load_relations(
            _users(1), [LoadRequest.of(USER_POSTS), LoadRequest.of(USER_LATEST_POST)]
        )

        assert len(executor.queries) == 2
        assert "row_number()" not in sql(executor.queries[0])
        assert "row_number()" in sql(executor.queries[1])

    def test_owners_may_be_a_generator(self) -> None:
        executor = RecordingExecutor([{"id": 10, "user_id": 1}])
        users = _users(1)
        EagerLoader(executor).load_relations(
            (u for u in users), [LoadRequest.of(USER_POSTS)]
        )

        assert [p.id for p in users[0].posts] == [10]

    def test_polymorphic_kind_raises_before_sql(self) -> None:
        executor = RecordingExecutor()
        with pytest.raises(UnsupportedRelationError, match="MORPH_ONE"):
            EagerLoader(executor).load_relations(_users(1), [LoadRequest.of(USER_AVATAR)])

        assert executor.queries == []


class TestUnorderableKeys:
    def test_enum_keys(self) -> None:
        executor = RecordingExecutor(
            [{"id": 10, "region": Region.US}, {"id": 11, "region": Region.EU}]
        )
        shops = [
            ShopEntity(id=1, region=Region.EU),
            ShopEntity(id=2, region=Region.US),
            ShopEntity(id=3, region=Region.EU),
        ]
        EagerLoader(executor).load_relations(shops, [LoadRequest.of(SHOP_BRANCHES)])

        (statement,) = executor.queries
        assert list(statement.compile().params.values()) == [[Region.EU, Region.US]]
        assert [[b.id for b in s.branches] for s in shops] == [[11], [10], [11]]

    def test_mixed_type_keys(self) -> None:
        executor = RecordingExecutor([{"id": 10, "region": 7}])
        shops = [ShopEntity(id=1, region="eu"), ShopEntity(id=2, region=7)]
        EagerLoader(executor).load_relations(shops, [LoadRequest.of(SHOP_BRANCHES)])

        (statement,) = executor.queries
        assert list(statement.compile().params.values()) == [["eu", 7]]
        assert shops[0].branches == []
        assert [b.id for b in shops[1].branches] == [10]

    def test_mixed_type_pivot_keys(self) -> None:
        executor = RecordingExecutor(
            [(1, "x"), (1, 7)],
            [{"id": 7, "name": "editor"}, {"id": "x", "name": "guest"}],
        )
        users = _users(1)
        EagerLoader(executor).load_relations(users, [LoadRequest.of(USER_ROLES)])

        assert list(executor.queries[1].compile().params.values()) == [["x", 7]]
        assert {r.name for r in users[0].roles} == {"editor", "guest"}
