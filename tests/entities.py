"""Dataclass entities over the tables of ``models.py`` with hand-written descriptors.

They cover the relation kinds a declarative base cannot express (of-many,
through, polymorphic) and the field access rules for non-mapped entities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from sqla_relations import RelationDescriptor, RelationKind, build_node


@dataclass
class UserEntity:
    __tablename__: ClassVar[str] = "users"

    id: int
    name: str = ""
    country_id: int | None = None
    updated_at: Any = None

    posts: list[PostEntity] = field(default_factory=list)
    latest_post: PostEntity | None = None
    oldest_post: PostEntity | None = None
    top_post: PostEntity | None = None
    bottom_post: PostEntity | None = None
    profile: ProfileEntity | None = None
    roles: set[RoleEntity] = field(default_factory=set)
    avatar: Any = None


@dataclass
class PostEntity:
    __tablename__: ClassVar[str] = "posts"

    id: int
    title: str = ""
    user_id: int | None = None
    score: int = 0
    created_at: Any = None

    author: UserEntity | None = None
    comments: list[CommentEntity] = field(default_factory=list)


@dataclass
class CommentEntity:
    __tablename__: ClassVar[str] = "comments"

    id: int
    body: str = ""
    postId: int | None = None  # noqa: N815


@dataclass
class ProfileEntity:
    __tablename__: ClassVar[str] = "profiles"

    id: int | None = None
    bio: str = ""
    user_id: int | None = None


@dataclass(eq=False)
class RoleEntity:
    __tablename__: ClassVar[str] = "roles"

    id: int
    name: str = ""
    level: int = 0


@dataclass
class CountryEntity:
    __tablename__: ClassVar[str] = "countries"

    id: int
    name: str = ""

    posts: list[PostEntity] = field(default_factory=list)
    profile: ProfileEntity | None = None


USER_POSTS = RelationDescriptor.has_many(UserEntity, PostEntity, "posts", foreign_key="user_id")
USER_LATEST_POST = RelationDescriptor.latest_of_many(
    UserEntity, PostEntity, "latest_post", foreign_key="user_id"
)
USER_OLDEST_POST = RelationDescriptor.oldest_of_many(
    UserEntity, PostEntity, "oldest_post", foreign_key="user_id"
)
USER_TOP_POST = RelationDescriptor.of_many(
    UserEntity, PostEntity, "top_post", foreign_key="user_id", aggregate_column="score"
)
USER_BOTTOM_POST = RelationDescriptor.of_many(
    UserEntity,
    PostEntity,
    "bottom_post",
    foreign_key="user_id",
    aggregate_column="score",
    aggregate_function="min",
)
USER_PROFILE = RelationDescriptor.has_one(
    UserEntity,
    ProfileEntity,
    "profile",
    foreign_key="user_id",
    with_default=True,
    default_attributes={"bio": "no bio yet"},
)
USER_ROLES = RelationDescriptor.belongs_to_many(
    UserEntity,
    RoleEntity,
    "roles",
    pivot_table="user_roles",
    foreign_pivot_key="user_id",
    related_pivot_key="role_id",
    pivot_columns=("granted_by",),
    pivot_timestamps=True,
)
USER_AVATAR = RelationDescriptor.morph(
    RelationKind.MORPH_ONE, UserEntity, ProfileEntity, "avatar", morph_name="imageable"
)
POST_AUTHOR = RelationDescriptor.belongs_to(
    PostEntity, UserEntity, "author", foreign_key="user_id", touch_columns=("updated_at",)
)
POST_COMMENTS = RelationDescriptor.has_many(
    PostEntity, CommentEntity, "comments", foreign_key="post_id"
)
COUNTRY_POSTS = RelationDescriptor.has_many_through(
    CountryEntity,
    PostEntity,
    "posts",
    through_table="users",
    first_key="country_id",
    second_key="user_id",
)
COUNTRY_PROFILE = RelationDescriptor.has_one_through(
    CountryEntity,
    ProfileEntity,
    "profile",
    through_table="users",
    first_key="country_id",
    second_key="user_id",
)

ENTITY_NODE = build_node(
    USER_POSTS,
    USER_LATEST_POST,
    USER_OLDEST_POST,
    USER_TOP_POST,
    USER_BOTTOM_POST,
    USER_PROFILE,
    USER_ROLES,
    USER_AVATAR,
    POST_AUTHOR,
    POST_COMMENTS,
    COUNTRY_POSTS,
    COUNTRY_PROFILE,
)
