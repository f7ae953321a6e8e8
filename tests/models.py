from __future__ import annotations

import datetime as dt

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


user_roles = sa.Table(
    "user_roles",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
    sa.Column("granted_by", sa.String(50), nullable=True),
    sa.Column("created_at", sa.DateTime, nullable=True),
    sa.Column("updated_at", sa.DateTime, nullable=True),
)


class Country(Base):
    __tablename__ = "countries"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    # relationships
    users: orm.Mapped[list[User]] = orm.relationship(back_populates="country", lazy="noload")


class User(Base):
    __tablename__ = "users"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    active: orm.Mapped[bool] = orm.mapped_column(default=True)
    country_id: orm.Mapped[int | None] = orm.mapped_column(
        sa.ForeignKey("countries.id"), nullable=True
    )
    updated_at: orm.Mapped[dt.datetime | None] = orm.mapped_column(nullable=True)

    # relationships
    country: orm.Mapped[Country | None] = orm.relationship(back_populates="users", lazy="noload")
    posts: orm.Mapped[list[Post]] = orm.relationship(back_populates="author", lazy="noload")
    roles: orm.Mapped[list[Role]] = orm.relationship(
        secondary=user_roles, back_populates="users", lazy="noload"
    )
    profile: orm.Mapped[Profile | None] = orm.relationship(
        uselist=False, back_populates="user", lazy="noload"
    )


class Profile(Base):
    __tablename__ = "profiles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    bio: orm.Mapped[str] = orm.mapped_column(sa.Text, default="")
    user_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("users.id"), unique=True)

    # relationships
    user: orm.Mapped[User] = orm.relationship(back_populates="profile", lazy="noload")


class Post(Base):
    __tablename__ = "posts"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    user_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("users.id"), nullable=True)
    published: orm.Mapped[bool] = orm.mapped_column(default=True)
    score: orm.Mapped[int] = orm.mapped_column(default=0)
    created_at: orm.Mapped[dt.datetime | None] = orm.mapped_column(nullable=True)

    # relationships
    author: orm.Mapped[User | None] = orm.relationship(back_populates="posts", lazy="noload")
    comments: orm.Mapped[list[Comment]] = orm.relationship(back_populates="post", lazy="noload")
    # filtered join: not derivable as a plain relation
    attachments: orm.Mapped[list[Attachment]] = orm.relationship(
        primaryjoin="and_(Post.id == foreign(Attachment.attachable_id), "
        "Attachment.attachable_type == 'post')",
        viewonly=True,
        lazy="noload",
    )


class Comment(Base):
    __tablename__ = "comments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    body: orm.Mapped[str] = orm.mapped_column(sa.Text)
    post_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("posts.id"))

    # relationships
    post: orm.Mapped[Post] = orm.relationship(back_populates="comments", lazy="noload")


class Role(Base):
    __tablename__ = "roles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    level: orm.Mapped[int] = orm.mapped_column(default=0)

    # relationships
    users: orm.Mapped[list[User]] = orm.relationship(
        secondary=user_roles, back_populates="roles", lazy="noload"
    )


class Category(Base):
    __tablename__ = "categories"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    parent_id: orm.Mapped[int | None] = orm.mapped_column(
        sa.ForeignKey("categories.id"), nullable=True
    )

    # relationships
    parent: orm.Mapped[Category | None] = orm.relationship(
        back_populates="children", remote_side=[id], lazy="noload"
    )
    children: orm.Mapped[list[Category]] = orm.relationship(
        back_populates="parent", lazy="noload"
    )


class Attachment(Base):
    __tablename__ = "attachments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    url: orm.Mapped[str] = orm.mapped_column(sa.String(500))
    attachable_type: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    attachable_id: orm.Mapped[int] = orm.mapped_column()
