"""
Usage counting for plan limits.

Counts exclude archived bubbles, members who left, and soft-deleted items.
"""
from typing import Optional, Protocol, Tuple

from sqlalchemy import select, func
from starlette.concurrency import run_in_threadpool

from wishbubble.core.database import (
    get_db_session,
    bubbles,
    bubble_members,
    wishlists,
    wishlist_items,
)


class UsageCounter(Protocol):
    async def count_owned_groups(self, user_id: str) -> int:
        ...

    async def count_wishlists(self, user_id: str) -> int:
        ...

    async def count_items(self, user_id: str) -> int:
        ...

    async def get_group_membership(self, group_id: str) -> Optional[Tuple[str, int]]:
        """(owner_id, active member count) or None if the group does not exist."""
        ...

    async def get_wishlist_items(self, wishlist_id: str) -> Optional[Tuple[str, int]]:
        """(owner_id, active item count) or None if the wishlist does not exist."""
        ...


def count_owned_groups(user_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count())
            .select_from(bubbles)
            .where(bubbles.c.owner_id == user_id)
            .where(bubbles.c.archived_at.is_(None))
        ).scalar_one()


def count_wishlists(user_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count())
            .select_from(wishlists)
            .where(wishlists.c.user_id == user_id)
        ).scalar_one()


def count_items(user_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count())
            .select_from(
                wishlist_items.join(wishlists, wishlist_items.c.wishlist_id == wishlists.c.id)
            )
            .where(wishlists.c.user_id == user_id)
            .where(wishlist_items.c.deleted_at.is_(None))
        ).scalar_one()


def get_group_membership(group_id: str) -> Optional[Tuple[str, int]]:
    with get_db_session() as session:
        owner = session.execute(
            select(bubbles.c.owner_id).where(bubbles.c.id == group_id)
        ).first()
        if not owner:
            return None
        members = session.execute(
            select(func.count())
            .select_from(bubble_members)
            .where(bubble_members.c.bubble_id == group_id)
            .where(bubble_members.c.left_at.is_(None))
        ).scalar_one()
    return owner[0], members


def get_wishlist_items(wishlist_id: str) -> Optional[Tuple[str, int]]:
    with get_db_session() as session:
        owner = session.execute(
            select(wishlists.c.user_id).where(wishlists.c.id == wishlist_id)
        ).first()
        if not owner:
            return None
        items = session.execute(
            select(func.count())
            .select_from(wishlist_items)
            .where(wishlist_items.c.wishlist_id == wishlist_id)
            .where(wishlist_items.c.deleted_at.is_(None))
        ).scalar_one()
    return owner[0], items


class SqlUsageCounter:
    """UsageCounter over the bubbles/wishlists tables."""

    async def count_owned_groups(self, user_id: str) -> int:
        return await run_in_threadpool(count_owned_groups, user_id)

    async def count_wishlists(self, user_id: str) -> int:
        return await run_in_threadpool(count_wishlists, user_id)

    async def count_items(self, user_id: str) -> int:
        return await run_in_threadpool(count_items, user_id)

    async def get_group_membership(self, group_id: str) -> Optional[Tuple[str, int]]:
        return await run_in_threadpool(get_group_membership, group_id)

    async def get_wishlist_items(self, wishlist_id: str) -> Optional[Tuple[str, int]]:
        return await run_in_threadpool(get_wishlist_items, wishlist_id)
