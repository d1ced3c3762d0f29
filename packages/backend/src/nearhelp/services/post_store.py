"""Post store: post lookup and the bounded helper set.

Learn: Toggling a helper is read-check-write on a bounded resource. Two
concurrent "add" toggles must never both pass the capacity check, so
the add is a conditional UPDATE:

    UPDATE posts SET helper_count = helper_count + 1
     WHERE id = :post_id AND (people_count IS NULL OR helper_count < people_count)

If no row matched, the post was already full. That holds across
processes; within one process the whole toggle also runs under a
per-post lock so the helper row and the counter move together.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nearhelp.concurrency import KeyedLock
from nearhelp.db.models import POST_ACTIVE, POST_CLOSED, Post, PostHelper
from nearhelp.errors import CapacityError, NotFoundError, ValidationError

logger = structlog.get_logger()

POST_LOCKS = KeyedLock()


@dataclass
class HelperToggle:
    """Outcome of a helper toggle."""

    post_id: str
    buyer_id: str
    added: bool
    helper_ids: list[str]
    helper_count: int
    post_status: str


class PostStore:
    def __init__(self, db: AsyncSession, locks: Optional[KeyedLock] = None):
        self.db = db
        self.locks = locks or POST_LOCKS

    async def get_post(self, post_id: str) -> Optional[Post]:
        return await self.db.get(Post, post_id)

    async def require_post(self, post_id: str) -> Post:
        post = await self.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        return post

    async def get_helper_capacity(self, post_id: str) -> Optional[int]:
        """people_count of the post; None means no limit."""
        post = await self.require_post(post_id)
        return post.people_count

    async def helper_ids(self, post_id: str) -> list[str]:
        result = await self.db.execute(
            select(PostHelper.user_id)
            .where(PostHelper.post_id == post_id)
            .order_by(PostHelper.id)
        )
        return list(result.scalars().all())

    async def try_toggle_helper(self, post_id: str, buyer_id: str) -> HelperToggle:
        """Add buyer to the helper set, or remove them if already in it.

        Raises CapacityError when adding to a full post. Post status is
        recomputed on every toggle: Closed iff helper_count == people_count.
        """
        if not buyer_id:
            raise ValidationError("buyerId is required")

        async with self.locks.hold(post_id):
            post = await self.require_post(post_id)
            if post.user_id == buyer_id:
                raise ValidationError("Post owner cannot be a helper of their own post")

            result = await self.db.execute(
                select(PostHelper).where(
                    PostHelper.post_id == post_id, PostHelper.user_id == buyer_id
                )
            )
            existing = result.scalars().first()

            if existing is not None:
                await self.db.delete(existing)
                await self.db.execute(
                    update(Post)
                    .where(Post.id == post_id, Post.helper_count > 0)
                    .values(helper_count=Post.helper_count - 1)
                    .execution_options(synchronize_session=False)
                )
                added = False
            else:
                claimed = await self.db.execute(
                    update(Post)
                    .where(
                        Post.id == post_id,
                        or_(
                            Post.people_count.is_(None),
                            Post.helper_count < Post.people_count,
                        ),
                    )
                    .values(helper_count=Post.helper_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 0:
                    await self.db.rollback()
                    logger.info("posts.helper_capacity_reached", post_id=post_id, buyer_id=buyer_id)
                    raise CapacityError(f"Helper limit reached for post {post_id}")
                self.db.add(PostHelper(post_id=post_id, user_id=buyer_id))
                added = True

            await self.db.flush()
            await self.db.refresh(post, attribute_names=["helper_count", "people_count"])
            if post.people_count is not None and post.helper_count == post.people_count:
                post.post_status = POST_CLOSED
            else:
                post.post_status = POST_ACTIVE
            helper_count = post.helper_count
            status = post.post_status
            await self.db.commit()

        logger.info(
            "posts.helper_toggled",
            post_id=post_id,
            buyer_id=buyer_id,
            added=added,
            helper_count=helper_count,
            post_status=status,
        )
        return HelperToggle(
            post_id=post_id,
            buyer_id=buyer_id,
            added=added,
            helper_ids=await self.helper_ids(post_id),
            helper_count=helper_count,
            post_status=status,
        )
