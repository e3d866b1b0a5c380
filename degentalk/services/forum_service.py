"""
degentalk.services.forum_service — Zones, Forums, Threads & Posts
===================================================================

Structure is a two-level tree: zones group forums, threads live in
forums.  Thread and post counters (``post_count``, ``last_post_at``,
``like_count``) are maintained here rather than recomputed on read.

XP side effects use the forum's ``xp_multiplier`` and run inside the
same transaction as the forum write.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import (
    ForumStructure,
    Post,
    PostLike,
    StructureType,
    Tag,
    Thread,
    ThreadTag,
    User,
    UserRole,
    utcnow,
)
from degentalk.engine.economy import from_micro
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ThreadLockedError,
    ValidationError,
)
from degentalk.services import user_service, xp_service
from degentalk.services.notification_service import NotificationType, notify

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

THREAD_SORTS = ("latest", "hot", "top", "newest")
MENTION_RE = re.compile(r"(?<![\w@])@([A-Za-z0-9_]{3,50})\b")
MAX_TAGS_PER_THREAD = 5
STAFF_ROLES = frozenset({UserRole.ADMIN.value, UserRole.MODERATOR.value})


def slugify(text: str, max_length: int = 80, fallback: str = "thread") -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or fallback


def thread_slug(title: str) -> str:
    slug = slugify(title)
    # all-digit slugs would be read back as thread ids
    return f"thread-{slug}" if slug.isdigit() else slug



def unique_slug(session: Session, model: type, base: str) -> str:
    slug = base
    suffix = 2
    while session.scalar(select(model.id).where(model.slug == slug)) is not None:
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def _is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def structure_to_dict(node: ForumStructure) -> dict[str, Any]:
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "type": node.type,
        "name": node.name,
        "slug": node.slug,
        "description": node.description,
        "position": node.position,
        "xp_multiplier": node.xp_multiplier,
        "is_locked": node.is_locked,
        "tipping_enabled": node.tipping_enabled,
        "min_xp_to_post": node.min_xp_to_post,
    }


def _thread_tags(session: Session, thread_id: int) -> list[str]:
    return list(session.scalars(
        select(Tag.name)
        .join(ThreadTag, ThreadTag.tag_id == Tag.id)
        .where(ThreadTag.thread_id == thread_id)
        .order_by(Tag.name)
    ).all())


def _thread_to_dict(session: Session, thread: Thread, author: str | None) -> dict[str, Any]:
    return {
        "id": thread.id,
        "structure_id": thread.structure_id,
        "user_id": thread.user_id,
        "author": author,
        "title": thread.title,
        "slug": thread.slug,
        "is_locked": thread.is_locked,
        "is_pinned": thread.is_pinned,
        "is_solved": thread.is_solved,
        "solving_post_id": thread.solving_post_id,
        "view_count": thread.view_count,
        "post_count": thread.post_count,
        "last_post_at": thread.last_post_at.isoformat() if thread.last_post_at else None,
        "created_at": thread.created_at.isoformat() if thread.created_at else None,
        "tags": _thread_tags(session, thread.id),
    }


def _post_to_dict(post: Post, author: str | None) -> dict[str, Any]:
    return {
        "id": post.id,
        "thread_id": post.thread_id,
        "user_id": post.user_id,
        "author": author,
        "reply_to_post_id": post.reply_to_post_id,
        "content": "" if post.is_deleted else post.content,
        "like_count": post.like_count,
        "tip_total": str(from_micro(post.tip_total)),
        "is_edited": post.is_edited,
        "is_deleted": post.is_deleted,
        "created_at": post.created_at.isoformat() if post.created_at else None,
        "edited_at": post.edited_at.isoformat() if post.edited_at else None,
    }


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------
def get_structure_tree(engine: Engine) -> list[dict[str, Any]]:
    """Zones in display order, each with its forums and activity counts."""
    with get_session(engine) as session:
        nodes = session.scalars(
            select(ForumStructure).order_by(ForumStructure.position, ForumStructure.id)
        ).all()
        counts = {
            row.structure_id: (row.threads, row.posts)
            for row in session.execute(
                select(
                    Thread.structure_id,
                    func.count(Thread.id).label("threads"),
                    func.coalesce(func.sum(Thread.post_count), 0).label("posts"),
                )
                .where(Thread.is_deleted.is_(False))
                .group_by(Thread.structure_id)
            ).all()
        }

        zones: list[dict[str, Any]] = []
        by_id: dict[int, dict[str, Any]] = {}
        for node in nodes:
            entry = structure_to_dict(node)
            threads, posts = counts.get(node.id, (0, 0))
            entry.update(thread_count=threads, post_count=posts, forums=[])
            by_id[node.id] = entry
        for node in nodes:
            entry = by_id[node.id]
            parent = by_id.get(node.parent_id) if node.parent_id else None
            if parent is not None:
                parent["forums"].append(entry)
                parent["thread_count"] += entry["thread_count"]
                parent["post_count"] += entry["post_count"]
            else:
                zones.append(entry)
        return zones


def get_structure_by_slug(engine: Engine, slug: str) -> dict[str, Any]:
    with get_session(engine) as session:
        node = session.scalar(select(ForumStructure).where(ForumStructure.slug == slug))
        if node is None:
            raise NotFoundError("Forum")
        entry = structure_to_dict(node)
        entry["children"] = [
            structure_to_dict(child)
            for child in session.scalars(
                select(ForumStructure)
                .where(ForumStructure.parent_id == node.id)
                .order_by(ForumStructure.position, ForumStructure.id)
            ).all()
        ]
        return entry


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------
def _upsert_tags(session: Session, thread_id: int, names: list[str]) -> None:
    """Attach tags by slug, so "Alpha" and "alpha!" land on one tag."""
    seen: set[str] = set()
    for raw in names:
        name = raw.strip().lower()
        if not name:
            continue
        if len(name) > 50:
            raise ValidationError("Tags are at most 50 characters")
        slug = slugify(name, 60, fallback="")
        if not slug:
            raise ValidationError(f"Tag {raw.strip()!r} needs at least one letter or digit")
        if slug in seen:
            continue
        seen.add(slug)
        tag = session.scalar(select(Tag).where(Tag.slug == slug))
        if tag is None:
            tag = Tag(name=name, slug=slug)
            session.add(tag)
            session.flush()
        session.add(ThreadTag(thread_id=thread_id, tag_id=tag.id))



def create_thread(
    engine: Engine,
    cache: ConfigCache,
    user_id: int,
    structure_id: int,
    title: str,
    content: str,
    tags: list[str] | None = None,
) -> dict[str, Any]:
    """Open a thread with its first post in a forum (not a zone)."""
    title = title.strip()
    if not title:
        raise ValidationError("Title is required")
    if not content.strip():
        raise ValidationError("Content is required")
    tags = tags or []
    max_tags = cache.get_int("forum.max_tags_per_thread", MAX_TAGS_PER_THREAD)
    if len(tags) > max_tags:
        raise ValidationError(f"A thread may have at most {max_tags} tags")

    with get_session(engine) as session:
        forum = session.get(ForumStructure, structure_id)
        if forum is None:
            raise NotFoundError("Forum")
        if forum.type != StructureType.FORUM.value:
            raise BadRequestError("Threads can only be created in forums, not zones")

        author = session.get(User, user_id)
        if author is None:
            raise NotFoundError("User")
        user_service.ensure_not_banned(session, author)
        if forum.is_locked and not _is_staff(author):
            raise ForbiddenError("This forum is locked")
        if author.xp < forum.min_xp_to_post:
            raise ForbiddenError(f"You need {forum.min_xp_to_post} XP to post in this forum")

        now = utcnow()
        thread = Thread(
            structure_id=forum.id,
            user_id=user_id,
            title=title,
            slug=unique_slug(session, Thread, thread_slug(title)),
            post_count=1,
            last_post_at=now,
            created_at=now,
        )
        session.add(thread)
        session.flush()
        session.add(Post(thread_id=thread.id, user_id=user_id, content=content, created_at=now))
        _upsert_tags(session, thread.id, tags)
        session.flush()

        xp_service.award_xp_in_session(
            session, cache, user_id, XpAction.THREAD_CREATED,
            metadata={"thread_id": thread.id}, forum_id=forum.id,
        )
        logger.info("User %d created thread %d in forum %s", user_id, thread.id, forum.slug)
        return _thread_to_dict(session, thread, author.username)


def list_threads(
    engine: Engine,
    *,
    structure_id: int | None = None,
    sort: str = "latest",
    tag: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict[str, Any]:
    """Paginated thread listing; pinned threads always sort first."""
    if sort not in THREAD_SORTS:
        raise ValidationError(f"Unknown sort '{sort}'. Must be one of {THREAD_SORTS}")

    with get_session(engine) as session:
        query = (
            select(Thread, User.username)
            .join(User, User.id == Thread.user_id)
            .where(Thread.is_deleted.is_(False))
        )
        if structure_id is not None:
            child_ids = select(ForumStructure.id).where(ForumStructure.parent_id == structure_id)
            query = query.where(
                (Thread.structure_id == structure_id) | Thread.structure_id.in_(child_ids)
            )
        if tag:
            query = query.join(ThreadTag, ThreadTag.thread_id == Thread.id).join(
                Tag, Tag.id == ThreadTag.tag_id
            ).where(Tag.slug == slugify(tag, 60, fallback=""))

        total = session.scalar(select(func.count()).select_from(query.subquery())) or 0

        order = {
            "latest": (Thread.last_post_at.desc(),),
            "newest": (Thread.created_at.desc(),),
            "hot": (Thread.post_count.desc(), Thread.last_post_at.desc()),
            "top": (Thread.view_count.desc(), Thread.post_count.desc()),
        }[sort]
        rows = session.execute(
            query.order_by(Thread.is_pinned.desc(), *order, Thread.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return {
            "threads": [_thread_to_dict(session, t, username) for t, username in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
        }


def _find_thread(session: Session, id_or_slug: int | str) -> Thread:
    if isinstance(id_or_slug, int) or str(id_or_slug).isdigit():
        thread = session.get(Thread, int(id_or_slug))
    else:
        thread = session.scalar(select(Thread).where(Thread.slug == id_or_slug))
    if thread is None or thread.is_deleted:
        raise NotFoundError("Thread")
    return thread


def get_thread(engine: Engine, id_or_slug: int | str) -> dict[str, Any]:
    with get_session(engine) as session:
        thread = _find_thread(session, id_or_slug)
        author = session.get(User, thread.user_id)
        return _thread_to_dict(session, thread, author.username if author else None)


def increment_view_count(engine: Engine, thread_id: int) -> int:
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        thread.view_count += 1
        return thread.view_count


def set_solved(
    engine: Engine, thread_id: int, user_id: int, post_id: int | None,
) -> dict[str, Any]:
    """Mark *post_id* as the solution (or clear it with ``None``).

    Only the thread author or staff may do this.
    """
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        actor = session.get(User, user_id)
        if actor is None:
            raise NotFoundError("User")
        if thread.user_id != user_id and not _is_staff(actor):
            raise ForbiddenError("Only the thread author can mark a solution")
        if post_id is not None:
            post = session.get(Post, post_id)
            if post is None or post.thread_id != thread.id or post.is_deleted:
                raise BadRequestError("Post does not belong to this thread")
        thread.solving_post_id = post_id
        thread.is_solved = post_id is not None
        return {"id": thread.id, "is_solved": thread.is_solved, "solving_post_id": post_id}


def set_locked(engine: Engine, thread_id: int, locked: bool) -> dict[str, Any]:
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        thread.is_locked = locked
        return {"id": thread.id, "is_locked": locked}


def set_pinned(engine: Engine, thread_id: int, pinned: bool) -> dict[str, Any]:
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        thread.is_pinned = pinned
        return {"id": thread.id, "is_pinned": pinned}


def delete_thread(engine: Engine, thread_id: int) -> None:
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        thread.is_deleted = True
        logger.info("Thread %d soft-deleted", thread_id)


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
def list_posts(
    engine: Engine, thread_id: int, *, page: int = 1, per_page: int = 20,
) -> dict[str, Any]:
    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        total = session.scalar(
            select(func.count()).select_from(Post)
            .where(Post.thread_id == thread.id, Post.is_deleted.is_(False))
        ) or 0
        rows = session.execute(
            select(Post, User.username)
            .join(User, User.id == Post.user_id)
            .where(Post.thread_id == thread.id, Post.is_deleted.is_(False))
            .order_by(Post.created_at, Post.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return {
            "posts": [_post_to_dict(p, username) for p, username in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
        }


def _handle_mentions(
    session: Session, cache: ConfigCache, author: User, post: Post, forum_id: int,
) -> list[int]:
    names = {m.lower() for m in MENTION_RE.findall(post.content)}
    names.discard(author.username.lower())
    if not names:
        return []
    mentioned = session.scalars(
        select(User).where(func.lower(User.username).in_(sorted(names)))
    ).all()
    for user in mentioned:
        notify(
            session, user.id, NotificationType.MENTION,
            f"{author.username} mentioned you",
            data={"thread_id": post.thread_id, "post_id": post.id},
        )
        xp_service.award_xp_in_session(
            session, cache, author.id, XpAction.USER_MENTIONED,
            metadata={"post_id": post.id, "mentioned_user_id": user.id}, forum_id=forum_id,
        )
    return [u.id for u in mentioned]


def create_post(
    engine: Engine,
    cache: ConfigCache,
    user_id: int,
    thread_id: int,
    content: str,
    *,
    reply_to_post_id: int | None = None,
) -> dict[str, Any]:
    if not content.strip():
        raise ValidationError("Content is required")

    with get_session(engine) as session:
        thread = _find_thread(session, thread_id)
        author = session.get(User, user_id)
        if author is None:
            raise NotFoundError("User")
        user_service.ensure_not_banned(session, author)
        if thread.is_locked and not _is_staff(author):
            raise ThreadLockedError("This thread is locked")

        parent: Post | None = None
        if reply_to_post_id is not None:
            parent = session.get(Post, reply_to_post_id)
            if parent is None or parent.thread_id != thread.id:
                raise BadRequestError("Reply target is not in this thread")

        now = utcnow()
        post = Post(
            thread_id=thread.id,
            user_id=user_id,
            reply_to_post_id=reply_to_post_id,
            content=content,
            created_at=now,
        )
        session.add(post)
        thread.post_count += 1
        thread.last_post_at = now
        session.flush()

        forum_id = thread.structure_id
        xp_service.award_xp_in_session(
            session, cache, user_id, XpAction.POST_CREATED,
            metadata={"post_id": post.id, "thread_id": thread.id}, forum_id=forum_id,
        )

        notified: set[int] = {user_id}
        if parent is not None and parent.user_id not in notified:
            xp_service.award_xp_in_session(
                session, cache, parent.user_id, XpAction.REPLY_RECEIVED,
                metadata={"post_id": post.id, "from_user_id": user_id}, forum_id=forum_id,
            )
            notify(
                session, parent.user_id, NotificationType.POST_REPLY,
                f"{author.username} replied to your post",
                data={"thread_id": thread.id, "post_id": post.id},
            )
            notified.add(parent.user_id)
        if thread.user_id not in notified:
            notify(
                session, thread.user_id, NotificationType.POST_REPLY,
                f"{author.username} replied in {thread.title}",
                data={"thread_id": thread.id, "post_id": post.id},
            )

        _handle_mentions(session, cache, author, post, forum_id)
        return _post_to_dict(post, author.username)


def _own_post(session: Session, post_id: int, user_id: int, *, allow_staff: bool) -> Post:
    post = session.get(Post, post_id)
    if post is None or post.is_deleted:
        raise NotFoundError("Post")
    if post.user_id != user_id:
        actor = session.get(User, user_id)
        if not (allow_staff and actor is not None and _is_staff(actor)):
            raise ForbiddenError("You can only modify your own posts")
    return post


def update_post(engine: Engine, post_id: int, user_id: int, content: str) -> dict[str, Any]:
    if not content.strip():
        raise ValidationError("Content is required")
    with get_session(engine) as session:
        post = _own_post(session, post_id, user_id, allow_staff=False)
        thread = session.get(Thread, post.thread_id)
        if thread.is_locked:
            raise ThreadLockedError("This thread is locked")
        post.content = content
        post.is_edited = True
        post.edited_at = utcnow()
        author = session.get(User, post.user_id)
        return _post_to_dict(post, author.username)


def delete_post(engine: Engine, post_id: int, user_id: int) -> None:
    """Soft-delete a post (author or staff)."""
    with get_session(engine) as session:
        post = _own_post(session, post_id, user_id, allow_staff=True)
        post.is_deleted = True
        thread = session.get(Thread, post.thread_id)
        thread.post_count = max(0, thread.post_count - 1)
        if thread.solving_post_id == post.id:
            thread.solving_post_id = None
            thread.is_solved = False
        logger.info("Post %d soft-deleted by user %d", post_id, user_id)


def like_post(engine: Engine, cache: ConfigCache, post_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        post = session.get(Post, post_id)
        if post is None or post.is_deleted:
            raise NotFoundError("Post")
        if post.user_id == user_id:
            raise BadRequestError("You cannot like your own post")
        if session.get(PostLike, (post_id, user_id)) is not None:
            raise ConflictError("You have already liked this post")

        liker = session.get(User, user_id)
        if liker is None:
            raise NotFoundError("User")
        session.add(PostLike(post_id=post_id, user_id=user_id))
        post.like_count += 1
        author = session.get(User, post.user_id)
        author.clout += 1

        thread = session.get(Thread, post.thread_id)
        xp_service.award_xp_in_session(
            session, cache, post.user_id, XpAction.RECEIVED_LIKE,
            metadata={"post_id": post_id, "liked_by": user_id}, forum_id=thread.structure_id,
        )
        notify(
            session, post.user_id, NotificationType.POST_LIKED,
            f"{liker.username} liked your post",
            data={"thread_id": post.thread_id, "post_id": post_id},
        )
        return {"post_id": post_id, "like_count": post.like_count, "liked": True}


def unlike_post(engine: Engine, post_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        like = session.get(PostLike, (post_id, user_id))
        if like is None:
            raise NotFoundError("Like")
        session.delete(like)
        post = session.get(Post, post_id)
        post.like_count = max(0, post.like_count - 1)
        return {"post_id": post_id, "like_count": post.like_count, "liked": False}


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------
def list_tags(engine: Engine) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.execute(
            select(Tag, func.count(ThreadTag.thread_id).label("threads"))
            .outerjoin(ThreadTag, ThreadTag.tag_id == Tag.id)
            .group_by(Tag.id)
            .order_by(func.count(ThreadTag.thread_id).desc(), Tag.name)
        ).all()
        return [
            {"id": tag.id, "name": tag.name, "slug": tag.slug, "thread_count": threads}
            for tag, threads in rows
        ]
