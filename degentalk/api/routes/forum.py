"""
degentalk.api.routes.forum — Structure, threads, posts & likes
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from degentalk.api.deps import get_cache, get_current_moderator, get_current_user, get_engine
from degentalk.engine.cache import ConfigCache
from degentalk.services import forum_service

router = APIRouter(prefix="/forum", tags=["forum"])


class ThreadCreate(BaseModel):
    structure_id: int
    title: str = Field(min_length=3, max_length=255)
    content: str = Field(min_length=1, max_length=50000)
    tags: list[str] = Field(default_factory=list)


class PostCreate(BaseModel):
    content: str = Field(min_length=1, max_length=50000)
    reply_to_post_id: int | None = None


class PostUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=50000)


class SolveBody(BaseModel):
    post_id: int | None


class LockBody(BaseModel):
    locked: bool = True


class PinBody(BaseModel):
    pinned: bool = True


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------
@router.get("/structure")
def structure_tree(engine=Depends(get_engine)):
    return {"zones": forum_service.get_structure_tree(engine)}


@router.get("/structure/{slug}")
def structure_by_slug(slug: str, engine=Depends(get_engine)):
    return forum_service.get_structure_by_slug(engine, slug)


@router.get("/tags")
def tags(engine=Depends(get_engine)):
    return {"tags": forum_service.list_tags(engine)}


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------
@router.get("/threads")
def list_threads(
    structure_id: int | None = None,
    sort: str = Query("latest"),
    tag: str | None = None,
    page: int = Query(1, ge=1),
    per_page: int | None = Query(None, ge=1, le=100),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return forum_service.list_threads(
        engine,
        structure_id=structure_id,
        sort=sort,
        tag=tag,
        page=page,
        per_page=per_page or cache.get_int("forum.threads_per_page", 20),
    )


@router.post("/threads", status_code=201)
def create_thread(
    body: ThreadCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return forum_service.create_thread(
        engine, cache, user["id"], body.structure_id, body.title, body.content, body.tags,
    )


@router.get("/threads/{id_or_slug}")
def get_thread(id_or_slug: str, engine=Depends(get_engine)):
    thread = forum_service.get_thread(engine, id_or_slug)
    thread["view_count"] = forum_service.increment_view_count(engine, thread["id"])
    return thread


@router.post("/threads/{thread_id}/solve")
def solve_thread(
    thread_id: int,
    body: SolveBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return forum_service.set_solved(engine, thread_id, user["id"], body.post_id)


@router.post("/threads/{thread_id}/lock")
def lock_thread(
    thread_id: int,
    body: LockBody,
    moderator: dict = Depends(get_current_moderator),
    engine=Depends(get_engine),
):
    return forum_service.set_locked(engine, thread_id, body.locked)


@router.post("/threads/{thread_id}/pin")
def pin_thread(
    thread_id: int,
    body: PinBody,
    moderator: dict = Depends(get_current_moderator),
    engine=Depends(get_engine),
):
    return forum_service.set_pinned(engine, thread_id, body.pinned)


@router.delete("/threads/{thread_id}", status_code=204)
def delete_thread(
    thread_id: int,
    moderator: dict = Depends(get_current_moderator),
    engine=Depends(get_engine),
):
    forum_service.delete_thread(engine, thread_id)


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
@router.get("/threads/{thread_id}/posts")
def list_posts(
    thread_id: int,
    page: int = Query(1, ge=1),
    per_page: int | None = Query(None, ge=1, le=100),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return forum_service.list_posts(
        engine, thread_id, page=page,
        per_page=per_page or cache.get_int("forum.posts_per_page", 20),
    )


@router.post("/threads/{thread_id}/posts", status_code=201)
def create_post(
    thread_id: int,
    body: PostCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return forum_service.create_post(
        engine, cache, user["id"], thread_id, body.content,
        reply_to_post_id=body.reply_to_post_id,
    )


@router.patch("/posts/{post_id}")
def update_post(
    post_id: int,
    body: PostUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return forum_service.update_post(engine, post_id, user["id"], body.content)


@router.delete("/posts/{post_id}", status_code=204)
def delete_post(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    forum_service.delete_post(engine, post_id, user["id"])


@router.post("/posts/{post_id}/like")
def like_post(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return forum_service.like_post(engine, cache, post_id, user["id"])


@router.delete("/posts/{post_id}/like")
def unlike_post(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return forum_service.unlike_post(engine, post_id, user["id"])
