from __future__ import annotations

import json
import math
from datetime import datetime
from typing import TYPE_CHECKING

from app.portal.audit import record_event
from app.portal.errors import ApiError
from app.portal.utils import clean_str, slugify, text_field

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.portal.models import User
    from app.portal.modules.blog.models import BlogPost

VALID_STATUSES = ("DRAFT", "PUBLISHED")
WORDS_PER_MINUTE = 200


def read_time_minutes(content: str) -> int:
    return max(1, math.ceil(len((content or "").split()) / WORDS_PER_MINUTE))


def unique_slug(s: "Session", title: str, *, exclude_id: int | None = None) -> str:
    from app.portal.modules.blog.models import BlogPost

    base = slugify(title) or "post"
    candidate, n = base, 1
    while True:
        q = s.query(BlogPost.id).filter(BlogPost.slug == candidate)
        if exclude_id is not None:
            q = q.filter(BlogPost.id != exclude_id)
        if q.first() is None:
            return candidate
        n += 1
        candidate = f"{base}-{n}"


def _tags_json(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = [t.strip() for t in value.split(",")]
    elif not isinstance(value, list):
        raise ApiError("Tags must be a list or a comma-separated string", 400)
    return json.dumps([str(t) for t in value if str(t).strip()])


def create_post(s: "Session", payload: dict, user: "User") -> "BlogPost":
    from app.portal.modules.blog.models import BlogPost

    now = datetime.utcnow()
    status = (clean_str(payload.get("status")) or "DRAFT").upper()
    title, content = text_field(payload, "title"), text_field(payload, "content")
    post = BlogPost(
        title=title,
        slug=unique_slug(s, title),
        content=content,
        excerpt=clean_str(payload.get("excerpt")),
        author_user_id=user.id,
        status=status,
        category=clean_str(payload.get("category")),
        tags=_tags_json(payload.get("tags")),
        image_url=clean_str(payload.get("imageUrl")),
        read_time_minutes=read_time_minutes(content),
        published_at=now if status == "PUBLISHED" else None,
        created_at=now,
        updated_at=now,
    )
    s.add(post)
    s.flush()
    record_event(s, actor=user, action="blog.create", entity_type="BlogPost", entity_id=str(post.id), metadata={"slug": post.slug})
    return post


def update_post(s: "Session", post: "BlogPost", payload: dict, user: "User") -> "BlogPost":
    if text_field(payload, "title"):
        post.title = text_field(payload, "title")
        if payload.get("regenerateSlug"):
            post.slug = unique_slug(s, post.title, exclude_id=post.id)
    if text_field(payload, "content"):
        post.content = text_field(payload, "content")
        post.read_time_minutes = read_time_minutes(post.content)
    for key, attr in (("excerpt", "excerpt"), ("category", "category"), ("imageUrl", "image_url")):
        if key in payload:
            setattr(post, attr, clean_str(payload.get(key)))
    if "tags" in payload:
        post.tags = _tags_json(payload.get("tags"))
    status = (clean_str(payload.get("status")) or "").upper()
    if status:
        if status == "PUBLISHED" and post.published_at is None:
            post.published_at = datetime.utcnow()
        post.status = status
    post.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="blog.edit", entity_type="BlogPost", entity_id=str(post.id), metadata={"slug": post.slug})
    return post
