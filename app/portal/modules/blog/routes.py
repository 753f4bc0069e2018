from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.portal.audit import record_event
from app.portal.db import db_session
from app.portal.errors import json_error
from app.portal.modules.blog.models import BlogPost
from app.portal.modules.blog.service import VALID_STATUSES, create_post, update_post
from app.portal.rbac import current_user, require_policy, user_has_permission
from app.portal.utils import clean_str, json_body, text_field

bp = Blueprint("blog", __name__)

_ADMIN_ONLY = "Unauthorized - Admin only"


def _can_manage() -> bool:
    return user_has_permission(current_user(), "content.manage")


def _find(s, slug: str) -> BlogPost | None:
    post = s.query(BlogPost).filter(BlogPost.slug == slug).one_or_none()
    if post is None or (post.status != "PUBLISHED" and not _can_manage()):
        return None
    return post


@bp.get("")
def posts_list():
    s = db_session()
    q = s.query(BlogPost)
    if not (request.args.get("drafts") == "true" and _can_manage()):
        q = q.filter(BlogPost.status == "PUBLISHED")
    category = (request.args.get("category") or "").strip()
    if category:
        q = q.filter(BlogPost.category == category)
    posts = q.order_by(BlogPost.published_at.desc(), BlogPost.created_at.desc()).all()
    return jsonify([p.to_dict() for p in posts])


@bp.get("/<slug>")
def post_detail(slug: str):
    post = _find(db_session(), slug)
    if post is None:
        return json_error("Post not found", 404)
    return jsonify({"post": post.to_dict()})


@bp.post("")
@require_policy("content.manage", forbidden_message=_ADMIN_ONLY)
def post_create():
    s = db_session()
    payload = json_body()
    if not text_field(payload, "title") or not text_field(payload, "content"):
        return json_error("Title and content are required", 400)
    status = (clean_str(payload.get("status")) or "DRAFT").upper()
    if status not in VALID_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}", 400)
    post = create_post(s, payload, g.current_user)
    s.commit()
    return jsonify({"post": post.to_dict()}), 201


@bp.patch("/<slug>")
@require_policy("content.manage", forbidden_message=_ADMIN_ONLY)
def post_update(slug: str):
    s = db_session()
    post = _find(s, slug)
    if post is None:
        return json_error("Post not found", 404)
    payload = json_body()
    for key in ("title", "content"):
        if payload.get(key) is not None and not isinstance(payload[key], str):
            return json_error(f"{key.capitalize()} must be text", 400)
    status = (clean_str(payload.get("status")) or "").upper()
    if status and status not in VALID_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}", 400)
    update_post(s, post, payload, g.current_user)
    s.commit()
    return jsonify({"post": post.to_dict()})


@bp.delete("/<slug>")
@require_policy("content.manage", forbidden_message=_ADMIN_ONLY)
def post_delete(slug: str):
    s = db_session()
    post = _find(s, slug)
    if post is None:
        return json_error("Post not found", 404)
    record_event(s, actor=g.current_user, action="blog.delete", entity_type="BlogPost", entity_id=str(post.id), metadata={"slug": post.slug})
    s.delete(post)
    s.commit()
    return jsonify({"success": True})
