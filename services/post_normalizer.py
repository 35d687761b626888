"""
Post Normalizer

Converts remote statuses (Pixelfed/Mastodon API shape) into canonical
Photo records. Only image attachments produce photos.
"""

from typing import Any, Dict, Iterable, List, Optional

from data.models import Author, Photo
from utils.helpers import normalize_tags, parse_timestamp


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _status_tags(status: Dict[str, Any]) -> List[str]:
    names = []
    for tag in status.get("tags") or []:
        name = tag if isinstance(tag, str) else (tag or {}).get("name")
        if name:
            names.append(name)
    return normalize_tags(names)


def _status_author(status: Dict[str, Any]) -> Author:
    account = status.get("account") or status.get("author") or {}
    return Author(
        id=_str_or_none(account.get("id")),
        acct=account.get("acct"),
        username=account.get("username"),
        display_name=account.get("display_name") or None,
        avatar_url=account.get("avatar"),
    )


def status_to_photos(status: Dict[str, Any]) -> List[Photo]:
    """
    Convert one remote status into photos, one per image attachment.

    Attachments with a ``type`` other than ``image`` are dropped, as are
    attachments without any usable URL.

    Args:
        status: Remote status as decoded from JSON.

    Returns:
        List[Photo]: Photos sharing the status id, in attachment order.
    """
    if not isinstance(status, dict) or not status.get("id"):
        return []

    status_id = str(status["id"])
    created_at = parse_timestamp(status.get("created_at"))
    author = _status_author(status)
    tags = tuple(_status_tags(status))
    caption = status.get("content") or status.get("caption") or ""
    post_url = status.get("url") or status.get("uri")

    photos = []
    for media in status.get("media_attachments") or []:
        if not isinstance(media, dict):
            continue
        if media.get("type") and media.get("type") != "image":
            continue
        url = media.get("url") or media.get("remote_url") or media.get("preview_url")
        if not url:
            continue
        photos.append(Photo(
            status_id=status_id,
            created_at=created_at,
            url=url,
            preview_url=media.get("preview_url") or url,
            author=author,
            caption_html=caption,
            post_url=post_url,
            tags=tags,
        ))
    return photos


def statuses_to_photos(statuses: Optional[Iterable[Dict[str, Any]]]) -> List[Photo]:
    """Flatten a page of statuses into photos, preserving page order."""
    photos: List[Photo] = []
    for status in statuses or []:
        photos.extend(status_to_photos(status))
    return photos
