"""Reading a board topic and planning which comments to delete."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Sequence

from boarddedupe_api import DEFAULT_RETRY_POLICY, ErrorKind, RemoteCallError, RetryPolicy, call_with_retries

PAGE_SIZE = 100

_ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_HSPACE_RE = re.compile(r"[ \t]+")
_NEWLINE_RE = re.compile(r"\s*\n\s*")


def coerce_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class Attachment:
    kind: str | None
    owner_id: str | None = None
    id: str | None = None
    sticker_id: str | None = None
    url: str | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "Attachment":
        if not isinstance(raw, dict):
            return cls(kind=None)
        kind = raw.get("type")
        if not isinstance(kind, str) or not kind:
            return cls(kind=None)
        body = raw.get(kind)
        if not isinstance(body, dict):
            body = {}
        # access_key changes between fetches of the same object, so it is left out
        return cls(
            kind=kind,
            owner_id=coerce_str(body.get("owner_id")),
            id=coerce_str(body.get("id")),
            sticker_id=coerce_str(body.get("sticker_id")),
            url=coerce_str(body.get("url") or body.get("link")),
        )


@dataclass(frozen=True)
class Comment:
    id: int
    from_id: int
    text: str
    attachments: tuple[Attachment, ...] = ()

    @classmethod
    def from_payload(cls, raw: Any) -> "Comment":
        if not isinstance(raw, dict) or "id" not in raw:
            raise ValueError(f"malformed comment: {str(raw)[:200]}")
        atts = raw.get("attachments") if isinstance(raw.get("attachments"), list) else []
        return cls(
            id=int(raw["id"]),
            from_id=int(raw.get("from_id") or 0),
            text=raw.get("text") if isinstance(raw.get("text"), str) else "",
            attachments=tuple(Attachment.from_payload(a) for a in atts),
        )


@dataclass(frozen=True)
class Signature:
    author_id: int
    text: str
    attachments: str


def normalize_text(raw: str | None) -> str:
    """Canonical form of a comment text for duplicate comparison.

    Lower-cased, NBSP turned into a space, zero-width characters removed,
    horizontal whitespace collapsed, whitespace around line breaks dropped
    and the result trimmed.
    """
    text = (raw or "").replace("\u00a0", " ").lower()
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _HSPACE_RE.sub(" ", text)
    text = _NEWLINE_RE.sub("\n", text)
    return text.strip()


def _attachment_tuple(att: Attachment) -> str:
    if not att.kind:
        return "unknown:"
    sticker = f"st:{att.sticker_id}" if att.sticker_id is not None else ""
    return f"{att.kind}:{att.owner_id or ''}:{att.id or ''}:{sticker}:{att.url or ''}"


def attachment_signature(attachments: Sequence[Attachment] | None, ignore: bool = False) -> str:
    if ignore or not attachments:
        return ""
    try:
        return "|".join(sorted(_attachment_tuple(a) for a in attachments))
    except (AttributeError, TypeError):
        return ""


def signature_of(comment: Comment, ignore_attachments: bool = False) -> Signature:
    return Signature(
        author_id=comment.from_id,
        text=normalize_text(comment.text),
        attachments=attachment_signature(comment.attachments, ignore_attachments),
    )


def iter_comments(
    client: Any,
    group_id: int,
    topic_id: int,
    *,
    start_offset: int = 0,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    page_size: int = PAGE_SIZE,
    **retry_kwargs: Any,
) -> Iterator[Comment]:
    """Yield topic comments oldest first, one page fetch at a time."""
    offset = max(0, start_offset)
    while True:
        page = call_with_retries(
            lambda: client.get_comments(group_id, topic_id, offset=offset, count=page_size, sort="asc"),
            policy,
            label=f"board.getComments offset={offset}",
            **retry_kwargs,
        )
        items = page.get("items") if isinstance(page.get("items"), list) else []
        if not items:
            return
        for item in items:
            try:
                comment = Comment.from_payload(item)
            except (TypeError, ValueError) as exc:
                # An unreadable item aborts the scan like a failed page fetch.
                raise RemoteCallError(f"board.getComments offset={offset}", ErrorKind.FATAL, str(exc), 1) from exc
            yield comment
        offset += len(items)
        if len(items) < page_size:
            return


def plan_deletions(comments: Iterable[Comment], ignore_attachments: bool = False) -> list[int]:
    """Ids of comments repeating the last kept comment right before them.

    Only strict neighbours count: a run of k equal comments yields k - 1 ids
    and the first comment of the sequence is never planned.
    """
    plan: list[int] = []
    kept: Signature | None = None
    for comment in comments:
        current = signature_of(comment, ignore_attachments)
        if kept is None:
            kept = current
            continue
        if current == kept:
            plan.append(comment.id)
        else:
            kept = current
    return plan
