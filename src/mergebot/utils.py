from __future__ import annotations

import hashlib
import re
import uuid


def slugify_name(name: str, *, max_length: int = 24) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def normalize_name(name: str) -> str:
    """Case- and whitespace-insensitive key used to match command arguments against configuration."""
    return name.strip().lower()


def new_session_id() -> str:
    return f"DEP-{uuid.uuid4().hex[:12]}"


def clone_dirname(repository: str, url: str) -> str:
    """Directory name for a repository's local clone.

    The URL digest keeps two repositories that share a display name apart.
    """
    slug = slugify_name(repository, max_length=48) or "repo"
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"
