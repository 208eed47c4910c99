"""Helpers for building identifiers and URLs."""

from __future__ import annotations

import re
import unicodedata

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def canonify(name: str) -> str:
    """Lowercase ``name`` and collapse anything non-alphanumeric into dashes.

    >>> canonify("My Pipeline / v2")
    'my-pipeline-v2'
    """
    normalized = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    return _NON_ALNUM.sub("-", normalized.lower()).strip("-")


def join_url(base: str, *parts: str) -> str:
    url = base.rstrip("/")
    for part in parts:
        part = str(part).strip("/")
        if part:
            url = f"{url}/{part}"
    return url
