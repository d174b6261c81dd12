"""Subdomain slugs and provider label values derived from user-supplied names."""

import re

_NON_SLUG = re.compile(r"[^a-z0-9]+")
_NON_LABEL = re.compile(r"[^a-z0-9-]+")
_HYPHENS = re.compile(r"-+")

SLUG_MAX = 30
LABEL_MAX = 63


def slugify(name: str, max_len: int = SLUG_MAX, fallback: str = "instance") -> str:
    """Lowercase, collapse every non [a-z0-9] run into one hyphen, trim, cap.

    The cap is applied before a final trim so a cut never leaves a trailing
    hyphen behind.
    """
    slug = _NON_SLUG.sub("-", (name or "").lower()).strip("-")
    slug = slug[:max_len].strip("-")
    return slug or fallback


def sanitize_label(value: str, fallback: str = "unknown") -> str:
    """Provider label value: lowercase alphanumerics and hyphens, at most 63 chars."""
    label = _HYPHENS.sub("-", _NON_LABEL.sub("-", (value or "").lower())).strip("-")
    label = label[:LABEL_MAX].strip("-")
    return label or fallback
