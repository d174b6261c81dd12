"""
config_merge.py — superset merge of the gateway configuration document.

The document on an instance may have been edited by hand, so it is parsed
leniently: // line comments and trailing commas are stripped first, then the
text goes through the strict json parser. Anything that still fails to parse
is treated as an empty document; a fresh instance has no prior configuration.

Merging only ever overwrites keys named in the change set. Nested objects are
merged key by key, so switching on one channel or skill leaves its siblings
untouched, and applying the same change set twice yields the same document.
"""

import copy
import json
import logging
import re

log = logging.getLogger(__name__)

# String literals are matched first and kept, so "https://..." and ",]" inside
# a value survive the stripping passes.
_STRING = r'"(?:\\.|[^"\\])*"'
_LINE_COMMENT = re.compile(rf"({_STRING})|//[^\n]*")
_TRAILING_COMMA = re.compile(rf"({_STRING})|,(?=\s*[}}\]])")


def _keep_strings(match: re.Match) -> str:
    return match.group(1) or ""


def strip_comments(text: str) -> str:
    return _LINE_COMMENT.sub(_keep_strings, text)


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(_keep_strings, text)


def lenient_json(text: str):
    """Parse JSON that may carry // comments and trailing commas.

    Raises json.JSONDecodeError when the cleaned text is still not JSON.
    """
    return json.loads(strip_trailing_commas(strip_comments(text)))


def parse_document(text: str | None) -> dict:
    """Current remote document as a dict; missing or unreadable means {}."""
    if text is None or not text.strip():
        return {}
    try:
        doc = lenient_json(text)
    except json.JSONDecodeError as exc:
        log.warning(f"  Could not parse existing config ({exc}), starting fresh")
        return {}
    if not isinstance(doc, dict):
        log.warning(f"  Existing config is a {type(doc).__name__}, not an object, starting fresh")
        return {}
    return doc


def deep_merge(base: dict, changes: dict) -> dict:
    """Return base with changes applied key by key. Neither input is mutated."""
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def render_document(doc: dict) -> str:
    return json.dumps(doc, indent=2, ensure_ascii=False) + "\n"


def merge_document(current: str | dict | None, changes: dict) -> str:
    """(current remote document) merged with changes, as pretty JSON text."""
    base = current if isinstance(current, dict) else parse_document(current)
    return render_document(deep_merge(base, changes))
