"""Heuristic extraction of the generated media URL from the final document.

The backend answers with free-form text or markup, for example::

    ```html
    <video src='https://cdn.example/a.mp4' controls></video>
    ```

Precedence, highest first:

1. ``src`` attribute of a media tag (``video``, ``source``, ``img``, ...)
2. first bare ``http(s)://`` URL
3. not found

Markup wins because a bare scan could pick up an unrelated link mentioned
earlier in explanatory text. These patterns follow the backend's current
phrasing; see DESIGN.md before changing them.
"""

from __future__ import annotations

from typing import Optional

from ..core.errors import NoResultFound
from ..core.timing_logger import timed
from .constants import BARE_URL_RE, CODE_FENCE, MEDIA_TAG_SRC_RE


def strip_code_fence(document: str) -> str:
    """Trim ``document`` and unwrap it from a fenced code block, if it is one.

    A fenced block starts with the fence marker and a line break; the opening
    line (which may carry a language tag) and a trailing fence are removed.
    """
    text = document.strip()
    if not text.startswith(CODE_FENCE) or "\n" not in text:
        return text
    text = text.split("\n", 1)[1]
    if text.rstrip().endswith(CODE_FENCE):
        text = text.rstrip()[: -len(CODE_FENCE)]
    return text.strip()


@timed
def extract_result_url(document: Optional[str]) -> Optional[str]:
    """Return the media URL embedded in ``document``, or None when there is none."""
    if not document:
        return None
    text = strip_code_fence(document)
    if not text:
        return None

    tag = MEDIA_TAG_SRC_RE.search(text)
    if tag is not None:
        src = (tag.group("dq") or tag.group("sq") or tag.group("uq") or "").strip()
        if src:
            return src

    bare = BARE_URL_RE.search(text)
    if bare is not None:
        return bare.group(0)
    return None


def require_result_url(document: Optional[str]) -> str:
    """Like :func:`extract_result_url` but raise :class:`NoResultFound` on a miss."""
    url = extract_result_url(document)
    if url is None:
        raise NoResultFound()
    return url
