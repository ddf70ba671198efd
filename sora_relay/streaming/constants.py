"""Shared streaming constants to avoid duplication across modules."""

import re

# Upstream/downstream event-stream framing.
FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
SSE_MEDIA_TYPE = "text/event-stream"

# Progress heuristics. The backend phrases progress as
# "**Video Generation Progress**: 42% (running)"; the labelled form wins over a bare percentage.
PROGRESS_LABELLED_RE = re.compile(r"progress\b[^0-9%\n]*?(\d{1,3}(?:\.\d+)?)\s*%", re.IGNORECASE)
PROGRESS_BARE_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s*%")
PROGRESS_MIN = 0
PROGRESS_MAX = 100

# Result heuristics.
CODE_FENCE = "```"
MEDIA_TAG_SRC_RE = re.compile(
    r"<(?:video|source|img|audio|iframe|embed)\b[^>]*?(?<![\w-])src\s*=\s*"
    r"(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<uq>[^\s\"'<>`]+))",
    re.IGNORECASE,
)
BARE_URL_RE = re.compile(r"https?://[^\s\"'`<>()\[\]{}]+", re.IGNORECASE)
