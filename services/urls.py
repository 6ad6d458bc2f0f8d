from __future__ import annotations

from typing import Optional
from urllib.parse import quote


def create_api_url(base_url: Optional[str], *segments: Optional[str]) -> Optional[str]:
    # Join percent-encoded path segments onto a base URL; None if any segment is missing
    out = base_url or ""
    for seg in segments:
        if seg is None:
            return None
        if not out or not out.endswith("/"):
            out += "/"
        out += quote(str(seg), safe="")
    return out
