"""Unverified JWT decoding for display and debugging.

Nothing here checks a signature. Authorization decisions go through
``TokenService.require`` / ``TokenService.verify``; no code path that
decides access imports this module.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authlab.service.errors import TokenError
from authlab.service.tokens import decode_json_segment, split_token


def inspect_unverified(token: str) -> Optional[Dict[str, Any]]:
    """Decode header and claims without verification, or ``None`` if unparseable."""
    try:
        header_b64, payload_b64, _ = split_token(token)
        header = decode_json_segment(header_b64)
        claims = decode_json_segment(payload_b64)
    except TokenError:
        return None
    result: Dict[str, Any] = {"header": header, "claims": claims, "verified": False}
    for key in ("iat", "exp"):
        value = claims.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            result[f"{key}_iso"] = datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return result
