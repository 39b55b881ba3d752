from __future__ import annotations

import os
import secrets

from fastapi import Header, HTTPException


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-Api-Key")) -> None:
    """Guard for every vitals endpoint.

    The key is read per request so a rotated `API_KEY` takes effect without a
    restart. An unset key refuses everything rather than serving health data
    unauthenticated.
    """
    expected = os.getenv("API_KEY")
    if not expected:
        raise HTTPException(status_code=500, detail="Vitals service misconfigured: API_KEY not set")
    if x_api_key is None or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Api-Key")
