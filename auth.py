"""
Caller identity for write routes.

A request is accepted when it carries one of the configured tokens either as
``Authorization: Bearer <token>`` or as ``X-API-Key``. With no tokens
configured every write is refused.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException

from config import Settings, get_settings


def require_caller(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
    token = x_api_key
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if not token:
        raise HTTPException(401, "You do not have access.")
    for known in settings.api_tokens:
        if hmac.compare_digest(token.encode(), known.encode()):
            return token
    raise HTTPException(401, "You do not have access.")
