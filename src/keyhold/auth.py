"""Encoding of the ``authorization`` value attached to RPC calls."""

from __future__ import annotations

import base64
from typing import Optional, Tuple

BASIC_SCHEME = "Basic"
BEARER_SCHEME = "Bearer"


def encode_auth_from_password(password: str) -> str:
    encoded = base64.b64encode(password.encode("utf-8")).decode("ascii")
    return f"{BASIC_SCHEME} {encoded}"


def encode_auth_from_session(token: str) -> str:
    return f"{BEARER_SCHEME} {token}"


def decode_auth(authorization: str) -> Optional[Tuple[str, str]]:
    """Split an authorization value into ``(scheme, credential)``.

    Returns ``None`` for values this client did not produce.
    """

    scheme, _, value = authorization.partition(" ")
    if scheme == BASIC_SCHEME:
        try:
            return scheme, base64.b64decode(value, validate=True).decode("utf-8")
        except ValueError:
            return None
    if scheme == BEARER_SCHEME:
        return scheme, value
    return None
