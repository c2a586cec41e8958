import base64
import binascii
import json
import math
import time
from typing import Optional


def token_expiry(token: str) -> Optional[int]:
    """Read ``exp`` from the payload segment of a JWT-shaped token.

    The signature is not verified: the token is only ever presented back to
    the service that issued it. Returns None when the token can't be decoded.
    """
    try:
        payload_b64 = token.split(".")[1]
    except (AttributeError, IndexError):
        return None
    # JWTs drop base64 padding
    payload_b64 += "=" * (-len(payload_b64) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
        exp = payload["exp"]
    except (binascii.Error, ValueError, TypeError, KeyError):
        return None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    # inf and nan parse from JSON but have no integer value
    if isinstance(exp, float) and not math.isfinite(exp):
        return None
    return int(exp)


def is_token_valid(token: Optional[str], now: Optional[float] = None, leeway: int = 0) -> bool:
    if not token:
        return False
    exp = token_expiry(token)
    if exp is None:
        return False
    if now is None:
        now = time.time()
    return exp - leeway > int(now)
