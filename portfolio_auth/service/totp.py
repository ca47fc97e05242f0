from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import List, Optional
from urllib.parse import quote, urlencode

from portfolio_auth.logging import get_logger

logger = get_logger(__name__)

TOTP_PERIOD = 30
TOTP_DIGITS = 6
TOTP_SKEW = 1
SECRET_SIZE = 32
BACKUP_CODE_COUNT = 10


def generate_secret(size: int = SECRET_SIZE) -> str:
    """Random base32 seed (RFC 4648, unpadded) for authenticator apps."""
    return base64.b32encode(secrets.token_bytes(size)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_PERIOD,
    digits: int = TOTP_DIGITS,
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA1 is what authenticator apps implement for otpauth URIs
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    now: Optional[float] = None,
    skew: int = TOTP_SKEW,
    interval: int = TOTP_PERIOD,
) -> bool:
    """Check ``code`` against the current step and ``skew`` steps either side."""
    code = (code or "").strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    current = time.time() if now is None else now
    matched = False
    for offset in range(-skew, skew + 1):
        generated = generate_totp(secret, current + offset * interval, interval=interval)
        # Constant-time comparison; keep looping so timing does not reveal the step
        if generated and hmac.compare_digest(generated, code):
            matched = True
    return matched


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}", safe="@:")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """Ten human-typable codes shaped like ``1234-5678-9012``."""
    codes = []
    for _ in range(count):
        digits = [secrets.randbelow(100) for _ in range(6)]
        codes.append(
            "%02d%02d-%02d%02d-%02d%02d" % tuple(digits)
        )
    return codes


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "") if ch.isdigit())
