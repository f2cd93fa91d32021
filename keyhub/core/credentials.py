"""API key generation and credential helpers"""
import re
import secrets
import string
import uuid
from typing import Mapping, Optional

from keyhub.core.config import settings

_KEY_ALPHABET = string.ascii_letters + string.digits
_KEY_FORMAT = re.compile(r"^[A-Za-z0-9-]{8,64}$")
_BEARER_PREFIX = "Bearer "


def generate_api_key(prefix: Optional[str] = None, length: Optional[int] = None) -> str:
    """Generate a random API key with format ``{prefix}-{random}``"""
    prefix = prefix or settings.API_KEY_PREFIX
    length = length or settings.API_KEY_RANDOM_LENGTH
    random_part = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length))
    return f"{prefix}-{random_part}"


def generate_uid() -> str:
    """Generate the stable public identifier of a key"""
    return str(uuid.uuid4())


def is_valid_api_key_format(api_key: str) -> bool:
    return bool(_KEY_FORMAT.match(api_key or ""))


def mask_api_key(api_key: Optional[str]) -> str:
    """Mask API key for logs (first 4 and last 4 characters)"""
    if not api_key or len(api_key) < 8:
        return "****"
    return f"{api_key[:4]}****{api_key[-4:]}"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token of an ``Authorization: Bearer <token>`` header, or None"""
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


def get_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """Get client IP address from proxy headers"""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip
    return fallback or "unknown"
