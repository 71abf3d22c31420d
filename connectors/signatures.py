from __future__ import annotations

import hashlib
import hmac
import ipaddress
from typing import Optional, Union
from urllib.parse import urlparse


def hmac_sha256_hex(secret: str, body: Union[str, bytes]) -> str:
    payload = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def constant_time_equals(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def verify_hmac_sha256(secret: Optional[str], body: Union[str, bytes], signature: Optional[str], prefix: str = "") -> bool:
    if not secret or not signature:
        return False
    expected = prefix + hmac_sha256_hex(secret, body)
    return constant_time_equals(expected, signature.strip())


def is_loopback_url(url: str) -> bool:
    host = urlparse(url).hostname
    if not host:
        return False
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
