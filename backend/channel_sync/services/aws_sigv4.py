"""AWS Signature Version 4 for Selling Partner API requests.

SP-API requires every request to be signed with IAM credentials (service
``execute-api``) in addition to carrying the LWA access token in
``x-amz-access-token``. Signing is plain HMAC-SHA256 over a canonical form of
the request, so it is done here directly rather than through an AWS SDK.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import quote

from channel_sync.utils.dates import utcnow

ALGORITHM = "AWS4-HMAC-SHA256"


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None


def _sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


def canonical_query_string(query: Iterable[Tuple[str, str]]) -> str:
    pairs = sorted((_uri_encode(str(k)), _uri_encode(str(v))) for k, v in query)
    return "&".join(f"{k}={v}" for k, v in pairs)


def canonical_uri(path: str) -> str:
    return _uri_encode(path or "/", safe="/-_.~")


def signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def canonical_request(
    method: str,
    path: str,
    query: Iterable[Tuple[str, str]],
    headers: Dict[str, str],
    body: bytes,
) -> Tuple[str, str]:
    """Return ``(canonical_request, signed_headers)``."""
    normalized = {k.lower().strip(): " ".join(str(v).split()) for k, v in headers.items()}
    names = sorted(normalized)
    canonical_headers = "".join(f"{name}:{normalized[name]}\n" for name in names)
    signed_headers = ";".join(names)
    request = "\n".join(
        [
            method.upper(),
            canonical_uri(path),
            canonical_query_string(query),
            canonical_headers,
            signed_headers,
            _sha256_hex(body or b""),
        ]
    )
    return request, signed_headers


def sign_request(
    method: str,
    host: str,
    path: str,
    query: Iterable[Tuple[str, str]],
    headers: Dict[str, str],
    body: bytes,
    *,
    credentials: AwsCredentials,
    region: str,
    service: str = "execute-api",
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """Return a copy of ``headers`` with ``Authorization`` and ``x-amz-date`` set.

    Every header passed in is signed, so only pass headers that will be sent
    unchanged.
    """
    query = list(query)
    timestamp = (now or utcnow()).strftime("%Y%m%dT%H%M%SZ")
    date_stamp = timestamp[:8]

    signed = {k: v for k, v in headers.items() if k.lower() not in ("authorization", "x-amz-date")}
    signed["host"] = host
    signed["x-amz-date"] = timestamp
    if credentials.session_token:
        signed["x-amz-security-token"] = credentials.session_token

    request, signed_headers = canonical_request(method, path, query, signed, body)
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([ALGORITHM, timestamp, scope, _sha256_hex(request.encode("utf-8"))])
    signature = hmac.new(
        signing_key(credentials.secret_access_key, date_stamp, region, service),
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    signed["Authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return signed
