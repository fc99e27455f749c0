"""Identity tokens issued by the external auth provider.

The service never logs anyone in; it only verifies the bearer token the
provider signed and reads the subject (user id) and optional profile claims
(``email``, ``name``) out of it.
"""

from datetime import datetime, timedelta, timezone

import jwt
from jwt.exceptions import PyJWTError

REQUIRED_CLAIMS = ("sub", "exp")


def create_identity_token(
    subject: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60,
    **claims,
) -> str:
    """Sign a token for ``subject``. Local tooling and tests stand in for the provider with this."""
    now = datetime.now(timezone.utc)
    payload = {**claims, "sub": subject, "iat": now, "exp": now + timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def read_identity_claims(token: str, secret_key: str, algorithm: str = "HS256") -> dict | None:
    """Verified claims, or None for a bad signature, expiry or missing subject."""
    try:
        claims = jwt.decode(
            token, secret_key, algorithms=[algorithm], options={"require": list(REQUIRED_CLAIMS)}
        )
    except PyJWTError:
        return None
    return claims if claims["sub"] else None
