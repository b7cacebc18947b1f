"""Credential generation for new instances and signing-key rotation.

Secrets come from :mod:`secrets`; the anonymous and service-role access
tokens are HS256 JWTs signed with the instance's own signing secret and
verified immediately after issuance.
"""
from __future__ import annotations

import secrets
import string
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass

import jwt

from .errors import CredentialGenerationError

TOKEN_ISSUER = "stackctl"
TOKEN_ALGORITHM = "HS256"
TOKEN_LIFETIME_SECONDS = 365 * 24 * 60 * 60
TOKEN_ROLES = ("anon", "service_role")

_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int) -> str:
    """Return a random alphanumeric secret of *length* characters."""
    if length < 1:
        raise ValueError("Secret length must be positive.")
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def issue_token(role: str, secret: str, *, issued_at: int | None = None) -> str:
    """Return a signed access token for *role*, verified before returning."""
    now = int(time.time()) if issued_at is None else int(issued_at)
    payload = {
        "role": role,
        "iss": TOKEN_ISSUER,
        "iat": now,
        "exp": now + TOKEN_LIFETIME_SECONDS,
    }
    token = jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)
    try:
        claims = verify_token(token, secret)
    except jwt.PyJWTError as exc:
        raise CredentialGenerationError(
            f"Generated {role} token failed verification: {exc}"
        ) from exc
    if claims.get("role") != role:
        raise CredentialGenerationError(f"Generated {role} token carries the wrong role.")
    return token


def verify_token(token: str, secret: str) -> dict[str, object]:
    """Decode *token* with *secret*, raising :class:`jwt.PyJWTError` on mismatch."""
    return jwt.decode(
        token,
        secret,
        algorithms=[TOKEN_ALGORITHM],
        issuer=TOKEN_ISSUER,
        options={"require": ["exp", "iat", "iss"]},
    )


@dataclass(slots=True, frozen=True)
class Credentials:
    """Secret material generated for one instance."""

    postgres_password: str
    jwt_secret: str
    anon_key: str
    service_role_key: str
    dashboard_username: str
    dashboard_password: str
    vault_enc_key: str
    logflare_api_key: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return asdict(self)


def generate_credentials(*, dashboard_username: str = "admin") -> Credentials:
    """Generate a complete credential set for a new instance."""
    jwt_secret = generate_secret(64)
    issued_at = int(time.time())
    return Credentials(
        postgres_password=generate_secret(16),
        jwt_secret=jwt_secret,
        anon_key=issue_token("anon", jwt_secret, issued_at=issued_at),
        service_role_key=issue_token("service_role", jwt_secret, issued_at=issued_at),
        dashboard_username=dashboard_username,
        dashboard_password=generate_secret(16),
        vault_enc_key=generate_secret(32),
        logflare_api_key=generate_secret(24),
    )


SIGNING_ENV_VARS: dict[str, str] = {
    "jwt_secret": "JWT_SECRET",
    "anon_key": "ANON_KEY",
    "service_role_key": "SERVICE_ROLE_KEY",
}


def rotate_signing_credentials(credentials: Mapping[str, object]) -> dict[str, object]:
    """Return a copy of *credentials* with a new signing secret and fresh tokens.

    Passwords and the other keys are carried over untouched.
    """
    jwt_secret = generate_secret(64)
    issued_at = int(time.time())
    rotated = dict(credentials)
    rotated.update(
        jwt_secret=jwt_secret,
        anon_key=issue_token("anon", jwt_secret, issued_at=issued_at),
        service_role_key=issue_token("service_role", jwt_secret, issued_at=issued_at),
    )
    return rotated


def tokens_valid(credentials: Mapping[str, object]) -> bool:
    """Return ``True`` when both stored tokens verify against the stored secret."""
    secret = credentials.get("jwt_secret")
    if not isinstance(secret, str) or not secret:
        return False
    for key, role in (("anon_key", "anon"), ("service_role_key", "service_role")):
        token = credentials.get(key)
        if not isinstance(token, str):
            return False
        try:
            claims = verify_token(token, secret)
        except jwt.PyJWTError:
            return False
        if claims.get("role") != role:
            return False
    return True


__all__ = [
    "Credentials",
    "SIGNING_ENV_VARS",
    "TOKEN_ISSUER",
    "generate_credentials",
    "generate_secret",
    "issue_token",
    "rotate_signing_credentials",
    "tokens_valid",
    "verify_token",
]
