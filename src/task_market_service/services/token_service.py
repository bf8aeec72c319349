"""Bearer credential issuing and verification for the user and worker namespaces."""

from __future__ import annotations

import time
from typing import Any

from joserfc import jwt
from joserfc.errors import BadSignatureError, ExpiredTokenError, JoseError
from joserfc.jwk import OctKey

from task_market_service.core.exceptions import ServiceError

NAMESPACES: tuple[str, ...] = ("user", "worker")

# namespace -> claim holding the subject id
SUBJECT_CLAIMS: dict[str, str] = {"user": "userId", "worker": "workerId"}

_ALGORITHM = "HS256"

# rejection reason -> (error code, message)
_REJECTIONS: dict[str, tuple[str, str]] = {
    "missing": ("UNAUTHORIZED", "Missing or invalid Authorization header"),
    "malformed": ("UNAUTHORIZED", "Unauthorized: Invalid token"),
    "expired": ("TOKEN_EXPIRED", "Session expired, please sign in again"),
    "invalid-signature": ("UNAUTHORIZED", "Unauthorized: Invalid token"),
}


def reject(reason: str) -> ServiceError:
    """Build the 401 error for a credential rejection reason."""
    error, message = _REJECTIONS[reason]
    return ServiceError(error, message, 401, {"reason": reason})


class TokenService:
    """
    Issues and verifies HS256 JWTs.

    Each namespace signs with its own secret and stamps an "ns" claim,
    so a worker credential never authorizes a user-scoped call and
    vice versa.
    """

    def __init__(self, user_secret: str, worker_secret: str, ttl_seconds: int) -> None:
        self._keys: dict[str, OctKey] = {
            "user": OctKey.import_key(user_secret),
            "worker": OctKey.import_key(worker_secret),
        }
        self._ttl_seconds = ttl_seconds

    def _key(self, namespace: str) -> OctKey:
        try:
            return self._keys[namespace]
        except KeyError:
            msg = f"Unknown credential namespace: {namespace}"
            raise ValueError(msg) from None

    def issue(self, namespace: str, subject_id: str) -> str:
        """Sign a credential for subject_id in the given namespace."""
        key = self._key(namespace)
        now = int(time.time())
        claims: dict[str, Any] = {
            "ns": namespace,
            SUBJECT_CLAIMS[namespace]: subject_id,
            "iat": now,
            "exp": now + self._ttl_seconds,
        }
        return jwt.encode({"alg": _ALGORITHM}, claims, key)

    def verify(self, namespace: str, token: str) -> str:
        """
        Verify a credential and return its subject id.

        Raises:
            ServiceError: 401 with details.reason one of
                malformed, expired, invalid-signature.
        """
        key = self._key(namespace)
        try:
            decoded = jwt.decode(token, key, algorithms=[_ALGORITHM])
        except BadSignatureError as exc:
            raise reject("invalid-signature") from exc
        except (JoseError, ValueError, TypeError) as exc:
            raise reject("malformed") from exc

        subject_claim = SUBJECT_CLAIMS[namespace]
        registry = jwt.JWTClaimsRegistry(
            exp={"essential": True},
            ns={"essential": True, "value": namespace},
            **{subject_claim: {"essential": True}},
        )
        try:
            registry.validate(decoded.claims)
        except ExpiredTokenError as exc:
            raise reject("expired") from exc
        except JoseError as exc:
            raise reject("malformed") from exc

        subject_id = decoded.claims[subject_claim]
        if not isinstance(subject_id, str) or not subject_id:
            raise reject("malformed")
        return subject_id

    def verify_header(self, namespace: str, authorization: str | None) -> str:
        """Verify an "Authorization: Bearer <token>" header value."""
        if not authorization or not authorization.startswith("Bearer "):
            raise reject("missing")
        token = authorization[len("Bearer ") :].strip()
        if not token:
            raise reject("missing")
        return self.verify(namespace, token)
