from __future__ import annotations

import hmac
import logging
import threading
from typing import Dict, Protocol, Set

from fastapi import Header, HTTPException

from .errors import ErrorKind, reject
from .utils import normalize_identity, sha256_hex

logger = logging.getLogger(__name__)


class Authorizer(Protocol):
    """What the board controller needs to know about a caller."""

    def exists(self, identity: str) -> bool: ...

    def is_logged_in(self, identity: str) -> bool: ...


class UserDirectory:
    """In-memory users and their logged-in flag."""

    def __init__(self) -> None:
        self._password_hashes: Dict[str, str] = {}
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def register(self, email: str, password: str) -> None:
        email = normalize_identity(email)
        if not email:
            raise reject(logger, ErrorKind.INVALID_ARGUMENT, "email is empty")
        with self._lock:
            if email in self._password_hashes:
                raise reject(logger, ErrorKind.ALREADY_EXISTS, f"a user with the email '{email}' already exists")
            self._password_hashes[email] = sha256_hex(password)
            # a fresh registration starts a session
            self._active.add(email)
        logger.info("registered %s", email)

    def log_in(self, email: str, password: str) -> None:
        email = normalize_identity(email)
        with self._lock:
            stored = self._password_hashes.get(email)
            if stored is None:
                raise reject(
                    logger,
                    ErrorKind.NOT_FOUND,
                    f"A user with the email '{email}' doesn't exist in the system",
                )
            if not hmac.compare_digest(stored, sha256_hex(password)):
                raise reject(logger, ErrorKind.PERMISSION_DENIED, "wrong password")
            self._active.add(email)

    def log_out(self, email: str) -> None:
        email = normalize_identity(email)
        with self._lock:
            if email not in self._active:
                raise reject(logger, ErrorKind.PERMISSION_DENIED, f"user '{email}' isn't logged in")
            self._active.discard(email)

    def exists(self, identity: str) -> bool:
        return normalize_identity(identity) in self._password_hashes

    def is_logged_in(self, identity: str) -> bool:
        return normalize_identity(identity) in self._active


def get_current_user(authorization: str = Header(...)) -> str:
    """Read the caller's identity from the bearer token.

    The token is the caller's email; the board controller checks that the
    user exists and is logged in before acting on it.
    """
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="invalid_token")
    user_id = normalize_identity(authorization[len(prefix) :])
    if not user_id:
        raise HTTPException(status_code=401, detail="invalid_token")
    return user_id
