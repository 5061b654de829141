"""Credential hashing for the local fallback user table."""

import logging

import bcrypt

logger = logging.getLogger(__name__)


class PasswordHasher:
    """bcrypt hashing with an embedded salt.

    The local user table only ever stores the hash; a hash is enough to verify
    an offline login and never enough to replay the password remotely.
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password cannot be empty")
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored credential hash is malformed; rejecting login")
            return False


__all__ = ["PasswordHasher"]
