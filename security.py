import secrets
from typing import Protocol

import bcrypt

from constants import BCRYPT_ROUNDS

ROOM_ID_BYTES = 16
CLIENT_KEY_BYTES = 32


class PasswordHasher(Protocol):
    def hash(self, plain: str) -> str: ...

    def verify(self, plain: str, hashed: str) -> bool: ...

    def burn(self, plain: str) -> bool: ...


class BcryptHasher:
    """Slow one-way password hashing. Blocking: call it off the event loop."""

    def __init__(self, rounds: int = BCRYPT_ROUNDS):
        self.rounds = rounds
        # verified against when a room is missing, so both failure paths cost one checkpw
        self._decoy = bcrypt.hashpw(b"decoy-password", bcrypt.gensalt(rounds)).decode("utf-8")

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # malformed hash
            return False

    def burn(self, plain: str) -> bool:
        self.verify(plain, self._decoy)
        return False


def generate_token(nbytes: int = ROOM_ID_BYTES) -> str:
    return secrets.token_hex(nbytes)


def generate_client_key() -> str:
    return secrets.token_hex(CLIENT_KEY_BYTES)
