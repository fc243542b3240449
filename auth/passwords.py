"""
auth/passwords.py -- Password hashing with argon2id.

argon2id is memory-hard, salted per hash, and encodes its own parameters in
the output string, so rehashing with stronger parameters later does not need
a schema change. argon2-cffi's PasswordHasher defaults follow RFC 9106's
recommended profile.

verify_password() never raises. argon2-cffi signals a mismatch with
VerifyMismatchError and a corrupt stored hash with InvalidHashError; both,
and anything else that goes wrong inside the library, mean "does not match".
An exception escaping here would turn a bad row into a 500 and tell an
attacker which accounts have broken hashes.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

logger = logging.getLogger("keyhold.auth.passwords")

_hasher = PasswordHasher()


def hash_password(plain: str) -> str:
    """Return an argon2id hash of the given plaintext password."""
    return _hasher.hash(plain)


def verify_password(hashed: str, plain: str) -> bool:
    """Return True if plain matches the stored argon2 hash. Never raises."""
    if not hashed or plain is None:
        return False
    try:
        return _hasher.verify(hashed, plain)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        logger.warning("Stored password hash could not be verified")
        return False
    except Exception:
        logger.exception("Unexpected failure verifying password hash")
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Verified against on the unknown-username path
# so a failed login costs one argon2 verification either way.
DUMMY_HASH: str = hash_password("keyhold_timing_dummy")
