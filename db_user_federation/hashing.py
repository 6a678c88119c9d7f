from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from enum import Enum
from typing import Callable, Dict, Optional

import bcrypt

from db_user_federation import error_codes
from db_user_federation.errors import ConfigurationError

LOG = logging.getLogger(__name__)

DEFAULT_PBKDF2_ITERATIONS = 27_500
DEFAULT_BCRYPT_ROUNDS = 12
PBKDF2_PREFIX = "pbkdf2_sha256"

# bcrypt only ever looks at the first 72 bytes of the secret
_BCRYPT_MAX_BYTES = 72


class HashFamily(str, Enum):
    ADAPTIVE = "adaptive"
    DIGEST = "digest"
    PBKDF2 = "pbkdf2"


class HashAlgorithm(Enum):
    """Password hash algorithms a stored credential may use."""

    BCRYPT = ("Blowfish (bcrypt)", HashFamily.ADAPTIVE, None)
    MD5 = ("MD5", HashFamily.DIGEST, "md5")
    SHA_1 = ("SHA-1", HashFamily.DIGEST, "sha1")
    SHA_224 = ("SHA-224", HashFamily.DIGEST, "sha224")
    SHA_256 = ("SHA-256", HashFamily.DIGEST, "sha256")
    SHA_384 = ("SHA-384", HashFamily.DIGEST, "sha384")
    SHA_512 = ("SHA-512", HashFamily.DIGEST, "sha512")
    SHA_512_224 = ("SHA-512/224", HashFamily.DIGEST, "sha512_224")
    SHA_512_256 = ("SHA-512/256", HashFamily.DIGEST, "sha512_256")
    SHA3_224 = ("SHA3-224", HashFamily.DIGEST, "sha3_224")
    SHA3_256 = ("SHA3-256", HashFamily.DIGEST, "sha3_256")
    SHA3_384 = ("SHA3-384", HashFamily.DIGEST, "sha3_384")
    SHA3_512 = ("SHA3-512", HashFamily.DIGEST, "sha3_512")
    PBKDF2_SHA256 = ("PBKDF2-SHA256", HashFamily.PBKDF2, "sha256")

    def __init__(self, label: str, family: HashFamily, hashlib_name: Optional[str]):
        self.label = label
        self.family = family
        self.hashlib_name = hashlib_name

    @classmethod
    def resolve(cls, value: "HashAlgorithm | str | None") -> "HashAlgorithm":
        """
        Resolve a configured algorithm name ("SHA-256", "sha256", "SHA_256",
        "Blowfish (bcrypt)", ...) to a member and make sure this interpreter
        can actually compute it. Anything else is a configuration error.
        """
        if isinstance(value, HashAlgorithm):
            algorithm = value
        else:
            algorithm = _LOOKUP.get(_norm(value or ""))
            if algorithm is None:
                raise ConfigurationError(
                    f"Unsupported password hash function {value!r}; expected one of: "
                    f"{', '.join(a.label for a in cls)}",
                    subcode=error_codes.CONFIG_UNSUPPORTED_HASH,
                    details={"hash_function": value},
                )
        if algorithm.family is HashFamily.DIGEST:
            try:
                hashlib.new(algorithm.hashlib_name)
            except ValueError as e:
                raise ConfigurationError(
                    f"Hash function {algorithm.label} is not available in this Python build",
                    subcode=error_codes.CONFIG_UNSUPPORTED_HASH,
                    details={"hash_function": algorithm.label},
                ) from e
        return algorithm


def _norm(text: str) -> str:
    return "".join(ch for ch in str(text).strip().lower() if ch.isalnum())


_LOOKUP: Dict[str, HashAlgorithm] = {}
for _a in HashAlgorithm:
    _LOOKUP[_norm(_a.name)] = _a
    _LOOKUP[_norm(_a.label)] = _a
_LOOKUP["bcrypt"] = HashAlgorithm.BCRYPT
_LOOKUP["blowfish"] = HashAlgorithm.BCRYPT
_LOOKUP["pbkdf2"] = HashAlgorithm.PBKDF2_SHA256


def _const_eq(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _bcrypt_secret(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class CredentialVerifier:
    """
    Checks plaintext passwords against stored values for one algorithm.

    The algorithm family is resolved once here; ``verify`` and ``hash`` never
    re-dispatch on names. Adaptive hashes (bcrypt) carry salt and cost in the
    stored value. Fixed digests are compared as lowercase hex. PBKDF2 values
    are either ``pbkdf2_sha256$<iterations>$<salt>$<base64>`` or bare hex
    derived with the configured iteration count and an empty salt.
    """

    def __init__(
        self,
        algorithm: "HashAlgorithm | str",
        *,
        pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
    ):
        self.algorithm = HashAlgorithm.resolve(algorithm)
        if pbkdf2_iterations <= 0:
            raise ConfigurationError(
                f"pbkdf2_iterations must be positive, got {pbkdf2_iterations}",
                subcode=error_codes.CONFIG_BAD_VALUE,
            )
        if not 4 <= bcrypt_rounds <= 31:
            raise ConfigurationError(
                f"bcrypt_rounds must be between 4 and 31, got {bcrypt_rounds}",
                subcode=error_codes.CONFIG_BAD_VALUE,
            )
        self.pbkdf2_iterations = pbkdf2_iterations
        self.bcrypt_rounds = bcrypt_rounds

        verifiers: Dict[HashFamily, Callable[[str, str], bool]] = {
            HashFamily.ADAPTIVE: self._verify_bcrypt,
            HashFamily.DIGEST: self._verify_digest,
            HashFamily.PBKDF2: self._verify_pbkdf2,
        }
        hashers: Dict[HashFamily, Callable[[str], str]] = {
            HashFamily.ADAPTIVE: self._hash_bcrypt,
            HashFamily.DIGEST: self._hash_digest,
            HashFamily.PBKDF2: self._hash_pbkdf2,
        }
        self._verify = verifiers[self.algorithm.family]
        self._hash = hashers[self.algorithm.family]
        LOG.debug("CredentialVerifier bound to %s (%s)", self.algorithm.label, self.algorithm.family.value)

    def verify(self, stored: Optional[str], plaintext: Optional[str]) -> bool:
        if not stored or plaintext is None:
            return False
        return self._verify(stored.strip(), plaintext)

    def hash(self, plaintext: str) -> str:
        return self._hash(plaintext)

    # ------------------------ adaptive ------------------------

    def _verify_bcrypt(self, stored: str, plaintext: str) -> bool:
        # $2y$ (PHP) and $2a$ hashes are computed the same way as $2b$
        candidate = "$2b$" + stored[4:] if stored.startswith("$2y$") else stored
        try:
            return bcrypt.checkpw(_bcrypt_secret(plaintext), candidate.encode("ascii"))
        except ValueError:
            LOG.warning("Stored bcrypt value is malformed; rejecting credentials")
            return False

    def _hash_bcrypt(self, plaintext: str) -> str:
        return bcrypt.hashpw(_bcrypt_secret(plaintext), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("ascii")

    # ------------------------ fixed digest ------------------------

    def _hash_digest(self, plaintext: str) -> str:
        return hashlib.new(self.algorithm.hashlib_name, plaintext.encode("utf-8")).hexdigest()

    def _verify_digest(self, stored: str, plaintext: str) -> bool:
        return _const_eq(self._hash_digest(plaintext), stored.lower())

    # ------------------------ PBKDF2 ------------------------

    def _derive(self, plaintext: str, salt: str, iterations: int) -> bytes:
        return hashlib.pbkdf2_hmac(self.algorithm.hashlib_name, plaintext.encode("utf-8"), salt.encode("utf-8"), iterations)

    def _verify_pbkdf2(self, stored: str, plaintext: str) -> bool:
        if "$" not in stored:
            computed = self._derive(plaintext, "", self.pbkdf2_iterations).hex()
            return _const_eq(computed, stored.lower())

        parts = stored.split("$")
        if len(parts) != 4 or parts[0] != PBKDF2_PREFIX:
            LOG.warning("Stored PBKDF2 value has an unexpected layout; rejecting credentials")
            return False
        _, iterations_txt, salt, expected = parts
        try:
            iterations = int(iterations_txt)
        except ValueError:
            iterations = 0
        if iterations <= 0:
            LOG.warning("Stored PBKDF2 value has an invalid iteration count; rejecting credentials")
            return False
        computed = base64.b64encode(self._derive(plaintext, salt, iterations)).decode("ascii")
        return _const_eq(computed, expected)

    def _hash_pbkdf2(self, plaintext: str) -> str:
        salt = secrets.token_urlsafe(12)
        digest = base64.b64encode(self._derive(plaintext, salt, self.pbkdf2_iterations)).decode("ascii")
        return f"{PBKDF2_PREFIX}${self.pbkdf2_iterations}${salt}${digest}"


def verify_password(algorithm: "HashAlgorithm | str", stored: Optional[str], plaintext: Optional[str], **kwargs) -> bool:
    return CredentialVerifier(algorithm, **kwargs).verify(stored, plaintext)


def hash_password(algorithm: "HashAlgorithm | str", plaintext: str, **kwargs) -> str:
    return CredentialVerifier(algorithm, **kwargs).hash(plaintext)
