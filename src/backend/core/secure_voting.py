"""
Cryptographic helpers for secure (verifiable, secret-ballot) polls.

Implements three concepts:
1. Ballot secrecy - ballots are sealed with AES-256-GCM and stored
   without any voter reference
2. Individual verifiability - each voter receives an HMAC token bound
   to their anonymous ballot
3. Homomorphic-like counting - a running per-option tally is updated
   incrementally, never recomputed from decrypted ballots

Everything here is pure: no database access and no shared mutable state.
The only input besides the arguments is the configured secret.
"""

import base64
import copy
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional
from uuid import uuid4

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from core.exceptions import ConfigurationError, CryptoError

logger = structlog.get_logger(__name__)

# Length of the verification-hash prefix folded into the token
PARTIAL_HASH_LENGTH = 16

# 128-bit salt per ballot
SALT_BYTES = 16

NONCE_BYTES = 12


def _canonical_json(data: dict[str, Any]) -> bytes:
    """Serialize deterministically so hashes are reproducible."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class BallotCrypto:
    """
    Ballot sealing and verification-token issuance.

    Both the AES key and the HMAC key come from one configured secret:
    - AES-256-GCM key: HKDF-SHA256(secret, info="ballot-encryption")
    - HMAC-SHA256 key: the secret itself
    """

    # Prefix to identify sealed ballots
    ENCRYPTED_PREFIX = "enc:v1:"

    def __init__(self, secret: Optional[str]):
        """
        Initialize with the vote encryption secret.

        Raises:
            ConfigurationError: If the secret is missing. Secure voting
                refuses to start without one.
        """
        if not secret:
            raise ConfigurationError("VOTE_ENCRYPTION_KEY must be configured for secure voting")

        self._hmac_key = secret.encode("utf-8")
        self._aesgcm = AESGCM(self._derive_key(self._hmac_key))

    @staticmethod
    def _derive_key(secret: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"ballot-encryption",
        )
        return hkdf.derive(secret)

    def encrypt_ballot(self, ballot_data: dict[str, Any]) -> tuple[str, str]:
        """
        Seal a ballot with a fresh random salt.

        Args:
            ballot_data: {"poll_id", "option_id", "timestamp"}

        Returns:
            (ciphertext, salt). The ciphertext differs on every call, even
            for identical input, because both salt and nonce are random.
        """
        salt = secrets.token_hex(SALT_BYTES)
        salted = {**ballot_data, "salt": salt}

        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, _canonical_json(salted), None)
        encoded = base64.b64encode(nonce + sealed).decode("ascii")

        return f"{self.ENCRYPTED_PREFIX}{encoded}", salt

    def open_ballot(self, ciphertext: str) -> dict[str, Any]:
        """
        Open a sealed ballot.

        Raises:
            CryptoError: The ciphertext is malformed or was sealed under a
                different key.
        """
        if not ciphertext or not ciphertext.startswith(self.ENCRYPTED_PREFIX):
            raise CryptoError("malformed")

        try:
            raw = base64.b64decode(ciphertext[len(self.ENCRYPTED_PREFIX) :], validate=True)
            nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
            return json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError) as e:
            # binascii.Error and JSONDecodeError are both ValueErrors
            raise CryptoError(type(e).__name__) from e

    def decrypt_ballot(self, ciphertext: str) -> Optional[dict[str, Any]]:
        """
        Open a sealed ballot, or None if it cannot be opened.

        Only used for audits, never for counting.
        """
        try:
            return self.open_ballot(ciphertext)
        except CryptoError as e:
            logger.warning("ballot_decryption_failed", reason=str(e))
            return None

    def verification_token(self, ballot_id: str, verification_hash: str) -> str:
        """
        Issue the voter's private token for an anonymous ballot.

        HMAC-SHA256 over {ballot_id, partial_hash}; unforgeable without
        the secret.
        """
        token_data = {
            "ballot_id": ballot_id,
            "partial_hash": verification_hash[:PARTIAL_HASH_LENGTH],
        }
        return hmac.new(self._hmac_key, _canonical_json(token_data), hashlib.sha256).hexdigest()

    def check_verification_token(self, ballot_id: str, token: str, verification_hash: str) -> bool:
        """Recompute the token for a ballot and compare in constant time."""
        if not token or not ballot_id or not verification_hash:
            return False
        expected = self.verification_token(ballot_id, verification_hash)
        return hmac.compare_digest(expected, token)


def verification_hash(ballot_data: dict[str, Any], salt: str) -> str:
    """
    Deterministic SHA-256 over {poll_id, option_id, salt}.

    Deliberately excludes voter identity and ciphertext.
    """
    verifiable = {
        "poll_id": ballot_data["poll_id"],
        "option_id": ballot_data["option_id"],
        "salt": salt,
    }
    return hashlib.sha256(_canonical_json(verifiable)).hexdigest()


def tokens_match(supplied: Optional[str], stored: Optional[str]) -> bool:
    """Constant-time token comparison tolerant of missing values."""
    if not supplied or not stored:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), stored.encode("utf-8"))


def generate_ballot_id() -> str:
    """Random ballot identifier (UUID4), uncorrelated with submission order."""
    return str(uuid4())


def update_tally(
    tally: dict[str, Any],
    option_id: int,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Return a new tally with one more vote for option_id.

    The option's chain hash becomes sha256("<prev>:<option_id>:<epoch ms>").
    This is advisory integrity metadata, not a signature.
    """
    new_tally = copy.deepcopy(tally) if tally else {}
    key = str(option_id)

    entry = new_tally.get(key) or {"count": 0, "hash": ""}
    moment = now or datetime.now(timezone.utc)
    millis = int(moment.timestamp() * 1000)

    entry["count"] = int(entry.get("count", 0)) + 1
    entry["hash"] = hashlib.sha256(f"{entry.get('hash') or ''}:{key}:{millis}".encode("utf-8")).hexdigest()
    new_tally[key] = entry

    return new_tally


def counts_from_tally(tally: Optional[dict[str, Any]]) -> dict[int, int]:
    """Project a tally to {option_id: count}, dropping chain hashes."""
    if not tally:
        return {}
    return {int(option_id): int(entry.get("count", 0)) for option_id, entry in tally.items()}


@lru_cache()
def get_ballot_crypto() -> BallotCrypto:
    """Get the process-wide BallotCrypto built from settings."""
    from core.config import settings

    return BallotCrypto(settings.VOTE_ENCRYPTION_KEY)
