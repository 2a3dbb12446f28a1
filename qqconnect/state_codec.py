"""
Protect/unprotect the round-trip state carried in the `state` query parameter.
Fernet (AES-CBC + HMAC-SHA256) so the value is both tamper-evident and opaque to the browser and QQ.
Key loaded from env or file, or generated and persisted; an optional previous key keeps old states valid
across a rotation.
"""
import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from qqconnect.schemas import RoundTripState

logger = logging.getLogger(__name__)


class StateDecodeError(Exception):
    """The state value is malformed, tampered with, signed with an unknown key, or expired."""


class StateCodec(Protocol):
    def encode(self, state: RoundTripState) -> str: ...

    def decode(self, token: str) -> RoundTripState: ...


def load_or_create_state_key(path: str | None) -> bytes:
    """Load a Fernet key from path, or generate one and save it there."""
    if not path:
        path = ".qqconnect_state_key"
    p = Path(path)
    if p.exists():
        try:
            key = p.read_bytes().strip()
            Fernet(key)
            return key
        except (OSError, ValueError) as e:
            logger.warning("Failed to load state key from %s: %s; generating new key", path, e)
    key = Fernet.generate_key()
    try:
        p.write_bytes(key)
        logger.info("Generated and saved state key to %s", path)
    except OSError as e:
        logger.warning("Could not save state key to %s: %s", path, e)
    return key


def _load_previous_key(path: str) -> bytes | None:
    p = Path(path)
    if not p.exists():
        return None
    try:
        key = p.read_bytes().strip()
        Fernet(key)
        return key
    except (OSError, ValueError) as e:
        logger.warning("Failed to load previous state key from %s: %s", path, e)
        return None


def _is_canonical_base64url(token: bytes) -> bool:
    """
    True only if token is exactly what urlsafe_b64encode would produce for its decoded bytes.
    The stdlib decoder skips unknown characters and ignores padding bits, so without this check
    some single-bit edits would decode to the same ciphertext.
    """
    try:
        raw = base64.urlsafe_b64decode(token)
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw) == token


class FernetStateCodec:
    """Default StateCodec. Encodings are randomized (fresh IV per call); decode enforces ttl seconds."""

    def __init__(self, key: bytes | str, previous_keys: list[bytes | str] | None = None, ttl: int | None = 600):
        fernets = [Fernet(key)] + [Fernet(k) for k in (previous_keys or [])]
        self._fernet = MultiFernet(fernets)
        self._ttl = ttl

    def encode(self, state: RoundTripState) -> str:
        payload = json.dumps(
            {"r": state.redirect_target, "x": state.extra},
            separators=(",", ":"),
        )
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def decode(self, token: str) -> RoundTripState:
        if not token:
            raise StateDecodeError("state is empty")
        try:
            token_bytes = token.encode("ascii")
        except UnicodeEncodeError:
            raise StateDecodeError("state is not ASCII") from None
        if not _is_canonical_base64url(token_bytes):
            raise StateDecodeError("state is not canonical base64url")
        try:
            plaintext = self._fernet.decrypt(token_bytes, ttl=self._ttl)
        except InvalidToken:
            # Fernet does not distinguish a bad tag from an expired timestamp
            raise StateDecodeError("state failed authentication or has expired") from None
        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise StateDecodeError("state payload is not JSON") from None
        return _state_from_payload(payload)


def _state_from_payload(payload: object) -> RoundTripState:
    if not isinstance(payload, dict):
        raise StateDecodeError("state payload is not an object")
    redirect_target = payload.get("r")
    extra = payload.get("x", {})
    if not isinstance(redirect_target, str):
        raise StateDecodeError("state payload has no redirect target")
    if not isinstance(extra, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in extra.items()):
        raise StateDecodeError("state payload extra is not a string mapping")
    return RoundTripState(redirect_target=redirect_target, extra=dict(extra))


def build_state_codec(
    key: str | None,
    key_path: str | None,
    previous_key_path: str | None,
    ttl: int,
) -> FernetStateCodec:
    """Process-wide codec from config: explicit key, else key file; previous key file is optional."""
    current = key.encode("ascii") if key else load_or_create_state_key(key_path)
    previous = []
    if previous_key_path:
        prev = _load_previous_key(previous_key_path)
        if prev:
            previous.append(prev)
            logger.info("Loaded previous state key for rotation")
    return FernetStateCodec(current, previous_keys=previous, ttl=ttl)
