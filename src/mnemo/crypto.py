"""
mnemo Crypto -- encryption at rest for archive snapshots.

Archive entries carry a frozen JSON copy of the removed record. With
encryption on (the default; ``MNEMO_ENCRYPT=0`` turns it off) that copy is
sealed with Fernet before it reaches SQLite and tagged with an ``ENC:``
prefix, so older plaintext snapshots keep reading back unchanged.

The key lives next to the database at ``$MNEMO_HOME/.key`` and is generated
on first use with mode 0600. Deleting it makes sealed snapshots unreadable.
"""

import base64
import logging
import os
import secrets
import stat
import threading
from pathlib import Path
from typing import Dict, Optional

from mnemo.config import mnemo_home

logger = logging.getLogger("mnemo.crypto")

SEALED_PREFIX = "ENC:"
_OFF_VALUES = ("0", "false", "no")

_ciphers: Dict[Path, object] = {}
_ciphers_lock = threading.Lock()


def is_enabled() -> bool:
    """True unless MNEMO_ENCRYPT is set to 0/false/no."""
    return os.environ.get("MNEMO_ENCRYPT", "").strip().lower() not in _OFF_VALUES


def key_path(home: Optional[Path] = None) -> Path:
    return Path(home or mnemo_home()) / ".key"


def load_key(home: Optional[Path] = None) -> bytes:
    """Return the urlsafe-base64 Fernet key under ``home``, generating it once."""
    path = key_path(home)
    try:
        stored = path.read_bytes().strip()
    except FileNotFoundError:
        stored = None
    if stored is not None:
        # Raw 32-byte secrets predate the encoded format.
        return base64.urlsafe_b64encode(stored) if len(stored) == 32 else stored

    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(key)
    logger.info("Generated archive key %s", path)
    return key


def _cipher(home: Optional[Path] = None):
    from cryptography.fernet import Fernet

    path = key_path(home)
    with _ciphers_lock:
        cipher = _ciphers.get(path)
        if cipher is None:
            cipher = _ciphers[path] = Fernet(load_key(path.parent))
        return cipher


def reset_crypto_state() -> None:
    """Forget cached ciphers (key files may have changed on disk)."""
    with _ciphers_lock:
        _ciphers.clear()


def seal(plaintext: str, home: Optional[Path] = None) -> str:
    """Encrypt with the key under ``home`` regardless of MNEMO_ENCRYPT."""
    token = _cipher(home).encrypt(plaintext.encode("utf-8"))
    return SEALED_PREFIX + token.decode("ascii")


def unseal(data: str, home: Optional[Path] = None) -> str:
    """Open an ``ENC:`` token; anything else is returned untouched.

    Raises ValueError when the token does not open with the key under ``home``.
    """
    if not data.startswith(SEALED_PREFIX):
        return data
    from cryptography.fernet import InvalidToken

    try:
        cipher = _cipher(home)
        return cipher.decrypt(data[len(SEALED_PREFIX):].encode("ascii")).decode("utf-8")
    except OSError as e:
        raise ValueError(f"archive key unavailable: {e}") from e
    except InvalidToken as e:
        raise ValueError("snapshot does not decrypt with the current key") from e


def secure_connect(db_path, **kwargs):
    """sqlite3.connect() on a file that is readable by its owner only."""
    import sqlite3

    path = Path(db_path)
    path.touch(mode=0o600, exist_ok=True)
    if path.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        path.chmod(0o600)
    return sqlite3.connect(str(path), **kwargs)
