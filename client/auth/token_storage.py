"""
Token storage for the Session Auth Client.

This module persists the access/refresh token pair as three independent
entries, either in the system keyring, in an encrypted file, or in memory.
Every backend reports I/O failures as SessionError(STORE_ERROR) and treats
missing or partial data as "no token".
"""

import os
import json
import logging
import tempfile
import threading
from abc import abstractmethod
from pathlib import Path
from typing import Optional, Dict

import keyring
from keyring.errors import PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from shared.exceptions import ErrorKind, SessionError
from shared.interfaces import ITokenStore
from shared.models import AuthToken, TOKEN_FIELDS

logger = logging.getLogger(__name__)


class FieldTokenStore(ITokenStore):
    """
    Base class for stores that keep the token as named string entries.

    Subclasses implement the raw field hooks; this class handles token
    (de)serialisation, error wrapping and write/clear serialisation.
    """

    def __init__(self):
        self._lock = threading.Lock()

    @abstractmethod
    def _read_fields(self) -> Dict[str, Optional[str]]:
        pass

    @abstractmethod
    def _write_fields(self, fields: Dict[str, Optional[str]]) -> None:
        pass

    @abstractmethod
    def _clear_fields(self) -> None:
        pass

    def read(self) -> Optional[AuthToken]:
        try:
            fields = self._read_fields()
        except SessionError:
            raise
        except Exception as e:
            logger.error(f"Failed to read stored token: {e}")
            raise SessionError(ErrorKind.STORE_ERROR, f"Failed to read stored token: {e}", cause=e)

        token = AuthToken.from_fields(fields)
        if token is None and any(fields.get(name) for name in TOKEN_FIELDS):
            logger.warning("Stored token entries are incomplete or invalid, ignoring them")
        return token

    def write(self, token: AuthToken) -> None:
        with self._lock:
            try:
                self._write_fields(token.to_fields())
            except SessionError:
                raise
            except Exception as e:
                logger.error(f"Failed to store token: {e}")
                raise SessionError(ErrorKind.STORE_ERROR, f"Failed to store token: {e}", cause=e)
        logger.info("Token stored")

    def clear(self) -> None:
        with self._lock:
            try:
                self._clear_fields()
            except SessionError:
                raise
            except Exception as e:
                logger.error(f"Failed to clear stored token: {e}")
                raise SessionError(ErrorKind.STORE_ERROR, f"Failed to clear stored token: {e}", cause=e)
        logger.info("Stored token cleared")


class MemoryTokenStore(FieldTokenStore):
    """In-process token store, used in tests and when persistence is off."""

    def __init__(self, fields: Optional[Dict[str, Optional[str]]] = None):
        super().__init__()
        self.fields: Dict[str, str] = {k: v for k, v in (fields or {}).items() if v is not None}

    def _read_fields(self) -> Dict[str, Optional[str]]:
        return dict(self.fields)

    def _write_fields(self, fields: Dict[str, Optional[str]]) -> None:
        self.fields = {k: v for k, v in fields.items() if v is not None}

    def _clear_fields(self) -> None:
        self.fields = {}


class KeyringTokenStore(FieldTokenStore):
    """
    Token store backed by the system keyring.

    Each entry is a separate keyring password under ``service_name``,
    keyed by the entry name.
    """

    def __init__(self, service_name: str = "session-auth-client"):
        super().__init__()
        self.service_name = service_name
        logger.info(f"Keyring token storage initialized (service: {service_name})")

    def _read_fields(self) -> Dict[str, Optional[str]]:
        return {name: keyring.get_password(self.service_name, name) for name in TOKEN_FIELDS}

    def _write_fields(self, fields: Dict[str, Optional[str]]) -> None:
        try:
            for name in TOKEN_FIELDS:
                value = fields.get(name)
                if value is None:
                    self._delete_entry(name)
                else:
                    keyring.set_password(self.service_name, name, value)
        except Exception:
            # Entries are written one by one; never leave a mixed old/new pair
            self._discard_entries()
            raise

    def _discard_entries(self) -> None:
        for name in TOKEN_FIELDS:
            try:
                self._delete_entry(name)
            except Exception as e:
                logger.error(f"Failed to remove keyring entry {name} after a failed write: {e}")

    def _clear_fields(self) -> None:
        for name in TOKEN_FIELDS:
            self._delete_entry(name)

    def _delete_entry(self, name: str) -> None:
        try:
            keyring.delete_password(self.service_name, name)
        except PasswordDeleteError:
            # Entry was not there
            pass


class EncryptedFileTokenStore(FieldTokenStore):
    """
    Token store backed by a Fernet-encrypted JSON file.

    The encryption key is kept next to the token file with a ``.key``
    suffix. Both files are created with mode 0600.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.storage_path = Path(path).expanduser()
        self.key_path = self.storage_path.with_name(self.storage_path.name + '.key')
        logger.info(f"Encrypted file token storage initialized at {self.storage_path}")

    def _load_key(self, create: bool) -> Optional[bytes]:
        """Load the encryption key, creating it on first write."""
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        if not create:
            return None

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        # Created 0600 from the start; the key is never readable by others
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key)
            f.flush()
            os.fsync(f.fileno())
        logger.debug(f"Created token encryption key at {self.key_path}")
        return key

    def _read_fields(self) -> Dict[str, Optional[str]]:
        if not self.storage_path.exists():
            return {}

        key = self._load_key(create=False)
        if key is None:
            logger.warning(f"Token file {self.storage_path} has no encryption key, ignoring it")
            return {}

        encrypted_data = self.storage_path.read_bytes()
        try:
            decrypted_data = Fernet(key).decrypt(encrypted_data)
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Failed to decrypt token file {self.storage_path}: {type(e).__name__}")
            return {}

        try:
            data = json.loads(decrypted_data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Token file {self.storage_path} is not valid JSON: {e}")
            return {}

        if not isinstance(data, dict):
            return {}
        return {name: data.get(name) for name in TOKEN_FIELDS}

    def _write_fields(self, fields: Dict[str, Optional[str]]) -> None:
        key = self._load_key(create=True)
        payload = json.dumps({k: v for k, v in fields.items() if v is not None})
        encrypted_data = Fernet(key).encrypt(payload.encode('utf-8'))

        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.storage_path.parent, prefix=f".{self.storage_path.name}.", suffix='.tmp'
        )
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(encrypted_data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.storage_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def _clear_fields(self) -> None:
        try:
            self.storage_path.unlink()
        except FileNotFoundError:
            pass


def default_storage_path() -> Path:
    """Get the default encrypted token file location (XDG config directory)."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'session-auth'
    else:
        config_dir = Path.home() / '.config' / 'session-auth'
    return config_dir / 'tokens.enc'


def keyring_available(service_name: str) -> bool:
    """Check whether the system keyring works by round-tripping a test entry."""
    test_key = f"{service_name}_test"
    try:
        keyring.set_password(service_name, test_key, "test")
        result = keyring.get_password(service_name, test_key)
        keyring.delete_password(service_name, test_key)
        return result == "test"
    except Exception as e:
        logger.debug(f"Keyring not available: {e}")
        return False


def create_token_store(config) -> ITokenStore:
    """
    Create the token store selected by configuration.

    Args:
        config: ClientConfiguration providing storage settings

    Returns:
        Token store for the configured backend
    """
    backend = config.get_storage_backend()
    service_name = config.get_service_name()
    storage_path = config.get_storage_path()
    path = Path(storage_path) if storage_path else default_storage_path()

    if backend == 'memory':
        return MemoryTokenStore()
    if backend == 'keyring':
        return KeyringTokenStore(service_name)
    if backend == 'file':
        return EncryptedFileTokenStore(path)
    if backend == 'auto':
        if keyring_available(service_name):
            return KeyringTokenStore(service_name)
        logger.info("System keyring unavailable, using encrypted file storage")
        return EncryptedFileTokenStore(path)

    raise ValueError(f"Unknown token storage backend: {backend}")
