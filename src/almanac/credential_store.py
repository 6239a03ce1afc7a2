"""Encrypted credential vault with an in-memory read cache.

Values are opaque bytes, encrypted with AES-256-GCM before they reach a
durable :class:`SecretBackend`.  The vault key name is bound into every
ciphertext as associated data, so a blob copied under another key fails to
decrypt instead of silently yielding someone else's token.

Backends:

- :class:`PostgresSecretBackend` stores ciphertext in the ``almanac_secrets``
  table through an asyncpg pool.
- :class:`FileSecretBackend` stores one ``0600`` file per key in a directory.
- :class:`MemorySecretBackend` keeps ciphertext in a dict (tests).

Cache rules: a read populates the cache; a write evicts only after the
backend write succeeded; a delete evicts first.  Every cached entry carries
the backend's version stamp for its key (file inode and mtime, row
``updated_at`` and ``xmin``) and is served only while the stamp still
matches, so writes made by another process are never hidden behind the
cache.

Usage::

    vault = CredentialVault(FileSecretBackend(path), key=resolve_vault_key(key_file))
    await vault.put_credential(credential)
    credential = await vault.get_credential("me@example.com")

Raw values are never logged.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import secrets
from collections.abc import AsyncIterator, Hashable, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from almanac.errors import VaultError
from almanac.models import Credential

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

CREDENTIAL_KEY_PREFIX = "token."
MASTER_KEY_ENV = "ALMANAC_MASTER_KEY"

_TABLE = "almanac_secrets"
_NONCE_BYTES = 12
_KEY_BYTES = 32
_KDF_ITERATIONS = 200_000
_HKDF_SALT_INFO = b"almanac-vault-salt-v1"

_SECRETS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    secret_key   TEXT PRIMARY KEY,
    secret_value BYTEA NOT NULL,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def credential_key(account_id: str) -> str:
    return f"{CREDENTIAL_KEY_PREFIX}{account_id}"


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def _derive_salt(master_password: str) -> bytes:
    """Derive a deterministic salt from the master password using HKDF."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_HKDF_SALT_INFO,
    )
    return hkdf.derive(master_password.encode())


def derive_vault_key(master_password: str) -> bytes:
    """Derive the 256-bit vault key from a master password (HKDF salt + PBKDF2)."""
    if not master_password:
        raise VaultError("master password must be a non-empty string")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES,
        salt=_derive_salt(master_password),
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(master_password.encode())


def load_or_create_key_file(path: Path) -> bytes:
    """Return the raw key stored at *path*, generating one on first use."""
    path = Path(path)
    if path.exists():
        try:
            key = base64.urlsafe_b64decode(path.read_bytes().strip())
        except ValueError as exc:
            raise VaultError(f"Vault key file {path} is not valid base64") from exc
        if len(key) != _KEY_BYTES:
            raise VaultError(f"Vault key file {path} must hold a {_KEY_BYTES}-byte key")
        return key

    key = AESGCM.generate_key(bit_length=_KEY_BYTES * 8)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(base64.urlsafe_b64encode(key))
    logger.info("Generated new vault key file at %s", path)
    return key


def resolve_vault_key(key_file: Path, *, env: dict[str, str] | None = None) -> bytes:
    """Master password from ``ALMANAC_MASTER_KEY`` wins; otherwise use *key_file*."""
    environ = os.environ if env is None else env
    master_password = environ.get(MASTER_KEY_ENV)
    if master_password:
        return derive_vault_key(master_password)
    return load_or_create_key_file(key_file)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class SecretBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def version(self, key: str) -> Hashable | None:
        """Cheap stamp that changes on every write; ``None`` when absent."""
        ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> bool: ...


class MemorySecretBackend:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def version(self, key: str) -> Hashable | None:
        # Every write carries a fresh nonce, so the ciphertext identifies it.
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    async def delete(self, key: str) -> bool:
        return self.data.pop(key, None) is not None


class FileSecretBackend:
    """One file per key under *directory*; file names are base64url of the key."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        encoded = base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")
        return self.directory / f"{encoded}.bin"

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None

    async def version(self, key: str) -> Hashable | None:
        try:
            st = await asyncio.to_thread(self._path_for(key).stat)
        except FileNotFoundError:
            return None
        # Writes replace the file, so the inode changes even within one mtime tick.
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    async def set(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._write, self._path_for(key), bytes(value))

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        return True

    def _write(self, path: Path, value: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(value)
        os.replace(tmp_path, path)


class PostgresSecretBackend:
    """Ciphertext rows in the ``almanac_secrets`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with _acquire_conn(self.pool) as conn:
            await conn.execute(_SECRETS_TABLE_DDL)

    async def get(self, key: str) -> bytes | None:
        async with _acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT secret_value FROM {_TABLE} WHERE secret_key = $1",
                key,
            )
        if row is None:
            return None
        return bytes(row["secret_value"])

    async def version(self, key: str) -> Hashable | None:
        async with _acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT updated_at, xmin::text AS xmin FROM {_TABLE} WHERE secret_key = $1",
                key,
            )
        if row is None:
            return None
        return (row["updated_at"], row["xmin"])

    async def set(self, key: str, value: bytes) -> None:
        async with _acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (secret_key, secret_value)
                VALUES ($1, $2)
                ON CONFLICT (secret_key) DO UPDATE SET
                    secret_value = EXCLUDED.secret_value,
                    updated_at   = now()
                """,
                key,
                value,
            )

    async def delete(self, key: str) -> bool:
        async with _acquire_conn(self.pool) as conn:
            result = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE secret_key = $1",
                key,
            )
        # asyncpg returns a string like "DELETE 1" or "DELETE 0"
        return result.split()[-1] != "0" if result else False

    def __repr__(self) -> str:
        return f"PostgresSecretBackend(pool={self.pool!r})"


@asynccontextmanager
async def _acquire_conn(pool: asyncpg.Pool) -> AsyncIterator[Any]:
    """Acquire a DB connection, including AsyncMock-friendly test doubles."""
    acquired = pool.acquire()
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    if hasattr(acquired, "__await__"):
        acquired = await acquired
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    yield acquired


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------


class CredentialVault:
    """Encrypted key->bytes store with a version-checked read cache.

    Parameters
    ----------
    backend:
        Durable storage for ciphertext.
    key:
        32-byte AES-256-GCM key, see :func:`resolve_vault_key`.
    """

    def __init__(self, backend: SecretBackend, *, key: bytes) -> None:
        if len(key) != _KEY_BYTES:
            raise VaultError(f"vault key must be {_KEY_BYTES} bytes")
        self._backend = backend
        self._aead = AESGCM(key)
        self._cache: dict[str, tuple[Hashable, bytes]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Raw bytes API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            version = await self._backend.version(key)
            if version is None:
                self._cache.pop(key, None)
                return None
            cached = self._cache.get(key)
            if cached is not None and cached[0] == version:
                return cached[1]
            blob = await self._backend.get(key)
            if blob is None:
                self._cache.pop(key, None)
                return None
            value = self._decrypt(key, blob)
            self._cache[key] = (version, value)
            return value

    async def set(self, key: str, value: bytes) -> None:
        if not key:
            raise ValueError("key must be a non-empty string")
        blob = self._encrypt(key, value)
        async with self._lock:
            await self._backend.set(key, blob)
            self._cache.pop(key, None)
        logger.debug("Vault entry written: key=%r", key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._cache.pop(key, None)
            deleted = await self._backend.delete(key)
        if deleted:
            logger.info("Vault entry deleted: key=%r", key)
        return deleted

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def preload(self, keys: Iterable[str]) -> None:
        """Warm the cache; unreadable entries are logged and left uncached."""
        for key in keys:
            try:
                await self.get(key)
            except VaultError as exc:
                logger.warning("Could not preload vault entry %r: %s", key, exc)

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    async def get_credential(self, account_id: str) -> Credential | None:
        raw = await self.get(credential_key(account_id))
        if raw is None:
            return None
        try:
            return Credential.from_bytes(raw)
        except ValidationError as exc:
            raise VaultError(f"Stored credential for {account_id!r} is malformed") from exc

    async def put_credential(self, credential: Credential) -> None:
        await self.set(credential_key(credential.account_id), credential.to_bytes())

    async def delete_credential(self, account_id: str) -> bool:
        return await self.delete(credential_key(account_id))

    # ------------------------------------------------------------------
    # Crypto
    # ------------------------------------------------------------------

    def _encrypt(self, key: str, plaintext: bytes) -> bytes:
        nonce = secrets.token_bytes(_NONCE_BYTES)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), key.encode("utf-8"))

    def _decrypt(self, key: str, blob: bytes) -> bytes:
        if len(blob) <= _NONCE_BYTES:
            raise VaultError(f"Vault entry {key!r} is truncated")
        nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
        try:
            return self._aead.decrypt(nonce, ciphertext, key.encode("utf-8"))
        except InvalidTag as exc:
            raise VaultError(f"Vault entry {key!r} could not be decrypted") from exc

    def __repr__(self) -> str:
        return f"CredentialVault(backend={self._backend!r}, cached={len(self._cache)})"
