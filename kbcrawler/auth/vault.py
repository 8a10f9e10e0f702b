"""
Credential Vault
================
Encrypted, domain-keyed credential storage for every tenant.

Responsibilities:
    1. Encrypt credential payloads with AES-256-GCM (fresh IV per write)
    2. Look credentials up by domain, falling back through parent domains
       down to the registrable domain
    3. Track verification outcomes and retire credentials that keep failing
    4. Optionally persist ciphertext records to a JSON state file

Security:
    - Plaintext only leaves the vault through ``decrypt()`` / ``resolve()``.
    - Ciphertext and plaintext never appear in logs or ``repr()`` output.
    - The tenant, domain key and auth type are bound into the GCM associated
      data, so a record copied under another key fails to decrypt.
    - Decryption fails closed: a corrupted record raises ``DecryptionError``,
      it is never returned as empty credentials.

Usage::

    vault = CredentialVault(master_key)
    vault.upsert("acme", "support.sap.com", AuthType.FORM,
                 {"username": "...", "password": "..."})
    cred, payload = vault.resolve("acme", "launchpad.support.sap.com")
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CredentialNotFound, DecryptionError, VaultConfigurationError
from ..models import AuthType, Credential, EncryptedPayload, utcnow
from ..utils import domain_fallback_chain, normalize_domain_key

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_KEY_BYTES = 32
_IV_BYTES = 12
_TAG_BYTES = 16
_DEFAULT_FAILURE_THRESHOLD = 3
_STATE_VERSION = 1


def generate_master_key() -> str:
    """Return a new random master key as URL-safe base64 text."""
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def parse_master_key(raw: Union[str, bytes, None]) -> bytes:
    """Decode a master key supplied as raw bytes, base64 or hex.

    Raises:
        VaultConfigurationError: if the key is absent or not 256 bits.
    """
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        raise VaultConfigurationError(
            "Credential master key is not configured. Set KB_CREDENTIAL_MASTER_KEY "
            "(generate one with: python -m kbcrawler gen-key)."
        )
    if isinstance(raw, bytes) and len(raw) == _KEY_BYTES:
        return raw

    text = raw.decode("ascii", "ignore") if isinstance(raw, bytes) else raw
    text = text.strip()
    if len(text) == _KEY_BYTES * 2:
        try:
            return bytes.fromhex(text)
        except ValueError:
            pass
    for decoder in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            key = decoder(text + "=" * (-len(text) % 4))
        except (binascii.Error, ValueError):
            continue
        if len(key) == _KEY_BYTES:
            return key
    raise VaultConfigurationError("Credential master key must decode to exactly 32 bytes (AES-256).")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def _associated_data(tenant_id: str, domain_key: str, auth_type: AuthType) -> bytes:
    return f"{tenant_id}\x1f{domain_key}\x1f{auth_type.value}".encode("utf-8")


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class CredentialVault:
    """Thread-safe encrypted credential store.

    Each record has its own lock so concurrent ``record_outcome`` calls on
    the same credential are applied one at a time and none are lost.
    """

    def __init__(
        self,
        master_key: Union[str, bytes, None],
        *,
        failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD,
        state_path: Optional[str] = None,
    ):
        """
        Args:
            master_key:        Deployment secret (32 bytes, base64 or hex).
            failure_threshold: Consecutive failures before a credential is stale.
            state_path:        Optional JSON file for persisting ciphertext records.

        Raises:
            VaultConfigurationError: if the master key is missing or malformed.
        """
        self._aead = AESGCM(parse_master_key(master_key))
        self.failure_threshold = failure_threshold
        self.state_path = state_path

        self._records: Dict[str, Credential] = {}
        self._index: Dict[Tuple[str, str, AuthType], str] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.RLock()

        if state_path and Path(state_path).exists():
            self._load_state()

    # ── Write path ────────────────────────────────────────────────

    def upsert(
        self,
        tenant_id: str,
        domain_key: str,
        auth_type: AuthType,
        plaintext_payload: dict,
        *,
        name: str = "",
    ) -> Credential:
        """Create or replace the credential for (tenant, domain, auth type).

        Re-entering a credential always clears its failure count, which is
        the only way a stale credential becomes usable again.
        """
        auth_type = AuthType(auth_type)
        key = normalize_domain_key(domain_key)
        if not key:
            raise ValueError(f"Invalid credential domain: {domain_key!r}")

        encrypted = self._encrypt(tenant_id, key, auth_type, plaintext_payload)
        with self._table_lock:
            existing_id = self._index.get((tenant_id, key, auth_type))
            if existing_id is not None:
                with self._record_locks[existing_id]:
                    cred = self._records[existing_id]
                    cred.encrypted_payload = encrypted
                    cred.updated_at = utcnow()
                    cred.consecutive_failures = 0
                    cred.failure_threshold = self.failure_threshold
                    if name:
                        cred.name = name
                logger.info(f"[VAULT] Updated {auth_type.value} credential for {key} (tenant {tenant_id})")
            else:
                cred = Credential(
                    tenant_id=tenant_id,
                    domain_key=key,
                    auth_type=auth_type,
                    encrypted_payload=encrypted,
                    name=name or key,
                    failure_threshold=self.failure_threshold,
                )
                self._records[cred.id] = cred
                self._index[cred.key] = cred.id
                self._record_locks[cred.id] = threading.Lock()
                logger.info(f"[VAULT] Stored {auth_type.value} credential for {key} (tenant {tenant_id})")
            snapshot = dataclasses.replace(cred)
            self._save_state()
        return snapshot

    def delete(self, credential_id: str) -> bool:
        with self._table_lock:
            cred = self._records.pop(credential_id, None)
            if cred is None:
                return False
            self._index.pop(cred.key, None)
            self._record_locks.pop(credential_id, None)
            self._save_state()
        logger.info(f"[VAULT] Deleted credential for {cred.domain_key} (tenant {cred.tenant_id})")
        return True

    # ── Read path ─────────────────────────────────────────────────

    def lookup(
        self,
        tenant_id: str,
        domain_key: str,
        auth_type: Optional[AuthType] = None,
    ) -> Credential:
        """Find the usable credential for a domain.

        Resolution order:
            1. Exact domain key
            2. Each parent domain, down to the registrable domain
               (``a.b.support.sap.com`` → ``support.sap.com`` → ``sap.com``)

        Stale credentials are skipped.  When several auth types match at
        the same level, the most recently verified one wins.

        Raises:
            CredentialNotFound: if no usable credential exists.
        """
        wanted = AuthType(auth_type) if auth_type else None
        with self._table_lock:
            for candidate_key in domain_fallback_chain(domain_key):
                matches = [
                    c for c in self._records.values()
                    if c.tenant_id == tenant_id
                    and c.domain_key == candidate_key
                    and (wanted is None or c.auth_type is wanted)
                    and not c.is_stale
                ]
                if matches:
                    matches.sort(
                        key=lambda c: (c.last_verified_at is not None,
                                       c.last_verified_at or c.updated_at,
                                       c.updated_at),
                        reverse=True,
                    )
                    return dataclasses.replace(matches[0])

        raise CredentialNotFound(
            f"No usable credential for {domain_key} (tenant {tenant_id})"
        )

    def get(self, credential_id: str) -> Optional[Credential]:
        with self._table_lock:
            cred = self._records.get(credential_id)
            return dataclasses.replace(cred) if cred else None

    def list(self, tenant_id: str) -> List[Credential]:
        with self._table_lock:
            return [
                dataclasses.replace(c) for c in self._records.values()
                if c.tenant_id == tenant_id
            ]

    def decrypt(self, credential: Credential) -> dict:
        """Return the plaintext payload of *credential*.

        Raises:
            DecryptionError: on any authentication, decoding or parsing failure.
        """
        enc = credential.encrypted_payload
        aad = _associated_data(credential.tenant_id, credential.domain_key, credential.auth_type)
        try:
            blob = _unb64(enc.ciphertext) + _unb64(enc.tag)
            plaintext = self._aead.decrypt(_unb64(enc.iv), blob, aad)
            payload = json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.error(
                f"[VAULT] Credential {credential.id} for {credential.domain_key} failed to decrypt "
                f"({type(exc).__name__})"
            )
            raise DecryptionError(
                f"Stored credential for {credential.domain_key} could not be decrypted",
                domain=credential.domain_key,
                auth_type=credential.auth_type.value,
            ) from None
        if not isinstance(payload, dict):
            raise DecryptionError(
                f"Stored credential for {credential.domain_key} is malformed",
                domain=credential.domain_key,
                auth_type=credential.auth_type.value,
            )
        return payload

    def resolve(
        self,
        tenant_id: str,
        domain_key: str,
        auth_type: Optional[AuthType] = None,
    ) -> Tuple[Credential, dict]:
        """``lookup`` + ``decrypt`` + ``mark_used`` in one call."""
        cred = self.lookup(tenant_id, domain_key, auth_type)
        payload = self.decrypt(cred)
        self.mark_used(cred.id)
        return cred, payload

    # ── Outcome tracking ──────────────────────────────────────────

    def record_outcome(self, credential_id: str, success: bool) -> Credential:
        """Apply one verification outcome atomically.

        Failure increments ``consecutive_failures``; at the threshold the
        credential turns stale and drops out of ``lookup``.  Success resets
        the counter and stamps ``last_verified_at``.
        """
        with self._table_lock:
            lock = self._record_locks.get(credential_id)
        if lock is None:
            raise CredentialNotFound(f"Unknown credential id {credential_id}")

        with lock:
            cred = self._records[credential_id]
            if success:
                cred.consecutive_failures = 0
                cred.last_verified_at = utcnow()
            else:
                cred.consecutive_failures += 1
                if cred.consecutive_failures == cred.failure_threshold:
                    logger.warning(
                        f"[VAULT] Credential for {cred.domain_key} (tenant {cred.tenant_id}) "
                        f"failed {cred.consecutive_failures}x, marked stale until re-entered"
                    )
            snapshot = dataclasses.replace(cred)

        with self._table_lock:
            self._save_state()
        return snapshot

    def mark_used(self, credential_id: str) -> None:
        with self._table_lock:
            lock = self._record_locks.get(credential_id)
        if lock is None:
            return
        with lock:
            self._records[credential_id].last_used_at = utcnow()

    # ── Encryption ────────────────────────────────────────────────

    def _encrypt(
        self, tenant_id: str, domain_key: str, auth_type: AuthType, payload: dict
    ) -> EncryptedPayload:
        iv = os.urandom(_IV_BYTES)
        data = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        sealed = self._aead.encrypt(iv, data, _associated_data(tenant_id, domain_key, auth_type))
        return EncryptedPayload(
            ciphertext=_b64(sealed[:-_TAG_BYTES]),
            iv=_b64(iv),
            tag=_b64(sealed[-_TAG_BYTES:]),
        )

    # ── Persistence ───────────────────────────────────────────────

    def _save_state(self) -> None:
        """Write all records (ciphertext only) to ``state_path``. Caller holds the table lock."""
        if not self.state_path:
            return
        records = []
        for c in self._records.values():
            records.append({
                "id": c.id,
                "tenant_id": c.tenant_id,
                "domain_key": c.domain_key,
                "auth_type": c.auth_type.value,
                "name": c.name,
                "ciphertext": c.encrypted_payload.ciphertext,
                "iv": c.encrypted_payload.iv,
                "tag": c.encrypted_payload.tag,
                "created_at": c.created_at.isoformat(),
                "updated_at": c.updated_at.isoformat(),
                "last_used_at": c.last_used_at.isoformat() if c.last_used_at else None,
                "last_verified_at": c.last_verified_at.isoformat() if c.last_verified_at else None,
                "consecutive_failures": c.consecutive_failures,
            })
        path = Path(self.state_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps({"version": _STATE_VERSION, "credentials": records}, indent=2),
                       encoding="utf-8")
        tmp.replace(path)

    def _load_state(self) -> None:
        path = Path(self.state_path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise VaultConfigurationError(f"Corrupt vault state file {path}: {exc}") from exc

        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        for row in data.get("credentials", []):
            cred = Credential(
                id=row["id"],
                tenant_id=row["tenant_id"],
                domain_key=row["domain_key"],
                auth_type=AuthType(row["auth_type"]),
                name=row.get("name", ""),
                encrypted_payload=EncryptedPayload(row["ciphertext"], row["iv"], row["tag"]),
                created_at=_dt(row["created_at"]),
                updated_at=_dt(row["updated_at"]),
                last_used_at=_dt(row.get("last_used_at")),
                last_verified_at=_dt(row.get("last_verified_at")),
                consecutive_failures=int(row.get("consecutive_failures", 0)),
                failure_threshold=self.failure_threshold,
            )
            self._records[cred.id] = cred
            self._index[cred.key] = cred.id
            self._record_locks[cred.id] = threading.Lock()
        logger.info(f"[VAULT] Loaded {len(self._records)} credentials from {path}")
