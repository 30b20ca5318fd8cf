"""Secrets at rest and signed tokens.

:class:`CredentialVault` seals tenant connection secrets with AES-256-GCM.
The persisted format is ``salt:iv:authTag:ciphertext``, each part lowercase
hex.  A fresh random salt and IV are drawn for every call, so equal
plaintexts never produce equal sealed values.  The salt feeds an HKDF step
that derives the per-message key from the process-wide master key, which
means every component of the sealed value is covered by the integrity
check: flipping any bit anywhere makes :meth:`CredentialVault.decrypt`
raise :class:`~tenantry_api.errors.DecryptionError`.

:class:`TokenManager` issues and validates HS256 JWTs for verified
sessions and for tenant-scoped access (the Auth Bridge).
"""

from __future__ import annotations

import logging
import os
import re
import time
import uuid
from enum import Enum
from typing import Any

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, Field, SecretStr

from tenantry_api.errors import DecryptionError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Credential Vault
# ---------------------------------------------------------------------------

_KEY_LENGTH = 32
_SALT_LENGTH = 32
_IV_LENGTH = 16
_TAG_LENGTH = 16

# scrypt parameters for deriving the master key from the configured secret.
_SCRYPT_SALT = b"salt"
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

_HKDF_INFO = b"tenantry-vault-v1"

_HEX_RE = re.compile(r"^[0-9a-f]*$")


class CredentialVault:
    """Authenticated symmetric encryption for secrets at rest.

    The master key is derived from *secret* once, in the constructor, and
    kept for the lifetime of the instance.  Neither the secret nor the
    derived key ever appears in a log line, exception message, or ``repr``.

    Parameters
    ----------
    secret:
        Long-lived vault secret (``API_CREDENTIAL_ENCRYPTION_KEY``).
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Credential vault secret must not be empty")
        kdf = Scrypt(salt=_SCRYPT_SALT, length=_KEY_LENGTH, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
        self._master_key = kdf.derive(secret.encode("utf-8"))

    def __repr__(self) -> str:
        return "CredentialVault(<redacted>)"

    def _message_key(self, salt: bytes) -> AESGCM:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=_KEY_LENGTH, salt=salt, info=_HKDF_INFO)
        return AESGCM(hkdf.derive(self._master_key))

    def encrypt(self, plaintext: str) -> str:
        """Seal *plaintext* and return ``salt:iv:authTag:ciphertext`` in hex."""
        salt = os.urandom(_SALT_LENGTH)
        iv = os.urandom(_IV_LENGTH)
        sealed = self._message_key(salt).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return ":".join((salt.hex(), iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, sealed: str) -> str:
        """Open a sealed value produced by :meth:`encrypt`.

        Raises
        ------
        DecryptionError
            If the value is malformed or fails authentication.  No partial
            plaintext is ever returned.
        """
        parts = sealed.split(":") if isinstance(sealed, str) else []
        if len(parts) != 4 or not all(_HEX_RE.match(part) for part in parts):
            raise DecryptionError()
        salt_hex, iv_hex, tag_hex, ciphertext_hex = parts
        if (
            len(salt_hex) != _SALT_LENGTH * 2
            or len(iv_hex) != _IV_LENGTH * 2
            or len(tag_hex) != _TAG_LENGTH * 2
            or len(ciphertext_hex) % 2
        ):
            raise DecryptionError()

        salt = bytes.fromhex(salt_hex)
        iv = bytes.fromhex(iv_hex)
        payload = bytes.fromhex(ciphertext_hex) + bytes.fromhex(tag_hex)
        try:
            plaintext = self._message_key(salt).decrypt(iv, payload, None)
        except InvalidTag:
            raise DecryptionError() from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError() from None


# ---------------------------------------------------------------------------
# Signed tokens
# ---------------------------------------------------------------------------


class TokenKind(str, Enum):
    """Token audiences.  A token of one kind is never accepted as another."""

    SESSION = "session"
    TENANT = "tenant"

    @property
    def audience(self) -> str:
        return f"{_ISSUER}:{self.value}"


_ISSUER = "tenantry"
_REQUIRED_CLAIMS = ["aud", "exp", "iat", "iss", "jti", "sub"]


class TokenConfig(BaseModel):
    """Signing configuration for :class:`TokenManager`."""

    secret: SecretStr
    algorithm: str = "HS256"
    session_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    tenant_ttl_seconds: int = Field(default=15 * 60, gt=0)


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    email: str
    kind: TokenKind
    tenant_id: str | None = None
    tenant_slug: str | None = None
    role: str | None = None
    iss: str = _ISSUER
    iat: float
    exp: float
    jti: str


class TokenManager:
    """Issue and validate JWTs for sessions and tenant-scoped access.

    Both kinds are HS256 JWTs signed with the same secret and told apart
    by their ``aud`` claim (``tenantry:session`` or ``tenantry:tenant``),
    so any JWT library holding the secret can verify a tenant token
    without calling back into the control plane.
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._key = config.secret.get_secret_value()

    def generate_token(
        self,
        kind: TokenKind,
        *,
        sub: str,
        email: str,
        tenant_id: str | None = None,
        tenant_slug: str | None = None,
        role: str | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        """Sign a new token of *kind* for the given identity."""
        if ttl_seconds is None:
            ttl_seconds = (
                self._config.session_ttl_seconds if kind == TokenKind.SESSION else self._config.tenant_ttl_seconds
            )
        now = int(time.time())
        claims: dict[str, Any] = {
            "sub": sub,
            "email": email,
            "tenant_id": tenant_id,
            "tenant_slug": tenant_slug,
            "role": role,
            "aud": kind.audience,
            "iss": _ISSUER,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(claims, self._key, algorithm=self._config.algorithm)

    def validate_token(self, token: str, kind: TokenKind) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, of the wrong kind, badly signed,
            or expired.
        """
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[self._config.algorithm],
                audience=kind.audience,
                issuer=_ISSUER,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise PermissionError("Token has expired") from None
        except jwt.InvalidAudienceError:
            raise PermissionError("Token kind mismatch") from None
        except jwt.InvalidSignatureError:
            raise PermissionError("Token signature verification failed") from None
        except jwt.InvalidTokenError as exc:
            raise PermissionError(f"Invalid token: {exc}") from None

        try:
            return TokenClaims.model_validate({**payload, "kind": kind})
        except ValueError:
            raise PermissionError("Malformed token payload") from None
