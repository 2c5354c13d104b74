"""
Application credential loading.

An app credential is a JSON document created ahead of time through the API or
the console. It names the API endpoint and the namespace the credential lives
in, and embeds the client certificate, its key and the trust roots as
base64-encoded PEM blocks.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import json
import logging
import os
import ssl
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class CredentialError(RuntimeError):
    """Raised when the credential file cannot be read or parsed."""


class AppCredential(BaseModel):
    """Parsed, immutable credential bundle."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    api_url: str = Field(alias="APIURL")
    namespace: str
    name: str | None = Field(default=None)
    id: str | None = Field(default=None, alias="ID")
    certificate: str = Field(description="Client certificate, base64-encoded PEM.")
    certificate_key: str = Field(alias="certificateKey")
    certificate_authority: str = Field(alias="certificateAuthority")

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"APIURL must start with http:// or https://, got {value!r}")
        return value

    @field_validator("namespace")
    @classmethod
    def _absolute_namespace(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("namespace must be an absolute path")
        return value

    def certificate_pem(self) -> bytes:
        return _decode_pem(self.certificate, "certificate")

    def key_pem(self) -> bytes:
        return _decode_pem(self.certificate_key, "certificateKey")

    def ca_pem(self) -> bytes:
        return _decode_pem(self.certificate_authority, "certificateAuthority")


def _decode_pem(value: str, field: str) -> bytes:
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialError(f"credential field {field} is not valid base64") from exc
    if b"-----BEGIN" not in data:
        raise CredentialError(f"credential field {field} does not contain a PEM block")
    return data


def parse_credentials(data: bytes | str) -> AppCredential:
    """Parse raw credential bytes into an ``AppCredential``."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as exc:
        raise CredentialError(f"unable to parse credential: {exc}") from exc
    if not isinstance(raw, dict):
        raise CredentialError("unable to parse credential: expected a JSON object")
    try:
        return AppCredential.model_validate(raw)
    except ValidationError as exc:
        raise CredentialError(f"unable to parse credential: {exc}") from exc


def load_credentials(path: str | Path) -> AppCredential:
    """Read and parse the credential file at ``path``."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise CredentialError(f"unable to read credential file {path}: {exc}") from exc
    credential = parse_credentials(data)
    logger.info(
        "Loaded app credential %s for namespace %s (api=%s)",
        credential.name or credential.id or "<unnamed>",
        credential.namespace,
        credential.api_url,
    )
    return credential


def build_ssl_context(credential: AppCredential) -> ssl.SSLContext:
    """
    Build a client TLS context trusting the credential's CA and presenting its certificate.

    ``ssl`` only loads key material from files, so the PEM blocks are written
    to a private temporary directory that is removed right after loading.
    """
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    try:
        context.load_verify_locations(cadata=credential.ca_pem().decode("ascii"))
    except (ssl.SSLError, UnicodeDecodeError) as exc:
        raise CredentialError(f"invalid certificate authority: {exc}") from exc

    with tempfile.TemporaryDirectory(prefix="scopewatch-") as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_bytes(credential.certificate_pem())
        key_path.write_bytes(credential.key_pem())
        with contextlib.suppress(OSError):
            os.chmod(key_path, 0o600)
        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as exc:
            raise CredentialError(f"invalid client certificate or key: {exc}") from exc
    return context


__all__ = [
    "AppCredential",
    "CredentialError",
    "build_ssl_context",
    "load_credentials",
    "parse_credentials",
]
