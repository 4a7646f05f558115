"""
k3snode/secrets/ssh_keys.py

Turns raw private key material into a usable SSH signing identity.

Supported input:
  - Legacy PEM blocks (`RSA PRIVATE KEY`, `EC PRIVATE KEY`, `DSA PRIVATE KEY`),
    optionally encrypted with a password (`Proc-Type: 4,ENCRYPTED`).
  - Plain PKCS8 (`PRIVATE KEY` / `ENCRYPTED PRIVATE KEY`) and OpenSSH
    (`OPENSSH PRIVATE KEY`) keys.

The resulting key must be RSA, EC, DSA or Ed25519. Failures raise CredentialError
with a descriptive message; a wrong password never yields a signer.
"""

from __future__ import annotations

import re
from typing import Literal, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, padding, rsa
from pydantic import BaseModel, ConfigDict

KeyType = Literal["rsa", "ecdsa", "dsa", "ed25519"]
SigningKey = Union[
    rsa.RSAPrivateKey,
    ec.EllipticCurvePrivateKey,
    dsa.DSAPrivateKey,
    ed25519.Ed25519PrivateKey,
]

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----\r?\n(.*?)-----END \1-----", re.DOTALL
)

# Legacy PEM encryption only exists for these block types.
ENCRYPTED_BLOCK_TYPES = {
    "RSA PRIVATE KEY": rsa.RSAPrivateKey,
    "EC PRIVATE KEY": ec.EllipticCurvePrivateKey,
    "DSA PRIVATE KEY": dsa.DSAPrivateKey,
}

NO_PASSWORD_ERROR = (
    "decrypting PEM block failed: key is encrypted but no password was given"
)


class CredentialError(ValueError):
    """Raised when private key material cannot be turned into a signer."""


class SSHIdentity(BaseModel):
    """
    A parsed private key able to sign on behalf of an SSH user.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    key: SigningKey

    @property
    def key_type(self) -> KeyType:
        if isinstance(self.key, rsa.RSAPrivateKey):
            return "rsa"
        if isinstance(self.key, ec.EllipticCurvePrivateKey):
            return "ecdsa"
        if isinstance(self.key, dsa.DSAPrivateKey):
            return "dsa"
        return "ed25519"

    def _ec_hash(self) -> hashes.HashAlgorithm:
        assert isinstance(self.key, ec.EllipticCurvePrivateKey)
        size = self.key.curve.key_size
        if size <= 256:
            return hashes.SHA256()
        if size <= 384:
            return hashes.SHA384()
        return hashes.SHA512()

    def sign(self, data: bytes) -> bytes:
        """Sign `data` with the algorithm matching the key type."""
        if isinstance(self.key, rsa.RSAPrivateKey):
            return self.key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        if isinstance(self.key, ec.EllipticCurvePrivateKey):
            return self.key.sign(data, ec.ECDSA(self._ec_hash()))
        if isinstance(self.key, dsa.DSAPrivateKey):
            return self.key.sign(data, hashes.SHA256())
        return self.key.sign(data)

    def verify(self, signature: bytes, data: bytes) -> bool:
        """Check a signature produced by sign() against this key's public half."""
        public = self.key.public_key()
        try:
            if isinstance(public, rsa.RSAPublicKey):
                public.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
            elif isinstance(public, ec.EllipticCurvePublicKey):
                public.verify(signature, data, ec.ECDSA(self._ec_hash()))
            elif isinstance(public, dsa.DSAPublicKey):
                public.verify(signature, data, hashes.SHA256())
            else:
                public.verify(signature, data)
        except InvalidSignature:
            return False
        return True

    def public_openssh(self) -> str:
        """The public key in `authorized_keys` format."""
        return (
            self.key.public_key()
            .public_bytes(
                serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
            )
            .decode("ascii")
        )

    def private_bytes(self) -> bytes:
        """
        Unencrypted serialisation for the `ssh` binary: OpenSSH format for
        Ed25519 (which has no legacy PEM form), traditional PEM otherwise.
        """
        fmt = (
            serialization.PrivateFormat.OpenSSH
            if isinstance(self.key, ed25519.Ed25519PrivateKey)
            else serialization.PrivateFormat.TraditionalOpenSSL
        )
        return self.key.private_bytes(
            serialization.Encoding.PEM, fmt, serialization.NoEncryption()
        )


def _as_signing_key(key: object, block_type: str) -> SigningKey:
    if isinstance(
        key,
        (
            rsa.RSAPrivateKey,
            ec.EllipticCurvePrivateKey,
            dsa.DSAPrivateKey,
            ed25519.Ed25519PrivateKey,
        ),
    ):
        return key
    raise CredentialError(
        f"parsing private key failed, unsupported key type {type(key).__name__!r} "
        f"in {block_type!r} block"
    )


def _load_openssh(raw: bytes, password: Optional[bytes]) -> SigningKey:
    try:
        key = serialization.load_ssh_private_key(raw, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        if not password:
            if isinstance(exc, TypeError):
                raise CredentialError(NO_PASSWORD_ERROR) from exc
            raise CredentialError(f"parsing plain private key failed: {exc}") from exc
        try:
            key = serialization.load_ssh_private_key(raw, password=password)
        except (ValueError, TypeError, UnsupportedAlgorithm) as dec_exc:
            raise CredentialError(
                f"decrypting PEM block failed: {dec_exc}"
            ) from dec_exc
    return _as_signing_key(key, "OPENSSH PRIVATE KEY")


def load_identity(
    pem: Union[str, bytes], password: Optional[Union[str, bytes]] = None
) -> SSHIdentity:
    """
    Parse private key material into an SSHIdentity.

    Args:
        pem: The PEM (or OpenSSH) encoded private key.
        password: Decryption password for encrypted keys. Ignored for plain keys.

    Returns:
        SSHIdentity wrapping the parsed key.

    Raises:
        CredentialError: If no PEM block is found, decryption fails, or the key
            type is not supported.
    """
    raw = pem.encode("utf-8") if isinstance(pem, str) else pem
    pwd = password.encode("utf-8") if isinstance(password, str) else password

    match = _PEM_BLOCK.search(raw)
    if match is None:
        raise CredentialError("pem decode failed, no key found")

    block = match.group(0)
    block_type = match.group(1).decode("ascii")
    body = match.group(2)

    if block_type == "OPENSSH PRIVATE KEY":
        return SSHIdentity(key=_load_openssh(block, pwd))

    legacy_encrypted = b"Proc-Type: 4,ENCRYPTED" in body
    if legacy_encrypted or block_type == "ENCRYPTED PRIVATE KEY":
        if legacy_encrypted and block_type not in ENCRYPTED_BLOCK_TYPES:
            raise CredentialError(
                f"parsing private key failed, unsupported key type {block_type!r}"
            )
        if not pwd:
            raise CredentialError(NO_PASSWORD_ERROR)
        try:
            key = serialization.load_pem_private_key(block, password=pwd)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CredentialError(f"decrypting PEM block failed: {exc}") from exc

        expected = ENCRYPTED_BLOCK_TYPES.get(block_type)
        if expected is not None and not isinstance(key, expected):
            raise CredentialError(
                f"parsing private key failed, {block_type!r} block holds "
                f"{type(key).__name__!r}"
            )
        return SSHIdentity(key=_as_signing_key(key, block_type))

    try:
        key = serialization.load_pem_private_key(block, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CredentialError(f"parsing plain private key failed: {exc}") from exc
    return SSHIdentity(key=_as_signing_key(key, block_type))
