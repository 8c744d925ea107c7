"""
Key store for backup encryption recipients.

Resolves recipient identifiers to public keys (RSA or X25519, PEM encoded)
and loads private keys for restores. Key material is never generated or
fetched implicitly during a backup run.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, x25519

from strongbox.backup.errors import EncryptionError

MIN_RSA_KEY_SIZE = 2048
KEY_FILE_SUFFIXES = ('.pub', '.pem')


def key_fingerprint(public_key) -> str:
    """
    Stable identifier for a public key.

    Args:
        public_key: RSA or X25519 public key

    Returns:
        First 32 hex characters of the SHA-256 of the DER SubjectPublicKeyInfo
    """
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:32]


@dataclass
class RecipientKey:
    key_id: str
    public_key: object

    @property
    def fingerprint(self) -> str:
        return key_fingerprint(self.public_key)


def _check_supported(public_key, source: str):
    if isinstance(public_key, rsa.RSAPublicKey):
        if public_key.key_size < MIN_RSA_KEY_SIZE:
            raise EncryptionError(
                f"RSA key too small ({public_key.key_size} bits) in {source}; "
                f"at least {MIN_RSA_KEY_SIZE} required"
            )
        return
    if isinstance(public_key, x25519.X25519PublicKey):
        return
    raise EncryptionError(f"Unsupported key type in {source}: {type(public_key).__name__}")


class KeyStore:
    """Resolves recipient identifiers to public keys."""

    def __init__(self, keys: Optional[Dict[str, str]] = None, key_dir: Optional[str] = None):
        """
        Initialize the key store.

        Args:
            keys: Mapping of recipient id to a PEM file path or inline PEM text
            key_dir: Directory searched for <recipient id>.pub, then <recipient id>.pem
        """
        self.keys = dict(keys or {})
        self.key_dir = Path(key_dir).expanduser() if key_dir else None

    def _load_pem(self, key_id: str) -> Tuple[bytes, str]:
        value = self.keys.get(key_id)
        if value:
            if value.lstrip().startswith('-----BEGIN'):
                return value.encode(), f"inline key '{key_id}'"
            path = Path(value).expanduser()
            if not path.is_file():
                raise EncryptionError(f"Key file for recipient '{key_id}' not found: {value}")
            return path.read_bytes(), str(path)

        if self.key_dir is not None:
            for suffix in KEY_FILE_SUFFIXES:
                path = self.key_dir / f"{key_id}{suffix}"
                if path.is_file():
                    return path.read_bytes(), str(path)

        raise EncryptionError(f"Unknown recipient key: {key_id}")

    def resolve(self, recipient_ids) -> List[RecipientKey]:
        """
        Resolve recipient identifiers to public keys.

        Args:
            recipient_ids: Iterable of recipient identifiers

        Returns:
            RecipientKey list, sorted by identifier

        Raises:
            EncryptionError: If any recipient is unknown or its key is unusable
        """
        resolved = []
        for key_id in sorted(recipient_ids):
            pem, source = self._load_pem(key_id)
            try:
                public_key = serialization.load_pem_public_key(pem)
            except ValueError as e:
                raise EncryptionError(f"Invalid public key for recipient '{key_id}' ({source}): {e}")
            _check_supported(public_key, source)
            resolved.append(RecipientKey(key_id=key_id, public_key=public_key))
        return resolved


def load_private_key(path: str, password: Optional[str] = None):
    """
    Load a PEM private key for decryption.

    Raises:
        EncryptionError: If the file is missing or not a supported private key
    """
    key_path = Path(path).expanduser()
    if not key_path.is_file():
        raise EncryptionError(f"Private key not found: {path}")
    try:
        private_key = serialization.load_pem_private_key(
            key_path.read_bytes(),
            password=password.encode() if password else None,
        )
    except (ValueError, TypeError) as e:
        raise EncryptionError(f"Cannot load private key {path}: {e}")

    if not isinstance(private_key, (rsa.RSAPrivateKey, x25519.X25519PrivateKey)):
        raise EncryptionError(f"Unsupported private key type: {type(private_key).__name__}")
    return private_key


def generate_key_pair(kind: str = 'x25519'):
    """
    Generate a new key pair.

    Returns:
        Tuple of (private PEM bytes, public PEM bytes)
    """
    if kind == 'x25519':
        private_key = x25519.X25519PrivateKey.generate()
    elif kind == 'rsa':
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=3072)
    else:
        raise ValueError(f"Invalid key type: {kind}. Valid options: ['x25519', 'rsa']")

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem
