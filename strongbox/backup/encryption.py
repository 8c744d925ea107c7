"""
Streaming public-key encryption for backup archives.

A random 256-bit data key encrypts the stream with AES-256-GCM in fixed-size
segments. The data key is wrapped once per recipient so that any single
recipient private key can decrypt:

- RSA recipients: RSA-OAEP with SHA-256
- X25519 recipients: ephemeral X25519 exchange, HKDF-SHA256, AES-GCM

Stream layout:

    header    b'SBXE', version, segment size, nonce prefix, recipient table
    segment*  flag (B) + ciphertext length (I) + ciphertext

Segment nonces are nonce prefix (7 bytes) + counter (4 bytes) + final flag
(1 byte), and every segment authenticates the SHA-256 of the header. A stream
cut short, reordered, or with a modified recipient table fails to decrypt.
"""

import os
import struct
import hashlib
from typing import BinaryIO, Iterable, Iterator, List, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from strongbox.utils.keys import RecipientKey, key_fingerprint

from .errors import EncryptionError
from .streams import as_reader, read_exact

MAGIC = b'SBXE'
VERSION = 1

SEGMENT_SIZE = 64 * 1024
DATA_KEY_SIZE = 32
NONCE_PREFIX_SIZE = 7
MAX_SEGMENTS = 2 ** 32

WRAP_RSA_OAEP = 1
WRAP_X25519 = 2

PREFIX = struct.Struct('>4sBI7sH')
RECIPIENT = struct.Struct('>16sBBH')
SEGMENT = struct.Struct('>BI')

FLAG_FINAL = 0x01

HKDF_INFO = b'strongbox-x25519-wrap-v1'


def _oaep():
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _x25519_wrap_key(shared_secret: bytes, ephemeral_raw: bytes, recipient_raw: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ephemeral_raw + recipient_raw,
        info=HKDF_INFO,
    ).derive(shared_secret)


def _raw_x25519(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _wrap(data_key: bytes, recipient: RecipientKey):
    public_key = recipient.public_key
    if isinstance(public_key, rsa.RSAPublicKey):
        return WRAP_RSA_OAEP, public_key.encrypt(data_key, _oaep())

    if isinstance(public_key, x25519.X25519PublicKey):
        ephemeral = x25519.X25519PrivateKey.generate()
        ephemeral_raw = _raw_x25519(ephemeral.public_key())
        wrap_key = _x25519_wrap_key(
            ephemeral.exchange(public_key), ephemeral_raw, _raw_x25519(public_key)
        )
        nonce = os.urandom(12)
        return WRAP_X25519, ephemeral_raw + nonce + AESGCM(wrap_key).encrypt(nonce, data_key, None)

    raise EncryptionError(f"Unsupported key type for recipient '{recipient.key_id}'")


def _unwrap(wrap_type: int, wrapped: bytes, private_key) -> bytes:
    try:
        if wrap_type == WRAP_RSA_OAEP and isinstance(private_key, rsa.RSAPrivateKey):
            return private_key.decrypt(wrapped, _oaep())

        if wrap_type == WRAP_X25519 and isinstance(private_key, x25519.X25519PrivateKey):
            ephemeral_raw, nonce, sealed = wrapped[:32], wrapped[32:44], wrapped[44:]
            ephemeral = x25519.X25519PublicKey.from_public_bytes(ephemeral_raw)
            wrap_key = _x25519_wrap_key(
                private_key.exchange(ephemeral), ephemeral_raw, _raw_x25519(private_key.public_key())
            )
            return AESGCM(wrap_key).decrypt(nonce, sealed, None)
    except (InvalidTag, ValueError) as e:
        raise EncryptionError(f"Failed to unwrap data key: {e or type(e).__name__}")

    raise EncryptionError("Private key type does not match the recipient entry")


def _nonce(prefix: bytes, counter: int, final: bool) -> bytes:
    return prefix + counter.to_bytes(4, 'big') + (b'\x01' if final else b'\x00')


class StreamEncryptor:
    """Encrypts a byte stream for a fixed set of recipients."""

    def __init__(self, recipients: List[RecipientKey], segment_size: int = SEGMENT_SIZE):
        if not recipients:
            raise EncryptionError("At least one recipient key is required")
        if len(recipients) > 0xFFFF:
            raise EncryptionError("Too many recipients")
        self.recipients = recipients
        self.segment_size = segment_size

    def _header(self, data_key: bytes, nonce_prefix: bytes) -> bytes:
        parts = [PREFIX.pack(MAGIC, VERSION, self.segment_size, nonce_prefix, len(self.recipients))]
        for recipient in self.recipients:
            wrap_type, wrapped = _wrap(data_key, recipient)
            key_id = recipient.key_id.encode('utf-8')[:255]
            parts.append(RECIPIENT.pack(
                bytes.fromhex(recipient.fingerprint), wrap_type, len(key_id), len(wrapped)
            ))
            parts.append(key_id)
            parts.append(wrapped)
        return b''.join(parts)

    def encrypt(self, blocks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Encrypt a stream of blocks.

        Returns:
            Iterator of ciphertext blocks (header first)
        """
        data_key = AESGCM.generate_key(bit_length=DATA_KEY_SIZE * 8)
        nonce_prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = self._header(data_key, nonce_prefix)
        aad = hashlib.sha256(header).digest()
        aead = AESGCM(data_key)

        yield header

        counter = 0
        buffer = bytearray()
        for block in blocks:
            buffer += block
            # Keep at least one byte back so the last segment can be flagged final
            while len(buffer) > self.segment_size:
                yield self._seal(aead, nonce_prefix, counter, bytes(buffer[:self.segment_size]), aad, False)
                del buffer[:self.segment_size]
                counter += 1
                if counter >= MAX_SEGMENTS:
                    raise EncryptionError("Stream too long for a single encryption key")

        yield self._seal(aead, nonce_prefix, counter, bytes(buffer), aad, True)

    @staticmethod
    def _seal(aead, nonce_prefix, counter, plaintext, aad, final) -> bytes:
        ciphertext = aead.encrypt(_nonce(nonce_prefix, counter, final), plaintext, aad)
        return SEGMENT.pack(FLAG_FINAL if final else 0, len(ciphertext)) + ciphertext


def encrypt_stream(blocks: Iterable[bytes], recipients: List[RecipientKey],
                   segment_size: int = SEGMENT_SIZE) -> Iterator[bytes]:
    """Encrypt blocks for the given recipients."""
    return StreamEncryptor(recipients, segment_size).encrypt(blocks)


def read_recipients(reader: BinaryIO):
    """
    Parse the encryption header.

    Returns:
        Tuple of (segment size, nonce prefix, recipient entries, raw header);
        each entry is (fingerprint hex, wrap type, key id, wrapped key)
    """
    raw_prefix = read_exact(reader, PREFIX.size)
    if len(raw_prefix) < PREFIX.size:
        raise EncryptionError("Encrypted stream truncated in header")
    magic, version, segment_size, nonce_prefix, count = PREFIX.unpack(raw_prefix)
    if magic != MAGIC:
        raise EncryptionError("Not a Strongbox encrypted stream (bad magic)")
    if version != VERSION:
        raise EncryptionError(f"Unsupported encryption format version: {version}")

    header = [raw_prefix]
    entries = []
    for _ in range(count):
        raw = read_exact(reader, RECIPIENT.size)
        if len(raw) < RECIPIENT.size:
            raise EncryptionError("Encrypted stream truncated in recipient table")
        fingerprint, wrap_type, id_len, wrapped_len = RECIPIENT.unpack(raw)
        key_id = read_exact(reader, id_len)
        wrapped = read_exact(reader, wrapped_len)
        if len(key_id) < id_len or len(wrapped) < wrapped_len:
            raise EncryptionError("Encrypted stream truncated in recipient table")
        header.extend([raw, key_id, wrapped])
        entries.append((fingerprint.hex(), wrap_type, key_id.decode('utf-8', 'replace'), wrapped))

    return segment_size, nonce_prefix, entries, b''.join(header)


def decrypt_stream(stream: Union[BinaryIO, Iterable[bytes], bytes], private_key) -> Iterator[bytes]:
    """
    Decrypt a stream produced by encrypt_stream().

    Args:
        stream: Ciphertext as a file object, bytes or block iterator
        private_key: Private key of any one recipient

    Raises:
        EncryptionError: If no entry matches the key, or the stream was
            tampered with or truncated
    """
    reader = as_reader(stream)
    segment_size, nonce_prefix, entries, header = read_recipients(reader)

    fingerprint = key_fingerprint(private_key.public_key())
    matching = [entry for entry in entries if entry[0] == fingerprint]
    if not matching:
        raise EncryptionError("Private key is not a recipient of this backup")
    _, wrap_type, _, wrapped = matching[0]

    aead = AESGCM(_unwrap(wrap_type, wrapped, private_key))
    aad = hashlib.sha256(header).digest()
    max_ciphertext = segment_size + 16

    counter = 0
    while True:
        raw = read_exact(reader, SEGMENT.size)
        if len(raw) < SEGMENT.size:
            raise EncryptionError("Encrypted stream is truncated")
        flags, length = SEGMENT.unpack(raw)
        if length > max_ciphertext:
            raise EncryptionError("Corrupt encrypted stream: segment too large")
        ciphertext = read_exact(reader, length)
        if len(ciphertext) < length:
            raise EncryptionError("Encrypted stream is truncated")

        final = bool(flags & FLAG_FINAL)
        try:
            plaintext = aead.decrypt(_nonce(nonce_prefix, counter, final), ciphertext, aad)
        except InvalidTag:
            raise EncryptionError(f"Authentication failed for segment {counter}")

        if plaintext:
            yield plaintext
        if final:
            break
        counter += 1

    if reader.read(1):
        raise EncryptionError("Trailing data after final encrypted segment")
