"""
GhostTerm - Ephemeral identity keys and tunnel encryption.

Created by orpheus497

Every process run generates a fresh X25519 identity key pair. The public
half is the peer identifier carried in tickets; neither half is ever
written anywhere, so an identity dies with the process.

The direct transport uses these keys to build its encrypted tunnel:
- Each side sends its static public key and a fresh ephemeral public key
- Session keys are derived with HKDF-SHA256 from DH(ephemeral, ephemeral)
  and DH(static, static), so only the holder of the expected static key
  can complete the tunnel
- Frames are sealed with ChaCha20-Poly1305 using per-direction counters
  as nonces

All cryptographic operations use the cryptography library.
"""

import secrets
import struct
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import PEER_ID_SIZE, TOPIC_ID_SIZE
from .errors import ConnectError, ErrorCode

KEY_SIZE = 32
NONCE_SIZE = 12


class IdentityKeyPair:
    """
    In-memory X25519 key pair identifying this process to its peers.
    """

    def __init__(self, private_key: Optional[x25519.X25519PrivateKey] = None):
        if private_key is None:
            private_key = x25519.X25519PrivateKey.generate()
        self.private_key = private_key
        self.public_key = self.private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw bytes."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
        )

    @property
    def peer_id(self) -> bytes:
        return self.get_public_key_bytes()

    @property
    def peer_id_hex(self) -> str:
        return self.peer_id.hex()

    @staticmethod
    def from_public_bytes(public_bytes: bytes) -> x25519.X25519PublicKey:
        """Load a public key from raw bytes."""
        if len(public_bytes) != PEER_ID_SIZE:
            raise ValueError(f"public key must be {PEER_ID_SIZE} bytes")
        return x25519.X25519PublicKey.from_public_bytes(public_bytes)


def generate_topic() -> bytes:
    """Generate a random gossip topic identifier."""
    return secrets.token_bytes(TOPIC_ID_SIZE)


def derive_session_keys(
    static_private: x25519.X25519PrivateKey,
    ephemeral_private: x25519.X25519PrivateKey,
    remote_static: x25519.X25519PublicKey,
    remote_ephemeral: x25519.X25519PublicKey,
    initiator: bool,
    topic: bytes,
) -> Tuple[bytes, bytes]:
    """
    Derive the (send, receive) keys for one tunnel.

    Both sides derive the same pair of keys; the initiator sends with the
    first and the responder with the second.
    """
    ephemeral_secret = ephemeral_private.exchange(remote_ephemeral)
    static_secret = static_private.exchange(remote_static)

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE * 2,
        salt=topic,
        info=b"ghostterm-tunnel-v1",
    )
    material = hkdf.derive(ephemeral_secret + static_secret)
    initiator_key, responder_key = material[:KEY_SIZE], material[KEY_SIZE:]

    if initiator:
        return initiator_key, responder_key
    return responder_key, initiator_key


class TunnelCipher:
    """Seals and opens frames for one direction pair of a tunnel."""

    def __init__(self, send_key: bytes, receive_key: bytes):
        self._sealer = ChaCha20Poly1305(send_key)
        self._opener = ChaCha20Poly1305(receive_key)
        self._send_counter = 0
        self._receive_counter = 0

    @staticmethod
    def _nonce(counter: int) -> bytes:
        return b"\x00" * (NONCE_SIZE - 8) + struct.pack("!Q", counter)

    def seal(self, plaintext: bytes) -> bytes:
        nonce = self._nonce(self._send_counter)
        self._send_counter += 1
        return self._sealer.encrypt(nonce, plaintext, None)

    def open(self, ciphertext: bytes) -> bytes:
        """
        Decrypt the next inbound frame.

        Raises:
            ConnectError: If authentication fails; the tunnel is unusable afterwards
        """
        nonce = self._nonce(self._receive_counter)
        try:
            plaintext = self._opener.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise ConnectError(
                ErrorCode.E209_HANDSHAKE_FAILED, "Tunnel authentication failed"
            ) from e
        self._receive_counter += 1
        return plaintext
