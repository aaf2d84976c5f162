# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Digest and signature primitives used by the protocol.

The checksum of an envelope payload is the first 4 bytes of its SHA-512
digest. Objects are identified in inventories by the first 32 bytes of the
double SHA-512 digest of their wire representation, and addresses carry
the RIPEMD-160 digest of the SHA-512 digest of the public signing key
followed by the public encryption key.

Public keys travel on the wire as the 64 byte concatenation of the x and
y coordinates of a point on the secp256k1 curve. Signatures are DER
encoded ECDSA signatures over a SHA-1 digest of the signed data.
"""

import hashlib
from typing import Protocol, runtime_checkable

from Crypto.Hash import RIPEMD160
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

__all__ = (  # noqa: RUF022
    'sha512',
    'double_sha512',
    'checksum',
    'inventory_hash',
    'key_digest',

    'public_key_from_bytes',
    'public_key_to_bytes',
    'public_key_from_coordinates',
    'sign',

    'SignatureVerifier',
    'ECDSAVerifier',
)


CURVE = ec.SECP256K1()


def sha512(*data: bytes) -> bytes:
    digest = hashlib.sha512()
    for item in data:
        digest.update(item)
    return digest.digest()


def double_sha512(data: bytes) -> bytes:
    return sha512(sha512(data))


def checksum(payload: bytes) -> bytes:
    """Return the checksum that protects an envelope payload"""
    return sha512(payload)[:4]


def inventory_hash(data: bytes) -> bytes:
    """Return the inventory hash of an object given its wire representation"""
    return double_sha512(data)[:32]


def key_digest(signing_key: bytes, encryption_key: bytes) -> bytes:
    """Return the ripe digest that identifies the owner of the given public keys"""
    return RIPEMD160.new(sha512(signing_key, encryption_key)).digest()


def public_key_from_bytes(data: bytes) -> ec.EllipticCurvePublicKey:
    if len(data) != 64:  # noqa: PLR2004
        raise ValueError(f'A public key must have 64 bytes, got {len(data)}')
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, b'\x04' + data)


def public_key_to_bytes(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)[1:]


def public_key_from_coordinates(x: int, y: int) -> ec.EllipticCurvePublicKey:
    return ec.EllipticCurvePublicNumbers(x, y, CURVE).public_key()


def sign(data: bytes, private_key: ec.EllipticCurvePrivateKey) -> bytes:
    return private_key.sign(data, ec.ECDSA(hashes.SHA1()))  # noqa: S303


@runtime_checkable
class SignatureVerifier(Protocol):
    def verify(self, data: bytes, signature: bytes, public_key: bytes) -> bool: ...


class ECDSAVerifier:
    """Verify ECDSA signatures made with secp256k1 keys"""

    def __init__(self, algorithm: hashes.HashAlgorithm | None = None) -> None:
        self.algorithm = algorithm if algorithm is not None else hashes.SHA1()  # noqa: S303

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.algorithm.name})'

    def verify(self, data: bytes, signature: bytes, public_key: bytes) -> bool:
        try:
            public_key_from_bytes(public_key).verify(signature, data, ec.ECDSA(self.algorithm))
        except (InvalidSignature, ValueError):
            return False
        return True
