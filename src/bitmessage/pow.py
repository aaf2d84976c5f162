# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from typing import Protocol, Self, runtime_checkable

from .configuration import Options
from .crypto import sha512

__all__ = 'ProofOfWork', 'NonceTrialsProofOfWork'  # noqa: RUF022


log = logging.getLogger(__name__)


@runtime_checkable
class ProofOfWork(Protocol):
    def check(self, data: bytes, nonce: bytes) -> bool: ...

    def solve(self, data: bytes) -> bytes: ...


class NonceTrialsProofOfWork:
    """
    The nonce trials proof of work.

    The trial value of an 8 byte nonce for some data is the big endian
    integer formed by the first 8 bytes of sha512(sha512(nonce + sha512(data))).
    The nonce is valid if its trial value does not exceed the target, which
    is inversely proportional to the length of the data:

        target = 2**64 // ((len(data) + payload_length_extra_bytes + 8) * nonce_trials_per_byte)
    """

    def __init__(self, *, nonce_trials_per_byte: int = 320, payload_length_extra_bytes: int = 14000) -> None:
        if nonce_trials_per_byte <= 0:
            raise ValueError(f'The number of nonce trials per byte must be positive: {nonce_trials_per_byte!r}')
        if payload_length_extra_bytes < 0:
            raise ValueError(f'The number of payload length extra bytes cannot be negative: {payload_length_extra_bytes!r}')
        self.nonce_trials_per_byte = nonce_trials_per_byte
        self.payload_length_extra_bytes = payload_length_extra_bytes

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(nonce_trials_per_byte={self.nonce_trials_per_byte!r}, payload_length_extra_bytes={self.payload_length_extra_bytes!r})'

    @classmethod
    def from_options(cls, options: Options) -> Self:
        return cls(
            nonce_trials_per_byte=options.get_int('pow.averageNonceTrialsPerByte'),
            payload_length_extra_bytes=options.get_int('pow.payloadLengthExtraBytes'),
        )

    def target(self, length: int) -> int:
        return 2**64 // ((length + self.payload_length_extra_bytes + 8) * self.nonce_trials_per_byte)

    @staticmethod
    def trial_value(nonce: bytes, initial_hash: bytes) -> int:
        return int.from_bytes(sha512(sha512(nonce, initial_hash))[:8], byteorder='big')

    def check(self, data: bytes, nonce: bytes) -> bool:
        if len(nonce) != 8:  # noqa: PLR2004
            return False
        return self.trial_value(nonce, sha512(data)) <= self.target(len(data))

    def solve(self, data: bytes) -> bytes:
        target = self.target(len(data))
        initial_hash = sha512(data)
        log.debug('Solving proof of work for %d bytes with target %d', len(data), target)
        for trial in range(2**64):
            nonce = trial.to_bytes(8, byteorder='big')
            if self.trial_value(nonce, initial_hash) <= target:
                log.debug('Found proof of work nonce after %d trials', trial + 1)
                return nonce
        raise ValueError('The nonce space was exhausted without finding a valid proof of work')  # pragma: no cover
