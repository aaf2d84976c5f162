# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = (  # noqa: RUF022
    'ParsingError',
    'UnknownCommandError',
    'ProofOfWorkError',
    'SignatureError',

    'TransportError',
    'EndOfStreamError',

    'UnknownProtocolVersionError',
)


class ParsingError(ValueError):
    """Raised when data received from the wire violates the protocol format."""


class UnknownCommandError(ParsingError):
    """Raised when an envelope carries a command that has no associated message type."""


class ProofOfWorkError(ParsingError):
    """Raised when a message does not carry sufficient proof of work."""


class SignatureError(ParsingError):
    """Raised when the signature of a signed message does not verify."""


class TransportError(OSError):
    """Raised when reading from the underlying stream fails."""


class EndOfStreamError(TransportError):
    """Raised when the stream ends before the requested data could be read."""


class UnknownProtocolVersionError(LookupError):
    """Raised when a message factory is requested for a protocol version that is not implemented."""
