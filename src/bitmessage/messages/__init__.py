# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Bitmessage protocol messages.

Peers exchange messages wrapped in envelopes. Each envelope starts with a
header that carries the magic bytes, the command that identifies the type
of the message, the length of the payload and a checksum of the payload,
and continues with the payload which is the wire representation of the
message identified by the command.

Objects that are relayed through the network (getpubkey, pubkey, msg and
broadcast) carry a proof of work which is computed over the time at which
they were created and their payload:

     +-------------------------+
     |   nonce (8 bytes)       |
     +-------------------------+
     |   time (uint32)         |
     +-------------------------+
     |   payload               |
     +-------------------------+

"""

import logging
import struct
from ipaddress import IPv4Address, IPv6Address
from typing import TYPE_CHECKING, ClassVar, Self

from cryptography.hazmat.primitives.asymmetric import ec

from bitmessage.buffer import InputBuffer, SupportsRead
from bitmessage.crypto import checksum, inventory_hash, key_digest, public_key_from_coordinates, sign
from bitmessage.exceptions import ParsingError, ProofOfWorkError, SignatureError
from bitmessage.pow import NonceTrialsProofOfWork, ProofOfWork

from .context import current_factory
from .datamodel import (
    Behavior,
    InitializationVector,
    Int64Adapter,
    InventoryVector,
    IPAddressAdapter,
    List,
    LiteralIntegerAdapter,
    MailEncoding,
    MessageAuthenticationCode,
    NodeServices,
    Nonce,
    PublicKey,
    Ripe,
    UInt16Adapter,
    UInt32Adapter,
    UInt64Adapter,
    VarBytes,
    VariableLengthIntegerList,
    VariableLengthString,
    VarInt,
    VarIntAdapter,
    WireData,
)
from .elements import AnnotatedStructure, Element, FieldDescriptor, ListElement, PrefixedElement, Structure

if TYPE_CHECKING:
    from .factory import MessageFactory

__all__ = (  # noqa: RUF022
    # Base types

    'Message',
    'P2PMessage',
    'POWMessage',
    'SignedMessage',

    # Structures

    'NodeAddress',
    'SimpleNetworkAddress',
    'NetworkAddress',
    'NetworkAddressList',
    'InventoryVectorList',
    'Coordinate',
    'Ciphertext',
    'EncryptedPayload',
    'MailMessage',
    'UnencryptedMsg',

    # Messages

    'Version',
    'Verack',
    'Addr',
    'Inv',
    'GetData',
    'Getpubkey',
    'Pubkey',
    'Msg',
    'Broadcast',

    'Envelope',
)


log = logging.getLogger(__name__)


COMMAND_SIZE = 12
CURVE_SECP256K1 = 714


# Base types

class Message(AnnotatedStructure):
    """The base class for all the structures that are read from and written to the wire"""


class P2PMessage(Message):
    """A message that is sent between peers inside an envelope and is identified by its command"""

    _command_: ClassVar[str] = NotImplemented

    def __init_subclass__(cls, *, command: str = NotImplemented, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if command is not NotImplemented:
            if not command.isascii() or '\0' in command or not 0 < len(command) <= COMMAND_SIZE:
                raise TypeError(f'Invalid command for {cls.__qualname__!r}: {command!r} (must have 1 to {COMMAND_SIZE} ASCII characters other than NUL)')
            cls._command_ = command

    def __new__(cls, **kw: object) -> Self:
        if cls._command_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract message type {cls.__qualname__!r} that does not define its command')
        return super().__new__(cls, **kw)

    @property
    def command(self) -> str:
        return self._command_


# Adapters for the version numbers and identifiers that only have one supported value

class ProtocolVersionAdapter(LiteralIntegerAdapter, value=1, adapter=UInt32Adapter, description='protocol version'):
    pass


class BroadcastVersionAdapter(LiteralIntegerAdapter, value=1, adapter=VarIntAdapter, description='broadcast message version'):
    pass


class MessageVersionAdapter(LiteralIntegerAdapter, value=1, adapter=VarIntAdapter, description='message version'):
    pass


class AddressVersionAdapter(LiteralIntegerAdapter, value=2, adapter=VarIntAdapter, description='address version'):
    pass


class CurveTypeAdapter(LiteralIntegerAdapter, value=CURVE_SECP256K1, adapter=UInt16Adapter, description='curve'):
    pass


# Network addresses

class NodeAddress(Message):
    """
    The base class for node addresses, which are checked both when they are
    built and when they are read from the wire.
    """

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        self._check_address()

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        instance = super().from_wire(buffer)
        try:
            instance._check_address()
        except ValueError as exc:
            raise ParsingError(f'Invalid {cls.__qualname__}: {exc}') from exc
        return instance

    def _check_address(self) -> None:
        if self.port == 0:
            raise ValueError('The port must be in the range 1-65535')
        if not self.services.is_set(NodeServices.NODE_NETWORK):
            raise ValueError(f'A node address must provide the NODE_NETWORK service (got {self.services!r})')


class SimpleNetworkAddress(NodeAddress):
    """The services, IP address and port of a node, as exchanged in the version message"""

    services: Element[NodeServices] = Element(NodeServices, default=NodeServices.NODE_NETWORK)
    ip: Element[IPv4Address | IPv6Address] = Element(IPv4Address | IPv6Address, adapter=IPAddressAdapter)
    port: Element[int] = Element(int, adapter=UInt16Adapter)


class NetworkAddress(NodeAddress):
    """
    A node address as advertised by the addr message.

    Two addresses are the same if they have the same IP address and port,
    regardless of when the node was last seen or of the services it offers.
    """

    time: Element[int] = Element(int, adapter=UInt32Adapter)
    stream: Element[int] = Element(int, adapter=UInt32Adapter)
    services: Element[NodeServices] = Element(NodeServices, default=NodeServices.NODE_NETWORK)
    ip: Element[IPv4Address | IPv6Address] = Element(IPv4Address | IPv6Address, adapter=IPAddressAdapter)
    port: Element[int] = Element(int, adapter=UInt16Adapter)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NetworkAddress):
            return (self.ip, self.port) == (other.ip, other.port)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.ip, self.port))

    def _check_address(self) -> None:
        if self.stream == 0:
            raise ValueError('The stream must not be 0')
        super()._check_address()


class NetworkAddressList(List[NetworkAddress], limit='protocol.maxAddrLength'):
    pass


class InventoryVectorList(List[InventoryVector], limit='protocol.maxInvLength'):
    pass


# Encrypted data

class Coordinate(bytes):
    """A coordinate of an elliptic curve point of up to 32 bytes, prefixed with its length as an unsigned 16-bit integer"""

    _maxsize_: ClassVar[int] = 32

    def __new__(cls, value: bytes, /) -> Self:
        instance = super().__new__(cls, value)
        if not 0 < len(instance) <= cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects must have between 1 and {cls._maxsize_} bytes (got {len(instance)})')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @property
    def value(self) -> int:
        return int.from_bytes(self, byteorder='big')

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        length = UInt16Adapter.from_wire(buffer)
        if not 0 < length <= cls._maxsize_:
            raise ParsingError(f'The coordinate length must be between 1 and {cls._maxsize_}: {length}')
        if len(buffer) < UInt16Adapter._size_ + length:
            raise ParsingError(f'Insufficient data in buffer to extract {cls.__qualname__!r} ({length} bytes)')
        return cls(buffer.get(UInt16Adapter._size_, length))

    def to_wire(self) -> bytes:
        return UInt16Adapter.to_wire(len(self)) + self

    def wire_length(self) -> int:
        return UInt16Adapter._size_ + len(self)


class Ciphertext(bytes):
    """Data encrypted with a block cipher, which occupies all the data it is read from"""

    _block_size_: ClassVar[int] = 16

    def __new__(cls, value: bytes = b'', /) -> Self:
        instance = super().__new__(cls, value)
        if len(instance) % cls._block_size_:
            raise ValueError(f'The length of {cls.__qualname__!r} must be a multiple of {cls._block_size_} (got {len(instance)})')
        return instance

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {len(self)} bytes>'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        if len(buffer) % cls._block_size_:
            raise ParsingError(f'The length of {cls.__qualname__!r} must be a multiple of {cls._block_size_} (got {len(buffer)})')
        return cls(bytes(buffer))

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return len(self)


class EncryptedPayload(Message):
    """
    Data encrypted for the owner of a public key.

    Encrypted payload structure:

        InitializationVector       iv
        uint16                     curve (always 714 for secp256k1)
        uint16                     x_length
        opaque                     x[x_length]
        uint16                     y_length
        opaque                     y[y_length]
        opaque                     ciphertext[16 * k]
        MessageAuthenticationCode  mac

    The ephemeral public key is given by the x and y coordinates and the
    ciphertext extends up to the message authentication code, which takes
    the last 32 bytes of the data.
    """

    iv: Element[InitializationVector] = Element(InitializationVector)
    curve: Element[int] = Element(int, default=CURVE_SECP256K1, adapter=CurveTypeAdapter)
    x: Element[Coordinate] = Element(Coordinate)
    y: Element[Coordinate] = Element(Coordinate)
    ciphertext: Element[Ciphertext] = Element(Ciphertext)
    mac: Element[MessageAuthenticationCode] = Element(MessageAuthenticationCode)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        instance = super(Structure, cls).__new__(cls)
        fields = cls._fields_
        buffer = cls._read_fields(instance, buffer, (fields['iv'], fields['curve'], fields['x'], fields['y']))
        mac_offset = len(buffer) - MessageAuthenticationCode._size_
        if mac_offset < 0:
            raise ParsingError(f'Insufficient data in buffer to extract {cls.__qualname__}.mac')
        cls._read_fields(instance, buffer.subwindow(0, mac_offset), (fields['ciphertext'],))
        cls._read_fields(instance, buffer.subwindow(mac_offset), (fields['mac'],))
        return instance

    def public_key(self) -> ec.EllipticCurvePublicKey:
        """The ephemeral public key that was used to encrypt the data"""
        return public_key_from_coordinates(self.x.value, self.y.value)


# Mail

class MailMessage(Message):
    """
    The content of a message or broadcast.

    The data is interpreted according to the encoding: IGNORE carries data
    that is not meant to be displayed, TRIVIAL carries an UTF-8 encoded body
    and SIMPLE carries an UTF-8 encoded text of the form:

        Subject:<subject>
        Body:<body>
    """

    encoding: Element[MailEncoding] = Element(MailEncoding)
    data: Element[VarBytes] = Element(VarBytes, default=VarBytes())

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        self._check_content()

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        instance = super().from_wire(buffer)
        try:
            instance._check_content()
        except ValueError as exc:
            raise ParsingError(f'Invalid {instance.encoding.name} mail content: {exc}') from exc
        return instance

    @classmethod
    def simple(cls, subject: str, body: str) -> Self:
        if '\nBody:' in subject:
            raise ValueError('The subject cannot contain the body separator')
        return cls(encoding=MailEncoding.SIMPLE, data=f'Subject:{subject}\nBody:{body}'.encode())

    @classmethod
    def trivial(cls, body: str) -> Self:
        return cls(encoding=MailEncoding.TRIVIAL, data=body.encode())

    @classmethod
    def ignore(cls, data: bytes = b'') -> Self:
        return cls(encoding=MailEncoding.IGNORE, data=data)

    @property
    def subject(self) -> str | None:
        if self.encoding is MailEncoding.SIMPLE:
            return self._split_simple()[0]
        return None

    @property
    def body(self) -> str | None:
        match self.encoding:
            case MailEncoding.SIMPLE:
                return self._split_simple()[1]
            case MailEncoding.TRIVIAL:
                return self.data.decode()
            case _:
                return None

    def _split_simple(self) -> tuple[str, str]:
        subject, _, body = self.data.decode().removeprefix('Subject:').partition('\nBody:')
        return subject, body

    def _check_content(self) -> None:
        match self.encoding:
            case MailEncoding.TRIVIAL:
                self.data.decode()
            case MailEncoding.SIMPLE:
                text = self.data.decode()
                if not text.startswith('Subject:') or '\nBody:' not in text:
                    raise ValueError('The content does not have the "Subject:<subject>\\nBody:<body>" format')


# Connection messages

class Version(P2PMessage, command='version'):
    """The first message sent by a node when a connection is established"""

    version: Element[int] = Element(int, default=1, adapter=ProtocolVersionAdapter)
    services: Element[NodeServices] = Element(NodeServices, default=NodeServices.NODE_NETWORK)
    timestamp: Element[int] = Element(int, adapter=Int64Adapter)
    receiver: Element[SimpleNetworkAddress] = Element(SimpleNetworkAddress)
    sender: Element[SimpleNetworkAddress] = Element(SimpleNetworkAddress)
    nonce: Element[int] = Element(int, adapter=UInt64Adapter)
    user_agent: Element[VariableLengthString] = Element(VariableLengthString)
    streams: ListElement[VarInt] = ListElement(VariableLengthIntegerList)


class Verack(P2PMessage, command='verack'):
    """Acknowledges the version message of the remote node"""


class Addr(P2PMessage, command='addr'):
    addresses: ListElement[NetworkAddress] = ListElement(NetworkAddressList)


class Inv(P2PMessage, command='inv'):
    """Advertises the objects known by the sender"""

    inventory: ListElement[InventoryVector] = ListElement(InventoryVectorList)


# The request has the same structure as the advertisement, but with a different command
class GetData(Inv, command='getdata'):
    pass


# Objects (the messages protected by a proof of work)

class NonceAdapter:
    """Adapter for the proof of work nonce, which is None until the proof of work is done"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> Nonce:
        return Nonce.from_wire(buffer)

    @staticmethod
    def to_wire(value: Nonce | None, /) -> bytes:
        if value is None:
            raise ValueError('The proof of work has not been done')
        return value.to_wire()

    @staticmethod
    def wire_length(_: Nonce | None, /) -> int:
        return Nonce._size_

    @staticmethod
    def validate(value: Nonce | bytes | None, /) -> Nonce | None:
        if value is None or isinstance(value, Nonce):
            return value
        return Nonce(value)


class POWMessage(P2PMessage):
    """
    A message that is relayed through the network and that must carry a
    proof of work to be accepted.

    The proof of work is computed over the time followed by the payload and
    it is checked with the proof of work engine of the active message
    factory before the payload is read. Subclasses only define the payload
    fields, which come after the nonce and the time.
    """

    _payload_fields_: ClassVar[dict[str, FieldDescriptor]] = {}

    nonce: Element[Nonce | None] = Element(Nonce | None, default=None, adapter=NonceAdapter)
    time: Element[int] = Element(int, adapter=UInt32Adapter)

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._payload_fields_ = {name: field for name, field in cls._fields_.items() if name not in POWMessage._fields_}

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        instance = super(Structure, cls).__new__(cls)
        payload = cls._read_fields(instance, buffer, POWMessage._fields_.values())
        engine = current_factory().pow
        if engine is not None and not engine.check(buffer.get(Nonce._size_, len(buffer) - Nonce._size_), instance.nonce):
            raise ProofOfWorkError(f'Insufficient proof of work for {cls.__qualname__!r} object')
        instance.payload_from_wire(payload)
        return instance

    def payload_from_wire(self, buffer: InputBuffer) -> InputBuffer:
        """Read the payload fields from buffer and return the window that follows them"""
        return self._read_fields(self, buffer, self._payload_fields_.values())

    def payload_to_wire(self) -> bytes:
        return b''.join(field.to_wire(self) for field in self._payload_fields_.values())

    def pow_data(self) -> bytes:
        """The data covered by the proof of work"""
        return self._fields_['time'].to_wire(self) + self.payload_to_wire()

    def do_pow(self, engine: ProofOfWork | None = None) -> Self:
        if engine is None:
            factory = current_factory()
            engine = factory.pow if factory.pow is not None else NonceTrialsProofOfWork.from_options(factory.options)
        self.nonce = engine.solve(self.pow_data())
        return self

    @property
    def inventory_hash(self) -> bytes:
        return inventory_hash(self.to_wire())

    def inventory_vector(self) -> InventoryVector:
        return InventoryVector(self.inventory_hash)


class Getpubkey(POWMessage, command='getpubkey'):
    """Requests the public keys of the address identified by ripe"""

    address_version: Element[int] = Element(int, adapter=VarIntAdapter)
    stream: Element[int] = Element(int, adapter=VarIntAdapter)
    ripe: Element[Ripe] = Element(Ripe)


class Pubkey(POWMessage, command='pubkey'):
    address_version: Element[int] = Element(int, adapter=VarIntAdapter)
    stream: Element[int] = Element(int, adapter=VarIntAdapter)
    behavior: Element[Behavior] = Element(Behavior)
    signing_key: Element[PublicKey] = Element(PublicKey)
    encryption_key: Element[PublicKey] = Element(PublicKey)

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        if self.stream == 0:
            raise ValueError('The stream must not be 0')

    def payload_from_wire(self, buffer: InputBuffer) -> InputBuffer:
        remaining = super().payload_from_wire(buffer)
        if self.stream == 0:
            raise ParsingError('The stream must not be 0')
        return remaining


class Msg(POWMessage, command='msg'):
    """A person to person message, encrypted for the receiver"""

    stream: Element[int] = Element(int, adapter=VarIntAdapter)
    encrypted: Element[EncryptedPayload] = Element(EncryptedPayload)


class SignedMessage:
    """
    Mixin for the structures signed by their sender.

    The signature is the last field and it covers the wire representation
    of the fields that precede it, starting after the proof of work header.
    The signature is verified when the structure is read from the wire,
    with the signature verifier of the active message factory.
    """

    _unsigned_fields_: ClassVar[frozenset[str]] = frozenset({'nonce', 'time', 'signature'})

    _fields_: ClassVar[dict[str, FieldDescriptor]]

    signing_key: PublicKey
    signature: bytes

    @classmethod
    def _signed_fields(cls) -> list[FieldDescriptor]:
        return [field for name, field in cls._fields_.items() if name not in cls._unsigned_fields_]

    def signed_data(self) -> bytes:
        return b''.join(field.to_wire(self) for field in self._signed_fields())  # type: ignore[arg-type]

    def sign(self, private_key: ec.EllipticCurvePrivateKey) -> Self:
        self.signature = sign(self.signed_data(), private_key)
        return self

    def verify_signature(self, signed_data: bytes | None = None) -> None:
        verifier = current_factory().verifier
        if verifier is None:
            return
        if signed_data is None:
            signed_data = self.signed_data()
        if not verifier.verify(signed_data, self.signature, self.signing_key):
            raise SignatureError('Wrong signature')

    def _read_signed(self, buffer: InputBuffer) -> tuple[InputBuffer, bytes]:
        # Returns the window that follows the signature and the signed bytes, as they were read from the wire
        remaining = Structure._read_fields(self, buffer, self._signed_fields())  # type: ignore[arg-type]
        signed_data = buffer.get(0, len(buffer) - len(remaining))
        remaining = Structure._read_fields(self, remaining, (self._fields_['signature'],))  # type: ignore[arg-type]
        return remaining, signed_data


class Broadcast(SignedMessage, POWMessage, command='broadcast'):
    """A message sent to all the subscribers of an address"""

    broadcast_version: Element[int] = Element(int, default=1, adapter=BroadcastVersionAdapter)
    address_version: Element[int] = Element(int, adapter=VarIntAdapter)
    stream: Element[int] = Element(int, adapter=VarIntAdapter)
    behavior: Element[Behavior] = Element(Behavior)
    signing_key: Element[PublicKey] = Element(PublicKey)
    encryption_key: Element[PublicKey] = Element(PublicKey)
    ripe: Element[Ripe] = Element(Ripe)
    mail: Element[MailMessage] = Element(MailMessage)
    signature: Element[VarBytes] = Element(VarBytes, default=VarBytes())

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        if self.ripe != key_digest(self.signing_key, self.encryption_key):
            raise ValueError('The hash of the public keys is incorrect')

    def payload_from_wire(self, buffer: InputBuffer) -> InputBuffer:
        remaining, signed_data = self._read_signed(buffer)
        if self.ripe != key_digest(self.signing_key, self.encryption_key):
            raise ParsingError('The hash of the public keys is incorrect')
        self.verify_signature(signed_data)
        return remaining


# Envelope

class Envelope:
    """
    The envelope that carries a message between peers.

    Envelope structure:

        opaque     magic[4]  (E9 BE B4 D9)
        opaque     command[12]  (ASCII, padded with NUL bytes)
        uint32     length
        opaque     checksum[4]  (the first 4 bytes of the SHA-512 digest of the payload)
        opaque     payload[length]

    The length and the checksum are only known after the envelope was read
    from or written to the wire.
    """

    MAGIC: ClassVar[bytes] = b'\xe9\xbe\xb4\xd9'

    _header_: ClassVar[struct.Struct] = struct.Struct(f'!4s{COMMAND_SIZE}sI4s')

    def __init__(self, message: P2PMessage) -> None:
        if not isinstance(message, P2PMessage):
            raise TypeError(f'An envelope can only carry a P2PMessage, got {message!r}')
        self.message = message
        self._length: int | None = None
        self._checksum: bytes | None = None

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.message!r})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Envelope):
            return self.message == other.message
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @property
    def command(self) -> str:
        return self.message.command

    @property
    def length(self) -> int | None:
        return self._length

    @property
    def checksum(self) -> bytes | None:
        return self._checksum

    @staticmethod
    def chunk_size(length: int) -> int:
        """The chunk size used to read a payload of the given length from a stream"""
        if length > 1_000_000:  # noqa: PLR2004
            return 1024 * 1024
        if length > 100_000:  # noqa: PLR2004
            return 128 * 1024
        return 1024

    @classmethod
    def from_stream(cls, stream: SupportsRead, *, max_length: int | None = None, factory: 'MessageFactory | None' = None) -> Self:
        """
        Read an envelope from a blocking binary stream.

        Only the header is read from the stream until the header is found to
        be valid, so a payload that is longer than max_length is never read.
        The payload is read in chunks whose size depends on its length.
        """
        if factory is None:
            factory = current_factory()
        if max_length is None:
            max_length = factory.options.get_int('protocol.maxMessageLength')
        try:
            header = InputBuffer.from_stream(stream, max_size=cls._header_.size, chunk_size=cls._header_.size)
            command, length, digest = cls._read_header(header, max_length)
            payload = InputBuffer.from_stream(stream, max_size=length, chunk_size=cls.chunk_size(length))
            return cls._read_payload(command, length, digest, payload, factory)
        except ParsingError as exc:
            log.warning('Rejected envelope: %s', exc)
            raise

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        factory = current_factory()
        header_size = cls._header_.size
        if len(buffer) < header_size:
            raise ParsingError(f'Insufficient data in buffer to extract the {cls.__qualname__} header')
        command, length, digest = cls._read_header(buffer.subwindow(0, header_size), factory.options.get_int('protocol.maxMessageLength'))
        if len(buffer) - header_size < length:
            raise ParsingError(f'Insufficient data in buffer to extract the payload ({length} bytes)')
        return cls._read_payload(command, length, digest, buffer.subwindow(header_size, length), factory)

    @classmethod
    def _read_header(cls, header: InputBuffer, max_length: int) -> tuple[str, int, bytes]:
        magic, raw_command, length, digest = cls._header_.unpack(header.get(0, cls._header_.size))
        if magic != cls.MAGIC:
            raise ParsingError(f'Unknown magic bytes: {magic.hex()}')
        command = cls._decode_command(raw_command)
        if length > max_length:
            raise ParsingError(f'The payload is too long: {length} bytes (maximum is {max_length})')
        return command, length, digest

    @staticmethod
    def _decode_command(data: bytes) -> str:
        command, _, padding = data.partition(b'\0')
        if any(padding):
            raise ParsingError(f'The command has data after the NUL terminator: {data!r}')
        try:
            return command.decode('ascii')
        except UnicodeDecodeError as exc:
            raise ParsingError(f'The command is not ASCII: {data!r}') from exc

    @classmethod
    def _read_payload(cls, command: str, length: int, digest: bytes, payload: InputBuffer, factory: 'MessageFactory') -> Self:
        if checksum(bytes(payload)) != digest:
            raise ParsingError('Wrong digest for payload')
        instance = cls(factory.parse(command, payload))
        instance._length = length
        instance._checksum = digest
        log.debug('Read %r envelope with %d bytes of payload', command, length)
        return instance

    def to_wire(self) -> bytes:
        payload = self.message.to_wire()
        self._length = len(payload)
        self._checksum = checksum(payload)
        log.debug('Wrote %r envelope with %d bytes of payload', self.command, self._length)
        return self._header_.pack(self.MAGIC, self.command.encode('ascii'), self._length, self._checksum) + payload

    def wire_length(self) -> int:
        return self._header_.size + self.message.wire_length()


# The content of an encrypted msg

class UnencryptedMsg(SignedMessage, Message):
    """
    The plaintext of the encrypted payload of a msg.

    The acknowledgment is a complete envelope, which the receiver sends back
    into the network to confirm that the message was received.
    """

    message_version: Element[int] = Element(int, default=1, adapter=MessageVersionAdapter)
    address_version: Element[int] = Element(int, default=2, adapter=AddressVersionAdapter)
    stream: Element[int] = Element(int, adapter=VarIntAdapter)
    behavior: Element[Behavior] = Element(Behavior)
    signing_key: Element[PublicKey] = Element(PublicKey)
    encryption_key: Element[PublicKey] = Element(PublicKey)
    destination_ripe: Element[Ripe] = Element(Ripe)
    mail: Element[MailMessage] = Element(MailMessage)
    acknowledgment: PrefixedElement[Envelope] = PrefixedElement(Envelope)
    signature: Element[VarBytes] = Element(VarBytes, default=VarBytes())

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        instance = super(Structure, cls).__new__(cls)
        remaining, signed_data = instance._read_signed(InputBuffer.of(buffer))
        if len(remaining):
            raise ParsingError(f'Unexpected data after the {cls.__qualname__} signature ({len(remaining)} bytes)')
        instance.verify_signature(signed_data)
        return instance
