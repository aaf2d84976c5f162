# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
from collections.abc import Buffer, Iterable
from ipaddress import IPv4Address, IPv6Address, ip_address
from types import GenericAlias, NotImplementedType
from typing import ClassVar, Protocol, Self, SupportsBytes, SupportsIndex, TypeVar, overload, runtime_checkable

from bitmessage.buffer import InputBuffer
from bitmessage.exceptions import ParsingError

from .context import current_factory

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'DataWireProtocol',
    'DataWireAdapter',

    # Adapters

    'IntegerAdapter',
    'UnsignedIntegerAdapter',

    'Int64Adapter',
    'UInt16Adapter',
    'UInt32Adapter',
    'UInt64Adapter',

    'VarIntAdapter',
    'IPAddressAdapter',
    'LiteralIntegerAdapter',

    # Abstract types

    'VarIntEnum',
    'Flag',

    'FixedSize',
    'VarBytes',
    'VarString',

    'List',

    # Concrete types

    'VarInt',

    'Behavior',
    'MailEncoding',
    'NodeServices',

    'Nonce',
    'Ripe',
    'PublicKey',
    'InitializationVector',
    'MessageAuthenticationCode',
    'InventoryVector',

    'VariableLengthString',
    'VariableLengthIntegerList',

    # Helpers

    'varint_length',
    'encode_varint',
)


type WireData = bytes | bytearray | memoryview | InputBuffer


# Protocols

@runtime_checkable
class DataWireProtocol(Protocol):
    """The wire protocol for Bitmessage data elements"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self: ...

    def to_wire(self) -> bytes: ...

    def wire_length(self) -> int: ...


@runtime_checkable
class DataWireAdapter[T](Protocol):
    """Wire protocol adapter for a Bitmessage data element of type T"""

    _abstract_: ClassVar[bool] = True

    @staticmethod
    def from_wire(buffer: WireData) -> T: ...

    @staticmethod
    def to_wire(value: T, /) -> bytes: ...

    @staticmethod
    def wire_length(value: T, /) -> int: ...

    @staticmethod
    def validate(value: T, /) -> T: ...


# Helpers

VARINT_MAX = 2**64 - 1

# The smallest value that needs each of the multi-byte encodings (prefix: (size, minimum)).
_varint_forms = {0xfd: (2, 0xfd), 0xfe: (4, 0x1_0000), 0xff: (8, 0x1_0000_0000)}


def varint_length(value: int) -> int:
    """Return the number of bytes needed to encode value as a variable length integer"""
    if value < 0xfd:  # noqa: PLR2004
        return 1
    if value <= 0xffff:  # noqa: PLR2004
        return 3
    if value <= 0xffff_ffff:  # noqa: PLR2004
        return 5
    return 9


def encode_varint(value: int) -> bytes:
    if value < 0 or value > VARINT_MAX:
        raise ValueError(f'Value is out of range for a variable length integer: {value!r}')
    match varint_length(value):
        case 1:
            return value.to_bytes(1)
        case 3:
            return b'\xfd' + value.to_bytes(2, byteorder='big')
        case 5:
            return b'\xfe' + value.to_bytes(4, byteorder='big')
        case _:
            return b'\xff' + value.to_bytes(8, byteorder='big')


def decode_varint(buffer: InputBuffer, name: str = 'variable length integer') -> int:
    if len(buffer) < 1:
        raise ParsingError(f'Insufficient data in buffer to extract {name}')
    prefix = buffer.get(0)
    if prefix < 0xfd:  # noqa: PLR2004
        return prefix
    size, minimum = _varint_forms[prefix]
    if len(buffer) < 1 + size:
        raise ParsingError(f'Insufficient data in buffer to extract {name}')
    value = int.from_bytes(buffer.get(1, size), byteorder='big')
    if value < minimum:
        raise ParsingError(f'Non-canonical encoding for {name} with value {value} (uses {1 + size} bytes instead of {varint_length(value)})')
    return value


# Adapters

class IntegerAdapter:
    _abstract_: ClassVar[bool] = True
    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented
    _mean_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
            cls._mean_ = 1 << (bits - 1)  # The midpoint of the values representable with bits
            cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        buffer = InputBuffer.of(buffer)
        if len(buffer) < cls._size_:
            raise ParsingError(f'Insufficient data in buffer to extract a {cls._bits_}-bit integer')
        return int.from_bytes(buffer.get(0, cls._size_), byteorder='big', signed=True)

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls._size_, byteorder='big', signed=True)

    @classmethod
    def wire_length(cls, _: int, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: int, /) -> int:
        shifted_value = value + cls._mean_
        if shifted_value < 0 or shifted_value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for {cls._bits_}-bits integer: {value!r}')
        return value


class UnsignedIntegerAdapter(IntegerAdapter):
    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        buffer = InputBuffer.of(buffer)
        if len(buffer) < cls._size_:
            raise ParsingError(f'Insufficient data in buffer to extract an unsigned {cls._bits_}-bit integer')
        return int.from_bytes(buffer.get(0, cls._size_), byteorder='big')

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls._size_, byteorder='big')

    @classmethod
    def validate(cls, value: int, /) -> int:
        if value < 0 or value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')
        return value


class Int64Adapter(IntegerAdapter, bits=64):
    pass


class UInt16Adapter(UnsignedIntegerAdapter, bits=16):
    pass


class UInt32Adapter(UnsignedIntegerAdapter, bits=32):
    pass


class UInt64Adapter(UnsignedIntegerAdapter, bits=64):
    pass


class VarIntAdapter:
    """Adapter for an unsigned integer using the variable length encoding"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> int:
        return decode_varint(InputBuffer.of(buffer))

    @staticmethod
    def to_wire(value: int, /) -> bytes:
        return encode_varint(value)

    @staticmethod
    def wire_length(value: int, /) -> int:
        return varint_length(value)

    @staticmethod
    def validate(value: int, /) -> int:
        if value < 0 or value > VARINT_MAX:
            raise ValueError(f'Value is out of range for a variable length integer: {value!r}')
        return value


class IPAddressAdapter:
    """
    Adapter for IP addresses.

    Addresses are sent as 16 bytes. IPv4 addresses are mapped into the IPv6
    address space (::ffff:a.b.c.d) and converted back when read, so mapped
    addresses are always kept as IPv4 addresses. Addresses must not be all
    zeros, unspecified or multicast.
    """

    _abstract_: ClassVar[bool] = False
    _size_: ClassVar[int] = 16

    @classmethod
    def from_wire(cls, buffer: WireData) -> IPv4Address | IPv6Address:
        buffer = InputBuffer.of(buffer)
        if len(buffer) < cls._size_:
            raise ParsingError('Insufficient data in buffer to extract an IP address')
        data = buffer.get(0, cls._size_)
        if not any(data):
            raise ParsingError('IP is 0')
        address = IPv6Address(data)
        if address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if address.is_unspecified or address.is_multicast:
            raise ParsingError(f'IP is local or multicast: {address}')
        return address

    @classmethod
    def to_wire(cls, value: IPv4Address | IPv6Address, /) -> bytes:
        match value:
            case IPv4Address():
                return bytes(10) + b'\xff\xff' + value.packed
            case IPv6Address():
                return value.packed

    @classmethod
    def wire_length(cls, _: IPv4Address | IPv6Address, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: IPv4Address | IPv6Address | str, /) -> IPv4Address | IPv6Address:
        match value:
            case IPv4Address() | IPv6Address():
                address = value
            case str():
                address = ip_address(value)
            case _:
                raise TypeError(f'Expected an IP address, got {value!r}')
        # stored the same way it is read back from the wire
        if isinstance(address, IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if address == IPv6Address(0):
            raise ValueError('IP is 0')
        if address.is_unspecified or address.is_multicast:
            raise ValueError(f'IP is local or multicast: {address}')
        return address


class LiteralIntegerAdapter:
    """Adapter for an integer that must have a fixed value, using the wire encoding of another adapter"""

    _abstract_: ClassVar[bool] = True
    _value_: ClassVar[int] = NotImplemented
    _adapter_: ClassVar[type[DataWireAdapter[int]]] = NotImplemented
    _description_: ClassVar[str] = 'value'

    def __init_subclass__(cls, *, value: int, adapter: type[DataWireAdapter[int]], description: str = 'value', **kw: object) -> None:
        cls._value_ = adapter.validate(value)
        cls._adapter_ = adapter
        cls._description_ = description
        cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        value = cls._adapter_.from_wire(buffer)
        if value != cls._value_:
            raise ParsingError(f'Unknown {cls._description_}: {value}')
        return value

    @classmethod
    def to_wire(cls, _: int, /) -> bytes:
        return cls._adapter_.to_wire(cls._value_)

    @classmethod
    def wire_length(cls, _: int, /) -> int:
        return cls._adapter_.wire_length(cls._value_)

    @classmethod
    def validate(cls, value: int, /) -> int:
        if value != cls._value_:
            raise ValueError(f'Invalid {cls._description_} (expected {cls._value_!r}, got {value!r})')
        return value


# Numeric types

class VarInt(int):
    """An unsigned integer of up to 64 bits using the variable length encoding"""

    def __new__(cls, value: SupportsIndex = 0, /) -> Self:
        instance = super().__new__(cls, value)
        if instance < 0 or instance > VARINT_MAX:
            raise ValueError(f'Value is out of range for {cls.__qualname__!r}: {int(instance)!r}')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        return cls(decode_varint(InputBuffer.of(buffer), name=repr(cls.__qualname__)))

    def to_wire(self) -> bytes:
        return encode_varint(self)

    def wire_length(self) -> int:
        return varint_length(self)


# Enumeration and flag types

class VarIntEnum(enum.IntEnum):
    """An enumeration sent on the wire as a variable length integer"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        value = decode_varint(InputBuffer.of(buffer), name=repr(cls.__qualname__))
        try:
            return cls(value)
        except ValueError as exc:
            raise ParsingError(f'Unknown {cls.__qualname__} value: {value}') from exc

    def to_wire(self) -> bytes:
        return encode_varint(self)

    def wire_length(self) -> int:
        return varint_length(self)


class Flag(enum.IntFlag):
    _size_: ClassVar[int]

    def __init_subclass__(cls, *, size: int = 1, **kw: object) -> None:
        cls._size_ = size
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        if len(buffer) < cls._size_:
            raise ParsingError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls(int.from_bytes(buffer.get(0, cls._size_), byteorder='big'))

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_

    def is_set(self, flags: int) -> bool:
        """Return True if all the given flags are set"""
        return self & flags == flags


class Behavior(Flag, size=4):
    DOES_ACK = 1


class NodeServices(Flag, size=8):
    NODE_NETWORK = 1


class MailEncoding(VarIntEnum):
    IGNORE = 0
    TRIVIAL = 1
    SIMPLE = 2


# Byte strings

class FixedSize(bytes):
    """A fixed size bytes buffer"""

    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, size: int = NotImplemented, **kw: object) -> None:
        if size is not NotImplemented:
            cls._size_ = size
        super().__init_subclass__(**kw)

    @overload
    def __new__(cls) -> Self: ...

    @overload
    def __new__(cls, o: Iterable[SupportsIndex] | SupportsIndex | SupportsBytes | Buffer, /) -> Self: ...

    def __new__(cls, *args, **kw):
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        instance = super().__new__(cls, *args, **kw)
        if len(instance) != cls._size_:
            raise ValueError(f'{cls.__qualname__!r} objects must have {cls._size_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        buffer = InputBuffer.of(buffer)
        if len(buffer) < cls._size_:
            raise ParsingError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls(buffer.get(0, cls._size_))

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return self._size_


class VarBytes(bytes):
    """A bytes buffer of up to maxsize bytes, prefixed with its length as a variable length integer"""

    _maxsize_: ClassVar[int] = VARINT_MAX

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
        super().__init_subclass__(**kw)

    @overload
    def __new__(cls) -> Self: ...

    @overload
    def __new__(cls, o: Iterable[SupportsIndex] | SupportsIndex | SupportsBytes | Buffer, /) -> Self: ...

    def __new__(cls, *args, **kw):
        instance = super().__new__(cls, *args, **kw)
        if len(instance) > cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects can have at most {cls._maxsize_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__() if self else ''})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        data_length = decode_varint(buffer, name=f'the data length for {cls.__qualname__!r}')
        if data_length > cls._maxsize_:
            raise ParsingError(f'Data length is too big for {cls.__qualname__!r} ({data_length} > {cls._maxsize_})')
        prefix_length = varint_length(data_length)
        if len(buffer) < prefix_length + data_length:
            raise ParsingError(f'Insufficient data in buffer to extract the data for {cls.__qualname__!r} ({data_length} bytes)')
        return cls(buffer.get(prefix_length, data_length))

    def to_wire(self) -> bytes:
        return encode_varint(len(self)) + self

    def wire_length(self) -> int:
        return varint_length(len(self)) + len(self)


class VarString(str):
    """A string of up to maxsize UTF-8 encoded bytes, prefixed with its length as a variable length integer"""

    _maxsize_: ClassVar[int] = VARINT_MAX

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
        super().__init_subclass__(**kw)

    def __new__(cls, value: str = '', /) -> Self:
        instance = super().__new__(cls, value)
        if len(instance.encode()) > cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects can have at most {cls._maxsize_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        buffer = InputBuffer.of(buffer)
        data_length = decode_varint(buffer, name=f'the length of {cls.__qualname__!r}')
        if data_length > cls._maxsize_:
            raise ParsingError(f'Data length is too big for {cls.__qualname__!r} ({data_length} > {cls._maxsize_})')
        prefix_length = varint_length(data_length)
        if len(buffer) < prefix_length + data_length:
            raise ParsingError(f'Insufficient data in buffer to extract the bytes representation of {cls.__qualname__!r}')
        try:
            return cls(buffer.get(prefix_length, data_length).decode())
        except UnicodeDecodeError as exc:
            raise ParsingError(f'Cannot decode bytes to string: {exc}') from exc

    def to_wire(self) -> bytes:
        data = self.encode()
        return encode_varint(len(data)) + data

    def wire_length(self) -> int:
        data_length = len(self.encode())
        return varint_length(data_length) + data_length


class Nonce(FixedSize, size=8):
    pass


class Ripe(FixedSize, size=20):
    pass


class PublicKey(FixedSize, size=64):
    """A public key given as the concatenation of the x and y coordinates of the curve point"""

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


class InitializationVector(FixedSize, size=16):
    pass


class MessageAuthenticationCode(FixedSize, size=32):
    pass


class InventoryVector(FixedSize, size=32):
    """The hash that identifies an object in inventories"""

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'

    @property
    def hash(self) -> bytes:
        return bytes(self)


class VariableLengthString(VarString, maxsize=50000):
    pass


# List types

class List[T: DataWireProtocol](list[T]):
    """
    A list of items prefixed with the number of items as a variable length integer.

    The number of items is limited by maxsize and, if limit names an option,
    by the value of that option in the active message factory. The limit is
    checked when the list is created and, when reading from the wire, before
    any of the items is read.
    """

    _type_: type[T] = NotImplementedType
    _maxsize_: ClassVar[int] = VARINT_MAX
    _limit_: ClassVar[str | None] = None

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, limit: str | None = None, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
        if limit is not None:
            cls._limit_ = limit
        for base in getattr(cls, '__orig_bases__', ()):
            if isinstance(base, GenericAlias) and isinstance(base.__origin__, type) and issubclass(base.__origin__, List):
                match base.__args__[0]:
                    case TypeVar():
                        pass  # new type is still generic
                    case type() as list_type:
                        cls._type_ = list_type
                    case _:
                        raise TypeError(f'The {cls.__qualname__!r} type can only be parameterized with a single base type or a type variable')
        super().__init_subclass__(**kw)

    def __init__(self, iterable: Iterable[T] = (), /) -> None:
        if self._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {self.__class__.__qualname__!r} that does not define its item type')
        super().__init__(iterable)
        for item in self:
            if not isinstance(item, self._type_):
                raise TypeError(f'The items of {self.__class__.__qualname__!r} must be of type {self._type_.__qualname__!r}, got {item!r}')
        max_items = self.max_items()
        if len(self) > max_items:
            raise ValueError(f'{self.__class__.__qualname__!r} can have at most {max_items} items (got {len(self)})')

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({super().__repr__()})'

    @classmethod
    def max_items(cls) -> int:
        if cls._limit_ is None:
            return cls._maxsize_
        return min(cls._maxsize_, current_factory().options.get_int(cls._limit_))

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {cls.__qualname__!r} that does not define its item type')
        buffer = InputBuffer.of(buffer)
        count = decode_varint(buffer, name=f'the number of items in {cls.__qualname__!r}')
        max_items = cls.max_items()
        if count > max_items:
            raise ParsingError(f'Too many items in {cls.__qualname__!r} ({count} > {max_items})')
        buffer = buffer.subwindow(varint_length(count))
        items = []
        for _ in range(count):
            item = cls._type_.from_wire(buffer)
            buffer = buffer.subwindow(item.wire_length())
            items.append(item)
        return cls(items)

    def to_wire(self) -> bytes:
        return encode_varint(len(self)) + b''.join(item.to_wire() for item in self)

    def wire_length(self) -> int:
        return varint_length(len(self)) + sum(item.wire_length() for item in self)


class VariableLengthIntegerList(List[VarInt], maxsize=50000):
    pass
