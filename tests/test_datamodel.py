# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from ipaddress import IPv4Address, IPv6Address

import pytest

from bitmessage.buffer import InputBuffer
from bitmessage.configuration import Options
from bitmessage.exceptions import ParsingError
from bitmessage.messages.context import current_factory, factory_context
from bitmessage.messages.datamodel import (
    Behavior,
    DataWireAdapter,
    DataWireProtocol,
    FixedSize,
    Flag,
    Int64Adapter,
    InventoryVector,
    IPAddressAdapter,
    List,
    LiteralIntegerAdapter,
    MailEncoding,
    NodeServices,
    UInt16Adapter,
    UInt32Adapter,
    VarBytes,
    VariableLengthIntegerList,
    VariableLengthString,
    VarInt,
    VarIntAdapter,
    VarIntEnum,
    VarString,
    encode_varint,
    varint_length,
)
from bitmessage.messages.elements import AnnotatedStructure, Element, ListElement, PrefixedElement, Structure
from bitmessage.messages.factory import V1MessageFactory, default_factory


class TestProtocols:

    def test_protocols(self) -> None:
        # Adapters can't be tested with issubclass because they have non-method
        # members, but they can be tested with isinstance.

        assert isinstance(UInt32Adapter, DataWireAdapter)
        assert isinstance(Int64Adapter, DataWireAdapter)
        assert isinstance(VarIntAdapter, DataWireAdapter)
        assert isinstance(IPAddressAdapter, DataWireAdapter)
        assert isinstance(LiteralIntegerAdapter, DataWireAdapter)

        assert issubclass(VarInt, DataWireProtocol)
        assert issubclass(VarIntEnum, DataWireProtocol)
        assert issubclass(Flag, DataWireProtocol)
        assert issubclass(FixedSize, DataWireProtocol)
        assert issubclass(VarBytes, DataWireProtocol)
        assert issubclass(VarString, DataWireProtocol)
        assert issubclass(List, DataWireProtocol)
        assert issubclass(Structure, DataWireProtocol)


class TestVarInt:

    def test_encoding(self) -> None:
        assert VarInt(0).to_wire() == b'\x00'
        assert VarInt(0xfc).to_wire() == b'\xfc'
        assert VarInt(0xfd).to_wire() == b'\xfd\x00\xfd'
        assert VarInt(0xffff).to_wire() == b'\xfd\xff\xff'
        assert VarInt(0x1_0000).to_wire() == b'\xfe\x00\x01\x00\x00'
        assert VarInt(0xffff_ffff).to_wire() == b'\xfe\xff\xff\xff\xff'
        assert VarInt(0x1_0000_0000).to_wire() == b'\xff\x00\x00\x00\x01\x00\x00\x00\x00'
        assert VarInt(2**64 - 1).to_wire() == b'\xff' * 9

    def test_wire_length(self) -> None:
        for value, length in [(0, 1), (0xfc, 1), (0xfd, 3), (0xffff, 3), (0x1_0000, 5), (0xffff_ffff, 5), (0x1_0000_0000, 9), (2**64 - 1, 9)]:
            assert varint_length(value) == length
            assert VarInt(value).wire_length() == length
            assert VarInt.from_wire(VarInt(value).to_wire()).wire_length() == length

    def test_range(self) -> None:
        with pytest.raises(ValueError, match='out of range'):
            VarInt(-1)
        with pytest.raises(ValueError, match='out of range'):
            VarInt(2**64)
        with pytest.raises(ValueError, match='out of range'):
            encode_varint(2**64)

    def test_decoding(self) -> None:
        for value in (0, 1, 0xfc, 0xfd, 0xfe, 0xff, 0xffff, 0x1_0000, 0xffff_ffff, 0x1_0000_0000, 2**64 - 1):
            assert VarInt.from_wire(encode_varint(value) + b'trailing') == value
        assert VarInt.from_wire(InputBuffer.from_bytes(b'xx\xfd\x01\x00').subwindow(2)) == 0x100

    def test_non_canonical_encodings(self) -> None:
        with pytest.raises(ParsingError, match='Non-canonical encoding'):
            VarInt.from_wire(b'\xfd\x00\x01')
        with pytest.raises(ParsingError, match='Non-canonical encoding'):
            VarInt.from_wire(b'\xfe\x00\x00\xff\xff')
        with pytest.raises(ParsingError, match='Non-canonical encoding'):
            VarInt.from_wire(b'\xff\x00\x00\x00\x00\xff\xff\xff\xff')

    def test_insufficient_data(self) -> None:
        with pytest.raises(ParsingError, match='Insufficient data'):
            VarInt.from_wire(b'')
        with pytest.raises(ParsingError, match='Insufficient data'):
            VarInt.from_wire(b'\xfe\x00\x01')


class TestAdapters:

    def test_integers(self) -> None:
        assert UInt16Adapter.to_wire(0x1234) == b'\x12\x34'
        assert UInt32Adapter.from_wire(b'\x00\x00\x01\x00') == 256
        assert Int64Adapter.from_wire(b'\xff' * 8) == -1
        assert Int64Adapter.to_wire(-2) == b'\xff' * 7 + b'\xfe'

        with pytest.raises(ValueError, match='out of range'):
            UInt16Adapter.validate(0x1_0000)
        with pytest.raises(ValueError, match='out of range'):
            UInt32Adapter.validate(-1)
        with pytest.raises(ParsingError, match='Insufficient data'):
            UInt32Adapter.from_wire(b'\x00\x01')

    def test_ip_address(self) -> None:
        ipv4_wire = bytes(10) + b'\xff\xff' + bytes([192, 168, 1, 1])
        ipv6_wire = IPv6Address('2001:db8::1').packed

        assert IPAddressAdapter.from_wire(ipv4_wire) == IPv4Address('192.168.1.1')
        assert IPAddressAdapter.to_wire(IPv4Address('192.168.1.1')) == ipv4_wire
        assert IPAddressAdapter.from_wire(ipv6_wire) == IPv6Address('2001:db8::1')
        assert IPAddressAdapter.to_wire(IPv6Address('2001:db8::1')) == ipv6_wire
        assert IPAddressAdapter.wire_length(IPv4Address('10.0.0.1')) == 16
        assert IPAddressAdapter.validate('10.0.0.1') == IPv4Address('10.0.0.1')
        assert IPAddressAdapter.validate(IPv6Address('::ffff:10.0.0.1')) == IPv4Address('10.0.0.1')
        assert IPAddressAdapter.validate('::ffff:10.0.0.1') == IPv4Address('10.0.0.1')

    def test_ip_address_errors(self) -> None:
        with pytest.raises(ParsingError, match='IP is 0'):
            IPAddressAdapter.from_wire(bytes(16))
        with pytest.raises(ParsingError, match='IP is local or multicast'):
            IPAddressAdapter.from_wire(IPv6Address('ff02::1').packed)
        with pytest.raises(ParsingError, match='IP is local or multicast'):
            IPAddressAdapter.from_wire(bytes(10) + b'\xff\xff' + bytes([224, 0, 0, 1]))
        with pytest.raises(ParsingError, match='IP is local or multicast'):
            IPAddressAdapter.from_wire(bytes(10) + b'\xff\xff' + bytes(4))
        with pytest.raises(ParsingError, match='Insufficient data'):
            IPAddressAdapter.from_wire(bytes(15))
        with pytest.raises(TypeError):
            IPAddressAdapter.validate(12345)  # type: ignore[arg-type]
        with pytest.raises(ValueError, match='IP is 0'):
            IPAddressAdapter.validate('::')
        for address in ('0.0.0.0', '::ffff:0.0.0.0', '224.0.0.1', 'ff02::1'):
            with pytest.raises(ValueError, match='IP is local or multicast'):
                IPAddressAdapter.validate(address)

    def test_literal_integer(self) -> None:
        class AnswerAdapter(LiteralIntegerAdapter, value=42, adapter=VarIntAdapter, description='answer'):
            pass

        assert AnswerAdapter.to_wire(42) == b'\x2a'
        assert AnswerAdapter.wire_length(42) == 1
        assert AnswerAdapter.from_wire(b'\x2a') == 42
        assert AnswerAdapter.validate(42) == 42

        with pytest.raises(ParsingError, match='Unknown answer: 41'):
            AnswerAdapter.from_wire(b'\x29')
        with pytest.raises(ValueError, match='Invalid answer'):
            AnswerAdapter.validate(41)


class TestFlags:

    def test_flags(self) -> None:
        assert Behavior.DOES_ACK.to_wire() == b'\x00\x00\x00\x01'
        assert Behavior(0).wire_length() == 4
        assert NodeServices.NODE_NETWORK.to_wire() == bytes(7) + b'\x01'
        assert NodeServices.from_wire(bytes(7) + b'\x03') == 3

    def test_is_set(self) -> None:
        flags = NodeServices(0b101)

        assert flags.is_set(NodeServices.NODE_NETWORK)
        assert flags.is_set(0b100)
        assert flags.is_set(0b101)
        assert not flags.is_set(0b111)
        assert not Behavior(0).is_set(Behavior.DOES_ACK)

    def test_enum(self) -> None:
        assert MailEncoding.SIMPLE.to_wire() == b'\x02'
        assert MailEncoding.from_wire(b'\x01') is MailEncoding.TRIVIAL

        with pytest.raises(ParsingError, match='Unknown MailEncoding value: 3'):
            MailEncoding.from_wire(b'\x03')


class TestByteStrings:

    def test_inventory_vector(self) -> None:
        data = bytes(range(32))
        vector1 = InventoryVector(data)
        vector2 = InventoryVector.from_wire(data + b'more')

        assert vector1 == vector2
        assert hash(vector1) == hash(vector2)
        assert vector1.hash == data
        assert vector1.to_wire() == data
        assert len({vector1, vector2}) == 1

        with pytest.raises(ValueError, match='must have 32 bytes'):
            InventoryVector(bytes(31))
        with pytest.raises(ValueError, match='must have 32 bytes'):
            InventoryVector(bytes(33))
        with pytest.raises(ParsingError, match='Insufficient data'):
            InventoryVector.from_wire(bytes(31))

    def test_var_bytes(self) -> None:
        class SmallBytes(VarBytes, maxsize=4):
            pass

        assert SmallBytes(b'abc').to_wire() == b'\x03abc'
        assert SmallBytes(b'abc').wire_length() == 4
        assert SmallBytes.from_wire(b'\x02abc') == b'ab'
        assert VarBytes().to_wire() == b'\x00'

        with pytest.raises(ValueError, match='at most 4 bytes'):
            SmallBytes(b'abcde')
        with pytest.raises(ParsingError, match='Data length is too big'):
            SmallBytes.from_wire(b'\x05abcde')
        with pytest.raises(ParsingError, match='Insufficient data'):
            SmallBytes.from_wire(b'\x04abc')

    def test_var_string(self) -> None:
        text = 'héllo'

        assert VariableLengthString(text).to_wire() == b'\x06' + text.encode()
        assert VariableLengthString(text).wire_length() == 7
        assert VariableLengthString.from_wire(b'\x06' + text.encode()) == text

        with pytest.raises(ValueError, match='at most 50000 bytes'):
            VariableLengthString('x' * 50001)
        with pytest.raises(ParsingError, match='Data length is too big'):
            VariableLengthString.from_wire(encode_varint(50001))
        with pytest.raises(ParsingError, match='Cannot decode bytes to string'):
            VariableLengthString.from_wire(b'\x02\xff\xfe')


class TestLists:

    def test_integer_list(self) -> None:
        values = VariableLengthIntegerList([VarInt(1), VarInt(300)])

        assert values.to_wire() == b'\x02\x01\xfd\x01\x2c'
        assert values.wire_length() == 5
        assert VariableLengthIntegerList.from_wire(b'\x02\x01\xfd\x01\x2c') == [1, 300]
        assert VariableLengthIntegerList().to_wire() == b'\x00'

        with pytest.raises(TypeError, match='must be of type'):
            VariableLengthIntegerList([1, 2])  # type: ignore[list-item]

    def test_maximum_size(self) -> None:
        with pytest.raises(ValueError, match='at most 50000 items'):
            VariableLengthIntegerList(VarInt(1) for _ in range(50001))
        with pytest.raises(ParsingError, match='Too many items'):
            VariableLengthIntegerList.from_wire(encode_varint(50001))

    def test_option_limit(self) -> None:
        class LimitedList(List[InventoryVector], limit='protocol.maxInvLength'):
            pass

        items = [InventoryVector(bytes([n]) * 32) for n in range(3)]
        factory = V1MessageFactory(Options({'protocol.maxInvLength': 2}))

        assert len(LimitedList(items)) == 3
        with factory_context(factory):
            assert current_factory() is factory
            with pytest.raises(ValueError, match='at most 2 items'):
                LimitedList(items)
            # the limit is checked before any of the items is read
            with pytest.raises(ParsingError, match=r'Too many items in .* \(3 > 2\)'):
                LimitedList.from_wire(b'\x03')
        assert current_factory() is default_factory()


class Point(AnnotatedStructure):
    x: Element[int] = Element(int, adapter=UInt16Adapter)
    y: Element[int] = Element(int, adapter=UInt16Adapter, default=0)


class Path(AnnotatedStructure):
    name: Element[VariableLengthString] = Element(VariableLengthString)
    points: ListElement[VarInt] = ListElement(VariableLengthIntegerList, default=())
    start: PrefixedElement[Point] = PrefixedElement(Point)


class TestStructures:

    def test_structure(self) -> None:
        point = Point(x=1, y=2)

        assert point.to_wire() == b'\x00\x01\x00\x02'
        assert point.wire_length() == 4
        assert Point.from_wire(b'\x00\x01\x00\x02') == point
        assert Point(x=1) == Point(x=1, y=0)
        assert repr(point) == 'Point(x=1, y=2)'

    def test_arguments(self) -> None:
        with pytest.raises(TypeError, match="Missing a required keyword argument 'x'"):
            Point()  # type: ignore[call-arg]
        with pytest.raises(TypeError, match="unexpected keyword argument 'z'"):
            Point(x=1, z=2)  # type: ignore[call-arg]
        with pytest.raises(ValueError, match='out of range'):
            Point(x=0x1_0000)

    def test_read_errors_name_the_element(self) -> None:
        with pytest.raises(ParsingError, match='Failed to read the Point.y element from wire'):
            Point.from_wire(b'\x00\x01\x00')

    def test_nested_structures(self) -> None:
        path = Path(name=VariableLengthString('route'), points=[VarInt(1), VarInt(2)], start=Point(x=7, y=8))
        wire = b'\x05route' + b'\x02\x01\x02' + b'\x04\x00\x07\x00\x08'

        assert path.to_wire() == wire
        assert path.wire_length() == len(wire)
        assert Path.from_wire(wire) == path

    def test_prefixed_element_must_be_consumed(self) -> None:
        with pytest.raises(ParsingError, match='1 bytes of trailing data'):
            Path.from_wire(b'\x00\x00\x05\x00\x07\x00\x08\x00')
        with pytest.raises(ParsingError, match='exceeds the available data'):
            Path.from_wire(b'\x00\x00\x05\x00\x07\x00\x08')

    def test_structures_of_different_types_differ(self) -> None:
        class OtherPoint(AnnotatedStructure):
            x: Element[int] = Element(int, adapter=UInt16Adapter)
            y: Element[int] = Element(int, adapter=UInt16Adapter, default=0)

        assert Point(x=1) != OtherPoint(x=1)
