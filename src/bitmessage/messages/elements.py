# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from enum import Enum
from inspect import Parameter, Signature
from types import NoneType, UnionType, new_class
from typing import ClassVar, Self, cast, dataclass_transform, overload

from bitmessage.buffer import InputBuffer
from bitmessage.exceptions import ParsingError

from .datamodel import DataWireAdapter, DataWireProtocol, List, WireData, decode_varint, encode_varint, varint_length

__all__ = (  # noqa: RUF022
    'Structure',
    'AnnotatedStructure',

    'Element',
    'ListElement',
    'PrefixedElement',
)


class Structure:  # noqa: PLW1641
    """
    A sequence of fields that are read from and written to the wire in the
    order in which they are defined.

    Instances are either built from keyword arguments, which are validated
    by the field descriptors, or read from the wire with from_wire(). When
    reading, every field is given a window that starts right after the data
    consumed by the previous field.
    """

    __signature__: ClassVar[Signature] = Signature()

    _fields_: ClassVar[dict[str, 'FieldDescriptor']] = {}

    _all_arguments: ClassVar[frozenset[str]]
    _mandatory_arguments: ClassVar[frozenset[str]]
    _default_arguments: ClassVar[dict[str, object]]

    def __new__(cls, **kw: object) -> Self:
        if not cls._all_arguments.issuperset(kw):
            raise TypeError(f'Got an unexpected keyword argument {next(iter(set(kw) - cls._all_arguments))!r}')
        if not cls._mandatory_arguments.issubset(kw):
            raise TypeError(f'Missing a required keyword argument {next(iter(cls._mandatory_arguments - set(kw)))!r}')
        return super().__new__(cls)

    def __init__(self, **kw: object) -> None:
        kw = self._default_arguments | kw
        for name in self._fields_:
            setattr(self, name, kw[name])

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)

        # all the fields on this element (both inherited and locally defined)
        fields = cls._fields_ | {name: value for name, value in cls.__dict__.items() if isinstance(value, FieldDescriptor)}

        cls._fields_ = fields

        cls.__signature__ = Signature(parameters=[descriptor.signature_parameter for descriptor in fields.values()])
        cls._all_arguments = frozenset(cls.__signature__.parameters)
        cls._mandatory_arguments = frozenset(p.name for p in cls.__signature__.parameters.values() if p.default is Parameter.empty)
        cls._default_arguments = {p.name: p.default for p in cls.__signature__.parameters.values() if p.default is not Parameter.empty}

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({', '.join(f'{name}={_reprproxy(getattr(self, name))!r}' for name in self._fields_)})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Structure):
            return self.__class__ is other.__class__ and all(getattr(self, name) == getattr(other, name) for name in self._fields_)
        return NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        instance = super().__new__(cls)
        cls._read_fields(instance, InputBuffer.of(buffer), cls._fields_.values())
        return instance

    @staticmethod
    def _read_fields(instance: 'Structure', buffer: InputBuffer, fields: Iterable['FieldDescriptor']) -> InputBuffer:
        # Returns the window that follows the data consumed by the fields
        for field in fields:
            buffer = buffer.subwindow(field.from_wire(instance, buffer))
        return buffer

    def to_wire(self) -> bytes:
        return b''.join(field.to_wire(self) for field in self._fields_.values())

    def wire_length(self) -> int:
        return sum(field.wire_length(self) for field in self._fields_.values())


# Helpers

class _reprproxy:  # noqa: N801
    # Provide better representation for certain types which can be evaluated to recreate the object.

    def __init__(self, value: object) -> None:
        self.value = value

    def __repr__(self) -> str:
        match self.value:
            case Enum() as value:  # this also covers Flag which is a subclass of Enum
                return f'{value.__class__.__qualname__}.{value.name}'
            case UnionType() as value:
                return ' | '.join('None' if _type is NoneType else _type.__qualname__ for _type in value.__args__)
            case type() as value:
                return value.__qualname__
            case value:
                return repr(value)

    __str__ = __repr__


def _protocol2adapter[T: DataWireProtocol](proto: type[T]) -> type[DataWireAdapter[T]]:
    # Turn a DataWireProtocol into a DataWireAdapter by creating a stand-in adapter on the fly.
    #
    # The stand-in validates values by converting them to the protocol type, so
    # that plain values (like bytes for a FixedSize type) are accepted as well.

    def validate(value: T, /) -> T:
        return value if isinstance(value, proto) else proto(value)  # type: ignore[call-arg]

    def prepare(ns: dict) -> None:
        ns['_abstract_'] = False
        ns['from_wire'] = staticmethod(proto.from_wire)
        ns['to_wire'] = staticmethod(proto.to_wire)
        ns['wire_length'] = staticmethod(proto.wire_length)
        ns['validate'] = staticmethod(validate)

    adapter = new_class(f'{proto.__name__}AdapterStandIn', (DataWireAdapter[T],), exec_body=prepare)
    adapter.__module__ = __name__
    adapter.__qualname__ = f'_protocol2adapter.<generated>.{adapter.__name__}'

    return adapter


type DataWireAdapterType[T] = type[DataWireAdapter[T]]


# Field descriptor specifications

class FieldDescriptor(ABC):
    name: str | None
    default: object

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        kwds = {} if self.default is NotImplemented else {'default': self.default}
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=self.annotation, **kwds)

    @property
    @abstractmethod
    def annotation(self) -> object: ...

    @abstractmethod
    def from_wire(self, instance: Structure, buffer: InputBuffer) -> int:
        """Read the field value from buffer into instance and return the number of bytes consumed"""

    @abstractmethod
    def to_wire(self, instance: Structure) -> bytes: ...

    @abstractmethod
    def wire_length(self, instance: Structure) -> int: ...

    def __set_name__(self, owner: type[Structure], name: str) -> None:
        if self.name is None:
            self.name = name
        elif name != self.name:
            raise TypeError(f'Cannot assign the same {self.__class__.__qualname__!r} to two different names: {self.name!r} and {name!r}')

    def __delete__(self, instance: Structure) -> None:
        raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be deleted')

    def _get_value(self, instance: Structure) -> object:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        try:
            return instance.__dict__[self.name]
        except KeyError as exc:
            raise AttributeError(f'Attribute {self.name!r} of object {instance.__class__.__qualname__!r} is not set') from exc

    def _read_error(self, instance: Structure, exc: ValueError) -> ParsingError:
        return ParsingError(f'Failed to read the {instance.__class__.__qualname__}.{self.name} element from wire: {exc}')


# Field descriptor implementations

class Element[T](FieldDescriptor):
    @overload
    def __init__(self, element_type: type[T], /, *, default: T = ..., adapter: DataWireAdapterType[T] | None = ...) -> None: ...

    @overload
    def __init__(self, element_type: UnionType, /, *, default: T = ..., adapter: DataWireAdapterType[T]) -> None: ...

    def __init__(self, element_type: type[T] | UnionType, /, *, default: T = NotImplemented, adapter: DataWireAdapterType[T] | None = None) -> None:
        self.name = None
        self.type = element_type
        self.default = default
        self.provided_adapter = adapter
        if adapter is None:
            if isinstance(element_type, UnionType):
                raise TypeError('When the element type is a union of types an adapter for the same types must be provided')
            if not issubclass(element_type, DataWireProtocol):
                raise TypeError('Either the element type must implement the DataWireProtocol or an adapter must be provided')
            adapter = cast(DataWireAdapterType[T], _protocol2adapter(element_type))
        if adapter._abstract_:
            raise TypeError(f'Cannot use abstract adapter {adapter.__qualname__!r} (need to select a concrete implementation of it, usually one that defines its size)')
        self.adapter = adapter

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({_reprproxy(self.type)!r}, default={self.default!r}, adapter={_reprproxy(self.provided_adapter)!r})'

    @property
    def annotation(self) -> object:
        return self.type

    @overload
    def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

    @overload
    def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> T: ...

    def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | T:
        if instance is None:
            return self
        return cast(T, self._get_value(instance))

    def __set__(self, instance: Structure, value: T) -> None:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        instance.__dict__[self.name] = self.adapter.validate(value)

    def from_wire(self, instance: Structure, buffer: InputBuffer) -> int:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        try:
            instance.__dict__[self.name] = value = self.adapter.from_wire(buffer)
        except ValueError as exc:
            raise self._read_error(instance, exc) from exc
        return self.adapter.wire_length(value)

    def to_wire(self, instance: Structure) -> bytes:
        return self.adapter.to_wire(self.__get__(instance))

    def wire_length(self, instance: Structure) -> int:
        return self.adapter.wire_length(self.__get__(instance))


class ListElement[T: DataWireProtocol](FieldDescriptor):
    def __init__(self, list_type: type[List[T]], /, *, default: Sequence[T] = NotImplemented) -> None:
        self.name = None
        self.default = default
        self.list_type = list_type

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.list_type.__qualname__}, default={self.default!r})'

    @property
    def annotation(self) -> object:
        return list[self.list_type._type_]  # type: ignore[name-defined]

    @overload
    def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

    @overload
    def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> List[T]: ...

    def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | List[T]:
        if instance is None:
            return self
        return cast(List[T], self._get_value(instance))

    def __set__(self, instance: Structure, value: Sequence[T]) -> None:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        instance.__dict__[self.name] = value if type(value) is self.list_type else self.list_type(value)

    def from_wire(self, instance: Structure, buffer: InputBuffer) -> int:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        try:
            instance.__dict__[self.name] = value = self.list_type.from_wire(buffer)
        except ValueError as exc:
            raise self._read_error(instance, exc) from exc
        return value.wire_length()

    def to_wire(self, instance: Structure) -> bytes:
        return self.__get__(instance).to_wire()

    def wire_length(self, instance: Structure) -> int:
        return self.__get__(instance).wire_length()


class PrefixedElement[T: DataWireProtocol](Element[T]):
    """
    An element prefixed with its length as a variable length integer.

    The element is read from a window that is exactly as long as the prefix
    says, and it must consume the whole window.
    """

    def __init__(self, element_type: type[T], /, *, default: T = NotImplemented) -> None:
        super().__init__(element_type, default=default)

    def from_wire(self, instance: Structure, buffer: InputBuffer) -> int:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        try:
            length = decode_varint(buffer, name='the element length')
            prefix_length = varint_length(length)
            if length > len(buffer) - prefix_length:
                raise ParsingError(f'The element length exceeds the available data ({length} > {len(buffer) - prefix_length})')
            value = self.adapter.from_wire(buffer.subwindow(prefix_length, length))
            if self.adapter.wire_length(value) != length:
                raise ParsingError(f'The element has {length - self.adapter.wire_length(value)} bytes of trailing data')
        except ValueError as exc:
            raise self._read_error(instance, exc) from exc
        instance.__dict__[self.name] = value
        return prefix_length + length

    def to_wire(self, instance: Structure) -> bytes:
        data = super().to_wire(instance)
        return encode_varint(len(data)) + data

    def wire_length(self, instance: Structure) -> int:
        length = super().wire_length(instance)
        return varint_length(length) + length


@dataclass_transform(kw_only_default=True, field_specifiers=(Element, ListElement, PrefixedElement))
class AnnotatedStructure(Structure):
    pass
