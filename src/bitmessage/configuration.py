# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Iterator, Mapping
from os import PathLike, fspath
from typing import IO, Self

from lxml import etree

from .__info__ import __version__

__all__ = 'Options', 'default_options'


log = logging.getLogger(__name__)


type OptionValue = int | float | str


# The default value of an option also determines its type
DEFAULTS: Mapping[str, OptionValue] = {
    'protocol.version': 1,
    'protocol.services': 1,
    'protocol.maxMessageLength': 10 * 1024 * 1024,
    'protocol.maxInvLength': 50000,
    'protocol.maxAddrLength': 1000,

    'pow.averageNonceTrialsPerByte': 320,
    'pow.payloadLengthExtraBytes': 14000,

    'network.userAgent': f'/bitmessage-protocol:{__version__}/',
}


class Options(Mapping[str, OptionValue]):
    """
    Named protocol settings.

    Options that are not explicitly provided take their default values. A
    value given as an override or loaded from an XML document is converted
    to the type of the option's default value. Unknown option names raise
    KeyError and values that cannot be converted raise ValueError.

    The XML representation is a list of option elements:

        <options>
          <option name="protocol.maxInvLength">1000</option>
        </options>
    """

    def __init__(self, values: Mapping[str, object] | None = None, /) -> None:
        self._values: dict[str, OptionValue] = dict(DEFAULTS)
        if values is not None:
            self._values.update((name, self._convert(name, value)) for name, value in values.items())

    def __repr__(self) -> str:
        overrides = {name: value for name, value in self._values.items() if value != DEFAULTS[name]}
        return f'{self.__class__.__qualname__}({overrides!r})'

    def __getitem__(self, name: str) -> OptionValue:
        try:
            return self._values[name]
        except KeyError:
            raise KeyError(f'Unknown option: {name!r}') from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @staticmethod
    def _convert(name: str, value: object) -> OptionValue:
        try:
            option_type = type(DEFAULTS[name])
        except KeyError:
            raise KeyError(f'Unknown option: {name!r}') from None
        if type(value) is option_type:
            return value  # type: ignore[return-value]
        if isinstance(value, bool) or not isinstance(value, str | int | float):
            raise ValueError(f'Invalid value for option {name!r}: {value!r}')
        try:
            return option_type(value)
        except ValueError as exc:
            raise ValueError(f'Invalid value for option {name!r}: {value!r}') from exc

    def get_int(self, name: str) -> int:
        match self[name]:
            case int() as value:
                return value
            case value:
                raise ValueError(f'Option {name!r} is not an integer: {value!r}')

    def get_float(self, name: str) -> float:
        match self[name]:
            case int() | float() as value:
                return float(value)
            case value:
                raise ValueError(f'Option {name!r} is not a number: {value!r}')

    def get_string(self, name: str) -> str:
        match self[name]:
            case str() as value:
                return value
            case value:
                raise ValueError(f'Option {name!r} is not a string: {value!r}')

    def replace(self, values: Mapping[str, object], /) -> Self:
        """Return a new set of options with the given values overridden"""
        return self.__class__(self._values | dict(values))

    @classmethod
    def from_xml(cls, source: str | PathLike[str] | IO[bytes]) -> Self:
        """Load options from an XML file (given as a path or an open file)"""
        if isinstance(source, PathLike):
            source = fspath(source)
        try:
            document = etree.parse(source, cls._parser())
        except etree.XMLSyntaxError as exc:
            raise ValueError(f'Invalid options document: {exc}') from exc
        return cls._from_element(document.getroot())

    @classmethod
    def from_string(cls, text: str | bytes) -> Self:
        """Load options from an XML document given as a string"""
        if isinstance(text, str):
            text = text.encode()
        try:
            root = etree.fromstring(text, cls._parser())
        except etree.XMLSyntaxError as exc:
            raise ValueError(f'Invalid options document: {exc}') from exc
        return cls._from_element(root)

    @staticmethod
    def _parser() -> etree.XMLParser:
        return etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)

    @classmethod
    def _from_element(cls, root: etree._Element) -> Self:
        if root.tag != 'options':
            raise ValueError(f'Invalid options document: expected an <options> root element, got <{root.tag}>')
        values = {}
        for element in root.iterchildren('option'):
            name = element.get('name')
            if name is None:
                raise ValueError(f'Invalid options document: <option> element without a name on line {element.sourceline}')
            if name not in DEFAULTS:
                log.warning('Ignoring unknown option %r on line %s', name, element.sourceline)
                continue
            values[name] = (element.text or '').strip()
        return cls(values)


default_options = Options()
