# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Iterable, Mapping
from functools import cache
from ipaddress import IPv4Address, IPv6Address
from secrets import randbits
from time import time as unix_time
from typing import ClassVar

from bitmessage.buffer import InputBuffer, SupportsRead
from bitmessage.configuration import Options, default_options
from bitmessage.crypto import ECDSAVerifier, SignatureVerifier, key_digest
from bitmessage.exceptions import ParsingError, UnknownCommandError, UnknownProtocolVersionError
from bitmessage.pow import NonceTrialsProofOfWork, ProofOfWork

from . import (
    Addr,
    Broadcast,
    Ciphertext,
    Coordinate,
    EncryptedPayload,
    Envelope,
    GetData,
    Getpubkey,
    Inv,
    MailMessage,
    Msg,
    NetworkAddress,
    P2PMessage,
    Pubkey,
    SimpleNetworkAddress,
    UnencryptedMsg,
    Verack,
    Version,
)
from .context import factory_context, in_factory_context
from .datamodel import (
    Behavior,
    InitializationVector,
    InventoryVector,
    MessageAuthenticationCode,
    NodeServices,
    PublicKey,
    Ripe,
    VariableLengthIntegerList,
    VariableLengthString,
    VarInt,
    WireData,
)

__all__ = 'MessageFactory', 'V1MessageFactory', 'get_factory', 'default_factory'  # noqa: RUF022


log = logging.getLogger(__name__)


type IPAddress = IPv4Address | IPv6Address | str


class MessageFactory:
    """
    Reads messages from the wire and creates new messages for a protocol version.

    A factory holds the options that limit what is accepted from the wire
    and the collaborators that check proofs of work and signatures. Every
    operation of the factory runs with the factory installed as the current
    factory, which is where the structures that are read or created find
    these limits and collaborators.

    The proof of work engine defaults to one configured from the options and
    the signature verifier to an ECDSA verifier. Passing None for either of
    them disables the corresponding check.
    """

    _registry_: ClassVar[dict[int, type['MessageFactory']]] = {}
    _version_: ClassVar[int] = NotImplemented

    commands: ClassVar[Mapping[str, type[P2PMessage]]] = {}

    def __init_subclass__(cls, *, version: int = NotImplemented, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if version is not NotImplemented:
            if cls._registry_.setdefault(version, cls) is not cls:
                raise TypeError(f'Protocol version {version} is already implemented by {cls._registry_[version].__qualname__!r}')
            cls._version_ = version

    def __init__(self, options: Options | None = None, *, pow: ProofOfWork | None = NotImplemented, verifier: SignatureVerifier | None = NotImplemented) -> None:  # noqa: A002
        if self._version_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract factory {self.__class__.__qualname__!r} that does not define its protocol version')
        self.options = options if options is not None else default_options
        self.pow = NonceTrialsProofOfWork.from_options(self.options) if pow is NotImplemented else pow
        self.verifier = ECDSAVerifier() if verifier is NotImplemented else verifier

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.options!r}, pow={self.pow!r}, verifier={self.verifier!r})'

    @property
    def version(self) -> int:
        return self._version_

    @classmethod
    def for_version(cls, version: int) -> type['MessageFactory']:
        try:
            return cls._registry_[version]
        except KeyError:
            raise UnknownProtocolVersionError(f'Unknown protocol version: {version}') from None

    # Reading

    def parse(self, command: str, buffer: WireData) -> P2PMessage:
        """Read the message identified by command, which must fill the whole buffer"""
        try:
            message_type = self.commands[command]
        except KeyError:
            raise UnknownCommandError(f'Unknown command: {command!r}') from None
        buffer = InputBuffer.of(buffer)
        with factory_context(self):
            message = message_type.from_wire(buffer)
            length = message.wire_length()
        if length != len(buffer):
            raise ParsingError(f'Unexpected data after the {command!r} payload ({len(buffer) - length} bytes)')
        return message

    def parse_envelope(self, stream: SupportsRead, max_length: int | None = None) -> Envelope:
        return Envelope.from_stream(stream, max_length=max_length, factory=self)

    @in_factory_context
    def envelope_from_wire(self, data: WireData) -> Envelope:
        return Envelope.from_wire(data)

    @in_factory_context
    def unencrypted_msg_from_wire(self, data: WireData) -> UnencryptedMsg:
        """Read the decrypted content of a msg"""
        return UnencryptedMsg.from_wire(data)

    # Messages

    @in_factory_context
    def create_envelope(self, message: P2PMessage) -> Envelope:
        return Envelope(message)

    @in_factory_context
    def create_version(self, *, receiver: SimpleNetworkAddress, sender: SimpleNetworkAddress, timestamp: int | None = None, nonce: int | None = None, user_agent: str | None = None, streams: Iterable[int] = (1,)) -> Version:  # noqa: PLR0913
        return Version(
            version=self.version,
            services=NodeServices(self.options.get_int('protocol.services')),
            timestamp=int(unix_time()) if timestamp is None else timestamp,
            receiver=receiver,
            sender=sender,
            nonce=randbits(64) if nonce is None else nonce,
            user_agent=self.options.get_string('network.userAgent') if user_agent is None else user_agent,
            streams=self.create_variable_length_integer_list(streams),
        )

    @in_factory_context
    def create_verack(self) -> Verack:
        return Verack()

    @in_factory_context
    def create_addr(self, addresses: Iterable[NetworkAddress]) -> Addr:
        return Addr(addresses=list(addresses))

    @in_factory_context
    def create_inv(self, inventory: Iterable[InventoryVector | bytes]) -> Inv:
        return Inv(inventory=[self.create_inventory_vector(item) for item in inventory])

    @in_factory_context
    def create_getdata(self, inventory: Iterable[InventoryVector | bytes]) -> GetData:
        return GetData(inventory=[self.create_inventory_vector(item) for item in inventory])

    @in_factory_context
    def create_getpubkey(self, *, address_version: int, stream: int, ripe: bytes, time: int | None = None) -> Getpubkey:
        return Getpubkey(time=self._time(time), address_version=address_version, stream=stream, ripe=ripe)

    @in_factory_context
    def create_pubkey(self, *, address_version: int, stream: int, behavior: Behavior, signing_key: bytes, encryption_key: bytes, time: int | None = None) -> Pubkey:  # noqa: PLR0913
        return Pubkey(
            time=self._time(time),
            address_version=address_version,
            stream=stream,
            behavior=behavior,
            signing_key=signing_key,
            encryption_key=encryption_key,
        )

    @in_factory_context
    def create_msg(self, *, stream: int, encrypted: EncryptedPayload, time: int | None = None) -> Msg:
        return Msg(time=self._time(time), stream=stream, encrypted=encrypted)

    @in_factory_context
    def create_broadcast(self, *, address_version: int, stream: int, behavior: Behavior, signing_key: bytes, encryption_key: bytes, mail: MailMessage, time: int | None = None) -> Broadcast:  # noqa: PLR0913
        return Broadcast(
            time=self._time(time),
            address_version=address_version,
            stream=stream,
            behavior=behavior,
            signing_key=signing_key,
            encryption_key=encryption_key,
            ripe=key_digest(signing_key, encryption_key),
            mail=mail,
        )

    @in_factory_context
    def create_unencrypted_msg(self, *, stream: int, behavior: Behavior, signing_key: bytes, encryption_key: bytes, destination_ripe: bytes, mail: MailMessage, acknowledgment: Envelope | P2PMessage) -> UnencryptedMsg:  # noqa: PLR0913
        return UnencryptedMsg(
            stream=stream,
            behavior=behavior,
            signing_key=signing_key,
            encryption_key=encryption_key,
            destination_ripe=destination_ripe,
            mail=mail,
            acknowledgment=acknowledgment,
        )

    # Supporting structures

    @in_factory_context
    def create_simple_network_address(self, ip: IPAddress, port: int, services: NodeServices | None = None) -> SimpleNetworkAddress:
        return SimpleNetworkAddress(services=self._services(services), ip=ip, port=port)

    @in_factory_context
    def create_network_address(self, ip: IPAddress, port: int, *, stream: int = 1, services: NodeServices | None = None, time: int | None = None) -> NetworkAddress:  # noqa: PLR0913
        return NetworkAddress(time=self._time(time), stream=stream, services=self._services(services), ip=ip, port=port)

    def create_inventory_vector(self, value: InventoryVector | bytes) -> InventoryVector:
        return value if isinstance(value, InventoryVector) else InventoryVector(value)

    def create_behavior(self, flags: int = 0) -> Behavior:
        return Behavior(flags)

    def create_node_services(self, flags: int = NodeServices.NODE_NETWORK) -> NodeServices:
        return NodeServices(flags)

    def create_varint(self, value: int) -> VarInt:
        return VarInt(value)

    def create_variable_length_string(self, value: str) -> VariableLengthString:
        return VariableLengthString(value)

    def create_variable_length_integer_list(self, values: Iterable[int]) -> VariableLengthIntegerList:
        return VariableLengthIntegerList(VarInt(value) for value in values)

    def create_encrypted_payload(self, *, iv: bytes, x: bytes, y: bytes, ciphertext: bytes, mac: bytes) -> EncryptedPayload:  # noqa: PLR0913
        return EncryptedPayload(
            iv=InitializationVector(iv),
            x=Coordinate(x),
            y=Coordinate(y),
            ciphertext=Ciphertext(ciphertext),
            mac=MessageAuthenticationCode(mac),
        )

    def create_simple_mail(self, subject: str, body: str) -> MailMessage:
        return MailMessage.simple(subject, body)

    def create_trivial_mail(self, body: str) -> MailMessage:
        return MailMessage.trivial(body)

    def create_ignored_mail(self, data: bytes = b'') -> MailMessage:
        return MailMessage.ignore(data)

    def create_public_key(self, data: bytes) -> PublicKey:
        return PublicKey(data)

    def create_ripe(self, data: bytes) -> Ripe:
        return Ripe(data)

    # Helpers

    @staticmethod
    def _time(time: int | None) -> int:
        return int(unix_time()) if time is None else time

    def _services(self, services: NodeServices | None) -> NodeServices:
        return NodeServices(self.options.get_int('protocol.services')) if services is None else services


class V1MessageFactory(MessageFactory, version=1):
    commands = {
        message_type._command_: message_type
        for message_type in (Version, Verack, Addr, Inv, GetData, Getpubkey, Pubkey, Msg, Broadcast)
    }


def get_factory(version: int | None = None, options: Options | None = None, **kw: object) -> MessageFactory:
    """
    Return a factory for the given protocol version.

    When the version is not given, it is taken from the protocol.version
    option. The keyword arguments are passed to the factory (pow, verifier).
    """
    if version is None:
        version = (options or default_options).get_int('protocol.version')
    factory = MessageFactory.for_version(version)(options, **kw)  # type: ignore[arg-type]
    log.debug('Created %r for protocol version %d', factory, version)
    return factory


@cache
def default_factory() -> MessageFactory:
    """The factory used when no factory is active"""
    return get_factory()
