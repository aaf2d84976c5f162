# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import TYPE_CHECKING, Concatenate

if TYPE_CHECKING:
    from .factory import MessageFactory

__all__ = 'current_factory', 'factory_context', 'in_factory_context'


# The factory that drives the current decoding or encoding operation. Nested
# decoders consult it for limits and collaborators (proof of work engine,
# signature verifier and the command parser used by nested envelopes).
_factory_var: ContextVar['MessageFactory'] = ContextVar('factory')


def current_factory() -> 'MessageFactory':
    try:
        return _factory_var.get()
    except LookupError:
        from .factory import default_factory  # noqa: PLC0415 (the factory module imports this package)
        return default_factory()


@contextmanager
def factory_context(factory: 'MessageFactory') -> Iterator['MessageFactory']:
    if _factory_var.get(None) is factory:
        yield factory
        return
    token = _factory_var.set(factory)
    try:
        yield factory
    finally:
        _factory_var.reset(token)


def in_factory_context[F: 'MessageFactory', **P, T](method: Callable[Concatenate[F, P], T]) -> Callable[Concatenate[F, P], T]:
    """
    Run the decorated factory method with its factory as the current factory.

    Everything called from the method, including nested calls to methods
    decorated the same way, will find the factory through current_factory().
    """

    @wraps(method)
    def wrapper(self: F, /, *args: P.args, **kw: P.kwargs) -> T:
        with factory_context(self):
            return method(self, *args, **kw)

    return wrapper
