"""
Handle scopes and handle suppliers.

A scope remembers which handle (through a supplier) the current thread of
control is already using, so nested ``with_handle`` / ``with_extension``
calls on the same Dbi reuse it instead of opening a second connection.
Sharing is by handoff only: a scope entry is visible to exactly one
thread (``ThreadHandleScope``) or one asyncio task / context
(``ContextHandleScope``).
"""
import contextvars
import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from dbhandle.exceptions import DatabaseError

if TYPE_CHECKING:
    from dbhandle.dbi import Dbi
    from dbhandle.handle import Handle

logger = logging.getLogger(__name__)

__all__ = [
    'HandleSupplier',
    'ConstantHandleSupplier',
    'LazyHandleSupplier',
    'HandleScope',
    'ThreadHandleScope',
    'ContextHandleScope',
]


class HandleSupplier(ABC):
    """Gives out a handle on request."""

    @abstractmethod
    def get_handle(self) -> 'Handle':
        ...


class ConstantHandleSupplier(HandleSupplier):
    """Supplies a handle that already exists."""

    def __init__(self, handle: 'Handle') -> None:
        self.handle = handle

    def get_handle(self) -> 'Handle':
        return self.handle


class LazyHandleSupplier(HandleSupplier):
    """Opens a handle on first request; closing is a no-op if none was opened.
    """

    def __init__(self, dbi: 'Dbi') -> None:
        self.dbi = dbi
        self._handle: 'Handle | None' = None
        self._lock = threading.Lock()
        self.closed = False

    @property
    def opened(self) -> bool:
        return self._handle is not None

    def get_handle(self) -> 'Handle':
        with self._lock:
            if self.closed:
                raise DatabaseError('Handle supplier is closed; the unit of work has finished')
            if self._handle is None:
                self._handle = self.dbi.open()
            return self._handle

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()


class HandleScope(ABC):
    """Where a Dbi keeps the supplier of the handle in use."""

    @abstractmethod
    def get(self) -> HandleSupplier | None:
        ...

    @abstractmethod
    def set(self, supplier: HandleSupplier) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class ThreadHandleScope(HandleScope):
    """Scope keyed by ``threading.get_ident()``.
    """

    def __init__(self) -> None:
        self._suppliers: dict[int, HandleSupplier] = {}
        self._lock = threading.Lock()

    def get(self) -> HandleSupplier | None:
        with self._lock:
            return self._suppliers.get(threading.get_ident())

    def set(self, supplier: HandleSupplier) -> None:
        with self._lock:
            self._suppliers[threading.get_ident()] = supplier

    def clear(self) -> None:
        with self._lock:
            self._suppliers.pop(threading.get_ident(), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._suppliers)


class ContextHandleScope(HandleScope):
    """Scope stored in a ``ContextVar``, one entry per asyncio task or context.
    """

    def __init__(self) -> None:
        self._var: contextvars.ContextVar[HandleSupplier | None] = contextvars.ContextVar(
            f'dbhandle_scope_{id(self)}', default=None)

    def get(self) -> HandleSupplier | None:
        return self._var.get()

    def set(self, supplier: HandleSupplier) -> None:
        self._var.set(supplier)

    def clear(self) -> None:
        self._var.set(None)
