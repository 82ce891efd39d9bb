"""
Plugins customize a Dbi, each connection it opens and each handle.

Plugins are installed explicitly, in order; there is no discovery.
``customize_dbi`` runs once at installation. For every ``Dbi.open()``
the connection hooks run in installation order before the handle is
built, then the handle hooks run in installation order.
"""
import logging
from typing import TYPE_CHECKING, Any

from dbhandle.extension import SqlObjectFactory
from dbhandle.options import EnumStrategy

if TYPE_CHECKING:
    from dbhandle.dbi import Dbi
    from dbhandle.handle import Handle

logger = logging.getLogger(__name__)

__all__ = [
    'Plugin',
    'SqlObjectPlugin',
    'EnumByOrdinalPlugin',
    'SessionSettingsPlugin',
]


class Plugin:
    """Base plugin; every hook defaults to doing nothing."""

    def customize_dbi(self, dbi: 'Dbi') -> None:
        pass

    def customize_connection(self, connection: Any) -> Any:
        """Return the connection to use (the same one, or a wrapper)."""
        return connection

    def customize_handle(self, handle: 'Handle') -> 'Handle':
        return handle


class SqlObjectPlugin(Plugin):
    """Registers the extension factory for ``SqlObject`` subclasses."""

    def customize_dbi(self, dbi: 'Dbi') -> None:
        dbi.extensions.register(SqlObjectFactory())


class EnumByOrdinalPlugin(Plugin):
    """Bind and map enums by ordinal instead of by name."""

    def customize_dbi(self, dbi: 'Dbi') -> None:
        dbi.options.enum_strategy = EnumStrategy.BY_ORDINAL


class SessionSettingsPlugin(Plugin):
    """Run setup statements on every new connection (``PRAGMA``, ``SET``, ...).

    Examples
        SessionSettingsPlugin('PRAGMA foreign_keys = ON')
        SessionSettingsPlugin("SET TIME ZONE 'UTC'")
    """

    def __init__(self, *statements: str) -> None:
        self.statements = statements

    def customize_connection(self, connection: Any) -> Any:
        cursor = connection.cursor()
        try:
            for sql in self.statements:
                cursor.execute(sql)
                logger.debug(f'Session setting applied: {sql}')
        finally:
            cursor.close()
        return connection
