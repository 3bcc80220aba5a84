# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The database middleware wraps a database driver, the connections it opens and
the statements those connections prepare in tracing decorators. Every traced
operation (connect, prepare, query, execute, transaction boundaries) runs
inside its own client span; return values and exceptions of the wrapped
objects pass through unchanged.

Which methods are traced depends on the capability profile of the wrapped
client, see :mod:`opentelemetry.instrumentation.db_middleware.profiles`.

Usage
-----

.. code-block:: python

    import sqlite3

    from opentelemetry.instrumentation.db_middleware import Middleware

    driver = Middleware(max_sql_length=1024).wrap(sqlite3)

    cnx = driver.connect(":memory:")
    cursor = cnx.cursor()
    cursor.execute("CREATE TABLE test (testField INTEGER)")
    cursor.execute("INSERT INTO test (testField) VALUES (123)")
    cnx.commit()
    cnx.close()

Connections obtained elsewhere can be decorated directly, and a driver module
can be patched in place so that every connection it opens is traced:

.. code-block:: python

    from opentelemetry.instrumentation.db_middleware import (
        instrument_connection,
        wrap_connect,
    )

    connection = instrument_connection(
        __name__, dbal_connection, profile="dbal"
    )

    wrap_connect(__name__, pymysql, "connect", "mysql")

Configuration
-------------

``max_sql_length`` limits the number of characters of SQL text recorded in
the ``db.statement`` attribute. When it is not given, the
``OTEL_PYTHON_DB_MIDDLEWARE_MAX_SQL_LENGTH`` environment variable is used; by
default statements are recorded untruncated. The wrapped client always
receives the full statement.

API
---
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Iterator, Optional, Union

import wrapt
from wrapt import wrap_function_wrapper

from opentelemetry.instrumentation.db_middleware.environment_variables import (
    OTEL_PYTHON_DB_MIDDLEWARE_MAX_SQL_LENGTH,
)
from opentelemetry.instrumentation.db_middleware.profiles import (
    DBAPI,
    Operation,
    Profile,
    get_profile,
)
from opentelemetry.instrumentation.db_middleware.proxy import (
    ConnectionT,
    TracedConnectionProxy,
    TracedDriverProxy,
    TracedStatementProxy,
)
from opentelemetry.instrumentation.db_middleware.span import start_span
from opentelemetry.instrumentation.db_middleware.tags import (
    Tag,
    auto_commit_tag,
    database_tag,
    host_tag,
    nesting_level_tag,
    parameters_tag,
    port_tag,
    row_count_tag,
    statement_tag,
    system_tag,
    user_tag,
)
from opentelemetry.instrumentation.db_middleware.version import __version__
from opentelemetry.instrumentation.utils import (
    is_instrumentation_enabled,
    unwrap,
)
from opentelemetry.trace import TracerProvider, get_tracer

_logger = logging.getLogger(__name__)

_SCHEMA_URL = "https://opentelemetry.io/schemas/1.11.0"

# Keyword names under which drivers accept bound parameters
_PARAMETER_KWARGS = (
    "params",
    "parameters",
    "vars",
    "vars_list",
    "seq_of_parameters",
    "args",
)


class Middleware:
    """Entry point installing the tracing decorators around a driver.

    Args:
        tracer_provider: The :class:`opentelemetry.trace.TracerProvider` to
            use. If omitted the current configured one is used.
        max_sql_length: Maximum number of characters of SQL recorded in span
            attributes. ``None`` falls back to
            ``OTEL_PYTHON_DB_MIDDLEWARE_MAX_SQL_LENGTH``, then to no limit.
        profile: Capability profile name or :class:`Profile` of the wrapped
            client.
        database_system: Value of ``db.system`` when the connection does not
            report a platform. Defaults to the driver's ``__name__``.
        capture_parameters: Record statement parameters in
            ``db.statement.parameters``.
    """

    def __init__(
        self,
        tracer_provider: Optional[TracerProvider] = None,
        max_sql_length: Optional[int] = None,
        profile: Union[str, Profile] = DBAPI,
        database_system: Optional[str] = None,
        capture_parameters: bool = False,
    ):
        self._tracer_provider = tracer_provider
        self._max_sql_length = _resolve_max_sql_length(max_sql_length)
        self._profile = get_profile(profile)
        self._database_system = database_system
        self._capture_parameters = capture_parameters

    @property
    def max_sql_length(self) -> Optional[int]:
        return self._max_sql_length

    @property
    def profile(self) -> Profile:
        return self._profile

    def wrap(self, driver: Any) -> TracedDriverProxy:
        """Return ``driver`` decorated so that its connections are traced."""
        if isinstance(driver, TracedDriverProxy):
            _logger.warning("Driver already instrumented")
            return driver

        db_integration = DatabaseIntegration(
            __name__,
            profile=self._profile,
            database_system=self._database_system
            or getattr(driver, "__name__", None),
            version=__version__,
            tracer_provider=self._tracer_provider,
            max_sql_length=self._max_sql_length,
            capture_parameters=self._capture_parameters,
        )
        return TracedDriverProxy(driver, db_integration)


def wrap_connect(
    name: str,
    connect_module: Callable[..., Any],
    connect_method_name: str,
    database_system: Optional[str] = None,
    profile: Union[str, Profile] = DBAPI,
    version: str = "",
    tracer_provider: Optional[TracerProvider] = None,
    max_sql_length: Optional[int] = None,
    capture_parameters: bool = False,
):
    """Patch the connect method of a driver module so it returns traced
    connections.

    Args:
        name: The instrumentation module name.
        connect_module: Module name where connect method is available.
        connect_method_name: The connect method name.
        database_system: An identifier for the database management system (DBMS)
            product being used.
        profile: Capability profile name or :class:`Profile`.
        version: Version of the instrumenting library.
        tracer_provider: The :class:`opentelemetry.trace.TracerProvider` to
            use. If omitted the current configured one is used.
        max_sql_length: Maximum number of characters of recorded SQL.
        capture_parameters: Configure if db.statement.parameters should be captured.
    """
    db_integration = DatabaseIntegration(
        name,
        profile=profile,
        database_system=database_system,
        version=version,
        tracer_provider=tracer_provider,
        max_sql_length=max_sql_length,
        capture_parameters=capture_parameters,
    )

    # pylint: disable=unused-argument
    def wrap_connect_(
        wrapped: Callable[..., Any],
        instance: Any,
        args: tuple[Any, ...],
        kwargs: dict[Any, Any],
    ):
        return db_integration.wrapped_connection(
            wrapped, args, kwargs, driver=connect_module
        )

    try:
        wrap_function_wrapper(
            connect_module, connect_method_name, wrap_connect_
        )
    except Exception as ex:  # pylint: disable=broad-except
        _logger.warning("Failed to integrate with database driver. %s", ex)


def unwrap_connect(
    connect_module: Callable[..., Any], connect_method_name: str
):
    """Undo :func:`wrap_connect`.

    Args:
        connect_module: Module name where the connect method is available.
        connect_method_name: The connect method name.
    """
    unwrap(connect_module, connect_method_name)


def instrument_connection(
    name: str,
    connection: Union[ConnectionT, TracedConnectionProxy[ConnectionT]],
    database_system: Optional[str] = None,
    profile: Union[str, Profile] = DBAPI,
    version: str = "",
    tracer_provider: Optional[TracerProvider] = None,
    max_sql_length: Optional[int] = None,
    capture_parameters: bool = False,
    db_integration_factory: Optional[type[DatabaseIntegration]] = None,
) -> TracedConnectionProxy[ConnectionT]:
    """Enable tracing on an already open connection.

    Args:
        name: The instrumentation module name.
        connection: The connection to instrument.
        database_system: An identifier for the database management system (DBMS)
            product being used.
        profile: Capability profile name or :class:`Profile`.
        version: Version of the instrumenting library.
        tracer_provider: The :class:`opentelemetry.trace.TracerProvider` to
            use. If omitted the current configured one is used.
        max_sql_length: Maximum number of characters of recorded SQL.
        capture_parameters: Configure if db.statement.parameters should be captured.
        db_integration_factory: A replacement for
            :class:`DatabaseIntegration`.

    Returns:
        An instrumented connection.
    """
    if isinstance(connection, wrapt.ObjectProxy):
        _logger.warning("Connection already instrumented")
        return connection

    db_integration_factory = db_integration_factory or DatabaseIntegration
    db_integration = db_integration_factory(
        name,
        profile=profile,
        database_system=database_system,
        version=version,
        tracer_provider=tracer_provider,
        max_sql_length=max_sql_length,
        capture_parameters=capture_parameters,
    )
    return get_traced_connection_proxy(connection, db_integration)


def uninstrument_connection(
    connection: Union[ConnectionT, TracedConnectionProxy[ConnectionT]],
) -> ConnectionT:
    """Disable tracing on a connection.

    Args:
        connection: The connection to uninstrument.

    Returns:
        An uninstrumented connection.
    """
    if isinstance(connection, wrapt.ObjectProxy):
        return connection.__wrapped__

    _logger.warning("Connection is not instrumented")
    return connection


class DatabaseIntegration:
    """Configuration shared by every decorator of one wrapped driver.

    The tracer, truncation limit and profile are read-only once constructed,
    so one integration is safely shared by all connections and statements it
    decorates.
    """

    def __init__(
        self,
        name: str,
        profile: Union[str, Profile] = DBAPI,
        database_system: Optional[str] = None,
        version: str = "",
        tracer_provider: Optional[TracerProvider] = None,
        max_sql_length: Optional[int] = None,
        capture_parameters: bool = False,
    ):
        self._name = name
        self._version = version
        self._tracer = get_tracer(
            self._name,
            instrumenting_library_version=self._version,
            tracer_provider=tracer_provider,
            schema_url=_SCHEMA_URL,
        )
        self.profile = get_profile(profile)
        self.database_system = database_system or self.profile.database_system
        self.max_sql_length = _resolve_max_sql_length(max_sql_length)
        self.capture_parameters = capture_parameters

    @property
    def tracer(self):
        return self._tracer

    def lookup(self, obj: Any, source: str) -> Any:
        """Value of the profile attribute ``source`` on ``obj``, or ``None``
        when the profile does not define it or reading it fails."""
        path = self.profile.connection_attributes.get(source)
        if obj is None or not path:
            return None
        try:
            return _resolve_attribute(obj, path)
        except Exception as exc:  # pylint: disable=broad-except
            _logger.debug("Unable to read %s of %r: %s", source, obj, exc)
            return None

    def is_connected(self, connection: Any) -> bool:
        return bool(self.lookup(connection, "connected"))

    def platform(self, connection: Any, driver: Any = None) -> Any:
        return (
            self.lookup(connection, "platform")
            or self.lookup(driver, "platform")
            or self.database_system
        )

    def wrapped_connection(
        self,
        connect_method: Callable[..., ConnectionT],
        args: tuple[Any, ...],
        kwargs: dict[Any, Any],
        driver: Any = None,
    ) -> TracedConnectionProxy[ConnectionT]:
        """Open a connection through ``connect_method`` and decorate it."""
        if not is_instrumentation_enabled():
            return get_traced_connection_proxy(
                connect_method(*args, **kwargs), self
            )

        connection = None
        with start_span(
            self.tracer, self.profile.driver_connect_span
        ) as span:
            try:
                connection = connect_method(*args, **kwargs)
            finally:
                span.add_tag(system_tag(self.platform(connection, driver)))
        return get_traced_connection_proxy(connection, self)

    def traced_call(
        self,
        operation: Operation,
        method: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[Any, Any],
        target: Any = None,
        connection: Any = None,
        statement: Any = None,
        proxy: Any = None,
    ):
        """Delegate one intercepted call to ``method`` inside its span.

        ``target`` is the wrapped object owning ``method`` and ``proxy`` its
        decorator; ``connection`` is the wrapped connection whose state is
        recorded on the span.
        """
        if operation.takes_statement:
            statement = _statement(operation, args, kwargs, statement)

        if operation.span_name is None or not is_instrumentation_enabled():
            result = method(*args, **kwargs)
            return self._decorate_result(
                operation, result, target, connection, statement, proxy
            )

        if operation.skip_if_connected and self.is_connected(connection):
            return False

        with start_span(
            self.tracer,
            operation.span_name,
            self._opening_tags(operation, connection, statement, args, kwargs),
        ) as span:
            try:
                result = method(*args, **kwargs)
                if operation.row_count is not None and span.is_recording():
                    span.add_tag(
                        row_count_tag(_count_rows(operation, result, target))
                    )
            finally:
                if operation.context_tags:
                    span.add_tags(self._closing_tags(connection))

        return self._decorate_result(
            operation, result, target, connection, statement, proxy
        )

    def _opening_tags(
        self,
        operation: Operation,
        connection: Any,
        statement: Any,
        args: tuple[Any, ...],
        kwargs: dict[Any, Any],
    ) -> Iterator[Optional[Tag]]:
        if operation.context_tags:
            yield database_tag(self.lookup(connection, "database"))
            yield user_tag(self.lookup(connection, "user"))
            yield host_tag(self.lookup(connection, "host"))
            yield port_tag(self.lookup(connection, "port"))
        yield statement_tag(statement, self.max_sql_length)
        if self.capture_parameters:
            yield parameters_tag(_parameters(operation, args, kwargs))

    def _closing_tags(self, connection: Any) -> Iterator[Optional[Tag]]:
        # Read after the delegated call so they reflect its effect, e.g. the
        # nesting level after begin_transaction.
        yield system_tag(self.platform(connection))
        yield auto_commit_tag(self.lookup(connection, "auto_commit"))
        yield nesting_level_tag(self.lookup(connection, "nesting_level"))

    def _decorate_result(
        self,
        operation: Operation,
        result: Any,
        target: Any,
        connection: Any,
        statement: Any,
        proxy: Any,
    ):
        # sqlite3 cursors return themselves from execute()
        if proxy is not None and result is not None and result is target:
            return proxy
        if (
            operation.returns_statement
            and result is not None
            and not isinstance(result, wrapt.ObjectProxy)
        ):
            return get_traced_statement_proxy(
                result, self, sql=statement, connection=connection
            )
        return result


def get_traced_connection_proxy(
    connection: ConnectionT,
    db_integration: DatabaseIntegration,
) -> TracedConnectionProxy[ConnectionT]:
    return TracedConnectionProxy(connection, db_integration)


def get_traced_statement_proxy(
    statement: Any,
    db_integration: DatabaseIntegration,
    sql: Any = None,
    connection: Any = None,
) -> TracedStatementProxy:
    return TracedStatementProxy(
        statement, db_integration, sql=sql, connection=connection
    )


def _resolve_attribute(obj: Any, path: str) -> Any:
    for part in path.split("."):
        if part.endswith("()"):
            obj = getattr(obj, part[:-2])()
        else:
            obj = getattr(obj, part)
    return obj


def _count_rows(operation: Operation, result: Any, target: Any):
    try:
        return operation.row_count(result, target)
    except Exception as exc:  # pylint: disable=broad-except
        _logger.debug("Unable to read row count: %s", exc)
        return None


def _statement(
    operation: Operation,
    args: tuple[Any, ...],
    kwargs: dict[Any, Any],
    default: Any = None,
) -> Any:
    if args:
        return args[0]
    for key in operation.statement_kwargs:
        if kwargs.get(key) is not None:
            return kwargs[key]
    return default


def _parameters(
    operation: Operation, args: tuple[Any, ...], kwargs: dict[Any, Any]
) -> Any:
    index = 1 if operation.takes_statement else 0
    if len(args) > index:
        return args[index]
    for key in _PARAMETER_KWARGS:
        if kwargs.get(key) is not None:
            return kwargs[key]
    return None


def _resolve_max_sql_length(max_sql_length: Optional[int]) -> Optional[int]:
    if max_sql_length is not None:
        if (
            not isinstance(max_sql_length, int)
            or isinstance(max_sql_length, bool)
            or max_sql_length < 0
        ):
            raise ValueError(
                "max_sql_length must be a non-negative integer, "
                f"got {max_sql_length!r}"
            )
        return max_sql_length

    raw_value = os.environ.get(OTEL_PYTHON_DB_MIDDLEWARE_MAX_SQL_LENGTH, "")
    if not raw_value.strip():
        return None
    try:
        max_sql_length = int(raw_value)
    except ValueError:
        max_sql_length = -1
    if max_sql_length < 0:
        _logger.warning(
            "Invalid value %r for %s, SQL statements will not be truncated",
            raw_value,
            OTEL_PYTHON_DB_MIDDLEWARE_MAX_SQL_LENGTH,
        )
        return None
    return max_sql_length


__all__ = [
    "DatabaseIntegration",
    "Middleware",
    "TracedConnectionProxy",
    "TracedDriverProxy",
    "TracedStatementProxy",
    "instrument_connection",
    "uninstrument_connection",
    "unwrap_connect",
    "wrap_connect",
]
