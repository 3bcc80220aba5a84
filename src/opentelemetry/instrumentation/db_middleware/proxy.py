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

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

import wrapt

if TYPE_CHECKING:
    from opentelemetry.instrumentation.db_middleware import (
        DatabaseIntegration,
    )

ConnectionT = TypeVar("ConnectionT")
DriverT = TypeVar("DriverT")
StatementT = TypeVar("StatementT")


def _enter(wrapped: Any) -> None:
    enter = getattr(type(wrapped), "__enter__", None)
    if enter is None:
        raise TypeError(
            f"{type(wrapped).__name__!r} object does not support the "
            "context manager protocol"
        )
    enter(wrapped)


# pylint: disable=abstract-method
class TracedDriverProxy(wrapt.ObjectProxy, Generic[DriverT]):
    """Driver whose ``connect`` is traced and returns traced connections."""

    def __init__(
        self, driver: DriverT, db_integration: DatabaseIntegration
    ):
        wrapt.ObjectProxy.__init__(self, driver)
        self._self_db_integration = db_integration

    def connect(self, *args: Any, **kwargs: Any):
        return self._self_db_integration.wrapped_connection(
            self.__wrapped__.connect, args, kwargs, driver=self.__wrapped__
        )


# pylint: disable=abstract-method
class TracedConnectionProxy(wrapt.ObjectProxy, Generic[ConnectionT]):
    """Connection whose profile operations open a span per call.

    Attributes outside the profile are served by the wrapped connection.
    """

    def __init__(
        self, connection: ConnectionT, db_integration: DatabaseIntegration
    ):
        wrapt.ObjectProxy.__init__(self, connection)
        self._self_db_integration = db_integration

    def __getattr__(self, name: str):
        attribute = super().__getattr__(name)
        integration = self._self_db_integration
        operation = integration.profile.connection_operations.get(name)
        if operation is None or not callable(attribute):
            return attribute

        def traced(*args: Any, **kwargs: Any):
            return integration.traced_call(
                operation,
                attribute,
                args,
                kwargs,
                target=self.__wrapped__,
                connection=self.__wrapped__,
                proxy=self,
            )

        return traced

    def __enter__(self):
        _enter(self.__wrapped__)
        return self

    def __exit__(self, *args: Any, **kwargs: Any):
        return self.__wrapped__.__exit__(*args, **kwargs)


# pylint: disable=abstract-method
class TracedStatementProxy(wrapt.ObjectProxy, Generic[StatementT]):
    """Prepared statement or cursor whose executions are traced.

    ``sql`` is the text the statement was prepared from; operations that
    take the SQL as first argument (PEP 249 cursors) record that instead.
    """

    def __init__(
        self,
        statement: StatementT,
        db_integration: DatabaseIntegration,
        sql: Optional[Any] = None,
        connection: Optional[Any] = None,
    ):
        wrapt.ObjectProxy.__init__(self, statement)
        self._self_db_integration = db_integration
        self._self_sql = sql
        self._self_connection = connection

    def __getattr__(self, name: str):
        attribute = super().__getattr__(name)
        integration = self._self_db_integration
        operation = integration.profile.statement_operations.get(name)
        if operation is None or not callable(attribute):
            return attribute

        def traced(*args: Any, **kwargs: Any):
            return integration.traced_call(
                operation,
                attribute,
                args,
                kwargs,
                target=self.__wrapped__,
                connection=self._self_connection,
                statement=self._self_sql,
                proxy=self,
            )

        return traced

    def __enter__(self):
        _enter(self.__wrapped__)
        return self

    def __exit__(self, *args: Any, **kwargs: Any):
        return self.__wrapped__.__exit__(*args, **kwargs)
