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
Capability profiles describe which methods of a database client are traced
and how the span of each method is named and tagged.

Built-in profiles:

* ``dbapi``: `PEP 249 <https://peps.python.org/pep-0249/>`_ drivers such as
  ``sqlite3``, ``psycopg`` or ``pymysql``. Statement spans come from cursors.
* ``dbal``: database abstraction layer connections exposing ``connect``,
  ``prepare``, ``query``, ``exec``, ``execute_query``, ``execute_update``,
  ``execute_statement`` and the ``begin_transaction``/``commit``/``rollback``
  transaction boundaries.
* ``dbal_driver``: driver level connections handed out by a driver middleware;
  same operations without ``connect`` and ``execute_*``.
* ``dbal_legacy``: older abstraction layer connections, using the short
  ``db.transaction``/``db.commit``/``db.rollback`` span names.

Connection attribute paths are dotted attribute names looked up on the wrapped
connection (or driver). A ``()`` suffix calls the attribute, e.g.
``"get_database_platform().get_name()"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple, Union

RowCounter = Callable[[Any, Any], Optional[int]]

# Keyword names under which drivers accept the SQL text
STATEMENT_KWARGS = ("sql", "query", "operation", "statement")


def rows_from_result(result: Any, target: Any) -> Optional[int]:
    """Affected rows returned directly by the call, e.g. ``exec``."""
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    return None


def rows_from_rowcount(result: Any, target: Any) -> Optional[int]:
    """PEP 249 ``rowcount`` of the returned cursor, else of the called one."""
    source = result if hasattr(result, "rowcount") else target
    rowcount = getattr(source, "rowcount", None)
    if isinstance(rowcount, int):
        return rowcount
    return None


@dataclass(frozen=True)
class Operation:
    """How a single intercepted method is traced.

    A ``span_name`` of ``None`` opens no span; the method is only delegated
    and, with ``returns_statement``, its result decorated.
    ``statement_kwargs`` names the keywords the SQL text may be passed as
    when it is not the first positional argument.
    """

    span_name: Optional[str]
    takes_statement: bool = False
    context_tags: bool = True
    row_count: Optional[RowCounter] = None
    returns_statement: bool = False
    skip_if_connected: bool = False
    statement_kwargs: Tuple[str, ...] = STATEMENT_KWARGS


@dataclass(frozen=True)
class Profile:
    name: str
    connection_operations: Mapping[str, Operation]
    statement_operations: Mapping[str, Operation]
    connection_attributes: Mapping[str, str]
    database_system: Optional[str] = None
    driver_connect_span: str = "db.driver.connect"


_DBAL_ATTRIBUTES = {
    "database": "get_database()",
    "user": "get_username()",
    "platform": "get_database_platform().get_name()",
    "auto_commit": "is_auto_commit()",
    "nesting_level": "get_transaction_nesting_level()",
    "connected": "is_connected()",
}

DBAPI = Profile(
    name="dbapi",
    connection_operations={
        "cursor": Operation(None, returns_statement=True),
        # sqlite3 shortcuts creating an intermediate cursor
        "execute": Operation(
            "db.execute",
            takes_statement=True,
            row_count=rows_from_rowcount,
            returns_statement=True,
        ),
        "executemany": Operation(
            "db.execute",
            takes_statement=True,
            row_count=rows_from_rowcount,
            returns_statement=True,
        ),
        "executescript": Operation(
            "db.exec", takes_statement=True, returns_statement=True
        ),
        "commit": Operation("db.transaction.commit"),
        "rollback": Operation("db.transaction.rollback"),
    },
    statement_operations={
        "execute": Operation(
            "db.stmt.execute",
            takes_statement=True,
            row_count=rows_from_rowcount,
        ),
        "executemany": Operation(
            "db.stmt.execute",
            takes_statement=True,
            row_count=rows_from_rowcount,
        ),
        "callproc": Operation(
            "db.stmt.execute",
            takes_statement=True,
            statement_kwargs=("procname",),
        ),
    },
    connection_attributes={
        "database": "database",
        "user": "user",
        "host": "host",
        "port": "port",
        "auto_commit": "autocommit",
    },
)

DBAL = Profile(
    name="dbal",
    connection_operations={
        "connect": Operation("db.connect", skip_if_connected=True),
        "prepare": Operation(
            "db.prepare", takes_statement=True, returns_statement=True
        ),
        "query": Operation("db.query", takes_statement=True),
        "exec": Operation(
            "db.exec", takes_statement=True, row_count=rows_from_result
        ),
        "execute_query": Operation("db.execute", takes_statement=True),
        "execute_update": Operation(
            "db.execute", takes_statement=True, row_count=rows_from_result
        ),
        "execute_statement": Operation(
            "db.execute", takes_statement=True, row_count=rows_from_result
        ),
        "begin_transaction": Operation("db.transaction.begin"),
        "commit": Operation("db.transaction.commit"),
        "rollback": Operation("db.transaction.rollback"),
    },
    statement_operations={
        "execute": Operation("db.stmt.execute", context_tags=False),
    },
    connection_attributes=_DBAL_ATTRIBUTES,
)

DBAL_DRIVER = Profile(
    name="dbal_driver",
    connection_operations={
        "prepare": Operation(
            "db.prepare", takes_statement=True, returns_statement=True
        ),
        "query": Operation("db.query", takes_statement=True),
        "exec": Operation(
            "db.exec", takes_statement=True, row_count=rows_from_result
        ),
        "begin_transaction": Operation("db.transaction.begin"),
        "commit": Operation("db.transaction.commit"),
        "rollback": Operation("db.transaction.rollback"),
    },
    statement_operations={
        "execute": Operation("db.stmt.execute", context_tags=False),
    },
    connection_attributes={
        "platform": "get_database_platform().get_name()",
        "nesting_level": "get_transaction_nesting_level()",
    },
)

DBAL_LEGACY = Profile(
    name="dbal_legacy",
    connection_operations={
        "prepare": Operation(
            "db.prepare", takes_statement=True, returns_statement=True
        ),
        "query": Operation("db.query", takes_statement=True),
        "exec": Operation(
            "db.exec", takes_statement=True, row_count=rows_from_result
        ),
        "execute_query": Operation("db.execute", takes_statement=True),
        "execute_update": Operation(
            "db.execute", takes_statement=True, row_count=rows_from_result
        ),
        "begin_transaction": Operation("db.transaction"),
        "commit": Operation("db.commit"),
        "rollback": Operation("db.rollback"),
    },
    statement_operations={
        "execute": Operation("db.prepare.execute", context_tags=False),
    },
    connection_attributes={
        "database": "get_database()",
        "user": "get_username()",
    },
    database_system="sql",
)

PROFILES = {
    profile.name: profile
    for profile in (DBAPI, DBAL, DBAL_DRIVER, DBAL_LEGACY)
}


def get_profile(profile: Union[str, Profile]) -> Profile:
    if isinstance(profile, Profile):
        return profile
    try:
        return PROFILES[profile]
    except KeyError:
        raise ValueError(
            f"Unknown database profile {profile!r}, "
            f"expected one of {sorted(PROFILES)}"
        ) from None
