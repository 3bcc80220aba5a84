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

"""Span tags describing a single database operation.

Each constructor returns a :class:`Tag`, or ``None`` when the value is not
known. ``None`` tags are skipped when attached to a span, so callers can
chain constructors without checking the values first.
"""

from __future__ import annotations

from typing import Any, NamedTuple, Optional, Union

from opentelemetry.semconv.trace import SpanAttributes

DB_AUTO_COMMIT = "db.auto_commit"
DB_TRANSACTION_NESTING_LEVEL = "db.transaction.nesting_level"
DB_ROWS = "db.rows"
DB_ERROR_CODE = "db.error"
DB_STATEMENT_PARAMETERS = "db.statement.parameters"
ERROR = "error"

TagValue = Union[str, bool, int, float]

# Checked in order; drivers expose the server error code under different names.
_ERROR_CODE_ATTRIBUTES = (
    "sqlstate",
    "pgcode",
    "sqlite_errorcode",
    "errno",
    "code",
)


class Tag(NamedTuple):
    key: str
    value: TagValue


def _coerce(value: Any) -> TagValue:
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        # PyMySQL hands out database and user names as bytes
        return bytes(value).decode("utf8", "replace")
    return str(value)


def make_tag(key: str, value: Any) -> Optional[Tag]:
    if value is None:
        return None
    return Tag(key, _coerce(value))


def database_tag(value: Any) -> Optional[Tag]:
    if not value:
        return None
    return make_tag(SpanAttributes.DB_NAME, value)


def user_tag(value: Any) -> Optional[Tag]:
    return make_tag(SpanAttributes.DB_USER, value)


def system_tag(value: Any) -> Optional[Tag]:
    if not value:
        return None
    return make_tag(SpanAttributes.DB_SYSTEM, value)


def host_tag(value: Any) -> Optional[Tag]:
    return make_tag(SpanAttributes.NET_PEER_NAME, value)


def port_tag(value: Any) -> Optional[Tag]:
    return make_tag(SpanAttributes.NET_PEER_PORT, value)


def statement_tag(
    statement: Any, max_length: Optional[int] = None
) -> Optional[Tag]:
    if statement is None:
        return None
    return Tag(
        SpanAttributes.DB_STATEMENT, truncate_sql(statement, max_length)
    )


def parameters_tag(parameters: Any) -> Optional[Tag]:
    if parameters is None:
        return None
    return Tag(DB_STATEMENT_PARAMETERS, str(parameters))


def auto_commit_tag(value: Any) -> Optional[Tag]:
    # sqlite3 reports LEGACY_TRANSACTION_CONTROL (-1) through the same attribute
    if not isinstance(value, bool):
        return None
    return Tag(DB_AUTO_COMMIT, value)


def nesting_level_tag(value: Any) -> Optional[Tag]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return Tag(DB_TRANSACTION_NESTING_LEVEL, value)


def row_count_tag(value: Any) -> Optional[Tag]:
    # PEP 249 uses -1 for "not determined"
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return Tag(DB_ROWS, value)


def error_code_tag(exc: BaseException) -> Tag:
    return Tag(DB_ERROR_CODE, error_code(exc))


def error_tag() -> Tag:
    return Tag(ERROR, True)


def error_code(exc: BaseException) -> str:
    """Best effort driver error code of ``exc``.

    Falls back to the first argument when it is an integer (MySQL drivers
    raise ``OperationalError(1045, "...")``) and to the exception class name
    when nothing better is available.
    """
    for attribute in _ERROR_CODE_ATTRIBUTES:
        code = getattr(exc, attribute, None)
        if code is not None and code != "":
            return str(code)
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], int) and not isinstance(args[0], bool):
        return str(args[0])
    return type(exc).__name__


def truncate_sql(statement: Any, max_length: Optional[int] = None) -> str:
    if isinstance(statement, (bytes, bytearray)):
        statement = bytes(statement).decode("utf8", "replace")
    elif not isinstance(statement, str):
        statement = str(statement)
    if max_length is None:
        return statement
    return statement[:max_length]
