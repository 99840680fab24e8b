"""Query template expansion with Jinja2.

``{{ name }}`` outputs are converted to engine literals automatically, so
``WHERE city = {{ city }}`` renders as ``WHERE city = 'Oslo'``.  Use
``| ident`` for identifiers and ``| raw`` to splice text verbatim.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

_QUOTE_ESCAPE = str.maketrans({"'": "''"})


class SqlLiteral(str):
    """Text already converted to engine syntax; passed through unchanged."""


def value_to_literal(value: Any) -> str:
    """Convert a Python value to the engine's literal syntax."""
    if isinstance(value, SqlLiteral):
        return value
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int | float | Decimal):
        return str(value)
    if isinstance(value, datetime):
        return f"TIMESTAMP '{value.isoformat(sep=' ')}'"
    if isinstance(value, date):
        return f"DATE '{value.isoformat()}'"
    if isinstance(value, time):
        return f"TIME '{value.isoformat()}'"
    if isinstance(value, list | tuple):
        return "[" + ", ".join(value_to_literal(item) for item in value) + "]"
    if isinstance(value, dict):
        fields = ", ".join(
            f"'{str(key).translate(_QUOTE_ESCAPE)}': {value_to_literal(item)}"
            for key, item in value.items()
        )
        return "{" + fields + "}"
    return "'" + str(value).translate(_QUOTE_ESCAPE) + "'"


def _literal_filter(value: Any) -> SqlLiteral:
    return SqlLiteral(value_to_literal(value))


def _ident_filter(value: Any) -> SqlLiteral:
    name = str(value).replace('"', '""')
    return SqlLiteral(f'"{name}"')


def _raw_filter(value: Any) -> SqlLiteral:
    return SqlLiteral(str(value))


def _json_filter(value: Any) -> SqlLiteral:
    return SqlLiteral(value_to_literal(json.dumps(value, default=str)))


def _finalize(value: Any) -> str:
    return value_to_literal(value)


_ENV = Environment(
    autoescape=False,
    undefined=StrictUndefined,
    finalize=_finalize,
    keep_trailing_newline=True,
)
_ENV.filters.update(
    {
        "literal": _literal_filter,
        "ident": _ident_filter,
        "raw": _raw_filter,
        "json": _json_filter,
    }
)


def expand_template(body: str, params: dict[str, Any] | None = None) -> str:
    """Render *body* with *params*; bodies without template syntax pass through."""
    if "{{" not in body and "{%" not in body:
        return body
    try:
        return _ENV.from_string(body).render(**(params or {}))
    except TemplateError as e:
        raise ValueError(f"Query template error: {e}. Params: {sorted(params or {})}") from e
