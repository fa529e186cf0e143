from __future__ import annotations

"""JSON-like value types used at the checking-service wire boundary.

The service answers with JSON and receives a form whose ``data`` field is a
JSON document; these aliases keep both sides declared as JSON-compatible.
"""

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
FormFields: TypeAlias = dict[str, str]
