# File: pgforge/type_mapping.py
"""
pgforge - PostgreSQL to Python Type Mapping
============================================
Pure mapping from (database type name, nullability, array-ness) to the
annotation used in generated code.

Rules:

- Nullable values are always wrapped in ``Optional[...]``, so a nullable
  column never shares a representation with its NOT NULL counterpart.
- Arrays become ``List[element]``.  Array-ness is independent of
  nullability: a nullable ``text[]`` is ``Optional[List[str]]``.
- Unknown types fall back to ``bytes`` with a logged warning instead of
  failing the run; the descriptor is flagged ``known=False``.
- ``json`` / ``jsonb`` values are bound through an adapter
  (``TypeDescriptor.adapter``), since psycopg cannot send a bare ``dict``.
- ``inet`` and ``cidr`` map to the ``ipaddress`` types psycopg loads them as.
- Only a NOT NULL, non-array ``uuid`` can key cursor pagination.

Both the information_schema spelling (``character varying``, ``timestamp
with time zone``) and the pg_type spelling (``varchar``, ``timestamptz``)
are accepted, because tables are introspected through the former and
query results are described through the latter.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

from pgforge.models import TypeDescriptor

# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------
logger: logging.Logger = logging.getLogger("pgforge.type_mapping")

# ---------------------------------------------------------------------------
# Fixed mapping table
# ---------------------------------------------------------------------------

_ImportSpec = Tuple[Tuple[str, str], ...]

_UUID: Tuple[str, _ImportSpec] = ("UUID", (("uuid", "UUID"),))
_STR: Tuple[str, _ImportSpec] = ("str", ())
_INT: Tuple[str, _ImportSpec] = ("int", ())
_FLOAT: Tuple[str, _ImportSpec] = ("float", ())
_DECIMAL: Tuple[str, _ImportSpec] = ("Decimal", (("decimal", "Decimal"),))
_BOOL: Tuple[str, _ImportSpec] = ("bool", ())
_DATE: Tuple[str, _ImportSpec] = ("date", (("datetime", "date"),))
_TIME: Tuple[str, _ImportSpec] = ("time", (("datetime", "time"),))
_DATETIME: Tuple[str, _ImportSpec] = ("datetime", (("datetime", "datetime"),))
_TIMEDELTA: Tuple[str, _ImportSpec] = ("timedelta", (("datetime", "timedelta"),))
_JSON: Tuple[str, _ImportSpec] = ("Any", (("typing", "Any"),))
_BYTES: Tuple[str, _ImportSpec] = ("bytes", ())
_INET: Tuple[str, _ImportSpec] = (
    "Union[IPv4Interface, IPv6Interface, IPv4Address, IPv6Address]",
    (
        ("ipaddress", "IPv4Address"),
        ("ipaddress", "IPv4Interface"),
        ("ipaddress", "IPv6Address"),
        ("ipaddress", "IPv6Interface"),
        ("typing", "Union"),
    ),
)
_CIDR: Tuple[str, _ImportSpec] = (
    "Union[IPv4Network, IPv6Network]",
    (("ipaddress", "IPv4Network"), ("ipaddress", "IPv6Network"), ("typing", "Union")),
)

_BASE_TYPES: Dict[str, Tuple[str, _ImportSpec]] = {
    # Identifiers
    "uuid": _UUID,
    # Character
    "text": _STR,
    "varchar": _STR,
    "character varying": _STR,
    "char": _STR,
    "character": _STR,
    "bpchar": _STR,
    "citext": _STR,
    "name": _STR,
    # Integer
    "smallint": _INT,
    "int2": _INT,
    "integer": _INT,
    "int": _INT,
    "int4": _INT,
    "bigint": _INT,
    "int8": _INT,
    "smallserial": _INT,
    "serial": _INT,
    "bigserial": _INT,
    "oid": _INT,
    # Floating point / exact numeric
    "real": _FLOAT,
    "float4": _FLOAT,
    "double precision": _FLOAT,
    "float8": _FLOAT,
    "numeric": _DECIMAL,
    "decimal": _DECIMAL,
    "money": _DECIMAL,
    # Boolean
    "boolean": _BOOL,
    "bool": _BOOL,
    # Date / time
    "date": _DATE,
    "time": _TIME,
    "time without time zone": _TIME,
    "timetz": _TIME,
    "time with time zone": _TIME,
    "timestamp": _DATETIME,
    "timestamp without time zone": _DATETIME,
    "timestamptz": _DATETIME,
    "timestamp with time zone": _DATETIME,
    "interval": _TIMEDELTA,
    # Documents
    "json": _JSON,
    "jsonb": _JSON,
    "xml": _STR,
    # Network
    "inet": _INET,
    "cidr": _CIDR,
    "macaddr": _STR,
    "macaddr8": _STR,
    # Binary
    "bytea": _BYTES,
}

# Types that can key cursor pagination (monotonic, 16-byte encodable).
_PAGINATION_KEY_TYPES: frozenset = frozenset({"uuid"})

# Types whose bound values need runtime.json_param.
_JSON_ADAPTERS: Dict[str, str] = {"json": "json", "jsonb": "jsonb"}

_LENGTH_MODIFIER_RE: re.Pattern[str] = re.compile(r"\s*\([^)]*\)")
_ARRAY_SUFFIX_RE: re.Pattern[str] = re.compile(r"(\[\])+$")


def normalize_type_name(db_type: str) -> Tuple[str, bool]:
    """
    Canonicalize a type name and report whether it denotes an array.

    ``varchar(255)`` -> (``varchar``, False); ``text[]`` -> (``text``, True);
    ``_int4`` (pg_type array spelling) -> (``int4``, True).
    """
    name: str = db_type.strip().lower()
    is_array: bool = False

    if _ARRAY_SUFFIX_RE.search(name):
        name = _ARRAY_SUFFIX_RE.sub("", name)
        is_array = True
    elif name.startswith("_") and name[1:] in _BASE_TYPES:
        name = name[1:]
        is_array = True

    name = _LENGTH_MODIFIER_RE.sub("", name)
    # "timestamp(3) with time zone" leaves a double space behind.
    name = " ".join(name.split())
    if name.startswith("pg_catalog."):
        name = name[len("pg_catalog."):]
    return name, is_array


def _parse_override(python_type: str) -> Tuple[str, _ImportSpec]:
    """``'ipaddress.IPv4Address'`` -> (``IPv4Address``, ((``ipaddress``, ``IPv4Address``),))."""
    text: str = python_type.strip()
    if "." not in text:
        return text, ()
    module, _, name = text.rpartition(".")
    return name, ((module, name),)


class TypeMapper:
    """
    Mapper with optional user overrides (``types.mappings`` in config).

    Stateless apart from the immutable override table, so one instance can
    be shared across every table and query of a run.
    """

    __slots__ = ("_overrides",)

    def __init__(self, overrides: Optional[Mapping[str, str]] = None) -> None:
        self._overrides: Dict[str, Tuple[str, _ImportSpec]] = {}
        for db_type, python_type in sorted((overrides or {}).items()):
            key, _ = normalize_type_name(db_type)
            self._overrides[key] = _parse_override(python_type)
        if self._overrides:
            logger.debug("TypeMapper overrides: %s", sorted(self._overrides))

    def map_type(self, db_type: str, nullable: bool, is_array: bool = False) -> TypeDescriptor:
        """
        Map one database type.

        *is_array* is OR-ed with any array marker in *db_type* itself, so
        both ``("text", is_array=True)`` and ``("text[]", False)`` work.
        """
        name, marked_array = normalize_type_name(db_type)
        array: bool = is_array or marked_array

        known: bool = True
        adapter: Optional[str] = None
        spec: Optional[Tuple[str, _ImportSpec]] = self._overrides.get(name)
        if spec is None:
            spec = _BASE_TYPES.get(name)
            adapter = _JSON_ADAPTERS.get(name)
        if spec is None:
            known = False
            spec = _BYTES
            logger.warning(
                "Unknown database type '%s'; mapping it to opaque bytes.", db_type
            )

        base_type, import_spec = spec
        imports: List[Tuple[str, str]] = list(import_spec)

        annotation: str = base_type
        if array:
            annotation = f"List[{annotation}]"
            imports.append(("typing", "List"))
        if nullable:
            annotation = f"Optional[{annotation}]"
            imports.append(("typing", "Optional"))

        return TypeDescriptor(
            db_type=name,
            base_type=base_type,
            annotation=annotation,
            imports=tuple(sorted(set(imports))),
            nullable=nullable,
            is_array=array,
            pagination_key=(name in _PAGINATION_KEY_TYPES and not nullable and not array),
            known=known,
            adapter=adapter,
        )

    def is_known(self, db_type: str) -> bool:
        name, _ = normalize_type_name(db_type)
        return name in self._overrides or name in _BASE_TYPES


_DEFAULT_MAPPER: TypeMapper = TypeMapper()


def map_type(db_type: str, nullable: bool, is_array: bool = False) -> TypeDescriptor:
    """Map a type with the built-in table only (no overrides)."""
    return _DEFAULT_MAPPER.map_type(db_type, nullable, is_array)


def is_uuid_type(db_type: str) -> bool:
    name, is_array = normalize_type_name(db_type)
    return name == "uuid" and not is_array


__all__: List[str] = [
    "TypeMapper",
    "map_type",
    "normalize_type_name",
    "is_uuid_type",
]

logger.debug("pgforge.type_mapping loaded.")
