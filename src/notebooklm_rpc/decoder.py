"""Schema-directed decoding of positional JSON arrays.

The service encodes messages as arrays: a field's meaning is its position.
A ``Schema`` is a first-class table mapping positions to typed fields, so a
new field index is a data change, not a code change::

    SOURCE = Schema("Source", [
        FieldSpec("title", 1, FieldKind.SCALAR, type=str),
        FieldSpec("source_type", 4, FieldKind.ENUM, enum=constants.SOURCE_TYPES),
    ])
    record = decode(["id", "My doc", None, None, 5], SOURCE)

Trailing fields are routinely omitted by the service when empty, so a
short array decodes with zero values. Extra trailing elements are ignored.
"""

import dataclasses
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .constants import CodeMapper
from .exceptions import SchemaMismatchError

logger = logging.getLogger("notebooklm_rpc.decoder")

SCALAR_TYPES = (str, int, float, bool)

_ZERO_SCALARS = {str: "", int: 0, float: 0.0, bool: False}


class FieldKind(str, Enum):
    SCALAR = "scalar"
    MESSAGE = "message"
    REPEATED_SCALAR = "repeated_scalar"
    REPEATED_MESSAGE = "repeated_message"
    ENUM = "enum"


@dataclasses.dataclass(frozen=True)
class UnknownEnum:
    """An enum code the table does not know yet; ``raw`` keeps the wire value."""
    raw: int

    name = "unknown"

    def __str__(self) -> str:
        return f"unknown({self.raw})"


@dataclasses.dataclass(frozen=True)
class FieldSpec:
    """Meaning of one array position."""
    name: str
    index: int
    kind: FieldKind = FieldKind.SCALAR
    type: "type | None" = None
    schema: "Schema | None" = None
    enum: CodeMapper | None = None

    def __post_init__(self):
        if not self.name.isidentifier():
            raise ValueError(f"field name {self.name!r} is not an identifier")
        if self.index < 0:
            raise ValueError(f"field {self.name}: index must be >= 0")

        is_message = self.kind in (FieldKind.MESSAGE, FieldKind.REPEATED_MESSAGE)
        if is_message != (self.schema is not None):
            raise ValueError(f"field {self.name}: nested schema is required for (and only for) message kinds")
        if (self.kind is FieldKind.ENUM) != (self.enum is not None):
            raise ValueError(f"field {self.name}: enum table is required for (and only for) the enum kind")
        if self.kind in (FieldKind.SCALAR, FieldKind.REPEATED_SCALAR):
            if self.type not in SCALAR_TYPES:
                raise ValueError(f"field {self.name}: scalar type must be one of str, int, float, bool")
        elif self.type is not None:
            raise ValueError(f"field {self.name}: type only applies to scalar kinds")

    def zero(self) -> Any:
        if self.kind in (FieldKind.REPEATED_SCALAR, FieldKind.REPEATED_MESSAGE):
            return []
        if self.kind is FieldKind.SCALAR:
            return _ZERO_SCALARS[self.type]
        return None

    @property
    def expected(self) -> str:
        if self.kind is FieldKind.SCALAR:
            return self.type.__name__
        if self.kind is FieldKind.REPEATED_SCALAR:
            return f"array of {self.type.__name__}"
        if self.kind is FieldKind.MESSAGE:
            return f"{self.schema.name} array"
        if self.kind is FieldKind.REPEATED_MESSAGE:
            return f"array of {self.schema.name} arrays"
        return "enum integer"


class Schema:
    """Ordered set of fields, unique by index and by name.

    When no ``record_type`` is given, a frozen dataclass named after the
    schema is generated, with one attribute per field.
    """

    def __init__(self, name: str, fields: Iterable[FieldSpec], record_type: type | None = None):
        self.name = name
        self.fields: tuple[FieldSpec, ...] = tuple(sorted(fields, key=lambda f: f.index))

        seen_index: set[int] = set()
        seen_name: set[str] = set()
        for spec in self.fields:
            if spec.index in seen_index:
                raise ValueError(f"schema {name}: duplicate index {spec.index}")
            if spec.name in seen_name:
                raise ValueError(f"schema {name}: duplicate field name {spec.name!r}")
            seen_index.add(spec.index)
            seen_name.add(spec.name)

        self.record_type = record_type or self._make_record_type()

    def _make_record_type(self) -> type:
        record_fields = []
        for spec in self.fields:
            if spec.kind in (FieldKind.REPEATED_SCALAR, FieldKind.REPEATED_MESSAGE):
                default = dataclasses.field(default_factory=list)
            else:
                default = dataclasses.field(default=spec.zero())
            record_fields.append((spec.name, Any, default))
        return dataclasses.make_dataclass(self.name, record_fields, frozen=True)

    @property
    def max_index(self) -> int:
        return self.fields[-1].index if self.fields else -1

    def field_at(self, index: int) -> FieldSpec | None:
        for spec in self.fields:
            if spec.index == index:
                return spec
        return None

    def field_named(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def zero_record(self) -> Any:
        return self.record_type(**{spec.name: spec.zero() for spec in self.fields})

    def __repr__(self) -> str:
        layout = ", ".join(f"{f.index}:{f.name}" for f in self.fields)
        return f"Schema({self.name}: {layout})"


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def _check_scalar(value: Any, expected: type) -> bool:
    if expected is bool:
        return isinstance(value, bool)
    if isinstance(value, bool):
        # bool is an int subclass in Python but never a number on the wire
        return False
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


class _Decoder:
    def __init__(self, diagnostics: logging.Logger):
        self.log = diagnostics

    def message(self, raw: Any, schema: Schema, path: str) -> Any:
        if raw is None:
            return schema.zero_record()
        if not isinstance(raw, list):
            raise SchemaMismatchError(path, None, f"{schema.name} array", _type_name(raw))

        if len(raw) > schema.max_index + 1 and self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "%s: ignoring %d trailing element(s) beyond index %d",
                path or schema.name, len(raw) - schema.max_index - 1, schema.max_index,
            )

        values = {}
        for spec in schema.fields:
            value = raw[spec.index] if spec.index < len(raw) else None
            values[spec.name] = self.field(value, spec, f"{path}.{spec.name}" if path else spec.name)
        return schema.record_type(**values)

    def field(self, value: Any, spec: FieldSpec, path: str) -> Any:
        if value is None:
            return spec.zero()

        if spec.kind is FieldKind.SCALAR:
            return self.scalar(value, spec, path)

        if spec.kind is FieldKind.ENUM:
            return self.enum(value, spec, path)

        if spec.kind is FieldKind.MESSAGE:
            if not isinstance(value, list):
                raise SchemaMismatchError(path, spec.index, spec.expected, _type_name(value))
            return self.message(value, spec.schema, path)

        if not isinstance(value, list):
            raise SchemaMismatchError(path, spec.index, spec.expected, _type_name(value))

        if spec.kind is FieldKind.REPEATED_SCALAR:
            return self.repeated_scalar(value, spec, path)

        items = []
        for i, item in enumerate(value):
            item_path = f"{path}[{i}]"
            if item is not None and not isinstance(item, list):
                raise SchemaMismatchError(item_path, spec.index, f"{spec.schema.name} array", _type_name(item))
            items.append(self.message(item, spec.schema, item_path))
        return items

    def repeated_scalar(self, value: list, spec: FieldSpec, path: str) -> list:
        zero = _ZERO_SCALARS[spec.type]
        return [
            zero if item is None else self.scalar(item, spec, f"{path}[{i}]")
            for i, item in enumerate(value)
        ]

    def scalar(self, value: Any, spec: FieldSpec, path: str) -> Any:
        if not _check_scalar(value, spec.type):
            raise SchemaMismatchError(path, spec.index, spec.type.__name__, _type_name(value))
        if spec.type is float:
            return float(value)
        return value

    def enum(self, value: Any, spec: FieldSpec, path: str) -> Any:
        if isinstance(value, bool) or not isinstance(value, int):
            raise SchemaMismatchError(path, spec.index, "enum integer", _type_name(value))
        name = spec.enum.lookup(value)
        if name is None:
            self.log.debug("%s: unknown enum code %d", path, value)
            return UnknownEnum(value)
        return name


def decode(raw: Any, schema: Schema, diagnostics: logging.Logger | None = None) -> Any:
    """Decode a positional JSON value into a record of ``schema.record_type``.

    Args:
        raw: The payload, an array or ``None``.
        schema: Field layout of the expected message.
        diagnostics: Logger receiving debug notes (unknown enum codes,
            ignored trailing elements). Defaults to the module logger.

    Raises:
        SchemaMismatchError: A present value has an incompatible shape or type.
    """
    return _Decoder(diagnostics or logger).message(raw, schema, "")


def decode_many(raw: Any, schema: Schema, diagnostics: logging.Logger | None = None) -> list:
    """Decode an array of messages (``None`` decodes to an empty list)."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise SchemaMismatchError("", None, f"array of {schema.name} arrays", _type_name(raw))
    decoder = _Decoder(diagnostics or logger)
    return [decoder.message(item, schema, f"[{i}]") for i, item in enumerate(raw)]


def parse_timestamp(ts_array: list | None) -> str | None:
    """Convert [seconds, nanoseconds] timestamp array to ISO format string."""
    if not ts_array or not isinstance(ts_array, list) or len(ts_array) < 1:
        return None

    try:
        seconds = ts_array[0]
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
            return None

        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
    except (ValueError, OSError, OverflowError):
        return None
