"""Rendering of command results and errors for the terminal.

Every command produces one :data:`OutputValue`; :func:`render` turns it into
the bytes written to stdout or stderr. Human formats escape non-printable
characters so output stays safe for terminals and line-oriented tools.
"""

from __future__ import annotations

import json
import re
import traceback
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Union,
)

from .errors import KeyholdError, RemoteError

INDENT = "  "
NOT_AVAILABLE = "N/A"
MIN_COLUMN_WIDTH = len(NOT_AVAILABLE)
MAX_CAUSE_DEPTH = 64

ENCODE_ESCAPED_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
DECODE_ESCAPED_RE = re.compile(r"\\(?:([nrtvf])|u([0-9a-fA-F]{4}))")
TRAILING_BREAK_RE = re.compile(r"(?:\r\n|\n)\Z")
LINE_BREAK_RE = re.compile(r"\r\n|\n")

_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\v": "\\v", "\f": "\\f"}
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t", "v": "\v", "f": "\f"}


@dataclass(frozen=True)
class TableOptions:
    """Options for table output.

    ``columns`` selects and orders the columns. A mapping of column name to
    width sets minimum widths and receives the computed widths, which lets
    a caller render a table in several batches. With ``lock_widths`` the
    mapping's widths are used as they are.
    """

    columns: Union[Sequence[str], MutableMapping[str, int], None] = None
    include_headers: bool = True
    include_row_count: bool = False
    row_offset: int = 0
    lock_widths: bool = False


@dataclass(frozen=True)
class RawOutput:
    data: Union[bytes, str]


@dataclass(frozen=True)
class ListOutput:
    data: Sequence[Optional[str]]


@dataclass(frozen=True)
class TableOutput:
    data: Sequence[Mapping[str, Any]]
    options: TableOptions = field(default_factory=TableOptions)


@dataclass(frozen=True)
class DictOutput:
    data: Mapping[str, Any]


@dataclass(frozen=True)
class JsonOutput:
    data: Any


@dataclass(frozen=True)
class ErrorOutput:
    data: BaseException


OutputValue = Union[RawOutput, ListOutput, TableOutput, DictOutput, JsonOutput, ErrorOutput]


def _escape_char(match: "re.Match[str]") -> str:
    char = match.group(0)
    return _ESCAPES.get(char) or f"\\u{ord(char):04x}"


def _unescape(match: "re.Match[str]") -> str:
    if match.group(1):
        return _UNESCAPES[match.group(1)]
    return chr(int(match.group(2), 16))


def encode_escaped(value: str) -> str:
    """Escape control characters; ``\\n \\r \\t \\v \\f`` keep their short form."""

    return ENCODE_ESCAPED_RE.sub(_escape_char, value)


def decode_escaped(value: str) -> str:
    return DECODE_ESCAPED_RE.sub(_unescape, value)


def encode_escaped_wrapped(value: str) -> str:
    """Like :func:`encode_escaped`, but quote the result if anything changed."""

    if not ENCODE_ESCAPED_RE.search(value):
        return value
    return f'"{encode_escaped(value)}"'


def decode_escaped_wrapped(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"' and DECODE_ESCAPED_RE.search(value):
        return decode_escaped(value[1:-1])
    return value


def _encode_structure(value: Any) -> Any:
    if isinstance(value, str):
        return encode_escaped(value)
    if isinstance(value, Mapping):
        return {
            encode_escaped(key) if isinstance(key, str) else key: _encode_structure(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_encode_structure(item) for item in value]
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, PurePath):
        return str(value)
    return str(value)


def _dumps(value: Any, default=_json_default) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=default)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def format_list(items: Iterable[Optional[str]]) -> str:
    output = []
    for item in items:
        output.append("" if item is None else encode_escaped(str(item)))
        output.append("\n")
    return "".join(output)


def _encode_cell(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return encode_escaped_wrapped(value)
    return _dumps(_encode_structure(value))


def format_table(rows: Iterable[Mapping[str, Any]], options: Optional[TableOptions] = None) -> str:
    options = options or TableOptions()
    columns = options.columns
    widths: Dict[str, int] = {}
    if isinstance(columns, Mapping):
        for column, width in columns.items():
            widths[column] = width or 0
    elif columns is not None:
        for column in columns:
            widths[column] = 0

    encoded_rows: List[Dict[str, Optional[str]]] = []
    for row in rows:
        encoded: Dict[str, Optional[str]] = {}
        for column in list(widths) if columns is not None else row.keys():
            encoded[column] = _encode_cell(row.get(column))
            widths.setdefault(column, 0)
        encoded_rows.append(encoded)

    headers = {column: encode_escaped_wrapped(column) for column in widths}
    for column in widths:
        if options.lock_widths and widths[column] > 0:
            continue
        width = max(widths[column], MIN_COLUMN_WIDTH, len(headers[column]))
        for encoded in encoded_rows:
            width = max(width, len(encoded.get(column) or NOT_AVAILABLE))
        widths[column] = width
    if isinstance(columns, MutableMapping):
        columns.update(widths)

    lines = []
    if options.include_headers and widths:
        lines.append("\t".join(headers[column].ljust(widths[column]) for column in widths))
    for ordinal, encoded in enumerate(encoded_rows, start=options.row_offset + 1):
        cells = "\t".join(
            (encoded.get(column) or NOT_AVAILABLE).ljust(widths[column]) for column in widths
        )
        if options.include_row_count:
            cells = f"{ordinal}\t{cells}"
        lines.append(cells.rstrip())
    return "".join(f"{line}\n" for line in lines)


class TableStream:
    """Render a table in batches without re-flowing earlier rows.

    The first batch with any columns fixes their widths and carries the
    header; later batches reuse those widths and continue the row count.
    Without explicit columns, a column first seen in a later batch is added
    to the right and sized by that batch.
    """

    def __init__(
        self,
        columns: Optional[Sequence[str]] = None,
        *,
        include_headers: bool = True,
        include_row_count: bool = False,
    ) -> None:
        self._widths: Dict[str, int] = dict.fromkeys(columns, 0) if columns is not None else {}
        self._fixed_columns = columns is not None
        self._include_headers = include_headers
        self._include_row_count = include_row_count
        self._rows_emitted = 0
        self._started = False

    @property
    def widths(self) -> Dict[str, int]:
        return dict(self._widths)

    def render(self, rows: Iterable[Mapping[str, Any]]) -> bytes:
        rows = list(rows)
        if not self._fixed_columns:
            for row in rows:
                for column in row:
                    self._widths.setdefault(column, 0)
        if not self._widths:
            # Nothing to lay out yet, so the header waits for the next batch.
            self._rows_emitted += len(rows)
            return render(TableOutput(rows, TableOptions(columns={}, include_headers=False)))
        # Columns first seen in this batch have no width yet and get one here.
        options = TableOptions(
            columns=self._widths,
            include_headers=self._include_headers and not self._started,
            include_row_count=self._include_row_count,
            row_offset=self._rows_emitted,
            lock_widths=self._started,
        )
        self._started = True
        self._rows_emitted += len(rows)
        return render(TableOutput(rows, options))


def _format_scalar(value: Any) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, str):
        text = encode_escaped_wrapped(value)
    else:
        text = encode_escaped(_dumps(value))
    text = TRAILING_BREAK_RE.sub("", text)
    return LINE_BREAK_RE.sub(lambda match: f"{match.group(0)}\t", text)


def _dict_lines(data: Mapping[str, Any], indent: str) -> Iterator[str]:
    pairs = [(encode_escaped_wrapped(str(key)), value) for key, value in data.items()]
    width = max((len(key) for key, _ in pairs), default=0)
    for key, value in pairs:
        if isinstance(value, Mapping):
            yield f"{indent}{key}{' ' * (width - len(key))}\t"
            yield from _dict_lines(value, indent + INDENT)
        elif _is_sequence(value):
            yield f"{indent}{key}{' ' * (width - len(key))}\t"
            yield from _sequence_lines(value, indent + INDENT)
        else:
            yield f"{indent}{key}{' ' * (width - len(key))}\t{_format_scalar(value)}"


def _sequence_lines(items: Sequence[Any], indent: str) -> Iterator[str]:
    for item in items:
        if isinstance(item, Mapping):
            yield f"{indent}-"
            yield from _dict_lines(item, indent + INDENT)
        elif _is_sequence(item):
            yield f"{indent}-"
            yield from _sequence_lines(item, indent + INDENT)
        else:
            yield f"{indent}- {_format_scalar(item)}"


def format_dict(data: Mapping[str, Any]) -> str:
    return "".join(f"{line}\n" for line in _dict_lines(data, ""))


def standard_error_replacer(error: BaseException) -> Dict[str, Any]:
    """JSON form of an exception outside the :class:`KeyholdError` family."""

    data: Dict[str, Any] = {"message": str(error)}
    if error.__traceback__ is not None:
        data["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    if error.__cause__ is not None:
        data["cause"] = error.__cause__
    return {"type": type(error).__name__, "data": data}


def format_json(value: Any) -> str:
    seen = set()

    def default(obj: Any) -> Any:
        if isinstance(obj, BaseException):
            if id(obj) in seen:
                return {"type": _error_name(obj), "data": {"message": str(obj)}}
            seen.add(id(obj))
            if isinstance(obj, KeyholdError):
                return obj.to_json()
            return standard_error_replacer(obj)
        return _json_default(obj)

    return _dumps(value, default=default) + "\n"


def _error_name(error: BaseException) -> str:
    if isinstance(error, KeyholdError):
        return error.name
    return type(error).__name__


def _headline(error: KeyholdError) -> str:
    line = f"{error.name}: {error.description}"
    if error.message:
        line += f" - {error.message}"
    return line


def _foreign_line(error: BaseException) -> str:
    message = str(error)
    return f"{type(error).__name__}: {message}\n" if message else f"{type(error).__name__}\n"


def format_error(error: BaseException) -> str:
    """Walk the ``__cause__`` chain, outermost error first."""

    output: List[str] = []
    indent = INDENT
    current: Optional[BaseException] = error
    seen = set()
    while current is not None:
        if len(seen) >= MAX_CAUSE_DEPTH or id(current) in seen:
            output.append("...\n")
            break
        seen.add(id(current))
        if isinstance(current, RemoteError):
            output.append(_headline(current) + "\n")
            for key, value in current.metadata.items():
                output.append(f"{indent}{key}\t{value}\n")
            output.append(f"{indent}timestamp\t{current.timestamp.isoformat()}\n")
            current = current.__cause__
            if current is not None:
                output.append(f"{indent}cause: ")
        elif isinstance(current, KeyholdError):
            output.append(_headline(current) + "\n")
            if current.data:
                output.append(f"{indent}data\t{_dumps(current.data)}\n")
            cause = current.__cause__
            if cause is None:
                break
            output.append(f"{indent}cause: ")
            if not isinstance(cause, KeyholdError):
                output.append(_foreign_line(cause))
                break
            current = cause
        else:
            output.append(_foreign_line(current))
            break
        indent += INDENT
    return "".join(output)


def render(value: OutputValue) -> bytes:
    if isinstance(value, RawOutput):
        data = value.data
        return data if isinstance(data, bytes) else data.encode("utf-8")
    if isinstance(value, ListOutput):
        text = format_list(value.data)
    elif isinstance(value, TableOutput):
        text = format_table(value.data, value.options)
    elif isinstance(value, DictOutput):
        text = format_dict(value.data)
    elif isinstance(value, JsonOutput):
        text = format_json(value.data)
    elif isinstance(value, ErrorOutput):
        text = format_error(value.data)
    else:
        raise TypeError(f"unsupported output value: {value!r}")
    return text.encode("utf-8")
