"""Topology data model with decoders for the text and JSON/YAML forms."""

from __future__ import annotations

import base64
import binascii
import enum
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, NamedTuple


class Vendor(enum.IntEnum):
    """Device vendor of a topology node.

    Numbers that have no name are accepted and named after their value.
    """

    UNKNOWN = 0
    ARISTA = 1
    CISCO = 2
    HOST = 3
    JUNIPER = 4
    KEYSIGHT = 5
    NOKIA = 6
    OPENCONFIG = 7
    GOBGP = 8

    @classmethod
    def _missing_(cls, value: object) -> Vendor | None:
        if isinstance(value, int) and not isinstance(value, bool):
            member = int.__new__(cls, value)
            member._name_ = str(value)
            member._value_ = value
            return cls._value2member_map_.setdefault(value, member)
        return None

    def __str__(self) -> str:
        return self.name


@dataclass
class Service:
    name: str = ""
    inside: int = 0
    outside: int = 0
    inside_ip: str = ""
    outside_ip: str = ""
    node_port: int = 0


@dataclass
class Interface:
    int_name: str = ""
    peer_name: str = ""
    peer_int_name: str = ""
    uid: int = 0


@dataclass
class SelfSignedCertCfg:
    cert_name: str = ""
    key_name: str = ""
    key_size: int = 0
    common_name: str = ""


@dataclass
class CertificateCfg:
    self_signed: SelfSignedCertCfg | None = None


@dataclass
class Config:
    """Container settings of a node.

    ``file`` and ``data`` are alternatives: at most one may be set.
    """

    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    image: str = ""
    env: dict[str, str] = field(default_factory=dict)
    entry_command: str = ""
    config_path: str = ""
    config_file: str = ""
    file: str = ""
    data: bytes | None = None
    cert: CertificateCfg | None = None
    sleep: int = 0
    init_image: str = ""

    def __post_init__(self) -> None:
        if self.file and self.data is not None:
            raise ValueError("config file and config data are mutually exclusive")


@dataclass
class BoundedInteger:
    min_value: int = 0
    max_value: int = 0


@dataclass
class KernelParam:
    name: str = ""
    bounded_integer: BoundedInteger | None = None


@dataclass
class HostConstraint:
    kernel_constraint: KernelParam | None = None


@dataclass
class Node:
    name: str = ""
    vendor: Vendor = Vendor.UNKNOWN
    model: str = ""
    os: str = ""
    version: str = ""
    config: Config | None = None
    services: dict[int, Service] = field(default_factory=dict)
    interfaces: dict[str, Interface] = field(default_factory=dict)
    constraints: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    host_constraints: list[HostConstraint] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.vendor = Vendor(self.vendor)


@dataclass
class Link:
    a_node: str = ""
    a_int: str = ""
    z_node: str = ""
    z_int: str = ""


@dataclass
class Topology:
    name: str = ""
    nodes: list[Node] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Field schema shared by both decoders.

_STRING = "string"
_INT = "int"
_BYTES = "bytes"
_VENDOR = "vendor"


class _Field(NamedTuple):
    label: str  # "single", "repeated" or "map"
    value_type: Any  # scalar name or message class
    key_type: str = ""


def _single(t: Any) -> _Field:
    return _Field("single", t)


def _repeated(t: Any) -> _Field:
    return _Field("repeated", t)


def _map(key: str, value: Any) -> _Field:
    return _Field("map", value, key)


_SCHEMA: dict[type, dict[str, _Field]] = {
    Topology: {
        "name": _single(_STRING),
        "nodes": _repeated(Node),
        "links": _repeated(Link),
    },
    Link: {
        "a_node": _single(_STRING),
        "a_int": _single(_STRING),
        "z_node": _single(_STRING),
        "z_int": _single(_STRING),
    },
    Node: {
        "name": _single(_STRING),
        "vendor": _single(_VENDOR),
        "model": _single(_STRING),
        "os": _single(_STRING),
        "version": _single(_STRING),
        "config": _single(Config),
        "services": _map(_INT, Service),
        "interfaces": _map(_STRING, Interface),
        "constraints": _map(_STRING, _STRING),
        "labels": _map(_STRING, _STRING),
        "host_constraints": _repeated(HostConstraint),
    },
    Config: {
        "command": _repeated(_STRING),
        "args": _repeated(_STRING),
        "image": _single(_STRING),
        "env": _map(_STRING, _STRING),
        "entry_command": _single(_STRING),
        "config_path": _single(_STRING),
        "config_file": _single(_STRING),
        "file": _single(_STRING),
        "data": _single(_BYTES),
        "cert": _single(CertificateCfg),
        "sleep": _single(_INT),
        "init_image": _single(_STRING),
    },
    Service: {
        "name": _single(_STRING),
        "inside": _single(_INT),
        "outside": _single(_INT),
        "inside_ip": _single(_STRING),
        "outside_ip": _single(_STRING),
        "node_port": _single(_INT),
    },
    Interface: {
        "int_name": _single(_STRING),
        "peer_name": _single(_STRING),
        "peer_int_name": _single(_STRING),
        "uid": _single(_INT),
    },
    CertificateCfg: {"self_signed": _single(SelfSignedCertCfg)},
    SelfSignedCertCfg: {
        "cert_name": _single(_STRING),
        "key_name": _single(_STRING),
        "key_size": _single(_INT),
        "common_name": _single(_STRING),
    },
    HostConstraint: {"kernel_constraint": _single(KernelParam)},
    KernelParam: {
        "name": _single(_STRING),
        "bounded_integer": _single(BoundedInteger),
    },
    BoundedInteger: {
        "min_value": _single(_INT),
        "max_value": _single(_INT),
    },
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_JSON_NAMES: dict[type, dict[str, str]] = {
    cls: {**{_camel(n): n for n in schema}, **{n: n for n in schema}}
    for cls, schema in _SCHEMA.items()
}


def _is_message(value_type: Any) -> bool:
    return isinstance(value_type, type)


def _decode_base64(text: str) -> bytes:
    normalized = text.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 data: {exc}") from exc


def _convert(value_type: Any, value: Any, where: str) -> Any:
    if _is_message(value_type):
        return _build(value_type, value, where)
    if value_type == _STRING:
        if not isinstance(value, str):
            raise ValueError(f"{where}: expected a string, got {value!r}")
        return value
    if value_type == _INT:
        if isinstance(value, bool):
            raise ValueError(f"{where}: expected an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise ValueError(f"{where}: expected an integer, got {value!r}")
    if value_type == _BYTES:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            return _decode_base64(value)
        raise ValueError(f"{where}: expected bytes, got {value!r}")
    if value_type == _VENDOR:
        if isinstance(value, Vendor):
            return value
        if isinstance(value, str):
            try:
                return Vendor[value]
            except KeyError:
                raise ValueError(f"{where}: unknown vendor {value!r}") from None
        if isinstance(value, int) and not isinstance(value, bool):
            return Vendor(value)
        raise ValueError(f"{where}: invalid vendor {value!r}")
    raise TypeError(f"unsupported field type {value_type!r}")


def _build(cls: type, data: Any, where: str) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"{where}: expected an object, got {type(data).__name__}")
    schema = _SCHEMA[cls]
    names = _JSON_NAMES[cls]
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = names.get(key)
        if name is None:
            raise ValueError(f"{where}: unknown field {key!r} in {cls.__name__}")
        if name in kwargs:
            raise ValueError(f"{where}: duplicate field {name!r}")
        if value is None:
            continue
        spec = schema[name]
        path = f"{where}.{name}"
        if spec.label == "repeated":
            if not isinstance(value, (list, tuple)):
                raise ValueError(f"{path}: expected a list")
            kwargs[name] = [_convert(spec.value_type, item, path) for item in value]
        elif spec.label == "map":
            if not isinstance(value, Mapping):
                raise ValueError(f"{path}: expected a mapping")
            kwargs[name] = {
                _convert(spec.key_type, k, path): _convert(spec.value_type, v, path)
                for k, v in value.items()
            }
        else:
            kwargs[name] = _convert(spec.value_type, value, path)
    try:
        return cls(**kwargs)
    except ValueError as exc:
        raise ValueError(f"{where}: {exc}") from exc


def topology_from_dict(data: Mapping[str, Any]) -> Topology:
    """Build a topology from its JSON form (as decoded from JSON or YAML).

    Field names may be given in snake_case or camelCase; unknown fields are
    rejected. Bytes are base64, enums may be names or numbers.
    """
    return _build(Topology, data, "topology")


# ---------------------------------------------------------------------------
# Text format.

_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+|\#[^\n]*)
  | (?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
  | (?P<number>[-+]?(?:0[xX][0-9a-fA-F]+|[0-9]+))(?![A-Za-z0-9_.])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<symbol>[:{}<>\[\],;])
    """,
    re.VERBOSE,
)

_ESCAPE_RE = re.compile(
    r"\\(?:([0-7]{1,3})|[xX]([0-9a-fA-F]{1,2})|(.))|([^\\]+)", re.DOTALL
)

_SIMPLE_ESCAPES = {
    "n": b"\n", "t": b"\t", "r": b"\r", "a": b"\a", "b": b"\b",
    "f": b"\f", "v": b"\v", "\\": b"\\", "'": b"'", '"': b'"', "?": b"?",
}


class _Token(NamedTuple):
    kind: str
    text: str
    line: int


def _tokenize(text: str) -> list[_Token]:
    tokens = []
    pos = 0
    line = 1
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ValueError(f"line {line}: unexpected character {text[pos]!r}")
        kind = match.lastgroup
        if kind != "space":
            tokens.append(_Token(kind, match.group(), line))
        line += match.group().count("\n")
        pos = match.end()
    return tokens


def _unescape(body: str) -> bytes:
    out = bytearray()
    for octal, hexa, simple, plain in _ESCAPE_RE.findall(body):
        if plain:
            out += plain.encode("utf-8")
        elif octal:
            value = int(octal, 8)
            if value > 0xFF:
                raise ValueError(f"octal escape out of range: \\{octal}")
            out.append(value)
        elif hexa:
            out.append(int(hexa, 16))
        elif simple in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[simple]
        else:
            raise ValueError(f"invalid escape sequence \\{simple}")
    return bytes(out)


def _parse_int(text: str) -> int:
    sign = -1 if text.startswith("-") else 1
    digits = text.lstrip("+-")
    if digits[:2].lower() == "0x":
        return sign * int(digits[2:], 16)
    if len(digits) > 1 and digits.startswith("0"):
        return sign * int(digits[1:], 8)
    return sign * int(digits)


class _TextParser:
    def __init__(self, text: str) -> None:
        self._tokens = _tokenize(text)
        self._pos = 0

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _error(self, message: str) -> ValueError:
        tok = self._peek()
        if tok is None:
            line = self._tokens[-1].line if self._tokens else 1
            return ValueError(f"line {line}: {message} (at end of input)")
        return ValueError(f"line {tok.line}: {message}")

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of input")
        self._pos += 1
        return tok

    def _accept(self, symbol: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "symbol" and tok.text == symbol:
            self._pos += 1
            return True
        return False

    def _expect(self, symbol: str) -> None:
        if not self._accept(symbol):
            raise self._error(f"expected {symbol!r}")

    def _open(self) -> str:
        if self._accept("{"):
            return "}"
        if self._accept("<"):
            return ">"
        raise self._error("expected '{' or '<'")

    def parse(self, cls: type) -> dict[str, Any]:
        return self._body(cls, None)

    def _body(self, cls: type, closing: str | None) -> dict[str, Any]:
        schema = _SCHEMA[cls]
        result: dict[str, Any] = {}
        while True:
            tok = self._peek()
            if tok is None:
                if closing is None:
                    return result
                raise self._error(f"missing {closing!r}")
            if tok.kind == "symbol" and tok.text == closing:
                self._pos += 1
                return result
            if tok.kind != "ident":
                raise self._error(f"expected a field name, got {tok.text!r}")
            self._pos += 1
            spec = schema.get(tok.text)
            if spec is None:
                raise ValueError(
                    f"line {tok.line}: unknown field {tok.text!r} in {cls.__name__}"
                )
            self._field(tok.text, spec, result)
            if not self._accept(","):
                self._accept(";")

    def _field(self, name: str, spec: _Field, result: dict[str, Any]) -> None:
        if spec.label == "map" or _is_message(spec.value_type):
            self._accept(":")
        else:
            self._expect(":")
        if self._accept("["):
            if spec.label == "single":
                raise self._error(f"field {name!r} is not repeated")
            values = []
            if not self._accept("]"):
                while True:
                    values.append(self._value(spec))
                    if self._accept("]"):
                        break
                    self._expect(",")
        else:
            values = [self._value(spec)]
        for value in values:
            if spec.label == "single":
                if name in result:
                    raise self._error(f"non-repeated field {name!r} is repeated")
                result[name] = value
            elif spec.label == "repeated":
                result.setdefault(name, []).append(value)
            else:
                key, item = value
                result.setdefault(name, {})[key] = item

    def _value(self, spec: _Field) -> Any:
        if spec.label == "map":
            return self._map_entry(spec)
        if _is_message(spec.value_type):
            return self._body(spec.value_type, self._open())
        return self._scalar(spec.value_type)

    def _map_entry(self, spec: _Field) -> tuple[Any, Any]:
        closing = self._open()
        key: Any = None
        value: Any = None
        while not self._accept(closing):
            tok = self._next()
            if tok.kind == "ident" and tok.text == "key":
                self._expect(":")
                key = self._scalar(spec.key_type)
            elif tok.kind == "ident" and tok.text == "value":
                if _is_message(spec.value_type):
                    self._accept(":")
                    value = self._body(spec.value_type, self._open())
                else:
                    self._expect(":")
                    value = self._scalar(spec.value_type)
            else:
                raise ValueError(f"line {tok.line}: unexpected {tok.text!r} in map entry")
            if not self._accept(","):
                self._accept(";")
        if key is None:
            key = 0 if spec.key_type == _INT else ""
        if value is None:
            value = {} if _is_message(spec.value_type) else _zero(spec.value_type)
        return key, value

    def _scalar(self, value_type: str) -> Any:
        tok = self._next()
        if value_type in (_STRING, _BYTES):
            if tok.kind != "string":
                raise ValueError(f"line {tok.line}: expected a string, got {tok.text!r}")
            raw = _unescape(tok.text[1:-1])
            while (nxt := self._peek()) is not None and nxt.kind == "string":
                self._pos += 1
                raw += _unescape(nxt.text[1:-1])
            if value_type == _BYTES:
                return raw
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValueError(f"line {tok.line}: invalid UTF-8 in string") from exc
        if value_type == _INT:
            if tok.kind != "number":
                raise ValueError(f"line {tok.line}: expected an integer, got {tok.text!r}")
            return _parse_int(tok.text)
        if value_type == _VENDOR:
            if tok.kind == "ident":
                try:
                    return Vendor[tok.text]
                except KeyError:
                    raise ValueError(
                        f"line {tok.line}: unknown vendor {tok.text!r}"
                    ) from None
            if tok.kind == "number":
                return Vendor(_parse_int(tok.text))
            raise ValueError(f"line {tok.line}: invalid vendor {tok.text!r}")
        raise TypeError(f"unsupported field type {value_type!r}")


def _zero(value_type: str) -> Any:
    return {_STRING: "", _INT: 0, _BYTES: b"", _VENDOR: Vendor.UNKNOWN}[value_type]


def parse_text_format(text: str) -> Topology:
    """Parse a topology written in protocol-buffer text format."""
    return _build(Topology, _TextParser(text).parse(Topology), "topology")