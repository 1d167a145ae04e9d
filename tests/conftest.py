from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import struct
import zipfile

import pytest

FIXED_TIME = (2020, 1, 2, 3, 4, 6)


class _Pool:
    def __init__(self) -> None:
        self.entries: list[bytes] = []
        self._cache: dict[tuple, int] = {}

    def _add(self, key: tuple, raw: bytes) -> int:
        if key in self._cache:
            return self._cache[key]
        self.entries.append(raw)
        index = len(self.entries)
        self._cache[key] = index
        return index

    def utf8(self, value: str) -> int:
        raw = value.encode("utf-8")
        return self._add(("utf8", value), struct.pack(">BH", 1, len(raw)) + raw)

    def klass(self, name: str) -> int:
        return self._add(("class", name), struct.pack(">BH", 7, self.utf8(name)))

    def string(self, value: str) -> int:
        return self._add(("string", value), struct.pack(">BH", 8, self.utf8(value)))

    def name_and_type(self, name: str, desc: str) -> int:
        return self._add(
            ("nat", name, desc), struct.pack(">BHH", 12, self.utf8(name), self.utf8(desc))
        )

    def methodref(self, owner: str, name: str, desc: str) -> int:
        return self._add(
            ("mref", owner, name, desc),
            struct.pack(">BHH", 10, self.klass(owner), self.name_and_type(name, desc)),
        )


def _attribute(pool: _Pool, name: str, body: bytes) -> bytes:
    return struct.pack(">HI", pool.utf8(name), len(body)) + body


def build_class(
    name: str,
    *,
    super_name: str = "java/lang/Object",
    interfaces: tuple[str, ...] = (),
    fields: tuple[tuple[str, str], ...] = (),
    methods: tuple[tuple[str, str], ...] = (),
    strings: tuple[str, ...] = (),
    method_refs: tuple[tuple[str, str, str], ...] = (),
    signature: str | None = None,
    source_file: str | None = None,
    annotations: tuple[str, ...] = (),
    extra_attributes: tuple[tuple[str, bytes], ...] = (),
) -> bytes:
    """Assemble a minimal class file (Java 8 format)."""

    pool = _Pool()
    this_index = pool.klass(name)
    super_index = pool.klass(super_name)
    interface_indices = [pool.klass(i) for i in interfaces]
    for s in strings:
        pool.string(s)
    for owner, mname, desc in method_refs:
        pool.methodref(owner, mname, desc)

    def members(items: tuple[tuple[str, str], ...]) -> bytes:
        out = struct.pack(">H", len(items))
        for mname, desc in items:
            out += struct.pack(">HHHH", 0x0001, pool.utf8(mname), pool.utf8(desc), 0)
        return out

    fields_raw = members(fields)
    methods_raw = members(methods)

    attrs: list[bytes] = []
    if signature is not None:
        attrs.append(_attribute(pool, "Signature", struct.pack(">H", pool.utf8(signature))))
    if source_file is not None:
        attrs.append(_attribute(pool, "SourceFile", struct.pack(">H", pool.utf8(source_file))))
    if len(annotations) > 0:
        body = struct.pack(">H", len(annotations))
        for ann in annotations:
            body += struct.pack(">HH", pool.utf8(ann), 0)
        attrs.append(_attribute(pool, "RuntimeVisibleAnnotations", body))
    for attr_name, attr_body in extra_attributes:
        attrs.append(_attribute(pool, attr_name, attr_body))

    out = struct.pack(">IHH", 0xCAFEBABE, 0, 52)
    out += struct.pack(">H", len(pool.entries) + 1) + b"".join(pool.entries)
    out += struct.pack(">HHH", 0x0021, this_index, super_index)
    out += struct.pack(">H", len(interface_indices))
    out += b"".join(struct.pack(">H", i) for i in interface_indices)
    out += fields_raw + methods_raw
    out += struct.pack(">H", len(attrs)) + b"".join(attrs)
    return out


@dataclass
class ParsedClass:
    this_class: str
    super_class: str
    interfaces: list[str]
    utf8: dict[int, str] = field(default_factory=dict)
    strings: list[str] = field(default_factory=list)
    class_names: list[str] = field(default_factory=list)
    field_descriptors: list[str] = field(default_factory=list)
    method_descriptors: list[str] = field(default_factory=list)


def parse_class(data: bytes) -> ParsedClass:
    """Read back the parts of a class file the tests care about."""

    assert data[:4] == b"\xca\xfe\xba\xbe"
    pos = 8
    (count,) = struct.unpack_from(">H", data, pos)
    pos += 2
    consts: dict[int, tuple[int, object]] = {}
    i = 1
    sizes = {3: 4, 4: 4, 5: 8, 6: 8, 7: 2, 8: 2, 9: 4, 10: 4, 11: 4, 12: 4, 15: 3, 16: 2, 17: 4, 18: 4, 19: 2, 20: 2}
    while i < count:
        tag = data[pos]
        pos += 1
        if tag == 1:
            (length,) = struct.unpack_from(">H", data, pos)
            pos += 2
            consts[i] = (tag, data[pos:pos + length].decode("utf-8"))
            pos += length
        else:
            consts[i] = (tag, data[pos:pos + sizes[tag]])
            pos += sizes[tag]
        i += 2 if tag in (5, 6) else 1

    def utf8_at(index: int) -> str:
        tag, value = consts[index]
        assert tag == 1
        return value  # type: ignore[return-value]

    def class_at(index: int) -> str:
        tag, value = consts[index]
        assert tag == 7
        return utf8_at(struct.unpack(">H", value)[0])  # type: ignore[arg-type]

    _, this_index, super_index, n_interfaces = struct.unpack_from(">HHHH", data, pos)
    pos += 8
    interfaces = []
    for _ in range(n_interfaces):
        interfaces.append(class_at(struct.unpack_from(">H", data, pos)[0]))
        pos += 2

    parsed = ParsedClass(
        this_class=class_at(this_index),
        super_class=class_at(super_index),
        interfaces=interfaces,
    )
    for index, (tag, value) in consts.items():
        if tag == 1:
            parsed.utf8[index] = value  # type: ignore[assignment]
        elif tag == 7:
            parsed.class_names.append(class_at(index))
        elif tag == 8:
            parsed.strings.append(utf8_at(struct.unpack(">H", value)[0]))  # type: ignore[arg-type]

    for target in (parsed.field_descriptors, parsed.method_descriptors):
        (n,) = struct.unpack_from(">H", data, pos)
        pos += 2
        for _ in range(n):
            _, _, desc_index, n_attrs = struct.unpack_from(">HHHH", data, pos)
            pos += 8
            target.append(utf8_at(desc_index))
            for _ in range(n_attrs):
                (length,) = struct.unpack_from(">I", data, pos + 2)
                pos += 6 + length
    return parsed


def write_jar(path: Path, entries: list[tuple[str, bytes | None]]) -> Path:
    """Write a jar; ``None`` content marks a directory entry."""

    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries:
            info = zipfile.ZipInfo(name, FIXED_TIME)
            if content is None:
                if not name.endswith("/"):
                    info = zipfile.ZipInfo(name + "/", FIXED_TIME)
                zf.writestr(info, b"")
            else:
                zf.writestr(info, content)
    return path


@pytest.fixture
def class_bytes():
    return build_class


@pytest.fixture
def read_class():
    return parse_class


@pytest.fixture
def make_jar():
    return write_jar
