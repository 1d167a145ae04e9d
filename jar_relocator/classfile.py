"""Class file rewriting.

This module relocates the names referenced by a compiled ``.class`` file. It
works at the constant-pool level:

- the class structure (members, attributes, annotations) is walked once to find
  every ``CONSTANT_Utf8`` that holds a class name, a descriptor, a generic
  signature, a string literal or the source file name;
- each of those strings is passed through the name mapper;
- the constant pool is re-serialized, and everything after it is copied byte
  for byte (indices into the pool never move).

When one ``Utf8`` constant is shared by references that relocate differently,
a new ``Utf8`` is appended and the pool-level reference (``CONSTANT_Class``,
``CONSTANT_String``, ...) is repointed at it.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol
import struct

from jar_relocator.relocation import NameMapper


class ClassFormatError(ValueError):
    """Raised when a class file cannot be parsed."""


class ModuleRewriter(Protocol):
    """Capability that relocates the names inside one compiled module."""

    def rewrite(self, data: bytes, mapper: NameMapper) -> bytes:
        """Return ``data`` with every internal name passed through ``mapper``."""
        ...


_MAGIC: int = 0xCAFEBABE

CONSTANT_UTF8: int = 1
CONSTANT_INTEGER: int = 3
CONSTANT_FLOAT: int = 4
CONSTANT_LONG: int = 5
CONSTANT_DOUBLE: int = 6
CONSTANT_CLASS: int = 7
CONSTANT_STRING: int = 8
CONSTANT_FIELDREF: int = 9
CONSTANT_METHODREF: int = 10
CONSTANT_INTERFACE_METHODREF: int = 11
CONSTANT_NAME_AND_TYPE: int = 12
CONSTANT_METHOD_HANDLE: int = 15
CONSTANT_METHOD_TYPE: int = 16
CONSTANT_DYNAMIC: int = 17
CONSTANT_INVOKE_DYNAMIC: int = 18
CONSTANT_MODULE: int = 19
CONSTANT_PACKAGE: int = 20

# Payload size (bytes after the tag) of every fixed-size constant.
_FIXED_SIZES: dict[int, int] = {
    CONSTANT_INTEGER: 4,
    CONSTANT_FLOAT: 4,
    CONSTANT_LONG: 8,
    CONSTANT_DOUBLE: 8,
    CONSTANT_CLASS: 2,
    CONSTANT_STRING: 2,
    CONSTANT_FIELDREF: 4,
    CONSTANT_METHODREF: 4,
    CONSTANT_INTERFACE_METHODREF: 4,
    CONSTANT_NAME_AND_TYPE: 4,
    CONSTANT_METHOD_HANDLE: 3,
    CONSTANT_METHOD_TYPE: 2,
    CONSTANT_DYNAMIC: 4,
    CONSTANT_INVOKE_DYNAMIC: 4,
    CONSTANT_MODULE: 2,
    CONSTANT_PACKAGE: 2,
}

# Kinds of Utf8 references.
_KEEP: str = "keep"
_CLASS: str = "class"
_TYPE: str = "type"
_STRING: str = "string"
_SOURCE: str = "source"

# Attributes whose layout is known and which reference no Utf8 directly.
_PLAIN_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "ConstantValue",
        "StackMapTable",
        "Exceptions",
        "EnclosingMethod",
        "Synthetic",
        "Deprecated",
        "SourceDebugExtension",
        "LineNumberTable",
        "BootstrapMethods",
        "NestHost",
        "NestMembers",
        "PermittedSubclasses",
        "ModulePackages",
        "ModuleMainClass",
    }
)


def decode_modified_utf8(raw: bytes) -> str:
    """Decode the JVM's modified UTF-8.

    :param raw: Encoded bytes.
    :returns: Decoded string.
    :raises ClassFormatError: If the bytes are not valid modified UTF-8.
    """

    try:
        # 0xC0 never occurs in standard UTF-8, so the NUL form can be swapped first.
        s: str = raw.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")
    except UnicodeDecodeError as e:
        raise ClassFormatError(f"Invalid modified UTF-8 constant: {raw!r}") from e
    if any("\ud800" <= ch <= "\udfff" for ch in s) is False:
        return s
    # Re-pair surrogates encoded as two three-byte sequences.
    return s.encode("utf-16-le", "surrogatepass").decode("utf-16-le", "surrogatepass")


def encode_modified_utf8(value: str) -> bytes:
    """Encode a string as the JVM's modified UTF-8.

    :param value: String to encode.
    :returns: Encoded bytes.
    """

    units: list[str] = []
    for ch in value:
        cp: int = ord(ch)
        if cp >= 0x10000:
            cp -= 0x10000
            units.append(chr(0xD800 + (cp >> 10)))
            units.append(chr(0xDC00 + (cp & 0x3FF)))
        else:
            units.append(ch)
    return "".join(units).encode("utf-8", "surrogatepass").replace(b"\x00", b"\xc0\x80")


def remap_signature(signature: str, map_name: Callable[[str], str]) -> str:
    """Relocate the class names inside a descriptor or generic signature.

    Handles field and method descriptors as well as class, method and field
    signatures (type parameters, wildcards, inner class suffixes).

    :param signature: Descriptor or signature string.
    :param map_name: Mapper applied to each ``/``-delimited class name.
    :returns: Relocated string.
    :raises ClassFormatError: If the string is not a well-formed signature.
    """

    out: list[str] = []
    pos: int = 0

    def expect(ch: str) -> None:
        nonlocal pos
        if pos >= len(signature) or signature[pos] != ch:
            raise ClassFormatError(f"Malformed signature {signature!r} at offset {pos}")
        out.append(ch)
        pos += 1

    def read_until(stops: str) -> str:
        nonlocal pos
        start: int = pos
        while pos < len(signature) and signature[pos] not in stops:
            pos += 1
        if pos >= len(signature):
            raise ClassFormatError(f"Unterminated name in signature {signature!r}")
        return signature[start:pos]

    def type_arguments() -> None:
        nonlocal pos
        expect("<")
        while pos < len(signature) and signature[pos] != ">":
            if signature[pos] == "*":
                out.append("*")
                pos += 1
                continue
            if signature[pos] in "+-":
                out.append(signature[pos])
                pos += 1
            field_type()
        expect(">")

    def class_type() -> None:
        nonlocal pos
        expect("L")
        name: str = read_until("<.;")
        out.append(map_name(name))
        if signature[pos] == "<":
            type_arguments()
        while signature[pos] == ".":
            out.append(".")
            pos += 1
            inner: str = read_until("<.;")
            outer_mapped: str = map_name(name) + "$"
            name = f"{name}${inner}"
            mapped: str = map_name(name)
            if mapped.startswith(outer_mapped) is True:
                out.append(mapped[len(outer_mapped):])
            else:
                out.append(mapped[mapped.rfind("$") + 1:])
            if signature[pos] == "<":
                type_arguments()
        expect(";")

    def field_type() -> None:
        nonlocal pos
        if pos >= len(signature):
            raise ClassFormatError(f"Truncated signature {signature!r}")
        ch: str = signature[pos]
        if ch in "BCDFIJSZV":
            out.append(ch)
            pos += 1
        elif ch == "[":
            out.append(ch)
            pos += 1
            field_type()
        elif ch == "T":
            out.append(ch)
            pos += 1
            out.append(read_until(";"))
            expect(";")
        elif ch == "L":
            class_type()
        else:
            raise ClassFormatError(f"Malformed signature {signature!r} at offset {pos}")

    try:
        if signature.startswith("<") is True:
            expect("<")
            while pos < len(signature) and signature[pos] != ">":
                out.append(read_until(":"))
                while pos < len(signature) and signature[pos] == ":":
                    expect(":")
                    if signature[pos] in "LT[":
                        field_type()
            expect(">")
        if pos < len(signature) and signature[pos] == "(":
            expect("(")
            while pos < len(signature) and signature[pos] != ")":
                field_type()
            expect(")")
            field_type()
            while pos < len(signature) and signature[pos] == "^":
                expect("^")
                field_type()
        while pos < len(signature):
            field_type()
    except IndexError as e:
        raise ClassFormatError(f"Truncated signature {signature!r}") from e
    return "".join(out)


@dataclass(slots=True)
class _Constant:
    """One constant-pool slot.

    :ivar tag: Constant tag.
    :ivar payload: Raw bytes following the tag.
    :ivar text: Decoded value (``CONSTANT_Utf8`` only).
    """

    tag: int
    payload: bytes
    text: str | None = None


@dataclass(frozen=True, slots=True)
class _Ref:
    """A reference to a ``CONSTANT_Utf8``.

    :ivar kind: How the referenced string is relocated.
    :ivar owner: Pool index of the referencing constant, or ``None`` when the
        reference lives outside the pool and cannot be repointed.
    """

    kind: str
    owner: int | None


class _Reader:
    def __init__(self, data: bytes, pos: int = 0) -> None:
        self.data: bytes = data
        self.pos: int = pos

    def take(self, n: int) -> bytes:
        end: int = self.pos + n
        if end > len(self.data):
            raise ClassFormatError(f"Unexpected end of class data at offset {self.pos}")
        chunk: bytes = self.data[self.pos:end]
        self.pos = end
        return chunk

    def u1(self) -> int:
        return self.take(1)[0]

    def u2(self) -> int:
        return struct.unpack(">H", self.take(2))[0]

    def u4(self) -> int:
        return struct.unpack(">I", self.take(4))[0]


class _ClassScan:
    """Collects the Utf8 references of one class file."""

    def __init__(self, data: bytes) -> None:
        self.reader: _Reader = _Reader(data)
        self.pool: list[_Constant | None] = [None]
        self.refs: dict[int, list[_Ref]] = {}
        self.has_opaque_attributes: bool = False
        self.this_class: str = ""
        self.pool_end: int = 0

    def _add(self, index: int, kind: str, owner: int | None = None) -> None:
        if index == 0 and kind == _KEEP:
            return
        self.utf8(index)
        self.refs.setdefault(index, []).append(_Ref(kind=kind, owner=owner))

    def utf8(self, index: int) -> str:
        if index <= 0 or index >= len(self.pool):
            raise ClassFormatError(f"Constant pool index {index} out of range")
        const: _Constant | None = self.pool[index]
        if const is None or const.tag != CONSTANT_UTF8 or const.text is None:
            raise ClassFormatError(f"Constant pool index {index} is not a Utf8 constant")
        return const.text

    def _class_name(self, index: int) -> str:
        if index <= 0 or index >= len(self.pool):
            raise ClassFormatError(f"Constant pool index {index} out of range")
        const: _Constant | None = self.pool[index]
        if const is None or const.tag != CONSTANT_CLASS:
            raise ClassFormatError(f"Constant pool index {index} is not a Class constant")
        return self.utf8(struct.unpack(">H", const.payload)[0])

    def scan(self) -> None:
        r: _Reader = self.reader
        if r.u4() != _MAGIC:
            raise ClassFormatError("Bad magic number; not a class file")
        r.take(4)  # minor/major version
        count: int = r.u2()
        index: int = 1
        while index < count:
            tag: int = r.u1()
            if tag == CONSTANT_UTF8:
                length: int = r.u2()
                raw: bytes = r.take(length)
                self.pool.append(
                    _Constant(tag=tag, payload=raw, text=decode_modified_utf8(raw))
                )
            elif tag in _FIXED_SIZES:
                self.pool.append(_Constant(tag=tag, payload=r.take(_FIXED_SIZES[tag])))
            else:
                raise ClassFormatError(f"Unknown constant pool tag {tag} at index {index}")
            index += 1
            if tag == CONSTANT_LONG or tag == CONSTANT_DOUBLE:
                # Eight-byte constants occupy two slots.
                self.pool.append(None)
                index += 1
        self.pool_end = r.pos

        self._scan_pool()

        r.take(2)  # access flags
        this_index: int = r.u2()
        self.this_class = self._class_name(this_index)
        r.take(2)  # super class
        r.take(2 * r.u2())  # interfaces
        for _ in range(2):
            for _ in range(r.u2()):
                r.take(2)
                self._add(r.u2(), _KEEP)
                self._add(r.u2(), _TYPE)
                self._attributes(r)
        self._attributes(r)
        if r.pos != len(r.data):
            raise ClassFormatError(f"{len(r.data) - r.pos} trailing bytes after class structure")

    def _scan_pool(self) -> None:
        for index, const in enumerate(self.pool):
            if const is None:
                continue
            if const.tag == CONSTANT_CLASS or const.tag == CONSTANT_PACKAGE:
                self._add(struct.unpack(">H", const.payload)[0], _CLASS, index)
            elif const.tag == CONSTANT_STRING:
                self._add(struct.unpack(">H", const.payload)[0], _STRING, index)
            elif const.tag == CONSTANT_METHOD_TYPE:
                self._add(struct.unpack(">H", const.payload)[0], _TYPE, index)
            elif const.tag == CONSTANT_NAME_AND_TYPE:
                name_index, desc_index = struct.unpack(">HH", const.payload)
                self._add(name_index, _KEEP)
                self._add(desc_index, _TYPE, index)
            elif const.tag == CONSTANT_MODULE:
                self._add(struct.unpack(">H", const.payload)[0], _KEEP)

    def _attributes(self, r: _Reader) -> None:
        for _ in range(r.u2()):
            name_index: int = r.u2()
            self._add(name_index, _KEEP)
            name: str = self.utf8(name_index)
            length: int = r.u4()
            info: _Reader = _Reader(r.take(length))
            self._attribute(name, info)

    def _attribute(self, name: str, r: _Reader) -> None:
        if name in _PLAIN_ATTRIBUTES:
            return
        if name == "Code":
            r.take(4)  # max_stack, max_locals
            r.take(r.u4())
            r.take(8 * r.u2())  # exception table
            self._attributes(r)
        elif name == "Signature":
            self._add(r.u2(), _TYPE)
        elif name == "SourceFile":
            self._add(r.u2(), _SOURCE)
        elif name == "InnerClasses":
            for _ in range(r.u2()):
                r.take(4)
                self._add(r.u2(), _KEEP)
                r.take(2)
        elif name == "LocalVariableTable" or name == "LocalVariableTypeTable":
            for _ in range(r.u2()):
                r.take(4)
                self._add(r.u2(), _KEEP)
                self._add(r.u2(), _TYPE)
                r.take(2)
        elif name == "MethodParameters":
            for _ in range(r.u1()):
                self._add(r.u2(), _KEEP)
                r.take(2)
        elif name == "RuntimeVisibleAnnotations" or name == "RuntimeInvisibleAnnotations":
            for _ in range(r.u2()):
                self._annotation(r)
        elif (
            name == "RuntimeVisibleParameterAnnotations"
            or name == "RuntimeInvisibleParameterAnnotations"
        ):
            for _ in range(r.u1()):
                for _ in range(r.u2()):
                    self._annotation(r)
        elif name == "RuntimeVisibleTypeAnnotations" or name == "RuntimeInvisibleTypeAnnotations":
            for _ in range(r.u2()):
                self._type_annotation_target(r)
                self._annotation(r)
        elif name == "AnnotationDefault":
            self._element_value(r)
        elif name == "Record":
            for _ in range(r.u2()):
                self._add(r.u2(), _KEEP)
                self._add(r.u2(), _TYPE)
                self._attributes(r)
        elif name == "Module":
            self._module(r)
        else:
            self.has_opaque_attributes = True

    def _annotation(self, r: _Reader) -> None:
        self._add(r.u2(), _TYPE)
        for _ in range(r.u2()):
            self._add(r.u2(), _KEEP)
            self._element_value(r)

    def _element_value(self, r: _Reader) -> None:
        tag: str = chr(r.u1())
        if tag in "BCDFIJSZ":
            r.take(2)
        elif tag == "s":
            self._add(r.u2(), _STRING)
        elif tag == "e":
            self._add(r.u2(), _TYPE)
            self._add(r.u2(), _KEEP)
        elif tag == "c":
            self._add(r.u2(), _TYPE)
        elif tag == "@":
            self._annotation(r)
        elif tag == "[":
            for _ in range(r.u2()):
                self._element_value(r)
        else:
            raise ClassFormatError(f"Unknown annotation element tag {tag!r}")

    def _type_annotation_target(self, r: _Reader) -> None:
        target_type: int = r.u1()
        if target_type in (0x00, 0x01, 0x16):
            r.take(1)
        elif target_type in (0x10, 0x11, 0x12, 0x17, 0x42, 0x43, 0x44, 0x45, 0x46):
            r.take(2)
        elif target_type in (0x13, 0x14, 0x15):
            pass
        elif target_type in (0x40, 0x41):
            r.take(6 * r.u2())
        elif target_type in (0x47, 0x48, 0x49, 0x4A, 0x4B):
            r.take(3)
        else:
            raise ClassFormatError(f"Unknown type annotation target 0x{target_type:02x}")
        r.take(2 * r.u1())  # type_path

    def _module(self, r: _Reader) -> None:
        r.take(4)  # module name, flags
        self._add(r.u2(), _KEEP)  # version
        for _ in range(r.u2()):  # requires
            r.take(4)
            self._add(r.u2(), _KEEP)
        for _ in range(2):  # exports, opens
            for _ in range(r.u2()):
                r.take(4)
                r.take(2 * r.u2())
        r.take(2 * r.u2())  # uses
        for _ in range(r.u2()):  # provides
            r.take(2)
            r.take(2 * r.u2())


class ClassFileRewriter:
    """Relocates the names referenced by a class file.

    Implements :class:`ModuleRewriter`.
    """

    def rewrite(self, data: bytes, mapper: NameMapper) -> bytes:
        """Rewrite a class file.

        :param data: Class file bytes.
        :param mapper: Name mapper applied to every referenced name.
        :returns: Rewritten class file bytes.
        :raises ClassFormatError: If the class file is malformed, or nests
            annotation values or signatures too deeply to walk.
        """

        try:
            return self._rewrite(data, mapper)
        except RecursionError as e:
            raise ClassFormatError("Class file nesting too deep") from e

    def _rewrite(self, data: bytes, mapper: NameMapper) -> bytes:
        scan: _ClassScan = _ClassScan(data)
        scan.scan()

        package: str = scan.this_class[: scan.this_class.rfind("/") + 1]

        def relocate(kind: str, value: str) -> str:
            if kind == _CLASS:
                return mapper.map(value)
            if kind == _TYPE:
                return remap_signature(value, mapper.map)
            if kind == _STRING:
                return mapper.map_value(value)
            if kind == _SOURCE:
                mapped: str = mapper.map(package + value)
                return mapped[mapped.rfind("/") + 1:]
            return value

        pool: list[_Constant | None] = scan.pool
        final: dict[int, str] = {}
        repoint: list[tuple[int, str]] = []
        for index, refs in scan.refs.items():
            original: str = scan.utf8(index)
            targets: list[tuple[_Ref, str]] = [(ref, relocate(ref.kind, original)) for ref in refs]
            fixed: list[str] = [t for ref, t in targets if ref.owner is None]
            value: str
            if len(fixed) > 0:
                value = fixed[0]
            elif scan.has_opaque_attributes is True:
                value = original
            else:
                value = targets[0][1]
            final[index] = value
            for ref, target in targets:
                if ref.owner is not None and target != value:
                    repoint.append((ref.owner, target))

        if all(final[i] == scan.utf8(i) for i in final) and len(repoint) == 0:
            return data

        for index, value in final.items():
            const: _Constant | None = pool[index]
            if const is None:
                raise ClassFormatError(f"Utf8 constant #{index} is missing")
            if value != const.text:
                pool[index] = _Constant(
                    tag=CONSTANT_UTF8, payload=encode_modified_utf8(value), text=value
                )

        by_value: dict[str, int] = {}
        for index, const in enumerate(pool):
            if const is not None and const.tag == CONSTANT_UTF8 and const.text is not None:
                by_value.setdefault(const.text, index)

        for owner, target in repoint:
            target_index: int | None = by_value.get(target)
            if target_index is None:
                pool.append(
                    _Constant(tag=CONSTANT_UTF8, payload=encode_modified_utf8(target), text=target)
                )
                target_index = len(pool) - 1
                by_value[target] = target_index
            const = pool[owner]
            if const is None:
                raise ClassFormatError(f"Constant #{owner} is missing")
            if const.tag == CONSTANT_NAME_AND_TYPE:
                name_index: int = struct.unpack(">HH", const.payload)[0]
                payload: bytes = struct.pack(">HH", name_index, target_index)
            else:
                payload = struct.pack(">H", target_index)
            pool[owner] = _Constant(tag=const.tag, payload=payload)

        if len(pool) > 0xFFFF:
            raise ClassFormatError("Constant pool too large after relocation")

        out: list[bytes] = [data[:8], struct.pack(">H", len(pool))]
        for const in pool:
            if const is None:
                continue
            if const.tag == CONSTANT_UTF8:
                if len(const.payload) > 0xFFFF:
                    raise ClassFormatError("Utf8 constant too long after relocation")
                out.append(struct.pack(">BH", CONSTANT_UTF8, len(const.payload)))
            else:
                out.append(struct.pack(">B", const.tag))
            out.append(const.payload)
        out.append(data[scan.pool_end:])
        return b"".join(out)
