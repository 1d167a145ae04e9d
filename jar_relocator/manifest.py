"""JAR manifest reading and writing.

The format is the one ``java.util.jar.Manifest`` reads and writes:

- a main section followed by named sections, separated by blank lines;
- each line is ``Name: value``; named sections start with a ``Name`` header;
- lines are wrapped at 72 bytes, continuation lines start with a single space;
- attribute names are case-insensitive.
"""

from dataclasses import dataclass, field


class ManifestError(ValueError):
    """Raised when a manifest cannot be parsed."""


MANIFEST_VERSION: str = "Manifest-Version"
SIGNATURE_VERSION: str = "Signature-Version"

_LINE_LIMIT: int = 72


def _put(attributes: dict[str, str], name: str, value: str) -> None:
    """Insert an attribute, replacing any case-insensitive match in place.

    :param attributes: Attribute mapping.
    :param name: Attribute name.
    :param value: Attribute value.
    """

    lowered: str = name.lower()
    for existing in attributes:
        if existing.lower() == lowered:
            attributes[existing] = value
            return
    attributes[name] = value


def _get(attributes: dict[str, str], name: str) -> tuple[str, str] | None:
    lowered: str = name.lower()
    for existing, value in attributes.items():
        if existing.lower() == lowered:
            return existing, value
    return None


@dataclass(slots=True)
class Manifest:
    """Parsed manifest.

    :ivar main_attributes: Main section attributes, in file order.
    :ivar entries: Named sections keyed by their ``Name`` value, in file order.
    """

    main_attributes: dict[str, str] = field(default_factory=dict)
    entries: dict[str, dict[str, str]] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        """Serialize the manifest (UTF-8, CRLF line endings, 72-byte lines).

        :returns: Manifest bytes.
        """

        out: bytearray = bytearray()
        version: tuple[str, str] | None = _get(self.main_attributes, MANIFEST_VERSION)
        if version is None:
            version = _get(self.main_attributes, SIGNATURE_VERSION)
        if version is not None:
            _write_line(out, f"{version[0]}: {version[1]}")
        for name, value in self.main_attributes.items():
            if version is not None and name == version[0]:
                continue
            _write_line(out, f"{name}: {value}")
        out += b"\r\n"

        for entry_name, attributes in self.entries.items():
            _write_line(out, f"Name: {entry_name}")
            for name, value in attributes.items():
                _write_line(out, f"{name}: {value}")
            out += b"\r\n"
        return bytes(out)


def _write_line(out: bytearray, line: str) -> None:
    """Append one header line, wrapped the way the JDK wraps it.

    The first physical line holds 72 bytes, each continuation a space plus 71.
    Multi-byte characters may be split across lines.

    :param out: Output buffer.
    :param line: Logical line without terminator.
    """

    raw: bytes = line.encode("utf-8")
    out += raw[:_LINE_LIMIT]
    pos: int = _LINE_LIMIT
    while pos < len(raw):
        out += b"\r\n "
        out += raw[pos:pos + _LINE_LIMIT - 1]
        pos += _LINE_LIMIT - 1
    out += b"\r\n"


def _logical_lines(data: bytes) -> list[bytes | None]:
    """Split manifest bytes into logical lines.

    Continuation lines are joined before decoding so that multi-byte
    characters split by wrapping are reassembled. Blank lines are ``None``.

    :param data: Raw manifest bytes.
    :returns: Logical lines.
    :raises ManifestError: If a continuation line has nothing to continue.
    """

    physical: list[bytes] = data.replace(b"\r\n", b"\n").replace(b"\r", b"\n").split(b"\n")
    if len(physical) > 0 and physical[-1] == b"":
        physical.pop()

    lines: list[bytes | None] = []
    for raw in physical:
        if raw.startswith(b" ") is True:
            if len(lines) == 0 or lines[-1] is None:
                raise ManifestError("Continuation line without a preceding header")
            lines[-1] = lines[-1] + raw[1:]
            continue
        lines.append(raw if len(raw) > 0 else None)
    return lines


def _parse_header(raw: bytes) -> tuple[str, str]:
    try:
        line: str = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ManifestError(f"Manifest header is not valid UTF-8: {raw!r}") from e
    name, sep, value = line.partition(": ")
    if sep != ": " or len(name) == 0 or ":" in name:
        raise ManifestError(f"Invalid manifest header: {line!r}")
    return name, value


def parse_manifest(data: bytes) -> Manifest:
    """Parse manifest bytes.

    Blank lines between sections are tolerated. Duplicate attributes within a
    section keep the last value.

    :param data: Raw manifest bytes.
    :returns: Parsed manifest.
    :raises ManifestError: If the manifest is malformed.
    """

    manifest: Manifest = Manifest()
    lines: list[bytes | None] = _logical_lines(data)

    i: int = 0
    while i < len(lines):
        main_line: bytes | None = lines[i]
        if main_line is None:
            break
        name, value = _parse_header(main_line)
        _put(manifest.main_attributes, name, value)
        i += 1

    current: dict[str, str] | None = None
    while i < len(lines):
        raw: bytes | None = lines[i]
        i += 1
        if raw is None:
            current = None
            continue
        name, value = _parse_header(raw)
        if current is None:
            if name.lower() != "name":
                raise ManifestError(f"Manifest section does not start with 'Name': {name!r}")
            current = manifest.entries.setdefault(value, {})
            continue
        _put(current, name, value)
    return manifest
