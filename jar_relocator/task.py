"""Entry-processing pipeline.

:class:`RelocationTask` visits every entry of an input archive exactly once, in
archive order, and writes the relocated archive:

- directory entries, ``META-INF/INDEX.LIST`` and signature files are dropped;
- parent directories of every written entry are synthesized on demand;
- class files, the manifest, service descriptors and plain resources each get
  their own transformation;
- an output path is written at most once (first seen wins).
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
import enum
import logging
import re

from jar_relocator.archive import ArchiveEntry, ArchiveWriter, DateTime
from jar_relocator.classfile import ModuleRewriter
from jar_relocator.errors import MalformedInputError
from jar_relocator.manifest import Manifest, ManifestError, parse_manifest
from jar_relocator.relocation import NameMapper

CLASS_SUFFIX: str = ".class"
MANIFEST_PATH: str = "META-INF/MANIFEST.MF"
INDEX_LIST_PATH: str = "META-INF/INDEX.LIST"
SERVICES_PREFIX: str = "META-INF/services/"
KOTLIN_BUILTINS_SUFFIX: str = ".kotlin_builtins"

# META-INF/*.SF, META-INF/*.DSA, META-INF/*.RSA, META-INF/SIG-*
_SIGNATURE_FILE_RE: re.Pattern[str] = re.compile(r"META-INF/(?:[^/]+\.(?:DSA|RSA|SF)|SIG-[^/]+)")
_DIGEST_ATTRIBUTE_RE: re.Pattern[str] = re.compile(r".*-Digest")


class EntryKind(enum.Enum):
    SUPPRESS = "suppress"
    CLASS = "class"
    MANIFEST = "manifest"
    SERVICE_DESCRIPTOR = "service"
    PLAIN_RESOURCE = "resource"


def classify_entry(entry: ArchiveEntry) -> EntryKind:
    """Classify an input entry.

    :param entry: Input entry.
    :returns: The entry kind; the first matching rule wins.
    """

    name: str = entry.name
    if entry.is_directory is True:
        return EntryKind.SUPPRESS
    # INDEX.LIST is optional and goes stale once packages move.
    if name == INDEX_LIST_PATH:
        return EntryKind.SUPPRESS
    # Signatures no longer verify once any entry is rewritten.
    if _SIGNATURE_FILE_RE.fullmatch(name) is not None:
        return EntryKind.SUPPRESS
    if name.endswith(CLASS_SUFFIX) is True:
        return EntryKind.CLASS
    if name == MANIFEST_PATH:
        return EntryKind.MANIFEST
    if name.startswith(SERVICES_PREFIX) is True:
        return EntryKind.SERVICE_DESCRIPTOR
    return EntryKind.PLAIN_RESOURCE


@dataclass(frozen=True, slots=True)
class RelocationResult:
    """One entry ready to be written.

    :ivar name: Output path.
    :ivar data: Output bytes.
    :ivar last_modified: ZIP ``date_time`` tuple.
    """

    name: str
    data: bytes
    last_modified: DateTime


@dataclass(slots=True)
class RelocationStats:
    """Counters collected during one run.

    :ivar entries_read: Input entries enumerated.
    :ivar entries_suppressed: Input entries dropped by classification.
    :ivar entries_written: Non-directory entries written.
    :ivar directories_created: Directory markers synthesized.
    :ivar duplicates_skipped: Results dropped because their path was already written.
    """

    entries_read: int = 0
    entries_suppressed: int = 0
    entries_written: int = 0
    directories_created: int = 0
    duplicates_skipped: int = 0


@dataclass(slots=True)
class RelocationContext:
    """Per-run state: the output sink and the registry of written paths.

    Directory markers are registered with their trailing ``/``.

    :ivar writer: Output archive sink.
    :ivar logger: Logger for debug output.
    :ivar written: Output paths written so far.
    :ivar stats: Run counters.
    """

    writer: ArchiveWriter
    logger: logging.Logger
    written: set[str] = field(default_factory=set)
    stats: RelocationStats = field(default_factory=RelocationStats)

    def ensure_directory(self, path: str, date_time: DateTime) -> None:
        """Write directory markers for ``path`` and all of its ancestors.

        Ancestors are written first; markers already written are skipped.

        :param path: Directory path without trailing ``/``.
        :param date_time: Timestamp for new markers.
        """

        if len(path) == 0 or path + "/" in self.written:
            return

        ends: list[int] = []
        pos: int = path.find("/")
        while pos != -1:
            ends.append(pos)
            pos = path.find("/", pos + 1)
        ends.append(len(path))

        for end in ends:
            # Skip empty segments ("a//b", "/a").
            if end == 0 or path[end - 1] == "/":
                continue
            marker: str = path[:end] + "/"
            if marker in self.written:
                continue
            self.writer.put_directory(marker, date_time)
            self.written.add(marker)
            self.stats.directories_created += 1

    def ensure_parent_directories(self, name: str, date_time: DateTime) -> None:
        index: int = name.rfind("/")
        if index > 0:
            self.ensure_directory(name[:index], date_time)

    def emit(self, result: RelocationResult) -> bool:
        """Write a result unless its path was already written.

        :param result: Result to write.
        :returns: ``True`` if written, ``False`` if dropped as a duplicate.
        """

        if result.name in self.written:
            self.stats.duplicates_skipped += 1
            if self.logger.isEnabledFor(logging.DEBUG) is True:
                self.logger.debug(f"jar-relocator: duplicate {result.name}; keeping first")
            return False
        self.writer.put_entry(result.name, result.last_modified, result.data)
        self.written.add(result.name)
        self.stats.entries_written += 1
        return True


def _dotted(mapper: NameMapper, name: str) -> str:
    """Relocate a dotted name through a ``/``-delimited mapper."""

    return mapper.map(name.replace(".", "/")).replace("/", ".")


class RelocationTask:
    """Copies archive entries to an output sink, applying relocations."""

    def __init__(
        self,
        *,
        mapper: NameMapper,
        rewriter: ModuleRewriter,
        logger: logging.Logger | None = None,
    ) -> None:
        """Create a task.

        :param mapper: Name mapper used for paths, class contents and service files.
        :param rewriter: Class file rewriter.
        :param logger: Optional logger for debug output.
        """

        if logger is None:
            logger = logging.getLogger("jar_relocator")
        self.mapper: NameMapper = mapper
        self.rewriter: ModuleRewriter = rewriter
        self.logger: logging.Logger = logger

    def run(self, entries: Iterable[ArchiveEntry], writer: ArchiveWriter) -> RelocationStats:
        """Process every entry and write the results.

        Any error aborts the run; whatever was written by then is unusable.

        :param entries: Input entries, in archive order.
        :param writer: Output sink.
        :returns: Run counters.
        """

        context: RelocationContext = RelocationContext(writer=writer, logger=self.logger)
        for entry in entries:
            context.stats.entries_read += 1
            self.process_entry(entry, context)
        return context.stats

    def process_entry(self, entry: ArchiveEntry, context: RelocationContext) -> None:
        kind: EntryKind = classify_entry(entry)
        if kind is EntryKind.SUPPRESS:
            context.stats.entries_suppressed += 1
            if self.logger.isEnabledFor(logging.DEBUG) is True and entry.is_directory is False:
                self.logger.debug(f"jar-relocator: dropping {entry.name}")
            return

        mapped_name: str = self.mapper.map(entry.name)
        context.ensure_parent_directories(mapped_name, entry.last_modified)

        data: bytes = entry.read()
        result: RelocationResult
        if kind is EntryKind.CLASS:
            result = self.transform_class(entry, data)
        elif kind is EntryKind.MANIFEST:
            result = self.transform_manifest(entry, data)
        elif kind is EntryKind.SERVICE_DESCRIPTOR:
            result = self.transform_service(entry, data)
        else:
            result = RelocationResult(name=mapped_name, data=data, last_modified=entry.last_modified)
        context.emit(result)

        # Kotlin looks builtins up by their original path.
        if entry.name.endswith(KOTLIN_BUILTINS_SUFFIX) is True:
            context.ensure_parent_directories(entry.name, entry.last_modified)
            context.emit(
                RelocationResult(name=entry.name, data=result.data, last_modified=entry.last_modified)
            )

    def transform_class(self, entry: ArchiveEntry, data: bytes) -> RelocationResult:
        """Relocate a class file's contents and path.

        :param entry: Input entry.
        :param data: Class file bytes.
        :returns: Relocated class.
        :raises MalformedInputError: If the class cannot be parsed.
        """

        try:
            rewritten: bytes = self.rewriter.rewrite(data, self.mapper)
        except ValueError as e:
            raise MalformedInputError(
                f"Error processing class: {e}", entry_name=entry.name, stage="class"
            ) from e

        stem: str = entry.name[: -len(CLASS_SUFFIX)]
        return RelocationResult(
            name=self.mapper.map(stem) + CLASS_SUFFIX,
            data=rewritten,
            last_modified=entry.last_modified,
        )

    def transform_manifest(self, entry: ArchiveEntry, data: bytes) -> RelocationResult:
        """Drop per-entry digests from the manifest's named sections.

        :param entry: Input entry.
        :param data: Manifest bytes.
        :returns: Rewritten manifest at its original path.
        :raises MalformedInputError: If the manifest cannot be parsed.
        """

        try:
            source: Manifest = parse_manifest(data)
        except ManifestError as e:
            raise MalformedInputError(str(e), entry_name=entry.name, stage="manifest") from e

        out: Manifest = Manifest(main_attributes=dict(source.main_attributes))
        for section, attributes in source.entries.items():
            out.entries[section] = {
                k: v for k, v in attributes.items() if _DIGEST_ATTRIBUTE_RE.fullmatch(k) is None
            }
        return RelocationResult(name=entry.name, data=out.to_bytes(), last_modified=entry.last_modified)

    def transform_service(self, entry: ArchiveEntry, data: bytes) -> RelocationResult:
        """Relocate a service descriptor's interface name and provider lines.

        :param entry: Input entry.
        :param data: Descriptor bytes (UTF-8).
        :returns: Rewritten descriptor at the relocated path.
        :raises MalformedInputError: If the content is not UTF-8.
        """

        interface: str = entry.name[len(SERVICES_PREFIX):]
        name: str = SERVICES_PREFIX + _dotted(self.mapper, interface)

        try:
            text: str = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInputError(
                "Service descriptor is not valid UTF-8", entry_name=entry.name, stage="service"
            ) from e

        lines: list[str] = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        if len(lines) > 0 and lines[-1] == "":
            lines.pop()
        body: str = "".join(_dotted(self.mapper, line) + "\n" for line in lines)
        return RelocationResult(name=name, data=body.encode("utf-8"), last_modified=entry.last_modified)
