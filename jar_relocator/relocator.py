"""Relocate a JAR file on disk.

:class:`JarRelocator` wires the pieces together:

- it builds a :class:`~jar_relocator.relocation.RelocatingRemapper` from the rules;
- it streams the input through a :class:`~jar_relocator.task.RelocationTask`;
- the output is written to a temporary file beside the target and only moved
  into place once the whole run succeeded.
"""

from collections.abc import Iterable, Mapping
import logging
import os
import pathlib
import time

from jar_relocator.archive import ZipArchiveReader, ZipArchiveWriter
from jar_relocator.classfile import ClassFileRewriter, ModuleRewriter
from jar_relocator.errors import IOFailureError
from jar_relocator.relocation import RelocatingRemapper, Relocation
from jar_relocator.task import RelocationStats, RelocationTask


class JarRelocator:
    """Relocates one input JAR into one output JAR."""

    def __init__(
        self,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        relocations: Iterable[Relocation] | Mapping[str, str],
        *,
        rewriter: ModuleRewriter | None = None,
        compresslevel: int = 6,
        logger: logging.Logger | None = None,
    ) -> None:
        """Create a relocator.

        :param input_path: Input JAR.
        :param output_path: Output JAR (replaced on success).
        :param relocations: Rules, or a ``{pattern: relocated_pattern}`` mapping.
        :param rewriter: Optional class file rewriter override.
        :param compresslevel: Deflate compression level for the output.
        :param logger: Optional logger for progress output.
        """

        if logger is None:
            logger = logging.getLogger("jar_relocator")
        self.input_path: pathlib.Path = pathlib.Path(input_path)
        self.output_path: pathlib.Path = pathlib.Path(output_path)
        self.remapper: RelocatingRemapper = RelocatingRemapper(relocations)
        self.rewriter: ModuleRewriter = rewriter if rewriter is not None else ClassFileRewriter()
        self.compresslevel: int = compresslevel
        self.logger: logging.Logger = logger
        self._used: bool = False

    def run(self) -> RelocationStats:
        """Run the relocation.

        :returns: Run counters.
        :raises RuntimeError: If called more than once.
        :raises RelocationError: If the input cannot be relocated; the output
            path is left untouched.
        """

        if self._used is True:
            raise RuntimeError("JarRelocator.run() has already been called on this instance.")
        self._used = True

        logger: logging.Logger = self.logger
        logger.info(f"jar-relocator: input={self.input_path}")
        logger.info(f"jar-relocator: output={self.output_path}")
        if logger.isEnabledFor(logging.DEBUG) is True:
            for rule in self.remapper.relocations:
                logger.debug(
                    f"jar-relocator: rule {rule.pattern} -> {rule.relocated_pattern}"
                    f" includes={list(rule.includes)} excludes={list(rule.excludes)}"
                )

        t0: float = time.perf_counter()
        tmp_path: pathlib.Path = self.output_path.with_name(self.output_path.name + ".tmp")
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            task: RelocationTask = RelocationTask(
                mapper=self.remapper,
                rewriter=self.rewriter,
                logger=logger,
            )
            with ZipArchiveReader(self.input_path) as reader:
                with open(tmp_path, "wb") as out:
                    with ZipArchiveWriter(out, compresslevel=self.compresslevel) as writer:
                        stats: RelocationStats = task.run(reader.entries(), writer)
            tmp_path.replace(self.output_path)
        except OSError as e:
            _discard(tmp_path)
            raise IOFailureError(f"I/O error relocating {self.input_path}: {e}") from e
        except BaseException:
            _discard(tmp_path)
            raise
        t1: float = time.perf_counter()

        logger.info(
            f"jar-relocator: wrote {stats.entries_written} entries"
            f" ({stats.directories_created} directories,"
            f" {stats.entries_suppressed} dropped,"
            f" {stats.duplicates_skipped} duplicates) in {t1 - t0:.2f}s"
        )
        return stats


def _discard(path: pathlib.Path) -> None:
    try:
        os.unlink(path)
    except (FileNotFoundError, NotADirectoryError):
        pass


def relocate_archive(
    *,
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    relocations: Iterable[Relocation] | Mapping[str, str],
    compresslevel: int = 6,
    logger: logging.Logger | None = None,
) -> RelocationStats:
    """Relocate ``input_path`` into ``output_path``.

    :param input_path: Input JAR.
    :param output_path: Output JAR.
    :param relocations: Rules, or a ``{pattern: relocated_pattern}`` mapping.
    :param compresslevel: Deflate compression level.
    :param logger: Optional logger for progress output.
    :returns: Run counters.
    """

    return JarRelocator(
        input_path,
        output_path,
        relocations,
        compresslevel=compresslevel,
        logger=logger,
    ).run()
