"""Command line interface for jar-relocator."""

import argparse
import logging
import pathlib
import sys

from jar_relocator.errors import RelocationError
from jar_relocator.relocation import Relocation, RelocationConfigError, parse_relocation_spec
from jar_relocator.relocator import JarRelocator


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the jar-relocator logger.

    The default level reports input, output and the run summary. ``-v`` adds
    one debug line per rule, dropped entry and skipped duplicate. ``-q`` keeps
    warnings and failures, and ``-qq`` keeps only failures. Quiet wins over
    verbose.

    :param verbose: Number of ``-v`` flags.
    :param quiet: Number of ``-q`` flags.
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("jar_relocator")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _build_relocations(
    *,
    specs: list[str],
    includes: list[str],
    excludes: list[str],
) -> list[Relocation]:
    """Build relocation rules from CLI arguments.

    :param specs: ``PATTERN=RELOCATED`` strings.
    :param includes: Include globs applied to every rule.
    :param excludes: Exclude globs applied to every rule.
    :returns: Relocation rules.
    :raises RelocationConfigError: If a rule is malformed.
    """

    rules: list[Relocation] = []
    for spec in specs:
        pattern, relocated = parse_relocation_spec(spec)
        rules.append(
            Relocation(pattern, relocated, includes=tuple(includes), excludes=tuple(excludes))
        )
    return rules


def main(argv: list[str] | None = None) -> int:
    """Run the jar-relocator CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="jar-relocator",
        description="Relocate (shade) package prefixes inside a JAR file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_relocate = subparsers.add_parser(
        "relocate",
        help="Write a relocated copy of a JAR.",
    )
    p_relocate.add_argument(
        "input",
        type=pathlib.Path,
        help="Path to the input JAR.",
    )
    p_relocate.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Output path for the relocated JAR.",
    )
    p_relocate.add_argument(
        "-r",
        "--relocate",
        action="append",
        default=[],
        metavar="PATTERN=RELOCATED",
        help="Relocation rule, e.g. com.google.gson=shaded.com.google.gson. Repeatable.",
    )
    p_relocate.add_argument(
        "--include",
        action="append",
        default=[],
        metavar="GLOB",
        help="Only relocate classes matching this glob (e.g. com.foo.**). Applies to every rule.",
    )
    p_relocate.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="GLOB",
        help="Never relocate classes matching this glob. Applies to every rule.",
    )
    p_relocate.add_argument(
        "--compresslevel",
        type=int,
        default=6,
        help="Deflate compression level for the output (0-9).",
    )
    p_relocate.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p_relocate.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )

    ns = parser.parse_args(argv)
    if ns.command == "relocate":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        if ns.compresslevel < 0 or ns.compresslevel > 9:
            parser.error(f"invalid --compresslevel {ns.compresslevel}; expected 0-9")
        try:
            rules: list[Relocation] = _build_relocations(
                specs=ns.relocate,
                includes=ns.include,
                excludes=ns.exclude,
            )
        except RelocationConfigError as e:
            parser.error(str(e))

        try:
            JarRelocator(
                ns.input,
                ns.output,
                rules,
                compresslevel=ns.compresslevel,
                logger=logger,
            ).run()
        except RelocationError as e:
            logger.error(f"jar-relocator: error: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")
