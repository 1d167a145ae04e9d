"""Relocation rules and the name mapper built from them.

A :class:`Relocation` describes one prefix substitution (``com.foo`` ->
``shaded.com.foo``), optionally narrowed with include/exclude globs. The
:class:`RelocatingRemapper` combines several rules into the ``map(name)``
function the rest of the pipeline relies on:

- it is total and deterministic;
- names no rule applies to are returned unchanged;
- when several rules apply, the longest pattern wins.
"""

from dataclasses import dataclass, field
from collections.abc import Iterable, Mapping
from typing import Protocol
import re


class RelocationConfigError(ValueError):
    """Raised when a relocation rule is malformed."""


class NameMapper(Protocol):
    """Capability used to relocate ``/``-delimited names."""

    def map(self, name: str) -> str:
        """Relocate a ``/``-delimited name (identity when no rule applies)."""
        ...

    def map_value(self, value: str) -> str:
        """Relocate a string constant that may hold a dotted or slashed class name."""
        ...


_DESCRIPTOR_WRAPPER_RE: re.Pattern[str] = re.compile(r"^(\[*)?L(.+);$")


def _glob_to_regex(glob: str) -> re.Pattern[str]:
    """Compile an ant-style path glob.

    ``**`` matches any number of path segments, ``*`` and ``?`` stay within a
    single segment.

    :param glob: ``/``-delimited glob.
    :returns: Compiled full-match regex.
    """

    parts: list[str] = []
    segments: list[str] = glob.split("/")
    for i, segment in enumerate(segments):
        last: bool = i == len(segments) - 1
        if segment == "**":
            # Zero or more whole segments, including the separator that follows.
            parts.append(".*" if last is True else "(?:[^/]*/)*")
            continue
        seg_re: str = ""
        for ch in segment:
            if ch == "*":
                seg_re += "[^/]*"
            elif ch == "?":
                seg_re += "[^/]"
            else:
                seg_re += re.escape(ch)
        parts.append(seg_re if last is True else seg_re + "/")
    return re.compile("".join(parts))


def _normalize_patterns(patterns: Iterable[str]) -> tuple[str, ...]:
    """Normalize include/exclude globs into slash form.

    A trailing ``/*`` also admits the package itself, so ``com.foo.*`` matches
    ``com/foo`` as well as its direct members.

    :param patterns: Dotted or slashed globs.
    :returns: Normalized globs.
    """

    normalized: list[str] = []
    for pattern in patterns:
        class_pattern: str = pattern.replace(".", "/")
        normalized.append(class_pattern)
        if class_pattern.endswith("/*") is True:
            normalized.append(class_pattern[: class_pattern.rindex("/")])
    return tuple(normalized)


@dataclass(frozen=True, slots=True)
class Relocation:
    """A single relocation rule.

    :ivar pattern: Dotted package prefix to relocate (e.g. ``com.foo``).
    :ivar relocated_pattern: Dotted replacement prefix (e.g. ``shaded.com.foo``).
    :ivar includes: Optional class globs; when given, only matching names move.
    :ivar excludes: Class globs that never move.
    """

    pattern: str
    relocated_pattern: str
    includes: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    _include_res: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)
    _exclude_res: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if len(self.pattern) == 0:
            raise RelocationConfigError("Relocation pattern must not be empty.")
        if len(self.relocated_pattern) == 0:
            raise RelocationConfigError(
                f"Relocated pattern for {self.pattern!r} must not be empty."
            )
        object.__setattr__(self, "includes", tuple(self.includes))
        object.__setattr__(self, "excludes", tuple(self.excludes))
        object.__setattr__(
            self,
            "_include_res",
            tuple(_glob_to_regex(p) for p in _normalize_patterns(self.includes)),
        )
        object.__setattr__(
            self,
            "_exclude_res",
            tuple(_glob_to_regex(p) for p in _normalize_patterns(self.excludes)),
        )

    @property
    def path_pattern(self) -> str:
        return self.pattern.replace(".", "/")

    @property
    def relocated_path_pattern(self) -> str:
        return self.relocated_pattern.replace(".", "/")

    def _is_included(self, path: str) -> bool:
        if len(self._include_res) == 0:
            return True
        return any(r.fullmatch(path) is not None for r in self._include_res)

    def _is_excluded(self, path: str) -> bool:
        return any(r.fullmatch(path) is not None for r in self._exclude_res)

    def can_relocate_path(self, path: str) -> bool:
        """Check whether a ``/``-delimited path falls under this rule.

        :param path: Internal name or archive path (a ``.class`` suffix is ignored).
        :returns: ``True`` if the rule applies.
        """

        if path.endswith(".class") is True:
            path = path[: -len(".class")]
        if self._is_included(path) is False or self._is_excluded(path) is True:
            return False
        return path.startswith(self.path_pattern) is True or path.startswith("/" + self.path_pattern) is True

    def can_relocate_class(self, name: str) -> bool:
        """Check whether a dotted class name falls under this rule.

        :param name: Dotted class name.
        :returns: ``True`` if the rule applies.
        """

        return "/" not in name and self.can_relocate_path(name.replace(".", "/"))

    def relocate_path(self, path: str) -> str:
        return path.replace(self.path_pattern, self.relocated_path_pattern, 1)

    def relocate_class(self, name: str) -> str:
        return name.replace(self.pattern, self.relocated_pattern, 1)


def parse_relocation_spec(spec: str) -> tuple[str, str]:
    """Parse a ``FROM=TO`` rule string.

    :param spec: Rule string, e.g. ``com.foo=shaded.com.foo``.
    :returns: ``(pattern, relocated_pattern)``.
    :raises RelocationConfigError: If the string is malformed.
    """

    pattern, sep, relocated = spec.partition("=")
    pattern = pattern.strip()
    relocated = relocated.strip()
    if sep != "=" or len(pattern) == 0 or len(relocated) == 0:
        raise RelocationConfigError(
            f"Invalid relocation {spec!r}; expected 'PATTERN=RELOCATED' (e.g. com.foo=shaded.com.foo)."
        )
    return pattern, relocated


class RelocatingRemapper:
    """Name mapper applying a set of :class:`Relocation` rules."""

    def __init__(self, relocations: Iterable[Relocation] | Mapping[str, str]) -> None:
        """Create a remapper.

        :param relocations: Rules, or a ``{pattern: relocated_pattern}`` mapping.
        """

        rules: list[Relocation]
        if isinstance(relocations, Mapping) is True:
            rules = [Relocation(k, v) for k, v in relocations.items()]
        else:
            rules = list(relocations)
        # Longest pattern first; sort is stable so ties keep declaration order.
        self._rules: tuple[Relocation, ...] = tuple(
            sorted(rules, key=lambda r: len(r.path_pattern), reverse=True)
        )

    @property
    def relocations(self) -> tuple[Relocation, ...]:
        return self._rules

    def _relocate(self, name: str, *, is_class: bool) -> str | None:
        prefix: str = ""
        suffix: str = ""
        m = _DESCRIPTOR_WRAPPER_RE.match(name)
        if m is not None:
            prefix = (m.group(1) or "") + "L"
            suffix = ";"
            name = m.group(2)

        for rule in self._rules:
            if is_class is True and rule.can_relocate_class(name) is True:
                return prefix + rule.relocate_class(name) + suffix
            if rule.can_relocate_path(name) is True:
                return prefix + rule.relocate_path(name) + suffix
        return None

    def map(self, name: str) -> str:
        relocated: str | None = self._relocate(name, is_class=False)
        if relocated is None:
            return name
        return relocated

    def map_value(self, value: str) -> str:
        relocated: str | None = self._relocate(value, is_class=True)
        if relocated is None:
            return value
        return relocated
