from __future__ import annotations

import pytest

from jar_relocator.relocation import (
    Relocation,
    RelocatingRemapper,
    RelocationConfigError,
    parse_relocation_spec,
)


def _remapper() -> RelocatingRemapper:
    return RelocatingRemapper({"com.foo": "shaded.com.foo"})


@pytest.mark.parametrize(
    "name",
    ["org/bar/Baz", "java/lang/Object", "META-INF/MANIFEST.MF", "", "I", "Lorg/bar/Baz;"],
)
def test_unmatched_names_are_identity(name: str) -> None:
    assert _remapper().map(name) == name


def test_relocates_internal_names_and_paths() -> None:
    remapper = _remapper()
    assert remapper.map("com/foo/Bar") == "shaded/com/foo/Bar"
    assert remapper.map("com/foo/Bar.class") == "shaded/com/foo/Bar.class"
    assert remapper.map("com/foo/res/data.txt") == "shaded/com/foo/res/data.txt"


def test_relocates_descriptor_wrapped_names() -> None:
    remapper = _remapper()
    assert remapper.map("Lcom/foo/Bar;") == "Lshaded/com/foo/Bar;"
    assert remapper.map("[[Lcom/foo/Bar;") == "[[Lshaded/com/foo/Bar;"
    assert remapper.map("[I") == "[I"


def test_longest_pattern_wins() -> None:
    remapper = RelocatingRemapper(
        [
            Relocation("com.foo", "a.foo"),
            Relocation("com.foo.bar", "b.bar"),
        ]
    )
    assert remapper.map("com/foo/bar/X") == "b/bar/X"
    assert remapper.map("com/foo/Y") == "a/foo/Y"
    assert [r.pattern for r in remapper.relocations] == ["com.foo.bar", "com.foo"]


def test_excludes_keep_names_in_place() -> None:
    remapper = RelocatingRemapper(
        [Relocation("com.foo", "shaded.com.foo", excludes=("com.foo.internal.**",))]
    )
    assert remapper.map("com/foo/internal/deep/Impl") == "com/foo/internal/deep/Impl"
    assert remapper.map("com/foo/internal/Impl.class") == "com/foo/internal/Impl.class"
    assert remapper.map("com/foo/Api") == "shaded/com/foo/Api"


def test_single_star_exclude_matches_package_and_direct_members_only() -> None:
    rule = Relocation("com.foo", "shaded.com.foo", excludes=("com.foo.internal.*",))
    assert rule.can_relocate_path("com/foo/internal") is False
    assert rule.can_relocate_path("com/foo/internal/Impl") is False
    assert rule.can_relocate_path("com/foo/internal/deep/Impl") is True


def test_includes_restrict_relocation() -> None:
    remapper = RelocatingRemapper(
        [Relocation("com.foo", "shaded.com.foo", includes=("com.foo.api.*",))]
    )
    assert remapper.map("com/foo/api/Client") == "shaded/com/foo/api/Client"
    assert remapper.map("com/foo/Other") == "com/foo/Other"


def test_map_value_relocates_dotted_and_slashed_names() -> None:
    remapper = _remapper()
    assert remapper.map_value("com.foo.Bar") == "shaded.com.foo.Bar"
    assert remapper.map_value("com/foo/Bar") == "shaded/com/foo/Bar"
    assert remapper.map_value("hello world") == "hello world"


def test_parse_relocation_spec() -> None:
    assert parse_relocation_spec("com.foo=shaded.com.foo") == ("com.foo", "shaded.com.foo")
    assert parse_relocation_spec(" a.b = x.y ") == ("a.b", "x.y")


@pytest.mark.parametrize("spec", ["com.foo", "=x", "com.foo=", ""])
def test_parse_relocation_spec_rejects_malformed(spec: str) -> None:
    with pytest.raises(RelocationConfigError):
        parse_relocation_spec(spec)


def test_empty_pattern_rejected() -> None:
    with pytest.raises(RelocationConfigError):
        Relocation("", "shaded")
