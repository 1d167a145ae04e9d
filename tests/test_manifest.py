from __future__ import annotations

import pytest

from jar_relocator.manifest import Manifest, ManifestError, parse_manifest

_SAMPLE = (
    b"Manifest-Version: 1.0\r\n"
    b"Created-By: test\r\n"
    b"Class-Path: lib/a.jar lib/b.jar lib/c.jar lib/d.jar lib/e.jar lib/f.jar l\r\n"
    b" ib/g.jar\r\n"
    b"\r\n"
    b"Name: com/foo/Bar.class\r\n"
    b"SHA-256-Digest: abc\r\n"
    b"Implementation-Version: 1.0\r\n"
    b"\r\n"
    b"Name: com/foo/\r\n"
    b"Sealed: true\r\n"
)


def test_parse_sections_and_continuations() -> None:
    manifest = parse_manifest(_SAMPLE)
    assert manifest.main_attributes["Manifest-Version"] == "1.0"
    assert manifest.main_attributes["Class-Path"].endswith("lib/f.jar lib/g.jar")
    assert list(manifest.entries) == ["com/foo/Bar.class", "com/foo/"]
    assert manifest.entries["com/foo/Bar.class"] == {
        "SHA-256-Digest": "abc",
        "Implementation-Version": "1.0",
    }
    assert manifest.entries["com/foo/"] == {"Sealed": "true"}


def test_parse_accepts_lf_and_extra_blank_lines() -> None:
    data = b"Manifest-Version: 1.0\n\n\nName: a\nX: y\n"
    manifest = parse_manifest(data)
    assert manifest.entries == {"a": {"X": "y"}}


def test_attribute_names_are_case_insensitive() -> None:
    manifest = parse_manifest(b"Manifest-Version: 1.0\r\nmain-class: A\r\nMain-Class: B\r\n")
    assert manifest.main_attributes == {"Manifest-Version": "1.0", "main-class": "B"}


def test_write_puts_version_first_and_uses_crlf() -> None:
    manifest = Manifest(main_attributes={"Created-By": "test", "Manifest-Version": "1.0"})
    manifest.entries["a/B.class"] = {"Foo": "bar"}
    assert manifest.to_bytes() == (
        b"Manifest-Version: 1.0\r\n"
        b"Created-By: test\r\n"
        b"\r\n"
        b"Name: a/B.class\r\n"
        b"Foo: bar\r\n"
        b"\r\n"
    )


def test_write_wraps_long_lines_at_72_bytes() -> None:
    value = "x" * 100
    manifest = Manifest(main_attributes={"Manifest-Version": "1.0", "Class-Path": value})
    lines = manifest.to_bytes().split(b"\r\n")
    assert lines[1] == (b"Class-Path: " + b"x" * 100)[:72]
    assert lines[2] == b" " + b"x" * 40
    assert all(len(line) <= 72 for line in lines)
    assert parse_manifest(manifest.to_bytes()).main_attributes["Class-Path"] == value


def test_wrapped_multibyte_characters_survive() -> None:
    value = "é" * 60
    manifest = Manifest(main_attributes={"Manifest-Version": "1.0", "Title": value})
    assert parse_manifest(manifest.to_bytes()).main_attributes["Title"] == value


@pytest.mark.parametrize(
    "data",
    [
        b" continuation first\r\n",
        b"Manifest-Version: 1.0\r\n\r\nNot-Name: x\r\n",
        b"Manifest-Version 1.0\r\n",
        b"Manifest-Version:1.0\r\n",
    ],
)
def test_malformed_manifests_rejected(data: bytes) -> None:
    with pytest.raises(ManifestError):
        parse_manifest(data)
