from __future__ import annotations

from pathlib import Path
import zipfile

import pytest

from jar_relocator.cli import main


def test_cli_relocates_jar(tmp_path: Path, class_bytes, make_jar) -> None:
    src = make_jar(
        tmp_path / "in.jar",
        [
            ("com/foo/Bar.class", class_bytes("com/foo/Bar")),
            ("com/foo/internal/Impl.class", class_bytes("com/foo/internal/Impl")),
        ],
    )
    out = tmp_path / "out.jar"

    code = main(
        [
            "relocate",
            str(src),
            "-o",
            str(out),
            "--relocate",
            "com.foo=shaded.com.foo",
            "--exclude",
            "com.foo.internal.**",
            "-q",
        ]
    )

    assert code == 0
    with zipfile.ZipFile(out) as zf:
        names = zf.namelist()
    assert "shaded/com/foo/Bar.class" in names
    assert "com/foo/internal/Impl.class" in names


def test_cli_rejects_malformed_rule(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["relocate", str(tmp_path / "in.jar"), "-o", str(tmp_path / "o.jar"), "-r", "nonsense"])
    assert excinfo.value.code == 2


def test_cli_rejects_bad_compresslevel(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["relocate", str(tmp_path / "in.jar"), "-o", str(tmp_path / "o.jar"), "--compresslevel", "12"])
    assert excinfo.value.code == 2


def test_cli_reports_malformed_input(tmp_path: Path, make_jar, capsys) -> None:
    src = make_jar(tmp_path / "in.jar", [("com/foo/Bad.class", b"\x00\x00")])
    out = tmp_path / "out.jar"

    code = main(["relocate", str(src), "-o", str(out), "-r", "com.foo=x.foo"])

    assert code == 1
    assert not out.exists()
    assert "com/foo/Bad.class" in capsys.readouterr().err
