"""Tests for the xmlports command line and dependency manifest"""

import json
import pytest
from unittest.mock import patch
from xmlports import (
    DEPENDENCIES, ConfigurationError, FlagKind, FlagSet, Options, library_specs,
    load_manifest, main,
)


def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--help"])
    assert excinfo.value.code == 0
    assert "--use-system-libraries" in capsys.readouterr().out


def test_clean_removes_ports(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    archives = tmp_path / "ports" / "archives"
    archives.mkdir(parents=True)
    with pytest.raises(SystemExit) as excinfo:
        main(["--clean", "--root", str(tmp_path)])
    assert excinfo.value.code == 0
    assert not (tmp_path / "ports").exists()


def test_clean_dynamic_keeps_installed(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "ports" / "archives").mkdir(parents=True)
    (tmp_path / "ports" / "host").mkdir()
    with pytest.raises(SystemExit):
        main(["--clean", "--disable-static", "--root", str(tmp_path)])
    assert (tmp_path / "ports" / "host").exists()
    assert not (tmp_path / "ports" / "archives").exists()


def test_clean_skipped_in_git_checkout(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".git").mkdir()
    (tmp_path / "ports").mkdir()
    with pytest.raises(SystemExit):
        main(["--clean", "--root", str(tmp_path)])
    assert (tmp_path / "ports").exists()


def test_run_writes_configuration(tmp_path):
    flags = FlagSet()
    flags.append(FlagKind.LIB, "-lxml2")
    output = tmp_path / "config.json"
    with patch("xmlports.detect") as mock_detect, \
         patch("xmlports.Orchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.run.return_value = flags
        main(["--root", str(tmp_path), "--disable-static", "--with-xml2-dir=/opt/xml2",
              "--with-iconv-config", "/opt/bin/iconv-config", "-o", str(output)])
    mock_detect.assert_called_once_with(cross_build=False)
    options = mock_orchestrator.call_args.args[0]
    assert options == Options(static=False, dirs={"xml2": "/opt/xml2"},
                              configs={"iconv": "/opt/bin/iconv-config"})
    assert json.loads(output.read_text()) == flags.to_dict()


def test_run_prints_configuration(tmp_path, capsys):
    with patch("xmlports.detect"), patch("xmlports.Orchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.run.return_value = FlagSet()
        main(["--root", str(tmp_path), "--use-system-libraries", "--disable-clean"])
    options = mock_orchestrator.call_args.args[0]
    assert options.use_system_libraries
    assert not options.clean
    assert json.loads(capsys.readouterr().out)["libs"] == []


def test_build_error_exits_one(tmp_path):
    output = tmp_path / "config.json"
    with patch("xmlports.detect", side_effect=ConfigurationError("no host triple")):
        with pytest.raises(SystemExit) as excinfo:
            main(["--root", str(tmp_path), "--enable-cross-build", "-o", str(output)])
    assert excinfo.value.code == 1
    assert not output.exists()


def test_use_system_libraries_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XMLPORTS_USE_SYSTEM_LIBRARIES", "1")
    with patch("xmlports.detect"), patch("xmlports.Orchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.run.return_value = FlagSet()
        main(["--root", str(tmp_path)])
    assert mock_orchestrator.call_args.args[0].use_system_libraries


def test_load_manifest_override(tmp_path, monkeypatch):
    manifest = tmp_path / "deps.json"
    manifest.write_text(json.dumps({"libxml2": {"version": "2.9.12", "sha256": "ab" * 32}}))
    monkeypatch.setenv("XMLPORTS_DEPENDENCIES", str(manifest))
    pins = load_manifest()
    assert pins["libxml2"] == {"version": "2.9.12", "sha256": "ab" * 32}
    assert pins["zlib"] == DEPENDENCIES["zlib"]
    assert DEPENDENCIES["libxml2"]["version"] == "2.9.10"


def test_library_specs(tmp_path):
    patches = tmp_path / "patches" / "libxml2"
    patches.mkdir(parents=True)
    (patches / "0002-b.patch").write_text("")
    (patches / "0001-a.patch").write_text("")
    specs = library_specs(load_manifest(), patches_dir=tmp_path / "patches")
    assert list(specs) == ["zlib", "libiconv", "libxml2", "libxslt"]
    xml2 = specs["libxml2"]
    assert [p.name for p in xml2.patches] == ["0001-a.patch", "0002-b.patch"]
    assert xml2.short_name == "xml2"
    assert xml2.download_url == "http://xmlsoft.org/sources/libxml2-2.9.10.tar.gz"
    assert specs["libxslt"].patches == ()
    assert [t.libname for t in specs["libxslt"].provides] == ["xslt", "exslt"]


@pytest.mark.parametrize("content", [None, "{not json", "[1, 2]"])
def test_load_manifest_unreadable(tmp_path, content):
    manifest = tmp_path / "deps.json"
    if content is not None:
        manifest.write_text(content)
    with pytest.raises(ConfigurationError, match="manifest"):
        load_manifest(manifest)


def test_bad_manifest_exits_one(tmp_path, monkeypatch):
    monkeypatch.setenv("XMLPORTS_DEPENDENCIES", str(tmp_path / "missing.json"))
    with patch("xmlports.detect"):
        with pytest.raises(SystemExit) as excinfo:
            main(["--root", str(tmp_path), "--disable-clean"])
    assert excinfo.value.code == 1


def test_declared_python_floor():
    import tomllib
    from pathlib import Path
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    with open(pyproject, "rb") as f:
        project = tomllib.load(f)["project"]
    assert project["requires-python"] == ">=3.11.4"
