import pytest
from unittest.mock import Mock, patch
from xmlports import (
    Compiler, FlagKind, FlagSet, LibraryNotFound, LibraryProbe, LinkTarget,
    MissingSystemDependency, PkgConfig, Platform, Project, function_source,
    library_specs, logging,
)

SPECS = library_specs()

def linker(required):
    """fake try_link succeeding only when every required flag is in effect"""
    def try_link(source, flags, extra=(), label="link"):
        args = flags.link_args() + flags.compile_args() + list(extra)
        return all(flag in args for flag in required)
    return try_link

@pytest.fixture
def compiler(tmp_path):
    compiler = Mock(spec=Compiler)
    compiler.log_path = tmp_path / "build" / "xmlports.log"
    return compiler

@pytest.fixture
def pkg_config():
    pkg = Mock(spec=PkgConfig)
    pkg.query.return_value = None
    return pkg

@pytest.fixture
def probe(compiler, pkg_config):
    probe = LibraryProbe(compiler, pkg_config=pkg_config)
    probe.log = Mock(spec=logging.Logger)
    return probe

def test_function_source():
    src = function_source("xmlParseDoc", "libxml/parser.h")
    assert "#include <libxml/parser.h>" in src
    assert "xmlParseDoc" in src
    assert "extern void vasprintf();" in function_source("vasprintf")

def test_probe_with_explicit_dir(probe, compiler):
    probe.dirs = {"zlib": "/opt/zlib"}
    compiler.try_link.side_effect = linker(["-L/opt/zlib/lib", "-lz"])
    flags = FlagSet()
    delta = probe.probe(SPECS["zlib"], flags)
    assert delta.lib_paths == ["/opt/zlib/lib"]
    assert delta.include_paths == ["/opt/zlib/include"]
    assert flags.libs == ["-lz"]

def test_probe_prefers_pkg_config_over_defaults(probe, compiler, pkg_config):
    pkg_config.query.return_value = ("-I/pc/include/libxml2", "-L/pc/lib", "-lxml2")
    compiler.try_link.return_value = True
    flags = FlagSet()
    probe.probe(SPECS["libxml2"], flags)
    pkg_config.query.assert_called_once_with("libxml-2.0")
    assert flags.include_paths == ["/pc/include/libxml2"]
    assert flags.libs == ["-lxml2"]

def test_probe_falls_back_to_default_flags(probe, compiler):
    # glibc provides iconv without extra flags
    compiler.try_link.return_value = True
    flags = FlagSet()
    delta = probe.probe(SPECS["libiconv"], flags)
    assert delta.to_dict() == FlagSet().to_dict()
    source = compiler.try_link.call_args.args[0]
    assert "iconv_open" in source

def test_probe_tries_plain_lib_flag(probe, compiler):
    compiler.try_link.side_effect = linker(["-lz"])
    flags = FlagSet()
    probe.probe(SPECS["zlib"], flags)
    assert flags.libs == ["-lz"]
    labels = [c.kwargs["label"] for c in compiler.try_link.call_args_list]
    assert labels == ["libz using default flags", "libz using -lz"]

def test_probe_failure_rolls_back(probe, compiler):
    flags = FlagSet()
    flags.adopt_environment({"CPPFLAGS": "-I/env/include", "LIBS": "-lm"})
    before = flags.snapshot()
    # xslt links, exslt does not: the xslt flags must not survive
    compiler.try_link.side_effect = lambda source, flags, extra=(), label="": (
        "exsltFuncRegister" not in source and "-lxslt" in flags.libs)
    with pytest.raises(LibraryNotFound) as excinfo:
        probe.probe(SPECS["libxslt"], flags)
    assert excinfo.value.name == "libexslt"
    assert excinfo.value.log == compiler.log_path
    assert flags.snapshot() == before

def test_have_library_preserves_flags(probe, compiler):
    compiler.try_link.return_value = True
    flags = FlagSet()
    assert probe.have_library("lzma", flags)
    assert flags.libs == []
    compiler.try_link.assert_called_once()
    assert compiler.try_link.call_args.kwargs["extra"] == ["-llzma"]

def test_have_library_keep(probe, compiler):
    compiler.try_link.return_value = True
    flags = FlagSet()
    flags.append(FlagKind.LIB, "-lz")
    assert probe.have_library("xml2", flags, "xmlParseDoc", "libxml/parser.h", keep=True)
    assert flags.libs == ["-lxml2", "-lz"]

def test_have_func(probe, compiler):
    compiler.try_link.return_value = False
    assert not probe.have_func("xmlFirstElementChild", None, FlagSet())

def test_check_version_required(probe, compiler):
    # header found, but older than the required version
    compiler.try_cpp.side_effect = lambda source, flags, label="": "#if" not in source
    with pytest.raises(MissingSystemDependency) as excinfo:
        probe.check_version(SPECS["libxml2"], FlagSet())
    assert "2.6.21" in str(excinfo.value)

def test_check_version_missing_header(probe, compiler):
    compiler.try_cpp.return_value = False
    with pytest.raises(MissingSystemDependency):
        probe.check_version(SPECS["libxml2"], FlagSet())

def test_check_version_recommended_warns(probe, compiler):
    compiler.try_cpp.side_effect = lambda source, flags, label="": "20903" not in source
    probe.check_version(SPECS["libxml2"], FlagSet())
    probe.log.warning.assert_called_once()

def test_have_version_macro(probe, compiler):
    compiler.try_cpp.return_value = True
    probe.have_version(SPECS["libxml2"], FlagSet(), "2.6.21")
    source = compiler.try_cpp.call_args.args[0]
    assert "#include <libxml/xmlversion.h>" in source
    assert "#if LIBXML_VERSION < 20621" in source

def test_config_flags(probe):
    with patch.object(probe, "get", side_effect=["-I/c/include", "-L/c/lib -lxml2"]):
        delta = probe.config_flags("/c/bin/xml2-config")
    assert delta.include_paths == ["/c/include"]
    assert delta.libs == ["-lxml2"]

def test_pkg_config_missing_executable():
    pkg = PkgConfig(executable=None)
    pkg.executable = None
    pkg.log = Mock(spec=logging.Logger)
    assert pkg.query("libxml-2.0") is None
    pkg.log.warning.assert_called_once()

def test_pkg_config_query():
    pkg = PkgConfig(executable="pkg-config")
    with patch.object(pkg, "_query", side_effect=["", "-I/x", "-L/y", "-lxml2"]):
        assert pkg.query("libxml-2.0") == ("-I/x", "-L/y", "-lxml2")

def test_compiler_logs_attempts(tmp_path):
    project = Project(tmp_path)
    compiler = Compiler(Platform("linux", "cc", "x86_64-pc-linux-gnu",
                                 cc="xmlports-no-such-cc"), project)
    flags = FlagSet()
    assert not compiler.try_link("int main(void) { return 0; }\n", flags, label="dummy")
    assert "checking dummy" in project.probe_log.read_text()

def test_compiler_passes_flags(tmp_path):
    project = Project(tmp_path)
    compiler = Compiler(Platform("linux", "gcc", "host", cc="gcc"), project)
    flags = FlagSet()
    flags.append(FlagKind.INCLUDE, "/i")
    flags.append(FlagKind.LIB, "-lz")
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 0
        assert compiler.try_link("int main(void) { return 0; }\n", flags, extra=["-llzma"])
    args = mock_run.call_args.args[0]
    assert args[0] == "gcc"
    assert "-I/i" in args
    assert args[-2:] == ["-lz", "-llzma"]

@pytest.mark.parametrize("banner,expected", [
    ("OpenBSD clang version 8.0.1\nTarget: amd64-unknown-openbsd6.6\n", "clang"),
    ("Reading specs from /usr/lib/gcc-lib/i386-unknown-openbsd6.6/4.2.1/specs\n"
     "gcc version 4.2.1 20070719\n", "gcc"),
    ("", "cc"),
])
def test_compiler_identify_from_banner(tmp_path, banner, expected):
    compiler = Compiler(Platform("openbsd", "cc", "amd64-unknown-openbsd6.6", cc="cc"),
                        Project(tmp_path))
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = ""
        mock_run.return_value.stderr = banner
        assert compiler.identify() == expected
    assert mock_run.call_args.args[0] == ["cc", "-v"]

def test_compiler_identify_missing_program(tmp_path):
    compiler = Compiler(Platform("linux", "gcc", "host", cc="xmlports-no-such-cc"),
                        Project(tmp_path))
    compiler.log = Mock(spec=logging.Logger)
    assert compiler.identify() == "gcc"
    compiler.log.warning.assert_called_once()

def test_pkg_config_query_without_executable():
    pkg = PkgConfig(executable=None)
    pkg.executable = None
    with patch("subprocess.run") as mock_run:
        assert pkg._query("--exists", "libxml-2.0") is None
    mock_run.assert_not_called()
