#!/usr/bin/env python3
"""xmlports.py - prepares libxml2 and libxslt for linking a native extension

features:

- Uses the host's libraries or builds pinned, verified source archives
- Builds zlib, libiconv, libxml2 and libxslt (with libexslt) in dependency order
- Each recipe is cooked once per (name, version, host), guarded by a checkpoint
- Collects every library's flags into one ordered, de-duplicated link line

class structure:

FlagSet
ShellCmd
    Project
    Compiler
    PkgConfig
    LibraryProbe
    Recipe
    Orchestrator
RecipeStrategy
    AutotoolsStrategy
    ZlibStrategy
    ZlibWin32Strategy

"""

import argparse
import contextlib
import datetime
import enum
import hashlib
import json
import logging
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import sysconfig
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePath
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, Union
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


def concat_flags(*args: Optional[str]) -> str:
    """join non-empty flag strings with a single space"""
    return " ".join(arg.strip() for arg in args if arg and arg.strip())


# ----------------------------------------------------------------------------
# constants

DEFAULT_CC = "cc"
DEFINE_PREFIX = "XMLPORTS"
USE_SYSTEM_ENV = "XMLPORTS_USE_SYSTEM_LIBRARIES"
CROSS_HOST_ENV = "XMLPORTS_CROSS_HOST"
MANIFEST_ENV = "XMLPORTS_DEPENDENCIES"

SYSTEM = "system"
BUNDLED = "bundled"

# build-script variables whose values are joined rather than replaced
FLAG_ENV_KEYS = ("CFLAGS", "CPPFLAGS", "CXXFLAGS", "LDFLAGS", "LIBS")

BASE_CFLAGS = [
    "-g",  # always include debugging information
    "-Winline",
    "-Wmissing-noreturn",
]

GUESS_PREFIXES = ["/usr/local", "/opt/homebrew", "/opt/local", "/usr"]

MACOS_SDK_LIBXML2 = (
    "/Library/Developer/CommandLineTools/SDKs/MacOSX.sdk/usr/include/libxml2"
)

DIR_OPTIONS = ["zlib", "iconv", "xml2", "xslt", "exslt", "opt"]
CONFIG_OPTIONS = ["zlib", "iconv", "xml2", "xslt", "exslt"]

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)


# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.UTC
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""


class ConfigurationError(BuildError):
    """Platform or cross-compile host cannot be determined"""


class LibraryNotFound(BuildError):
    """A library could not be found on the host"""

    def __init__(self, name: str, log: Optional[Pathlike] = None) -> None:
        self.name = name
        self.log = Path(log) if log else None
        msg = f"{name} is missing."
        if log:
            msg += f" Please locate {log} to investigate how it is failing."
        super().__init__(msg)


class MissingSystemDependency(BuildError):
    """A required host header or library is absent"""


class CommandError(BuildError):
    """Exception for command execution errors"""

    def __init__(self, msg: str, log: Optional[Pathlike] = None) -> None:
        super().__init__(msg)
        self.log = Path(log) if log else None


class PatchError(CommandError):
    """A patch failed to apply"""

    def __init__(
        self, msg: str, patch: Pathlike, log: Optional[Pathlike] = None
    ) -> None:
        super().__init__(msg, log)
        self.patch = Path(patch)


class ConfigureError(CommandError):
    """A library's configure step failed"""


class CompileError(CommandError):
    """A library's compile step failed"""


class InstallError(CommandError):
    """A library's install step failed"""


class DownloadError(BuildError):
    """Exception for download errors"""


class IntegrityError(DownloadError):
    """Downloaded archive does not match its pinned digest"""


class ExtractionError(BuildError):
    """Exception for extraction errors"""


# ----------------------------------------------------------------------------
# platform detection


OS_FAMILIES = [
    (re.compile(r"mingw|mswin|cygwin|windows"), "windows"),
    (re.compile(r"darwin|apple|macos"), "darwin"),
    (re.compile(r"solaris|sunos"), "solaris"),
    (re.compile(r"openbsd"), "openbsd"),
    (re.compile(r"freebsd"), "freebsd"),
    (re.compile(r"aix"), "aix"),
    (re.compile(r"linux"), "linux"),
]

CROSS_CC_RE = re.compile(
    r"^(?P<triple>[\w.]+-[\w.]+-[\w.-]+?)-(?:gcc|cc|clang)(?:-[\d.]+)?(?:\.exe)?$"
)


def os_family_of(name: str) -> str:
    """map a system name or host triple to an os family"""
    lowered = name.lower()
    for pattern, family in OS_FAMILIES:
        if pattern.search(lowered):
            return family
    return lowered


def compiler_id_of(cc: str) -> str:
    """guess compiler identity from the compiler command"""
    names = [Path(tok).name.lower() for tok in shlex.split(cc) if not tok.startswith("-")]
    if any("clang" in name for name in names):
        return "clang"
    if any("gcc" in name for name in names):
        return "gcc"
    if any(name in ("cl", "cl.exe") for name in names):
        return "msvc"
    return "cc"


def cross_host_from_cc(cc: str) -> Optional[str]:
    """derive a host triple from a prefixed cross compiler, e.g. x86_64-w64-mingw32-gcc"""
    tokens = shlex.split(cc)
    if not tokens:
        return None
    match = CROSS_CC_RE.match(Path(tokens[0]).name)
    return match.group("triple") if match else None


def native_host() -> str:
    """host triple of the running interpreter"""
    host = sysconfig.get_config_var("HOST_GNU_TYPE")
    if host:
        return str(host)
    return f"{platform.machine().lower()}-{platform.system().lower()}"


@dataclass(frozen=True)
class Platform:
    """Result of platform detection"""

    os_family: str
    compiler_id: str
    host: str
    cc: str = DEFAULT_CC
    cross_host: Optional[str] = None

    @property
    def is_cross(self) -> bool:
        return self.cross_host is not None

    @property
    def is_windows(self) -> bool:
        return self.os_family == "windows"

    @property
    def is_darwin(self) -> bool:
        return self.os_family == "darwin"

    @property
    def is_solaris(self) -> bool:
        return self.os_family == "solaris"

    @property
    def is_openbsd(self) -> bool:
        return self.os_family == "openbsd"

    @property
    def is_nix(self) -> bool:
        """unix-like, excluding darwin and solaris"""
        return not (self.is_windows or self.is_solaris or self.is_darwin)

    @property
    def libext(self) -> str:
        """static archive extension"""
        return "lib" if self.compiler_id == "msvc" else "a"


def detect(
    cross_build: bool = False, environ: Optional[Mapping[str, str]] = None
) -> Platform:
    """Detect os family, compiler and (optionally) the cross-compile host.

    Args:
        cross_build: whether a cross build was requested
        environ: environment mapping (defaults to os.environ)

    Returns:
        Platform description

    Raises:
        ConfigurationError: if a cross build is requested but no host
            triple can be derived
    """
    env = os.environ if environ is None else environ
    cc = env.get("CC") or DEFAULT_CC
    cross_host = None
    if cross_build:
        cross_host = (
            env.get(CROSS_HOST_ENV) or env.get("CHOST") or cross_host_from_cc(cc)
        )
        if not cross_host:
            raise ConfigurationError(
                "cross build requested but no host triple could be derived: "
                f"set {CROSS_HOST_ENV}, CHOST or CC to a prefixed cross compiler"
            )
    if cross_host:
        family = os_family_of(cross_host)
        host = cross_host
    else:
        family = os_family_of(platform.system())
        host = native_host()
    return Platform(
        os_family=family,
        compiler_id=compiler_id_of(cc),
        host=host,
        cc=cc,
        cross_host=cross_host,
    )


def sh_export_path(path: Pathlike, windows: bool) -> str:
    """convert a windows path to a sh-compatible one: C:/path -> /C/path

    configure scripts using AC_PATH_TOOL treat ':' as a $PATH separator.
    """
    _path = str(path)
    if not windows:
        return _path
    match = re.match(r"^([A-Z]):(/.*)", _path)
    if match:
        return f"/{match.group(1)}{match.group(2)}"
    return _path


# ----------------------------------------------------------------------------
# flag accumulator


class FlagKind(enum.Enum):
    INCLUDE = "include_paths"
    LIBPATH = "lib_paths"
    LIB = "libs"
    OTHER = "other_flags"


@dataclass(frozen=True)
class FlagSnapshot:
    """Immutable copy of a FlagSet's four ordered sets"""

    include_paths: tuple[str, ...] = ()
    lib_paths: tuple[str, ...] = ()
    libs: tuple[str, ...] = ()
    other_flags: tuple[str, ...] = ()


def _dedupe_keep_last(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in reversed(list(items)):
        if item not in seen:
            seen.add(item)
            out.append(item)
    out.reverse()
    return out


def split_flags(text: Optional[str]) -> list[str]:
    """shell-split flags, joining detached '-I dir' style arguments"""
    tokens = shlex.split(text or "")
    out: list[str] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok in ("-I", "-L", "-l") and i + 1 < len(tokens):
            out.append(tok + tokens[i + 1])
            i += 2
            continue
        out.append(tok)
        i += 1
    return out


class FlagSet:
    """Ordered, de-duplicated compiler and linker flags.

    Four ordered sets are kept: include paths, library paths, library names
    (``-l`` flags or archive paths) and other flags. Library paths under
    ``build_root`` always precede externally discovered ones. Library names
    keep their *last* occurrence, since a single-pass static linker needs a
    library to appear after everything that references it; the other sets
    keep their first occurrence.
    """

    def __init__(self, build_root: Optional[Pathlike] = None) -> None:
        self.build_root = Path(build_root) if build_root else None
        self.include_paths: list[str] = []
        self.lib_paths: list[str] = []
        self.libs: list[str] = []
        self.other_flags: list[str] = []

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.to_dict()}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FlagSet):
            return NotImplemented
        return self.snapshot() == other.snapshot()

    def _entries(self, kind: FlagKind) -> list[str]:
        return getattr(self, kind.value)

    def in_build_root(self, path: str) -> bool:
        """true if path lies under the build root"""
        if self.build_root is None:
            return False
        return PurePath(path).is_relative_to(self.build_root)

    def _insert_lib_path(self, value: str, front: bool) -> None:
        entries = self.lib_paths
        if value in entries:
            if not front:
                return
            entries.remove(value)
        # build-root entries always form a prefix of lib_paths
        boundary = sum(1 for p in entries if self.in_build_root(p))
        if self.in_build_root(value):
            index = 0 if front else boundary
        else:
            index = boundary if front else len(entries)
        entries.insert(index, value)

    def append(self, kind: FlagKind, value: str) -> None:
        """insert value at the end of the set if absent"""
        if kind is FlagKind.LIBPATH:
            self._insert_lib_path(value, front=False)
            return
        entries = self._entries(kind)
        if kind is FlagKind.LIB:
            if value in entries:
                entries.remove(value)
            entries.append(value)
        elif value not in entries:
            entries.append(value)

    def prepend_priority(self, kind: FlagKind, value: str) -> None:
        """insert value at the front, moving it if already present"""
        if kind is FlagKind.LIBPATH:
            self._insert_lib_path(value, front=True)
            return
        if kind is FlagKind.LIB:
            self.prepend_libs([value])
            return
        entries = self._entries(kind)
        if value in entries:
            entries.remove(value)
        entries.insert(0, value)

    def prepend_libs(self, values: Sequence[str]) -> None:
        """put a block of library names in front, keeping its order"""
        self.libs[:] = _dedupe_keep_last(list(values) + self.libs)

    def extend(
        self, kind: FlagKind, values: Iterable[str], priority: bool = False
    ) -> None:
        """add several values of one kind, preserving their relative order"""
        values = list(values)
        if kind is FlagKind.LIB and priority:
            self.prepend_libs(values)
        elif priority:
            for value in reversed(values):
                self.prepend_priority(kind, value)
        else:
            for value in values:
                self.append(kind, value)

    def add_flags(self, text: Optional[str], priority: bool = False) -> None:
        """classify raw compiler/linker flags into the four sets

        With priority, include paths, build-root library paths and library
        names go in front; external library paths are always appended.
        """
        includes, rooted, external, libs, other = [], [], [], [], []
        for arg in split_flags(text):
            if arg.startswith("-I") and len(arg) > 2:
                includes.append(arg[2:])
            elif arg.startswith("-L") and len(arg) > 2:
                path = arg[2:]
                (rooted if self.in_build_root(path) else external).append(path)
            elif arg.startswith("-l") and len(arg) > 2:
                libs.append(arg)
            else:
                other.append(arg)
        self.extend(FlagKind.INCLUDE, includes, priority=priority)
        self.extend(FlagKind.LIBPATH, rooted, priority=priority)
        self.extend(FlagKind.LIBPATH, external)
        self.extend(FlagKind.LIB, libs, priority=priority)
        self.extend(FlagKind.OTHER, other)

    def merge_config_output(self, cflags: str, libs: str) -> None:
        """merge the output of a `<lib>-config --cflags/--libs` script"""
        self.add_flags(cflags, priority=True)
        self.add_flags(libs, priority=True)

    def adopt_environment(self, environ: Mapping[str, str]) -> None:
        """fold CFLAGS, CPPFLAGS, LDFLAGS and LIBS from the environment"""
        for key in ("CFLAGS", "CPPFLAGS", "LDFLAGS", "LIBS"):
            if environ.get(key):
                self.add_flags(environ[key])

    def merge(self, delta: "FlagSet", priority: bool = False) -> None:
        """fold another FlagSet in; library names are prepended as a block"""
        self.extend(FlagKind.INCLUDE, delta.include_paths, priority=priority)
        self.extend(FlagKind.LIBPATH, delta.lib_paths, priority=priority)
        self.extend(FlagKind.LIB, delta.libs, priority=True)
        self.extend(FlagKind.OTHER, delta.other_flags)

    def rewrite_libs(self, mapping: Mapping[str, str]) -> None:
        """replace library names, e.g. '-lxml2' by an archive path"""
        self.libs[:] = _dedupe_keep_last(mapping.get(lib, lib) for lib in self.libs)

    def snapshot(self) -> FlagSnapshot:
        return FlagSnapshot(
            tuple(self.include_paths),
            tuple(self.lib_paths),
            tuple(self.libs),
            tuple(self.other_flags),
        )

    def restore(self, snapshot: FlagSnapshot) -> None:
        self.include_paths[:] = snapshot.include_paths
        self.lib_paths[:] = snapshot.lib_paths
        self.libs[:] = snapshot.libs
        self.other_flags[:] = snapshot.other_flags

    def begin_trial(self) -> FlagSnapshot:
        """start a speculative change; pass the result to commit or rollback"""
        return self.snapshot()

    def commit(self, snapshot: FlagSnapshot) -> "FlagSet":
        """accept a trial, returning what it added"""
        return self.delta_since(snapshot)

    def rollback(self, snapshot: FlagSnapshot) -> None:
        """revert a trial exactly"""
        self.restore(snapshot)

    @contextlib.contextmanager
    def scoped(self) -> Iterator[FlagSnapshot]:
        """roll back to the state at entry if the body raises"""
        snapshot = self.begin_trial()
        try:
            yield snapshot
        except BaseException:
            self.rollback(snapshot)
            raise

    @contextlib.contextmanager
    def preserving(self) -> Iterator[FlagSnapshot]:
        """always restore the state at entry"""
        snapshot = self.snapshot()
        try:
            yield snapshot
        finally:
            self.restore(snapshot)

    def delta_since(self, snapshot: FlagSnapshot) -> "FlagSet":
        """entries present now that were absent in snapshot"""
        delta = FlagSet(self.build_root)
        for kind in FlagKind:
            before = set(getattr(snapshot, kind.value))
            delta._entries(kind).extend(
                e for e in self._entries(kind) if e not in before
            )
        return delta

    def compile_args(self) -> list[str]:
        return [f"-I{p}" for p in self.include_paths] + self.other_flags

    def link_args(self) -> list[str]:
        return [f"-L{p}" for p in self.lib_paths] + self.libs

    def to_dict(self) -> dict[str, list[str]]:
        return {kind.value: list(self._entries(kind)) for kind in FlagKind}


# ----------------------------------------------------------------------------
# dependency manifest

DEPENDENCIES: dict[str, dict[str, str]] = {
    "zlib": {
        "version": "1.2.11",
        "sha256": "c3e5e9fdd5004dcb542feda5ee4f0ff0744628baf8ed2dd5d66f8ca1197cb1a1",
    },
    "libiconv": {
        "version": "1.15",
        "sha256": "ccf536620a45458d26ba83887a983b96827001e92a13847b45e4925cc8913178",
    },
    "libxml2": {
        "version": "2.9.10",
        "sha256": "aafee193ffb8fe0c82d4afef6ef91972cbaf5feea100edc2f262750611b4be1f",
    },
    "libxslt": {
        "version": "1.1.34",
        "sha256": "98b1bd46d6792925ad2dfe9a87452ea2adebf69dcb9919ffd55bf926a7f93f7f",
    },
}

ICONV_SOURCE = """\
#include <stdlib.h>
#include <iconv.h>
int main(void)
{
    iconv_t cd = iconv_open("", "");
    iconv(cd, NULL, NULL, NULL, NULL);
    return EXIT_SUCCESS;
}
"""


def function_source(function: Optional[str], header: Optional[str] = None) -> str:
    """minimal program referencing function, optionally via its header"""
    if function is None:
        return "int main(void) { return 0; }\n"
    if header is None:
        return (
            f"extern void {function}();\n"
            f"int t(void) {{ {function}(); return 0; }}\n"
            "int main(void) { return t(); }\n"
        )
    return (
        f"#include <{header}>\n\n"
        "/*top*/\n"
        f"int t(void) {{ void ((*volatile p)()); p = (void ((*)()))({function}); return !p; }}\n"
        "int main(void) { return t(); }\n"
    )


@dataclass(frozen=True)
class LinkTarget:
    """One linkable library provided by a LibrarySpec"""

    libname: str
    option: str
    pkg_config: Optional[str]
    header: str
    function: str
    source: Optional[str] = None
    include_subdirs: tuple[str, ...] = ()

    def trial_source(self) -> str:
        return self.source or function_source(self.function, self.header)


@dataclass(frozen=True)
class LibrarySpec:
    """Immutable description of one pinned dependency"""

    name: str
    version: str
    url: str
    digest: str
    provides: tuple[LinkTarget, ...]
    patches: tuple[Path, ...] = ()
    depends_on: tuple[str, ...] = ()
    configure_options: tuple[str, ...] = ()
    configure_env: Mapping[str, str] = field(default_factory=dict)
    platform_options: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    platform_env: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    dependency_options: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    dependency_env: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    system_dependency_options: Mapping[str, tuple[str, ...]] = field(
        default_factory=dict
    )
    build_system: str = "autotools"
    config_script: Optional[str] = None
    bundle_policy: str = "always"
    version_header: Optional[str] = None
    version_macro: Optional[str] = None
    required_version: Optional[str] = None
    recommended_version: Optional[str] = None
    digest_algo: str = "sha256"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name_version}'>"

    @property
    def name_version(self) -> str:
        """return name-version: e.g. libxml2-2.9.10"""
        return f"{self.name}-{self.version}"

    @property
    def short_name(self) -> str:
        """name without 'lib' prefix: libxml2 -> xml2"""
        match = re.match(r"\Alib(.+)\Z", self.name)
        return match.group(1) if match else self.name

    @property
    def download_url(self) -> str:
        return self.url.format(name=self.name, version=self.version)


def load_manifest(path: Optional[Pathlike] = None) -> dict[str, dict[str, str]]:
    """pinned versions and digests, optionally overridden by a json file"""
    manifest = {name: dict(pins) for name, pins in DEPENDENCIES.items()}
    path = path or os.getenv(MANIFEST_ENV)
    if path:
        try:
            with open(path, encoding="utf8") as f:
                overrides = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot read dependency manifest {path}: {e}") from e
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"dependency manifest {path} must be a json object")
        for name, pins in overrides.items():
            manifest.setdefault(name, {}).update(pins)
    return manifest


def library_specs(
    manifest: Optional[Mapping[str, Mapping[str, str]]] = None,
    patches_dir: Optional[Pathlike] = None,
) -> dict[str, LibrarySpec]:
    """build the LibrarySpecs for zlib, libiconv, libxml2 and libxslt"""
    manifest = manifest or load_manifest()

    def pins(name: str) -> dict[str, Any]:
        entry = manifest[name]
        patches: tuple[Path, ...] = ()
        if patches_dir:
            patches = tuple(sorted(Path(patches_dir, name).glob("*.patch")))
        return {
            "name": name,
            "version": entry["version"],
            "digest": entry["sha256"],
            "patches": patches,
        }

    darwin_tools = {"darwin": {"RANLIB": "/usr/bin/ranlib", "AR": "/usr/bin/ar"}}

    specs = [
        LibrarySpec(
            url=manifest["zlib"].get(
                "url", "http://zlib.net/fossils/{name}-{version}.tar.gz"
            ),
            build_system="zlib",
            bundle_policy="cross-or-windows",
            provides=(
                LinkTarget("z", "zlib", "zlib", "zlib.h", "gzdopen"),
            ),
            **pins("zlib"),
        ),
        LibrarySpec(
            url=manifest["libiconv"].get(
                "url", "http://ftp.gnu.org/pub/gnu/libiconv/{name}-{version}.tar.gz"
            ),
            configure_env={"CPPFLAGS": "-Wall", "CFLAGS": "-O2 -g", "CXXFLAGS": "-O2 -g"},
            bundle_policy="cross-or-windows-unless-nix",
            provides=(
                LinkTarget(
                    "iconv", "iconv", "libiconv", "iconv.h", "iconv_open",
                    source=ICONV_SOURCE,
                ),
            ),
            **pins("libiconv"),
        ),
        LibrarySpec(
            url=manifest["libxml2"].get(
                "url", "http://xmlsoft.org/sources/{name}-{version}.tar.gz"
            ),
            depends_on=("zlib", "libiconv"),
            configure_options=(
                "--without-python",
                "--without-readline",
                "--with-c14n",
                "--with-debug",
                "--with-threads",
            ),
            platform_env=darwin_tools,
            dependency_options={
                "zlib": ("--with-zlib={prefix}",),
                "libiconv": ("--with-iconv={prefix}",),
            },
            dependency_env={"zlib": {"CFLAGS": "-I{prefix}/include"}},
            system_dependency_options={"libiconv": ("--with-iconv=yes",)},
            config_script="xml2-config",
            provides=(
                LinkTarget(
                    "xml2", "xml2", "libxml-2.0", "libxml/parser.h", "xmlParseDoc",
                    include_subdirs=("libxml2",),
                ),
            ),
            version_header="libxml/xmlversion.h",
            version_macro="LIBXML_VERSION",
            required_version="2.6.21",
            recommended_version="2.9.3",
            **pins("libxml2"),
        ),
        LibrarySpec(
            url=manifest["libxslt"].get(
                "url", "http://xmlsoft.org/sources/{name}-{version}.tar.gz"
            ),
            depends_on=("libxml2",),
            configure_options=("--without-python", "--without-crypto", "--with-debug"),
            platform_env=darwin_tools,
            dependency_options={"libxml2": ("--with-libxml-prefix={sh_prefix}",)},
            config_script="xslt-config",
            provides=(
                LinkTarget(
                    "xslt", "xslt", "libxslt", "libxslt/xslt.h",
                    "xsltParseStylesheetDoc",
                ),
                LinkTarget(
                    "exslt", "exslt", "libexslt", "libexslt/exslt.h",
                    "exsltFuncRegister",
                ),
            ),
            **pins("libxslt"),
        ),
    ]
    return {spec.name: spec for spec in specs}


def resolve_order(specs: Iterable[LibrarySpec]) -> list[str]:
    """names in dependency order: every library after all it depends on

    Raises:
        ConfigurationError: on a dependency cycle or an unknown dependency
    """
    by_name = {spec.name: spec for spec in specs}
    order: list[str] = []
    visiting: set[str] = set()

    def visit(name: str, chain: list[str]) -> None:
        if name in order:
            return
        if name in visiting:
            raise ConfigurationError(
                "dependency cycle: " + " -> ".join(chain + [name])
            )
        if name not in by_name:
            raise ConfigurationError(f"{chain[-1]} depends on unknown library {name}")
        visiting.add(name)
        for dep in by_name[name].depends_on:
            visit(dep, chain + [name])
        visiting.discard(name)
        order.append(name)

    for name in by_name:
        visit(name, [])
    return order


BUNDLE_POLICIES: dict[str, Callable[[Platform], bool]] = {
    "always": lambda p: True,
    "never": lambda p: False,
    "cross-or-windows": lambda p: p.is_cross or p.is_windows,
    "cross-or-windows-unless-nix": lambda p: (p.is_cross or p.is_windows)
    and not p.is_nix,
}


@dataclass(frozen=True)
class LinkAugmentation:
    """Extra link flag that a library's discovery script omits"""

    suffix: str
    flag: str
    prepend: bool = False
    static_only: bool = False
    requires: Optional[str] = None

    def applies(self, spec: LibrarySpec, static: bool, features: Iterable[str]) -> bool:
        if not spec.short_name.endswith(self.suffix):
            return False
        if self.static_only and not static:
            return False
        return self.requires is None or self.requires in features


LINK_AUGMENTATIONS = (
    # xml2-config --libs omits -llzma; add it last when linking statically
    LinkAugmentation("xml2", "-llzma", static_only=True, requires="lzma"),
    # xslt-config has no way to emit -lexslt
    LinkAugmentation("xslt", "-lexslt", prepend=True),
)


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def execute(
        self,
        step: str,
        args: list[str],
        cwd: Pathlike,
        log_dir: Pathlike,
        env: Optional[Mapping[str, str]] = None,
        error: type[CommandError] = CommandError,
    ) -> Path:
        """Run one build step, appending its output to <log_dir>/<step>.log

        Args:
            step: step name, used for the log file name
            args: command and arguments
            cwd: working directory
            log_dir: folder receiving the log file
            env: environment overrides on top of os.environ
            error: exception class raised on failure

        Returns:
            Path to the step's log file

        Raises:
            CommandError: (or the given subclass) if the command fails
        """
        log_path = Path(log_dir) / f"{step}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log.info("%s: %s", step, shlex.join(args))
        full_env = {**os.environ, **env} if env else None
        with open(log_path, "a", encoding="utf8") as logf:
            logf.write(f"$ {shlex.join(args)}\n")
            logf.flush()
            try:
                proc = subprocess.run(
                    args,
                    cwd=str(cwd),
                    env=full_env,
                    stdout=logf,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
            except OSError as e:
                msg = f"{step} could not run {args[0]}: {e}; see {log_path}"
                self.log.critical(msg)
                raise error(msg, log=log_path) from e
        if proc.returncode != 0:
            msg = f"{step} failed with exit status {proc.returncode}; see {log_path}"
            self.log.critical(msg)
            raise error(msg, log=log_path)
        return log_path

    def get(self, shellcmd: Union[str, list[str]], cwd: Pathlike = ".") -> str:
        """get output of shellcmd"""
        args = shellcmd.split() if isinstance(shellcmd, str) else shellcmd
        return subprocess.check_output(args, encoding="utf8", cwd=str(cwd)).strip()

    def download(self, url: str, tofolder: Pathlike) -> Path:
        """Download a file from a url into a folder

        Raises:
            DownloadError: If the transfer fails
        """
        _path = Path(tofolder) / os.path.basename(url)
        try:
            self.log.info("Downloading %s...", os.path.basename(url))
            urlretrieve(url, filename=_path)
        except OSError as e:
            if _path.exists():
                _path.unlink()
            raise DownloadError(f"Failed to download {url}: {e}") from e
        self.log.info("Download complete: %s", _path.name)
        return _path

    def digest(self, filepath: Pathlike, algo: str = "sha256") -> str:
        """hex digest of a file"""
        hash_func = hashlib.new(algo)
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hash_func.update(chunk)
        return hash_func.hexdigest()

    def extract(self, archive: Pathlike, tofolder: Pathlike = ".") -> None:
        """Extract archive with security measures

        Raises:
            ExtractionError: If extraction fails or file type unsupported
        """
        if tarfile.is_tarfile(archive):
            try:
                with tarfile.open(archive) as f:
                    self.log.info("Extracting %s", os.path.basename(str(archive)))
                    f.extractall(tofolder, filter="data")
            except (tarfile.TarError, OSError) as e:
                raise ExtractionError(f"Failed to extract {archive}: {e}") from e
        elif zipfile.is_zipfile(archive):
            try:
                self.log.info("Extracting %s", os.path.basename(str(archive)))
                with zipfile.ZipFile(archive) as f:
                    f.extractall(tofolder)
            except (zipfile.BadZipFile, OSError) as e:
                raise ExtractionError(f"Failed to extract {archive}: {e}") from e
        else:
            raise ExtractionError(f"Unsupported archive type: {archive}")

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""
        path = Path(path)
        if path.is_dir():
            if not silent:
                self.log.info("Removing folder: %s", path)
            shutil.rmtree(path)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.debug("File not found: %s", path)


# ----------------------------------------------------------------------------
# main classes


class Project(ShellCmd):
    """Utility class to hold project directory structure"""

    def __init__(self, root: Optional[Pathlike] = None) -> None:
        self.root = Path(root).resolve() if root else Path.cwd()
        self.build = self.root / "build"
        self.ports = self.root / "ports"
        self.archives = self.ports / "archives"
        self.tmp = self.ports / "tmp"
        self.patches = self.root / "patches"
        self.probe_log = self.build / "xmlports.log"
        self.log = logging.getLogger(self.__class__.__name__)

    def setup(self) -> None:
        """create main project directories"""
        for path in [self.build, self.ports, self.archives, self.tmp]:
            path.mkdir(parents=True, exist_ok=True)

    @property
    def is_dev_checkout(self) -> bool:
        """true when the root is a development work tree"""
        return (self.root / ".git").exists()

    def checkpoint(self, name: str, version: str, host: str) -> Path:
        """marker proving a recipe completed for (name, version, host)"""
        return self.ports / f"{name}-{version}-{host}.installed"

    def clean_intermediates(self) -> None:
        """remove extracted sources and build trees of recipes"""
        if self.tmp.exists():
            self.remove(self.tmp)

    def clean(self, static: bool = True, cwd: Optional[Pathlike] = None) -> bool:
        """remove files only used during the build

        Installed ports are kept when linking dynamically, since the
        extension still needs their shared libraries at runtime.
        """
        if self.is_dev_checkout:
            self.log.info("development work tree: skipping clean")
            return False
        self.log.info("Cleaning files only used during build.")
        pwd = Path(cwd) if cwd else Path.cwd()
        for path in sorted(pwd.glob("tmp/*/ports")):
            self.remove(path)
        if static:
            self.remove(self.ports)
        else:
            self.remove(self.archives)
        return True


class Compiler(ShellCmd):
    """Runs trial compilations against the current flags.

    Every attempt and its compiler output is appended to the probe log.
    """

    def __init__(self, host_platform: Platform, project: Project) -> None:
        self.platform = host_platform
        self.project = project
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def log_path(self) -> Path:
        return self.project.probe_log

    def _try(self, label: str, source: str, build_args: Callable[[Path], list[str]]) -> bool:
        self.project.build.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="xmlports-") as tmp:
            src = Path(tmp) / "conftest.c"
            src.write_text(source, encoding="utf8")
            args = shlex.split(self.platform.cc) + build_args(src)
            with open(self.log_path, "a", encoding="utf8") as logf:
                logf.write(f"checking {label}\n{source}\n$ {shlex.join(args)}\n")
                logf.flush()
                try:
                    proc = subprocess.run(
                        args, cwd=tmp, stdout=logf, stderr=subprocess.STDOUT, check=False
                    )
                except OSError as e:
                    logf.write(f"{e}\n")
                    return False
                ok = proc.returncode == 0
                logf.write(f"=> {'yes' if ok else 'no'}\n\n")
        self.log.debug("checking %s... %s", label, "yes" if ok else "no")
        return ok

    def identify(self) -> str:
        """compiler identity from the `cc -v` banner, falling back to its name"""
        args = [*shlex.split(self.platform.cc), "-v"]
        try:
            proc = subprocess.run(args, capture_output=True, encoding="utf8", check=False)
        except OSError as e:
            self.log.warning("could not run %s: %s", shlex.join(args), e)
            return self.platform.compiler_id
        banner = f"{proc.stdout}\n{proc.stderr}".lower()
        if "clang" in banner:
            return "clang"
        if "gcc" in banner:
            return "gcc"
        return self.platform.compiler_id

    def try_cpp(self, source: str, flags: FlagSet, label: str = "preprocess") -> bool:
        return self._try(
            label,
            source,
            lambda src: ["-E", *flags.compile_args(), str(src), "-o", str(src.with_suffix(".i"))],
        )

    def try_link(
        self,
        source: str,
        flags: FlagSet,
        extra: Sequence[str] = (),
        label: str = "link",
    ) -> bool:
        return self._try(
            label,
            source,
            lambda src: [
                *flags.compile_args(),
                str(src),
                "-o",
                str(src.with_name("conftest")),
                *flags.link_args(),
                *extra,
            ],
        )


class PkgConfig(ShellCmd):
    """Thin wrapper over the pkg-config utility"""

    def __init__(self, executable: Optional[str] = None) -> None:
        self.executable = (
            executable or os.getenv("PKG_CONFIG") or shutil.which("pkg-config")
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def _query(self, *args: str) -> Optional[str]:
        if not self.executable:
            return None
        try:
            proc = subprocess.run(
                [self.executable, *args],
                capture_output=True,
                encoding="utf8",
                check=False,
            )
        except OSError as e:
            self.log.warning("could not run %s: %s", self.executable, e)
            return None
        return proc.stdout.strip() if proc.returncode == 0 else None

    def query(self, package: str) -> Optional[tuple[str, str, str]]:
        """cflags, ldflags and libs of package, or None"""
        if not self.executable:
            self.log.warning(
                "pkg-config could not be used to find %s; please install pkg-config",
                package,
            )
            return None
        if self._query("--exists", package) is None:
            return None
        cflags = self._query("--cflags", package) or ""
        ldflags = self._query("--libs-only-L", package) or ""
        libs = self._query("--libs-only-l", package) or ""
        self.log.debug(
            "pkg-config %s: cflags=%r ldflags=%r libs=%r", package, cflags, ldflags, libs
        )
        return cflags, ldflags, libs


class LibraryProbe(ShellCmd):
    """Finds installed libraries on the host.

    Candidates are tried in order; each is merged into the FlagSet as a
    trial and kept only if a minimal program links against it.
    """

    def __init__(
        self,
        compiler: Compiler,
        pkg_config: Optional[PkgConfig] = None,
        dirs: Optional[Mapping[str, str]] = None,
        configs: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.compiler = compiler
        self.pkg_config = pkg_config or PkgConfig()
        self.dirs = dict(dirs or {})
        self.configs = dict(configs or {})
        self.log = logging.getLogger(self.__class__.__name__)

    def dir_flags(self, directory: str, target: LinkTarget) -> FlagSet:
        """flags for a library installed under one or more prefixes"""
        delta = FlagSet()
        for prefix in directory.split(os.pathsep):
            include = Path(prefix) / "include"
            delta.append(FlagKind.INCLUDE, str(include))
            for subdir in target.include_subdirs:
                delta.append(FlagKind.INCLUDE, str(include / subdir))
            delta.append(FlagKind.LIBPATH, str(Path(prefix) / "lib"))
        delta.append(FlagKind.LIB, f"-l{target.libname}")
        return delta

    def config_flags(self, script: str) -> Optional[FlagSet]:
        """flags reported by a `<lib>-config` style script"""
        try:
            cflags = self.get(["sh", script, "--cflags"])
            libs = self.get(["sh", script, "--libs"])
        except (subprocess.CalledProcessError, OSError) as e:
            self.log.warning("could not run %s: %s", script, e)
            return None
        delta = FlagSet()
        delta.add_flags(cflags)
        delta.add_flags(libs)
        return delta

    def candidates(self, target: LinkTarget) -> Iterator[tuple[str, FlagSet]]:
        """(label, flags) pairs in the order they should be tried"""
        for key in (target.option, "opt"):
            if self.dirs.get(key):
                yield f"--with-{key}-dir", self.dir_flags(self.dirs[key], target)
        if self.configs.get(target.option):
            delta = self.config_flags(self.configs[target.option])
            if delta is not None:
                yield f"--with-{target.option}-config", delta
        if target.pkg_config:
            result = self.pkg_config.query(target.pkg_config)
            if result:
                delta = FlagSet()
                for text in result:
                    delta.add_flags(text)
                yield f"pkg-config {target.pkg_config}", delta
        yield "default flags", FlagSet()
        for name in (target.libname, f"lib{target.libname}"):
            delta = FlagSet()
            delta.append(FlagKind.LIB, f"-l{name}")
            yield f"-l{name}", delta
        for prefix in GUESS_PREFIXES:
            if Path(prefix).is_dir():
                yield prefix, self.dir_flags(prefix, target)

    def probe_target(self, target: LinkTarget, flags: FlagSet) -> bool:
        """merge the first candidate that links; leave flags untouched otherwise"""
        for label, delta in self.candidates(target):
            trial = flags.begin_trial()
            flags.merge(delta)
            if self.compiler.try_link(
                target.trial_source(), flags, label=f"lib{target.libname} using {label}"
            ):
                self.log.info("found lib%s using %s", target.libname, label)
                flags.commit(trial)
                return True
            flags.rollback(trial)
        return False

    def probe(self, spec: LibrarySpec, flags: FlagSet) -> FlagSet:
        """Find every library spec provides and merge their flags.

        Returns:
            the flags added

        Raises:
            LibraryNotFound: if any provided library cannot be linked; flags
                are restored to their state before the call
        """
        trial = flags.begin_trial()
        for target in spec.provides:
            if not self.probe_target(target, flags):
                flags.rollback(trial)
                raise LibraryNotFound(f"lib{target.libname}", log=self.compiler.log_path)
        return flags.commit(trial)

    def have_library(
        self,
        libname: str,
        flags: FlagSet,
        function: Optional[str] = None,
        header: Optional[str] = None,
        keep: bool = False,
    ) -> bool:
        """check that -l<libname> links; merge it only when keep is set"""
        lib = f"-l{libname}"
        with flags.preserving():
            ok = self.compiler.try_link(
                function_source(function, header), flags, extra=[lib], label=lib
            )
        if ok and keep:
            flags.prepend_priority(FlagKind.LIB, lib)
        return ok

    def have_func(self, function: str, header: Optional[str], flags: FlagSet) -> bool:
        """check that function links with the current flags"""
        return self.compiler.try_link(
            function_source(function, header), flags, label=f"{function}()"
        )

    def have_version(
        self, spec: LibrarySpec, flags: FlagSet, version: Optional[str] = None
    ) -> bool:
        """check the version header is found and, optionally, recent enough"""
        source = f"#include <{spec.version_header}>\n"
        if version:
            major, minor, patch = (version.split(".") + ["0", "0"])[:3]
            version_int = f"{int(major)}{int(minor):02d}{int(patch):02d}"
            source += (
                f"#if {spec.version_macro} < {version_int}\n"
                f"#  error {spec.name} is older than {version}\n"
                "#endif\n"
            )
        return self.compiler.try_cpp(source, flags, label=f"{spec.name} >= {version}")

    def check_version(self, spec: LibrarySpec, flags: FlagSet) -> None:
        """Abort on a missing or too old library; warn when below recommended.

        Raises:
            MissingSystemDependency: headers absent or version too old
        """
        if not spec.version_header:
            return
        if not self.have_version(spec, flags):
            raise MissingSystemDependency(
                f"cannot discover where {spec.name} is located on your system. "
                "please make sure `pkg-config` is installed."
            )
        if spec.required_version and not self.have_version(
            spec, flags, spec.required_version
        ):
            raise MissingSystemDependency(
                f"{spec.name} version {spec.required_version} or later is required!"
            )
        if spec.recommended_version and not self.have_version(
            spec, flags, spec.recommended_version
        ):
            self.log.warning(
                "%s version %s or later is highly recommended, but proceeding anyway.",
                spec.name,
                spec.recommended_version,
            )


# ----------------------------------------------------------------------------
# recipe engine


@dataclass(frozen=True)
class BuildTarget:
    """Where and how bundled libraries are built; fixed for a run"""

    host: str
    static: bool
    root: Path
    os_family: str
    cc: str = DEFAULT_CC
    cross_host: Optional[str] = None
    libext: str = "a"

    @property
    def is_windows(self) -> bool:
        return self.os_family == "windows"

    @classmethod
    def from_platform(
        cls, host_platform: Platform, static: bool, root: Pathlike
    ) -> "BuildTarget":
        return cls(
            host=host_platform.host,
            static=static,
            root=Path(root),
            os_family=host_platform.os_family,
            cc=host_platform.cc,
            cross_host=host_platform.cross_host,
            libext=host_platform.libext,
        )


@dataclass
class ConfigureStep:
    """Configure-script flags and the environment the script runs with.

    Compiler and linker settings are passed as environment, not as
    command-line options.
    """

    flags: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    def add(
        self, flags: Iterable[str] = (), env: Optional[Mapping[str, str]] = None
    ) -> None:
        for flag in flags:
            if flag not in self.flags:
                self.flags.append(flag)
        for key, value in (env or {}).items():
            self.setenv(key, value)

    def setenv(self, key: str, value: str) -> None:
        """flag variables accumulate, anything else is replaced"""
        if key in FLAG_ENV_KEYS:
            self.env[key] = concat_flags(self.env.get(key), value)
        else:
            self.env[key] = value.strip()

    def merge(self, other: "ConfigureStep") -> None:
        self.add(other.flags, other.env)


@dataclass
class RecipeState:
    """Mutable record of one recipe's progress"""

    spec: LibrarySpec
    work_dir: Path
    prefix: Path
    configure: ConfigureStep
    checkpoint: Path
    delta: Optional[FlagSet] = None

    @property
    def completed(self) -> bool:
        """the checkpoint is the only record of a finished build"""
        return self.checkpoint.exists()


class RecipeStrategy:
    """Build script contract: configure, compile and install one library"""

    def configure(self, recipe: "Recipe") -> None:
        raise NotImplementedError

    def compile(self, recipe: "Recipe") -> None:
        raise NotImplementedError

    def install(self, recipe: "Recipe") -> None:
        raise NotImplementedError


class AutotoolsStrategy(RecipeStrategy):
    """./configure && make && make install"""

    def configure(self, recipe: "Recipe") -> None:
        step = recipe.state.configure
        recipe.execute(
            "configure",
            ["sh", "configure", *step.flags],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            env=step.env,
            error=ConfigureError,
        )

    def compile(self, recipe: "Recipe") -> None:
        recipe.execute(
            "compile",
            [recipe.make],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            env=recipe.state.configure.env,
            error=CompileError,
        )

    def install(self, recipe: "Recipe") -> None:
        recipe.execute(
            "install",
            [recipe.make, "install"],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            env=recipe.state.configure.env,
            error=InstallError,
        )


class ZlibStrategy(AutotoolsStrategy):
    """zlib's hand-written configure: CHOST from the environment, --static"""

    def configure(self, recipe: "Recipe") -> None:
        cflags = concat_flags(os.getenv("CFLAGS"), "-fPIC", "-g")
        env = {"CC": recipe.target.cc, "CHOST": recipe.target.host, "CFLAGS": cflags}
        recipe.execute(
            "configure",
            ["sh", "configure", "--static", f"--prefix={recipe.prefix}"],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            env=env,
            error=ConfigureError,
        )


class ZlibWin32Strategy(RecipeStrategy):
    """zlib on windows: install paths written into win32/Makefile.gcc"""

    MAKEFILE = Path("win32") / "Makefile.gcc"

    def configure(self, recipe: "Recipe") -> None:
        makefile = recipe.work_dir / self.MAKEFILE
        text = makefile.read_text(encoding="utf8")
        if recipe.target.cross_host:
            text = re.sub(
                r"^PREFIX\s*=\s*$",
                f"PREFIX = {recipe.target.cross_host}-",
                text,
                count=1,
                flags=re.M,
            )
        prefix = recipe.prefix
        header = (
            f"BINARY_PATH = {prefix}/bin\n"
            f"LIBRARY_PATH = {prefix}/lib\n"
            f"INCLUDE_PATH = {prefix}/include\n"
        )
        makefile.write_text(header + text, encoding="utf8")

    def compile(self, recipe: "Recipe") -> None:
        recipe.execute(
            "compile",
            [recipe.make, "-f", str(self.MAKEFILE)],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            error=CompileError,
        )

    def install(self, recipe: "Recipe") -> None:
        recipe.execute(
            "install",
            [recipe.make, "-f", str(self.MAKEFILE), "install"],
            cwd=recipe.work_dir,
            log_dir=recipe.tmp_dir,
            error=InstallError,
        )


def select_strategy(spec: LibrarySpec, target: BuildTarget) -> RecipeStrategy:
    """pick the build script contract for spec on target's platform"""
    if spec.build_system == "zlib":
        return ZlibWin32Strategy() if target.is_windows else ZlibStrategy()
    return AutotoolsStrategy()


class Recipe(ShellCmd):
    """Fetch, verify, patch, configure, compile, install and activate one library.

    The lifecycle runs at most once per (name, version, host); the
    checkpoint file written on success makes later runs go straight to
    activation.
    """

    def __init__(
        self,
        spec: LibrarySpec,
        target: BuildTarget,
        project: Project,
        extra: Optional[ConfigureStep] = None,
        strategy: Optional[RecipeStrategy] = None,
        augmentations: Sequence[LinkAugmentation] = (),
        features: Iterable[str] = (),
    ) -> None:
        self.spec = spec
        self.target = target
        self.project = project
        self.extra = extra or ConfigureStep()
        self.strategy = strategy or select_strategy(spec, target)
        self.augmentations = tuple(augmentations)
        self.features = frozenset(features)
        self.make = os.getenv("MAKE", "make")
        self.log = logging.getLogger(self.__class__.__name__)
        self.state = RecipeState(
            spec=spec,
            work_dir=self.work_dir,
            prefix=self.prefix,
            configure=self.configure_step(),
            checkpoint=self.checkpoint,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.spec.name_version}'>"

    @property
    def name_version(self) -> str:
        return self.spec.name_version

    @property
    def archive(self) -> Path:
        """path of the downloaded archive"""
        return self.project.archives / os.path.basename(self.spec.download_url)

    @property
    def tmp_dir(self) -> Path:
        """per-recipe scratch folder, also holding step logs"""
        return self.project.tmp / self.target.host / self.spec.name / self.spec.version

    @property
    def work_dir(self) -> Path:
        """extracted source folder"""
        return self.tmp_dir / self.name_version

    @property
    def prefix(self) -> Path:
        """private install prefix"""
        return self.project.ports / self.target.host / self.spec.name / self.spec.version

    @property
    def libdir(self) -> Path:
        return self.prefix / "lib"

    @property
    def checkpoint(self) -> Path:
        return self.project.checkpoint(self.spec.name, self.spec.version, self.target.host)

    def configure_step(self) -> ConfigureStep:
        """compute configure flags and build environment"""
        spec, target = self.spec, self.target
        windows = target.is_windows
        step = ConfigureStep(
            env={key: os.getenv(key, "") for key in FLAG_ENV_KEYS if os.getenv(key)}
        )
        # use the same compiler for every recipe
        step.setenv("CC", target.cc)
        step.add(
            [
                f"--prefix={sh_export_path(self.prefix, windows)}",
                f"--libdir={sh_export_path(self.libdir, windows)}",
            ]
        )
        step.add(spec.configure_options, spec.configure_env)
        step.add(
            spec.platform_options.get(target.os_family, ()),
            spec.platform_env.get(target.os_family),
        )
        step.merge(self.extra)
        if target.static:
            step.add(["--disable-shared", "--enable-static"], {"CFLAGS": "-fPIC"})
        else:
            step.add(["--enable-shared", "--disable-static"])
        if target.cross_host:
            step.add([f"--target={target.cross_host}", f"--host={target.cross_host}"])
        return step

    def notice(self) -> None:
        """tell the user a packaged library is being used"""
        self.log.info(
            "Building with a packaged version of %s%s",
            self.name_version,
            "" if self.spec.patches else ".",
        )
        if self.spec.patches:
            self.log.info("with the following patches applied:")
            for patch in self.spec.patches:
                self.log.info("  - %s", patch.name)
        self.log.info(
            "To use your OS/distro %s instead, rerun with --use-system-libraries.",
            self.spec.name,
        )

    def fetch(self) -> Path:
        """Download the archive (or reuse a verified cached copy) and verify it.

        Raises:
            IntegrityError: if the digest does not match; the archive is removed
        """
        self.project.archives.mkdir(parents=True, exist_ok=True)
        archive = self.archive
        expected = self.spec.digest.lower()
        if archive.exists():
            if self.digest(archive, self.spec.digest_algo) == expected:
                self.log.debug("Using cached file: %s", archive)
                return archive
            self.log.warning("Cached %s does not verify, re-downloading", archive.name)
            archive.unlink()
        self.download(self.spec.download_url, tofolder=self.project.archives)
        actual = self.digest(archive, self.spec.digest_algo)
        if actual != expected:
            archive.unlink()
            msg = (
                f"{archive.name}: {self.spec.digest_algo} mismatch "
                f"(expected {expected}, got {actual})"
            )
            self.log.critical(msg)
            raise IntegrityError(msg)
        self.log.info("Checksum verified: %s", archive.name)
        return archive

    def setup(self) -> None:
        """fetch, verify and extract into a fresh work folder"""
        self.project.setup()
        archive = self.fetch()
        if self.tmp_dir.exists():
            self.remove(self.tmp_dir)
        self.makedirs(self.tmp_dir)
        self.extract(archive, tofolder=self.tmp_dir)
        if not self.work_dir.exists():
            raise ExtractionError(f"could not extract {self.work_dir.name} from {archive}")

    def patch(self) -> None:
        """apply patches in sorted order"""
        for patch in self.spec.patches:
            self.log.info("applying %s to %s", patch.name, self.name_version)
            try:
                self.execute(
                    "patch",
                    ["patch", "-p1", "-i", str(patch)],
                    cwd=self.work_dir,
                    log_dir=self.tmp_dir,
                )
            except CommandError as e:
                raise PatchError(
                    f"failed to apply {patch.name} to {self.name_version}",
                    patch=patch,
                    log=e.log,
                ) from e

    def cook(self) -> None:
        """run the full build lifecycle"""
        self.setup()
        self.patch()
        self.strategy.configure(self)
        self.strategy.compile(self)
        self.strategy.install(self)

    def activate(self, flags: FlagSet) -> FlagSet:
        """merge the installed library's flags; returns what was added"""
        with flags.scoped() as trial:
            if self.spec.config_script:
                script = str(self.prefix / "bin" / self.spec.config_script)
                try:
                    cflags = self.get(["sh", script, "--cflags"])
                    libs = self.get(["sh", script, "--libs"])
                except (subprocess.CalledProcessError, OSError) as e:
                    raise InstallError(f"could not run {script}: {e}") from e
                flags.merge_config_output(cflags, libs)
            else:
                flags.extend(FlagKind.INCLUDE, [str(self.prefix / "include")], priority=True)
                flags.extend(FlagKind.LIBPATH, [str(self.libdir)], priority=True)
                flags.extend(
                    FlagKind.LIB,
                    [f"-l{target.libname}" for target in self.spec.provides],
                    priority=True,
                )
            if self.spec.patches:
                names = " ".join(patch.name for patch in self.spec.patches)
                macro = f"{DEFINE_PREFIX}_{self.spec.name.upper()}_PATCHES"
                flags.append(FlagKind.OTHER, f'-D{macro}="{names}"')
            for aug in self.augmentations:
                if aug.applies(self.spec, self.target.static, self.features):
                    if aug.prepend:
                        flags.prepend_priority(FlagKind.LIB, aug.flag)
                    else:
                        flags.append(FlagKind.LIB, aug.flag)
        self.state.delta = flags.commit(trial)
        return self.state.delta

    def static_archives(self) -> dict[str, str]:
        """map '-l<name>' to the static archive this recipe installed"""
        return {
            f"-l{target.libname}": str(
                self.libdir / f"lib{target.libname}.{self.target.libext}"
            )
            for target in self.spec.provides
        }

    def process(self, flags: FlagSet) -> RecipeState:
        """cook unless checkpointed, then activate"""
        self.notice()
        if self.state.completed:
            self.log.info("%s already installed: skipping build", self.name_version)
        else:
            self.cook()
            self.checkpoint.parent.mkdir(parents=True, exist_ok=True)
            self.checkpoint.touch()
        self.activate(flags)
        return self.state


# ----------------------------------------------------------------------------
# orchestration


LINKAGE_CHECKS = [
    ("xml2", "xmlParseDoc", "libxml/parser.h"),
    ("xslt", "xsltParseStylesheetDoc", "libxslt/xslt.h"),
    ("exslt", "exsltFuncRegister", "libexslt/exslt.h"),
]

REQUIRED_FUNCTIONS = [
    "xmlHasFeature",  # libxml 2.6.21
]

OPTIONAL_FUNCTIONS = [
    "vasprintf",
    "xmlFirstElementChild",  # libxml 2.7.3
    "xmlRelaxNGSetParserStructuredErrors",  # libxml 2.6.24
    "xmlRelaxNGSetValidStructuredErrors",  # libxml 2.6.21
    "xmlSchemaSetValidStructuredErrors",  # libxml 2.6.23
    "xmlSchemaSetParserStructuredErrors",  # libxml 2.6.23
]

XCODE_REMEDIATION = """\
The file "iconv.h" is missing in your build environment,
which means you haven't installed Xcode Command Line Tools properly.

To install Command Line Tools, try running `xcode-select --install` on
terminal and follow the instructions.  If it fails, open Xcode.app,
select from the menu "Xcode" - "Open Developer Tool" - "More Developer
Tools" to open the developer site, download the installer for your OS
version and run it."""


@dataclass
class Options:
    """Recognised command line options"""

    use_system_libraries: bool = False
    static: bool = True
    clean: bool = True
    cross_build: bool = False
    dirs: dict[str, str] = field(default_factory=dict)
    configs: dict[str, str] = field(default_factory=dict)


class Orchestrator(ShellCmd):
    """Decides system vs bundled per library and runs them in dependency order"""

    def __init__(
        self,
        options: Options,
        host_platform: Platform,
        project: Project,
        specs: Optional[Mapping[str, LibrarySpec]] = None,
        compiler: Optional[Compiler] = None,
        probe: Optional[LibraryProbe] = None,
        recipe_class: type[Recipe] = Recipe,
        augmentations: Sequence[LinkAugmentation] = LINK_AUGMENTATIONS,
    ) -> None:
        self.options = options
        self.platform = host_platform
        self.project = project
        self.specs = dict(specs or library_specs(patches_dir=project.patches))
        self.compiler = compiler or Compiler(host_platform, project)
        self.probe = probe or LibraryProbe(
            self.compiler, dirs=options.dirs, configs=options.configs
        )
        self.recipe_class = recipe_class
        self.augmentations = tuple(augmentations)
        self.flags = FlagSet(build_root=project.ports)
        self.target = BuildTarget.from_platform(
            host_platform, static=options.static, root=project.ports
        )
        self.recipes: dict[str, Recipe] = {}
        self.system_deltas: dict[str, FlagSet] = {}
        self._features: Optional[frozenset[str]] = None
        self.log = logging.getLogger(self.__class__.__name__)

    def library_mode(self, spec: LibrarySpec) -> str:
        """SYSTEM or BUNDLED for one library"""
        if self.options.use_system_libraries:
            return SYSTEM
        policy = BUNDLE_POLICIES[spec.bundle_policy]
        return BUNDLED if policy(self.platform) else SYSTEM

    def plan(self) -> list[tuple[LibrarySpec, str]]:
        """(spec, mode) pairs in dependency order"""
        return [
            (self.specs[name], self.library_mode(self.specs[name]))
            for name in resolve_order(self.specs.values())
        ]

    @property
    def features(self) -> frozenset[str]:
        """optional libraries that link, probed once without keeping flags"""
        if self._features is None:
            wanted = {a.requires for a in self.augmentations if a.requires}
            if not self.target.static:
                wanted = {r for r in wanted if not self._static_only(r)}
            self._features = frozenset(
                name for name in sorted(wanted)
                if self.probe.have_library(name, self.flags)
            )
        return self._features

    def _static_only(self, requirement: str) -> bool:
        return all(a.static_only for a in self.augmentations if a.requires == requirement)

    def prepare_environment(self) -> None:
        """adopt environment flags and baseline compiler flags"""
        self.flags.adopt_environment(os.environ)
        self.flags.extend(FlagKind.OTHER, BASE_CFLAGS)
        if self.platform.is_darwin:
            self.flags.append(
                FlagKind.OTHER,
                "-Wno-error=unused-command-line-argument-hard-error-in-future",
            )
            if self.options.use_system_libraries and Path(MACOS_SDK_LIBXML2).is_dir():
                self.flags.append(FlagKind.INCLUDE, MACOS_SDK_LIBXML2)

    def platform_checks(self) -> None:
        """OpenBSD base compilers other than clang are too old to build the bundled libraries"""
        if not self.platform.is_openbsd or self.options.use_system_libraries:
            return
        # a CC set by the user is kept as is
        if self.platform.cc == DEFAULT_CC and self.compiler.identify() != "clang":
            egcc = shutil.which("egcc")
            if not egcc:
                raise MissingSystemDependency(
                    "Please install gcc 4.9+ from ports using `pkg_add -v gcc`"
                )
            self.platform = replace(self.platform, cc=egcc, compiler_id="gcc")
            self.target = replace(self.target, cc=egcc)
            self.compiler.platform = self.platform
        self.flags.append(FlagKind.INCLUDE, "/usr/local/include")

    def remediation(self, spec: LibrarySpec, dependents: list[str]) -> str:
        if spec.name == "libiconv" and self.platform.is_darwin:
            return XCODE_REMEDIATION
        return f"{spec.name} is missing; necessary for building {', '.join(dependents)}"

    def dependency_step(self, spec: LibrarySpec) -> ConfigureStep:
        """configure options pointing spec at its already activated dependencies"""
        step = ConfigureStep()
        for dep in spec.depends_on:
            if dep in self.recipes:
                prefix = self.recipes[dep].prefix
                fmt = {
                    "prefix": str(prefix),
                    "sh_prefix": sh_export_path(prefix, self.target.is_windows),
                }
                step.add(
                    [opt.format(**fmt) for opt in spec.dependency_options.get(dep, ())],
                    {
                        key: value.format(**fmt)
                        for key, value in spec.dependency_env.get(dep, {}).items()
                    },
                )
            elif dep in self.system_deltas and dep in spec.system_dependency_options:
                delta = self.system_deltas[dep]
                env = {}
                if delta.include_paths:
                    env["CPPFLAGS"] = " ".join(f"-I{p}" for p in delta.include_paths)
                if delta.lib_paths:
                    env["LDFLAGS"] = " ".join(f"-L{p}" for p in delta.lib_paths)
                if delta.libs:
                    env["LIBS"] = " ".join(delta.libs)
                step.add(spec.system_dependency_options[dep], env)
        return step

    def use_system(self, spec: LibrarySpec, plan: list[tuple[LibrarySpec, str]]) -> None:
        """probe the host for spec and merge its flags"""
        self.log.info("Using system %s", spec.name)
        try:
            delta = self.probe.probe(spec, self.flags)
        except LibraryNotFound as e:
            dependents = [
                s.name for s, mode in plan if mode == BUNDLED and spec.name in s.depends_on
            ]
            if dependents:
                raise MissingSystemDependency(self.remediation(spec, dependents)) from e
            raise
        if self.options.use_system_libraries:
            self.probe.check_version(spec, self.flags)
        self.system_deltas[spec.name] = delta

    def use_bundled(self, spec: LibrarySpec) -> None:
        """build (or reuse) spec from source and activate it"""
        recipe = self.recipe_class(
            spec,
            self.target,
            self.project,
            extra=self.dependency_step(spec),
            augmentations=self.augmentations,
            features=self.features,
        )
        recipe.process(self.flags)
        self.recipes[spec.name] = recipe

    def verify_linkage(self) -> None:
        """Check the final flags link libxml2, libxslt and libexslt.

        Raises:
            LibraryNotFound: a library does not link
            MissingSystemDependency: a required function is absent
        """
        for libname, function, header in LINKAGE_CHECKS:
            found = self.probe.have_func(function, header, self.flags) or any(
                self.probe.have_library(name, self.flags, function, header, keep=True)
                for name in (libname, f"lib{libname}")
            )
            if not found:
                raise LibraryNotFound(f"lib{libname}", log=self.compiler.log_path)
        for function in REQUIRED_FUNCTIONS:
            if not self.probe.have_func(function, None, self.flags):
                raise MissingSystemDependency(f"{function}() is missing.")
        for function in OPTIONAL_FUNCTIONS:
            if self.probe.have_func(function, None, self.flags):
                self.flags.append(FlagKind.OTHER, f"-DHAVE_{function.upper()}")

    def run(self) -> FlagSet:
        """resolve every library and return the final flags"""
        plan = self.plan()
        if any(mode == BUNDLED for _, mode in plan):
            self.log.info("Building using packaged libraries.")
            if not self.options.static:
                self.log.info("Static linking is disabled.")
        else:
            self.log.info("Building using system libraries.")
        self.platform_checks()
        self.prepare_environment()
        for spec, mode in plan:
            if mode == SYSTEM:
                self.use_system(spec, plan)
            else:
                self.use_bundled(spec)
        if self.recipes:
            self.flags.append(FlagKind.OTHER, f"-D{DEFINE_PREFIX}_USE_PACKAGED_LIBRARIES")
            if self.target.static:
                archives: dict[str, str] = {}
                for recipe in self.recipes.values():
                    archives.update(recipe.static_archives())
                self.flags.rewrite_libs(archives)
        self.verify_linkage()
        if self.options.clean and self.recipes:
            self.project.clean_intermediates()
        return self.flags


def main(argv: Optional[list[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="xmlports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="prepares libxml2 and libxslt for linking a native extension",
    )
    opt = parser.add_argument

    # fmt: off
    opt("--clean", dest="clean_only", action="store_true", help="remove files only used during the build, then exit")
    opt("--disable-clean", dest="clean", action="store_false", help="do not clean out intermediate files after a successful build")
    opt("--enable-static", dest="static", action="store_true", default=True, help="statically link bundled libraries (default)")
    opt("--disable-static", dest="static", action="store_false", help="do not statically link bundled libraries")
    opt("--use-system-libraries", action="store_true", default=getenv(USE_SYSTEM_ENV),
        help=f"use system libraries instead of building the bundled ones (env: {USE_SYSTEM_ENV}=1)")
    opt("--enable-cross-build", action="store_true", help="do cross-build")
    for name in DIR_OPTIONS:
        opt(f"--with-{name}-dir", metavar="DIR", help=f"use the {name} library placed under DIR")
    for name in CONFIG_OPTIONS:
        opt(f"--with-{name}-config", metavar="CONFIG", help=f"use CONFIG to discover {name} flags")
    opt("-o", "--output", metavar="FILE", help="write the build configuration to FILE (default: stdout)")
    opt("--root", metavar="DIR", help="project root holding ports/ and patches/ (default: cwd)")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("xmlports")
    project = Project(args.root)

    if args.clean_only:
        project.clean(static=args.static)
        sys.exit(0)

    options = Options(
        use_system_libraries=args.use_system_libraries,
        static=args.static,
        clean=args.clean,
        cross_build=args.enable_cross_build,
        dirs={
            name: getattr(args, f"with_{name}_dir")
            for name in DIR_OPTIONS
            if getattr(args, f"with_{name}_dir")
        },
        configs={
            name: getattr(args, f"with_{name}_config")
            for name in CONFIG_OPTIONS
            if getattr(args, f"with_{name}_config")
        },
    )

    try:
        host_platform = detect(cross_build=options.cross_build)
        flags = Orchestrator(options, host_platform, project).run()
    except BuildError as e:
        log.critical("%s", e)
        sys.exit(1)

    payload = json.dumps(flags.to_dict(), indent=4)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf8")
        log.info("build configuration written to %s", args.output)
    else:
        print(payload)


if __name__ == "__main__":
    main()
