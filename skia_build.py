"""Skia native artifact builder and ctypes bindings generator.

Resolves Skia capability flags, obtains a matching native artifact (prebuilt
binary download or a gn/ninja source build) and generates a ctypes binding
module from the artifact's public headers.

Usage:
    python skia_build.py --features gl,textlayout --output-dir out/skia
    python skia_build.py --list-features
    python skia_build.py --explain svg
"""

import argparse
import errno
import gzip
import hashlib
import http.client
import io
import json
import keyword
import logging
import operator
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import tarfile
import time
import tomllib
import urllib.error
import urllib.request
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple, Protocol

try:
    import fcntl

    _HAS_FCNTL = True
except ImportError:  # Windows
    _HAS_FCNTL = False

PROJECT_ROOT = Path(__file__).parent
DEFAULT_BINDINGS_MANIFEST = PROJECT_ROOT / "skia-bindings" / "Cargo.toml"
DEFAULT_OUTPUT_DIR = PROJECT_ROOT / "out" / "skia"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "skia-bindings-build"
DEFAULT_BINARIES_URL = "https://github.com/rust-skia/skia-binaries/releases/download"
DEPOT_TOOLS_URL = "https://codeload.github.com/rust-skia/depot_tools/tar.gz/{revision}"
SKIA_SOURCE_URL = "https://codeload.github.com/rust-skia/skia/tar.gz/{tag}"

TOOL_NAME = "skia-bindings-build"
BINDINGS_CRATE = "skia-bindings"
BINDING_MODULE_NAME = "skia_bindings"
RELEASE_REVISION = "release"
REVISION_LENGTH = 7
ARCHIVE_SUFFIX = ".tar.gz"
ENTRY_RECORD = "ENTRY.json"
BUILD_INFO_FILE = "BUILD_INFO.json"
STAGING_DIR_NAME = ".staging"
REVISION_POLICIES = ("auto", "exact", "version-only")

logger = logging.getLogger("skia_build")

if not _HAS_FCNTL:
    logger.warning(
        "fcntl not available: cache installs are not serialized across processes"
    )


# ===--- Errors ---=== #


class PipelineError(Exception):
    """Base class for coded pipeline failures.

    Every subclass names the stage it belongs to and the closed set of codes it
    may carry. main() renders any PipelineError as
    ``<stage> error [<CODE>]: <message>`` followed by the resolved features,
    the artifact descriptor (when known) and the suggestion.
    """

    stage = "pipeline"
    codes: frozenset[str] = frozenset()

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in self.codes:
            raise ValueError(f"Unknown {self.stage} error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.features = None
        self.descriptor = None


class ConfigError(PipelineError):
    stage = "configure"
    codes = frozenset(
        {
            "UNKNOWN_FLAG",
            "INTERNAL_FLAG_REQUESTED",
            "UNSUPPORTED_PLATFORM_FLAG",
            "MUTUALLY_EXCLUSIVE",
            "MANIFEST_DIVERGENCE",
            "FEATURE_MISMATCH",
            "INVALID_MANIFEST",
            "INVALID_TARGET",
            "INVALID_OPTION",
            "CONFLICT_FLAGS",
            "PATH_NOT_FOUND",
        }
    )


class ReconcileError(PipelineError):
    stage = "reconcile"
    codes = frozenset({"AMBIGUOUS_REVISION", "MISSING_VERSION", "MISSING_REVISION"})


class FetchError(PipelineError):
    stage = "fetch"
    codes = frozenset({"INTEGRITY", "NETWORK", "NOT_AVAILABLE"})


class BuildError(PipelineError):
    stage = "build"
    codes = frozenset(
        {
            "TOOLCHAIN_MISSING",
            "SOURCE_UNAVAILABLE",
            "UNSUPPORTED_PLATFORM_FEATURE",
            "UNTRANSLATED_FLAG",
            "NATIVE_BUILD_FAILED",
            "DISK_SPACE_EXHAUSTED",
            "ASSET_MISSING",
        }
    )

    def __init__(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        *,
        exit_code: int | None = None,
        output: str = "",
    ):
        super().__init__(code, message, suggestion)
        self.exit_code = exit_code
        self.output = output


class GenError(PipelineError):
    stage = "generate"
    codes = frozenset({"PARSE_FAILURE", "NAME_COLLISION", "MISSING_HEADERS"})

    def __init__(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        *,
        path: str | None = None,
        line: int | None = None,
    ):
        if path is not None:
            location = f"{path}:{line}" if line is not None else path
            message = f"{location}: {message}"
        super().__init__(code, message, suggestion)
        self.path = path
        self.line = line


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class BuildConfig:
    features: tuple[str, ...]
    default_features: bool
    target: str
    bindings_manifest: Path
    safe_manifest: Path | None
    lock_file: Path | None
    checkout_dir: Path | None
    cache_dir: Path
    output_dir: Path
    binaries_url: str
    no_cache: bool = False
    force_build: bool = False
    force_download: bool = False
    depot_tools_revision: str | None = None
    revision_policy: str = "auto"
    skia_source_dir: Path | None = None
    defines: tuple[str, ...] = ()
    jobs: int = 0
    gn_command: str | None = None
    ninja_command: str | None = None
    export_archive: Path | None = None
    print_key: bool = False
    verbose: bool = False


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    flag: str | None
    target: str
    verbose: bool = False


_FEATURE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_REVISION_RE = re.compile(r"^[0-9a-f]{7,40}$")
_DEFINE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(=.*)?$")
_TRUTHY = {"1", "true", "yes", "on"}


def env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in _TRUTHY


def split_list(raw: str) -> list[str]:
    return [part for part in re.split(r"[\s,]+", raw) if part]


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build or download Skia and generate ctypes bindings"
    )

    parser.add_argument("--features", action="append", default=None)
    parser.add_argument("--no-default-features", action="store_true", default=False)
    parser.add_argument("--target", type=str, default=None)

    parser.add_argument("--bindings-manifest", type=Path, default=None)
    parser.add_argument("--safe-manifest", type=Path, default=None)
    parser.add_argument("--lock-file", type=Path, default=None)
    parser.add_argument("--checkout-dir", type=Path, default=None)
    parser.add_argument("--cache-dir", type=Path, default=None)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--binaries-url", type=str, default=None)

    source_group = parser.add_mutually_exclusive_group()
    source_group.add_argument("--force-build", action="store_true", default=False)
    source_group.add_argument("--force-download", action="store_true", default=False)
    parser.add_argument("--no-cache", action="store_true", default=False)

    parser.add_argument("--depot-tools-revision", type=str, default=None)
    parser.add_argument(
        "--revision-policy", choices=REVISION_POLICIES, default="auto"
    )
    parser.add_argument("--skia-source-dir", type=Path, default=None)
    parser.add_argument("--define", action="append", default=None)
    parser.add_argument("--jobs", type=str, default=None)
    parser.add_argument("--export-archive", type=Path, default=None)
    parser.add_argument("--verbose", "-v", action="store_true", default=False)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--list-features", action="store_true", default=False)
    discovery_group.add_argument("--explain", type=str, default=None)
    discovery_group.add_argument("--print-key", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_features(raw_features: object) -> tuple[str, ...]:
    """Flatten repeated, comma- or space-separated --features values."""
    if raw_features is None:
        return tuple()
    if not isinstance(raw_features, list):
        raise ConfigError(
            "INVALID_OPTION",
            f"Invalid --features value type: {type(raw_features).__name__}",
            "Pass feature names as --features gl,textlayout.",
        )

    normalized: list[str] = []
    for entry in raw_features:
        if not isinstance(entry, str):
            raise ConfigError(
                "INVALID_OPTION",
                f"Invalid --features entry type: {type(entry).__name__}",
                "Pass feature names as --features gl,textlayout.",
            )
        for name in split_list(entry):
            if not _FEATURE_NAME_RE.match(name):
                raise ConfigError(
                    "UNKNOWN_FLAG",
                    f"Invalid feature name: {name}",
                    "Run --list-features to see the available flags.",
                )
            if name not in normalized:
                normalized.append(name)
    return tuple(normalized)


def parse_jobs(raw: str | None, source: str) -> int:
    if raw is None or raw == "":
        return 0
    try:
        jobs = int(raw)
    except ValueError:
        jobs = -1
    if jobs < 0:
        raise ConfigError(
            "INVALID_OPTION",
            f"Invalid job count from {source}: {raw}",
            "Pass a non-negative integer; 0 selects the CPU count.",
        )
    return jobs


def _default_sibling(base: Path, *parts: str) -> Path | None:
    candidate = base.joinpath(*parts)
    return candidate if candidate.exists() else None


def validate_config(
    args: argparse.Namespace, environ: Mapping[str, str] | None = None
) -> BuildConfig | DiscoveryConfig:
    """Combine parsed arguments with the environment overlay.

    Command-line values win over environment variables, which win over the
    built-in defaults.
    """
    env = os.environ if environ is None else environ
    features = normalize_features(args.features)
    target = args.target or host_target()
    target_os(target)

    has_discovery = bool(args.list_features or args.explain)
    if has_discovery and (features or args.no_default_features):
        raise ConfigError(
            "CONFLICT_FLAGS",
            "Feature selection cannot be combined with discovery flags.",
            "Choose either a build or one of --list-features / --explain.",
        )
    if has_discovery:
        return DiscoveryConfig(
            command="list-features" if args.list_features else "explain",
            flag=args.explain,
            target=target,
            verbose=bool(args.verbose),
        )

    force_build = bool(args.force_build) or env_flag(env, "FORCE_SKIA_BUILD")
    force_download = bool(args.force_download) or env_flag(
        env, "FORCE_SKIA_BINARIES_DOWNLOAD"
    )
    if force_build and force_download:
        raise ConfigError(
            "CONFLICT_FLAGS",
            "Cannot force both a source build and a binaries download.",
            "Unset FORCE_SKIA_BUILD or FORCE_SKIA_BINARIES_DOWNLOAD.",
        )
    if args.no_cache and force_download:
        raise ConfigError(
            "CONFLICT_FLAGS",
            "--no-cache disables downloads, which --force-download requires.",
            "Drop one of the two options.",
        )

    bindings_manifest = validate_path_exists(
        args.bindings_manifest or DEFAULT_BINDINGS_MANIFEST,
        "--bindings-manifest",
        "Point --bindings-manifest at skia-bindings/Cargo.toml.",
    )
    crate_dir = bindings_manifest.parent
    safe_manifest = (
        validate_path_exists(args.safe_manifest, "--safe-manifest")
        if args.safe_manifest is not None
        else _default_sibling(crate_dir.parent, "skia-safe", "Cargo.toml")
    )
    lock_file = (
        validate_path_exists(args.lock_file, "--lock-file")
        if args.lock_file is not None
        else _default_sibling(crate_dir.parent, "Cargo.lock")
    )
    checkout_dir = (
        validate_path_exists(args.checkout_dir, "--checkout-dir")
        if args.checkout_dir is not None
        else crate_dir
    )

    raw_source = args.skia_source_dir or (
        Path(env["SKIA_SOURCE_DIR"]) if env.get("SKIA_SOURCE_DIR") else None
    )
    skia_source_dir = (
        validate_path_exists(raw_source, "--skia-source-dir")
        if raw_source is not None
        else None
    )

    depot_tools_revision = args.depot_tools_revision or env.get(
        "SKIA_DEPOT_TOOLS_REVISION"
    )
    if depot_tools_revision and not _REVISION_RE.match(depot_tools_revision):
        raise ConfigError(
            "INVALID_OPTION",
            f"Invalid depot_tools revision: {depot_tools_revision}",
            "Pass a 7 to 40 digit lowercase hex git revision.",
        )

    defines = list(args.define or [])
    defines.extend(split_list(env.get("SKIA_BUILD_DEFINES", "")))
    for define in defines:
        if not _DEFINE_RE.match(define):
            raise ConfigError(
                "INVALID_OPTION",
                f"Invalid preprocessor define: {define}",
                "Defines look like NAME or NAME=VALUE.",
            )

    if args.jobs is not None:
        jobs = parse_jobs(args.jobs, "--jobs")
    else:
        jobs = parse_jobs(env.get("SKIA_BUILD_JOBS"), "SKIA_BUILD_JOBS")

    cache_dir = args.cache_dir or (
        Path(env["SKIA_BINARY_CACHE_DIR"])
        if env.get("SKIA_BINARY_CACHE_DIR")
        else DEFAULT_CACHE_DIR
    )

    return BuildConfig(
        features=features,
        default_features=not args.no_default_features,
        target=target,
        bindings_manifest=bindings_manifest,
        safe_manifest=safe_manifest,
        lock_file=lock_file,
        checkout_dir=checkout_dir,
        cache_dir=cache_dir,
        output_dir=args.output_dir,
        binaries_url=args.binaries_url
        or env.get("SKIA_BINARIES_URL")
        or DEFAULT_BINARIES_URL,
        no_cache=bool(args.no_cache),
        force_build=force_build,
        force_download=force_download,
        depot_tools_revision=depot_tools_revision,
        revision_policy=args.revision_policy,
        skia_source_dir=skia_source_dir,
        defines=tuple(dict.fromkeys(defines)),
        jobs=jobs,
        gn_command=env.get("SKIA_GN_COMMAND") or None,
        ninja_command=env.get("SKIA_NINJA_COMMAND") or None,
        export_archive=args.export_archive,
        print_key=bool(args.print_key),
        verbose=bool(args.verbose),
    )


def build_config(
    argv: list[str] | None = None, environ: Mapping[str, str] | None = None
) -> BuildConfig | DiscoveryConfig:
    return validate_config(parse_args(argv), environ)


# ===--- Targets ---=== #

KNOWN_PLATFORMS = frozenset(
    {"linux", "windows", "macos", "ios", "android", "emscripten"}
)

# Checked in order; android triples also contain "-linux-".
_TARGET_OS_MARKERS: tuple[tuple[str, str], ...] = (
    ("-apple-darwin", "macos"),
    ("-apple-ios", "ios"),
    ("-linux-android", "android"),
    ("-windows-", "windows"),
    ("-linux-", "linux"),
    ("-emscripten", "emscripten"),
)
_TRIPLE_RE = re.compile(r"^[a-z0-9_.]+(-[a-z0-9_.]+){2,3}$")
_HOST_ARCH = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
}
_HOST_SYSTEM = {
    "Linux": ("linux", "{arch}-unknown-linux-gnu"),
    "Darwin": ("macos", "{arch}-apple-darwin"),
    "Windows": ("windows", "{arch}-pc-windows-msvc"),
}


def target_os(target: str) -> str:
    if _TRIPLE_RE.match(target):
        for marker, os_name in _TARGET_OS_MARKERS:
            if marker in target or target.endswith(marker.rstrip("-")):
                return os_name
    raise ConfigError(
        "INVALID_TARGET",
        f"Unsupported target triple: {target}",
        "Use a target such as x86_64-unknown-linux-gnu or aarch64-apple-darwin.",
    )


def target_arch(target: str) -> str:
    return target.split("-", 1)[0]


def host_os() -> str:
    system = platform.system()
    if system not in _HOST_SYSTEM:
        raise ConfigError(
            "INVALID_TARGET",
            f"Unsupported host system: {system}",
            "Pass --target explicitly.",
        )
    return _HOST_SYSTEM[system][0]


def host_target() -> str:
    system = platform.system()
    machine = platform.machine().lower()
    if system not in _HOST_SYSTEM or machine not in _HOST_ARCH:
        raise ConfigError(
            "INVALID_TARGET",
            f"Cannot derive a target triple for host {system}/{machine}",
            "Pass --target explicitly.",
        )
    return _HOST_SYSTEM[system][1].format(arch=_HOST_ARCH[machine])


# ===--- Configuration graph ---=== #


@dataclass(frozen=True)
class CapabilityFlag:
    name: str
    implies: frozenset[str] = frozenset()
    platforms: frozenset[str] | None = None
    internal: bool = False
    conflicts: frozenset[str] = frozenset()
    bindings_feature: str | None = None
    affects_artifact: bool = True
    description: str = ""

    def valid_on(self, platform_name: str) -> bool:
        return self.platforms is None or platform_name in self.platforms


@dataclass(frozen=True)
class ConfigurationGraph:
    flags: dict[str, CapabilityFlag]
    presets: dict[str, frozenset[str]]


@dataclass(frozen=True)
class FeatureSet:
    """An implication-closed set of capability flags for one target OS."""

    flags: frozenset[str]
    platform: str

    def __contains__(self, name: object) -> bool:
        return name in self.flags

    def __len__(self) -> int:
        return len(self.flags)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self.flags))

    def as_dict(self) -> dict:
        return {"flags": list(self.names), "platform": self.platform}


def _flag(
    name: str,
    *implies: str,
    platforms: Iterable[str] | None = None,
    internal: bool = False,
    conflicts: Iterable[str] = (),
    bindings: bool = True,
    affects_artifact: bool = True,
    description: str = "",
) -> CapabilityFlag:
    return CapabilityFlag(
        name=name,
        implies=frozenset(implies),
        platforms=frozenset(platforms) if platforms is not None else None,
        internal=internal,
        conflicts=frozenset(conflicts),
        bindings_feature=name if bindings else None,
        affects_artifact=affects_artifact,
        description=description,
    )


CAPABILITY_FLAGS: tuple[CapabilityFlag, ...] = (
    _flag(
        "gpu",
        internal=True,
        bindings=False,
        description="GPU support, implied by every GPU backend",
    ),
    _flag(
        "gl",
        "gpu",
        platforms=("linux", "windows", "macos", "android", "ios", "emscripten"),
        description="OpenGL backend",
    ),
    _flag("egl", "gl", platforms=("linux", "android"), description="EGL support"),
    _flag("x11", "gl", platforms=("linux",), description="X11 OpenGL support"),
    _flag("wayland", "egl", platforms=("linux",), description="Wayland support"),
    _flag(
        "vulkan",
        "gpu",
        platforms=("linux", "windows", "macos", "android"),
        description="Vulkan backend",
    ),
    _flag("metal", "gpu", platforms=("macos", "ios"), description="Metal backend"),
    _flag("d3d", "gpu", platforms=("windows",), description="Direct3D 12 backend"),
    _flag("textlayout", description="SkShaper and SkParagraph text layout"),
    _flag(
        "shaper",
        "textlayout",
        internal=True,
        description="SkShaper only, implied by text layout consumers",
    ),
    _flag("svg", "textlayout", description="SVG DOM rendering"),
    _flag(
        "webp",
        "webp-encode",
        "webp-decode",
        bindings=False,
        description="WEBP encoding and decoding",
    ),
    _flag("webp-encode", description="WEBP encoder"),
    _flag("webp-decode", description="WEBP decoder"),
    _flag(
        "use-system-jpeg-turbo",
        conflicts=("binary-cache",),
        description="Link the system libjpeg-turbo instead of the bundled one",
    ),
    _flag(
        "binary-cache",
        affects_artifact=False,
        description="Download prebuilt binaries when available",
    ),
    _flag(
        "embed-icudtl",
        affects_artifact=False,
        description="Embed the ICU data file next to the bindings",
    ),
    _flag("embed-freetype", description="Build and link the bundled FreeType"),
)

PRESETS: dict[str, frozenset[str]] = {
    "default": frozenset({"binary-cache", "embed-icudtl"}),
    "all-linux": frozenset(
        {"gl", "egl", "vulkan", "x11", "wayland", "textlayout", "svg", "webp"}
    ),
    "all-windows": frozenset({"gl", "vulkan", "d3d", "textlayout", "svg", "webp"}),
    "all-macos": frozenset({"gl", "vulkan", "metal", "textlayout", "svg", "webp"}),
}

SKIA_GRAPH = ConfigurationGraph(
    flags={flag.name: flag for flag in CAPABILITY_FLAGS},
    presets=PRESETS,
)

_CLOSURE_SAFETY_LIMIT = 64


def validate_graph(graph: ConfigurationGraph) -> None:
    """Raise ValueError when the flag table references undeclared names."""
    for flag in graph.flags.values():
        for ref in sorted(flag.implies | flag.conflicts):
            if ref not in graph.flags:
                raise ValueError(f"Flag {flag.name} references unknown flag {ref}")
    for preset, members in graph.presets.items():
        if preset in graph.flags:
            raise ValueError(f"Preset {preset} shadows a flag of the same name")
        for member in sorted(members):
            if member not in graph.flags:
                raise ValueError(f"Preset {preset} references unknown flag {member}")


def close_implications(
    names: Iterable[str], graph: ConfigurationGraph
) -> frozenset[str]:
    closed = set(names)
    frontier = set(closed)
    iterations = 0
    while frontier:
        iterations += 1
        if iterations > _CLOSURE_SAFETY_LIMIT:
            raise RuntimeError(
                f"Flag implication closure exceeded safety limit "
                f"({_CLOSURE_SAFETY_LIMIT} iterations)"
            )
        next_frontier: set[str] = set()
        for name in frontier:
            for implied in graph.flags[name].implies:
                if implied not in closed:
                    closed.add(implied)
                    next_frontier.add(implied)
        frontier = next_frontier
    return frozenset(closed)


def expand_presets(
    requested: Iterable[str], graph: ConfigurationGraph
) -> frozenset[str]:
    names: set[str] = set()
    for name in requested:
        if name in graph.presets:
            names.update(graph.presets[name])
        elif name in graph.flags:
            names.add(name)
        else:
            raise ConfigError(
                "UNKNOWN_FLAG",
                f"Unknown feature flag: {name}",
                "Run --list-features to see the available flags.",
            )
    return frozenset(names)


def _implied_by(name: str, seeds: Iterable[str], graph: ConfigurationGraph) -> str:
    for seed in sorted(seeds):
        if name in close_implications({seed}, graph):
            return seed
    return name


def resolve(
    requested: "Iterable[str] | FeatureSet",
    platform_name: str,
    graph: ConfigurationGraph = SKIA_GRAPH,
) -> FeatureSet:
    """Expand presets and implications, then validate the closed set.

    Accepts raw flag and preset names or an existing FeatureSet. Re-resolving a
    FeatureSet accepts internal flags only when another member implies them,
    so resolving an already-closed set returns it unchanged.

    Raises:
        ConfigError: UNKNOWN_FLAG, INTERNAL_FLAG_REQUESTED,
            UNSUPPORTED_PLATFORM_FLAG, MUTUALLY_EXCLUSIVE or INVALID_TARGET.
    """
    if platform_name not in KNOWN_PLATFORMS:
        raise ConfigError(
            "INVALID_TARGET",
            f"Unknown target platform: {platform_name}",
            f"Use one of: {', '.join(sorted(KNOWN_PLATFORMS))}.",
        )

    if isinstance(requested, FeatureSet):
        if requested.platform != platform_name:
            raise ConfigError(
                "INVALID_TARGET",
                f"Feature set was resolved for {requested.platform}, "
                f"not {platform_name}",
                "Resolve the requested flag names for the new platform instead.",
            )
        names = expand_presets(requested.flags, graph)
        public = {n for n in names if not graph.flags[n].internal}
        reachable = close_implications(public, graph)
        internal = sorted(
            n for n in names if graph.flags[n].internal and n not in reachable
        )
    else:
        names = expand_presets(requested, graph)
        internal = sorted(n for n in names if graph.flags[n].internal)

    if internal:
        raise ConfigError(
            "INTERNAL_FLAG_REQUESTED",
            f"Internal flag(s) cannot be requested directly: {', '.join(internal)}",
            "Request a public flag that implies it instead (see --explain).",
        )

    closed = close_implications(names, graph)

    unsupported = sorted(n for n in closed if not graph.flags[n].valid_on(platform_name))
    if unsupported:
        details = ", ".join(
            f"{n} (from {_implied_by(n, names, graph)})" for n in unsupported
        )
        raise ConfigError(
            "UNSUPPORTED_PLATFORM_FLAG",
            f"Flag(s) not available on {platform_name}: {details}",
            "Remove the flag or pick a target where it is supported.",
        )

    for name in sorted(closed):
        for other in sorted(graph.flags[name].conflicts):
            if other in closed:
                raise ConfigError(
                    "MUTUALLY_EXCLUSIVE",
                    f"Flags {name} and {other} cannot be enabled together",
                    "Use --no-default-features to drop binary-cache when "
                    "linking system libraries.",
                )

    return FeatureSet(flags=closed, platform=platform_name)


def artifact_flags(
    features: FeatureSet, graph: ConfigurationGraph = SKIA_GRAPH
) -> frozenset[str]:
    return frozenset(n for n in features.flags if graph.flags[n].affects_artifact)


@dataclass(frozen=True)
class FlagExplanation:
    flag: CapabilityFlag
    closure: tuple[str, ...]
    implied_by: tuple[str, ...]
    presets: tuple[str, ...]


def explain_flag(name: str, graph: ConfigurationGraph = SKIA_GRAPH) -> FlagExplanation:
    if name not in graph.flags:
        raise ConfigError(
            "UNKNOWN_FLAG",
            f"Unknown feature flag: {name}",
            "Run --list-features to see the available flags.",
        )
    closure = close_implications({name}, graph) - {name}
    implied_by = sorted(
        other
        for other in graph.flags
        if other != name and name in close_implications({other}, graph)
    )
    presets = sorted(
        preset
        for preset, members in graph.presets.items()
        if name in close_implications(members, graph)
    )
    return FlagExplanation(
        flag=graph.flags[name],
        closure=tuple(sorted(closure)),
        implied_by=tuple(implied_by),
        presets=tuple(presets),
    )


# ===--- Manifest agreement ---=== #


def load_manifest(path: Path) -> dict:
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError as err:
        raise ConfigError(
            "PATH_NOT_FOUND", f"Manifest does not exist: {path}"
        ) from err
    except tomllib.TOMLDecodeError as err:
        raise ConfigError(
            "INVALID_MANIFEST", f"Manifest {path} is not valid TOML: {err}"
        ) from err


def manifest_features(manifest: dict) -> dict[str, tuple[str, ...]]:
    table = manifest.get("features", {})
    if not isinstance(table, dict):
        raise ConfigError("INVALID_MANIFEST", "[features] must be a table")
    features: dict[str, tuple[str, ...]] = {}
    for name, entries in table.items():
        if not isinstance(entries, list) or not all(
            isinstance(e, str) for e in entries
        ):
            raise ConfigError(
                "INVALID_MANIFEST",
                f"Feature {name} must be a list of strings",
            )
        features[name] = tuple(entries)
    return features


def _manifest_closure(
    name: str,
    safe_features: Mapping[str, tuple[str, ...]],
    bindings_features: Mapping[str, tuple[str, ...]],
    reverse: Mapping[str, str],
) -> frozenset[str]:
    """Follow feature edges across both manifests, back in graph flag names.

    Entries that name optional dependencies (``ureq``, ``dep:winapi``) rather
    than features are not part of the capability graph and are ignored.
    """
    seen: set[tuple[str, str]] = set()
    stack = [("safe", name)]
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        crate, feature = node
        table = safe_features if crate == "safe" else bindings_features
        for entry in table.get(feature, ()):
            if "/" in entry:
                dep, _, dep_feature = entry.partition("/")
                if crate == "safe" and dep.rstrip("?") == BINDINGS_CRATE:
                    stack.append(("bindings", dep_feature))
            elif entry in table:
                stack.append((crate, entry))
    result = {feature for crate, feature in seen if crate == "safe"}
    result.update(
        reverse[feature]
        for crate, feature in seen
        if crate == "bindings" and feature in reverse
    )
    return frozenset(result)


def verify_manifest_agreement(
    graph: ConfigurationGraph,
    safe_features: Mapping[str, tuple[str, ...]],
    bindings_features: Mapping[str, tuple[str, ...]],
) -> None:
    """Check that both Cargo manifests declare the same graph as the table.

    Raises:
        ConfigError: MANIFEST_DIVERGENCE naming the first disagreeing flag.
    """
    hint = "Update the [features] tables of skia-safe and skia-bindings together."

    missing = sorted(n for n in graph.flags if n not in safe_features)
    if missing:
        raise ConfigError(
            "MANIFEST_DIVERGENCE",
            f"skia-safe manifest lacks flag(s): {', '.join(missing)}",
            hint,
        )
    extra = sorted(
        n for n in safe_features if n not in graph.flags and n not in graph.presets
    )
    if extra:
        raise ConfigError(
            "MANIFEST_DIVERGENCE",
            f"skia-safe manifest declares unknown flag(s): {', '.join(extra)}",
            hint,
        )

    reverse = {
        flag.bindings_feature: flag.name
        for flag in graph.flags.values()
        if flag.bindings_feature
    }
    for name in sorted(graph.flags):
        flag = graph.flags[name]
        if flag.bindings_feature and flag.bindings_feature not in bindings_features:
            raise ConfigError(
                "MANIFEST_DIVERGENCE",
                f"skia-bindings manifest lacks feature {flag.bindings_feature} "
                f"(required by {name})",
                hint,
            )
        declared = _manifest_closure(name, safe_features, bindings_features, reverse)
        expected = close_implications({name}, graph)
        if declared != expected:
            raise ConfigError(
                "MANIFEST_DIVERGENCE",
                f"Flag {name}: manifests imply {{{', '.join(sorted(declared))}}}, "
                f"flag table implies {{{', '.join(sorted(expected))}}}",
                hint,
            )

    for preset in sorted(graph.presets):
        declared_members = frozenset(safe_features.get(preset, ()))
        if declared_members != graph.presets[preset]:
            raise ConfigError(
                "MANIFEST_DIVERGENCE",
                f"Preset {preset}: manifest lists "
                f"{{{', '.join(sorted(declared_members))}}}, flag table lists "
                f"{{{', '.join(sorted(graph.presets[preset]))}}}",
                hint,
            )


def verify_cross_crate(
    features: FeatureSet,
    graph: ConfigurationGraph,
    bindings_features: Mapping[str, tuple[str, ...]],
) -> frozenset[str]:
    """Project features onto skia-bindings and check the projection is closed.

    Returns:
        The set of skia-bindings feature names the build enables.

    Raises:
        ConfigError: FEATURE_MISMATCH when skia-bindings would enable a feature
            the high-level set does not carry.
    """
    projected = frozenset(
        graph.flags[n].bindings_feature
        for n in features.flags
        if graph.flags[n].bindings_feature
    )
    closed = set(projected)
    stack = list(projected)
    while stack:
        for entry in bindings_features.get(stack.pop(), ()):
            if entry in bindings_features and entry not in closed:
                closed.add(entry)
                stack.append(entry)
    extra = sorted(closed - projected)
    if extra:
        raise ConfigError(
            "FEATURE_MISMATCH",
            f"skia-bindings would additionally enable: {', '.join(extra)}",
            "The flag table and the skia-bindings [features] table disagree.",
        )
    return projected


# ===--- Version/hash reconciliation ---=== #


@dataclass(frozen=True)
class RepoState:
    crate_version: str
    skia_version: str
    depot_tools_revision: str
    checkout_revision: str | None = None
    lock_version: str | None = None


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Everything that identifies one compiled Skia artifact.

    content_hash is the SHA-256 of the canonical JSON of every other field, so
    two descriptors with equal fields always share a cache entry and URL.
    """

    skia_version: str
    depot_tools_revision: str
    target: str
    features: FeatureSet
    revision: str | None
    feature_hash: str
    content_hash: str

    @property
    def key(self) -> str:
        return self.content_hash[:16]

    @property
    def revision_segment(self) -> str:
        return self.revision or RELEASE_REVISION

    def as_dict(self) -> dict:
        return {
            "skia_version": self.skia_version,
            "depot_tools_revision": self.depot_tools_revision,
            "target": self.target,
            "features": self.features.as_dict(),
            "revision": self.revision,
            "feature_hash": self.feature_hash,
            "content_hash": self.content_hash,
        }


def _package_metadata(manifest: dict) -> tuple[dict, dict]:
    package = manifest.get("package", {})
    if not isinstance(package, dict):
        raise ConfigError("INVALID_MANIFEST", "[package] must be a table")
    metadata = package.get("metadata", {})
    if not isinstance(metadata, dict):
        raise ConfigError("INVALID_MANIFEST", "[package.metadata] must be a table")
    return package, metadata


def _pinned_bindings_version(safe_manifest: dict) -> str | None:
    dependency = safe_manifest.get("dependencies", {}).get(BINDINGS_CRATE)
    if isinstance(dependency, dict):
        dependency = dependency.get("version")
    if not isinstance(dependency, str):
        return None
    return dependency.strip().lstrip("=").strip()


def read_lock_version(lock_file: Path) -> str | None:
    lock = load_manifest(lock_file)
    for package in lock.get("package", []):
        if isinstance(package, dict) and package.get("name") == BINDINGS_CRATE:
            return package.get("version")
    return None


def read_vcs_revision(crate_dir: Path) -> str | None:
    vcs_info = crate_dir / ".cargo_vcs_info.json"
    if not vcs_info.is_file():
        return None
    try:
        data = json.loads(vcs_info.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise ConfigError(
            "INVALID_MANIFEST", f"{vcs_info} is not valid JSON: {err}"
        ) from err
    sha = data.get("git", {}).get("sha1")
    return sha if isinstance(sha, str) and sha else None


def git_revision(
    checkout_dir: Path, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run
) -> str | None:
    try:
        result = runner(
            ["git", "rev-parse", "HEAD"],
            cwd=checkout_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as err:
        logger.debug("git rev-parse unavailable in %s: %s", checkout_dir, err)
        return None
    if result.returncode != 0:
        logger.debug("%s is not a git checkout", checkout_dir)
        return None
    sha = result.stdout.strip()
    return sha if re.fullmatch(r"[0-9a-f]{40}", sha) else None


def read_repo_state(
    bindings_manifest: Path,
    safe_manifest: Path | None = None,
    lock_file: Path | None = None,
    checkout_dir: Path | None = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> RepoState:
    """Collect the version and revision facts an artifact key depends on.

    Raises:
        ConfigError: MANIFEST_DIVERGENCE when the two manifests disagree on
            the pinned Skia build.
        ReconcileError: MISSING_VERSION or AMBIGUOUS_REVISION.
    """
    bindings = load_manifest(bindings_manifest)
    package, metadata = _package_metadata(bindings)
    crate_version = package.get("version")
    skia_version = metadata.get("skia")
    depot_tools = metadata.get("depot_tools")
    if not crate_version or not skia_version or not depot_tools:
        raise ReconcileError(
            "MISSING_VERSION",
            f"{bindings_manifest} lacks package.version or "
            "[package.metadata] skia / depot_tools",
            "The skia-bindings manifest pins the Skia tag and depot_tools revision.",
        )

    if safe_manifest is not None:
        safe = load_manifest(safe_manifest)
        _, safe_metadata = _package_metadata(safe)
        for key in ("skia", "depot_tools"):
            if key in safe_metadata and safe_metadata[key] != metadata[key]:
                raise ConfigError(
                    "MANIFEST_DIVERGENCE",
                    f"[package.metadata] {key} differs: skia-bindings has "
                    f"{metadata[key]}, skia-safe has {safe_metadata[key]}",
                )
        pinned = _pinned_bindings_version(safe)
        if pinned is not None and pinned != crate_version:
            raise ConfigError(
                "MANIFEST_DIVERGENCE",
                f"skia-safe pins skia-bindings ={pinned}, "
                f"but skia-bindings is {crate_version}",
                "Bump both crates to the same version.",
            )

    lock_version = read_lock_version(lock_file) if lock_file is not None else None
    if lock_version is not None and lock_version != crate_version:
        raise ReconcileError(
            "AMBIGUOUS_REVISION",
            f"Cargo.lock resolves skia-bindings {lock_version}, "
            f"manifest declares {crate_version}",
            "Run cargo update -p skia-bindings to refresh the lock file.",
        )

    crate_dir = bindings_manifest.parent
    vcs_sha = read_vcs_revision(crate_dir)
    git_sha = git_revision(checkout_dir or crate_dir, runner)
    if vcs_sha and git_sha and vcs_sha != git_sha:
        raise ReconcileError(
            "AMBIGUOUS_REVISION",
            f".cargo_vcs_info.json records {vcs_sha[:REVISION_LENGTH]}, "
            f"checkout HEAD is {git_sha[:REVISION_LENGTH]}",
            "Remove the stale .cargo_vcs_info.json or check out the packaged revision.",
        )
    revision = vcs_sha or git_sha

    return RepoState(
        crate_version=crate_version,
        skia_version=skia_version,
        depot_tools_revision=depot_tools,
        checkout_revision=revision[:REVISION_LENGTH] if revision else None,
        lock_version=lock_version,
    )


def select_revision(repo_state: RepoState, policy: str) -> str | None:
    if policy not in REVISION_POLICIES:
        raise ConfigError(
            "INVALID_OPTION",
            f"Unknown revision policy: {policy}",
            f"Use one of: {', '.join(REVISION_POLICIES)}.",
        )
    if policy == "version-only":
        return None
    if repo_state.checkout_revision:
        return repo_state.checkout_revision
    if policy == "exact":
        raise ReconcileError(
            "MISSING_REVISION",
            "No checkout revision available for an exact artifact lookup",
            "Build from a git checkout or use --revision-policy version-only.",
        )
    logger.warning(
        "No checkout revision available; falling back to version-only "
        "binaries for Skia %s",
        repo_state.skia_version,
    )
    return None


def compute_feature_hash(flags: Iterable[str]) -> str:
    text = ",".join(sorted(flags))
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:10]


def compute_key(
    features: FeatureSet,
    repo_state: RepoState,
    target: str,
    policy: str = "auto",
    depot_tools_override: str | None = None,
    graph: ConfigurationGraph = SKIA_GRAPH,
) -> ArtifactDescriptor:
    """Derive the deterministic ArtifactDescriptor for one build request.

    Raises:
        ConfigError: INVALID_TARGET when the target does not match the
            FeatureSet platform.
        ReconcileError: MISSING_REVISION under the exact policy.
    """
    if target_os(target) != features.platform:
        raise ConfigError(
            "INVALID_TARGET",
            f"Target {target} is not a {features.platform} target",
            "Resolve features for the platform of the requested target.",
        )
    revision = select_revision(repo_state, policy)
    depot_tools = repo_state.depot_tools_revision
    if depot_tools_override and depot_tools_override != depot_tools:
        logger.info(
            "Overriding depot_tools revision %s with %s",
            depot_tools,
            depot_tools_override,
        )
        depot_tools = depot_tools_override

    feature_hash = compute_feature_hash(artifact_flags(features, graph))
    fields = {
        "skia_version": repo_state.skia_version,
        "depot_tools_revision": depot_tools,
        "target": target,
        "features": features.as_dict(),
        "revision": revision,
        "feature_hash": feature_hash,
    }
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return ArtifactDescriptor(
        skia_version=repo_state.skia_version,
        depot_tools_revision=depot_tools,
        target=target,
        features=features,
        revision=revision,
        feature_hash=feature_hash,
        content_hash=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
    )


def archive_name(descriptor: ArtifactDescriptor) -> str:
    return f"{descriptor.target}-{descriptor.feature_hash}{ARCHIVE_SUFFIX}"


def artifact_url(host: str, descriptor: ArtifactDescriptor) -> str:
    return (
        f"{host.rstrip('/')}/{descriptor.skia_version}/"
        f"{descriptor.revision_segment}/{archive_name(descriptor)}"
    )


# ===--- Artifact cache ---=== #


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class CacheSettings:
    cache_dir: Path
    binaries_url: str = DEFAULT_BINARIES_URL
    retry: RetryPolicy = RetryPolicy()


@dataclass(frozen=True)
class CacheEntry:
    descriptor: ArtifactDescriptor
    path: Path
    checksum: str
    origin: str

    @property
    def lib_dir(self) -> Path:
        return self.path / "lib"

    @property
    def headers_dir(self) -> Path:
        return self.path / "headers"

    @property
    def data_dir(self) -> Path:
        return self.path / "data"


@dataclass(frozen=True)
class CacheMiss:
    descriptor: ArtifactDescriptor
    reason: str


@dataclass(frozen=True)
class Response:
    body: bytes
    content_length: int | None


class Transport(Protocol):
    def get(self, url: str, timeout: float) -> Response: ...


class UrlTransport:
    """Blocking HTTP(S) and file:// transport built on urllib."""

    def get(self, url: str, timeout: float) -> Response:
        request = urllib.request.Request(url, headers={"User-Agent": TOOL_NAME})
        with urllib.request.urlopen(request, timeout=timeout) as response:
            length = response.headers.get("Content-Length")
            try:
                body = response.read()
            except http.client.IncompleteRead as err:
                # Keep the declared length so verify_download reports the truncation.
                logger.warning("Connection closed early while reading %s", url)
                body = err.partial
        return Response(body=body, content_length=int(length) if length else None)


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_tree(root: Path) -> dict[str, str]:
    """Map every file under root (except the entry record) to its SHA-256."""
    files: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if rel == ENTRY_RECORD:
            continue
        files[rel] = file_sha256(path)
    return files


def tree_digest(files: Mapping[str, str]) -> str:
    lines = "".join(f"{sha}  {rel}\n" for rel, sha in sorted(files.items()))
    return sha256_bytes(lines.encode("utf-8"))


def download_with_retry(
    transport: Transport,
    url: str,
    retry: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> Response | None:
    """GET url, retrying transient failures with exponential backoff.

    Returns None for HTTP client errors (404 and friends), which are never
    retried.

    Raises:
        FetchError: NETWORK once every attempt failed.
    """
    last_error: Exception | None = None
    for attempt in range(1, retry.attempts + 1):
        try:
            return transport.get(url, retry.timeout)
        except urllib.error.HTTPError as err:
            if 400 <= err.code < 500:
                logger.info("No artifact at %s (HTTP %d)", url, err.code)
                return None
            last_error = err
        except (
            urllib.error.URLError,
            http.client.HTTPException,
            TimeoutError,
            OSError,
        ) as err:
            last_error = err
        if attempt < retry.attempts:
            delay = retry.delay(attempt)
            logger.warning(
                "Download of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                url,
                attempt,
                retry.attempts,
                last_error,
                delay,
            )
            sleep(delay)
    raise FetchError(
        "NETWORK",
        f"Download of {url} failed after {retry.attempts} attempts: {last_error}",
    )


def parse_checksum_manifest(text: str, name: str) -> str:
    """Extract the digest for name from a ``<sha256> *<name>`` sidecar."""
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        digest, listed = parts
        if listed.lstrip("*") == name and re.fullmatch(r"[0-9a-f]{64}", digest):
            return digest
    raise FetchError(
        "INTEGRITY",
        f"Checksum manifest does not list {name}",
        "The binaries host is serving an inconsistent release.",
    )


def verify_download(response: Response, expected_sha: str, url: str) -> str:
    if (
        response.content_length is not None
        and response.content_length != len(response.body)
    ):
        raise FetchError(
            "INTEGRITY",
            f"Truncated download from {url}: expected {response.content_length} "
            f"bytes, received {len(response.body)}",
        )
    actual = sha256_bytes(response.body)
    if actual != expected_sha:
        raise FetchError(
            "INTEGRITY",
            f"Checksum mismatch for {url}: expected {expected_sha}, got {actual}",
        )
    return actual


def _safe_members(tar: tarfile.TarFile) -> list[tarfile.TarInfo]:
    members = []
    for member in tar.getmembers():
        name = member.name
        if name.startswith(("/", "\\")) or ".." in Path(name).parts:
            raise FetchError("INTEGRITY", f"Unsafe path in archive: {name}")
        if not (member.isfile() or member.isdir()):
            raise FetchError(
                "INTEGRITY", f"Archive member is not a regular file: {name}"
            )
        members.append(member)
    return members


def extract_archive(data: bytes, dest: Path) -> None:
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            members = _safe_members(tar)
            tar.extractall(dest, members=members, filter="data")
    except (tarfile.TarError, EOFError, OSError) as err:
        if isinstance(err, OSError) and err.errno == errno.ENOSPC:
            raise
        raise FetchError(
            "INTEGRITY", f"Archive could not be extracted: {err}"
        ) from err


def entry_dir(cache_dir: Path, descriptor: ArtifactDescriptor) -> Path:
    return cache_dir / descriptor.key


@contextmanager
def cache_lock(cache_dir: Path, key: str) -> Iterator[None]:
    """Hold an exclusive advisory lock on <cache_dir>/<key>.lock."""
    cache_dir.mkdir(parents=True, exist_ok=True)
    lock_path = cache_dir / f"{key}.lock"
    with open(lock_path, "a+", encoding="utf-8") as fh:
        if _HAS_FCNTL:
            try:
                fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logger.info("Waiting for cache lock %s", lock_path)
                fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            yield
        finally:
            if _HAS_FCNTL:
                fcntl.flock(fh, fcntl.LOCK_UN)


@contextmanager
def staging_dir(cache_dir: Path, descriptor: ArtifactDescriptor) -> Iterator[Path]:
    """Yield a private scratch directory that is always removed afterwards."""
    path = cache_dir / STAGING_DIR_NAME / f"{descriptor.key}-{uuid.uuid4().hex}"
    path.mkdir(parents=True)
    try:
        yield path
    finally:
        if path.exists():
            shutil.rmtree(path)


def validate_entry(
    path: Path, descriptor: ArtifactDescriptor, origin: str = "local"
) -> CacheEntry | None:
    """Return the entry at path when its record and files are intact."""
    record_path = path / ENTRY_RECORD
    if not record_path.is_file():
        return None
    try:
        record = json.loads(record_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as err:
        logger.warning("Unreadable cache record %s: %s", record_path, err)
        return None
    if record.get("descriptor") != descriptor.as_dict():
        logger.warning("Cache entry %s belongs to another descriptor", path)
        return None
    files = record.get("files")
    if not isinstance(files, dict) or hash_tree(path) != files:
        logger.warning("Cache entry %s failed validation and will be replaced", path)
        return None
    checksum = record.get("checksum")
    if checksum != tree_digest(files):
        logger.warning("Cache entry %s has a stale checksum", path)
        return None
    return CacheEntry(descriptor=descriptor, path=path, checksum=checksum, origin=origin)


def lookup_local(descriptor: ArtifactDescriptor, cache_dir: Path) -> CacheEntry | None:
    return validate_entry(entry_dir(cache_dir, descriptor), descriptor)


def install_entry(
    descriptor: ArtifactDescriptor,
    staging: Path,
    cache_dir: Path,
    origin: str,
    archive_sha256: str | None = None,
) -> CacheEntry:
    """Record staged files and rename them into the cache under the lock.

    A valid entry installed concurrently by another process wins; the staged
    copy is then left for the caller's staging cleanup.
    """
    files = hash_tree(staging)
    checksum = tree_digest(files)
    record = {
        "descriptor": descriptor.as_dict(),
        "files": files,
        "checksum": checksum,
        "archive_sha256": archive_sha256,
        "origin": origin,
    }
    (staging / ENTRY_RECORD).write_text(
        json.dumps(record, indent=2, sort_keys=True) + "\n", encoding="utf-8"
    )

    final = entry_dir(cache_dir, descriptor)
    with cache_lock(cache_dir, descriptor.key):
        current = validate_entry(final, descriptor, origin)
        if current is not None:
            logger.info("Cache entry %s was installed concurrently", descriptor.key)
            return current
        if final.exists():
            stale = cache_dir / STAGING_DIR_NAME / f"{descriptor.key}-stale-{uuid.uuid4().hex}"
            os.replace(final, stale)
            shutil.rmtree(stale)
        os.replace(staging, final)
    logger.info("Installed cache entry %s (%s)", final, origin)
    return CacheEntry(descriptor=descriptor, path=final, checksum=checksum, origin=origin)


def fetch(
    descriptor: ArtifactDescriptor,
    settings: CacheSettings,
    transport: Transport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CacheEntry | CacheMiss:
    """Reuse a local entry or download and install the prebuilt archive.

    Returns:
        CacheEntry on a local hit or verified download, CacheMiss when the
        host has no matching archive or stayed unreachable after retries.

    Raises:
        FetchError: INTEGRITY for truncated, mismatching or unsafe archives.
    """
    local = lookup_local(descriptor, settings.cache_dir)
    if local is not None:
        logger.info("Using cached artifact %s", local.path)
        return local

    transport = transport or UrlTransport()
    url = artifact_url(settings.binaries_url, descriptor)
    name = archive_name(descriptor)
    try:
        manifest = download_with_retry(transport, url + ".sha256", settings.retry, sleep)
        if manifest is None:
            return CacheMiss(descriptor, f"no prebuilt binaries at {url}")
        if manifest.content_length not in (None, len(manifest.body)):
            raise FetchError("INTEGRITY", f"Truncated download from {url}.sha256")
        expected = parse_checksum_manifest(
            manifest.body.decode("utf-8", errors="replace"), name
        )
        archive = download_with_retry(transport, url, settings.retry, sleep)
        if archive is None:
            return CacheMiss(descriptor, f"checksum published but no archive at {url}")
    except FetchError as err:
        if err.code != "NETWORK":
            raise
        logger.warning("%s; treating as a cache miss", err.message)
        return CacheMiss(descriptor, err.message)

    archive_sha = verify_download(archive, expected, url)
    with staging_dir(settings.cache_dir, descriptor) as staging:
        extract_archive(archive.body, staging)
        if not any(staging.rglob("*")):
            raise FetchError("INTEGRITY", f"Archive {url} is empty")
        return install_entry(
            descriptor, staging, settings.cache_dir, "download", archive_sha
        )


# ===--- Source build ---=== #


@dataclass(frozen=True)
class ToolchainSpec:
    skia_version: str
    depot_tools_revision: str
    target: str
    work_dir: Path
    out_dir: Path
    source_dir: Path | None = None
    jobs: int = 0
    defines: tuple[str, ...] = ()
    gn_command: str | None = None
    ninja_command: str | None = None


class Toolchain(Protocol):
    name: str

    def fetch(self, spec: ToolchainSpec) -> None: ...

    def configure(self, spec: ToolchainSpec, features: FeatureSet) -> None: ...

    def build(self, spec: ToolchainSpec) -> None: ...

    def collect(self, spec: ToolchainSpec, features: FeatureSet, staging: Path) -> None: ...


GN_BASE_ARGS: tuple[tuple[str, str], ...] = (
    ("is_official_build", "true"),
    ("is_debug", "false"),
    ("skia_enable_gpu", "false"),
    ("skia_use_gl", "false"),
    ("skia_use_egl", "false"),
    ("skia_use_x11", "false"),
    ("skia_use_vulkan", "false"),
    ("skia_use_metal", "false"),
    ("skia_use_direct3d", "false"),
    ("skia_enable_skshaper", "false"),
    ("skia_enable_skparagraph", "false"),
    ("skia_enable_svg", "false"),
    ("skia_use_icu", "false"),
    ("skia_use_harfbuzz", "false"),
    ("skia_use_libwebp_encode", "false"),
    ("skia_use_libwebp_decode", "false"),
    ("skia_use_system_libjpeg_turbo", "false"),
    ("skia_use_system_libpng", "false"),
    ("skia_use_system_zlib", "false"),
    ("skia_use_system_expat", "false"),
    ("skia_use_freetype", "false"),
    ("skia_use_system_freetype2", "false"),
)

GN_FEATURE_ARGS: dict[str, tuple[tuple[str, str], ...]] = {
    "gpu": (("skia_enable_gpu", "true"),),
    "gl": (("skia_use_gl", "true"),),
    "egl": (("skia_use_egl", "true"),),
    "x11": (("skia_use_x11", "true"),),
    "wayland": (("skia_use_egl", "true"),),
    "vulkan": (("skia_use_vulkan", "true"), ("skia_enable_spirv_validation", "false")),
    "metal": (("skia_use_metal", "true"),),
    "d3d": (("skia_use_direct3d", "true"),),
    "shaper": (("skia_enable_skshaper", "true"), ("skia_use_harfbuzz", "true")),
    "textlayout": (
        ("skia_enable_skshaper", "true"),
        ("skia_enable_skparagraph", "true"),
        ("skia_use_icu", "true"),
        ("skia_use_harfbuzz", "true"),
        ("skia_use_system_icu", "false"),
        ("skia_use_system_harfbuzz", "false"),
    ),
    "svg": (("skia_enable_svg", "true"),),
    "webp-encode": (("skia_use_libwebp_encode", "true"),),
    "webp-decode": (("skia_use_libwebp_decode", "true"),),
    "use-system-jpeg-turbo": (("skia_use_system_libjpeg_turbo", "true"),),
    "embed-freetype": (
        ("skia_use_freetype", "true"),
        ("skia_use_system_freetype2", "false"),
    ),
}

# Flags that only steer this tool and never reach gn.
GN_NEUTRAL_FLAGS = frozenset({"webp", "binary-cache", "embed-icudtl"})

GN_TARGET_OS = {
    "linux": "linux",
    "windows": "win",
    "macos": "mac",
    "ios": "ios",
    "android": "android",
    "emscripten": "wasm",
}
GN_TARGET_CPU = {
    "x86_64": "x64",
    "aarch64": "arm64",
    "i686": "x86",
    "armv7": "arm",
    "wasm32": "wasm",
}

# Backends whose SDKs exist only on one host OS.
HOST_REQUIRED: dict[str, frozenset[str]] = {
    "metal": frozenset({"macos"}),
    "d3d": frozenset({"windows"}),
}

LIBRARY_PATTERNS = ("*.a", "*.lib")
HEADER_TREES = ("include", "modules", "bindings")
MIN_BUILD_FREE_BYTES = 8 * 1024**3
MAX_WINDOWS_JOBS = 32
OUTPUT_TAIL_LINES = 40


def _gn_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def gn_args_for(features: FeatureSet, spec: ToolchainSpec) -> dict[str, str]:
    """Translate a FeatureSet into gn arguments.

    Raises:
        BuildError: UNTRANSLATED_FLAG when a flag has no gn mapping.
    """
    args = dict(GN_BASE_ARGS)
    for name in sorted(features.flags):
        if name in GN_NEUTRAL_FLAGS:
            continue
        if name not in GN_FEATURE_ARGS:
            raise BuildError(
                "UNTRANSLATED_FLAG",
                f"No gn arguments are defined for flag {name}",
            )
        args.update(GN_FEATURE_ARGS[name])

    os_name = target_os(spec.target)
    cpu = target_arch(spec.target)
    if cpu not in GN_TARGET_CPU:
        raise BuildError(
            "UNSUPPORTED_PLATFORM_FEATURE",
            f"No gn target_cpu mapping for {cpu}",
        )
    args["target_os"] = _gn_string(GN_TARGET_OS[os_name])
    args["target_cpu"] = _gn_string(GN_TARGET_CPU[cpu])
    if spec.defines:
        cflags = ", ".join(_gn_string(f"-D{define}") for define in spec.defines)
        args["extra_cflags"] = f"[{cflags}]"
    return args


def format_gn_args(args: Mapping[str, str]) -> str:
    return " ".join(f"{key}={args[key]}" for key in sorted(args))


def default_jobs(requested: int = 0) -> int:
    if requested > 0:
        return requested
    jobs = os.cpu_count() or 1
    if sys.platform == "win32":
        jobs = min(jobs, MAX_WINDOWS_JOBS)
    return jobs


def check_disk_space(path: Path, required: int) -> None:
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    free = shutil.disk_usage(existing).free
    if free < required:
        raise BuildError(
            "DISK_SPACE_EXHAUSTED",
            f"Only {free // 1024**2:,} MiB free under {existing}; "
            f"a Skia build needs about {required // 1024**2:,} MiB",
            "Free disk space or point --cache-dir at a larger volume.",
        )


def output_tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(output.splitlines()[-lines:])


def _strip_top_level(staging: Path) -> Path:
    children = list(staging.iterdir())
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return staging


class GnNinjaToolchain:
    """Builds Skia with depot_tools, gn and ninja.

    Subprocesses go through an injectable runner with the subprocess.run
    signature so the command sequence can be exercised without a native
    toolchain.
    """

    name = "gn+ninja"

    def __init__(
        self,
        host: str | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        transport: Transport | None = None,
        retry: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
        min_free_bytes: int = MIN_BUILD_FREE_BYTES,
    ):
        self.host = host or host_os()
        self.runner = runner
        self.transport = transport or UrlTransport()
        self.retry = retry
        self.sleep = sleep
        self.min_free_bytes = min_free_bytes

    def depot_tools_dir(self, spec: ToolchainSpec) -> Path:
        return spec.work_dir / f"depot_tools-{spec.depot_tools_revision}"

    def source_dir(self, spec: ToolchainSpec) -> Path:
        return spec.source_dir or spec.work_dir / f"skia-{spec.skia_version}"

    def check_host(self, features: FeatureSet) -> None:
        for name in sorted(features.flags):
            hosts = HOST_REQUIRED.get(name)
            if hosts is not None and self.host not in hosts:
                raise BuildError(
                    "UNSUPPORTED_PLATFORM_FEATURE",
                    f"Flag {name} can only be built on a "
                    f"{'/'.join(sorted(hosts))} host (this host: {self.host})",
                    "Use prebuilt binaries or build on a matching host.",
                )

    def _download_tree(self, url: str, dest: Path, code: str) -> None:
        """Download and unpack url into dest unless another build already did."""
        with cache_lock(dest.parent, dest.name):
            if dest.is_dir():
                logger.info("Reusing %s", dest)
                return
            self._unpack_into(url, dest, code)

    def _unpack_into(self, url: str, dest: Path, code: str) -> None:
        try:
            response = download_with_retry(self.transport, url, self.retry, self.sleep)
        except FetchError as err:
            raise BuildError(code, err.message) from err
        if response is None:
            raise BuildError(code, f"Nothing to download at {url}")
        scratch = dest.parent / f".{dest.name}-{uuid.uuid4().hex}"
        scratch.mkdir(parents=True)
        try:
            try:
                extract_archive(response.body, scratch)
            except FetchError as err:
                raise BuildError(code, f"{url}: {err.message}") from err
            try:
                os.replace(_strip_top_level(scratch), dest)
            except OSError as err:
                # Unlocked hosts can still race; a complete tree already won.
                if err.errno not in (errno.ENOTEMPTY, errno.EEXIST) or not dest.is_dir():
                    raise
                logger.info("%s was unpacked concurrently", dest)
        finally:
            if scratch.exists():
                shutil.rmtree(scratch)

    def fetch(self, spec: ToolchainSpec) -> None:
        spec.work_dir.mkdir(parents=True, exist_ok=True)
        check_disk_space(spec.work_dir, self.min_free_bytes)
        depot_tools = self.depot_tools_dir(spec)
        if not depot_tools.is_dir():
            logger.info("Downloading depot_tools %s", spec.depot_tools_revision)
            self._download_tree(
                DEPOT_TOOLS_URL.format(revision=spec.depot_tools_revision),
                depot_tools,
                "TOOLCHAIN_MISSING",
            )
        source = self.source_dir(spec)
        if spec.source_dir is not None:
            if not source.is_dir():
                raise BuildError(
                    "SOURCE_UNAVAILABLE",
                    f"SKIA_SOURCE_DIR does not exist: {source}",
                )
            logger.info("Using Skia sources from %s", source)
        elif not source.is_dir():
            logger.info("Downloading Skia %s", spec.skia_version)
            self._download_tree(
                SKIA_SOURCE_URL.format(tag=spec.skia_version),
                source,
                "SOURCE_UNAVAILABLE",
            )

    def _run(self, argv: list[str], cwd: Path, step: str, spec: ToolchainSpec) -> str:
        env = dict(os.environ)
        env["PATH"] = str(self.depot_tools_dir(spec)) + os.pathsep + env.get("PATH", "")
        logger.info("Running %s: %s", step, shlex.join(argv))
        try:
            result = self.runner(
                argv, cwd=cwd, env=env, capture_output=True, text=True, check=False
            )
        except FileNotFoundError as err:
            raise BuildError(
                "TOOLCHAIN_MISSING",
                f"{step}: executable not found: {argv[0]}",
                "Check depot_tools or set SKIA_GN_COMMAND / SKIA_NINJA_COMMAND.",
            ) from err
        except OSError as err:
            if err.errno == errno.ENOSPC:
                raise BuildError(
                    "DISK_SPACE_EXHAUSTED", f"{step}: {err}"
                ) from err
            raise BuildError(
                "NATIVE_BUILD_FAILED", f"{step} could not be started: {err}"
            ) from err

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            if "No space left on device" in output:
                raise BuildError(
                    "DISK_SPACE_EXHAUSTED",
                    f"{step} ran out of disk space",
                    "Free disk space or point --cache-dir at a larger volume.",
                    exit_code=result.returncode,
                    output=output_tail(output),
                )
            raise BuildError(
                "NATIVE_BUILD_FAILED",
                f"{step} exited with code {result.returncode}",
                "Re-run with --verbose to see the full tool output.",
                exit_code=result.returncode,
                output=output_tail(output),
            )
        logger.debug("%s output:\n%s", step, output)
        return output

    def configure(self, spec: ToolchainSpec, features: FeatureSet) -> None:
        self.check_host(features)
        source = self.source_dir(spec)
        sync_deps = source / "tools" / "git-sync-deps"
        if sync_deps.exists():
            self._run([sys.executable, str(sync_deps)], source, "git-sync-deps", spec)
        gn = spec.gn_command or str(source / "bin" / "gn")
        fetch_gn = source / "bin" / "fetch-gn"
        if spec.gn_command is None and not Path(gn).exists() and fetch_gn.exists():
            self._run([sys.executable, str(fetch_gn)], source, "fetch-gn", spec)
        args = format_gn_args(gn_args_for(features, spec))
        self._run([gn, "gen", str(spec.out_dir), f"--args={args}"], source, "gn gen", spec)

    def build(self, spec: ToolchainSpec) -> None:
        ninja = spec.ninja_command or "ninja"
        jobs = default_jobs(spec.jobs)
        self._run(
            [ninja, "-C", str(spec.out_dir), "-j", str(jobs)],
            self.source_dir(spec),
            "ninja",
            spec,
        )

    def collect(self, spec: ToolchainSpec, features: FeatureSet, staging: Path) -> None:
        libraries = sorted(
            path
            for pattern in LIBRARY_PATTERNS
            for path in spec.out_dir.glob(pattern)
        )
        if not libraries:
            raise BuildError(
                "NATIVE_BUILD_FAILED",
                f"ninja finished but {spec.out_dir} contains no libraries",
            )
        lib_dir = staging / "lib"
        lib_dir.mkdir(parents=True, exist_ok=True)
        for library in libraries:
            shutil.copy2(library, lib_dir / library.name)

        source = self.source_dir(spec)
        for tree in HEADER_TREES:
            root = source / tree
            if not root.is_dir():
                continue
            for header in sorted(root.rglob("*.h")):
                rel = header.relative_to(source)
                dest = staging / "headers" / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(header, dest)

        icudtl = spec.out_dir / "icudtl.dat"
        if "textlayout" in features and icudtl.is_file():
            data_dir = staging / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(icudtl, data_dir / icudtl.name)


def build(
    descriptor: ArtifactDescriptor,
    spec: ToolchainSpec,
    toolchain: Toolchain,
    cache_dir: Path,
) -> CacheEntry:
    """Run the toolchain and install its outputs like a downloaded artifact.

    Builds of the same descriptor share spec.out_dir, so they are serialized
    on a per-key build lock. A build that waited still runs, and an entry
    installed meanwhile wins in install_entry.

    Raises:
        BuildError: Any toolchain failure; nothing is installed in that case.
    """
    with cache_lock(cache_dir, f"{descriptor.key}.build"):
        logger.info(
            "Building Skia %s for %s with %s",
            descriptor.skia_version,
            descriptor.target,
            toolchain.name,
        )
        toolchain.fetch(spec)
        toolchain.configure(spec, descriptor.features)
        toolchain.build(spec)
        try:
            with staging_dir(cache_dir, descriptor) as staging:
                toolchain.collect(spec, descriptor.features, staging)
                return install_entry(descriptor, staging, cache_dir, "build")
        except OSError as err:
            if err.errno == errno.ENOSPC:
                raise BuildError(
                    "DISK_SPACE_EXHAUSTED",
                    f"Ran out of disk space installing the build output: {err}",
                ) from err
            raise


def _tar_info(name: str, size: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.size = size
    info.mtime = 0
    info.mode = 0o644
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def export_archive(entry: CacheEntry, dest_dir: Path) -> Path:
    """Write entry as a reproducible archive in the remote binaries layout.

    Members are sorted with zeroed timestamps and owners, so exporting the
    same entry twice yields byte-identical archives. A ``.sha256`` sidecar is
    written next to the archive.
    """
    descriptor = entry.descriptor
    name = archive_name(descriptor)
    target = dest_dir / descriptor.skia_version / descriptor.revision_segment / name
    target.parent.mkdir(parents=True, exist_ok=True)

    buffer = io.BytesIO()
    with gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for rel in sorted(hash_tree(entry.path)):
                data = (entry.path / rel).read_bytes()
                tar.addfile(_tar_info(rel, len(data)), io.BytesIO(data))
    data = buffer.getvalue()

    tmp = target.with_name(f".{name}.{uuid.uuid4().hex}")
    tmp.write_bytes(data)
    os.replace(tmp, target)
    digest = sha256_bytes(data)
    target.with_name(name + ".sha256").write_text(f"{digest} *{name}\n", encoding="utf-8")
    logger.info("Exported %s (%s)", target, digest)
    return target


# ===--- Header selection ---=== #


@dataclass(frozen=True)
class HeaderRule:
    prefix: str
    flags: frozenset[str] = frozenset()


def _rule(prefix: str, *flags: str) -> HeaderRule:
    return HeaderRule(prefix=prefix, flags=frozenset(flags))


# Longest matching prefix wins; a gated rule needs one of its flags enabled.
# Headers matching no rule (include/private, src, third_party) are never bound.
HEADER_RULES: tuple[HeaderRule, ...] = (
    _rule("include/core/"),
    _rule("include/effects/"),
    _rule("include/codec/"),
    _rule("include/encode/"),
    _rule("include/encode/SkWebpEncoder.h", "webp-encode"),
    _rule("include/codec/SkWebpDecoder.h", "webp-decode"),
    _rule("include/gpu/", "gpu"),
    _rule("include/gpu/gl/", "gl"),
    _rule("include/gpu/gl/egl/", "egl"),
    _rule("include/gpu/vk/", "vulkan"),
    _rule("include/gpu/mtl/", "metal"),
    _rule("include/gpu/d3d/", "d3d"),
    _rule("modules/skshaper/include/", "shaper", "textlayout"),
    _rule("modules/skparagraph/include/", "textlayout"),
    _rule("modules/skunicode/include/", "textlayout"),
    _rule("modules/svg/include/", "svg"),
    _rule("bindings/sb_core.h"),
    _rule("bindings/sb_gpu.h", "gpu"),
    _rule("bindings/sb_gl.h", "gl"),
    _rule("bindings/sb_vulkan.h", "vulkan"),
    _rule("bindings/sb_metal.h", "metal"),
    _rule("bindings/sb_d3d.h", "d3d"),
    _rule("bindings/sb_textlayout.h", "textlayout"),
    _rule("bindings/sb_svg.h", "svg"),
    _rule("bindings/sb_webp.h", "webp-encode"),
)


@dataclass(frozen=True)
class HeaderSelection:
    root: Path
    headers: tuple[str, ...]
    features: FeatureSet


def match_header_rule(
    rel: str, rules: tuple[HeaderRule, ...] = HEADER_RULES
) -> HeaderRule | None:
    best: HeaderRule | None = None
    for rule in rules:
        if rel == rule.prefix or (rule.prefix.endswith("/") and rel.startswith(rule.prefix)):
            if best is None or len(rule.prefix) > len(best.prefix):
                best = rule
    return best


def header_enabled(
    rel: str, features: FeatureSet, rules: tuple[HeaderRule, ...] = HEADER_RULES
) -> bool:
    rule = match_header_rule(rel, rules)
    if rule is None:
        return False
    return not rule.flags or bool(rule.flags & features.flags)


def select_headers(
    root: Path, features: FeatureSet, rules: tuple[HeaderRule, ...] = HEADER_RULES
) -> HeaderSelection:
    if not root.is_dir():
        raise GenError(
            "MISSING_HEADERS",
            f"Header directory not found: {root}",
            "The artifact is incomplete; rebuild it with --force-build.",
        )
    headers = sorted(
        rel
        for rel in (path.relative_to(root).as_posix() for path in root.rglob("*.h"))
        if header_enabled(rel, features, rules)
    )
    if not headers:
        raise GenError(
            "MISSING_HEADERS",
            f"No public headers under {root} match the enabled features",
        )
    return HeaderSelection(root=root, headers=tuple(headers), features=features)


# ===--- Preprocessor ---=== #

FEATURE_DEFINES: dict[str, tuple[str, ...]] = {
    "gpu": ("SK_GANESH", "SK_SUPPORT_GPU"),
    "gl": ("SK_GL",),
    "egl": ("SK_EGL",),
    "vulkan": ("SK_VULKAN",),
    "metal": ("SK_METAL",),
    "d3d": ("SK_DIRECT3D",),
    "shaper": ("SK_SHAPER_HARFBUZZ_AVAILABLE",),
    "textlayout": ("SK_SHAPER_HARFBUZZ_AVAILABLE", "SK_UNICODE_AVAILABLE"),
    "svg": ("SK_XML",),
    "webp-encode": ("SK_ENCODE_WEBP",),
    "webp-decode": ("SK_CODEC_DECODES_WEBP",),
}
PLATFORM_DEFINES: dict[str, tuple[str, ...]] = {
    "linux": ("SK_BUILD_FOR_UNIX",),
    "windows": ("SK_BUILD_FOR_WIN",),
    "macos": ("SK_BUILD_FOR_MAC",),
    "ios": ("SK_BUILD_FOR_IOS",),
    "android": ("SK_BUILD_FOR_ANDROID",),
    "emscripten": ("SK_BUILD_FOR_UNIX",),
}
BASE_DEFINES: dict[str, str] = {"__cplusplus": "201703L"}

_MACRO_EXPANSION_LIMIT = 16


class SourceLine(NamedTuple):
    number: int
    text: str


def header_defines(features: FeatureSet) -> dict[str, str]:
    defines = dict(BASE_DEFINES)
    for name in PLATFORM_DEFINES.get(features.platform, ()):
        defines[name] = "1"
    for flag in sorted(features.flags):
        for name in FEATURE_DEFINES.get(flag, ()):
            defines[name] = "1"
    return defines


def strip_comments(text: str, path: str) -> str:
    """Blank out comments, keeping newlines so line numbers survive."""
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                raise GenError(
                    "PARSE_FAILURE",
                    "unterminated block comment",
                    path=path,
                    line=text.count("\n", 0, i) + 1,
                )
            out.append(" " + "\n" * text.count("\n", i, end))
            i = end + 2
            continue
        if ch in "\"'":
            j = i + 1
            while j < n and text[j] != ch and text[j] != "\n":
                j += 2 if text[j] == "\\" else 1
            if j < n and text[j] == ch:
                out.append(text[i : j + 1])
                i = j + 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def logical_lines(text: str) -> list[SourceLine]:
    """Join backslash continuations; each line keeps its first line number."""
    result: list[SourceLine] = []
    pending: list[str] = []
    start = 0
    for number, raw in enumerate(text.split("\n"), 1):
        if not pending:
            start = number
        stripped = raw.rstrip()
        if stripped.endswith("\\"):
            pending.append(stripped[:-1])
            continue
        pending.append(raw)
        result.append(SourceLine(start, " ".join(pending)))
        pending = []
    if pending:
        result.append(SourceLine(start, " ".join(pending)))
    return result


_INT_RE = re.compile(r"^(0[xX][0-9A-Fa-f]+|0[0-7]*|[1-9][0-9]*)[uUlL]*$")


def parse_c_int(text: str) -> int | None:
    match = _INT_RE.match(text)
    if match is None:
        return None
    digits = match.group(1)
    if digits[:2] in ("0x", "0X"):
        return int(digits, 16)
    if len(digits) > 1 and digits.startswith("0"):
        return int(digits, 8)
    return int(digits)


_BINARY_PRECEDENCE: dict[str, int] = {
    "||": 1,
    "&&": 2,
    "|": 3,
    "^": 4,
    "&": 5,
    "==": 6,
    "!=": 6,
    "<": 7,
    ">": 7,
    "<=": 7,
    ">=": 7,
    "<<": 8,
    ">>": 8,
    "+": 9,
    "-": 9,
    "*": 10,
    "/": 10,
    "%": 10,
}

_OPERATORS: dict[str, Callable[[int, int], int]] = {
    "||": lambda a, b: int(bool(a) or bool(b)),
    "&&": lambda a, b: int(bool(a) and bool(b)),
    "|": operator.or_,
    "^": operator.xor,
    "&": operator.and_,
    "==": lambda a, b: int(a == b),
    "!=": lambda a, b: int(a != b),
    "<": lambda a, b: int(a < b),
    ">": lambda a, b: int(a > b),
    "<=": lambda a, b: int(a <= b),
    ">=": lambda a, b: int(a >= b),
    "<<": operator.lshift,
    ">>": operator.rshift,
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": lambda a, b: int(a / b),
    "%": lambda a, b: a - b * int(a / b),
}


class ConstantExpression:
    """Integer constant expression evaluator shared by #if and enumerators.

    Identifiers are resolved through a callback; ``defined`` is only
    recognized when a defined-callback is supplied (preprocessor mode).
    """

    def __init__(
        self,
        tokens: list[str],
        lookup: Callable[[str], int],
        fail: Callable[[str], GenError],
        defined: Callable[[str], bool] | None = None,
    ):
        self.tokens = tokens
        self.pos = 0
        self.lookup = lookup
        self.fail = fail
        self.defined = defined

    def evaluate(self) -> int:
        if not self.tokens:
            raise self.fail("empty constant expression")
        value = self._binary(1)
        if self.pos != len(self.tokens):
            raise self.fail(f"unexpected token {self.tokens[self.pos]!r} in expression")
        return value

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise self.fail("unexpected end of expression")
        self.pos += 1
        return token

    def _expect(self, text: str) -> None:
        token = self._take()
        if token != text:
            raise self.fail(f"expected {text!r}, found {token!r}")

    def _binary(self, min_precedence: int) -> int:
        left = self._unary()
        while True:
            op = self._peek()
            precedence = _BINARY_PRECEDENCE.get(op) if op is not None else None
            if precedence is None or precedence < min_precedence:
                return left
            self.pos += 1
            right = self._binary(precedence + 1)
            left = self._apply(op, left, right)

    def _apply(self, op: str, left: int, right: int) -> int:
        if op in ("/", "%") and right == 0:
            raise self.fail("division by zero in constant expression")
        return _OPERATORS[op](left, right)

    def _unary(self) -> int:
        token = self._take()
        if token == "!":
            return int(not self._unary())
        if token == "-":
            return -self._unary()
        if token == "+":
            return self._unary()
        if token == "~":
            return ~self._unary()
        if token == "(":
            value = self._binary(1)
            self._expect(")")
            return value
        number = parse_c_int(token)
        if number is not None:
            return number
        if len(token) >= 3 and token[0] == "'" and token[-1] == "'":
            body = token[1:-1]
            if len(body) == 1:
                return ord(body)
            raise self.fail(f"unsupported character literal {token}")
        if not re.match(r"^[A-Za-z_]\w*$", token):
            raise self.fail(f"unexpected token {token!r} in expression")
        if token == "defined" and self.defined is not None:
            parenthesized = self._peek() == "("
            if parenthesized:
                self.pos += 1
            name = self._take()
            if parenthesized:
                self._expect(")")
            return int(self.defined(name))
        if token in ("true", "false"):
            return int(token == "true")
        name = token
        while self._peek() == "::":
            self.pos += 1
            name = f"{name}::{self._take()}"
        if self._peek() == "(" and self.defined is not None:
            # Function-like macro: unknown to this evaluator.
            self._skip_group()
            return 0
        return self.lookup(name)

    def _skip_group(self) -> None:
        depth = 0
        while True:
            token = self._take()
            if token == "(":
                depth += 1
            elif token == ")":
                depth -= 1
                if depth == 0:
                    return


_PP_TOKEN_RE = re.compile(
    r"\s*(0[xX][0-9A-Fa-f]+[uUlL]*|\d+[uUlL]*|[A-Za-z_]\w*|'(?:[^'\\]|\\.)'"
    r"|&&|\|\||==|!=|<=|>=|<<|>>|::|[()!<>+\-*/%&|^~,?:])"
)


def tokenize_condition(text: str, fail: Callable[[str], GenError]) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _PP_TOKEN_RE.match(text, pos)
        if match is None:
            raise fail(f"unexpected character {text[pos:].strip()[:1]!r} in #if")
        tokens.append(match.group(1))
        pos = match.end()
    return tokens


def evaluate_condition(
    text: str, macros: Mapping[str, str], path: str, line: int
) -> bool:
    """Evaluate a #if / #elif expression; unknown macros count as 0."""

    def fail(message: str) -> GenError:
        return GenError("PARSE_FAILURE", message, path=path, line=line)

    def lookup(name: str, depth: int = 0) -> int:
        if name not in macros:
            return 0
        value = macros[name].strip()
        if not value:
            return 1
        if depth > _MACRO_EXPANSION_LIMIT:
            raise fail(f"macro {name} expands recursively")
        return ConstantExpression(
            tokenize_condition(value, fail),
            lambda inner: lookup(inner, depth + 1),
            fail,
            defined=lambda inner: inner in macros,
        ).evaluate()

    expression = ConstantExpression(
        tokenize_condition(text, fail),
        lookup,
        fail,
        defined=lambda name: name in macros,
    )
    return bool(expression.evaluate())


_DIRECTIVE_RE = re.compile(r"^\s*#\s*([A-Za-z_]*)\s*(.*)$")
_DEFINE_DIRECTIVE_RE = re.compile(r"^([A-Za-z_]\w*)(\([^)]*\))?\s*(.*)$")
_IGNORED_DIRECTIVES = frozenset({"include", "include_next", "pragma", "line", "warning", "import", ""})


@dataclass
class _Conditional:
    parent_active: bool
    active: bool
    taken: bool
    line: int
    seen_else: bool = False


def preprocess(text: str, path: str, defines: Mapping[str, str]) -> list[SourceLine]:
    """Return the active, comment-free logical lines of one header.

    Raises:
        GenError: PARSE_FAILURE for malformed or unterminated conditionals and
            for an active #error.
    """
    macros = dict(defines)
    stack: list[_Conditional] = []

    def active() -> bool:
        return not stack or stack[-1].active

    def fail(message: str, line: int) -> GenError:
        return GenError("PARSE_FAILURE", message, path=path, line=line)

    result: list[SourceLine] = []
    for line in logical_lines(strip_comments(text, path)):
        match = _DIRECTIVE_RE.match(line.text)
        if match is None:
            if active() and line.text.strip():
                result.append(line)
            continue
        directive, rest = match.group(1), match.group(2).strip()

        if directive in ("if", "ifdef", "ifndef"):
            parent = active()
            condition = False
            if parent:
                if directive == "if":
                    condition = evaluate_condition(rest, macros, path, line.number)
                else:
                    name = rest.split()[0] if rest else ""
                    if not name:
                        raise fail(f"#{directive} without a macro name", line.number)
                    condition = (name in macros) == (directive == "ifdef")
            stack.append(_Conditional(parent, condition, condition, line.number))
        elif directive == "elif":
            if not stack or stack[-1].seen_else:
                raise fail("#elif without matching #if", line.number)
            frame = stack[-1]
            if frame.parent_active and not frame.taken:
                frame.active = evaluate_condition(rest, macros, path, line.number)
                frame.taken = frame.active
            else:
                frame.active = False
        elif directive == "else":
            if not stack or stack[-1].seen_else:
                raise fail("#else without matching #if", line.number)
            frame = stack[-1]
            frame.active = frame.parent_active and not frame.taken
            frame.taken = True
            frame.seen_else = True
        elif directive == "endif":
            if not stack:
                raise fail("#endif without matching #if", line.number)
            stack.pop()
        elif not active():
            continue
        elif directive == "define":
            define = _DEFINE_DIRECTIVE_RE.match(rest)
            if define is None:
                raise fail("malformed #define", line.number)
            macros[define.group(1)] = define.group(3) if define.group(2) is None else "1"
        elif directive == "undef":
            macros.pop(rest.split()[0] if rest else "", None)
        elif directive == "error":
            raise fail(f"#error {rest}", line.number)
        elif directive not in _IGNORED_DIRECTIVES:
            raise fail(f"unsupported directive #{directive}", line.number)

    if stack:
        raise fail("unterminated conditional block", stack[-1].line)
    return result


# ===--- Declaration parsing ---=== #


class Token(NamedTuple):
    kind: str
    text: str
    line: int


_DECL_TOKEN_RE = re.compile(
    r"(?P<space>\s+)"
    r"|(?P<ident>[A-Za-z_]\w*)"
    r"|(?P<number>0[xX][0-9A-Fa-f]+[uUlL]*"
    r"|\d+(?:\.\d*)?(?:[eE][+-]?\d+)?[uUlLfF]*"
    r"|\.\d+(?:[eE][+-]?\d+)?[fF]?)"
    r"|(?P<string>\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')"
    r"|(?P<punct>::|->|&&|\|\||==|!=|<=|>=|<<|>>|\.\.\.|\+\+|--"
    r"|[{}()\[\];,:=<>*&~!|^+\-/%?.#])"
)

# Attribute-like macros removed before parsing, together with any argument list.
IGNORED_MACROS = frozenset(
    {
        "SK_API",
        "SK_SPI",
        "SKSHAPER_API",
        "SKPARAGRAPH_API",
        "SKUNICODE_API",
        "SK_SVG_API",
        "SK_WARN_UNUSED_RESULT",
        "SK_BEGIN_REQUIRE_DENSE",
        "SK_END_REQUIRE_DENSE",
        "SK_ALWAYS_INLINE",
        "SK_NEVER_INLINE",
        "SK_UNUSED",
        "SK_TRIVIAL_ABI",
        "SK_NO_SANITIZE",
        "SK_ATTRIBUTE",
        "SK_PRINTF_LIKE",
        "SK_MAKE_BITFIELD_OPS",
        "SK_DECL_BITFIELD_OPS_FRIENDS",
        "GR_MAKE_BITFIELD_OPS",
        "GR_DECL_BITFIELD_OPS_FRIENDS",
        "SK_CAPABILITY",
        "SK_GUARDED_BY",
        "SK_REQUIRES",
        "SK_EXCLUDES",
        "__attribute__",
        "__declspec",
        "alignas",
    }
)
SMART_POINTERS = frozenset({"sk_sp"})
TYPE_QUALIFIERS = frozenset(
    {
        "const",
        "volatile",
        "struct",
        "class",
        "union",
        "enum",
        "typename",
        "mutable",
        "constexpr",
        "static",
        "extern",
        "inline",
        "explicit",
        "register",
    }
)
C_TYPE_WORDS = frozenset(
    {"void", "bool", "char", "short", "int", "long", "signed", "unsigned", "float", "double"}
)
_TRAILING_SPECIFIERS = frozenset({"const", "noexcept", "override", "final"})

Scope = tuple[str, ...]


def join_scope(scope: Scope, name: str) -> str:
    return "_".join((*scope, name)) if scope else name


@dataclass(frozen=True)
class TypeRef:
    name: str
    pointers: int = 0
    scope: Scope = ()
    function: bool = False


@dataclass(frozen=True)
class EnumDecl:
    name: str
    short_name: str
    underlying: TypeRef
    variants: tuple[tuple[str, int], ...]
    path: str
    line: int


@dataclass(frozen=True)
class FieldDecl:
    name: str
    type: TypeRef
    array: int | None
    line: int


@dataclass(frozen=True)
class RecordDecl:
    name: str
    fields: tuple[FieldDecl, ...] | None
    path: str
    line: int


@dataclass(frozen=True)
class AliasDecl:
    name: str
    target: TypeRef
    path: str
    line: int


@dataclass(frozen=True)
class ParamDecl:
    name: str
    type: TypeRef


@dataclass(frozen=True)
class FunctionDecl:
    name: str
    returns: TypeRef
    params: tuple[ParamDecl, ...]
    path: str
    line: int


@dataclass(frozen=True)
class ConstantDecl:
    name: str
    value: int
    path: str
    line: int


@dataclass
class DeclarationSet:
    """Declarations collected from every selected header, keyed by flat name."""

    enums: dict[str, EnumDecl] = field(default_factory=dict)
    records: dict[str, RecordDecl] = field(default_factory=dict)
    aliases: dict[str, AliasDecl] = field(default_factory=dict)
    functions: dict[str, FunctionDecl] = field(default_factory=dict)
    constants: dict[str, ConstantDecl] = field(default_factory=dict)
    enumerators: dict[str, int] = field(default_factory=dict)

    def add_enum(self, decl: EnumDecl) -> None:
        existing = self.enums.get(decl.name)
        if existing is not None and existing.variants != decl.variants:
            raise GenError(
                "NAME_COLLISION",
                f"enum {decl.name} redeclared with different enumerators "
                f"(first at {existing.path}:{existing.line})",
                path=decl.path,
                line=decl.line,
            )
        self.enums.setdefault(decl.name, decl)

    def add_record(self, decl: RecordDecl) -> None:
        existing = self.records.get(decl.name)
        if existing is None or (existing.fields is None and decl.fields is not None):
            self.records[decl.name] = decl

    def add_alias(self, decl: AliasDecl) -> None:
        existing = self.aliases.get(decl.name)
        if existing is not None and existing.target != decl.target:
            raise GenError(
                "NAME_COLLISION",
                f"alias {decl.name} redeclared with a different target "
                f"(first at {existing.path}:{existing.line})",
                path=decl.path,
                line=decl.line,
            )
        self.aliases.setdefault(decl.name, decl)

    def add_function(self, decl: FunctionDecl) -> None:
        existing = self.functions.get(decl.name)
        if existing is not None and (
            existing.returns != decl.returns
            or [p.type for p in existing.params] != [p.type for p in decl.params]
        ):
            raise GenError(
                "NAME_COLLISION",
                f"function {decl.name} redeclared with a different signature "
                f"(first at {existing.path}:{existing.line})",
                path=decl.path,
                line=decl.line,
            )
        self.functions.setdefault(decl.name, decl)

    def add_constant(self, decl: ConstantDecl) -> None:
        existing = self.constants.get(decl.name)
        if existing is not None and existing.value != decl.value:
            raise GenError(
                "NAME_COLLISION",
                f"constant {decl.name} redeclared with value {decl.value} "
                f"(first {existing.value} at {existing.path}:{existing.line})",
                path=decl.path,
                line=decl.line,
            )
        self.constants.setdefault(decl.name, decl)


def _skip_balanced(tokens: list[Token], start: int, path: str) -> int:
    """Return the index just past the bracket group opening at start."""
    pairs = {"(": ")", "[": "]", "{": "}"}
    opener = tokens[start].text
    closer = pairs[opener]
    depth = 0
    for index in range(start, len(tokens)):
        text = tokens[index].text
        if text == opener:
            depth += 1
        elif text == closer:
            depth -= 1
            if depth == 0:
                return index + 1
    raise GenError(
        "PARSE_FAILURE",
        f"unbalanced '{opener}'",
        path=path,
        line=tokens[start].line,
    )


def _skip_angles(tokens: list[Token], start: int, path: str) -> int:
    depth = 0
    for index in range(start, len(tokens)):
        text = tokens[index].text
        if text == "<":
            depth += 1
        elif text == ">":
            depth -= 1
        elif text == ">>":
            depth -= 2
        elif text in (";", "{", "}"):
            break
        if depth <= 0:
            return index + 1
    raise GenError(
        "PARSE_FAILURE",
        "unbalanced template argument list",
        path=path,
        line=tokens[start].line,
    )


def tokenize_header(lines: list[SourceLine], path: str) -> list[Token]:
    tokens: list[Token] = []
    for line in lines:
        pos = 0
        while pos < len(line.text):
            match = _DECL_TOKEN_RE.match(line.text, pos)
            if match is None:
                raise GenError(
                    "PARSE_FAILURE",
                    f"unexpected character {line.text[pos]!r}",
                    path=path,
                    line=line.number,
                )
            if match.lastgroup != "space":
                tokens.append(Token(match.lastgroup, match.group(), line.number))
            pos = match.end()

    result: list[Token] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.kind == "ident" and token.text in IGNORED_MACROS:
            index += 1
            if index < len(tokens) and tokens[index].text == "(":
                index = _skip_balanced(tokens, index, path)
            continue
        if (
            token.text == "["
            and index + 1 < len(tokens)
            and tokens[index + 1].text == "["
        ):
            index = _skip_balanced(tokens, index, path)
            continue
        result.append(token)
        index += 1
    return result


def _split_top_level(tokens: list[Token], separator: str = ",") -> list[list[Token]]:
    parts: list[list[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.text in ("(", "[", "{", "<"):
            depth += 1
        elif token.text in (")", "]", "}", ">"):
            depth -= 1
        elif token.text == ">>":
            depth -= 2
        if depth == 0 and token.text == separator:
            parts.append([])
            continue
        parts[-1].append(token)
    return parts


def _function_pointer_name(tokens: list[Token]) -> int | None:
    """Index of the declarator name in ``R (*name)(args)``, if present."""
    for index in range(len(tokens) - 3):
        if (
            tokens[index].text == "("
            and tokens[index + 1].text == "*"
            and tokens[index + 2].kind == "ident"
            and tokens[index + 3].text == ")"
        ):
            return index + 2
    return None


@dataclass
class _RecordBuilder:
    pod: bool
    fields: list[FieldDecl] = field(default_factory=list)


class HeaderParser:
    """Recursive-descent reader for the declaration subset of Skia headers.

    Records everything the binding surface needs into a DeclarationSet:
    enums (including nested and anonymous ones), struct layouts, aliases and
    C-linkage function prototypes. Templates, inline bodies, operators and
    C++-linkage functions are skipped.
    """

    def __init__(self, tokens: list[Token], path: str, decls: DeclarationSet):
        self.tokens = tokens
        self.pos = 0
        self.path = path
        self.decls = decls

    # -- token helpers --

    def _peek(self, offset: int = 0) -> Token | None:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _text(self, offset: int = 0) -> str | None:
        token = self._peek(offset)
        return token.text if token is not None else None

    def _fail(self, message: str, token: Token | None = None) -> GenError:
        if token is None:
            token = self._peek() or (self.tokens[-1] if self.tokens else None)
        return GenError(
            "PARSE_FAILURE",
            message,
            path=self.path,
            line=token.line if token is not None else None,
        )

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise self._fail("unexpected end of header")
        self.pos += 1
        return token

    def _expect(self, text: str) -> Token:
        token = self._next()
        if token.text != text:
            raise self._fail(f"expected {text!r}, found {token.text!r}", token)
        return token

    def _expect_close(self, opener: Token) -> None:
        if self._peek() is None:
            raise self._fail("unbalanced braces: '{' is never closed", opener)
        self._expect("}")

    # -- blocks --

    def parse(self) -> None:
        self._parse_block((), c_linkage=False)
        if self._peek() is not None:
            raise self._fail("unbalanced braces: unexpected '}'")

    def _parse_block(
        self, scope: Scope, c_linkage: bool, record: _RecordBuilder | None = None
    ) -> None:
        while True:
            token = self._peek()
            if token is None or token.text == "}":
                return
            text = token.text
            if text == ";":
                self.pos += 1
            elif text == "{":
                self.pos = _skip_balanced(self.tokens, self.pos, self.path)
            elif (
                record is not None
                and text in ("public", "private", "protected")
                and self._text(1) == ":"
            ):
                self.pos += 2
            elif text == "namespace":
                self._parse_namespace(scope)
            elif text == "extern" and self._peek(1) and self._peek(1).kind == "string":
                self._parse_linkage(scope)
            elif text == "template":
                self._skip_template()
            elif text == "typedef":
                self._parse_typedef(scope, c_linkage)
            elif text == "using":
                self._parse_using(scope, c_linkage)
            elif text in ("static_assert", "friend"):
                self._collect_statement()
            elif text == "enum" and self._enum_has_body():
                self._parse_enum(scope, record)
            elif text in ("class", "struct", "union") and self._record_kind() is not None:
                self._parse_record(scope, record)
            else:
                statement, has_body = self._collect_statement()
                self._classify(statement, has_body, scope, c_linkage, record)

    def _parse_namespace(self, scope: Scope) -> None:
        self._expect("namespace")
        parts: list[str] = []
        while self._peek() is not None and self._peek().kind == "ident":
            parts.append(self._next().text)
            if self._text() != "::":
                break
            self.pos += 1
        if self._text() == "=":
            self._collect_statement()
            return
        opener = self._expect("{")
        self._parse_block((*scope, *parts), c_linkage=False)
        self._expect_close(opener)

    def _parse_linkage(self, scope: Scope) -> None:
        self._expect("extern")
        c_linkage = self._next().text == '"C"'
        if self._text() == "{":
            opener = self._next()
            self._parse_block(scope, c_linkage=c_linkage)
            self._expect_close(opener)
            return
        statement, has_body = self._collect_statement()
        self._classify(statement, has_body, scope, c_linkage, None)

    def _skip_template(self) -> None:
        self._expect("template")
        if self._text() == "<":
            self.pos = _skip_angles(self.tokens, self.pos, self.path)
        self._collect_statement()

    def _collect_statement(self) -> tuple[list[Token], bool]:
        """Consume one declaration; report whether it carried a body."""
        start = self._peek()
        tokens: list[Token] = []
        depth = 0
        while True:
            token = self._peek()
            if token is None:
                raise self._fail("unterminated declaration", start)
            text = token.text
            if depth == 0 and text == ";":
                self.pos += 1
                return tokens, False
            if depth == 0 and text == "}":
                raise self._fail("expected ';' before '}'", token)
            if text == "{":
                is_body = depth == 0 and any(t.text == "(" for t in tokens) and (
                    not tokens or tokens[-1].text != "="
                )
                self.pos = _skip_balanced(self.tokens, self.pos, self.path)
                if is_body:
                    if self._text() == ";":
                        self.pos += 1
                    return tokens, True
                continue
            if text in ("(", "["):
                depth += 1
            elif text in (")", "]"):
                depth -= 1
            tokens.append(token)
            self.pos += 1

    # -- lookahead --

    def _enum_has_body(self) -> bool:
        index = self.pos + 1
        while index < len(self.tokens):
            text = self.tokens[index].text
            if text == "{":
                return True
            if text in (";", "(", "=", "}"):
                return text == ";" and self._forward_enum(index)
            index += 1
        return False

    def _forward_enum(self, end: int) -> bool:
        texts = [t.text for t in self.tokens[self.pos + 1 : end]]
        if texts and texts[0] in ("class", "struct"):
            texts = texts[1:]
        return bool(texts) and self.tokens[self.pos + 1].kind in ("ident",) and (
            len(texts) == 1 or texts[1] == ":"
        )

    def _record_kind(self) -> str | None:
        """Classify class/struct/union at pos: definition, forward, or neither."""
        index = self.pos + 1
        while index < len(self.tokens):
            text = self.tokens[index].text
            if text == "{":
                return "definition"
            if text == ";":
                between = self.tokens[self.pos + 1 : index]
                qualified = all(
                    (t.kind == "ident") if i % 2 == 0 else (t.text == "::")
                    for i, t in enumerate(between)
                )
                return "forward" if between and len(between) % 2 == 1 and qualified else None
            if text in ("(", "=", "}", "*", "&"):
                return None
            index += 1
        return None

    def _typedef_declarators(self) -> list[tuple[int, str]]:
        """Peek past the tag body at pos and list ``(stars, name)`` pairs."""
        index = self.pos
        while index < len(self.tokens) and self.tokens[index].text != "{":
            index += 1
        if index >= len(self.tokens):
            return []
        index = _skip_balanced(self.tokens, index, self.path)
        declarators: list[tuple[int, str]] = []
        stars = 0
        while index < len(self.tokens) and self.tokens[index].text != ";":
            token = self.tokens[index]
            if token.text == "*":
                stars += 1
            elif token.kind == "ident" and token.text not in TYPE_QUALIFIERS:
                declarators.append((stars, token.text))
            elif token.text == ",":
                stars = 0
            index += 1
        return declarators

    # -- declarations --

    def _parse_enum(
        self,
        scope: Scope,
        record: _RecordBuilder | None,
        anonymous_name: str | None = None,
        consume_declarators: bool = True,
    ) -> str | None:
        start = self._expect("enum")
        scoped = False
        if self._text() in ("class", "struct"):
            self.pos += 1
            scoped = True
        name_token = self._next() if self._peek() and self._peek().kind == "ident" else None
        underlying = TypeRef("int")
        if self._text() == ":":
            self.pos += 1
            base: list[Token] = []
            while self._text() not in ("{", ";", None):
                base.append(self._next())
            underlying = self._parse_type(base, scope, start)
        if self._text() == ";":
            self.pos += 1
            return join_scope(scope, name_token.text) if name_token else None

        opener = self._expect("{")
        short_name = name_token.text if name_token else anonymous_name
        qualified = join_scope(scope, short_name) if short_name else None
        variants: list[tuple[str, int]] = []
        next_value = 0
        while self._text() != "}":
            if self._peek() is None:
                raise self._fail("unbalanced braces: '{' is never closed", opener)
            variant = self._next()
            if variant.kind != "ident":
                raise self._fail(f"expected enumerator name, found {variant.text!r}", variant)
            if self._text() == "=":
                self.pos += 1
                expression: list[Token] = []
                depth = 0
                while True:
                    token = self._peek()
                    if token is None:
                        raise self._fail("unbalanced braces: '{' is never closed", opener)
                    if depth == 0 and token.text in (",", "}"):
                        break
                    if token.text in ("(", "["):
                        depth += 1
                    elif token.text in (")", "]"):
                        depth -= 1
                    expression.append(token)
                    self.pos += 1
                value = self._evaluate(expression, scope, variants, variant)
            else:
                value = next_value
            variants.append((variant.text, value))
            next_value = value + 1
            if self._text() == ",":
                self.pos += 1
        self._expect("}")

        for raw, value in variants:
            if qualified:
                self.decls.enumerators[join_scope((qualified,), raw)] = value
            if not scoped:
                self.decls.enumerators[join_scope(scope, raw)] = value

        if qualified is None:
            for raw, value in variants:
                self.decls.add_constant(
                    ConstantDecl(join_scope(scope, raw), value, self.path, start.line)
                )
        else:
            self.decls.add_enum(
                EnumDecl(
                    name=qualified,
                    short_name=short_name,
                    underlying=underlying,
                    variants=tuple(variants),
                    path=self.path,
                    line=start.line,
                )
            )

        if consume_declarators:
            self._trailing_declarators(qualified, record, start)
        return qualified

    def _evaluate(
        self,
        expression: list[Token],
        scope: Scope,
        variants: list[tuple[str, int]],
        at: Token,
    ) -> int:
        local = dict(variants)

        def fail(message: str) -> GenError:
            return self._fail(f"cannot evaluate enumerator {at.text}: {message}", at)

        def lookup(name: str) -> int:
            if name in local:
                return local[name]
            flat = name.replace("::", "_")
            for depth in range(len(scope), -1, -1):
                key = join_scope(scope[:depth], flat)
                if key in self.decls.enumerators:
                    return self.decls.enumerators[key]
            raise fail(f"unknown name {name}")

        return ConstantExpression([t.text for t in expression], lookup, fail).evaluate()

    def _trailing_declarators(
        self, type_name: str | None, record: _RecordBuilder | None, at: Token
    ) -> None:
        if self._text() == ";":
            self.pos += 1
            return
        declarators, _ = self._collect_statement()
        if record is None or not declarators:
            return
        if type_name is None:
            record.pod = False
            return
        for part in _split_top_level(declarators):
            stars = sum(1 for t in part if t.text == "*")
            names = [t for t in part if t.kind == "ident"]
            if not names or any(t.text == "[" for t in part):
                record.pod = False
                continue
            record.fields.append(
                FieldDecl(names[-1].text, TypeRef(type_name, stars), None, at.line)
            )

    def _parse_record(
        self,
        scope: Scope,
        record: _RecordBuilder | None,
        anonymous_name: str | None = None,
        consume_declarators: bool = True,
    ) -> str | None:
        keyword_token = self._next()
        parts: list[str] = []
        while self._peek() is not None and self._peek().kind == "ident":
            if self._text() == "final":
                break
            parts.append(self._next().text)
            if self._text() != "::":
                break
            self.pos += 1
        if self._text() == "final":
            self.pos += 1
        has_bases = False
        if self._text() == ":":
            has_bases = True
            while self._text() not in ("{", ";", None):
                self.pos += 1
        if self._text() == ";":
            self.pos += 1
            qualified = join_scope(scope, "_".join(parts))
            self.decls.add_record(RecordDecl(qualified, None, self.path, keyword_token.line))
            return qualified

        opener = self._expect("{")
        if not parts and anonymous_name is None:
            # Anonymous struct or union member: layout not modelled.
            if record is not None:
                record.pod = False
            self.pos = _skip_balanced(self.tokens, self.pos - 1, self.path)
            if consume_declarators:
                self._trailing_declarators(None, record, keyword_token)
            return None

        names = parts or [anonymous_name]
        qualified = join_scope(scope, "_".join(names))
        builder = _RecordBuilder(pod=keyword_token.text != "union" and not has_bases)
        self._parse_block((*scope, *names), c_linkage=False, record=builder)
        self._expect_close(opener)
        fields = tuple(builder.fields) if builder.pod and builder.fields else None
        self.decls.add_record(RecordDecl(qualified, fields, self.path, keyword_token.line))
        if consume_declarators:
            self._trailing_declarators(qualified, record, keyword_token)
        return qualified

    def _parse_typedef(self, scope: Scope, c_linkage: bool) -> None:
        start = self._expect("typedef")
        if self._text() in ("struct", "class", "union", "enum") and self._tag_has_body():
            declarators = self._typedef_declarators()
            plain = [name for stars, name in declarators if stars == 0]
            anonymous_name = plain[0] if plain else None
            if self._text() == "enum":
                declared = self._parse_enum(scope, None, anonymous_name, False)
            else:
                declared = self._parse_record(scope, None, anonymous_name, False)
            self._collect_statement()
            for stars, name in declarators:
                qualified = join_scope(scope, name)
                if declared is None or (stars == 0 and qualified == declared):
                    continue
                self.decls.add_alias(
                    AliasDecl(qualified, TypeRef(declared, stars), self.path, start.line)
                )
            return

        tokens, _ = self._collect_statement()
        self._add_alias(tokens, scope, c_linkage, start)

    def _tag_has_body(self) -> bool:
        index = self.pos + 1
        while index < len(self.tokens):
            text = self.tokens[index].text
            if text == "{":
                return True
            if text in (";", "(", "*"):
                return False
            index += 1
        return False

    def _parse_using(self, scope: Scope, c_linkage: bool) -> None:
        start = self._expect("using")
        tokens, _ = self._collect_statement()
        if len(tokens) < 3 or tokens[0].kind != "ident" or tokens[1].text != "=":
            return
        name = tokens[0]
        target = tokens[2:]
        if any(t.text == "(" for t in target):
            self.decls.add_alias(
                AliasDecl(
                    join_scope(scope, name.text),
                    TypeRef("void", 0, scope, function=True),
                    self.path,
                    start.line,
                )
            )
            return
        self._add_alias([*target, name], scope, c_linkage, start)

    def _add_alias(
        self, tokens: list[Token], scope: Scope, c_linkage: bool, start: Token
    ) -> None:
        pointer_name = _function_pointer_name(tokens)
        if pointer_name is not None:
            self.decls.add_alias(
                AliasDecl(
                    join_scope(scope, tokens[pointer_name].text),
                    TypeRef("void", 0, scope, function=True),
                    self.path,
                    start.line,
                )
            )
            return
        if (
            len(tokens) == 3
            and tokens[0].text in ("struct", "class", "union")
            and tokens[1].kind == "ident"
        ):
            # typedef struct Tag Name;
            tag = join_scope(scope, tokens[1].text)
            self.decls.add_record(RecordDecl(tag, None, self.path, start.line))
            if tokens[1].text == tokens[2].text:
                return
        if len(tokens) < 2 or tokens[-1].kind != "ident" or any(
            t.text in ("[", "(", ",") for t in tokens
        ):
            if c_linkage:
                raise self._fail("unsupported typedef", start)
            logger.debug("%s:%d: skipping unsupported alias", self.path, start.line)
            return
        try:
            target = self._parse_type(tokens[:-1], scope, start)
        except GenError:
            if c_linkage:
                raise
            logger.debug("%s:%d: skipping alias to unsupported type", self.path, start.line)
            return
        self.decls.add_alias(
            AliasDecl(join_scope(scope, tokens[-1].text), target, self.path, start.line)
        )

    def _classify(
        self,
        tokens: list[Token],
        has_body: bool,
        scope: Scope,
        c_linkage: bool,
        record: _RecordBuilder | None,
    ) -> None:
        if not tokens:
            return
        texts = [t.text for t in tokens]
        if record is not None:
            if "virtual" in texts:
                record.pod = False
            if has_body or texts[0] in ("static", "friend") or "operator" in texts:
                return
            if "(" in texts and _function_pointer_name(tokens) is None:
                return
            self._add_fields(tokens, scope, record)
            return
        if has_body or not c_linkage or "(" not in texts:
            return
        if texts[0] in ("static", "inline"):
            return
        self._add_function(tokens, scope)

    def _add_fields(self, tokens: list[Token], scope: Scope, record: _RecordBuilder) -> None:
        try:
            record.fields.extend(self._parse_fields(tokens, scope))
        except GenError as err:
            logger.debug("%s; treating record as opaque", err.message)
            record.pod = False

    def _parse_fields(self, tokens: list[Token], scope: Scope) -> list[FieldDecl]:
        pointer_name = _function_pointer_name(tokens)
        if pointer_name is not None:
            name = tokens[pointer_name]
            return [FieldDecl(name.text, TypeRef("void", 0, scope, function=True), None, name.line)]

        parts = _split_top_level(tokens)
        first = self._strip_initializer(parts[0])
        name_index = self._declarator_name(first)
        base = first[:name_index]
        while base and base[-1].text in ("*", "&"):
            base = base[:-1]
        fields = []
        for index, part in enumerate(parts):
            part = self._strip_initializer(part)
            if any(t.text == ":" for t in part):
                raise self._fail("bit-field members are not modelled", part[0])
            name_index = self._declarator_name(part)
            name = part[name_index]
            declarator = part[:name_index] if index == 0 else [*base, *part[:name_index]]
            array = self._array_length(part[name_index + 1 :], scope, name)
            fields.append(
                FieldDecl(name.text, self._parse_type(declarator, scope, name), array, name.line)
            )
        return fields

    @staticmethod
    def _strip_initializer(part: list[Token]) -> list[Token]:
        for index, token in enumerate(part):
            if token.text == "=":
                return part[:index]
        return part

    def _declarator_name(self, part: list[Token]) -> int:
        end = len(part)
        for index, token in enumerate(part):
            if token.text == "[":
                end = index
                break
        if end == 0 or part[end - 1].kind != "ident":
            raise self._fail("cannot find declarator name", part[0] if part else None)
        return end - 1

    def _array_length(self, suffix: list[Token], scope: Scope, at: Token) -> int | None:
        if not suffix:
            return None
        length = 1
        index = 0
        while index < len(suffix):
            if suffix[index].text != "[":
                raise self._fail(f"unexpected {suffix[index].text!r} after {at.text}", at)
            end = _skip_balanced(suffix, index, self.path)
            inner = suffix[index + 1 : end - 1]
            if not inner:
                raise self._fail(f"flexible array member {at.text}", at)
            length *= self._evaluate(inner, scope, [], at)
            index = end
        return length

    def _parse_type(self, tokens: list[Token], scope: Scope, at: Token) -> TypeRef:
        words: list[str] = []
        pointers = 0
        smart: TypeRef | None = None
        index = 0
        while index < len(tokens):
            token = tokens[index]
            text = token.text
            if text in TYPE_QUALIFIERS:
                index += 1
            elif text in ("*", "&", "&&"):
                pointers += 1
                index += 1
            elif text == "::":
                if words:
                    words.append("::")
                index += 1
            elif text == "<":
                if not words or words[-1] not in SMART_POINTERS:
                    raise self._fail(f"unsupported template type {''.join(words)}<...>", token)
                end = _skip_angles(tokens, index, self.path)
                inner = self._parse_type(tokens[index + 1 : end - 1], scope, at)
                smart = TypeRef(inner.name, inner.pointers + 1, scope)
                words = []
                index = end
            elif token.kind == "ident":
                words.append(text)
                index += 1
            else:
                raise self._fail(f"unsupported token {text!r} in type", token)
        if smart is not None:
            return TypeRef(smart.name, smart.pointers + pointers, scope)
        if not words:
            raise self._fail("missing type name", at)
        if "::" in words:
            name = "".join(words)
        else:
            name = " ".join(words)
        return TypeRef(name, pointers, scope)

    def _add_function(self, tokens: list[Token], scope: Scope) -> None:
        while tokens and tokens[0].text == "extern":
            tokens = tokens[1:]
        open_index = next(i for i, t in enumerate(tokens) if t.text == "(")
        if open_index == 0 or tokens[open_index - 1].kind != "ident":
            raise self._fail("unsupported function declarator", tokens[open_index])
        name = tokens[open_index - 1]
        if open_index >= 2 and tokens[open_index - 2].text == "::":
            raise self._fail(f"qualified function name {name.text}", name)
        close_index = _skip_balanced(tokens, open_index, self.path) - 1
        trailing = [t.text for t in tokens[close_index + 1 :]]
        if any(text not in _TRAILING_SPECIFIERS for text in trailing):
            raise self._fail(f"unsupported declarator after {name.text}(...)", name)
        returns = self._parse_type(tokens[: open_index - 1], scope, name)
        params = self._parse_params(tokens[open_index + 1 : close_index], scope, name)
        self.decls.add_function(
            FunctionDecl(name.text, returns, params, self.path, name.line)
        )

    def _parse_params(
        self, tokens: list[Token], scope: Scope, function: Token
    ) -> tuple[ParamDecl, ...]:
        if not tokens or [t.text for t in tokens] == ["void"]:
            return ()
        params = []
        for index, part in enumerate(_split_top_level(tokens)):
            part = self._strip_initializer(part)
            if not part:
                raise self._fail(f"empty parameter in {function.text}", function)
            if any(t.text == "..." for t in part):
                raise self._fail(f"variadic function {function.text} cannot be bound", function)
            pointer_name = _function_pointer_name(part)
            if pointer_name is not None:
                params.append(
                    ParamDecl(part[pointer_name].text, TypeRef("void", 0, scope, function=True))
                )
                continue
            extra = 0
            while len(part) >= 2 and part[-1].text == "]":
                start = max(i for i, t in enumerate(part) if t.text == "[")
                part = part[:start]
                extra += 1
            name = f"arg{index}"
            last = part[-1]
            if (
                len(part) > 1
                and last.kind == "ident"
                and last.text not in C_TYPE_WORDS
                and last.text not in TYPE_QUALIFIERS
                and part[-2].text != "::"
                and any(
                    t.kind == "ident" and t.text not in TYPE_QUALIFIERS for t in part[:-1]
                )
            ):
                name = last.text
                part = part[:-1]
            ref = self._parse_type(part, scope, function)
            params.append(ParamDecl(name, TypeRef(ref.name, ref.pointers + extra, scope)))
        return tuple(params)


def parse_header(
    text: str, path: str, defines: Mapping[str, str], decls: DeclarationSet
) -> None:
    lines = preprocess(text, path, defines)
    HeaderParser(tokenize_header(lines, path), path, decls).parse()


def read_header(root: Path, rel: str) -> str:
    raw = (root / rel).read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as err:
        raise GenError(
            "PARSE_FAILURE",
            f"header is not valid UTF-8 (byte {err.start}: {err.reason})",
            path=rel,
            line=raw.count(b"\n", 0, err.start) + 1,
        ) from err


def parse_selection(selection: HeaderSelection) -> DeclarationSet:
    defines = header_defines(selection.features)
    decls = DeclarationSet()
    for rel in selection.headers:
        parse_header(read_header(selection.root, rel), rel, defines, decls)
    return decls


# ===--- Binding emission ---=== #

C_PRIMITIVES: dict[str, str] = {
    "bool": "ctypes.c_bool",
    "char": "ctypes.c_char",
    "signed char": "ctypes.c_byte",
    "unsigned char": "ctypes.c_ubyte",
    "short": "ctypes.c_short",
    "short int": "ctypes.c_short",
    "signed short": "ctypes.c_short",
    "unsigned short": "ctypes.c_ushort",
    "unsigned short int": "ctypes.c_ushort",
    "int": "ctypes.c_int",
    "signed": "ctypes.c_int",
    "signed int": "ctypes.c_int",
    "unsigned": "ctypes.c_uint",
    "unsigned int": "ctypes.c_uint",
    "long": "ctypes.c_long",
    "long int": "ctypes.c_long",
    "unsigned long": "ctypes.c_ulong",
    "unsigned long int": "ctypes.c_ulong",
    "long long": "ctypes.c_longlong",
    "unsigned long long": "ctypes.c_ulonglong",
    "float": "ctypes.c_float",
    "double": "ctypes.c_double",
    "long double": "ctypes.c_longdouble",
    "size_t": "ctypes.c_size_t",
    "ssize_t": "ctypes.c_ssize_t",
    "ptrdiff_t": "ctypes.c_ssize_t",
    "intptr_t": "ctypes.c_ssize_t",
    "uintptr_t": "ctypes.c_size_t",
    "int8_t": "ctypes.c_int8",
    "uint8_t": "ctypes.c_uint8",
    "int16_t": "ctypes.c_int16",
    "uint16_t": "ctypes.c_uint16",
    "int32_t": "ctypes.c_int32",
    "uint32_t": "ctypes.c_uint32",
    "int64_t": "ctypes.c_int64",
    "uint64_t": "ctypes.c_uint64",
    "wchar_t": "ctypes.c_wchar",
    "char16_t": "ctypes.c_uint16",
    "char32_t": "ctypes.c_uint32",
}

# Module-level names of the generated file that declarations may not take.
RESERVED_NAMES = frozenset({"ctypes", "IntEnum", "FUNCTIONS", "load"})

_ALIAS_DEPTH_LIMIT = 32

# Categories returned by TypeResolver.resolve.
VALUE, VOID, OPAQUE, UNKNOWN = "value", "void", "opaque", "unknown"


def python_type_name(name: str) -> str:
    return f"{name}_" if keyword.iskeyword(name) else name


class TypeResolver:
    """Map parsed type references onto ctypes expressions.

    Records whose fields cannot all be laid out by value are demoted to
    opaque: they stay usable through pointers but get no ``_fields_``.
    """

    def __init__(self, decls: DeclarationSet):
        self.decls = decls
        self._layout: dict[str, bool] = {}
        self._in_progress: set[str] = set()

    def lookup(self, ref: TypeRef) -> tuple[str, str] | None:
        name = ref.name.removeprefix("::").removeprefix("std::")
        if name == "void" or name in C_PRIMITIVES:
            return "primitive", name
        flat = name.replace("::", "_")
        for depth in range(len(ref.scope), -1, -1):
            candidate = join_scope(ref.scope[:depth], flat)
            if candidate in self.decls.records:
                return "record", candidate
            if candidate in self.decls.enums:
                return "enum", candidate
            if candidate in self.decls.aliases:
                return "alias", candidate
        return None

    def resolve(self, ref: TypeRef, depth: int = 0) -> tuple[str | None, str]:
        if depth > _ALIAS_DEPTH_LIMIT:
            raise RuntimeError(f"Alias chain for {ref.name} exceeds {_ALIAS_DEPTH_LIMIT}")
        expr, category = self._base(ref, depth)
        for level in range(ref.pointers):
            if level == 0 and category in (VOID, UNKNOWN):
                expr, category = "ctypes.c_void_p", VALUE
            elif level == 0 and expr == "ctypes.c_char":
                expr, category = "ctypes.c_char_p", VALUE
            else:
                expr, category = f"ctypes.POINTER({expr})", VALUE
        return expr, category

    def _base(self, ref: TypeRef, depth: int) -> tuple[str | None, str]:
        if ref.function:
            return "ctypes.c_void_p", VALUE
        found = self.lookup(ref)
        if found is None:
            return None, UNKNOWN
        kind, name = found
        if kind == "primitive":
            return (None, VOID) if name == "void" else (C_PRIMITIVES[name], VALUE)
        if kind == "enum":
            underlying = self.decls.enums[name].underlying
            expr, category = self.resolve(underlying, depth + 1)
            return expr, category
        if kind == "record":
            category = VALUE if self.has_layout(name) else OPAQUE
            return python_type_name(name), category
        return self.resolve(self.decls.aliases[name].target, depth + 1)

    def has_layout(self, name: str) -> bool:
        if name in self._layout:
            return self._layout[name]
        record = self.decls.records[name]
        if record.fields is None or name in self._in_progress:
            return False
        self._in_progress.add(name)
        try:
            ok = True
            for member in record.fields:
                _, category = self.resolve(member.type)
                if category != VALUE:
                    logger.debug(
                        "%s:%d: field %s.%s has no by-value layout; %s is opaque",
                        record.path,
                        member.line,
                        name,
                        member.name,
                        name,
                    )
                    ok = False
                    break
        finally:
            self._in_progress.discard(name)
        self._layout[name] = ok
        return ok

    def value_dependencies(self, name: str) -> set[str]:
        """Records embedded by value in the layout of name."""
        deps = set()
        for member in self.decls.records[name].fields or ():
            if member.type.pointers:
                continue
            found = self.lookup(member.type)
            while found is not None and found[0] == "alias":
                target = self.decls.aliases[found[1]].target
                if target.pointers or target.function:
                    found = None
                    break
                found = self.lookup(target)
            if found is not None and found[0] == "record" and found[1] != name:
                deps.add(found[1])
        return deps


def topo_sort_records(names: list[str], resolver: TypeResolver) -> list[str]:
    deps = {name: resolver.value_dependencies(name) for name in names}
    in_degree = {name: 0 for name in deps}
    adj = defaultdict(list)
    for name, dd in deps.items():
        for d in dd:
            if d in deps:
                adj[d].append(name)
                in_degree[name] += 1

    queue = [name for name in deps if in_degree[name] == 0]
    result = []
    while queue:
        queue.sort()
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(deps):
        remaining = set(deps) - set(result)
        raise RuntimeError(f"Dependency cycle in record layouts: {sorted(remaining)}")
    return result


def to_snake_case(name: str) -> str:
    name = re.sub(r"(\d)D\b", r"_\1d", name)
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


_VARIANT_PREFIX_RE = re.compile(r"^k(?=[A-Z0-9_])")


def normalize_variant(enum_name: str, raw: str) -> str:
    """Python member name for one enumerator.

    ``kRGBA_8888_SkColorType`` in ``SkColorType`` becomes ``RGBA_8888`` and
    ``kSrcOver`` becomes ``SRC_OVER``.
    """
    name = raw
    suffix = f"_{enum_name}"
    if name.endswith(suffix) and len(name) > len(suffix):
        name = name[: -len(suffix)]
    name = _VARIANT_PREFIX_RE.sub("", name)
    name = re.sub(r"_+", "_", to_snake_case(name).upper()).strip("_")
    if not name:
        name = raw.upper()
    if name[0].isdigit():
        name = f"_{name}"
    if keyword.iskeyword(name):
        name = f"{name}_"
    return name


def enum_members(decl: EnumDecl) -> list[tuple[str, int]]:
    """Normalized members in declaration order; equal-valued duplicates merge.

    Raises:
        GenError: NAME_COLLISION when two enumerators with different values
            normalize to the same member name.
    """
    members: dict[str, int] = {}
    origins: dict[str, str] = {}
    for raw, value in decl.variants:
        name = normalize_variant(decl.short_name, raw)
        if name in members:
            if members[name] != value:
                raise GenError(
                    "NAME_COLLISION",
                    f"{decl.name}: {origins[name]} and {raw} both map to {name}",
                    path=decl.path,
                    line=decl.line,
                )
            continue
        members[name] = value
        origins[name] = raw
    return list(members.items())


@dataclass(frozen=True)
class BindingCounts:
    enums: int = 0
    records: int = 0
    layouts: int = 0
    aliases: int = 0
    constants: int = 0
    functions: int = 0


@dataclass(frozen=True)
class GeneratedBinding:
    module_name: str
    source: str
    headers: tuple[str, ...]
    counts: BindingCounts


_HEADER_BORDER: str = "# x-------------------------------------------x #"


def format_binding_header(selection: HeaderSelection, module_name: str) -> list[str]:
    """Boxed comment at the top of the generated module.

    Output format:
        # x-------------------------------------------x #
        # | Skia ctypes bindings (skia_bindings)
        # | Generated by skia-bindings-build
        # | Platform: linux
        # | Features: gl, gpu, textlayout
        # | Headers: 14
        # x-------------------------------------------x #
    """
    features = ", ".join(sorted(selection.features.flags)) or "none"
    return [
        _HEADER_BORDER,
        f"# | Skia ctypes bindings ({module_name})",
        f"# | Generated by {TOOL_NAME}",
        f"# | Platform: {selection.features.platform}",
        f"# | Features: {features}",
        f"# | Headers: {len(selection.headers)}",
        _HEADER_BORDER,
    ]


def check_type_names(decls: DeclarationSet) -> None:
    seen: dict[str, tuple[str, str, int]] = {}
    tables = (
        ("record", decls.records),
        ("enum", decls.enums),
        ("alias", decls.aliases),
        ("constant", decls.constants),
    )
    for kind, table in tables:
        for name in sorted(table):
            decl = table[name]
            python_name = python_type_name(name)
            if python_name in RESERVED_NAMES:
                raise GenError(
                    "NAME_COLLISION",
                    f"{kind} {name} shadows the generated module's {python_name}",
                    path=decl.path,
                    line=decl.line,
                )
            if python_name in seen:
                other_kind, other_path, other_line = seen[python_name]
                raise GenError(
                    "NAME_COLLISION",
                    f"{kind} {name} collides with {other_kind} declared at "
                    f"{other_path}:{other_line}",
                    path=decl.path,
                    line=decl.line,
                )
            seen[python_name] = (kind, decl.path, decl.line)


def _function_entry(decl: FunctionDecl, resolver: TypeResolver) -> str:
    restype, category = resolver.resolve(decl.returns)
    if category == VOID:
        restype = "None"
    elif category != VALUE:
        raise GenError(
            "PARSE_FAILURE",
            f"{decl.name} returns {decl.returns.name} by value, which has no known layout",
            path=decl.path,
            line=decl.line,
        )
    argtypes = []
    for param in decl.params:
        expr, category = resolver.resolve(param.type)
        if category != VALUE:
            raise GenError(
                "PARSE_FAILURE",
                f"{decl.name}: parameter {param.name} of type {param.type.name} "
                "has no known layout",
                path=decl.path,
                line=decl.line,
            )
        argtypes.append(f"{expr},")
    return f'    ("{decl.name}", {restype}, ({" ".join(argtypes)})),'


def emit_binding(
    decls: DeclarationSet,
    selection: HeaderSelection,
    module_name: str = BINDING_MODULE_NAME,
) -> GeneratedBinding:
    check_type_names(decls)
    resolver = TypeResolver(decls)
    lines = format_binding_header(selection, module_name)
    lines += ["", "import ctypes", "from enum import IntEnum", ""]

    records = sorted(decls.records)
    for name in records:
        lines += ["", f"class {python_type_name(name)}(ctypes.Structure):", "    pass", ""]

    alias_lines = []
    for name in sorted(decls.aliases):
        expr, category = resolver.resolve(TypeRef(name))
        if expr is None or category not in (VALUE, OPAQUE):
            logger.debug("Skipping alias %s with no ctypes equivalent", name)
            continue
        alias_lines.append(f"{python_type_name(name)} = {expr}")
    if alias_lines:
        lines += ["", *alias_lines]

    constant_lines = [
        f"{python_type_name(name)} = {decls.constants[name].value}"
        for name in sorted(decls.constants)
    ]
    if constant_lines:
        lines += ["", *constant_lines]

    for name in sorted(decls.enums):
        lines += ["", "", f"class {python_type_name(name)}(IntEnum):"]
        members = enum_members(decls.enums[name])
        lines += [f"    {member} = {value}" for member, value in members] or ["    pass"]

    layouts = topo_sort_records([n for n in records if resolver.has_layout(n)], resolver)
    if layouts:
        lines.append("")
    for name in layouts:
        lines += ["", f"{python_type_name(name)}._fields_ = ["]
        for member in decls.records[name].fields:
            expr, _ = resolver.resolve(member.type)
            if member.array is not None:
                expr = f"{expr} * {member.array}"
            lines.append(f'    ("{member.name}", {expr}),')
        lines.append("]")

    entries = [_function_entry(decls.functions[n], resolver) for n in sorted(decls.functions)]
    lines += ["", "", "FUNCTIONS = ("]
    lines += entries
    lines.append(")")
    lines += [
        "",
        "",
        "def load(path):",
        '    """Open the Skia shared library at path and apply the FUNCTIONS prototypes."""',
        "    library = ctypes.CDLL(str(path))",
        "    for name, restype, argtypes in FUNCTIONS:",
        "        function = getattr(library, name)",
        "        function.restype = restype",
        "        function.argtypes = argtypes",
        "    return library",
    ]

    counts = BindingCounts(
        enums=len(decls.enums),
        records=len(records),
        layouts=len(layouts),
        aliases=len(alias_lines),
        constants=len(constant_lines),
        functions=len(entries),
    )
    return GeneratedBinding(
        module_name=module_name,
        source="\n".join(lines) + "\n",
        headers=selection.headers,
        counts=counts,
    )


def generate(
    selection: HeaderSelection, module_name: str = BINDING_MODULE_NAME
) -> GeneratedBinding:
    """Parse the selected headers and render the ctypes binding module.

    Pure with respect to its inputs: the same headers and features always
    produce byte-identical source.

    Raises:
        GenError: PARSE_FAILURE, NAME_COLLISION.
    """
    decls = parse_selection(selection)
    binding = emit_binding(decls, selection, module_name)
    logger.info(
        "Generated %s from %d headers (%d functions)",
        module_name,
        len(selection.headers),
        binding.counts.functions,
    )
    return binding


# ===--- Asset embedding ---=== #


@dataclass(frozen=True)
class AssetSpec:
    name: str
    source: str
    flag: str
    requires: frozenset[str] = frozenset()


ASSETS: tuple[AssetSpec, ...] = (
    AssetSpec(
        name="icudtl.dat",
        source="data/icudtl.dat",
        flag="embed-icudtl",
        requires=frozenset({"textlayout"}),
    ),
)


@dataclass(frozen=True)
class EmbeddedFile:
    name: str
    path: Path
    sha256: str
    size: int


@dataclass(frozen=True)
class EmbeddedAssets:
    files: tuple[EmbeddedFile, ...]


def embed(
    features: FeatureSet,
    entry: CacheEntry,
    output_dir: Path,
    assets: tuple[AssetSpec, ...] = ASSETS,
) -> EmbeddedAssets | None:
    """Copy the data blobs enabled by features from entry into output_dir/assets.

    Returns None when no asset applies. Paths in the result are relative to
    output_dir.

    Raises:
        BuildError: ASSET_MISSING when an enabled asset is absent from the entry.
    """
    files: list[EmbeddedFile] = []
    for asset in assets:
        if asset.flag not in features:
            continue
        missing = sorted(asset.requires - features.flags)
        if missing:
            logger.info(
                "Not embedding %s: %s needs %s", asset.name, asset.flag, ", ".join(missing)
            )
            continue
        source = entry.path / asset.source
        if not source.is_file():
            raise BuildError(
                "ASSET_MISSING",
                f"{asset.source} is missing from artifact {entry.descriptor.key}",
                "Rebuild the artifact with --force-build so the data file is collected.",
            )
        rel = Path("assets") / asset.name
        dest = output_dir / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        files.append(
            EmbeddedFile(
                name=asset.name,
                path=rel,
                sha256=file_sha256(dest),
                size=dest.stat().st_size,
            )
        )
    return EmbeddedAssets(files=tuple(files)) if files else None


# ===--- Output writer ---=== #


@dataclass(frozen=True)
class WrittenFile:
    filename: str
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class OutputResult:
    output_dir: Path
    files: tuple[WrittenFile, ...]
    header_count: int
    assets: EmbeddedAssets | None


@contextmanager
def output_staging(output_dir: Path) -> Iterator[Path]:
    """Yield a sibling scratch directory; removed unless it was promoted."""
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = output_dir.parent / f".{output_dir.name}.staging-{uuid.uuid4().hex}"
    staging.mkdir()
    try:
        yield staging
    finally:
        if staging.exists():
            shutil.rmtree(staging)


def promote_output(staging: Path, output_dir: Path) -> None:
    """Swap staging in as output_dir; concurrent writers take turns."""
    with cache_lock(output_dir.parent, f"{output_dir.name}.output"):
        retired = output_dir.parent / f".{output_dir.name}.old-{uuid.uuid4().hex}"
        try:
            os.replace(output_dir, retired)
        except FileNotFoundError:
            retired = None
        os.replace(staging, output_dir)
        if retired is not None:
            shutil.rmtree(retired)


def write_text_file(directory: Path, filename: str, content: str) -> WrittenFile:
    data = content.encode("utf-8")
    (directory / filename).write_bytes(data)
    return WrittenFile(
        filename=filename, line_count=content.count("\n"), byte_count=len(data)
    )


def build_info(
    entry: CacheEntry, binding: GeneratedBinding, assets: EmbeddedAssets | None
) -> dict:
    return {
        "tool": TOOL_NAME,
        "descriptor": entry.descriptor.as_dict(),
        "origin": entry.origin,
        "artifact_checksum": entry.checksum,
        "module": {
            "name": binding.module_name,
            "sha256": sha256_bytes(binding.source.encode("utf-8")),
            "headers": list(binding.headers),
        },
        "assets": [
            {
                "name": f.name,
                "path": f.path.as_posix(),
                "sha256": f.sha256,
                "size": f.size,
            }
            for f in (assets.files if assets else ())
        ],
    }


def write_output(
    output_dir: Path,
    binding: GeneratedBinding,
    selection: HeaderSelection,
    entry: CacheEntry,
) -> OutputResult:
    """Assemble the output directory in staging and swap it into place.

    Either the previous output directory or the complete new one exists at
    every point; a failure leaves the previous contents untouched.
    """
    with output_staging(output_dir) as staging:
        files = [write_text_file(staging, f"{binding.module_name}.py", binding.source)]
        for rel in selection.headers:
            dest = staging / "headers" / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(selection.root / rel, dest)
        assets = embed(selection.features, entry, staging)
        info = json.dumps(build_info(entry, binding, assets), indent=2, sort_keys=True)
        files.append(write_text_file(staging, BUILD_INFO_FILE, info + "\n"))
        promote_output(staging, output_dir)
    logger.info("Wrote %s", output_dir)
    return OutputResult(
        output_dir=output_dir,
        files=tuple(files),
        header_count=len(selection.headers),
        assets=assets,
    )


# ===--- Pipeline ---=== #


@dataclass(frozen=True)
class PipelineResult:
    features: FeatureSet
    descriptor: ArtifactDescriptor
    entry: CacheEntry | None = None
    binding: GeneratedBinding | None = None
    output: OutputResult | None = None
    archive: Path | None = None


def toolchain_spec(config: BuildConfig, descriptor: ArtifactDescriptor) -> ToolchainSpec:
    work_dir = config.cache_dir / "work"
    return ToolchainSpec(
        skia_version=descriptor.skia_version,
        depot_tools_revision=descriptor.depot_tools_revision,
        target=descriptor.target,
        work_dir=work_dir,
        out_dir=work_dir / "out" / descriptor.key,
        source_dir=config.skia_source_dir,
        jobs=config.jobs,
        defines=config.defines,
        gn_command=config.gn_command,
        ninja_command=config.ninja_command,
    )


def obtain_artifact(
    config: BuildConfig,
    descriptor: ArtifactDescriptor,
    transport: Transport | None = None,
    toolchain: Toolchain | None = None,
    sleep: Callable[[float], None] = time.sleep,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> CacheEntry:
    """Local store, then remote binaries, then a source build.

    Remote binaries are only consulted with the binary-cache flag. An
    integrity failure falls back to building unless downloads are forced.
    """
    features = descriptor.features
    if config.force_download and "binary-cache" not in features:
        raise ConfigError(
            "CONFLICT_FLAGS",
            "Forcing a binaries download requires the binary-cache feature",
            "Enable binary-cache or unset FORCE_SKIA_BINARIES_DOWNLOAD.",
        )

    if not config.no_cache and not config.force_build:
        if "binary-cache" in features:
            settings = CacheSettings(
                cache_dir=config.cache_dir, binaries_url=config.binaries_url
            )
            try:
                result = fetch(descriptor, settings, transport, sleep)
            except FetchError as err:
                if config.force_download or err.code != "INTEGRITY":
                    raise
                logger.warning("%s; falling back to a source build", err.message)
            else:
                if isinstance(result, CacheEntry):
                    return result
                if config.force_download:
                    raise FetchError(
                        "NOT_AVAILABLE",
                        f"Prebuilt binaries are required but unavailable: {result.reason}",
                        "Unset FORCE_SKIA_BINARIES_DOWNLOAD to allow a source build.",
                    )
                logger.info("Cache miss (%s); building from source", result.reason)
        else:
            local = lookup_local(descriptor, config.cache_dir)
            if local is not None:
                logger.info("Using cached artifact %s", local.path)
                return local

    if toolchain is None:
        toolchain = GnNinjaToolchain(runner=runner, transport=transport, sleep=sleep)
    return build(descriptor, toolchain_spec(config, descriptor), toolchain, config.cache_dir)


def run_pipeline(
    config: BuildConfig,
    transport: Transport | None = None,
    toolchain: Toolchain | None = None,
    sleep: Callable[[float], None] = time.sleep,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> PipelineResult:
    """Resolve, reconcile, obtain, generate and write.

    Any PipelineError raised after feature resolution carries the resolved
    FeatureSet and, once known, the ArtifactDescriptor.
    """
    requested = [*config.features, *(["default"] if config.default_features else [])]
    features = resolve(requested, target_os(config.target))
    descriptor: ArtifactDescriptor | None = None
    try:
        bindings_features = manifest_features(load_manifest(config.bindings_manifest))
        if config.safe_manifest is not None:
            verify_manifest_agreement(
                SKIA_GRAPH,
                manifest_features(load_manifest(config.safe_manifest)),
                bindings_features,
            )
        verify_cross_crate(features, SKIA_GRAPH, bindings_features)
        repo_state = read_repo_state(
            config.bindings_manifest,
            config.safe_manifest,
            config.lock_file,
            config.checkout_dir,
            runner,
        )
        descriptor = compute_key(
            features,
            repo_state,
            config.target,
            config.revision_policy,
            config.depot_tools_revision,
        )
        if config.print_key:
            print(format_key(descriptor, config.binaries_url), end="")
            return PipelineResult(features=features, descriptor=descriptor)

        entry = obtain_artifact(config, descriptor, transport, toolchain, sleep, runner)
        archive = (
            export_archive(entry, config.export_archive)
            if config.export_archive is not None
            else None
        )
        selection = select_headers(entry.headers_dir, features)
        binding = generate(selection)
        output = write_output(config.output_dir, binding, selection, entry)
    except PipelineError as err:
        err.features = features
        err.descriptor = descriptor
        raise
    return PipelineResult(
        features=features,
        descriptor=descriptor,
        entry=entry,
        binding=binding,
        output=output,
        archive=archive,
    )


# ===--- Reporting ---=== #


def format_feature_list(features: FeatureSet) -> str:
    return ", ".join(sorted(features.flags)) or "none"


def format_key(descriptor: ArtifactDescriptor, binaries_url: str) -> str:
    return f"{descriptor.key}\n{artifact_url(binaries_url, descriptor)}\n"


def format_pipeline_summary(result: PipelineResult) -> str:
    """Render a completed run; exactly one trailing newline."""
    descriptor = result.descriptor
    counts = result.binding.counts
    output = result.output

    lines: list[str] = []
    lines.append(f"Skia {descriptor.skia_version} bindings generated:")
    lines.append("")
    lines.append(f"  Target:     {descriptor.target}")
    lines.append(f"  Features:   {format_feature_list(descriptor.features)}")
    lines.append(f"  Artifact:   {descriptor.key} ({result.entry.origin})")
    lines.append(f"  Revision:   {descriptor.revision_segment}")
    lines.append(f"  Output:     {output.output_dir}")
    lines.append("")
    lines.append("  Declarations generated:")
    rows = (
        ("Enums:", counts.enums),
        ("Records:", counts.records),
        ("Layouts:", counts.layouts),
        ("Aliases:", counts.aliases),
        ("Constants:", counts.constants),
        ("Functions:", counts.functions),
    )
    for label, count in rows:
        lines.append(f"    {label:<11}{count:>6}")

    lines.append("")
    lines.append("  Files written:")
    for written in output.files:
        lines.append(f"    {written.filename:<28} {written.line_count:>6,} lines")
    lines.append(f"    {'headers/':<28} {output.header_count:>6,} files")
    for asset in output.assets.files if output.assets else ():
        lines.append(f"    {asset.path.as_posix():<28} {asset.size:>6,} bytes")
    if result.archive is not None:
        lines.append("")
        lines.append(f"  Archive:    {result.archive}")
    lines.append("")
    return "\n".join(lines)


def print_pipeline_summary(result: PipelineResult) -> None:
    print(format_pipeline_summary(result), end="")


def format_pipeline_error(err: PipelineError) -> str:
    lines = [f"{err.stage} error [{err.code}]: {err.message}"]
    if err.features is not None:
        lines.append(
            f"  Features:   {format_feature_list(err.features)} ({err.features.platform})"
        )
    if err.descriptor is not None:
        lines.append(f"  Descriptor: {err.descriptor.key} ({archive_name(err.descriptor)})")
    if isinstance(err, BuildError):
        if err.exit_code is not None:
            lines.append(f"  Exit code:  {err.exit_code}")
        if err.output:
            lines.append("  Output tail:")
            lines.extend(f"    {line}" for line in err.output.splitlines())
    if err.suggestion:
        lines.append(f"Hint: {err.suggestion}")
    lines.append("")
    return "\n".join(lines)


# ===--- Discovery ---=== #


def format_features_table(graph: ConfigurationGraph, platform_name: str) -> str:
    """Return the --list-features output.

    Output format:

        16 Skia feature flags (linux target):

          gl           yes  OpenGL backend            implies: gpu
          metal        no   Metal backend             implies: gpu
          ...

          Presets:
            default      binary-cache, embed-freetype, ...
    """
    public = sorted(name for name, flag in graph.flags.items() if not flag.internal)
    lines = [f"{len(public)} Skia feature flags ({platform_name} target):", ""]
    name_width = max((len(n) for n in public), default=0)
    desc_width = max((len(graph.flags[n].description) for n in public), default=0)
    for name in public:
        flag = graph.flags[name]
        available = "yes" if flag.valid_on(platform_name) else "no"
        implied = sorted(close_implications({name}, graph) - {name})
        row = f"  {name.ljust(name_width)}  {available:<3}  {flag.description.ljust(desc_width)}"
        if implied:
            row += f"  implies: {', '.join(implied)}"
        lines.append(row.rstrip())

    lines.append("")
    lines.append("  Presets:")
    preset_width = max((len(p) for p in graph.presets), default=0)
    for preset in sorted(graph.presets):
        members = ", ".join(sorted(graph.presets[preset]))
        lines.append(f"    {preset.ljust(preset_width)}  {members}")
    lines.append("")
    return "\n".join(lines)


def format_flag_detail(explanation: FlagExplanation, platform_name: str) -> str:
    flag = explanation.flag

    def listing(values: Iterable[str]) -> str:
        return ", ".join(values) or "-"

    platforms = listing(sorted(flag.platforms)) if flag.platforms is not None else "all"
    lines = [
        f"{flag.name}: {flag.description}",
        "",
        f"  Internal:     {'yes' if flag.internal else 'no'}",
        f"  Platforms:    {platforms}",
        f"  Available:    {'yes' if flag.valid_on(platform_name) else 'no'} ({platform_name})",
        f"  Implies:      {listing(explanation.closure)}",
        f"  Implied by:   {listing(explanation.implied_by)}",
        f"  Conflicts:    {listing(sorted(flag.conflicts))}",
        f"  Presets:      {listing(explanation.presets)}",
        f"  Bindings:     {flag.bindings_feature or '-'}",
        f"  Artifact:     {'yes' if flag.affects_artifact else 'no'}",
        "",
    ]
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig, graph: ConfigurationGraph = SKIA_GRAPH) -> None:
    """Print the discovery output selected by config.command.

    Raises:
        ConfigError: UNKNOWN_FLAG for --explain with an undeclared flag.
    """
    platform_name = target_os(config.target)
    if config.command == "list-features":
        print(format_features_table(graph, platform_name), end="")
    elif config.command == "explain":
        print(format_flag_detail(explain_flag(config.flag, graph), platform_name), end="")


# ===--- Main ---=== #


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(format_pipeline_error(err), end="")
        raise SystemExit(1) from err

    configure_logging(config.verbose)
    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        result = run_pipeline(config)
        if not config.print_key:
            print_pipeline_summary(result)
    except PipelineError as err:
        print(format_pipeline_error(err), end="")
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err
    except KeyboardInterrupt as err:
        print("Interrupted")
        raise SystemExit(130) from err


if __name__ == "__main__":
    main()
