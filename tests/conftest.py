import argparse
import io
import shutil
import subprocess
import sys
import tarfile
import urllib.error
from collections.abc import Callable
from pathlib import Path

import pytest

import skia_build

TOOL_DIR = Path(__file__).resolve().parent.parent
if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

FIXTURES = Path(__file__).resolve().parent / "fixtures"
SKIA_FIXTURE = FIXTURES / "skia"
LINUX_TARGET = "x86_64-unknown-linux-gnu"
WINDOWS_TARGET = "x86_64-pc-windows-msvc"
MACOS_TARGET = "aarch64-apple-darwin"
CHECKOUT_SHA = "0123456789abcdef0123456789abcdef01234567"


class FakeTransport:
    """Serves canned bodies by URL; unknown URLs answer HTTP 404."""

    def __init__(self, responses: dict[str, object] | None = None):
        self.responses = dict(responses or {})
        self.calls: list[str] = []

    def get(self, url: str, timeout: float) -> skia_build.Response:
        self.calls.append(url)
        if url not in self.responses:
            raise urllib.error.HTTPError(url, 404, "Not Found", None, None)
        value = self.responses[url]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, skia_build.Response):
            return value
        return skia_build.Response(body=value, content_length=len(value))


class FakeToolchain:
    """Stands in for gn/ninja: collect() stages the fixture Skia tree."""

    name = "fake"

    def __init__(self, fail_with: Exception | None = None, with_icudtl: bool = True):
        self.fail_with = fail_with
        self.with_icudtl = with_icudtl
        self.calls: list[str] = []

    def fetch(self, spec: skia_build.ToolchainSpec) -> None:
        self.calls.append("fetch")

    def configure(
        self, spec: skia_build.ToolchainSpec, features: skia_build.FeatureSet
    ) -> None:
        self.calls.append("configure")

    def build(self, spec: skia_build.ToolchainSpec) -> None:
        self.calls.append("build")
        if self.fail_with is not None:
            raise self.fail_with

    def collect(
        self,
        spec: skia_build.ToolchainSpec,
        features: skia_build.FeatureSet,
        staging: Path,
    ) -> None:
        self.calls.append("collect")
        lib_dir = staging / "lib"
        lib_dir.mkdir(parents=True)
        (lib_dir / "libskia.a").write_bytes(b"!<arch>\n" + spec.target.encode())
        for tree in skia_build.HEADER_TREES:
            shutil.copytree(SKIA_FIXTURE / tree, staging / "headers" / tree)
        if self.with_icudtl and "textlayout" in features:
            (staging / "data").mkdir()
            shutil.copyfile(SKIA_FIXTURE / "data" / "icudtl.dat", staging / "data" / "icudtl.dat")


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def no_git(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess:
    return completed(128, stderr="fatal: not a git repository")


def git_at(sha: str) -> Callable[..., subprocess.CompletedProcess]:
    def _runner(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        assert argv == ["git", "rev-parse", "HEAD"]
        return completed(0, stdout=sha + "\n")

    return _runner


def make_tar_gz(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def checksum_sidecar(data: bytes, name: str) -> bytes:
    return f"{skia_build.sha256_bytes(data)} *{name}\n".encode()


@pytest.fixture
def crate_tree(tmp_path: Path) -> dict[str, Path]:
    root = tmp_path / "rust-skia"
    shutil.copytree(FIXTURES / "crates", root)
    return {
        "root": root,
        "bindings_manifest": root / "skia-bindings" / "Cargo.toml",
        "safe_manifest": root / "skia-safe" / "Cargo.toml",
        "lock_file": root / "Cargo.lock",
    }


@pytest.fixture
def make_args(
    crate_tree: dict[str, Path], tmp_path: Path
) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "features": None,
            "no_default_features": False,
            "target": LINUX_TARGET,
            "bindings_manifest": crate_tree["bindings_manifest"],
            "safe_manifest": None,
            "lock_file": None,
            "checkout_dir": None,
            "cache_dir": tmp_path / "cache",
            "output_dir": tmp_path / "out",
            "binaries_url": "https://binaries.test/releases",
            "force_build": False,
            "force_download": False,
            "no_cache": False,
            "depot_tools_revision": None,
            "revision_policy": "auto",
            "skia_source_dir": None,
            "define": None,
            "jobs": None,
            "export_archive": None,
            "verbose": False,
            "list_features": False,
            "explain": None,
            "print_key": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_config(
    make_args: Callable[..., argparse.Namespace],
) -> Callable[..., skia_build.BuildConfig]:
    def _make_config(environ: dict[str, str] | None = None, **overrides: object):
        return skia_build.validate_config(make_args(**overrides), environ or {})

    return _make_config


@pytest.fixture
def make_features() -> Callable[..., skia_build.FeatureSet]:
    def _make_features(*names: str, platform: str = "linux") -> skia_build.FeatureSet:
        return skia_build.resolve(names, platform)

    return _make_features


@pytest.fixture
def repo_state() -> skia_build.RepoState:
    return skia_build.RepoState(
        crate_version="0.61.0",
        skia_version="m112-0.60.0",
        depot_tools_revision="73a2624",
        checkout_revision=CHECKOUT_SHA[:7],
    )


@pytest.fixture
def make_descriptor(
    make_features: Callable[..., skia_build.FeatureSet],
    repo_state: skia_build.RepoState,
) -> Callable[..., skia_build.ArtifactDescriptor]:
    def _make_descriptor(
        *names: str,
        target: str = LINUX_TARGET,
        policy: str = "auto",
    ) -> skia_build.ArtifactDescriptor:
        features = make_features(*names, platform=skia_build.target_os(target))
        return skia_build.compute_key(features, repo_state, target, policy)

    return _make_descriptor


@pytest.fixture
def fixture_entry(
    tmp_path: Path, make_descriptor: Callable[..., skia_build.ArtifactDescriptor]
) -> Callable[..., skia_build.CacheEntry]:
    """Install a cache entry built by FakeToolchain for the given flags."""

    def _fixture_entry(*names: str, target: str = LINUX_TARGET) -> skia_build.CacheEntry:
        descriptor = make_descriptor(*names, target=target)
        spec = skia_build.ToolchainSpec(
            skia_version=descriptor.skia_version,
            depot_tools_revision=descriptor.depot_tools_revision,
            target=target,
            work_dir=tmp_path / "work",
            out_dir=tmp_path / "work" / "out",
        )
        return skia_build.build(descriptor, spec, FakeToolchain(), tmp_path / "cache")

    return _fixture_entry
