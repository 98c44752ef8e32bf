from collections.abc import Callable
from pathlib import Path

import pytest

import skia_build
from conftest import CHECKOUT_SHA, FakeToolchain, FakeTransport, checksum_sidecar, git_at, no_git

BUILD_STEPS = ["fetch", "configure", "build", "collect"]


def _run(
    config: skia_build.BuildConfig,
    transport: FakeTransport | None = None,
    toolchain: FakeToolchain | None = None,
    runner: Callable[..., object] = no_git,
) -> skia_build.PipelineResult:
    return skia_build.run_pipeline(
        config,
        transport=transport if transport is not None else FakeTransport(),
        toolchain=toolchain if toolchain is not None else FakeToolchain(),
        sleep=lambda _: None,
        runner=runner,
    )


def test_first_run_builds_and_second_run_reuses_the_cache(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config()
    first_transport, first_toolchain = FakeTransport(), FakeToolchain()

    first = _run(config, first_transport, first_toolchain)

    assert first.entry.origin == "build"
    assert first_toolchain.calls == BUILD_STEPS
    assert first.descriptor.revision is None
    assert first_transport.calls == [
        skia_build.artifact_url(config.binaries_url, first.descriptor) + ".sha256"
    ]
    assert (config.output_dir / "skia_bindings.py").read_text(encoding="utf-8") == (
        first.binding.source
    )

    second_transport, second_toolchain = FakeTransport(), FakeToolchain()
    second = _run(config, second_transport, second_toolchain)

    assert second.entry.origin == "local"
    assert second.descriptor == first.descriptor
    assert second_toolchain.calls == []
    assert second_transport.calls == []
    assert second.binding.source == first.binding.source


def test_without_binary_cache_only_the_local_store_is_consulted(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config(features=["gl"], no_default_features=True)
    transport = FakeTransport()

    first = _run(config, transport)
    second = _run(config, transport)

    assert "binary-cache" not in first.features
    assert transport.calls == []
    assert first.entry.origin == "build"
    assert second.entry.origin == "local"
    assert "GrGLTextureInfo" in first.binding.source


@pytest.mark.parametrize("override", [{"no_cache": True}, {"force_build": True}])
def test_cache_bypass_rebuilds_over_an_existing_entry(
    make_config: Callable[..., skia_build.BuildConfig], override: dict[str, bool]
) -> None:
    _run(make_config())
    transport, toolchain = FakeTransport(), FakeToolchain()

    result = _run(make_config(**override), transport, toolchain)

    assert toolchain.calls == BUILD_STEPS
    assert transport.calls == []
    assert result.entry.origin == "build"


def test_print_key_stops_before_any_artifact_work(
    make_config: Callable[..., skia_build.BuildConfig],
    capsys: pytest.CaptureFixture[str],
) -> None:
    config = make_config(print_key=True)
    transport, toolchain = FakeTransport(), FakeToolchain()

    result = _run(config, transport, toolchain, runner=git_at(CHECKOUT_SHA))

    assert result.entry is None
    assert result.descriptor.revision == CHECKOUT_SHA[:7]
    assert capsys.readouterr().out == skia_build.format_key(
        result.descriptor, config.binaries_url
    )
    assert toolchain.calls == []
    assert transport.calls == []
    assert not config.output_dir.exists()


def test_prebuilt_binaries_are_downloaded_into_a_fresh_cache(
    tmp_path: Path, make_config: Callable[..., skia_build.BuildConfig]
) -> None:
    served = tmp_path / "served"
    published = _run(make_config(export_archive=served), runner=git_at(CHECKOUT_SHA))
    url = skia_build.artifact_url("https://binaries.test/releases", published.descriptor)
    assert published.archive is not None
    transport = FakeTransport(
        {
            url: published.archive.read_bytes(),
            url + ".sha256": published.archive.with_name(
                published.archive.name + ".sha256"
            ).read_bytes(),
        }
    )
    toolchain = FakeToolchain()

    result = _run(
        make_config(cache_dir=tmp_path / "fresh-cache"),
        transport,
        toolchain,
        runner=git_at(CHECKOUT_SHA),
    )

    assert result.entry.origin == "download"
    assert result.entry.checksum == published.entry.checksum
    assert toolchain.calls == []
    assert result.binding.source == published.binding.source


def test_timed_out_fetch_falls_back_to_a_source_build(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config()
    descriptor = _run(make_config(print_key=True)).descriptor
    url = skia_build.artifact_url(config.binaries_url, descriptor)
    transport = FakeTransport({url + ".sha256": [TimeoutError("timed out")]})
    toolchain = FakeToolchain()
    sleeps: list[float] = []

    result = skia_build.run_pipeline(
        config, transport=transport, toolchain=toolchain, sleep=sleeps.append, runner=no_git
    )

    assert transport.calls == [url + ".sha256"] * 3
    assert sleeps == [0.5, 1.0]
    assert toolchain.calls == BUILD_STEPS
    assert result.entry.origin == "build"
    assert skia_build.lookup_local(descriptor, config.cache_dir) is not None


def _corrupt_remote(descriptor: skia_build.ArtifactDescriptor) -> FakeTransport:
    url = skia_build.artifact_url("https://binaries.test/releases", descriptor)
    return FakeTransport(
        {
            url: b"not the published archive",
            url + ".sha256": checksum_sidecar(b"published", skia_build.archive_name(descriptor)),
        }
    )


def test_integrity_failure_falls_back_to_a_source_build(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config()
    descriptor = _run(make_config(print_key=True)).descriptor
    toolchain = FakeToolchain()

    result = _run(config, _corrupt_remote(descriptor), toolchain)

    assert result.entry.origin == "build"
    assert toolchain.calls == BUILD_STEPS


def test_forced_download_surfaces_integrity_failures(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    descriptor = _run(make_config(print_key=True)).descriptor
    toolchain = FakeToolchain()

    with pytest.raises(skia_build.FetchError) as exc_info:
        _run(make_config(force_download=True), _corrupt_remote(descriptor), toolchain)

    assert exc_info.value.code == "INTEGRITY"
    assert exc_info.value.descriptor == descriptor
    assert toolchain.calls == []


def test_forced_download_without_published_binaries_is_not_available(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    toolchain = FakeToolchain()

    with pytest.raises(skia_build.FetchError) as exc_info:
        _run(make_config(force_download=True), FakeTransport(), toolchain)

    assert exc_info.value.code == "NOT_AVAILABLE"
    assert toolchain.calls == []


def test_forced_download_requires_binary_cache(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config(features=["gl"], no_default_features=True, force_download=True)

    with pytest.raises(skia_build.ConfigError) as exc_info:
        _run(config)

    assert exc_info.value.code == "CONFLICT_FLAGS"
    assert exc_info.value.features is not None


def test_build_failure_carries_features_and_descriptor(
    make_config: Callable[..., skia_build.BuildConfig],
) -> None:
    config = make_config(features=["gl"])
    failure = skia_build.BuildError(
        "NATIVE_BUILD_FAILED", "ninja failed", exit_code=1, output="error: boom"
    )

    with pytest.raises(skia_build.BuildError) as exc_info:
        _run(config, toolchain=FakeToolchain(fail_with=failure))

    err = exc_info.value
    assert "gl" in err.features
    assert err.descriptor is not None
    assert skia_build.lookup_local(err.descriptor, config.cache_dir) is None
    assert not config.output_dir.exists()


def test_reconcile_failure_has_no_descriptor(
    crate_tree: dict[str, Path], make_config: Callable[..., skia_build.BuildConfig]
) -> None:
    manifest = crate_tree["bindings_manifest"]
    text = manifest.read_text(encoding="utf-8")
    manifest.write_text(text.replace('skia = "m112-0.60.0"\n', ""), encoding="utf-8")

    with pytest.raises(skia_build.ReconcileError) as exc_info:
        _run(make_config())

    assert exc_info.value.code == "MISSING_VERSION"
    assert exc_info.value.features is not None
    assert exc_info.value.descriptor is None
