import ctypes
from pathlib import Path

import pytest

import skia_build
from conftest import SKIA_FIXTURE


def _generate(*names: str, platform: str = "linux") -> skia_build.GeneratedBinding:
    features = skia_build.resolve(names, platform)
    return skia_build.generate(skia_build.select_headers(SKIA_FIXTURE, features))


def _load_source(source: str) -> dict:
    namespace: dict = {}
    exec(compile(source, "skia_bindings.py", "exec"), namespace)
    return namespace


def _functions(namespace: dict) -> dict[str, tuple]:
    return {name: (restype, argtypes) for name, restype, argtypes in namespace["FUNCTIONS"]}


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("SrcOver", "src_over"),
        ("Direct3D", "direct_3d"),
        ("OpenGL", "open_gl"),
        ("RGBA8888", "rgba8888"),
        ("UseDeviceIndependentFonts", "use_device_independent_fonts"),
    ],
)
def test_to_snake_case(name: str, expected: str) -> None:
    assert skia_build.to_snake_case(name) == expected


@pytest.mark.parametrize(
    ("enum_name", "raw", "expected"),
    [
        ("SkColorType", "kRGBA_8888_SkColorType", "RGBA_8888"),
        ("SkBlendMode", "kSrcOver", "SRC_OVER"),
        ("GrBackendApi", "kOpenGL", "OPEN_GL"),
        ("GrBackendApi", "kDirect3D", "DIRECT_3D"),
        ("Flags", "kDynamicMSAA_Flag", "DYNAMIC_MSAA_FLAG"),
        ("Dimension", "k2D", "_2D"),
        ("TextDirection", "kRTL", "RTL"),
    ],
)
def test_normalize_variant(enum_name: str, raw: str, expected: str) -> None:
    assert skia_build.normalize_variant(enum_name, raw) == expected


def test_enum_members_merge_equal_aliases_and_reject_clashes() -> None:
    aliases = skia_build.EnumDecl(
        "SkE", "SkE", skia_build.TypeRef("int"), (("kFoo", 1), ("kFOO", 1)), "a.h", 3
    )
    clash = skia_build.EnumDecl(
        "SkE", "SkE", skia_build.TypeRef("int"), (("kFoo", 1), ("kFOO", 2)), "a.h", 3
    )

    assert skia_build.enum_members(aliases) == [("FOO", 1)]
    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.enum_members(clash)
    assert exc_info.value.code == "NAME_COLLISION"


def test_default_binding_executes_with_expected_layouts() -> None:
    binding = _generate("default")

    namespace = _load_source(binding.source)

    assert namespace["SkColorType"].N32 == 4
    assert namespace["SkColorType"].RGBA_8888 == 4
    assert namespace["SkBlendMode"].SRC_OVER == 3
    assert namespace["SkCanvas_kMaxFiltersPerLayer"] == 16
    assert ctypes.sizeof(namespace["SkRect"]) == 16
    assert ctypes.sizeof(namespace["C_SurfaceInfo"]) == 32
    assert [name for name, _ in namespace["SkPoint"]._fields_] == ["fX", "fY"]
    assert not hasattr(namespace["SkCanvas"], "_fields_")


def test_default_binding_function_prototypes() -> None:
    namespace = _load_source(_generate("default").source)

    functions = _functions(namespace)

    assert len(functions) == 14
    assert functions["C_SkSurface_unref"] == (None, (ctypes.POINTER(namespace["SkSurface"]),))
    assert functions["C_SkPoint_Make"] == (
        namespace["SkPoint"],
        (ctypes.c_float, ctypes.c_float),
    )
    assert functions["C_SkBlendMode_Name"][0] is ctypes.c_char_p
    assert functions["C_SkColorType_N32"] == (ctypes.c_int, ())
    restype, argtypes = functions["C_SkSurface_info"]
    assert restype is ctypes.c_bool
    assert argtypes[1] == ctypes.POINTER(namespace["C_SurfaceInfo"])


def test_windows_headers_see_windows_defines() -> None:
    namespace = _load_source(_generate("default", platform="windows").source)

    assert namespace["SkColorType"].N32 == 6


def test_generation_is_deterministic() -> None:
    first = _generate("default", "gl")
    second = _generate("gl", "default")

    assert first.source == second.source
    assert first.counts == second.counts


def test_embedded_records_are_laid_out_first() -> None:
    source = _generate("default").source

    assert source.index("SkRect._fields_ = [") < source.index("C_SurfaceInfo._fields_ = [")


def test_binding_header_describes_the_selection() -> None:
    binding = _generate("default")

    lines = binding.source.splitlines()

    assert lines[0] == lines[6] == "# x-------------------------------------------x #"
    assert lines[3] == "# | Platform: linux"
    assert lines[4] == "# | Features: binary-cache, embed-icudtl"
    assert lines[5] == f"# | Headers: {len(binding.headers)}"


def test_backend_headers_follow_features() -> None:
    raster = _generate("default")
    gl = _generate("default", "gl")

    assert "GrGLTextureInfo" not in raster.source
    assert "include/gpu/gl/GrGLTypes.h" in gl.headers
    namespace = _load_source(gl.source)
    functions = _functions(namespace)
    assert "C_GrDirectContext_MakeGL" in functions
    assert "C_GrDirectContext_flushAndSubmit" in functions
    assert ctypes.sizeof(namespace["GrGLTextureInfo"]) == 12
    assert namespace["GrBackendApi"].OPEN_GL == 0
    assert gl.counts.functions == raster.counts.functions + 5


def _selection(tmp_path: Path) -> skia_build.HeaderSelection:
    return skia_build.HeaderSelection(
        root=tmp_path, headers=("api.h",), features=skia_build.resolve([], "linux")
    )


def test_by_value_opaque_return_is_rejected(tmp_path: Path) -> None:
    decls = skia_build.DeclarationSet()
    decls.add_record(skia_build.RecordDecl("SkPaint", None, "api.h", 1))
    decls.add_function(
        skia_build.FunctionDecl("C_SkPaint_Copy", skia_build.TypeRef("SkPaint"), (), "api.h", 4)
    )

    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.emit_binding(decls, _selection(tmp_path))

    assert exc_info.value.code == "PARSE_FAILURE"
    assert exc_info.value.message.startswith("api.h:4: ")


def test_unknown_types_are_bound_through_pointers_only(tmp_path: Path) -> None:
    decls = skia_build.DeclarationSet()
    decls.add_function(
        skia_build.FunctionDecl(
            "C_Use",
            skia_build.TypeRef("void"),
            (skia_build.ParamDecl("thing", skia_build.TypeRef("SkMystery", 1)),),
            "api.h",
            2,
        )
    )

    binding = skia_build.emit_binding(decls, _selection(tmp_path))

    assert '    ("C_Use", None, (ctypes.c_void_p,)),' in binding.source.splitlines()

    decls.functions["C_Use"] = skia_build.FunctionDecl(
        "C_Use",
        skia_build.TypeRef("void"),
        (skia_build.ParamDecl("thing", skia_build.TypeRef("SkMystery")),),
        "api.h",
        2,
    )
    with pytest.raises(skia_build.GenError):
        skia_build.emit_binding(decls, _selection(tmp_path))


def test_reserved_module_names_are_collisions(tmp_path: Path) -> None:
    decls = skia_build.DeclarationSet()
    decls.add_record(skia_build.RecordDecl("load", None, "api.h", 7))

    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.emit_binding(decls, _selection(tmp_path))

    assert exc_info.value.code == "NAME_COLLISION"


def test_record_with_unresolvable_field_is_demoted(tmp_path: Path) -> None:
    decls = skia_build.DeclarationSet()
    field = skia_build.FieldDecl("fImpl", skia_build.TypeRef("SkOpaqueImpl"), None, 3)
    decls.add_record(skia_build.RecordDecl("SkHolder", (field,), "api.h", 2))

    binding = skia_build.emit_binding(decls, _selection(tmp_path))

    assert "SkHolder._fields_" not in binding.source
    assert binding.counts.records == 1
    assert binding.counts.layouts == 0
