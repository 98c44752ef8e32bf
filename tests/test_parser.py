from pathlib import Path

import pytest

import skia_build
from conftest import SKIA_FIXTURE

PATH = "include/core/SkTest.h"
CPP = {"__cplusplus": "201703L"}


def _parse(text: str, decls: skia_build.DeclarationSet | None = None) -> skia_build.DeclarationSet:
    decls = decls if decls is not None else skia_build.DeclarationSet()
    skia_build.parse_header(text, PATH, CPP, decls)
    return decls


def _field_names(decls: skia_build.DeclarationSet, record: str) -> list[str]:
    fields = decls.records[record].fields
    assert fields is not None, f"{record} has no layout"
    return [f.name for f in fields]


def _parse_failure(text: str) -> skia_build.GenError:
    with pytest.raises(skia_build.GenError) as exc_info:
        _parse(text)
    assert exc_info.value.code == "PARSE_FAILURE"
    return exc_info.value


def test_enums_with_implicit_and_explicit_values() -> None:
    decls = _parse(
        "enum SkAlphaType : int {\n"
        "    kUnknown_SkAlphaType,\n"
        "    kOpaque_SkAlphaType,\n"
        "    kLastEnum_SkAlphaType = kOpaque_SkAlphaType,\n"
        "};\n"
        "enum class SkBlendMode {\n"
        "    kClear,\n"
        "    kSrc = 4,\n"
        "    kDst,\n"
        "};\n"
    )

    alpha = decls.enums["SkAlphaType"]
    assert alpha.variants == (
        ("kUnknown_SkAlphaType", 0),
        ("kOpaque_SkAlphaType", 1),
        ("kLastEnum_SkAlphaType", 1),
    )
    assert alpha.underlying == skia_build.TypeRef("int")
    assert decls.enums["SkBlendMode"].variants == (("kClear", 0), ("kSrc", 4), ("kDst", 5))
    assert decls.enumerators["kOpaque_SkAlphaType"] == 1
    assert decls.enumerators["SkBlendMode_kDst"] == 5
    assert "kDst" not in decls.enumerators


def test_enumerators_may_reference_other_enums() -> None:
    decls = _parse(
        "enum SkBase { kBase = 3 };\n"
        "enum class SkScoped { kX = 1 << 2 };\n"
        "enum SkDerived { kNext = kBase + 1, kFlag = SkScoped::kX | kNext };\n"
    )

    assert decls.enums["SkDerived"].variants == (("kNext", 4), ("kFlag", 4))


def test_unknown_enumerator_reference_fails() -> None:
    err = _parse_failure("enum SkBroken {\n    kA = kMissing,\n};\n")

    assert "kMissing" in err.message
    assert err.line == 2


def test_nested_declarations_are_flattened() -> None:
    decls = _parse(
        "class SK_API SkCanvas {\n"
        "public:\n"
        "    enum SrcRectConstraint { kStrict_SrcRectConstraint, kFast_SrcRectConstraint };\n"
        "    enum { kMaxFiltersPerLayer = 16 };\n"
        "    struct SaveLayerRec {\n"
        "        const SkRect* fBounds = nullptr;\n"
        "        int fFlags = 0;\n"
        "    };\n"
        "    virtual ~SkCanvas();\n"
        "    void clear(SkColor color) { this->drawColor(color); }\n"
        "private:\n"
        "    int fSaveCount;\n"
        "};\n"
    )

    assert decls.records["SkCanvas"].fields is None
    assert _field_names(decls, "SkCanvas_SaveLayerRec") == ["fBounds", "fFlags"]
    bounds = decls.records["SkCanvas_SaveLayerRec"].fields[0]
    assert bounds.type.name == "SkRect"
    assert bounds.type.pointers == 1
    enum = decls.enums["SkCanvas_SrcRectConstraint"]
    assert enum.short_name == "SrcRectConstraint"
    assert decls.constants["SkCanvas_kMaxFiltersPerLayer"].value == 16


def test_struct_layout_skips_methods_operators_and_templates() -> None:
    decls = _parse(
        "struct SkIRect {\n"
        "    int32_t fLeft = 0, fTop = 0;\n"
        "    uint8_t fPad[2 * 2];\n"
        "    static constexpr SkIRect MakeEmpty() { return SkIRect{0, 0}; }\n"
        "    bool operator==(const SkIRect& other) const = default;\n"
        "    template <typename T> T* as() const { return nullptr; }\n"
        "    SkIRect() = default;\n"
        "};\n"
    )

    fields = decls.records["SkIRect"].fields
    assert [(f.name, f.type.name, f.array) for f in fields] == [
        ("fLeft", "int32_t", None),
        ("fTop", "int32_t", None),
        ("fPad", "uint8_t", 4),
    ]


@pytest.mark.parametrize(
    "body",
    [
        "unsigned fBits : 3;",
        "virtual void draw();",
        "union { int fI; float fF; };",
    ],
)
def test_records_without_modelled_layout_become_opaque(body: str) -> None:
    decls = _parse(f"struct SkOpaque {{\n    int fFirst;\n    {body}\n}};\n")

    assert decls.records["SkOpaque"].fields is None


def test_base_classes_make_records_opaque() -> None:
    decls = _parse("class SkRefCnt {};\nclass SkData : public SkRefCnt {\n    int fSize;\n};\n")

    assert decls.records["SkData"].fields is None


def test_forward_declaration_is_upgraded_by_definition() -> None:
    decls = _parse("struct SkPoint;\nclass SkPaint;\nstruct SkPoint { float fX; float fY; };\n")

    assert decls.records["SkPaint"].fields is None
    assert _field_names(decls, "SkPoint") == ["fX", "fY"]


def test_aliases() -> None:
    decls = _parse(
        "typedef uint32_t SkColor;\n"
        "typedef struct VkImage_T* VkImage;\n"
        "typedef void (*SkReleaseProc)(void* addr, void* context);\n"
        "using SkScalar = float;\n"
        "typedef struct { int x; int y; } SkIPair;\n"
        "template <typename T> using SkSpan = T*;\n"
    )

    assert decls.aliases["SkColor"].target == skia_build.TypeRef("uint32_t")
    assert decls.aliases["VkImage"].target == skia_build.TypeRef("VkImage_T", 1)
    assert decls.aliases["SkReleaseProc"].target.function
    assert decls.aliases["SkScalar"].target == skia_build.TypeRef("float")
    assert _field_names(decls, "SkIPair") == ["x", "y"]
    assert "SkIPair" not in decls.aliases
    assert "SkSpan" not in decls.aliases


def test_namespaces_prefix_declarations() -> None:
    decls = _parse(
        "namespace skia {\nnamespace textlayout {\n"
        "enum class TextAlign { kLeft, kRight };\n"
        "struct TextBox { float fLeft; TextAlign fDirection; };\n"
        "}\n}\n"
    )

    assert "skia_textlayout_TextAlign" in decls.enums
    assert _field_names(decls, "skia_textlayout_TextBox") == ["fLeft", "fDirection"]
    direction = decls.records["skia_textlayout_TextBox"].fields[1]
    assert direction.type.scope == ("skia", "textlayout", "TextBox")


C_HEADER = """\
#ifdef __cplusplus
extern "C" {
#endif
SK_API SkSurface* C_SkSurface_MakeRaster(int width, int height, const SkSurfaceProps* props);
void C_SkCanvas_drawPoints(SkCanvas* canvas, size_t count, const SkPoint pts[]);
int C_Count(void);
void C_Unnamed(int, float);
void C_helper(int value) { }
static inline int C_inline(int a) { return a; }
#ifdef __cplusplus
}
#endif
void NotBound(int x);
"""


def test_only_c_linkage_prototypes_are_collected() -> None:
    decls = _parse(C_HEADER)

    assert sorted(decls.functions) == [
        "C_Count",
        "C_SkCanvas_drawPoints",
        "C_SkSurface_MakeRaster",
        "C_Unnamed",
    ]
    make = decls.functions["C_SkSurface_MakeRaster"]
    assert make.returns == skia_build.TypeRef("SkSurface", 1)
    assert [(p.name, p.type.name, p.type.pointers) for p in make.params] == [
        ("width", "int", 0),
        ("height", "int", 0),
        ("props", "SkSurfaceProps", 1),
    ]
    points = decls.functions["C_SkCanvas_drawPoints"].params
    assert points[2] == skia_build.ParamDecl("pts", skia_build.TypeRef("SkPoint", 1))
    assert decls.functions["C_Count"].params == ()
    assert [p.name for p in decls.functions["C_Unnamed"].params] == ["arg0", "arg1"]


@pytest.mark.parametrize(
    ("param", "expected"),
    [
        ("const SkScalar", ("arg0", "SkScalar", 0)),
        ("struct SkPoint", ("arg0", "SkPoint", 0)),
        ("const struct SkPoint*", ("arg0", "SkPoint", 1)),
        ("const unsigned int", ("arg0", "unsigned int", 0)),
        ("const SkScalar radius", ("radius", "SkScalar", 0)),
        ("struct SkPoint pt", ("pt", "SkPoint", 0)),
    ],
)
def test_qualified_parameters_with_and_without_names(
    param: str, expected: tuple[str, str, int]
) -> None:
    decls = _parse(
        "typedef float SkScalar;\n"
        "struct SkPoint { float fX; float fY; };\n"
        f'extern "C" void C_take({param});\n'
    )

    (only,) = decls.functions["C_take"].params
    assert (only.name, only.type.name, only.type.pointers) == expected


def test_variadic_c_function_fails() -> None:
    err = _parse_failure('extern "C" void C_log(const char* fmt, ...);\n')

    assert "variadic" in err.message


@pytest.mark.parametrize(
    ("text", "fragment"),
    [
        ("struct SkOpen {\n    int fA;\n", "never closed"),
        ("int a;\n};\n", "unexpected '}'"),
        ("enum SkE { kA,\n", "never closed"),
    ],
)
def test_unbalanced_braces_fail(text: str, fragment: str) -> None:
    err = _parse_failure(text)

    assert fragment in err.message


def test_conflicting_enum_redeclaration_is_a_collision() -> None:
    decls = _parse("enum SkE { kA };\n")

    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.parse_header("enum SkE { kB };\n", "include/other.h", CPP, decls)

    assert exc_info.value.code == "NAME_COLLISION"
    assert PATH in exc_info.value.message


def test_identical_redeclaration_is_accepted() -> None:
    decls = _parse('extern "C" int C_f(int a);\n')

    skia_build.parse_header('extern "C" int C_f(int b);\n', "include/other.h", CPP, decls)

    assert list(decls.functions) == ["C_f"]


def test_conflicting_function_signature_is_a_collision() -> None:
    decls = _parse('extern "C" int C_f(int a);\n')

    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.parse_header('extern "C" void C_f(int a);\n', "include/other.h", CPP, decls)

    assert exc_info.value.code == "NAME_COLLISION"


def test_fixture_headers_for_default_features() -> None:
    features = skia_build.resolve(["default"], "linux")
    selection = skia_build.select_headers(SKIA_FIXTURE, features)

    decls = skia_build.parse_selection(selection)

    assert len(decls.functions) == 14
    assert sorted(decls.enums) == [
        "SkAlphaType",
        "SkBlendMode",
        "SkCanvas_PointMode",
        "SkCanvas_SrcRectConstraint",
        "SkColorType",
        "SkPixelGeometry",
        "SkPngEncoder_FilterFlag",
        "SkSurfaceProps_Flags",
        "SkSurface_BackendHandleAccess",
        "SkSurface_ContentChangeMode",
    ]
    assert decls.records["SkCanvas"].fields is None
    assert decls.records["SkSurface"].fields is None
    assert _field_names(decls, "SkRect") == ["fLeft", "fTop", "fRight", "fBottom"]


def test_header_that_is_not_utf8_fails_with_its_location(tmp_path: Path) -> None:
    rel = "include/core/SkLatin1.h"
    (tmp_path / "include" / "core").mkdir(parents=True)
    (tmp_path / rel).write_bytes(b"#pragma once\n// caf\xe9 \xff\xfe\nstruct SkA { int fA; };\n")
    selection = skia_build.HeaderSelection(
        root=tmp_path, headers=(rel,), features=skia_build.resolve(["default"], "linux")
    )

    with pytest.raises(skia_build.GenError) as exc_info:
        skia_build.parse_selection(selection)

    err = exc_info.value
    assert err.code == "PARSE_FAILURE"
    assert (err.path, err.line) == (rel, 2)
    assert err.message.startswith(f"{rel}:2: header is not valid UTF-8")
