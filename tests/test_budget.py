import pytest

from gallerybuild.budget import (
    BUDGET_EXCEEDED,
    INVALID_IMAGE,
    MISSING_MODERN_SIBLING,
    MISSING_VARIANT,
    check_budget,
    read_changed_list,
    report_as_json,
)

WIDTHS = [320, 640]
FORMATS = ["webp", "jpg"]
BUDGETS = {(w, f): 1 for w in WIDTHS for f in FORMATS}


@pytest.fixture
def gallery(project):
    return project / "public" / "gallery"


def check(project, changed):
    return check_budget(project, changed, BUDGETS, WIDTHS, FORMATS, [project / "public" / "gallery"])


def codes(findings):
    return sorted((f.code, f.path) for f in findings)


def fill_ladder(gallery, touch, stem, widths=WIDTHS, size=100):
    for w in widths:
        for fmt in FORMATS:
            touch(gallery / f"{stem}-{w}w.{fmt}", b"x" * size)


def test_changed_source_without_variants(project, gallery, make_image):
    make_image(gallery / "photo.jpg", size=(700, 400))

    findings, checked = check(project, ["public/gallery/photo.jpg"])

    assert checked == ["public/gallery/photo.jpg"]
    assert codes(findings) == [
        (MISSING_VARIANT, "public/gallery/photo-320w.jpg"),
        (MISSING_VARIANT, "public/gallery/photo-320w.webp"),
        (MISSING_VARIANT, "public/gallery/photo-640w.jpg"),
        (MISSING_VARIANT, "public/gallery/photo-640w.webp"),
    ]


def test_only_widths_up_to_intrinsic_are_required(project, gallery, make_image, touch):
    make_image(gallery / "photo.jpg", size=(500, 300))
    fill_ladder(gallery, touch, "photo", widths=[320])

    findings, _ = check(project, ["public/gallery/photo.jpg"])

    assert findings == []


def test_budget_is_strictly_greater_than(project, gallery, make_image, touch):
    make_image(gallery / "photo.jpg", size=(700, 400))
    fill_ladder(gallery, touch, "photo")
    touch(gallery / "photo-320w.webp", b"x" * 1024)
    touch(gallery / "photo-640w.jpg", b"x" * 1025)

    findings, _ = check(project, ["./public/gallery/photo.jpg"])

    assert codes(findings) == [(BUDGET_EXCEEDED, "public/gallery/photo-640w.jpg")]
    assert "1.0 KiB" in findings[0].message


def test_legacy_variant_needs_modern_sibling(project, gallery, touch):
    touch(gallery / "photo-320w.jpg")

    findings, _ = check(project, ["public/gallery/photo-320w.jpg"])

    assert codes(findings) == [(MISSING_MODERN_SIBLING, "public/gallery/photo-320w.webp")]


def test_modern_variant_budget(project, gallery, touch):
    touch(gallery / "photo-640w.webp", b"x" * 4096)

    findings, _ = check(project, ["public/gallery/photo-640w.webp"])

    assert codes(findings) == [(BUDGET_EXCEEDED, "public/gallery/photo-640w.webp")]


def test_unreadable_source(project, gallery, touch):
    touch(gallery / "broken.png", b"not a png")

    findings, _ = check(project, ["public/gallery/broken.png"])

    assert codes(findings) == [(INVALID_IMAGE, "public/gallery/broken.png")]


def test_irrelevant_paths_are_ignored(project, gallery, make_image, touch):
    make_image(project / "src" / "assets" / "hero.jpg", size=(700, 400))
    touch(gallery / "photo.meta.json", b"{}")

    findings, checked = check(project, [
        "src/assets/hero.jpg",
        "public/gallery/photo.meta.json",
        "public/gallery/deleted.jpg",
        "README.md",
    ])

    assert findings == []
    assert checked == []


def test_originals_and_transient_files_are_ignored(project, gallery, make_image, touch):
    make_image(gallery / "Originals" / "backup.jpg", size=(700, 400))
    make_image(gallery / ".photo.1a2b3c4d.tmp.jpg", size=(700, 400))
    touch(gallery / "photo.jpg~", b"x" * 4096)

    findings, checked = check(project, [
        "public/gallery/Originals/backup.jpg",
        "public/gallery/.photo.1a2b3c4d.tmp.jpg",
        "public/gallery/photo.jpg~",
    ])

    assert findings == []
    assert checked == []


def test_base_default_is_not_treated_as_source(project, gallery, make_image, touch):
    make_image(gallery / "photo.jpg", size=(700, 400))
    touch(gallery / "photo.webp")

    findings, checked = check(project, ["public/gallery/photo.webp"])

    assert findings == []
    assert checked == ["public/gallery/photo.webp"]


def test_findings_are_collected_across_files(project, gallery, make_image, touch):
    make_image(gallery / "a.jpg", size=(400, 300))
    touch(gallery / "b-320w.jpg")

    findings, checked = check(project, ["public/gallery/a.jpg", "public/gallery/b-320w.jpg"])

    assert len(checked) == 2
    assert {f.code for f in findings} == {MISSING_VARIANT, MISSING_MODERN_SIBLING}
    report = report_as_json(findings, checked)
    assert report["ok"] is False
    assert report["findings"][0].keys() == {"code", "path", "message"}


def test_read_changed_list():
    assert read_changed_list("a.jpg\r\n\n  b c.webp \n") == ["a.jpg", "b c.webp"]
