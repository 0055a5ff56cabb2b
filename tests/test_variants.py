import json

import pytest
from PIL import Image, features

from gallerybuild import variants
from gallerybuild.config import DEFAULTS
from gallerybuild.errors import TranscodeError
from gallerybuild.manifest import build_manifest, verify_table
from gallerybuild.variants import collect_sources, generate_variants

QUALITY = dict(DEFAULTS["quality"])

needs_avif = pytest.mark.skipif(not features.check("avif"), reason="Pillow built without AVIF support")


def run(asset_root, **kw):
    opts = dict(widths=[320, 640, 1600], formats=["webp", "jpg"], quality=QUALITY,
                threshold_kib=0, threads=2)
    opts.update(kw)
    return generate_variants(asset_root, **opts)


def names(paths):
    return sorted(p.name for p in paths)


def test_generates_ladder_base_default_and_sidecar(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "sunset.jpg", size=(1000, 500))

    report = run(gallery)

    assert report.ok
    assert names(report.written) == [
        "sunset-320w.jpg", "sunset-320w.webp", "sunset-640w.jpg", "sunset-640w.webp",
        "sunset.meta.json", "sunset.webp",
    ]
    # 1600 is wider than the source, never upscaled
    assert not (gallery / "sunset-1600w.webp").exists()
    with Image.open(gallery / "sunset-640w.webp") as im:
        assert im.size == (640, 320)
    with Image.open(gallery / "sunset.webp") as im:
        assert im.size == (640, 320)
    assert any(s.startswith("DONE  sunset.jpg") for s in report.statuses)


def test_sidecar_contents(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "wide.png", size=(800, 400))
    run(gallery)

    meta = json.loads((gallery / "wide.meta.json").read_text())
    assert meta["aspectRatio"] == 2.0
    assert meta["placeholder"].startswith("data:image/webp;base64,")


def test_second_run_writes_nothing(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "sunset.jpg", size=(700, 400))
    first = run(gallery)
    mtimes = {p: p.stat().st_mtime_ns for p in first.written}

    second = run(gallery)

    assert second.written == []
    assert second.ok
    assert any("up to date" in s for s in second.statuses)
    assert {p: p.stat().st_mtime_ns for p in first.written} == mtimes


def test_overwrite_regenerates(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "sunset.jpg", size=(700, 400))
    first = run(gallery)
    again = run(gallery, overwrite=True)
    assert names(again.written) == names(first.written)


def test_dry_run_writes_nothing(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "sunset.jpg", size=(700, 400))

    report = run(gallery, dry_run=True)

    assert report.written == []
    assert sorted(p.name for p in gallery.iterdir()) == ["sunset.jpg"]
    assert any(s.startswith("DRY   sunset.jpg") for s in report.statuses)


def test_source_narrower_than_ladder(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "tiny.jpg", size=(200, 100))

    report = run(gallery)

    assert names(report.written) == ["tiny.meta.json", "tiny.webp"]
    with Image.open(gallery / "tiny.webp") as im:
        assert im.size == (200, 100)


def test_webp_source_is_its_own_base_default(project, make_image):
    gallery = project / "public" / "gallery"
    src = make_image(gallery / "pic.webp", size=(400, 300))
    before = src.read_bytes()

    report = run(gallery)

    assert names(report.written) == ["pic-320w.jpg", "pic-320w.webp", "pic.meta.json"]
    assert src.read_bytes() == before


def test_threshold_and_source_filters(project, make_image):
    gallery = project / "public" / "gallery"
    make_image(gallery / "big.jpg", size=(200, 200), noise=True, quality=95)
    make_image(gallery / "small.png", size=(4, 4))
    make_image(gallery / "big-320w.jpg", size=(200, 200), noise=True, quality=95)
    make_image(gallery / "Originals" / "backup.jpg", size=(200, 200), noise=True, quality=95)
    make_image(gallery / "dup.jpg", size=(200, 200), noise=True, quality=95)
    make_image(gallery / "dup.png", size=(200, 200), noise=True)

    sources, statuses = collect_sources(gallery, threshold_kib=1)

    assert names(sources) == ["big.jpg", "dup.jpg"]
    assert any("below threshold: small.png" in s for s in statuses)
    assert any(s.startswith("SKIP  dup.png") for s in statuses)


@pytest.mark.parametrize("source_name", ["photo.jpeg", "photo.png"])
def test_base_default_never_replaces_its_source(project, make_image, source_name):
    gallery = project / "public" / "gallery"
    src = make_image(gallery / source_name, size=(1000, 500))

    first = run(gallery, preferred_format="jpg")
    assert (gallery / "photo.jpg").exists()
    assert first.sources == [src]

    sources, statuses = collect_sources(gallery, 0, "jpg")
    assert sources == [src]
    assert f"SKIP  photo.jpg: group already fed by {source_name}" in statuses

    second = run(gallery, preferred_format="jpg", overwrite=True)
    assert second.sources == [src]
    assert second.errors == []
    with Image.open(gallery / "photo.jpg") as im:
        assert im.size == (640, 320)


def test_corrupt_source_does_not_stop_the_batch(project, make_image, touch):
    gallery = project / "public" / "gallery"
    touch(gallery / "broken.jpg", b"this is not a jpeg")
    make_image(gallery / "good.jpg", size=(400, 300))

    report = run(gallery)

    assert len(report.errors) == 1
    assert "broken.jpg" in report.errors[0]
    assert any(s.startswith("ERR   broken.jpg") for s in report.statuses)
    assert (gallery / "good-320w.webp").exists()


def test_failed_encode_keeps_siblings(project, make_image, monkeypatch):
    gallery = project / "public" / "gallery"
    make_image(gallery / "sunset.jpg", size=(700, 400))
    real_encode = variants.encode_with_pillow

    def flaky(im, dst, width, fmt, quality):
        if fmt == "jpg":
            raise TranscodeError(dst, "encoder crashed")
        return real_encode(im, dst, width, fmt, quality)

    monkeypatch.setattr(variants, "encode_with_pillow", flaky)
    report = run(gallery)

    assert len(report.errors) == 2
    assert (gallery / "sunset-320w.webp").exists()
    assert (gallery / "sunset-640w.webp").exists()
    assert not (gallery / "sunset-320w.jpg").exists()
    assert (gallery / "sunset.meta.json").exists()
    assert not report.ok


def _end_to_end(project, make_image, formats, expected_count):
    gallery = project / "public" / "gallery"
    src = make_image(gallery / "sunset.jpg", size=(2000, 1333), noise=True, quality=90)
    assert src.stat().st_size >= 200 * 1024

    report = run(gallery, widths=[320, 640, 1024, 1920], formats=formats, threshold_kib=200)

    ladder = [p for p in report.written if p.name.startswith("sunset-")]
    assert len(ladder) == expected_count
    assert (gallery / "sunset.webp").exists()
    assert (gallery / "sunset.meta.json").exists()

    table, entries, backup = build_manifest(project / "public", project / "src" / "manifest.json")
    assert backup is None
    assert table["/gallery/sunset"] == "/gallery/sunset-320w.webp"
    for p in ladder:
        url = f"/gallery/{p.name}"
        assert table[url] == url
    assert verify_table(table, project / "public") == []


def test_end_to_end_webp_jpg(project, make_image):
    _end_to_end(project, make_image, ["webp", "jpg"], 8)


@needs_avif
def test_end_to_end_all_formats(project, make_image):
    _end_to_end(project, make_image, ["avif", "webp", "jpg"], 12)
