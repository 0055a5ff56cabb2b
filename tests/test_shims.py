import os

from PIL import Image

from gallerybuild.shims import create_shims, repair_shims


def test_repair_replaces_broken_links_with_placeholders(project, touch, tmp_path):
    public = project / "public"
    images = public / "images"
    images.mkdir()
    touch(public / "gallery" / "real.png")
    os.symlink("../nowhere/a.jpg", images / "a.jpg")
    os.symlink("../nowhere/b.svg", images / "b.svg")
    os.symlink("../nowhere/c.txt", images / "c.txt")
    os.symlink("../gallery/real.png", images / "good.png")
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink("missing.jpg", outside / "untouched.jpg")
    os.symlink(outside, images / "dirlink")

    statuses, errors = repair_shims(public)

    assert errors == []
    assert len(statuses) == 3
    assert not (images / "a.jpg").is_symlink()
    with Image.open(images / "a.jpg") as im:
        assert im.size == (1, 1)
    assert (images / "b.svg").read_text().startswith("<svg")
    assert (images / "c.txt").read_bytes() == b""
    assert (images / "good.png").is_symlink()
    assert (outside / "untouched.jpg").is_symlink()


def test_repair_ensure_creates_missing_files(project):
    target = project / "public" / "images" / "portfolio" / "test-1.jpg"

    statuses, errors = repair_shims(project / "public", [target])

    assert errors == []
    assert target.is_file()
    assert statuses == [f"DONE  {target}  placeholder created"]
    assert repair_shims(project / "public", [target]) == ([], [])


def test_create_shims(project, touch):
    public = project / "public"
    touch(public / "gallery" / "hero-1920w.webp")
    touch(public / "assets" / "keep.jpg", b"real")

    statuses, errors = create_shims(public, {
        "/assets/backgrounds/hero.webp": "/gallery/hero-1920w.webp",
        "/assets/missing.jpg": "/gallery/nope.jpg",
        "/assets/keep.jpg": "/gallery/hero-1920w.webp",
        "/../escape.jpg": "/gallery/hero-1920w.webp",
    })

    link = public / "assets" / "backgrounds" / "hero.webp"
    assert link.is_symlink()
    assert os.readlink(link) == "../../gallery/hero-1920w.webp"
    assert link.resolve() == (public / "gallery" / "hero-1920w.webp").resolve()
    assert not (public / "assets" / "missing.jpg").exists()
    assert (public / "assets" / "keep.jpg").read_bytes() == b"real"
    assert errors == ["/../escape.jpg: outside public root"]
    assert sum(s.startswith("SKIP") for s in statuses) == 2


def test_create_shims_replaces_existing_link(project, touch):
    public = project / "public"
    touch(public / "gallery" / "a.webp")
    touch(public / "gallery" / "b.webp")
    create_shims(public, {"/old.webp": "/gallery/a.webp"})

    create_shims(public, {"/old.webp": "/gallery/b.webp"})

    assert os.readlink(public / "old.webp") == "gallery/b.webp"
