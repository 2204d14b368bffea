from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from conftest import make_source
from imageforge_cli.errors import ManifestWriteError
from imageforge_cli.manifest import ManifestBuilder, ProducedOutput, build_entry, write_manifest
from imageforge_cli.plan import plan_image
from imageforge_cli.schema import ManifestEntry, ManifestOutput, ManifestVariant, ProcessOptions

ROOT = Path("/input")


def produced_for(plan, sizes: dict[int, int] | None = None) -> list[ProducedOutput]:
    sizes = sizes or {}
    return [
        ProducedOutput(o.format, o.width, o.height, o.path, sizes.get(o.width, o.width * 10))
        for o in plan.all_outputs()
    ]


class TestBuildEntry:
    def test_outputs_point_at_largest_variant(self) -> None:
        plan = plan_image(
            make_source(width=1000, height=500),
            ProcessOptions(formats=("webp", "avif"), widths=(640, 320)),
            ROOT,
            ROOT,
        )
        # produced out of order on purpose
        entry = build_entry(plan, list(reversed(produced_for(plan))), "data:x")
        for fmt in ("webp", "avif"):
            variants = entry.variants[fmt]
            assert [v.width for v in variants] == [320, 640]
            assert entry.outputs[fmt].path == max(variants, key=lambda v: v.width).path
        assert entry.outputs["webp"].path == "photo.w640.webp"
        assert entry.blur_data_url == "data:x"
        assert entry.hash == plan.fingerprint

    def test_non_responsive_entry_has_no_variants(self) -> None:
        plan = plan_image(make_source(), ProcessOptions(formats=("webp",)), ROOT, ROOT)
        entry = build_entry(plan, produced_for(plan))
        assert entry.variants is None
        assert entry.outputs["webp"] == ManifestOutput(path="photo.webp", size=4000)
        assert entry.aspect_ratio == 1.333
        assert entry.original_size == 1000

    def test_missing_format_output_fails(self) -> None:
        plan = plan_image(make_source(), ProcessOptions(formats=("webp", "avif")), ROOT, ROOT)
        only_webp = [p for p in produced_for(plan) if p.format == "webp"]
        with pytest.raises(ValueError, match="no avif output"):
            build_entry(plan, only_webp)


class TestManifestEntryModel:
    def test_primary_must_match_largest_variant(self) -> None:
        with pytest.raises(ValidationError):
            ManifestEntry(
                width=10,
                height=10,
                aspect_ratio=1.0,
                original_size=1,
                outputs={"webp": ManifestOutput(path="a.w5.webp", size=1)},
                variants={
                    "webp": [
                        ManifestVariant(width=5, height=5, path="a.w5.webp", size=1),
                        ManifestVariant(width=10, height=10, path="a.w10.webp", size=1),
                    ]
                },
                hash="h",
            )

    def test_variants_must_ascend(self) -> None:
        with pytest.raises(ValidationError):
            ManifestEntry(
                width=10,
                height=10,
                aspect_ratio=1.0,
                original_size=1,
                outputs={"webp": ManifestOutput(path="a.w5.webp", size=1)},
                variants={
                    "webp": [
                        ManifestVariant(width=10, height=10, path="a.w10.webp", size=1),
                        ManifestVariant(width=5, height=5, path="a.w5.webp", size=1),
                    ]
                },
                hash="h",
            )


class TestManifestBuilder:
    def test_images_sorted_and_errors_omitted_when_empty(self, tmp_path: Path) -> None:
        builder = ManifestBuilder()
        for rel in ("b.jpg", "a.jpg"):
            plan = plan_image(make_source(rel), ProcessOptions(formats=("webp",)), ROOT, ROOT)
            builder.add(rel, build_entry(plan, produced_for(plan)))
        manifest = builder.build(generated="2024-01-01T00:00:00Z")

        out = write_manifest(manifest, tmp_path / "imageforge.json")
        data = json.loads(out.read_text(encoding="utf-8"))
        assert list(data["images"]) == ["a.jpg", "b.jpg"]
        assert data["version"] == "1.0"
        assert "errors" not in data
        assert "variants" not in data["images"]["a.jpg"]
        assert set(data["images"]["a.jpg"]) == {
            "width",
            "height",
            "aspectRatio",
            "blurDataURL",
            "originalSize",
            "outputs",
            "hash",
        }

    def test_errors_are_recorded_per_source(self) -> None:
        builder = ManifestBuilder()
        builder.add_error("z.jpg", "broken")
        builder.add_error("z.jpg", "still broken")
        manifest = builder.build()
        assert manifest.to_dict()["errors"] == {"z.jpg": ["broken", "still broken"]}


class TestWriteManifest:
    def test_unwritable_location_raises_and_leaves_no_temp_file(self, tmp_path: Path) -> None:
        target = tmp_path / "imageforge.json"
        target.mkdir()
        with pytest.raises(ManifestWriteError, match="Failed to write manifest"):
            write_manifest(ManifestBuilder().build(), target)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["imageforge.json"]

    def test_parent_that_is_a_file_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file.txt"
        blocker.write_text("x", encoding="utf-8")
        with pytest.raises(ManifestWriteError) as excinfo:
            write_manifest(ManifestBuilder().build(), blocker / "imageforge.json")
        assert excinfo.value.code == "MANIFEST_WRITE_FAILED"
