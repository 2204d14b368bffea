from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from conftest import CountingCodec
from imageforge_cli.cli import app, parse_formats
from imageforge_cli.errors import InputValidationError
from imageforge_cli.reporting import build_rerun_command, format_size, sanitize_for_terminal
from imageforge_cli.schema import ProcessOptions

runner = CliRunner()


@pytest.fixture
def project(input_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(input_dir.parent)
    return input_dir.parent


@pytest.fixture
def fake_codec():
    codec = CountingCodec()
    with patch("imageforge_cli.runner.PillowCodec", return_value=codec):
        yield codec


class TestRunCommand:
    def test_run_writes_manifest(self, project: Path, fake_codec: CountingCodec) -> None:
        result = runner.invoke(app, ["run", "images", "--formats", "webp,avif"])
        assert result.exit_code == 0, result.output
        manifest = json.loads((project / "imageforge.json").read_text(encoding="utf-8"))
        assert set(manifest["images"]["hero.jpg"]["outputs"]) == {"webp", "avif"}
        assert len(fake_codec.calls) == 4

    def test_check_after_run(self, project: Path, fake_codec: CountingCodec) -> None:
        assert runner.invoke(app, ["run", "images"]).exit_code == 0
        assert runner.invoke(app, ["run", "images", "--check"]).exit_code == 0

        stale = runner.invoke(app, ["run", "images", "--check", "--quality", "60"])
        assert stale.exit_code == 1
        assert "--quality 60" in stale.output

    def test_json_report(self, project: Path, fake_codec: CountingCodec) -> None:
        result = runner.invoke(app, ["run", "images", "--dry-run", "--json", "--widths", "320,640"])
        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert report["dry_run"] is True
        assert report["summary"]["needs_processing"] == 2
        assert report["options"]["widths"] == [320, 640]
        assert {i["status"] for i in report["images"]} == {"needs-processing"}

    def test_invalid_widths_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        result = runner.invoke(app, ["run", "images", "--widths", "320,abc"])
        assert result.exit_code == 2
        assert fake_codec.calls == []

    def test_check_with_dry_run_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        result = runner.invoke(app, ["run", "images", "--check", "--dry-run"])
        assert result.exit_code == 2

    def test_invalid_cache_mode_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        assert runner.invoke(app, ["run", "images", "--cache", "sometimes"]).exit_code == 2

    def test_quality_out_of_range_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        assert runner.invoke(app, ["run", "images", "--quality", "101"]).exit_code == 2

    def test_collision_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        (project / "images" / "hero.png").write_bytes((project / "images" / "nested" / "icon.png").read_bytes())
        result = runner.invoke(app, ["run", "images"])
        assert result.exit_code == 2
        assert fake_codec.calls == []

    def test_unwritable_manifest_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        (project / "file.txt").write_text("x", encoding="utf-8")
        result = runner.invoke(app, ["run", "images", "--output", "file.txt/imageforge.json"])
        assert result.exit_code == 2
        assert fake_codec.calls

    def test_config_file_supplies_defaults(self, project: Path, fake_codec: CountingCodec) -> None:
        (project / "imageforge.toml").write_text('formats = ["avif"]\nexclude = ["nested/**"]\n', encoding="utf-8")
        result = runner.invoke(app, ["run", "images", "--json"])
        assert result.exit_code == 0
        report = json.loads(result.stdout)
        assert [i["file"] for i in report["images"]] == ["hero.jpg"]
        assert report["options"]["formats"] == ["avif"]

    def test_flags_override_config(self, project: Path, fake_codec: CountingCodec) -> None:
        (project / "imageforge.toml").write_text('formats = ["avif"]\n', encoding="utf-8")
        result = runner.invoke(app, ["run", "images", "--json", "--formats", "webp"])
        assert json.loads(result.stdout)["options"]["formats"] == ["webp"]

    def test_bad_config_exit_2(self, project: Path, fake_codec: CountingCodec) -> None:
        (project / "imageforge.toml").write_text("nonsense = 1\n", encoding="utf-8")
        assert runner.invoke(app, ["run", "images"]).exit_code == 2


class TestExportJsonSchema:
    def test_writes_schema(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["export-jsonschema", "--out-dir", str(tmp_path)])
        assert result.exit_code == 0
        schema = json.loads((tmp_path / "imageforge-manifest.schema.json").read_text(encoding="utf-8"))
        assert "images" in schema["properties"]


class TestHelpers:
    def test_parse_formats(self) -> None:
        assert parse_formats("WEBP, avif,webp") == ("webp", "avif")
        with pytest.raises(InputValidationError, match="Unsupported"):
            parse_formats("png")

    def test_format_size(self) -> None:
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(3 * 1024 * 1024) == "3.0 MB"

    def test_sanitize_for_terminal(self) -> None:
        assert sanitize_for_terminal("a\nb\tc\x1b[31m") == "a\\nb\\tc\\x1b[31m"

    def test_rerun_command_quotes_and_lists_options(self) -> None:
        cmd = build_rerun_command(
            "my images",
            ProcessOptions(formats=("webp", "avif"), quality=70, blur=False, widths=(640, 320)),
            concurrency=4,
            cache="read-only",
            include=["**/*.png"],
        )
        assert cmd.startswith("imageforge run 'my images' --output imageforge.json --formats webp,avif")
        assert "--quality 70" in cmd
        assert "--concurrency 4" in cmd
        assert "--no-blur" in cmd
        assert "--widths 320,640" in cmd
        assert "--cache read-only" in cmd
        assert "--include '**/*.png'" in cmd
