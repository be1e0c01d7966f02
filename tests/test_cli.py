"""Integration tests for CLI commands."""

import json
from pathlib import Path

from typer.testing import CliRunner

from codewiki import __version__
from codewiki.cli import app


runner = CliRunner()


class TestVersion:
    """Tests for the --version flag."""

    def test_version(self):
        """Test that --version prints the version and exits."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"codewiki v{__version__}" in result.stdout


class TestGenerateCommand:
    """Tests for 'codewiki generate'."""

    def test_generate_writes_outputs(self, sample_project_path: Path, temp_dir: Path):
        """Test that a run writes the document, index, DOT graph and Mermaid diagrams."""
        out_dir = temp_dir / "site"
        result = runner.invoke(app, ["generate", str(sample_project_path), "--output", str(out_dir)])

        assert result.exit_code == 0
        assert "Generation Summary" in result.stdout
        assert (out_dir / "document.json").exists()
        assert (out_dir / "assets" / "search_index.json").exists()
        assert (out_dir / "graph.dot").exists()
        diagrams = sorted(p.name for p in (out_dir / "diagrams").iterdir())
        assert diagrams == ["dependencies.mmd", "main.py.mmd", "models.py.mmd", "processor.py.mmd", "utils.py.mmd"]

        document = json.loads((out_dir / "document.json").read_text(encoding="utf-8"))
        assert document["overview"]["files"] == 4
        assert document["overview"]["title"] == "Code Wiki"

    def test_generate_with_mock_ai(self, sample_project_path: Path, temp_dir: Path):
        """Test that --ai-mock produces generated descriptions."""
        out_dir = temp_dir / "site"
        result = runner.invoke(app, [
            "generate", str(sample_project_path), "-o", str(out_dir),
            "--ai-mock", "--title", "Sample",
        ])

        assert result.exit_code == 0
        assert "4 generated, 0 fallback" in result.stdout
        document = json.loads((out_dir / "document.json").read_text(encoding="utf-8"))
        assert document["overview"]["title"] == "Sample"
        assert all(f["enrichment"]["status"] == "Generated" for f in document["files"])

    def test_generate_security_hotspots(self, mixed_project_path: Path, temp_dir: Path):
        """Test that hotspots are listed in the summary."""
        result = runner.invoke(app, ["generate", str(mixed_project_path), "-o", str(temp_dir / "site")])

        assert result.exit_code == 0
        assert "Security Hotspots" in result.stdout

    def test_generate_without_security(self, mixed_project_path: Path, temp_dir: Path):
        """Test that --no-security skips the scanner."""
        result = runner.invoke(app, [
            "generate", str(mixed_project_path), "-o", str(temp_dir / "site"), "--no-security",
        ])

        assert result.exit_code == 0
        assert "Security Hotspots" not in result.stdout

    def test_generate_nonexistent_path(self, temp_dir: Path):
        """Test that a missing root exits with an error."""
        result = runner.invoke(app, ["generate", str(temp_dir / "missing")])

        assert result.exit_code == 1
        assert "does not exist" in result.stdout

    def test_generate_invalid_workers(self, sample_project_path: Path, temp_dir: Path):
        """Test that invalid settings are reported, not raised."""
        result = runner.invoke(app, [
            "generate", str(sample_project_path), "-o", str(temp_dir / "site"), "--workers", "0",
        ])

        assert result.exit_code == 1
        assert "max_workers" in result.stdout
