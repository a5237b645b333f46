"""
Tests for system detection — flakes vs channels.
"""

from pathlib import Path

from nixmate.core.nix.detect import detect_system, flake_candidates


class TestDetectSystem:
    """Tests for detect_system."""

    def test_flake_found(self, tmp_path: Path):
        flake_dir = tmp_path / "nixos"
        flake_dir.mkdir()
        (flake_dir / "flake.nix").write_text("{ }")

        system = detect_system([tmp_path / "etc-nixos", flake_dir])

        assert system.uses_flakes is True
        assert system.flake_path == str(flake_dir)

    def test_first_candidate_wins(self, tmp_path: Path):
        first, second = tmp_path / "a", tmp_path / "b"
        for d in (first, second):
            d.mkdir()
            (d / "flake.nix").write_text("{ }")
        assert detect_system([first, second]).flake_path == str(first)

    def test_channels(self, tmp_path: Path):
        (tmp_path / "configuration.nix").write_text("{ }")
        system = detect_system([tmp_path])
        assert system.uses_flakes is False
        assert system.flake_path is None

    def test_flake_dir_not_file(self, tmp_path: Path):
        (tmp_path / "flake.nix").mkdir()
        assert detect_system([tmp_path]).uses_flakes is False


class TestFlakeCandidates:
    """Tests for flake_candidates."""

    def test_order(self, tmp_path: Path):
        assert flake_candidates(tmp_path) == [
            Path("/etc/nixos"),
            tmp_path / ".config/nixos",
            tmp_path / "nixos",
            tmp_path / ".nixos",
        ]
