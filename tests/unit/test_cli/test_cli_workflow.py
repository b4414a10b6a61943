"""
Unit tests for cli_workflow module.
"""
import json

from cli_workflow import load_input_file, sanitize_cli, validate_cli

VALID_BOX = '{"x1": 100, "y1": 150, "x2": 300, "y2": 250, "type": "graph", "confidence": 0.9}'


class TestLoadInputFile:
    """Tests for load_input_file function."""

    def test_pdf(self, tmp_path):
        path = tmp_path / "paper.pdf"
        path.write_bytes(b"%PDF-1.4")

        input_file = load_input_file(str(path))

        assert input_file.name == "paper.pdf"
        assert input_file.mime_type == "application/pdf"
        assert input_file.size == 8

    def test_unknown_extension(self, tmp_path):
        path = tmp_path / "paper.unknownext"
        path.write_bytes(b"data")

        assert load_input_file(str(path)).mime_type == "application/octet-stream"


class TestValidateCli:
    """Tests for validate_cli function."""

    def test_valid_json_string(self, capsys):
        assert validate_cli(VALID_BOX, 800, 600)
        assert "1 box(es) valid for 800x600" in capsys.readouterr().out

    def test_invalid_box(self, capsys):
        assert not validate_cli('{"x1": -10, "y1": 0, "x2": 100, "y2": 100}', 800, 600)
        assert "Invalid for 800x600" in capsys.readouterr().out

    def test_json_file(self, tmp_path):
        path = tmp_path / "boxes.json"
        path.write_text(json.dumps([
            {'x1': 0, 'y1': 0, 'x2': 100, 'y2': 100},
            {'x1': 400, 'y1': 300, 'x2': 500, 'y2': 400},
        ]))

        assert validate_cli(str(path), 800, 600)


class TestSanitizeCli:
    """Tests for sanitize_cli function."""

    def test_storage_profile(self, capsys):
        sanitize_cli('{"x1": 100.4, "y1": 150.6, "x2": 300.2, "y2": 250.7}', 800, 600, 'storage')

        output = json.loads(capsys.readouterr().out)
        assert output['sanitized']['y1'] == 151
