import json

from typer.testing import CliRunner

from container_manager.cli import app

runner = CliRunner()


def write_node_app(path):
    path.mkdir()
    (path / "package.json").write_text(
        json.dumps({"name": "shop", "dependencies": {"express": "^4.18.0"}})
    )
    (path / "package-lock.json").write_text("{}")


def test_analyze_json(tmp_path):
    write_node_app(tmp_path / "shop")

    result = runner.invoke(app, ["analyze", str(tmp_path / "shop"), "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["deployment_strategy"] == "single_container"
    assert payload["recommendations"][0]["service_type"] == "nodejs"


def test_analyze_table(tmp_path):
    write_node_app(tmp_path / "shop")

    result = runner.invoke(app, ["analyze", str(tmp_path / "shop")])

    assert result.exit_code == 0, result.output
    assert "single_container" in result.output
    assert "shop" in result.output
    assert "express" in result.output


def test_analyze_missing_folder(tmp_path):
    result = runner.invoke(app, ["analyze", str(tmp_path / "missing")])

    assert result.exit_code == 1
    assert "Error" in result.output
