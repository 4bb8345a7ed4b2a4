import logging
import pytest
import yaml
from typer.testing import CliRunner
from sdz.config.models import AppConfig
from sdz.main import _apply_overrides, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


@pytest.fixture
def config_file(tmp_path, sample_config):
    path = tmp_path / "sdz.yaml"
    path.write_text(yaml.safe_dump(sample_config.model_dump()))
    return path


def test_convert_success(config_file, slide_factory, dzi_dir):
    slide = slide_factory("case/slide.svs")

    result = runner.invoke(app, ["convert", str(slide), "--config", str(config_file)])

    assert result.exit_code == 0, result.output
    assert (dzi_dir / "slide.dzi").exists()
    assert (dzi_dir / "conversion.log").exists()
    assert "Completed slide" in result.output


def test_convert_failure_exits_1(config_file, slide_factory, dzi_dir, monkeypatch):
    monkeypatch.setenv("FAKE_VIPS_FAIL", "tile")
    slide = slide_factory("slide.svs")

    result = runner.invoke(app, ["convert", str(slide), "--config", str(config_file), "--retries", "0"])

    assert result.exit_code == 1
    assert not (dzi_dir / "slide.dzi").exists()
    assert "Failed slide" in result.output


def test_convert_already_converted(config_file, slide_factory, dzi_dir):
    slide = slide_factory("slide.svs")
    dzi_dir.mkdir()
    (dzi_dir / "slide.dzi").write_text("<Image/>")

    result = runner.invoke(app, ["convert", str(slide), "--config", str(config_file)])

    assert result.exit_code == 0
    assert "Already converted" in result.output


def test_convert_missing_file(config_file, tmp_path):
    result = runner.invoke(app, ["convert", str(tmp_path / "nope.svs"), "--config", str(config_file)])

    assert result.exit_code == 1
    assert "file not found" in result.output


def test_convert_unsupported_file(config_file, slides_dir):
    notes = slides_dir / "notes.txt"
    notes.write_text("not a slide")

    result = runner.invoke(app, ["convert", str(notes), "--config", str(config_file)])

    assert result.exit_code == 1
    assert "UNSUPPORTED" in result.output


def test_watch_missing_directory(config_file, tmp_path):
    result = runner.invoke(app, ["watch", str(tmp_path / "missing"), "--config", str(config_file)])

    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_watch_without_root(tmp_path, sample_config):
    sample_config.watch.watch_root = None
    path = tmp_path / "noroot.yaml"
    path.write_text(yaml.safe_dump(sample_config.model_dump()))

    result = runner.invoke(app, ["watch", "--config", str(path)])

    assert result.exit_code == 1
    assert "no watch directory" in result.output


def test_invalid_config_exits_1(tmp_path, slide_factory):
    path = tmp_path / "bad.yaml"
    path.write_text("pool:\n  max_concurrency: 0\n")
    slide = slide_factory("slide.svs")

    result = runner.invoke(app, ["convert", str(slide), "--config", str(path)])

    assert result.exit_code == 1
    assert "Fatal Error" in result.output


def test_apply_overrides(tmp_path):
    config = AppConfig()

    _apply_overrides(config, tmp_path, 4, 0, "http://lab:3001", True, tmp_path / "x.log")

    assert config.watch.output_root == str(tmp_path)
    assert config.pool.max_concurrency == 4
    assert config.pool.max_retries == 0
    assert config.remote.enabled and config.remote.url == "http://lab:3001"
    assert config.general.debug is True
    assert config.general.log_path == str(tmp_path / "x.log")


def test_apply_overrides_keeps_config_when_unset():
    config = AppConfig()
    config.pool.max_retries = 7

    _apply_overrides(config, None, None, None, None, False, None)

    assert config.pool.max_retries == 7
    assert config.remote.enabled is False
