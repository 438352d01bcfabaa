import pytest

from upscaler import cli
from upscaler import config as config_lib
from upscaler.models import UpscalerConfig, UpscaleConfig


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config_lib, "DEFAULT_CONFIG_PATH", tmp_path / "default.yaml")
    monkeypatch.setattr(config_lib, "LOCAL_CONFIG_PATH", tmp_path / "local.yaml")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'jobs.db'}")


def test_check_upscaler_reports_missing(tmp_path, capsys):
    settings = UpscalerConfig(
        upscale=UpscaleConfig(
            executable=str(tmp_path / "no-such-upscaler"), models_path=str(tmp_path / "models")
        )
    )

    assert cli.check_upscaler(settings) is False
    out = capsys.readouterr().out
    assert "upscaler NOT found" in out
    assert "models directory NOT found" in out


def test_check_upscaler_ok(tmp_path, capsys):
    exe = tmp_path / "realcugan"
    exe.write_text("#!/bin/sh\n")
    exe.chmod(0o755)
    (tmp_path / "models").mkdir()
    settings = UpscalerConfig(
        upscale=UpscaleConfig(executable=str(exe), models_path=str(tmp_path / "models"))
    )

    assert cli.check_upscaler(settings) is True


def test_check_command_exits_non_zero(monkeypatch):
    monkeypatch.setenv("REALCUGAN_PATH", "/nonexistent/realcugan")
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["check"])
    assert exc_info.value.code == 1


def test_init_db_and_status(tmp_path, capsys):
    cli.main(["init-db"])
    assert (tmp_path / "jobs.db").exists()

    cli.main(["status"])
    out = capsys.readouterr().out
    assert "Pending:" in out
    assert "Total:" in out


def test_no_command_prints_help(capsys):
    cli.main([])
    assert "usage" in capsys.readouterr().out.lower()
