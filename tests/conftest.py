import os

import pytest
from unittest.mock import MagicMock

import BifrostManager as bm


@pytest.fixture(autouse=True)
def reset_flags():
    bm.cli_flags["dry_run"] = False
    yield
    bm.cli_flags["dry_run"] = False


@pytest.fixture(autouse=True)
def mock_root_check(mocker):
    """Always pretend to be root."""
    mocker.patch("os.geteuid", return_value=0, create=True)


@pytest.fixture
def mock_subproc(mocker):
    """Mock subprocess.run to avoid actual execution."""
    mock_run = mocker.patch("subprocess.run")
    mock_run.return_value = MagicMock(stdout="", stderr="", returncode=0)
    return mock_run


@pytest.fixture
def settings(tmp_path):
    environ = {
        "BIFROST_REPO_DIR": str(tmp_path / "repo"),
        "BIFROST_INSTALL_DIR": str(tmp_path / "opt"),
        "BIFROST_ENV_DIR": str(tmp_path / "etc"),
        "BIFROST_SERVICE_FILE": str(tmp_path / "systemd" / "bifrost.service"),
        "BIFROST_LOG_FILE": str(tmp_path / "manager.log"),
    }
    return bm.load_settings(str(tmp_path / "missing.yaml"), environ=environ)


@pytest.fixture
def config_file(settings):
    path = settings["config_file"]
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(
            "# bifrost tunnel\n"
            "listen_ip: \"0.0.0.0\"\n"
            "src_ip: \"10.0.0.1\"   # this server\n"
            "dst_ip: \"10.0.0.2\"\n"
            "protocol: \"tcp\"\n"
            "port: 443\n"
        )
    return path
