"""
Tests for the fast-luks command line entry point.
"""

import os
import subprocess

import pytest
from unittest.mock import MagicMock, patch

from fastluks_mcp.cli import build_parser, main, run_encryption
from fastluks_mcp.config_manager import LuksConfig
from fastluks_mcp.errors import ExitCode, SignalReceived, ToolFailure
from fastluks_mcp.lock_manager import PID_FILENAME


@pytest.fixture
def config(tmp_path):
    return LuksConfig(
        lock_dir=str(tmp_path / "fast_luks"),
        success_file_dir=str(tmp_path / "run"),
        luks_cryptdev_file=str(tmp_path / "luks-cryptdev.ini"),
        log_file=str(tmp_path / "luks.log"),
        non_interactive=True,
    )


@pytest.fixture
def engine_cls():
    with patch("fastluks_mcp.cli.ProvisioningEngine") as mock_cls:
        mock_cls.return_value.run.return_value = MagicMock(device="/dev/vdb", mountpoint="/export")
        yield mock_cls


@pytest.fixture(autouse=True)
def cryptsetup_present():
    with patch("fastluks_mcp.device_utils.check_cryptsetup", return_value=True) as mock_check:
        yield mock_check


class TestRunEncryption:
    """Test exit codes and lock handling of a single run."""

    def test_success(self, config, engine_cls, tmp_path):
        """Test a successful run exits 0 and releases the lock."""
        code = run_encryption(config, passphrase="s3cretpass")

        assert code == ExitCode.SUCCESS
        engine_cls.assert_called_once_with(config, passphrase="s3cretpass")
        assert not (tmp_path / "fast_luks").exists()

    def test_lock_held_by_live_process(self, config, engine_cls, tmp_path):
        """Test a second instance exits 2 without provisioning."""
        lock_dir = tmp_path / "fast_luks"
        lock_dir.mkdir()
        (lock_dir / PID_FILENAME).write_text(f"{os.getpid()}\n")

        code = run_encryption(config, passphrase="s3cretpass")

        assert code == ExitCode.LOCKFAIL
        assert int(code) == 2
        engine_cls.assert_not_called()
        assert (lock_dir / PID_FILENAME).exists()

    def test_tool_failure(self, config, engine_cls, tmp_path):
        """Test a failed external command exits 1 and releases the lock."""
        engine_cls.return_value.run.side_effect = ToolFailure(["cryptsetup", "luksFormat"], 1)

        code = run_encryption(config, passphrase="s3cretpass")

        assert code == ExitCode.GENERAL
        assert not (tmp_path / "fast_luks").exists()

    def test_signal(self, config, engine_cls, tmp_path):
        """Test termination by signal exits 3 and releases the lock."""
        engine_cls.return_value.run.side_effect = SignalReceived(15)

        code = run_encryption(config, passphrase="s3cretpass")

        assert code == ExitCode.RECVSIG
        assert not (tmp_path / "fast_luks").exists()

    @pytest.mark.parametrize(
        "error",
        [
            FileNotFoundError(2, "No such file or directory", "mkfs.ext4"),
            subprocess.TimeoutExpired(["mount", "/dev/mapper/qwertyui", "/export"], 30),
            PermissionError(13, "Permission denied", "/etc/luks/luks-cryptdev.ini"),
        ],
    )
    def test_os_and_subprocess_errors(self, config, engine_cls, tmp_path, error):
        """Test environment failures exit 1 and release the lock."""
        engine_cls.return_value.run.side_effect = error

        code = run_encryption(config, passphrase="s3cretpass")

        assert code == ExitCode.GENERAL
        assert not (tmp_path / "fast_luks").exists()

    def test_missing_cryptsetup(self, config, engine_cls, cryptsetup_present):
        """Test a host without cryptsetup exits 1."""
        cryptsetup_present.return_value = False

        assert run_encryption(config) == ExitCode.GENERAL
        engine_cls.assert_not_called()

    def test_missing_passphrase(self, config, tmp_path):
        """Test a non-interactive run without passphrase exits 1."""
        with patch("fastluks_mcp.cli.ProvisioningEngine") as mock_cls:
            mock_cls.return_value.run.side_effect = ValueError("passphrase required")

            assert run_encryption(config) == ExitCode.GENERAL


class TestMain:
    """Test argument handling in main()."""

    @pytest.fixture(autouse=True)
    def environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOGFILE", str(tmp_path / "luks.log"))
        monkeypatch.setenv("SUCCESS_FILE_DIR", str(tmp_path / "run"))
        monkeypatch.chdir(tmp_path)

    @patch("os.geteuid", return_value=1000)
    def test_requires_root(self, mock_euid):
        """Test non-root users are refused."""
        assert main([]) == ExitCode.GENERAL

    @patch("os.geteuid", return_value=0)
    def test_invalid_configuration(self, mock_euid):
        """Test an invalid option exits 1 before anything runs."""
        with patch("fastluks_mcp.cli.run_encryption") as mock_run:
            assert main(["--keysize", "100"]) == ExitCode.GENERAL
            mock_run.assert_not_called()

    @patch("fastluks_mcp.cli.setup_logging")
    @patch("os.geteuid", return_value=0)
    def test_options_reach_configuration(self, mock_euid, mock_logging, tmp_path):
        """Test command line options end up in the run's configuration."""
        key_file = tmp_path / "key"
        key_file.write_text("s3cretpass\n")

        with patch("fastluks_mcp.cli.run_encryption", return_value=ExitCode.SUCCESS) as mock_run:
            code = main(
                [
                    "--device",
                    "/dev/vdc",
                    "--mountpoint",
                    "/data",
                    "--cryptdev",
                    "securevol",
                    "--paranoid-mode",
                    "-n",
                    "--passphrase-file",
                    str(key_file),
                    "--lock-dir",
                    str(tmp_path / "lock"),
                ]
            )

        assert code == ExitCode.SUCCESS
        config, passphrase = mock_run.call_args[0]
        assert config.device == "/dev/vdc"
        assert config.mountpoint == "/data"
        assert config.cryptdev == "securevol"
        assert config.paranoid is True
        assert config.non_interactive is True
        assert config.lock_dir == str(tmp_path / "lock")
        assert config.log_file == str(tmp_path / "luks.log")
        assert passphrase == "s3cretpass"
        mock_logging.assert_called_once_with(str(tmp_path / "luks.log"))

    @patch("fastluks_mcp.cli.setup_logging")
    @patch("os.geteuid", return_value=0)
    def test_random_passphrase_is_printed(self, mock_euid, mock_logging, capsys):
        """Test -r generates and prints a passphrase of the requested length."""
        with patch("fastluks_mcp.cli.run_encryption", return_value=ExitCode.SUCCESS) as mock_run:
            main(["-n", "-r", "12"])

        passphrase = mock_run.call_args[0][1]
        assert len(passphrase) == 12
        assert f"Generated passphrase: {passphrase}" in capsys.readouterr().out

    @patch("fastluks_mcp.cli.setup_logging")
    @patch("os.geteuid", return_value=0)
    def test_interactive_run_shows_intro(self, mock_euid, mock_logging, capsys):
        """Test interactive runs print the passphrase instructions."""
        with patch("fastluks_mcp.cli.run_encryption", return_value=ExitCode.SUCCESS):
            main([])

        assert "There's no way to recover your password." in capsys.readouterr().out


def test_parser_defaults_leave_config_untouched():
    """Test unset flags parse as None so defaults.conf values survive."""
    args = build_parser().parse_args([])

    assert args.paranoid is None
    assert args.non_interactive is None
    assert args.keysize is None
    assert args.device is None
