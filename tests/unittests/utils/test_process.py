import socket
import subprocess
import sys
from contextlib import closing
from unittest.mock import patch

import pytest

from chain_forge.exceptions import NodeManagementError
from chain_forge.utils.process import DaemonExecutor, ProcessSupervisor, port_in_use, unused_port

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


class Sentinel(Exception):
    pass


@pytest.fixture
def supervisor():
    supervisor = ProcessSupervisor("testd")
    yield supervisor
    supervisor.stop()


@patch("chain_forge.utils.process.subprocess.Popen")
def test_executor_start_allows_customizing_stdout_stderr_and_preexec(mock_popen):
    mock_popen.side_effect = Sentinel
    out, err, preexec = object(), object(), object()

    with pytest.raises(Sentinel):
        DaemonExecutor(["bitcoind", "-version"]).start(stdout=out, stderr=err, preexec_fn=preexec)

    _, kwargs = mock_popen.call_args
    assert kwargs["stdout"] is out
    assert kwargs["stderr"] is err
    assert kwargs["preexec_fn"] is preexec
    assert kwargs["stdin"] == subprocess.DEVNULL


class TestPreflight:
    def test_free_port_passes(self):
        ProcessSupervisor.preflight_port(unused_port(), "RPC")

    def test_bound_port_fails_with_label(self):
        with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
            sock.bind(("0.0.0.0", 0))
            sock.listen(1)
            port = sock.getsockname()[1]

            assert port_in_use(port)
            with pytest.raises(NodeManagementError) as exc_info:
                ProcessSupervisor.preflight_port(port, "Gossip")

        assert str(exc_info.value) == (
            f"Gossip port {port} is already in use. "
            f"Check for other running validators or services."
        )


class TestSpawn:
    def test_spawn_redirects_output_into_log_dir(self, supervisor, tmp_path):
        command = [sys.executable, "-c", "print('hello'); import time; time.sleep(60)"]
        supervisor.spawn(command, tmp_path)

        assert supervisor.is_running()
        assert supervisor.pid is not None
        assert supervisor.stdout_log == tmp_path.joinpath("testd_stdout.log")
        assert supervisor.stderr_log.exists()

    def test_spawn_twice_fails(self, supervisor, tmp_path):
        supervisor.spawn(SLEEPER, tmp_path)

        with pytest.raises(NodeManagementError, match="already running"):
            supervisor.spawn(SLEEPER, tmp_path)

    def test_missing_binary_raises_node_management_error(self, supervisor, tmp_path):
        with pytest.raises(NodeManagementError, match="Failed to start testd"):
            supervisor.spawn([str(tmp_path.joinpath("no-such-daemon"))], tmp_path)

        assert not supervisor.is_running()

    def test_verbose_mode_writes_no_log_files(self, tmp_path):
        supervisor = ProcessSupervisor("testd", verbose=True)
        supervisor.spawn(SLEEPER, tmp_path.joinpath("logs"))
        try:
            assert supervisor.stdout_log is None
            assert not tmp_path.joinpath("logs").exists()
        finally:
            supervisor.stop()


class TestEarlyExit:
    def test_running_daemon_passes(self, supervisor, tmp_path):
        supervisor.spawn(SLEEPER, tmp_path)
        supervisor.check_early_exit(grace=0.1)

        assert supervisor.is_running()

    def test_exit_code_is_reported(self, supervisor, tmp_path):
        supervisor.spawn([sys.executable, "-c", "import sys; sys.exit(3)"], tmp_path)

        with pytest.raises(NodeManagementError, match="testd exited immediately with 3"):
            supervisor.check_early_exit(grace=1.0)
        assert not supervisor.is_running()

    def test_diagnostic_log_errors_are_reported(self, supervisor, tmp_path):
        diagnostic_log = tmp_path.joinpath("validator.log")
        diagnostic_log.write_text(
            "INFO starting\n"
            "ERROR metrics endpoint unavailable\n"
            "thread 'main' panicked at 'Address already in use'\n"
        )
        supervisor.spawn([sys.executable, "-c", "import sys; sys.exit(1)"], tmp_path)

        with pytest.raises(NodeManagementError) as exc_info:
            supervisor.check_early_exit(grace=1.0, diagnostic_log=diagnostic_log)

        message = str(exc_info.value)
        assert message.startswith("testd exited immediately:")
        assert "panicked at 'Address already in use'" in message
        assert "metrics" not in message


class TestStop:
    def test_stop_kills_daemon(self, supervisor, tmp_path):
        supervisor.spawn(SLEEPER, tmp_path)

        assert supervisor.stop() is True
        assert not supervisor.is_running()
        assert supervisor.pid is None

    def test_stop_is_idempotent(self, supervisor, tmp_path):
        assert supervisor.stop() is False
        supervisor.spawn(SLEEPER, tmp_path)

        with patch.object(
            DaemonExecutor, "kill", autospec=True, side_effect=DaemonExecutor.kill
        ) as mock_kill:
            assert supervisor.stop() is True
            assert supervisor.stop() is False

        assert mock_kill.call_count == 1
