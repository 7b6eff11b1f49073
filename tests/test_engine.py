"""Tests for the docker CLI container engine.

Tests cover:
- truncate_output: byte/line ceilings and truncation modes
- DockerEngine lifecycle: image allow-list, pull, create, stop, remove
- DockerEngine.exec: streaming capture, capture cap, cancellation
- ContainerRegistry: orphan cleanup and kill-at-exit
All docker invocations are mocked; no Docker daemon is required.
"""

from __future__ import annotations

import io
import subprocess
from unittest.mock import MagicMock, Mock

import pytest

from taskpilot.core.cancellation import CancellationToken
from taskpilot.core.models import ContainerSession, ContainerStatus
from taskpilot.sandbox.engine import (
    MANAGED_LABEL_KEY,
    TRUNCATION_NOTICE,
    ContainerCreateError,
    ContainerExecError,
    ContainerRegistry,
    DockerEngine,
    EngineConfig,
    ImageNotAllowedError,
    ImagePullError,
    SandboxError,
    TruncMode,
    truncate_output,
)


def completed(returncode: int = 0, stdout="", stderr="") -> Mock:
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def registry() -> Mock:
    return Mock(spec=ContainerRegistry)


@pytest.fixture
def docker(registry) -> DockerEngine:
    """Engine that skips the docker availability check."""
    return DockerEngine(
        EngineConfig(allowed_images=["alpine:latest", "python:3.12-slim"], require_docker=False),
        registry=registry,
    )


@pytest.fixture
def running() -> ContainerSession:
    return ContainerSession(
        id="abc123",
        name="taskpilot-task-1",
        image="alpine:latest",
        working_dir="/workspace",
        status=ContainerStatus.RUNNING,
    )


def fake_proc(output: bytes, returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.stdout = io.BytesIO(output)
    proc.wait.return_value = returncode
    proc.poll.return_value = returncode
    return proc


# =============================================================================
# Output Truncation Tests
# =============================================================================


class TestTruncateOutput:
    def test_short_output_untouched(self):
        assert truncate_output("ok\n", 100, 10) == ("ok\n", False)

    def test_line_cap_keeps_end(self):
        text = "".join(f"{i}\n" for i in range(10))
        out, truncated = truncate_output(text, 1000, 3, TruncMode.END)
        assert truncated
        assert out == f"{TRUNCATION_NOTICE}\n\n7\n8\n9\n"

    def test_line_cap_keeps_start(self):
        text = "".join(f"{i}\n" for i in range(10))
        out, _ = truncate_output(text, 1000, 2, TruncMode.START)
        assert out == f"0\n1\n\n\n{TRUNCATION_NOTICE}"

    def test_byte_cap(self):
        out, truncated = truncate_output("x" * 100, 10, None, TruncMode.START)
        assert truncated
        assert out.startswith("x" * 10 + "\n")

    def test_none_mode_obeys_hard_ceiling(self):
        out, truncated = truncate_output("y" * 100, 10, 1, TruncMode.NONE, hard_max_bytes=50)
        assert truncated
        assert out.count("y") == 50

    def test_none_mode_without_ceiling(self):
        assert truncate_output("z" * 100, 10, 1, TruncMode.NONE) == ("z" * 100, False)

    def test_multibyte_cut_is_clean(self):
        out, _ = truncate_output("é" * 10, 5, None, TruncMode.START)
        assert "�" not in out


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    def test_disallowed_image_rejected_before_pull(self, docker, mocker):
        run = mocker.patch("subprocess.run")
        with pytest.raises(ImageNotAllowedError):
            docker.pull("evil/miner:latest")
        run.assert_not_called()

    def test_known_image_outside_config_rejected(self, docker, mocker):
        run = mocker.patch("subprocess.run")
        with pytest.raises(ImageNotAllowedError):
            docker.pull("rust:latest")
        run.assert_not_called()

    def test_pull_failure(self, docker, mocker):
        mocker.patch("subprocess.run", return_value=completed(1, stderr="network unreachable"))
        with pytest.raises(ImagePullError, match="network unreachable"):
            docker.pull("alpine:latest")

    def test_pull_timeout(self, docker, mocker):
        mocker.patch("subprocess.run", side_effect=subprocess.TimeoutExpired("docker", 300))
        with pytest.raises(ImagePullError, match="timed out"):
            docker.pull("alpine:latest")

    def test_create_runs_clean_container(self, docker, registry, mocker):
        run = mocker.patch("subprocess.run", return_value=completed(stdout="abc123\n"))

        session = docker.create("alpine:latest", "/workspace", task_id="t1")

        cmd = run.call_args[0][0]
        assert cmd[:2] == ["docker", "run"]
        assert "--rm" in cmd
        assert f"--label={MANAGED_LABEL_KEY}=true" in cmd
        assert "--workdir=/workspace" in cmd
        assert not any(arg in ("-v", "--volume", "--mount") for arg in cmd)
        assert session.id == "abc123"
        assert session.name == "taskpilot-task-t1"
        assert session.status == ContainerStatus.RUNNING
        registry.add.assert_called_once_with("abc123")

    def test_create_requires_absolute_workdir(self, docker, mocker):
        run = mocker.patch("subprocess.run")
        with pytest.raises(ContainerCreateError, match="absolute"):
            docker.create("alpine:latest", "workspace")
        run.assert_not_called()

    def test_create_failure(self, docker, registry, mocker):
        mocker.patch("subprocess.run", return_value=completed(125, stderr="no space left"))
        with pytest.raises(ContainerCreateError, match="no space left"):
            docker.create("alpine:latest", "/workspace")
        registry.add.assert_not_called()

    def test_stop_tolerates_missing_container(self, docker, running, mocker):
        mocker.patch("subprocess.run", return_value=completed(1, stderr="Error: No such container: abc123"))
        docker.stop(running)
        assert running.status == ContainerStatus.STOPPED

    def test_stop_failure(self, docker, running, mocker):
        mocker.patch("subprocess.run", return_value=completed(1, stderr="daemon gone"))
        with pytest.raises(SandboxError, match="daemon gone"):
            docker.stop(running)

    def test_remove_untracks_even_on_failure(self, docker, registry, running, mocker):
        mocker.patch("subprocess.run", return_value=completed(1, stderr="daemon gone"))
        with pytest.raises(SandboxError):
            docker.remove(running)
        registry.remove.assert_called_once_with("abc123")


# =============================================================================
# Exec Tests
# =============================================================================


class TestExec:
    def test_streams_combined_output(self, docker, running, mocker):
        popen = mocker.patch("subprocess.Popen", return_value=fake_proc(b"hello world\n"))

        result = docker.exec(running, 'echo "hello world"', shell="/bin/sh", working_dir="/tmp")

        assert result.exit_code == 0
        assert result.output == "hello world\n"
        assert not result.truncated
        cmd = popen.call_args[0][0]
        assert cmd == ["docker", "exec", "-i", "-w", "/tmp", "abc123", "/bin/sh", "-c", 'echo "hello world"']
        assert popen.call_args.kwargs["stderr"] == subprocess.STDOUT

    def test_nonzero_exit_is_a_result(self, docker, running, mocker):
        mocker.patch("subprocess.Popen", return_value=fake_proc(b"boom\n", returncode=2))
        result = docker.exec(running, "false")
        assert result.exit_code == 2

    def test_capture_cap(self, running, registry, mocker):
        engine = DockerEngine(EngineConfig(capture_limit_bytes=5, require_docker=False), registry=registry)
        mocker.patch("subprocess.Popen", return_value=fake_proc(b"0123456789"))

        result = engine.exec(running, "seq 100")

        assert result.truncated
        assert result.output.startswith("01234")
        assert "OUTPUT TRUNCATED" in result.output

    def test_stdin_is_fed(self, docker, running, mocker):
        proc = fake_proc(b"")
        mocker.patch("subprocess.Popen", return_value=proc)
        docker.exec(running, "cat", stdin="payload")
        proc.stdin.write.assert_called_once_with(b"payload")
        proc.stdin.close.assert_called_once()

    def test_unsupported_shell(self, docker, running, mocker):
        popen = mocker.patch("subprocess.Popen")
        with pytest.raises(ContainerExecError, match="Unsupported shell"):
            docker.exec(running, "ls", shell="zsh")
        popen.assert_not_called()

    def test_cancellation_kills_process(self, docker, running, mocker):
        proc = fake_proc(b"partial", returncode=-9)
        proc.poll.return_value = None
        mocker.patch("subprocess.Popen", return_value=proc)
        token = CancellationToken()
        token.cancel()

        result = docker.exec(running, "sleep 100", cancel_token=token)

        proc.kill.assert_called_once()
        assert result.cancelled
        assert result.output.endswith("[Command cancelled]")


class TestFileHelpers:
    def test_write_file_passes_content_on_stdin(self, docker, running, mocker):
        run = mocker.patch("subprocess.run", return_value=completed(stdout=b""))
        docker.write_file(running, "/root/.env", "TOKEN=x")
        args, kwargs = run.call_args
        assert args[0][:4] == ["docker", "exec", "-i", "abc123"]
        assert args[0][-1] == "/root/.env"
        assert kwargs["input"] == b"TOKEN=x"
        assert "TOKEN=x" not in " ".join(args[0])

    def test_path_exists(self, docker, running, mocker):
        mocker.patch("subprocess.run", side_effect=[completed(0, stdout=b""), completed(1, stderr=b"")])
        assert docker.path_exists(running, "/workspace")
        assert not docker.path_exists(running, "/missing")

    def test_read_file_error(self, docker, running, mocker):
        mocker.patch("subprocess.run", return_value=completed(1, stderr=b"cat: /x: No such file"))
        with pytest.raises(ContainerExecError, match="No such file"):
            docker.read_file(running, "/x")


# =============================================================================
# ContainerRegistry Tests
# =============================================================================


class TestContainerRegistry:
    def test_removes_exited_orphans(self, mocker):
        run = mocker.patch(
            "subprocess.run",
            side_effect=[
                completed(stdout="taskpilot-task-old\n"),
                completed(stdout=""),
                completed(0),
            ],
        )
        ContainerRegistry(install_handlers=False)
        assert run.call_args_list[-1][0][0] == ["docker", "rm", "-f", "taskpilot-task-old"]

    def test_docker_missing_is_tolerated(self, mocker):
        mocker.patch("subprocess.run", side_effect=FileNotFoundError("docker"))
        registry = ContainerRegistry(install_handlers=False)
        assert registry.tracked == set()

    def test_cleanup_all_kills_tracked(self, mocker):
        mocker.patch("subprocess.run", return_value=completed(stdout=""))
        registry = ContainerRegistry(install_handlers=False)
        registry.add("abc")
        registry.add("def")
        registry.remove("def")

        run = mocker.patch("subprocess.run", return_value=completed())
        registry.cleanup_all()

        run.assert_called_once()
        assert run.call_args[0][0] == ["docker", "kill", "abc"]
        assert registry.tracked == set()
