"""Container engine over the docker CLI.

Runs one ephemeral container per task: pull an allow-listed image, start it
detached with no project mounts, exec shell commands into it with streamed and
capped output capture, move tar archives in and out, and stop/remove it.

SECURITY: Images are restricted to KNOWN_IMAGES (further narrowed by the
caller's allow-list). Anything else is rejected before a pull is attempted.
"""

import atexit
import logging
import shlex
import shutil
import signal
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from taskpilot.core.cancellation import CancellationToken
from taskpilot.core.errors import TaskPilotError
from taskpilot.core.models import ContainerSession, ContainerStatus

logger = logging.getLogger(__name__)

# Explicit enumeration of base images permitted for sandboxed execution
KNOWN_IMAGES: tuple[str, ...] = (
    "alpine:latest",
    "ubuntu:latest",
    "debian:stable-slim",
    "node:lts",
    "python:3.12-slim",
    "golang:latest",
    "rust:latest",
)

CONTAINER_NAME_PREFIX = "taskpilot-task-"
MANAGED_LABEL_KEY = "taskpilot.managed"

ALLOWED_SHELLS = ("bash", "/bin/sh")


class SandboxError(TaskPilotError):
    """Error in sandbox execution."""

    pass


class DockerNotAvailableError(SandboxError):
    """Docker is required but not available."""

    pass


class ImageNotAllowedError(SandboxError):
    """Requested image is outside the allow-list."""

    pass


class ImagePullError(SandboxError):
    """docker pull failed or timed out."""

    pass


class ContainerCreateError(SandboxError):
    """Container could not be created or started."""

    pass


class ContainerExecError(SandboxError):
    """A docker exec or cp call could not be performed."""

    pass


class TruncMode(str, Enum):
    """Which part of oversized output to keep."""

    START = "start"
    END = "end"
    NONE = "none"


class ExecResult(BaseModel):
    """Result of a command executed inside a container."""

    exit_code: int
    output: str
    timed_out: bool = False
    truncated: bool = False
    cancelled: bool = False


TRUNCATION_NOTICE = "[... output truncated for context management ...]"


def truncate_output(
    output: str,
    max_bytes: int,
    max_lines: int | None = None,
    mode: TruncMode = TruncMode.END,
    hard_max_bytes: int | None = None,
) -> tuple[str, bool]:
    """Cap output by lines and bytes, keeping the start or the end.

    With TruncMode.NONE only `hard_max_bytes` applies (the head is kept).
    Cuts never split a UTF-8 sequence. Returns (text, was_truncated).
    """
    if mode == TruncMode.NONE:
        if hard_max_bytes is None:
            return output, False
        max_bytes, max_lines, mode = hard_max_bytes, None, TruncMode.START

    truncated = False
    if max_lines is not None:
        lines = output.splitlines(keepends=True)
        if len(lines) > max_lines:
            lines = lines[:max_lines] if mode == TruncMode.START else lines[-max_lines:]
            output = "".join(lines)
            truncated = True

    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) > max_bytes:
        if mode == TruncMode.START:
            output = encoded[:max_bytes].decode("utf-8", errors="ignore")
        else:
            output = encoded[-max_bytes:].decode("utf-8", errors="ignore")
        truncated = True

    if not truncated:
        return output, False
    if mode == TruncMode.START:
        return f"{output}\n\n{TRUNCATION_NOTICE}", True
    return f"{TRUNCATION_NOTICE}\n\n{output}", True


class ContainerRegistry:
    """Track running containers for cleanup on exit.

    Uses RLock (reentrant lock) to prevent deadlock when signal handlers
    call cleanup_all() while the lock is already held by the same thread.

    On initialization, removes ONLY exited/dead containers carrying the
    TaskPilot label, left behind by runs that were killed before cleanup.
    Running containers of concurrent TaskPilot processes are not touched.
    """

    def __init__(self, install_handlers: bool = True) -> None:
        self._containers: set[str] = set()
        self._lock = threading.RLock()

        self._cleanup_orphaned_containers()

        if install_handlers:
            atexit.register(self.cleanup_all)
            # signal.signal is only legal from the main thread
            if threading.current_thread() is threading.main_thread():
                signal.signal(signal.SIGTERM, self._signal_handler)

    def _cleanup_orphaned_containers(self) -> int:
        """Remove exited/dead TaskPilot containers from previous runs."""
        orphans: list[str] = []
        try:
            for status in ("exited", "dead"):
                result = subprocess.run(
                    [
                        "docker", "ps", "-a",
                        "--filter", f"label={MANAGED_LABEL_KEY}=true",
                        "--filter", f"status={status}",
                        "--format", "{{.Names}}",
                    ],
                    capture_output=True,
                    text=True,
                    timeout=10,
                )
                if result.returncode != 0:
                    return 0
                orphans.extend(n.strip() for n in result.stdout.splitlines() if n.strip())

            removed = 0
            for name in orphans:
                result = subprocess.run(
                    ["docker", "rm", "-f", name],
                    capture_output=True,
                    text=True,
                    timeout=10,
                )
                if result.returncode == 0:
                    removed += 1
            if removed:
                logger.info(f"Cleaned up {removed} exited TaskPilot containers from a previous run")
            return removed
        except (subprocess.TimeoutExpired, FileNotFoundError):
            return 0

    def add(self, container_id: str) -> None:
        with self._lock:
            self._containers.add(container_id)

    def remove(self, container_id: str) -> None:
        with self._lock:
            self._containers.discard(container_id)

    @property
    def tracked(self) -> set[str]:
        with self._lock:
            return set(self._containers)

    def cleanup_all(self) -> None:
        """Kill all tracked containers."""
        with self._lock:
            for container_id in list(self._containers):
                try:
                    subprocess.run(
                        ["docker", "kill", container_id],
                        capture_output=True,
                        timeout=10,
                    )
                except (subprocess.TimeoutExpired, FileNotFoundError) as e:
                    logger.warning(f"Failed to kill container {container_id}: {e}")
            self._containers.clear()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.cleanup_all()
        raise SystemExit(128 + signum)


_registry: ContainerRegistry | None = None
_registry_lock = threading.Lock()


def get_container_registry() -> ContainerRegistry:
    """Process-wide registry, created on first use."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ContainerRegistry()
        return _registry


def _validate_docker() -> None:
    """Validate Docker is available. Raises if not."""
    if not shutil.which("docker"):
        raise DockerNotAvailableError("Docker binary not found in PATH")

    result = subprocess.run(
        ["docker", "version"],
        capture_output=True,
        timeout=5,
    )
    if result.returncode != 0:
        raise DockerNotAvailableError(
            f"Docker is not running or not accessible: {result.stderr.decode()}"
        )


@dataclass
class EngineConfig:
    """Settings for containers started by DockerEngine."""

    allowed_images: list[str] = field(default_factory=lambda: list(KNOWN_IMAGES))

    # Resource limits
    memory_limit: str = "2g"
    cpu_limit: str = "2"
    pids_limit: int = 512

    # Timeout for pull/create/stop/cp calls (exec has its own per call)
    docker_timeout: int = 300

    # Bytes kept from a single exec before draining the rest
    capture_limit_bytes: int = 1024 * 1024

    require_docker: bool = True


class DockerEngine:
    """Container lifecycle through the docker CLI.

    Each public call is a blocking, single-shot docker invocation carrying its
    own timeout. Failures raise SandboxError subclasses; nothing is retried.
    """

    def __init__(self, config: EngineConfig | None = None, registry: ContainerRegistry | None = None):
        self.config = config or EngineConfig()
        if self.config.require_docker:
            _validate_docker()
        self.registry = registry or get_container_registry()

    # --- Lifecycle ---

    def check_image(self, image: str) -> None:
        """Raise ImageNotAllowedError unless image is enumerated and allow-listed."""
        if image not in KNOWN_IMAGES or image not in self.config.allowed_images:
            raise ImageNotAllowedError(
                f"Image '{image}' is not allowed. Allowed images: {self.config.allowed_images}"
            )

    def pull(self, image: str) -> None:
        self.check_image(image)
        logger.info(f"Pulling image {image}")
        try:
            result = subprocess.run(
                ["docker", "pull", image],
                capture_output=True,
                text=True,
                timeout=self.config.docker_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ImagePullError(f"Pull of {image} timed out after {self.config.docker_timeout}s") from e
        except FileNotFoundError as e:
            raise DockerNotAvailableError("Docker binary not found in PATH") from e
        if result.returncode != 0:
            raise ImagePullError(result.stderr.strip() or f"docker pull {image} failed")

    def create(self, image: str, working_dir: str, task_id: str | None = None) -> ContainerSession:
        """Create and start a detached container. Project files are not mounted."""
        self.check_image(image)
        if not working_dir.startswith("/"):
            raise ContainerCreateError(f"Working directory must be absolute: {working_dir}")

        name = f"{CONTAINER_NAME_PREFIX}{task_id or uuid.uuid4().hex[:8]}"
        cmd = [
            "docker", "run",
            "--detach",
            "--tty",
            "--rm",
            f"--name={name}",
            f"--label={MANAGED_LABEL_KEY}=true",
            f"--workdir={working_dir}",
            f"--memory={self.config.memory_limit}",
            f"--cpus={self.config.cpu_limit}",
            f"--pids-limit={self.config.pids_limit}",
            "--security-opt=no-new-privileges:true",
            image,
            "/bin/sh",
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.docker_timeout,
            )
        except subprocess.TimeoutExpired as e:
            subprocess.run(["docker", "rm", "-f", name], capture_output=True, timeout=10)
            raise ContainerCreateError(f"Container start timed out after {self.config.docker_timeout}s") from e
        if result.returncode != 0:
            raise ContainerCreateError(result.stderr.strip() or f"docker run {image} failed")

        container_id = result.stdout.strip()
        self.registry.add(container_id)
        logger.info(f"Started container {name} ({container_id[:12]}) from {image}")
        return ContainerSession(
            id=container_id,
            name=name,
            image=image,
            working_dir=working_dir,
            status=ContainerStatus.RUNNING,
        )

    def stop(self, session: ContainerSession) -> None:
        """Stop the container. Started with --rm, so the daemon removes it."""
        result = subprocess.run(
            ["docker", "stop", "--time=2", session.id],
            capture_output=True,
            text=True,
            timeout=self.config.docker_timeout,
        )
        if result.returncode != 0 and "No such container" not in result.stderr:
            raise SandboxError(f"Failed to stop container {session.name}: {result.stderr.strip()}")
        session.status = ContainerStatus.STOPPED

    def remove(self, session: ContainerSession) -> None:
        """Force-remove the container. Already-removed containers are not an error."""
        try:
            result = subprocess.run(
                ["docker", "rm", "-f", session.id],
                capture_output=True,
                text=True,
                timeout=self.config.docker_timeout,
            )
            if result.returncode != 0 and "No such container" not in result.stderr:
                raise SandboxError(f"Failed to remove container {session.name}: {result.stderr.strip()}")
        finally:
            self.registry.remove(session.id)
        session.status = ContainerStatus.REMOVED

    # --- Exec ---

    def exec(
        self,
        session: ContainerSession,
        command: str,
        *,
        shell: str = "/bin/sh",
        stdin: str | None = None,
        working_dir: str | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecResult:
        """Run `shell -c command` in the container, streaming combined output.

        Output beyond `capture_limit_bytes` is drained and discarded so a
        runaway command cannot exhaust host memory. On timeout or cancellation
        the docker client is killed and the partial output returned.
        """
        if shell not in ALLOWED_SHELLS:
            raise ContainerExecError(f"Unsupported shell '{shell}'. Use one of {ALLOWED_SHELLS}")

        cmd = ["docker", "exec", "-i"]
        if working_dir:
            cmd.extend(["-w", working_dir])
        cmd.extend([session.id, shell, "-c", command])

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise ContainerExecError(f"Failed to start docker exec: {e}") from e

        flags = {"timed_out": False, "cancelled": False}

        def kill(reason: str) -> None:
            flags[reason] = True
            if proc.poll() is None:
                proc.kill()

        timer = threading.Timer(timeout, kill, args=("timed_out",)) if timeout else None
        unregister = cancel_token.on_cancel(lambda: kill("cancelled")) if cancel_token else None

        def feed_stdin() -> None:
            try:
                if stdin:
                    proc.stdin.write(stdin.encode("utf-8"))
                proc.stdin.close()
            except (BrokenPipeError, OSError):
                pass  # Process exited without reading stdin

        writer = threading.Thread(target=feed_stdin, daemon=True)
        chunks: list[bytes] = []
        captured = 0
        overflow = False
        try:
            if timer:
                timer.start()
            writer.start()
            while True:
                chunk = proc.stdout.read1(65536)
                if not chunk:
                    break
                if captured < self.config.capture_limit_bytes:
                    keep = chunk[: self.config.capture_limit_bytes - captured]
                    chunks.append(keep)
                    captured += len(keep)
                    overflow = overflow or len(keep) < len(chunk)
                else:
                    overflow = True
            exit_code = proc.wait()
        finally:
            if timer:
                timer.cancel()
            if unregister:
                unregister()
            writer.join(timeout=5)
            proc.stdout.close()

        output = b"".join(chunks).decode("utf-8", errors="replace")
        if overflow:
            output += f"\n\n[OUTPUT TRUNCATED - exceeded {self.config.capture_limit_bytes} bytes]"
        if flags["timed_out"]:
            output += f"\n\n[Command timed out after {timeout:g}s]"
        elif flags["cancelled"]:
            output += "\n\n[Command cancelled]"
        return ExecResult(
            exit_code=exit_code,
            output=output,
            timed_out=flags["timed_out"],
            truncated=overflow,
            cancelled=flags["cancelled"],
        )

    def _exec_checked(self, session: ContainerSession, args: list[str], stdin: bytes | None = None) -> bytes:
        """Run a non-shell docker exec and return stdout. Raises on non-zero exit."""
        try:
            result = subprocess.run(
                ["docker", "exec", "-i", session.id, *args],
                input=stdin,
                capture_output=True,
                timeout=self.config.docker_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ContainerExecError(f"'{shlex.join(args)}' timed out") from e
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise ContainerExecError(stderr or f"'{shlex.join(args)}' exited with {result.returncode}")
        return result.stdout

    # --- Files ---

    def path_exists(self, session: ContainerSession, path: str) -> bool:
        try:
            self._exec_checked(session, ["test", "-e", path])
        except ContainerExecError:
            return False
        return True

    def read_file(self, session: ContainerSession, path: str) -> str:
        return self._exec_checked(session, ["cat", "--", path]).decode("utf-8", errors="replace")

    def write_file(self, session: ContainerSession, path: str, content: str) -> None:
        """Write content to a container file, creating parent directories."""
        script = 'mkdir -p "$(dirname "$1")" && cat > "$1"'
        self._exec_checked(
            session,
            ["/bin/sh", "-c", script, "sh", path],
            stdin=content.encode("utf-8"),
        )

    def put_archive(self, session: ContainerSession, container_dir: str, data: bytes) -> None:
        """Extract a tar stream into an existing container directory."""
        try:
            result = subprocess.run(
                ["docker", "cp", "-", f"{session.id}:{container_dir}"],
                input=data,
                capture_output=True,
                timeout=self.config.docker_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ContainerExecError(f"Copy into {container_dir} timed out") from e
        if result.returncode != 0:
            raise ContainerExecError(result.stderr.decode("utf-8", errors="replace").strip())

    def get_archive(self, session: ContainerSession, container_path: str) -> bytes:
        """Return a tar stream of a container path (file or directory)."""
        try:
            result = subprocess.run(
                ["docker", "cp", f"{session.id}:{container_path}", "-"],
                capture_output=True,
                timeout=self.config.docker_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ContainerExecError(f"Copy from {container_path} timed out") from e
        if result.returncode != 0:
            raise ContainerExecError(result.stderr.decode("utf-8", errors="replace").strip())
        return result.stdout
