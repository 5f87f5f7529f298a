from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from zen.config import WorkerSettings, ZenConfig
from zen.services.browser import BrowserManager
from zen.services.worker import RESULT_FILENAME, WorkerExecutionLoop, handle_invocation

LOGGER = logging.getLogger("zen.invoke")

PROJECT_ROOT = Path(__file__).resolve().parents[2]
WORKER_DOCKERFILE = "Dockerfile.worker"
WORKSPACE_MOUNT = "/workspace"
PAYLOAD_FILENAME = "payload.json"
CONTAINER_GRACE_SECONDS = 30


class RemoteInvocationError(RuntimeError):
    def __init__(self, function_name: str, message: str) -> None:
        super().__init__(f"{function_name}: {message}")
        self.function_name = function_name


class RemoteInvoker:
    """Calls a remote worker function and returns its decoded JSON response."""

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - interface stub
        raise NotImplementedError


class LocalInvoker(RemoteInvoker):
    """Runs worker handlers in this process; concurrent calls share one browser."""

    def __init__(self, loop: Any = None) -> None:
        self._loop = loop

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        log_stream = f"local-{uuid.uuid4().hex[:8]}"
        try:
            return handle_invocation(function_name, payload, loop=self._loop, log_stream_name=log_stream)
        except ValueError as exc:
            raise RemoteInvocationError(function_name, str(exc)) from exc


class HttpInvoker(RemoteInvoker):
    """POSTs payloads to a worker service's ``/api/invoke/<function>`` endpoint."""

    def __init__(self, base_url: str, *, timeout: float = 330.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/api/invoke/{function_name}"
        body = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise RemoteInvocationError(function_name, f"HTTP {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RemoteInvocationError(function_name, f"worker unreachable: {exc}") from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise RemoteInvocationError(function_name, "worker returned invalid JSON") from exc


@dataclass
class WorkerContainerSpec:
    """One worker container: the invocation workspace is mounted at ``/workspace``."""

    image: str
    command: List[str]
    name: str
    workspace: Path
    environment: Dict[str, str] = field(default_factory=dict)
    shm_size: str = "1g"
    extra_hosts: Dict[str, str] = field(default_factory=lambda: {"host.docker.internal": "host-gateway"})


@dataclass(frozen=True)
class ContainerState:
    status: str
    exit_code: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.status in {"exited", "dead"}

    @property
    def missing(self) -> bool:
        return self.status == "not_found"


def _decode(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="ignore")
    return str(raw)


class WorkerContainer:
    id: str

    def state(self) -> ContainerState:  # pragma: no cover - interface stub
        raise NotImplementedError

    def output(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def kill(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def remove(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class SDKWorkerContainer(WorkerContainer):
    def __init__(self, container: Any) -> None:
        self._container = container
        self.id = container.id

    def state(self) -> ContainerState:
        try:
            self._container.reload()
        except NotFound:
            return ContainerState("not_found")
        except APIError as exc:
            LOGGER.debug("Failed to poll container %s: %s", self.id, exc)
            return ContainerState("unknown")
        code = (self._container.attrs.get("State") or {}).get("ExitCode")
        return ContainerState(self._container.status, int(code) if code is not None else None)

    def output(self) -> str:
        try:
            return _decode(self._container.logs())
        except APIError as exc:
            LOGGER.debug("Failed to read logs of container %s: %s", self.id, exc)
            return ""

    def kill(self) -> None:
        try:
            self._container.kill()
        except APIError as exc:
            LOGGER.warning("Failed to kill container %s: %s", self.id, exc)

    def remove(self) -> None:
        try:
            self._container.remove(force=True)
        except APIError as exc:
            LOGGER.warning("Failed to remove container %s: %s", self.id, exc)


class CLIWorkerContainer(WorkerContainer):
    def __init__(self, container_id: str) -> None:
        self.id = container_id

    def state(self) -> ContainerState:
        proc = subprocess.run(
            ["docker", "inspect", "-f", "{{.State.Status}} {{.State.ExitCode}}", self.id],
            capture_output=True,
            text=True,
            check=False,
        )
        if proc.returncode != 0:
            if "no such" in (proc.stderr or "").lower():
                return ContainerState("not_found")
            return ContainerState("unknown")
        parts = proc.stdout.split()
        if not parts:
            return ContainerState("unknown")
        try:
            code: Optional[int] = int(parts[1])
        except (IndexError, ValueError):
            code = None
        return ContainerState(parts[0], code)

    def output(self) -> str:
        proc = subprocess.run(["docker", "logs", self.id], capture_output=True, text=True, check=False)
        return (proc.stdout or "") + (proc.stderr or "")

    def kill(self) -> None:
        subprocess.run(["docker", "kill", self.id], capture_output=True, text=True, check=False)

    def remove(self) -> None:
        subprocess.run(["docker", "rm", "-f", self.id], capture_output=True, text=True, check=False)


class DockerBackend:
    def run(self, spec: WorkerContainerSpec) -> WorkerContainer:  # pragma: no cover - interface stub
        raise NotImplementedError

    def image_exists(self, image: str) -> bool:  # pragma: no cover - interface stub
        raise NotImplementedError


class DockerSDKBackend(DockerBackend):
    def __init__(self, client: Any = None) -> None:
        self._client = client or docker.from_env()

    def run(self, spec: WorkerContainerSpec) -> WorkerContainer:
        container = self._client.containers.run(
            spec.image,
            spec.command,
            detach=True,
            name=spec.name,
            environment=spec.environment,
            volumes={str(spec.workspace.resolve()): {"bind": WORKSPACE_MOUNT, "mode": "rw"}},
            working_dir=WORKSPACE_MOUNT,
            shm_size=spec.shm_size,
            extra_hosts=spec.extra_hosts,
        )
        return SDKWorkerContainer(container)

    def image_exists(self, image: str) -> bool:
        try:
            self._client.images.get(image)
        except NotFound:
            return False
        return True


class DockerCLIBackend(DockerBackend):
    @staticmethod
    def run_args(spec: WorkerContainerSpec) -> List[str]:
        # No --rm: result.json and the logs are read after exit.
        args = ["docker", "run", "-d", "--name", spec.name, "--shm-size", spec.shm_size]
        for host, target in spec.extra_hosts.items():
            args.extend(["--add-host", f"{host}:{target}"])
        args.extend(["-v", f"{spec.workspace.resolve()}:{WORKSPACE_MOUNT}:rw", "-w", WORKSPACE_MOUNT])
        for key, value in spec.environment.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(spec.image)
        args.extend(spec.command)
        return args

    def run(self, spec: WorkerContainerSpec) -> WorkerContainer:
        proc = subprocess.run(self.run_args(spec), capture_output=True, text=True, check=False)
        if proc.returncode != 0:
            raise RuntimeError(proc.stderr.strip() or "docker run failed")
        return CLIWorkerContainer(proc.stdout.strip().splitlines()[-1])

    def image_exists(self, image: str) -> bool:
        proc = subprocess.run(
            ["docker", "image", "inspect", image],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
        return proc.returncode == 0


def default_docker_backend() -> DockerBackend:
    """Docker SDK backend, or the docker CLI when the SDK cannot reach a daemon."""
    try:
        return DockerSDKBackend()
    except DockerException as exc:
        LOGGER.info("Docker SDK cannot reach the daemon (%s); falling back to CLI backend", exc)
        return DockerCLIBackend()


def _last_json_line(text: str) -> Optional[Dict[str, Any]]:
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            value = json.loads(line)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


class DockerInvoker(RemoteInvoker):
    """Runs each invocation in an ephemeral worker container.

    The payload is written into a per-invocation workspace mounted at
    ``/workspace``; the worker writes ``result.json`` beside it. The
    container is named after the invocation's log stream so its logs can be
    found from a failing test's ``log_stream``.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        image: str,
        workspace_root: Path,
        timeout_seconds: int,
        backend: Optional[DockerBackend] = None,
        poll_interval: float = 0.5,
        grace_seconds: float = CONTAINER_GRACE_SECONDS,
    ) -> None:
        self._settings = settings
        self._image = image
        self._workspace_root = workspace_root
        self._timeout = timeout_seconds
        self._backend = backend or default_docker_backend()
        self._poll_interval = poll_interval
        self._grace = grace_seconds
        self._image_lock = threading.Lock()
        self._image_verified = False

    @property
    def image(self) -> str:
        return self._image

    def _ensure_worker_image(self) -> None:
        with self._image_lock:
            if self._image_verified:
                return
            if self._backend.image_exists(self._image):
                self._image_verified = True
                return

            dockerfile_path = PROJECT_ROOT / WORKER_DOCKERFILE
            if not dockerfile_path.exists():
                raise RuntimeError(
                    f"Docker image '{self._image}' not found and {dockerfile_path.name} is missing. "
                    "Build the worker image manually or configure an alternate image."
                )
            LOGGER.info("Worker image '%s' not found; building from %s", self._image, dockerfile_path.name)
            build_cmd = ["docker", "build", "-f", str(dockerfile_path), "-t", self._image, str(PROJECT_ROOT)]
            build_proc = subprocess.run(build_cmd, capture_output=True, text=True, check=False)
            if build_proc.returncode != 0:
                error_output = build_proc.stderr.strip() or build_proc.stdout.strip() or "docker build failed"
                raise RuntimeError(f"Failed to build worker image '{self._image}': {error_output}")
            self._image_verified = True

    def _wait_for_container(self, container: WorkerContainer, *, timeout: float) -> Optional[ContainerState]:
        deadline = time.time() + timeout
        while time.time() < deadline:
            state = container.state()
            if state.finished or state.missing:
                return state
            time.sleep(self._poll_interval)
        return None

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        invocation_id = uuid.uuid4().hex[:12]
        log_stream = f"zen-worker-{invocation_id}"
        workspace = self._workspace_root / invocation_id
        workspace.mkdir(parents=True, exist_ok=True)
        (workspace / PAYLOAD_FILENAME).write_text(json.dumps(payload), encoding="utf-8")
        spec = WorkerContainerSpec(
            image=self._image,
            command=["python", "-m", "zen.services.worker", function_name, PAYLOAD_FILENAME],
            name=log_stream,
            workspace=workspace,
            environment=replace(self._settings, log_stream_name=log_stream).to_env(),
        )

        try:
            try:
                self._ensure_worker_image()
                container = self._backend.run(spec)
            except (RuntimeError, OSError, DockerException) as exc:
                raise RemoteInvocationError(function_name, f"container launch failed: {exc}") from exc

            LOGGER.debug("Started %s for %s", log_stream, function_name)
            try:
                budget = self._timeout + self._grace
                state = self._wait_for_container(container, timeout=budget)
                if state is None:
                    container.kill()
                    raise RemoteInvocationError(
                        function_name,
                        f"container {log_stream} did not finish within {budget}s",
                    )
                logs = container.output()
                result = self._read_result(workspace, logs)
                if state.exit_code != 0 or result is None:
                    detail = (result or {}).get("error") or logs.strip()[-500:] or "no output"
                    raise RemoteInvocationError(function_name, f"exit code {state.exit_code}: {detail}")
                return result
            finally:
                container.remove()
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    @staticmethod
    def _read_result(workspace: Path, logs: str) -> Optional[Dict[str, Any]]:
        result_path = workspace / RESULT_FILENAME
        if result_path.exists():
            try:
                value = json.loads(result_path.read_text(encoding="utf-8"))
            except ValueError:
                value = None
            if isinstance(value, dict):
                return value
        return _last_json_line(logs)


def build_invoker(config: ZenConfig) -> RemoteInvoker:
    if config.invoker == "http":
        if not config.worker_url:
            raise ValueError("worker_url is required for the http invoker")
        return HttpInvoker(config.worker_url, timeout=config.invocation_timeout_seconds + CONTAINER_GRACE_SECONDS)
    if config.invoker == "docker":
        return DockerInvoker(
            WorkerSettings.from_config(config),
            image=config.worker_image,
            workspace_root=config.tmp_dir / "invocations",
            timeout_seconds=config.invocation_timeout_seconds,
        )

    settings = WorkerSettings.from_config(config)
    settings.gateway_url = f"http://127.0.0.1:{config.port}"
    manager = BrowserManager(width=config.chrome.width, height=config.chrome.height)
    return LocalInvoker(WorkerExecutionLoop(manager, settings))
