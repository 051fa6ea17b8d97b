"""Isolated execution of the scanner.

A sandbox manager starts one scanner process per job, exposes its stdout as
an iterator of byte chunks, and guarantees the execution environment is torn
down by ``cleanup``. Two backends exist: docker containers with CPU, memory,
pid and capability limits, and plain local subprocesses for hosts without a
container runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import resource
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
from typing import Any, Iterator, Protocol, Sequence

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag
import requests

from scan_worker.config import Settings

logger = logging.getLogger(__name__)

WORKER_LABEL = "scan-worker.managed"
WORKER_ID_LABEL = "scan-worker.worker-id"
CONTAINER_OUTPUT_DIR = "/output"
_CPU_PERIOD = 100_000
_READ_CHUNK_BYTES = 64 * 1024
_THROTTLE_PERIOD_SECONDS = 0.1


class SandboxError(RuntimeError):
    pass


@dataclass
class SandboxHandle:
    id: str
    target: str


class SandboxManager(Protocol):
    def start(self, target: str, output_dir: Path) -> SandboxHandle: ...

    def stop(self, handle: SandboxHandle, grace_seconds: int) -> None: ...

    def stream_output(self, handle: SandboxHandle) -> Iterator[bytes]: ...

    def wait(self, handle: SandboxHandle, timeout: float | None = None) -> int: ...

    def cleanup(self, handle: SandboxHandle) -> None: ...


def render_scanner_args(args_template: str, target: str) -> list[str]:
    return [token.replace("{target}", target) for token in shlex.split(args_template)]


@dataclass
class DockerSandboxHandle(SandboxHandle):
    container: Any = None
    log_stream: Any = None


class DockerSandboxManager:
    def __init__(
        self,
        *,
        image: str,
        args_template: str,
        memory_limit_bytes: int,
        cpu_share: float,
        network_mode: str,
        pids_limit: int,
        worker_id: str,
        client: docker.DockerClient | None = None,
    ) -> None:
        self._image = image
        self._args_template = args_template
        self._memory_limit_bytes = memory_limit_bytes
        self._cpu_quota = max(1_000, int(cpu_share * _CPU_PERIOD))
        self._network_mode = network_mode
        self._pids_limit = pids_limit
        self._worker_id = worker_id
        self._client = client
        self._image_ready = False

    def _docker(self) -> docker.DockerClient:
        # Connecting negotiates the API version with the daemon, so it is deferred
        # until a job needs it.
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise SandboxError(f"docker daemon unavailable: {exc}") from exc
        return self._client

    def ensure_image(self) -> None:
        if self._image_ready:
            return

        try:
            self._docker().images.get(self._image)
            logger.info("sandbox image present image=%s", self._image)
        except ImageNotFound:
            logger.info("sandbox image not found, pulling image=%s (first run may take a while)", self._image)
            self._pull_image()
        except DockerException as exc:
            raise SandboxError(f"failed to inspect image {self._image}: {exc}") from exc

        self._image_ready = True

    def _pull_image(self) -> None:
        repository, tag = parse_repository_tag(self._image)
        try:
            for event in self._docker().api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                if event.get("error"):
                    raise SandboxError(f"failed to pull image {self._image}: {event['error']}")
                status = event.get("status")
                if not status:
                    continue
                layer = event.get("id")
                progress = event.get("progress")
                if progress:
                    logger.debug("pull progress image=%s layer=%s status=%s progress=%s", self._image, layer, status, progress)
                else:
                    logger.info("pull progress image=%s layer=%s status=%s", self._image, layer, status)
        except DockerException as exc:
            raise SandboxError(f"failed to pull image {self._image}: {exc}") from exc

        logger.info("sandbox image pulled image=%s", self._image)

    def start(self, target: str, output_dir: Path) -> DockerSandboxHandle:
        self.ensure_image()

        container = None
        try:
            container = self._docker().containers.create(
                self._image,
                command=render_scanner_args(self._args_template, target),
                detach=True,
                labels={WORKER_LABEL: "1", WORKER_ID_LABEL: self._worker_id},
                volumes={str(output_dir.resolve()): {"bind": CONTAINER_OUTPUT_DIR, "mode": "rw"}},
                mem_limit=self._memory_limit_bytes,
                memswap_limit=self._memory_limit_bytes,
                cpu_period=_CPU_PERIOD,
                cpu_quota=self._cpu_quota,
                pids_limit=self._pids_limit,
                network_mode=self._network_mode,
                cap_drop=["ALL"],
                security_opt=["no-new-privileges"],
            )
            container.start()
        except DockerException as exc:
            if container is not None:
                _remove_container(container)
            raise SandboxError(f"failed to start sandbox for {target}: {exc}") from exc

        logger.info("sandbox started container_id=%s target=%s", container.id, target)
        return DockerSandboxHandle(id=container.id, target=target, container=container)

    def stream_output(self, handle: SandboxHandle) -> Iterator[bytes]:
        docker_handle = _as_docker_handle(handle)
        try:
            docker_handle.log_stream = docker_handle.container.logs(
                stream=True,
                follow=True,
                stdout=True,
                stderr=False,
            )
        except DockerException as exc:
            raise SandboxError(f"failed to attach to sandbox output: {exc}") from exc
        return _drain(docker_handle)

    def stop(self, handle: SandboxHandle, grace_seconds: int) -> None:
        container = _as_docker_handle(handle).container
        try:
            container.stop(timeout=grace_seconds)
        except NotFound:
            return
        except DockerException as exc:
            logger.warning("graceful stop failed container_id=%s error=%s; killing", handle.id, exc)
            try:
                container.kill()
            except NotFound:
                return
            except DockerException as kill_exc:
                raise SandboxError(f"failed to kill sandbox {handle.id}: {kill_exc}") from kill_exc

    def wait(self, handle: SandboxHandle, timeout: float | None = None) -> int:
        container = _as_docker_handle(handle).container
        try:
            result = container.wait(timeout=timeout)
        except requests.exceptions.RequestException as exc:
            raise SandboxError(f"timed out waiting for sandbox {handle.id}: {exc}") from exc
        except DockerException as exc:
            raise SandboxError(f"failed waiting for sandbox {handle.id}: {exc}") from exc
        return int(result.get("StatusCode", -1))

    def cleanup(self, handle: SandboxHandle) -> None:
        docker_handle = _as_docker_handle(handle)
        if docker_handle.log_stream is not None:
            docker_handle.log_stream.close()
            docker_handle.log_stream = None
        _remove_container(docker_handle.container)

    def reap_orphans(self) -> int:
        """Remove containers this worker id left behind when it died mid-scan.

        Running orphans are killed as well: their deadline timer died with the
        previous worker process.
        """
        try:
            containers = self._docker().containers.list(
                all=True,
                filters={"label": [WORKER_LABEL, f"{WORKER_ID_LABEL}={self._worker_id}"]},
            )
        except DockerException as exc:
            raise SandboxError(f"failed to list sandbox containers: {exc}") from exc

        for container in containers:
            _remove_container(container)
        if containers:
            logger.info("removed orphaned sandboxes worker_id=%s count=%d", self._worker_id, len(containers))
        return len(containers)


def _as_docker_handle(handle: SandboxHandle) -> DockerSandboxHandle:
    if not isinstance(handle, DockerSandboxHandle):
        raise TypeError(f"expected DockerSandboxHandle, got {type(handle).__name__}")
    return handle


def _drain(handle: DockerSandboxHandle) -> Iterator[bytes]:
    for chunk in handle.log_stream:
        if chunk:
            yield chunk
    # Exhausted streams are released by the client; only abandoned ones need closing.
    handle.log_stream = None


def _remove_container(container: Any) -> None:
    try:
        container.remove(force=True)
    except NotFound:
        return
    except DockerException as exc:
        raise SandboxError(f"failed to remove sandbox {container.id}: {exc}") from exc


class _CpuThrottle:
    """Holds a process group to a share of wall-clock time with SIGSTOP/SIGCONT.

    Every period the group runs for ``share * period`` seconds and is then
    suspended for the remainder, so a single-threaded scanner gets at most
    ``share`` of one CPU.
    """

    def __init__(self, pgid: int, share: float, period_seconds: float = _THROTTLE_PERIOD_SECONDS) -> None:
        self._pgid = pgid
        self._run_seconds = period_seconds * share
        self._pause_seconds = period_seconds - self._run_seconds
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"cpu-throttle-{pgid}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Stop throttling and leave the group running. Safe to call repeatedly."""
        self._cancelled.set()
        self._thread.join()
        self._signal(signal.SIGCONT)

    def _loop(self) -> None:
        while not self._cancelled.wait(self._run_seconds):
            if not self._signal(signal.SIGSTOP):
                return
            self._cancelled.wait(self._pause_seconds)
            if not self._signal(signal.SIGCONT):
                return

    def _signal(self, signum: int) -> bool:
        try:
            os.killpg(self._pgid, signum)
        except ProcessLookupError:
            return False
        return True


@dataclass
class ProcessSandboxHandle(SandboxHandle):
    process: subprocess.Popen[bytes] | None = None
    workdir: Path | None = None
    throttle: _CpuThrottle | None = None


class ProcessSandboxManager:
    def __init__(
        self,
        *,
        command: Sequence[str],
        args_template: str,
        memory_limit_bytes: int | None = None,
        cpu_share: float | None = None,
    ) -> None:
        self._command = list(command)
        self._args_template = args_template
        self._memory_limit_bytes = memory_limit_bytes
        self._cpu_share = cpu_share

    def _apply_memory_limit(self, process: subprocess.Popen[bytes]) -> None:
        # Applied from the parent: the deadline timer thread is already running,
        # and preexec_fn is not safe once the worker has threads.
        limit = self._memory_limit_bytes
        if limit is None:
            return
        try:
            resource.prlimit(process.pid, resource.RLIMIT_AS, (limit, limit))
        except ProcessLookupError:
            pass

    def start(self, target: str, output_dir: Path) -> ProcessSandboxHandle:
        argv = self._command + render_scanner_args(self._args_template, target)
        workdir = Path(tempfile.mkdtemp(prefix="scan-sandbox-"))
        env = dict(os.environ)
        env["SCAN_OUTPUT_DIR"] = str(output_dir.resolve())
        env["HOME"] = str(workdir)

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                cwd=workdir,
                env=env,
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise SandboxError(f"failed to start scanner {argv[0]}: {exc}") from exc

        handle = ProcessSandboxHandle(
            id=str(process.pid),
            target=target,
            process=process,
            workdir=workdir,
        )
        try:
            self._apply_memory_limit(process)
        except OSError as exc:
            self.cleanup(handle)
            raise SandboxError(f"failed to limit scanner memory pid={process.pid}: {exc}") from exc

        if self._cpu_share is not None and self._cpu_share < 1.0:
            handle.throttle = _CpuThrottle(process.pid, self._cpu_share)
            handle.throttle.start()

        logger.info("sandbox started pid=%d target=%s cpu_share=%s", process.pid, target, self._cpu_share)
        return handle

    def stream_output(self, handle: SandboxHandle) -> Iterator[bytes]:
        process = _as_process_handle(handle).process
        if process is None or process.stdout is None:
            raise SandboxError(f"sandbox {handle.id} has no output channel")
        return iter(lambda: process.stdout.read1(_READ_CHUNK_BYTES), b"")

    def stop(self, handle: SandboxHandle, grace_seconds: int) -> None:
        process_handle = _as_process_handle(handle)
        process = process_handle.process
        if process is None or process.poll() is not None:
            return

        # A suspended group would only see SIGTERM once resumed.
        if process_handle.throttle is not None:
            process_handle.throttle.cancel()

        _signal_group(process, signal.SIGTERM)
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("sandbox ignored SIGTERM pid=%d; killing", process.pid)
            _signal_group(process, signal.SIGKILL)
            process.wait()

    def wait(self, handle: SandboxHandle, timeout: float | None = None) -> int:
        process = _as_process_handle(handle).process
        if process is None:
            raise SandboxError(f"sandbox {handle.id} was never started")
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise SandboxError(f"timed out waiting for sandbox {handle.id}") from exc

    def cleanup(self, handle: SandboxHandle) -> None:
        process_handle = _as_process_handle(handle)
        if process_handle.throttle is not None:
            process_handle.throttle.cancel()
        process = process_handle.process
        if process is not None:
            if process.poll() is None:
                _signal_group(process, signal.SIGKILL)
                process.wait()
            if process.stdout is not None:
                process.stdout.close()
        if process_handle.workdir is not None:
            shutil.rmtree(process_handle.workdir, ignore_errors=True)
            process_handle.workdir = None


def _as_process_handle(handle: SandboxHandle) -> ProcessSandboxHandle:
    if not isinstance(handle, ProcessSandboxHandle):
        raise TypeError(f"expected ProcessSandboxHandle, got {type(handle).__name__}")
    return handle


def _signal_group(process: subprocess.Popen[bytes], signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass


def build_sandbox_manager(settings: Settings) -> SandboxManager:
    if settings.sandbox_backend == "docker":
        return DockerSandboxManager(
            image=settings.scanner_image,
            args_template=settings.scanner_args,
            memory_limit_bytes=settings.memory_limit_bytes,
            cpu_share=settings.cpu_share,
            network_mode=settings.docker_network_mode,
            pids_limit=settings.pids_limit,
            worker_id=settings.worker_id,
        )
    if settings.sandbox_backend == "process":
        return ProcessSandboxManager(
            command=shlex.split(settings.scanner_binary),
            args_template=settings.scanner_args,
            memory_limit_bytes=settings.memory_limit_bytes,
            cpu_share=settings.cpu_share,
        )
    raise ValueError(f"Unsupported sandbox backend: {settings.sandbox_backend}")
