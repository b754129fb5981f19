"""Sandbox lifecycle contract and its Docker backend."""

from __future__ import annotations

import io
import posixpath
import shlex
import sys
import tarfile
import threading
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Optional, Protocol, Sequence, Union

import docker
from docker.errors import APIError, DockerException, NotFound

Command = Union[str, Sequence[str]]

TIMEOUT_EXIT_CODES = (124, 137)


@dataclass
class ExecResult:
    """Output of one command run inside a sandbox."""

    output: str
    exit_code: int
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxError(RuntimeError):
    """A sandbox operation failed."""


class SandboxTimeoutError(SandboxError):
    """A sandbox command exceeded its time budget."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class SandboxCopyError(SandboxError):
    """Copying files into or out of a sandbox failed."""


class SandboxController(Protocol):
    """Narrow lifecycle contract every sandbox backend implements."""

    def create(self, image: str, name: str, workdir: str = "/", env: Optional[dict[str, str]] = None) -> str:
        ...

    def start(self, sandbox_id: str) -> None:
        ...

    def exec(self, sandbox_id: str, cmd: Command, timeout: float) -> ExecResult:
        ...

    def copy_in(self, sandbox_id: str, src: str | Path, dst: str) -> None:
        ...

    def copy_out(self, sandbox_id: str, src: str, dst: str | Path) -> None:
        ...

    def stop(self, sandbox_id: str, timeout: float = 10) -> None:
        ...

    def remove(self, sandbox_id: str, force: bool = True) -> None:
        ...


def teardown(controller: SandboxController, sandbox_id: str, stop_timeout: float = 10) -> None:
    """Stop then remove a sandbox, warning instead of raising."""

    try:
        controller.stop(sandbox_id, timeout=stop_timeout)
    except SandboxError as exc:
        print(f"[Sandbox] Warning: could not stop {sandbox_id}: {exc}", file=sys.stderr)
    try:
        controller.remove(sandbox_id, force=True)
    except SandboxError as exc:
        print(f"[Sandbox] Warning: could not remove {sandbox_id}: {exc}", file=sys.stderr)


def build_tar(src: str | Path, arcname: str) -> bytes:
    """Pack a file or directory tree into an in-memory tar stream."""

    source = Path(src)
    if not source.exists():
        raise SandboxCopyError(f"Copy source does not exist: {source}")
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        archive.add(str(source), arcname=arcname, recursive=True)
    return buffer.getvalue()


def extract_tar(data: bytes, member_root: str, dst: str | Path) -> None:
    """Unpack a tar stream rooted at ``member_root`` so that root lands at ``dst``."""

    destination = Path(dst)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as archive:
        members = archive.getmembers()
        if not members:
            raise SandboxCopyError(f"Empty archive for {member_root}")
        for member in members:
            name = posixpath.normpath(member.name)
            if name == member_root:
                relative = ""
            elif name.startswith(member_root + "/"):
                relative = name[len(member_root) + 1 :]
            else:
                continue
            if relative.startswith("..") or posixpath.isabs(relative):
                raise SandboxCopyError(f"Refusing to extract unsafe path: {member.name}")
            target = destination / relative if relative else destination
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                extracted = archive.extractfile(member)
                if extracted is None:
                    continue
                with extracted, target.open("wb") as file_obj:
                    file_obj.write(extracted.read())


class DockerSandboxController:
    """Docker containers as disposable sandboxes.

    Containers are created idle (``sleep infinity``) and all work goes
    through ``exec``.
    """

    IDLE_COMMAND = ["sleep", "infinity"]

    def __init__(self, client=None, kill_grace_seconds: float = 5.0) -> None:
        self.client = client if client is not None else docker.from_env()
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))

    def _container(self, sandbox_id: str):
        try:
            return self.client.containers.get(sandbox_id)
        except NotFound as exc:
            raise SandboxError(f"Unknown sandbox: {sandbox_id}") from exc
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Docker error looking up {sandbox_id}: {exc}") from exc

    def create(self, image: str, name: str, workdir: str = "/", env: Optional[dict[str, str]] = None) -> str:
        try:
            stale = self.client.containers.get(name)
        except NotFound:
            stale = None
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Docker error checking for {name}: {exc}") from exc
        if stale is not None:
            print(f"[Sandbox] removing stale container {name}")
            try:
                stale.remove(force=True)
            except (APIError, DockerException) as exc:
                raise SandboxError(f"Could not remove stale container {name}: {exc}") from exc

        try:
            container = self.client.containers.create(
                image,
                command=self.IDLE_COMMAND,
                name=name,
                working_dir=workdir,
                environment=dict(env or {}),
                tty=True,
            )
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Could not create sandbox {name} from {image}: {exc}") from exc
        return str(container.id)

    def start(self, sandbox_id: str) -> None:
        container = self._container(sandbox_id)
        try:
            container.start()
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Could not start sandbox {sandbox_id}: {exc}") from exc

    def _wrap_command(self, cmd: Command, timeout: float) -> list[str]:
        shell_cmd = cmd if isinstance(cmd, str) else shlex.join(list(cmd))
        return [
            "timeout",
            "--kill-after",
            f"{self.kill_grace_seconds:g}s",
            f"{max(1.0, float(timeout)):g}s",
            "sh",
            "-c",
            shell_cmd,
        ]

    def exec(self, sandbox_id: str, cmd: Command, timeout: float) -> ExecResult:
        """Run ``cmd`` with a hard time limit.

        The in-container ``timeout`` kills the process so later calls on the
        same sandbox are unaffected; the client-side wait covers a hung
        daemon connection.
        """

        container = self._container(sandbox_id)
        wrapped = self._wrap_command(cmd, timeout)
        result_box: dict[str, object] = {}
        error_box: dict[str, BaseException] = {}

        def _target() -> None:
            try:
                result_box["result"] = container.exec_run(wrapped, demux=False)
            except BaseException as exc:
                error_box["error"] = exc

        started = perf_counter()
        thread = threading.Thread(target=_target, daemon=True)
        thread.start()
        thread.join(timeout=float(timeout) + 2 * self.kill_grace_seconds + 1.0)
        elapsed = perf_counter() - started

        if thread.is_alive():
            raise SandboxTimeoutError(f"Command timed out after {timeout}s in {sandbox_id}")
        if "error" in error_box:
            error = error_box["error"]
            raise SandboxError(f"Exec failed in {sandbox_id}: {error}") from error

        raw = result_box.get("result")
        raw_exit_code = getattr(raw, "exit_code", None)
        exit_code = int(raw_exit_code) if raw_exit_code is not None else -1
        output_bytes = getattr(raw, "output", b"") or b""
        output = output_bytes.decode("utf-8", errors="replace") if isinstance(output_bytes, bytes) else str(output_bytes)
        if exit_code in TIMEOUT_EXIT_CODES and elapsed >= float(timeout):
            raise SandboxTimeoutError(f"Command timed out after {timeout}s in {sandbox_id}", output=output)
        return ExecResult(output=output, exit_code=exit_code, duration_seconds=elapsed)

    def copy_in(self, sandbox_id: str, src: str | Path, dst: str) -> None:
        container = self._container(sandbox_id)
        dst = posixpath.normpath(dst)
        parent = posixpath.dirname(dst) or "/"
        data = build_tar(src, arcname=posixpath.basename(dst))
        try:
            container.exec_run(["mkdir", "-p", parent])
            if not container.put_archive(parent, data):
                raise SandboxCopyError(f"Docker refused archive for {dst} in {sandbox_id}")
        except (APIError, DockerException) as exc:
            raise SandboxCopyError(f"Copy into {sandbox_id}:{dst} failed: {exc}") from exc

    def copy_out(self, sandbox_id: str, src: str, dst: str | Path) -> None:
        container = self._container(sandbox_id)
        src = posixpath.normpath(src)
        try:
            stream, _stat = container.get_archive(src)
            data = b"".join(stream)
        except (APIError, DockerException) as exc:
            raise SandboxCopyError(f"Copy out of {sandbox_id}:{src} failed: {exc}") from exc
        extract_tar(data, member_root=posixpath.basename(src), dst=dst)

    def stop(self, sandbox_id: str, timeout: float = 10) -> None:
        container = self._container(sandbox_id)
        try:
            container.stop(timeout=int(timeout))
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Could not stop sandbox {sandbox_id}: {exc}") from exc

    def remove(self, sandbox_id: str, force: bool = True) -> None:
        try:
            container = self.client.containers.get(sandbox_id)
        except NotFound:
            return
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Docker error looking up {sandbox_id}: {exc}") from exc
        try:
            container.remove(force=force)
        except NotFound:
            return
        except (APIError, DockerException) as exc:
            raise SandboxError(f"Could not remove sandbox {sandbox_id}: {exc}") from exc
