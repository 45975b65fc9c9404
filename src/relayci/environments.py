# environments.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import EnvironmentProvisionError, RelayError

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "sh": "A POSIX shell is required to run steps.",
    "git": "Install Git or fix PATH.",
}

# Output kept per stream (so a chatty step cannot blow up the run record)
MAX_CAPTURE = 64_000


@dataclass(frozen=True)
class Invocation:
    """What one command produced."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    outputs: Mapping[str, str] = field(default_factory=dict)
    timed_out: bool = False


def _tail(text: Optional[str]) -> str:
    text = text or ""
    return text[-MAX_CAPTURE:]


class Environment:
    """
    An isolated place to run one job's steps.

    Lifecycle: provision() -> invoke()* -> teardown(). Use as a context
    manager so teardown runs on success, failure and cancellation alike.
    """

    def __init__(self, job: str, *, base_dir: Path, keep: bool = False):
        self.job = job
        self.base_dir = Path(base_dir)
        self.keep = keep
        self.workspace: Optional[Path] = None
        self._procs: set[subprocess.Popen] = set()
        self._procs_lock = threading.Lock()

    # ---- lifecycle ----

    def provision(self) -> Path:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in self.job)
            self.workspace = Path(tempfile.mkdtemp(prefix=f"{safe}-", dir=str(self.base_dir)))
        except OSError as e:
            raise EnvironmentProvisionError(
                f"Could not create workspace for job '{self.job}': {e}",
                details={"base_dir": str(self.base_dir)},
            ) from e
        return self.workspace

    def teardown(self) -> None:
        self.terminate()
        if self.workspace is not None and not self.keep:
            shutil.rmtree(self.workspace, ignore_errors=True)

    def __enter__(self) -> "Environment":
        self.provision()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    # ---- execution ----

    def require_workspace(self) -> Path:
        if self.workspace is None:
            raise RelayError(f"Environment for '{self.job}' is not provisioned")
        return self.workspace

    def resolve_cwd(self, cwd: Optional[str]) -> Path:
        ws = self.require_workspace().resolve()
        path = (ws / (cwd or ".")).resolve()
        if path != ws and ws not in path.parents:
            raise RelayError(f"Working directory {cwd!r} escapes the workspace")
        return path

    def command(self, command: str, env: Mapping[str, str], workdir: Path) -> list[str]:
        raise NotImplementedError

    def process_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        raise NotImplementedError

    def invoke(
        self,
        command: str,
        env: Mapping[str, str],
        workdir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Invocation:
        """Run `command` inside the environment; never raises for a non-zero exit."""
        cwd = self.resolve_cwd(workdir)
        if not cwd.exists():
            return Invocation(exit_code=1, stderr=f"working directory not found: {cwd}\n")

        argv = self.command(command, env, cwd)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=self.process_env(env),
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            tool = argv[0]
            return Invocation(exit_code=127, stderr=f"{e}\nHint: {TOOL_HINTS.get(tool, f'Install {tool} or fix PATH.')}\n")

        with self._procs_lock:
            self._procs.add(proc)
        try:
            try:
                out, err = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                _kill(proc)
                out, err = proc.communicate()
                return Invocation(
                    exit_code=124,
                    stdout=_tail(out),
                    stderr=_tail(err) + f"\nstep timed out after {timeout}s\n",
                    timed_out=True,
                )
        finally:
            with self._procs_lock:
                self._procs.discard(proc)
        return Invocation(exit_code=proc.returncode, stdout=_tail(out), stderr=_tail(err))

    def terminate(self) -> None:
        """Preempt any running command (used on cancellation)."""
        with self._procs_lock:
            procs = list(self._procs)
        for p in procs:
            if p.poll() is None:
                _kill(p)


def _kill(proc: subprocess.Popen) -> None:
    # the step runs in its own session; take the whole process group down
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class LocalEnvironment(Environment):
    """Fresh temporary workspace; each step is a separate `sh -c` process."""

    def command(self, command: str, env: Mapping[str, str], workdir: Path) -> list[str]:
        return ["sh", "-c", command]

    def process_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        merged = os.environ.copy()
        merged.update(env)
        return merged


class DockerEnvironment(Environment):
    """
    Steps run through `docker run --rm` with the workspace mounted at
    /workspace. The container only sees the variables passed explicitly.

    Each step runs in a named container that is force-removed on timeout
    and on terminate().
    """

    container_workdir = "/workspace"

    def __init__(self, job: str, image: str, *, base_dir: Path, keep: bool = False):
        super().__init__(job, base_dir=base_dir, keep=keep)
        self.image = image
        self._containers: set[str] = set()
        self._containers_lock = threading.Lock()
        self._local = threading.local()

    def container_name(self) -> str:
        safe = "".join(c if c.isalnum() or c in "-_." else "-" for c in self.job)
        return f"relayci-{safe}-{uuid.uuid4().hex[:12]}"

    def invoke(
        self,
        command: str,
        env: Mapping[str, str],
        workdir: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Invocation:
        name = self.container_name()
        with self._containers_lock:
            self._containers.add(name)
        self._local.container = name
        try:
            inv = super().invoke(command, env, workdir, timeout)
            if inv.timed_out:
                _remove_container(name)
            return inv
        finally:
            self._local.container = None
            with self._containers_lock:
                self._containers.discard(name)

    def terminate(self) -> None:
        super().terminate()
        with self._containers_lock:
            names = list(self._containers)
        for name in names:
            _remove_container(name)

    def provision(self) -> Path:
        _check_docker_available()
        return super().provision()

    def command(self, command: str, env: Mapping[str, str], workdir: Path) -> list[str]:
        ws = self.require_workspace().resolve()
        rel = workdir.relative_to(ws).as_posix()
        container_cwd = self.container_workdir if rel == "." else f"{self.container_workdir}/{rel}"

        cmd = ["docker", "run", "--rm"]
        name = getattr(self._local, "container", None)
        if name:
            cmd.extend(["--name", name])
        cmd.extend(["-v", f"{ws}:{self.container_workdir}", "-w", container_cwd])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={_to_container_path(value, ws, self.container_workdir)}"])
        cmd.append(self.image)
        cmd.extend(["sh", "-c", command])
        return cmd

    def process_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        return os.environ.copy()


def _to_container_path(value: str, host_root: Path, container_root: str) -> str:
    # paths inside the workspace (e.g. the output file) must be rewritten for the container
    host = str(host_root)
    if value.startswith(host):
        return container_root + value[len(host):]
    return value


def _remove_container(name: str) -> None:
    try:
        subprocess.run(["docker", "rm", "-f", name], capture_output=True, check=False)
    except FileNotFoundError:
        pass


def _check_docker_available() -> None:
    """Check if Docker is available, raise a provisioning error if not."""
    try:
        subprocess.run(["docker", "version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise EnvironmentProvisionError(
            "Docker is not available",
            details={"error": str(e)},
            hint=TOOL_HINTS["docker"],
        ) from e


def provision_for(job, *, base_dir: Path, keep: bool = False) -> Environment:
    """Pick the environment class a job asks for."""
    if getattr(job, "container", None):
        return DockerEnvironment(job.name, job.container, base_dir=base_dir, keep=keep)
    return LocalEnvironment(job.name, base_dir=base_dir, keep=keep)
