"""
Backends the game-server monitor delegates to.

The monitor never touches a process, a container runtime or a repository
directly: it talks to three small capabilities, each an abstract base class
with one default implementation.

● Scripts:
    - `ProcessRunner.run(path, *args)`          : run, discard output.
    - `ProcessRunner.run_captured(path, *args)` : run, return stdout+stderr.
      Both return a `RunResult`; neither raises for a failed script.
● Container runtime:
    - `ContainerStatusProvider.status(container)` : `ContainerStatus`, or
      raise `ContainerStatusError`.
● Repository (read-only, one call per stage):
    - `RepositoryMetadataProvider.open(path)`       : repository handle.
    - `RepositoryMetadataProvider.head(repo)`       : sha HEAD points at.
    - `RepositoryMetadataProvider.commit(repo, sha)`: `RawCommit`.
      Every stage raises `RepositoryError`.

Nothing here applies a deadline on its own. `ProcessRunner` accepts a
`timeout` for callers that want one.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import docker
import docker.errors
import requests.exceptions

log = logging.getLogger("monitor_backends")


class MonitorBackendError(Exception):
    """Base class for failures reported by a backend."""


class ContainerStatusError(MonitorBackendError):
    """The container runtime could not say whether the container runs."""


class RepositoryError(MonitorBackendError):
    """A repository stage (open, HEAD, commit) failed."""


# ---------- results -------------------------------------------------------- #
@dataclass(frozen=True)
class RunResult:
    ok: bool
    error: Optional[str] = None   # opaque, e.g. "exit status 1"
    output: str = ""              # combined stdout+stderr, capture only


@dataclass(frozen=True)
class ContainerStatus:
    exists: bool
    running: bool


@dataclass(frozen=True)
class RawCommit:
    sha: str
    message: str
    committed_at: datetime        # aware, in the committer's own offset


# ---------- process runner ------------------------------------------------- #
class ProcessRunner(ABC):
    @abstractmethod
    def run(self, path: str, *args: str, timeout: Optional[float] = None) -> RunResult: ...

    @abstractmethod
    def run_captured(self, path: str, *args: str, timeout: Optional[float] = None) -> RunResult: ...


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.strsignal(-returncode).lower()}"
        except (ValueError, AttributeError):
            return f"signal: {-returncode}"
    return f"exit status {returncode}"


def _decode(raw: Optional[bytes]) -> str:
    return raw.decode("utf-8", errors="replace") if raw else ""


class SubprocessRunner(ProcessRunner):
    """Runs executables with `subprocess`, blocking until they exit."""

    def run(self, path: str, *args: str, timeout: Optional[float] = None) -> RunResult:
        return self._exec([path, *args], capture=False, timeout=timeout)

    def run_captured(self, path: str, *args: str, timeout: Optional[float] = None) -> RunResult:
        return self._exec([path, *args], capture=True, timeout=timeout)

    def _exec(self, cmd: list[str], *, capture: bool, timeout: Optional[float]) -> RunResult:
        log.debug("exec %s", cmd)
        try:
            proc = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if capture else subprocess.DEVNULL,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return RunResult(False, f"timed out after {timeout}s", _decode(exc.output))
        except OSError as exc:
            return RunResult(False, f"exec {cmd[0]}: {exc.strerror or exc}")
        except ValueError as exc:
            # embedded NUL in the path or an argument
            return RunResult(False, f"exec {cmd[0]!r}: {exc}")

        output = _decode(proc.stdout)
        if proc.returncode != 0:
            return RunResult(False, _describe_exit(proc.returncode), output)
        return RunResult(True, None, output)


# ---------- container status ----------------------------------------------- #
class ContainerStatusProvider(ABC):
    @abstractmethod
    def status(self, container: str) -> ContainerStatus: ...


class DockerStatusProvider(ContainerStatusProvider):
    """Inspects containers through the Docker Engine API."""

    def __init__(self, client: docker.DockerClient) -> None:
        self.client = client

    def status(self, container: str) -> ContainerStatus:
        try:
            info: Dict[str, Any] = self.client.api.inspect_container(container)
        except docker.errors.NotFound as exc:
            raise ContainerStatusError(f"no such container: {container}") from exc
        except (docker.errors.DockerException, requests.exceptions.RequestException) as exc:
            raise ContainerStatusError(str(exc)) from exc
        state = info.get("State") or {}
        return ContainerStatus(exists=True, running=bool(state.get("Running")))


# ---------- repository metadata -------------------------------------------- #
class RepositoryMetadataProvider(ABC):
    @abstractmethod
    def open(self, path: str) -> Any: ...

    @abstractmethod
    def head(self, repo: Any) -> str: ...

    @abstractmethod
    def commit(self, repo: Any, sha: str) -> RawCommit: ...


def _parse_offset(raw: str) -> timezone:
    # git writes offsets as [+-]HHMM
    sign = -1 if raw.startswith("-") else 1
    digits = raw.lstrip("+-")
    if len(digits) != 4 or not digits.isdigit():
        raise ValueError(f"bad timezone offset {raw!r}")
    return timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))


def parse_commit_object(sha: str, raw: bytes) -> RawCommit:
    """Parse the body of `git cat-file commit <sha>`.

    Headers run up to the first blank line; continuation lines (gpgsig,
    mergetag) start with a space and are skipped. Everything after the blank
    line is the message, decoded with the commit's `encoding` header if any.
    """
    header_blob, _, message = raw.partition(b"\n\n")
    headers: Dict[str, str] = {}
    for line in header_blob.split(b"\n"):
        if not line or line.startswith(b" "):
            continue
        key, _, value = line.decode("utf-8", errors="replace").partition(" ")
        headers.setdefault(key, value)

    committer = headers.get("committer")
    if not committer:
        raise RepositoryError(f"commit {sha} has no committer")
    try:
        _, stamp, offset = committer.rsplit(" ", 2)
        committed_at = datetime.fromtimestamp(int(stamp), tz=_parse_offset(offset))
    except ValueError as exc:
        raise RepositoryError(f"commit {sha} has a malformed committer line: {committer!r}") from exc

    encoding = headers.get("encoding", "utf-8")
    try:
        text = message.decode(encoding, errors="replace")
    except LookupError:
        text = message.decode("utf-8", errors="replace")
    return RawCommit(sha=sha, message=text, committed_at=committed_at)


class GitCliRepository(RepositoryMetadataProvider):
    """Reads HEAD metadata by shelling out to the `git` executable.

    `open` returns the repository directory itself. Discovery is confined to
    that directory so a path nested inside some other checkout is not
    silently accepted.
    """

    def __init__(self, git: str = "git") -> None:
        self.git = git

    def _run(self, repo: Path, *args: str) -> bytes:
        env = dict(os.environ, GIT_CEILING_DIRECTORIES=str(repo.parent), LC_ALL="C")
        try:
            result = subprocess.run(
                [self.git, "-C", str(repo), *args],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                env=env,
                check=True,
            )
        except subprocess.CalledProcessError as exc:
            detail = _decode(exc.stderr).strip() or _describe_exit(exc.returncode)
            raise RepositoryError(detail) from exc
        except OSError as exc:
            raise RepositoryError(f"exec {self.git}: {exc.strerror or exc}") from exc
        except ValueError as exc:
            raise RepositoryError(str(exc)) from exc
        return result.stdout

    def open(self, path: str) -> Path:
        repo = Path(path).expanduser().absolute()
        if not path or not repo.is_dir():
            raise RepositoryError(f"repository does not exist: {path!r}")
        self._run(repo, "rev-parse", "--git-dir")
        log.debug("opened repository %s", repo)
        return repo

    def head(self, repo: Path) -> str:
        return _decode(self._run(repo, "rev-parse", "--verify", "HEAD")).strip().lower()

    def commit(self, repo: Path, sha: str) -> RawCommit:
        return parse_commit_object(sha, self._run(repo, "cat-file", "commit", sha))
