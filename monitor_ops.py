from __future__ import annotations

import logging
from typing import Generic, TypeVar, Union

from pydantic import BaseModel, ConfigDict

from monitor_backends import (
    ContainerStatusError,
    ContainerStatusProvider,
    ProcessRunner,
    RepositoryError,
    RepositoryMetadataProvider,
)

log = logging.getLogger("monitor")

COMMIT_DATE_FORMAT = "%a %b %d %H:%M:%S %Y %z"


# ---------- Models --------------------------------------------------------- #
class MonitorConfig(BaseModel):
    """Static configuration, read once at startup.

    `pid_file` is accepted for compatibility with existing config files; no
    operation reads it.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    password: str = ""
    start_script: str = ""
    stop_script: str = ""
    update_script: str = ""
    restoresave_script: str = ""
    git_dir: str = ""
    pid_file: str = ""
    container: str = ""


class CommitInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    date: str
    sha: str


Message = Union[bool, str, CommitInfo]
T = TypeVar("T", bound=Message)


class Envelope(BaseModel, Generic[T]):
    """`{"success": ..., "message": ...}`, the body of every action response."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: T


def ok(message: T) -> Envelope[T]:
    return Envelope(success=True, message=message)


def fail(message: str) -> Envelope[str]:
    return Envelope(success=False, message=message)


# ---------- Monitor -------------------------------------------------------- #
class Monitor:
    """Lifecycle operations for the game server.

    Every method converts its own failures into an `Envelope`; nothing here
    raises to the caller. Concurrent calls are neither serialized nor
    deduplicated, and no deadline is put on scripts, git or the container
    runtime.
    """

    def __init__(
        self,
        config: MonitorConfig,
        runner: ProcessRunner,
        containers: ContainerStatusProvider,
        repository: RepositoryMetadataProvider,
    ) -> None:
        self.config = config
        self.runner = runner
        self.containers = containers
        self.repository = repository

    def _lifecycle(self, script: str, verb: str, done: str) -> Envelope[str]:
        result = self.runner.run(script)
        if not result.ok:
            log.warning("%s script %s failed: %s", verb, script, result.error)
            return fail(f"Server failed to {verb} ({result.error})")
        log.info("%s script %s finished", verb, script)
        return ok(f"Server has been {done}")

    def start(self) -> Envelope[str]:
        return self._lifecycle(self.config.start_script, "start", "started")

    def stop(self) -> Envelope[str]:
        return self._lifecycle(self.config.stop_script, "stop", "stopped")

    def update(self) -> Envelope[str]:
        return self._lifecycle(self.config.update_script, "update", "updated")

    def restore_save(self, ckey: str, date: str) -> Envelope[str]:
        ckey = ckey.lower()
        if not ckey or not date:
            return fail("Invalid request")

        result = self.runner.run_captured(self.config.restoresave_script, ckey, date)
        if not result.ok:
            log.warning("restoresave for %s @ %s failed: %s", ckey, date, result.error)
            return fail(f"Script failed to run: {result.error}\n\n{result.output}")
        log.info("restoresave for %s @ %s finished", ckey, date)
        return ok(result.output)

    def commit(self) -> Envelope[Union[CommitInfo, str]]:
        stage = "open git repo"
        try:
            repo = self.repository.open(self.config.git_dir)
            stage = "get HEAD ref"
            sha = self.repository.head(repo)
            stage = "get HEAD commit"
            raw = self.repository.commit(repo, sha)
        except RepositoryError as exc:
            log.warning("failed to %s in %s: %s", stage, self.config.git_dir, exc)
            return fail(f"Failed to {stage} ({exc})")

        summary = raw.message.strip().split("\n", 1)[0].strip()
        return ok(CommitInfo(
            message=summary,
            date=raw.committed_at.strftime(COMMIT_DATE_FORMAT),
            sha=raw.sha.lower(),
        ))

    def is_running(self) -> Envelope[bool]:
        # a failed inspection reads as "not running"
        try:
            status = self.containers.status(self.config.container)
        except ContainerStatusError as exc:
            log.warning("inspecting container %s failed: %s", self.config.container, exc)
            return ok(False)
        return ok(status.exists and status.running)
