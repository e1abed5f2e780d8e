# monitor_core.py  (HTTP surface for the game-server monitor)
from __future__ import annotations

import logging, os, secrets, sys, threading, time, uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Tuple

import docker, docker.errors, psutil, uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from monitor_backends import DockerStatusProvider, GitCliRepository, SubprocessRunner
from monitor_ops import Monitor, MonitorConfig

# ---------- Logging (UTC) -------------------------------------------------- #
logging.Formatter.converter = time.gmtime          # type: ignore[attr-defined]
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)sZ %(levelname)s %(name)s — %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
log = logging.getLogger("monitor_core")

AUTH_USER = "auth"
LISTEN_HOST, LISTEN_PORT = "0.0.0.0", 3889


# ---------- Configuration -------------------------------------------------- #
def load_config(path: Path) -> MonitorConfig:
    """Read the JSON config file; exit the process if it is unusable.

    Parsed with the YAML 1.2 loader, so a YAML file with the same keys is
    accepted as well.
    """
    try:
        raw = YAML(typ="safe").load(path.read_text())
    except (OSError, YAMLError) as exc:
        log.critical("config read error: %s", exc)
        sys.exit(1)
    try:
        return MonitorConfig.model_validate(raw)
    except ValidationError as exc:
        log.critical("config parse error: %s", exc)
        sys.exit(1)


# ---------- Request metrics ------------------------------------------------ #
class RequestMetrics:
    """Per-route request counters, rendered in Prometheus text format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: Dict[Tuple[str, str, int], int] = defaultdict(int)
        self._latency: Dict[Tuple[str, str], List[float]] = defaultdict(lambda: [0.0, 0])

    def observe(self, method: str, path: str, code: int, seconds: float) -> None:
        with self._lock:
            self._requests[(method, path, code)] += 1
            bucket = self._latency[(method, path)]
            bucket[0] += seconds; bucket[1] += 1

    def render(self) -> List[str]:
        with self._lock:
            requests = sorted(self._requests.items())
            latency = sorted(self._latency.items())
        out = ["# HELP monitor_requests_total HTTP requests handled",
               "# TYPE monitor_requests_total counter"]
        out += [f'monitor_requests_total{{method="{m}",path="{p}",code="{c}"}} {n}'
                for (m, p, c), n in requests]
        out += ["# HELP monitor_request_duration_seconds Time spent handling requests",
                "# TYPE monitor_request_duration_seconds summary"]
        for (m, p), (total, count) in latency:
            out.append(f'monitor_request_duration_seconds_sum{{method="{m}",path="{p}"}} {total:.6f}')
            out.append(f'monitor_request_duration_seconds_count{{method="{m}",path="{p}"}} {int(count)}')
        return out


# ---------- Helpers -------------------------------------------------------- #
def _real_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.headers.get("x-real-ip"):
        return request.headers["x-real-ip"]
    return request.client.host if request.client else "-"


def _basic_auth(password: str):
    security = HTTPBasic(realm=AUTH_USER)

    def check(credentials: HTTPBasicCredentials = Depends(security)) -> None:
        user_ok = secrets.compare_digest(credentials.username.encode(), AUTH_USER.encode())
        pass_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
        if not (user_ok and pass_ok):
            raise HTTPException(401, "Unauthorized",
                                headers={"WWW-Authenticate": f'Basic realm="{AUTH_USER}"'})
    return check


def _field(form, request: Request, name: str) -> str:
    value = form.get(name)
    if value is None:
        value = request.query_params.get(name, "")
    return value if isinstance(value, str) else ""


# ---------- FastAPI App ---------------------------------------------------- #
def create_app(monitor: Monitor, password: str) -> FastAPI:
    metrics = RequestMetrics()
    process = psutil.Process()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        log.info("starting")
        yield
        log.info("shutting down")

    app = FastAPI(title="Game Server Monitor", version="1.0", lifespan=lifespan,
                  dependencies=[Depends(_basic_auth(password))],
                  docs_url=None, redoc_url=None, openapi_url=None)
    app.state.monitor = monitor
    app.state.metrics = metrics

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        client_ip, started = _real_ip(request), time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log.exception("[%s] %s \"%s %s\" raised", request_id, client_ip,
                          request.method, request.url.path)
            metrics.observe(request.method, request.url.path, 500, time.perf_counter() - started)
            raise
        elapsed = time.perf_counter() - started
        route = request.scope.get("route")
        metrics.observe(request.method, getattr(route, "path", "<unmatched>"),
                        response.status_code, elapsed)
        response.headers["X-Request-Id"] = request_id
        log.info("[%s] %s \"%s %s\" %d %.1fms", request_id, client_ip, request.method,
                 request.url.path, response.status_code, elapsed * 1000)
        return response

    # ---------- API endpoints ---------------------------------------------- #
    @app.post("/start")
    def start(): return monitor.start()

    @app.post("/stop")
    def stop(): return monitor.stop()

    @app.post("/update")
    def update(): return monitor.update()

    @app.post("/restoresave")
    async def restoresave(request: Request):
        form = await request.form()
        ckey, date = _field(form, request, "ckey"), _field(form, request, "date")
        return await run_in_threadpool(monitor.restore_save, ckey, date)

    @app.get("/commit")
    def commit(): return monitor.commit()

    @app.get("/is_running")
    def is_running(): return monitor.is_running()

    @app.get("/metrics")
    def prom():
        with process.oneshot():
            cpu, rss = process.cpu_percent(), process.memory_info().rss
        out = [
            "# HELP process_cpu_percent Monitor process CPU usage %", f"process_cpu_percent {cpu}",
            "# HELP process_resident_memory_bytes Monitor process RSS", f"process_resident_memory_bytes {rss}",
        ]
        out.extend(metrics.render())
        return Response("\n".join(out)+"\n", media_type="text/plain; version=0.0.4")

    return app


# ---------- Startup -------------------------------------------------------- #
def main() -> None:
    config = load_config(Path(os.getenv("MONITOR_CONFIG_FILE", "config.json")))
    try:
        client = docker.from_env()
    except docker.errors.DockerException as exc:
        log.critical("docker client failed: %s", exc)
        sys.exit(1)

    monitor = Monitor(config, SubprocessRunner(), DockerStatusProvider(client), GitCliRepository())
    uvicorn.run(create_app(monitor, config.password), host=LISTEN_HOST, port=LISTEN_PORT, loop="uvloop")


if __name__ == "__main__":
    main()
