#!/usr/bin/env python3

from __future__ import annotations

import argparse
import errno
import json
import math
import mimetypes
import os
import queue
import secrets
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

from bake_catalog import CatalogIndex
from bake_options import PROGRESS_PREFIX, clamp_float, clamp_int, options_to_argv, parse_bake_payload


PROJECT_ROOT = Path(__file__).resolve().parents[1]
BAKE_SCRIPT = Path(__file__).resolve().with_name("hourglass_bake.py")
BAKES_DIR = PROJECT_ROOT / "bakes"
PUBLIC_DIR = PROJECT_ROOT / "public"
CONFIG_FILE = PROJECT_ROOT / "config.json"

BAKES_URL_PREFIX = "/bakes"
STREAM_PATH_PREFIX = "/api/stream/"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5173
DEFAULT_TASK_TTL_SEC = 3600.0
SSE_KEEPALIVE_SEC = 15.0

DEFAULT_CONFIG: Dict[str, object] = {
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
    "bakes_dir": "bakes",
    "task_ttl_sec": DEFAULT_TASK_TTL_SEC,
}


def log(message: str) -> None:
    print(f"[hourglass-frontend] {message}", flush=True)


def json_error(message: str) -> Dict[str, str]:
    return {"error": message}


def new_task_id() -> str:
    return f"{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


def bake_url(file_path: str) -> str:
    # Bakes are always served flat under BAKES_URL_PREFIX, whatever path the worker printed.
    name = PurePosixPath(str(file_path).replace("\\", "/")).name
    return f"{BAKES_URL_PREFIX}/{name}"


def _finite_number(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Expected a number, got {value!r}.")
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"Expected a finite number, got {value!r}.")
    return result


# ---------------------------------------------------------------------------
# Worker line protocol
# ---------------------------------------------------------------------------

def classify_line(line: str) -> Optional[Tuple[str, Dict[str, object]]]:
    """Turn one worker output line into ``(event, payload)``.

    Structured ``BAKE {...}`` lines become ``progress``, ``done`` or ``meta``
    events; anything else, including a structured line that fails to parse,
    becomes a ``log`` event carrying the raw line. Blank lines yield ``None``.
    """
    text = line.rstrip()
    if not text:
        return None
    if not text.startswith(PROGRESS_PREFIX):
        return "log", {"line": text}

    try:
        message = json.loads(text[len(PROGRESS_PREFIX):])
    except ValueError:
        return "log", {"line": text}
    if not isinstance(message, dict):
        return "log", {"line": text}

    kind = message.get("event")
    try:
        if kind == "progress":
            frame = _finite_number(message.get("frame"))
            target = _finite_number(message.get("target"))
            pct = max(0, min(100, int(round(frame / max(1.0, target) * 100))))
            payload: Dict[str, object] = {"pct": pct, "frame": message["frame"], "target": message["target"]}
            if isinstance(message.get("phase"), str):
                payload["phase"] = message["phase"]
            return "progress", payload
        if kind == "done":
            file_path = message.get("file")
            if not isinstance(file_path, str) or not file_path.strip():
                raise ValueError("Done event without a file.")
            return "done", {"file": bake_url(file_path), "frames": message.get("frames"), "fps": message.get("fps")}
    except ValueError:
        return "log", {"line": text}
    return "meta", message


@dataclass
class ProgressEvent:
    event: str
    payload: Dict[str, object]
    t: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {"event": self.event, "payload": self.payload, "t": self.t}


def format_sse(event: ProgressEvent) -> bytes:
    return f"event: {event.event}\ndata: {json.dumps(event.payload)}\n\n".encode("utf-8")


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class Subscription:
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue()

    def deliver(self, event: ProgressEvent) -> None:
        self._queue.put(event)

    def next_event(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> List[ProgressEvent]:
        events: List[ProgressEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class ProgressBus:
    """Ordered per-task event log with live fan-out.

    ``publish`` and ``subscribe`` share one lock, so a new subscriber sees the
    whole backlog followed by every later event exactly once, in order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._backlog: List[ProgressEvent] = []
        self._subscribers: List[Subscription] = []

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._backlog.append(event)
            for subscriber in self._subscribers:
                subscriber.deliver(event)

    def subscribe(self, subscription: Subscription) -> Subscription:
        with self._lock:
            for event in self._backlog:
                subscription.deliver(event)
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
                return True
        return False

    def backlog(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._backlog)

    @property
    def event_count(self) -> int:
        with self._lock:
            return len(self._backlog)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


# ---------------------------------------------------------------------------
# Task registry
# ---------------------------------------------------------------------------

class TaskNotFound(KeyError):
    pass


@dataclass
class Task:
    id: str
    command: List[str] = field(default_factory=list)
    process: Optional[object] = None
    bus: ProgressBus = field(default_factory=ProgressBus)
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    done: bool = False
    terminal: bool = False
    exit_code: Optional[int] = None
    result_file: Optional[str] = None

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
            "done": self.done,
            "terminal": self.terminal,
            "exit_code": self.exit_code,
            "file": self.result_file,
            "events": self.bus.event_count,
            "subscribers": self.bus.subscriber_count,
        }


class BakeWorkerLauncher:
    """Spawns ``hourglass_bake.py --progress`` as an isolated worker process."""

    def __init__(
        self,
        *,
        bakes_dir: Path = BAKES_DIR,
        root_dir: Path = PROJECT_ROOT,
        python: str = sys.executable,
        script: Path = BAKE_SCRIPT,
    ) -> None:
        self.bakes_dir = Path(bakes_dir)
        self.root_dir = Path(root_dir)
        self.python = python
        self.script = Path(script)

    def command(self, options: Mapping[str, object]) -> List[str]:
        return [
            self.python,
            str(self.script),
            "--progress",
            "--out-dir", str(self.bakes_dir),
            *options_to_argv(options),
        ]

    def __call__(self, options: Mapping[str, object]) -> subprocess.Popen:
        command = self.command(options)
        env = os.environ.copy()
        env["PYTHONUNBUFFERED"] = "1"
        try:
            return subprocess.Popen(
                command,
                cwd=str(self.root_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            raise ValueError(f"Failed to start bake worker: {exc}") from exc


class TaskRegistry:
    """Owns every bake task: spawning, event recording, fan-out and eviction."""

    def __init__(
        self,
        launcher: Callable[[Mapping[str, object]], object],
        *,
        task_ttl_sec: float = DEFAULT_TASK_TTL_SEC,
    ) -> None:
        self.launcher = launcher
        self.task_ttl_sec = float(task_ttl_sec)
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()

    def submit(self, options: Mapping[str, object]) -> str:
        self.prune()
        task_id = new_task_id()
        proc = self.launcher(options)
        command = [str(part) for part in (getattr(proc, "args", None) or [])]
        task = Task(id=task_id, command=command, process=proc)
        with self._lock:
            self._tasks[task_id] = task

        log(f"task {task_id}: $ {shlex.join(command) if command else '(worker)'}")
        reader = threading.Thread(target=self._pump, args=(task_id, proc), daemon=True, name=f"bake-{task_id}")
        reader.start()
        return task_id

    def _pump(self, task_id: str, proc: object) -> None:
        try:
            stdout = getattr(proc, "stdout", None)
            if stdout is not None:
                for line in stdout:
                    self.record_line(task_id, line)
        finally:
            self.complete(task_id, proc.wait())

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def attach(self, task_id: str) -> Subscription:
        task = self.get(task_id)
        return task.bus.subscribe(Subscription(task_id))

    def detach(self, task_id: str, subscription: Subscription) -> None:
        try:
            task = self.get(task_id)
        except TaskNotFound:
            return
        task.bus.unsubscribe(subscription)

    def record_line(self, task_id: str, line: str) -> Optional[ProgressEvent]:
        classified = classify_line(line)
        if classified is None:
            return None
        event, payload = classified
        return self.record_event(task_id, event, payload)

    def record_event(self, task_id: str, event: str, payload: Dict[str, object]) -> ProgressEvent:
        task = self.get(task_id)
        item = ProgressEvent(event, payload)
        if event == "done":
            with self._lock:
                task.done = True
                task.result_file = str(payload.get("file") or "") or None
        task.bus.publish(item)
        return item

    def complete(self, task_id: str, code: Optional[int]) -> ProgressEvent:
        # Every exit is reported as-is; the registry never retries.
        task = self.get(task_id)
        with self._lock:
            task.terminal = True
            task.exit_code = code
            task.ended_at = time.time()
            task.process = None
        log(f"task {task_id}: exited with code {code}")
        return self.record_event(task_id, "exit", {"code": code})

    def prune(self, now: Optional[float] = None) -> List[str]:
        if self.task_ttl_sec <= 0:
            return []
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if task.terminal and task.ended_at is not None and now - task.ended_at > self.task_ttl_sec
            ]
            for task_id in expired:
                del self._tasks[task_id]
        return expired

    def summaries(self) -> List[Dict[str, object]]:
        with self._lock:
            tasks = list(self._tasks.values())
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return [task.summary() for task in tasks]


# ---------------------------------------------------------------------------
# HTTP frontend
# ---------------------------------------------------------------------------

@dataclass
class HourglassFrontendState:
    root_dir: Path
    bakes_dir: Path
    public_dir: Path
    registry: TaskRegistry
    catalog: Optional[CatalogIndex] = None

    def __post_init__(self) -> None:
        self.root_dir = Path(self.root_dir).resolve()
        self.bakes_dir = Path(self.bakes_dir).resolve()
        self.public_dir = Path(self.public_dir).resolve()
        if self.catalog is None:
            self.catalog = CatalogIndex.in_directory(self.bakes_dir)

    @classmethod
    def create(
        cls,
        *,
        root_dir: Path = PROJECT_ROOT,
        bakes_dir: Path = BAKES_DIR,
        public_dir: Path = PUBLIC_DIR,
        task_ttl_sec: float = DEFAULT_TASK_TTL_SEC,
    ) -> "HourglassFrontendState":
        launcher = BakeWorkerLauncher(bakes_dir=Path(bakes_dir).resolve(), root_dir=root_dir)
        registry = TaskRegistry(launcher, task_ttl_sec=task_ttl_sec)
        return cls(root_dir=root_dir, bakes_dir=bakes_dir, public_dir=public_dir, registry=registry)

    def list_bakes(self) -> List[Dict[str, object]]:
        return self.catalog.load()

    def submit(self, payload: Mapping[str, object]) -> Dict[str, object]:
        options = parse_bake_payload(payload)
        return {"id": self.registry.submit(options)}


class HourglassFrontendHandler(BaseHTTPRequestHandler):
    state: HourglassFrontendState = None  # type: ignore

    def log_message(self, fmt: str, *args) -> None:
        return

    @staticmethod
    def _is_disconnect_error(exc: BaseException) -> bool:
        if isinstance(exc, (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, TimeoutError)):
            return True
        if isinstance(exc, OSError):
            return exc.errno in {
                errno.EPIPE,
                errno.ECONNRESET,
                errno.ECONNABORTED,
                errno.ETIMEDOUT,
            }
        return False

    def handle_one_request(self) -> None:
        try:
            super().handle_one_request()
        except Exception as exc:  # broad: keep request thread stable on abrupt client disconnect
            if self._is_disconnect_error(exc):
                self.close_connection = True
                return
            raise

    def _send_bytes(self, status: int, content_type: str, body: bytes) -> None:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except Exception as exc:  # broad: stream/client may close between header and body write
            if self._is_disconnect_error(exc):
                self.close_connection = True
                return
            raise

    def _send_json(self, status: int, payload: object) -> None:
        body = json.dumps(payload).encode("utf-8")
        self._send_bytes(status, "application/json", body)

    def _send_html(self) -> None:
        index = self.state.public_dir / "index.html"
        if index.exists():
            body = index.read_bytes()
        else:
            body = (
                b"<!doctype html><html><body><h1>Hourglass baker</h1>"
                b"<p>POST bake options to <code>/api/bake</code>, follow <code>/api/stream/&lt;id&gt;</code>, "
                b"and list finished bakes at <code>/api/index</code>.</p></body></html>"
            )
        self._send_bytes(HTTPStatus.OK, "text/html; charset=utf-8", body)

    def _send_file(self, path: Path) -> None:
        if not path.exists() or not path.is_file():
            self._send_json(HTTPStatus.NOT_FOUND, json_error("File not found."))
            return

        mime_type, _ = mimetypes.guess_type(str(path))
        content_type = mime_type or "application/octet-stream"
        try:
            size = path.stat().st_size
            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(size))
            self.send_header("Cache-Control", "no-cache")
            self.end_headers()

            with path.open("rb") as handle:
                while True:
                    chunk = handle.read(64 * 1024)
                    if not chunk:
                        break
                    self.wfile.write(chunk)
        except Exception as exc:
            if self._is_disconnect_error(exc):
                self.close_connection = True
                return
            raise

    @staticmethod
    def _confined(base: Path, rel_name: str) -> Optional[Path]:
        requested = (base / rel_name).resolve()
        if base not in requested.parents:
            return None
        return requested

    def _stream_task(self, task_id: str) -> None:
        try:
            subscription = self.state.registry.attach(task_id)
        except TaskNotFound:
            self._send_json(HTTPStatus.NOT_FOUND, json_error("No such task."))
            return

        # Backlog first, then live events; the stream ends after `exit`.
        try:
            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "keep-alive")
            self.end_headers()
            self.wfile.flush()

            while True:
                event = subscription.next_event(timeout=SSE_KEEPALIVE_SEC)
                if event is None:
                    self.wfile.write(b": keepalive\n\n")
                    self.wfile.flush()
                    continue
                self.wfile.write(format_sse(event))
                self.wfile.flush()
                if event.event == "exit":
                    break
        except Exception as exc:  # broad: subscribers disconnect whenever they like
            if not self._is_disconnect_error(exc):
                raise
        finally:
            self.state.registry.detach(task_id, subscription)
            self.close_connection = True

    def do_GET(self) -> None:
        parsed = urlparse(self.path)

        if parsed.path == "/api/index":
            self._send_json(HTTPStatus.OK, self.state.list_bakes())
            return

        if parsed.path == "/api/tasks":
            self._send_json(HTTPStatus.OK, {"tasks": self.state.registry.summaries()})
            return

        if parsed.path.startswith(STREAM_PATH_PREFIX):
            task_id = unquote(parsed.path.removeprefix(STREAM_PATH_PREFIX)).strip("/")
            self._stream_task(task_id)
            return

        if parsed.path.startswith(BAKES_URL_PREFIX + "/"):
            rel_name = unquote(parsed.path.removeprefix(BAKES_URL_PREFIX + "/"))
            requested = self._confined(self.state.bakes_dir, rel_name)
            if requested is None:
                self._send_json(HTTPStatus.BAD_REQUEST, json_error("Invalid bake path."))
                return
            self._send_file(requested)
            return

        if parsed.path.startswith("/api/"):
            self._send_json(HTTPStatus.NOT_FOUND, json_error("Endpoint not found."))
            return

        if parsed.path in {"/", "/index.html"}:
            self._send_html()
            return

        requested = self._confined(self.state.public_dir, unquote(parsed.path.lstrip("/")))
        if requested is None:
            self._send_json(HTTPStatus.BAD_REQUEST, json_error("Invalid path."))
            return
        self._send_file(requested)

    def do_POST(self) -> None:
        parsed = urlparse(self.path)

        length = int(self.headers.get("Content-Length", "0"))
        raw_body = self.rfile.read(length) if length > 0 else b"{}"

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._send_json(HTTPStatus.BAD_REQUEST, json_error("Invalid JSON payload."))
            return

        if not isinstance(payload, dict):
            self._send_json(HTTPStatus.BAD_REQUEST, json_error("JSON body must be an object."))
            return

        if parsed.path == "/api/bake":
            try:
                result = self.state.submit(payload)
                self._send_json(HTTPStatus.ACCEPTED, result)
            except ValueError as exc:
                self._send_json(HTTPStatus.BAD_REQUEST, json_error(str(exc)))
            return

        self._send_json(HTTPStatus.NOT_FOUND, json_error("Endpoint not found."))


def make_server(state: HourglassFrontendState, host: str, port: int) -> ThreadingHTTPServer:
    handler = type("BoundHourglassFrontendHandler", (HourglassFrontendHandler,), {"state": state})
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    return server


def load_config(config_file: Path = CONFIG_FILE) -> Dict[str, object]:
    config = dict(DEFAULT_CONFIG)
    if not config_file.exists():
        return config

    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValueError(f"Failed to read config file {config_file}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_file} must contain a JSON object.")

    unknown = sorted(set(raw) - set(DEFAULT_CONFIG))
    if unknown:
        raise ValueError(f"Unknown config keys in {config_file}: {', '.join(unknown)}.")
    config.update(raw)
    return config


def resolve_settings(
    args: argparse.Namespace,
    config: Mapping[str, object],
    environ: Mapping[str, str] = os.environ,
) -> Dict[str, object]:
    """Layer CLI flags over ``HOURGLASS_*`` variables over ``config.json``."""

    def pick(flag_value: object, env_name: str, key: str) -> object:
        if flag_value is not None:
            return flag_value
        env_value = environ.get(env_name, "").strip()
        return env_value if env_value else config[key]

    host = str(pick(args.host, "HOURGLASS_HOST", "host")).strip()
    if not host:
        raise ValueError("Host cannot be empty.")

    bakes_dir = Path(str(pick(args.bakes_dir, "HOURGLASS_BAKES_DIR", "bakes_dir"))).expanduser()
    if not bakes_dir.is_absolute():
        bakes_dir = PROJECT_ROOT / bakes_dir

    return {
        "host": host,
        "port": clamp_int("Port", pick(args.port, "HOURGLASS_PORT", "port"), 1, 65535),
        "bakes_dir": bakes_dir.resolve(),
        "public_dir": Path(args.public_dir).resolve() if args.public_dir else PUBLIC_DIR,
        "task_ttl_sec": clamp_float("Task TTL", pick(args.task_ttl, "HOURGLASS_TASK_TTL", "task_ttl_sec"), 0.0, 1e9),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hourglass sand baker local frontend")
    parser.add_argument("--config", default=str(CONFIG_FILE), help="JSON config file (default: project config.json)")
    parser.add_argument("--host", help="Host bind address (default: env/config)")
    parser.add_argument("--port", type=int, help=f"Port (default: env/config, else {DEFAULT_PORT})")
    parser.add_argument("--bakes-dir", help="Directory holding bake files and index.json")
    parser.add_argument("--public-dir", help="Directory of static frontend files")
    parser.add_argument(
        "--task-ttl",
        type=float,
        help="Seconds a finished task stays attachable (0 keeps tasks forever)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = resolve_settings(args, load_config(Path(args.config)))
    except ValueError as exc:
        log(f"ERROR: {exc}")
        return 2

    bakes_dir = Path(settings["bakes_dir"])
    public_dir = Path(settings["public_dir"])
    bakes_dir.mkdir(parents=True, exist_ok=True)
    public_dir.mkdir(parents=True, exist_ok=True)

    state = HourglassFrontendState.create(
        root_dir=PROJECT_ROOT,
        bakes_dir=bakes_dir,
        public_dir=public_dir,
        task_ttl_sec=float(settings["task_ttl_sec"]),
    )
    host, port = str(settings["host"]), int(settings["port"])
    try:
        server = make_server(state, host, port)
    except OSError as exc:
        log(f"ERROR: cannot bind to {host}:{port}. Choose another port or stop the process using it. ({exc})")
        return 1
    log(f"URL: http://{host}:{port}/")
    log(f"Bakes: {state.bakes_dir}")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log("Shutdown requested.")
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
