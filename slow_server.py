"""
slow_server.py

Probe target for exercising an orchestrator's liveness/readiness handling.

Features:
- Waits a configurable startup delay before binding the listener.
- Serves /healthy (liveness) and /ready (readiness) from two independent flags.
- /debug/<action> flips those flags at runtime (healthy, unhealthy, ready, noready).
- Drains in-flight requests on SIGINT/SIGTERM within a bounded grace period.

Env vars:
- START_TIME              startup delay, e.g. "30s", "5m", "1h30m" (default: 120s)
- PORT                    listener port (default: 8080)
- SHUTDOWN_GRACE_SECONDS  drain timeout on shutdown (default: 5)
- LOG_LEVEL               root log level (default: INFO)

The -t flag overrides START_TIME when non-empty.
"""

import argparse
import logging
import re
import signal
import sys
import threading
import time
from datetime import timedelta
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings


logger = logging.getLogger("slow_server")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


# =========================
# Settings
# =========================

DEFAULT_STARTUP_DELAY = "120s"


class ServerSettings(BaseSettings):
    start_time: Optional[str] = None
    port: int = 8080
    shutdown_grace_seconds: float = 5.0
    log_level: str = "INFO"

    @field_validator("port")
    @classmethod
    def port_in_range(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"port {v} is outside 0-65535")
        return v

    @field_validator("shutdown_grace_seconds")
    @classmethod
    def grace_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("shutdown grace period must not be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return level


def configure_logging(level: str = "INFO") -> None:
    """Route all log records to stderr with timestamps."""
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


# =========================
# Startup delay
# =========================

class InvalidDurationError(ValueError):
    """Raised when a duration string does not follow the <number><unit> grammar."""


# Microseconds per unit; timedelta has no finer resolution.
_UNIT_MICROSECONDS: Dict[str, float] = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "μs": 1,
    "ms": 1_000,
    "s": 1_000_000,
    "m": 60_000_000,
    "h": 3_600_000_000,
}

_COMPONENT = r"([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"[-+]?(?:{_COMPONENT})+", re.ASCII)
_COMPONENT_RE = re.compile(_COMPONENT, re.ASCII)

# Largest magnitude a signed 64-bit nanosecond count can hold.
MAX_DURATION_MICROSECONDS = (2**63 - 1) / 1_000
MAX_SLEEP_CHUNK_SECONDS = 86_400.0


def parse_duration(value: str) -> timedelta:
    """
    Parse a compound duration such as "90s", "5m", "1h30m" or "1.5s".

    A leading sign applies to the whole value and the bare string "0" is
    accepted. Anything else without a unit is rejected.
    """
    if not isinstance(value, str):
        raise InvalidDurationError(f"invalid duration {value!r}")

    unsigned = value[1:] if value[:1] in ("-", "+") else value
    if unsigned == "0":
        return timedelta(0)
    if not _DURATION_RE.fullmatch(value):
        raise InvalidDurationError(f"invalid duration {value!r}")

    total = 0.0
    for number, unit in _COMPONENT_RE.findall(unsigned):
        total += float(number) * _UNIT_MICROSECONDS[unit]
    if total > MAX_DURATION_MICROSECONDS:
        raise InvalidDurationError(f"invalid duration {value!r}: out of range")
    if value.startswith("-"):
        total = -total

    try:
        return timedelta(microseconds=total)
    except OverflowError as exc:
        raise InvalidDurationError(f"invalid duration {value!r}: out of range") from exc


def resolve_startup_delay(env_value: Optional[str], flag_value: Optional[str]) -> str:
    """Pick the delay string: default, then environment if set, then a non-empty flag."""
    delay = DEFAULT_STARTUP_DELAY
    if env_value is not None:
        delay = env_value
    if flag_value:
        delay = flag_value
    return delay


def _attach_flag_values(argv: List[str]) -> List[str]:
    """Glue "-t VALUE" into "-tVALUE" so argparse keeps values like "-5s"."""
    attached: List[str] = []
    tokens = iter(argv)
    for token in tokens:
        if token == "-t":
            value = next(tokens, None)
            if value is None:
                attached.append(token)
            elif value == "":
                attached.extend([token, value])
            else:
                attached.append(token + value)
        else:
            attached.append(token)
    return attached


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Serve mutable /healthy and /ready endpoints after a startup delay"
    )
    parser.add_argument(
        "-t",
        dest="startup_delay",
        default="",
        help="Startup delay duration (e.g., '30s', '2m'); overrides START_TIME",
    )
    if argv is None:
        argv = sys.argv[1:]
    return parser.parse_args(_attach_flag_values(argv))


# =========================
# State
# =========================

class ServerState:
    """
    Liveness and readiness flags shared by all request threads.

    Each flag is its own threading.Event, so reads and writes of one flag
    never contend with the other and no lock outlives a single get or set.
    """

    def __init__(self, healthy: bool = True, ready: bool = True):
        self._healthy = threading.Event()
        self._ready = threading.Event()
        self.set_healthy(healthy)
        self.set_ready(ready)

    @staticmethod
    def _assign(flag: threading.Event, status: bool) -> None:
        if status:
            flag.set()
        else:
            flag.clear()

    def set_healthy(self, status: bool) -> None:
        self._assign(self._healthy, status)

    def is_healthy(self) -> bool:
        return self._healthy.is_set()

    def set_ready(self, status: bool) -> None:
        self._assign(self._ready, status)

    def is_ready(self) -> bool:
        return self._ready.is_set()


# =========================
# HTTP surface
# =========================

DEBUG_PREFIX = "/debug/"

# action -> (flag, value, log message, response body)
DEBUG_ACTIONS: Dict[str, Tuple[str, bool, str, str]] = {
    "healthy": (
        "healthy",
        True,
        "State changed: /healthy will now return 200",
        "Health status set to HEALTHY (200 OK)\n",
    ),
    "unhealthy": (
        "healthy",
        False,
        "State changed: /healthy will now return 500",
        "Health status set to UNHEALTHY (500 Internal Server Error)\n",
    ),
    "ready": (
        "ready",
        True,
        "State changed: /ready will now return 200",
        "Ready status set to READY (200 OK)\n",
    ),
    "noready": (
        "ready",
        False,
        "State changed: /ready will now return 500",
        "Ready status set to NOREADY (500 Internal Server Error)\n",
    ),
}


class ProbeRequestHandler(BaseHTTPRequestHandler):
    """Answers every HTTP method the same way; only the path matters."""

    server: "ProbeServer"
    server_version = "slow-server"

    def _write(self, code: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    def _discard_body(self) -> None:
        # Leaving request bytes unread makes the kernel reset the connection on close.
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        if length > 0:
            self.rfile.read(length)

    def _dispatch(self) -> None:
        self._discard_body()
        path = unquote(urlsplit(self.path).path)
        state = self.server.state

        if path == "/healthy":
            if state.is_healthy():
                self._write(HTTPStatus.OK, "HEALTHY")
            else:
                self._write(HTTPStatus.INTERNAL_SERVER_ERROR, "UNHEALTHY")
        elif path == "/ready":
            if state.is_ready():
                self._write(HTTPStatus.OK, "READY\n")
            else:
                self._write(HTTPStatus.INTERNAL_SERVER_ERROR, "NOREADY\n")
        elif path.startswith(DEBUG_PREFIX):
            self._debug(path[len(DEBUG_PREFIX):])
        else:
            self.send_error(HTTPStatus.NOT_FOUND)

    def _debug(self, action: str) -> None:
        entry = DEBUG_ACTIONS.get(action)
        if entry is None:
            self.send_error(HTTPStatus.NOT_FOUND)
            return

        flag, value, message, body = entry
        state = self.server.state
        if flag == "healthy":
            state.set_healthy(value)
        else:
            state.set_ready(value)
        logger.info(message)
        self._write(HTTPStatus.OK, body)

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_PATCH = _dispatch
    do_DELETE = _dispatch
    do_OPTIONS = _dispatch

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class ProbeServer(ThreadingHTTPServer):
    """
    Thread-per-request HTTP server bound to one ServerState.

    Counts requests from accept until their handler thread finishes so that
    shutdown can wait for them with a deadline.
    """

    daemon_threads = True
    request_queue_size = 128

    def __init__(
        self,
        server_address: Tuple[str, int],
        state: ServerState,
        handler_class: type = ProbeRequestHandler,
    ):
        self.state = state
        self._inflight = 0
        self._idle = threading.Condition()
        super().__init__(server_address, handler_class)

    @property
    def inflight(self) -> int:
        with self._idle:
            return self._inflight

    def _finish_one(self) -> None:
        with self._idle:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.notify_all()

    def process_request(self, request, client_address):
        with self._idle:
            self._inflight += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._finish_one()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._finish_one()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no request is in flight; False if the timeout hit first."""
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout)


# =========================
# Lifecycle
# =========================

def install_signal_handlers(stop_event: threading.Event) -> None:
    """Record SIGINT/SIGTERM on stop_event; must run on the main thread."""

    def _on_signal(signum, frame):
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _on_signal)


def serve(server: ProbeServer, stop_event: threading.Event, grace_seconds: float) -> int:
    """
    Run the accept loop until stop_event is set, then drain.

    Returns the process exit status: 0 after a clean drain, 1 when the
    listener died or requests outlived the grace period. stop_event is
    also set by the listener thread if its loop fails.
    """
    failures: List[BaseException] = []

    def _listen():
        try:
            server.serve_forever()
        except Exception as exc:  # noqa: BLE001 - reported on the main thread
            failures.append(exc)
            stop_event.set()

    port = server.server_address[1]
    listener = threading.Thread(target=_listen, name="probe-listener", daemon=True)
    logger.info("Server is starting on port %d...", port)
    listener.start()
    logger.info("Server started.")

    stop_event.wait()

    if failures:
        logger.critical("Could not listen on port %d: %s", port, failures[0])
        server.server_close()
        return 1

    logger.info("Shutdown signal received, starting graceful shutdown...")
    server.shutdown()
    server.server_close()
    if not server.wait_idle(grace_seconds):
        logger.critical(
            "Server forced to shutdown: %d request(s) still in flight after %ss",
            server.inflight,
            grace_seconds,
        )
        return 1

    logger.info("Server exiting.")
    return 0


def run(
    argv: Optional[List[str]] = None,
    stop_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Resolve config, wait out the startup delay, serve and return the exit status."""
    if stop_event is None:
        stop_event = threading.Event()
    state = ServerState()

    try:
        settings = ServerSettings()
    except ValidationError as exc:
        logger.critical("Invalid configuration: %s", exc)
        return 1
    logging.getLogger().setLevel(settings.log_level)

    args = parse_args(argv)
    delay_str = resolve_startup_delay(settings.start_time, args.startup_delay)

    logger.info("Parsing startup delay: %s", delay_str)
    try:
        delay = parse_duration(delay_str)
    except InvalidDurationError as exc:
        logger.critical(
            "Invalid format for startup delay '%s'. Error: %s. "
            "Please use format like '30s', '5m', '1h'.",
            delay_str,
            exc,
        )
        return 1

    if delay > timedelta(0):
        logger.info("Waiting %s before starting the server...", delay_str)
        remaining = delay.total_seconds()
        # time.sleep overflows its deadline arithmetic near the top of the range.
        while remaining > 0:
            chunk = min(remaining, MAX_SLEEP_CHUNK_SECONDS)
            sleep(chunk)
            remaining -= chunk

    try:
        server = ProbeServer(("", settings.port), state)
    except OSError as exc:
        logger.critical("Could not listen on port %d: %s", settings.port, exc)
        return 1

    return serve(server, stop_event, settings.shutdown_grace_seconds)


def main() -> None:
    configure_logging()
    stop_event = threading.Event()
    # Registered before the startup delay so an early signal is queued, not fatal.
    install_signal_handlers(stop_event)
    sys.exit(run(sys.argv[1:], stop_event))


if __name__ == "__main__":
    main()
