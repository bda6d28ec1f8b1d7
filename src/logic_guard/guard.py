"""This module provides the core functionality for the Logic Guard service.

It includes the `LogicBuildGuard` class, which decides whether a logic
program attached to a programmable block draws a previously banned image.
The module also defines the data structures for build contexts, verdicts and
sanction events, a bounded verdict cache, the client for the remote image
ban service, and the `BuildMonitor` that runs classifications on a worker
pool and hands confirmed hits to a sanction handler.
"""

from __future__ import annotations
import re
import json
import base64
import hashlib
import os
import logging
from enum import Enum
from threading import Lock
from typing import List, Dict, Any, Optional, Tuple, Union, Callable
from dataclasses import dataclass, asdict, field
from collections import Counter, OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone

import requests

from prometheus_client import Counter as PromCounter

# Prometheus metrics (opt-in via env in app.py)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    logic_guard_builds_total = PromCounter(
        "logic_guard_builds_total", "Total logic builds classified", ["verdict"]
    )
    logic_guard_cache_total = PromCounter(
        "logic_guard_cache_total", "Verdict cache lookups", ["result"]
    )
    logic_guard_remote_queries_total = PromCounter(
        "logic_guard_remote_queries_total", "Lookups sent to the image ban service"
    )
    logic_guard_remote_failures_total = PromCounter(
        "logic_guard_remote_failures_total",
        "Failed lookups against the image ban service",
        ["reason"],
    )
    logic_guard_sanctions_total = PromCounter(
        "logic_guard_sanctions_total", "Sanction events fired", ["action", "verdict"]
    )

# The digest is fixed; a missing sha256 must stop the process at import time.
if "sha256" not in hashlib.algorithms_guaranteed:
    raise RuntimeError("Can't find SHA-256 algorithm.")

# --- Default Configuration ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "endpoint": "http://c-n.ddns.net:9999/bmi/check/",
    "timeout": 1.0,
    "cache_size": 1000,
    "deep_search": False,
    "default_action": "KICK",
    "cache_failures": True,
    "max_workers": 4,
}

# --- Regexes ---
DRAW_FLUSH_RE = re.compile(r"^drawflush .*$", re.MULTILINE)


class LogicGuardError(Exception):
    """Base class for errors raised by the Logic Guard core."""


class ClassificationUnavailable(LogicGuardError):
    """The image ban service could not give a usable answer.

    Attributes:
        reason: A short machine-friendly label ("timeout", "connection", ...).
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class Verdict(str, Enum):
    """Classification outcome for a fingerprint or a whole build."""

    CLEAN = "CLEAN"
    FLAGGED_EXPLICIT = "FLAGGED_EXPLICIT"
    FLAGGED_SUGGESTIVE = "FLAGGED_SUGGESTIVE"

    @property
    def flagged(self) -> bool:
        return self is not Verdict.CLEAN


class SegmentMode(str, Enum):
    """How a program is cut into fragments before fingerprinting."""

    SHALLOW = "SHALLOW"
    DEEP = "DEEP"


class SanctionAction(str, Enum):
    """Action the external sanction handler should take."""

    KICK = "KICK"
    BAN = "BAN"


@dataclass(frozen=True)
class BuildContext:
    """A configured logic block waiting for classification.

    Attributes:
        x: Tile x coordinate of the logic block.
        y: Tile y coordinate of the logic block.
        code: The full program text.
        actor: Identifier of the player that configured the block.
    """

    x: int
    y: int
    code: str
    actor: str

    @property
    def location(self) -> Tuple[int, int]:
        return self.x, self.y


@dataclass(frozen=True)
class BuildEndEvent:
    """A block-configuration event as delivered by the game server."""

    x: int
    y: int
    code: str
    actor: Optional[str] = None
    breaking: bool = False


@dataclass(frozen=True)
class SanctionEvent:
    """Raised for a build whose code matched a banned image.

    Only ever constructed for a flagged verdict; a clean verdict is a caller
    bug and is rejected immediately.
    """

    verdict: Verdict
    actor: Any
    action: SanctionAction = SanctionAction.KICK
    x: Optional[int] = None
    y: Optional[int] = None

    def __post_init__(self):
        if not Verdict(self.verdict).flagged:
            raise ValueError(
                "Only fire a sanction event for a FLAGGED_EXPLICIT or FLAGGED_SUGGESTIVE verdict."
            )

    def to_json(self) -> str:
        """Serializes the event to a JSON string."""
        data = asdict(self)
        data["verdict"] = Verdict(self.verdict).value
        data["action"] = SanctionAction(self.action).value
        data["actor"] = str(self.actor)
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


@dataclass
class Metrics:
    """A class to track metrics related to build classifications."""

    builds: int = 0
    verdicts: Counter = field(default_factory=Counter)
    remote_queries: int = 0
    remote_failures: Counter = field(default_factory=Counter)
    sanctions: int = 0
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_build(self, verdict: Verdict):
        """Records the final verdict of one classified build."""
        with self.lock:
            self.builds += 1
            self.verdicts[verdict.value] += 1
        if PROMETHEUS_ENABLED:
            logic_guard_builds_total.labels(verdict=verdict.value).inc()

    def record_query(self):
        with self.lock:
            self.remote_queries += 1
        if PROMETHEUS_ENABLED:
            logic_guard_remote_queries_total.inc()

    def record_failure(self, reason: str):
        with self.lock:
            self.remote_failures[reason] += 1
        if PROMETHEUS_ENABLED:
            logic_guard_remote_failures_total.labels(reason=reason).inc()

    def record_sanction(self, event: SanctionEvent):
        with self.lock:
            self.sanctions += 1
        if PROMETHEUS_ENABLED:
            logic_guard_sanctions_total.labels(
                action=SanctionAction(event.action).value,
                verdict=Verdict(event.verdict).value,
            ).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        with self.lock:
            flagged = self.builds - self.verdicts[Verdict.CLEAN.value]
            return {
                "builds": self.builds,
                "flagged": flagged,
                "flag_rate": flagged / max(1, self.builds),
                "verdicts": dict(self.verdicts),
                "remote_queries": self.remote_queries,
                "remote_failures": dict(self.remote_failures),
                "sanctions": self.sanctions,
            }


def fingerprint(text: Union[str, bytes]) -> str:
    """Computes the fingerprint of a code fragment.

    A new digest object is created per call, so the function is safe to run
    from many worker threads at once.

    Args:
        text: The fragment, as text (UTF-8 encoded before hashing) or bytes.

    Returns:
        The standard base64 encoding of the SHA-256 digest.
    """
    if isinstance(text, str):
        text = text.encode("utf-8")
    return base64.b64encode(hashlib.sha256(text).digest()).decode("ascii")


def has_draw_flush(source: str) -> bool:
    """Checks if any line of the program is a draw-flush instruction."""
    return DRAW_FLUSH_RE.search(source) is not None


def segment(source: str, mode: SegmentMode = SegmentMode.SHALLOW) -> List[str]:
    """Splits a program into the fragments that get fingerprinted.

    Args:
        source: The full program text.
        mode: SHALLOW keeps the program whole, DEEP cuts it at every
            draw-flush line.

    Returns:
        An empty list if the program never flushes a drawing, otherwise the
        fragments in program order. DEEP mode yields one more fragment than
        there are draw-flush lines, empty ones included.
    """
    if not has_draw_flush(source):
        return []
    if SegmentMode(mode) is SegmentMode.SHALLOW:
        return [source]
    return DRAW_FLUSH_RE.split(source)


class VerdictCache:
    """A thread-safe, bounded fingerprint to verdict map.

    Entries are evicted in insertion order once the capacity is exceeded;
    reading an entry does not refresh its position.
    """

    def __init__(self, capacity: int):
        """Initializes the VerdictCache.

        Args:
            capacity: The maximum number of verdicts kept in memory.
        """
        if capacity < 1:
            raise ValueError(f"Cache capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._entries: "OrderedDict[str, Verdict]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get_or_compute(
        self, key: str, compute: Callable[[str], Verdict]
    ) -> Verdict:
        """Returns the cached verdict for `key`, computing it on a miss.

        `compute` runs outside the lock so a slow lookup does not stall other
        workers. Two threads missing on the same key may both compute it; the
        stored entry keeps its insertion position and every caller gets the
        stored verdict. A flagged verdict replaces a stored CLEAN one, so a
        fail-open answer cannot hide a later positive lookup. If `compute`
        raises, nothing is stored.

        Args:
            key: The fingerprint.
            compute: Called with `key` to produce the verdict on a miss.

        Returns:
            The verdict stored for `key` once this call returns.
        """
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                self.hits += 1
            else:
                self.misses += 1
        if PROMETHEUS_ENABLED:
            logic_guard_cache_total.labels(result="miss" if cached is None else "hit").inc()
        if cached is not None:
            return cached
        verdict = compute(key)
        with self._lock:
            stored = self._entries.get(key)
            if stored is not None:
                if stored is Verdict.CLEAN and verdict.flagged:
                    self._entries[key] = verdict
                return self._entries[key]
            self._entries[key] = verdict
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self.evictions += 1
        return verdict

    def get(self, key: str) -> Optional[Verdict]:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> List[str]:
        """Returns the cached fingerprints, oldest first."""
        with self._lock:
            return list(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries


class ImageBanClient:
    """Client for the remote image ban reputation service."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 1.0,
        metrics: Optional[Metrics] = None,
    ):
        """Initializes the ImageBanClient.

        Args:
            endpoint: Base URL of the check endpoint; the fingerprint is sent
                as the `b64hash` query parameter.
            timeout: Connect and read timeout in seconds.
            metrics: Optional metrics sink for queries and failures.
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.metrics = metrics
        self.logger = logging.getLogger(self.__class__.__name__)

    def query(self, key: str) -> Verdict:
        """Looks a fingerprint up once, without retries.

        Args:
            key: The fingerprint to look up.

        Returns:
            CLEAN if the service does not know the fingerprint, otherwise
            FLAGGED_EXPLICIT or FLAGGED_SUGGESTIVE depending on the `nudity`
            field of the response.

        Raises:
            ClassificationUnavailable: On any transport error or if a
                successful response carries an unreadable body.
        """
        if self.metrics is not None:
            self.metrics.record_query()
        try:
            response = requests.get(
                self.endpoint,
                params={"b64hash": key},
                timeout=self.timeout,
                headers={
                    "User-Agent": "logic-guard/1.0",
                    "Content-Type": "application/json",
                },
            )
        except requests.Timeout as e:
            raise ClassificationUnavailable("timeout", f"Lookup timed out: {e}") from e
        except requests.ConnectionError as e:
            raise ClassificationUnavailable(
                "connection", f"Service unreachable: {e}"
            ) from e
        except requests.RequestException as e:
            raise ClassificationUnavailable("request", f"Lookup failed: {e}") from e

        if response.status_code != 200:
            return Verdict.CLEAN
        try:
            body = response.json()
        except ValueError as e:
            raise ClassificationUnavailable(
                "malformed", f"Unreadable response body: {e}"
            ) from e
        if not isinstance(body, dict):
            raise ClassificationUnavailable(
                "malformed", f"Expected a JSON object, got {type(body).__name__}"
            )
        if body.get("nudity") is True:
            return Verdict.FLAGGED_EXPLICIT
        return Verdict.FLAGGED_SUGGESTIVE

    def classify(self, key: str) -> Verdict:
        """Looks a fingerprint up, treating any failure as CLEAN."""
        try:
            return self.query(key)
        except ClassificationUnavailable as e:
            self.record_failure(key, e)
            return Verdict.CLEAN

    def record_failure(self, key: str, error: ClassificationUnavailable):
        self.logger.debug(
            "An unexpected exception happened while querying the API.", exc_info=error
        )
        self.logger.warning(f"Image ban lookup for {key} failed ({error.reason}): {error}")
        if self.metrics is not None:
            self.metrics.record_failure(error.reason)


class LogicBuildGuard:
    """The main class for the Logic Guard service."""

    def __init__(self, config: Dict, client: Optional[Any] = None):
        """Initializes the LogicBuildGuard instance.

        Args:
            config: A dictionary containing the configuration for the guard.
            client: The classification client. Anything with `query` and
                `classify` methods works; defaults to an `ImageBanClient`
                built from the config.
        """
        self._validate_config(config)
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self.metrics = Metrics()
        self.mode = SegmentMode.DEEP if config["deep_search"] else SegmentMode.SHALLOW
        self.cache = VerdictCache(int(config["cache_size"]))
        if client is None:
            client = ImageBanClient(
                config["endpoint"], float(config["timeout"]), metrics=self.metrics
            )
        self.client = client

    def _validate_config(self, config: Dict):
        """Validates the configuration dictionary."""
        required = [
            "endpoint",
            "timeout",
            "cache_size",
            "deep_search",
            "default_action",
            "cache_failures",
        ]
        missing = [k for k in required if k not in config]
        if missing:
            raise ValueError(f"Config missing keys: {missing}")
        if int(config["cache_size"]) < 1:
            raise ValueError(f"cache_size must be at least 1, got {config['cache_size']}")
        if float(config["timeout"]) <= 0:
            raise ValueError(f"timeout must be above 0, got {config['timeout']}")
        try:
            SanctionAction(str(config["default_action"]).upper())
        except ValueError:
            raise ValueError(
                f"Unknown default_action: {config['default_action']!r}"
            ) from None

    @property
    def default_action(self) -> SanctionAction:
        return SanctionAction(str(self.config["default_action"]).upper())

    def _resolve(self, key: str) -> Verdict:
        """Resolves one fingerprint through the cache, then the service."""
        if self.config["cache_failures"]:
            return self.cache.get_or_compute(key, self.client.classify)
        try:
            return self.cache.get_or_compute(key, self.client.query)
        except ClassificationUnavailable as e:
            record = getattr(self.client, "record_failure", None)
            if record is not None:
                record(key, e)
            return Verdict.CLEAN

    def classify(self, context: BuildContext) -> Verdict:
        """Classifies the program of a logic build.

        Args:
            context: The build to inspect.

        Returns:
            The first flagged verdict among the program's fragments, in
            program order, or CLEAN.
        """
        verdict = self._classify(context.code)
        self.metrics.record_build(verdict)
        return verdict

    def _classify(self, code: str) -> Verdict:
        fragments = segment(code, self.mode)
        for fragment in fragments:
            verdict = self._resolve(fingerprint(fragment))
            if verdict.flagged:
                return verdict
        return Verdict.CLEAN


class BuildMonitor:
    """Runs build classifications on a worker pool and fires sanctions."""

    def __init__(
        self,
        guard: LogicBuildGuard,
        sanction_handler: Optional[Callable[[SanctionEvent], None]] = None,
        max_workers: Optional[int] = None,
    ):
        """Initializes the BuildMonitor.

        Args:
            guard: The classifier invoked for every submitted build.
            sanction_handler: Called with a `SanctionEvent` for each flagged
                build. The monitor never kicks or bans by itself.
            max_workers: Size of the worker pool; defaults to the guard
                config's `max_workers`.
        """
        self.guard = guard
        self.sanction_handler = sanction_handler
        self.logger = logging.getLogger(self.__class__.__name__)
        workers = max_workers or int(guard.config.get("max_workers", 4))
        self.executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="logic-guard"
        )

    def submit(self, context: BuildContext) -> "Future[Verdict]":
        """Schedules a classification and returns its future.

        The sanction step runs as a completion callback on the worker thread;
        it is not guaranteed to have finished when `result()` returns.
        """
        future = self.executor.submit(self.guard.classify, context)
        future.add_done_callback(lambda f: self._on_complete(context, f))
        return future

    def on_build_end(self, event: BuildEndEvent) -> Optional["Future[Verdict]"]:
        """Handles a block-configuration event from the game server.

        Removals and events without an acting player are ignored.

        Returns:
            The pending classification, or None if the event was ignored.
        """
        if event.breaking or event.actor is None:
            return None
        context = BuildContext(x=event.x, y=event.y, code=event.code, actor=event.actor)
        return self.submit(context)

    def _on_complete(self, context: BuildContext, future: "Future[Verdict]"):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(
                f"Classification failed for {context.actor} at {context.location}: {error}"
            )
            return
        verdict = future.result()
        if not verdict.flagged:
            self.logger.debug(f"GIB: Miss {context.actor} at {context.location}")
            return
        self.logger.debug(f"GIB: Hit {context.actor} at {context.location}")
        event = SanctionEvent(
            verdict=verdict,
            actor=context.actor,
            action=self.guard.default_action,
            x=context.x,
            y=context.y,
        )
        if self.sanction_handler is None:
            return
        try:
            self.sanction_handler(event)
        except Exception as e:
            self.logger.error(f"Sanction handler failed for {context.actor}: {e}")
            return
        self.guard.metrics.record_sanction(event)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)


def log_sanction(
    event: SanctionEvent,
    log_path: Optional[str],
    logger: logging.Logger,
):
    """Logs a sanction event to a file and the console.

    Args:
        event: The sanction event.
        log_path: Optional path of a JSON lines file to append to.
        logger: The logger instance.
    """
    try:
        log_data = json.loads(event.to_json())
        log_data["timestamp"] = datetime.now(timezone.utc).isoformat()
        logger.info(json.dumps(log_data))
        if log_path:
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_data) + "\n")
    except OSError as e:
        logger.error(f"Log fail: {e}")
