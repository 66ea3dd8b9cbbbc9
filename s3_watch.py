# /s3_watch.py
"""
S3 Watch
- Watches a source folder recursively and mirrors it into an S3 bucket.
- One watch per directory: watches are added as folders appear and dropped as they vanish.
- SHA-256 fingerprints suppress uploads of files whose bytes did not change.
- A periodic full rescan (single-flight) corrects missed or coalesced notifications.
- Uploads/deletes run on a bounded worker pool; actions for one path run in order.
- Remembers last options across restarts via ~/.s3_watch/config.json
- Ignores paths via gitignore-style rules (built-in list below, extend with --ignore).
- Styled console output:
  - COPY green
  - REMOVE orange
  - WATCH / UNWATCH light brown
  - errors red
- Log file (optional, --log-dir) is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama boto3
  python s3_watch.py --src ./data --s3 my-bucket
  python s3_watch.py --src ./data --s3 my-bucket --remote-prefix backups/host1 --interval 10
"""

from __future__ import annotations

import argparse
import base64
import bisect
import datetime as dt
import hashlib
import json
import logging
import os
import posixpath
import queue
import stat
import sys
import threading
import time
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from colorama import init as colorama_init
from pathspec import GitIgnoreSpec
from watchdog.events import (
    EVENT_TYPE_CLOSED_NO_WRITE,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    EVENT_TYPE_OPENED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

__version__ = "0.1.0"

APP_DIR = Path.home() / ".s3_watch"
CONFIG_PATH = APP_DIR / "config.json"

DEFAULT_INTERVAL_SEC = 5.0
DEFAULT_REGION = "us-west-2"
DELETE_CONFIRM_DELAY_SEC = 2
DELETE_CONFIRM_ATTEMPTS = 10

LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

DEFAULT_IGNORE_PATTERNS = [
    # Editors
    "*.swp",
    "*.swo",
    "*~",
    ".#*",
    # OS
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
]


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "REMOVE": Ansi.ORANGE,
    "WATCH": Ansi.LIGHT_BROWN,
    "UNWATCH": Ansi.LIGHT_BROWN,
    "RESCAN": Ansi.LIGHT_BROWN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "s3_watch") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("s3_watch")
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[str] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    if not logger.isEnabledFor(level):
        return
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else os.path.isdir(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    src_dir: Optional[Path]
    bucket: str
    region: str = DEFAULT_REGION
    remote_prefix: str = ""
    interval_sec: float = DEFAULT_INTERVAL_SEC
    workers: int = 1
    log_level: str = "info"
    log_dir: Optional[Path] = None
    ignore_patterns: tuple[str, ...] = ()
    polling: bool = False
    confirm_delete: bool = True


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror a local folder into an S3 bucket.")
    p.add_argument("--version", action="store_true", help="Print the version and exit.")
    p.add_argument("--src", type=str, default=None, help="Local source directory.")
    p.add_argument("--s3", dest="bucket", type=str, default=None, help="S3 destination bucket.")
    p.add_argument("--region", type=str, default=None, help=f"S3 region (default {DEFAULT_REGION}).")
    p.add_argument("--remote-prefix", type=str, default=None, help="Remote key prefix.")
    p.add_argument("--interval", type=float, default=None, help="Seconds between full rescans.")
    p.add_argument("--workers", type=int, default=None, help="Concurrent transfer workers (default: CPU count).")
    p.add_argument("--log-level", type=str, default=None, help="critical, error, warning, info or debug.")
    p.add_argument("--log-dir", type=str, default=None, help="Also write a plain log file into this directory.")
    p.add_argument("--ignore", action="append", default=None, metavar="PATTERN", help="Extra gitignore-style pattern (repeatable).")
    p.add_argument("--polling", action="store_true", default=None, help="Use a polling observer instead of OS notifications.")
    p.add_argument("--no-confirm-delete", dest="confirm_delete", action="store_false", default=None, help="Do not wait for S3 to confirm deletes.")
    return p.parse_args(argv)


def load_config_file() -> dict:
    try:
        if CONFIG_PATH.exists():
            return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        pass
    return {}


def save_config_file(cfg: AppConfig) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "src": str(cfg.src_dir),
        "bucket": cfg.bucket,
        "region": cfg.region,
        "remote_prefix": cfg.remote_prefix,
        "interval_sec": cfg.interval_sec,
        "workers": cfg.workers,
        "log_level": cfg.log_level,
        "log_dir": str(cfg.log_dir) if cfg.log_dir else None,
        "ignore": list(cfg.ignore_patterns),
        "polling": cfg.polling,
        "confirm_delete": cfg.confirm_delete,
    }
    CONFIG_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _pick(arg, saved: dict, key: str, default=None):
    if arg is not None:
        return arg
    value = saved.get(key)
    return default if value is None else value


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    saved = load_config_file()

    src = _pick(args.src, saved, "src")
    log_dir = _pick(args.log_dir, saved, "log_dir")

    return AppConfig(
        src_dir=Path(src) if src else None,
        bucket=_pick(args.bucket, saved, "bucket", ""),
        region=_pick(args.region, saved, "region", DEFAULT_REGION),
        remote_prefix=_pick(args.remote_prefix, saved, "remote_prefix", ""),
        interval_sec=float(_pick(args.interval, saved, "interval_sec", DEFAULT_INTERVAL_SEC)),
        workers=int(_pick(args.workers, saved, "workers", os.cpu_count() or 1)),
        log_level=_pick(args.log_level, saved, "log_level", "info"),
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        ignore_patterns=tuple(_pick(args.ignore, saved, "ignore", [])),
        polling=bool(_pick(args.polling, saved, "polling", False)),
        confirm_delete=bool(_pick(args.confirm_delete, saved, "confirm_delete", True)),
    )


def validate_config(cfg: AppConfig) -> AppConfig:
    if cfg.src_dir is None:
        raise ConfigError("A source directory is required (--src).")
    src = cfg.src_dir.expanduser().resolve()
    if not src.exists():
        raise ConfigError(f"src [{src}] does not exist")
    if not src.is_dir():
        raise ConfigError(f"src [{src}] is not a folder")
    if not cfg.bucket:
        raise ConfigError("An S3 bucket is required (--s3).")
    if cfg.workers < 1:
        raise ConfigError(f"workers must be at least 1, got {cfg.workers}")

    log_dir = cfg.log_dir.expanduser().resolve() if cfg.log_dir else None
    return replace(cfg, src_dir=src, log_dir=log_dir, interval_sec=max(1.0, float(cfg.interval_sec)))


# -------------------------
# Ignore + filesystem helpers
# -------------------------

class IgnoreMatcher:
    def __init__(self, root: Path, patterns: list[str]):
        self.root = Path(os.path.abspath(root))
        self.spec = GitIgnoreSpec.from_lines(patterns)

    def is_ignored(self, path: str, is_dir: Optional[bool] = None) -> bool:
        try:
            rel = Path(path).relative_to(self.root)
        except ValueError:
            return True
        rel_posix = rel.as_posix()
        if rel_posix == ".":
            return False
        if is_dir is None:
            return self.spec.match_file(rel_posix) or self.spec.match_file(rel_posix + "/")
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def sha256_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return base64.urlsafe_b64encode(h.digest()).decode("ascii")


def _is_under(path: str, root: str) -> bool:
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


# -------------------------
# Actions + transfer
# -------------------------

class ActionKind(Enum):
    COPY = "copy"
    REMOVE = "remove"


@dataclass(frozen=True)
class Action:
    path: str
    kind: ActionKind


def make_s3_client(region: str):
    return boto3.session.Session().client("s3", region_name=region)


class S3Transfer:
    """
    Uploads and deletes the remote counterpart of a local path.
    Keys are the path relative to the watched root, under the remote prefix.
    Failures are logged and reported as False; nothing is retried here.
    """

    def __init__(
        self,
        client,
        bucket: str,
        root: Path,
        prefix: str,
        logger: logging.Logger,
        confirm_delete: bool = True,
    ):
        self.client = client
        self.bucket = bucket
        self.root = Path(os.path.abspath(root))
        self.prefix = prefix.strip("/")
        self.logger = logger
        self.confirm_delete = confirm_delete

    def remote_key(self, local_path: str) -> str:
        rel = Path(local_path).relative_to(self.root).as_posix()
        return posixpath.join(self.prefix, rel) if self.prefix else rel

    def upload(self, local_path: str) -> bool:
        key = self.remote_key(local_path)
        try:
            self.client.upload_file(local_path, self.bucket, key)
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
            log_action(self.logger, "COPY", f"ERROR {local_path} -> s3://{self.bucket}/{key} | {e}", path=local_path, is_dir=False, level=logging.ERROR)
            return False
        log_action(self.logger, "COPY", f"{local_path} -> s3://{self.bucket}/{key}", path=local_path, is_dir=False)
        return True

    def delete(self, local_path: str) -> bool:
        key = self.remote_key(local_path)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
            if self.confirm_delete:
                self.client.get_waiter("object_not_exists").wait(
                    Bucket=self.bucket,
                    Key=key,
                    WaiterConfig={"Delay": DELETE_CONFIRM_DELAY_SEC, "MaxAttempts": DELETE_CONFIRM_ATTEMPTS},
                )
        except (BotoCoreError, ClientError) as e:
            log_action(self.logger, "REMOVE", f"ERROR s3://{self.bucket}/{key} | {e}", path=local_path, is_dir=False, level=logging.ERROR)
            return False
        log_action(self.logger, "REMOVE", f"s3://{self.bucket}/{key} ({local_path})", path=local_path, is_dir=False)
        return True


class ActionDispatcher:
    """
    Hands actions to a worker pool without waiting for them.

    Actions for the same path run one after another in submission order:
    each path owns a pending deque and at most one drain task in the pool.
    Different paths run in parallel, in no particular order.
    """

    def __init__(self, transfer: S3Transfer, executor: Executor, logger: logging.Logger):
        self.transfer = transfer
        self.executor = executor
        self.logger = logger
        self._pending: dict[str, deque[Action]] = {}
        self._guard = threading.Lock()

    def submit(self, action: Action) -> None:
        with self._guard:
            queued = self._pending.get(action.path)
            if queued is not None:
                queued.append(action)
                return
            self._pending[action.path] = deque([action])
        try:
            self.executor.submit(self._drain, action.path)
        except Exception:
            with self._guard:
                self._pending.pop(action.path, None)
            raise

    def _drain(self, path: str) -> None:
        while True:
            with self._guard:
                queued = self._pending[path]
                if not queued:
                    del self._pending[path]
                    return
                action = queued.popleft()
            try:
                self.run(action)
            except Exception as e:
                log_action(self.logger, action.kind.name, f"ERROR job failed: {path} | {e}", path=path, is_dir=False, level=logging.ERROR)

    def run(self, action: Action) -> bool:
        if action.kind is ActionKind.COPY:
            return self.transfer.upload(action.path)
        elif action.kind is ActionKind.REMOVE:
            return self.transfer.delete(action.path)
        raise ValueError(f"Unknown action kind: {action.kind!r}")


# -------------------------
# Watch state
# -------------------------

class WatchSet:
    """Sorted, unique list of watched directories, kept in step with the notifier."""

    def __init__(self, notifier, lock: threading.RLock, logger: logging.Logger):
        self.notifier = notifier
        self.logger = logger
        self._paths: list[str] = []
        self._lock = lock

    def _index(self, path: str) -> int:
        i = bisect.bisect_left(self._paths, path)
        if i < len(self._paths) and self._paths[i] == path:
            return i
        return -1

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return self._index(path) >= 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._paths)

    def add(self, path: str) -> bool:
        with self._lock:
            if self._index(path) >= 0:
                self.logger.debug("Skipping <%s>: already watching it", path)
                return False
            try:
                self.notifier.add(path)
            except Exception as e:
                log_action(self.logger, "WATCH", f"ERROR could not watch {path} | {e}", path=path, is_dir=True, level=logging.ERROR)
                return False
            bisect.insort(self._paths, path)
            log_action(self.logger, "WATCH", path, path=path, is_dir=True, level=logging.DEBUG)
            return True

    def remove(self, path: str) -> bool:
        with self._lock:
            i = self._index(path)
            if i < 0:
                return False
            self._drop(i)
            return True

    def remove_tree(self, path: str) -> bool:
        """Drop `path` and every watched folder below it. Returns whether `path` itself was watched."""
        with self._lock:
            for child in reversed(self._descendants(path)):
                self._drop(self._index(child))
            return self.remove(path)

    def paths_under(self, root: str) -> list[str]:
        with self._lock:
            found = [root] if self._index(root) >= 0 else []
            return found + self._descendants(root)

    def _descendants(self, path: str) -> list[str]:
        prefix = path if path.endswith(os.sep) else path + os.sep
        lo = bisect.bisect_left(self._paths, prefix)
        hi = bisect.bisect_left(self._paths, prefix + "\U0010ffff")
        return self._paths[lo:hi]

    def _drop(self, index: int) -> None:
        path = self._paths.pop(index)
        log_action(self.logger, "UNWATCH", path, path=path, is_dir=True, level=logging.DEBUG)
        try:
            self.notifier.remove(path)
        except Exception as e:
            log_action(self.logger, "UNWATCH", f"ERROR could not unwatch {path} | {e}", path=path, is_dir=True, level=logging.WARNING)


class FingerprintCache:
    """Last-seen content digest per file path."""

    def __init__(self, lock: threading.RLock):
        self._digests: dict[str, str] = {}
        self._lock = lock

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._digests

    def __len__(self) -> int:
        with self._lock:
            return len(self._digests)

    def get(self, path: str) -> Optional[str]:
        with self._lock:
            return self._digests.get(path)

    def update(self, path: str, digest: str) -> bool:
        """Store `digest`; False when it equals the cached one (nothing changed)."""
        with self._lock:
            if self._digests.get(path) == digest:
                return False
            self._digests[path] = digest
            return True

    def discard(self, path: str) -> bool:
        with self._lock:
            return self._digests.pop(path, None) is not None

    def paths_under(self, root: str) -> list[str]:
        with self._lock:
            return [p for p in self._digests if _is_under(p, root)]


class MirrorState:
    """Watched folders and file fingerprints, guarded by one re-entrant lock."""

    def __init__(self, notifier, logger: logging.Logger):
        self.lock = threading.RLock()
        self.watches = WatchSet(notifier, self.lock, logger)
        self.fingerprints = FingerprintCache(self.lock)


# -------------------------
# Detection + walking
# -------------------------

class ChangeDetector:
    def __init__(
        self,
        state: MirrorState,
        dispatcher: ActionDispatcher,
        ignore: IgnoreMatcher,
        logger: logging.Logger,
    ):
        self.state = state
        self.dispatcher = dispatcher
        self.ignore = ignore
        self.logger = logger
        self.walker = SubtreeWalker(self, logger)

    def determine_action(self, path: str) -> Optional[Action]:
        """
        Decide what a change at `path` means for the mirror and dispatch it.

        Folders are (un)registered, never transferred. Files are uploaded when
        their fingerprint changed and removed once they are gone. Returns the
        dispatched action, or None when nothing needs to happen.
        """
        if not path:
            return None
        path = os.path.abspath(os.fsdecode(path))

        # stat, hash and cache update happen as one step per path; a folder
        # walk runs outside the lock and takes it again for each file
        with self.state.lock:
            try:
                st = os.stat(path)
            except FileNotFoundError:
                st = None
            except OSError as e:
                log_action(self.logger, "COPY", f"SKIP cannot stat {path} | {e}", path=path, is_dir=False, level=logging.WARNING)
                return None

            if st is None:
                if self.ignore.is_ignored(path):
                    return None
                return self._removed(path)

            is_dir = stat.S_ISDIR(st.st_mode)
            if self.ignore.is_ignored(path, is_dir=is_dir):
                return None

            if not is_dir:
                return self._file_changed(path, st)

            if os.path.islink(path):
                return None
            # a file replaced by a folder of the same name
            replaced = self.state.fingerprints.discard(path)
            removal = self._emit(Action(path, ActionKind.REMOVE)) if replaced else None

        self.walker.walk_and_register(path)
        return removal

    def _file_changed(self, path: str, st: os.stat_result) -> Optional[Action]:
        if not stat.S_ISREG(st.st_mode):
            return None

        # a folder replaced by a file of the same name
        self.state.watches.remove_tree(path)

        try:
            digest = sha256_file(path)
        except OSError as e:
            log_action(self.logger, "COPY", f"SKIP unreadable {path} | {e}", path=path, is_dir=False, level=logging.WARNING)
            return None

        if not self.state.fingerprints.update(path, digest):
            return None
        return self._emit(Action(path, ActionKind.COPY))

    def _removed(self, path: str) -> Optional[Action]:
        if self.state.watches.remove_tree(path):
            return None
        # never fingerprinted: nothing was uploaded for it
        if not self.state.fingerprints.discard(path):
            return None
        return self._emit(Action(path, ActionKind.REMOVE))

    def _emit(self, action: Action) -> Action:
        self.logger.debug("Sending operation %s %s", action.kind.value, action.path)
        self.dispatcher.submit(action)
        return action


class SubtreeWalker:
    def __init__(self, detector: ChangeDetector, logger: logging.Logger):
        self.detector = detector
        self.logger = logger

    def walk_and_register(self, root: str) -> int:
        """
        Watch every folder under `root` and run every file through the detector,
        then sweep tracked paths under `root` that no longer match the disk.
        Returns the number of actions dispatched.
        """
        root = os.path.abspath(root)
        detector = self.detector
        state = detector.state

        emitted = 0
        if os.path.isdir(root):
            emitted += self._walk(root)
        elif detector.determine_action(root):
            emitted += 1

        for path in state.watches.paths_under(root):
            if not os.path.isdir(path):
                detector.determine_action(path)

        # gone, or now a folder: either way the uploaded file has to go
        for path in state.fingerprints.paths_under(root):
            if not os.path.isfile(path) and detector.determine_action(path):
                emitted += 1

        return emitted

    def _walk(self, root: str) -> int:
        detector = self.detector
        emitted = 0

        def on_error(err: OSError) -> None:
            self.logger.warning("Error walking folder <%s>: %s", getattr(err, "filename", root), err)

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            detector.state.watches.add(dirpath)
            dirnames[:] = [
                d for d in dirnames
                if not os.path.islink(os.path.join(dirpath, d))
                and not detector.ignore.is_ignored(os.path.join(dirpath, d), is_dir=True)
            ]
            for name in filenames:
                if detector.determine_action(os.path.join(dirpath, name)):
                    emitted += 1
        return emitted


# -------------------------
# Notifications + loop
# -------------------------

@dataclass(frozen=True)
class Notification:
    path: str
    kind: str


@dataclass(frozen=True)
class NotifierError:
    error: BaseException


class Tick:
    pass


_STOP = object()


def notifications_for(event: FileSystemEvent) -> list[Notification]:
    if event.event_type in (EVENT_TYPE_OPENED, EVENT_TYPE_CLOSED_NO_WRITE):
        return []
    # children report their own events
    if event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
        return []
    paths = [event.src_path]
    if event.event_type == EVENT_TYPE_MOVED:
        paths.append(event.dest_path)
    return [Notification(os.fsdecode(p), event.event_type) for p in paths if p]


class DirectoryNotifier(FileSystemEventHandler):
    """
    One non-recursive watchdog watch per folder. Events are only queued here:
    watchdog dispatches while holding the observer lock, so no engine work
    may run on this thread.
    """

    def __init__(self, messages: queue.Queue, observer=None):
        super().__init__()
        self.messages = messages
        self.observer = observer if observer is not None else Observer()
        self._watches = {}

    def add(self, path: str) -> None:
        self._watches[path] = self.observer.schedule(self, path, recursive=False)

    def remove(self, path: str) -> None:
        watch = self._watches.pop(path, None)
        if watch is not None:
            self.observer.unschedule(watch)

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            for n in notifications_for(event):
                self.messages.put(n)
        except Exception as e:
            self.messages.put(NotifierError(e))

    def start(self) -> None:
        self.observer.start()

    def stop(self) -> None:
        self.observer.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        self.observer.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self.observer.is_alive()


class SingleFlight:
    """Non-blocking guard: at most one holder at a time."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_begin(self) -> bool:
        return self._lock.acquire(blocking=False)

    def end(self) -> None:
        self._lock.release()

    @property
    def running(self) -> bool:
        return self._lock.locked()


class Ticker(threading.Thread):
    def __init__(self, messages: queue.Queue, interval_sec: float, stop_event: threading.Event):
        super().__init__(daemon=True, name="s3-watch-ticker")
        self.messages = messages
        self.interval_sec = max(1.0, float(interval_sec))
        self.stop_event = stop_event

    def run(self) -> None:
        while not self.stop_event.wait(self.interval_sec):
            self.messages.put(Tick())


class MirrorLoop(threading.Thread):
    """
    Single consumer for notifications, notifier errors and rescan ticks.

    Notifications go straight to the detector. A tick starts a full rescan on
    its own thread unless one is already running, in which case it is dropped.
    """

    def __init__(
        self,
        root: Path,
        detector: ChangeDetector,
        messages: queue.Queue,
        logger: logging.Logger,
    ):
        super().__init__(daemon=True, name="s3-watch-loop")
        self.root = os.path.abspath(root)
        self.detector = detector
        self.messages = messages
        self.logger = logger
        self.rescan = SingleFlight()

    def run(self) -> None:
        while True:
            msg = self.messages.get()
            if msg is _STOP:
                return
            self.handle(msg)

    def handle(self, msg) -> None:
        try:
            if isinstance(msg, Notification):
                self.detector.determine_action(msg.path)
            elif isinstance(msg, Tick):
                self.trigger_reconcile()
            elif isinstance(msg, NotifierError):
                self.logger.error("Error reading notifications: %s", msg.error)
            else:
                self.logger.warning("Dropping unknown message: %r", msg)
        except Exception as e:
            self.logger.error("Error handling %r: %s", msg, e)

    def trigger_reconcile(self) -> Optional[threading.Thread]:
        if not self.rescan.try_begin():
            log_action(self.logger, "RESCAN", "skip: previous pass still running", level=logging.DEBUG)
            return None
        t = threading.Thread(target=self._run_pass, daemon=True, name="s3-watch-rescan")
        t.start()
        return t

    def reconcile(self) -> bool:
        if not self.rescan.try_begin():
            log_action(self.logger, "RESCAN", "skip: previous pass still running", level=logging.DEBUG)
            return False
        self._run_pass()
        return True

    def _run_pass(self) -> None:
        try:
            start = time.time()
            emitted = self.detector.walker.walk_and_register(self.root)
            log_action(
                self.logger,
                "RESCAN",
                f"done {self.root} ({emitted} actions, {time.time() - start:.2f}s)",
                level=logging.INFO if emitted else logging.DEBUG,
            )
        except Exception as e:
            log_action(self.logger, "RESCAN", f"ERROR {self.root} | {e}", level=logging.ERROR)
        finally:
            self.rescan.end()

    def stop(self) -> None:
        self.messages.put(_STOP)


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if args.version:
        print(__version__)
        return 0

    cfg = build_effective_config(args)
    level = LOG_LEVELS.get(cfg.log_level.lower())
    logger = setup_logger(cfg.log_dir, level if level is not None else logging.INFO)
    if level is None:
        logger.warning("Log level <%s> does not exist, should be one of [%s]", cfg.log_level, ", ".join(LOG_LEVELS))
        logger.warning("Log level is set to info")

    try:
        cfg = validate_config(cfg)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 2

    logger.info("Source : %s", cfg.src_dir)
    logger.info("Target : s3://%s/%s", cfg.bucket, cfg.remote_prefix.strip("/"))

    try:
        save_config_file(cfg)
        logger.info("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    messages: queue.Queue = queue.Queue()
    notifier = DirectoryNotifier(messages, observer=PollingObserver() if cfg.polling else Observer())
    state = MirrorState(notifier, logger)
    ignore = IgnoreMatcher(cfg.src_dir, [*DEFAULT_IGNORE_PATTERNS, *cfg.ignore_patterns])
    transfer = S3Transfer(
        make_s3_client(cfg.region),
        cfg.bucket,
        cfg.src_dir,
        cfg.remote_prefix,
        logger,
        confirm_delete=cfg.confirm_delete,
    )
    executor = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="s3-watch-worker")
    dispatcher = ActionDispatcher(transfer, executor, logger)
    detector = ChangeDetector(state, dispatcher, ignore, logger)
    loop = MirrorLoop(cfg.src_dir, detector, messages, logger)

    stop_event = threading.Event()
    ticker = Ticker(messages, cfg.interval_sec, stop_event)

    logger.info("Starting watcher... (Ctrl+C to stop)")
    try:
        notifier.start()
        loop.start()
        loop.reconcile()
        logger.info("Watching %d folders, %d files", len(state.watches), len(state.fingerprints))
        ticker.start()
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        stop_event.set()
        if notifier.is_alive():
            notifier.stop()
            notifier.join(timeout=10)
        if loop.is_alive():
            loop.stop()
            loop.join(timeout=10)
        executor.shutdown(wait=True)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
