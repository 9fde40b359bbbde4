# ============================================================================
# CONFIGURATION - .env record and run settings
# ============================================================================

import logging
import os
import re
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from dotenv import dotenv_values, set_key

from .errors import ConfigError
from .utils import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL

log = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10.0

# Unquoted values lose an inline comment and surrounding quotes on the next load
INLINE_COMMENT = re.compile(r"\s#")
QUOTE_CHARS = ("'", "\"", "`")


@dataclass
class RunSettings:
    """Per-invocation knobs threaded through every flow."""

    force: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    jitter: float = 0.0
    allow_login: bool = False
    device_code: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if self.poll_interval < 0:
            raise ConfigError("poll interval must not be negative")
        if self.max_attempts < 1:
            raise ConfigError("max attempts must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ConfigError("jitter must be between 0 and 1")


@contextmanager
def _file_lock(path: Path, timeout: float = LOCK_TIMEOUT_SECONDS):
    """Advisory lock: exclusive creation of <path>.lock."""
    lock_path = path.with_name(path.name + ".lock")
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise ConfigError(
                    f"Another process holds {lock_path}. Remove it if no other run is active."
                )
            time.sleep(0.1)
    try:
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        yield
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass


class EnvFile:
    """
    Flat KEY=VALUE configuration backed by a .env file.

    Loaded once; written back only through set(), update() and reset().
    Rewrites keep comments, blank lines and the order of untouched keys.
    """

    def __init__(self, path, values: Optional[Dict[str, str]] = None):
        self.path = Path(path)
        self._values: Dict[str, str] = dict(values or {})

    @classmethod
    def load(cls, path, required: bool = False) -> "EnvFile":
        path = Path(path)
        if not path.is_file():
            if required:
                raise ConfigError(f"Environment file not found: {path}")
            log.warning("Environment file not found: %s", path)
            return cls(path)
        raw = dotenv_values(path, interpolate=False)
        values = {k: v for k, v in raw.items() if v is not None}
        log.debug("Loaded %d values from %s", len(values), path)
        return cls(path, values)

    # ------------------------------------------------------------------ reads

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self._values.get(key)
        return value if value else default

    def require(self, *keys: str) -> Dict[str, str]:
        missing = [k for k in keys if not self._values.get(k)]
        if missing:
            raise ConfigError(f"Missing required configuration in {self.path}: {', '.join(missing)}")
        return {k: self._values[k] for k in keys}

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def __contains__(self, key: str) -> bool:
        return bool(self._values.get(key))

    # ----------------------------------------------------------------- writes

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: Mapping[str, str]) -> None:
        for key, value in values.items():
            _validate(key, value)
        with _file_lock(self.path):
            for key, value in values.items():
                set_key(str(self.path), key, value, quote_mode="never")
                self._values[key] = value
        log.info("Saved %s to %s", ", ".join(values), self.path)

    def backup(self) -> Optional[Path]:
        if not self.path.is_file():
            return None
        target = self.path.with_name(f"{self.path.name}.backup.{datetime.now():%Y%m%d-%H%M%S}")
        shutil.copy2(self.path, target)
        log.info("Backed up %s to %s", self.path, target)
        return target

    def reset(self, keep: Iterable[str]) -> None:
        """Rewrites the file with only the kept keys that currently have values."""
        kept = {k: self._values[k] for k in keep if self._values.get(k)}
        for key, value in kept.items():
            _validate(key, value)
        with _file_lock(self.path):
            self.path.write_text("".join(f"{k}={v}\n" for k, v in kept.items()), encoding="utf-8")
        self._values = kept
        log.info("Reset %s to %s", self.path, ", ".join(kept) or "an empty file")


def _validate(key: str, value: str) -> None:
    if not key or "=" in key or any(c.isspace() for c in key):
        raise ConfigError(f"Invalid configuration key: {key!r}")
    if value is None:
        raise ConfigError(f"No value given for {key}")
    if "\n" in value or "\r" in value:
        raise ConfigError(f"Value for {key} contains a newline, which the .env format cannot hold")
    if value != value.strip():
        raise ConfigError(f"Value for {key} has leading or trailing whitespace, which the .env file would drop")
    if INLINE_COMMENT.search(value):
        raise ConfigError(f"Value for {key} contains ' #', which the .env file would read back as a comment")
    if value[:1] in QUOTE_CHARS:
        raise ConfigError(f"Value for {key} starts with a quote, which the .env file would strip on load")
