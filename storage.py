"""Where finished mockups go: inline data URIs or files under the upload dir."""

import base64
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from errors import FileSystemError
from imaging import OUTPUT_FORMATS, TranscodeResult

logger = logging.getLogger(__name__)

FILENAME_PREFIX = "mockup_"


def _extension_for(mime_type: str) -> str:
    for _, mime, ext in OUTPUT_FORMATS.values():
        if mime == mime_type:
            return ext
    return "bin"


@dataclass(frozen=True)
class PersistedFile:
    filename: str
    path: str
    created_at: datetime


# -----------------------------
# SINKS
# -----------------------------
class InlineSink:
    mode = "inline"

    def deliver(self, result: TranscodeResult) -> dict:
        encoded = base64.b64encode(result.data).decode("ascii")
        return {
            "image": f"data:{result.mime_type};base64,{encoded}",
            "mimeType": result.mime_type,
        }


class DiskSink:
    """Writes each result to a new file and hands back its public URLs."""

    mode = "persist"

    def __init__(self, directory: str, base_url: str):
        self.directory = os.path.abspath(directory)
        self.base_url = base_url.rstrip("/")
        os.makedirs(self.directory, exist_ok=True)

    @staticmethod
    def new_filename(extension: str) -> str:
        return f"{FILENAME_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(8)}.{extension}"

    def write(self, data: bytes, extension: str) -> PersistedFile:
        filename = self.new_filename(extension)
        path = os.path.join(self.directory, filename)
        try:
            # never overwrite an existing mockup
            with open(path, "xb") as f:
                f.write(data)
        except OSError as e:
            raise FileSystemError(f"Failed to save mockup: {e}") from e
        logger.info("Saved %s (%d bytes)", filename, len(data))
        return PersistedFile(filename=filename, path=path, created_at=datetime.now(timezone.utc))

    def deliver(self, result: TranscodeResult) -> dict:
        saved = self.write(result.data, _extension_for(result.mime_type))
        return {
            "url": f"{self.base_url}/uploads/{saved.filename}",
            "downloadUrl": f"{self.base_url}/download/{saved.filename}",
            "filename": saved.filename,
            "mimeType": result.mime_type,
        }


# -----------------------------
# RETENTION
# -----------------------------
class RetentionSweeper:
    """Deletes files older than ``max_age`` seconds, every ``interval`` seconds.

    Best effort: a file that disappears or refuses to go is logged and skipped.
    """

    def __init__(self, directory: str, max_age: float = 24 * 3600, interval: float = 3600):
        self.directory = directory
        self.max_age = max_age
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        try:
            entries = list(os.scandir(self.directory))
        except OSError as e:
            logger.warning("Retention sweep could not list %s: %s", self.directory, e)
            return 0

        removed = 0
        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age <= self.max_age:
                    continue
                os.remove(entry.path)
                removed += 1
                logger.info("Deleted old file %s (%.1fh old)", entry.name, age / 3600)
            except FileNotFoundError:
                logger.debug("%s already gone", entry.name)
            except OSError as e:
                logger.warning("Could not delete %s: %s", entry.name, e)
        return removed

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Retention sweep failed")

    def start(self):
        if self._thread is not None:
            return
        self.sweep()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info("Retention sweeper running every %.0fs, max age %.0fs", self.interval, self.max_age)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
