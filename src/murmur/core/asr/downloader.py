"""
Resumable, verified model downloads.

Archives are streamed into ``<models_dir>/.partial/<archive>.part`` with a JSON
sidecar recording how many bytes are known good. A retry resumes with an HTTP
range request. Finished archives must pass a size or checksum check, are
extracted into a staging directory inside the models directory and renamed
into place, so a model directory is either complete or absent. An archive
that fails verification or extraction is discarded and fetched again.
"""

import errno
import hashlib
import json
import os
import re
import shutil
import tarfile
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from ...utils.logger import get_logger
from ..errors import DownloadError
from ..settings.config import DOWNLOAD_MAX_ATTEMPTS
from .file_utils import is_valid_model_dir
from .models.registry import ModelDescriptor, is_model_installed

logger = get_logger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]

PARTIAL_DIR = ".partial"
STAGING_PREFIX = ".staging-"
SIDECAR_SAVE_INTERVAL = 1024 * 1024
DISK_FULL_MESSAGE = "Not enough disk space to install the model."
CANCELLED_MESSAGE = "Model download cancelled."

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


@dataclass
class DownloadJob:
    file_name: str
    url: str
    target_path: str
    bytes_downloaded: int = 0
    total_bytes: Optional[int] = None
    attempt_count: int = 0
    expected_sha256: Optional[str] = None

    def save(self, sidecar: Path) -> None:
        tmp = sidecar.with_suffix(sidecar.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f)
        os.replace(tmp, sidecar)

    @classmethod
    def load(cls, sidecar: Path) -> Optional["DownloadJob"]:
        try:
            with open(sidecar, "r", encoding="utf-8") as f:
                return cls(**json.load(f))
        except (OSError, ValueError, TypeError) as e:
            logger.debug(f"Ignoring download sidecar {sidecar}: {e}")
            return None


def parse_content_range(value: Optional[str]) -> Optional[tuple]:
    """Parse ``bytes start-end/total`` into ``(start, total)``; total may be None."""
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if not match:
        return None
    total = None if match.group(3) == "*" else int(match.group(3))
    return int(match.group(1)), total


def _is_disk_full(error: OSError) -> bool:
    return error.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


class DownloadManager:
    def __init__(
        self,
        models_dir: Path,
        session: Optional[requests.Session] = None,
        max_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 2,
        chunk_size: int = 64 * 1024,
        timeout: float = 30.0,
    ):
        self.models_dir = Path(models_dir)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="murmur-download"
        )
        self._lock = threading.Lock()
        self._futures: Dict[str, Future] = {}
        self._listeners: Dict[str, List[ProgressCallback]] = {}
        self._cancel_events: Dict[str, threading.Event] = {}

    @property
    def partial_dir(self) -> Path:
        return self.models_dir / PARTIAL_DIR

    def partial_path(self, descriptor: ModelDescriptor) -> Path:
        return self.partial_dir / f"{descriptor.archive_name}.part"

    def sidecar_path(self, descriptor: ModelDescriptor) -> Path:
        return self.partial_dir / f"{descriptor.archive_name}.json"

    def ensure_installed(
        self, descriptor: ModelDescriptor, on_progress: Optional[ProgressCallback] = None
    ) -> Future:
        """
        Make sure ``descriptor`` is installed, downloading it if needed.

        Returns a Future resolving to the installed model directory. Requests
        for a file that is already downloading share the running job.
        """
        target = self.models_dir / descriptor.file_name
        if is_model_installed(self.models_dir, descriptor):
            done: Future = Future()
            done.set_result(target)
            return done

        with self._lock:
            running = self._futures.get(descriptor.file_name)
            if running is not None and not running.done():
                if on_progress is not None:
                    self._listeners[descriptor.file_name].append(on_progress)
                return running

            self._listeners[descriptor.file_name] = [on_progress] if on_progress else []
            cancel_event = threading.Event()
            self._cancel_events[descriptor.file_name] = cancel_event
            future = self._executor.submit(self._run, descriptor, cancel_event)
            self._futures[descriptor.file_name] = future

        future.add_done_callback(lambda f: self._forget(descriptor.file_name, f))
        return future

    def cancel(self, file_name: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(file_name)
            future = self._futures.get(file_name)
        if event is None or future is None or future.done():
            return False
        event.set()
        logger.info(f"Cancelling download of '{file_name}'")
        return True

    def shutdown(self) -> None:
        with self._lock:
            events = list(self._cancel_events.values())
        for event in events:
            event.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _forget(self, file_name: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(file_name) is future:
                del self._futures[file_name]
                self._listeners.pop(file_name, None)
                self._cancel_events.pop(file_name, None)

    def _notify(self, file_name: str, downloaded: int, total: Optional[int]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(file_name, ()))
        for listener in listeners:
            try:
                listener(downloaded, total)
            except Exception:
                logger.exception(f"Download progress listener failed for '{file_name}'")

    def _run(self, descriptor: ModelDescriptor, cancel_event: threading.Event) -> Path:
        if not descriptor.download_url:
            raise DownloadError(
                f"No download URL for '{descriptor.file_name}'", retryable=False
            )

        try:
            self.partial_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._os_error(e, "creating the download directory") from e

        part = self.partial_path(descriptor)
        sidecar = self.sidecar_path(descriptor)
        job = self._resume_job(descriptor, part, sidecar)

        logger.info(f"Downloading {descriptor.download_url}")
        attempt = 0
        while True:
            if cancel_event.is_set():
                raise DownloadError(
                    "cancelled", user_message=CANCELLED_MESSAGE, retryable=False
                )
            attempt += 1
            job.attempt_count += 1
            try:
                self._fetch(job, part, sidecar, cancel_event)
                self._verify(job, descriptor, part, sidecar)
                path = self._install(job, descriptor, part, sidecar)
                break
            except DownloadError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    logger.error(
                        f"Download of '{descriptor.file_name}' failed after "
                        f"{attempt} attempt(s): {e}"
                    )
                    raise
                delay = min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))
                logger.warning(
                    f"Download attempt {attempt} for '{descriptor.file_name}' "
                    f"failed: {e}. Retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        for leftover in (part, sidecar):
            try:
                leftover.unlink()
            except FileNotFoundError:
                pass
        logger.info(f"Model '{descriptor.file_name}' installed at {path}")
        return path

    def _resume_job(
        self, descriptor: ModelDescriptor, part: Path, sidecar: Path
    ) -> DownloadJob:
        job = DownloadJob.load(sidecar) if sidecar.exists() else None
        if (
            job is None
            or job.url != descriptor.download_url
            or job.expected_sha256 != descriptor.sha256
        ):
            job = DownloadJob(
                file_name=descriptor.file_name,
                url=descriptor.download_url,
                target_path=str(self.models_dir / descriptor.file_name),
                total_bytes=descriptor.size_bytes,
                expected_sha256=descriptor.sha256,
            )
        part_size = part.stat().st_size if part.exists() else 0
        job.bytes_downloaded = min(job.bytes_downloaded, part_size)
        if job.bytes_downloaded:
            logger.info(
                f"Found partial download of '{descriptor.file_name}' "
                f"({job.bytes_downloaded} bytes)"
            )
        return job

    def _fetch(
        self, job: DownloadJob, part: Path, sidecar: Path, cancel_event: threading.Event
    ) -> None:
        offset = job.bytes_downloaded
        if job.total_bytes and offset >= job.total_bytes:
            return

        headers = {"Range": f"bytes={offset}-"} if offset else {}
        try:
            with self._session.get(
                job.url, stream=True, timeout=self.timeout, headers=headers
            ) as response:
                if response.status_code == 416 and offset:
                    # Stale range; start over.
                    job.bytes_downloaded = 0
                    raise DownloadError("Server rejected resume range", retryable=True)
                response.raise_for_status()

                if offset and response.status_code == 206:
                    content_range = parse_content_range(
                        response.headers.get("Content-Range")
                    )
                    if content_range is None or content_range[0] != offset:
                        job.bytes_downloaded = 0
                        raise DownloadError(
                            f"Unexpected Content-Range {response.headers.get('Content-Range')!r}",
                            retryable=True,
                        )
                    if content_range[1] is not None:
                        job.total_bytes = content_range[1]
                else:
                    if offset:
                        logger.info("Server ignored range request, restarting download")
                    offset = 0
                    length = response.headers.get("Content-Length")
                    if length is not None:
                        job.total_bytes = int(length)

                job.bytes_downloaded = offset
                self._write_body(job, response, part, sidecar, cancel_event)
        except requests.RequestException as e:
            self._save_job(job, sidecar)
            raise DownloadError(f"Network error: {e}", retryable=True) from e
        except OSError as e:
            self._save_job(job, sidecar)
            raise self._os_error(e, "writing the download") from e

        self._save_job(job, sidecar)
        if job.total_bytes and job.bytes_downloaded < job.total_bytes:
            raise DownloadError(
                f"Connection closed at {job.bytes_downloaded}/{job.total_bytes} bytes",
                retryable=True,
            )

    def _write_body(
        self,
        job: DownloadJob,
        response,
        part: Path,
        sidecar: Path,
        cancel_event: threading.Event,
    ) -> None:
        mode = "r+b" if job.bytes_downloaded and part.exists() else "wb"
        with open(part, mode) as f:
            f.seek(job.bytes_downloaded)
            f.truncate()
            unsaved = 0
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if cancel_event.is_set():
                    f.flush()
                    self._save_job(job, sidecar)
                    raise DownloadError(
                        "cancelled", user_message=CANCELLED_MESSAGE, retryable=False
                    )
                if not chunk:
                    continue
                f.write(chunk)
                job.bytes_downloaded += len(chunk)
                unsaved += len(chunk)
                if unsaved >= SIDECAR_SAVE_INTERVAL:
                    f.flush()
                    self._save_job(job, sidecar)
                    unsaved = 0
                self._notify(job.file_name, job.bytes_downloaded, job.total_bytes)

    def _save_job(self, job: DownloadJob, sidecar: Path) -> None:
        try:
            job.save(sidecar)
        except OSError as e:
            logger.warning(f"Could not save download progress: {e}")

    def _verify(
        self, job: DownloadJob, descriptor: ModelDescriptor, part: Path, sidecar: Path
    ) -> None:
        actual = part.stat().st_size if part.exists() else 0
        expected = descriptor.size_bytes or job.total_bytes
        problem = None
        if not expected and not descriptor.sha256:
            problem = "size is unknown and no checksum is available"
        elif expected and actual != expected:
            problem = f"size mismatch: expected {expected} bytes, got {actual}"
        elif descriptor.sha256:
            digest = hashlib.sha256()
            with open(part, "rb") as f:
                for block in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(block)
            if digest.hexdigest().lower() != descriptor.sha256.lower():
                problem = "checksum mismatch"

        if problem is None:
            return

        self._discard_partial(job, descriptor, part, sidecar)
        raise DownloadError(
            f"Verification of '{descriptor.file_name}' failed: {problem}",
            retryable=True,
        )

    def _discard_partial(
        self, job: DownloadJob, descriptor: ModelDescriptor, part: Path, sidecar: Path
    ) -> None:
        for path in (part, sidecar):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        job.bytes_downloaded = 0
        job.total_bytes = descriptor.size_bytes

    def _install(
        self, job: DownloadJob, descriptor: ModelDescriptor, archive: Path, sidecar: Path
    ) -> Path:
        target = self.models_dir / descriptor.file_name
        try:
            staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=self.models_dir))
        except OSError as e:
            raise self._os_error(e, "preparing the install directory") from e

        try:
            try:
                with tarfile.open(archive, "r:*") as tar:
                    tar.extractall(staging, filter="data")
            except tarfile.TarError as e:
                self._discard_partial(job, descriptor, archive, sidecar)
                raise DownloadError(
                    f"Could not extract '{archive.name}': {e}", retryable=True
                ) from e
            except OSError as e:
                raise self._os_error(e, "extracting the model") from e

            root = _model_root(staging)
            if not is_valid_model_dir(str(root), descriptor.model_type):
                self._discard_partial(job, descriptor, archive, sidecar)
                raise DownloadError(
                    f"Archive '{archive.name}' does not contain a "
                    f"{descriptor.model_type} model",
                    retryable=True,
                )

            if is_model_installed(self.models_dir, descriptor):
                logger.info(f"'{descriptor.file_name}' already installed, keeping it")
                return target

            if target.exists():
                # Invalid leftover at the final path; move it aside first.
                stale = Path(
                    tempfile.mkdtemp(prefix=f".stale-{descriptor.file_name}-", dir=self.models_dir)
                )
                os.replace(target, stale / descriptor.file_name)
                shutil.rmtree(stale, ignore_errors=True)

            try:
                os.replace(root, target)
            except OSError as e:
                raise self._os_error(e, "installing the model") from e
            return target
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _os_error(self, error: OSError, action: str) -> DownloadError:
        if _is_disk_full(error):
            return DownloadError(
                f"Disk full while {action}: {error}",
                user_message=DISK_FULL_MESSAGE,
                recoverable=False,
                retryable=False,
            )
        return DownloadError(f"File error while {action}: {error}", retryable=False)


def _model_root(staging: Path) -> Path:
    entries = [p for p in staging.iterdir() if not p.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return staging

