"""Tenant-scoped file storage.

Every tenant owns ``UPLOADS_DIR/<tenant_key>``. All reads and writes go
through the helpers below, which refuse to touch anything outside that
subtree. Partial upload data is staged in ``UPLOADS_DIR/.partial`` and only
published into the tenant tree once complete.
"""

import errno
import logging
import os
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union
from urllib.parse import quote

from .config import CHUNK_SIZE_BYTES, SETTINGS
from .logging_utils import sanitize_log_value

UPLOADS_DIR = SETTINGS.uploads_dir
STAGING_DIR = SETTINGS.staging_dir
LOGS_DIR = SETTINGS.logs_dir

MAX_PUBLISH_ATTEMPTS = 5
NAME_MAX_BYTES = 255
TEARDOWN_ATTEMPTS = 3
STALE_PARTIAL_SECONDS = 3600

_TENANT_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f]")
_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")
# Filesystems without hard links report one of these from link().
_NO_HARDLINK_ERRNOS = frozenset({errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS})

logger = logging.getLogger("filedrop.storage")


class StorageError(Exception):
    """Base class for tenant storage errors."""

    reason = "storage_error"


class InvalidPath(StorageError):
    """Raised when a client path or tenant key would leave the tenant root."""

    reason = "invalid_path"


class StorageFault(StorageError):
    """Raised when the filesystem fails underneath a storage operation."""

    reason = "storage_fault"


class UploadTooLarge(StorageFault):
    """Raised when an upload stream exceeds the per-file limit."""

    reason = "too_large"

    def __init__(self, limit_bytes: int) -> None:
        super().__init__(f"File exceeds the maximum size of {limit_bytes} bytes")
        self.limit_bytes = limit_bytes


class NoFilesProvided(StorageError):
    """Raised when an upload batch contains no files."""

    reason = "no_files"


class TooManyFiles(StorageError):
    """Raised when an upload batch exceeds the per-request file limit."""

    reason = "too_many_files"

    def __init__(self, count: int, limit: int) -> None:
        super().__init__(f"Received {count} files, at most {limit} are allowed")
        self.count = count
        self.limit = limit


@dataclass(frozen=True)
class UploadTarget:
    """Where a single upload lands inside a tenant tree."""

    tenant_key: str
    directory: Path
    relative_directory: str
    desired_name: str
    final_name: str
    size: Optional[int] = None

    @property
    def path(self) -> Path:
        return self.directory / self.final_name

    @property
    def relative_path(self) -> str:
        if self.relative_directory:
            return f"{self.relative_directory}/{self.final_name}"
        return self.final_name

    @property
    def renamed(self) -> bool:
        return self.final_name != self.desired_name


@dataclass
class UploadOutcome:
    declared_path: str
    stored_path: Optional[str] = None
    size: int = 0
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.stored_path is not None


@dataclass
class BatchResult:
    outcomes: List[UploadOutcome] = field(default_factory=list)

    @property
    def stored(self) -> List[UploadOutcome]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failed(self) -> List[UploadOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


def ensure_directories() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    STAGING_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def is_valid_tenant_key(tenant_key: object) -> bool:
    return isinstance(tenant_key, str) and _TENANT_KEY_PATTERN.fullmatch(tenant_key) is not None


def tenant_root(tenant_key: str) -> Path:
    """Return the storage root owned by *tenant_key*."""

    if not is_valid_tenant_key(tenant_key):
        raise InvalidPath("Invalid tenant key")
    return UPLOADS_DIR / tenant_key


def decode_client_path(raw: Union[str, bytes]) -> str:
    """Repair a client-supplied name that was decoded as Latin-1 by the transport.

    Raw bytes are read as UTF-8. Text whose code points all fit in Latin-1 and
    whose Latin-1 bytes form valid UTF-8 is re-decoded; anything else is
    already proper Unicode and is returned untouched.
    """

    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return raw.decode("latin-1")
    try:
        return raw.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return raw


def _name_limit() -> int:
    return min(SETTINGS.max_filename_length, NAME_MAX_BYTES)


def _name_bytes(name: str) -> int:
    try:
        return len(os.fsencode(name))
    except UnicodeEncodeError as error:
        raise InvalidPath("Path contains characters the filesystem cannot store") from error


def split_declared_path(
    declared_path: str, check_extension: bool = True
) -> Tuple[List[str], str]:
    """Split a relative client path into directory segments and a file name."""

    if not declared_path or not declared_path.strip():
        raise InvalidPath("Path cannot be empty")
    if _CONTROL_CHAR_PATTERN.search(declared_path):
        raise InvalidPath("Path contains invalid characters")

    normalized = declared_path.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_PATTERN.match(normalized):
        raise InvalidPath("Absolute paths are not allowed")
    if normalized.endswith("/"):
        raise InvalidPath("Path does not name a file")

    limit = _name_limit()
    segments: List[str] = []
    for segment in normalized.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise InvalidPath("Parent directory references are not allowed")
        if _name_bytes(segment) > limit:
            raise InvalidPath(f"Path segment exceeds maximum length of {limit} bytes")
        segments.append(segment)

    if not segments:
        raise InvalidPath("Path does not name a file")

    *directories, filename = segments
    if check_extension and SETTINGS.blocked_extensions:
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if extension and extension in SETTINGS.blocked_extensions:
            raise InvalidPath(f"File extension '.{extension}' is not allowed")
    return directories, filename


def _ensure_within(root: Path, candidate: Path) -> Path:
    resolved_root = root.resolve()
    resolved = candidate.resolve()
    if resolved != resolved_root and resolved_root not in resolved.parents:
        raise InvalidPath("Path escapes the tenant root")
    return resolved


def _make_directory(root: Path, directories: List[str]) -> Path:
    destination = _ensure_within(root, root.joinpath(*directories))
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StorageFault(f"Could not create directory: {error.strerror or error}") from error
    return destination


def resolve_destination(tenant_key: str, declared_path: str) -> Path:
    """Return (and create) the directory that will hold *declared_path*.

    *declared_path* must already be decoded with :func:`decode_client_path`.
    """

    root = tenant_root(tenant_key)
    directories, _ = split_declared_path(declared_path)
    return _make_directory(root, directories)


_token_lock = threading.Lock()
_last_token = 0


def next_uniqueness_token() -> int:
    """Millisecond timestamp, strictly increasing within this process."""

    global _last_token
    with _token_lock:
        token = max(int(time.time() * 1000), _last_token + 1)
        _last_token = token
        return token


def choose_filename(directory: Path, desired_name: str) -> str:
    """Pick a name in *directory* that does not collide with an existing entry."""

    if not os.path.lexists(directory / desired_name):
        return desired_name

    stem, extension = os.path.splitext(desired_name)
    while True:
        candidate = _fit_name(stem, f"-{next_uniqueness_token()}", extension)
        if not os.path.lexists(directory / candidate):
            return candidate


def _fit_name(stem: str, suffix: str, extension: str) -> str:
    """Join the parts, trimming characters off the stem (then the extension)
    until the encoded name fits the filesystem limit. The suffix is kept whole.
    """

    limit = _name_limit()
    while _name_bytes(f"{stem}{suffix}{extension}") > limit and stem:
        stem = stem[:-1]
    while _name_bytes(f"{stem}{suffix}{extension}") > limit and extension:
        extension = extension[:-1]
    return f"{stem}{suffix}{extension}"


def plan_upload(tenant_key: str, declared_path: Union[str, bytes]) -> UploadTarget:
    """Resolve the destination directory and final name for one upload."""

    root = tenant_root(tenant_key)
    decoded = decode_client_path(declared_path)
    directories, filename = split_declared_path(decoded)
    directory = _make_directory(root, directories)
    return UploadTarget(
        tenant_key=tenant_key,
        directory=directory,
        relative_directory="/".join(directories),
        desired_name=filename,
        final_name=choose_filename(directory, filename),
    )


def _stage_stream(stream: BinaryIO, max_bytes: Optional[int]) -> Tuple[Path, int]:
    try:
        STAGING_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise StorageFault(f"Could not prepare staging area: {error}") from error

    staging_path = STAGING_DIR / f"{uuid.uuid4().hex}.tmp"
    written = 0
    try:
        fd = os.open(staging_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as destination:
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise UploadTooLarge(max_bytes)
                destination.write(chunk)
    except Exception as error:
        staging_path.unlink(missing_ok=True)
        if isinstance(error, OSError):
            raise StorageFault(f"Could not write upload: {error}") from error
        raise
    return staging_path, written


def _claim_name(staging_path: Path, destination: Path) -> None:
    """Move staged bytes to *destination*, failing if the name is taken."""

    try:
        # link() fails instead of replacing an existing entry.
        os.link(staging_path, destination)
        return
    except OSError as error:
        if error.errno not in _NO_HARDLINK_ERRNOS:
            raise
        logger.debug("hardlink_unsupported path=%s errno=%s", destination, error.errno)

    # Reserve the name exclusively, then move the staged file over the reservation.
    fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    os.close(fd)
    try:
        os.replace(staging_path, destination)
    except OSError:
        destination.unlink(missing_ok=True)
        raise


def _publish(staging_path: Path, target: UploadTarget) -> UploadTarget:
    final_name = target.final_name
    for _ in range(MAX_PUBLISH_ATTEMPTS):
        try:
            _claim_name(staging_path, target.directory / final_name)
        except FileExistsError:
            logger.info(
                "upload_name_taken tenant=%s directory=%s name=%s",
                target.tenant_key,
                sanitize_log_value(target.relative_directory),
                sanitize_log_value(final_name),
            )
            final_name = choose_filename(target.directory, target.desired_name)
            continue
        except OSError as error:
            raise StorageFault(f"Could not store file: {error}") from error
        return replace(target, final_name=final_name)
    raise StorageFault("Could not find a free file name")


def store_upload(
    tenant_key: str,
    declared_path: Union[str, bytes],
    stream: BinaryIO,
    max_bytes: Optional[int] = None,
) -> UploadTarget:
    """Store one uploaded stream for *tenant_key* and return where it landed."""

    target = plan_upload(tenant_key, declared_path)
    staging_path, size = _stage_stream(stream, max_bytes)
    try:
        target = _publish(staging_path, target)
    finally:
        staging_path.unlink(missing_ok=True)

    logger.info(
        "upload_stored tenant=%s path=%s size=%d renamed=%s",
        tenant_key,
        sanitize_log_value(target.relative_path),
        size,
        target.renamed,
    )
    return replace(target, size=size)


def store_batch(
    tenant_key: str,
    uploads: Iterable[Tuple[Union[str, bytes], BinaryIO]],
    max_file_bytes: Optional[int] = None,
    max_files: Optional[int] = None,
) -> BatchResult:
    """Store every ``(declared_path, stream)`` pair; failures stay per file."""

    uploads = list(uploads)
    if not uploads:
        raise NoFilesProvided("No files were provided")
    limit = max_files or SETTINGS.max_files_per_batch
    if len(uploads) > limit:
        raise TooManyFiles(len(uploads), limit)
    tenant_root(tenant_key)

    result = BatchResult()
    for declared_path, stream in uploads:
        display_name = decode_client_path(declared_path)
        try:
            target = store_upload(tenant_key, declared_path, stream, max_file_bytes)
        except StorageError as error:
            logger.warning(
                "upload_failed tenant=%s path=%s reason=%s error=%s",
                tenant_key,
                sanitize_log_value(display_name),
                error.reason,
                sanitize_log_value(str(error)),
            )
            result.outcomes.append(
                UploadOutcome(display_name, reason=error.reason, detail=str(error))
            )
            continue
        result.outcomes.append(
            UploadOutcome(display_name, stored_path=target.relative_path, size=target.size or 0)
        )
    return result


def iter_tree(root: Path, _prefix: str = "") -> Iterator[str]:
    """Yield every file below *root* as a ``/``-separated relative path.

    Depth-first and lazy; each call walks the filesystem again. A missing
    root (or a subdirectory removed while walking) yields nothing.
    """

    try:
        with os.scandir(root) as iterator:
            entries = list(iterator)
    except FileNotFoundError:
        return
    except OSError as error:
        raise StorageFault(f"Could not read directory: {error.strerror or error}") from error

    for entry in entries:
        relative = f"{_prefix}{entry.name}"
        try:
            is_directory = entry.is_dir(follow_symlinks=False)
        except OSError as error:
            raise StorageFault(f"Could not inspect entry: {error.strerror or error}") from error
        if is_directory:
            yield from iter_tree(Path(entry.path), f"{relative}/")
        else:
            yield relative


def list_all(root: Path) -> List[str]:
    """Walk *root* completely; raises instead of returning a partial list."""

    return list(iter_tree(root))


def list_tenant_files(tenant_key: str) -> List[str]:
    return sorted(list_all(tenant_root(tenant_key)))


def tenant_usage(tenant_key: str) -> Tuple[int, int]:
    """Return ``(file_count, total_bytes)`` for a tenant."""

    root = tenant_root(tenant_key)
    count = 0
    total = 0
    for relative in iter_tree(root):
        try:
            total += (root / relative).lstat().st_size
        except FileNotFoundError:
            continue
        except OSError as error:
            raise StorageFault(f"Could not inspect file: {error.strerror or error}") from error
        count += 1
    return count, total


def resolve_stored_file(tenant_key: str, relative_path: str) -> Path:
    """Return the absolute path of a stored file inside the tenant root.

    Raises :class:`InvalidPath` for anything that would leave the root and
    :class:`FileNotFoundError` when no regular file exists there.
    """

    root = tenant_root(tenant_key)
    directories, filename = split_declared_path(relative_path, check_extension=False)
    candidate = _ensure_within(root, root.joinpath(*directories, filename))
    if not candidate.is_file():
        raise FileNotFoundError(relative_path)
    return candidate


def stored_file_url_path(relative_path: str) -> str:
    """Percent-encode each segment of *relative_path* independently."""

    return "/".join(quote(segment, safe="") for segment in relative_path.split("/"))


def delete_tenant(tenant_key: str) -> bool:
    """Remove a tenant's whole tree. Returns False when nothing was there."""

    root = tenant_root(tenant_key)
    if not os.path.lexists(root):
        return False

    last_error: Optional[OSError] = None
    for _ in range(TEARDOWN_ATTEMPTS):
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            pass
        except OSError as error:
            # A concurrent upload may repopulate a directory mid-removal.
            last_error = error
        if not os.path.lexists(root):
            logger.info("tenant_deleted tenant=%s", tenant_key)
            return True

    raise StorageFault(
        f"Could not remove tenant storage: {last_error}"
    ) from last_error


def cleanup_stale_partials(max_age_seconds: int = STALE_PARTIAL_SECONDS) -> int:
    """Remove staging files left behind by aborted uploads."""

    removed = 0
    cutoff = time.time() - max_age_seconds
    try:
        candidates = list(STAGING_DIR.glob("*.tmp"))
    except OSError as error:
        logger.warning("partial_cleanup_failed error=%s", error)
        return 0

    for temp_file in candidates:
        try:
            if temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("partial_removed path=%s", temp_file)
        except FileNotFoundError:
            continue
        except OSError as error:
            logger.warning(
                "partial_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )
    return removed


def _newest_mtime(root: Path) -> float:
    newest = root.stat().st_mtime
    for current, directories, files in os.walk(root):
        for name in directories + files:
            try:
                newest = max(newest, os.lstat(os.path.join(current, name)).st_mtime)
            except FileNotFoundError:
                continue
    return newest


def cleanup_idle_tenants(max_idle_seconds: float) -> int:
    """Tear down tenant roots that have not changed within *max_idle_seconds*."""

    removed = 0
    cutoff = time.time() - max_idle_seconds
    try:
        entries = list(UPLOADS_DIR.iterdir())
    except FileNotFoundError:
        return 0
    except OSError as error:
        logger.warning("idle_tenant_scan_failed error=%s", error)
        return 0

    for entry in entries:
        if not is_valid_tenant_key(entry.name) or not entry.is_dir():
            continue
        try:
            if _newest_mtime(entry) >= cutoff:
                continue
            if delete_tenant(entry.name):
                removed += 1
        except FileNotFoundError:
            continue
        except (OSError, StorageFault) as error:
            logger.warning(
                "idle_tenant_cleanup_failed tenant=%s error=%s",
                entry.name,
                error,
            )

    if removed:
        logger.info("idle_tenant_cleanup_completed removed=%d", removed)
    return removed
