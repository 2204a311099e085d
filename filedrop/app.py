import atexit
import ipaddress
import logging
import os
import shutil
import socket
import threading
import time
import uuid
from contextlib import ExitStack, contextmanager
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Iterator, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    session,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.datastructures import FileStorage

from .config import SETTINGS, load_secret_key
from .identity import issue_tenant_key, validate_credentials
from .logging_utils import RequestAwareLogger, configure_logging, sanitize_log_value
from .storage import (
    UPLOADS_DIR,
    BatchResult,
    InvalidPath,
    NoFilesProvided,
    StorageError,
    StorageFault,
    TooManyFiles,
    cleanup_idle_tenants,
    cleanup_stale_partials,
    delete_tenant,
    ensure_directories,
    list_tenant_files,
    resolve_stored_file,
    store_batch,
    stored_file_url_path,
    tenant_usage,
)
from .translations import detect_language, translations_for

UPLOAD_FIELD = "uploadedFiles"
PATHS_FIELD = "paths"

ensure_directories()
APP_LOG_PATH = configure_logging(SETTINGS.logs_dir, SETTINGS.log_level)

_base_lifecycle_logger = logging.getLogger("filedrop.lifecycle")
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)
scheduler_logger = logging.getLogger("filedrop.scheduler")


class UploadConcurrencyLimiter:
    """Track active uploads and enforce a configurable concurrency cap."""

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._active = 0
        self._lock = threading.Lock()

    def acquire(self) -> bool:
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1

    def available_slots(self) -> int:
        with self._lock:
            return max(self._limit - self._active, 0)

    @property
    def current_limit(self) -> int:
        return self._limit


upload_limiter = UploadConcurrencyLimiter(SETTINGS.max_concurrent_uploads)

app = Flask(__name__)
app.config["SECRET_KEY"] = load_secret_key(SETTINGS)
app.config["MAX_CONTENT_LENGTH"] = SETTINGS.max_request_bytes
app.config["SESSION_COOKIE_SECURE"] = SETTINGS.session_cookie_secure
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=SETTINGS.session_max_age_hours)

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=SETTINGS.rate_limit_storage,
)
csrf = CSRFProtect(app)


def upload_rate_limit_string() -> str:
    return f"{SETTINGS.upload_rate_limit_per_hour} per hour"


def login_rate_limit_string() -> str:
    return f"{SETTINGS.login_rate_limit_per_minute} per minute"


def download_rate_limit_string() -> str:
    return f"{SETTINGS.download_rate_limit_per_minute} per minute"


def current_tenant_key() -> Optional[str]:
    return session.get("tenant_key")


def current_translations():
    return translations_for(getattr(g, "lang", None))


def wants_json() -> bool:
    accept = request.accept_mimetypes
    return accept.accept_json and not accept.accept_html


def file_url(relative_path: str) -> str:
    return f"{request.script_root}/files/{stored_file_url_path(relative_path)}"


def require_tenant(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_tenant_key():
            return view(*args, **kwargs)

        if wants_json():
            return jsonify({"error": "Authentication required"}), 401

        next_target = request.full_path if request.query_string else request.path
        session["next"] = (next_target or "/").rstrip("?")
        flash(current_translations()["login_required"], "info")
        return redirect(url_for("login"))

    return wrapped


@contextmanager
def upload_slot() -> Iterator[bool]:
    acquired = upload_limiter.acquire()
    try:
        yield acquired
    finally:
        if acquired:
            upload_limiter.release()


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(file_storage.filename or 'unknown')}",
        )


@app.before_request
def add_request_context() -> None:
    """Assign a request identifier and language for downstream handlers."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    g.lang = detect_language(request.headers.get("Accept-Language"))
    g.tenant_for_log = current_tenant_key() or "anonymous"


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d tenant=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        getattr(g, "tenant_for_log", "anonymous"),
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:;"
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.context_processor
def inject_ui_state():
    return {
        "t": current_translations(),
        "lang_key": getattr(g, "lang", "en"),
        "tenant_key": current_tenant_key(),
        "username": session.get("username"),
    }


@app.template_filter("human_filesize")
def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


@app.errorhandler(404)
def not_found(error):
    if wants_json():
        return jsonify({"error": "Not found"}), 404
    return render_template("404.html"), 404


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    if wants_json():
        return jsonify({"error": "File too large"}), 413
    flash(current_translations()["upload_too_large"], "error")
    return redirect(url_for("index")), 303


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    if wants_json():
        return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429
    flash(current_translations()["rate_limited"], "error")
    return redirect(url_for("login") if not current_tenant_key() else url_for("index")), 303


@app.errorhandler(CSRFError)
def handle_csrf_error(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Invalid CSRF token")
    if wants_json():
        return jsonify({"error": description}), 400
    flash(current_translations()["session_expired"], "error")
    return redirect(url_for("login") if not current_tenant_key() else url_for("index")), 303


@app.errorhandler(500)
def handle_server_error(error):  # pragma: no cover - framework hook
    lifecycle_logger.error(
        "unhandled_error path=%s tenant=%s error=%s",
        sanitize_log_value(request.path),
        getattr(g, "tenant_for_log", "anonymous"),
        sanitize_log_value(str(getattr(error, "original_exception", error))),
    )
    if wants_json():
        return jsonify({"error": "Internal server error"}), 500
    return "Something broke!", 500


def _safe_next_url(candidate: Optional[str]) -> Optional[str]:
    if candidate and candidate.startswith("/") and not candidate.startswith("//"):
        return candidate
    return None


@app.route("/auth/login", methods=["GET", "POST"])
@limiter.limit(lambda: login_rate_limit_string(), methods=["POST"])
def login():
    if current_tenant_key():
        return redirect(url_for("index"))

    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        if not validate_credentials(username, password):
            lifecycle_logger.warning(
                "login_rejected username=%s", sanitize_log_value(username)
            )
            flash(current_translations()["invalid_creds_error"], "error")
            return render_template("login.html"), 400

        next_url = _safe_next_url(session.get("next"))
        session.clear()
        session.permanent = True
        tenant_key = issue_tenant_key(username, password, SETTINGS.tenant_scheme)
        session["tenant_key"] = tenant_key
        session["username"] = username
        lifecycle_logger.info(
            "login_granted username=%s tenant=%s scheme=%s",
            sanitize_log_value(username),
            tenant_key,
            SETTINGS.tenant_scheme,
        )
        return redirect(next_url or url_for("index"))

    return render_template("login.html")


@app.route("/auth/logout", methods=["POST"])
def logout():
    tenant_key = current_tenant_key()
    session.clear()
    if tenant_key:
        try:
            removed = delete_tenant(tenant_key)
        except StorageError as error:
            lifecycle_logger.error(
                "tenant_teardown_failed tenant=%s error=%s",
                tenant_key,
                sanitize_log_value(str(error)),
            )
        else:
            lifecycle_logger.info(
                "logout tenant=%s storage_removed=%s", tenant_key, removed
            )
    flash(current_translations()["logged_out"], "success")
    return redirect(url_for("login"))


@app.route("/")
@require_tenant
def index():
    tenant_key = current_tenant_key()
    files: Optional[List[Dict[str, str]]] = None
    usage: Optional[Tuple[int, int]] = None
    try:
        files = [
            {"path": relative_path, "url": file_url(relative_path)}
            for relative_path in list_tenant_files(tenant_key)
        ]
        usage = tenant_usage(tenant_key)
    except StorageError as error:
        lifecycle_logger.error(
            "listing_failed tenant=%s error=%s",
            tenant_key,
            sanitize_log_value(str(error)),
        )
        files = None
    return render_template("index.html", files=files, usage=usage)


@app.route("/api/files")
@require_tenant
def api_files():
    tenant_key = current_tenant_key()
    try:
        paths = list_tenant_files(tenant_key)
    except StorageError as error:
        lifecycle_logger.error(
            "listing_failed tenant=%s error=%s",
            tenant_key,
            sanitize_log_value(str(error)),
        )
        return jsonify({"error": current_translations()["load_error"]}), 503
    return jsonify(
        {"files": [{"path": path, "url": file_url(path)} for path in paths]}
    )


def _upload_error(message: str, status: int, reason: str):
    if wants_json():
        return jsonify({"error": message, "reason": reason}), status
    flash(message, "error")
    return redirect(url_for("index")), 303


def _batch_status(result: BatchResult) -> int:
    if not result.failed:
        return 201
    if result.stored:
        return 207
    reasons = {outcome.reason for outcome in result.failed}
    if reasons == {"too_large"}:
        return 413
    if "storage_fault" in reasons:
        return 500
    return 400


def _batch_response(result: BatchResult):
    t = current_translations()
    status = _batch_status(result)
    stored = result.stored
    failed = result.failed

    if wants_json():
        if status == 201:
            message = t["upload_success"].format(count=len(stored))
        else:
            message = t["upload_partial"].format(stored=len(stored), failed=len(failed))
        payload: Dict[str, Any] = {
            "message": message,
            "successful": len(stored),
            "files": [
                {
                    "declared_path": outcome.declared_path,
                    "path": outcome.stored_path,
                    "size": outcome.size,
                    "url": file_url(outcome.stored_path),
                }
                for outcome in stored
            ],
        }
        if failed:
            payload["errors"] = [
                {
                    "filename": outcome.declared_path,
                    "reason": outcome.reason,
                    "detail": outcome.detail,
                }
                for outcome in failed
            ]
        return jsonify(payload), status

    if stored and not failed:
        flash(t["upload_success"].format(count=len(stored)), "success")
    elif stored:
        flash(t["upload_partial"].format(stored=len(stored), failed=len(failed)), "warning")
    for outcome in failed:
        flash(
            t["upload_failed"].format(name=outcome.declared_path, detail=outcome.detail),
            "error",
        )
    return redirect(url_for("index")), 303


@app.route("/upload", methods=["POST"])
@require_tenant
@limiter.limit(lambda: upload_rate_limit_string())
def upload():
    t = current_translations()
    tenant_key = current_tenant_key()
    with upload_slot() as acquired:
        if not acquired:
            lifecycle_logger.warning(
                "upload_rejected reason=concurrency tenant=%s", tenant_key
            )
            return _upload_error(t["upload_busy"], 503, "busy")

        uploads = [
            item
            for item in request.files.getlist(UPLOAD_FIELD)
            if isinstance(item, FileStorage) and item.filename
        ]
        declared_paths = request.form.getlist(PATHS_FIELD)
        if declared_paths and len(declared_paths) != len(uploads):
            lifecycle_logger.warning(
                "upload_rejected reason=path_mismatch tenant=%s files=%d paths=%d",
                tenant_key,
                len(uploads),
                len(declared_paths),
            )
            return _upload_error("Upload mismatch between files and paths.", 400, "path_mismatch")

        with ExitStack() as stack:
            batch = []
            for position, item in enumerate(uploads):
                file_storage = stack.enter_context(upload_stream_handler(item))
                declared = declared_paths[position] if declared_paths else file_storage.filename
                batch.append((declared, file_storage.stream))
            try:
                result = store_batch(
                    tenant_key,
                    batch,
                    max_file_bytes=SETTINGS.max_upload_bytes,
                    max_files=SETTINGS.max_files_per_batch,
                )
            except NoFilesProvided:
                lifecycle_logger.warning(
                    "upload_rejected reason=no_files tenant=%s", tenant_key
                )
                return _upload_error(t["file_not_selected"], 400, NoFilesProvided.reason)
            except TooManyFiles as error:
                lifecycle_logger.warning(
                    "upload_rejected reason=too_many_files tenant=%s count=%d limit=%d",
                    tenant_key,
                    error.count,
                    error.limit,
                )
                return _upload_error(
                    t["too_many_files"].format(limit=error.limit), 400, TooManyFiles.reason
                )

    lifecycle_logger.info(
        "upload_batch_completed tenant=%s stored=%d failed=%d files=%s",
        tenant_key,
        len(result.stored),
        len(result.failed),
        [sanitize_log_value(outcome.stored_path) for outcome in result.stored],
    )
    return _batch_response(result)


@app.route("/files/<path:relative_path>")
@require_tenant
@limiter.limit(lambda: download_rate_limit_string())
def serve_file(relative_path: str):
    tenant_key = current_tenant_key()
    try:
        file_path = resolve_stored_file(tenant_key, relative_path)
    except InvalidPath:
        lifecycle_logger.warning(
            "file_request_rejected tenant=%s path=%s",
            tenant_key,
            sanitize_log_value(relative_path),
        )
        abort(404)
    except FileNotFoundError:
        lifecycle_logger.info(
            "file_request_missing tenant=%s path=%s",
            tenant_key,
            sanitize_log_value(relative_path),
        )
        abort(404)

    lifecycle_logger.info(
        "file_downloaded tenant=%s path=%s",
        tenant_key,
        sanitize_log_value(relative_path),
    )
    try:
        return send_file(file_path, download_name=file_path.name)
    except FileNotFoundError:
        lifecycle_logger.warning(
            "file_request_missing_race tenant=%s path=%s",
            tenant_key,
            sanitize_log_value(relative_path),
        )
        abort(404)


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        ensure_directories()
        probe_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        usage = shutil.disk_usage(UPLOADS_DIR)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        elif disk_free_gb < 5:
            checks["disk_space_status"] = "warning"
        else:
            checks["disk_space_status"] = "ok"
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = bool(scheduler is not None and scheduler.running)
    checks["upload_limit"] = upload_limiter.current_limit
    checks["upload_slots_available"] = upload_limiter.available_slots()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


def _run_idle_tenant_cleanup() -> int:
    return cleanup_idle_tenants(SETTINGS.tenant_idle_days * 86400)


def start_scheduler() -> BackgroundScheduler:
    background = BackgroundScheduler(daemon=True)
    background.add_job(
        func=cleanup_stale_partials,
        trigger="interval",
        hours=1,
        id="cleanup_stale_partials",
        name="Clean up abandoned partial uploads",
        replace_existing=True,
    )
    if SETTINGS.tenant_idle_days > 0:
        background.add_job(
            func=_run_idle_tenant_cleanup,
            trigger="interval",
            hours=6,
            id="cleanup_idle_tenants",
            name="Remove idle tenant folders",
            replace_existing=True,
        )
    background.start()
    atexit.register(lambda: background.shutdown(wait=False))
    scheduler_logger.info(
        "scheduler_started idle_tenant_days=%d", SETTINGS.tenant_idle_days
    )
    return background


scheduler: Optional[BackgroundScheduler] = None
if SETTINGS.cleanup_enabled:
    scheduler = start_scheduler()
    cleanup_stale_partials()


def get_local_ips() -> List[str]:
    """Return the non-loopback IPv4 addresses of this host."""

    addresses = set()
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for _, _, _, _, sockaddr in infos:
        try:
            address = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if not address.is_loopback and not address.is_link_local:
            addresses.add(str(address))
    return sorted(addresses)


def main() -> None:
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "3000"))
    t = translations_for(detect_language(os.environ.get("LANG")))
    ips = get_local_ips()

    print(f"\n{t['server_started']} ({t['listening_on'].format(port=port)})")
    print(t["access_instructions"])
    print(f"    - {t['localhost']} http://localhost:{port}")
    if ips:
        for ip in ips:
            print(f"    - {t['lan']} http://{ip}:{port}")
    else:
        print(f"    - {t['no_lan']}")
    print()

    app.run(host=host, port=port, debug=False)


if __name__ == "__main__":
    main()
