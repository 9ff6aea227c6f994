"""Controlled browser binary: install, update check, launch, close and hard reset."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import platform
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
import zipfile
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import psutil
import requests

from webchat_translator.core.errors import LifecycleError, ProcessLaunchFailure


logger = logging.getLogger(__name__)

MANIFEST_URL = (
    "https://googlechromelabs.github.io/chrome-for-testing/"
    "last-known-good-versions-with-downloads.json"
)
# Dedicated CDP port; other automation clients on the same machine use their own.
DEFAULT_DEBUG_PORT = 9333
DEFAULT_START_URL = "https://gemini.google.com/app"
FALLBACK_CHROME_VERSION = "131.0.0.0"
VERSION_FILE = "version.txt"
DELETE_ATTEMPTS = 3
DOWNLOAD_CHUNK_BYTES = 1024 * 256


def platform_key() -> str:
    machine = platform.machine().lower()
    if sys.platform.startswith("win"):
        return "win64" if machine.endswith("64") else "win32"
    if sys.platform == "darwin":
        return "mac-arm64" if machine in {"arm64", "aarch64"} else "mac-x64"
    return "linux64"


def executable_relpath(key: str) -> str:
    if key.startswith("win"):
        return os.path.join(f"chrome-{key}", "chrome.exe")
    if key.startswith("mac"):
        app = "Google Chrome for Testing"
        return os.path.join(f"chrome-{key}", f"{app}.app", "Contents", "MacOS", app)
    return os.path.join(f"chrome-{key}", "chrome")


@dataclass
class BinaryRecord:
    installed_version: Optional[str]
    executable_path: str
    manifest_checked_at: Optional[float] = None


@dataclass
class ManifestInfo:
    version: str
    download_url: str


class ProcessHandle:
    """Wraps a spawned process; a watcher thread reports its exit exactly once."""

    def __init__(self, process: Any):
        self.process = process
        self.pid: int = process.pid
        self._closed = threading.Event()
        self._callbacks: List[Callable[["ProcessHandle"], None]] = []
        self._lock = threading.Lock()
        self._watcher: Optional[threading.Thread] = None

    def start_watcher(self) -> None:
        if self._watcher is not None:
            return
        self._watcher = threading.Thread(
            target=self._watch, name=f"browser-watch-{self.pid}", daemon=True
        )
        self._watcher.start()

    def _watch(self) -> None:
        try:
            self.process.wait()
        except Exception as exc:
            logger.warning("Browser watcher for pid %s failed: %s", self.pid, exc)
        self._mark_closed()

    def _mark_closed(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Browser closed-callback failed")

    def add_closed_callback(self, callback: Callable[["ProcessHandle"], None]) -> None:
        """Register ``callback``; fires immediately if the process already exited."""
        with self._lock:
            if not self._closed.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def is_alive(self) -> bool:
        return not self._closed.is_set() and self.process.poll() is None

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def terminate(self, timeout: float = 5.0) -> None:
        """SIGTERM the process group, then SIGKILL after ``timeout``."""
        if not self.is_alive():
            self._mark_closed()
            return
        if sys.platform != "win32":
            try:
                os.killpg(os.getpgid(self.pid), signal.SIGTERM)
            except ProcessLookupError:
                pass
        else:
            self.process.terminate()
        if self._wait_exit(timeout):
            return
        logger.warning("Browser terminate timeout, forcing kill (pid %s)", self.pid)
        if sys.platform != "win32":
            try:
                os.killpg(os.getpgid(self.pid), signal.SIGKILL)
            except ProcessLookupError:
                pass
        else:
            self.process.kill()
        self._wait_exit(timeout)

    def _wait_exit(self, timeout: float) -> bool:
        if self._watcher is not None:
            return self._closed.wait(timeout)
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        self._mark_closed()
        return True


class ProcessControl:
    """Side-effecting operations of the lifecycle manager, swappable in tests."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = 30):
        self._session = session or requests.Session()
        self.timeout = timeout

    def fetch_manifest(self, url: str) -> Dict[str, Any]:
        resp = self._session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def download(self, url: str, dest: str) -> None:
        with self._session.get(url, stream=True, timeout=self.timeout) as resp:
            resp.raise_for_status()
            expected = resp.headers.get("Content-Length")
            written = 0
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        if expected is not None and expected.isdigit() and written != int(expected):
            raise LifecycleError(
                f"Incomplete download: {written} of {expected} bytes",
                error_type="incomplete_download",
            )

    def extract(self, archive: str, dest_dir: str) -> None:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                path = zf.extract(info, dest_dir)
                # zipfile drops unix permission bits
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(path, mode)

    def spawn(self, executable: str, args: List[str]) -> subprocess.Popen:
        cmd = [executable, *args]
        if sys.platform != "win32":
            return subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        return subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
        )

    def iter_processes(self) -> Iterable[Tuple[int, Optional[str]]]:
        for proc in psutil.process_iter(["pid", "exe"]):
            yield proc.info["pid"], proc.info.get("exe")

    def kill(self, pid: int, timeout: float = 2.0) -> None:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return


class BrowserLifecycleManager:
    def __init__(
        self,
        base_dir: str,
        *,
        control: Optional[ProcessControl] = None,
        manifest_url: str = MANIFEST_URL,
        debug_port: int = DEFAULT_DEBUG_PORT,
        start_url: str = DEFAULT_START_URL,
        kill_wait: float = 2.0,
        delete_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_dir = os.path.abspath(base_dir)
        self.control = control or ProcessControl()
        self.manifest_url = manifest_url
        self.debug_port = debug_port
        self.start_url = start_url
        self.kill_wait = kill_wait
        self.delete_backoff = delete_backoff
        self._sleep = sleep
        self.platform = platform_key()
        self.install_dir = os.path.join(self.base_dir, "chrome_bin")
        self.user_data_dir = os.path.join(self.base_dir, "profile")
        self.version_file = os.path.join(self.install_dir, VERSION_FILE)
        self.executable_path = os.path.join(self.install_dir, executable_relpath(self.platform))
        self._manifest_checked_at: Optional[float] = None
        self._handle: Optional[ProcessHandle] = None
        self._lock = threading.RLock()

    # --- install ---------------------------------------------------------

    @property
    def installed_version(self) -> Optional[str]:
        try:
            with open(self.version_file, "r", encoding="utf-8") as f:
                return f.read().strip() or None
        except OSError:
            return None

    @property
    def record(self) -> BinaryRecord:
        return BinaryRecord(
            installed_version=self.installed_version,
            executable_path=self.executable_path,
            manifest_checked_at=self._manifest_checked_at,
        )

    def is_installed(self) -> bool:
        return os.path.isfile(self.executable_path)

    def fetch_manifest(self) -> ManifestInfo:
        data = self.control.fetch_manifest(self.manifest_url)
        self._manifest_checked_at = time.time()
        stable = ((data or {}).get("channels") or {}).get("Stable") or {}
        version = str(stable.get("version") or "").strip()
        downloads = (stable.get("downloads") or {}).get("chrome") or []
        url = ""
        for item in downloads:
            if isinstance(item, dict) and item.get("platform") == self.platform:
                url = str(item.get("url") or "").strip()
                break
        if not version or not url:
            raise LifecycleError(
                f"Manifest has no stable build for {self.platform}",
                error_type="invalid_manifest",
            )
        return ManifestInfo(version=version, download_url=url)

    def ensure_installed(self) -> None:
        with self._lock:
            try:
                info = self.fetch_manifest()
            except (requests.RequestException, ValueError, LifecycleError) as exc:
                if self.is_installed():
                    logger.warning("Version manifest unavailable, keeping installed build: %s", exc)
                    return
                raise ProcessLaunchFailure(
                    f"Browser not installed and manifest unavailable: {exc}"
                ) from exc

            if self.is_installed() and self.installed_version == info.version:
                logger.info("Browser v%s already installed", info.version)
                return
            self._install(info)

    def _install(self, info: ManifestInfo) -> None:
        os.makedirs(self.base_dir, exist_ok=True)
        logger.info("Downloading browser v%s", info.version)
        fd, archive = tempfile.mkstemp(prefix=".download-", suffix=".zip", dir=self.base_dir)
        os.close(fd)
        try:
            try:
                self.control.download(info.download_url, archive)
            except requests.RequestException as exc:
                raise LifecycleError(f"Download failed: {exc}", error_type="download_failed") from exc

            # the old install is only touched once the archive is complete
            staging = tempfile.mkdtemp(prefix=".staging-", dir=self.base_dir)
            try:
                self.control.extract(archive, staging)
                if os.path.exists(self.install_dir):
                    self._remove_tree(self.install_dir)
                os.replace(staging, self.install_dir)
            except Exception:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            with open(self.version_file, "w", encoding="utf-8") as f:
                f.write(info.version)
            logger.info("Browser v%s installed", info.version)
        finally:
            try:
                os.remove(archive)
            except OSError as exc:
                logger.warning("Failed to remove temp archive %s: %s", archive, exc)

    def is_update_available(self) -> bool:
        local = self.installed_version
        if not local:
            return True
        try:
            remote = self.fetch_manifest().version
        except (requests.RequestException, ValueError, LifecycleError) as exc:
            logger.warning("Update check failed: %s", exc)
            return False
        return local != remote

    # --- process ---------------------------------------------------------

    def build_launch_args(self, headless: bool = False) -> List[str]:
        version = self.installed_version or FALLBACK_CHROME_VERSION
        args = [
            f"--user-data-dir={self.user_data_dir}",
            f"--remote-debugging-port={self.debug_port}",
            "--no-first-run",
            "--password-store=basic",
            "--window-position=-2400,-2400",
            "--window-size=1400,900",
            "--disable-blink-features=AutomationControlled",
            "--disable-popup-blocking",
            "--disable-notifications",
            (
                "--user-agent=Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                f"AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{version} Safari/537.36"
            ),
        ]
        if headless:
            args.append("--headless=new")
        args.append(self.start_url)
        return args

    @property
    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.is_alive()

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def launch(self, headless: bool = False) -> ProcessHandle:
        with self._lock:
            if self._handle is not None and self._handle.is_alive():
                return self._handle
            if not self.is_installed():
                self.ensure_installed()
            if not self.is_installed():
                raise ProcessLaunchFailure(f"Browser executable missing: {self.executable_path}")

            os.makedirs(self.user_data_dir, exist_ok=True)
            try:
                process = self.control.spawn(self.executable_path, self.build_launch_args(headless))
            except OSError as exc:
                raise ProcessLaunchFailure(f"Browser launch failed: {exc}") from exc

            handle = ProcessHandle(process)
            handle.add_closed_callback(self._on_closed)
            handle.start_watcher()
            self._handle = handle
            logger.info("Browser launched (pid %s, port %s)", handle.pid, self.debug_port)
            return handle

    def _on_closed(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None
        logger.info("Browser process %s exited", handle.pid)

    def close(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is None:
            return
        try:
            handle.terminate(timeout=self.kill_wait)
        except OSError as exc:
            logger.warning("Failed to close browser (pid %s): %s", handle.pid, exc)

    # --- reset -----------------------------------------------------------

    def _is_managed_path(self, path: Optional[str]) -> bool:
        if not path:
            return False
        target = os.path.normcase(os.path.abspath(path))
        for root in (self.install_dir, self.user_data_dir):
            base = os.path.normcase(root)
            if target == base or target.startswith(base + os.sep):
                return True
        return False

    def kill_lingering(self) -> int:
        killed = 0
        for pid, exe in list(self.control.iter_processes()):
            if not self._is_managed_path(exe):
                continue
            try:
                self.control.kill(pid, timeout=self.kill_wait)
                killed += 1
            except Exception as exc:
                # teardown is best-effort; the delete retries cover stragglers
                logger.warning("Failed to kill lingering browser pid %s: %s", pid, exc)
        return killed

    def _remove_tree(self, path: str) -> None:
        last_error: Optional[OSError] = None
        for attempt in range(DELETE_ATTEMPTS):
            try:
                shutil.rmtree(path)
                return
            except FileNotFoundError:
                return
            except OSError as exc:
                last_error = exc
                logger.warning(
                    "Delete %s failed (attempt %d/%d): %s",
                    path,
                    attempt + 1,
                    DELETE_ATTEMPTS,
                    exc,
                )
                if attempt + 1 < DELETE_ATTEMPTS:
                    self.kill_lingering()
                    self._sleep(self.delete_backoff * (attempt + 1))
        raise LifecycleError(
            f"Could not delete {path} after {DELETE_ATTEMPTS} attempts: {last_error}",
            error_type="delete_failed",
        )

    def reset(self, clear_user_data: bool = False) -> None:
        """Hard reinstall: close, kill stragglers, delete, install again."""
        with self._lock:
            logger.info("Resetting browser install (clear_user_data=%s)", clear_user_data)
            self.close()
            if self.kill_lingering():
                self._sleep(self.delete_backoff)
            if os.path.exists(self.install_dir):
                self._remove_tree(self.install_dir)
            if clear_user_data and os.path.exists(self.user_data_dir):
                self._remove_tree(self.user_data_dir)
            self.ensure_installed()
