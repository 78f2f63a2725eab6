from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

LOG = logging.getLogger(__name__)

FALLBACK_BIN_DIRS = ("/usr/bin", "/bin", "/usr/sbin", "/sbin")
DEFAULT_LOGIN_SHELL = "/bin/zsh"
DEFAULT_CAPTURE_TIMEOUT_SECONDS = 2.0

CODEX_OVERRIDE_KEY = "CODEX_CLI_PATH"
CLAUDE_OVERRIDE_KEY = "CLAUDE_CLI_PATH"
GEMINI_OVERRIDE_KEY = "GEMINI_CLI_PATH"

# Sentinel meaning "use the shared login shell cache".
_SHARED = object()


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def _find(binary: str, paths: Sequence[str]) -> str | None:
    for entry in paths:
        if not entry:
            continue
        candidate = os.path.join(entry, binary)
        if _is_executable(candidate):
            return candidate
    return None


def _split_path(value: str | None) -> list[str]:
    if not value:
        return []
    return [item for item in value.split(os.pathsep) if item]


def capture_login_shell_path(
    shell: str | None = None,
    timeout: float = DEFAULT_CAPTURE_TIMEOUT_SECONDS,
) -> list[str] | None:
    """Run the login shell once and return its PATH entries, or None."""
    shell_path = shell or os.environ.get("SHELL") or DEFAULT_LOGIN_SHELL
    try:
        proc = subprocess.Popen(
            [shell_path, "-l", "-c", 'printf %s "$PATH"'],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
    except OSError as exc:
        LOG.warning("Login shell %s could not be started (%s)", shell_path, exc)
        return None

    try:
        stdout, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        LOG.warning("Login shell PATH capture timed out after %.1fs", timeout)
        return None

    entries = _split_path((stdout or "").strip())
    return entries or None


class LoginShellPathCache:
    """Captures the login shell PATH at most once per process.

    Concurrent ``capture_once`` callers share a single in-flight capture; every
    registered callback is invoked exactly once, in registration order, with the
    same value.
    """

    _shared: "LoginShellPathCache | None" = None
    _shared_lock = threading.Lock()

    def __init__(
        self,
        capturer: Callable[[str | None, float], list[str] | None] = capture_login_shell_path,
    ) -> None:
        self._capturer = capturer
        self._lock = threading.Lock()
        self._captured: list[str] | None = None
        self._done = False
        self._in_flight = False
        self._callbacks: list[Callable[[list[str] | None], None]] = []

    @classmethod
    def shared(cls) -> "LoginShellPathCache":
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    @property
    def current(self) -> list[str] | None:
        with self._lock:
            return list(self._captured) if self._captured is not None else None

    @property
    def is_captured(self) -> bool:
        with self._lock:
            return self._done

    def capture_once(
        self,
        shell: str | None = None,
        timeout: float = DEFAULT_CAPTURE_TIMEOUT_SECONDS,
        on_finish: Callable[[list[str] | None], None] | None = None,
    ) -> None:
        with self._lock:
            if self._done:
                value = self._captured
                run_now = True
            else:
                run_now = False
                if on_finish is not None:
                    self._callbacks.append(on_finish)
                if self._in_flight:
                    return
                self._in_flight = True

        if run_now:
            if on_finish is not None:
                on_finish(list(value) if value is not None else None)
            return

        threading.Thread(target=self._run_capture, args=(shell, timeout), daemon=True).start()

    def _run_capture(self, shell: str | None, timeout: float) -> None:
        result: list[str] | None = None
        try:
            result = self._capturer(shell, timeout)
        except Exception as exc:  # pragma: no cover - capturer is expected to return None on failure
            LOG.warning("Login shell PATH capture failed (%s)", exc)
            result = None

        with self._lock:
            self._captured = list(result) if result else None
            self._done = True
            self._in_flight = False
            callbacks = self._callbacks
            self._callbacks = []
            value = self._captured

        LOG.debug("Login shell PATH captured: %s", "none" if value is None else f"{len(value)} entries")
        for callback in callbacks:
            callback(list(value) if value is not None else None)


def resolve_binary(
    name: str,
    override_key: str,
    env: Mapping[str, str] | None = None,
    login_path: Sequence[str] | None | object = _SHARED,
    home: str | None = None,
) -> str | None:
    """Locate ``name``: override env var, login PATH, inherited PATH, fallback dirs."""
    env = os.environ if env is None else env
    if login_path is _SHARED:
        login_path = LoginShellPathCache.shared().current
    del home  # tool lookups only consult PATH-style entries

    override = env.get(override_key)
    if override and _is_executable(override):
        return override

    if login_path:
        hit = _find(name, list(login_path))  # type: ignore[arg-type]
        if hit:
            return hit

    hit = _find(name, _split_path(env.get("PATH")))
    if hit:
        return hit

    return _find(name, FALLBACK_BIN_DIRS)


def resolve_codex_binary(env: Mapping[str, str] | None = None, login_path: object = _SHARED) -> str | None:
    return resolve_binary("codex", CODEX_OVERRIDE_KEY, env=env, login_path=login_path)


def resolve_claude_binary(env: Mapping[str, str] | None = None, login_path: object = _SHARED) -> str | None:
    return resolve_binary("claude", CLAUDE_OVERRIDE_KEY, env=env, login_path=login_path)


def resolve_gemini_binary(env: Mapping[str, str] | None = None, login_path: object = _SHARED) -> str | None:
    return resolve_binary("gemini", GEMINI_OVERRIDE_KEY, env=env, login_path=login_path)


def effective_path(env: Mapping[str, str] | None = None, login_path: object = _SHARED) -> str:
    env = os.environ if env is None else env
    if login_path is _SHARED:
        login_path = LoginShellPathCache.shared().current
    if login_path:
        return os.pathsep.join(login_path)  # type: ignore[arg-type]
    existing = env.get("PATH")
    if existing:
        return existing
    return os.pathsep.join(FALLBACK_BIN_DIRS)


@dataclass(frozen=True)
class PathDebugSnapshot:
    codex_binary: str | None
    claude_binary: str | None
    gemini_binary: str | None
    effective_path: str
    login_shell_path: str | None

    def to_dict(self) -> dict[str, str]:
        return {
            "codex_binary": self.codex_binary or "",
            "claude_binary": self.claude_binary or "",
            "gemini_binary": self.gemini_binary or "",
            "effective_path": self.effective_path,
            "login_shell_path": self.login_shell_path or "",
        }


def path_debug_snapshot(env: Mapping[str, str] | None = None) -> PathDebugSnapshot:
    login = LoginShellPathCache.shared().current
    return PathDebugSnapshot(
        codex_binary=resolve_codex_binary(env=env, login_path=login),
        claude_binary=resolve_claude_binary(env=env, login_path=login),
        gemini_binary=resolve_gemini_binary(env=env, login_path=login),
        effective_path=effective_path(env=env, login_path=login),
        login_shell_path=os.pathsep.join(login) if login else None,
    )
