from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import Any, Callable, Mapping, Sequence

from fetch_errors import (
    MalformedOutput,
    MissingExecutable,
    SubprocessLaunchFailed,
    SubprocessTimedOut,
    UsageFetchError,
)
from path_environment import effective_path
from utils.json_payload import decode_json_object

LOG = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 2 * 1024 * 1024


class CliRunner:
    """Runs provider CLIs with a bounded wait and tracks live children for teardown."""

    def __init__(
        self,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        path_provider: Callable[[], str] = effective_path,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self._path_provider = path_provider
        self._lock = threading.Lock()
        self._live: set[subprocess.Popen] = set()
        self._closed = False

    def _env(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = self._path_provider()
        env.setdefault("NO_COLOR", "1")
        if extra:
            env.update(extra)
        return env

    def run(
        self,
        binary: str | None,
        args: Sequence[str],
        *,
        timeout: float,
        tool: str,
        env: Mapping[str, str] | None = None,
    ) -> str:
        if not binary:
            raise MissingExecutable(f"{tool} CLI not found. Install it or set its *_CLI_PATH override.")
        command = [binary, *args]
        with self._lock:
            if self._closed:
                raise SubprocessLaunchFailed(f"{tool} CLI runner is shut down")
            try:
                proc = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    env=self._env(env),
                )
            except OSError as exc:
                raise SubprocessLaunchFailed(f"{tool} CLI could not be started: {exc}") from exc
            self._live.add(proc)

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise SubprocessTimedOut(f"{tool} CLI timed out after {timeout:g}s") from exc
        finally:
            with self._lock:
                self._live.discard(proc)

        if len((stdout or "").encode("utf-8")) > self.max_output_bytes:
            raise MalformedOutput(f"{tool} CLI output exceeded {self.max_output_bytes} bytes")
        if proc.returncode != 0:
            message = (stderr or stdout or "unknown error").strip().replace("\n", " ")
            raise UsageFetchError(f"{tool} CLI failed (exit {proc.returncode}): {message[:200]}")
        return stdout or ""

    def run_json(
        self,
        binary: str | None,
        args: Sequence[str],
        *,
        timeout: float,
        tool: str,
        env: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        stdout = self.run(binary, args, timeout=timeout, tool=tool, env=env)
        try:
            return decode_json_object(stdout)
        except ValueError as exc:
            raise MalformedOutput(f"{tool} CLI returned unparseable output") from exc

    def read_version(self, binary: str | None, args: Sequence[str] = ("--version",), *, timeout: float = 5.0) -> str | None:
        if not binary:
            return None
        try:
            text = self.run(binary, args, timeout=timeout, tool=os.path.basename(binary)).strip()
        except UsageFetchError as exc:
            LOG.debug("Version check failed for %s (%s)", binary, exc)
            return None
        return text.splitlines()[0] if text else None

    def terminate_all(self) -> int:
        with self._lock:
            self._closed = True
            live = list(self._live)
        for proc in live:
            try:
                proc.kill()
            except OSError:
                continue
        if live:
            LOG.info("Terminated %s in-flight CLI process(es).", len(live))
        return len(live)
