"""External tool invocation with typed results.

Every collaborator the engine shells out to (partclone, pigz, sgdisk, sfdisk,
grub-install, efibootmgr, mount, ...) is reached through ``ToolRunner``.
Callers get a ``ToolResult`` back instead of an exception for ordinary
failures, so each layer can decide whether a failure is fatal, recorded, or
a warning. A missing binary is reported as exit code 127 and a timeout as
exit code 124, mirroring the shell conventions.

Children run in their own session. A terminal Ctrl-C reaches only this
process, which turns it into a cancel request; a partclone or dd already
writing to a disk is left to finish.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Type

from cyc_cloner.logging import LoggerFactory

from .exceptions import ToolInvocationError


log = LoggerFactory.for_command()

SBIN_PATHS = ("/usr/sbin", "/sbin", "/usr/local/sbin")
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external invocation (or of a whole pipeline)."""

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Last meaningful line of output, for one-line error reports."""
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        if not text:
            return f"exit code {self.returncode}"
        return text.splitlines()[-1].strip()

    def check(
        self, error_cls: Type[ToolInvocationError] = ToolInvocationError
    ) -> "ToolResult":
        """Raise ``error_cls`` if the invocation failed, else return self."""
        if not self.ok:
            raise error_cls(self.command, self.returncode, self.diagnostic)
        return self


def _describe(commands: Sequence[Sequence[str]]) -> str:
    return " | ".join(" ".join(str(part) for part in command) for command in commands)


class ToolRunner:
    """Runs external tools and pipelines of tools."""

    def __init__(self, search_paths: Sequence[str] = SBIN_PATHS):
        self.search_paths = tuple(search_paths)

    def which(self, name: str) -> Optional[str]:
        """Locate ``name`` on PATH or in the sbin directories."""
        found = shutil.which(name)
        if found:
            return found
        for prefix in self.search_paths:
            candidate = Path(prefix) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return None

    def run(
        self,
        command: Sequence[str],
        *,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Run a single command, capturing its output."""
        argv = tuple(str(part) for part in command)
        log.debug(f"Running command: {' '.join(argv)}")
        try:
            completed = subprocess.run(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                start_new_session=True,
            )
        except FileNotFoundError:
            log.debug(f"Command not found: {argv[0]}")
            return ToolResult(argv, EXIT_NOT_FOUND, "", f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired:
            log.warning(f"Command timed out after {timeout}s: {' '.join(argv)}")
            return ToolResult(argv, EXIT_TIMEOUT, "", f"timed out after {timeout}s")
        result = ToolResult(argv, completed.returncode, completed.stdout or "", completed.stderr or "")
        if result.stdout:
            log.trace(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            log.trace(f"stderr: {result.stderr.strip()}")
        log.debug(f"Command completed with return code {result.returncode}")
        return result

    def run_checked(
        self,
        command: Sequence[str],
        *,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
        error_cls: Type[ToolInvocationError] = ToolInvocationError,
    ) -> ToolResult:
        return self.run(command, input_text=input_text, timeout=timeout).check(error_cls)

    def pipeline(
        self,
        commands: Sequence[Sequence[str]],
        *,
        stdin_path: Optional[Path] = None,
        stdout_path: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> ToolResult:
        """Run ``commands`` connected stdout-to-stdin.

        The first stage reads ``stdin_path`` when given and the last stage
        writes to ``stdout_path`` when given. The returned result describes
        the failing stage; a stage killed by SIGPIPE is only blamed when no
        other stage failed.
        """
        if not commands:
            raise ValueError("pipeline requires at least one command")
        argvs = [tuple(str(part) for part in command) for command in commands]
        log.debug(f"Running pipeline: {_describe(argvs)}")

        procs: list[subprocess.Popen] = []
        stderr_files = []
        stdin_handle = open(stdin_path, "rb") if stdin_path else None
        stdout_handle = None
        try:
            stdout_handle = open(stdout_path, "wb") if stdout_path else None
            upstream = stdin_handle
            for index, argv in enumerate(argvs):
                is_last = index == len(argvs) - 1
                err_file = tempfile.TemporaryFile()
                stderr_files.append(err_file)
                target = stdout_handle if (is_last and stdout_handle) else subprocess.PIPE
                try:
                    proc = subprocess.Popen(
                        argv,
                        stdin=upstream,
                        stdout=target,
                        stderr=err_file,
                        start_new_session=True,
                    )
                except FileNotFoundError:
                    self._abort(procs)
                    log.debug(f"Command not found: {argv[0]}")
                    return ToolResult(argv, EXIT_NOT_FOUND, "", f"{argv[0]}: command not found")
                if procs and procs[-1].stdout:
                    # Parent must not hold the read end or upstream never sees SIGPIPE.
                    procs[-1].stdout.close()
                procs.append(proc)
                upstream = proc.stdout

            try:
                out, _ = procs[-1].communicate(timeout=timeout)
                for proc in procs[:-1]:
                    proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._abort(procs)
                log.warning(f"Pipeline timed out after {timeout}s: {_describe(argvs)}")
                return ToolResult(argvs[-1], EXIT_TIMEOUT, "", f"timed out after {timeout}s")

            stdout_text = out.decode(errors="replace") if out else ""
            failures = [
                (argv, proc, err_file)
                for argv, proc, err_file in zip(argvs, procs, stderr_files)
                if proc.returncode != 0
            ]
            if not failures:
                log.debug("Pipeline completed successfully")
                return ToolResult(argvs[-1], 0, stdout_text, "")
            real = [f for f in failures if f[1].returncode != -signal.SIGPIPE]
            argv, proc, err_file = (real or failures)[0]
            err_file.seek(0)
            stderr_text = err_file.read().decode(errors="replace")
            log.debug(f"Pipeline stage {argv[0]} failed with {proc.returncode}")
            return ToolResult(argv, proc.returncode, stdout_text, stderr_text)
        finally:
            for handle in (stdin_handle, stdout_handle, *stderr_files):
                if handle is not None:
                    handle.close()

    @staticmethod
    def _abort(procs: Sequence[subprocess.Popen]) -> None:
        for proc in procs:
            if proc.poll() is None:
                proc.kill()
            proc.wait()
