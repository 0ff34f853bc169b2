"""Host process layer: spawn a program on a pseudo-terminal and stream its output."""

from __future__ import annotations

import codecs
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from loguru import logger

DataCallback = Callable[[str], None]
ExitCallback = Callable[[Optional[int]], None]


class ProcessHandle(ABC):
    pid: Optional[int] = None

    @abstractmethod
    def write(self, data: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def kill(self) -> None:
        raise NotImplementedError


class ProcessHost(ABC):
    @abstractmethod
    def spawn(
        self,
        working_dir: str,
        argv: Sequence[str],
        env: dict[str, str],
        on_data: DataCallback,
        on_exit: ExitCallback,
        cols: int = 80,
        rows: int = 30,
    ) -> ProcessHandle:
        """Start `argv` and deliver decoded output to `on_data` until it exits."""
        raise NotImplementedError


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcessHandle(ProcessHandle):
    def __init__(self, proc: subprocess.Popen, master_fd: int) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._write_lock = threading.Lock()
        self._closed = False
        self.pid = proc.pid

    def write(self, data: str) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8")
        with self._write_lock:
            try:
                while payload:
                    written = os.write(self._master_fd, payload)
                    payload = payload[written:]
            except OSError as exc:
                logger.debug("Write to pid {} failed: {}", self.pid, exc)

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as exc:
            logger.debug("Resize of pid {} failed: {}", self.pid, exc)

    def kill(self) -> None:
        if self._proc.poll() is not None:
            return
        try:
            pgid = os.getpgid(self._proc.pid)
            os.killpg(pgid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("Process group {} ignored SIGTERM, sending SIGKILL", pgid)
            try:
                os.killpg(pgid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError:
            pass


class PtyProcessHost(ProcessHost):
    def spawn(
        self,
        working_dir: str,
        argv: Sequence[str],
        env: dict[str, str],
        on_data: DataCallback,
        on_exit: ExitCallback,
        cols: int = 80,
        rows: int = 30,
    ) -> ProcessHandle:
        master_fd, slave_fd = pty.openpty()
        _set_winsize(slave_fd, cols, rows)
        try:
            proc = subprocess.Popen(
                list(argv),
                cwd=working_dir,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        handle = PtyProcessHandle(proc, master_fd)
        logger.info("Spawned {} (pid {}) in {}", argv[0], proc.pid, working_dir)

        def _reader() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                try:
                    chunk = os.read(master_fd, 4096)
                except OSError:
                    break
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    on_data(text)
            returncode = proc.wait()
            handle._close_fd()
            logger.info("Process {} exited with {}", proc.pid, returncode)
            on_exit(returncode)

        threading.Thread(target=_reader, name=f"pty-{proc.pid}", daemon=True).start()
        return handle
