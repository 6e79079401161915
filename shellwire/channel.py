import os
import pty
import time
import errno
import select
import signal
import socket
from dataclasses import dataclass
from typing import Dict, Optional

import paramiko

from shellwire.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, CLOSE_GRACE, LOCAL_SHELL_FALLBACK,
)
from shellwire.errors import ConnectionLostError, SessionConnectError


@dataclass(frozen=True)
class Target:
    """Where a session runs: the local machine or ``user@host:port``."""

    host: Optional[str] = None
    user: Optional[str] = None
    port: int = 22

    @property
    def is_local(self) -> bool:
        return self.host is None

    @classmethod
    def local(cls) -> "Target":
        return cls()

    @classmethod
    def parse(cls, text: str) -> "Target":
        text = (text or "").strip()
        if not text or text == "local":
            return cls.local()
        user = None
        if "@" in text:
            user, text = text.rsplit("@", 1)
        port = 22
        if text.count(":") == 1:
            text, raw_port = text.split(":")
            try:
                port = int(raw_port)
            except ValueError:
                raise ValueError(f"invalid port in target: {raw_port!r}")
        if not text:
            raise ValueError("target host is empty")
        return cls(host=text, user=user or None, port=port)

    def __str__(self) -> str:
        if self.is_local:
            return "local"
        prefix = f"{self.user}@" if self.user else ""
        return f"{prefix}{self.host}:{self.port}"


class Channel:
    """A raw, long-lived interactive shell byte stream."""

    closed = False

    def send(self, data: str) -> None:
        raise NotImplementedError

    def recv(self, timeout: float) -> bytes:
        """Return available bytes, ``b""`` if none arrived within ``timeout``.

        Raises ConnectionLostError once the stream is gone.
        """
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class LocalPtyChannel(Channel):
    def __init__(self, shell: Optional[str] = None, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.shell = shell or LOCAL_SHELL_FALLBACK
        self.cwd = cwd or os.path.expanduser("~")
        self.extra_env = env or {}
        self.fd: Optional[int] = None
        self.pid: Optional[int] = None
        self.closed = True

    def open(self) -> "LocalPtyChannel":
        env = dict(os.environ)
        env.update({"TERM": "dumb", "LC_ALL": "C", "PS1": "$ "})
        env.update(self.extra_env)
        try:
            pid, fd = pty.fork()
        except OSError as exc:
            raise SessionConnectError(f"pty fork failed: {exc}") from exc
        if pid == 0:
            try:
                os.chdir(self.cwd)
                os.execvpe(self.shell, [self.shell, "-i"], env)
            finally:
                os._exit(127)
        self.pid = pid
        self.fd = fd
        self.closed = False
        return self

    def send(self, data: str) -> None:
        fd = self.fd
        if self.closed or fd is None:
            raise ConnectionLostError("local pty is closed")
        payload = data.encode("utf-8")
        try:
            while payload:
                written = os.write(fd, payload)
                payload = payload[written:]
        except OSError as exc:
            raise ConnectionLostError(f"pty write failed: {exc}") from exc

    def recv(self, timeout: float) -> bytes:
        # close() may run on another thread; work on one snapshot of the fd
        fd = self.fd
        if self.closed or fd is None:
            raise ConnectionLostError("local pty is closed")
        try:
            ready, _, _ = select.select([fd], [], [], timeout)
            if not ready:
                return b""
            data = os.read(fd, BUFFER_SIZE)
        except (TypeError, ValueError) as exc:
            raise ConnectionLostError("local pty is closed") from exc
        except OSError as exc:
            # Linux reports a hung-up pty master as EIO.
            if exc.errno in (errno.EIO, errno.EBADF):
                raise ConnectionLostError("local shell exited") from exc
            raise ConnectionLostError(f"pty read failed: {exc}") from exc
        if not data:
            raise ConnectionLostError("local shell exited")
        return data

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.fd is not None:
            try:
                os.close(self.fd)
            except OSError:
                pass
            self.fd = None
        if self.pid:
            self._reap(self.pid)
            self.pid = None

    @staticmethod
    def _reap(pid: int) -> None:
        try:
            os.kill(pid, signal.SIGHUP)
        except ProcessLookupError:
            pass
        deadline = time.time() + CLOSE_GRACE
        while time.time() < deadline:
            try:
                done, _ = os.waitpid(pid, os.WNOHANG)
            except ChildProcessError:
                return
            if done:
                return
            time.sleep(0.02)
        try:
            os.kill(pid, signal.SIGKILL)
            os.waitpid(pid, 0)
        except (ProcessLookupError, ChildProcessError):
            pass


class SSHChannel(Channel):
    def __init__(
        self,
        target: Target,
        password: Optional[str] = None,
        key_filename: Optional[str] = None,
        passphrase: Optional[str] = None,
        verify_host_key: bool = True,
    ):
        self.target = target
        self._password = password
        self._key_filename = key_filename
        self._passphrase = passphrase
        self.verify_host_key = verify_host_key
        self.client: Optional[paramiko.SSHClient] = None
        self.channel: Optional[paramiko.Channel] = None
        self.closed = True

    def open(self) -> "SSHChannel":
        self.client = paramiko.SSHClient()
        if self.verify_host_key:
            self.client.load_system_host_keys()
        else:
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": self.target.host,
            "port": self.target.port,
            "username": self.target.user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self._password:
            connect_kwargs["password"] = self._password
        if self._key_filename:
            connect_kwargs["key_filename"] = self._key_filename
            if self._passphrase:
                connect_kwargs["passphrase"] = self._passphrase
        # Credentials are only needed for the handshake.
        self._password = None
        self._passphrase = None

        try:
            self.client.connect(**connect_kwargs)
            transport = self.client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
            self.channel = self.client.invoke_shell(term="dumb", width=200, height=50)
        except (paramiko.SSHException, OSError) as exc:
            self.client.close()
            raise SessionConnectError(f"ssh connect to {self.target} failed: {exc}") from exc
        self.closed = False
        return self

    def send(self, data: str) -> None:
        channel = self.channel
        if self.closed or not channel:
            raise ConnectionLostError("ssh channel is closed")
        try:
            channel.sendall(data.encode("utf-8"))
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectionLostError(f"ssh send failed: {exc}") from exc

    def recv(self, timeout: float) -> bytes:
        channel = self.channel
        if self.closed or not channel:
            raise ConnectionLostError("ssh channel is closed")
        try:
            channel.settimeout(timeout)
            data = channel.recv(BUFFER_SIZE)
        except socket.timeout:
            return b""
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectionLostError(f"ssh recv failed: {exc}") from exc
        if not data:
            raise ConnectionLostError("ssh channel closed by remote")
        return data

    def close(self) -> None:
        if self.closed and self.client is None:
            return
        self.closed = True
        if self.channel:
            self.channel.close()
            self.channel = None
        if self.client:
            self.client.close()
            self.client = None
