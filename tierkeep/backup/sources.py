"""
Command transports for capture and probing.

Supports:
- LocalTransport: run shell commands on this host
- SSHTransport: run shell commands on a remote host over SSH (paramiko)

Both expose the same two calls: `execute()` for short commands whose output
fits in memory, and `open_stream()` for long-running capture pipelines
whose stdout is consumed as a stream.
"""

import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from .errors import TransportError

logger = logging.getLogger(__name__)

BENIGN_TAR_WARNING = 'file changed as we read it'
ARCHIVE_EXCLUDES = ['*.tgz', '*.tar.gz', '*.zip']


class CommandResult(NamedTuple):
    stdout: str
    stderr: str
    exit_status: int


def build_tar_command(working_dir: str, parent_dir: Optional[str] = None) -> str:
    """
    Build the gzip'd tar pipeline that writes an archive of a directory to stdout.

    Existing archives inside the directory are excluded. When `parent_dir` is
    given, `parent_dir/<basename of working_dir>` is tried if `working_dir`
    does not exist on the target host.

    Args:
        working_dir: Directory to archive
        parent_dir: Optional fallback parent directory

    Returns:
        Shell command string
    """
    excludes = ' '.join(f'--exclude={shlex.quote(p)}' for p in ARCHIVE_EXCLUDES)

    def tar(path: str) -> str:
        return f'tar -czf - {excludes} {shlex.quote(path)}'

    if not parent_dir:
        return tar(working_dir)

    alt = os.path.join(parent_dir, os.path.basename(working_dir.rstrip('/')))
    return (
        f'if [ -d {shlex.quote(working_dir)} ]; then {tar(working_dir)}; '
        f'elif [ -d {shlex.quote(alt)} ]; then {tar(alt)}; '
        f'else echo {shlex.quote("tar: no such directory: " + working_dir)} >&2; exit 2; fi'
    )


def is_benign_capture_warning(exit_status: int, stderr: str) -> bool:
    """tar exits 1 when a file changed during the read; the archive is still usable."""
    return exit_status == 1 and BENIGN_TAR_WARNING in (stderr or '')


class _StderrCollector:
    """Drain a stderr stream on a thread so the child never blocks on a full pipe."""

    def __init__(self, stream):
        self._chunks = []
        self._thread = threading.Thread(target=self._drain, args=(stream,), daemon=True)
        self._thread.start()

    def _drain(self, stream):
        while True:
            # paramiko channel files yield str, subprocess pipes yield bytes
            line = stream.readline()
            if not line:
                break
            if isinstance(line, str):
                line = line.encode()
            self._chunks.append(line)

    def text(self, timeout: float = 5.0) -> str:
        self._thread.join(timeout)
        return b''.join(self._chunks).decode('utf-8', errors='replace')


class CaptureProcess:
    """A running capture command whose stdout is read as a byte stream."""

    def __init__(self, command: str, stdout, stderr_collector: _StderrCollector):
        self.command = command
        self.stdout = stdout
        self._stderr = stderr_collector

    def wait(self) -> Tuple[int, str]:
        """Block until the command exits; return (exit_status, stderr)."""
        raise NotImplementedError

    def kill(self):
        raise NotImplementedError


class _LocalCapture(CaptureProcess):

    def __init__(self, command: str, process: subprocess.Popen):
        super().__init__(command, process.stdout, _StderrCollector(process.stderr))
        self._process = process

    def wait(self) -> Tuple[int, str]:
        exit_status = self._process.wait()
        self._process.stdout.close()
        return exit_status, self._stderr.text()

    def kill(self):
        if self._process.poll() is None:
            self._process.kill()
            self._process.wait()


class _SSHCapture(CaptureProcess):

    def __init__(self, command: str, stdout, stderr):
        super().__init__(command, stdout, _StderrCollector(stderr))
        self._channel = stdout.channel

    def wait(self) -> Tuple[int, str]:
        exit_status = self._channel.recv_exit_status()
        return exit_status, self._stderr.text()

    def kill(self):
        # Closing the channel makes sshd hang up on the remote command
        self._channel.close()


class LocalTransport:
    """Run commands on the local host under `bash -lc`."""

    name = 'local'

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def execute(self, command: str) -> CommandResult:
        """
        Run a command and capture its output.

        Raises:
            TransportError: If the command cannot be started or times out
        """
        try:
            completed = subprocess.run(
                ['bash', '-lc', command],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"Command timed out after {self.timeout}s: {command}", stderr=str(e.stderr or ''))
        except OSError as e:
            raise TransportError(f"Failed to start local command: {e}")

        return CommandResult(completed.stdout, completed.stderr, completed.returncode)

    def run(self, command: str) -> str:
        """
        Run a command that must succeed.

        Returns:
            Captured stdout

        Raises:
            TransportError: On non-zero exit, carrying stderr
        """
        result = self.execute(command)
        if result.exit_status != 0:
            raise TransportError(
                f"Command failed with exit status {result.exit_status}: {command}",
                stderr=result.stderr,
                exit_status=result.exit_status
            )
        return result.stdout

    def open_stream(self, command: str) -> CaptureProcess:
        try:
            process = subprocess.Popen(
                ['bash', '-lc', command],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            raise TransportError(f"Failed to start capture command: {e}")
        return _LocalCapture(command, process)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SSHTransport:
    """
    Run commands on a remote host over one SSH session.

    Remote transports are single-session per host, so callers process one
    site at a time.
    """

    name = 'ssh'

    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: int = 30
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.timeout = timeout
        self.ssh_client = None

    def connect(self):
        """
        Establish the SSH connection.

        Raises:
            TransportError: If connection or authentication fails
        """
        if self.ssh_client is not None:
            return

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise TransportError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        # Neither: fall back to the SSH agent and default keys

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise TransportError(f"SSH authentication failed for {self.username}@{self.host}: {e}")
        except paramiko.SSHException as e:
            raise TransportError(f"SSH connection to {self.host} failed: {e}")
        except OSError as e:
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}")

        self.ssh_client = client
        logger.info(f"Connected to {self.username}@{self.host}:{self.port}")

    def _remote(self, command: str) -> str:
        return f'bash -lc {shlex.quote(command)}'

    def execute(self, command: str) -> CommandResult:
        self.connect()
        try:
            _, stdout, stderr = self.ssh_client.exec_command(self._remote(command))
            out = stdout.read().decode('utf-8', errors='replace')
            err = stderr.read().decode('utf-8', errors='replace')
            exit_status = stdout.channel.recv_exit_status()
        except paramiko.SSHException as e:
            raise TransportError(f"Remote command on {self.host} failed: {e}")

        return CommandResult(out, err, exit_status)

    def run(self, command: str) -> str:
        result = self.execute(command)
        if result.exit_status != 0:
            raise TransportError(
                f"Remote command on {self.host} exited {result.exit_status}: {command}",
                stderr=result.stderr,
                exit_status=result.exit_status
            )
        return result.stdout

    def open_stream(self, command: str) -> CaptureProcess:
        self.connect()
        try:
            _, stdout, stderr = self.ssh_client.exec_command(self._remote(command))
        except paramiko.SSHException as e:
            raise TransportError(f"Failed to start remote capture on {self.host}: {e}")
        return _SSHCapture(command, stdout, stderr)

    def close(self):
        if self.ssh_client is not None:
            try:
                self.ssh_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Error closing SSH connection to {self.host}: {e}")
            self.ssh_client = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def create_transport(source_type: str, config: Optional[Dict[str, Any]] = None):
    """
    Factory for command transports.

    Args:
        source_type: 'local' or 'ssh'
        config: For ssh: host, username, port, password, private_key

    Returns:
        LocalTransport or SSHTransport

    Raises:
        ValueError: If source_type is invalid or ssh settings are incomplete
    """
    config = config or {}
    if source_type == 'local':
        return LocalTransport()
    if source_type == 'ssh':
        if not config.get('host'):
            raise ValueError("SSH transport requires a host")
        return SSHTransport(
            host=config['host'],
            username=config.get('username') or 'root',
            port=int(config.get('port') or 22),
            password=config.get('password'),
            private_key=config.get('private_key')
        )
    raise ValueError(f"Invalid source type: {source_type}")


def run_commands(transport, commands: List[str]) -> List[CommandResult]:
    """
    Run hook commands in order, stopping at the first failure.

    Raises:
        TransportError: From the first failing command
    """
    results = []
    for command in commands:
        logger.info(f"Running hook: {command}")
        result = transport.execute(command)
        if result.exit_status != 0:
            raise TransportError(
                f"Hook command failed with exit status {result.exit_status}: {command}",
                stderr=result.stderr,
                exit_status=result.exit_status
            )
        results.append(result)
    return results
