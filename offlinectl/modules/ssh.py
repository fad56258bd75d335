"""
SSH connection management.

Key-based sessions use the native OpenSSH client in batch mode; the one-time
password session used to push the public key goes through paramiko.
"""
import logging
import os
import subprocess
import threading
from typing import Dict, List, Optional, Tuple

import paramiko

from .errors import NodeUnreachable, TransferError

logger = logging.getLogger("offline.ssh")

TEST_MARKER = 'SSH_TEST_CONNECTION_SUCCESS'

SSH_OPTIONS = [
    '-o', 'BatchMode=yes',
    '-o', 'StrictHostKeyChecking=no',
    '-o', 'UserKnownHostsFile=/dev/null',
    '-o', 'ServerAliveInterval=5',
    '-o', 'ServerAliveCountMax=3',
    '-o', 'LogLevel=ERROR',
]


class SSHConnection:
    """SSH connection using the native OpenSSH client."""

    def __init__(self, host: str, username: str, key_path: str = None, port: int = 22,
                 connect_timeout: int = 10, timeout: int = 600):
        """Initialize SSH connection.

        Args:
            host: Remote host to connect to
            username: Username for authentication
            key_path: Path to SSH private key (optional)
            port: SSH port (default: 22)
            connect_timeout: Connection timeout in seconds (default: 10)
            timeout: Default command timeout in seconds (default: 600)
        """
        self.host = host
        self.username = username
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.port = port
        self.connect_timeout = connect_timeout
        self.timeout = timeout

    @property
    def target(self) -> str:
        return f'{self.username}@{self.host}'

    def _base_options(self) -> List[str]:
        options = list(SSH_OPTIONS) + ['-o', f'ConnectTimeout={self.connect_timeout}']
        if self.key_path:
            options += ['-i', self.key_path]
        return options

    def test_connection(self) -> None:
        """Run a marker command in batch mode.

        Raises:
            NodeUnreachable: If key-based login does not work
        """
        logger.debug(f"Testing SSH connection to {self.target}:{self.port}")
        rc, stdout, stderr = self.execute(f'echo {TEST_MARKER}', timeout=self.connect_timeout + 20)
        if TEST_MARKER not in stdout:
            logger.debug(f"SSH test to {self.host} failed. Exit code: {rc}, stderr: {stderr.strip()}")
            raise NodeUnreachable(self.host, stderr.strip() or f"exit code {rc}")

    def execute(self, command: str, timeout: Optional[int] = None,
                input_text: Optional[str] = None) -> Tuple[int, str, str]:
        """Execute a command over SSH.

        Args:
            command: Shell command run on the remote host
            timeout: Command timeout in seconds, defaults to the connection timeout
            input_text: Optional text fed to the command's stdin

        Returns:
            tuple: (exit code, stdout, stderr); 255 signals a transport failure
        """
        timeout = timeout or self.timeout
        cmd = ['ssh', '-T', *self._base_options(), '-p', str(self.port), self.target, command]
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
            )
            return (result.returncode, result.stdout, result.stderr)
        except subprocess.TimeoutExpired:
            return (255, '', f"Command timed out after {timeout} seconds")
        except OSError as e:
            return (255, '', str(e))

    def put(self, localpath: str, remotepath: str, recursive: bool = False) -> None:
        """Upload a file or directory to the remote host using scp.

        Raises:
            TransferError: If the transfer fails
        """
        cmd = ['scp', *self._base_options(), '-P', str(self.port)]
        if recursive:
            cmd.append('-r')
        cmd += [str(localpath), f'{self.target}:{remotepath}']
        try:
            result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise TransferError(f"Upload of {localpath} to {self.host}:{remotepath} timed out")
        except OSError as e:
            raise TransferError(f"Failed to upload {localpath} to {self.host}:{remotepath}: {e}")
        if result.returncode != 0:
            raise TransferError(f"Failed to upload {localpath} to {self.host}:{remotepath}: {result.stderr.strip()}")


class PasswordSession:
    """Password-authenticated paramiko session used before keys are in place."""

    def __init__(self, host: str, username: str, password: str, port: int = 22, timeout: int = 10):
        self.host = host
        self.username = username
        self.port = port
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self.client.connect(
                hostname=host,
                port=port,
                username=username,
                password=password,
                timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            self.client.close()
            raise NodeUnreachable(host, f"password login failed: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def execute(self, command: str, timeout: Optional[int] = 60,
                input_text: Optional[str] = None) -> Tuple[int, str, str]:
        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            if input_text is not None:
                stdin.write(input_text)
                stdin.channel.shutdown_write()
            rc = stdout.channel.recv_exit_status()
            return (rc, stdout.read().decode(errors='replace'), stderr.read().decode(errors='replace'))
        except (paramiko.SSHException, OSError) as e:
            return (255, '', str(e))

    def close(self):
        self.client.close()


class ConnectionPool:
    """Thread-safe cache of key-based connections, one per node."""

    def __init__(self, username: str, key_path: Optional[str] = None, port: int = 22,
                 connect_timeout: int = 10, timeout: int = 600):
        self.username = username
        self.key_path = key_path
        self.port = port
        self.connect_timeout = connect_timeout
        self.timeout = timeout
        self.connections: Dict[str, SSHConnection] = {}
        self.lock = threading.RLock()

    @classmethod
    def from_config(cls, config) -> 'ConnectionPool':
        fleet = config.fleet
        return cls(
            username=fleet.ssh_user,
            key_path=fleet.key_path,
            port=fleet.ssh_port,
            connect_timeout=fleet.connect_timeout,
            timeout=fleet.command_timeout,
        )

    def get_connection(self, host: str) -> SSHConnection:
        with self.lock:
            if host not in self.connections:
                logger.debug(f"Creating new SSH connection to {self.username}@{host}")
                self.connections[host] = SSHConnection(
                    host=host,
                    username=self.username,
                    key_path=self.key_path,
                    port=self.port,
                    connect_timeout=self.connect_timeout,
                    timeout=self.timeout,
                )
            return self.connections[host]

    def __call__(self, node) -> SSHConnection:
        """Connection factory for a fleet node."""
        return self.get_connection(node.address)

    def close_all(self):
        """Forget cached connections; each ssh call is its own process."""
        with self.lock:
            self.connections.clear()
