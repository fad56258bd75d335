"""Passwordless SSH trust between the orchestrator and every node."""
import logging
import os
import shlex
import threading
from pathlib import Path
from typing import Callable, Optional

import paramiko

from .errors import ConfigError, NodeUnreachable, RetryExhausted
from .models import Node
from .retry import RetryExecutor
from .ssh import PasswordSession, SSHConnection

logger = logging.getLogger("offline.trust")


def ensure_key_pair(key_path: str) -> str:
    """Create an RSA key pair at key_path unless a private key already exists.

    Returns:
        str: The public key line (``ssh-rsa AAAA... comment``)
    """
    private = Path(os.path.expanduser(key_path))
    public = private.with_name(private.name + ".pub")

    if private.exists():
        key = paramiko.RSAKey.from_private_key_file(str(private))
    else:
        logger.info(f"Generating SSH key pair at {private}")
        private.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        key = paramiko.RSAKey.generate(2048)
        key.write_private_key_file(str(private))
        os.chmod(private, 0o600)

    if public.exists():
        return public.read_text().strip()

    line = f"{key.get_name()} {key.get_base64()} offlinectl"
    public.write_text(line + "\n")
    os.chmod(public, 0o644)
    return line


class TrustProvisioner:
    """Pushes the local public key to each node and checks key-based login.

    ensure_trust runs on several worker threads at once; the key pair is
    resolved under a lock so every node receives the same key.
    """

    def __init__(
        self,
        config,
        password_session: Callable[..., PasswordSession] = PasswordSession,
        key_connection: Optional[Callable[[Node], SSHConnection]] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.fleet = config.fleet
        self._password_session = password_session
        self._key_connection = key_connection or self._default_connection
        self.retry = retry or RetryExecutor()
        self._public_key: Optional[str] = None
        self._key_lock = threading.Lock()

    def _default_connection(self, node: Node) -> SSHConnection:
        return SSHConnection(
            host=node.address,
            username=self.fleet.ssh_user,
            key_path=self.fleet.key_path,
            port=self.fleet.ssh_port,
            connect_timeout=self.fleet.connect_timeout,
        )

    @property
    def public_key(self) -> str:
        with self._key_lock:
            if self._public_key is None:
                self._public_key = ensure_key_pair(self.fleet.key_path)
            return self._public_key

    def _password(self) -> str:
        if self.fleet.ssh_password is None:
            raise ConfigError("fleet.ssh_password is required to push keys to new nodes")
        return self.fleet.ssh_password.get_secret_value()

    def push_key(self, node: Node) -> bool:
        """Append the public key to the node's authorized_keys if it is missing.

        Returns:
            bool: True if the key was appended, False if it was already present
        """
        password = self._password()
        key = shlex.quote(self.public_key)
        with self._password_session(
            node.address,
            self.fleet.ssh_user,
            password,
            port=self.fleet.ssh_port,
            timeout=self.fleet.connect_timeout,
        ) as session:
            rc, _, stderr = session.execute("mkdir -p ~/.ssh && chmod 700 ~/.ssh && touch ~/.ssh/authorized_keys")
            if rc != 0:
                raise NodeUnreachable(node.id, f"cannot prepare ~/.ssh: {stderr.strip()}")

            rc, _, _ = session.execute(f"grep -qxF {key} ~/.ssh/authorized_keys")
            appended = rc != 0
            if appended:
                rc, _, stderr = session.execute(f"echo {key} >> ~/.ssh/authorized_keys")
                if rc != 0:
                    raise NodeUnreachable(node.id, f"cannot update authorized_keys: {stderr.strip()}")
            session.execute("chmod 600 ~/.ssh/authorized_keys")
        return appended

    def ensure_trust(self, node: Node) -> None:
        """Make sure key-based login works for node.

        The password session is only opened when key-based login fails. The
        key push and the follow-up login check are both retried.

        Raises:
            ConfigError: If the key must be pushed but no password is configured
            NodeUnreachable: If key-based login still fails afterwards
        """
        connection = self._key_connection(node)
        try:
            connection.test_connection()
            logger.info(f"✅ {node.id} ({node.address}) already trusts this host")
            node.reachable = True
            return
        except NodeUnreachable:
            self._password()

        try:
            appended = self.retry.run(lambda: self.push_key(node), f"Pushing public key to {node.id}")
            logger.info(f"{'Added' if appended else 'Found'} public key on {node.id} ({node.address})")
            self.retry.run(connection.test_connection, f"Key-based login to {node.id}")
        except RetryExhausted as e:
            raise NodeUnreachable(node.id, str(e.last_error or e))
        logger.info(f"✅ Passwordless SSH ready for {node.id} ({node.address})")
        node.reachable = True
