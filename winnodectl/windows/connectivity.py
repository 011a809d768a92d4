"""
SSH transport to Windows instances.

Provides command execution with shell-aware prefixing and SFTP file staging.
Authentication failures are reported as AuthenticationError and never retried,
everything else is retried until the connection budget is spent.
"""
import io
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

import paramiko
from paramiko.ssh_exception import AuthenticationException, SSHException

from winnodectl.config import RetryConfig, SSHConfig
from winnodectl.errors import AuthenticationError, CommandError, RetryError, TransientError
from winnodectl.utils import poll

logger = logging.getLogger("winnodectl.windows.connectivity")

POWERSHELL_PREFIX = "powershell.exe -NonInteractive -ExecutionPolicy Bypass "
CMD_PREFIX = "cmd /c "

# Get-Help only exists in PowerShell, so its success identifies the default shell
SHELL_CHECK_COMMAND = "Get-Help"


def is_auth_failure(err: Exception) -> bool:
    return isinstance(err, AuthenticationException) or "unable to authenticate" in str(err).lower()


class Transport:
    """Authenticated remote execution channel bound to one instance."""

    def __init__(
        self,
        address: str,
        username: str,
        signer: paramiko.PKey,
        ssh_config: Optional[SSHConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Create a transport. No connection is made until ``connect`` is called.

        Args:
            address: IPv4 address or DNS name of the instance
            username: Administrative user to log in as
            signer: Private key used for public key authentication
            ssh_config: Port and per-attempt timeout
            retry_config: Interval and total budget for connection attempts
            client_factory: Factory for the underlying SSH client
            sleep: Sleep function, injectable for tests
        """
        self.address = address
        self.username = username
        self.signer = signer
        self.ssh_config = ssh_config or SSHConfig()
        self.retry_config = retry_config or RetryConfig()
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[paramiko.SSHClient] = None
        self.powershell_default = False

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        """Connect to the instance and detect its default shell.

        Raises:
            AuthenticationError: The instance rejected the key
            TransientError: The instance could not be reached within the budget
        """
        interval = self.retry_config.connect_interval
        attempts = max(1, int(self.retry_config.connect_timeout // interval)) if interval else 1
        try:
            self._client = poll(
                self._dial,
                interval=interval,
                attempts=attempts,
                timeout=self.retry_config.connect_timeout,
                description=f"SSH connection to {self.address}",
                sleep=self._sleep,
            )
        except RetryError as e:
            raise TransientError(f"unable to connect to {self.address}") from e

        self.powershell_default = self._detect_powershell()
        logger.debug(f"Connected to {self.username}@{self.address} (PowerShell default: {self.powershell_default})")

    def _dial(self) -> Optional[paramiko.SSHClient]:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.address,
                port=self.ssh_config.port,
                username=self.username,
                pkey=self.signer,
                timeout=self.ssh_config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (SSHException, OSError) as e:
            client.close()
            if is_auth_failure(e):
                raise AuthenticationError(f"SSH authentication failed: {e}") from e
            logger.info(f"Unable to connect to {self.address}, retrying: {e}")
            return None
        return client

    def _detect_powershell(self) -> bool:
        try:
            self._exec(SHELL_CHECK_COMMAND)
        except CommandError:
            return False
        return True

    def reinitialize(self) -> None:
        """Drop the current connection and establish a new one."""
        self.close()
        self.connect()

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None

    def prepare_command(self, cmd: str, ps_cmd: bool) -> str:
        """Prefix ``cmd`` so it runs in the requested shell on this instance."""
        if ps_cmd and not self.powershell_default:
            return f'{POWERSHELL_PREFIX}"{cmd}"'
        if not ps_cmd and self.powershell_default:
            return CMD_PREFIX + cmd.replace('"', "'")
        return cmd

    def run(self, cmd: str, ps_cmd: bool = False) -> str:
        """Run a command and return its combined output.

        Args:
            cmd: Command to run
            ps_cmd: Whether the command must be interpreted by PowerShell

        Returns:
            str: Combined stdout and stderr

        Raises:
            CommandError: The command exited with a non-zero status
            TransientError: The connection broke while running the command
        """
        if self._client is None:
            self.connect()
        return self._exec(self.prepare_command(cmd, ps_cmd))

    def _exec(self, command: str) -> str:
        try:
            _, stdout, stderr = self._client.exec_command(command)
            output = stdout.read().decode("utf-8", errors="replace")
            output += stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (SSHException, OSError, EOFError) as e:
            raise TransientError(f"error running command on {self.address}") from e

        if exit_status != 0:
            logger.debug(f"Command failed on {self.address} with status {exit_status}: {command}")
            raise CommandError(command, output, exit_status)
        return output

    def stage(self, source: Union[str, Path, bytes], remote_dir: str, filename: str) -> str:
        """Copy a local file or in-memory content to ``remote_dir\\filename``.

        The destination directory is created if it does not exist. The remote
        file is closed before this returns.

        Returns:
            str: Windows path of the written file
        """
        if self._client is None:
            self.connect()

        sftp_dir = to_sftp_path(remote_dir)
        sftp_path = f"{sftp_dir}/{filename}"
        try:
            sftp = self._client.open_sftp()
        except (SSHException, OSError) as e:
            raise TransientError(f"unable to open SFTP session to {self.address}") from e
        try:
            self._makedirs(sftp, sftp_dir)
            if isinstance(source, bytes):
                sftp.putfo(io.BytesIO(source), sftp_path)
            else:
                sftp.put(str(source), sftp_path)
        except (SSHException, OSError) as e:
            raise TransientError(f"unable to copy {filename} to {remote_dir} on {self.address}") from e
        finally:
            sftp.close()

        return remote_dir.rstrip("\\") + "\\" + filename

    @staticmethod
    def _makedirs(sftp: paramiko.SFTPClient, path: str) -> None:
        current = ""
        for part in path.split("/"):
            if not part:
                continue
            current = f"{current}/{part}" if current else part
            try:
                sftp.stat(current)
            except IOError:
                sftp.mkdir(current)


def to_sftp_path(windows_path: str) -> str:
    """Convert ``C:\\k\\cni`` into the ``C:/k/cni`` form the SFTP server expects."""
    return windows_path.replace("\\", "/").rstrip("/")
