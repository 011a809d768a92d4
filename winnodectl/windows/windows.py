"""Idempotent file and service convergence on a Windows instance."""
import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Callable, List, Optional, Union

from winnodectl.config import RetryConfig
from winnodectl.errors import CommandError, ConfigurationError, TransientError
from winnodectl.utils import poll
from winnodectl.windows import paths
from winnodectl.windows.connectivity import Transport
from winnodectl.windows.service import REQUIRED_SERVICES, ServiceDescriptor

logger = logging.getLogger("winnodectl.windows")

# sc.exe reports this when a service does not exist
SERVICE_DOES_NOT_EXIST = "FAILED 1060"


@dataclass(frozen=True)
class FileDescriptor:
    """A local file to stage, identified by its SHA256 content hash."""
    path: str
    sha256: str

    @property
    def name(self) -> str:
        return Path(self.path).name

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> 'FileDescriptor':
        digest = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b''):
                digest.update(chunk)
        return cls(path=str(path), sha256=digest.hexdigest())


def mkdir_cmd(dir_name: str) -> str:
    return f"if not exist {dir_name} mkdir {dir_name} "


def rmdir_cmd(dir_name: str) -> str:
    return f"if(Test-Path {dir_name}) {{Remove-Item -Recurse -Force {dir_name}}}"


class WindowsInstance:
    """Convergence primitives over a Transport.

    Every operation checks current remote state first, so each may be repeated
    safely after a partial failure.
    """

    def __init__(
        self,
        transport: Transport,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.retry = retry_config or RetryConfig()
        self._sleep = sleep

    @property
    def address(self) -> str:
        return self.transport.address

    def run(self, cmd: str, ps_cmd: bool = False) -> str:
        return self.transport.run(cmd, ps_cmd)

    def reinitialize(self) -> None:
        self.transport.reinitialize()

    # Files

    def file_exists(self, remote_path: str, sha256: Optional[str] = None) -> bool:
        """Check that ``remote_path`` exists and, if given, has the expected hash."""
        out = self.run(f"Test-Path {remote_path}", True)
        if out.strip() != "True":
            return False
        if sha256 is None:
            return True
        out = self.run(f"$out = Get-FileHash {remote_path} -Algorithm SHA256; $out.Hash", True)
        return out.strip().lower() == sha256.lower()

    def ensure_file(self, descriptor: FileDescriptor, remote_dir: str) -> bool:
        """Stage a file unless an identical copy is already present.

        Returns:
            bool: True if the file was transferred
        """
        remote_path = str(PureWindowsPath(remote_dir, descriptor.name))
        if self.file_exists(remote_path, descriptor.sha256):
            logger.debug(f"{remote_path} is up to date on {self.address}")
            return False
        logger.info(f"Copying {descriptor.path} to {remote_dir} on {self.address}")
        self.transport.stage(descriptor.path, remote_dir, descriptor.name)
        return True

    def ensure_file_content(self, content: bytes, filename: str, remote_dir: str) -> bool:
        """Same as ensure_file for generated content."""
        remote_path = str(PureWindowsPath(remote_dir, filename))
        if self.file_exists(remote_path, hashlib.sha256(content).hexdigest()):
            return False
        self.transport.stage(content, remote_dir, filename)
        return True

    def ensure_directory(self, dir_name: str) -> None:
        self.run(mkdir_cmd(dir_name))

    def remove_directory(self, dir_name: str) -> None:
        self.run(rmdir_cmd(dir_name), True)

    # Services

    def service_exists(self, name: str) -> bool:
        try:
            self.run(f"sc.exe qc {name}")
        except CommandError as e:
            if SERVICE_DOES_NOT_EXIST in e.output:
                return False
            raise
        return True

    def is_running(self, name: str) -> bool:
        out = self.run(f"sc.exe query {name}")
        return "RUNNING" in out

    def is_stopped(self, name: str) -> bool:
        out = self.run(f"sc.exe query {name}")
        return "STOPPED" in out

    def create_service(self, svc: ServiceDescriptor) -> None:
        cmd = f'sc.exe create {svc.name} binPath="{svc.command}" start=auto'
        if svc.dependencies:
            cmd += " depend=" + "/".join(svc.dependencies)
        self.run(cmd)
        logger.info(f"Created service {svc.name} on {self.address}")

    def ensure_running(self, svc: ServiceDescriptor) -> None:
        """Create the service if needed, tag it as managed and start it."""
        try:
            if not self.service_exists(svc.name):
                self.create_service(svc)
            self.run(f'sc.exe description {svc.name} "{svc.description}"')
            if svc.recovery_reset_period is not None:
                self.run(f"sc.exe failure {svc.name} reset= {svc.recovery_reset_period} "
                         "actions= restart/10000/restart/30000/restart/60000")
            if self.is_running(svc.name):
                return
            self.run(f"sc.exe start {svc.name}")
        except TransientError as e:
            raise TransientError(f"unable to ensure {svc.name} service is running") from e
        logger.info(f"Started service {svc.name} on {self.address}")

    def ensure_stopped(self, name: str) -> None:
        """Stop the service if it exists and is running."""
        if not self.service_exists(name) or not self.is_running(name):
            return
        try:
            self.run(f"sc.exe stop {name}")
        except CommandError as e:
            # 1062: the service has not been started
            if "1062" not in e.output:
                raise
        poll(lambda: self.is_stopped(name), interval=self.retry.interval, attempts=self.retry.count,
             description=f"{name} service to stop", sleep=self._sleep)
        logger.info(f"Stopped service {name} on {self.address}")

    def ensure_removed(self, name: str) -> None:
        """Stop and delete the service, waiting for the deletion to take effect."""
        if not self.service_exists(name):
            return
        self.ensure_stopped(name)
        self.run(f"sc.exe delete {name}")
        # Deletion is accepted before it completes; recreating too early would fail
        poll(lambda: not self.service_exists(name), interval=self.retry.interval,
             attempts=self.retry.count, description=f"{name} service to be deleted",
             sleep=self._sleep)
        logger.info(f"Removed service {name} from {self.address}")

    def stop_owned_services(self) -> None:
        """Stop every operator-owned service, dependents first."""
        for name in reversed(REQUIRED_SERVICES):
            self.ensure_stopped(name)

    def deconfigure(self) -> None:
        """Remove all operator-owned services and staged directories."""
        for name in reversed(REQUIRED_SERVICES):
            self.ensure_removed(name)
        for dir_name in (paths.CNI_DIR, paths.LOG_DIR, paths.REMOTE_DIR):
            self.remove_directory(dir_name)

    # Host networking

    def hns_networks(self) -> List[str]:
        out = self.run("Get-HnsNetwork | select Name", True)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def source_vip(self) -> str:
        """Create an endpoint on the overlay network and return its address."""
        cmd = (
            f"Import-Module -DisableNameChecking {paths.HNS_PS_MODULE}; "
            f"$net = (Get-HnsNetwork | where {{ $_.Name -eq '{paths.OVN_OVERLAY_NETWORK}' }}); "
            "$endpoint = New-HnsEndpoint -NetworkId $net.ID -Name VIPEndpoint; "
            "Attach-HNSHostEndpoint -EndpointID $endpoint.ID -CompartmentID 1; "
            "(Get-NetIPConfiguration -AllCompartments -All -Detailed | "
            "where { $_.NetAdapter.LinkLayerAddress -eq $endpoint.MacAddress }).IPV4Address.IPAddress.Trim()"
        )
        vip = self.run(cmd, True).strip()
        if not vip:
            raise ConfigurationError("source VIP is empty")
        return vip

    def ensure_hostname(self, hostname: str) -> bool:
        """Rename the instance to ``hostname``, rebooting when a change was made.

        Returns:
            bool: True if the instance was renamed
        """
        out = self.run("hostname", True)
        if out.strip().lower() == hostname.lower():
            return False
        logger.info(f"Renaming {self.address} to {hostname}")
        self.run(f"Rename-Computer -NewName {hostname} -Force", True)
        self.reboot_and_reinitialize()
        return True

    def reboot_and_reinitialize(self) -> None:
        # The delay lets the command return before the connection goes away
        self.run("shutdown.exe /r /t 10", True)
        self._sleep(self.retry.interval)
        self.reinitialize()
