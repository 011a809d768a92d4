"""Private key secret handling and the user data derived from it."""
import base64
import io
import logging
from typing import Optional

import paramiko
from kubernetes.client import CoreV1Api, V1ObjectMeta, V1Secret
from kubernetes.client.rest import ApiException

from winnodectl.errors import ConfigurationError, SecretNotFoundError, TransientError
from winnodectl.instance import PlatformType

logger = logging.getLogger("winnodectl.controllers.secrets")

PRIVATE_KEY_SECRET = "cloud-private-key"
PRIVATE_KEY_SECRET_KEY = "private-key.pem"
USER_DATA_SECRET = "windows-user-data"
USER_DATA_KEY = "userData"

_KEY_TYPES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)

USER_DATA_TEMPLATE = """Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0
$firewallRuleName = "ContainerLogsPort"
$containerLogsPort = "10250"
New-NetFirewallRule -DisplayName $firewallRuleName -Direction Inbound -Action Allow -Protocol TCP -LocalPort $containerLogsPort -EdgeTraversalPolicy Allow
Set-Service -Name ssh-agent -StartupType 'Automatic'
Set-Service -Name sshd -StartupType 'Automatic'
Start-Service ssh-agent
Start-Service sshd
$pubKeyConf = (Get-Content -path C:\\ProgramData\\ssh\\sshd_config) -replace '#PubkeyAuthentication yes','PubkeyAuthentication yes'
$pubKeyConf | Set-Content -Path C:\\ProgramData\\ssh\\sshd_config
$passwordConf = (Get-Content -path C:\\ProgramData\\ssh\\sshd_config) -replace '#PasswordAuthentication yes','PasswordAuthentication yes'
$passwordConf | Set-Content -Path C:\\ProgramData\\ssh\\sshd_config
$authFileConf = (Get-Content -path C:\\ProgramData\\ssh\\sshd_config) -replace 'AuthorizedKeysFile __PROGRAMDATA__/ssh/administrators_authorized_keys','#AuthorizedKeysFile __PROGRAMDATA__/ssh/administrators_authorized_keys'
$authFileConf | Set-Content -Path C:\\ProgramData\\ssh\\sshd_config
$pubKeyLocationConf = (Get-Content -path C:\\ProgramData\\ssh\\sshd_config) -replace 'Match Group administrators','#Match Group administrators'
$pubKeyLocationConf | Set-Content -Path C:\\ProgramData\\ssh\\sshd_config
Restart-Service sshd
New-item -Path $env:USERPROFILE -Name .ssh -ItemType Directory -force
echo "{pub_key}"| Out-File $env:USERPROFILE\\.ssh\\authorized_keys -Encoding ascii
"""


def _decode(value: Optional[str]) -> bytes:
    # Secret data is base64 encoded by the API
    return base64.b64decode(value) if value else b""


def get_private_key(core_api: CoreV1Api, namespace: str) -> bytes:
    """Read the PEM encoded private key from the ``cloud-private-key`` secret.

    Raises:
        SecretNotFoundError: If the secret or its key is missing
        TransientError: On any other API error
    """
    try:
        secret = core_api.read_namespaced_secret(PRIVATE_KEY_SECRET, namespace)
    except ApiException as e:
        if e.status == 404:
            raise SecretNotFoundError(f"{PRIVATE_KEY_SECRET} secret does not exist, please create it") from e
        raise TransientError(f"unable to get secret {PRIVATE_KEY_SECRET}") from e
    key = _decode((secret.data or {}).get(PRIVATE_KEY_SECRET_KEY))
    if not key:
        raise SecretNotFoundError(f"{PRIVATE_KEY_SECRET} missing '{PRIVATE_KEY_SECRET_KEY}' secret")
    return key


def create_signer(pem: bytes) -> paramiko.PKey:
    """Parse a private key, trying each supported key type in turn."""
    text = pem.decode("utf-8") if isinstance(pem, bytes) else pem
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConfigurationError("unable to parse private key")


def authorized_key(signer: paramiko.PKey) -> str:
    """Return the ``<type> <base64>`` authorized_keys line of the signer's public key."""
    return f"{signer.get_name()} {signer.get_base64()}"


def generate_user_data(platform: PlatformType, pub_key: str) -> str:
    """Return the first boot script that enables SSH access with ``pub_key``."""
    script = USER_DATA_TEMPLATE.format(pub_key=pub_key)
    # GCE runs the windows-startup-script-ps1 metadata as-is, without tags
    if platform == PlatformType.GCP:
        return script
    return f"<powershell>\n{script}</powershell>\n<persist>true</persist>\n"


def user_data_secret(platform: PlatformType, pub_key: str, namespace: str) -> V1Secret:
    data = generate_user_data(platform, pub_key).encode("utf-8")
    return V1Secret(
        metadata=V1ObjectMeta(name=USER_DATA_SECRET, namespace=namespace),
        data={USER_DATA_KEY: base64.b64encode(data).decode("ascii")},
    )


def validate_user_data(core_api: CoreV1Api, namespace: str, platform: PlatformType, pub_key: str) -> None:
    """Check that the user data secret matches the current private key.

    Raises:
        ConfigurationError: If the secret is missing or out of date
    """
    try:
        secret = core_api.read_namespaced_secret(USER_DATA_SECRET, namespace)
    except ApiException as e:
        if e.status == 404:
            raise ConfigurationError(f"{USER_DATA_SECRET} secret does not exist") from e
        raise TransientError(f"unable to get secret {USER_DATA_SECRET}") from e
    current = _decode((secret.data or {}).get(USER_DATA_KEY)).decode("utf-8")
    if current != generate_user_data(platform, pub_key):
        raise ConfigurationError(f"invalid {USER_DATA_SECRET} secret, waiting for it to be updated")


def sync_user_data_secret(core_api: CoreV1Api, namespace: str, platform: PlatformType, pub_key: str) -> bool:
    """Create or update the user data secret so it matches ``pub_key``.

    Returns:
        bool: True if the secret was written
    """
    desired = user_data_secret(platform, pub_key, namespace)
    try:
        current = core_api.read_namespaced_secret(USER_DATA_SECRET, namespace)
    except ApiException as e:
        if e.status != 404:
            raise TransientError(f"unable to get secret {USER_DATA_SECRET}") from e
        current = None

    if current is None:
        try:
            core_api.create_namespaced_secret(namespace, desired)
        except ApiException as e:
            raise TransientError(f"unable to create secret {USER_DATA_SECRET}: {e.reason}") from e
        logger.info(f"Created secret {namespace}/{USER_DATA_SECRET}")
        return True

    if (current.data or {}).get(USER_DATA_KEY) == desired.data[USER_DATA_KEY]:
        return False
    try:
        core_api.patch_namespaced_secret(USER_DATA_SECRET, namespace, {"data": desired.data})
    except ApiException as e:
        raise TransientError(f"unable to update secret {USER_DATA_SECRET}: {e.reason}") from e
    logger.info(f"Updated secret {namespace}/{USER_DATA_SECRET}")
    return True
