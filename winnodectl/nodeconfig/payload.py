"""Files staged on every Windows instance."""
import logging
from pathlib import Path
from typing import Dict, List, Tuple, Union

from winnodectl.errors import ConfigurationError
from winnodectl.windows import paths
from winnodectl.windows.windows import FileDescriptor

logger = logging.getLogger("winnodectl.nodeconfig.payload")

CNI_TEMPLATE_NAME = "cni-conf-template.json"

# Local file name -> remote directory
PAYLOAD_FILES: Dict[str, str] = {
    "wmcb.exe": paths.REMOTE_DIR,
    "wget-ignore-cert.ps1": paths.REMOTE_DIR,
    "hns.psm1": paths.REMOTE_DIR,
    "kubelet.exe": paths.K8S_DIR,
    "kube-proxy.exe": paths.K8S_DIR,
    "hybrid-overlay-node.exe": paths.K8S_DIR,
    "windows_exporter.exe": paths.K8S_DIR,
    "cni/flannel.exe": paths.CNI_DIR,
    "cni/host-local.exe": paths.CNI_DIR,
    "cni/win-bridge.exe": paths.CNI_DIR,
    "cni/win-overlay.exe": paths.CNI_DIR,
}


def required_files(payload_dir: Union[str, Path]) -> List[Tuple[FileDescriptor, str]]:
    """Hash every payload file and pair it with its remote directory.

    Raises:
        ConfigurationError: If a payload file is missing locally
    """
    payload_dir = Path(payload_dir)
    files = []
    for name, remote_dir in PAYLOAD_FILES.items():
        local = payload_dir / name
        if not local.is_file():
            raise ConfigurationError(f"payload file {local} is missing")
        files.append((FileDescriptor.from_path(local), remote_dir))
    logger.debug(f"Loaded {len(files)} payload files from {payload_dir}")
    return files


def cni_template_path(payload_dir: Union[str, Path]) -> Path:
    return Path(payload_dir) / "cni" / CNI_TEMPLATE_NAME
