"""Well-known locations on the Windows instances."""

# REMOTE_DIR holds the staged helper scripts and the bootstrapper
REMOTE_DIR = "C:\\Temp\\"
WINDOWS_TEMP_DIR = "C:\\Windows\\Temp\\"
K8S_DIR = "C:\\k\\"
LOG_DIR = "C:\\var\\log\\"
CNI_DIR = K8S_DIR + "cni\\"
CNI_CONF_DIR = CNI_DIR + "config\\"

KUBECONFIG_PATH = "c:\\k\\kubeconfig"
KUBELET_PATH = K8S_DIR + "kubelet.exe"
KUBE_PROXY_PATH = K8S_DIR + "kube-proxy.exe"
HYBRID_OVERLAY_PATH = K8S_DIR + "hybrid-overlay-node.exe"
WINDOWS_EXPORTER_PATH = K8S_DIR + "windows_exporter.exe"

BOOTSTRAPPER_PATH = REMOTE_DIR + "wmcb.exe"
IGNITION_DOWNLOAD_SCRIPT = REMOTE_DIR + "wget-ignore-cert.ps1"
HNS_PS_MODULE = REMOTE_DIR + "hns.psm1"
WORKER_IGNITION_PATH = WINDOWS_TEMP_DIR + "worker.ign"

KUBE_PROXY_LOG_DIR = LOG_DIR + "kube-proxy\\"
HYBRID_OVERLAY_LOG_DIR = LOG_DIR + "hybrid-overlay\\"

# HNS networks created by the hybrid overlay once it is running
BASE_OVN_OVERLAY_NETWORK = "BaseOVNKubernetesHybridOverlayNetwork"
OVN_OVERLAY_NETWORK = "OVNKubernetesHybridOverlayNetwork"

# Directories created on every instance before files are staged
REQUIRED_DIRECTORIES = [REMOTE_DIR, K8S_DIR, LOG_DIR, CNI_DIR, CNI_CONF_DIR, KUBE_PROXY_LOG_DIR,
                        HYBRID_OVERLAY_LOG_DIR]
