"""Well-known labels and annotations read or written by the operator."""

# VERSION_ANNOTATION marks a node as fully configured by the given operator version
VERSION_ANNOTATION = "windowsmachineconfig.openshift.io/version"
# PUB_KEY_HASH_ANNOTATION records which private key the node was configured with
PUB_KEY_HASH_ANNOTATION = "windowsmachineconfig.openshift.io/pub-key-hash"

# Set by the hybrid overlay controller once it has computed the node's subnet and gateway MAC
HYBRID_OVERLAY_SUBNET = "k8s.ovn.org/hybrid-overlay-node-subnet"
HYBRID_OVERLAY_MAC = "k8s.ovn.org/hybrid-overlay-distributed-router-gateway-mac"

WORKER_LABEL = "node-role.kubernetes.io/worker"
WINDOWS_OS_LABEL = "node.openshift.io/os_id"
WINDOWS_NODE_SELECTOR = WINDOWS_OS_LABEL + "=Windows"

MACHINE_OS_LABEL = "machine.openshift.io/os-id"
WINDOWS_MACHINE_SELECTOR = MACHINE_OS_LABEL + "=Windows"
