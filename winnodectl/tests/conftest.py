import copy
import hashlib
import io
import re
import types
from datetime import datetime, timedelta, timezone

import paramiko
import pytest
from kubernetes.client import (V1CertificateSigningRequest, V1CertificateSigningRequestCondition,
                               V1CertificateSigningRequestSpec, V1CertificateSigningRequestStatus, V1Node,
                               V1NodeAddress, V1NodeSpec, V1NodeStatus, V1ObjectMeta, V1Secret)
from kubernetes.client.rest import ApiException

from winnodectl.config import OperatorConfig, RetryConfig
from winnodectl.errors import CommandError

# ----------------- Fakes for Paramiko -----------------


class _FakeChannel:
    def __init__(self, rc=0): self._rc = rc
    def recv_exit_status(self): return self._rc


class _Buf:
    def __init__(self, s=""): self._s = s
    def read(self): return self._s.encode()


class FakeSFTP:
    def __init__(self, log, existing=None):
        self.log = log
        self.existing = set(existing or [])

    def stat(self, path):
        if path not in self.existing:
            raise IOError(f"no such file: {path}")
        return types.SimpleNamespace()

    def mkdir(self, path):
        self.log.append(("sftp_mkdir", path))
        self.existing.add(path)

    def put(self, local, remote):
        self.log.append(("sftp_put", local, remote))

    def putfo(self, fl, remote):
        self.log.append(("sftp_putfo", fl.read(), remote))

    def close(self): self.log.append(("sftp_close",))


class FakeSSHClient:
    """Paramiko SSHClient stand-in.

    ``responder`` maps a command to ``(stdout, stderr, exit_status)``;
    ``connect_errors`` are raised by successive connect calls.
    """

    def __init__(self, log, responder=None, connect_errors=None, sftp=None):
        self.log = log
        self._responder = responder or (lambda cmd: ("", "", 0))
        self._connect_errors = connect_errors if connect_errors is not None else []
        self._sftp = sftp or FakeSFTP(log)

    def set_missing_host_key_policy(self, policy): pass

    def connect(self, **kw):
        self.log.append(("connect", kw))
        if self._connect_errors:
            raise self._connect_errors.pop(0)

    def open_sftp(self):
        self.log.append(("open_sftp",))
        return self._sftp

    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd))
        out, err, rc = self._responder(cmd)
        stdout = _Buf(out)
        stdout.channel = _FakeChannel(rc)
        return types.SimpleNamespace(), stdout, _Buf(err)

    def close(self):
        self.log.append(("close",))


# ----------------- Simulated Windows host -----------------


class SimulatedHost:
    """A transport that emulates the parts of a Windows host the operator drives."""

    def __init__(self, address="10.0.0.5", hostname="EC2AMAZ-1234", overlay_polls=1):
        self.address = address
        self.hostname = hostname
        self.files = {}
        self.dirs = set()
        self.services = {}
        self.networks = []
        self.commands = []
        self.staged = []
        self.reconnects = 0
        self.overlay_polls = overlay_polls
        self._hns_queries = 0
        self.source_vip = "10.132.0.14"
        self.failures = {}

    # Transport interface

    def run(self, cmd, ps_cmd=False):
        self.commands.append(cmd)
        for pattern, output in self.failures.items():
            if pattern in cmd:
                raise CommandError(cmd, output, 1)
        return self._dispatch(cmd)

    def stage(self, source, remote_dir, filename):
        data = source if isinstance(source, bytes) else open(source, 'rb').read()
        path = remote_dir.rstrip("\\") + "\\" + filename
        self.files[path] = hashlib.sha256(data).hexdigest().upper()
        self.staged.append(path)
        return path

    def reinitialize(self):
        self.reconnects += 1

    def close(self):
        pass

    # Command emulation

    def _missing(self, cmd):
        raise CommandError(cmd, "[SC] OpenService FAILED 1060:\nThe specified service does not exist.", 1060)

    def _dispatch(self, cmd):
        m = re.match(r"Test-Path (.+)$", cmd)
        if m:
            return "True\r\n" if m.group(1) in self.files else "False\r\n"
        m = re.match(r"\$out = Get-FileHash (\S+) -Algorithm SHA256; \$out.Hash", cmd)
        if m:
            return self.files.get(m.group(1), "") + "\r\n"
        m = re.match(r"if not exist (\S+) mkdir", cmd)
        if m:
            self.dirs.add(m.group(1))
            return ""
        m = re.match(r"sc.exe qc (\S+)", cmd)
        if m:
            if m.group(1) not in self.services:
                self._missing(cmd)
            return "[SC] QueryServiceConfig SUCCESS"
        m = re.match(r"sc.exe query (\S+)", cmd)
        if m:
            svc = self.services.get(m.group(1)) or self._missing(cmd)
            return "STATE : 4  RUNNING" if svc["running"] else "STATE : 1  STOPPED"
        m = re.match(r'sc.exe create (\S+) binPath="(.*)" start=auto(?: depend=(\S+))?', cmd)
        if m:
            deps = m.group(3).split("/") if m.group(3) else []
            self.services[m.group(1)] = {"command": m.group(2), "depend": deps, "running": False,
                                         "description": None}
            return "[SC] CreateService SUCCESS"
        m = re.match(r'sc.exe description (\S+) "(.*)"', cmd)
        if m:
            self.services[m.group(1)]["description"] = m.group(2)
            return ""
        m = re.match(r"sc.exe start (\S+)", cmd)
        if m:
            self.services[m.group(1)]["running"] = True
            return ""
        m = re.match(r"sc.exe stop (\S+)", cmd)
        if m:
            self.services[m.group(1)]["running"] = False
            return ""
        m = re.match(r"sc.exe delete (\S+)", cmd)
        if m:
            self.services.pop(m.group(1), None)
            return ""
        if cmd.startswith("Get-HnsNetwork"):
            self._hns_queries += 1
            overlay = self.services.get("hybrid-overlay-node")
            if overlay and overlay["running"] and self._hns_queries >= self.overlay_polls:
                self.networks = ["BaseOVNKubernetesHybridOverlayNetwork", "OVNKubernetesHybridOverlayNetwork"]
            return "\r\nName\r\n----\r\n" + "\r\n".join(["nat"] + self.networks) + "\r\n"
        if "New-HnsEndpoint" in cmd:
            return self.source_vip + "\r\n"
        if cmd == "hostname":
            return self.hostname + "\r\n"
        m = re.match(r"Rename-Computer -NewName (\S+)", cmd)
        if m:
            self.hostname = m.group(1)
            return ""
        return ""


# ----------------- Fake Kubernetes APIs -----------------


def not_found():
    return ApiException(status=404, reason="Not Found")


def make_node(name, address="10.0.0.5", provider_id="aws:///us-east-1a/i-0123", annotations=None, labels=None):
    return V1Node(
        metadata=V1ObjectMeta(name=name, annotations=dict(annotations or {}),
                              labels={"node.openshift.io/os_id": "Windows", **(labels or {})}),
        spec=V1NodeSpec(provider_id=provider_id),
        status=V1NodeStatus(addresses=[V1NodeAddress(address=address, type="InternalIP")]),
    )


class FakeCoreV1Api:
    def __init__(self):
        self.nodes = {}
        self.secrets = {}
        self.config_maps = {}
        self.events = []
        self.node_patches = []
        # Annotations added to a node on the n-th read of it, to emulate external controllers
        self.pending_annotations = {}
        self._reads = {}

    def read_node(self, name):
        if name not in self.nodes:
            raise not_found()
        self._reads[name] = self._reads.get(name, 0) + 1
        for after, key, value in list(self.pending_annotations.get(name, [])):
            if self._reads[name] >= after:
                self.nodes[name].metadata.annotations[key] = value
        return copy.deepcopy(self.nodes[name])

    def list_node(self, label_selector=None, field_selector=None):
        items = list(self.nodes.values())
        if field_selector:
            wanted = field_selector.split("=", 1)[1]
            items = [n for n in items if n.metadata.name == wanted]
        return types.SimpleNamespace(items=[copy.deepcopy(n) for n in items])

    def patch_node(self, name, body):
        self.node_patches.append((name, body))
        node = self.nodes[name]
        meta = body.get("metadata", {})
        node.metadata.labels = {**(node.metadata.labels or {}), **meta.get("labels", {})}
        node.metadata.annotations = {**(node.metadata.annotations or {}), **meta.get("annotations", {})}
        return copy.deepcopy(node)

    def read_namespaced_secret(self, name, namespace):
        if (namespace, name) not in self.secrets:
            raise not_found()
        return self.secrets[(namespace, name)]

    def create_namespaced_secret(self, namespace, body):
        self.secrets[(namespace, body.metadata.name)] = body
        return body

    def patch_namespaced_secret(self, name, namespace, body):
        self.secrets[(namespace, name)].data = body["data"]

    def patch_namespaced_config_map(self, name, namespace, body):
        if (namespace, name) not in self.config_maps:
            raise not_found()
        self.config_maps[(namespace, name)].update(body["data"])

    def create_namespaced_config_map(self, namespace, body):
        self.config_maps[(namespace, body.metadata.name)] = dict(body.data)

    def create_namespaced_event(self, namespace, body):
        self.events.append(body)


class FakeCustomObjectsApi:
    def __init__(self, api_server_internal_url="https://api-int.test.example.com:6443"):
        self.objects = {}
        self.deleted = []
        self.infrastructure = {"status": {"apiServerInternalURL": api_server_internal_url}}
        self.infra_reads = 0
        self.networks = {
            "config.openshift.io": {"spec": {"networkType": "OVNKubernetes", "serviceNetwork": ["172.30.0.0/16"]}},
            "operator.openshift.io": {"spec": {"defaultNetwork": {"ovnKubernetesConfig": {"hybridOverlayConfig": {
                "hybridClusterNetwork": [{"cidr": "10.132.0.0/14", "hostPrefix": 23}]}}}}},
        }
        self.network_reads = 0

    def add(self, plural, obj):
        self.objects[(plural, obj["metadata"]["name"])] = obj

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        if (plural, name) not in self.objects:
            raise not_found()
        return copy.deepcopy(self.objects[(plural, name)])

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, **kw):
        return {"items": [copy.deepcopy(o) for (p, _), o in self.objects.items() if p == plural]}

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name):
        if (plural, name) not in self.objects:
            raise not_found()
        self.deleted.append(name)
        del self.objects[(plural, name)]

    def get_cluster_custom_object(self, group, version, plural, name):
        if plural == "networks":
            self.network_reads += 1
            if group not in self.networks:
                raise not_found()
            return copy.deepcopy(self.networks[group])
        self.infra_reads += 1
        return self.infrastructure


def make_csr(name, username, age=0, conditions=None):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=age)
    return V1CertificateSigningRequest(
        metadata=V1ObjectMeta(name=name, creation_timestamp=created),
        spec=V1CertificateSigningRequestSpec(request="cmVxdWVzdA==", username=username,
                                             signer_name="kubernetes.io/kube-apiserver-client-kubelet"),
        status=V1CertificateSigningRequestStatus(conditions=conditions),
    )


class FakeCertificatesApi:
    def __init__(self, csrs=None, conflicts=0):
        self.csrs = {c.metadata.name: c for c in (csrs or [])}
        self.approved = []
        self.conflicts = conflicts
        # CSRs that appear when a given requestor is first listed, emulating the kubelet raising them late
        self.on_list = []

    def list_certificate_signing_request(self, **kw):
        if self.on_list:
            csr = self.on_list.pop(0)
            if csr is not None:
                self.csrs[csr.metadata.name] = csr
        return types.SimpleNamespace(items=[copy.deepcopy(c) for c in self.csrs.values()])

    def read_certificate_signing_request(self, name):
        if name not in self.csrs:
            raise not_found()
        return copy.deepcopy(self.csrs[name])

    def replace_certificate_signing_request_approval(self, name, body):
        if self.conflicts:
            self.conflicts -= 1
            raise ApiException(status=409, reason="Conflict")
        self.csrs[name] = body
        self.approved.append(name)
        return body


# ----------------- Fixtures -----------------


@pytest.fixture
def retry_config():
    return RetryConfig(count=3, interval=0.0, connect_interval=1.0, connect_timeout=3.0)


@pytest.fixture
def operator_config(retry_config, tmp_path):
    cfg = OperatorConfig()
    cfg.retry = retry_config
    cfg.network.overlay_configuration_delay = 0.0
    cfg.cluster.payload_dir = str(tmp_path / "payload")
    return cfg


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def host():
    return SimulatedHost()


@pytest.fixture
def core_api():
    return FakeCoreV1Api()


@pytest.fixture
def custom_api():
    return FakeCustomObjectsApi()


@pytest.fixture
def certificates_api():
    return FakeCertificatesApi()


@pytest.fixture
def ssh_client_factory():
    """Return ``(factory, log)`` building FakeSSHClients that share one log."""
    def build(responder=None, connect_errors=None, sftp=None):
        log = []
        errors = list(connect_errors or [])
        factory = lambda: FakeSSHClient(log, responder=responder, connect_errors=errors, sftp=sftp)
        return factory, log
    return build


@pytest.fixture
def fake_sftp():
    return FakeSFTP


@pytest.fixture
def node_factory():
    return make_node


@pytest.fixture
def csr_factory():
    return make_csr


@pytest.fixture
def certificates_api_factory():
    return FakeCertificatesApi


@pytest.fixture(scope="session")
def private_key_pem():
    key = paramiko.RSAKey.generate(2048)
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue().encode()


@pytest.fixture
def payload_dir(tmp_path):
    """A payload directory holding every file staged on instances."""
    from winnodectl.nodeconfig.payload import PAYLOAD_FILES

    root = tmp_path / "payload"
    for name in PAYLOAD_FILES:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"contents of {name}".encode())
    return root


@pytest.fixture
def secret_factory():
    def build(name, namespace, data):
        import base64
        encoded = {k: base64.b64encode(v if isinstance(v, bytes) else v.encode()).decode() for k, v in data.items()}
        return V1Secret(metadata=V1ObjectMeta(name=name, namespace=namespace), data=encoded)
    return build


@pytest.fixture
def approved_condition():
    return V1CertificateSigningRequestCondition(type="Approved", status="True")
