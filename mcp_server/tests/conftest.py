"""
Shared fixtures.

No test here needs kubectl, helm or gcloud: `fake_exec` replaces
asyncio.create_subprocess_exec and records every spawn, so argument vectors
can be asserted exactly and stdout/stderr/exit codes can be scripted.
"""

import asyncio
import json

import pytest

from k8s_cluster_mcp.clusters import ClusterRegistry


class FakeProcess:
    """Stands in for asyncio.subprocess.Process"""

    def __init__(self, stdout="", stderr="", returncode=0, hang=False):
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()
        self._exit_code = returncode
        self._hang = hang
        self.returncode = None
        self.terminated = False
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        self.returncode = self._exit_code
        return self._stdout, self._stderr

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


class ProcessRecorder:
    """Replacement for create_subprocess_exec that records calls.

    Responses are taken from `queue` in order; once it is empty `handler`
    (if set) is asked, otherwise an empty successful process is returned.
    """

    def __init__(self):
        self.calls = []
        self.processes = []
        self.queue = []
        self.handler = None

    def respond(self, stdout="", stderr="", returncode=0, hang=False):
        self.queue.append(FakeProcess(stdout, stderr, returncode, hang))
        return self

    async def __call__(self, program, *args, stdout=None, stderr=None, env=None):
        self.calls.append({"program": program, "args": list(args), "env": env})
        if self.queue:
            process = self.queue.pop(0)
        elif self.handler is not None:
            process = self.handler(program, list(args))
        else:
            process = FakeProcess()
        self.processes.append(process)
        return process

    @property
    def argvs(self):
        return [[c["program"]] + c["args"] for c in self.calls]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep logs and config lookups inside the test's temp dir"""
    monkeypatch.setenv("K8S_MCP_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("K8S_MCP_CLUSTER_CONFIG", raising=False)
    monkeypatch.delenv("K8S_MCP_OUTPUT_MODE", raising=False)


@pytest.fixture
def fake_exec(monkeypatch):
    recorder = ProcessRecorder()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", recorder)
    return recorder


@pytest.fixture
def kubeconfig(tmp_path):
    path = tmp_path / "kubeconfig"
    path.write_text("apiVersion: v1\nkind: Config\n")
    return str(path)


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "sa.json"
    path.write_text(json.dumps({"type": "service_account"}))
    return str(path)


@pytest.fixture
def cluster_config(kubeconfig, key_file):
    return {
        "clusters": {
            "dev": {
                "name": "Dev",
                "type": "local",
                "description": "Local dev cluster",
                "kubeconfig": kubeconfig,
                "context": "kind-dev",
            },
            "plain": {
                "name": "Plain",
                "type": "local",
                "description": "Kubeconfig without a pinned context",
                "kubeconfig": kubeconfig,
            },
            "prod": {
                "name": "Prod",
                "type": "gke",
                "description": "Production GKE",
                "project": "acme",
                "cluster": "prod-1",
                "region": "us-central1",
                "keyFile": key_file,
            },
        },
        "default": "dev",
        "configuration": {"gke_auth_timeout": 120},
    }


@pytest.fixture
def registry(cluster_config):
    return ClusterRegistry.from_dict(cluster_config)


@pytest.fixture
def config_file(tmp_path, cluster_config):
    path = tmp_path / "clusters.json"
    path.write_text(json.dumps(cluster_config))
    return str(path)
