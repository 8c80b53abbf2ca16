"""
Output reduction and resource summaries.
"""

import copy

import pytest

from k8s_cluster_mcp.reduction import (
    OutputMode,
    create_resource_summary,
    reduce_output,
    resolve_output_mode,
)


def make_deployment():
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": "web",
            "namespace": "shop",
            "uid": "1234",
            "resourceVersion": "99",
            "selfLink": "/apis/apps/v1/namespaces/shop/deployments/web",
            "generation": 4,
            "creationTimestamp": "2024-01-01T00:00:00Z",
            "labels": {"app": "web"},
            "annotations": {"deployment.kubernetes.io/revision": "3"},
            "managedFields": [{"manager": "kubectl"}],
            "ownerReferences": [],
            "finalizers": ["x"],
        },
        "spec": {
            "replicas": 3,
            "selector": {"matchLabels": {"app": "web"}},
            "strategy": {"type": "RollingUpdate"},
            "template": {
                "metadata": {"labels": {"app": "web"}},
                "spec": {
                    "containers": [
                        {"name": "web", "image": "nginx:1.25", "ports": [{"containerPort": 80}]},
                        {"name": "sidecar", "image": "envoy:1.29", "args": ["--x"]},
                    ]
                },
            },
        },
        "status": {
            "replicas": 3,
            "readyReplicas": 2,
            "availableReplicas": 2,
            "observedGeneration": 4,
            "conditions": [
                {"type": "Progressing", "status": "True"},
                {"type": "Available", "status": "False"},
            ],
        },
    }


def make_pod(name="web-1", restarts=(2, 3), phase="Running"):
    return {
        "kind": "Pod",
        "metadata": {"name": name, "namespace": "shop", "uid": "p", "labels": {"app": "web"}},
        "spec": {
            "nodeName": "node-a",
            "containers": [{"name": "web", "image": "nginx", "env": []}, {"name": "log", "image": "fluent"}],
        },
        "status": {
            "phase": phase,
            "podIP": "10.0.0.5",
            "containerStatuses": [{"name": "c", "restartCount": r} for r in restarts],
        },
    }


SAMPLES = [
    make_deployment(),
    make_pod(),
    {"kind": "PodList", "metadata": {"resourceVersion": "1"}, "items": [make_pod("a"), make_pod("b")]},
    {"kind": "ConfigMap", "metadata": {"name": "cm"}, "data": {"a": "1"}},
    {"kind": "Weird", "metadata": "not-a-dict", "spec": [], "status": None},
    {},
]


# ============================================================================
# MODES
# ============================================================================

def test_compact_metadata():
    reduced = reduce_output(make_deployment(), OutputMode.COMPACT)
    assert reduced["metadata"] == {"name": "web", "namespace": "shop"}


def test_normal_metadata():
    reduced = reduce_output(make_deployment(), OutputMode.NORMAL)
    assert set(reduced["metadata"]) == {"name", "namespace", "uid", "creationTimestamp", "labels", "annotations"}


def test_verbose_only_drops_managed_fields():
    original = make_deployment()
    reduced = reduce_output(original, OutputMode.VERBOSE)
    assert "managedFields" not in reduced["metadata"]
    assert set(reduced["metadata"]) == set(original["metadata"]) - {"managedFields"}
    assert reduced["spec"] == original["spec"]
    assert reduced["status"] == original["status"]


def test_compact_status_and_spec():
    reduced = reduce_output(make_deployment(), "compact")
    assert reduced["status"] == {
        "replicas": 3,
        "readyReplicas": 2,
        "availableReplicas": 2,
        "conditions": [{"type": "Available", "status": "False"}],
    }
    assert reduced["spec"] == {
        "replicas": 3,
        "selector": {"matchLabels": {"app": "web"}},
        "containers": [{"name": "web", "image": "nginx:1.25"}, {"name": "sidecar", "image": "envoy:1.29"}],
    }
    assert reduced["kind"] == "Deployment"


def test_compact_pod_spec_uses_direct_containers():
    reduced = reduce_output(make_pod(), OutputMode.COMPACT)
    assert reduced["spec"] == {"containers": [{"name": "web", "image": "nginx"}, {"name": "log", "image": "fluent"}]}
    assert reduced["status"] == {"phase": "Running"}


def test_compact_template_containers_override_direct():
    resource = {"spec": {"containers": [{"name": "a", "image": "x"}],
                         "template": {"spec": {"containers": [{"name": "b", "image": "y"}]}}}}
    assert reduce_output(resource, "compact")["spec"]["containers"] == [{"name": "b", "image": "y"}]


def test_compact_empty_conditions_are_dropped():
    reduced = reduce_output({"status": {"phase": "Pending", "conditions": []}}, "compact")
    assert reduced["status"] == {"phase": "Pending"}


@pytest.mark.parametrize("mode", list(OutputMode))
@pytest.mark.parametrize("resource", SAMPLES)
def test_reduction_is_idempotent(resource, mode):
    once = reduce_output(resource, mode)
    assert reduce_output(once, mode) == once


@pytest.mark.parametrize("resource", SAMPLES)
def test_input_is_never_modified(resource):
    snapshot = copy.deepcopy(resource)
    for mode in OutputMode:
        reduce_output(resource, mode)
    create_resource_summary(resource)
    assert resource == snapshot


def _field_paths(value, prefix=""):
    if not isinstance(value, dict):
        return set()
    paths = set()
    for key, child in value.items():
        path = f"{prefix}.{key}" if prefix else key
        paths.add(path)
        if key in ("metadata", "spec", "status"):
            paths |= _field_paths(child, path)
    return paths


@pytest.mark.parametrize("resource", [make_deployment(), make_pod()])
def test_more_verbose_modes_keep_more_fields(resource):
    compact = _field_paths(reduce_output(resource, OutputMode.COMPACT))
    normal = _field_paths(reduce_output(resource, OutputMode.NORMAL))
    verbose = _field_paths(reduce_output(resource, OutputMode.VERBOSE))
    # Compact synthesizes spec.containers for templated resources; compare on what it keeps from the input
    compact -= {"spec.containers"} - normal
    assert compact <= normal <= verbose


def test_list_wrapper_is_preserved():
    pods = {"kind": "PodList", "apiVersion": "v1", "metadata": {"resourceVersion": "7"},
            "items": [make_pod("a"), make_pod("b")]}
    reduced = reduce_output(pods, "compact")
    assert reduced["kind"] == "PodList"
    assert reduced["metadata"] == {"resourceVersion": "7"}
    assert len(reduced["items"]) == 2
    assert [i["metadata"]["name"] for i in reduced["items"]] == ["a", "b"]
    assert all("uid" not in i["metadata"] for i in reduced["items"])


@pytest.mark.parametrize("value", [None, "text", 42, [1, 2], {"metadata": None}, {"items": "nope"}])
def test_reduction_is_total(value):
    for mode in OutputMode:
        reduce_output(value, mode)
    create_resource_summary(value)


def test_mode_ordering():
    assert OutputMode.COMPACT.rank < OutputMode.NORMAL.rank < OutputMode.VERBOSE.rank


@pytest.mark.parametrize("value, expected", [
    ("compact", OutputMode.COMPACT),
    ("VERBOSE", OutputMode.VERBOSE),
    (" Normal ", OutputMode.NORMAL),
    ("loud", OutputMode.NORMAL),
    (None, OutputMode.NORMAL),
    (3, OutputMode.NORMAL),
    (OutputMode.COMPACT, OutputMode.COMPACT),
])
def test_resolve_output_mode(value, expected):
    assert resolve_output_mode(value) is expected


def test_resolve_output_mode_custom_default():
    assert resolve_output_mode("bogus", OutputMode.COMPACT) is OutputMode.COMPACT


# ============================================================================
# SUMMARIES
# ============================================================================

def test_pod_summary():
    assert create_resource_summary(make_pod()) == {
        "name": "web-1",
        "namespace": "shop",
        "status": "Running",
        "containers": 2,
        "restarts": 5,
    }


def test_deployment_summary():
    assert create_resource_summary(make_deployment()) == {
        "name": "web",
        "namespace": "shop",
        "replicas": "2/3",
        "available": 2,
    }


def test_service_summary():
    service = {
        "kind": "Service",
        "metadata": {"name": "api", "namespace": "shop"},
        "spec": {"type": "ClusterIP", "clusterIP": "10.96.0.10",
                 "ports": [{"port": 80, "protocol": "TCP"}, {"port": 53, "protocol": "UDP"}, {"port": 8080}]},
    }
    assert create_resource_summary(service) == {
        "name": "api",
        "namespace": "shop",
        "type": "ClusterIP",
        "clusterIP": "10.96.0.10",
        "ports": ["80/TCP", "53/UDP", "8080/TCP"],
    }


def test_node_summary():
    node = {
        "kind": "Node",
        "metadata": {"name": "node-a", "labels": {
            "node-role.kubernetes.io/control-plane": "",
            "node-role.kubernetes.io/master": "",
            "kubernetes.io/os": "linux",
        }},
        "status": {"conditions": [{"type": "MemoryPressure", "status": "False"}, {"type": "Ready", "status": "True"}]},
    }
    assert create_resource_summary(node) == {
        "name": "node-a",
        "namespace": None,
        "status": "True",
        "roles": ["control-plane", "master"],
    }


@pytest.mark.parametrize("kind", ["ConfigMap", "Secret"])
def test_data_key_summary(kind):
    resource = {"kind": kind, "metadata": {"name": "cfg", "namespace": "shop"}, "data": {"a": "1", "b": "2"}}
    assert create_resource_summary(resource) == {"name": "cfg", "namespace": "shop", "dataKeys": ["a", "b"]}


def test_unknown_kind_summary():
    job = {"kind": "StatefulSet", "metadata": {"name": "db", "namespace": "shop"},
           "spec": {"replicas": 2}, "status": {"phase": "Weird"}}
    assert create_resource_summary(job) == {"name": "db", "namespace": "shop", "phase": "Weird", "replicas": 2}
    assert create_resource_summary({"kind": "Lease", "metadata": {"name": "l"}}) == {"name": "l", "namespace": None}


def test_list_summary():
    pods = {"kind": "PodList", "items": [make_pod("a", restarts=(1,)), make_pod("b", restarts=(), phase="Pending")]}
    summary = create_resource_summary(pods)
    assert summary["kind"] == "PodList"
    assert summary["count"] == 2
    assert [i["restarts"] for i in summary["items"]] == [1, 0]
    assert [i["status"] for i in summary["items"]] == ["Running", "Pending"]


def test_summary_tolerates_malformed_fields():
    pod = {"kind": "Pod", "metadata": {"name": "x"}, "spec": {"containers": "oops"},
           "status": {"containerStatuses": [{"restartCount": "2"}, {"restartCount": None}, "junk"]}}
    assert create_resource_summary(pod) == {
        "name": "x", "namespace": None, "status": None, "containers": 0, "restarts": 2,
    }
