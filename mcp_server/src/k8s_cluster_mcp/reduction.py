"""
Output reduction for Kubernetes JSON payloads.

`reduce_output` strips metadata (and, in compact mode, most of spec/status)
according to the output mode. `create_resource_summary` produces a short
per-kind digest. Both build new dicts from the parts they keep; the input is
never modified and malformed fields are simply left out.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from k8s_cluster_mcp.settings import get_settings


class OutputMode(str, Enum):
    COMPACT = "compact"
    NORMAL = "normal"
    VERBOSE = "verbose"

    @property
    def rank(self) -> int:
        return _MODE_RANK[self]


_MODE_RANK = {OutputMode.COMPACT: 0, OutputMode.NORMAL: 1, OutputMode.VERBOSE: 2}

REMOVED_METADATA_FIELDS = {
    OutputMode.COMPACT: frozenset({
        "managedFields", "resourceVersion", "selfLink", "uid", "generation",
        "creationTimestamp", "ownerReferences", "finalizers", "annotations", "labels",
    }),
    OutputMode.NORMAL: frozenset({
        "managedFields", "resourceVersion", "selfLink", "generation", "ownerReferences", "finalizers",
    }),
    OutputMode.VERBOSE: frozenset({"managedFields"}),
}

COMPACT_STATUS_FIELDS = ("phase", "replicas", "readyReplicas", "availableReplicas")
COMPACT_SPEC_FIELDS = ("replicas", "selector")
NODE_ROLE_PREFIX = "node-role.kubernetes.io/"


def resolve_output_mode(value: Any, default: OutputMode = OutputMode.NORMAL) -> OutputMode:
    """Parse a mode name case-insensitively; anything unrecognised gives `default`"""
    if isinstance(value, OutputMode):
        return value
    if isinstance(value, str):
        try:
            return OutputMode(value.strip().lower())
        except ValueError:
            pass
    return default


def default_output_mode() -> OutputMode:
    return resolve_output_mode(get_settings().output_mode)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# ============================================================================
# MODE-BASED REDUCTION
# ============================================================================

def _container_images(containers: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(containers, list):
        return None
    return [
        {k: c[k] for k in ("name", "image") if k in c}
        for c in containers
        if isinstance(c, dict)
    ]


def _compact_status(status: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: status[k] for k in COMPACT_STATUS_FIELDS if k in status}
    conditions = status.get("conditions")
    if isinstance(conditions, list) and conditions:
        out["conditions"] = [conditions[-1]]
    return out


def _compact_spec(spec: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: spec[k] for k in COMPACT_SPEC_FIELDS if k in spec}
    containers = _container_images(spec.get("containers"))
    template_spec = _as_dict(_as_dict(spec.get("template")).get("spec"))
    template_containers = _container_images(template_spec.get("containers"))
    if template_containers is not None:
        containers = template_containers
    if containers is not None:
        out["containers"] = containers
    return out


def _reduce_item(item: Dict[str, Any], mode: OutputMode) -> Dict[str, Any]:
    removed = REMOVED_METADATA_FIELDS[mode]
    out: Dict[str, Any] = {}
    for key, value in item.items():
        if key == "metadata" and isinstance(value, dict):
            out[key] = {k: v for k, v in value.items() if k not in removed}
        elif mode is OutputMode.COMPACT and key == "status" and isinstance(value, dict):
            out[key] = _compact_status(value)
        elif mode is OutputMode.COMPACT and key == "spec" and isinstance(value, dict):
            out[key] = _compact_spec(value)
        else:
            out[key] = value
    return out


def reduce_output(resource: Any, mode: Any = OutputMode.NORMAL) -> Any:
    """Project a resource (or a `{kind, items}` list) for the given output mode"""
    mode = resolve_output_mode(mode)
    if not isinstance(resource, dict):
        return resource
    items = resource.get("items")
    if isinstance(items, list):
        reduced = dict(resource)
        reduced["items"] = [_reduce_item(i, mode) if isinstance(i, dict) else i for i in items]
        return reduced
    return _reduce_item(resource, mode)


# ============================================================================
# SUMMARIES
# ============================================================================

def _summarize_pod(metadata, spec, status) -> Dict[str, Any]:
    restarts = sum(_to_int(_as_dict(c).get("restartCount")) for c in _as_list(status.get("containerStatuses")))
    return {
        "status": status.get("phase"),
        "containers": len(_as_list(spec.get("containers"))),
        "restarts": restarts,
    }


def _summarize_deployment(metadata, spec, status) -> Dict[str, Any]:
    ready = _to_int(status.get("readyReplicas"))
    desired = _to_int(spec.get("replicas"))
    return {
        "replicas": f"{ready}/{desired}",
        "available": _to_int(status.get("availableReplicas")),
    }


def _summarize_service(metadata, spec, status) -> Dict[str, Any]:
    ports = [
        f"{p.get('port')}/{p.get('protocol', 'TCP')}"
        for p in _as_list(spec.get("ports"))
        if isinstance(p, dict)
    ]
    return {"type": spec.get("type"), "clusterIP": spec.get("clusterIP"), "ports": ports}


def _summarize_node(metadata, spec, status) -> Dict[str, Any]:
    ready = next(
        (c.get("status") for c in _as_list(status.get("conditions"))
         if isinstance(c, dict) and c.get("type") == "Ready"),
        None,
    )
    roles = [
        key[len(NODE_ROLE_PREFIX):]
        for key in _as_dict(metadata.get("labels"))
        if key.startswith(NODE_ROLE_PREFIX)
    ]
    return {"status": ready, "roles": roles}


def _summarize_default(metadata, spec, status) -> Dict[str, Any]:
    out = {}
    if "phase" in status:
        out["phase"] = status["phase"]
    if "replicas" in spec:
        out["replicas"] = spec["replicas"]
    return out


SUMMARIZERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "pod": _summarize_pod,
    "deployment": _summarize_deployment,
    "service": _summarize_service,
    "node": _summarize_node,
}


def _summarize_item(item: Any) -> Dict[str, Any]:
    if not isinstance(item, dict):
        return {}
    kind = str(item.get("kind") or "").lower()
    metadata = _as_dict(item.get("metadata"))
    summary: Dict[str, Any] = {"name": metadata.get("name"), "namespace": metadata.get("namespace")}

    if kind in ("configmap", "secret"):
        summary["dataKeys"] = list(_as_dict(item.get("data")).keys())
        return summary

    summarizer = SUMMARIZERS.get(kind, _summarize_default)
    summary.update(summarizer(metadata, _as_dict(item.get("spec")), _as_dict(item.get("status"))))
    return summary


def create_resource_summary(resource: Any) -> Dict[str, Any]:
    """One-line-equivalent digest of a resource, or `{kind, count, items}` for a list"""
    if not isinstance(resource, dict):
        return {}
    items = resource.get("items")
    if isinstance(items, list):
        return {
            "kind": resource.get("kind"),
            "count": len(items),
            "items": [_summarize_item(i) for i in items],
        }
    return _summarize_item(resource)
