"""
Tool definitions and dispatch.

Each tool declares a pydantic argument model (types, enums, bounds, required
fields) and an async handler that turns validated arguments into a kubectl or
helm argument vector. `ToolDispatcher` validates every call through the same
routine, checks the target cluster, runs the handler and wraps the result in
the uniform response envelope::

    {"content": [{"type": "text", "text": "..."}]}
    {"content": [{"type": "text", "text": "Error: ..."}], "isError": true}

InvalidClusterConfigError is never wrapped: it propagates so the caller stops
the whole workflow.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from k8s_cluster_mcp.errors import (
    ExecutionError,
    InvalidArgumentsError,
    InvalidClusterConfigError,
    K8sToolError,
    NotFoundError,
    describe_validation_error,
)
from k8s_cluster_mcp.logs import get_logger, redact_dict
from k8s_cluster_mcp.reduction import (
    OutputMode,
    create_resource_summary,
    default_output_mode,
    reduce_output,
    resolve_output_mode,
)
from k8s_cluster_mcp.runner import helm_runner, kubectl_runner

logger = get_logger(__name__)


# ============================================================================
# SHARED VALIDATION
# ============================================================================

# Shell control characters are never legitimate in tool arguments
DANGEROUS_CHARS = (";", "&", "|", "`", "$", "<", ">", "\n", "\r", "\0")

NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"

KubectlResource = Literal[
    "pods", "nodes", "deployments", "services", "replicasets", "daemonsets",
    "statefulsets", "jobs", "cronjobs", "configmaps", "secrets", "namespaces",
    "ingresses", "events", "persistentvolumeclaims", "persistentvolumes",
    "horizontalpodautoscalers",
]
CLUSTER_SCOPED_RESOURCES = {"nodes", "namespaces", "persistentvolumes"}

HelmStatus = Literal["all", "deployed", "failed", "uninstalled", "superseded", "pending"]


def has_dangerous_chars(value: str) -> bool:
    return any(ch in value for ch in DANGEROUS_CHARS)


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    cluster: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=64,
        description="Cluster ID to operate on (see cluster_list); defaults to the current kubeconfig context",
    )

    @model_validator(mode="after")
    def _reject_shell_control(self):
        for field_name, value in self:
            if isinstance(value, str) and has_dangerous_chars(value):
                raise ValueError(f"Invalid characters in {field_name}")
        return self


class NamespacedArgs(ToolArgs):
    namespace: Optional[str] = Field(default=None, pattern=NAMESPACE_PATTERN, max_length=63)


class KubectlGetArgs(NamespacedArgs):
    resource: KubectlResource
    name: Optional[str] = Field(default=None, pattern=NAME_PATTERN, max_length=253)
    all_namespaces: bool = Field(default=False, alias="allNamespaces")
    label_selector: Optional[str] = Field(default=None, alias="labelSelector", max_length=512)
    output_mode: Optional[OutputMode] = Field(
        default=None, alias="outputMode", description="compact | normal | verbose"
    )
    summary: bool = Field(default=False, description="Return a one-line-per-resource summary instead")

    @field_validator("output_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_scope(self):
        if self.resource in CLUSTER_SCOPED_RESOURCES and self.namespace:
            raise ValueError(f"{self.resource} are cluster-scoped and do not take a namespace")
        if self.namespace and self.all_namespaces:
            raise ValueError("namespace and allNamespaces cannot be used together")
        if self.name and self.label_selector:
            raise ValueError("name and labelSelector cannot be used together")
        return self


class ResourceNameArgs(NamespacedArgs):
    resource: KubectlResource
    name: str = Field(pattern=NAME_PATTERN, max_length=253)


class KubectlLogsArgs(ToolArgs):
    pod: str = Field(pattern=NAME_PATTERN, max_length=253)
    namespace: str = Field(default="default", pattern=NAMESPACE_PATTERN, max_length=63)
    container: Optional[str] = Field(default=None, pattern=NAME_PATTERN, max_length=253)
    lines: int = Field(default=100, description="Last N lines (clamped to 1..1000)")
    since: Optional[str] = Field(default=None, pattern=r"^\d+[smhd]$", description="e.g. 30m, 1h, 2d")
    previous: bool = False


class KubectlTopNodesArgs(ToolArgs):
    sort_by: Optional[Literal["cpu", "memory"]] = Field(default=None, alias="sortBy")


class KubectlTopPodsArgs(NamespacedArgs):
    all_namespaces: bool = Field(default=False, alias="allNamespaces")
    containers: bool = False
    sort_by: Optional[Literal["cpu", "memory"]] = Field(default=None, alias="sortBy")
    pod_name: Optional[str] = Field(default=None, alias="podName", pattern=NAME_PATTERN, max_length=253)
    container_name: Optional[str] = Field(
        default=None, alias="containerName", max_length=253, description="Case-insensitive container name filter"
    )

    @model_validator(mode="after")
    def _check_scope(self):
        if self.namespace and self.all_namespaces:
            raise ValueError("namespace and allNamespaces cannot be used together")
        if self.pod_name and self.all_namespaces:
            raise ValueError("podName and allNamespaces cannot be used together")
        return self


class DeploymentArgs(ToolArgs):
    deployment_name: str = Field(alias="deploymentName", pattern=NAME_PATTERN, max_length=253)
    namespace: str = Field(default="default", pattern=NAMESPACE_PATTERN, max_length=63)


class ScaleDeploymentArgs(DeploymentArgs):
    replicas: int = Field(ge=0, le=1000)


class EditHpaArgs(ToolArgs):
    hpa_name: str = Field(alias="hpaName", pattern=NAME_PATTERN, max_length=253)
    namespace: str = Field(default="default", pattern=NAMESPACE_PATTERN, max_length=63)
    min_replicas: Optional[int] = Field(default=None, alias="minReplicas", ge=1, le=100)
    max_replicas: Optional[int] = Field(default=None, alias="maxReplicas", ge=1, le=1000)

    @model_validator(mode="after")
    def _check_range(self):
        if self.min_replicas is None and self.max_replicas is None:
            raise ValueError("Must provide minReplicas or maxReplicas")
        if self.min_replicas is not None and self.max_replicas is not None and self.min_replicas > self.max_replicas:
            raise ValueError(
                f"minReplicas ({self.min_replicas}) cannot be greater than maxReplicas ({self.max_replicas})"
            )
        return self


class HelmListArgs(NamespacedArgs):
    all_namespaces: Optional[bool] = Field(default=None, alias="allNamespaces")
    status: Optional[HelmStatus] = None
    filter: Optional[str] = Field(default=None, max_length=253)
    max: int = Field(default=256, ge=1, le=1000)

    @model_validator(mode="after")
    def _check_scope(self):
        if self.namespace and self.all_namespaces is True:
            raise ValueError("namespace and allNamespaces parameters cannot be used together")
        return self


class HelmReleaseArgs(NamespacedArgs):
    release: str = Field(pattern=NAME_PATTERN, max_length=53)


class HelmStatusArgs(HelmReleaseArgs):
    revision: Optional[int] = Field(default=None, ge=1)


class HelmHistoryArgs(HelmReleaseArgs):
    max: int = Field(default=10, ge=1, le=256)


class HelmGetValuesArgs(HelmReleaseArgs):
    all_values: bool = Field(default=False, alias="allValues")


class ClusterListArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    include_stats: bool = Field(default=False, alias="includeStats")


class GkeAuthArgs(ToolArgs):
    cluster: str = Field(min_length=1, max_length=64, description="GKE cluster ID to authenticate to")


# ============================================================================
# RESPONSES
# ============================================================================

def create_response(text: Any, is_error: bool = False) -> Dict[str, Any]:
    response: Dict[str, Any] = {"content": [{"type": "text", "text": "" if text is None else str(text)}]}
    if is_error:
        response["isError"] = True
    return response


def create_error_response(message: str) -> Dict[str, Any]:
    return create_response(f"Error: {message}", is_error=True)


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _parse_json(raw: str, program: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ExecutionError(f"Unable to parse {program} response: {e}") from e


def _namespace_flags(namespace: Optional[str], all_namespaces: bool = False) -> List[str]:
    if all_namespaces:
        return ["-A"]
    if namespace:
        return ["-n", namespace]
    return []


# ============================================================================
# HANDLERS
# ============================================================================

async def kubectl_get(d: "ToolDispatcher", args: KubectlGetArgs) -> str:
    argv = ["get", args.resource]
    if args.name:
        argv.append(args.name)
    argv += _namespace_flags(args.namespace, args.all_namespaces)
    if args.label_selector:
        argv += ["-l", args.label_selector]
    argv += ["-o", "json"]

    data = _parse_json(await d.kubectl.run(argv, args.cluster), "kubectl")
    if args.summary:
        return _to_json(create_resource_summary(data))
    mode = resolve_output_mode(args.output_mode, d.default_mode)
    return _to_json(reduce_output(data, mode))


async def kubectl_describe(d: "ToolDispatcher", args: ResourceNameArgs) -> str:
    argv = ["describe", args.resource, args.name] + _namespace_flags(args.namespace)
    return await d.kubectl.run(argv, args.cluster)


async def kubectl_get_yaml(d: "ToolDispatcher", args: ResourceNameArgs) -> str:
    argv = ["get", args.resource, args.name] + _namespace_flags(args.namespace) + ["-o", "yaml"]
    return await d.kubectl.run(argv, args.cluster)


async def kubectl_logs(d: "ToolDispatcher", args: KubectlLogsArgs) -> str:
    lines = min(max(1, args.lines), 1000)
    argv = ["logs", args.pod, "-n", args.namespace]
    if args.container:
        argv += ["-c", args.container]
    argv += ["--tail", str(lines)]
    if args.since:
        argv += ["--since", args.since]
    if args.previous:
        argv.append("--previous")
    return await d.kubectl.run(argv, args.cluster)


async def kubectl_top_nodes(d: "ToolDispatcher", args: KubectlTopNodesArgs) -> str:
    argv = ["top", "nodes"]
    if args.sort_by:
        argv += ["--sort-by", args.sort_by]
    return await d.kubectl.run(argv, args.cluster)


def _filter_container_rows(output: str, container_name: str, all_namespaces: bool) -> str:
    """Keep the header and the `top --containers` rows whose container matches"""
    column = 2 if all_namespaces else 1
    needle = container_name.lower()
    lines = output.splitlines()
    kept = lines[:1]
    for line in lines[1:]:
        fields = line.split()
        if len(fields) > column and needle in fields[column].lower():
            kept.append(line)
    return "\n".join(kept)


async def kubectl_top_pods(d: "ToolDispatcher", args: KubectlTopPodsArgs) -> str:
    argv = ["top", "pods"]
    if args.pod_name:
        argv.append(args.pod_name)
    argv += _namespace_flags(args.namespace, args.all_namespaces)
    if args.containers or args.container_name:
        argv.append("--containers")
    if args.sort_by:
        argv += ["--sort-by", args.sort_by]
    output = await d.kubectl.run(argv, args.cluster)
    if args.container_name:
        return _filter_container_rows(output, args.container_name, args.all_namespaces)
    return output


async def kubectl_cluster_info(d: "ToolDispatcher", args: ToolArgs) -> str:
    return await d.kubectl.run(["cluster-info"], args.cluster)


async def _deployment_state(d: "ToolDispatcher", args: DeploymentArgs) -> Dict[str, Any]:
    argv = ["get", "deployment", args.deployment_name, "-n", args.namespace, "-o", "json"]
    try:
        raw = await d.kubectl.run(argv, args.cluster)
    except NotFoundError as e:
        raise NotFoundError(
            f'Deployment "{args.deployment_name}" does not exist in namespace "{args.namespace}". '
            "Please verify the Deployment name and namespace."
        ) from e
    data = _parse_json(raw, "kubectl")
    state = create_resource_summary(data)
    spec = data.get("spec") if isinstance(data, dict) else None
    state["desired"] = (spec or {}).get("replicas", 0)
    return state


async def kubectl_scale_deployment(d: "ToolDispatcher", args: ScaleDeploymentArgs) -> str:
    before = await _deployment_state(d, args)
    output = await d.kubectl.run(
        ["scale", "deployment", args.deployment_name, "--replicas", str(args.replicas), "-n", args.namespace],
        args.cluster,
    )
    return _to_json({
        "deployment": args.deployment_name,
        "namespace": args.namespace,
        "previousReplicas": before["desired"],
        "targetReplicas": args.replicas,
        "before": before,
        "output": output,
    })


async def kubectl_restart_deployment(d: "ToolDispatcher", args: DeploymentArgs) -> str:
    before = await _deployment_state(d, args)
    output = await d.kubectl.run(
        ["rollout", "restart", "deployment", args.deployment_name, "-n", args.namespace],
        args.cluster,
    )
    return _to_json({
        "deployment": args.deployment_name,
        "namespace": args.namespace,
        "before": before,
        "output": output,
    })


async def _hpa_state(d: "ToolDispatcher", args: EditHpaArgs) -> Dict[str, Any]:
    argv = ["get", "hpa", args.hpa_name, "-n", args.namespace, "-o", "json"]
    try:
        raw = await d.kubectl.run(argv, args.cluster)
    except NotFoundError as e:
        raise NotFoundError(
            f'HorizontalPodAutoscaler "{args.hpa_name}" does not exist in namespace "{args.namespace}". '
            "Please confirm the HPA name and namespace are correct."
        ) from e
    data = _parse_json(raw, "kubectl")
    if not isinstance(data, dict):
        data = {}
    spec = data.get("spec") or {}
    status = data.get("status") or {}
    return {
        "minReplicas": spec.get("minReplicas", 1),
        "maxReplicas": spec.get("maxReplicas", 10),
        "currentReplicas": status.get("currentReplicas", 0),
        "desiredReplicas": status.get("desiredReplicas", 0),
    }


async def kubectl_edit_hpa(d: "ToolDispatcher", args: EditHpaArgs) -> str:
    before = await _hpa_state(d, args)
    new_min = before["minReplicas"] if args.min_replicas is None else args.min_replicas
    new_max = before["maxReplicas"] if args.max_replicas is None else args.max_replicas
    if new_min > new_max:
        raise InvalidArgumentsError(
            f"New minimum replica count ({new_min}) cannot be greater than maximum replica count ({new_max})"
        )

    # Only the bounds that actually change go into the patch
    changes: Dict[str, int] = {}
    if new_min != before["minReplicas"]:
        changes["minReplicas"] = new_min
    if new_max != before["maxReplicas"]:
        changes["maxReplicas"] = new_max
    if not changes:
        raise InvalidArgumentsError(
            f"No parameters need updating: minReplicas is already {new_min} and maxReplicas is already {new_max}"
        )

    output = await d.kubectl.run(
        ["patch", "hpa", args.hpa_name, "-n", args.namespace, "--type", "merge",
         "-p", json.dumps({"spec": changes})],
        args.cluster,
    )
    return _to_json({
        "hpa": args.hpa_name,
        "namespace": args.namespace,
        "before": before,
        "minReplicas": new_min,
        "maxReplicas": new_max,
        "changed": sorted(changes),
        "output": output,
    })


async def helm_list(d: "ToolDispatcher", args: HelmListArgs) -> str:
    # Without an explicit namespace helm lists every namespace by default
    all_namespaces = False if args.namespace else args.all_namespaces is not False
    argv = ["list"] + _namespace_flags(args.namespace, all_namespaces)
    if args.status:
        argv.append(f"--{args.status}")
    if args.filter:
        argv += ["--filter", args.filter]
    argv += ["--max", str(args.max), "-o", "json"]
    return _to_json(_parse_json(await d.helm.run(argv, args.cluster), "helm"))


async def helm_status(d: "ToolDispatcher", args: HelmStatusArgs) -> str:
    argv = ["status", args.release] + _namespace_flags(args.namespace)
    if args.revision:
        argv += ["--revision", str(args.revision)]
    return await d.helm.run(argv, args.cluster)


async def helm_history(d: "ToolDispatcher", args: HelmHistoryArgs) -> str:
    argv = ["history", args.release] + _namespace_flags(args.namespace) + ["--max", str(args.max)]
    return await d.helm.run(argv, args.cluster)


async def helm_get_values(d: "ToolDispatcher", args: HelmGetValuesArgs) -> str:
    argv = ["get", "values", args.release] + _namespace_flags(args.namespace)
    if args.all_values:
        argv.append("--all")
    argv += ["-o", "yaml"]
    return await d.helm.run(argv, args.cluster)


async def helm_repo_list(d: "ToolDispatcher", args: ToolArgs) -> str:
    return _to_json(_parse_json(await d.helm.run(["repo", "list", "-o", "json"], args.cluster), "helm"))


async def cluster_list(d: "ToolDispatcher", args: ClusterListArgs) -> str:
    registry = d.registry
    default_id = registry.default_cluster_id
    current_id = registry.get_current_cluster()
    clusters = {}
    for cid, descriptor in registry.get_clusters().items():
        entry = descriptor.model_dump(by_alias=True, exclude_none=True)
        entry.update({"isDefault": cid == default_id, "isCurrent": cid == current_id})
        clusters[cid] = entry
    result: Dict[str, Any] = {
        "clusters": clusters,
        "metadata": {"default": default_id, "current": current_id, "total": len(clusters)},
    }
    if args.include_stats:
        result["stats"] = registry.get_stats()
    return _to_json(result)


async def gke_auth(d: "ToolDispatcher", args: GkeAuthArgs) -> str:
    registry = d.registry
    if not registry.cluster_exists(args.cluster):
        raise InvalidClusterConfigError(
            f"Cluster '{args.cluster}' not found. Available clusters: {', '.join(registry.get_clusters())}",
            cluster=args.cluster,
            tool="gke_auth",
        )
    descriptor = registry.get_cluster(args.cluster)
    if descriptor.type != "gke":
        raise InvalidArgumentsError(f"Cluster '{args.cluster}' is not a GKE cluster (type: {descriptor.type})")

    start_ts = time.time()
    await registry.switch_to_cluster(args.cluster)
    return _to_json({
        "cluster": descriptor.id,
        "project": descriptor.project,
        "region": descriptor.region,
        "context": descriptor.context_name,
        "authenticated": True,
        "current": registry.get_current_cluster(),
        "duration_ms": int((time.time() - start_ts) * 1000),
    })


# ============================================================================
# REGISTRY OF TOOLS
# ============================================================================

@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[["ToolDispatcher", Any], Awaitable[str]]
    mutating: bool = False
    # Run the cluster prerequisite check before the handler
    targets_cluster: bool = True

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.args_model.model_json_schema(by_alias=True),
            "mutating": self.mutating,
        }


TOOLS: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("kubectl_get", "Get Kubernetes resources as JSON, reduced by output mode or summarized",
                 KubectlGetArgs, kubectl_get),
        ToolSpec("kubectl_describe", "Describe a Kubernetes resource", ResourceNameArgs, kubectl_describe),
        ToolSpec("kubectl_get_yaml", "Get the full YAML definition of a resource", ResourceNameArgs, kubectl_get_yaml),
        ToolSpec("kubectl_logs", "Get Pod logs", KubectlLogsArgs, kubectl_logs),
        ToolSpec("kubectl_top_nodes", "Show node CPU and memory usage", KubectlTopNodesArgs, kubectl_top_nodes),
        ToolSpec("kubectl_top_pods", "Show pod (or container) CPU and memory usage",
                 KubectlTopPodsArgs, kubectl_top_pods),
        ToolSpec("kubectl_cluster_info", "Show control plane and core service endpoints",
                 ToolArgs, kubectl_cluster_info),
        ToolSpec("kubectl_scale_deployment", "Scale a Deployment to a replica count",
                 ScaleDeploymentArgs, kubectl_scale_deployment, mutating=True),
        ToolSpec("kubectl_restart_deployment", "Trigger a rolling restart of a Deployment",
                 DeploymentArgs, kubectl_restart_deployment, mutating=True),
        ToolSpec("kubectl_edit_hpa", "Edit the min/max replica range of a HorizontalPodAutoscaler",
                 EditHpaArgs, kubectl_edit_hpa, mutating=True),
        ToolSpec("helm_list", "List Helm releases (all namespaces unless one is given)", HelmListArgs, helm_list),
        ToolSpec("helm_status", "Show the status of a Helm release", HelmStatusArgs, helm_status),
        ToolSpec("helm_history", "Show the revision history of a Helm release", HelmHistoryArgs, helm_history),
        ToolSpec("helm_get_values", "Get the values of a Helm release", HelmGetValuesArgs, helm_get_values),
        ToolSpec("helm_repo_list", "List configured Helm chart repositories", ToolArgs, helm_repo_list),
        ToolSpec("cluster_list",
                 "List configured clusters with default and current markers. Takes no cluster argument: "
                 "a `cluster` key is rejected as an unknown argument",
                 ClusterListArgs, cluster_list, targets_cluster=False),
        ToolSpec("gke_auth", "Authenticate to a GKE cluster with its service account and make it current",
                 GkeAuthArgs, gke_auth, targets_cluster=False),
    )
}


def validate_arguments(spec: ToolSpec, raw: Any) -> BaseModel:
    """Single validation routine for every tool call"""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidArgumentsError(f"Arguments for {spec.name} must be an object")
    try:
        return spec.args_model.model_validate(raw)
    except ValidationError as e:
        raise InvalidArgumentsError(f"Invalid arguments for {spec.name}: {describe_validation_error(e)}") from e


class ToolDispatcher:
    """Maps (tool name, arguments) onto the core and returns response envelopes"""

    def __init__(self, registry, kubectl=None, helm=None, default_mode: Optional[OutputMode] = None):
        self.registry = registry
        self.kubectl = kubectl or kubectl_runner(registry)
        self.helm = helm or helm_runner(registry)
        self.default_mode = default_mode or default_output_mode()

    def list_tools(self) -> List[Dict[str, Any]]:
        return [spec.definition() for spec in TOOLS.values()]

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        spec = TOOLS.get(name)
        if spec is None:
            raise InvalidArgumentsError(f"Unknown tool: {name}")
        args = validate_arguments(spec, arguments)

        start_ts = time.time()
        try:
            if spec.targets_cluster:
                await self.registry.validate_cluster_prerequisites(getattr(args, "cluster", None), tool=name)
            text = await spec.handler(self, args)
        except InvalidClusterConfigError as e:
            e.tool = e.tool or name
            logger.error(redact_dict({"event": "tool_aborted", "tool": name, "arguments": arguments or {}, **e.to_dict()}))
            raise
        except K8sToolError as e:
            logger.error(redact_dict({
                "event": "tool_failed",
                "tool": name,
                "arguments": arguments or {},
                "error_kind": e.kind,
                "error": e.message,
            }))
            return create_error_response(e.message)

        logger.info(redact_dict({
            "event": "tool_executed",
            "tool": name,
            "arguments": arguments or {},
            "result_length": len(text),
            "duration_ms": int((time.time() - start_ts) * 1000),
        }))
        return create_response(text)
