"""
Cluster registry: the source of truth for the clusters this server can reach.

The registry is loaded from a JSON file::

    {
      "clusters": {
        "dev":  {"name": "Dev", "type": "local", "description": "...",
                 "kubeconfig": "/home/app/.kube/config", "context": "kind-dev"},
        "prod": {"name": "Prod", "type": "gke", "description": "...",
                 "project": "acme", "cluster": "prod-1", "region": "us-central1",
                 "keyFile": "/secrets/sa.json"}
      },
      "default": "dev",
      "configuration": {"gke_auth_timeout": 300}
    }

A missing file yields a single local cluster. A present but invalid file is a
ConfigurationError. Reloads swap in one fully validated snapshot, so readers
never see a half-built map.

Construct one ClusterRegistry at startup and pass it to the runners and the
tool dispatcher.
"""

import json
import os
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from k8s_cluster_mcp.context import gke_context_name
from k8s_cluster_mcp.errors import (
    AuthenticationError,
    ConfigurationError,
    ExecutionError,
    InvalidClusterConfigError,
    K8sToolError,
    NotFoundError,
    describe_validation_error,
)
from k8s_cluster_mcp.logs import get_logger
from k8s_cluster_mcp.runner import KUBECTL_TIMEOUT_SECONDS, execute_process

logger = get_logger(__name__)

# Deployment path first, then relative to the working directory
DEFAULT_CONFIG_PATHS = (
    "/app/config/clusters.json",
    os.path.join("config", "clusters.json"),
)

GKE_AUTH_TIMEOUT_SECONDS = 300
AUTH_CHECK_TIMEOUT_SECONDS = 10
GKE_ENV = {"USE_GKE_GCLOUD_AUTH_PLUGIN": "True"}


# ============================================================================
# DESCRIPTORS
# ============================================================================

class _ClusterBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = ""
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)


class LocalCluster(_ClusterBase):
    """Cluster reached through an existing kubeconfig file"""

    type: Literal["local"]
    kubeconfig: str = Field(min_length=1)
    context: Optional[str] = None


class GKECluster(_ClusterBase):
    """GKE cluster authenticated with a service-account key before use"""

    type: Literal["gke"]
    project: str = Field(min_length=1)
    cluster: str = Field(min_length=1)
    region: str = Field(min_length=1)
    key_file: str = Field(alias="keyFile", min_length=1)

    @property
    def context_name(self) -> str:
        return gke_context_name(self.project, self.region, self.cluster)


ClusterDescriptor = Annotated[Union[LocalCluster, GKECluster], Field(discriminator="type")]


class ClustersFile(BaseModel):
    """Schema of clusters.json"""

    clusters: Dict[str, ClusterDescriptor]
    default: str = Field(min_length=1)
    configuration: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_must_exist(self):
        if self.default not in self.clusters:
            raise ValueError(f"default cluster '{self.default}' not found")
        return self


def default_config() -> Dict[str, Any]:
    return {
        "clusters": {
            "local": {
                "name": "Local Kubernetes",
                "type": "local",
                "description": "Local Kubernetes cluster",
                "kubeconfig": os.path.expanduser("~/.kube/config"),
            }
        },
        "default": "local",
        "configuration": {
            "gke_auth_timeout": GKE_AUTH_TIMEOUT_SECONDS,
            "kubectl_timeout": 30,
            "helm_timeout": 60,
        },
    }


def parse_config(data: Any) -> ClustersFile:
    """Validate a decoded clusters.json document"""
    if not isinstance(data, dict):
        raise ConfigurationError("Invalid configuration: top level must be an object")
    try:
        parsed = ClustersFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {describe_validation_error(e)}") from e
    # Descriptors carry their registry key
    clusters = {cid: c.model_copy(update={"id": cid}) for cid, c in parsed.clusters.items()}
    return parsed.model_copy(update={"clusters": clusters})


@dataclass(frozen=True)
class RegistrySnapshot:
    clusters: Mapping[str, Union[LocalCluster, GKECluster]]
    default: str
    configuration: Mapping[str, Any] = field(default_factory=dict)
    config_path: Optional[str] = None
    using_default: bool = False


# ============================================================================
# REGISTRY
# ============================================================================

class ClusterRegistry:
    def __init__(
        self,
        config_path: Optional[str] = None,
        search_paths: Optional[Sequence[str]] = None,
        auto_load: bool = True,
    ):
        self._explicit_path = config_path
        self._search_paths = tuple(search_paths) if search_paths is not None else DEFAULT_CONFIG_PATHS
        self._snapshot: Optional[RegistrySnapshot] = None
        self._current: Optional[str] = None
        if auto_load:
            self.load()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<memory>") -> "ClusterRegistry":
        registry = cls(auto_load=False)
        registry._install(parse_config(data), source, using_default=False)
        return registry

    # --- loading -----------------------------------------------------------

    def resolve_config_path(self) -> str:
        if self._explicit_path:
            return self._explicit_path
        env_path = os.getenv("K8S_MCP_CLUSTER_CONFIG")
        if env_path:
            return env_path
        for candidate in self._search_paths:
            if os.path.exists(candidate):
                return candidate
        return self._search_paths[-1] if self._search_paths else os.path.join("config", "clusters.json")

    def load(self) -> RegistrySnapshot:
        path = self.resolve_config_path()

        if not os.path.exists(path):
            logger.warning({"event": "cluster_config_missing", "path": path, "fallback": "local"})
            return self._install(parse_config(default_config()), path, using_default=True)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error({"event": "cluster_config_invalid", "path": path, "error": e})
            raise ConfigurationError(f"Unable to load cluster configuration {path}: {e}") from e
        except OSError as e:
            logger.error({"event": "cluster_config_unreadable", "path": path, "error": e})
            raise ConfigurationError(f"Unable to read cluster configuration {path}: {e}") from e

        try:
            parsed = parse_config(data)
        except ConfigurationError as e:
            logger.error({"event": "cluster_config_invalid", "path": path, "error": e})
            raise

        snapshot = self._install(parsed, path, using_default=False)
        logger.info({
            "event": "cluster_config_loaded",
            "path": path,
            "clusters_count": len(snapshot.clusters),
            "default_cluster": snapshot.default,
        })
        return snapshot

    def reload(self) -> RegistrySnapshot:
        """Re-read the file; on failure the previous state is kept and the error raised"""
        logger.info({"event": "cluster_config_reload"})
        return self.load()

    def _install(self, parsed: ClustersFile, path: str, using_default: bool) -> RegistrySnapshot:
        snapshot = RegistrySnapshot(
            clusters=dict(parsed.clusters),
            default=parsed.default,
            configuration=dict(parsed.configuration),
            config_path=path,
            using_default=using_default,
        )
        self._snapshot = snapshot
        if self._current is not None and self._current not in snapshot.clusters:
            self._current = None
        return snapshot

    @property
    def snapshot(self) -> RegistrySnapshot:
        if self._snapshot is None:
            raise ConfigurationError("Cluster registry has not been loaded")
        return self._snapshot

    # --- lookups -----------------------------------------------------------

    @property
    def default_cluster_id(self) -> str:
        return self.snapshot.default

    @property
    def configuration(self) -> Mapping[str, Any]:
        return self.snapshot.configuration

    @property
    def config_path(self) -> Optional[str]:
        return self.snapshot.config_path

    def get_clusters(self) -> Mapping[str, Union[LocalCluster, GKECluster]]:
        return self.snapshot.clusters

    def available_clusters(self) -> List[Union[LocalCluster, GKECluster]]:
        return list(self.snapshot.clusters.values())

    def get_cluster(self, cluster_id: Optional[str] = None) -> Union[LocalCluster, GKECluster]:
        snapshot = self.snapshot
        cluster_id = cluster_id or snapshot.default
        descriptor = snapshot.clusters.get(cluster_id)
        if descriptor is None:
            raise NotFoundError(f"Cluster '{cluster_id}' not found")
        return descriptor

    def cluster_exists(self, cluster_id: Optional[str]) -> bool:
        return bool(cluster_id) and cluster_id in self.snapshot.clusters

    def get_current_cluster(self) -> str:
        return self._current or self.snapshot.default

    def get_stats(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        types: Dict[str, int] = {}
        for descriptor in snapshot.clusters.values():
            types[descriptor.type] = types.get(descriptor.type, 0) + 1
        return {
            "total": len(snapshot.clusters),
            "types": types,
            "default": snapshot.default,
            "current": self.get_current_cluster(),
            "configPath": snapshot.config_path,
            "usingDefaultConfig": snapshot.using_default,
        }

    # --- authentication ----------------------------------------------------

    def _auth_timeout(self) -> float:
        try:
            return float(self.configuration.get("gke_auth_timeout", GKE_AUTH_TIMEOUT_SECONDS))
        except (TypeError, ValueError):
            return GKE_AUTH_TIMEOUT_SECONDS

    async def authenticate_gke(self, descriptor) -> None:
        """Activate the service account, fetch credentials, probe the API server.

        No-op for local clusters. Sets the current cluster only when every step succeeds.
        """
        if descriptor.type != "gke":
            return

        log_ctx = {
            "cluster_id": descriptor.id,
            "project": descriptor.project,
            "cluster": descriptor.cluster,
            "region": descriptor.region,
        }
        logger.info({"event": "gke_auth_started", **log_ctx})

        if not os.path.exists(descriptor.key_file):
            raise ExecutionError(f"Service account key file not found: {descriptor.key_file}")

        timeout = self._auth_timeout()
        steps = [
            ("activate-service-account", "gcloud", [
                "auth", "activate-service-account",
                "--key-file", descriptor.key_file,
                "--quiet",
            ]),
            ("get-credentials", "gcloud", [
                "container", "clusters", "get-credentials", descriptor.cluster,
                "--region", descriptor.region,
                "--project", descriptor.project,
                "--quiet",
            ]),
            ("verify-connection", "kubectl", [
                "cluster-info", "--request-timeout=10s",
                "--context", descriptor.context_name,
            ]),
        ]

        start_ts = time.time()
        for step, program, args in steps:
            logger.debug({"event": "gke_auth_step", "step": step, **log_ctx})
            try:
                await execute_process(program, args, timeout, env=GKE_ENV)
            except K8sToolError as e:
                logger.error({"event": "gke_auth_failed", "step": step, "error": e.message, **log_ctx})
                raise AuthenticationError(
                    f"GKE authentication failed at step '{step}': {e.message}",
                    step=step,
                    cluster=descriptor.id,
                ) from e

        self._current = descriptor.id
        logger.info({
            "event": "gke_auth_succeeded",
            "duration_ms": int((time.time() - start_ts) * 1000),
            **log_ctx,
        })

    async def switch_to_cluster(self, cluster_id: str):
        descriptor = self.get_cluster(cluster_id)
        logger.info({"event": "cluster_switch_started", "cluster_id": descriptor.id, "type": descriptor.type})

        try:
            if descriptor.type == "gke":
                await self.authenticate_gke(descriptor)
            else:
                if not os.path.exists(descriptor.kubeconfig):
                    raise NotFoundError(f"Kubeconfig file not found: {descriptor.kubeconfig}")
                if descriptor.context:
                    await execute_process(
                        "kubectl",
                        ["config", "use-context", descriptor.context, "--kubeconfig", descriptor.kubeconfig],
                        KUBECTL_TIMEOUT_SECONDS,
                    )
                self._current = descriptor.id
        except K8sToolError as e:
            logger.error({"event": "cluster_switch_failed", "cluster_id": descriptor.id, "error": e})
            raise

        logger.info({"event": "cluster_switch_succeeded", "cluster_id": descriptor.id})
        return descriptor

    async def is_gke_cluster_authenticated(self, cluster_id: str) -> bool:
        """True when the cluster's GKE context is present in the kubeconfig. Never raises."""
        try:
            descriptor = self.get_cluster(cluster_id)
        except NotFoundError:
            return False
        if descriptor.type != "gke":
            return True
        try:
            contexts = await execute_process(
                "kubectl", ["config", "get-contexts", "-o", "name"], AUTH_CHECK_TIMEOUT_SECONDS
            )
        except K8sToolError as e:
            logger.debug({"event": "gke_auth_check_failed", "cluster_id": cluster_id, "error": e})
            return False
        return descriptor.context_name in contexts.splitlines()

    async def validate_cluster_prerequisites(self, cluster_id: Optional[str], tool: Optional[str] = None) -> None:
        """Fail fast, before any kubectl call, when the target cluster is unusable"""
        if not cluster_id:
            return

        if not self.cluster_exists(cluster_id):
            raise InvalidClusterConfigError(
                f"Cluster '{cluster_id}' does not exist in configuration. "
                f"Available clusters: {', '.join(self.get_clusters())}",
                cluster=cluster_id,
                tool=tool,
            )

        descriptor = self.get_cluster(cluster_id)
        if descriptor.type == "gke":
            if not await self.is_gke_cluster_authenticated(cluster_id):
                raise InvalidClusterConfigError(
                    f"GKE cluster '{cluster_id}' is not authenticated. "
                    f"Run gke_auth with {{\"cluster\": \"{cluster_id}\"}} first, then re-run your command.",
                    cluster=cluster_id,
                    tool=tool,
                )
        elif not os.path.exists(descriptor.kubeconfig):
            raise InvalidClusterConfigError(
                f"Local cluster '{cluster_id}' kubeconfig file does not exist: {descriptor.kubeconfig}",
                cluster=cluster_id,
                tool=tool,
            )
