"""
Cluster context injection.

Turns a logical cluster id into the CLI flags that point kubectl/helm at it,
placed in front of the caller's arguments. Shared by both runners; only the
name of the context flag differs (``--context`` vs ``--kube-context``).
"""

from typing import List, Optional, Sequence

from k8s_cluster_mcp.errors import InvalidClusterConfigError, K8sToolError

TARGETING_FLAGS = ("--context", "--kube-context", "--kubeconfig")


def gke_context_name(project: str, region: str, cluster: str) -> str:
    """Context name written by `gcloud container clusters get-credentials`"""
    return f"gke_{project}_{region}_{cluster}"


def has_targeting_flag(args: Sequence[str], context_flag: str = "--context") -> bool:
    flags = set(TARGETING_FLAGS) | {context_flag}
    for arg in args:
        arg = str(arg)
        if arg in flags or arg.split("=", 1)[0] in flags:
            return True
    return False


def context_flags(descriptor, context_flag: str = "--context") -> List[str]:
    """Flags for one descriptor, kubeconfig before context"""
    if descriptor.type == "gke":
        return [context_flag, gke_context_name(descriptor.project, descriptor.region, descriptor.cluster)]

    flags: List[str] = []
    if descriptor.kubeconfig:
        flags += ["--kubeconfig", descriptor.kubeconfig]
    if descriptor.context:
        flags += [context_flag, descriptor.context]
    return flags


def inject_context(
    args: List[str],
    cluster_id: Optional[str],
    registry,
    context_flag: str = "--context",
) -> List[str]:
    """Return `args` with the cluster's targeting flags prepended.

    Explicit targeting flags already present in `args` win and nothing is added.
    An unknown cluster raises InvalidClusterConfigError.
    """
    if not cluster_id:
        return args
    if has_targeting_flag(args, context_flag):
        return args
    if registry is None:
        raise InvalidClusterConfigError(
            f"Cluster '{cluster_id}' requested but no cluster registry is configured",
            cluster=cluster_id,
        )

    try:
        descriptor = registry.get_cluster(cluster_id)
    except K8sToolError as e:
        raise InvalidClusterConfigError(
            f"Cannot resolve cluster '{cluster_id}': {e.message}", cluster=cluster_id
        ) from e

    return context_flags(descriptor, context_flag) + list(args)
