"""
Error taxonomy shared by the command runner, cluster registry and tools.

Every failure inside the core surfaces as one of these classes. Tools catch
them and render "Error: <message>" envelopes, except InvalidClusterConfigError,
which is re-raised so the caller abandons the whole workflow.
"""

from typing import Optional


class K8sToolError(Exception):
    """Base class for classified failures"""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(K8sToolError):
    """Cluster configuration file exists but cannot be used. Fatal at startup."""

    kind = "configuration"


class InvalidArgumentsError(K8sToolError):
    kind = "invalid_arguments"


class InvalidClusterConfigError(K8sToolError):
    """Target cluster is unknown or unusable; stops the calling workflow"""

    kind = "invalid_cluster_config"
    should_stop_workflow = True

    def __init__(self, message: str, cluster: Optional[str] = None, tool: Optional[str] = None):
        super().__init__(message)
        self.cluster = cluster
        self.tool = tool

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"cluster": self.cluster, "tool": self.tool, "stop_workflow": True})
        return data


class NotFoundError(K8sToolError):
    kind = "not_found"


class ClusterConnectionError(K8sToolError, ConnectionError):
    kind = "connection"


class CommandTimeoutError(K8sToolError, TimeoutError):
    kind = "timeout"


class AuthenticationError(K8sToolError):
    """GKE authentication failed; `step` names the sub-step that broke"""

    kind = "authentication"

    def __init__(self, message: str, step: Optional[str] = None, cluster: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.cluster = cluster

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"step": self.step, "cluster": self.cluster})
        return data


class ExecutionError(K8sToolError):
    kind = "execution"


def describe_validation_error(error) -> str:
    """Flatten a pydantic ValidationError into 'loc: msg; loc: msg'"""
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)
