from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional

# KubeVirt well-known keys
APP_LABEL = "kubevirt.io"
VIRT_LAUNCHER_APP = "virt-launcher"
DOMAIN_ANNOTATION = "kubevirt.io/domain"
LIVE_MIGRATABLE_CONDITION = "LiveMigratable"


class EvictionStrategy(Enum):
    """Eviction strategies a VMI can carry (KubeVirt wire values)."""
    UNSET = ""
    LIVE_MIGRATE = "LiveMigrate"
    LIVE_MIGRATE_IF_POSSIBLE = "LiveMigrateIfPossible"
    EXTERNAL = "External"
    NONE = "None"

    @classmethod
    def parse(cls, value: Optional[str]) -> 'EvictionStrategy':
        """Parse a wire value. Missing or empty values map to UNSET."""
        if not value:
            return cls.UNSET
        for strategy in cls:
            if strategy.value == value:
                return strategy
        raise ValueError(f"Unknown eviction strategy: {value}")


@dataclass
class EvictionRequest:
    """A single eviction of a pod, as seen by the admission webhook."""
    namespace: str
    name: str
    dry_run: bool = False


@dataclass
class LauncherPod:
    """The subset of a pod the admitter looks at."""
    name: str
    namespace: str = "default"
    node_name: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def is_virt_launcher(self) -> bool:
        return self.labels.get(APP_LABEL) == VIRT_LAUNCHER_APP

    @property
    def vmi_name(self) -> Optional[str]:
        """Name of the VMI this pod runs, taken from the domain annotation."""
        return self.annotations.get(DOMAIN_ANNOTATION)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LauncherPod':
        """Create a pod from a Kubernetes-shaped dict (metadata/spec)."""
        metadata = data.get("metadata", {})
        spec = data.get("spec") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            node_name=spec.get("nodeName") or "",
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {})
        )

    @classmethod
    def from_k8s(cls, pod) -> 'LauncherPod':
        """Create a pod from a kubernetes.client V1Pod."""
        return cls(
            name=pod.metadata.name,
            namespace=pod.metadata.namespace or "default",
            node_name=(pod.spec.node_name if pod.spec else None) or "",
            labels=dict(pod.metadata.labels or {}),
            annotations=dict(pod.metadata.annotations or {})
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "annotations": dict(self.annotations)
            },
            "spec": {
                "nodeName": self.node_name
            }
        }


@dataclass
class VirtualMachineInstance:
    """
    Read-only view of a VirtualMachineInstance custom resource.

    Only the fields the eviction admitter needs are kept:
    - node_name: node currently running the VMI (status.nodeName)
    - migratable: LiveMigratable condition is True
    - evacuation_node_name: set once an eviction selected the VMI for migration
    - eviction_strategy: per-VMI override (spec.evictionStrategy), None if unset
    - resource_version: version the view was read at, used to make writes conditional
    """
    name: str
    namespace: str = "default"
    node_name: str = ""
    migratable: bool = False
    evacuation_node_name: str = ""
    eviction_strategy: Optional[str] = None
    resource_version: str = ""

    @property
    def marked_for_eviction(self) -> bool:
        return bool(self.evacuation_node_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VirtualMachineInstance':
        """Create a VMI from the dict returned by the custom objects API."""
        metadata = data.get("metadata", {})
        spec = data.get("spec") or {}
        status = data.get("status") or {}

        migratable = any(
            condition.get("type") == LIVE_MIGRATABLE_CONDITION and condition.get("status") == "True"
            for condition in status.get("conditions") or []
        )

        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            node_name=status.get("nodeName") or "",
            migratable=migratable,
            evacuation_node_name=status.get("evacuationNodeName") or "",
            eviction_strategy=spec.get("evictionStrategy"),
            resource_version=metadata.get("resourceVersion") or ""
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert the VMI back to a custom-object shaped dict."""
        spec: Dict[str, Any] = {}
        if self.eviction_strategy is not None:
            spec["evictionStrategy"] = self.eviction_strategy

        status: Dict[str, Any] = {
            "nodeName": self.node_name,
            "conditions": [{
                "type": LIVE_MIGRATABLE_CONDITION,
                "status": "True" if self.migratable else "False"
            }]
        }
        if self.evacuation_node_name:
            status["evacuationNodeName"] = self.evacuation_node_name

        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version

        return {
            "apiVersion": "kubevirt.io/v1",
            "kind": "VirtualMachineInstance",
            "metadata": metadata,
            "spec": spec,
            "status": status
        }

    def __str__(self) -> str:
        return (f"VMI({self.namespace}/{self.name}, node={self.node_name or '-'}, "
                f"migratable={self.migratable}, evacuation={self.evacuation_node_name or '-'})")
