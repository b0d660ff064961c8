"""
Object store capabilities used by the eviction admitter.

The admitter only needs three narrow capabilities:
- WorkloadStore: read a pod by namespace/name
- VMIStore: read a VMI and set status.evacuationNodeName with a conditional patch
- ClusterConfigProvider: read the cluster-wide default eviction strategy

Each has a Kubernetes-backed implementation and an in-memory one. The in-memory
stores raise the same ApiException the Kubernetes client raises, so callers
handle a single error type.
"""

import logging
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Dict, List, Optional, Any, Tuple
from kubernetes import client
from kubernetes.client.rest import ApiException

from vmi import LauncherPod, VirtualMachineInstance

logger = logging.getLogger(__name__)

# CRD details
VMI_GROUP = "kubevirt.io"
VMI_VERSION = "v1"
VMI_PLURAL = "virtualmachineinstances"
KUBEVIRT_PLURAL = "kubevirts"


def evacuation_patch(node_name: str, resource_version: str = "") -> List[Dict[str, Any]]:
    """
    JSON patch that marks a VMI for evacuation from node_name.

    The test ops make the write conditional on the VMI read by the caller: a
    changed resourceVersion (e.g. another eviction marked it first) or a VMI that
    left node_name fails the patch with 422 instead of being overwritten.
    """
    patch = []
    if resource_version:
        patch.append({"op": "test", "path": "/metadata/resourceVersion", "value": resource_version})
    patch.append({"op": "test", "path": "/status/nodeName", "value": node_name})
    patch.append({"op": "add", "path": "/status/evacuationNodeName", "value": node_name})
    return patch


class WorkloadStore(ABC):
    """Read-only access to pods."""

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> LauncherPod:
        pass


class VMIStore(ABC):
    """Read access to VMIs plus the single write the admitter performs."""

    @abstractmethod
    def get_vmi(self, namespace: str, name: str) -> VirtualMachineInstance:
        pass

    @abstractmethod
    def patch_evacuation_node(self, namespace: str, name: str, node_name: str,
                              resource_version: str = "", dry_run: bool = False):
        """
        Set status.evacuationNodeName = node_name if the VMI still runs on node_name
        and, when resource_version is given, has not changed since it was read.
        """
        pass


class ClusterConfigProvider(ABC):
    """Cluster-wide configuration consulted by the eviction policy resolver."""

    @abstractmethod
    def get_eviction_strategy(self) -> Optional[str]:
        """Return the default eviction strategy wire value, or None if unset."""
        pass


class KubePodStore(WorkloadStore):
    def __init__(self, core_v1: client.CoreV1Api):
        self.core_v1 = core_v1

    def get_pod(self, namespace: str, name: str) -> LauncherPod:
        pod = self.core_v1.read_namespaced_pod(name=name, namespace=namespace)
        return LauncherPod.from_k8s(pod)


class KubeVMIStore(VMIStore):
    """
    VMI access through the custom objects API.

    Group/version/plural default to KubeVirt's VirtualMachineInstance but can point at
    any CRD with the same status layout (e.g. the simulation's VirtualMachine CRD).
    """

    def __init__(self, custom_api: client.CustomObjectsApi,
                 group: str = VMI_GROUP, version: str = VMI_VERSION, plural: str = VMI_PLURAL):
        self.custom_api = custom_api
        self.group = group
        self.version = version
        self.plural = plural

    def get_vmi(self, namespace: str, name: str) -> VirtualMachineInstance:
        vmi_obj = self.custom_api.get_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=namespace,
            plural=self.plural,
            name=name
        )
        return VirtualMachineInstance.from_dict(vmi_obj)

    def patch_evacuation_node(self, namespace: str, name: str, node_name: str,
                              resource_version: str = "", dry_run: bool = False):
        kwargs = {}
        if dry_run:
            kwargs["dry_run"] = "All"

        # A list body is sent as application/json-patch+json
        self.custom_api.patch_namespaced_custom_object(
            group=self.group,
            version=self.version,
            namespace=namespace,
            plural=self.plural,
            name=name,
            body=evacuation_patch(node_name, resource_version),
            **kwargs
        )
        logger.info(f"Patched {self.plural} {namespace}/{name}: evacuationNodeName={node_name} (dry_run={dry_run})")


class KubeVirtClusterConfig(ClusterConfigProvider):
    """Reads spec.configuration.evictionStrategy from the KubeVirt CR on every call."""

    def __init__(self, custom_api: client.CustomObjectsApi,
                 namespace: str = "kubevirt", name: str = "kubevirt"):
        self.custom_api = custom_api
        self.namespace = namespace
        self.name = name

    def get_eviction_strategy(self) -> Optional[str]:
        kv = self.custom_api.get_namespaced_custom_object(
            group=VMI_GROUP,
            version=VMI_VERSION,
            namespace=self.namespace,
            plural=KUBEVIRT_PLURAL,
            name=self.name
        )
        configuration = (kv.get("spec") or {}).get("configuration") or {}
        return configuration.get("evictionStrategy") or None


class StaticClusterConfig(ClusterConfigProvider):
    """Fixed cluster configuration, e.g. from a command-line flag."""

    def __init__(self, eviction_strategy: Optional[str] = None):
        self.eviction_strategy = eviction_strategy or None

    def get_eviction_strategy(self) -> Optional[str]:
        return self.eviction_strategy


def _not_found(kind: str, namespace: str, name: str) -> ApiException:
    return ApiException(status=404, reason=f'{kind} "{namespace}/{name}" not found')


class InMemoryPodStore(WorkloadStore):
    """Pods held as Kubernetes-shaped dicts, keyed by namespace/name."""

    def __init__(self, pods: Optional[List[Dict[str, Any]]] = None):
        self._pods: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        for pod in pods or []:
            self.add(pod)

    def add(self, pod: Dict[str, Any]):
        metadata = pod.get("metadata", {})
        key = (metadata.get("namespace", "default"), metadata["name"])
        with self._lock:
            self._pods[key] = deepcopy(pod)

    def get_pod(self, namespace: str, name: str) -> LauncherPod:
        with self._lock:
            pod = self._pods.get((namespace, name))
            if pod is None:
                raise _not_found("pod", namespace, name)
            return LauncherPod.from_dict(pod)


class InMemoryVMIStore(VMIStore):
    """
    VMIs held as custom-object dicts.

    patch_evacuation_node mirrors the JSON patch the Kubernetes store sends:
    404 when the VMI is missing, 422 when the resourceVersion or nodeName test
    fails or the VMI is already marked. Every write bumps resourceVersion.
    """

    def __init__(self, vmis: Optional[List[Dict[str, Any]]] = None):
        self._vmis: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.patch_count = 0
        self._version = 0
        for vmi_obj in vmis or []:
            self.add(vmi_obj)

    def add(self, vmi_obj: Dict[str, Any]):
        metadata = vmi_obj.get("metadata", {})
        key = (metadata.get("namespace", "default"), metadata["name"])
        with self._lock:
            stored = deepcopy(vmi_obj)
            # The store owns resourceVersion, as the API server does on create
            stored.setdefault("metadata", {})["resourceVersion"] = self._next_version()
            self._vmis[key] = stored

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def get_vmi(self, namespace: str, name: str) -> VirtualMachineInstance:
        with self._lock:
            vmi_obj = self._vmis.get((namespace, name))
            if vmi_obj is None:
                raise _not_found("virtualmachineinstance", namespace, name)
            return VirtualMachineInstance.from_dict(vmi_obj)

    def patch_evacuation_node(self, namespace: str, name: str, node_name: str,
                              resource_version: str = "", dry_run: bool = False):
        with self._lock:
            vmi_obj = self._vmis.get((namespace, name))
            if vmi_obj is None:
                raise _not_found("virtualmachineinstance", namespace, name)

            current_version = vmi_obj["metadata"]["resourceVersion"]
            if resource_version and resource_version != current_version:
                raise ApiException(status=422, reason=f"test operation failed: "
                                                      f"/metadata/resourceVersion is not {resource_version}")

            status = vmi_obj.get("status") or {}
            if status.get("nodeName") != node_name:
                raise ApiException(status=422, reason=f"test operation failed: /status/nodeName is not {node_name}")
            if status.get("evacuationNodeName"):
                raise ApiException(status=422, reason=f"virtualmachineinstance {namespace}/{name} is already "
                                                      f"marked for evacuation from {status['evacuationNodeName']}")

            if dry_run:
                return

            status["evacuationNodeName"] = node_name
            vmi_obj["status"] = status
            vmi_obj["metadata"]["resourceVersion"] = self._next_version()
            self.patch_count += 1
