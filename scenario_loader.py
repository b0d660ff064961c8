import json
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

from stores import InMemoryPodStore, InMemoryVMIStore, StaticClusterConfig
from vmi import LauncherPod, VirtualMachineInstance


@dataclass
class EvictionScenario:
    """A cluster snapshot to evaluate evictions against, backed by in-memory stores."""
    pods: InMemoryPodStore
    vmis: InMemoryVMIStore
    cluster_config: StaticClusterConfig


class ScenarioLoader:
    """Loads and manages eviction scenarios from JSON files."""

    @staticmethod
    def from_dict(data: Dict[str, Any], default_strategy: Optional[str] = None) -> EvictionScenario:
        """
        Build a scenario from a dict.

        Expected format (pods and VMIs are Kubernetes-shaped objects):
        {
            "clusterConfig": {"evictionStrategy": "LiveMigrate"},
            "pods": [{"metadata": {...}, "spec": {"nodeName": "node-a"}}, ...],
            "vmis": [{"metadata": {...}, "spec": {...}, "status": {...}}, ...]
        }

        default_strategy, when given, replaces clusterConfig.evictionStrategy.
        """
        if not isinstance(data, dict):
            raise ValueError("Scenario must be a JSON object")

        pods = data.get("pods", [])
        vmis = data.get("vmis", [])
        if not isinstance(pods, list) or not isinstance(vmis, list):
            raise ValueError("'pods' and 'vmis' must be lists")

        # Validate shape up front so errors point at the scenario file
        for key, entries in (("pods", pods), ("vmis", vmis)):
            for index, entry in enumerate(entries):
                if not isinstance(entry, dict) or not isinstance(entry.get("metadata", {}), dict):
                    raise ValueError(f"'{key}[{index}]' must be an object with an object 'metadata'")
        try:
            for pod in pods:
                LauncherPod.from_dict(pod)
            for vmi_obj in vmis:
                VirtualMachineInstance.from_dict(vmi_obj)
        except (AttributeError, TypeError) as e:
            raise ValueError(f"Malformed object in scenario: {e}") from e

        cluster_config = data.get("clusterConfig") or {}
        if not isinstance(cluster_config, dict):
            raise ValueError("'clusterConfig' must be an object")

        strategy = default_strategy
        if strategy is None:
            strategy = cluster_config.get("evictionStrategy")

        return EvictionScenario(
            pods=InMemoryPodStore(pods),
            vmis=InMemoryVMIStore(vmis),
            cluster_config=StaticClusterConfig(strategy)
        )

    @staticmethod
    def load_scenario(file_path: str, default_strategy: Optional[str] = None) -> EvictionScenario:
        """Load a scenario from a JSON file."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return ScenarioLoader.from_dict(data, default_strategy)

        except FileNotFoundError:
            raise FileNotFoundError(f"Scenario file not found: {file_path}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON format in {file_path}: {e}")
        except KeyError as e:
            raise ValueError(f"Missing required field in scenario data: {e}")

    @staticmethod
    def create_sample_scenario() -> Dict[str, Any]:
        """A small cluster: one migratable VMI per strategy, all on node-a."""
        def launcher(vmi_name: str, node: str) -> Dict[str, Any]:
            return LauncherPod(
                name=f"virt-launcher-{vmi_name}-abcde",
                namespace="default",
                node_name=node,
                labels={"kubevirt.io": "virt-launcher"},
                annotations={"kubevirt.io/domain": vmi_name}
            ).to_dict()

        vmis: List[VirtualMachineInstance] = [
            VirtualMachineInstance("vm-live", node_name="node-a", migratable=True, eviction_strategy="LiveMigrate"),
            VirtualMachineInstance("vm-pinned", node_name="node-a", migratable=False, eviction_strategy="LiveMigrate"),
            VirtualMachineInstance("vm-best-effort", node_name="node-a", migratable=False,
                                   eviction_strategy="LiveMigrateIfPossible"),
            VirtualMachineInstance("vm-external", node_name="node-a", migratable=False, eviction_strategy="External"),
            VirtualMachineInstance("vm-default", node_name="node-a", migratable=True),
        ]

        return {
            "clusterConfig": {"evictionStrategy": "LiveMigrate"},
            "pods": [launcher(vmi.name, vmi.node_name) for vmi in vmis],
            "vmis": [vmi.to_dict() for vmi in vmis]
        }

    @staticmethod
    def generate_sample_file(file_path: str = "sample_eviction_scenario.json") -> str:
        """Generate a sample JSON scenario file."""
        with open(file_path, 'w', encoding='utf-8') as f:
            json.dump(ScenarioLoader.create_sample_scenario(), f, indent=2, ensure_ascii=False)
        return file_path
