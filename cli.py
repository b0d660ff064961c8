#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional
from kubernetes.client.rest import ApiException

from eviction_admitter import PodEvictionAdmitter, AdmissionVerdict
from scenario_loader import ScenarioLoader, EvictionScenario
from vmi import EvictionRequest, EvictionStrategy

EXIT_ALLOWED = 0
EXIT_DENIED = 1
EXIT_SCENARIO_ERROR = 2


class EvictionCLI:
    """Evaluates pod evictions offline against a scenario file."""

    def __init__(self, scenario: EvictionScenario):
        self.scenario = scenario
        self.admitter = PodEvictionAdmitter(scenario.pods, scenario.vmis, scenario.cluster_config)

    def evict(self, namespace: str, pod_name: str, dry_run: bool = False, attempts: int = 1) -> List[AdmissionVerdict]:
        """Evict a pod, possibly several times in a row, as a descheduler retrying would."""
        request = EvictionRequest(namespace=namespace, name=pod_name, dry_run=dry_run)
        return [self.admitter.admit(request) for _ in range(attempts)]

    def evacuation_node(self, namespace: str, pod_name: str) -> Optional[str]:
        """Current evacuationNodeName of the VMI behind a pod, None if there is no such VMI."""
        try:
            pod = self.scenario.pods.get_pod(namespace, pod_name)
            if not pod.vmi_name:
                return None
            return self.scenario.vmis.get_vmi(namespace, pod.vmi_name).evacuation_node_name
        except ApiException:
            return None

    def print_results(self, namespace: str, pod_name: str, verdicts: List[AdmissionVerdict]):
        for attempt, verdict in enumerate(verdicts, 1):
            print(json.dumps({"attempt": attempt, **verdict.to_dict()}))

        node = self.evacuation_node(namespace, pod_name)
        if node:
            print(f"VMI evacuationNodeName: {node}")


def main():
    parser = argparse.ArgumentParser(
        description="Evaluate virt-launcher pod evictions against a scenario",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py --generate-sample
  python cli.py --file sample_eviction_scenario.json --pod virt-launcher-vm-live-abcde
  python cli.py --file sample_eviction_scenario.json --pod virt-launcher-vm-live-abcde --attempts 2
        """
    )

    parser.add_argument(
        "--file", "-f",
        type=str,
        help="JSON file containing the scenario"
    )

    parser.add_argument(
        "--generate-sample", "-g",
        action="store_true",
        help="Generate a sample scenario file"
    )

    parser.add_argument(
        "--output", "-o",
        type=str,
        default="sample_eviction_scenario.json",
        help="Output file for sample generation (default: sample_eviction_scenario.json)"
    )

    parser.add_argument(
        "--namespace", "-n",
        type=str,
        default="default",
        help="Namespace of the evicted pod (default: default)"
    )

    parser.add_argument(
        "--pod", "-p",
        type=str,
        help="Name of the evicted pod"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Send the eviction as a dry run"
    )

    parser.add_argument(
        "--attempts",
        type=int,
        default=1,
        help="Number of times to send the eviction (default: 1)"
    )

    parser.add_argument(
        "--default-strategy",
        type=str,
        choices=[s.value for s in EvictionStrategy if s != EvictionStrategy.UNSET],
        help="Override the scenario's cluster-wide eviction strategy"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log admitter decisions"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.generate_sample:
        file_path = ScenarioLoader.generate_sample_file(args.output)
        print(f"Sample scenario file generated: {file_path}")
        return

    if not args.file or not args.pod:
        parser.print_help()
        sys.exit(EXIT_SCENARIO_ERROR)

    if not Path(args.file).exists():
        print(f"Error: File '{args.file}' not found.")
        sys.exit(EXIT_SCENARIO_ERROR)

    try:
        scenario = ScenarioLoader.load_scenario(args.file, args.default_strategy)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading scenario: {e}")
        sys.exit(EXIT_SCENARIO_ERROR)

    cli = EvictionCLI(scenario)
    verdicts = cli.evict(args.namespace, args.pod, dry_run=args.dry_run, attempts=max(1, args.attempts))
    cli.print_results(args.namespace, args.pod, verdicts)

    sys.exit(EXIT_ALLOWED if verdicts[-1].allowed else EXIT_DENIED)


if __name__ == "__main__":
    main()
