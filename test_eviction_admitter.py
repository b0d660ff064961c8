#!/usr/bin/env python3
"""
Unit tests for the pod eviction admitter.
"""

import json
import threading
import unittest
from unittest import mock
from kubernetes.client.rest import ApiException

from errors import InconsistentStateError, MutationFailedError, describe_error
from eviction_admitter import (PodEvictionAdmitter, WorkloadResolver, StateMutator, Decision, DecisionKind,
                               AdmissionVerdict, decide_eviction, build_verdict)
from metrics import registry
from stores import InMemoryPodStore, InMemoryVMIStore, StaticClusterConfig
from vmi import EvictionRequest, EvictionStrategy, LauncherPod, VirtualMachineInstance

ALL_STRATEGIES = list(EvictionStrategy)


def launcher_pod(vmi_name="vm1", node="node-a", namespace="ns", name=None):
    return LauncherPod(
        name=name or f"virt-launcher-{vmi_name}-abcde",
        namespace=namespace,
        node_name=node,
        labels={"kubevirt.io": "virt-launcher"},
        annotations={"kubevirt.io/domain": vmi_name}
    )


class TestDecideEviction(unittest.TestCase):
    """Test cases for the decision state machine."""

    def setUp(self):
        self.pod = launcher_pod()
        self.vmi = VirtualMachineInstance("vm1", "ns", node_name="node-a", migratable=True)

    def test_unset_and_none_always_pass_through(self):
        for strategy in (EvictionStrategy.UNSET, EvictionStrategy.NONE):
            for migratable in (True, False):
                for evacuation in ("", "node-a"):
                    for node in ("node-a", "node-b", ""):
                        vmi = VirtualMachineInstance("vm1", "ns", node, migratable, evacuation)
                        decision = decide_eviction(vmi, strategy, self.pod)
                        self.assertEqual(decision.kind, DecisionKind.PASS_THROUGH)

    def test_live_migrate_not_migratable_denies(self):
        self.vmi.migratable = False
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE, self.pod)
        self.assertEqual(decision.kind, DecisionKind.DENY)
        self.assertEqual(decision.reason,
                         "VMI vm1 is configured with an eviction strategy but is not live-migratable")

    def test_live_migrate_not_migratable_denies_even_when_marked(self):
        """Test that the migratability check comes before the marking guard."""
        self.vmi.migratable = False
        self.vmi.evacuation_node_name = "node-a"
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE, self.pod)
        self.assertEqual(decision.kind, DecisionKind.DENY)

    def test_live_migrate_marks(self):
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE, self.pod)
        self.assertEqual(decision.kind, DecisionKind.DENY_AND_MARK)
        self.assertEqual(decision.reason, 'Eviction triggered evacuation of VMI "ns/vm1"')
        self.assertEqual(decision.node_name, "node-a")

    def test_live_migrate_if_possible(self):
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE_IF_POSSIBLE, self.pod)
        self.assertEqual(decision.kind, DecisionKind.DENY_AND_MARK)

        self.vmi.migratable = False
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE_IF_POSSIBLE, self.pod)
        self.assertEqual(decision.kind, DecisionKind.PASS_THROUGH)

    def test_external_marks_regardless_of_migratability(self):
        for migratable in (True, False):
            self.vmi.migratable = migratable
            decision = decide_eviction(self.vmi, EvictionStrategy.EXTERNAL, self.pod)
            self.assertEqual(decision.kind, DecisionKind.DENY_AND_MARK)

    def test_already_marked_passes_through(self):
        self.vmi.evacuation_node_name = "node-a"
        for strategy in (EvictionStrategy.LIVE_MIGRATE, EvictionStrategy.LIVE_MIGRATE_IF_POSSIBLE,
                         EvictionStrategy.EXTERNAL):
            self.assertEqual(decide_eviction(self.vmi, strategy, self.pod).kind, DecisionKind.PASS_THROUGH)

    def test_stale_target_passes_through(self):
        """Test that a pod on a node the VMI is not running on is never marked."""
        stale_pod = launcher_pod(node="node-b")
        for strategy in (EvictionStrategy.LIVE_MIGRATE, EvictionStrategy.LIVE_MIGRATE_IF_POSSIBLE,
                         EvictionStrategy.EXTERNAL):
            self.assertEqual(decide_eviction(self.vmi, strategy, stale_pod).kind, DecisionKind.PASS_THROUGH)

    def test_vmi_without_node_passes_through(self):
        """Test that an unscheduled VMI fails the node guard, even against a pod without a node."""
        self.vmi.node_name = ""
        unscheduled_pod = launcher_pod(node="")
        decision = decide_eviction(self.vmi, EvictionStrategy.LIVE_MIGRATE, unscheduled_pod)
        self.assertEqual(decision.kind, DecisionKind.PASS_THROUGH)

    def test_every_strategy_is_handled(self):
        for strategy in ALL_STRATEGIES:
            decide_eviction(self.vmi, strategy, self.pod)


class TestWorkloadResolver(unittest.TestCase):
    """Test cases for WorkloadResolver."""

    def setUp(self):
        self.pods = InMemoryPodStore([launcher_pod().to_dict()])
        self.vmis = InMemoryVMIStore([VirtualMachineInstance("vm1", "ns", "node-a", True).to_dict()])
        self.resolver = WorkloadResolver(self.pods, self.vmis)

    def test_resolves_pod_and_vmi(self):
        workload = self.resolver.resolve("ns", "virt-launcher-vm1-abcde")
        self.assertIsNotNone(workload)
        self.assertEqual(workload.pod.node_name, "node-a")
        self.assertEqual(workload.vmi.name, "vm1")

    def test_missing_pod_not_applicable(self):
        self.assertIsNone(self.resolver.resolve("ns", "missing"))

    def test_pod_read_error_not_applicable(self):
        pods = mock.Mock()
        pods.get_pod.side_effect = ApiException(status=500, reason="Internal Server Error")
        self.assertIsNone(WorkloadResolver(pods, self.vmis).resolve("ns", "virt-launcher-vm1-abcde"))

    def test_regular_pod_not_applicable(self):
        pod = launcher_pod(name="nginx")
        pod.labels = {"app": "nginx"}
        self.pods.add(pod.to_dict())
        self.assertIsNone(self.resolver.resolve("ns", "nginx"))

    def test_launcher_without_annotation_not_applicable(self):
        pod = launcher_pod(name="virt-launcher-orphan")
        pod.annotations = {}
        self.pods.add(pod.to_dict())
        self.assertIsNone(self.resolver.resolve("ns", "virt-launcher-orphan"))

    def test_missing_vmi_is_inconsistent(self):
        self.pods.add(launcher_pod(vmi_name="ghost").to_dict())
        with self.assertRaises(InconsistentStateError) as ctx:
            self.resolver.resolve("ns", "virt-launcher-ghost-abcde")
        self.assertEqual(ctx.exception.__cause__.status, 404)


class TestStateMutator(unittest.TestCase):

    def test_mark(self):
        vmis = InMemoryVMIStore([VirtualMachineInstance("vm1", "ns", "node-a", True).to_dict()])
        StateMutator(vmis).mark("ns", "vm1", "node-a")
        self.assertEqual(vmis.get_vmi("ns", "vm1").evacuation_node_name, "node-a")

    def test_mark_is_conditional_on_resource_version(self):
        vmis = InMemoryVMIStore([VirtualMachineInstance("vm1", "ns", "node-a", True).to_dict()])
        stale = vmis.get_vmi("ns", "vm1").resource_version
        vmis.add(VirtualMachineInstance("vm1", "ns", "node-a", True).to_dict())

        with self.assertRaises(MutationFailedError):
            StateMutator(vmis).mark("ns", "vm1", "node-a", resource_version=stale)
        self.assertFalse(vmis.get_vmi("ns", "vm1").marked_for_eviction)

    def test_failure_is_wrapped_and_not_retried(self):
        vmis = mock.Mock()
        vmis.patch_evacuation_node.side_effect = ApiException(status=409, reason="Conflict")
        with self.assertRaises(MutationFailedError) as ctx:
            StateMutator(vmis).mark("ns", "vm1", "node-a", dry_run=True)

        vmis.patch_evacuation_node.assert_called_once_with("ns", "vm1", "node-a", resource_version="", dry_run=True)
        self.assertIn("Conflict", describe_error(ctx.exception))


class TestResponseBuilder(unittest.TestCase):

    def test_pass_through_allows(self):
        verdict = build_verdict(Decision.pass_through())
        self.assertEqual(verdict.to_dict(), {"allowed": True, "reason": "", "statusCode": 200})

    def test_denials_ask_to_retry_later(self):
        for decision in (Decision.deny("nope"), Decision.deny_and_mark("marked", "node-a")):
            verdict = build_verdict(decision)
            self.assertFalse(verdict.allowed)
            self.assertEqual(verdict.reason, decision.reason)
            self.assertEqual(verdict.status_code, 429)

    def test_admission_response(self):
        self.assertEqual(AdmissionVerdict(allowed=True).to_admission_response("uid-1"),
                         {"uid": "uid-1", "allowed": True})
        self.assertEqual(AdmissionVerdict(False, "nope", 429).to_admission_response("uid-2"),
                         {"uid": "uid-2", "allowed": False, "status": {"code": 429, "message": "nope"}})


class TestDescribeError(unittest.TestCase):

    def test_uses_api_server_message(self):
        error = ApiException(status=404, reason="Not Found")
        error.body = json.dumps({"message": 'virtualmachineinstances.kubevirt.io "vm1" not found'})
        self.assertEqual(describe_error(error), 'virtualmachineinstances.kubevirt.io "vm1" not found (404)')

    def test_falls_back_to_reason(self):
        error = ApiException(status=500, reason="Internal Server Error")
        error.body = "not json"
        self.assertEqual(describe_error(error), "Internal Server Error (500)")

    def test_plain_exception(self):
        self.assertEqual(describe_error(TimeoutError("timed out")), "timed out")


class TestPodEvictionAdmitter(unittest.TestCase):
    """End-to-end test cases for PodEvictionAdmitter with in-memory stores."""

    def setUp(self):
        self.pods = InMemoryPodStore([launcher_pod().to_dict()])
        self.vmis = InMemoryVMIStore()
        self.request = EvictionRequest(namespace="ns", name="virt-launcher-vm1-abcde")

    def admitter(self, default_strategy=None):
        return PodEvictionAdmitter(self.pods, self.vmis, StaticClusterConfig(default_strategy))

    def add_vmi(self, strategy=None, migratable=True, node="node-a", evacuation=""):
        self.vmis.add(VirtualMachineInstance("vm1", "ns", node, migratable, evacuation, strategy).to_dict())

    def test_migratable_vmi_is_marked(self):
        self.add_vmi("LiveMigrateIfPossible")
        verdict = self.admitter().admit(self.request)

        self.assertEqual(verdict.to_dict(), {
            "allowed": False,
            "reason": "Eviction triggered evacuation of VMI \"ns/vm1\"",
            "statusCode": 429
        })
        self.assertEqual(self.vmis.get_vmi("ns", "vm1").evacuation_node_name, "node-a")

    def test_not_migratable_vmi_is_denied_unchanged(self):
        self.add_vmi("LiveMigrate", migratable=False)
        verdict = self.admitter().admit(self.request)

        self.assertFalse(verdict.allowed)
        self.assertEqual(verdict.status_code, 429)
        self.assertTrue(verdict.reason.endswith("not live-migratable"))
        self.assertFalse(self.vmis.get_vmi("ns", "vm1").marked_for_eviction)
        self.assertEqual(self.vmis.patch_count, 0)

    def test_cluster_default_strategy(self):
        self.add_vmi()
        self.assertTrue(self.admitter().admit(self.request).allowed)
        self.assertFalse(self.admitter("External").admit(self.request).allowed)
        self.assertEqual(self.vmis.get_vmi("ns", "vm1").evacuation_node_name, "node-a")

    def test_strategy_none_allows(self):
        self.add_vmi("None")
        verdict = self.admitter("LiveMigrate").admit(self.request)
        self.assertTrue(verdict.allowed)
        self.assertEqual(self.vmis.patch_count, 0)

    def test_second_eviction_passes_through(self):
        self.add_vmi("LiveMigrate")
        admitter = self.admitter()

        first = admitter.evaluate(self.request)
        second = admitter.evaluate(self.request)

        self.assertEqual(first.kind, DecisionKind.DENY_AND_MARK)
        self.assertEqual(second.kind, DecisionKind.PASS_THROUGH)
        self.assertEqual(self.vmis.patch_count, 1)

    def test_stale_pod_passes_through(self):
        self.add_vmi("LiveMigrate", node="node-b")
        self.assertTrue(self.admitter().admit(self.request).allowed)
        self.assertFalse(self.vmis.get_vmi("ns", "vm1").marked_for_eviction)

    def test_dry_run_reports_mark_without_persisting(self):
        self.add_vmi("LiveMigrate")
        request = EvictionRequest(namespace="ns", name="virt-launcher-vm1-abcde", dry_run=True)

        decision = self.admitter().evaluate(request)

        self.assertEqual(decision.kind, DecisionKind.DENY_AND_MARK)
        self.assertFalse(self.vmis.get_vmi("ns", "vm1").marked_for_eviction)

    def test_missing_vmi_denies(self):
        verdict = self.admitter("LiveMigrate").admit(self.request)
        self.assertFalse(verdict.allowed)
        self.assertTrue(verdict.reason.startswith("kubevirt failed getting the vmi: "))
        self.assertIn("vm1", verdict.reason)

    def test_non_launcher_pod_allows(self):
        self.assertTrue(self.admitter("LiveMigrate").admit(EvictionRequest("ns", "missing-pod")).allowed)

    def test_mark_failure_denies(self):
        """Test that a failed patch still denies, reporting the cause."""
        self.add_vmi("LiveMigrate")
        with mock.patch.object(self.vmis, "patch_evacuation_node",
                               side_effect=ApiException(status=500, reason="etcd unavailable")):
            decision = self.admitter().evaluate(self.request)

        self.assertEqual(decision.kind, DecisionKind.DENY)
        self.assertEqual(decision.reason, "kubevirt failed marking the vmi for eviction: etcd unavailable (500)")

        # A retry re-reads the VMI and marks it this time
        retried = self.admitter().evaluate(self.request)
        self.assertEqual(retried.kind, DecisionKind.DENY_AND_MARK)
        self.assertEqual(self.vmis.get_vmi("ns", "vm1").evacuation_node_name, "node-a")

    def test_concurrent_evictions_mark_once(self):
        """Test that two evictions racing on one VMI mark it once and deny the loser."""
        self.add_vmi("LiveMigrate")
        admitter = self.admitter()
        both_read = threading.Barrier(2, timeout=5)
        get_vmi = self.vmis.get_vmi

        def get_vmi_then_wait(namespace, name):
            vmi = get_vmi(namespace, name)
            both_read.wait()
            return vmi

        decisions = []
        with mock.patch.object(self.vmis, "get_vmi", side_effect=get_vmi_then_wait):
            threads = [threading.Thread(target=lambda: decisions.append(admitter.evaluate(self.request)))
                       for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        self.assertEqual(len(decisions), 2)
        kinds = sorted(decision.kind.value for decision in decisions)
        self.assertEqual(kinds, [DecisionKind.DENY.value, DecisionKind.DENY_AND_MARK.value])
        loser = next(decision for decision in decisions if decision.kind == DecisionKind.DENY)
        self.assertTrue(loser.reason.startswith("kubevirt failed marking the vmi for eviction: "))
        self.assertIn("/metadata/resourceVersion", loser.reason)
        self.assertEqual(self.vmis.patch_count, 1)

        # The loser's retry sees the mark and lets the eviction through
        self.assertEqual(admitter.evaluate(self.request).kind, DecisionKind.PASS_THROUGH)

    def test_cluster_config_failure_denies(self):
        self.add_vmi()
        provider = mock.Mock()
        provider.get_eviction_strategy.side_effect = ApiException(status=403, reason="Forbidden")
        admitter = PodEvictionAdmitter(self.pods, self.vmis, provider)

        verdict = admitter.admit(self.request)
        self.assertFalse(verdict.allowed)
        self.assertEqual(verdict.reason, "kubevirt failed reading the cluster configuration: Forbidden (403)")

    def test_unknown_strategy_denies(self):
        self.add_vmi("Teleport")
        verdict = self.admitter().admit(self.request)
        self.assertFalse(verdict.allowed)
        self.assertIn("unrecognized eviction strategy", verdict.reason)

    def test_outcomes_are_counted(self):
        self.add_vmi("LiveMigrate")
        before = registry.get_sample_value('pod_eviction_admission_total', {'outcome': 'deny_and_mark'}) or 0.0
        marks = registry.get_sample_value('vmi_evacuation_mark_total',
                                          {'result': 'success', 'dry_run': 'false'}) or 0.0

        self.admitter().admit(self.request)

        self.assertEqual(registry.get_sample_value('pod_eviction_admission_total', {'outcome': 'deny_and_mark'}),
                         before + 1)
        self.assertEqual(registry.get_sample_value('vmi_evacuation_mark_total',
                                                   {'result': 'success', 'dry_run': 'false'}), marks + 1)


if __name__ == '__main__':
    unittest.main()
