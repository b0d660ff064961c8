"""
Pod eviction admitter for virt-launcher pods.

Evicting a virt-launcher pod would kill the VM running in it. When the VMI's
eviction strategy asks for live migration, the eviction is denied and the VMI is
marked with status.evacuationNodeName instead; the migration controller picks the
mark up and moves the VM off the node. The eviction is then retried by the caller
(descheduler, drain) and allowed once the pod is gone or the VMI has moved.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional

from errors import ClusterConfigError, InconsistentStateError, MutationFailedError, describe_error
from eviction_policy import EvictionPolicyResolver
from metrics import admission_counter, evacuation_mark_counter
from stores import WorkloadStore, VMIStore, ClusterConfigProvider
from vmi import EvictionRequest, EvictionStrategy, LauncherPod, VirtualMachineInstance

logger = logging.getLogger(__name__)

# Denials ask the caller to come back later rather than giving up
STATUS_ALLOWED = 200
STATUS_TOO_MANY_REQUESTS = 429


class DecisionKind(Enum):
    PASS_THROUGH = "pass_through"
    DENY = "deny"
    DENY_AND_MARK = "deny_and_mark"


@dataclass
class Decision:
    """Outcome of evaluating one eviction."""
    kind: DecisionKind
    reason: str = ""
    node_name: str = ""  # node to record on the VMI, DENY_AND_MARK only

    @classmethod
    def pass_through(cls) -> 'Decision':
        return cls(DecisionKind.PASS_THROUGH)

    @classmethod
    def deny(cls, reason: str) -> 'Decision':
        return cls(DecisionKind.DENY, reason)

    @classmethod
    def deny_and_mark(cls, reason: str, node_name: str) -> 'Decision':
        return cls(DecisionKind.DENY_AND_MARK, reason, node_name)


@dataclass
class ResolvedWorkload:
    pod: LauncherPod
    vmi: VirtualMachineInstance


class WorkloadResolver:
    """Finds the VMI behind an evicted pod."""

    def __init__(self, workload_store: WorkloadStore, vmi_store: VMIStore):
        self.workload_store = workload_store
        self.vmi_store = vmi_store

    def resolve(self, namespace: str, name: str) -> Optional[ResolvedWorkload]:
        """
        Load the pod and its VMI.

        Returns None when the eviction is not ours to judge: the pod cannot be read,
        is not a virt-launcher, or has no domain annotation.

        Raises:
            InconsistentStateError: the pod names a VMI that cannot be fetched
        """
        try:
            pod = self.workload_store.get_pod(namespace, name)
        except Exception as e:
            logger.debug(f"Cannot read pod {namespace}/{name}, not applicable: {describe_error(e)}")
            return None

        if not pod.is_virt_launcher:
            logger.debug(f"Pod {namespace}/{name} is not a virt-launcher pod")
            return None

        vmi_name = pod.vmi_name
        if not vmi_name:
            logger.debug(f"Pod {namespace}/{name} has no VMI annotation")
            return None

        try:
            vmi = self.vmi_store.get_vmi(namespace, vmi_name)
        except Exception as e:
            raise InconsistentStateError(f"pod {namespace}/{name} references VMI {vmi_name}") from e

        return ResolvedWorkload(pod=pod, vmi=vmi)


def decide_eviction(vmi: VirtualMachineInstance, strategy: EvictionStrategy, pod: LauncherPod) -> Decision:
    """
    Decide what to do with the eviction of a VMI's launcher pod.

    Does not touch any store; a DENY_AND_MARK decision still has to be persisted.
    """
    if strategy in (EvictionStrategy.UNSET, EvictionStrategy.NONE):
        return Decision.pass_through()

    if strategy == EvictionStrategy.LIVE_MIGRATE:
        if not vmi.migratable:
            return Decision.deny(f"VMI {vmi.name} is configured with an eviction strategy but is not live-migratable")
    elif strategy == EvictionStrategy.LIVE_MIGRATE_IF_POSSIBLE:
        if not vmi.migratable:
            return Decision.pass_through()
    elif strategy != EvictionStrategy.EXTERNAL:
        raise ValueError(f"Unhandled eviction strategy: {strategy}")

    # Another eviction already started the evacuation
    if vmi.marked_for_eviction:
        return Decision.pass_through()

    # Stale request: the VMI is not (or no longer) on the evicted pod's node
    if not vmi.node_name or vmi.node_name != pod.node_name:
        return Decision.pass_through()

    return Decision.deny_and_mark(
        f"Eviction triggered evacuation of VMI \"{vmi.namespace}/{vmi.name}\"",
        vmi.node_name
    )


class StateMutator:
    """Records the evacuation mark on a VMI. Never retries."""

    def __init__(self, vmi_store: VMIStore):
        self.vmi_store = vmi_store

    def mark(self, namespace: str, name: str, node_name: str,
             resource_version: str = "", dry_run: bool = False):
        """
        Write the mark, conditional on the VMI still being at resource_version when given.

        Raises:
            MutationFailedError: the patch was rejected or could not be sent
        """
        try:
            self.vmi_store.patch_evacuation_node(namespace, name, node_name,
                                                 resource_version=resource_version, dry_run=dry_run)
        except Exception as e:
            evacuation_mark_counter.labels(result='failure', dry_run=str(dry_run).lower()).inc()
            raise MutationFailedError(f"marking VMI {namespace}/{name} for evacuation from {node_name}") from e
        evacuation_mark_counter.labels(result='success', dry_run=str(dry_run).lower()).inc()


@dataclass
class AdmissionVerdict:
    """What the webhook answers for one eviction."""
    allowed: bool
    reason: str = ""
    status_code: int = STATUS_ALLOWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "statusCode": self.status_code
        }

    def to_admission_response(self, uid: str) -> Dict[str, Any]:
        """Render as an admission.k8s.io/v1 AdmissionResponse."""
        response: Dict[str, Any] = {
            "uid": uid,
            "allowed": self.allowed
        }
        if not self.allowed:
            response["status"] = {
                "code": self.status_code,
                "message": self.reason
            }
        return response


def build_verdict(decision: Decision) -> AdmissionVerdict:
    if decision.kind == DecisionKind.PASS_THROUGH:
        return AdmissionVerdict(allowed=True)
    return AdmissionVerdict(allowed=False, reason=decision.reason, status_code=STATUS_TOO_MANY_REQUESTS)


class PodEvictionAdmitter:
    """
    Ties the pieces together for one eviction request:
    resolve workload -> resolve strategy -> decide -> mark -> verdict.

    Every failure ends in a denial; nothing here lets an eviction through
    because something went wrong.
    """

    def __init__(self, workload_store: WorkloadStore, vmi_store: VMIStore,
                 config_provider: ClusterConfigProvider):
        self.workload_resolver = WorkloadResolver(workload_store, vmi_store)
        self.policy_resolver = EvictionPolicyResolver(config_provider)
        self.state_mutator = StateMutator(vmi_store)

    def evaluate(self, request: EvictionRequest) -> Decision:
        """Evaluate an eviction, persisting the evacuation mark when the decision calls for it."""
        try:
            workload = self.workload_resolver.resolve(request.namespace, request.name)
        except InconsistentStateError as e:
            logger.warning(f"Denying eviction of {request.namespace}/{request.name}: {e}: {describe_error(e)}")
            return Decision.deny(f"kubevirt failed getting the vmi: {describe_error(e)}")

        if workload is None:
            return Decision.pass_through()

        vmi = workload.vmi
        try:
            strategy = self.policy_resolver.resolve(vmi)
        except ValueError as e:
            return Decision.deny(f"VMI {vmi.name} has an unrecognized eviction strategy: {e}")
        except ClusterConfigError as e:
            logger.error(f"Denying eviction of {request.namespace}/{request.name}: {e}: {describe_error(e)}")
            return Decision.deny(f"kubevirt failed reading the cluster configuration: {describe_error(e)}")

        decision = decide_eviction(vmi, strategy, workload.pod)
        if decision.kind != DecisionKind.DENY_AND_MARK:
            logger.info(f"Eviction of pod {request.namespace}/{request.name} ({vmi}, strategy={strategy.name}): "
                        f"{decision.kind.value} {decision.reason}".rstrip())
            return decision

        try:
            self.state_mutator.mark(vmi.namespace, vmi.name, decision.node_name,
                                    resource_version=vmi.resource_version, dry_run=request.dry_run)
        except MutationFailedError as e:
            # Includes losing a race to a concurrent eviction. Up to the caller to
            # retry; the next attempt re-reads the VMI
            logger.error(f"{e}: {describe_error(e)}")
            return Decision.deny(f"kubevirt failed marking the vmi for eviction: {describe_error(e)}")

        logger.info(f"Marked VMI {vmi.namespace}/{vmi.name} for evacuation from {decision.node_name}"
                    f"{' (dry run)' if request.dry_run else ''}, denying eviction of pod {request.name}")
        return decision

    def admit(self, request: EvictionRequest) -> AdmissionVerdict:
        decision = self.evaluate(request)
        admission_counter.labels(outcome=decision.kind.value).inc()
        return build_verdict(decision)
