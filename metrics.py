"""
Prometheus metrics for the eviction admitter.
"""

from prometheus_client import CollectorRegistry, Counter

registry = CollectorRegistry()

admission_counter = Counter(
    'pod_eviction_admission_total',
    'Pod eviction admission decisions by outcome',
    ['outcome'],
    registry=registry
)

evacuation_mark_counter = Counter(
    'vmi_evacuation_mark_total',
    'Attempts to mark a VMI for evacuation',
    ['result', 'dry_run'],
    registry=registry
)
