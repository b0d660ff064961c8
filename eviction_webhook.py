#!/usr/bin/env python3
"""
KubeVirt-style Eviction Webhook

Validating admission webhook for pods/eviction. Evictions of virt-launcher pods
whose VMI must be live-migrated are denied with HTTP 429 and the VMI is marked
with status.evacuationNodeName, so the migration controller moves it instead.

Configure the ValidatingWebhookConfiguration with failurePolicy: Fail so that an
unreachable webhook blocks evictions instead of letting them through.
"""

import logging
from typing import Dict, Any, Optional
from flask import Flask, Response, request, jsonify
from kubernetes import client, config
from prometheus_client import generate_latest

from eviction_admitter import PodEvictionAdmitter, AdmissionVerdict, DecisionKind, STATUS_TOO_MANY_REQUESTS
from metrics import admission_counter, registry
from stores import (KubePodStore, KubeVMIStore, KubeVirtClusterConfig, StaticClusterConfig,
                    VMI_GROUP, VMI_VERSION, VMI_PLURAL)
from vmi import EvictionRequest, EvictionStrategy

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)


# Global state
class WebhookState:
    def __init__(self):
        self.admitter: Optional[PodEvictionAdmitter] = None

    def initialize(self, use_in_cluster_config: bool = False,
                   kubevirt_namespace: str = "kubevirt", kubevirt_name: str = "kubevirt",
                   default_eviction_strategy: Optional[str] = None,
                   vmi_group: str = VMI_GROUP, vmi_version: str = VMI_VERSION, vmi_plural: str = VMI_PLURAL):
        """Initialize Kubernetes clients and the admitter."""
        try:
            if use_in_cluster_config:
                config.load_incluster_config()
            else:
                config.load_kube_config()

            core_v1 = client.CoreV1Api()
            custom_api = client.CustomObjectsApi()

            if default_eviction_strategy is not None:
                config_provider = StaticClusterConfig(default_eviction_strategy)
                logger.info(f"Using static cluster eviction strategy '{default_eviction_strategy}'")
            else:
                config_provider = KubeVirtClusterConfig(custom_api, namespace=kubevirt_namespace, name=kubevirt_name)
                logger.info(f"Reading cluster eviction strategy from KubeVirt CR {kubevirt_namespace}/{kubevirt_name}")

            self.admitter = PodEvictionAdmitter(
                workload_store=KubePodStore(core_v1),
                vmi_store=KubeVMIStore(custom_api, group=vmi_group, version=vmi_version, plural=vmi_plural),
                config_provider=config_provider
            )
            logger.info(f"Webhook state initialized successfully ({vmi_plural}.{vmi_group}/{vmi_version})")
        except Exception as e:
            logger.error(f"Failed to initialize webhook state: {e}")
            raise


state = WebhookState()


def review(response: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap an AdmissionResponse in an AdmissionReview."""
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": response
    }


def is_pod_eviction(req: Dict[str, Any]) -> bool:
    """Check if an admission request is a CREATE on pods/eviction."""
    if req.get("operation", "CREATE") != "CREATE":
        return False
    resource = req.get("resource", {}).get("resource", "")
    sub_resource = req.get("subResource", "")
    return (resource == "pods" and sub_resource == "eviction") or resource == "pods/eviction"


def eviction_request_from_admission(req: Dict[str, Any]) -> EvictionRequest:
    """Extract the evicted pod from an admission request."""
    namespace = req.get("namespace") or "default"
    name = req.get("name") or (req.get("object") or {}).get("metadata", {}).get("name", "")
    return EvictionRequest(namespace=namespace, name=name, dry_run=bool(req.get("dryRun", False)))


@app.route('/validate', methods=['POST'])
def validate_webhook():
    """
    Validating webhook endpoint for pod evictions (Eviction API).

    Non-eviction requests are allowed untouched. Errors deny the eviction:
    letting it through could destroy a VM that needed to be migrated.
    """
    admission_review = request.get_json(silent=True) or {}
    req = admission_review.get("request")
    if not req:
        logger.warning("Received AdmissionReview without a request")
        return jsonify({"error": "Missing request field"}), 400

    uid = req.get("uid", "")

    try:
        if not is_pod_eviction(req):
            return jsonify(review(AdmissionVerdict(allowed=True).to_admission_response(uid)))

        eviction = eviction_request_from_admission(req)
        if not eviction.name:
            logger.warning("Eviction request missing pod name, allowing")
            return jsonify(review(AdmissionVerdict(allowed=True).to_admission_response(uid)))

        logger.info(f"Webhook received eviction for pod {eviction.namespace}/{eviction.name} (dry_run={eviction.dry_run})")

        if state.admitter is None:
            raise RuntimeError("webhook is not initialized")

        verdict = state.admitter.admit(eviction)
        return jsonify(review(verdict.to_admission_response(uid)))

    except Exception as e:
        logger.error(f"Error in validation webhook: {e}", exc_info=True)
        admission_counter.labels(outcome=DecisionKind.DENY.value).inc()
        verdict = AdmissionVerdict(allowed=False, reason=f"Webhook error: {e}", status_code=STATUS_TOO_MANY_REQUESTS)
        return jsonify(review(verdict.to_admission_response(uid)))


@app.route('/metrics')
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(registry), mimetype='text/plain')


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "admitter_ready": state.admitter is not None
    })


def main():
    import argparse

    parser = argparse.ArgumentParser(description='KubeVirt-style Eviction Webhook')
    parser.add_argument('--port', type=int, default=8443, help='Port to listen on')
    parser.add_argument('--host', type=str, default='0.0.0.0', help='Host to bind to')
    parser.add_argument('--cert', type=str, help='Path to TLS certificate')
    parser.add_argument('--key', type=str, help='Path to TLS key')
    parser.add_argument('--in-cluster', action='store_true', help='Use in-cluster config')
    parser.add_argument('--kubevirt-namespace', type=str, default='kubevirt',
                        help='Namespace of the KubeVirt CR holding the cluster eviction strategy')
    parser.add_argument('--kubevirt-name', type=str, default='kubevirt', help='Name of the KubeVirt CR')
    parser.add_argument('--default-eviction-strategy', type=str, default=None,
                        choices=[s.value for s in EvictionStrategy if s != EvictionStrategy.UNSET],
                        help='Use this cluster eviction strategy instead of reading the KubeVirt CR')
    parser.add_argument('--vmi-group', type=str, default=VMI_GROUP, help='API group of the VMI resource')
    parser.add_argument('--vmi-version', type=str, default=VMI_VERSION, help='API version of the VMI resource')
    parser.add_argument('--vmi-plural', type=str, default=VMI_PLURAL, help='Plural name of the VMI resource')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level')

    args = parser.parse_args()

    logging.getLogger().setLevel(args.log_level)

    # Initialize state
    state.initialize(
        use_in_cluster_config=args.in_cluster,
        kubevirt_namespace=args.kubevirt_namespace,
        kubevirt_name=args.kubevirt_name,
        default_eviction_strategy=args.default_eviction_strategy,
        vmi_group=args.vmi_group,
        vmi_version=args.vmi_version,
        vmi_plural=args.vmi_plural
    )

    logger.info(f"Starting KubeVirt-style eviction webhook on {args.host}:{args.port}")

    # Start webhook server with TLS if cert/key provided
    if args.cert and args.key:
        logger.info("Starting webhook with TLS")
        app.run(
            host=args.host,
            port=args.port,
            ssl_context=(args.cert, args.key)
        )
    else:
        logger.warning("Starting webhook WITHOUT TLS (not recommended for production)")
        app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
