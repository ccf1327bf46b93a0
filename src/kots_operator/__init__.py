# ABOUTME: KOTS in-cluster operator package initialization
# ABOUTME: Exposes version information

"""
KOTS Operator - in-cluster agent of the KOTS application platform.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

The operator runs inside the customer's cluster. It keeps a websocket open
to the control plane (the admin console), and:

1. RECEIVES deploy/undeploy commands carrying the desired manifests,
2. RECONCILES the cluster: removes what the previous revision had and the
   new one lacks, then applies the new manifests in dependency order,
3. WATCHES the resources the control plane names and REPORTS their
   aggregated health back.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

kots_operator/
├── __init__.py          <- YOU ARE HERE
├── config.py            <- Settings (env vars, binaries)
├── errors.py            <- Exception hierarchy
├── kube.py              <- Kubernetes clients and credentials
├── applier.py           <- kubectl / kustomize / helm subprocess wrapper
├── hooks.py             <- Hook Job cleanup
├── operator.py          <- Entry point and reconnect loop
├── channel/             <- Websocket protocol, commands, dispatch
├── deploy/              <- Manifests, diff, cleanup, helm, coordinator
├── appstate/            <- Informers, health rules, monitor, reporter
└── utils/               <- Logging, control-plane HTTP client, throttle
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
