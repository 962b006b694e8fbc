"""
WorkspaceReconciler (FastAPI): README-lite

Overview
- This package converges parameterized development workspaces onto a container
  engine. A workspace is a template, a set of parameter values, and a lifecycle
  gate (stopped | running). The reconciler produces the concrete resources
  (image, durable volumes, one container, agent handshake, exposed apps) and
  re-applies only what changed.

Key Design Points
- Explicit resource graph: fingerprint -> image, volume:<category> (concurrent)
  -> instance -> handshake -> apps, applied in topological order.
- Fingerprint-gated builds: an unchanged build context never rebuilds.
- Durable volumes: names derive from (workspace id, category) only; stopping or
  recreating the instance reattaches the same volumes. Volumes are only removed
  on an explicit purge when the workspace is destroyed.
- Non-blocking agent bootstrap: the instance is up as soon as its agent
  registers; the startup script runs in the background.
- Explicit engine endpoint: WORKSPACE_ENGINE_URL is passed into the Docker
  adapter; there is no ambient provider state.

Quickstart (local)
  $ python -m venv ./venv
  $ source ./venv/bin/activate
  $ pip install -e ".[test]"
  $ wr-server --host 127.0.0.1 --port 8081
- Health check (unauthenticated):
  GET http://127.0.0.1:8081/health

Authentication
- Platform routes: API key header (WORKSPACE_API_KEY_HEADER, default X-API-Key)
  matching WORKSPACE_API_KEY or one of WORKSPACE_API_KEYS. Disabled when unset.
- Agent routes: the per-instance agent token (X-Agent-Token or
  Authorization: Bearer <token>).

Core Endpoints (summary)
- Templates:
  - GET /templates, GET /templates/{name}, GET /templates/errors
- Workspaces:
  - POST /workspaces
    Request: { template, name, owner?, parameters?, start?, wait_for_agent? }
    Response: { workspace, reconcile? }
  - GET /workspaces[?owner=], GET /workspaces/{id}
  - PATCH /workspaces/{id}/parameters
    Request: { parameters }   # mutable parameters only; applied on next start
  - POST /workspaces/{id}/start[?wait_for_agent=], POST /workspaces/{id}/stop
  - POST /workspaces/{id}/reconcile[?wait_for_agent=]
  - DELETE /workspaces/{id}[?purge=true]
  - GET /workspaces/{id}/apps[?refresh=true]
- Agent callbacks:
  - POST /agent/register[?format=script]
  - POST /agent/lifecycle   Request: { state: starting|ready|start_error, exit_code? }

Errors
- Bodies are { error, stage, detail }.
- 400 parameter_invalid, 404 workspace/template not found, 409 volume_conflict,
  422 resource_spec_invalid, 502 build/instance/engine failures,
  500 stage_ordering_error.

Environment Configuration (.env support)
- A .env file in the working directory is read at startup for the keys listed
  in wr_server.app.config (never overriding the process environment).
- WORKSPACE_ENGINE_URL               # default unix:///var/run/docker.sock
- WORKSPACE_ENGINE_SOCKET            # host socket mounted into instances
- WORKSPACE_TEMPLATES_DIR            # extra template directory
- WORKSPACE_STATE_DIR                # persist workspace records as JSON
- WORKSPACE_AGENT_TOKEN_SECRET       # HMAC secret for agent tokens
- WORKSPACE_ACCESS_URL               # URL agents use to reach this service
- WORKSPACE_HANDSHAKE_TIMEOUT_SECONDS, WORKSPACE_HANDSHAKE_POLL_SECONDS
- WORKSPACE_PURGE_ON_DELETE, WORKSPACE_STOP_TIMEOUT_SECONDS
- CORS_ALLOW_ORIGINS, WORKSPACE_RECONCILER_VERSION, LOG_LEVEL

Runtime Notes
- Instances get the host engine socket mounted at /var/run/docker.sock so they
  can run nested containers. This is a deliberate privilege grant; any safety
  comes from the deployment's trust boundary.

Version
- Matches pyproject: 0.1.0
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
