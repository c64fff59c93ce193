"""HTTP API layer (FastAPI).

Exposes a versioned `/api/v1` surface for the dashboard and agent processes:
- agents: registration, presence list, activity, deletion
- agent-api: heartbeat/poll/start/result/status, action form and path form
- jobs, tests, executions and suites: queueing, direct runs, cancellation

Core behavior lives in `agent_hub/runtime`, `agent_hub/functions` and
`agent_hub/storage`; routers only translate HTTP to those calls.
"""
