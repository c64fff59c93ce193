"""Runtime services for the job queue and execution lifecycle.

This layer is responsible for:
- queueing jobs and suite runs, and the user-driven job transitions
- direct executions, cooperative cancellation and live execution monitoring
- suite aggregation on both the direct and the agent path
- the periodic sessions (heartbeat, poll, probes) owned by local agents

It stays independent from the HTTP layer (`agent_hub/api`), so CLIs, the
dashboard controllers and the API reuse the same logic.
"""
