"""Run-time machinery: scheduler, orchestrator, queues and the control server."""
