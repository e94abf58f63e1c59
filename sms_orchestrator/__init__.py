"""SMS Orchestrator: automated SMS conversations for a claims service.

Architecture Overview
=====================

Inbound SMS arrive on a webhook and are queued; a queue processor drains
them one conversation turn at a time.  Each turn is a **LangGraph** state
machine:

    halt_check → rate_check → context → generate → reply → actions

- **halt_check** stops automation for halted numbers and answers opt-outs,
  complaints and abusive messages with a fixed acknowledgement.
- **generate** asks the LLM (Claude, falling back to OpenAI models) for a
  JSON plan: one reply plus follow-up actions.
- **reply** / **actions** send SMS, create portal links, schedule
  follow-ups and request callbacks, each guarded by an idempotency key so
  a retried turn never double-sends.

Key Design Decisions
--------------------
- **State**: Redis (or an in-process store for local runs and tests) holds
  the queue, per-phone locks, idempotency keys, halts and follow-ups.
- **Ordering**: a per-phone lease serialises turns; messages for a busy
  phone are requeued instead of blocking the worker.
- **Retries**: failed turns are parked with linear backoff and dropped
  after the configured number of attempts.
- **Follow-ups**: due items are delivered by a sweep (cron) and before
  every turn for that phone, and never outside business hours.

Package Structure
-----------------
- ``sms_orchestrator/agent.py`` - LangGraph turn graph
- ``sms_orchestrator/worker.py`` - queue processor
- ``sms_orchestrator/sweeper.py`` - follow-up delivery
- ``sms_orchestrator/runtime.py`` - component wiring
- ``sms_orchestrator/server.py`` - FastAPI application
- ``sms_orchestrator/main.py`` - CLI (worker, sweep, simulator)
- ``sms_orchestrator/services/`` - store, queue, locks, LLM and HTTP clients
- ``sms_orchestrator/api/`` - FastAPI routes and Pydantic schemas
"""
