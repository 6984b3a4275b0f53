"""
Job queue — Decouples workflow triggering from step execution.

- The trigger dispatcher and webhook ingestion PUBLISH flow-step jobs
- FlowStepConsumer CONSUMES them and drives the Flow Session Engine
- DelayScheduler sweeps durable delay jobs (delay nodes, input timeouts, retries)
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
