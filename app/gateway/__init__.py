"""Action Gateway.

Provides async infrastructure for dispatching actions (chat, search,
browser, runtime, memory) to external providers with:
  - Mode Selector (remote-managed or self-hosted adapter sets)
  - Adapter Registry (lazy, cached provider adapters)
  - Resilience Layer (rate limiter, circuit breaker, retry with backoff)
  - Response Normalizer (one payload shape per resource)
  - Audit emission (one record per dispatch)
"""
