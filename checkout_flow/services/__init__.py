"""
Services Package for Checkout Flow
==================================

Infrastructure the HTTP layer builds on:

- **cache**: TTLCache with injected clock, capacity and TTL
- **session**: FlowSessionStore, one runner per live checkout
- **modifiers**: per-SKU modifier lookup over HTTP, TTL cached

Each cache instance is owned by the component that uses it.
"""
