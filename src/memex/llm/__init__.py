"""
LLM module - response and embedding provider abstraction.

Providers:
- local: On-device LLM via OpenAI-compatible API (chat + embeddings)
- remote: Hosted models via LiteLLM

Router keeps anything personal on-device.
"""
