"""
Memory module - heterogeneous memory stores and retrieval.

Kinds:
- stm: Short-term fragments awaiting consolidation
- ltm: Durable, consolidated memories
- episodic: Timestamped events and interactions
- entity / relationship: Knowledge graph
- note: Processed user notes

Storage: SQLite (aiosqlite), embeddings as float32 blobs
"""
