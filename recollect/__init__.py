"""
Recollect

Personal-context retrieval for conversational assistants.

Philosophy:
- Every piece of personal knowledge is a plain-text chunk
- Intent decides how exact, entity and semantic evidence is weighed
- A failed model call degrades to heuristics, never to an error
- Repeated or similar questions are answered from the semantic cache

Usage:
    from recollect.common import load_config, InMemoryChunkStore
    from recollect.common.schemas import Chunk, Intent
    from recollect.cache import SemanticCache
    from recollect.retriever import PersonalizationEngine, Credentials
"""

__version__ = "0.1.0"
