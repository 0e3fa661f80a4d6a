from typing import Dict, List
import logging

from llm_gateway.kv import KeyValueStore

logger = logging.getLogger(__name__)

def memory_key(session_id: str) -> str:
    return f"memory:{session_id}"

class SessionMemory:
    """
    Bounded window of the most recent turns of each session, stored as one
    JSON blob per session key.

    append() overwrites the whole window with a single put. Concurrent
    writers for the same session are not reconciled: the last put wins.
    """

    def __init__(self, kv: KeyValueStore, window: int = 10):
        self.kv = kv
        self.window = window

    async def load(self, session_id: str) -> List[Dict[str, str]]:
        stored = await self.kv.get_json(memory_key(session_id))
        if not isinstance(stored, list):
            return []
        return [
            {"role": message["role"], "content": message["content"]}
            for message in stored
            if isinstance(message, dict) and "role" in message and "content" in message
        ]

    async def append(self, session_id: str, conversation: List[Dict[str, str]]) -> List[Dict[str, str]]:
        window = list(conversation)[-self.window:] if self.window > 0 else []
        await self.kv.put_json(memory_key(session_id), window)
        logger.debug("stored %d messages for session %s", len(window), session_id)
        return window
