"""
Key-value store used for session memory, image bytes, embeddings and
project files. Values are strings; JSON helpers sit on top. There are
no transactions: every put is a blind overwrite and the last writer wins.
"""

from typing import Any, Dict, Optional
import json

from redis.asyncio import Redis


class KeyValueStore:
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str):
        raise NotImplementedError

    async def close(self):
        pass

    async def get_json(self, key: str) -> Any:
        value = await self.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def put_json(self, key: str, value: Any):
        await self.put(key, json.dumps(value))


class RedisKeyValueStore(KeyValueStore):
    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(self, key: str, value: str):
        await self.client.set(key, value)

    async def close(self):
        await self.client.aclose()


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def put(self, key: str, value: str):
        self.data[key] = value
