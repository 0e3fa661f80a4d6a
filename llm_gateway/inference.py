from openai import AsyncOpenAI, OpenAIError
from typing import Any, AsyncIterator, Dict, List
import time
import statsd

from llm_gateway.config import GatewayConfig

def get_time_millis():
    return round(time.time() * 1000)

class InferenceService:
    """
    The managed inference service seen as a black box: a structured prompt
    goes in, a completion (whole or incremental), an image payload or an
    embedding payload comes out.

    Image and embedding payloads are returned raw, as plain dicts, because
    their shape differs between providers. See llm_gateway.normalizer.
    """

    def __init__(self, metrics: statsd.StatsClient, config: GatewayConfig):
        self.metrics = metrics
        self.config = config

    # these methods should be overriden in the implementation
    async def chat(self, messages: List[Dict[str, str]], max_tokens: int) -> str:
        raise NotImplementedError

    async def stream_chat(self, messages: List[Dict[str, str]], max_tokens: int) -> AsyncIterator[str]:
        raise NotImplementedError

    async def generate_image(self, prompt: str, size: str) -> Any:
        raise NotImplementedError

    async def embed(self, text: str) -> Any:
        raise NotImplementedError

class OpenAIInference(InferenceService):
    def __init__(self, metrics: statsd.StatsClient, config: GatewayConfig, openai_api_key: str = None, client: AsyncOpenAI = None):
        super().__init__(metrics=metrics, config=config)
        self.openai_client = client or AsyncOpenAI(api_key=openai_api_key)

    async def chat(self, messages, max_tokens):
        try:
            response = await self.openai_client.chat.completions.create(
                model=self.config.chat_model, messages=messages, max_tokens=max_tokens
            )
        except OpenAIError:
            self.metrics.incr("errors.generate_response")
            raise

        self.metrics.incr("success.generate_response")
        if response.usage is not None:
            self.metrics.incr("tokens.prompt", response.usage.prompt_tokens)
            self.metrics.incr("tokens.completion", response.usage.completion_tokens)
        return response.choices[0].message.content or ""

    async def stream_chat(self, messages, max_tokens):
        # connection and request errors surface here, before any chunk is relayed
        try:
            stream = await self.openai_client.chat.completions.create(
                model=self.config.chat_model, messages=messages, max_tokens=max_tokens, stream=True
            )
        except OpenAIError:
            self.metrics.incr("errors.stream_response")
            raise

        self.metrics.incr("success.stream_response")
        return self._iter_deltas(stream)

    async def _iter_deltas(self, stream):
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta

    async def generate_image(self, prompt, size):
        try:
            response = await self.openai_client.images.generate(
                model=self.config.image_model, prompt=prompt, size=size, n=1
            )
        except OpenAIError:
            self.metrics.incr("errors.generate_image")
            raise

        self.metrics.incr("success.generate_image")
        return response.model_dump()

    async def embed(self, text):
        try:
            response = await self.openai_client.embeddings.create(
                model=self.config.embedding_model, input=text
            )
        except OpenAIError:
            self.metrics.incr("errors.embed")
            raise

        self.metrics.incr("success.embed")
        return response.model_dump()
