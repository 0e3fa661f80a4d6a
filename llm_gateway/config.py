from dataclasses import dataclass, field
from typing import List, Optional
import os

from dotenv import load_dotenv

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Provide concise and accurate responses."


@dataclass(frozen=True)
class GatewayConfig:
    chat_model: str = "gpt-4o-mini"
    image_model: str = "dall-e-3"
    embedding_model: str = "text-embedding-3-small"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    memory_window: int = 10
    max_tokens: int = 1024
    image_size: str = "1024x1024"
    default_namespace: str = "default"
    list_limit: int = 50
    fetch_timeout: float = 15.0
    api_prefix: str = "/api/"
    assets_dir: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    openai_api_key: str
    database_url: str
    redis_url: Optional[str] = None
    graphite_host: str = "localhost"
    graphite_port: int = 8125
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    gateway: GatewayConfig = field(default_factory=GatewayConfig)


def load_settings() -> Settings:
    load_dotenv()

    defaults = GatewayConfig()
    gateway = GatewayConfig(
        chat_model=os.environ.get("CHAT_MODEL", defaults.chat_model),
        image_model=os.environ.get("IMAGE_MODEL", defaults.image_model),
        embedding_model=os.environ.get("EMBEDDING_MODEL", defaults.embedding_model),
        system_prompt=os.environ.get("SYSTEM_PROMPT", defaults.system_prompt),
        memory_window=int(os.environ.get("MEMORY_WINDOW", defaults.memory_window)),
        max_tokens=int(os.environ.get("MAX_TOKENS", defaults.max_tokens)),
        assets_dir=os.environ.get("ASSETS_DIR", "public"),
    )
    origins = os.environ.get("CORS_ORIGINS", "*")

    return Settings(
        openai_api_key=os.environ["OPENAI_API_KEY"],
        database_url=os.environ["DATABASE_URL"],
        redis_url=os.environ.get("REDIS_URL") or None,
        graphite_host=os.environ.get("GRAPHITE_HOST", "localhost"),
        graphite_port=int(os.environ.get("GRAPHITE_HOST_PORT", 8125)),
        cors_origins=[origin.strip() for origin in origins.split(",") if origin.strip()],
        gateway=gateway,
    )
