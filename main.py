from llm_gateway.app import create_app
from llm_gateway.config import load_settings
from llm_gateway.diagnostics import Diagnostics
from llm_gateway.gateway import Gateway
from llm_gateway.inference import OpenAIInference
from llm_gateway.kv import InMemoryKeyValueStore, RedisKeyValueStore
from sqlmodel import create_engine, SQLModel
import logging
import statsd

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

settings = load_settings()

pg_engine = create_engine(settings.database_url)
metrics = statsd.StatsClient(host=settings.graphite_host, port=settings.graphite_port, prefix="production.llmgateway")

# create all tables
SQLModel.metadata.create_all(pg_engine)

if settings.redis_url:
    kv = RedisKeyValueStore.from_url(settings.redis_url)
else:
    logging.getLogger(__name__).warning("REDIS_URL not set, using a process-local key-value store")
    kv = InMemoryKeyValueStore()

gateway = Gateway(
    config=settings.gateway,
    inference=OpenAIInference(metrics=metrics, config=settings.gateway, openai_api_key=settings.openai_api_key),
    kv=kv,
    engine=pg_engine,
    metrics=metrics,
    diagnostics=Diagnostics(metrics),
)

app = create_app(gateway, cors_origins=settings.cors_origins)
