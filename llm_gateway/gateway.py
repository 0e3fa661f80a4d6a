from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
import logging
import time
import uuid

import statsd
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlmodel import Session, select

from llm_gateway.config import GatewayConfig
from llm_gateway.diagnostics import BestEffortRunner, Diagnostics
from llm_gateway.errors import ClientError, UpstreamError
from llm_gateway.inference import InferenceService, get_time_millis
from llm_gateway.journal import DurableLogger, list_log_records
from llm_gateway.kv import KeyValueStore
from llm_gateway.memory import SessionMemory
from llm_gateway.models import ROLES, ChatMessage, FileNode, ImageArtifact
from llm_gateway.normalizer import ImageNormalizer, extract_embedding, fetch_url

logger = logging.getLogger(__name__)

FILE_TREE_KEY = "file-tree"

def image_key(artifact_id: str) -> str:
    return f"image:{artifact_id}"

def embedding_key(namespace: str, embedding_id: str) -> str:
    return f"embedding:{namespace}:{embedding_id}"

def file_key(path: str) -> str:
    return f"file:{path}"

def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()

def anon_session_id() -> str:
    return f"anon:{get_time_millis()}"

def assemble_prompt(system_prompt: str, messages: List[Dict[str, str]], memory: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    The sequence sent to the model: the caller's messages with a system
    prompt in front unless they already carry one, then the stored memory
    window as trailing context.
    """
    prompt = list(messages)
    if not any(message["role"] == "system" for message in prompt):
        prompt.insert(0, {"role": "system", "content": system_prompt})
    return prompt + [message for message in memory if message["role"] != "system"]

def _require_messages(body: Dict[str, Any]) -> List[Dict[str, str]]:
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise ClientError("messages must be an array")

    parsed = []
    for message in messages:
        if not isinstance(message, dict):
            raise ClientError("each message must be an object")
        role, content = message.get("role"), message.get("content")
        if role not in ROLES or not isinstance(content, str):
            raise ClientError("each message needs a role (system, user or assistant) and string content")
        parsed.append(ChatMessage(role=role, content=content).model_dump())
    return parsed

def _require_text(body: Dict[str, Any], field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ClientError(f"{field} is required")
    return value

def _optional_text(body: Dict[str, Any], field: str) -> Optional[str]:
    value = body.get(field)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ClientError(f"{field} must be a non-empty string")
    return value

def _session_id(body: Dict[str, Any]) -> Optional[str]:
    session_id = _optional_text(body, "session_id")
    # it is echoed back in a response header
    if session_id is not None and not (session_id.isascii() and session_id.isprintable()):
        raise ClientError("session_id must be printable ascii")
    return session_id


class Gateway:
    """
    Composition root for every route: memory is read before the model is
    invoked, the result is normalized, memory is written back and the
    exchange is logged. Bookkeeping failures are reported to diagnostics
    and never change the status of the primary operation.
    """

    def __init__(
        self,
        config: GatewayConfig,
        inference: InferenceService,
        kv: KeyValueStore,
        engine,
        metrics: statsd.StatsClient,
        diagnostics: Diagnostics = None,
        fetcher=fetch_url,
    ):
        self.config = config
        self.inference = inference
        self.kv = kv
        self.engine = engine
        self.metrics = metrics
        self.diagnostics = diagnostics or Diagnostics(metrics)
        self.runner = BestEffortRunner(self.diagnostics)
        self.memory = SessionMemory(kv, window=config.memory_window)
        self.journal = DurableLogger(engine, self.diagnostics)
        self.normalizer = ImageNormalizer(self.diagnostics, fetcher=fetcher, timeout=config.fetch_timeout)

    # ── chat ────────────────────────────────────

    async def chat(self, body: Dict[str, Any]):
        self.metrics.incr("chat")
        start_time = time.time()

        messages = _require_messages(body)
        session_id = _session_id(body) or anon_session_id()

        try:
            history = await self.memory.load(session_id)
        except Exception as exc:
            self.diagnostics.report("memory.load", exc)
            history = []

        prompt = assemble_prompt(self.config.system_prompt, messages, history)

        if body.get("stream"):
            try:
                chunks = await self.inference.stream_chat(prompt, self.config.max_tokens)
            except Exception as exc:
                self.diagnostics.report("chat.inference", exc)
                raise UpstreamError("inference service failed") from exc
            return StreamingResponse(
                self._relay(chunks, session_id, messages, history),
                media_type="text/plain; charset=utf-8",
                headers={"X-Session-Id": session_id, "Cache-Control": "no-cache"},
            )

        try:
            reply = await self.inference.chat(prompt, self.config.max_tokens)
        except Exception as exc:
            self.diagnostics.report("chat.inference", exc)
            raise UpstreamError("inference service failed") from exc

        await self._remember(session_id, messages, history, reply)
        await self.journal.record("chat", self._chat_request_summary(session_id, messages, history), {"reply": reply, "streamed": False})

        self.metrics.timing("chat.timed", time.time() - start_time)
        return {"reply": reply, "session_id": session_id}

    async def _relay(self, chunks: AsyncIterator[str], session_id: str, messages, history) -> AsyncIterator[str]:
        buffer: List[str] = []
        interrupted = True
        try:
            async for chunk in chunks:
                buffer.append(chunk)
                yield chunk
            interrupted = False
        except Exception as exc:
            # headers are already out; end the body with what we have
            interrupted = False
            self.diagnostics.report("chat.stream", exc)
        finally:
            if interrupted:
                # caller went away, the model already ran: keep what was produced
                self.runner.submit("chat.finish", self._finish_stream(session_id, messages, history, "".join(buffer), complete=False))

        reply = "".join(buffer)
        await self._remember(session_id, messages, history, reply)
        self.runner.submit(
            "journal.chat",
            self.journal.record("chat", self._chat_request_summary(session_id, messages, history), {"reply": reply, "streamed": True}),
        )

    async def _finish_stream(self, session_id, messages, history, reply, complete):
        await self._remember(session_id, messages, history, reply)
        await self.journal.record(
            "chat",
            self._chat_request_summary(session_id, messages, history),
            {"reply": reply, "streamed": True, "complete": complete},
        )

    async def _remember(self, session_id, messages, history, reply) -> bool:
        conversation = [message for message in history + messages if message["role"] != "system"]
        if reply:
            conversation.append({"role": "assistant", "content": reply})
        return await self.runner.run("memory.append", self.memory.append(session_id, conversation))

    @staticmethod
    def _chat_request_summary(session_id, messages, history):
        return {"session_id": session_id, "messages": messages, "memory_size": len(history)}

    # ── images ──────────────────────────────────

    async def text_to_image(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.metrics.incr("text_to_image")

        prompt = _require_text(body, "prompt")
        size = _optional_text(body, "size") or self.config.image_size
        session_id = _session_id(body)

        try:
            raw = await self.inference.generate_image(prompt, size)
        except Exception as exc:
            self.diagnostics.report("images.inference", exc)
            raise UpstreamError("image generation failed") from exc

        image = await self.normalizer.normalize(raw)

        artifact_id = uuid.uuid4().hex
        created_at = utc_now()

        # bytes and metadata are stored independently; either may fail alone
        has_bytes = False
        if image.has_bytes:
            has_bytes = await self.runner.run("images.bytes", self.kv.put(image_key(artifact_id), image.b64))

        artifact = ImageArtifact(
            id=artifact_id,
            created_at=created_at,
            prompt=prompt,
            size=size,
            has_bytes=has_bytes,
            source_url=image.source_url,
            session_id=session_id,
        )
        await self.runner.run("images.metadata", run_in_threadpool(self._save_artifact, artifact))

        meta = {"strategy": image.strategy, "source_url": image.source_url, "model": self.config.image_model}
        await self.journal.record(
            "image",
            {"prompt": prompt, "size": size, "session_id": session_id},
            {"id": artifact_id, "has_bytes": has_bytes} | meta,
        )

        return {
            "id": artifact_id,
            "created_at": created_at,
            "prompt": prompt,
            "size": size,
            "access_url": f"{self.config.api_prefix}images/{artifact_id}" if has_bytes else image.source_url,
            "has_base64": has_bytes,
            "meta": meta,
        }

    def _save_artifact(self, artifact: ImageArtifact):
        with Session(self.engine) as session:
            session.add(artifact)
            session.commit()

    def _recent_artifacts(self, limit: int) -> List[Dict[str, Any]]:
        with Session(self.engine) as session:
            artifacts = session.exec(select(ImageArtifact).order_by(ImageArtifact.seq.desc()).limit(limit)).all()
            return [artifact.model_dump(exclude={"seq"}) for artifact in artifacts]

    async def list_images(self) -> List[Dict[str, Any]]:
        try:
            return await run_in_threadpool(self._recent_artifacts, self.config.list_limit)
        except Exception as exc:
            self.diagnostics.report("images.list", exc)
            raise UpstreamError("could not list images") from exc

    async def get_image(self, artifact_id: str) -> Dict[str, Any]:
        try:
            b64 = await self.kv.get(image_key(artifact_id))
        except Exception as exc:
            self.diagnostics.report("images.get", exc)
            raise UpstreamError("could not read image") from exc
        if not b64:
            raise ClientError("image not found", status_code=404)
        return {"id": artifact_id, "b64": b64}

    # ── embeddings ──────────────────────────────

    async def embeddings(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.metrics.incr("embeddings")

        text = _require_text(body, "text")
        namespace = body.get("namespace") or self.config.default_namespace

        try:
            raw = await self.inference.embed(text)
        except Exception as exc:
            self.diagnostics.report("embeddings.inference", exc)
            raise UpstreamError("embedding failed") from exc

        vector = extract_embedding(raw)
        request_summary = {"namespace": namespace, "chars": len(text)}
        if vector is None:
            self.diagnostics.report("embeddings.shape", ValueError(f"no embedding in payload: {str(raw)[:200]}"))
            await self.journal.record("embedding", request_summary, {"stored": False, "error": "no embedding in payload"})
            raise UpstreamError("embedding failed")

        embedding_id = uuid.uuid4().hex
        try:
            await self.kv.put_json(embedding_key(namespace, embedding_id), {
                "id": embedding_id,
                "namespace": namespace,
                "text": text,
                "vector": vector,
                "model": self.config.embedding_model,
                "created_at": utc_now(),
            })
        except Exception as exc:
            self.diagnostics.report("embeddings.store", exc)
            await self.journal.record(
                "embedding",
                request_summary,
                {"id": embedding_id, "dimensions": len(vector), "stored": False, "error": "store write failed"},
            )
            raise UpstreamError("could not store embedding") from exc

        await self.journal.record(
            "embedding",
            request_summary,
            {"id": embedding_id, "dimensions": len(vector), "stored": True},
        )
        return {"id": embedding_id, "namespace": namespace}

    # ── logs ────────────────────────────────────

    async def log_build(self, body: Dict[str, Any]) -> Dict[str, Any]:
        log_text = body.get("log_text")
        if not isinstance(log_text, str):
            raise ClientError("log_text is required")

        request_summary = {
            "timestamp": body.get("timestamp") or utc_now(),
            "source": body.get("source") or "unknown",
        }
        try:
            record_id = await self.journal.write("build", request_summary, log_text)
        except Exception as exc:
            self.diagnostics.report("journal.build", exc)
            raise UpstreamError("could not store build log") from exc
        return {"success": True, "id": record_id}

    async def logs(self, kind: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = self.config.list_limit if limit is None else limit
        limit = max(1, min(limit, self.config.list_limit))
        try:
            return await run_in_threadpool(list_log_records, self.engine, limit, kind)
        except Exception as exc:
            self.diagnostics.report("journal.list", exc)
            raise UpstreamError("could not read logs") from exc

    # ── project files ───────────────────────────

    async def file_tree(self) -> Dict[str, Any]:
        try:
            tree = await self.kv.get_json(FILE_TREE_KEY)
        except Exception as exc:
            self.diagnostics.report("files.tree", exc)
            raise UpstreamError("could not read file tree") from exc
        return tree if isinstance(tree, dict) else {"root": []}

    async def write_file(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.metrics.incr("project_file")

        path = body.get("path")
        content = body.get("content")
        if not isinstance(path, str) or not path.strip():
            raise ClientError("path is required")
        if not isinstance(content, str):
            raise ClientError("content must be a string")

        session_id = _session_id(body)

        # the content write and the edit log are both attempted
        stored = True
        try:
            await self.kv.put(file_key(path), content)
        except Exception as exc:
            self.diagnostics.report("files.write", exc)
            stored = False

        response_summary = {"bytes": len(content.encode("utf-8")), "stored": stored}
        if not stored:
            response_summary["error"] = "content write failed"
        await self.journal.record(
            "file-edit",
            {"path": path, "editor": body.get("editor"), "session_id": session_id},
            response_summary,
        )
        if not stored:
            raise UpstreamError("could not store file")

        await self.runner.run("files.tree", self._upsert_tree_node(path))

        return {"success": True, "path": path}

    async def _upsert_tree_node(self, path: str):
        # parent folders are not created; a child may exist without one
        tree = await self.kv.get_json(FILE_TREE_KEY)
        if not isinstance(tree, dict) or not isinstance(tree.get("root"), list):
            tree = {"root": []}

        node = FileNode(path=path, name=path.rstrip("/").rsplit("/", 1)[-1], type="file", updated_at=utc_now())
        for existing in tree["root"]:
            if isinstance(existing, dict) and existing.get("path") == path:
                existing.update(node.model_dump())
                break
        else:
            tree["root"].append(node.model_dump())

        await self.kv.put_json(FILE_TREE_KEY, tree)

    async def read_file(self, path: Optional[str]) -> Dict[str, Any]:
        if not path:
            raise ClientError("path is required")
        try:
            content = await self.kv.get(file_key(path))
        except Exception as exc:
            self.diagnostics.report("files.read", exc)
            raise UpstreamError("could not read file") from exc
        if content is None:
            raise ClientError("file not found", status_code=404)
        return {"path": path, "content": content}

    async def close(self):
        await self.runner.drain()
        await self.kv.close()
