from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import json

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from llm_gateway.errors import ClientError, UpstreamError
from llm_gateway.gateway import Gateway
from llm_gateway.router import ASSET, METHOD_NOT_ALLOWED, NOT_FOUND, Router


METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


async def _json_body(req: Request) -> Dict[str, Any]:
    try:
        body = await req.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ClientError("request body must be valid JSON")
    if not isinstance(body, dict):
        raise ClientError("request body must be a JSON object")
    return body


def build_router(gateway: Gateway) -> Router:
    router = Router(prefix=gateway.config.api_prefix)
    api = gateway.config.api_prefix.rstrip("/")

    async def _chat(req: Request, _):
        return await gateway.chat(await _json_body(req))

    async def _text_to_image(req: Request, _):
        return await gateway.text_to_image(await _json_body(req))

    async def _list_images(req: Request, _):
        return await gateway.list_images()

    async def _get_image(req: Request, artifact_id: str):
        return await gateway.get_image(artifact_id)

    async def _embeddings(req: Request, _):
        return await gateway.embeddings(await _json_body(req))

    async def _log_build(req: Request, _):
        return await gateway.log_build(await _json_body(req))

    async def _logs(req: Request, _):
        limit = req.query_params.get("limit")
        if limit is not None and not limit.isdigit():
            raise ClientError("limit must be a positive integer")
        return await gateway.logs(kind=req.query_params.get("kind"), limit=int(limit) if limit else None)

    async def _file_tree(req: Request, _):
        return await gateway.file_tree()

    async def _write_file(req: Request, _):
        return await gateway.write_file(await _json_body(req))

    async def _read_file(req: Request, _):
        return await gateway.read_file(req.query_params.get("path"))

    async def _health(req: Request, _):
        return {"status": "ok", "diagnostics": len(gateway.diagnostics.events)}

    router.add("POST", f"{api}/chat", _chat)
    router.add("POST", f"{api}/text-to-image", _text_to_image)
    router.add("GET", f"{api}/images", _list_images)
    router.add("GET", f"{api}/images/:id", _get_image)
    router.add("POST", f"{api}/embeddings", _embeddings)
    router.add("POST", f"{api}/log-build", _log_build)
    router.add("GET", f"{api}/logs", _logs)
    router.add("GET", f"{api}/file-tree", _file_tree)
    router.add("POST", f"{api}/project-file", _write_file)
    router.add("GET", f"{api}/project-file", _read_file)
    router.add("GET", f"{api}/health", _health)
    return router


def create_app(gateway: Gateway, cors_origins: Optional[List[str]] = None) -> FastAPI:
    router = build_router(gateway)
    assets = None
    if gateway.config.assets_dir:
        assets = StaticFiles(directory=gateway.config.assets_dir, html=True, check_dir=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # let fire-and-forget bookkeeping finish before the stores go away
        await gateway.close()

    app = FastAPI(lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    @app.exception_handler(ClientError)
    async def _client_error(req: Request, exc: ClientError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(UpstreamError)
    async def _upstream_error(req: Request, exc: UpstreamError):
        return JSONResponse({"error": exc.message}, status_code=500)

    @app.api_route("/{full_path:path}", methods=METHODS, include_in_schema=False)
    async def _dispatch(req: Request):
        resolution = router.resolve(req.method, req.url.path)

        if resolution.kind == ASSET:
            if assets is None:
                return JSONResponse({"error": "not found"}, status_code=404)
            return await assets.get_response(assets.get_path(req.scope), req.scope)
        if resolution.kind == NOT_FOUND:
            return JSONResponse({"error": "not found"}, status_code=404)
        if resolution.kind == METHOD_NOT_ALLOWED:
            return JSONResponse(
                {"error": "method not allowed"},
                status_code=405,
                headers={"Allow": ", ".join(resolution.allowed)},
            )

        result = await resolution.handler(req, resolution.param)
        if isinstance(result, Response):
            return result
        return JSONResponse(jsonable_encoder(result))

    return app
