"""
Normalization of inference payloads whose shape varies by provider.

Image payloads may carry inline base64 bytes, a list of them, or only a
remote URL. Each shape is handled by a small extraction strategy; the
strategies are tried in a fixed order and the first hit wins:

    1. data[0] with inline bytes
    2. images[0] with inline bytes
    3. a top-level url
    4. data[0] with a url

When only a URL is found the image is fetched and encoded. A payload
that is a bare string or bytes is encoded as-is as a last resort.
Normalizing never raises; absence of bytes is a valid outcome.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import base64
import logging

import requests
from fastapi.concurrency import run_in_threadpool

from llm_gateway.diagnostics import Diagnostics

logger = logging.getLogger(__name__)

INLINE_KEYS = ("b64_json", "base64", "image")
URL_KEYS = ("url", "image_url")


@dataclass
class NormalizedImage:
    b64: Optional[str] = None
    source_url: Optional[str] = None
    strategy: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def has_bytes(self) -> bool:
        return bool(self.b64)


# each strategy maps a raw payload to (inline bytes, url); both may be None

def _first(raw: Any, array_field: str) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    items = raw.get(array_field)
    if not isinstance(items, list) or not items:
        return None
    first = items[0]
    return first if isinstance(first, dict) else None

def _pick(item: Optional[Dict[str, Any]], keys) -> Optional[str]:
    if not item:
        return None
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value:
            return value
    return None

def inline_from_data(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    return _pick(_first(raw, "data"), INLINE_KEYS), None

def inline_from_images(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    return _pick(_first(raw, "images"), INLINE_KEYS), None

def url_from_top_level(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    return None, _pick(raw if isinstance(raw, dict) else None, URL_KEYS)

def url_from_data(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    return None, _pick(_first(raw, "data"), URL_KEYS)

IMAGE_STRATEGIES: List[Tuple[str, Callable[[Any], Tuple[Optional[str], Optional[str]]]]] = [
    ("data.inline", inline_from_data),
    ("images.inline", inline_from_images),
    ("url", url_from_top_level),
    ("data.url", url_from_data),
]


def fetch_url(url: str, timeout: float) -> bytes:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.content


class ImageNormalizer:
    def __init__(self, diagnostics: Diagnostics, fetcher: Callable[[str, float], bytes] = fetch_url, timeout: float = 15.0):
        self.diagnostics = diagnostics
        self.fetcher = fetcher
        self.timeout = timeout

    async def normalize(self, raw: Any) -> NormalizedImage:
        result = NormalizedImage()

        for name, strategy in IMAGE_STRATEGIES:
            try:
                b64, url = strategy(raw)
            except Exception as exc:
                # a strategy must not be able to abort the chain
                result.errors.append(f"{name}: {exc!r}")
                continue
            if b64:
                result.b64, result.strategy = b64, name
                return result
            if url:
                result.source_url, result.strategy = url, name
                break

        if result.source_url:
            try:
                content = await run_in_threadpool(self.fetcher, result.source_url, self.timeout)
            except Exception as exc:
                self.diagnostics.report("normalizer.fetch", exc)
                result.errors.append(f"fetch: {exc!r}")
                return result
            if content:
                result.b64 = base64.b64encode(content).decode("ascii")
            return result

        if isinstance(raw, (str, bytes)) and raw:
            data = raw.encode("utf-8") if isinstance(raw, str) else raw
            result.b64, result.strategy = base64.b64encode(data).decode("ascii"), "raw"
            return result

        logger.info("image payload had no extractable image: %s", str(raw)[:200])
        return result


def extract_embedding(raw: Any) -> Optional[List[float]]:
    """Pull one embedding vector out of the shapes different providers return."""
    candidates = []
    if isinstance(raw, dict):
        data = raw.get("data")
        if isinstance(data, list) and data:
            if isinstance(data[0], dict):
                candidates.append(data[0].get("embedding"))
            else:
                candidates.append(data)
        candidates.append(raw.get("embedding"))
    elif isinstance(raw, list):
        candidates.append(raw)

    for candidate in candidates:
        # some providers nest a single vector in a batch
        if isinstance(candidate, list) and len(candidate) == 1 and isinstance(candidate[0], list):
            candidate = candidate[0]
        if isinstance(candidate, list) and candidate and all(
            isinstance(value, (int, float)) and not isinstance(value, bool) for value in candidate
        ):
            return [float(value) for value in candidate]
    return None
