"""
Method + path dispatch for the gateway.

Anything outside the API prefix is asset traffic. Inside it, a route is
either an exact path or a path ending in a single `:param` segment,
matched by splitting off the last segment.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

ASSET = "asset"
HANDLER = "handler"
NOT_FOUND = "not_found"
METHOD_NOT_ALLOWED = "method_not_allowed"


@dataclass
class Resolution:
    kind: str
    handler: Optional[Callable[..., Any]] = None
    param: Optional[str] = None
    allowed: List[str] = field(default_factory=list)


class Router:
    def __init__(self, prefix: str = "/api/"):
        self.prefix = prefix
        self._exact: Dict[str, Dict[str, Callable]] = {}
        self._trailing: Dict[str, Dict[str, Callable]] = {}

    def add(self, method: str, path: str, handler: Callable):
        base, _, last = path.rstrip("/").rpartition("/")
        if last.startswith(":"):
            self._trailing.setdefault(base, {})[method.upper()] = handler
        else:
            self._exact.setdefault(path.rstrip("/"), {})[method.upper()] = handler

    def resolve(self, method: str, path: str) -> Resolution:
        if not path.startswith(self.prefix):
            return Resolution(ASSET)

        path = path.rstrip("/")
        method = method.upper()

        methods, param = self._exact.get(path), None
        if methods is None:
            base, _, last = path.rpartition("/")
            if last and base in self._trailing:
                methods, param = self._trailing[base], last

        if methods is None:
            return Resolution(NOT_FOUND)
        if method not in methods:
            return Resolution(METHOD_NOT_ALLOWED, allowed=sorted(methods))
        return Resolution(HANDLER, handler=methods[method], param=param)
