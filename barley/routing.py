"""
Router - path-template routing for controllers.

Static routes use a dict lookup per method; templated routes
(``/api/orders/{id}/status``) are compiled to regular expressions and
matched in registration order, most specific first.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .controller import Controller, RequestCtx
from .faults import MethodNotAllowedFault, RouteNotFoundFault
from .request import Request
from .response import Response

logger = logging.getLogger("barley.routing")

_PARAM_RE = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


@dataclass
class Route:
    """A compiled route."""
    method: str
    path: str
    handler: Callable[[RequestCtx], Awaitable[Any]]
    name: str
    status_code: int = 200
    cache: Optional[str] = None
    summary: str = ""
    controller: Optional[str] = None
    pattern: Optional[re.Pattern] = None
    param_names: List[str] = field(default_factory=list)

    @property
    def specificity(self) -> int:
        """Static segments count double so literal paths beat templates."""
        score = 0
        for segment in self.path.strip("/").split("/"):
            score += 1 if _PARAM_RE.fullmatch(segment) else 2
        return score


def _join_paths(prefix: str, path: str) -> str:
    full = "/" + "/".join(p.strip("/") for p in (prefix, path) if p.strip("/"))
    return full


def compile_path(path: str) -> Tuple[Optional[re.Pattern], List[str]]:
    """Compile a ``{param}`` template; static paths return ``(None, [])``."""
    names = _PARAM_RE.findall(path)
    if not names:
        return None, []
    regex = "^" + _PARAM_RE.sub(r"(?P<\1>[^/]+)", re.escape(path).replace(r"\{", "{").replace(r"\}", "}")) + "/?$"
    return re.compile(regex), names


class Router:
    """Routes requests to controller methods."""

    def __init__(self):
        self.routes: List[Route] = []
        self._static: Dict[str, Dict[str, Route]] = {}
        self._dynamic: Dict[str, List[Route]] = {}

    def add_route(
        self,
        method: str,
        path: str,
        handler: Callable[[RequestCtx], Awaitable[Any]],
        *,
        name: Optional[str] = None,
        status_code: int = 200,
        cache: Optional[str] = None,
        summary: str = "",
        controller: Optional[str] = None,
    ) -> Route:
        """Register a single handler."""
        pattern, names = compile_path(path)
        route = Route(
            method=method.upper(),
            path=path,
            handler=handler,
            name=name or getattr(handler, "__name__", path),
            status_code=status_code,
            cache=cache,
            summary=summary,
            controller=controller,
            pattern=pattern,
            param_names=names,
        )
        self.routes.append(route)
        if pattern is None:
            self._static.setdefault(route.method, {})[path.rstrip("/") or "/"] = route
        else:
            dynamic = self._dynamic.setdefault(route.method, [])
            dynamic.append(route)
            dynamic.sort(key=lambda r: r.specificity, reverse=True)
        logger.debug("Registered route %s %s -> %s", route.method, path, route.name)
        return route

    def add_controller(self, controller: Controller) -> None:
        """Register every decorated method of a controller instance."""
        for attr_name in dir(type(controller)):
            func = getattr(type(controller), attr_name, None)
            metadata_list = getattr(func, "__route_metadata__", None)
            if not metadata_list:
                continue
            bound = getattr(controller, attr_name)
            for meta in metadata_list:
                self.add_route(
                    meta["http_method"],
                    _join_paths(controller.prefix, meta["path"]),
                    bound,
                    name=meta["name"],
                    status_code=meta["status_code"],
                    cache=meta["cache"],
                    summary=meta["summary"],
                    controller=type(controller).__name__,
                )

    def match(self, method: str, path: str) -> Optional[Tuple[Route, Dict[str, str]]]:
        """Find the route for ``method`` and ``path``."""
        static = self._static.get(method)
        if static:
            hit = static.get(path.rstrip("/") or "/")
            if hit is not None:
                return hit, {}
        for route in self._dynamic.get(method, []):
            m = route.pattern.match(path)
            if m is not None:
                return route, m.groupdict()
        return None

    def allowed_methods(self, path: str) -> List[str]:
        """Methods that have a route for ``path``."""
        methods = set()
        for method in set(self._static) | set(self._dynamic):
            if self.match(method, path) is not None:
                methods.add(method)
        return sorted(methods)

    async def dispatch(self, request: Request, ctx: RequestCtx) -> Response:
        """
        Final handler of the pipeline.

        Plain return values are wrapped in a JSON response using the route's
        status code.
        """
        found = self.match(request.method, request.path)
        if found is None and request.method == "HEAD":
            found = self.match("GET", request.path)
        if found is None:
            allowed = self.allowed_methods(request.path)
            if allowed:
                raise MethodNotAllowedFault(request.path, request.method, allowed)
            raise RouteNotFoundFault(request.path, request.method)

        route, params = found
        ctx.params = params
        if route.cache and "cache_strategy" not in request.state:
            request.state["cache_strategy"] = route.cache

        result = await route.handler(ctx)
        if isinstance(result, Response):
            return result
        return Response.json(result, status=route.status_code)

    def get_routes(self) -> List[Dict[str, Any]]:
        """Route table for introspection."""
        return [
            {
                "method": route.method,
                "path": route.path,
                "name": route.name,
                "controller": route.controller,
                "summary": route.summary,
            }
            for route in self.routes
        ]
