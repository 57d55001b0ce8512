"""
Controller Base Class

Provides the base Controller class, the RequestCtx abstraction and the HTTP
method decorators used to declare routes on controller methods.
"""

from typing import Any, Callable, Dict, List, Optional, TypeVar, TYPE_CHECKING
from dataclasses import dataclass, field
import inspect

if TYPE_CHECKING:
    from barley.request import Request


F = TypeVar('F', bound=Callable[..., Any])


@dataclass
class RequestCtx:
    """
    Request context provided to controller methods.

    Attributes:
        request: The HTTP request
        params: Path parameters extracted by the router
        identity: Actor identity resolved for this request, if any
        request_id: Correlation id assigned by RequestIdMiddleware
        state: Additional state dictionary
    """

    request: "Request"
    params: Dict[str, str] = field(default_factory=dict)
    identity: Optional[str] = None
    request_id: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        """Request path."""
        return self.request.path

    @property
    def method(self) -> str:
        """Request method."""
        return self.request.method

    def query_param(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a single query parameter.

        Prefers the sanitized query produced by the sanitizer stage.
        """
        sanitized = self.request.state.get("sanitized_query")
        if sanitized is not None and key in sanitized:
            value = sanitized[key]
            if isinstance(value, list):
                return value[0] if value else default
            return value
        return self.request.query_param(key, default)

    async def json(self) -> Any:
        """
        Request body as JSON.

        Returns the sanitized payload when the sanitizer stage ran.
        """
        if "sanitized_body" in self.request.state:
            return self.request.state["sanitized_body"]
        return await self.request.json()


class Controller:
    """
    Base Controller class.

    Subclasses set ``prefix`` and declare routes with the method decorators::

        class HealthController(Controller):
            prefix = "/api/health"

            @GET("/")
            async def check(self, ctx):
                return {"status": "ok"}
    """

    prefix: str = ""
    tags: List[str] = []


class RouteDecorator:
    """
    Base route decorator.

    Attaches metadata to controller methods; the router reads it when the
    controller is registered.
    """

    method: Optional[str] = None

    def __init__(
        self,
        path: Optional[str] = None,
        *,
        status_code: int = 200,
        name: Optional[str] = None,
        cache: Optional[str] = None,
    ):
        """
        Args:
            path: URL path template relative to the controller prefix,
                  with ``{param}`` placeholders
            status_code: Status used when the handler returns plain data
            name: Route name (defaults to the method name)
            cache: Cache-Control strategy for successful responses
        """
        self.path = path
        self.status_code = status_code
        self.name = name
        self.cache = cache

    def __call__(self, func: F) -> F:
        if not hasattr(func, '__route_metadata__'):
            func.__route_metadata__ = []

        func.__route_metadata__.append({
            'http_method': self.method,
            'path': self.path if self.path is not None else '/',
            'status_code': self.status_code,
            'name': self.name or func.__name__,
            'cache': self.cache,
            'summary': (inspect.getdoc(func) or '').split('\n')[0],
        })
        return func


class GET(RouteDecorator):
    """GET request decorator."""
    method = 'GET'


class POST(RouteDecorator):
    """POST request decorator."""
    method = 'POST'


class PUT(RouteDecorator):
    """PUT request decorator."""
    method = 'PUT'


class PATCH(RouteDecorator):
    """PATCH request decorator."""
    method = 'PATCH'


class DELETE(RouteDecorator):
    """DELETE request decorator."""
    method = 'DELETE'
