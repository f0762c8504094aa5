from typing import Any, Callable, Optional, Union, TypeVar
from dataclasses import dataclass
from fastapi import APIRouter, Request
from abc import ABC, abstractmethod
import inspect


__all__ = ["RouteConfig", "BaseView", "register_routes", "reverse_path"]

_path_registry: dict[str, str] = {}


class BaseView(ABC):
    """
    Abstract base class for class-based views.

    The wrapped request is available as `self.request`; the acting user is read from
    `self.request.state.session`, which the upstream auth layer populates.
    """

    request: Request

    def __init__(self, request: Request):
        self.request = request

    @classmethod
    async def create(cls, **kwargs) -> 'BaseView':
        """Instantiate the view. Override to perform per-request setup."""
        return cls(**kwargs)

    @abstractmethod
    async def __call__(self, *args, **kwargs):
        """This method is called when the view is invoked."""
        ...


TBaseView = TypeVar('TBaseView', bound=BaseView)


def _apply_view_docs(wrapper: Callable, view_class: type[TBaseView]) -> None:
    """Copy the view's `__call__` signature onto the wrapper so FastAPI resolves its parameters."""
    call_sig = inspect.signature(getattr(view_class, '__call__'))

    params = []
    has_request_param = 'request' in call_sig.parameters

    for name, param in call_sig.parameters.items():
        if name == 'self':
            if has_request_param:
                continue
            param = inspect.Parameter(
                'request',
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
                annotation=Request,
            )
        params.append(param)

    wrapper.__doc__ = view_class.__doc__
    wrapper.__name__ = view_class.__dict__.get('__name__', view_class.__name__)
    wrapper.__signature__ = inspect.Signature(
        parameters=params,
        return_annotation=call_sig.return_annotation,
    )


@dataclass
class RouteConfig:
    """
    Route configuration for a FastAPI route.

    ```python
    class CreditsView(BaseView):
        async def __call__(self, org_id: str) -> CreditBalancesResponse:
            ...

    route_config: list[RouteConfig] = [
        RouteConfig(
            name="get_org_credits",
            path="/orgs/{org_id}/credits",
            endpoint=CreditsView,
            methods=["GET"],
        ),
    ]
    router = APIRouter()
    register_routes(router, route_config, prefix="/billing")

    reverse_path("get_org_credits")
    >> "/billing/orgs/{org_id}/credits"
    ```
    """

    name: str
    path: str
    endpoint: Union[Callable, type[TBaseView]]
    methods: list[str]
    summary: Optional[str] = None
    description: Optional[str] = None
    deprecated: Optional[bool] = None

    @property
    def kwargs(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "description": self.description,
            "deprecated": self.deprecated,
        }

    def _create_class_view(self, view_class: type[TBaseView]) -> Callable:
        async def wrapper(request: Request, **kwargs):
            view_instance = await view_class.create(request=request)

            # only pass through the parameters `__call__` declares
            sig = inspect.signature(getattr(view_instance, '__call__'))
            filtered_kwargs = {name: kwargs[name] for name in sig.parameters if name in kwargs}

            return await view_instance(**filtered_kwargs)

        _apply_view_docs(wrapper, view_class)
        return wrapper

    def as_view(self) -> Callable:
        """
        Returns the appropriate callable for this route.
        If endpoint is a class-based view, wraps it with request injection.
        If endpoint is a function, returns it as-is.
        """
        if not inspect.isclass(self.endpoint):
            return self.endpoint

        if issubclass(self.endpoint, BaseView):
            return self._create_class_view(self.endpoint)

        raise TypeError(f"`endpoint` {self.endpoint.__name__} must be a function or inherit from BaseView")


def reverse_path(route_name: str) -> Optional[str]:
    """Reverse a path by `RouteConfig.name`."""
    return _path_registry.get(route_name, None)


def register_routes(router: APIRouter, configs: list[RouteConfig], prefix: str = "") -> None:
    """
    Registers a list of route configurations with a FastAPI router.

    `prefix` is the mount point of the sub-app on the parent app, which cannot be
    discovered at runtime; it only affects `reverse_path`.
    """
    for config in configs:
        _path_registry[config.name] = f"{prefix}{router.prefix}{config.path}"

        for method in config.methods:
            router.add_api_route(
                path=config.path,
                endpoint=config.as_view(),
                methods=[method],
                **config.kwargs,
            )
