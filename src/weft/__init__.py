from importlib.metadata import version

from .app import App, Box, ErrorHandler, Handler, default_error_handler
from .context import Context, Renderer
from .errors import DecodeError, InvalidRedirectCode, RendererNotConfigured, WeftError
from .response import ResponseWriter
from .router import http_route, path_params

__all__ = [
    "App",
    "Box",
    "Context",
    "DecodeError",
    "ErrorHandler",
    "Handler",
    "InvalidRedirectCode",
    "Renderer",
    "RendererNotConfigured",
    "ResponseWriter",
    "WeftError",
    "__version__",
    "default_error_handler",
    "http_route",
    "path_params",
]

__version__ = version("weft")
