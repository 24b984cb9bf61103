class WeftError(Exception):
    """Base class for errors raised by weft helpers."""


class InvalidRedirectCode(WeftError, ValueError):
    """Redirect status outside 300-307."""


class RendererNotConfigured(WeftError, RuntimeError):
    """`Context.render` called before `App.set_template_engine`."""


class DecodeError(WeftError, ValueError):
    """Request body is not valid JSON or does not fit the requested shape."""
