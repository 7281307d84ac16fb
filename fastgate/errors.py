#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

# We don't need to call super() in __init__ methods of our
# BaseException and Exception classes because we also define
# our own __str__ methods so there is no need to pass 'message'
# to the base class to get a meaningful output from 'str(exc)'.
# pylint: disable=super-init-not-called


class HaltServer(BaseException):
    def __init__(self, reason, exit_status=1):
        self.reason = reason
        self.exit_status = exit_status

    def __str__(self):
        return "<HaltServer %r %d>" % (self.reason, self.exit_status)


class ConfigError(Exception):
    """ Exception raised on config error """


class GatewayError(Exception):
    """Base class of every error the gateway knows how to render.

    ``status_code`` is the HTTP status sent to the client, ``message`` the
    generic text shown in any mode and ``detail`` the diagnostic payload
    only shown in development mode.
    """

    status_code = 500
    reason = "Internal Server Error"

    def __init__(self, message=None, detail=None):
        self.message = message or self.reason
        self.detail = detail

    def __str__(self):
        return self.message


class RoutingNotFound(GatewayError):
    status_code = 404
    reason = "Not Found"

    def __init__(self, path):
        self.path = path
        self.message = "Not Found: %s" % path
        self.detail = None


class ChannelError(GatewayError):
    """Failure talking to the FastCGI interpreter."""


class ChannelStartupFailed(ChannelError):
    """The interpreter never reported ready.

    Raised once at startup, it is fatal for the process.
    """

    def __init__(self, message, returncode=None):
        self.message = message
        self.detail = None
        self.returncode = returncode


class ChannelTransportError(ChannelError):
    """Per-request connection or framing failure."""


class InterpreterError(GatewayError):
    """The interpreter answered with an error condition."""

    def __init__(self, detail=None):
        self.message = self.reason
        self.detail = detail


class InterpreterDiagnosticOutput(InterpreterError):
    """The interpreter wrote to its diagnostic (stderr) stream."""


class BodyReadError(GatewayError):
    def __init__(self, exc):
        self.exc = exc
        self.message = self.reason
        self.detail = "Error reading request body: %s" % exc


class ListenerBindError(Exception):
    IN_USE = "in use"
    PERMISSION_DENIED = "permission denied"

    def __init__(self, address, cause, exc=None):
        self.address = address
        self.cause = cause
        self.exc = exc

    def __str__(self):
        if self.cause == self.IN_USE:
            return "Https Server address %s is already in use" % (self.address,)
        if self.cause == self.PERMISSION_DENIED:
            return "Https Server address %s requires elevated privileges" % (
                self.address,)
        return "Can't bind %s: %s" % (self.address, self.exc)
