#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

# pylint: disable=super-init-not-called


class BadRequest(Exception):
    """The client sent bytes that do not form an HTTP/1.x request.

    The worker answers every subclass with a ``400 Bad Request`` page and
    closes the connection.
    """

    code = 400

    def __init__(self, reason, data=None):
        self.reason = reason
        self.data = data

    def __str__(self):
        if self.data is None:
            return self.reason
        return "%s: %r" % (self.reason, self.data)


class InvalidRequestLine(BadRequest):
    pass


class InvalidHeader(BadRequest):
    pass


class InvalidChunk(BadRequest):
    pass


class LimitExceeded(BadRequest):
    pass


class NoMoreData(IOError):
    """The client closed its side in the middle of a request."""

    def __init__(self, buf=b""):
        self.buf = buf

    def __str__(self):
        return "Connection closed after %d byte(s)" % len(self.buf)
