#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Read HTTP/1.x requests off a client socket.

``RequestReader`` yields one ``Request`` per message sent on a connection.
A request exposes what the gateway needs and nothing else: the method,
the raw target with its path and query, the version, the header list with
upper-cased names and a body reader. Header values and the target keep
their wire bytes as latin-1 text.
"""

import re
import urllib.parse

from fastgate.http.errors import (
    InvalidChunk, InvalidHeader, InvalidRequestLine, LimitExceeded,
    NoMoreData,
)

MAX_REQUEST_LINE = 8190
MAX_HEADERS = 32768
DEFAULT_MAX_HEADERFIELD_SIZE = 8190
MAX_CHUNK_LINE = 1024

TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+\Z")
METHOD_RE = re.compile(r"[A-Z0-9$\-_.]{3,20}\Z")
VERSION_RE = re.compile(r"HTTP/(\d)\.(\d)\Z")
HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


class SocketReader(object):
    """Buffered reads off a socket.

    Bytes received past what a caller asked for stay in the buffer for the
    next read, so pipelined requests and back-to-back records are never lost.
    """

    def __init__(self, sock, bufsize=8192):
        self.sock = sock
        self.bufsize = bufsize
        self.buf = bytearray()

    def fill(self):
        data = self.sock.recv(self.bufsize)
        self.buf += data
        return len(data)

    def peek(self, size):
        while len(self.buf) < size and self.fill():
            pass
        return bytes(self.buf[:size])

    def read(self, size):
        """Return ``size`` bytes, or fewer when the peer closed."""
        while len(self.buf) < size and self.fill():
            pass
        data = bytes(self.buf[:size])
        del self.buf[:size]
        return data

    def read_until(self, delim, limit=0):
        """Consume the bytes up to ``delim`` and return them without it.

        ``LimitExceeded`` is raised once more than ``limit`` bytes go by
        without a delimiter; ``NoMoreData`` when the peer closes first.
        """
        start = 0
        while True:
            idx = self.buf.find(delim, start)
            if idx >= 0:
                break
            if limit and len(self.buf) > limit + len(delim):
                raise LimitExceeded("line too long", len(self.buf))
            start = max(len(self.buf) - len(delim) + 1, 0)
            if not self.fill():
                raise NoMoreData(bytes(self.buf))

        if limit and idx > limit:
            raise LimitExceeded("line too long", idx)
        data = bytes(self.buf[:idx])
        del self.buf[:idx + len(delim)]
        return data


def split_target(target):
    """Return the ``(path, query)`` of a request target."""
    target = target.split("#", 1)[0]
    if target.startswith("/"):
        # origin form, the common case; urlsplit would read "//x" as a host
        path, _, query = target.partition("?")
        return path, query
    parts = urllib.parse.urlsplit(target)
    return parts.path or "/", parts.query


class LengthBody(object):

    def __init__(self, reader, length):
        self.reader = reader
        self.remaining = length

    def read(self, size=None):
        if size is None or size > self.remaining:
            size = self.remaining
        if size <= 0:
            return b""
        data = self.reader.read(size)
        self.remaining -= len(data)
        if len(data) < size:
            self.remaining = 0
            raise NoMoreData(data)
        return data

    def discard(self):
        while self.read(65536):
            pass


class ChunkedBody(object):
    """Decode a ``Transfer-Encoding: chunked`` body.

    Chunk extensions are ignored. Trailers are parsed like headers and set
    on the request once the last chunk is read.
    """

    def __init__(self, reader, req):
        self.reader = reader
        self.req = req
        self.left = 0
        self.done = False

    def read(self, size=None):
        out = bytearray()
        while not self.done and (size is None or len(out) < size):
            if not self.left:
                self.left = self.chunk_size()
                if not self.left:
                    self.req.trailers = self.req.read_headers(self.reader)
                    self.done = True
                    break

            want = self.left
            if size is not None:
                want = min(want, size - len(out))
            data = self.reader.read(want)
            if len(data) < want:
                raise NoMoreData(bytes(out) + data)
            out += data
            self.left -= want

            if not self.left:
                term = self.reader.read(2)
                if term != b"\r\n":
                    raise InvalidChunk("missing chunk terminator", term)
        return bytes(out)

    def chunk_size(self):
        line = self.reader.read_until(b"\r\n", MAX_CHUNK_LINE)
        size = line.split(b";", 1)[0].strip()
        if not size or not HEX_DIGITS.issuperset(size):
            raise InvalidChunk("invalid chunk size", size)
        return int(size, 16)

    def discard(self):
        while self.read(65536):
            pass


class Request(object):

    def __init__(self, cfg, reader, peer_addr, number=1):
        self.peer_addr = peer_addr
        self.number = number
        self.headers = []
        self.trailers = []

        self.limit_line = cfg.limit_request_line
        if self.limit_line <= 0 or self.limit_line > MAX_REQUEST_LINE:
            self.limit_line = MAX_REQUEST_LINE
        self.limit_fields = cfg.limit_request_fields
        if self.limit_fields <= 0 or self.limit_fields > MAX_HEADERS:
            self.limit_fields = MAX_HEADERS
        self.limit_field_size = (cfg.limit_request_field_size or
                                 DEFAULT_MAX_HEADERFIELD_SIZE)

        self.parse_request_line(reader.read_until(b"\r\n", self.limit_line))
        self.headers = self.read_headers(reader)
        self.body = self.body_reader(reader)

    def parse_request_line(self, line):
        bits = line.decode("latin-1").split(" ")
        if len(bits) != 3 or not all(bits):
            raise InvalidRequestLine("invalid request line", line)
        method, self.uri, version = bits

        if not METHOD_RE.match(method):
            raise InvalidRequestLine("invalid method", method)
        self.method = method

        match = VERSION_RE.match(version)
        if match is None:
            raise InvalidRequestLine("invalid HTTP version", version)
        self.version = (int(match.group(1)), int(match.group(2)))

        try:
            self.path, self.query = split_target(self.uri)
        except ValueError:
            raise InvalidRequestLine("invalid request target", self.uri)

    def read_headers(self, reader):
        """Read a header block up to and including its blank line."""
        if reader.peek(2) == b"\r\n":
            reader.read(2)
            return []
        limit = self.limit_fields * (self.limit_field_size + 2)
        block = reader.read_until(b"\r\n\r\n", limit)
        return self.parse_headers(block.decode("latin-1").split("\r\n"))

    def parse_headers(self, lines):
        headers = []
        for line in lines:
            if line[:1] in (" ", "\t") and headers:
                # obsolete line folding, the value goes on
                name, value = headers.pop()
                line_value = "%s %s" % (value, line.strip())
                headers.append((name, line_value))
                size = len(name) + len(line_value) + 2
            else:
                if len(headers) >= self.limit_fields:
                    raise LimitExceeded("too many header fields",
                                        len(headers) + 1)
                name, sep, value = line.partition(":")
                if not sep:
                    raise InvalidHeader("invalid header line", line)
                if not TOKEN_RE.match(name):
                    raise InvalidHeader("invalid header name", name)
                headers.append((name.upper(), value.strip(" \t")))
                size = len(line)
            if size > self.limit_field_size:
                raise LimitExceeded("header field too large", size)
        return headers

    def body_reader(self, reader):
        if self.get_header("TRANSFER-ENCODING", "").lower() == "chunked":
            return ChunkedBody(reader, self)

        values = [v for (h, v) in self.headers if h == "CONTENT-LENGTH"]
        if not values:
            # a request without length or chunking has no body
            return LengthBody(reader, 0)
        if len(values) > 1 or not values[0].isdigit():
            raise InvalidHeader("invalid Content-Length", values)
        return LengthBody(reader, int(values[0]))

    def get_header(self, name, default=None):
        name = name.upper()
        for (h, v) in self.headers:
            if h == name:
                return v
        return default

    def should_close(self):
        conn = self.get_header("CONNECTION", "").strip().lower()
        if conn == "close":
            return True
        if conn == "keep-alive":
            return False
        return self.version <= (1, 0)


class RequestReader(object):
    """Iterate over the requests of one client connection.

    Iteration stops when the client closes between two requests or when
    the previous request asked to close. Whatever the gateway left unread
    of a body is skipped before the next request is parsed.
    """

    def __init__(self, cfg, sock, peer_addr):
        self.cfg = cfg
        self.reader = SocketReader(sock)
        self.peer_addr = peer_addr
        self.req = None
        self.count = 0

    def __iter__(self):
        return self

    def __next__(self):
        if self.req is not None:
            if self.req.should_close():
                raise StopIteration()
            self.req.body.discard()

        if not self.reader.peek(1):
            raise StopIteration()
        self.count += 1
        self.req = Request(self.cfg, self.reader, self.peer_addr, self.count)
        return self.req
