#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from fastgate import SERVER_SOFTWARE, util

# statuses whose responses never carry a body
BODYLESS_STATUSES = (204, 304)


class Response(object):
    """Write one response on the client socket.

    ``start()`` only records the status and headers; they go out with the
    first ``write()`` or on ``close()``. The body is always delimited by
    ``Content-Length``: a response started without one closes the
    connection when it is done.
    """

    def __init__(self, req, sock):
        self.req = req
        self.sock = sock
        self.status = None
        self.headers = []
        self.length = None
        self.sent = 0
        self.headers_sent = False
        self.must_close = False

    @property
    def head_only(self):
        return self.req.method == "HEAD"

    def force_close(self):
        self.must_close = True

    def should_close(self):
        if self.must_close or self.req.should_close():
            return True
        return self.length is None and self.status not in BODYLESS_STATUSES

    def reset(self):
        if self.headers_sent:
            raise AssertionError("Response headers already sent")
        self.status = None
        self.headers = []
        self.length = None

    def start(self, status, headers):
        if self.status is not None:
            raise AssertionError("Response already started")
        self.status = int(status)
        for name, value in headers:
            name, value = name.strip(), str(value).strip()
            if name.lower() == "content-length":
                self.length = int(value)
            elif not util.is_hoppish(name):
                self.headers.append((name, value))

    def status_line(self):
        return "HTTP/%d.%d %d %s" % (self.req.version[0], self.req.version[1],
                                     self.status,
                                     util.reason_phrase(self.status))

    def send_headers(self):
        if self.headers_sent:
            return
        lines = [
            self.status_line(),
            "Server: %s" % SERVER_SOFTWARE,
            "Date: %s" % util.http_date(),
            "Connection: %s" % ("close" if self.should_close()
                                else "keep-alive"),
        ]
        if self.length is not None:
            lines.append("Content-Length: %d" % self.length)
        lines.extend("%s: %s" % pair for pair in self.headers)
        head = "\r\n".join(lines) + "\r\n\r\n"
        self.sock.sendall(head.encode("latin-1"))
        self.headers_sent = True

    def write(self, data):
        self.send_headers()
        if not isinstance(data, bytes):
            raise TypeError("%r is not bytes" % (data,))
        if self.head_only or self.status in BODYLESS_STATUSES:
            return
        if self.length is not None:
            # never write past the announced length
            data = data[:max(self.length - self.sent, 0)]
        if data:
            self.sock.sendall(data)
            self.sent += len(data)

    def write_file(self, fileobj, blksize=65536):
        if self.head_only:
            self.send_headers()
            return
        for block in iter(lambda: fileobj.read(blksize), b""):
            self.write(block)

    def close(self):
        self.send_headers()
