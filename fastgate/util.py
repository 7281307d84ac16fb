#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import email.utils
import html
import socket
import textwrap
from http import HTTPStatus

from fastgate import SERVER

# Server and Date are set by fastgate itself, whatever a script says.
HOP_HEADERS = frozenset([
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "server", "date",
])

try:
    from setproctitle import setproctitle

    def _setproctitle(title):
        setproctitle("%s: %s" % (SERVER, title))
except ImportError:
    def _setproctitle(title):
        pass


def normalize_port(val):
    """Normalize a port into a number, a named pipe or False.

    Numeric values (``8443``, ``"8443"``) become an ``int``. Anything that
    does not parse as a number is returned unchanged and is used as the path
    of a named pipe (Unix socket). Negative numbers return ``False``.
    """
    if isinstance(val, bool):
        return False
    if isinstance(val, int):
        port = val
    else:
        try:
            port = int(str(val).strip(), 10)
        except ValueError:
            return val
    if port >= 0:
        return port
    return False


def is_ipv6(addr):
    try:
        socket.inet_pton(socket.AF_INET6, addr)
    except (OSError, ValueError):
        return False
    return True


def close(sock):
    try:
        sock.close()
    except OSError:
        pass


def http_date(timestamp=None):
    return email.utils.formatdate(timestamp, usegmt=True)


def reason_phrase(status_code):
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Unknown"


def is_hoppish(header):
    return header.strip().lower() in HOP_HEADERS


def bytes_to_str(b):
    if isinstance(b, bytes):
        return b.decode("latin-1")
    return b


def wire_str(value):
    """Re-read latin-1 text from the wire as UTF-8.

    Bytes that are not valid UTF-8 become lone surrogates, so encoding the
    result with ``surrogateescape`` gives back the exact wire bytes.
    """
    return value.encode("latin-1").decode("utf-8", "surrogateescape")


def posix_path(path):
    """Return ``path`` with forward slashes whatever the host convention."""
    return path.replace("\\", "/")


def check_is_writeable(path):
    try:
        with open(path, "a"):
            pass
    except OSError as e:
        raise RuntimeError("Error: '%s' isn't writable [%r]" % (path, e))


def render_error_page(status_int, reason, mesg, detail=None):
    """Build the HTML error view.

    ``detail`` is only passed in development mode; it usually holds the
    interpreter diagnostics or a traceback.
    """
    extra = ""
    if detail:
        extra = "<h2>Details</h2>\n<pre>%s</pre>" % html.escape(detail)

    return textwrap.dedent("""\
    <html>
      <head>
        <title>Error %(status)d</title>
      </head>
      <body>
        <h1>%(reason)s</h1>
        <p>%(mesg)s</p>
        %(extra)s
      </body>
    </html>
    """) % {
        "status": status_int,
        "reason": html.escape(reason),
        "mesg": html.escape(mesg),
        "extra": extra,
    }


def write_error(sock, status_int, reason, mesg):
    """Send a complete error response and announce the close."""
    body = render_error_page(status_int, reason, mesg).encode("utf-8")
    head = "\r\n".join([
        "HTTP/1.1 %d %s" % (status_int, reason),
        "Connection: close",
        "Content-Type: text/html; charset=utf-8",
        "Content-Length: %d" % len(body),
    ]) + "\r\n\r\n"
    sock.sendall(head.encode("latin-1") + body)
