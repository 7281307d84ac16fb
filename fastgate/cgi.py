#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import posixpath

from fastgate import SERVER_SOFTWARE, util


def header_values(headers):
    """Fold a header list into a dict keyed by upper-cased name.

    A header sent more than once maps to the list of its values.
    """
    values = {}
    for name, value in headers:
        name = name.upper()
        if name in values:
            prev = values[name]
            if isinstance(prev, list):
                prev.append(value)
            else:
                values[name] = [prev, value]
        else:
            values[name] = value
    return values


def _first(value):
    if isinstance(value, list):
        return value[0]
    return value


def split_host(host):
    """Return the host part of a Host header value."""
    if host.startswith("["):
        return host.split("]", 1)[0][1:].lower()
    if host.count(":") == 1:
        return host.split(":", 1)[0].lower()
    return host.lower()


def build_params(req, script_name, document_root, server_port, local_addr,
                 is_ssl=False):
    """Build the CGI parameters of one interpreter request.

    ``req`` is the parsed request, ``local_addr`` the address the client
    connected to and ``server_port`` the configured listening port. Values
    taken from the wire are re-read as UTF-8 so that framing the parameters
    sends the bytes the client sent.
    """
    headers = header_values(
        (name, util.wire_str(value)) for name, value in req.headers)
    document_root = util.posix_path(document_root)

    uri = util.wire_str(req.uri)
    query = uri.split("?", 1)[1] if "?" in uri else ""

    peer = req.peer_addr
    if isinstance(peer, tuple):
        remote_addr, remote_port = peer[0], str(peer[1])
    else:
        remote_addr, remote_port = util.bytes_to_str(peer or b""), ""

    if isinstance(local_addr, tuple):
        server_addr = local_addr[0]
    else:
        server_addr = util.bytes_to_str(local_addr or b"")

    host = _first(headers.get("HOST"))
    server_name = split_host(host) if host else server_addr

    params = {
        "GATEWAY_INTERFACE": "CGI/1.1",
        "REQUEST_METHOD": req.method,
        "SCRIPT_FILENAME": posixpath.join(document_root,
                                          script_name.lstrip("/")),
        "DOCUMENT_ROOT": document_root,
        "REQUEST_URI": uri,
        "SCRIPT_NAME": script_name,
        "PHP_SELF": script_name,
        "QUERY_STRING": query,
        "CONTENT_TYPE": _first(headers.get("CONTENT-TYPE", "")),
        "CONTENT_LENGTH": _first(headers.get("CONTENT-LENGTH", "")),
        "SERVER_NAME": server_name,
        "SERVER_PORT": str(server_port),
        "SERVER_ADDR": server_addr,
        "SERVER_PROTOCOL": "HTTP/%s" % ".".join(str(v) for v in req.version),
        "SERVER_SOFTWARE": SERVER_SOFTWARE,
        "REMOTE_ADDR": remote_addr,
        "REMOTE_PORT": remote_port,
        "REQUEST_SCHEME": "https" if is_ssl else "http",
        "HTTPS": "on" if is_ssl else "off",
        "REDIRECT_STATUS": "200",
    }

    for name, value in headers.items():
        key = name.replace("-", "_")
        if key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            continue
        # duplicated headers are skipped, not joined
        if not isinstance(value, str):
            continue
        params["HTTP_" + key] = value

    return params
