#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from types import SimpleNamespace

from fastgate import SERVER_SOFTWARE
from fastgate.cgi import build_params, header_values, split_host
from fastgate.fastcgi.records import encode_name_value_pairs
from fastgate.http import RequestReader

from support import FakeSocket, make_cfg


def make_req(method="GET", uri="/index.php", headers=None,
             peer=("192.0.2.10", 51234), version=(1, 1)):
    if headers is None:
        headers = [("HOST", "example.com:8443")]
    return SimpleNamespace(method=method, uri=uri, headers=headers,
                           peer_addr=peer, version=version)


def params_for(req, **kw):
    kw.setdefault("script_name", "/index.php")
    kw.setdefault("document_root", "/srv/www")
    kw.setdefault("server_port", 8443)
    kw.setdefault("local_addr", ("127.0.0.1", 8443))
    return build_params(req, kw["script_name"], kw["document_root"],
                        kw["server_port"], kw["local_addr"],
                        kw.get("is_ssl", True))


def test_basic_params():
    params = params_for(make_req(uri="/blog/post?id=3&x=y"))
    assert params["GATEWAY_INTERFACE"] == "CGI/1.1"
    assert params["REQUEST_METHOD"] == "GET"
    assert params["REQUEST_URI"] == "/blog/post?id=3&x=y"
    assert params["QUERY_STRING"] == "id=3&x=y"
    assert params["SCRIPT_NAME"] == "/index.php"
    assert params["PHP_SELF"] == "/index.php"
    assert params["SCRIPT_FILENAME"] == "/srv/www/index.php"
    assert params["DOCUMENT_ROOT"] == "/srv/www"
    assert params["SERVER_PROTOCOL"] == "HTTP/1.1"
    assert params["SERVER_SOFTWARE"] == SERVER_SOFTWARE
    assert params["SERVER_PORT"] == "8443"
    assert params["SERVER_ADDR"] == "127.0.0.1"
    assert params["SERVER_NAME"] == "example.com"
    assert params["REDIRECT_STATUS"] == "200"


def test_no_query_string():
    assert params_for(make_req(uri="/"))["QUERY_STRING"] == ""


def test_remote_address_is_the_real_peer():
    req = make_req(headers=[("HOST", "example.com"),
                            ("X-FORWARDED-FOR", "203.0.113.9")])
    params = params_for(req)
    assert params["REMOTE_ADDR"] == "192.0.2.10"
    assert params["REMOTE_PORT"] == "51234"
    assert params["HTTP_X_FORWARDED_FOR"] == "203.0.113.9"


def test_https_flags():
    params = params_for(make_req(), is_ssl=True)
    assert params["HTTPS"] == "on"
    assert params["REQUEST_SCHEME"] == "https"
    params = params_for(make_req(), is_ssl=False)
    assert params["HTTPS"] == "off"
    assert params["REQUEST_SCHEME"] == "http"


def test_content_headers_are_not_prefixed():
    req = make_req(method="POST", headers=[
        ("HOST", "example.com"),
        ("CONTENT-TYPE", "application/x-www-form-urlencoded"),
        ("CONTENT-LENGTH", "11"),
    ])
    params = params_for(req)
    assert params["CONTENT_TYPE"] == "application/x-www-form-urlencoded"
    assert params["CONTENT_LENGTH"] == "11"
    assert "HTTP_CONTENT_TYPE" not in params
    assert "HTTP_CONTENT_LENGTH" not in params


def test_content_headers_default_empty():
    params = params_for(make_req())
    assert params["CONTENT_TYPE"] == ""
    assert params["CONTENT_LENGTH"] == ""


def test_headers_become_http_params():
    req = make_req(headers=[("HOST", "example.com"),
                            ("ACCEPT-LANGUAGE", "fr"),
                            ("COOKIE", "a=1; b=2")])
    params = params_for(req)
    assert params["HTTP_HOST"] == "example.com"
    assert params["HTTP_ACCEPT_LANGUAGE"] == "fr"
    assert params["HTTP_COOKIE"] == "a=1; b=2"


def test_duplicated_headers_are_skipped():
    req = make_req(headers=[("HOST", "example.com"),
                            ("X-TAG", "a"), ("X-TAG", "b")])
    params = params_for(req)
    assert "HTTP_X_TAG" not in params


def test_server_name_without_host_header():
    params = params_for(make_req(headers=[]))
    assert params["SERVER_NAME"] == "127.0.0.1"


def test_windows_document_root():
    params = params_for(make_req(), document_root="C:\\www\\site")
    assert params["DOCUMENT_ROOT"] == "C:/www/site"
    assert params["SCRIPT_FILENAME"] == "C:/www/site/index.php"


def test_unix_socket_peer():
    params = params_for(make_req(peer=b"/run/fastgate.sock"))
    assert params["REMOTE_ADDR"] == "/run/fastgate.sock"
    assert params["REMOTE_PORT"] == ""


def test_header_values():
    values = header_values([("A", "1"), ("b", "2"), ("B", "3")])
    assert values == {"A": "1", "B": ["2", "3"]}


def test_split_host():
    assert split_host("Example.com:443") == "example.com"
    assert split_host("[::1]:8443") == "::1"
    assert split_host("localhost") == "localhost"


def parse_request(data):
    return next(RequestReader(make_cfg(), FakeSocket(data),
                              ("192.0.2.10", 51234)))


def test_non_ascii_bytes_reach_the_interpreter_unchanged():
    req = parse_request(b"GET /caf\xc3\xa9.php?q=\xc3\xa9\xff HTTP/1.1\r\n"
                        b"Host: example.com\r\n"
                        b"Cookie: name=\xc3\xa9t\xc3\xa9\r\n"
                        b"X-Raw: \xff\xfe\r\n\r\n")
    params = params_for(req, script_name="/caf\xe9.php")

    assert params["HTTP_COOKIE"] == "name=été"
    assert params["QUERY_STRING"] == "q=é\udcff"

    framed = encode_name_value_pairs(params)
    assert b"\x0b\x0aHTTP_COOKIEname=\xc3\xa9t\xc3\xa9" in framed
    assert b"\x0a\x02HTTP_X_RAW\xff\xfe" in framed
    assert b"REQUEST_URI/caf\xc3\xa9.php?q=\xc3\xa9\xff" in framed
    assert b"SCRIPT_NAME/caf\xc3\xa9.php" in framed
