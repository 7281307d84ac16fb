#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from datetime import datetime
import mimetypes
import os
import traceback

from fastgate import util
from fastgate.cgi import build_params
from fastgate.errors import BodyReadError, GatewayError, RoutingNotFound
from fastgate.http.errors import BadRequest
from fastgate.http.response import Response
from fastgate.router import Router, STATIC, SCRIPT
from fastgate.translator import translate, get_header

BODY_METHODS = ("POST", "PUT")
STATIC_METHODS = ("GET", "HEAD")
HTML_TYPE = "text/html; charset=utf-8"


def with_charset(content_type, charset="utf-8"):
    params = [p.strip() for p in content_type.split(";")]
    params = [p for p in params[1:] if p and
              not p.lower().startswith("charset=")]
    return "; ".join([content_type.split(";", 1)[0].strip()] + params +
                     ["charset=%s" % charset])


class Gateway(object):
    """Serve one parsed request.

    Static files are streamed from the document root, scripts run through
    the FastCGI channel and any failure becomes an HTML error page.
    """

    def __init__(self, cfg, log, channel, router=None):
        self.cfg = cfg
        self.log = log
        self.channel = channel
        self.router = router or Router.from_config(cfg)

    def handle(self, req, conn, keepalive=True):
        request_start = datetime.now()
        resp = Response(req, conn.sock)
        if not keepalive:
            resp.force_close()
        decision = None
        try:
            decision = self.router.route(req.path)
            if decision.kind == STATIC:
                self.serve_static(req, resp, decision)
            elif decision.kind == SCRIPT:
                self.run_script(req, conn, resp, decision)
            else:
                raise RoutingNotFound(req.path)
            resp.close()
        except Exception as exc:
            if resp.headers_sent:
                # the status line is out, the client gets a truncated body
                self.log.exception("Error handling request %s", req.uri)
                resp.force_close()
                raise
            self.handle_error(req, resp, exc)
            resp.close()
        finally:
            request_time = datetime.now() - request_start
            self.log.access(resp, req, request_time,
                            decision.kind if decision else None)
        return resp

    def serve_static(self, req, resp, decision):
        if req.method not in STATIC_METHODS:
            raise RoutingNotFound(req.path)

        path = decision.resolved_path
        try:
            f = open(path, "rb")
        except OSError:
            raise RoutingNotFound(req.path)

        with f:
            st = os.fstat(f.fileno())
            ctype, encoding = mimetypes.guess_type(path)
            headers = [
                ("Content-Type", ctype or "application/octet-stream"),
                ("Content-Length", str(st.st_size)),
                ("Last-Modified", util.http_date(st.st_mtime)),
            ]
            if encoding:
                headers.append(("Content-Encoding", encoding))
            resp.start(200, headers)
            resp.write_file(f)

    def run_script(self, req, conn, resp, decision):
        params = build_params(req, decision.script_name,
                              self.router.document_root, self.cfg.port,
                              conn.server, self.cfg.is_ssl)
        body = self.read_body(req, conn.sock)
        self.log.debug("Running %s", params["SCRIPT_FILENAME"])
        raw = self.channel.execute(params, body)
        self.write_translated(resp, translate(raw.stdout))

    def read_body(self, req, sock):
        if req.method not in BODY_METHODS:
            return b""

        expect = req.get_header("EXPECT", "")
        if expect.lower() == "100-continue" and req.version >= (1, 1):
            sock.sendall(b"HTTP/1.1 100 Continue\r\n\r\n")

        try:
            return req.body.read()
        except (OSError, BadRequest) as e:
            raise BodyReadError(e)

    def write_translated(self, resp, translated):
        status, body = translated.status_code, translated.body
        headers = [(k, v) for k, v in translated.headers
                   if k.lower() != "content-length"]

        if isinstance(body, str):
            ctype = get_header(headers, "content-type")
            headers = [(k, v) for k, v in headers
                       if k.lower() != "content-type"]
            headers.append(("Content-Type",
                            with_charset(ctype) if ctype else HTML_TYPE))
            body = body.encode("utf-8")

        if status in (204, 304):
            body = b""
        else:
            headers.append(("Content-Length", str(len(body))))

        resp.start(status, headers)
        if body:
            resp.write(body)

    def handle_error(self, req, resp, exc):
        if isinstance(exc, GatewayError):
            status, reason = exc.status_code, exc.reason
            mesg, detail = exc.message, exc.detail
            if status >= 500:
                self.log.error("%s %s: %s", req.method, req.uri, mesg)
                if detail:
                    self.log.error("%s", detail)
            else:
                self.log.debug("%s %s: %s", req.method, req.uri, mesg)
        else:
            status, reason = 500, util.reason_phrase(500)
            mesg, detail = reason, traceback.format_exc()
            self.log.exception("Error handling request %s", req.uri)

        if not self.cfg.development:
            detail = None
            if status >= 500:
                mesg = reason

        if status >= 500:
            resp.force_close()

        body = util.render_error_page(status, reason, mesg, detail)
        body = body.encode("utf-8")
        resp.reset()
        resp.start(status, [("Content-Type", HTML_TYPE),
                            ("Content-Length", str(len(body)))])
        resp.write(body)
