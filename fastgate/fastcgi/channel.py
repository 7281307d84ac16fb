#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import io
import threading
from collections import deque, namedtuple

from fastgate import util
from fastgate.errors import (ChannelTransportError,
                             InterpreterDiagnosticOutput)
from fastgate.fastcgi.records import (
    FCGI_END_REQUEST,
    FCGI_HEADER_LEN,
    FCGI_MAX_CONTENT_LEN,
    FCGI_PARAMS,
    FCGI_REQUEST_COMPLETE,
    FCGI_REQUEST_ID,
    FCGI_STDERR,
    FCGI_STDIN,
    FCGI_STDOUT,
    PROTOCOL_STATUSES,
    ConnectionClosed,
    RecordError,
    RecordReader,
    UnexpectedRecord,
    decode_end_request,
    encode_begin_request,
    encode_name_value_pairs,
    encode_stream,
)
from fastgate.http.reader import SocketReader


RawInterpreterResponse = namedtuple(
    "RawInterpreterResponse", ["stdout", "stderr", "app_status"])


class StaleConnection(Exception):
    """A pooled connection was closed by the interpreter while idle."""


class Connection(object):

    def __init__(self, sock):
        self.sock = sock
        self.reader = RecordReader(
            SocketReader(sock, FCGI_HEADER_LEN + FCGI_MAX_CONTENT_LEN))
        self.requests = 0

    @property
    def reused(self):
        return self.requests > 0

    def close(self):
        util.close(self.sock)


class FastCGIChannel(object):
    """Pooled FastCGI client connections to the interpreter.

    At most ``fastcgi_max_conns`` connections exist at any time. Callers
    above that number block in ``execute()`` until a connection is handed
    back. Each connection carries one request at a time, always with the
    same request id, and is kept open between requests.
    """

    def __init__(self, cfg, log):
        self.cfg = cfg
        self.log = log
        self.max_conns = cfg.fastcgi_max_conns
        self.timeout = cfg.fastcgi_timeout or None
        self.interpreter = None
        self.ready = False

        self.slots = threading.BoundedSemaphore(self.max_conns)
        self._lock = threading.Lock()
        self._idle = deque()

    def start(self, interpreter):
        """Start ``interpreter`` and wait until it accepts connections.

        ``ChannelStartupFailed`` propagates when it never becomes ready.
        """
        interpreter.start()
        try:
            interpreter.wait_ready()
        except BaseException:
            interpreter.stop()
            raise
        self.interpreter = interpreter
        self.ready = True

    def close(self):
        self.ready = False
        with self._lock:
            idle, self._idle = self._idle, deque()
        for conn in idle:
            conn.close()

    def execute(self, params, body=b""):
        """Run one request and return its ``RawInterpreterResponse``."""
        if not self.ready:
            raise ChannelTransportError("FastCGI channel not initialized")

        self.slots.acquire()
        try:
            conn = self._checkout()
            try:
                return self._exchange(conn, params, body)
            except StaleConnection:
                self.log.debug("Stale FastCGI connection, reconnecting")
                conn = self._connect()
                return self._exchange(conn, params, body)
        finally:
            self.slots.release()

    def _checkout(self):
        with self._lock:
            if self._idle:
                return self._idle.popleft()
        return self._connect()

    def _checkin(self, conn):
        conn.requests += 1
        if not self.ready:
            conn.close()
            return
        with self._lock:
            self._idle.append(conn)

    def _connect(self):
        try:
            sock = self.interpreter.connect(self.timeout)
        except OSError as e:
            raise ChannelTransportError(
                "Can't connect to FastCGI interpreter at %s: %s" % (
                    self.interpreter.bind_arg(), e))
        sock.settimeout(self.timeout)
        return Connection(sock)

    def _exchange(self, conn, params, body):
        request_id = FCGI_REQUEST_ID
        received = False
        try:
            records = [encode_begin_request(request_id)]
            records.extend(encode_stream(FCGI_PARAMS, request_id,
                                         encode_name_value_pairs(params)))
            records.extend(encode_stream(FCGI_STDIN, request_id, body or b""))
            conn.sock.sendall(b"".join(records))

            stdout = io.BytesIO()
            stderr = io.BytesIO()
            while True:
                record = conn.reader.read_record()
                received = True
                if record.request_id != request_id:
                    raise UnexpectedRecord(record.type, record.request_id)

                if record.type == FCGI_STDOUT:
                    stdout.write(record.content)
                elif record.type == FCGI_STDERR:
                    stderr.write(record.content)
                elif record.type == FCGI_END_REQUEST:
                    end = decode_end_request(record.content)
                    break
                else:
                    raise UnexpectedRecord(record.type, record.request_id)
        except (OSError, RecordError) as e:
            conn.close()
            stale = isinstance(e, (ConnectionClosed, ConnectionError))
            if stale and conn.reused and not received:
                raise StaleConnection()
            raise ChannelTransportError(
                "FastCGI exchange failed: %s" % (str(e) or e.__class__.__name__))
        except BaseException:
            conn.close()
            raise

        if end.protocol_status != FCGI_REQUEST_COMPLETE:
            conn.close()
            status = PROTOCOL_STATUSES.get(end.protocol_status,
                                                end.protocol_status)
            raise ChannelTransportError(
                "FastCGI request not completed: %s" % status)

        self._checkin(conn)

        response = RawInterpreterResponse(stdout.getvalue(), stderr.getvalue(),
                                          end.app_status)
        if response.stderr:
            raise InterpreterDiagnosticOutput(
                detail=response.stderr.decode("utf-8", "replace"))
        return response
