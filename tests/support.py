#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import io
import socket
import struct
import threading
import time

from fastgate.config import Config
from fastgate.fastcgi.records import (
    END_BODY,
    FCGI_BEGIN_REQUEST,
    FCGI_END_REQUEST,
    FCGI_PARAMS,
    FCGI_STDERR,
    FCGI_STDIN,
    FCGI_STDOUT,
    InvalidRecord,
    RecordError,
    RecordReader,
    encode_record,
    encode_stream,
)
from fastgate.http.reader import SocketReader


def make_cfg(**settings):
    cfg = Config()
    for name, value in settings.items():
        cfg.set(name, value)
    return cfg


def free_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


class FakeSocket(object):
    """Serve ``data`` to ``recv`` in ``chunk_size`` pieces and collect
    what is written with ``sendall``."""

    def __init__(self, data=b"", chunk_size=None):
        self.data = io.BytesIO(data)
        self.chunk_size = chunk_size
        self.buf = io.BytesIO()

    def recv(self, size):
        if self.chunk_size:
            size = min(size, self.chunk_size)
        return self.data.read(size)

    def sendall(self, data):
        self.buf.write(data)

    def getvalue(self):
        return self.buf.getvalue()


def encode_end_request(request_id, app_status=0, protocol_status=0):
    return encode_record(FCGI_END_REQUEST, request_id,
                         END_BODY.pack(app_status, protocol_status))


def decode_length(data, pos):
    if pos >= len(data):
        raise InvalidRecord("truncated length field")
    if data[pos] < 0x80:
        return data[pos], pos + 1
    if pos + 4 > len(data):
        raise InvalidRecord("truncated length field")
    return struct.unpack_from(">I", data, pos)[0] & 0x7FFFFFFF, pos + 4


def decode_name_value_pairs(data):
    """Decode a PARAMS stream the way a responder would."""
    params = {}
    pos = 0
    while pos < len(data):
        name_len, pos = decode_length(data, pos)
        value_len, pos = decode_length(data, pos)
        if pos + name_len + value_len > len(data):
            raise InvalidRecord("truncated name-value pair")
        name = data[pos:pos + name_len]
        value = data[pos + name_len:pos + name_len + value_len]
        pos += name_len + value_len
        params[name.decode("utf-8", "surrogateescape")] = value.decode(
            "utf-8", "surrogateescape")
    return params


def parse_response(data):
    head, _, body = data.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split()[1])
    headers = []
    for line in lines[1:]:
        name, value = line.split(": ", 1)
        headers.append((name, value))
    return status, headers, body


def header(headers, name):
    values = [v for k, v in headers if k.lower() == name.lower()]
    return values[0] if values else None


def reply(stdout=b"", stderr=b"", app_status=0, protocol_status=0,
          request_id=1):
    """Records a responder sends back for one request."""
    records = []
    if stderr:
        records.extend(encode_stream(FCGI_STDERR, request_id, stderr))
    records.extend(encode_stream(FCGI_STDOUT, request_id, stdout))
    records.append(encode_end_request(request_id, app_status,
                                      protocol_status))
    return b"".join(records)


class FakeResponder(object):
    """A tiny FastCGI responder listening on 127.0.0.1.

    ``handler(params, stdin)`` returns the raw bytes to send back, usually
    built with ``reply()``.
    """

    def __init__(self, handler, close_after_request=False, delay=0):
        self.handler = handler
        self.close_after_request = close_after_request
        self.delay = delay
        self.requests = []
        self.connections = 0
        self.active = 0
        self.max_active = 0
        self.lock = threading.Lock()
        self.stopped = threading.Event()

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(64)
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self.serve, daemon=True)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.stopped.set()
        self.thread.join(5)
        self.sock.close()

    def serve(self):
        while not self.stopped.is_set():
            try:
                client, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            client.settimeout(None)
            t = threading.Thread(target=self.serve_connection, args=(client,),
                                 daemon=True)
            t.start()

    def serve_connection(self, client):
        reader = RecordReader(SocketReader(client))
        seen = False
        try:
            while True:
                try:
                    params, stdin = self.read_request(reader)
                except (RecordError, OSError):
                    return
                if not seen:
                    seen = True
                    with self.lock:
                        self.connections += 1

                with self.lock:
                    self.requests.append((params, stdin))
                    self.active += 1
                    self.max_active = max(self.max_active, self.active)
                try:
                    if self.delay:
                        time.sleep(self.delay)
                    client.sendall(self.handler(params, stdin))
                finally:
                    with self.lock:
                        self.active -= 1
                if self.close_after_request:
                    return
        finally:
            client.close()

    def read_request(self, reader):
        record = reader.read_record()
        assert record.type == FCGI_BEGIN_REQUEST

        params = io.BytesIO()
        while True:
            record = reader.read_record()
            assert record.type == FCGI_PARAMS
            if not record.content:
                break
            params.write(record.content)

        stdin = io.BytesIO()
        while True:
            record = reader.read_record()
            assert record.type == FCGI_STDIN
            if not record.content:
                break
            stdin.write(record.content)

        return decode_name_value_pairs(params.getvalue()), stdin.getvalue()
