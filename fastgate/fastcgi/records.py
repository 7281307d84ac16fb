#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""FastCGI record framing, client side.

Header format (8 bytes)::

    version (1) | type (1) | request id (2) | content length (2) |
    padding length (1) | reserved (1)

All integers are big-endian. The gateway writes BEGIN_REQUEST, PARAMS and
STDIN records and reads STDOUT, STDERR and END_REQUEST records back.
"""

import struct
from collections import namedtuple

# pylint: disable=super-init-not-called

FCGI_VERSION_1 = 1

FCGI_BEGIN_REQUEST = 1
FCGI_END_REQUEST = 3
FCGI_PARAMS = 4
FCGI_STDIN = 5
FCGI_STDOUT = 6
FCGI_STDERR = 7

FCGI_RESPONDER = 1
FCGI_KEEP_CONN = 1

FCGI_REQUEST_COMPLETE = 0
FCGI_CANT_MPX_CONN = 1
FCGI_OVERLOADED = 2
FCGI_UNKNOWN_ROLE = 3

FCGI_HEADER_LEN = 8
FCGI_MAX_CONTENT_LEN = 65535

# one request per connection at a time, so a single id is enough
FCGI_REQUEST_ID = 1

RECORD_NAMES = {
    FCGI_BEGIN_REQUEST: "BEGIN_REQUEST",
    FCGI_END_REQUEST: "END_REQUEST",
    FCGI_PARAMS: "PARAMS",
    FCGI_STDIN: "STDIN",
    FCGI_STDOUT: "STDOUT",
    FCGI_STDERR: "STDERR",
}

PROTOCOL_STATUSES = {
    FCGI_REQUEST_COMPLETE: "REQUEST_COMPLETE",
    FCGI_CANT_MPX_CONN: "CANT_MPX_CONN",
    FCGI_OVERLOADED: "OVERLOADED",
    FCGI_UNKNOWN_ROLE: "UNKNOWN_ROLE",
}

HEADER = struct.Struct(">BBHHBx")
BEGIN_BODY = struct.Struct(">HB5x")
END_BODY = struct.Struct(">IB3x")

Record = namedtuple("Record", ["type", "request_id", "content"])

EndRequest = namedtuple("EndRequest", ["app_status", "protocol_status"])


class RecordError(Exception):
    """The interpreter broke the record framing."""


class InvalidRecord(RecordError):

    def __init__(self, msg):
        self.msg = msg

    def __str__(self):
        return "Invalid FastCGI record: %s" % self.msg


class UnexpectedRecord(RecordError):

    def __init__(self, record_type, request_id):
        self.record_type = record_type
        self.request_id = request_id

    def __str__(self):
        return "Unexpected FastCGI record %s for request %d" % (
            RECORD_NAMES.get(self.record_type, self.record_type),
            self.request_id)


class ConnectionClosed(RecordError):
    """The interpreter closed the connection between two records."""

    def __str__(self):
        return "FastCGI connection closed by peer"


def encode_record(record_type, request_id, content=b""):
    """Build one record, padded to a multiple of 8 bytes."""
    if len(content) > FCGI_MAX_CONTENT_LEN:
        raise ValueError("record content too large: %d" % len(content))
    padding = -len(content) % 8
    header = HEADER.pack(FCGI_VERSION_1, record_type, request_id,
                         len(content), padding)
    return header + content + b"\x00" * padding


def encode_begin_request(request_id, role=FCGI_RESPONDER, keep_conn=True):
    flags = FCGI_KEEP_CONN if keep_conn else 0
    return encode_record(FCGI_BEGIN_REQUEST, request_id,
                         BEGIN_BODY.pack(role, flags))


def encode_stream(record_type, request_id, data):
    """Split ``data`` into the records of one stream, terminator included.

    An empty ``data`` gives the terminating empty record only.
    """
    records = [encode_record(record_type, request_id,
                             data[i:i + FCGI_MAX_CONTENT_LEN])
               for i in range(0, len(data), FCGI_MAX_CONTENT_LEN)]
    records.append(encode_record(record_type, request_id))
    return records


def encode_length(length):
    if length < 0x80:
        return struct.pack(">B", length)
    return struct.pack(">I", length | 0x80000000)


def encode_name_value_pairs(params):
    """Encode ``params`` as the content of a PARAMS stream.

    Values given as ``bytes`` go out untouched, text is encoded as UTF-8.
    """
    out = []
    for name, value in params.items():
        name, value = param_bytes(name), param_bytes(value)
        out.extend((encode_length(len(name)), encode_length(len(value)),
                    name, value))
    return b"".join(out)


def param_bytes(value):
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8", "surrogateescape")


def decode_end_request(content):
    if len(content) < END_BODY.size:
        raise InvalidRecord("END_REQUEST content too short")
    return EndRequest(*END_BODY.unpack_from(content))


class RecordReader(object):
    """Read whole records from a ``SocketReader``."""

    def __init__(self, reader):
        self.reader = reader

    def read_record(self):
        header = self.reader.read(FCGI_HEADER_LEN)
        if not header:
            raise ConnectionClosed()
        if len(header) < FCGI_HEADER_LEN:
            raise InvalidRecord("incomplete header")

        version, record_type, request_id, length, padding = \
            HEADER.unpack(header)
        if version != FCGI_VERSION_1:
            raise InvalidRecord("unsupported version: %d" % version)

        data = self.reader.read(length + padding)
        if len(data) < length + padding:
            raise InvalidRecord("incomplete content")
        return Record(record_type, request_id, data[:length])
