#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Turn the raw output of a CGI script into an HTTP response.

The interpreter writes a CGI response: pseudo header lines, where a
``Status`` line stands in for the HTTP status line, then a blank line and
the body.
"""

from collections import namedtuple

from fastgate.errors import InterpreterError

TranslatedResponse = namedtuple(
    "TranslatedResponse", ["status_code", "headers", "body"])

HEADER_DELIMITER = b"\r\n\r\n"
TEXT_TYPES = ("text/html", "application/json")
DEFAULT_STATUS = 200
REDIRECT_STATUS = 302


def decode_text(data):
    return data.decode("utf-8", "replace")


def parse_status(value, default=None):
    """Return the numeric code of a ``Status`` value like ``404 Not Found``.

    Informational codes are refused: a script can only produce the final
    response.
    """
    if not value:
        return default
    bits = value.split(None, 1)
    if not bits:
        return default
    try:
        code = int(bits[0], 10)
    except ValueError:
        return default
    if not 200 <= code <= 999:
        return default
    return code


def parse_headers(block):
    """Parse a CGI header block into an ordered list of pairs.

    Lines that do not split on ``": "`` into a non-empty key are skipped.
    """
    headers = []
    for line in block.split("\r\n"):
        key, sep, value = line.partition(": ")
        if not sep or not key:
            continue
        headers.append((key, value))
    return headers


def get_header(headers, name, default=None):
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return default


def is_textual(content_type):
    return content_type.strip().lower().startswith(TEXT_TYPES)


def translate(stdout):
    """Translate raw interpreter output into a ``TranslatedResponse``.

    Raises ``InterpreterError`` for a redirect carrying ``Status: 500``.
    """
    idx = stdout.find(HEADER_DELIMITER)
    if idx < 0:
        return TranslatedResponse(DEFAULT_STATUS, [], decode_text(stdout))

    block = stdout[:idx].decode("latin-1")
    body = stdout[idx + len(HEADER_DELIMITER):]

    headers = parse_headers(block)
    status = get_header(headers, "status")
    # the Status pseudo header never reaches the client
    headers = [(k, v) for k, v in headers if k.lower() != "status"]

    location = get_header(headers, "location")
    if location is not None:
        code = parse_status(status, REDIRECT_STATUS)
        if code == 500:
            raise InterpreterError(detail=block)
        if code > REDIRECT_STATUS:
            code = REDIRECT_STATUS
        return TranslatedResponse(code, headers,
                                  "Redirecting to %s" % location)

    code = parse_status(status, DEFAULT_STATUS)
    content_type = get_header(headers, "content-type")
    if content_type is not None and not is_textual(content_type):
        return TranslatedResponse(code, headers, body)

    return TranslatedResponse(code, headers, decode_text(body))
