#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import threading
from unittest import mock

import pytest

from fastgate.errors import (ChannelTransportError,
                             InterpreterDiagnosticOutput)
from fastgate.fastcgi.channel import FastCGIChannel
from fastgate.fastcgi.records import FCGI_OVERLOADED
from fastgate.fastcgi.interpreter import Interpreter

from support import FakeResponder, make_cfg, reply


def start_channel(responder, **settings):
    cfg = make_cfg(interpreter="", fastcgi_port=responder.port,
                   fastcgi_timeout=5, **settings)
    log = mock.Mock()
    channel = FastCGIChannel(cfg, log)
    channel.start(Interpreter(cfg, log))
    return channel


def hello(params, stdin):
    return reply(b"Content-Type: text/html\r\n\r\nhello")


def test_execute_before_start():
    channel = FastCGIChannel(make_cfg(), mock.Mock())
    with pytest.raises(ChannelTransportError) as exc_info:
        channel.execute({"REQUEST_METHOD": "GET"})
    assert str(exc_info.value) == "FastCGI channel not initialized"


def test_execute():
    with FakeResponder(hello) as responder:
        channel = start_channel(responder)
        resp = channel.execute({"REQUEST_METHOD": "POST",
                                "SCRIPT_FILENAME": "/srv/www/index.php"},
                               b"a=1&b=2")
        channel.close()

    assert resp.stdout == b"Content-Type: text/html\r\n\r\nhello"
    assert resp.stderr == b""
    assert resp.app_status == 0
    params, stdin = responder.requests[0]
    assert params == {"REQUEST_METHOD": "POST",
                      "SCRIPT_FILENAME": "/srv/www/index.php"}
    assert stdin == b"a=1&b=2"


def test_connection_is_reused():
    with FakeResponder(hello) as responder:
        channel = start_channel(responder)
        for _ in range(3):
            channel.execute({"REQUEST_METHOD": "GET"})
        channel.close()
    assert len(responder.requests) == 3
    assert responder.connections == 1


def test_app_status():
    with FakeResponder(lambda p, s: reply(b"x", app_status=255)) as responder:
        channel = start_channel(responder)
        assert channel.execute({}).app_status == 255
        channel.close()


def test_large_body():
    body = bytes(range(256)) * 1000

    def echo(params, stdin):
        return reply(stdin)

    with FakeResponder(echo) as responder:
        channel = start_channel(responder)
        resp = channel.execute({"CONTENT_LENGTH": str(len(body))}, body)
        channel.close()
    assert resp.stdout == body
    assert responder.requests[0][1] == body


def test_stderr_is_a_diagnostic_error():
    def warn(params, stdin):
        return reply(b"Content-Type: text/html\r\n\r\nok",
                     stderr=b"PHP Warning: oops")

    with FakeResponder(warn) as responder:
        channel = start_channel(responder)
        with pytest.raises(InterpreterDiagnosticOutput) as exc_info:
            channel.execute({})
        assert exc_info.value.detail == "PHP Warning: oops"
        assert exc_info.value.status_code == 500

        # the connection went back to the pool
        with pytest.raises(InterpreterDiagnosticOutput):
            channel.execute({})
        channel.close()
    assert responder.connections == 1


def test_request_not_completed():
    def overloaded(params, stdin):
        return reply(protocol_status=FCGI_OVERLOADED)

    with FakeResponder(overloaded) as responder:
        channel = start_channel(responder)
        with pytest.raises(ChannelTransportError) as exc_info:
            channel.execute({})
        assert "OVERLOADED" in str(exc_info.value)
        channel.close()


def test_unexpected_request_id():
    with FakeResponder(lambda p, s: reply(b"x", request_id=2)) as responder:
        channel = start_channel(responder)
        with pytest.raises(ChannelTransportError):
            channel.execute({})
        channel.close()


def test_fresh_connection_closed_without_reply():
    with FakeResponder(lambda p, s: b"",
                       close_after_request=True) as responder:
        channel = start_channel(responder)
        with pytest.raises(ChannelTransportError):
            channel.execute({})
        channel.close()
    assert len(responder.requests) == 1


def test_stale_connection_is_retried_once():
    with FakeResponder(hello, close_after_request=True) as responder:
        channel = start_channel(responder)
        first = channel.execute({"N": "1"})
        second = channel.execute({"N": "2"})
        channel.close()

    assert first.stdout == second.stdout
    assert [p["N"] for p, _ in responder.requests] == ["1", "2"]
    assert responder.connections == 2


def test_connections_are_capped():
    results = []
    errors = []

    def run():
        try:
            results.append(channel.execute({}))
        except Exception as e:
            errors.append(e)

    with FakeResponder(hello, delay=0.1) as responder:
        channel = start_channel(responder, fastcgi_max_conns=2)
        threads = [threading.Thread(target=run) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        channel.close()

    assert not errors
    assert len(results) == 6
    assert responder.max_active <= 2
    assert responder.connections <= 2


def test_close_refuses_new_requests():
    with FakeResponder(hello) as responder:
        channel = start_channel(responder)
        channel.execute({})
        channel.close()
        with pytest.raises(ChannelTransportError):
            channel.execute({})
