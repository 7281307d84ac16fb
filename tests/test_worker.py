#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import contextlib
import http.client
import socket
import threading
import time
from unittest import mock

import pytest

from fastgate import sock
from fastgate.fastcgi.channel import FastCGIChannel
from fastgate.fastcgi.interpreter import Interpreter
from fastgate.gateway import Gateway
from fastgate.worker import ThreadWorker, Waker

from support import FakeResponder, make_cfg, parse_response, reply


def script(params, stdin):
    body = "%s %s %s" % (params["REQUEST_METHOD"], params["REQUEST_URI"],
                         stdin.decode("latin-1"))
    return reply(b"Content-Type: text/html\r\n\r\n" + body.encode("latin-1"))


@contextlib.contextmanager
def serving(tmp_path, responder, **settings):
    (tmp_path / "index.php").write_text("<?php echo 1;")
    settings.setdefault("threads", 4)
    cfg = make_cfg(document_root=str(tmp_path), host="127.0.0.1", port=0,
                   interpreter="", fastcgi_port=responder.port,
                   graceful_timeout=5, **settings)
    log = mock.Mock()
    channel = FastCGIChannel(cfg, log)
    channel.start(Interpreter(cfg, log))
    listener = sock.create_socket(cfg, log)
    worker = ThreadWorker(cfg, log, listener, Gateway(cfg, log, channel))
    thread = threading.Thread(target=worker.run, daemon=True)
    thread.start()
    try:
        yield worker, listener.getsockname()[1]
    finally:
        worker.stop()
        thread.join(10)
        channel.close()
        sock.close_socket(listener)
    assert not thread.is_alive()


@pytest.fixture
def server(tmp_path):
    (tmp_path / "style.css").write_text("p {}")
    with FakeResponder(script) as responder:
        with serving(tmp_path, responder) as running:
            yield running


def test_static_and_script_on_one_connection(server):
    _, port = server
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
    try:
        conn.request("GET", "/style.css")
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == b"p {}"
        assert resp.getheader("Connection") == "keep-alive"

        conn.request("POST", "/index.php?x=1", body=b"a=b",
                     headers={"Content-Type": "text/plain"})
        resp = conn.getresponse()
        assert resp.status == 200
        assert resp.read() == b"POST /index.php?x=1 a=b"
        assert resp.getheader("Content-Type") == "text/html; charset=utf-8"
    finally:
        conn.close()


def test_not_found(server):
    _, port = server
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
    try:
        conn.request("GET", "/missing.png")
        resp = conn.getresponse()
        assert resp.status == 404
        assert b"Not Found: /missing.png" in resp.read()
    finally:
        conn.close()


def test_bad_request(server):
    _, port = server
    client = socket.create_connection(("127.0.0.1", port), timeout=10)
    try:
        client.sendall(b"GARBAGE\r\n\r\n")
        data = b""
        while True:
            chunk = client.recv(4096)
            if not chunk:
                break
            data += chunk
    finally:
        client.close()
    assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")
    assert b"Connection: close" in data


def test_stop_is_idempotent(server):
    worker, _ = server
    worker.stop()
    worker.stop()
    assert not worker.alive


def test_check_config_warns():
    cfg = make_cfg(worker_connections=4, threads=4)
    log = mock.Mock()
    ThreadWorker.check_config(cfg, log)
    assert log.warning.called


def test_waker_runs_calls_in_order():
    calls = []
    waker = Waker()
    try:
        waker.call_soon(calls.append, 1)
        waker.call_soon(calls.append, 2)
        waker.run_pending()
        waker.run_pending()
    finally:
        waker.close()
    assert calls == [1, 2]


def wait_for(predicate, timeout=5):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("timed out")
        time.sleep(0.01)


def read_all(client):
    data = b""
    while True:
        chunk = client.recv(4096)
        if not chunk:
            return data
        data += chunk


def slow_script(params, stdin):
    return reply(b"Content-Type: application/octet-stream\r\n\r\nslow-done")


def test_stop_drains_in_flight_request(tmp_path):
    with FakeResponder(slow_script, delay=1.0) as responder:
        with serving(tmp_path, responder) as (worker, port):
            client = socket.create_connection(("127.0.0.1", port),
                                              timeout=10)
            try:
                client.sendall(b"GET /index.php HTTP/1.1\r\n"
                               b"Host: example.com\r\n\r\n")
                wait_for(lambda: responder.active >= 1)
                worker.stop()
                data = read_all(client)
            finally:
                client.close()

    status, _, body = parse_response(data)
    assert (status, body) == (200, b"slow-done")


def test_client_gone_mid_exchange_frees_the_channel(tmp_path):
    with FakeResponder(slow_script, delay=0.5) as responder:
        with serving(tmp_path, responder, fastcgi_max_conns=1) as (_, port):
            client = socket.create_connection(("127.0.0.1", port),
                                              timeout=10)
            client.sendall(b"POST /index.php HTTP/1.1\r\n"
                           b"Content-Length: 3\r\n\r\nabc")
            wait_for(lambda: responder.active >= 1)
            client.close()

            conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
            try:
                conn.request("GET", "/index.php")
                resp = conn.getresponse()
                assert resp.status == 200
                assert resp.read() == b"slow-done"
            finally:
                conn.close()

    assert len(responder.requests) == 2
    assert responder.max_active == 1
