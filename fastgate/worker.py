#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Threaded connection worker.

The loop thread owns the selector. It accepts clients and watches idle
keep-alive connections. A connection that becomes readable is handed to
the thread pool, which serves exactly one request on it; the connection
then comes back to the loop to be parked again or closed. Only the loop
thread touches the selector and the idle queue.
"""

from concurrent import futures
import errno
import queue
import selectors
import socket
import ssl
import time
from collections import deque
from functools import partial

from fastgate import http, sock, util
from fastgate.http.errors import BadRequest, NoMoreData

# errors of a client that went away, not worth more than a debug line
CLIENT_GONE = {
    errno.EPIPE: "broken pipe",
    errno.ECONNRESET: "connection reset",
    errno.ENOTCONN: "socket not connected",
}


class ClientConnection(object):

    def __init__(self, cfg, sock, client, server, ssl_context=None):
        self.cfg = cfg
        self.sock = sock
        self.client = client
        self.server = server
        self.ssl_context = ssl_context
        self.requests = None
        self.deadline = None

    def setup(self):
        """Wrap the socket for TLS and attach a request reader, once."""
        if self.requests is not None:
            return
        if self.ssl_context is not None:
            self.sock = sock.ssl_wrap_socket(self.sock, self.ssl_context)
        self.requests = http.RequestReader(self.cfg, self.sock, self.client)

    def park(self, timeout):
        self.deadline = time.monotonic() + timeout

    def close(self):
        util.close(self.sock)


class Waker(object):
    """Run callables on the loop thread.

    Pool threads queue a call and write a byte to a socket pair; the loop
    selects on the other end and runs whatever is queued.
    """

    def __init__(self):
        self.calls = queue.SimpleQueue()
        self.rsock, self.wsock = socket.socketpair()
        self.rsock.setblocking(False)

    def fileno(self):
        return self.rsock.fileno()

    def call_soon(self, func, *args):
        self.calls.put(partial(func, *args))
        self.wsock.send(b"\0")

    def run_pending(self, _fileobj=None):
        try:
            self.rsock.recv(4096)
        except BlockingIOError:
            pass
        while True:
            try:
                func = self.calls.get_nowait()
            except queue.Empty:
                return
            func()

    def close(self):
        self.rsock.close()
        self.wsock.close()


class ThreadWorker(object):
    """Serve the listener until ``stop()`` is called.

    ``stop()`` is safe to call from a signal handler. The loop then stops
    accepting, closes idle connections and waits up to
    ``graceful_timeout`` seconds for the requests in flight.
    """

    def __init__(self, cfg, log, listener, gateway, ssl_context=None):
        self.cfg = cfg
        self.log = log
        self.listener = listener
        self.gateway = gateway
        self.ssl_context = ssl_context

        self.alive = True
        self.max_idle = cfg.worker_connections - cfg.threads
        self.waker = Waker()
        self.pool = None
        self.selector = None
        self.idle = deque()
        self.open_conns = 0
        self.accepting = False
        self.nr = 0

    @classmethod
    def check_config(cls, cfg, log):
        if cfg.keepalive and cfg.worker_connections <= cfg.threads:
            log.warning("worker_connections (%s) leaves no room for "
                        "keep-alive connections with %s threads",
                        cfg.worker_connections, cfg.threads)

    def stop(self):
        if self.alive:
            self.alive = False
            # wake the selector up
            self.waker.call_soon(lambda: None)

    def run(self):
        self.pool = futures.ThreadPoolExecutor(max_workers=self.cfg.threads)
        self.selector = selectors.DefaultSelector()
        self.selector.register(self.waker, selectors.EVENT_READ,
                               self.waker.run_pending)
        try:
            while self.alive:
                self.set_accepting(
                    self.open_conns < self.cfg.worker_connections)
                self.dispatch(1.0)
                self.expire_idle(time.monotonic())
            self.set_accepting(False)
            self.drain()
        finally:
            self.pool.shutdown(wait=False)
            self.selector.close()
            self.waker.close()

    def drain(self):
        # idle connections have nothing in flight
        self.expire_idle(None)

        deadline = time.monotonic() + self.cfg.graceful_timeout
        while self.open_conns > 0:
            left = deadline - time.monotonic()
            if left <= 0:
                self.log.warning("Graceful timeout reached with %d "
                                 "connection(s) still open", self.open_conns)
                return
            self.dispatch(left)

    def dispatch(self, timeout):
        for key, _ in self.selector.select(timeout):
            key.data(key.fileobj)

    def set_accepting(self, enabled):
        if enabled == self.accepting:
            return
        if enabled:
            self.selector.register(self.listener, selectors.EVENT_READ,
                                   self.accept)
        else:
            self.selector.unregister(self.listener)
        self.accepting = enabled

    def accept(self, listener):
        try:
            client_sock, client = listener.accept()
        except OSError as e:
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK,
                           errno.ECONNABORTED):
                return
            raise

        # accepted sockets inherit non-blocking mode on some platforms
        client_sock.setblocking(True)
        conn = ClientConnection(self.cfg, client_sock, client,
                                listener.getsockname(), self.ssl_context)
        self.open_conns += 1
        self.watch(conn)

    def watch(self, conn):
        self.selector.register(conn.sock, selectors.EVENT_READ,
                               partial(self.on_readable, conn))

    def on_readable(self, conn, _fileobj):
        self.selector.unregister(conn.sock)
        if conn.deadline is not None:
            self.idle.remove(conn)
            conn.deadline = None
        conn.setup()

        fut = self.pool.submit(self.handle, conn)
        fut.add_done_callback(
            lambda f: self.waker.call_soon(self.finish, conn, f))

    def finish(self, conn, fut):
        keepalive = (not fut.cancelled() and fut.exception() is None and
                     fut.result())
        if keepalive and self.alive:
            try:
                self.watch(conn)
            except (OSError, ValueError) as e:
                self.log.debug("Can't park connection: %s", e)
            else:
                conn.park(self.cfg.keepalive)
                self.idle.append(conn)
                return
        self.open_conns -= 1
        conn.close()

    def expire_idle(self, now):
        """Close idle connections past their deadline, all when ``now`` is None."""
        while self.idle:
            conn = self.idle[0]
            if now is not None and conn.deadline > now:
                break
            self.idle.popleft()
            self.selector.unregister(conn.sock)
            self.open_conns -= 1
            conn.close()

    def handle(self, conn):
        """Serve one request on ``conn``; return True to keep it open."""
        req = None
        try:
            req = next(conn.requests)
            return self.handle_request(req, conn)
        except StopIteration:
            self.log.debug("Closing connection.")
        except BadRequest as e:
            self.reject(conn, e)
        except NoMoreData as e:
            self.log.debug("Client left mid-request: %s", e)
        except ssl.SSLError as e:
            if e.args[0] == ssl.SSL_ERROR_EOF:
                self.log.debug("TLS connection closed")
            else:
                self.log.debug("TLS error: %s", e)
        except OSError as e:
            if e.errno in CLIENT_GONE:
                self.log.debug("Ignoring %s", CLIENT_GONE[e.errno])
            else:
                self.log.exception("Socket error processing request.")
        except Exception:
            if req is not None:
                # the gateway logged it, the response is cut short
                return False
            self.log.exception("Error reading request")
            self.send_error(conn, 500, "")
        return False

    def handle_request(self, req, conn):
        self.nr += 1
        keepalive = (self.alive and self.cfg.keepalive > 0 and
                     len(self.idle) < self.max_idle)
        resp = self.gateway.handle(req, conn, keepalive=keepalive)
        return not resp.should_close()

    def reject(self, conn, exc):
        peer = conn.client[0] if isinstance(conn.client, tuple) else "-"
        self.log.debug("Invalid request from ip=%s: %s", peer, exc)
        self.send_error(conn, exc.code, str(exc))

    def send_error(self, conn, status, mesg):
        try:
            util.write_error(conn.sock, status, util.reason_phrase(status),
                             mesg)
        except OSError as e:
            self.log.debug("Can't send error response: %s", e)
