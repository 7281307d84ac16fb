#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import errno
import os
import socket
import ssl
import stat

from fastgate import util
from fastgate.errors import ListenerBindError

BIND_ERRORS = {
    errno.EADDRINUSE: ListenerBindError.IN_USE,
    errno.EACCES: ListenerBindError.PERMISSION_DENIED,
    errno.EPERM: ListenerBindError.PERMISSION_DENIED,
}


class Listener(object):
    """A bound, non-blocking listening socket.

    Attribute access falls through to the socket, so a listener can be
    registered with a selector and accepted on directly.
    """

    FAMILY = socket.AF_INET

    def __init__(self, address, cfg, log):
        self.address = address
        self.cfg = cfg
        self.log = log
        self.sock = socket.socket(self.FAMILY, socket.SOCK_STREAM)
        try:
            self.prepare(self.sock)
        except OSError:
            self.sock.close()
            raise

    def __getattr__(self, name):
        return getattr(self.sock, name)

    def __str__(self):
        return "<socket %d>" % self.sock.fileno()

    @property
    def scheme(self):
        return "https" if self.cfg.is_ssl else "http"

    def prepare(self, sock):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(self.address)
        sock.setblocking(False)
        sock.listen(self.cfg.backlog)

    def close(self):
        if self.sock is None:
            return
        try:
            self.sock.close()
        except OSError as e:
            self.log.info("Error while closing socket %s", e)
        self.sock = None


class TCPListener(Listener):

    def __str__(self):
        host, port = self.sock.getsockname()[:2]
        return "%s://%s:%d" % (self.scheme, host, port)

    def prepare(self, sock):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        super().prepare(sock)


class TCP6Listener(TCPListener):

    FAMILY = socket.AF_INET6

    def __str__(self):
        host, port = self.sock.getsockname()[:2]
        return "%s://[%s]:%d" % (self.scheme, host, port)


class UnixListener(Listener):

    FAMILY = socket.AF_UNIX

    def __init__(self, address, cfg, log):
        # a socket file left by a previous run is replaced
        try:
            st = os.stat(address)
        except FileNotFoundError:
            pass
        else:
            if not stat.S_ISSOCK(st.st_mode):
                raise ValueError("%r is not a socket" % (address,))
            os.remove(address)
        super().__init__(address, cfg, log)

    def __str__(self):
        return "unix:%s" % util.bytes_to_str(self.address)


def listener_class(addr):
    if isinstance(addr, tuple):
        return TCP6Listener if util.is_ipv6(addr[0]) else TCPListener
    if isinstance(addr, (str, bytes)):
        return UnixListener
    raise TypeError("Unable to create socket from: %r" % (addr,))


def create_socket(cfg, log):
    """Bind the listener of the configured address.

    A failed bind raises ``ListenerBindError``; its ``cause`` tells a busy
    port from missing privileges.
    """
    addr = cfg.address
    cls = listener_class(addr)
    try:
        return cls(addr, cfg, log)
    except OSError as e:
        raise ListenerBindError(addr, BIND_ERRORS.get(e.errno), exc=e)


def close_socket(listener, unlink=True):
    name = listener.getsockname()
    listener.close()
    if unlink and listener_class(name) is UnixListener:
        os.unlink(name)


def ssl_context(cfg):
    """Load the TLS material once, at startup.

    Any failure is fatal for the process and propagates to the caller.
    """
    if not cfg.certfile:
        raise ValueError("certfile is required to serve https")
    for name in ("certfile", "keyfile"):
        path = getattr(cfg, name)
        if path and not os.path.exists(path):
            raise ValueError('%s "%s" does not exist' % (name, path))

    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(certfile=cfg.certfile, keyfile=cfg.keyfile)
    if cfg.ciphers:
        context.set_ciphers(cfg.ciphers)
    return context


def ssl_wrap_socket(sock, context):
    return context.wrap_socket(sock, server_side=True,
                               do_handshake_on_connect=False)
