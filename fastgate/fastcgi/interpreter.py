#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import errno
import shlex
import socket
import subprocess
import time

from fastgate.errors import ChannelStartupFailed


class Interpreter(object):
    """Supervise the FastCGI interpreter process.

    The interpreter is started as ``COMMAND -b ADDRESS`` and is considered
    ready once it accepts a connection on ``ADDRESS``. When no command is
    configured nothing is spawned and only readiness is checked, for an
    interpreter managed outside of fastgate.
    """

    POLL_INTERVAL = 0.1
    STOP_TIMEOUT = 5

    def __init__(self, cfg, log):
        self.cfg = cfg
        self.log = log
        self.address = cfg.fastcgi_address
        self.command = cfg.interpreter
        self.startup_timeout = cfg.startup_timeout
        self.proc = None

    def __repr__(self):
        return "<Interpreter %r at %s>" % (self.command, self.bind_arg())

    def bind_arg(self):
        if isinstance(self.address, tuple):
            return "%s:%s" % self.address
        return self.address

    def args(self):
        return shlex.split(self.command) + ["-b", self.bind_arg()]

    def start(self):
        if not self.command:
            self.log.info("No interpreter configured, using the server at %s",
                          self.bind_arg())
            return

        args = self.args()
        self.log.info("Starting FastCGI interpreter: %s", " ".join(args))
        try:
            self.proc = subprocess.Popen(args, stdin=subprocess.DEVNULL)
        except OSError as e:
            raise ChannelStartupFailed(
                "Can't start FastCGI interpreter %r: %s" % (args[0], e))

    def alive(self):
        if self.proc is None:
            return True
        return self.proc.poll() is None

    @property
    def returncode(self):
        if self.proc is None:
            return None
        return self.proc.poll()

    def wait_ready(self, timeout=None):
        """Block until the interpreter accepts connections.

        Raises ``ChannelStartupFailed`` when the process exits first or when
        ``timeout`` seconds pass without a successful connection.
        """
        if timeout is None:
            timeout = self.startup_timeout
        deadline = time.monotonic() + timeout

        while True:
            if not self.alive():
                raise ChannelStartupFailed(
                    "FastCGI interpreter exited before initialization",
                    returncode=self.returncode)

            if self.accepting():
                self.log.info("FastCGI interpreter is ready at %s",
                              self.bind_arg())
                return

            if time.monotonic() >= deadline:
                raise ChannelStartupFailed(
                    "FastCGI interpreter not ready after %ss at %s" % (
                        timeout, self.bind_arg()))
            time.sleep(self.POLL_INTERVAL)

    def accepting(self):
        try:
            sock = self.connect(self.POLL_INTERVAL * 5)
        except OSError as e:
            if e.errno not in (errno.ECONNREFUSED, errno.ENOENT,
                               errno.ECONNRESET, errno.ETIMEDOUT, None):
                self.log.debug("FastCGI connection attempt failed: %s", e)
            return False
        sock.close()
        return True

    def connect(self, timeout=None):
        if isinstance(self.address, tuple):
            return socket.create_connection(self.address, timeout=timeout)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(self.address)
        except OSError:
            sock.close()
            raise
        return sock

    def stop(self, timeout=None):
        if self.proc is None:
            return
        if timeout is None:
            timeout = self.STOP_TIMEOUT

        proc, self.proc = self.proc, None
        if proc.poll() is not None:
            self.log.info("FastCGI interpreter already exited (%s)",
                          proc.returncode)
            return

        proc.terminate()
        try:
            proc.wait(timeout)
        except subprocess.TimeoutExpired:
            self.log.warning("FastCGI interpreter ignored SIGTERM, killing it")
            proc.kill()
            proc.wait()
        self.log.info("FastCGI interpreter closed")
