#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import signal
import ssl
import sys

from fastgate import __version__, sock, util
from fastgate.errors import (ChannelStartupFailed, HaltServer,
                             ListenerBindError)
from fastgate.fastcgi.channel import FastCGIChannel
from fastgate.fastcgi.interpreter import Interpreter
from fastgate.gateway import Gateway
from fastgate.router import Router
from fastgate.worker import ThreadWorker


class Arbiter(object):
    """Own the process wide pieces and their lifetime.

    ``start()`` loads the TLS context, launches the interpreter, waits for
    the FastCGI channel and binds the listener, in that order. Any failure
    there halts the process. A stop signal lets the worker drain, then
    everything is closed in reverse order.
    """

    STOP_SIGNALS = ("hup", "int", "quit", "term")

    def __init__(self, app):
        self.app = app
        self.cfg = app.cfg
        self.log = app.log

        self.proc_name = self.cfg.proc_name
        self.ssl_context = None
        self.interpreter = None
        self.channel = None
        self.listener = None
        self.worker = None

    def start(self):
        self.log.info("Starting fastgate %s", __version__)

        self.load_tls()

        self.interpreter = Interpreter(self.cfg, self.log)
        self.channel = FastCGIChannel(self.cfg, self.log)
        try:
            self.channel.start(self.interpreter)
        except ChannelStartupFailed as e:
            raise HaltServer(str(e))

        self.listener = self.bind()
        self.log.info("Listening at: %s", self.listener)
        self.log.info("Document root: %s", self.cfg.document_root_path)

        gateway = Gateway(self.cfg, self.log, self.channel,
                          Router.from_config(self.cfg))
        ThreadWorker.check_config(self.cfg, self.log)
        self.worker = ThreadWorker(self.cfg, self.log, self.listener, gateway,
                                   ssl_context=self.ssl_context)

        self.init_signals()

    def load_tls(self):
        if not self.cfg.is_ssl:
            if not self.cfg.plain_http:
                raise HaltServer("No TLS certificate configured, "
                                 "pass --certfile or --plain-http")
            self.log.warning("Serving plain http, no certificate configured")
            return
        try:
            self.ssl_context = sock.ssl_context(self.cfg)
        except (OSError, ValueError, ssl.SSLError) as e:
            raise HaltServer("Can't load TLS certificate: %s" % e)

    def bind(self):
        try:
            return sock.create_socket(self.cfg, self.log)
        except ListenerBindError as e:
            if e.cause == ListenerBindError.IN_USE:
                self.log.error("Address already in use: %s", e.address)
            elif e.cause == ListenerBindError.PERMISSION_DENIED:
                self.log.error("Permission denied binding: %s", e.address)
            raise HaltServer(str(e))

    def init_signals(self):
        for name in self.STOP_SIGNALS + ("usr1",):
            signal.signal(getattr(signal, "SIG" + name.upper()), self.signal)

        # a log reopen must not interrupt system calls of active requests
        if hasattr(signal, "siginterrupt"):
            signal.siginterrupt(signal.SIGUSR1, False)

    def signal(self, sig, frame):
        try:
            name = signal.Signals(sig).name[3:].lower()
        except ValueError:
            name = str(sig)
        if name in self.STOP_SIGNALS:
            self.log.info("Handling signal: %s", name)
            self.graceful_stop()
        elif name == "usr1":
            self.log.info("Handling signal: %s", name)
            self.log.reopen_files()
        else:
            self.log.error("Unhandled signal: %s", name)

    def graceful_stop(self):
        if self.worker is not None:
            self.worker.stop()

    def run(self):
        try:
            self.start()
        except HaltServer as inst:
            self.halt(reason=inst.reason, exit_status=inst.exit_status)

        util._setproctitle("master [%s]" % self.proc_name)

        try:
            self.worker.run()
        except HaltServer as inst:
            self.halt(reason=inst.reason, exit_status=inst.exit_status)
        except SystemExit:
            raise
        except Exception:
            self.log.exception("Unhandled exception in main loop")
            self.halt(exit_status=1)
        self.halt()

    def stop(self):
        """Close the channel, the interpreter and the listener.

        The worker has drained in-flight requests by then.
        """
        if self.channel is not None:
            self.channel.close()
        if self.interpreter is not None:
            self.interpreter.stop()
        if self.listener is not None:
            sock.close_socket(self.listener)
            self.listener = None

    def halt(self, reason=None, exit_status=0):
        self.stop()

        log_func = self.log.info if exit_status == 0 else self.log.error
        log_func("Shutting down: %s", self.proc_name)
        if reason is not None:
            log_func("Reason: %s", reason)

        sys.exit(exit_status)
