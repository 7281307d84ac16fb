#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Error and access logging.

Two loggers are used: ``fastgate.error`` for everything the server has to
say and ``fastgate.access`` for one line per served request. Both get a
handler of their own, and an INI file given with ``--log-config`` may
reshape them afterwards.
"""

import logging
from logging.config import fileConfig
import os
import sys
import time

from fastgate import util

ERROR_FORMAT = "%(asctime)s [%(process)d] [%(levelname)s] %(message)s"
DATE_FORMAT = "[%Y-%m-%d %H:%M:%S %z]"


class SafeAtoms(dict):
    """Access log atoms that never fail a ``%`` lookup.

    Double quotes in text values are escaped, header atoms match whatever
    the case, and a missing atom renders as ``-``.
    """

    def __init__(self, atoms):
        super().__init__(
            (key, value.replace('"', '\\"') if isinstance(value, str)
             else value)
            for key, value in atoms.items())

    def __getitem__(self, key):
        if key.startswith("{"):
            key = key.lower()
        return self.get(key, "-")


def version_str(version):
    return "HTTP/%d.%d" % tuple(version)


class Logger(object):

    LOG_LEVELS = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }

    def __init__(self, cfg):
        self.cfg = cfg
        self.error_log = logging.getLogger("fastgate.error")
        self.error_log.propagate = False
        self.access_log = logging.getLogger("fastgate.access")
        self.access_log.propagate = False
        self.setup(cfg)

    def setup(self, cfg):
        self.loglevel = self.LOG_LEVELS.get(cfg.loglevel.lower(), logging.INFO)
        self.error_log.setLevel(self.loglevel)
        self.access_log.setLevel(logging.INFO)

        self._set_handler(self.error_log, cfg.errorlog,
                          logging.Formatter(ERROR_FORMAT, DATE_FORMAT),
                          sys.stderr)
        if cfg.accesslog is not None:
            self._set_handler(self.access_log, cfg.accesslog,
                              logging.Formatter("%(message)s"), sys.stdout)

        if cfg.logconfig:
            if not os.path.exists(cfg.logconfig):
                raise RuntimeError(
                    "Error: log config '%s' not found" % cfg.logconfig)
            fileConfig(cfg.logconfig, disable_existing_loggers=False,
                       defaults={"__file__": cfg.logconfig,
                                 "here": os.path.dirname(cfg.logconfig)})

    def critical(self, msg, *args, **kwargs):
        self.error_log.critical(msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.error_log.error(msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.error_log.warning(msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.error_log.info(msg, *args, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self.error_log.debug(msg, *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self.error_log.exception(msg, *args, **kwargs)

    def log(self, lvl, msg, *args, **kwargs):
        if isinstance(lvl, str):
            lvl = self.LOG_LEVELS.get(lvl.lower(), logging.INFO)
        self.error_log.log(lvl, msg, *args, **kwargs)

    def atoms(self, resp, req, request_time, route_kind=None):
        """Map the access log atoms of one served request."""
        sent = getattr(resp, "sent", 0)
        peer = req.peer_addr
        atoms = {
            "h": peer[0] if isinstance(peer, tuple) else "-",
            "l": "-",
            "u": "-",
            "t": self.now(),
            "r": "%s %s %s" % (req.method, req.uri, version_str(req.version)),
            "s": resp.status,
            "m": req.method,
            "U": req.path,
            "q": req.query,
            "H": version_str(req.version),
            "b": str(sent) if sent else "-",
            "B": sent,
            "f": "-",
            "a": "-",
            "T": request_time.seconds,
            "D": request_time.seconds * 1000000 + request_time.microseconds,
            "k": route_kind or "-",
            "p": "<%s>" % os.getpid(),
        }

        for name, value in req.headers:
            atoms["{%s}i" % name.lower()] = value
        atoms["f"] = atoms.get("{referer}i", "-")
        atoms["a"] = atoms.get("{user-agent}i", "-")

        for name, value in resp.headers:
            atoms["{%s}o" % name.lower()] = value
        length = getattr(resp, "length", None)
        if length is not None:
            atoms["{content-length}o"] = str(length)
        return atoms

    def access(self, resp, req, request_time, route_kind=None):
        """Write the access line, Apache combined format by default."""
        if not (self.cfg.accesslog or self.cfg.logconfig):
            return

        atoms = SafeAtoms(self.atoms(resp, req, request_time, route_kind))
        try:
            self.access_log.info(self.cfg.access_log_format, atoms)
        except Exception:
            self.exception("Failed to format access log line")

    def now(self):
        return time.strftime("[%d/%b/%Y:%H:%M:%S %z]")

    def reopen_files(self):
        """Reopen every file handler, after a log rotation."""
        for name in list(logging.root.manager.loggerDict):
            for handler in logging.getLogger(name).handlers:
                if not isinstance(handler, logging.FileHandler):
                    continue
                with handler.lock:
                    if handler.stream:
                        handler.close()
                        handler.stream = handler._open()

    def _set_handler(self, log, output, fmt, stream):
        for handler in list(log.handlers):
            if getattr(handler, "_fastgate", False):
                log.removeHandler(handler)

        if output == "-":
            handler = logging.StreamHandler(stream)
        else:
            util.check_is_writeable(output)
            handler = logging.FileHandler(output)
            try:
                # keep the file reopenable after a rotation
                os.chown(handler.baseFilename, os.geteuid(), os.getegid())
            except OSError:
                # /dev/null and friends
                pass

        handler.setFormatter(fmt)
        handler._fastgate = True
        log.addHandler(handler)
