#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Settings of fastgate.

Every setting is a ``Setting`` subclass. Declaring one registers it, in
declaration order, and gives it a command line flag. ``Config`` holds one
value per registered setting.
"""

import argparse
import copy
import os
import sys
import textwrap

from fastgate import __version__, util
from fastgate.errors import ConfigError

KNOWN_SETTINGS = []


class Config(object):

    def __init__(self, usage=None, prog=None):
        self.settings = dict((cls.name, cls()) for cls in KNOWN_SETTINGS)
        self.usage = usage
        self.prog = prog or os.path.basename(sys.argv[0])

    def __str__(self):
        width = max(len(name) for name in self.settings)
        return "\n".join("%-*s = %r" % (width, name, self.settings[name].get())
                         for name in sorted(self.settings))

    def __getattr__(self, name):
        if name not in self.settings:
            raise AttributeError("No configuration setting for: %s" % name)
        return self.settings[name].get()

    def __setattr__(self, name, value):
        if name != "settings" and name in self.settings:
            raise AttributeError("Settings are read-only, use set()")
        super().__setattr__(name, value)

    def set(self, name, value):
        if name not in self.settings:
            raise AttributeError("No configuration setting for: %s" % name)
        self.settings[name].set(value)

    def parser(self):
        parser = argparse.ArgumentParser(usage=self.usage, prog=self.prog)
        parser.add_argument("-v", "--version", action="version",
                            version="%(prog)s " + __version__)
        for setting in sorted(self.settings.values(),
                              key=lambda s: s.order):
            setting.add_option(parser)
        return parser

    def _address(self, host, port):
        port = self.settings[port].get()
        if isinstance(port, str):
            return port
        return (self.settings[host].get(), port)

    @property
    def address(self):
        return self._address("host", "port")

    @property
    def fastcgi_address(self):
        return self._address("fastcgi_host", "fastcgi_port")

    @property
    def document_root_path(self):
        return os.path.abspath(self.settings["document_root"].get())

    @property
    def is_ssl(self):
        return bool(self.certfile or self.keyfile)

    @property
    def proc_name(self):
        return self.settings["proc_name"].get() or "fastgate"


class SettingMeta(type):

    def __new__(mcs, name, bases, attrs):
        cls = super().__new__(mcs, name, bases, attrs)
        if not bases:
            # the Setting base class itself
            return cls

        cls.order = len(KNOWN_SETTINGS)
        cls.validator = staticmethod(attrs["validator"])
        cls.desc = textwrap.dedent(attrs.get("desc", "")).strip()
        cls.short = cls.desc.splitlines()[0]
        KNOWN_SETTINGS.append(cls)
        return cls


class Setting(metaclass=SettingMeta):
    name = None
    section = None
    cli = None
    meta = None
    action = None
    type = None
    validator = None
    default = None
    desc = None
    short = None

    def __init__(self):
        self.value = None
        if self.default is not None:
            self.set(copy.copy(self.default))

    def __repr__(self):
        return "<Setting %s=%r>" % (self.name, self.value)

    def add_option(self, parser):
        if not self.cli:
            return
        kwargs = {
            "dest": self.name,
            "action": self.action or "store",
            "default": None,
            "help": ("%s [%s]" % (self.short, self.default)).replace("%", "%%"),
        }
        if kwargs["action"] == "store":
            kwargs["type"] = self.type or str
        if self.meta is not None:
            kwargs["metavar"] = self.meta
        parser.add_argument(*self.cli, **kwargs)

    def get(self):
        return self.value

    def set(self, val):
        self.value = self.validator(val)


TRUE_WORDS = ("true", "yes", "on", "1")
FALSE_WORDS = ("false", "no", "off", "0")


def validate_bool(val):
    if val is None or isinstance(val, bool):
        return val
    if not isinstance(val, str):
        raise TypeError("Not a boolean: %r" % (val,))
    word = val.strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError("Invalid boolean: %s" % val)


def validate_pos_int(val):
    # int(True) is 1, base 0 accepts "0x10"
    val = int(val) if isinstance(val, int) else int(val, 0)
    if val < 0:
        raise ValueError("Value must be positive: %s" % val)
    return val


def validate_string(val):
    if val is None:
        return None
    if not isinstance(val, str):
        raise TypeError("Not a string: %r" % (val,))
    return val.strip()


def validate_port(val):
    port = util.normalize_port(val)
    if port is False:
        raise ConfigError("Invalid port: %r" % (val,))
    if isinstance(port, str):
        port = validate_string(port)
        if not port:
            raise ConfigError("Invalid port: %r" % (val,))
    elif port > 65535:
        raise ConfigError("Port out of range: %s" % port)
    return port


def validate_extensions(val):
    if isinstance(val, str):
        val = val.split(",")
    exts = []
    for ext in val or ():
        ext = validate_string(ext).lower()
        if ext:
            exts.append(ext if ext.startswith(".") else "." + ext)
    if not exts:
        raise ConfigError("At least one script extension is required")
    return exts


def validate_index_name(val):
    val = validate_string(val)
    if not val or "/" in val:
        raise ValueError("Invalid index file name: %r" % val)
    return val


class ConfigFile(Setting):
    name = "config"
    section = "Config File"
    cli = ["-c", "--config"]
    meta = "CONFIG"
    validator = validate_string
    desc = """\
        A Python file whose top level names set fastgate settings.

        Names that are not settings are ignored. Command line flags win over
        the file, and the file wins over the defaults.
        """


class Host(Setting):
    name = "host"
    section = "Server Socket"
    cli = ["--host"]
    meta = "ADDRESS"
    validator = validate_string
    default = "0.0.0.0"
    desc = """\
        The interface the HTTPS server listens on.
        """


class Port(Setting):
    name = "port"
    section = "Server Socket"
    cli = ["-p", "--port"]
    meta = "PORT"
    validator = validate_port
    default = 443
    desc = """\
        The port of the HTTPS server.

        A number, or any other string which is then used as the path of a
        named pipe (Unix socket).
        """


class Backlog(Setting):
    name = "backlog"
    section = "Server Socket"
    cli = ["--backlog"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 2048
    desc = """\
        How many connections may wait in the kernel to be accepted.
        """


class Threads(Setting):
    name = "threads"
    section = "Worker"
    cli = ["--threads"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 10
    desc = """\
        Threads serving requests.

        A script request holds its thread until the interpreter answers, so
        this also bounds how many scripts run at once.
        """


class WorkerConnections(Setting):
    name = "worker_connections"
    section = "Worker"
    cli = ["--worker-connections"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 1000
    desc = """\
        Open client connections, busy or idle, before accepting pauses.
        """


class Keepalive(Setting):
    name = "keepalive"
    section = "Worker"
    cli = ["--keep-alive"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 2
    desc = """\
        Seconds an idle keep-alive connection waits for its next request.

        0 closes every connection after its response.
        """


class GracefulTimeout(Setting):
    name = "graceful_timeout"
    section = "Worker"
    cli = ["--graceful-timeout"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 30
    desc = """\
        Seconds left to in-flight requests after a stop signal.

        The interpreter is stopped and the listener closed afterwards.
        """


class LimitRequestLine(Setting):
    name = "limit_request_line"
    section = "Security"
    cli = ["--limit-request-line"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 4094
    desc = """\
        Longest request line accepted, in bytes.

        0 or anything above 8190 means 8190.
        """


class LimitRequestFields(Setting):
    name = "limit_request_fields"
    section = "Security"
    cli = ["--limit-request-fields"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 100
    desc = """\
        Most header fields accepted in one request.
        """


class LimitRequestFieldSize(Setting):
    name = "limit_request_field_size"
    section = "Security"
    cli = ["--limit-request-field_size"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 8190
    desc = """\
        Largest header field accepted, name and value, in bytes.

        0 means 8190.
        """


class DocumentRoot(Setting):
    name = "document_root"
    section = "Routing"
    cli = ["--root"]
    meta = "DIR"
    validator = validate_string
    default = "public/public_html"
    desc = """\
        The directory served as the web root.

        Relative paths are resolved against the current working directory.
        Nothing outside this directory is ever served or executed.
        """


class SingleEntryPoint(Setting):
    name = "single_entry_point"
    section = "Routing"
    cli = ["--single-entry-point"]
    meta = "BOOL"
    validator = validate_bool
    default = True
    desc = """\
        Send every directory-style request to the index script at the root.

        When false, a request for ``/blog/`` runs ``/blog/index.php`` (or
        serves ``/blog/index.html``) instead of the root index script.
        """


class ScriptExtensions(Setting):
    name = "script_extensions"
    section = "Routing"
    cli = ["--script-ext"]
    meta = "EXTS"
    validator = validate_extensions
    default = [".php"]
    desc = """\
        Comma separated file extensions executed by the interpreter.

        Files with any other extension are served as static files.
        """


class IndexScript(Setting):
    name = "index_script"
    section = "Routing"
    cli = ["--index-script"]
    meta = "NAME"
    validator = validate_index_name
    default = "index.php"
    desc = """\
        The script tried first for directory-style requests.
        """


class IndexFile(Setting):
    name = "index_file"
    section = "Routing"
    cli = ["--index-file"]
    meta = "NAME"
    validator = validate_index_name
    default = "index.html"
    desc = """\
        The static file tried when no index script exists.
        """


class FastCGIHost(Setting):
    name = "fastcgi_host"
    section = "FastCGI"
    cli = ["--fastcgi-host"]
    meta = "ADDRESS"
    validator = validate_string
    default = "127.0.0.1"
    desc = """\
        The address the FastCGI interpreter listens on.
        """


class FastCGIPort(Setting):
    name = "fastcgi_port"
    section = "FastCGI"
    cli = ["--fastcgi-port"]
    meta = "PORT"
    validator = validate_port
    default = 9000
    desc = """\
        The port of the FastCGI interpreter.

        A number, or any other string which is then used as the path of a
        Unix socket.
        """


class FastCGIMaxConns(Setting):
    name = "fastcgi_max_conns"
    section = "FastCGI"
    cli = ["--fastcgi-max-conns"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 100
    desc = """\
        The maximum number of concurrent connections to the interpreter.

        Requests above this number wait for a free connection.
        """


class FastCGITimeout(Setting):
    name = "fastcgi_timeout"
    section = "FastCGI"
    cli = ["--fastcgi-timeout"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 30
    desc = """\
        Seconds to wait on a silent interpreter connection before failing the
        request.

        Set to 0 to wait forever.
        """


class Interpreter(Setting):
    name = "interpreter"
    section = "FastCGI"
    cli = ["--interpreter"]
    meta = "COMMAND"
    validator = validate_string
    default = "php-cgi"
    desc = """\
        The FastCGI interpreter started and supervised by fastgate.

        It is run as ``COMMAND -b ADDRESS``. An empty value means the
        interpreter is managed elsewhere and fastgate only waits for it to
        accept connections.
        """


class StartupTimeout(Setting):
    name = "startup_timeout"
    section = "FastCGI"
    cli = ["--startup-timeout"]
    meta = "INT"
    validator = validate_pos_int
    type = int
    default = 10
    desc = """\
        Seconds to wait for the interpreter to accept connections at startup.
        """


class KeyFile(Setting):
    name = "keyfile"
    section = "TLS"
    cli = ["--keyfile"]
    meta = "FILE"
    validator = validate_string
    desc = """\
        The private key of the certificate, in PEM format.

        May be left out when the certificate file also holds the key.
        """


class CertFile(Setting):
    name = "certfile"
    section = "TLS"
    cli = ["--certfile"]
    meta = "FILE"
    validator = validate_string
    desc = """\
        The certificate chain served to clients, in PEM format.

        Required unless ``--plain-http`` is given. It is loaded once at
        startup and a load failure stops fastgate.
        """


class Ciphers(Setting):
    name = "ciphers"
    section = "TLS"
    cli = ["--ciphers"]
    meta = "CIPHERS"
    validator = validate_string
    desc = """\
        An OpenSSL cipher list replacing the ``ssl`` module defaults.
        """


class PlainHttp(Setting):
    name = "plain_http"
    section = "TLS"
    cli = ["--plain-http"]
    validator = validate_bool
    action = "store_true"
    default = False
    desc = """\
        Serve plain HTTP when no certificate is configured.

        Meant for local development or for running behind a TLS terminating
        proxy. Without it a missing certificate stops fastgate at startup.
        """


class Development(Setting):
    name = "development"
    section = "Debugging"
    cli = ["--dev"]
    validator = validate_bool
    action = "store_true"
    default = False
    desc = """\
        Run in development mode.

        Error pages include interpreter diagnostics and tracebacks. Never
        enable this on a public server.
        """


class ErrorLog(Setting):
    name = "errorlog"
    section = "Logging"
    cli = ["--error-logfile", "--log-file"]
    meta = "FILE"
    validator = validate_string
    default = "-"
    desc = """\
        Where the error log goes, ``-`` for stderr.
        """


class AccessLog(Setting):
    name = "accesslog"
    section = "Logging"
    cli = ["--access-logfile"]
    meta = "FILE"
    validator = validate_string
    desc = """\
        Where the access log goes, ``-`` for stdout. Off by default.
        """


class AccessLogFormat(Setting):
    name = "access_log_format"
    section = "Logging"
    cli = ["--access-logformat"]
    meta = "STRING"
    validator = validate_string
    default = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s"'
    desc = """\
        The access log line, as ``%(atom)s`` placeholders.

        ===========  ===========================================
        Atom         Value
        ===========  ===========================================
        h            remote address
        l            ``-``
        u            ``-``
        t            date of the request
        r            request line, like ``GET / HTTP/1.1``
        m            request method
        U            path without the query string
        q            query string
        H            protocol
        s            status
        B            body bytes sent
        b            body bytes sent, ``-`` for none
        f            referer
        a            user agent
        T            request time in seconds
        D            request time in microseconds
        k            route kind (static, script, not_found)
        p            process ID
        {header}i    request header
        {header}o    response header
        ===========  ===========================================
        """


class Loglevel(Setting):
    name = "loglevel"
    section = "Logging"
    cli = ["--log-level"]
    meta = "LEVEL"
    validator = validate_string
    default = "info"
    desc = """\
        The lowest level written to the error log.

        One of debug, info, warning, error or critical.
        """


class LogConfig(Setting):
    name = "logconfig"
    section = "Logging"
    cli = ["--log-config"]
    meta = "FILE"
    validator = validate_string
    desc = """\
        An INI file for ``logging.config.fileConfig``, applied last.
        """


class Procname(Setting):
    name = "proc_name"
    section = "Process Naming"
    cli = ["-n", "--name"]
    meta = "STRING"
    validator = validate_string
    desc = """\
        The name shown by ``ps`` and ``top``, through setproctitle.

        Ignored when setproctitle is not installed.
        """
