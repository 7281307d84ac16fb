#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

import os
import runpy
import sys
import traceback

from fastgate.arbiter import Arbiter
from fastgate.config import Config
from fastgate.errors import ConfigError
from fastgate.glogging import Logger


def fail(msg):
    print("\nError: %s" % msg, file=sys.stderr)
    sys.stderr.flush()
    sys.exit(1)


class Application(object):
    """Build the configuration, then hand over to the arbiter.

    Settings are applied from lowest to highest precedence: the defaults,
    the ``-c`` config file, then the command line.
    """

    def __init__(self, usage=None, prog=None, argv=None):
        self.usage = usage
        self.prog = prog
        self.argv = argv
        self.cfg = None
        self.log = None
        try:
            self.load_config()
        except Exception as e:
            fail(e)

    def read_config_file(self, filename):
        if not os.path.exists(filename):
            raise RuntimeError("%r doesn't exist" % filename)
        try:
            return runpy.run_path(filename, run_name="__config__")
        except Exception:
            print("Failed to read config file: %s" % filename, file=sys.stderr)
            traceback.print_exc()
            sys.stderr.flush()
            sys.exit(1)

    def apply_config_file(self, filename):
        for name, value in self.read_config_file(filename).items():
            if name not in self.cfg.settings:
                continue
            try:
                self.cfg.set(name, value)
            except Exception:
                print("Invalid value for %s: %s\n" % (name, value),
                      file=sys.stderr)
                raise

    def load_config(self):
        self.cfg = Config(self.usage, prog=self.prog)
        args = self.cfg.parser().parse_args(self.argv)

        if args.config:
            self.apply_config_file(args.config)

        for name, value in vars(args).items():
            if value is not None:
                self.cfg.set(name, value)

        self.check_config()
        self.log = Logger(self.cfg)

    def check_config(self):
        root = self.cfg.document_root_path
        if not os.path.isdir(root):
            raise ConfigError("Document root %r is not a directory" % root)
        if self.cfg.keyfile and not self.cfg.certfile:
            raise ConfigError("keyfile given without a certfile")

    def run(self):
        try:
            Arbiter(self).run()
        except RuntimeError as e:
            fail(e)


def run(prog=None):
    """The ``fastgate`` command line entry point."""
    Application("%(prog)s [OPTIONS]", prog=prog).run()


if __name__ == "__main__":
    run()
