#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Map request paths to files of the document root.

A path with an extension names a file directly. A path without one is a
directory-style request and resolves to an index: the index script, then
the index file, either at the root of the document tree (single entry
point) or inside the requested directory.
"""

import os
import posixpath
import urllib.parse
from collections import namedtuple

from fastgate import util

STATIC = "static"
SCRIPT = "script"
NOT_FOUND = "not_found"

RouteDecision = namedtuple(
    "RouteDecision", ["kind", "resolved_path", "script_name", "extension"])


class Router(object):

    def __init__(self, document_root, single_entry_point=True,
                 script_extensions=(".php",), index_script="index.php",
                 index_file="index.html"):
        self.document_root = os.path.realpath(document_root)
        self.single_entry_point = single_entry_point
        self.script_extensions = frozenset(
            ext.lower() for ext in script_extensions)
        self.index_script = index_script
        self.index_file = index_file

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.document_root_path,
                   single_entry_point=cfg.single_entry_point,
                   script_extensions=cfg.script_extensions,
                   index_script=cfg.index_script,
                   index_file=cfg.index_file)

    def route(self, path):
        path = urllib.parse.unquote(util.wire_str(path or "/"),
                                    errors="surrogateescape")
        if "\x00" in path:
            return self.not_found(path)
        if not path.startswith("/"):
            path = "/" + path

        ext = posixpath.splitext(path)[1]
        if ext:
            candidates = [path]
        elif self.single_entry_point:
            candidates = ["/" + self.index_script, "/" + self.index_file]
        else:
            if path.endswith("/"):
                path = path[:-1]
            candidates = [path + "/" + self.index_script,
                          path + "/" + self.index_file]

        for candidate in candidates:
            resolved = self.resolve(candidate)
            if resolved is not None:
                return self.decide(candidate, resolved)
        return self.not_found(path)

    def resolve(self, candidate):
        """Return the real path of ``candidate`` or None.

        None means the file does not exist, is not a regular file or lies
        outside of the document root.
        """
        full = os.path.join(self.document_root, candidate.lstrip("/"))
        real = os.path.realpath(full)
        try:
            if os.path.commonpath([real, self.document_root]) != \
                    self.document_root:
                return None
        except ValueError:
            # different drives
            return None
        if not os.path.isfile(real):
            return None
        return real

    def decide(self, candidate, resolved):
        ext = posixpath.splitext(candidate)[1].lower()
        kind = SCRIPT if ext in self.script_extensions else STATIC
        return RouteDecision(kind, resolved, posixpath.normpath(candidate), ext)

    def not_found(self, path):
        return RouteDecision(NOT_FOUND, None, None,
                             posixpath.splitext(path)[1].lower())
