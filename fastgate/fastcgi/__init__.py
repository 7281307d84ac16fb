#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from fastgate.fastcgi.channel import FastCGIChannel, RawInterpreterResponse
from fastgate.fastcgi.interpreter import Interpreter
from fastgate.fastcgi.records import (
    RecordError, InvalidRecord, UnexpectedRecord, ConnectionClosed,
)

__all__ = [
    'FastCGIChannel',
    'RawInterpreterResponse',
    'Interpreter',
    'RecordError',
    'InvalidRecord',
    'UnexpectedRecord',
    'ConnectionClosed',
]
