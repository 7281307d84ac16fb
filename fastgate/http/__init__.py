#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from fastgate.http.reader import Request, RequestReader
from fastgate.http.response import Response

__all__ = ['Request', 'RequestReader', 'Response']
