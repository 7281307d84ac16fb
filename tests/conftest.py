#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

"""Pytest configuration for fastgate tests."""

import os
import sys

# Make the test support modules importable as 'support'
tests_dir = os.path.dirname(os.path.abspath(__file__))
if tests_dir not in sys.path:
    sys.path.insert(0, tests_dir)
