#
# This file is part of fastgate released under the MIT license.
# See the NOTICE for more information.

from fastgate.app import run

if __name__ == "__main__":
    run()
