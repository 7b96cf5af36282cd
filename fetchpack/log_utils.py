# log_utils.py -- Logging utilities for fetchpack
# Copyright (C) 2026 The fetchpack Authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# fetchpack is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Logging utilities for fetchpack.

fetchpack is used as a library, and callers that have not configured logging
should not see its output. A null handler is therefore attached to the
"fetchpack" logger at import time; :func:`default_logging_config` removes it
and sets up output for command-line use.

The GIT_TRACE environment variable is honoured the way git does:
"1", "2" or "true" trace to stderr, an absolute path appends to that file
(or to a per-process file if the path is a directory).
"""

import logging
import os
import sys
from typing import Optional, Union

getLogger = logging.getLogger


class _NullHandler(logging.Handler):
    """No-op logging handler to avoid unexpected logging warnings."""

    def emit(self, record: logging.LogRecord) -> None:
        pass


_NULL_HANDLER = _NullHandler()
_FETCHPACK_LOGGER = getLogger("fetchpack")
_FETCHPACK_LOGGER.addHandler(_NULL_HANDLER)

TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


def _get_trace_target() -> Optional[Union[str, int]]:
    """Get the trace target from the GIT_TRACE environment variable.

    Returns:
        - None if tracing is disabled
        - 2 for stderr output (values "1", "2", "true")
        - str for an absolute file or directory path
    """
    trace_value = os.environ.get("GIT_TRACE", "")
    if not trace_value or trace_value.lower() in ("0", "false"):
        return None
    if trace_value.lower() in ("1", "2", "true"):
        return 2
    if os.path.isabs(trace_value):
        return trace_value
    return None


def _configure_logging_from_trace() -> bool:
    """Configure logging based on GIT_TRACE.

    Returns True if tracing was set up, False otherwise.
    """
    trace_target = _get_trace_target()
    if trace_target is None:
        return False

    if trace_target == 2:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format=TRACE_FORMAT)
        return True

    assert isinstance(trace_target, str)
    if os.path.isdir(trace_target):
        filename = os.path.join(trace_target, f"trace.{os.getpid()}")
    else:
        filename = trace_target
    try:
        logging.basicConfig(
            level=logging.DEBUG, filename=filename, filemode="a", format=TRACE_FORMAT
        )
    except OSError as e:
        sys.stderr.write(
            f"Warning: Failed to open GIT_TRACE file {trace_target}: {e}\n"
        )
        return False
    return True


def default_logging_config() -> None:
    """Set up the default fetchpack loggers.

    Trace output is configured from GIT_TRACE when it is set; otherwise
    messages at INFO and above go to stderr.
    """
    remove_null_handler()
    if not _configure_logging_from_trace():
        logging.basicConfig(
            level=logging.INFO,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s: %(message)s",
        )


def remove_null_handler() -> None:
    """Remove the null handler from the fetchpack logger.

    If a caller wants to set up logging using something other than
    default_logging_config, calling this function first avoids the overhead
    of the null handler.
    """
    _FETCHPACK_LOGGER.removeHandler(_NULL_HANDLER)
