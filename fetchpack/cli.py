# cli.py -- Command line interface for fetchpack
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

"""Simple command-line interface to fetchpack.

The commands mirror their git counterparts:

    fetchpack fetch [--depth N] [--unshallow] [--refspec R] URL [GITDIR]
    fetchpack ls-remote URL
"""

import argparse
import logging
import os
import sys
from collections.abc import Sequence
from typing import ClassVar, Optional

from . import log_utils
from .errors import FetchError
from .client import fetch, ls_remote
from .refs import DEFAULT_REFSPEC
from .repo import DiskRepo

logger = logging.getLogger(__name__)


def _write_progress(data: bytes) -> None:
    sys.stderr.buffer.write(data)
    sys.stderr.buffer.flush()


class Command:
    """A fetchpack subcommand."""

    def run(self, args: Sequence[str]) -> Optional[int]:
        """Run the command."""
        raise NotImplementedError(self.run)


class cmd_fetch(Command):
    """Download objects and refs from another repository."""

    def run(self, args: Sequence[str]) -> Optional[int]:
        """Execute the fetch command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="fetchpack fetch")
        parser.add_argument(
            "--depth",
            type=int,
            help="Limit fetching to the specified number of commits from each tip",
        )
        parser.add_argument(
            "--unshallow",
            action="store_true",
            help="Convert a shallow repository to a complete one",
        )
        parser.add_argument(
            "--refspec",
            action="append",
            help="Refspec mapping remote refs to local refs (may be repeated)",
        )
        parser.add_argument(
            "-q", "--quiet", action="store_true", help="Do not show progress"
        )
        parser.add_argument("url", help="Remote repository URL")
        parser.add_argument(
            "gitdir",
            nargs="?",
            help="Git directory to fetch into; created if it does not exist "
            "(defaults to the current directory, which must be a git directory)",
        )
        parsed_args = parser.parse_args(args)

        gitdir = parsed_args.gitdir or "."
        if os.path.isdir(os.path.join(gitdir, "objects")):
            repo = DiskRepo(gitdir)
        elif parsed_args.gitdir is None:
            logger.error("%s is not a git directory", os.path.abspath(gitdir))
            return 1
        else:
            repo = DiskRepo.init(gitdir)
        results = fetch(
            parsed_args.url,
            repo,
            refspec=parsed_args.refspec or DEFAULT_REFSPEC,
            depth=parsed_args.depth,
            unshallow=parsed_args.unshallow,
            progress=None if parsed_args.quiet else _write_progress,
        )
        for result in results:
            old = result.old_sha.decode("ascii")[:7] if result.old_sha else "0000000"
            new = result.new_sha.decode("ascii")[:7]
            sys.stdout.write(f"{old}..{new} {result.ref.decode('utf-8')}\n")
        return None


class cmd_ls_remote(Command):
    """List references in a remote repository."""

    def run(self, args: Sequence[str]) -> Optional[int]:
        """Execute the ls-remote command.

        Args:
            args: Command line arguments
        """
        parser = argparse.ArgumentParser(prog="fetchpack ls-remote")
        parser.add_argument(
            "--symref", action="store_true", help="Show symbolic references"
        )
        parser.add_argument("url", help="Remote URL to list references from")
        parsed_args = parser.parse_args(args)
        advertisement = ls_remote(parsed_args.url)

        if parsed_args.symref:
            # Show symrefs first, like git does
            for ref, target in sorted(advertisement.capabilities.symrefs().items()):
                sys.stdout.write(f"ref: {target.decode()}\t{ref.decode()}\n")

        for ref, sha in advertisement.refs:
            sys.stdout.write(f"{sha.decode()}\t{ref.decode()}\n")
            if ref in advertisement.peeled:
                peeled = advertisement.peeled[ref]
                sys.stdout.write(f"{peeled.decode()}\t{ref.decode()}^{{}}\n")
        return None


commands: dict[str, type[Command]] = {
    "fetch": cmd_fetch,
    "ls-remote": cmd_ls_remote,
}


class cmd_help(Command):
    """Display help information."""

    commands: ClassVar[dict[str, type[Command]]] = commands

    def run(self, args: Sequence[str]) -> Optional[int]:
        """Execute the help command.

        Args:
            args: Command line arguments
        """
        sys.stdout.write("The available commands are:\n\n")
        for cmd in sorted(self.commands):
            doc = (self.commands[cmd].__doc__ or "").strip()
            sys.stdout.write(f"  {cmd:<12}{doc}\n")
        return None


commands["help"] = cmd_help


def main(argv: Optional[Sequence[str]] = None) -> Optional[int]:
    """Main entry point for the fetchpack CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code or None
    """
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        cmd_help().run([])
        return 1

    log_utils.default_logging_config()

    cmd = argv[0]
    try:
        cmd_kls = commands[cmd]
    except KeyError:
        logger.fatal("No such subcommand: %s", cmd)
        return 1
    try:
        return cmd_kls().run(argv[1:])
    except FetchError as e:
        logger.error("%s: %s", cmd, e)
        return 1


def _main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    _main()
