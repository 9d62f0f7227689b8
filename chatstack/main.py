"""Entrypoint that forwards control to the click CLI.

Running ``python -m chatstack.main`` behaves like the installed
``chatstack`` console script. When no subcommand is given (or the first
argument is an option) the ``launch`` subcommand is inserted.
"""

import sys

from chatstack.cli import cli


def main(argv: list | None = None):
    """Build the argument list and hand it to :func:`chatstack.cli.cli`.

    Args:
        argv (Optional[list]): Arguments to use instead of ``sys.argv[1:]``.
    """
    cli_args = [str(x) for x in (sys.argv[1:] if argv is None else argv)]
    if not cli_args or (cli_args[0].startswith("-") and cli_args[0] not in ("--help", "--version")):
        cli_args.insert(0, "launch")
    cli.main(args=cli_args)


if __name__ == "__main__":
    main()
