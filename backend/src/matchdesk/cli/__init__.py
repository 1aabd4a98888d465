"""CLI entry points for matchdesk.

Provides command-line tools for:
- Browsing and filtering review records
- Selecting and batch-reviewing records
- Monitoring matching task progress
"""

import click

from .. import __version__
from ..logging import setup_logging
from .records import records_group
from .tasks import tasks_group


@click.group()
@click.version_option(version=__version__, prog_name="matchdesk")
@click.option("--verbose", "-v", is_flag=True, help="Emit logs to stdout")
def main(verbose: bool):
    """matchdesk - review queue for product matching results.

    Command-line tools for reviewing matching records and
    watching matching tasks.
    """
    if verbose:
        setup_logging()


main.add_command(records_group, name="records")
main.add_command(tasks_group, name="tasks")


if __name__ == "__main__":
    main()
