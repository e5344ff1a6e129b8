import sys
import asyncio
from typing import Literal

import tap

from stdiorelay.common import FatalError
from stdiorelay.handles import blocking_mode_restored
from stdiorelay.logging import get_logger, set_level
from stdiorelay.session import run

LOGGER = get_logger(__name__)


class Args(tap.Tap):

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    """Level of the diagnostics written to stderr."""


async def main(args: Args):
    set_level(args.log_level)
    await run()


if __name__ == "__main__":
    args = Args(underscores_to_dashes=True).parse_args()
    with blocking_mode_restored(0):
        try:
            asyncio.run(main(args))
        except FatalError as e:
            LOGGER.error("%s (%s)", e.message, e.location)
            sys.exit(e.exit_code)
