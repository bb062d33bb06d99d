# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import signal
import sys
from types import FrameType
from typing import Optional

from modsign import run_verb
from modsign.config import parse_config
from modsign.context import Context
from modsign.log import log_setup
from modsign.run import uncaught_exception_handler


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    args, config = parse_config(sys.argv[1:])

    if args.debug:
        faulthandler.enable()

    run_verb(args, config, Context(args, config))


if __name__ == "__main__":
    main()
