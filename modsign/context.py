# SPDX-License-Identifier: LGPL-2.1-or-later

import os
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from modsign.config import Args, Config
from modsign.run import RunProtocol, run
from modsign.util import PathString, rooted


class Context:
    """Handle on the host the pipeline operates on.

    Every external command goes through `run` and every path describing the provisioned system goes
    through `path()`, so the pipeline can be driven against a scratch directory and a stand-in runner.
    """

    def __init__(
        self,
        args: Args,
        config: Config,
        *,
        run: RunProtocol = run,
        environ: Optional[Mapping[str, str]] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.args = args
        self.config = config
        self.run = run
        self.environ = os.environ if environ is None else environ
        self.now = now

    @property
    def root(self) -> Path:
        return self.config.root

    def path(self, path: PathString) -> Path:
        return rooted(self.root, path)

    @property
    def key_directory(self) -> Path:
        return self.path(self.config.key_directory)

    @property
    def modules_directory(self) -> Path:
        return self.path("/lib/modules")

    @property
    def recipes_directory(self) -> Path:
        return self.path(self.config.recipes_directory)

    def root_options(self, option: str) -> list[PathString]:
        """Options pointing a tool at an alternative root, or nothing when operating on the host itself."""
        return [option, self.root] if self.root != Path("/") else []
