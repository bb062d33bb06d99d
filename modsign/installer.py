# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import subprocess
from collections.abc import Sequence

from modsign.context import Context
from modsign.log import complete_step, die
from modsign.util import PathString


class Dnf:
    @classmethod
    def executable(cls, context: Context) -> str:
        # Allow the user to override the package manager with an environment variable
        return context.environ.get("MODSIGN_DNF", "dnf5")

    @classmethod
    def cmd(cls, context: Context) -> list[PathString]:
        return [
            cls.executable(context),
            "--assumeyes",
            *context.root_options("--installroot"),
        ]

    @classmethod
    def install(cls, context: Context, packages: Sequence[str], *, optional: bool = False) -> bool:
        if not packages:
            return True

        with complete_step(f"Installing {' '.join(packages)}"):
            result = context.run(
                [*cls.cmd(context), "install", *packages],
                check=False,
                log=False,
            )

        if result.returncode == 0:
            return True

        if optional:
            logging.warning(
                f"Failed to install optional packages {' '.join(packages)} "
                f"({cls.executable(context)} returned {result.returncode}), continuing"
            )
            return False

        die(
            f"Failed to install {' '.join(packages)}",
            hint=f"{cls.executable(context)} returned non-zero exit code {result.returncode}",
        )


def install_build_packages(context: Context) -> None:
    if not context.config.install_packages:
        logging.debug("Not installing kernel development packages as requested")
        return

    Dnf.install(context, context.config.packages)
    Dnf.install(context, context.config.optional_packages, optional=True)


def query_installed_kernel(context: Context) -> str:
    result = context.run(
        [
            "rpm",
            *context.root_options("--root"),
            "-q", "kernel",
            "--queryformat", r"%{VERSION}-%{RELEASE}.%{ARCH}\n",
        ],
        stdout=subprocess.PIPE,
        check=False,
        log=False,
    )  # fmt: skip

    versions = result.stdout.strip().splitlines() if result.returncode == 0 and result.stdout else []
    if not versions:
        die("Could not determine the installed kernel version", hint="Set KernelVersion= explicitly")

    # rpm lists multiple installed kernels oldest first.
    return versions[-1].strip()
