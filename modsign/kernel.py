# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import re
from pathlib import Path
from typing import Union

from modsign.context import Context
from modsign.installer import install_build_packages, query_installed_kernel
from modsign.log import complete_step, die


@dataclasses.dataclass(frozen=True)
class KernelTarget:
    version: str
    build_directory: Path

    @property
    def sign_file(self) -> Path:
        return self.build_directory / "scripts/sign-file"


def finalize_kernel_version(context: Context) -> str:
    return context.config.kernel_version or query_installed_kernel(context)


def kernel_version_key(name: str) -> list[Union[int, str]]:
    # "6.9.1" sorts before "6.12.0", compare runs of digits numerically.
    return [int(p) if i % 2 else p for i, p in enumerate(re.split(r"(\d+)", name))]


def find_kernel_build_directory(context: Context, kver: str) -> Path:
    searchroot = context.path(context.config.kernel_source_search_root)

    if (exact := searchroot / kver).is_dir():
        return exact

    candidates = [d for d in searchroot.iterdir() if d.is_dir()] if searchroot.is_dir() else []
    if not candidates:
        die(
            f"Kernel source directory not found for kernel {kver}",
            hint=f"Install the kernel-devel package matching {kver} or make sure {searchroot} is populated",
        )

    newest = max(candidates, key=lambda d: kernel_version_key(d.name))
    logging.warning(f"{exact} does not exist, building against {newest} instead")
    return newest


def resolve_kernel_target(context: Context) -> KernelTarget:
    kver = finalize_kernel_version(context)
    logging.info(f"Building for kernel version {kver}")

    target = KernelTarget(version=kver, build_directory=find_kernel_build_directory(context, kver))
    logging.info(f"Using kernel source {target.build_directory}")

    return target


def prepare_toolchain(context: Context) -> KernelTarget:
    with complete_step("Preparing kernel toolchain…"):
        install_build_packages(context)
        return resolve_kernel_target(context)
